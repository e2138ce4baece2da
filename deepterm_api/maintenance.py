import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Dict

from deepterm_api.database import db_time
from deepterm_api.payments import expire_pending_payments
from deepterm_api.rate_limiter import cleanup_rate_limit_records
from deepterm_api.reports import recover_stale_reports

logger = logging.getLogger(__name__)

RATE_LIMIT_RETENTION = timedelta(days=7)
TRANSACTION_RETENTION = timedelta(days=180)

def cleanup_old_transactions(*, conn: sqlite3.Connection, older_than: timedelta = TRANSACTION_RETENTION) -> int:
    cursor = conn.cursor()
    cursor.execute(
        "DELETE FROM credit_transactions WHERE created_at < ?",
        (db_time(datetime.utcnow() - older_than),)
    )
    return cursor.rowcount

def run_cleanup(*, conn: sqlite3.Connection) -> Dict[str, Any]:
    """One maintenance pass. Each step commits on its own so one failure does not undo the rest."""
    steps = {
        "rate_limit_tracking": lambda: cleanup_rate_limit_records(conn=conn, older_than=RATE_LIMIT_RETENTION),
        "credit_transactions": lambda: cleanup_old_transactions(conn=conn),
        "expired_payments": lambda: expire_pending_payments(conn=conn),
        "stale_reports": lambda: recover_stale_reports(conn=conn),
    }
    results: Dict[str, Any] = {}
    errors: Dict[str, str] = {}
    for name, step in steps.items():
        try:
            results[name] = step()
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            errors[name] = str(exc)
            logger.error("Cleanup step %s failed: %s", name, exc)
    logger.info("Cleanup results: %s", results)
    return {"results": results, "errors": errors}
