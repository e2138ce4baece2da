"""Admin panel queries: credit overview, user balances, packages and stats."""

import logging
import sqlite3
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from deepterm_api.database import db_time, row_to_dict
from deepterm_api.ledger import LedgerError, admin_adjust_credits, get_credit_packages, start_of_day

logger = logging.getLogger(__name__)

class CreditPackageInput(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    credits: int = Field(ge=1)
    bonus_credits: int = Field(default=0, ge=0)
    price: float = Field(gt=0)
    currency: str = "USD"
    is_popular: bool = False
    is_active: bool = True
    sort_order: int = 0

class CreditPackageUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    credits: Optional[int] = Field(default=None, ge=1)
    bonus_credits: Optional[int] = Field(default=None, ge=0)
    price: Optional[float] = Field(default=None, gt=0)
    currency: Optional[str] = Field(default=None, min_length=1)
    is_popular: Optional[bool] = None
    is_active: Optional[bool] = None
    sort_order: Optional[int] = None

def get_credits_overview(*, conn: sqlite3.Connection) -> Dict[str, Any]:
    cursor = conn.cursor()
    cursor.execute(
        '''
        SELECT COALESCE(SUM(balance), 0) AS total_balance,
               COALESCE(SUM(lifetime_credits), 0) AS lifetime_total,
               SUM(CASE WHEN balance > 0 THEN 1 ELSE 0 END) AS users_with_credits
        FROM user_credits
        '''
    )
    totals = cursor.fetchone()
    cursor.execute(
        "SELECT COALESCE(SUM(ABS(amount)), 0) AS total FROM credit_transactions WHERE type = 'usage' AND created_at >= ?",
        (db_time(start_of_day()),)
    )
    today_usage = int(cursor.fetchone()["total"])
    cursor.execute(
        '''
        SELECT id, user_id, amount, type, action, description, created_at
        FROM credit_transactions ORDER BY created_at DESC, id DESC LIMIT 10
        '''
    )
    recent = [dict(row) for row in cursor.fetchall()]
    return {
        "overview": {
            "total_credits_in_system": int(totals["total_balance"]),
            "lifetime_credits_issued": int(totals["lifetime_total"]),
            "users_with_credits": int(totals["users_with_credits"] or 0),
            "today_usage": today_usage,
        },
        "recent_transactions": recent,
        "packages": get_credit_packages(conn=conn, include_inactive=True),
    }

def list_user_balances(*, conn: sqlite3.Connection, page: int = 1, limit: int = 20) -> Dict[str, Any]:
    page = max(page, 1)
    cursor = conn.cursor()
    cursor.execute(
        '''
        SELECT u.id AS user_id, u.email, u.tier,
               COALESCE(c.balance, 0) AS balance,
               COALESCE(c.lifetime_credits, 0) AS lifetime_credits,
               COALESCE(c.free_credits_used, 0) AS free_credits_used,
               c.last_free_credits_reset AS last_reset,
               c.updated_at, u.created_at AS user_created_at
        FROM users u
        LEFT JOIN user_credits c ON c.user_id = u.id
        ORDER BY u.created_at DESC, u.id DESC
        LIMIT ? OFFSET ?
        ''',
        (limit, (page - 1) * limit)
    )
    users = [dict(row) for row in cursor.fetchall()]
    cursor.execute("SELECT COUNT(*) AS total FROM users")
    total = int(cursor.fetchone()["total"])
    return {
        "users": users,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": (total + limit - 1) // limit if limit else 0,
        },
    }

def bulk_adjust_credits(
    user_ids: List[int],
    amount: int,
    description: Optional[str],
    *,
    conn: sqlite3.Connection
) -> Dict[str, Any]:
    """Adjust several users; each adjustment succeeds or fails on its own. The caller commits."""
    adjusted = 0
    failed = []
    text = description or f"Bulk adjustment: {amount} credits"
    if not conn.in_transaction:
        conn.execute("BEGIN IMMEDIATE")
    for user_id in user_ids:
        conn.execute("SAVEPOINT bulk_adjust")
        try:
            admin_adjust_credits(user_id, amount, text, conn=conn, metadata={"bulk": True})
        except (LedgerError, sqlite3.Error) as exc:
            conn.execute("ROLLBACK TO SAVEPOINT bulk_adjust")
            failed.append({"user_id": user_id, "error": str(exc)})
            logger.warning("Bulk adjustment failed for user %s: %s", user_id, exc)
        else:
            adjusted += 1
        conn.execute("RELEASE SAVEPOINT bulk_adjust")
    return {"adjusted": adjusted, "failed": failed}

def create_credit_package(data: CreditPackageInput, *, conn: sqlite3.Connection) -> Dict[str, Any]:
    cursor = conn.cursor()
    cursor.execute(
        '''
        INSERT INTO credit_packages
            (name, description, credits, bonus_credits, price, currency, is_active, is_popular, sort_order)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''',
        (data.name, data.description, data.credits, data.bonus_credits, data.price, data.currency,
         1 if data.is_active else 0, 1 if data.is_popular else 0, data.sort_order)
    )
    cursor.execute("SELECT * FROM credit_packages WHERE id = ?", (cursor.lastrowid,))
    return dict(cursor.fetchone())

def update_credit_package(
    package_id: int,
    updates: CreditPackageUpdate,
    *,
    conn: sqlite3.Connection
) -> Optional[Dict[str, Any]]:
    fields = updates.model_dump(exclude_none=True)
    cursor = conn.cursor()
    if fields:
        assignments = ", ".join(f"{key} = ?" for key in fields)
        values = [int(value) if isinstance(value, bool) else value for value in fields.values()]
        cursor.execute(
            f"UPDATE credit_packages SET {assignments}, updated_at = ? WHERE id = ?",
            values + [db_time(), package_id]
        )
    cursor.execute("SELECT * FROM credit_packages WHERE id = ?", (package_id,))
    row = cursor.fetchone()
    return dict(row) if row else None

def delete_credit_package(package_id: int, *, conn: sqlite3.Connection) -> bool:
    cursor = conn.cursor()
    cursor.execute("DELETE FROM credit_packages WHERE id = ?", (package_id,))
    return cursor.rowcount > 0

def get_admin_stats(*, conn: sqlite3.Connection) -> Dict[str, Any]:
    today = db_time(start_of_day())
    cursor = conn.cursor()

    cursor.execute("SELECT tier, COUNT(*) AS count FROM users WHERE is_active = 1 GROUP BY tier")
    users_by_tier = {row["tier"]: row["count"] for row in cursor.fetchall()}
    cursor.execute("SELECT COUNT(*) AS count FROM users WHERE created_at >= ?", (today,))
    new_users_today = cursor.fetchone()["count"]
    cursor.execute("SELECT COUNT(*) AS count FROM users WHERE onboarding_completed = 1")
    onboarded = cursor.fetchone()["count"]

    cursor.execute(
        '''
        SELECT status, COUNT(*) AS count, COALESCE(SUM(price_amount), 0) AS amount
        FROM crypto_payments GROUP BY status
        '''
    )
    payments_by_status = {
        row["status"]: {"count": row["count"], "amount": round(row["amount"], 2)}
        for row in cursor.fetchall()
    }
    cursor.execute("SELECT COUNT(*) AS count FROM user_subscriptions WHERE status = 'active'")
    active_subscriptions = cursor.fetchone()["count"]

    cursor.execute("SELECT status, COUNT(*) AS count FROM ai_reports GROUP BY status")
    reports_by_status = {row["status"]: row["count"] for row in cursor.fetchall()}

    cursor.execute("SELECT COUNT(*) AS count FROM rate_limit_tracking WHERE window_start >= ?", (today,))
    requests_today = cursor.fetchone()["count"]

    return {
        "users_by_tier": users_by_tier,
        "total_users": sum(users_by_tier.values()),
        "new_users_today": new_users_today,
        "onboarded_users": onboarded,
        "payments_by_status": payments_by_status,
        "revenue_usd": round(sum(
            stats["amount"] for status_name, stats in payments_by_status.items() if status_name == "finished"
        ), 2),
        "active_subscriptions": active_subscriptions,
        "reports_by_status": reports_by_status,
        "requests_today": requests_today,
    }

def get_user_transactions(user_id: int, *, conn: sqlite3.Connection, page: int = 1, limit: int = 20) -> List[Dict[str, Any]]:
    cursor = conn.cursor()
    cursor.execute(
        "SELECT * FROM credit_transactions WHERE user_id = ? ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
        (user_id, limit, (max(page, 1) - 1) * limit)
    )
    return [row_to_dict(row) for row in cursor.fetchall()]
