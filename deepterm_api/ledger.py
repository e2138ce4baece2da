"""
Credit ledger.

Balances live in ``user_credits``; every change is written to
``credit_transactions`` with the balance before and after. Functions take an
open connection and leave committing to the caller so several ledger steps
can share one transaction.
"""

import logging
import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from deepterm_api.credit_config import (
    CREDIT_ADD_TYPES,
    CREDIT_CONFIG,
    CREDIT_TRANSACTION_TYPES,
    get_credit_cost,
    monthly_free_credits,
)
from deepterm_api.database import db_time, dumps_metadata, row_to_dict

logger = logging.getLogger(__name__)

class LedgerError(Exception):
    pass

class UserNotFoundError(LedgerError):
    pass

class InsufficientBalanceError(LedgerError):
    pass

class CreditCheckResult(BaseModel):
    success: bool
    current_balance: int
    required_credits: int
    remaining_balance: int
    message: Optional[str] = None

class CreditDeductResult(BaseModel):
    success: bool
    new_balance: int
    credits_deducted: int = 0
    transaction_id: Optional[int] = None
    message: Optional[str] = None

class CreditAddResult(BaseModel):
    success: bool
    new_balance: int
    amount_added: int
    transaction_id: Optional[int] = None
    message: Optional[str] = None

def start_of_month(now: Optional[datetime] = None) -> datetime:
    now = now or datetime.utcnow()
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

def start_of_day(now: Optional[datetime] = None) -> datetime:
    now = now or datetime.utcnow()
    return now.replace(hour=0, minute=0, second=0, microsecond=0)

def action_cost(action: str) -> int:
    try:
        return get_credit_cost(action)
    except ValueError as exc:
        raise LedgerError(str(exc))

def get_user_row(user_id: int, *, conn: sqlite3.Connection) -> Dict[str, Any]:
    cursor = conn.cursor()
    cursor.execute("SELECT * FROM users WHERE id = ? AND is_active = 1", (user_id,))
    row = cursor.fetchone()
    if not row:
        raise UserNotFoundError(f"User {user_id} not found")
    return dict(row)

def record_transaction(
    cursor: sqlite3.Cursor,
    *,
    user_id: int,
    credit_type: str,
    amount: int,
    balance_before: int,
    balance_after: int,
    action: Optional[str] = None,
    description: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None
) -> int:
    if credit_type not in CREDIT_TRANSACTION_TYPES:
        raise LedgerError(f"Unknown transaction type: {credit_type}")
    cursor.execute(
        '''
        INSERT INTO credit_transactions
            (user_id, type, action, amount, balance_before, balance_after, description, metadata, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''',
        (user_id, credit_type, action, amount, balance_before, balance_after, description,
         dumps_metadata(metadata), db_time())
    )
    return cursor.lastrowid

def _select_balance(cursor: sqlite3.Cursor, user_id: int) -> int:
    cursor.execute("SELECT balance FROM user_credits WHERE user_id = ?", (user_id,))
    row = cursor.fetchone()
    return int(row["balance"]) if row else 0

def initialize_user_credits(user_id: int, *, conn: sqlite3.Connection) -> Dict[str, Any]:
    """Create the credit row with the welcome bonus plus the tier's monthly credits."""
    user = get_user_row(user_id, conn=conn)
    initial = CREDIT_CONFIG["initial_free_credits"] + monthly_free_credits(user.get("tier"))
    now_text = db_time()
    cursor = conn.cursor()
    cursor.execute(
        '''
        INSERT OR IGNORE INTO user_credits
            (user_id, balance, lifetime_credits, free_credits_used, last_free_credits_reset, created_at, updated_at)
        VALUES (?, ?, ?, 0, ?, ?, ?)
        ''',
        (user_id, initial, initial, now_text, now_text, now_text)
    )
    if cursor.rowcount == 1:
        record_transaction(
            cursor,
            user_id=user_id,
            credit_type="bonus",
            amount=initial,
            balance_before=0,
            balance_after=initial,
            description="Welcome bonus + Monthly free credits",
        )
        logger.info("Initialized credits for user %s with %d credits", user_id, initial)
    cursor.execute("SELECT * FROM user_credits WHERE user_id = ?", (user_id,))
    return dict(cursor.fetchone())

def get_user_credits(user_id: int, *, conn: sqlite3.Connection) -> Dict[str, Any]:
    cursor = conn.cursor()
    cursor.execute("SELECT * FROM user_credits WHERE user_id = ?", (user_id,))
    row = cursor.fetchone()
    if row:
        return dict(row)
    return initialize_user_credits(user_id, conn=conn)

def get_user_credit_balance(user_id: int, *, conn: sqlite3.Connection) -> int:
    return int(get_user_credits(user_id, conn=conn)["balance"])

def check_credits(user_id: int, action: str, *, conn: sqlite3.Connection) -> CreditCheckResult:
    required = action_cost(action)
    balance = get_user_credit_balance(user_id, conn=conn)
    if balance < required:
        return CreditCheckResult(
            success=False,
            current_balance=balance,
            required_credits=required,
            remaining_balance=balance,
            message=f"Insufficient credits. Required: {required}, Available: {balance}",
        )
    return CreditCheckResult(
        success=True,
        current_balance=balance,
        required_credits=required,
        remaining_balance=balance - required,
    )

def deduct_credits(
    user_id: int,
    action: str,
    *,
    conn: sqlite3.Connection,
    metadata: Optional[Dict[str, Any]] = None
) -> CreditDeductResult:
    """Charge ``action`` against the balance.

    The debit is one conditional UPDATE, so concurrent requests can never
    spend the same credits twice. On failure nothing is written.
    """
    cost = action_cost(action)
    get_user_credits(user_id, conn=conn)
    cursor = conn.cursor()
    cursor.execute(
        '''
        UPDATE user_credits
        SET balance = balance - ?, updated_at = ?
        WHERE user_id = ? AND balance >= ?
        ''',
        (cost, db_time(), user_id, cost)
    )
    if cursor.rowcount == 0:
        available = _select_balance(cursor, user_id)
        return CreditDeductResult(
            success=False,
            new_balance=available,
            message=f"Insufficient credits. Required: {cost}, Available: {available}",
        )

    new_balance = _select_balance(cursor, user_id)
    transaction_id = record_transaction(
        cursor,
        user_id=user_id,
        credit_type="usage",
        action=action,
        amount=-cost,
        balance_before=new_balance + cost,
        balance_after=new_balance,
        description=f"Credit used for {action}",
        metadata=metadata,
    )
    return CreditDeductResult(
        success=True,
        new_balance=new_balance,
        credits_deducted=cost,
        transaction_id=transaction_id,
    )

def add_credits(
    user_id: int,
    amount: int,
    credit_type: str,
    description: str,
    *,
    conn: sqlite3.Connection,
    metadata: Optional[Dict[str, Any]] = None
) -> CreditAddResult:
    if credit_type not in CREDIT_ADD_TYPES:
        raise LedgerError(f"Credits cannot be added with type {credit_type}")
    amount = int(amount)
    if amount <= 0:
        raise LedgerError("Credit amount must be positive")

    get_user_credits(user_id, conn=conn)
    cursor = conn.cursor()
    # Touch the row first so the write lock is held before the balance is read.
    cursor.execute("UPDATE user_credits SET updated_at = ? WHERE user_id = ?", (db_time(), user_id))
    balance_before = _select_balance(cursor, user_id)
    new_balance = min(balance_before + amount, CREDIT_CONFIG["max_credit_balance"])
    applied = new_balance - balance_before
    cursor.execute(
        '''
        UPDATE user_credits
        SET balance = ?, lifetime_credits = lifetime_credits + ?
        WHERE user_id = ?
        ''',
        (new_balance, applied, user_id)
    )
    if applied < amount:
        metadata = dict(metadata or {}, requested_amount=amount)
        logger.warning("Credit add for user %s capped at max balance (%d of %d applied)", user_id, applied, amount)

    transaction_id = record_transaction(
        cursor,
        user_id=user_id,
        credit_type=credit_type,
        amount=applied,
        balance_before=balance_before,
        balance_after=new_balance,
        description=description,
        metadata=metadata,
    )
    return CreditAddResult(
        success=True,
        new_balance=new_balance,
        amount_added=applied,
        transaction_id=transaction_id,
    )

def refund_credits(
    user_id: int,
    amount: int,
    reason: str,
    *,
    conn: sqlite3.Connection,
    metadata: Optional[Dict[str, Any]] = None
) -> CreditAddResult:
    return add_credits(user_id, amount, "refund", f"Refund: {reason}", conn=conn, metadata=metadata)

def reset_monthly_credits(user_id: int, *, conn: sqlite3.Connection) -> CreditAddResult:
    user = get_user_row(user_id, conn=conn)
    get_user_credits(user_id, conn=conn)
    now_text = db_time()
    conn.execute(
        "UPDATE user_credits SET free_credits_used = 0, last_free_credits_reset = ?, updated_at = ? WHERE user_id = ?",
        (now_text, now_text, user_id)
    )
    return add_credits(
        user_id,
        monthly_free_credits(user.get("tier")),
        "monthly_reset",
        "Monthly free credits reset",
        conn=conn,
    )

def check_and_reset_monthly_credits(user_id: int, *, conn: sqlite3.Connection) -> bool:
    """Grant the monthly free credits once per calendar month.

    Only the caller whose UPDATE moves ``last_free_credits_reset`` into the
    current month grants credits; racing callers see rowcount 0.
    """
    user = get_user_row(user_id, conn=conn)
    get_user_credits(user_id, conn=conn)
    now = datetime.utcnow()
    cursor = conn.cursor()
    cursor.execute(
        '''
        UPDATE user_credits
        SET free_credits_used = 0, last_free_credits_reset = ?, updated_at = ?
        WHERE user_id = ? AND last_free_credits_reset < ?
        ''',
        (db_time(now), db_time(now), user_id, db_time(start_of_month(now)))
    )
    if cursor.rowcount == 0:
        return False

    add_credits(
        user_id,
        monthly_free_credits(user.get("tier")),
        "monthly_reset",
        "Monthly free credits reset",
        conn=conn,
    )
    logger.info("Monthly credits reset for user %s", user_id)
    return True

def admin_adjust_credits(
    user_id: int,
    amount: int,
    description: str,
    *,
    conn: sqlite3.Connection,
    metadata: Optional[Dict[str, Any]] = None
) -> CreditAddResult:
    amount = int(amount)
    if amount == 0:
        raise LedgerError("Adjustment amount must be non-zero")
    get_user_row(user_id, conn=conn)
    if amount > 0:
        return add_credits(user_id, amount, "admin_adjust", description, conn=conn, metadata=metadata)

    debit = -amount
    get_user_credits(user_id, conn=conn)
    cursor = conn.cursor()
    cursor.execute(
        '''
        UPDATE user_credits
        SET balance = balance - ?, updated_at = ?
        WHERE user_id = ? AND balance >= ?
        ''',
        (debit, db_time(), user_id, debit)
    )
    if cursor.rowcount == 0:
        available = _select_balance(cursor, user_id)
        raise InsufficientBalanceError(
            f"Adjustment of {amount} would make the balance negative (available: {available})"
        )
    new_balance = _select_balance(cursor, user_id)
    transaction_id = record_transaction(
        cursor,
        user_id=user_id,
        credit_type="admin_adjust",
        amount=amount,
        balance_before=new_balance + debit,
        balance_after=new_balance,
        description=description,
        metadata=metadata,
    )
    return CreditAddResult(
        success=True,
        new_balance=new_balance,
        amount_added=amount,
        transaction_id=transaction_id,
    )

def get_credit_history(
    user_id: int,
    *,
    conn: sqlite3.Connection,
    limit: int = 50,
    offset: int = 0,
    credit_type: Optional[str] = None
) -> List[Dict[str, Any]]:
    query = "SELECT * FROM credit_transactions WHERE user_id = ?"
    params: List[Any] = [user_id]
    if credit_type:
        query += " AND type = ?"
        params.append(credit_type)
    query += " ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?"
    params.extend([limit, offset])
    cursor = conn.cursor()
    cursor.execute(query, params)
    return [row_to_dict(row) for row in cursor.fetchall()]

def _usage_since(cursor: sqlite3.Cursor, user_id: int, since: datetime) -> int:
    cursor.execute(
        '''
        SELECT COALESCE(SUM(ABS(amount)), 0) AS total FROM credit_transactions
        WHERE user_id = ? AND type = 'usage' AND created_at >= ?
        ''',
        (user_id, db_time(since))
    )
    return int(cursor.fetchone()["total"])

def get_credit_stats(user_id: int, *, conn: sqlite3.Connection) -> Dict[str, Any]:
    credits = get_user_credits(user_id, conn=conn)
    cursor = conn.cursor()
    return {
        "current_balance": int(credits["balance"]),
        "lifetime_credits": int(credits["lifetime_credits"]),
        "today_usage": _usage_since(cursor, user_id, start_of_day()),
        "month_usage": _usage_since(cursor, user_id, start_of_month()),
        "last_reset": credits["last_free_credits_reset"],
    }

def get_credit_packages(*, conn: sqlite3.Connection, include_inactive: bool = False) -> List[Dict[str, Any]]:
    query = "SELECT * FROM credit_packages"
    if not include_inactive:
        query += " WHERE is_active = 1"
    query += " ORDER BY sort_order, price"
    cursor = conn.cursor()
    cursor.execute(query)
    packages = []
    for row in cursor.fetchall():
        package = dict(row)
        package["is_active"] = bool(package["is_active"])
        package["is_popular"] = bool(package["is_popular"])
        package["total_credits"] = package["credits"] + package["bonus_credits"]
        packages.append(package)
    return packages

def get_credit_package(package_id: int, *, conn: sqlite3.Connection) -> Optional[Dict[str, Any]]:
    cursor = conn.cursor()
    cursor.execute("SELECT * FROM credit_packages WHERE id = ? AND is_active = 1", (package_id,))
    row = cursor.fetchone()
    return dict(row) if row else None
