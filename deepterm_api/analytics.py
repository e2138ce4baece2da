"""Usage analytics over the credit transaction log."""

import math
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from deepterm_api.credit_config import CREDIT_CONFIG, recommended_package
from deepterm_api.database import db_time, row_to_dict
from deepterm_api.ledger import start_of_day, start_of_month

def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))

def _usage_total(cursor: sqlite3.Cursor, where: str, params: List[Any]) -> Dict[str, int]:
    cursor.execute(
        f'''
        SELECT COALESCE(SUM(ABS(amount)), 0) AS total, COUNT(*) AS count
        FROM credit_transactions
        WHERE type = 'usage' AND {where}
        ''',
        params
    )
    row = cursor.fetchone()
    return {"total": int(row["total"]), "count": int(row["count"])}

def _usage_by_action(cursor: sqlite3.Cursor, where: str, params: List[Any], total_used: int) -> List[Dict[str, Any]]:
    cursor.execute(
        f'''
        SELECT COALESCE(action, 'unknown') AS action, COUNT(*) AS count, SUM(ABS(amount)) AS total_credits
        FROM credit_transactions
        WHERE type = 'usage' AND {where}
        GROUP BY COALESCE(action, 'unknown')
        ORDER BY total_credits DESC
        ''',
        params
    )
    return [
        {
            "action": row["action"],
            "count": int(row["count"]),
            "total_credits": int(row["total_credits"]),
            "percentage": round_half_up(row["total_credits"] / total_used * 100) if total_used > 0 else 0,
        }
        for row in cursor.fetchall()
    ]

def get_user_usage_analytics(user_id: int, *, conn: sqlite3.Connection) -> Dict[str, Any]:
    now = datetime.utcnow()
    last_7_days = now - timedelta(days=7)
    last_30_days = now - timedelta(days=30)
    cursor = conn.cursor()

    cursor.execute("SELECT balance, lifetime_credits FROM user_credits WHERE user_id = ?", (user_id,))
    credit_row = cursor.fetchone()
    current_balance = int(credit_row["balance"]) if credit_row else 0
    lifetime_credits = int(credit_row["lifetime_credits"]) if credit_row else 0

    overall = _usage_total(cursor, "user_id = ?", [user_id])
    last_7 = _usage_total(cursor, "user_id = ? AND created_at >= ?", [user_id, db_time(last_7_days)])
    last_30 = _usage_total(cursor, "user_id = ? AND created_at >= ?", [user_id, db_time(last_30_days)])
    this_month = _usage_total(cursor, "user_id = ? AND created_at >= ?", [user_id, db_time(start_of_month(now))])

    cursor.execute(
        '''
        SELECT date(created_at) AS date, SUM(ABS(amount)) AS credits, COUNT(*) AS transactions
        FROM credit_transactions
        WHERE user_id = ? AND type = 'usage' AND created_at >= ?
        GROUP BY date(created_at)
        ORDER BY date(created_at)
        ''',
        (user_id, db_time(last_30_days))
    )
    daily_usage = [
        {"date": row["date"], "credits": int(row["credits"]), "transactions": int(row["transactions"])}
        for row in cursor.fetchall()
    ]

    usage_by_action = _usage_by_action(cursor, "user_id = ?", [user_id], overall["total"])
    average_per_day = round_half_up(last_30["total"] / 30)
    estimated_monthly = average_per_day * 30

    return {
        "total_credits_used": overall["total"],
        "total_transactions": overall["count"],
        "current_balance": current_balance,
        "lifetime_credits": lifetime_credits,
        "last_7_days_usage": last_7["total"],
        "last_30_days_usage": last_30["total"],
        "this_month_usage": this_month["total"],
        "daily_usage": daily_usage,
        "usage_by_action": usage_by_action,
        "top_action": usage_by_action[0]["action"] if usage_by_action else "none",
        "average_per_day": average_per_day,
        "estimated_monthly_usage": estimated_monthly,
        "days_until_empty": current_balance // average_per_day if average_per_day > 0 else None,
        "recommended_package": recommended_package(estimated_monthly),
    }

def get_system_analytics(*, conn: sqlite3.Connection) -> Dict[str, Any]:
    now = datetime.utcnow()
    today = db_time(start_of_day(now))
    month = db_time(start_of_month(now))
    cursor = conn.cursor()

    cursor.execute("SELECT COALESCE(SUM(balance), 0) AS total, AVG(balance) AS average FROM user_credits")
    balance_row = cursor.fetchone()

    used_today = _usage_total(cursor, "created_at >= ?", [today])
    used_month = _usage_total(cursor, "created_at >= ?", [month])

    cursor.execute(
        "SELECT COUNT(DISTINCT user_id) AS count FROM credit_transactions WHERE type = 'usage' AND created_at >= ?",
        (today,)
    )
    active_users_today = int(cursor.fetchone()["count"])

    cursor.execute(
        '''
        SELECT t.user_id, u.email, SUM(ABS(t.amount)) AS total_used
        FROM credit_transactions t
        LEFT JOIN users u ON u.id = t.user_id
        WHERE t.type = 'usage' AND t.created_at >= ?
        GROUP BY t.user_id, u.email
        ORDER BY total_used DESC
        LIMIT 10
        ''',
        (month,)
    )
    top_users = [
        {"user_id": row["user_id"], "email": row["email"] or "unknown", "total_used": int(row["total_used"])}
        for row in cursor.fetchall()
    ]

    cursor.execute(
        "SELECT COUNT(*) AS count FROM user_credits WHERE balance <= ?",
        (CREDIT_CONFIG["low_credit_threshold"],)
    )
    low_credit_users = int(cursor.fetchone()["count"])

    return {
        "total_credits_in_system": int(balance_row["total"]),
        "total_credits_used_today": used_today["total"],
        "total_credits_used_this_month": used_month["total"],
        "active_users_today": active_users_today,
        "top_users_by_usage": top_users,
        "users_with_low_credits": low_credit_users,
        "average_balance_per_user": round_half_up(balance_row["average"] or 0),
        "system_usage_by_action": _usage_by_action(cursor, "created_at >= ?", [month], used_month["total"]),
    }

def get_user_transaction_history(
    user_id: int,
    *,
    conn: sqlite3.Connection,
    limit: int = 50,
    offset: int = 0,
    credit_type: Optional[str] = None,
    action: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None
) -> Dict[str, Any]:
    where = ["user_id = ?"]
    params: List[Any] = [user_id]
    if credit_type:
        where.append("type = ?")
        params.append(credit_type)
    if action:
        where.append("action = ?")
        params.append(action)
    if start_date:
        where.append("created_at >= ?")
        params.append(db_time(start_date))
    if end_date:
        where.append("created_at <= ?")
        params.append(db_time(end_date))
    clause = " AND ".join(where)

    cursor = conn.cursor()
    cursor.execute(f"SELECT COUNT(*) AS total FROM credit_transactions WHERE {clause}", params)
    total = int(cursor.fetchone()["total"])
    cursor.execute(
        f"SELECT * FROM credit_transactions WHERE {clause} ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
        params + [limit, offset]
    )
    transactions = [row_to_dict(row) for row in cursor.fetchall()]
    return {
        "transactions": transactions,
        "total": total,
        "limit": limit,
        "offset": offset,
        "has_more": offset + len(transactions) < total,
    }
