from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from deepterm_api.database import db_time, get_db, loads_metadata
from deepterm_api.ledger import (
    InsufficientBalanceError,
    LedgerError,
    UserNotFoundError,
    add_credits,
    admin_adjust_credits,
    check_and_reset_monthly_credits,
    check_credits,
    deduct_credits,
    get_credit_history,
    get_credit_stats,
    refund_credits,
    start_of_month,
)


def _transactions(db, user_id, credit_type=None):
    query = "SELECT * FROM credit_transactions WHERE user_id = ?"
    params = [user_id]
    if credit_type:
        query += " AND type = ?"
        params.append(credit_type)
    return [dict(row) for row in db.execute(query + " ORDER BY id", params).fetchall()]


def test_new_user_gets_welcome_and_monthly_credits(db, make_user):
    user = make_user()
    bonus = _transactions(db, user["id"], "bonus")
    assert len(bonus) == 1
    assert bonus[0]["amount"] == 70
    assert bonus[0]["balance_before"] == 0
    assert bonus[0]["balance_after"] == 70


def test_premium_signup_uses_tier_monthly_credits(db, make_user):
    user = make_user(tier="premium")
    stats = get_credit_stats(user["id"], conn=db)
    assert stats["current_balance"] == 220


def test_deduct_records_usage_and_balance_snapshot(db, make_user):
    user = make_user()
    result = deduct_credits(user["id"], "real_time_quote", conn=db, metadata={"symbol": "AAPL"})
    db.commit()

    assert result.success is True
    assert result.credits_deducted == 3
    assert result.new_balance == 67

    usage = _transactions(db, user["id"], "usage")
    assert len(usage) == 1
    assert usage[0]["amount"] == -3
    assert usage[0]["action"] == "real_time_quote"
    assert usage[0]["balance_before"] == 70
    assert usage[0]["balance_after"] == 67
    assert loads_metadata(usage[0]["metadata"]) == {"symbol": "AAPL"}


def test_deduct_with_insufficient_balance_writes_nothing(db, make_user):
    user = make_user(balance=2)
    result = deduct_credits(user["id"], "real_time_quote", conn=db)
    db.commit()

    assert result.success is False
    assert result.new_balance == 2
    assert "Required: 3" in result.message
    assert _transactions(db, user["id"], "usage") == []


def test_deduct_unknown_action_raises(db, make_user):
    user = make_user()
    with pytest.raises(LedgerError):
        deduct_credits(user["id"], "teleport", conn=db)


def test_check_credits_reports_shortfall(db, make_user):
    user = make_user(balance=10)
    check = check_credits(user["id"], "ai_analysis", conn=db)
    assert check.success is False
    assert check.current_balance == 10
    assert check.required_credits == 25


def test_add_credits_is_capped_at_max_balance(db, make_user):
    user = make_user(balance=99990)
    result = add_credits(user["id"], 100, "purchase", "Top up", conn=db)
    db.commit()

    assert result.new_balance == 100000
    assert result.amount_added == 10
    purchase = _transactions(db, user["id"], "purchase")[0]
    assert purchase["amount"] == 10
    assert loads_metadata(purchase["metadata"])["requested_amount"] == 100


@pytest.mark.parametrize("credit_type,amount", [("usage", 5), ("purchase", 0), ("purchase", -5), ("gift", 5)])
def test_add_credits_rejects_invalid_input(db, make_user, credit_type, amount):
    user = make_user()
    with pytest.raises(LedgerError):
        add_credits(user["id"], amount, credit_type, "Invalid", conn=db)


def test_refund_credits_adds_refund_transaction(db, make_user):
    user = make_user()
    result = refund_credits(user["id"], 25, "AI report for AAPL failed", conn=db)
    db.commit()

    assert result.new_balance == 95
    refund = _transactions(db, user["id"], "refund")[0]
    assert refund["description"] == "Refund: AI report for AAPL failed"


def test_monthly_reset_happens_once_per_month(db, make_user):
    user = make_user()
    last_month = start_of_month() - timedelta(days=1)
    db.execute(
        "UPDATE user_credits SET last_free_credits_reset = ? WHERE user_id = ?",
        (db_time(last_month), user["id"]),
    )
    db.commit()

    assert check_and_reset_monthly_credits(user["id"], conn=db) is True
    db.commit()
    assert check_and_reset_monthly_credits(user["id"], conn=db) is False
    db.commit()

    stats = get_credit_stats(user["id"], conn=db)
    assert stats["current_balance"] == 120
    assert len(_transactions(db, user["id"], "monthly_reset")) == 1


def test_admin_adjust_allows_negative_within_balance(db, make_user):
    user = make_user()
    result = admin_adjust_credits(user["id"], -30, "Chargeback", conn=db)
    db.commit()

    assert result.new_balance == 40
    adjust = _transactions(db, user["id"], "admin_adjust")[0]
    assert adjust["amount"] == -30
    assert adjust["balance_after"] == 40


def test_admin_adjust_never_drives_balance_negative(db, make_user):
    user = make_user()
    with pytest.raises(InsufficientBalanceError):
        admin_adjust_credits(user["id"], -100, "Too much", conn=db)
    db.rollback()
    assert get_credit_stats(user["id"], conn=db)["current_balance"] == 70


def test_admin_adjust_rejects_zero_and_unknown_user(db, make_user):
    user = make_user()
    with pytest.raises(LedgerError):
        admin_adjust_credits(user["id"], 0, "Nothing", conn=db)
    with pytest.raises(UserNotFoundError):
        admin_adjust_credits(987654, 10, "Ghost", conn=db)


def test_credit_history_filters_and_orders_newest_first(db, make_user):
    user = make_user()
    deduct_credits(user["id"], "stock_search", conn=db)
    deduct_credits(user["id"], "real_time_quote", conn=db)
    db.commit()

    history = get_credit_history(user["id"], conn=db, credit_type="usage")
    assert [item["action"] for item in history] == ["real_time_quote", "stock_search"]
    stats = get_credit_stats(user["id"], conn=db)
    assert stats["today_usage"] == 5
    assert stats["month_usage"] == 5


def _in_own_connection(operation):
    conn = get_db()
    try:
        result = operation(conn)
        conn.commit()
        return result
    finally:
        conn.close()


def test_concurrent_deductions_never_overspend(db, make_user):
    user = make_user(balance=30)

    def spend(_):
        return _in_own_connection(lambda conn: deduct_credits(user["id"], "real_time_quote", conn=conn).success)

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(spend, range(20)))

    assert outcomes.count(True) == 10
    assert get_credit_stats(user["id"], conn=db)["current_balance"] == 0
    usage = _transactions(db, user["id"], "usage")
    assert len(usage) == 10
    assert all(row["balance_after"] >= 0 for row in usage)


def test_concurrent_monthly_reset_grants_once(db, make_user):
    user = make_user()
    db.execute(
        "UPDATE user_credits SET last_free_credits_reset = ? WHERE user_id = ?",
        (db_time(start_of_month() - timedelta(days=1)), user["id"]),
    )
    db.commit()

    def reset(_):
        return _in_own_connection(lambda conn: check_and_reset_monthly_credits(user["id"], conn=conn))

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(reset, range(12)))

    assert outcomes.count(True) == 1
    assert get_credit_stats(user["id"], conn=db)["current_balance"] == 120
    assert len(_transactions(db, user["id"], "monthly_reset")) == 1
