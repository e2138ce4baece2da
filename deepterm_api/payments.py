"""
Crypto billing: invoice creation, IPN reconciliation and subscriptions.

A finished payment credits the ledger at most once. The webhook claims the
payment with a conditional ``credits_added`` UPDATE inside a savepoint and
credits in the same transaction, so a retried IPN finds nothing to claim and
a failed credit releases the claim for the next retry.
"""

import logging
import os
import secrets
import sqlite3
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from deepterm_api.credit_config import SUBSCRIPTION_PLANS
from deepterm_api.database import db_time, dumps_metadata, parse_db_time, row_to_dict
from deepterm_api.ledger import LedgerError, add_credits, get_credit_package
from deepterm_api.nowpayments import (
    NOWPaymentsClient,
    NOWPaymentsError,
    is_payment_failed,
    is_payment_pending,
    is_payment_successful,
    map_payment_status,
)
from deepterm_api.promo import apply_promo_code_to_purchase, record_promo_code_purchase_usage
from deepterm_api.settings import NOWPAYMENTS_ENV, public_app_url

logger = logging.getLogger(__name__)

PAYMENT_EXPIRY = timedelta(hours=1)
CURRENCY_CACHE_TTL = 60 * 60
WEBHOOK_PATH = "/api/payments/nowpayments/webhook"

POPULAR_CURRENCIES = ["btc", "eth", "usdt", "ltc", "xrp", "doge", "bnb", "sol", "trx", "matic"]
FALLBACK_CURRENCIES = [
    {"code": "btc", "name": "Bitcoin", "network": "btc"},
    {"code": "eth", "name": "Ethereum", "network": "eth"},
    {"code": "usdttrc20", "name": "Tether (TRC20)", "network": "trx"},
    {"code": "usdterc20", "name": "Tether (ERC20)", "network": "eth"},
    {"code": "ltc", "name": "Litecoin", "network": "ltc"},
    {"code": "xrp", "name": "Ripple", "network": "xrp"},
    {"code": "doge", "name": "Dogecoin", "network": "doge"},
    {"code": "bnbbsc", "name": "BNB (BSC)", "network": "bsc"},
    {"code": "sol", "name": "Solana", "network": "sol"},
    {"code": "trx", "name": "Tron", "network": "trx"},
]

# Plans map onto rate-limit tiers by price order.
PLAN_TIERS = {
    "free": "free",
    "pro": "premium",
    "premium": "professional",
    "enterprise": "enterprise",
}

_currency_cache: Dict[str, Any] = {"data": None, "fetched_at": 0.0}

class PaymentError(Exception):
    pass

class PaymentNotFoundError(PaymentError):
    pass

class PaymentConfigurationError(PaymentError):
    pass

class PackageNotFoundError(PaymentError):
    pass

class PromoCodeRejectedError(PaymentError):
    pass

def generate_order_id() -> str:
    return f"order_{secrets.token_hex(8)}"

def get_payments_readiness() -> Dict[str, Any]:
    env_present = {
        "api_key": bool(os.getenv(NOWPAYMENTS_ENV["api_key"])),
        "ipn_secret": bool(os.getenv(NOWPAYMENTS_ENV["ipn_secret"])),
        "public_app_url": public_app_url() is not None,
    }
    client = NOWPaymentsClient()
    return {
        "env": env_present,
        "sandbox": client.sandbox,
        "api_base_url": client.base_url,
        "ready_for_invoices": env_present["api_key"] and env_present["public_app_url"],
        "ready_for_webhook": env_present["ipn_secret"],
    }

def _callback_urls(app_url: str, success_path: str, cancel_path: str) -> Dict[str, str]:
    return {
        "ipn_callback_url": f"{app_url}{WEBHOOK_PATH}",
        "success_url": f"{app_url}{success_path}",
        "cancel_url": f"{app_url}{cancel_path}",
    }

def _require_app_url() -> str:
    app_url = public_app_url()
    if not app_url:
        raise PaymentConfigurationError(
            "A public app URL (PRODUCTION_URL or NEXT_PUBLIC_APP_URL) is required for payment callbacks"
        )
    return app_url

def _insert_payment(
    cursor: sqlite3.Cursor,
    *,
    user_id: int,
    order_id: str,
    invoice: Dict[str, Any],
    price_amount: float,
    credits_amount: int,
    bonus_credits: int,
    package_id: Optional[int],
    pay_currency: Optional[str],
    metadata: Dict[str, Any]
) -> int:
    now = datetime.utcnow()
    cursor.execute(
        '''
        INSERT INTO crypto_payments
            (user_id, order_id, package_id, invoice_id, invoice_url, status, price_amount, price_currency,
             pay_currency, credits_amount, bonus_credits, credits_added, metadata, expires_at, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, 'pending', ?, 'usd', ?, ?, ?, 0, ?, ?, ?, ?)
        ''',
        (
            user_id,
            order_id,
            package_id,
            str(invoice.get("id", "")) or None,
            invoice.get("invoice_url"),
            price_amount,
            pay_currency,
            credits_amount,
            bonus_credits,
            dumps_metadata(metadata),
            db_time(now + PAYMENT_EXPIRY),
            db_time(now),
            db_time(now),
        )
    )
    return cursor.lastrowid

def create_package_invoice(
    user_id: int,
    package_id: int,
    *,
    conn: sqlite3.Connection,
    client: NOWPaymentsClient,
    pay_currency: Optional[str] = None,
    promo_code: Optional[str] = None
) -> Dict[str, Any]:
    """Create a hosted NOWPayments invoice for a credit package. The caller commits."""
    package = get_credit_package(package_id, conn=conn)
    if not package:
        raise PackageNotFoundError(f"Credit package {package_id} not found")
    app_url = _require_app_url()

    price = float(package["price"])
    metadata: Dict[str, Any] = {"package_name": package["name"]}
    promo_result = None
    if promo_code:
        promo_result = apply_promo_code_to_purchase(
            promo_code, user_id, price, conn=conn, package_id=package_id
        )
        if not promo_result.success:
            raise PromoCodeRejectedError(promo_result.error or "Promo code is not valid")
        price = promo_result.discounted_amount
        metadata.update(
            promo_code=promo_code.strip().upper(),
            promo_code_id=promo_result.promo_code_id,
            discount_applied=promo_result.discount_applied,
            original_price=promo_result.original_amount,
        )

    order_id = generate_order_id()
    total_credits = package["credits"] + package["bonus_credits"]
    invoice = client.create_invoice(
        price_amount=price,
        price_currency="usd",
        pay_currency=pay_currency,
        order_id=order_id,
        order_description=f"{package['name']} - {total_credits} credits",
        **_callback_urls(app_url, "/dashboard?payment=success", "/pricing?payment=cancelled"),
    )

    cursor = conn.cursor()
    payment_id = _insert_payment(
        cursor,
        user_id=user_id,
        order_id=order_id,
        invoice=invoice,
        price_amount=price,
        credits_amount=package["credits"],
        bonus_credits=package["bonus_credits"],
        package_id=package_id,
        pay_currency=pay_currency,
        metadata=metadata,
    )
    logger.info("Created invoice %s for user %s (package %s, %.2f USD)", order_id, user_id, package_id, price)
    return {
        "payment_id": payment_id,
        "order_id": order_id,
        "invoice_id": invoice.get("id"),
        "invoice_url": invoice.get("invoice_url"),
        "price_amount": price,
        "credits": total_credits,
        "package": {"id": package["id"], "name": package["name"]},
    }

def create_subscription_invoice(
    user_id: int,
    plan_id: str,
    billing_cycle: str,
    *,
    conn: sqlite3.Connection,
    client: NOWPaymentsClient,
    pay_currency: Optional[str] = None
) -> Dict[str, Any]:
    plan = SUBSCRIPTION_PLANS.get(plan_id)
    if not plan or plan_id == "free":
        raise PackageNotFoundError(f"Subscription plan {plan_id} is not purchasable")
    app_url = _require_app_url()

    yearly = billing_cycle == "yearly"
    price = float(plan["yearly_price"] if yearly else plan["monthly_price"])
    order_id = generate_order_id()
    invoice = client.create_invoice(
        price_amount=price,
        price_currency="usd",
        pay_currency=pay_currency,
        order_id=order_id,
        order_description=f"{plan['name']} plan - {billing_cycle}",
        **_callback_urls(app_url, "/dashboard?subscription=success", "/pricing?subscription=cancelled"),
    )

    cursor = conn.cursor()
    payment_id = _insert_payment(
        cursor,
        user_id=user_id,
        order_id=order_id,
        invoice=invoice,
        price_amount=price,
        credits_amount=plan["credits"],
        bonus_credits=0,
        package_id=None,
        pay_currency=pay_currency,
        metadata={"is_subscription_payment": True, "plan_id": plan_id, "billing_cycle": billing_cycle},
    )
    logger.info("Created subscription invoice %s for user %s (%s %s)", order_id, user_id, plan_id, billing_cycle)
    return {
        "payment_id": payment_id,
        "order_id": order_id,
        "invoice_id": invoice.get("id"),
        "invoice_url": invoice.get("invoice_url"),
        "price_amount": price,
        "plan_id": plan_id,
        "billing_cycle": billing_cycle,
        "credits": plan["credits"],
    }

def activate_subscription(
    user_id: int,
    plan_id: str,
    billing_cycle: str,
    *,
    conn: sqlite3.Connection,
    payment_id: Optional[int] = None
) -> Dict[str, Any]:
    """Start or extend a paid period and move the user onto the plan's tier."""
    now = datetime.utcnow()
    period = timedelta(days=365 if billing_cycle == "yearly" else 30)
    cursor = conn.cursor()
    cursor.execute("SELECT * FROM user_subscriptions WHERE user_id = ?", (user_id,))
    existing = cursor.fetchone()

    period_start = now
    if existing and existing["status"] == "active" and existing["plan_id"] == plan_id:
        current_end = parse_db_time(existing["current_period_end"])
        if current_end and current_end > now:
            period_start = current_end
    period_end = period_start + period

    if existing:
        cursor.execute(
            '''
            UPDATE user_subscriptions
            SET plan_id = ?, status = 'active', billing_cycle = ?, current_period_start = ?, current_period_end = ?,
                trial_ends_at = NULL, payment_method = 'crypto', last_payment_id = ?, updated_at = ?
            WHERE id = ?
            ''',
            (plan_id, billing_cycle, db_time(period_start), db_time(period_end), payment_id, db_time(now), existing["id"])
        )
    else:
        cursor.execute(
            '''
            INSERT INTO user_subscriptions
                (user_id, plan_id, status, billing_cycle, current_period_start, current_period_end,
                 payment_method, last_payment_id, created_at, updated_at)
            VALUES (?, ?, 'active', ?, ?, ?, 'crypto', ?, ?, ?)
            ''',
            (user_id, plan_id, billing_cycle, db_time(period_start), db_time(period_end), payment_id,
             db_time(now), db_time(now))
        )

    tier = PLAN_TIERS.get(plan_id, "free")
    cursor.execute("UPDATE users SET tier = ?, updated_at = ? WHERE id = ?", (tier, db_time(now), user_id))
    cursor.execute("UPDATE api_keys SET tier = ? WHERE user_id = ? AND is_active = 1", (tier, user_id))
    cursor.execute("SELECT * FROM user_subscriptions WHERE user_id = ?", (user_id,))
    return dict(cursor.fetchone())

def get_subscription(user_id: int, *, conn: sqlite3.Connection) -> Optional[Dict[str, Any]]:
    cursor = conn.cursor()
    cursor.execute("SELECT * FROM user_subscriptions WHERE user_id = ?", (user_id,))
    row = cursor.fetchone()
    return dict(row) if row else None

def _credit_finished_payment(payment: Dict[str, Any], ipn: Dict[str, Any], *, conn: sqlite3.Connection) -> int:
    metadata = payment["metadata"]
    credit_metadata = {
        "order_id": payment["order_id"],
        "payment_id": str(ipn.get("payment_id", "")),
        "pay_currency": ipn.get("pay_currency"),
        "actually_paid": ipn.get("actually_paid"),
    }
    if metadata.get("is_subscription_payment") and metadata.get("plan_id"):
        plan_id = metadata["plan_id"]
        billing_cycle = metadata.get("billing_cycle") or "monthly"
        activate_subscription(payment["user_id"], plan_id, billing_cycle, conn=conn, payment_id=payment["id"])
        result = add_credits(
            payment["user_id"],
            payment["credits_amount"],
            "purchase",
            f"{plan_id} subscription - {billing_cycle}",
            conn=conn,
            metadata=credit_metadata,
        )
        logger.info("Subscription %s activated for user %s", plan_id, payment["user_id"])
        return result.amount_added

    credit_metadata["package_id"] = payment["package_id"]
    # Discount codes count as used only once the invoice is paid.
    if metadata.get("promo_code_id"):
        record_promo_code_purchase_usage(
            metadata["promo_code_id"], payment["user_id"], metadata.get("discount_applied") or 0,
            conn=conn, purchase_id=payment["order_id"]
        )
    result = add_credits(
        payment["user_id"],
        payment["credits_amount"] + payment["bonus_credits"],
        "purchase",
        f"Crypto payment - Order: {payment['order_id']}",
        conn=conn,
        metadata=credit_metadata,
    )
    logger.info("Credits added for user %s: %d", payment["user_id"], result.amount_added)
    return result.amount_added

def record_payment_event(
    *,
    conn: sqlite3.Connection,
    order_id: Optional[str],
    external_payment_id: Optional[str],
    payment_status: Optional[str],
    outcome: str,
    payload_text: str
) -> None:
    conn.execute(
        '''
        INSERT INTO payment_events (order_id, external_payment_id, payment_status, outcome, payload_json, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ''',
        (order_id, external_payment_id, payment_status, outcome, payload_text, db_time())
    )

def process_ipn(ipn: Dict[str, Any], *, conn: sqlite3.Connection) -> Dict[str, Any]:
    """Apply one IPN callback to its payment. The caller commits."""
    order_id = ipn.get("order_id")
    cursor = conn.cursor()
    if not conn.in_transaction:
        conn.execute("BEGIN IMMEDIATE")
    cursor.execute("SELECT * FROM crypto_payments WHERE order_id = ?", (order_id,))
    payment = row_to_dict(cursor.fetchone())
    if not payment:
        raise PaymentNotFoundError(f"Payment not found for order {order_id}")

    external_status = ipn.get("payment_status")
    new_status = map_payment_status(external_status)
    metadata = dict(payment["metadata"])
    for key in ("network", "purchase_id", "outcome_amount", "outcome_currency"):
        if ipn.get(key) is not None:
            metadata[key] = ipn[key]

    now_text = db_time()
    external_payment_id = str(ipn["payment_id"]) if ipn.get("payment_id") is not None else None
    cursor.execute(
        '''
        UPDATE crypto_payments
        SET status = ?,
            external_payment_id = COALESCE(?, external_payment_id),
            pay_amount = COALESCE(?, pay_amount),
            pay_currency = COALESCE(?, pay_currency),
            pay_address = COALESCE(?, pay_address),
            actually_paid = COALESCE(?, actually_paid),
            metadata = ?,
            updated_at = ?
        WHERE id = ?
        ''',
        (new_status, external_payment_id, ipn.get("pay_amount"), ipn.get("pay_currency"),
         ipn.get("pay_address"), ipn.get("actually_paid"), dumps_metadata(metadata), now_text, payment["id"])
    )

    outcome = "status_updated"
    credits_added = 0
    if external_status == "finished":
        payment["metadata"] = metadata
        conn.execute("SAVEPOINT credit_payment")
        try:
            cursor.execute(
                "UPDATE crypto_payments SET credits_added = 1, paid_at = ? WHERE id = ? AND credits_added = 0",
                (now_text, payment["id"])
            )
            if cursor.rowcount == 1:
                credits_added = _credit_finished_payment(payment, ipn, conn=conn)
                outcome = "credited"
            else:
                outcome = "already_credited"
            conn.execute("RELEASE SAVEPOINT credit_payment")
        except (LedgerError, sqlite3.Error) as exc:
            conn.execute("ROLLBACK TO SAVEPOINT credit_payment")
            conn.execute("RELEASE SAVEPOINT credit_payment")
            logger.error("Failed to credit payment %s: %s", order_id, exc)
            outcome = "credit_failed"

    logger.info("Payment %s updated to status %s (%s)", order_id, new_status, outcome)
    return {
        "order_id": order_id,
        "status": new_status,
        "outcome": outcome,
        "credits_added": credits_added,
    }

def expire_pending_payments(*, conn: sqlite3.Connection) -> int:
    cursor = conn.cursor()
    cursor.execute(
        '''
        UPDATE crypto_payments
        SET status = 'expired', updated_at = ?
        WHERE status = 'pending' AND credits_added = 0 AND expires_at IS NOT NULL AND expires_at < ?
        ''',
        (db_time(), db_time())
    )
    return cursor.rowcount

def get_payment_for_user(identifier: str, user_id: int, *, conn: sqlite3.Connection) -> Optional[Dict[str, Any]]:
    cursor = conn.cursor()
    cursor.execute(
        '''
        SELECT * FROM crypto_payments
        WHERE user_id = ? AND (order_id = ? OR external_payment_id = ? OR CAST(id AS TEXT) = ?)
        ''',
        (user_id, identifier, identifier, identifier)
    )
    return row_to_dict(cursor.fetchone())

def describe_payment(payment: Dict[str, Any], live: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    status = map_payment_status(live.get("payment_status")) if live else payment["status"]
    return {
        "id": payment["id"],
        "order_id": payment["order_id"],
        "status": status,
        "stored_status": payment["status"],
        "is_successful": is_payment_successful(status),
        "is_pending": is_payment_pending(status),
        "is_failed": is_payment_failed(status),
        "price_amount": payment["price_amount"],
        "pay_amount": live.get("pay_amount") if live else payment["pay_amount"],
        "pay_currency": live.get("pay_currency") if live else payment["pay_currency"],
        "actually_paid": live.get("actually_paid") if live else payment["actually_paid"],
        "credits_amount": payment["credits_amount"],
        "bonus_credits": payment["bonus_credits"],
        "credits_added": bool(payment["credits_added"]),
        "invoice_url": payment["invoice_url"],
        "created_at": payment["created_at"],
        "paid_at": payment["paid_at"],
    }

def get_payment_history(
    user_id: int,
    *,
    conn: sqlite3.Connection,
    page: int = 1,
    limit: int = 20
) -> Dict[str, Any]:
    page = max(page, 1)
    cursor = conn.cursor()
    cursor.execute("SELECT COUNT(*) AS total FROM crypto_payments WHERE user_id = ?", (user_id,))
    total = int(cursor.fetchone()["total"])
    cursor.execute(
        "SELECT * FROM crypto_payments WHERE user_id = ? ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
        (user_id, limit, (page - 1) * limit)
    )
    payments = [describe_payment(row_to_dict(row)) for row in cursor.fetchall()]
    return {
        "payments": payments,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": (total + limit - 1) // limit if limit else 0,
        },
    }

def _sort_currencies(currencies: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    def rank(currency: Dict[str, Any]):
        code = str(currency.get("code", "")).lower()
        for position, popular in enumerate(POPULAR_CURRENCIES):
            if code == popular or code.startswith(popular):
                return (0, position, code)
        return (1, 0, code)
    return sorted(currencies, key=rank)

def get_supported_currencies(client: NOWPaymentsClient) -> Dict[str, Any]:
    """Currencies for the checkout picker, popular first, cached for an hour."""
    cached = _currency_cache["data"]
    if cached is not None and time.time() - _currency_cache["fetched_at"] < CURRENCY_CACHE_TTL:
        return dict(cached, cached=True)

    try:
        raw = client.get_full_currencies().get("currencies", [])
    except NOWPaymentsError as exc:
        logger.warning("Falling back to static currency list: %s", exc)
        return {"currencies": FALLBACK_CURRENCIES, "fallback": True, "cached": False}

    currencies = [
        {
            "code": item.get("code"),
            "name": item.get("name"),
            "network": item.get("network"),
            "logo_url": item.get("logo_url"),
            "is_popular": bool(item.get("is_popular")),
        }
        for item in raw
        if item.get("enable", True)
    ]
    data = {"currencies": _sort_currencies(currencies), "fallback": False}
    _currency_cache["data"] = data
    _currency_cache["fetched_at"] = time.time()
    return dict(data, cached=False)

def clear_currency_cache() -> None:
    _currency_cache["data"] = None
    _currency_cache["fetched_at"] = 0.0
