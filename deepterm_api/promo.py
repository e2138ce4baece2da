import json
import logging
import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from deepterm_api.database import db_time, dumps_metadata, parse_db_time
from deepterm_api.ledger import add_credits

logger = logging.getLogger(__name__)

class PromoCodeValidation(BaseModel):
    valid: bool
    error: Optional[str] = None
    code: Optional[Dict[str, Any]] = None
    benefits: Dict[str, Any] = Field(default_factory=dict)

class PromoRedeemResult(BaseModel):
    success: bool
    message: str
    credits_awarded: int = 0
    new_balance: Optional[int] = None

class PromoPurchaseResult(BaseModel):
    success: bool
    original_amount: float
    discounted_amount: float
    discount_applied: float
    promo_code_id: Optional[int] = None
    error: Optional[str] = None

class PromoCodeCreate(BaseModel):
    code: str = Field(min_length=3, max_length=64)
    type: str = Field(default="credits", pattern="^(credits|discount|trial)$")
    description: Optional[str] = None
    credits: Optional[int] = Field(default=None, ge=1)
    discount_percent: Optional[float] = Field(default=None, gt=0, le=100)
    discount_amount: Optional[float] = Field(default=None, gt=0)
    trial_days: Optional[int] = Field(default=None, ge=1)
    max_uses: Optional[int] = Field(default=None, ge=1)
    max_uses_per_user: int = Field(default=1, ge=1)
    min_purchase_amount: Optional[float] = Field(default=None, ge=0)
    applicable_packages: Optional[List[int]] = None
    starts_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

def _promo_row(row: sqlite3.Row) -> Dict[str, Any]:
    record = dict(row)
    record["is_active"] = bool(record["is_active"])
    raw_packages = record.get("applicable_packages")
    record["applicable_packages"] = json.loads(raw_packages) if raw_packages else []
    return record

def get_promo_code(code: str, *, conn: sqlite3.Connection) -> Optional[Dict[str, Any]]:
    cursor = conn.cursor()
    cursor.execute("SELECT * FROM promo_codes WHERE code = ?", (code.strip().upper(),))
    row = cursor.fetchone()
    return _promo_row(row) if row else None

def _user_usage_count(cursor: sqlite3.Cursor, promo_code_id: int, user_id: int) -> int:
    cursor.execute(
        "SELECT COUNT(*) AS count FROM promo_code_usage WHERE promo_code_id = ? AND user_id = ?",
        (promo_code_id, user_id)
    )
    return int(cursor.fetchone()["count"])

def validate_promo_code(
    code: str,
    user_id: int,
    *,
    conn: sqlite3.Connection,
    package_id: Optional[int] = None,
    purchase_amount: Optional[float] = None
) -> PromoCodeValidation:
    now = datetime.utcnow()
    promo = get_promo_code(code, conn=conn)
    if not promo:
        return PromoCodeValidation(valid=False, error="Promo code is not valid")
    if not promo["is_active"]:
        return PromoCodeValidation(valid=False, error="This promo code is inactive")

    expires_at = parse_db_time(promo["expires_at"])
    if expires_at and expires_at < now:
        return PromoCodeValidation(valid=False, error="This promo code has expired")
    starts_at = parse_db_time(promo["starts_at"])
    if starts_at and starts_at > now:
        return PromoCodeValidation(valid=False, error="This promo code is not active yet")

    if promo["max_uses"] and promo["used_count"] >= promo["max_uses"]:
        return PromoCodeValidation(valid=False, error="This promo code has reached its usage limit")

    if _user_usage_count(conn.cursor(), promo["id"], user_id) >= promo["max_uses_per_user"]:
        return PromoCodeValidation(valid=False, error="You have already used this promo code")

    if promo["min_purchase_amount"] and purchase_amount is not None:
        if purchase_amount < promo["min_purchase_amount"]:
            return PromoCodeValidation(
                valid=False,
                error=f"Minimum purchase amount for this code is ${promo['min_purchase_amount']:.2f}"
            )

    packages = promo["applicable_packages"]
    if packages and package_id is not None and package_id not in packages:
        return PromoCodeValidation(valid=False, error="This promo code does not apply to this package")

    benefits = {
        "credits": promo["credits_amount"] or None,
        "discount_percent": promo["discount_percent"],
        "discount_amount": promo["discount_amount"],
        "trial_days": promo["trial_days"],
    }
    return PromoCodeValidation(
        valid=True,
        code=promo,
        benefits={key: value for key, value in benefits.items() if value},
    )

def redeem_promo_code(
    code: str,
    user_id: int,
    *,
    conn: sqlite3.Connection,
    metadata: Optional[Dict[str, Any]] = None
) -> PromoRedeemResult:
    """Award a credits-type promo code. The caller commits."""
    if not conn.in_transaction:
        conn.execute("BEGIN IMMEDIATE")

    validation = validate_promo_code(code, user_id, conn=conn)
    if not validation.valid:
        return PromoRedeemResult(success=False, message=validation.error or "Promo code is not valid")

    promo = validation.code
    if promo["type"] != "credits" or not promo["credits_amount"]:
        return PromoRedeemResult(success=False, message="This code can only be used with a purchase")

    cursor = conn.cursor()
    cursor.execute(
        '''
        UPDATE promo_codes
        SET used_count = used_count + 1, updated_at = ?
        WHERE id = ? AND is_active = 1 AND (max_uses IS NULL OR used_count < max_uses)
        ''',
        (db_time(), promo["id"])
    )
    if cursor.rowcount == 0:
        return PromoRedeemResult(success=False, message="This promo code has reached its usage limit")

    credits = int(promo["credits_amount"])
    result = add_credits(
        user_id,
        credits,
        "promo",
        f"Promo code: {promo['code']}",
        conn=conn,
        metadata=dict(metadata or {}, promo_code=promo["code"]),
    )
    cursor.execute(
        "INSERT INTO promo_code_usage (promo_code_id, user_id, credits_awarded, created_at) VALUES (?, ?, ?, ?)",
        (promo["id"], user_id, result.amount_added, db_time())
    )
    logger.info("User %s redeemed promo code %s for %d credits", user_id, promo["code"], result.amount_added)
    return PromoRedeemResult(
        success=True,
        message=f"{result.amount_added} credits have been added to your account",
        credits_awarded=result.amount_added,
        new_balance=result.new_balance,
    )

def apply_promo_code_to_purchase(
    code: str,
    user_id: int,
    purchase_amount: float,
    *,
    conn: sqlite3.Connection,
    package_id: Optional[int] = None
) -> PromoPurchaseResult:
    validation = validate_promo_code(
        code, user_id, conn=conn, package_id=package_id, purchase_amount=purchase_amount
    )
    if not validation.valid:
        return PromoPurchaseResult(
            success=False,
            original_amount=purchase_amount,
            discounted_amount=purchase_amount,
            discount_applied=0,
            error=validation.error,
        )

    promo = validation.code
    discount = 0.0
    if promo["discount_percent"]:
        discount = purchase_amount * (promo["discount_percent"] / 100)
    elif promo["discount_amount"]:
        discount = min(promo["discount_amount"], purchase_amount)
    discount = round(discount, 2)

    return PromoPurchaseResult(
        success=True,
        original_amount=purchase_amount,
        discounted_amount=round(max(0.0, purchase_amount - discount), 2),
        discount_applied=discount,
        promo_code_id=promo["id"],
    )

def record_promo_code_purchase_usage(
    promo_code_id: int,
    user_id: int,
    discount_applied: float,
    *,
    conn: sqlite3.Connection,
    purchase_id: Optional[str] = None
) -> bool:
    """Record a paid purchase that used a discount code. The caller commits.

    Returns False when the code hit ``max_uses`` between invoicing and payment;
    the usage row is still written because the buyer already paid the discounted price.
    """
    cursor = conn.cursor()
    cursor.execute(
        '''
        INSERT INTO promo_code_usage (promo_code_id, user_id, discount_applied, purchase_id, created_at)
        VALUES (?, ?, ?, ?, ?)
        ''',
        (promo_code_id, user_id, discount_applied, purchase_id, db_time())
    )
    cursor.execute(
        '''
        UPDATE promo_codes
        SET used_count = used_count + 1, updated_at = ?
        WHERE id = ? AND (max_uses IS NULL OR used_count < max_uses)
        ''',
        (db_time(), promo_code_id)
    )
    if cursor.rowcount == 0:
        logger.warning("Promo code %s was over its usage limit when purchase %s was paid", promo_code_id, purchase_id)
        return False
    return True

def create_promo_code(data: PromoCodeCreate, *, conn: sqlite3.Connection) -> Dict[str, Any]:
    cursor = conn.cursor()
    cursor.execute(
        '''
        INSERT INTO promo_codes
            (code, description, type, credits_amount, discount_percent, discount_amount, trial_days,
             max_uses, max_uses_per_user, min_purchase_amount, applicable_packages, starts_at, expires_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''',
        (
            data.code.strip().upper(),
            data.description,
            data.type,
            data.credits or 0,
            data.discount_percent,
            data.discount_amount,
            data.trial_days,
            data.max_uses,
            data.max_uses_per_user,
            data.min_purchase_amount,
            dumps_metadata(data.applicable_packages) if data.applicable_packages else None,
            db_time(data.starts_at) if data.starts_at else None,
            db_time(data.expires_at) if data.expires_at else None,
        )
    )
    cursor.execute("SELECT * FROM promo_codes WHERE id = ?", (cursor.lastrowid,))
    return _promo_row(cursor.fetchone())

def get_active_promo_codes(*, conn: sqlite3.Connection) -> List[Dict[str, Any]]:
    cursor = conn.cursor()
    cursor.execute(
        '''
        SELECT * FROM promo_codes
        WHERE is_active = 1 AND (expires_at IS NULL OR expires_at >= ?)
        ORDER BY created_at DESC, id DESC
        ''',
        (db_time(),)
    )
    return [_promo_row(row) for row in cursor.fetchall()]

def set_promo_code_active(promo_code_id: int, is_active: bool, *, conn: sqlite3.Connection) -> bool:
    cursor = conn.cursor()
    cursor.execute(
        "UPDATE promo_codes SET is_active = ?, updated_at = ? WHERE id = ?",
        (1 if is_active else 0, db_time(), promo_code_id)
    )
    return cursor.rowcount > 0

def get_promo_code_stats(promo_code_id: int, *, conn: sqlite3.Connection) -> Dict[str, Any]:
    cursor = conn.cursor()
    cursor.execute(
        '''
        SELECT COUNT(*) AS total_uses,
               COALESCE(SUM(credits_awarded), 0) AS total_credits_awarded,
               COALESCE(SUM(discount_applied), 0) AS total_discount_applied,
               COUNT(DISTINCT user_id) AS unique_users
        FROM promo_code_usage
        WHERE promo_code_id = ?
        ''',
        (promo_code_id,)
    )
    return dict(cursor.fetchone())
