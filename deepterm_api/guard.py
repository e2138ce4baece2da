"""
Request guards for metered endpoints.

``require_credits(action)`` authenticates the caller, grants the monthly free
credits when due, applies the rate limit and checks the balance before the
handler runs. The handler receives a ``CreditContext`` and charges through
``deduct_after()`` once its work has succeeded, so failed upstream calls cost
nothing. ``rate_limited()`` applies only the rate limit and accepts anonymous
callers, who are limited by IP address.
"""

import logging
import sqlite3
from typing import Any, Dict, Optional

from fastapi import Depends, Header, HTTPException, Request, status

from deepterm_api.auth import get_current_user, require_onboarding, verify_api_key
from deepterm_api.credit_config import get_credit_cost
from deepterm_api.database import get_db
from deepterm_api.ledger import (
    CreditDeductResult,
    check_and_reset_monthly_credits,
    check_credits,
    deduct_credits,
)
from deepterm_api.rate_limiter import RateLimitResult, check_rate_limit

logger = logging.getLogger(__name__)

def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"

def rate_limit_headers(result: RateLimitResult) -> Dict[str, str]:
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(int(result.reset_at.timestamp())),
    }

def enforce_rate_limit(request: Request, user: Optional[Dict[str, Any]]) -> RateLimitResult:
    conn = get_db()
    try:
        result = check_rate_limit(
            request.url.path,
            conn=conn,
            tier=user.get("tier") if user else None,
            user_id=user["id"] if user else None,
            ip_address=client_ip(request),
        )
        conn.commit()
    finally:
        conn.close()

    if result.limit >= 0:
        request.state.rate_limit = result
    if not result.allowed:
        headers = rate_limit_headers(result)
        headers["Retry-After"] = str(result.retry_after)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "code": "RATE_LIMIT_EXCEEDED",
                "message": f"Too many requests. Please try again in {result.retry_after} seconds.",
                "retry_after": result.retry_after,
                "window": result.window,
                "reset_at": result.reset_at.isoformat(),
            },
            headers=headers
        )
    return result

class CreditContext:
    """Handed to metered handlers; charges the action at most once."""

    def __init__(self, request: Request, user: Dict[str, Any], action: str, cost: int, balance: int):
        self.request = request
        self.user = user
        self.action = action
        self.cost = cost
        self.balance = balance
        self.result: Optional[CreditDeductResult] = None

    @property
    def charged(self) -> bool:
        return self.result is not None and self.result.success

    def deduct_after(
        self,
        metadata: Optional[Dict[str, Any]] = None,
        *,
        conn: Optional[sqlite3.Connection] = None
    ) -> CreditDeductResult:
        """Charge the action. With ``conn`` the caller owns the transaction."""
        if self.result is not None:
            return self.result

        details = dict(metadata or {}, endpoint=self.request.url.path)
        if conn is not None:
            result = deduct_credits(self.user["id"], self.action, conn=conn, metadata=details)
        else:
            own_conn = get_db()
            try:
                result = deduct_credits(self.user["id"], self.action, conn=own_conn, metadata=details)
                own_conn.commit()
            finally:
                own_conn.close()

        self.result = result
        if result.success:
            self.balance = result.new_balance
            self.request.state.credit_balance = result.new_balance
        else:
            logger.warning("Post-request charge failed for user %s (%s): %s",
                           self.user["id"], self.action, result.message)
        return result

def insufficient_credits_error(action: str, balance: int, required: int, message: Optional[str] = None) -> HTTPException:
    shortfall = max(required - balance, 0)
    return HTTPException(
        status_code=status.HTTP_402_PAYMENT_REQUIRED,
        detail={
            "code": "INSUFFICIENT_CREDITS",
            "message": message or "You do not have enough credits for this action. Please purchase more credits.",
            "current_balance": balance,
            "required_credits": required,
            "shortfall": shortfall,
            "action": action,
            "links": {"pricing": "/pricing", "credits": "/dashboard/settings/credits"},
        },
        headers={
            "X-Credit-Balance": str(balance),
            "X-Credit-Required": str(required),
            "X-Credit-Shortfall": str(shortfall),
        }
    )

def require_credits(action: str, *, onboarding: bool = False):
    get_credit_cost(action)
    user_dependency = require_onboarding if onboarding else get_current_user

    def dependency(request: Request, user: Dict[str, Any] = Depends(user_dependency)) -> CreditContext:
        conn = get_db()
        try:
            check_and_reset_monthly_credits(user["id"], conn=conn)
            conn.commit()
        finally:
            conn.close()

        enforce_rate_limit(request, user)

        conn = get_db()
        try:
            check = check_credits(user["id"], action, conn=conn)
            conn.commit()
        finally:
            conn.close()

        request.state.credit_balance = check.current_balance
        if not check.success:
            raise insufficient_credits_error(action, check.current_balance, check.required_credits)
        return CreditContext(request, user, action, check.required_credits, check.current_balance)

    return dependency

def rate_limited():
    def dependency(request: Request, x_api_key: Optional[str] = Header(None)) -> Optional[Dict[str, Any]]:
        user = None
        if x_api_key:
            user = verify_api_key(x_api_key)
            if not user:
                raise HTTPException(
                    status_code=status.HTTP_401_UNAUTHORIZED,
                    detail={"code": "AUTH_INVALID", "message": "Invalid or expired API key"}
                )
            request.state.user = user
        enforce_rate_limit(request, user)
        return user

    return dependency
