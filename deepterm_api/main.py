from fastapi import FastAPI, HTTPException, Depends, Header, Query, Body, status, Request, BackgroundTasks
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError
from typing import List, Optional, Dict, Any
from datetime import datetime
from contextlib import asynccontextmanager
import hmac
import json
import logging
import os
import sqlite3

from deepterm_api import __version__, market_data, reports
from deepterm_api.admin import (
    CreditPackageInput,
    CreditPackageUpdate,
    bulk_adjust_credits,
    create_credit_package,
    delete_credit_package,
    get_admin_stats,
    get_credits_overview,
    get_user_transactions,
    list_user_balances,
    update_credit_package,
)
from deepterm_api.analytics import get_system_analytics, get_user_transaction_history, get_user_usage_analytics
from deepterm_api.auth import (
    ADMIN_COOKIE_NAME,
    ADMIN_SESSION_TTL,
    admin_configured,
    api_key_name,
    create_admin_session,
    create_user,
    get_current_user,
    get_user_by_email,
    hash_api_key,
    rotate_api_key,
    validate_admin_credentials,
    verify_admin_session,
    verify_api_key,
    verify_password,
)
from deepterm_api.credit_config import (
    CREDIT_CONFIG,
    CREDIT_COSTS,
    DEFAULT_CREDIT_PACKAGES,
    RATE_LIMITS,
    SUBSCRIPTION_PLANS,
    monthly_free_credits,
)
from deepterm_api.database import db_time, get_db, init_db
from deepterm_api.guard import CreditContext, client_ip, insufficient_credits_error, rate_limited, require_credits
from deepterm_api.ledger import (
    InsufficientBalanceError,
    LedgerError,
    UserNotFoundError,
    add_credits,
    admin_adjust_credits,
    check_and_reset_monthly_credits,
    get_credit_history,
    get_credit_package,
    get_credit_packages,
    get_credit_stats,
    initialize_user_credits,
    reset_monthly_credits,
)
from deepterm_api.maintenance import run_cleanup
from deepterm_api.nowpayments import SIGNATURE_HEADER, NOWPaymentsClient, NOWPaymentsError
from deepterm_api.payments import (
    PackageNotFoundError,
    PaymentConfigurationError,
    PaymentNotFoundError,
    PromoCodeRejectedError,
    create_package_invoice,
    create_subscription_invoice,
    describe_payment,
    get_payment_for_user,
    get_payment_history,
    get_payments_readiness,
    get_subscription,
    get_supported_currencies,
    process_ipn,
    record_payment_event,
)
from deepterm_api.promo import (
    PromoCodeCreate,
    create_promo_code,
    get_active_promo_codes,
    get_promo_code_stats,
    redeem_promo_code,
    set_promo_code_active,
    validate_promo_code,
)
from deepterm_api.rate_limiter import (
    RateLimitConfigInput,
    create_rate_limit_config,
    delete_rate_limit_config,
    get_rate_limit_info,
    initialize_default_configs,
    list_rate_limit_configs,
    reset_rate_limit,
    toggle_rate_limit_config,
    update_rate_limit_config,
)
from deepterm_api.settings import CRON_SECRET_ENV, configure_logging, cors_origins, is_development

logger = logging.getLogger(__name__)

# Initialize on startup
init_db()

# Pydantic models
class RegisterRequest(BaseModel):
    email: str
    password: str = Field(min_length=8)
    first_name: Optional[str] = None
    last_name: Optional[str] = None

class LoginRequest(BaseModel):
    email: str
    password: str

class KeyLoginRequest(BaseModel):
    api_key: str

class RiskProfileRequest(BaseModel):
    risk_tolerance: str = Field(pattern="^(conservative|moderate|aggressive)$")
    investment_horizon: str = Field(pattern="^(short|medium|long)$")
    investment_experience: str = Field(pattern="^(beginner|intermediate|advanced)$")

class PromoRequest(BaseModel):
    action: str = Field(default="redeem", pattern="^(validate|redeem)$")
    code: str = Field(min_length=1)
    package_id: Optional[int] = None
    purchase_amount: Optional[float] = None

class PurchaseRequest(BaseModel):
    package_id: int

class PaymentCreateRequest(BaseModel):
    package_id: int
    pay_currency: Optional[str] = None
    promo_code: Optional[str] = None

class SubscriptionPaymentRequest(BaseModel):
    plan_id: str = Field(pattern="^(pro|premium|enterprise)$")
    billing_cycle: str = Field(default="monthly", pattern="^(monthly|yearly)$")
    pay_currency: Optional[str] = None

class ReportRequest(BaseModel):
    type: str = Field(default="retail", pattern="^(retail|pro|personalized)$")

class AdminLoginRequest(BaseModel):
    username: str
    password: str

class AdjustCreditsRequest(BaseModel):
    user_id: int
    amount: int
    description: Optional[str] = None

class BulkCreditsRequest(BaseModel):
    user_ids: List[int] = Field(min_length=1)
    amount: int
    description: Optional[str] = None

class UserActionRequest(BaseModel):
    user_id: int

class IdRequest(BaseModel):
    id: int

# FastAPI app
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    configure_logging()
    init_db()
    yield

app = FastAPI(
    title="Deep Terminal API",
    description="Market data, AI reports and credit billing for Deep Terminal",
    version=__version__,
    lifespan=lifespan
)

# Middleware
app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Helper functions
def get_nowpayments_client() -> NOWPaymentsClient:
    return NOWPaymentsClient()

def get_openrouter_client() -> reports.OpenRouterClient:
    return reports.OpenRouterClient()

def parse_body(model, payload: Dict[str, Any]):
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"code": "INVALID_REQUEST", "message": "Invalid request body", "errors": exc.errors()}
        )

def market_error(exc: market_data.MarketDataError) -> HTTPException:
    if isinstance(exc, market_data.InvalidParameterError):
        code = "INVALID_SYMBOL" if isinstance(exc, market_data.InvalidSymbolError) else "INVALID_PARAMETER"
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": code, "message": str(exc)}
        )
    if isinstance(exc, market_data.SymbolNotFoundError):
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "SYMBOL_NOT_FOUND", "message": str(exc)}
        )
    if isinstance(exc, market_data.ProviderNotConfiguredError):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "PROVIDER_NOT_CONFIGURED", "message": str(exc)}
        )
    logger.warning("Upstream market data error: %s", exc)
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail={"code": "UPSTREAM_ERROR", "message": "Market data provider is unavailable"}
    )

def payment_error(exc: Exception) -> HTTPException:
    if isinstance(exc, PackageNotFoundError):
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "PACKAGE_NOT_FOUND", "message": str(exc)}
        )
    if isinstance(exc, PromoCodeRejectedError):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "PROMO_INVALID", "message": str(exc)}
        )
    if isinstance(exc, PaymentConfigurationError):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "PAYMENT_NOT_CONFIGURED", "message": str(exc)}
        )
    logger.error("NOWPayments call failed: %s", exc)
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail={"code": "PAYMENT_GATEWAY_ERROR", "message": "Payment gateway request failed"}
    )

def require_payments_client(client: NOWPaymentsClient) -> None:
    if not client.configured:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "PAYMENT_NOT_CONFIGURED", "message": "NOWPayments is not configured yet"}
        )

def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": user["id"],
        "email": user["email"],
        "first_name": user.get("first_name"),
        "last_name": user.get("last_name"),
        "tier": user.get("tier"),
        "onboarding_completed": bool(user.get("onboarding_completed")),
    }

# Admin session gate
def is_public_admin_request(request: Request) -> bool:
    path = request.url.path.rstrip("/")
    if path == "/api/admin/auth":
        return True
    return path == "/api/admin/credits" and request.method == "GET" and request.query_params.get("action") == "config"

@app.middleware("http")
async def require_admin_session(request: Request, call_next):
    if request.url.path.startswith("/api/admin") and not is_public_admin_request(request):
        session = verify_admin_session(request.cookies.get(ADMIN_COOKIE_NAME))
        if not session:
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content={"detail": {"code": "ADMIN_SESSION_REQUIRED", "message": "Admin session required"}}
            )
        request.state.admin = session
    return await call_next(request)

# Response header middleware
@app.middleware("http")
async def add_usage_headers(request: Request, call_next):
    response = await call_next(request)

    if hasattr(request.state, "rate_limit"):
        rl = request.state.rate_limit
        response.headers["X-RateLimit-Limit"] = str(rl.limit)
        response.headers["X-RateLimit-Remaining"] = str(rl.remaining)
        response.headers["X-RateLimit-Reset"] = str(int(rl.reset_at.timestamp()))
    if hasattr(request.state, "credit_balance"):
        response.headers["X-Credit-Balance"] = str(request.state.credit_balance)

    return response

# Endpoints
@app.get("/", tags=["General"])
def root():
    """API root with basic info."""
    return {
        "name": "Deep Terminal API",
        "version": __version__,
        "docs": "/docs",
        "endpoints": [
            "/api/stocks/quote/{symbol}",
            "/api/market/overview",
            "/api/credits",
            "/api/health"
        ]
    }

@app.get("/api/health", tags=["General"])
def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "version": __version__
    }

# Auth
@app.post("/api/auth/register", tags=["Auth"])
def register(payload: RegisterRequest):
    email = payload.email.strip().lower()
    if "@" not in email:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"code": "INVALID_EMAIL", "message": "Valid email is required"}
        )

    conn = get_db()
    try:
        if get_user_by_email(email, conn=conn):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={"code": "EMAIL_EXISTS", "message": "An account with this email already exists"}
            )
        user = create_user(
            email=email,
            password=payload.password,
            first_name=payload.first_name,
            last_name=payload.last_name,
            conn=conn
        )
        key_payload = rotate_api_key(user_id=user["id"], name=api_key_name(email, "free"), tier="free", conn=conn)
        credits = initialize_user_credits(user["id"], conn=conn)
        conn.commit()
    finally:
        conn.close()

    logger.info("Registered user %s", user["id"])
    return {
        "message": "Account created",
        "api_key": key_payload["key"],
        "tier": key_payload["record"]["tier"],
        "user": public_user(user),
        "credits": credits["balance"],
    }

@app.post("/api/auth/login", tags=["Auth"])
def login(payload: LoginRequest):
    conn = get_db()
    try:
        user = get_user_by_email(payload.email.strip().lower(), conn=conn)
        if not user or not user.get("password_hash") or not verify_password(payload.password, user["password_hash"]):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail={"code": "AUTH_INVALID", "message": "Invalid email or password"}
            )

        key_payload = rotate_api_key(
            user_id=user["id"],
            name=api_key_name(user["email"], user["tier"]),
            tier=user["tier"],
            conn=conn,
            existing_key_hash=user.get("key_hash")
        )
        conn.execute("UPDATE users SET last_login_at = ? WHERE id = ?", (db_time(), user["id"]))
        conn.commit()
    finally:
        conn.close()

    tier = key_payload["record"]["tier"]
    return {
        "api_key": key_payload["key"],
        "api_key_hint": f"dt-{tier}-***",
        "tier": tier,
        "onboarding_completed": bool(user.get("onboarding_completed")),
    }

@app.post("/api/auth/key-login", tags=["Auth"])
def login_with_api_key(payload: KeyLoginRequest):
    user = verify_api_key(payload.api_key)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "AUTH_INVALID", "message": "Invalid API key"}
        )
    return {
        "tier": user["tier"],
        "api_key_hint": f"dt-{user['tier']}-***",
        "status": "active",
        "onboarding_completed": user["onboarding_completed"],
    }

@app.post("/api/auth/logout", tags=["Auth"])
def logout(x_api_key: Optional[str] = Header(None)):
    if x_api_key:
        conn = get_db()
        try:
            conn.execute("UPDATE api_keys SET is_active = 0 WHERE key_hash = ?", (hash_api_key(x_api_key),))
            conn.commit()
        finally:
            conn.close()
    return {"status": "ok"}

@app.get("/api/auth/me", tags=["Auth"])
def current_user(user: Dict = Depends(get_current_user)):
    conn = get_db()
    try:
        subscription = get_subscription(user["id"], conn=conn)
    finally:
        conn.close()
    return {"user": public_user(user), "subscription": subscription}

@app.post("/api/onboarding/risk-profile", tags=["Auth"])
def save_risk_profile(payload: RiskProfileRequest, user: Dict = Depends(get_current_user)):
    conn = get_db()
    try:
        conn.execute(
            '''
            UPDATE users
            SET risk_tolerance = ?, investment_horizon = ?, investment_experience = ?,
                onboarding_completed = 1, updated_at = ?
            WHERE id = ?
            ''',
            (payload.risk_tolerance, payload.investment_horizon, payload.investment_experience, db_time(), user["id"])
        )
        conn.commit()
    finally:
        conn.close()
    return {
        "onboarding_completed": True,
        "risk_profile": payload.model_dump(),
    }

# Market data
@app.get("/api/stocks/quote/{symbol}", tags=["Market Data"])
def stock_quote(
    symbol: str,
    stats: bool = False,
    profile: bool = False,
    ctx: CreditContext = Depends(require_credits("real_time_quote"))
):
    try:
        quote = market_data.get_quote(symbol, include_stats=stats, include_profile=profile)
    except market_data.MarketDataError as exc:
        raise market_error(exc)
    ctx.deduct_after({"symbol": quote["symbol"]})
    return quote

@app.get("/api/stocks/search", tags=["Market Data"])
def stock_search(
    q: str = Query(..., min_length=1, max_length=64),
    limit: int = Query(10, ge=1, le=25),
    ctx: CreditContext = Depends(require_credits("stock_search"))
):
    try:
        results = market_data.search_symbols(q, limit=limit)
    except market_data.MarketDataError as exc:
        raise market_error(exc)
    ctx.deduct_after({"query": q})
    return {"query": q, "results": results, "count": len(results)}

@app.get("/api/stocks/historical/{symbol}", tags=["Market Data"])
def stock_historical(
    symbol: str,
    range_: str = Query("1mo", alias="range"),
    interval: str = "1d",
    user: Optional[Dict] = Depends(rate_limited())
):
    try:
        return market_data.get_historical(symbol, range_=range_, interval=interval)
    except market_data.MarketDataError as exc:
        raise market_error(exc)

@app.get("/api/market/overview", tags=["Market Data"])
def market_overview(user: Optional[Dict] = Depends(rate_limited())):
    try:
        return market_data.get_market_overview()
    except market_data.MarketDataError as exc:
        raise market_error(exc)

@app.get("/api/market/news", tags=["Market Data"])
def market_news(
    symbol: Optional[str] = None,
    limit: int = Query(10, ge=1, le=50),
    ctx: CreditContext = Depends(require_credits("news_fetch"))
):
    try:
        news = market_data.get_news(symbol, limit=limit)
    except market_data.MarketDataError as exc:
        raise market_error(exc)
    ctx.deduct_after({"symbol": news["symbol"]})
    return news

@app.get("/api/stocks/financials/{symbol}", tags=["Market Data"])
def stock_financials(
    symbol: str,
    period: str = Query("annual", pattern="^(annual|quarter)$"),
    ctx: CreditContext = Depends(require_credits("financial_report"))
):
    try:
        financials = market_data.get_financials(symbol, period=period)
    except market_data.MarketDataError as exc:
        raise market_error(exc)
    ctx.deduct_after({"symbol": financials["symbol"], "period": period})
    return financials

# Credits
@app.get("/api/credits", tags=["Credits"])
def credits_summary(request: Request, user: Dict = Depends(get_current_user)):
    conn = get_db()
    try:
        reset_applied = check_and_reset_monthly_credits(user["id"], conn=conn)
        stats = get_credit_stats(user["id"], conn=conn)
        conn.commit()
    finally:
        conn.close()

    request.state.credit_balance = stats["current_balance"]
    return {
        "balance": stats["current_balance"],
        "lifetime_credits": stats["lifetime_credits"],
        "today_usage": stats["today_usage"],
        "month_usage": stats["month_usage"],
        "last_reset": stats["last_reset"],
        "monthly_reset_applied": reset_applied,
        "tier": user["tier"],
        "monthly_free_credits": monthly_free_credits(user["tier"]),
        "low_balance": stats["current_balance"] <= CREDIT_CONFIG["low_credit_threshold"],
        "credit_costs": CREDIT_COSTS,
    }

@app.get("/api/credits/history", tags=["Credits"])
def credits_history(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    type: Optional[str] = None,
    action: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    user: Dict = Depends(get_current_user)
):
    conn = get_db()
    try:
        return get_user_transaction_history(
            user["id"],
            conn=conn,
            limit=limit,
            offset=offset,
            credit_type=type,
            action=action,
            start_date=start_date,
            end_date=end_date
        )
    finally:
        conn.close()

@app.get("/api/credits/analytics", tags=["Credits"])
def credits_analytics(
    type: str = Query("analytics", pattern="^(analytics|history)$"),
    limit: int = Query(50, ge=1, le=200),
    user: Dict = Depends(get_current_user)
):
    conn = get_db()
    try:
        if type == "history":
            return {"transactions": get_credit_history(user["id"], conn=conn, limit=limit)}
        analytics = get_user_usage_analytics(user["id"], conn=conn)
    finally:
        conn.close()
    return analytics

@app.get("/api/credits/packages", tags=["Credits"])
def credit_packages():
    conn = get_db()
    try:
        packages = get_credit_packages(conn=conn)
    finally:
        conn.close()
    return {"packages": packages, "subscription_plans": SUBSCRIPTION_PLANS, "credit_costs": CREDIT_COSTS}

@app.post("/api/credits/promo", tags=["Credits"])
def credits_promo(payload: PromoRequest, request: Request, user: Dict = Depends(get_current_user)):
    conn = get_db()
    try:
        if payload.action == "validate":
            validation = validate_promo_code(
                payload.code,
                user["id"],
                conn=conn,
                package_id=payload.package_id,
                purchase_amount=payload.purchase_amount
            )
            return validation.model_dump()

        result = redeem_promo_code(payload.code, user["id"], conn=conn)
        if not result.success:
            conn.rollback()
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"code": "PROMO_INVALID", "message": result.message}
            )
        conn.commit()
    finally:
        conn.close()

    request.state.credit_balance = result.new_balance
    return result.model_dump()

@app.post("/api/credits/purchase", tags=["Credits"])
def credits_purchase(payload: PurchaseRequest, user: Dict = Depends(get_current_user)):
    if not is_development():
        raise HTTPException(
            status_code=status.HTTP_501_NOT_IMPLEMENTED,
            detail={
                "code": "PAYMENT_NOT_CONFIGURED",
                "message": "Direct purchases are disabled. Use /api/payments/nowpayments/create",
            }
        )

    conn = get_db()
    try:
        package = get_credit_package(payload.package_id, conn=conn)
        if not package:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={"code": "PACKAGE_NOT_FOUND", "message": "Credit package not found"}
            )
        result = add_credits(
            user["id"],
            package["credits"] + package["bonus_credits"],
            "purchase",
            f"Purchased {package['name']} package",
            conn=conn,
            metadata={"package_id": package["id"], "development": True}
        )
        conn.commit()
    finally:
        conn.close()
    return {"success": True, "new_balance": result.new_balance, "credits_added": result.amount_added}

@app.get("/api/rate-limit/status", tags=["Credits"])
def rate_limit_status(
    request: Request,
    endpoint: str = "/api/stocks/quote",
    user: Dict = Depends(get_current_user)
):
    conn = get_db()
    try:
        info = get_rate_limit_info(
            endpoint, conn=conn, tier=user["tier"], user_id=user["id"], ip_address=client_ip(request)
        )
    finally:
        conn.close()
    return {"endpoint": endpoint, "tier": user["tier"], "windows": {name: result.model_dump() for name, result in info.items()}}

# Payments
@app.post("/api/payments/nowpayments/create", tags=["Payments"])
def create_crypto_payment(
    payload: PaymentCreateRequest,
    user: Dict = Depends(get_current_user),
    client: NOWPaymentsClient = Depends(get_nowpayments_client)
):
    require_payments_client(client)
    conn = get_db()
    try:
        invoice = create_package_invoice(
            user["id"],
            payload.package_id,
            conn=conn,
            client=client,
            pay_currency=payload.pay_currency,
            promo_code=payload.promo_code
        )
        conn.commit()
    except (PackageNotFoundError, PromoCodeRejectedError, PaymentConfigurationError, NOWPaymentsError) as exc:
        raise payment_error(exc)
    finally:
        conn.close()
    return dict(invoice, success=True)

@app.post("/api/subscriptions/pay-crypto", tags=["Payments"])
def create_subscription_payment(
    payload: SubscriptionPaymentRequest,
    user: Dict = Depends(get_current_user),
    client: NOWPaymentsClient = Depends(get_nowpayments_client)
):
    require_payments_client(client)
    conn = get_db()
    try:
        invoice = create_subscription_invoice(
            user["id"],
            payload.plan_id,
            payload.billing_cycle,
            conn=conn,
            client=client,
            pay_currency=payload.pay_currency
        )
        conn.commit()
    except (PackageNotFoundError, PaymentConfigurationError, NOWPaymentsError) as exc:
        raise payment_error(exc)
    finally:
        conn.close()
    return dict(invoice, success=True)

@app.get("/api/subscriptions/current", tags=["Payments"])
def current_subscription(user: Dict = Depends(get_current_user)):
    conn = get_db()
    try:
        subscription = get_subscription(user["id"], conn=conn)
    finally:
        conn.close()
    return {"subscription": subscription, "plans": SUBSCRIPTION_PLANS}

@app.post("/api/payments/nowpayments/webhook", tags=["Payments"])
async def nowpayments_webhook(request: Request, client: NOWPaymentsClient = Depends(get_nowpayments_client)):
    payload_bytes = await request.body()
    payload_text = payload_bytes.decode("utf-8", errors="ignore")

    if client.ipn_secret:
        if not client.verify_ipn_signature(payload_bytes, request.headers.get(SIGNATURE_HEADER)):
            logger.warning("Rejected IPN with invalid signature")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail={"code": "INVALID_SIGNATURE", "message": "Invalid NOWPayments signature"}
            )
    elif not is_development():
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "WEBHOOK_NOT_CONFIGURED", "message": "IPN secret is not configured"}
        )

    try:
        ipn = json.loads(payload_text)
    except ValueError:
        ipn = None
    if not isinstance(ipn, dict) or not ipn.get("order_id"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "INVALID_PAYLOAD", "message": "IPN body must be a JSON object with order_id"}
        )

    external_payment_id = str(ipn["payment_id"]) if ipn.get("payment_id") is not None else None
    conn = get_db()
    try:
        try:
            result = process_ipn(ipn, conn=conn)
        except PaymentNotFoundError:
            conn.rollback()
            record_payment_event(
                conn=conn,
                order_id=ipn["order_id"],
                external_payment_id=external_payment_id,
                payment_status=ipn.get("payment_status"),
                outcome="not_found",
                payload_text=payload_text
            )
            conn.commit()
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={"code": "PAYMENT_NOT_FOUND", "message": "Payment not found"}
            )
        record_payment_event(
            conn=conn,
            order_id=ipn["order_id"],
            external_payment_id=external_payment_id,
            payment_status=ipn.get("payment_status"),
            outcome=result["outcome"],
            payload_text=payload_text
        )
        conn.commit()
    finally:
        conn.close()

    if result["outcome"] == "credit_failed":
        # NOWPayments only retries non-2xx callbacks; the claim is still open for that retry.
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": "CREDIT_FAILED", "message": "Payment recorded but credits could not be added"}
        )
    return dict(result, success=True)

@app.get("/api/payments/nowpayments/webhook", tags=["Payments"])
def nowpayments_webhook_status():
    return {"status": "Webhook endpoint active"}

@app.get("/api/payments/nowpayments/status/{payment_id}", tags=["Payments"])
def crypto_payment_status(
    payment_id: str,
    user: Dict = Depends(get_current_user),
    client: NOWPaymentsClient = Depends(get_nowpayments_client)
):
    conn = get_db()
    try:
        payment = get_payment_for_user(payment_id, user["id"], conn=conn)
    finally:
        conn.close()
    if not payment:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "PAYMENT_NOT_FOUND", "message": "Payment not found"}
        )

    live = None
    if payment["external_payment_id"] and client.configured:
        try:
            live = client.get_payment_status(payment["external_payment_id"])
        except NOWPaymentsError as exc:
            logger.warning("Live status lookup failed for %s: %s", payment["order_id"], exc)
    return describe_payment(payment, live)

@app.get("/api/payments/nowpayments/currencies", tags=["Payments"])
def crypto_currencies(client: NOWPaymentsClient = Depends(get_nowpayments_client)):
    return get_supported_currencies(client)

@app.get("/api/payments/history", tags=["Payments"])
def payments_history(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: Dict = Depends(get_current_user)
):
    conn = get_db()
    try:
        return get_payment_history(user["id"], conn=conn, page=page, limit=limit)
    finally:
        conn.close()

@app.get("/api/payments/nowpayments/readiness", tags=["Payments"])
def payments_readiness():
    return get_payments_readiness()

# AI reports
@app.post("/api/stock/{symbol}/report", status_code=status.HTTP_202_ACCEPTED, tags=["Reports"])
def start_stock_report(
    symbol: str,
    background_tasks: BackgroundTasks,
    payload: Optional[ReportRequest] = None,
    ctx: CreditContext = Depends(require_credits("ai_analysis", onboarding=True)),
    client: reports.OpenRouterClient = Depends(get_openrouter_client)
):
    try:
        symbol = market_data.normalize_symbol(symbol)
    except market_data.MarketDataError as exc:
        raise market_error(exc)
    if not client.configured:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "AI_NOT_CONFIGURED", "message": "AI service is not configured"}
        )

    report_type = (payload or ReportRequest()).type
    user_id = ctx.user["id"]
    conn = get_db()
    try:
        conn.execute("BEGIN IMMEDIATE")
        reports.recover_stale_reports(conn=conn, user_id=user_id)
        existing = reports.find_reusable_report(user_id, symbol, report_type, conn=conn)
        if existing:
            conn.commit()
            return dict(reports.serialize_report(existing), created=False)

        charge = ctx.deduct_after({"symbol": symbol, "report_type": report_type}, conn=conn)
        if not charge.success:
            conn.rollback()
            raise insufficient_credits_error("ai_analysis", charge.new_balance, ctx.cost, charge.message)
        report = reports.create_report(user_id, symbol, report_type, charge.credits_deducted, conn=conn)
        conn.commit()
    finally:
        conn.close()

    background_tasks.add_task(reports.generate_report, report["id"], client)
    logger.info("Queued %s report %s for %s", report_type, report["id"], symbol)
    return dict(reports.serialize_report(report), created=True)

@app.get("/api/ai-report/status", tags=["Reports"])
def ai_report_status(
    symbol: str,
    type: str = Query(..., pattern="^(retail|pro|personalized)$"),
    user: Dict = Depends(get_current_user)
):
    try:
        symbol = market_data.normalize_symbol(symbol)
    except market_data.MarketDataError as exc:
        raise market_error(exc)
    conn = get_db()
    try:
        result = reports.get_report_status(user["id"], symbol, type, conn=conn)
        conn.commit()
    finally:
        conn.close()
    return result

# Admin
@app.post("/api/admin/auth", tags=["Admin"])
def admin_login(payload: AdminLoginRequest):
    if not admin_configured():
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "ADMIN_NOT_CONFIGURED", "message": "Admin credentials are not configured"}
        )
    if not validate_admin_credentials(payload.username, payload.password):
        logger.warning("Failed admin login for %s", payload.username)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "ADMIN_INVALID", "message": "Invalid credentials"}
        )

    response = JSONResponse(content={"success": True, "message": "Logged in successfully"})
    response.set_cookie(
        ADMIN_COOKIE_NAME,
        create_admin_session(payload.username),
        max_age=int(ADMIN_SESSION_TTL.total_seconds()),
        httponly=True,
        secure=not is_development(),
        samesite="lax",
        path="/",
    )
    return response

@app.get("/api/admin/auth", tags=["Admin"])
def admin_session_status(request: Request):
    session = verify_admin_session(request.cookies.get(ADMIN_COOKIE_NAME))
    if not session:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "ADMIN_SESSION_REQUIRED", "message": "Not authenticated"}
        )
    return dict(session, authenticated=True)

@app.delete("/api/admin/auth", tags=["Admin"])
def admin_logout():
    response = JSONResponse(content={"success": True, "message": "Logged out successfully"})
    response.delete_cookie(ADMIN_COOKIE_NAME, path="/")
    return response

@app.get("/api/admin/credits", tags=["Admin"])
def admin_credits(
    action: str = "overview",
    user_id: Optional[int] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200)
):
    if action == "config":
        return {
            "credit_costs": CREDIT_COSTS,
            "rate_limits": RATE_LIMITS,
            "credit_config": CREDIT_CONFIG,
            "default_packages": DEFAULT_CREDIT_PACKAGES,
        }

    conn = get_db()
    try:
        if action == "overview":
            return get_credits_overview(conn=conn)
        if action == "users":
            return list_user_balances(conn=conn, page=page, limit=limit)
        if action == "transactions":
            if user_id is None:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail={"code": "USER_ID_REQUIRED", "message": "user_id is required"}
                )
            return {"transactions": get_user_transactions(user_id, conn=conn, page=page, limit=limit)}
    finally:
        conn.close()

    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"code": "INVALID_ACTION", "message": f"Unknown action: {action}"}
    )

@app.post("/api/admin/credits", tags=["Admin"])
def admin_credits_action(request: Request, payload: Dict[str, Any] = Body(...)):
    action = payload.get("action")
    admin_name = request.state.admin["username"]
    conn = get_db()
    try:
        if action == "adjust_credits":
            data = parse_body(AdjustCreditsRequest, payload)
            description = data.description or f"Admin adjustment: {data.amount:+d} credits"
            try:
                result = admin_adjust_credits(
                    data.user_id, data.amount, description, conn=conn, metadata={"admin": admin_name}
                )
            except UserNotFoundError as exc:
                raise HTTPException(
                    status_code=status.HTTP_404_NOT_FOUND,
                    detail={"code": "USER_NOT_FOUND", "message": str(exc)}
                )
            except InsufficientBalanceError as exc:
                raise HTTPException(
                    status_code=status.HTTP_409_CONFLICT,
                    detail={"code": "BALANCE_WOULD_GO_NEGATIVE", "message": str(exc)}
                )
            except LedgerError as exc:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail={"code": "INVALID_ADJUSTMENT", "message": str(exc)}
                )
            conn.commit()
            logger.info("Admin %s adjusted user %s by %d", admin_name, data.user_id, data.amount)
            return {
                "success": True,
                "new_balance": result.new_balance,
                "message": f"Credits adjusted by {result.amount_added}",
            }

        if action == "bulk_credits":
            data = parse_body(BulkCreditsRequest, payload)
            result = bulk_adjust_credits(data.user_ids, data.amount, data.description, conn=conn)
            conn.commit()
            return dict(result, success=True, message=f"Adjusted credits for {result['adjusted']} users")

        if action == "reset_monthly":
            data = parse_body(UserActionRequest, payload)
            try:
                result = reset_monthly_credits(data.user_id, conn=conn)
            except UserNotFoundError as exc:
                raise HTTPException(
                    status_code=status.HTTP_404_NOT_FOUND,
                    detail={"code": "USER_NOT_FOUND", "message": str(exc)}
                )
            conn.commit()
            return {"success": True, "new_balance": result.new_balance}

        if action == "create_package":
            data = parse_body(CreditPackageInput, payload)
            package = create_credit_package(data, conn=conn)
            conn.commit()
            return {"success": True, "package": package}

        if action == "update_package":
            data = parse_body(IdRequest, payload)
            updates = parse_body(CreditPackageUpdate, payload)
            package = update_credit_package(data.id, updates, conn=conn)
            if not package:
                raise HTTPException(
                    status_code=status.HTTP_404_NOT_FOUND,
                    detail={"code": "PACKAGE_NOT_FOUND", "message": "Credit package not found"}
                )
            conn.commit()
            return {"success": True, "package": package}
    finally:
        conn.close()

    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"code": "INVALID_ACTION", "message": f"Unknown action: {action}"}
    )

@app.delete("/api/admin/credits", tags=["Admin"])
def admin_delete_package(package_id: int):
    conn = get_db()
    try:
        deleted = delete_credit_package(package_id, conn=conn)
        conn.commit()
    finally:
        conn.close()
    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "PACKAGE_NOT_FOUND", "message": "Credit package not found"}
        )
    return {"success": True}

@app.get("/api/admin/analytics", tags=["Admin"])
def admin_analytics():
    conn = get_db()
    try:
        return get_system_analytics(conn=conn)
    finally:
        conn.close()

@app.get("/api/admin/stats", tags=["Admin"])
def admin_stats():
    conn = get_db()
    try:
        stats = get_admin_stats(conn=conn)
    finally:
        conn.close()
    return dict(stats, timestamp=datetime.utcnow().isoformat())

@app.get("/api/admin/rate-limits", tags=["Admin"])
def admin_rate_limits():
    conn = get_db()
    try:
        configs = list_rate_limit_configs(conn=conn)
    finally:
        conn.close()
    return {"configs": configs, "tier_defaults": RATE_LIMITS}

@app.post("/api/admin/rate-limits", tags=["Admin"])
def admin_rate_limits_action(payload: Dict[str, Any] = Body(...)):
    action = payload.get("action")
    conn = get_db()
    try:
        if action == "initialize_defaults":
            inserted = initialize_default_configs(conn=conn)
            conn.commit()
            return {"success": True, "inserted": inserted}

        if action == "create":
            config = create_rate_limit_config(parse_body(RateLimitConfigInput, payload), conn=conn)
            conn.commit()
            return {"success": True, "config": config}

        if action in ("update", "toggle"):
            config_id = parse_body(IdRequest, payload).id
            if action == "update":
                config = update_rate_limit_config(config_id, parse_body(RateLimitConfigInput, payload), conn=conn)
            else:
                config = toggle_rate_limit_config(config_id, conn=conn)
            if not config:
                raise HTTPException(
                    status_code=status.HTTP_404_NOT_FOUND,
                    detail={"code": "CONFIG_NOT_FOUND", "message": "Rate limit config not found"}
                )
            conn.commit()
            return {"success": True, "config": config}

        if action == "reset":
            user_id = payload.get("user_id")
            ip_address = payload.get("ip_address")
            if user_id is None and not ip_address:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail={"code": "IDENTIFIER_REQUIRED", "message": "user_id or ip_address is required"}
                )
            deleted = reset_rate_limit(conn=conn, user_id=user_id, ip_address=ip_address)
            conn.commit()
            return {"success": True, "deleted": deleted}
    finally:
        conn.close()

    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"code": "INVALID_ACTION", "message": f"Unknown action: {action}"}
    )

@app.delete("/api/admin/rate-limits", tags=["Admin"])
def admin_delete_rate_limit(id: int):
    conn = get_db()
    try:
        deleted = delete_rate_limit_config(id, conn=conn)
        conn.commit()
    finally:
        conn.close()
    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "CONFIG_NOT_FOUND", "message": "Rate limit config not found"}
        )
    return {"success": True}

@app.get("/api/admin/promo-codes", tags=["Admin"])
def admin_promo_codes():
    conn = get_db()
    try:
        codes = get_active_promo_codes(conn=conn)
        for code in codes:
            code["stats"] = get_promo_code_stats(code["id"], conn=conn)
    finally:
        conn.close()
    return {"promo_codes": codes}

@app.post("/api/admin/promo-codes", tags=["Admin"])
def admin_promo_codes_action(payload: Dict[str, Any] = Body(...)):
    action = payload.get("action", "create")
    conn = get_db()
    try:
        if action == "create":
            data = parse_body(PromoCodeCreate, payload)
            try:
                promo = create_promo_code(data, conn=conn)
            except sqlite3.IntegrityError:
                raise HTTPException(
                    status_code=status.HTTP_409_CONFLICT,
                    detail={"code": "PROMO_CODE_EXISTS", "message": "A promo code with this code already exists"}
                )
            conn.commit()
            return {"success": True, "promo_code": promo}

        if action in ("activate", "deactivate"):
            promo_id = parse_body(IdRequest, payload).id
            if not set_promo_code_active(promo_id, action == "activate", conn=conn):
                raise HTTPException(
                    status_code=status.HTTP_404_NOT_FOUND,
                    detail={"code": "PROMO_CODE_NOT_FOUND", "message": "Promo code not found"}
                )
            conn.commit()
            return {"success": True}

        if action == "stats":
            promo_id = parse_body(IdRequest, payload).id
            return {"stats": get_promo_code_stats(promo_id, conn=conn)}
    finally:
        conn.close()

    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"code": "INVALID_ACTION", "message": f"Unknown action: {action}"}
    )

# Cron
@app.get("/api/cron/cleanup", tags=["Cron"])
def cron_cleanup(authorization: Optional[str] = Header(None)):
    secret = os.getenv(CRON_SECRET_ENV, "")
    if not secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "CRON_NOT_CONFIGURED", "message": "CRON_SECRET is not configured"}
        )
    if not hmac.compare_digest((authorization or "").encode("utf-8"), f"Bearer {secret}".encode("utf-8")):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "CRON_UNAUTHORIZED", "message": "Invalid cron credentials"}
        )

    conn = get_db()
    try:
        result = run_cleanup(conn=conn)
    finally:
        conn.close()
    return dict(
        result,
        success=not result["errors"],
        message="Cleanup completed",
        timestamp=datetime.utcnow().isoformat()
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
