"""Static pricing tables: action costs, tier limits, packages and plans."""

from typing import Any, Dict, List, Optional

CREDIT_COSTS = {
    "stock_search": 2,
    "real_time_quote": 3,
    "technical_analysis": 10,
    "financial_report": 20,
    "ai_analysis": 25,
    "dcf_valuation": 35,
    "stock_comparison": 40,
    "portfolio_analysis": 50,
    "news_fetch": 5,
    "watchlist_alert": 2,
    "chat_message": 10,
}

RATE_LIMITS = {
    "free": {
        "requests_per_minute": 10,
        "requests_per_hour": 50,
        "requests_per_day": 200,
        "monthly_credits": 50,
    },
    "premium": {
        "requests_per_minute": 30,
        "requests_per_hour": 200,
        "requests_per_day": 1000,
        "monthly_credits": 500,
    },
    "professional": {
        "requests_per_minute": 60,
        "requests_per_hour": 500,
        "requests_per_day": 3000,
        "monthly_credits": 2000,
    },
    "enterprise": {
        "requests_per_minute": 120,
        "requests_per_hour": 1000,
        "requests_per_day": 10000,
        "monthly_credits": -1,
    },
}
SUPPORTED_TIERS = set(RATE_LIMITS.keys())
TIER_NAMES = {
    "free": "Free",
    "premium": "Premium",
    "professional": "Professional",
    "enterprise": "Enterprise",
}

RATE_LIMIT_WINDOWS = {
    "minute": 60,
    "hour": 60 * 60,
    "day": 24 * 60 * 60,
}

RATE_LIMIT_EXEMPT_ENDPOINTS = [
    "/api/webhooks",
    "/api/payments/nowpayments/webhook",
    "/api/admin",
    "/api/health",
    "/api/auth",
    "/api/cron",
]

CREDIT_CONFIG = {
    "initial_free_credits": 20,
    "monthly_free_credits": {
        "free": 50,
        "premium": 200,
        "professional": 800,
        "enterprise": 2000,
    },
    "low_credit_threshold": 20,
    "free_credit_expiry_days": 30,
    "max_credit_balance": 100000,
}

CREDIT_REQUIRED_ENDPOINTS = {
    "/api/stocks/search": "stock_search",
    "/api/stocks/quote": "real_time_quote",
    "/api/stocks/financials": "financial_report",
    "/api/market/news": "news_fetch",
    "/api/stock/{symbol}/report": "ai_analysis",
}

DEFAULT_CREDIT_PACKAGES: List[Dict[str, Any]] = [
    {"name": "Starter", "description": "100 credits to get started", "credits": 100, "bonus_credits": 0, "price": 4.99, "is_popular": False},
    {"name": "Basic", "description": "250 credits + 25 bonus", "credits": 250, "bonus_credits": 25, "price": 9.99, "is_popular": False},
    {"name": "Pro", "description": "600 credits + 100 bonus", "credits": 600, "bonus_credits": 100, "price": 19.99, "is_popular": True},
    {"name": "Business", "description": "1500 credits + 300 bonus", "credits": 1500, "bonus_credits": 300, "price": 39.99, "is_popular": False},
    {"name": "Enterprise", "description": "4000 credits + 1000 bonus", "credits": 4000, "bonus_credits": 1000, "price": 99.99, "is_popular": False},
]

SUBSCRIPTION_PLANS = {
    "free": {"name": "Free", "monthly_price": 0, "yearly_price": 0, "credits": 50, "trial_days": 0},
    "pro": {"name": "Pro", "monthly_price": 29, "yearly_price": 290, "credits": 500, "trial_days": 14},
    "premium": {"name": "Premium", "monthly_price": 59, "yearly_price": 590, "credits": 1500, "trial_days": 14},
    "enterprise": {"name": "Enterprise", "monthly_price": 199, "yearly_price": 1990, "credits": 10000, "trial_days": 14},
}

CREDIT_TRANSACTION_TYPES = {"purchase", "usage", "refund", "bonus", "monthly_reset", "admin_adjust", "promo"}
CREDIT_ADD_TYPES = CREDIT_TRANSACTION_TYPES - {"usage"}

def normalize_tier(tier: Optional[str], default: str = "free") -> str:
    normalized = str(tier or default).strip().lower()
    return normalized if normalized in SUPPORTED_TIERS else default

def get_credit_cost(action: str) -> int:
    try:
        return CREDIT_COSTS[action]
    except KeyError:
        raise ValueError(f"Unknown credit action: {action}")

def monthly_free_credits(tier: Optional[str]) -> int:
    return CREDIT_CONFIG["monthly_free_credits"][normalize_tier(tier)]

def tier_limits(tier: Optional[str]) -> Dict[str, int]:
    return RATE_LIMITS[normalize_tier(tier)]

def recommended_package(estimated_monthly_usage: int) -> Optional[str]:
    if estimated_monthly_usage <= 0:
        return None
    if estimated_monthly_usage < 100:
        return "Starter"
    if estimated_monthly_usage < 300:
        return "Basic"
    if estimated_monthly_usage < 700:
        return "Pro"
    if estimated_monthly_usage < 1800:
        return "Business"
    return "Enterprise"
