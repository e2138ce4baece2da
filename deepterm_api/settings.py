import logging
import os
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv

PACKAGE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = PACKAGE_DIR.parent

# .env.local wins over .env; real environment wins over both.
load_dotenv(PROJECT_ROOT / ".env.local")
load_dotenv(PROJECT_ROOT / ".env")

def resolve_data_dir() -> Path:
    """Resolve the directory holding the SQLite database."""
    override = os.getenv("DEEPTERM_DATA_DIR")
    if override:
        return Path(override).expanduser().resolve()
    return PACKAGE_DIR / "data"

DATA_DIR = resolve_data_dir()
DATA_DIR.mkdir(parents=True, exist_ok=True)
DB_PATH = DATA_DIR / "deepterm_api.db"

NOWPAYMENTS_ENV = {
    "api_key": "NOWPAYMENTS_API_KEY",
    "ipn_secret": "NOWPAYMENTS_IPN_SECRET",
    "sandbox": "NOWPAYMENTS_SANDBOX",
}

ADMIN_ENV = {
    "username": "ADMIN_USERNAME",
    "password": "ADMIN_PASSWORD",
    "jwt_secret": "ADMIN_JWT_SECRET",
}

OPENROUTER_ENV = {
    "api_key": "OPENROUTER_API_KEY",
    "model": "OPENROUTER_MODEL",
}

FMP_ENV = {
    "api_key": "FMP_API_KEY",
}

APP_URL_ENV_NAMES = ["PRODUCTION_URL", "NEXT_PUBLIC_APP_URL", "APP_URL"]
CRON_SECRET_ENV = "CRON_SECRET"

DEFAULT_OPENROUTER_MODEL = "anthropic/claude-3.5-sonnet"

def env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}

def is_development() -> bool:
    return os.getenv("DEEPTERM_ENV", "production").strip().lower() == "development"

def is_local_url(url: str) -> bool:
    host = (urlparse(url).hostname or "").lower()
    return host in {"localhost", "127.0.0.1", "0.0.0.0", "::1"} or not host

def public_app_url() -> Optional[str]:
    """First configured app URL that NOWPayments can reach, without trailing slash."""
    for name in APP_URL_ENV_NAMES:
        value = os.getenv(name, "").strip()
        if value and value.startswith(("http://", "https://")) and not is_local_url(value):
            return value.rstrip("/")
    return None

def cors_origins() -> List[str]:
    raw = os.getenv("DEEPTERM_CORS_ORIGINS", "*")
    return [origin.strip() for origin in raw.split(",") if origin.strip()]

def configure_logging() -> None:
    level_name = os.getenv("DEEPTERM_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
