import json
import logging
import sqlite3
from datetime import datetime
from typing import Any, Dict, Optional

from deepterm_api import settings
from deepterm_api.credit_config import DEFAULT_CREDIT_PACKAGES

logger = logging.getLogger(__name__)

def get_db() -> sqlite3.Connection:
    conn = sqlite3.connect(settings.DB_PATH, timeout=30)
    conn.row_factory = sqlite3.Row
    return conn

def db_time(value: Optional[datetime] = None) -> str:
    """Timestamp text that sorts the same way as SQLite's CURRENT_TIMESTAMP."""
    return (value or datetime.utcnow()).isoformat(sep=" ", timespec="microseconds")

def parse_db_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(str(value).replace("T", " ").rstrip("Z"))

def dumps_metadata(metadata: Optional[Dict[str, Any]]) -> Optional[str]:
    if metadata is None:
        return None
    return json.dumps(metadata, default=str)

def loads_metadata(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except ValueError:
        return {}
    return value if isinstance(value, dict) else {}

def row_to_dict(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    record = dict(row)
    if "metadata" in record:
        record["metadata"] = loads_metadata(record["metadata"])
    return record

def init_db():
    """Initialize SQLite database with required tables."""
    conn = sqlite3.connect(settings.DB_PATH)
    cursor = conn.cursor()

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            email TEXT UNIQUE NOT NULL,
            password_hash TEXT,
            first_name TEXT,
            last_name TEXT,
            key_hash TEXT,
            tier TEXT DEFAULT 'free',
            onboarding_completed BOOLEAN DEFAULT 0,
            risk_tolerance TEXT,
            investment_horizon TEXT,
            investment_experience TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            last_login_at TIMESTAMP,
            is_active BOOLEAN DEFAULT 1
        )
    ''')

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS api_keys (
            key_hash TEXT PRIMARY KEY,
            user_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            tier TEXT DEFAULT 'free',
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            expires_at TIMESTAMP,
            is_active BOOLEAN DEFAULT 1,
            FOREIGN KEY (user_id) REFERENCES users(id)
        )
    ''')

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS user_credits (
            user_id INTEGER PRIMARY KEY,
            balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
            lifetime_credits INTEGER NOT NULL DEFAULT 0,
            free_credits_used INTEGER NOT NULL DEFAULT 0,
            last_free_credits_reset TIMESTAMP NOT NULL,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users(id)
        )
    ''')

    # Append-only; only the retention cron deletes from it
    cursor.execute('''
        CREATE TABLE IF NOT EXISTS credit_transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            type TEXT NOT NULL,
            action TEXT,
            amount INTEGER NOT NULL,
            balance_before INTEGER NOT NULL,
            balance_after INTEGER NOT NULL,
            description TEXT,
            metadata TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users(id)
        )
    ''')
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_credit_transactions_user ON credit_transactions (user_id, created_at)"
    )

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS credit_packages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            description TEXT,
            credits INTEGER NOT NULL,
            bonus_credits INTEGER NOT NULL DEFAULT 0,
            price REAL NOT NULL,
            currency TEXT DEFAULT 'USD',
            is_active BOOLEAN DEFAULT 1,
            is_popular BOOLEAN DEFAULT 0,
            sort_order INTEGER DEFAULT 0,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    ''')

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS rate_limit_tracking (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER,
            ip_address TEXT,
            endpoint TEXT NOT NULL,
            request_count INTEGER NOT NULL DEFAULT 1,
            window_start TIMESTAMP NOT NULL,
            window_end TIMESTAMP NOT NULL
        )
    ''')
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_rate_limit_user ON rate_limit_tracking (user_id, window_start)"
    )
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_rate_limit_ip ON rate_limit_tracking (ip_address, window_start)"
    )

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS rate_limit_config (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            endpoint TEXT NOT NULL,
            subscription_tier TEXT,
            requests_per_minute INTEGER NOT NULL,
            requests_per_hour INTEGER NOT NULL,
            requests_per_day INTEGER NOT NULL,
            burst_limit INTEGER DEFAULT 0,
            description TEXT,
            is_enabled BOOLEAN DEFAULT 1,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    ''')

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS promo_codes (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            code TEXT UNIQUE NOT NULL,
            description TEXT,
            type TEXT NOT NULL DEFAULT 'credits',
            credits_amount INTEGER DEFAULT 0,
            discount_percent REAL,
            discount_amount REAL,
            trial_days INTEGER,
            max_uses INTEGER,
            used_count INTEGER NOT NULL DEFAULT 0,
            max_uses_per_user INTEGER NOT NULL DEFAULT 1,
            min_purchase_amount REAL,
            applicable_packages TEXT,
            starts_at TIMESTAMP,
            expires_at TIMESTAMP,
            is_active BOOLEAN DEFAULT 1,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    ''')

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS promo_code_usage (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            promo_code_id INTEGER NOT NULL,
            user_id INTEGER NOT NULL,
            credits_awarded INTEGER DEFAULT 0,
            discount_applied REAL DEFAULT 0,
            purchase_id TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (promo_code_id) REFERENCES promo_codes(id)
        )
    ''')

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS crypto_payments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            order_id TEXT UNIQUE NOT NULL,
            package_id INTEGER,
            external_payment_id TEXT,
            invoice_id TEXT,
            invoice_url TEXT,
            status TEXT NOT NULL DEFAULT 'pending',
            price_amount REAL NOT NULL,
            price_currency TEXT DEFAULT 'usd',
            pay_amount REAL,
            pay_currency TEXT,
            pay_address TEXT,
            actually_paid REAL,
            credits_amount INTEGER NOT NULL DEFAULT 0,
            bonus_credits INTEGER NOT NULL DEFAULT 0,
            credits_added BOOLEAN NOT NULL DEFAULT 0,
            metadata TEXT,
            expires_at TIMESTAMP,
            paid_at TIMESTAMP,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users(id)
        )
    ''')

    # IPN audit trail
    cursor.execute('''
        CREATE TABLE IF NOT EXISTS payment_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            order_id TEXT,
            external_payment_id TEXT,
            payment_status TEXT,
            outcome TEXT,
            payload_json TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    ''')

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS user_subscriptions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER UNIQUE NOT NULL,
            plan_id TEXT NOT NULL,
            status TEXT NOT NULL,
            billing_cycle TEXT DEFAULT 'monthly',
            current_period_start TIMESTAMP,
            current_period_end TIMESTAMP,
            trial_ends_at TIMESTAMP,
            payment_method TEXT,
            last_payment_id INTEGER,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users(id)
        )
    ''')

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS ai_reports (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            symbol TEXT NOT NULL,
            company_name TEXT,
            report_type TEXT NOT NULL DEFAULT 'retail',
            status TEXT NOT NULL DEFAULT 'pending',
            content TEXT,
            error TEXT,
            credits_charged INTEGER NOT NULL DEFAULT 0,
            metadata TEXT,
            expires_at TIMESTAMP,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users(id)
        )
    ''')
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_ai_reports_lookup ON ai_reports (user_id, symbol, report_type, status)"
    )

    cursor.execute("SELECT COUNT(*) FROM credit_packages")
    if cursor.fetchone()[0] == 0:
        for position, package in enumerate(DEFAULT_CREDIT_PACKAGES):
            cursor.execute(
                '''
                INSERT INTO credit_packages (name, description, credits, bonus_credits, price, is_popular, sort_order)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ''',
                (
                    package["name"],
                    package["description"],
                    package["credits"],
                    package["bonus_credits"],
                    package["price"],
                    1 if package["is_popular"] else 0,
                    position,
                )
            )
        logger.info("Seeded %d default credit packages", len(DEFAULT_CREDIT_PACKAGES))

    conn.commit()
    conn.close()
