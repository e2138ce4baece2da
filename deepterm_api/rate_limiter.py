"""
Sliding-window request limiter.

Each allowed request is one row in ``rate_limit_tracking``. A request is
checked against the minute, hour and day windows in that order and the first
exhausted window denies it. Limits come from the most specific enabled
``rate_limit_config`` row for the endpoint, falling back to the caller's
tier in ``RATE_LIMITS``. Requests under a config row are counted per row
scope; tier defaults count every non-exempt request of the caller.
"""

import logging
import math
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from deepterm_api.credit_config import (
    RATE_LIMIT_EXEMPT_ENDPOINTS,
    RATE_LIMIT_WINDOWS,
    normalize_tier,
    tier_limits,
)
from deepterm_api.database import db_time, parse_db_time

logger = logging.getLogger(__name__)

WINDOW_ORDER = ["minute", "hour", "day"]
WINDOW_COLUMNS = {
    "minute": "requests_per_minute",
    "hour": "requests_per_hour",
    "day": "requests_per_day",
}

DEFAULT_RATE_LIMIT_CONFIGS = [
    {"endpoint": "/api/chat", "tier": None, "rpm": 20, "rph": 200, "rpd": 1000, "burst": 5, "desc": "AI Chat API"},
    {"endpoint": "/api/stocks/quote", "tier": None, "rpm": 60, "rph": 1000, "rpd": 10000, "burst": 10, "desc": "Stock Quotes"},
    {"endpoint": "/api/stocks/search", "tier": None, "rpm": 30, "rph": 500, "rpd": 5000, "burst": 5, "desc": "Stock Search"},
    {"endpoint": "/api/market/*", "tier": None, "rpm": 60, "rph": 1000, "rpd": 10000, "burst": 10, "desc": "Market Data"},
    {"endpoint": "/api/stocks/historical/*", "tier": None, "rpm": 30, "rph": 300, "rpd": 3000, "burst": 5, "desc": "Historical Data"},
    {"endpoint": "/api/chat", "tier": "free", "rpm": 10, "rph": 50, "rpd": 200, "burst": 3, "desc": "AI Chat - Free"},
    {"endpoint": "/api/stocks/quote", "tier": "free", "rpm": 30, "rph": 300, "rpd": 3000, "burst": 5, "desc": "Quotes - Free"},
    {"endpoint": "/api/chat", "tier": "premium", "rpm": 30, "rph": 300, "rpd": 2000, "burst": 10, "desc": "AI Chat - Premium"},
    {"endpoint": "/api/stocks/quote", "tier": "premium", "rpm": 100, "rph": 2000, "rpd": 20000, "burst": 20, "desc": "Quotes - Premium"},
    {"endpoint": "/api/chat", "tier": "professional", "rpm": 60, "rph": 600, "rpd": 5000, "burst": 20, "desc": "AI Chat - Pro"},
    {"endpoint": "/api/stocks/quote", "tier": "professional", "rpm": 200, "rph": 5000, "rpd": 50000, "burst": 50, "desc": "Quotes - Pro"},
]

TIER_PATTERN = "^(free|premium|professional|enterprise)$"

class RateLimitResult(BaseModel):
    allowed: bool
    limit: int
    remaining: int
    reset_at: datetime
    retry_after: Optional[int] = None
    window: Optional[str] = None

class RateLimitConfigInput(BaseModel):
    endpoint: str = Field(min_length=1)
    subscription_tier: Optional[str] = Field(default=None, pattern=TIER_PATTERN)
    requests_per_minute: int = Field(ge=1)
    requests_per_hour: int = Field(ge=1)
    requests_per_day: int = Field(ge=1)
    burst_limit: int = Field(default=0, ge=0)
    description: Optional[str] = None
    is_enabled: bool = True

def is_exempt(endpoint: str) -> bool:
    return any(endpoint.startswith(prefix) for prefix in RATE_LIMIT_EXEMPT_ENDPOINTS)

def _match_pattern(pattern: str, endpoint: str) -> Optional[Tuple[int, int, str]]:
    """Return (is_plain, prefix_length, prefix) when ``pattern`` covers ``endpoint``."""
    wildcard = pattern.endswith("/*")
    prefix = pattern[:-2] if wildcard else pattern.rstrip("/")
    if endpoint == prefix or endpoint.startswith(prefix + "/"):
        return (0 if wildcard else 1, len(prefix), prefix)
    return None

def resolve_limits(
    endpoint: str,
    tier: Optional[str],
    *,
    conn: sqlite3.Connection
) -> Tuple[Dict[str, int], Optional[str]]:
    """Limits for a request and the endpoint prefix they are scoped to (None for tier defaults)."""
    normalized_tier = normalize_tier(tier)
    cursor = conn.cursor()
    cursor.execute("SELECT * FROM rate_limit_config WHERE is_enabled = 1")
    best_rank = None
    best_row = None
    best_prefix = None
    for row in cursor.fetchall():
        row_tier = row["subscription_tier"]
        if row_tier and row_tier != normalized_tier:
            continue
        match = _match_pattern(row["endpoint"], endpoint)
        if not match:
            continue
        is_plain, length, prefix = match
        rank = (is_plain, length, 1 if row_tier else 0)
        if best_rank is None or rank > best_rank:
            best_rank, best_row, best_prefix = rank, row, prefix

    if best_row is None:
        defaults = tier_limits(normalized_tier)
        return {window: defaults[WINDOW_COLUMNS[window]] for window in WINDOW_ORDER}, None
    return {window: int(best_row[WINDOW_COLUMNS[window]]) for window in WINDOW_ORDER}, best_prefix

def _identifier_clause(user_id: Optional[int], ip_address: Optional[str]) -> Tuple[str, List[Any]]:
    if user_id is not None:
        return "user_id = ?", [user_id]
    return "user_id IS NULL AND ip_address = ?", [ip_address or "unknown"]

def check_window(
    cursor: sqlite3.Cursor,
    window: str,
    limit: int,
    *,
    now: datetime,
    user_id: Optional[int] = None,
    ip_address: Optional[str] = None,
    scope: Optional[str] = None
) -> RateLimitResult:
    window_seconds = RATE_LIMIT_WINDOWS[window]
    window_start = now - timedelta(seconds=window_seconds)
    reset_at = now + timedelta(seconds=window_seconds)

    clause, params = _identifier_clause(user_id, ip_address)
    query = f'''
        SELECT COALESCE(SUM(request_count), 0) AS total, MIN(window_start) AS oldest
        FROM rate_limit_tracking
        WHERE {clause} AND window_start >= ? AND window_start <= ?
    '''
    params.extend([db_time(window_start), db_time(now)])
    if scope:
        query += " AND (endpoint = ? OR substr(endpoint, 1, ?) = ?)"
        params.extend([scope, len(scope) + 1, scope + "/"])
    cursor.execute(query, params)
    row = cursor.fetchone()
    current = int(row["total"])
    remaining = limit - current

    if remaining <= 0:
        oldest = parse_db_time(row["oldest"])
        if oldest:
            retry_after = math.ceil((oldest + timedelta(seconds=window_seconds) - now).total_seconds())
        else:
            retry_after = window_seconds
        return RateLimitResult(
            allowed=False,
            limit=limit,
            remaining=0,
            reset_at=reset_at,
            retry_after=max(retry_after, 1),
            window=window,
        )
    return RateLimitResult(allowed=True, limit=limit, remaining=remaining, reset_at=reset_at, window=window)

def record_request(
    cursor: sqlite3.Cursor,
    endpoint: str,
    *,
    now: datetime,
    user_id: Optional[int] = None,
    ip_address: Optional[str] = None
) -> None:
    cursor.execute(
        '''
        INSERT INTO rate_limit_tracking (user_id, ip_address, endpoint, request_count, window_start, window_end)
        VALUES (?, ?, ?, 1, ?, ?)
        ''',
        (user_id, ip_address if user_id is None else None, endpoint, db_time(now),
         db_time(now + timedelta(seconds=RATE_LIMIT_WINDOWS["minute"])))
    )

def check_rate_limit(
    endpoint: str,
    *,
    conn: sqlite3.Connection,
    tier: Optional[str] = None,
    user_id: Optional[int] = None,
    ip_address: Optional[str] = None
) -> RateLimitResult:
    """Check and record one request. The caller commits."""
    now = datetime.utcnow()
    if is_exempt(endpoint):
        return RateLimitResult(allowed=True, limit=-1, remaining=-1, reset_at=now)

    # Serialize check-then-record across workers.
    if not conn.in_transaction:
        conn.execute("BEGIN IMMEDIATE")

    limits, scope = resolve_limits(endpoint, tier, conn=conn)
    cursor = conn.cursor()
    results = []
    for window in WINDOW_ORDER:
        result = check_window(
            cursor, window, limits[window],
            now=now, user_id=user_id, ip_address=ip_address, scope=scope
        )
        if not result.allowed:
            logger.info(
                "Rate limit hit on %s window for %s (endpoint %s)",
                window, f"user {user_id}" if user_id is not None else ip_address, endpoint
            )
            return result
        results.append(result)

    record_request(cursor, endpoint, now=now, user_id=user_id, ip_address=ip_address)
    return RateLimitResult(
        allowed=True,
        limit=limits["minute"],
        remaining=max(0, min(result.remaining - 1 for result in results)),
        reset_at=results[0].reset_at,
        window="minute",
    )

def get_rate_limit_info(
    endpoint: str,
    *,
    conn: sqlite3.Connection,
    tier: Optional[str] = None,
    user_id: Optional[int] = None,
    ip_address: Optional[str] = None
) -> Dict[str, RateLimitResult]:
    now = datetime.utcnow()
    limits, scope = resolve_limits(endpoint, tier, conn=conn)
    cursor = conn.cursor()
    return {
        window: check_window(
            cursor, window, limits[window],
            now=now, user_id=user_id, ip_address=ip_address, scope=scope
        )
        for window in WINDOW_ORDER
    }

def cleanup_rate_limit_records(*, conn: sqlite3.Connection, older_than: timedelta = timedelta(days=1)) -> int:
    cutoff = datetime.utcnow() - older_than
    cursor = conn.cursor()
    cursor.execute("DELETE FROM rate_limit_tracking WHERE window_end <= ?", (db_time(cutoff),))
    return cursor.rowcount

def reset_rate_limit(
    *,
    conn: sqlite3.Connection,
    user_id: Optional[int] = None,
    ip_address: Optional[str] = None
) -> int:
    cursor = conn.cursor()
    if user_id is not None:
        cursor.execute("DELETE FROM rate_limit_tracking WHERE user_id = ?", (user_id,))
    elif ip_address:
        cursor.execute("DELETE FROM rate_limit_tracking WHERE ip_address = ?", (ip_address,))
    else:
        return 0
    return cursor.rowcount

# Admin configuration

def _config_row(row: sqlite3.Row) -> Dict[str, Any]:
    record = dict(row)
    record["is_enabled"] = bool(record["is_enabled"])
    return record

def list_rate_limit_configs(*, conn: sqlite3.Connection) -> List[Dict[str, Any]]:
    cursor = conn.cursor()
    cursor.execute("SELECT * FROM rate_limit_config ORDER BY endpoint, subscription_tier")
    return [_config_row(row) for row in cursor.fetchall()]

def get_rate_limit_config(config_id: int, *, conn: sqlite3.Connection) -> Optional[Dict[str, Any]]:
    cursor = conn.cursor()
    cursor.execute("SELECT * FROM rate_limit_config WHERE id = ?", (config_id,))
    row = cursor.fetchone()
    return _config_row(row) if row else None

def initialize_default_configs(*, conn: sqlite3.Connection) -> int:
    cursor = conn.cursor()
    inserted = 0
    for default in DEFAULT_RATE_LIMIT_CONFIGS:
        cursor.execute(
            "SELECT 1 FROM rate_limit_config WHERE endpoint = ? AND subscription_tier IS ?",
            (default["endpoint"], default["tier"])
        )
        if cursor.fetchone():
            continue
        cursor.execute(
            '''
            INSERT INTO rate_limit_config
                (endpoint, subscription_tier, requests_per_minute, requests_per_hour, requests_per_day, burst_limit, description)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ''',
            (default["endpoint"], default["tier"], default["rpm"], default["rph"], default["rpd"],
             default["burst"], default["desc"])
        )
        inserted += 1
    return inserted

def create_rate_limit_config(data: RateLimitConfigInput, *, conn: sqlite3.Connection) -> Dict[str, Any]:
    cursor = conn.cursor()
    cursor.execute(
        '''
        INSERT INTO rate_limit_config
            (endpoint, subscription_tier, requests_per_minute, requests_per_hour, requests_per_day,
             burst_limit, description, is_enabled)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ''',
        (data.endpoint, data.subscription_tier, data.requests_per_minute, data.requests_per_hour,
         data.requests_per_day, data.burst_limit, data.description, 1 if data.is_enabled else 0)
    )
    return get_rate_limit_config(cursor.lastrowid, conn=conn)

def update_rate_limit_config(
    config_id: int,
    data: RateLimitConfigInput,
    *,
    conn: sqlite3.Connection
) -> Optional[Dict[str, Any]]:
    cursor = conn.cursor()
    cursor.execute(
        '''
        UPDATE rate_limit_config
        SET endpoint = ?, subscription_tier = ?, requests_per_minute = ?, requests_per_hour = ?,
            requests_per_day = ?, burst_limit = ?, description = ?, is_enabled = ?, updated_at = ?
        WHERE id = ?
        ''',
        (data.endpoint, data.subscription_tier, data.requests_per_minute, data.requests_per_hour,
         data.requests_per_day, data.burst_limit, data.description, 1 if data.is_enabled else 0,
         db_time(), config_id)
    )
    if cursor.rowcount == 0:
        return None
    return get_rate_limit_config(config_id, conn=conn)

def toggle_rate_limit_config(config_id: int, *, conn: sqlite3.Connection) -> Optional[Dict[str, Any]]:
    cursor = conn.cursor()
    cursor.execute(
        "UPDATE rate_limit_config SET is_enabled = 1 - is_enabled, updated_at = ? WHERE id = ?",
        (db_time(), config_id)
    )
    if cursor.rowcount == 0:
        return None
    return get_rate_limit_config(config_id, conn=conn)

def delete_rate_limit_config(config_id: int, *, conn: sqlite3.Connection) -> bool:
    cursor = conn.cursor()
    cursor.execute("DELETE FROM rate_limit_config WHERE id = ?", (config_id,))
    return cursor.rowcount > 0
