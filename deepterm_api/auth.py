import hashlib
import hmac
import logging
import os
import secrets
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from fastapi import Depends, Header, HTTPException, Request, status
from jose import JWTError, jwt

from deepterm_api.credit_config import TIER_NAMES, normalize_tier
from deepterm_api.database import db_time, get_db
from deepterm_api.settings import ADMIN_ENV

logger = logging.getLogger(__name__)

PASSWORD_ITERATIONS = 120000
ADMIN_COOKIE_NAME = "admin_session"
ADMIN_SESSION_TTL = timedelta(hours=24)
ADMIN_JWT_ALGORITHM = "HS256"

def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode()).hexdigest()

def generate_api_key(tier: str) -> Tuple[str, str]:
    normalized = normalize_tier(tier)
    api_key = f"dt-{normalized}-{secrets.token_urlsafe(24)}"
    return api_key, hash_api_key(api_key)

def hash_password(password: str) -> str:
    salt = secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, PASSWORD_ITERATIONS)
    return f"pbkdf2_sha256${salt.hex()}${digest.hex()}"

def verify_password(password: str, stored_hash: str) -> bool:
    try:
        scheme, salt_hex, digest_hex = stored_hash.split("$", 2)
    except ValueError:
        return False
    if scheme != "pbkdf2_sha256":
        return False
    try:
        salt = bytes.fromhex(salt_hex)
        expected = bytes.fromhex(digest_hex)
    except ValueError:
        return False
    computed = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, PASSWORD_ITERATIONS)
    return hmac.compare_digest(expected, computed)

def api_key_name(email: str, tier: str) -> str:
    return f"{email} ({TIER_NAMES.get(tier, tier.title())})"

def rotate_api_key(
    *,
    user_id: int,
    name: str,
    tier: str,
    conn: sqlite3.Connection,
    existing_key_hash: Optional[str] = None
) -> Dict[str, Any]:
    """Deactivate the current key (if any) and issue a fresh one."""
    cursor = conn.cursor()
    normalized_tier = normalize_tier(tier)
    if existing_key_hash:
        cursor.execute("UPDATE api_keys SET is_active = 0 WHERE key_hash = ?", (existing_key_hash,))

    api_key, key_hash = generate_api_key(normalized_tier)
    cursor.execute(
        '''
        INSERT INTO api_keys (key_hash, user_id, name, tier, is_active, created_at)
        VALUES (?, ?, ?, ?, 1, ?)
        ''',
        (key_hash, user_id, name, normalized_tier, db_time())
    )
    cursor.execute(
        "UPDATE users SET key_hash = ?, updated_at = ? WHERE id = ?",
        (key_hash, db_time(), user_id)
    )
    cursor.execute("SELECT * FROM api_keys WHERE key_hash = ?", (key_hash,))
    return {"key": api_key, "record": dict(cursor.fetchone())}

def create_user(
    *,
    email: str,
    password: str,
    conn: sqlite3.Connection,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None
) -> Dict[str, Any]:
    now_text = db_time()
    cursor = conn.cursor()
    cursor.execute(
        '''
        INSERT INTO users (email, password_hash, first_name, last_name, tier, created_at, updated_at, is_active)
        VALUES (?, ?, ?, ?, 'free', ?, ?, 1)
        ''',
        (email, hash_password(password), first_name, last_name, now_text, now_text)
    )
    cursor.execute("SELECT * FROM users WHERE id = ?", (cursor.lastrowid,))
    return dict(cursor.fetchone())

def get_user_by_email(email: str, *, conn: sqlite3.Connection) -> Optional[Dict[str, Any]]:
    cursor = conn.cursor()
    cursor.execute("SELECT * FROM users WHERE lower(email) = lower(?) AND is_active = 1", (email,))
    row = cursor.fetchone()
    return dict(row) if row else None

def verify_api_key(api_key: str) -> Optional[Dict[str, Any]]:
    """Resolve an API key to its active user, with the key's tier and hash attached."""
    if not api_key:
        return None

    conn = get_db()
    try:
        cursor = conn.cursor()
        cursor.execute(
            '''
            SELECT u.*, k.tier AS key_tier, k.key_hash AS active_key_hash, k.expires_at AS key_expires_at
            FROM api_keys k
            JOIN users u ON u.id = k.user_id
            WHERE k.key_hash = ? AND k.is_active = 1 AND u.is_active = 1
              AND (k.expires_at IS NULL OR k.expires_at > ?)
            ''',
            (hash_api_key(api_key), db_time())
        )
        row = cursor.fetchone()
    finally:
        conn.close()

    if not row:
        return None
    user = dict(row)
    user["tier"] = normalize_tier(user.pop("key_tier") or user.get("tier"))
    user["key_hash"] = user.pop("active_key_hash")
    user["onboarding_completed"] = bool(user.get("onboarding_completed"))
    user.pop("password_hash", None)
    return user

def get_current_user(request: Request, x_api_key: Optional[str] = Header(None)) -> Dict[str, Any]:
    """Dependency to resolve the caller from the X-API-Key header."""
    if not x_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "AUTH_MISSING", "message": "API key required in X-API-Key header"}
        )

    user = verify_api_key(x_api_key)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "AUTH_INVALID", "message": "Invalid or expired API key"}
        )
    request.state.user = user
    return user

def require_onboarding(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    if not user.get("onboarding_completed"):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "code": "ONBOARDING_REQUIRED",
                "message": "Complete your risk profile before using the dashboard",
                "onboarding_url": "/onboarding",
            }
        )
    return user

# Admin sessions

def admin_configured() -> bool:
    return all(os.getenv(ADMIN_ENV[name]) for name in ("username", "password", "jwt_secret"))

def validate_admin_credentials(username: str, password: str) -> bool:
    expected_username = os.getenv(ADMIN_ENV["username"], "")
    expected_password = os.getenv(ADMIN_ENV["password"], "")
    if not (expected_username and expected_password):
        return False
    username_ok = hmac.compare_digest(username.encode("utf-8"), expected_username.encode("utf-8"))
    password_ok = hmac.compare_digest(password.encode("utf-8"), expected_password.encode("utf-8"))
    return username_ok and password_ok

def create_admin_session(username: str) -> str:
    now = datetime.now(timezone.utc)
    claims = {
        "sub": username,
        "username": username,
        "logged_in_at": int(now.timestamp() * 1000),
        "iat": now,
        "exp": now + ADMIN_SESSION_TTL,
    }
    return jwt.encode(claims, os.getenv(ADMIN_ENV["jwt_secret"], ""), algorithm=ADMIN_JWT_ALGORITHM)

def verify_admin_session(token: Optional[str]) -> Optional[Dict[str, Any]]:
    secret = os.getenv(ADMIN_ENV["jwt_secret"], "")
    if not token or not secret:
        return None
    try:
        payload = jwt.decode(token, secret, algorithms=[ADMIN_JWT_ALGORITHM])
    except JWTError:
        return None
    username = payload.get("username") or payload.get("sub")
    if not username:
        return None
    return {"username": username, "logged_in_at": payload.get("logged_in_at")}
