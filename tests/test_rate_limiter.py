from datetime import datetime, timedelta

import pytest

from deepterm_api import market_data
from deepterm_api.database import db_time
from deepterm_api.rate_limiter import (
    RateLimitConfigInput,
    check_rate_limit,
    cleanup_rate_limit_records,
    create_rate_limit_config,
    delete_rate_limit_config,
    reset_rate_limit,
    resolve_limits,
    toggle_rate_limit_config,
)


@pytest.fixture
def scoped_config(db):
    created = []

    def _create(endpoint, rpm, tier=None):
        config = create_rate_limit_config(
            RateLimitConfigInput(
                endpoint=endpoint,
                subscription_tier=tier,
                requests_per_minute=rpm,
                requests_per_hour=100,
                requests_per_day=1000,
            ),
            conn=db,
        )
        db.commit()
        created.append(config["id"])
        return config

    yield _create

    for config_id in created:
        delete_rate_limit_config(config_id, conn=db)
    db.commit()


def _check(db, endpoint, **kwargs):
    result = check_rate_limit(endpoint, conn=db, **kwargs)
    db.commit()
    return result


def test_exempt_endpoints_are_not_counted(db, make_user):
    user = make_user()
    for _ in range(20):
        result = _check(db, "/api/auth/login", tier="free", user_id=user["id"])
        assert result.allowed is True
        assert result.limit == -1
    count = db.execute("SELECT COUNT(*) FROM rate_limit_tracking WHERE user_id = ?", (user["id"],)).fetchone()[0]
    assert count == 0


def test_tier_default_minute_window_denies_eleventh_request(db, make_user):
    user = make_user()
    for index in range(10):
        result = _check(db, f"/api/pytest/tier-default/{index % 3}", tier="free", user_id=user["id"])
        assert result.allowed is True
    assert result.remaining == 0

    denied = _check(db, "/api/pytest/tier-default/other", tier="free", user_id=user["id"])
    assert denied.allowed is False
    assert denied.window == "minute"
    assert denied.limit == 10
    assert 1 <= denied.retry_after <= 60


def test_denied_requests_are_not_recorded(db, make_user):
    user = make_user()
    for _ in range(11):
        _check(db, "/api/pytest/denied", tier="free", user_id=user["id"])
    count = db.execute("SELECT COUNT(*) FROM rate_limit_tracking WHERE user_id = ?", (user["id"],)).fetchone()[0]
    assert count == 10


def test_anonymous_callers_are_limited_by_ip(db):
    for _ in range(10):
        assert _check(db, "/api/pytest/anon", ip_address="203.0.113.10").allowed is True
    assert _check(db, "/api/pytest/anon", ip_address="203.0.113.10").allowed is False
    assert _check(db, "/api/pytest/anon", ip_address="203.0.113.11").allowed is True


def test_config_row_overrides_tier_default_and_scopes_counting(db, make_user, scoped_config):
    scoped_config("/api/pytest/scoped/*", rpm=2)
    user = make_user(tier="enterprise")

    assert _check(db, "/api/pytest/scoped/a", tier="enterprise", user_id=user["id"]).allowed is True
    assert _check(db, "/api/pytest/scoped/b", tier="enterprise", user_id=user["id"]).allowed is True
    denied = _check(db, "/api/pytest/scoped/a", tier="enterprise", user_id=user["id"])
    assert denied.allowed is False
    assert denied.limit == 2

    # Requests outside the row's prefix use the tier default.
    other = _check(db, "/api/pytest/elsewhere", tier="enterprise", user_id=user["id"])
    assert other.allowed is True
    assert other.limit == 120


def test_most_specific_config_wins(db, scoped_config):
    scoped_config("/api/pytest/specific/*", rpm=5)
    scoped_config("/api/pytest/specific/exact", rpm=3)
    scoped_config("/api/pytest/specific/exact", rpm=7, tier="premium")

    limits, scope = resolve_limits("/api/pytest/specific/exact", "premium", conn=db)
    assert limits["minute"] == 7
    assert scope == "/api/pytest/specific/exact"

    limits, _ = resolve_limits("/api/pytest/specific/exact", "free", conn=db)
    assert limits["minute"] == 3

    limits, scope = resolve_limits("/api/pytest/specific/other", "free", conn=db)
    assert limits["minute"] == 5
    assert scope == "/api/pytest/specific"


def test_disabled_config_is_ignored(db, scoped_config):
    config = scoped_config("/api/pytest/toggled", rpm=1)
    toggled = toggle_rate_limit_config(config["id"], conn=db)
    db.commit()
    assert toggled["is_enabled"] is False

    limits, scope = resolve_limits("/api/pytest/toggled", "free", conn=db)
    assert scope is None
    assert limits["minute"] == 10


def test_cleanup_and_reset(db, make_user):
    user = make_user()
    old = datetime.utcnow() - timedelta(days=10)
    db.execute(
        '''
        INSERT INTO rate_limit_tracking (user_id, endpoint, request_count, window_start, window_end)
        VALUES (?, '/api/pytest/old', 1, ?, ?)
        ''',
        (user["id"], db_time(old), db_time(old + timedelta(minutes=1))),
    )
    _check(db, "/api/pytest/fresh", tier="free", user_id=user["id"])

    deleted = cleanup_rate_limit_records(conn=db, older_than=timedelta(days=7))
    db.commit()
    assert deleted >= 1
    remaining = db.execute("SELECT endpoint FROM rate_limit_tracking WHERE user_id = ?", (user["id"],)).fetchall()
    assert [row["endpoint"] for row in remaining] == ["/api/pytest/fresh"]

    assert reset_rate_limit(conn=db, user_id=user["id"]) == 1
    db.commit()
    assert reset_rate_limit(conn=db) == 0


def test_api_returns_429_with_rate_limit_headers(client, make_user, scoped_config, monkeypatch):
    monkeypatch.setattr(market_data, "search_symbols", lambda query, limit=10: [{"symbol": "AAPL"}])
    scoped_config("/api/stocks/search", rpm=2, tier="free")
    user = make_user()

    first = client.get("/api/stocks/search?q=apple", headers=user["headers"])
    assert first.status_code == 200
    assert first.headers["X-RateLimit-Limit"] == "2"
    assert first.headers["X-RateLimit-Remaining"] == "1"
    assert client.get("/api/stocks/search?q=apple", headers=user["headers"]).status_code == 200

    response = client.get("/api/stocks/search?q=apple", headers=user["headers"])
    assert response.status_code == 429
    detail = response.json()["detail"]
    assert detail["code"] == "RATE_LIMIT_EXCEEDED"
    assert detail["window"] == "minute"
    assert int(response.headers["Retry-After"]) >= 1
    assert response.headers["X-RateLimit-Remaining"] == "0"
