import time

import pytest
from fastapi.testclient import TestClient

from deepterm_api import market_data
from deepterm_api.auth import ADMIN_COOKIE_NAME, create_admin_session, verify_admin_session

BASE_URL = "https://testserver"


def _fresh_client(api_module):
    return TestClient(api_module.app, base_url=BASE_URL)


def test_admin_login_sets_session_cookie(api_module):
    test_client = _fresh_client(api_module)
    response = test_client.post("/api/admin/auth", json={"username": "pytest-admin", "password": "pytest-admin-password"})
    assert response.status_code == 200
    assert ADMIN_COOKIE_NAME in response.cookies
    set_cookie = response.headers["set-cookie"].lower()
    assert "httponly" in set_cookie
    assert "secure" in set_cookie

    session = test_client.get("/api/admin/auth")
    assert session.status_code == 200
    assert session.json()["username"] == "pytest-admin"
    assert session.json()["authenticated"] is True


def test_admin_login_rejects_wrong_password(api_module):
    response = _fresh_client(api_module).post(
        "/api/admin/auth", json={"username": "pytest-admin", "password": "nope"}
    )
    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "ADMIN_INVALID"


def test_admin_login_without_configuration(api_module, monkeypatch):
    monkeypatch.delenv("ADMIN_PASSWORD")
    response = _fresh_client(api_module).post(
        "/api/admin/auth", json={"username": "pytest-admin", "password": "pytest-admin-password"}
    )
    assert response.status_code == 503
    assert response.json()["detail"]["code"] == "ADMIN_NOT_CONFIGURED"


@pytest.mark.parametrize(
    "method,route",
    [
        ("get", "/api/admin/credits?action=overview"),
        ("get", "/api/admin/stats"),
        ("get", "/api/admin/analytics"),
        ("get", "/api/admin/rate-limits"),
        ("get", "/api/admin/promo-codes"),
    ],
)
def test_admin_routes_require_session(api_module, method, route):
    response = getattr(_fresh_client(api_module), method)(route)
    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "ADMIN_SESSION_REQUIRED"


def test_forged_session_is_rejected(api_module):
    test_client = _fresh_client(api_module)
    test_client.cookies.set(ADMIN_COOKIE_NAME, "not-a-jwt")
    assert test_client.get("/api/admin/stats").status_code == 401


def test_credit_config_is_public(api_module):
    response = _fresh_client(api_module).get("/api/admin/credits?action=config")
    assert response.status_code == 200
    payload = response.json()
    assert payload["credit_costs"]["financial_report"] == 20
    assert payload["rate_limits"]["enterprise"]["requests_per_minute"] == 120
    assert len(payload["default_packages"]) == 5


def test_admin_logout_clears_session(admin_client):
    assert admin_client.get("/api/admin/stats").status_code == 200
    assert admin_client.delete("/api/admin/auth").status_code == 200
    assert admin_client.get("/api/admin/stats").status_code == 401


def test_adjust_credits(admin_client, make_user, balance_of, db):
    user = make_user()
    response = admin_client.post(
        "/api/admin/credits",
        json={"action": "adjust_credits", "user_id": user["id"], "amount": 30, "description": "Support goodwill"},
    )
    assert response.status_code == 200
    assert response.json()["new_balance"] == 100
    assert balance_of(user["id"]) == 100

    adjust = db.execute(
        "SELECT description, metadata FROM credit_transactions WHERE user_id = ? AND type = 'admin_adjust'",
        (user["id"],),
    ).fetchone()
    assert adjust["description"] == "Support goodwill"
    assert "pytest-admin" in adjust["metadata"]


@pytest.mark.parametrize(
    "amount,expected_status,code",
    [(-500, 409, "BALANCE_WOULD_GO_NEGATIVE"), (0, 400, "INVALID_ADJUSTMENT")],
)
def test_adjust_credits_errors(admin_client, make_user, balance_of, amount, expected_status, code):
    user = make_user()
    response = admin_client.post(
        "/api/admin/credits", json={"action": "adjust_credits", "user_id": user["id"], "amount": amount}
    )
    assert response.status_code == expected_status
    assert response.json()["detail"]["code"] == code
    assert balance_of(user["id"]) == 70


def test_adjust_credits_unknown_user(admin_client):
    response = admin_client.post(
        "/api/admin/credits", json={"action": "adjust_credits", "user_id": 987654, "amount": 5}
    )
    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "USER_NOT_FOUND"


def test_bulk_credits_reports_partial_failures(admin_client, make_user, balance_of):
    first, second = make_user(), make_user()
    response = admin_client.post(
        "/api/admin/credits",
        json={"action": "bulk_credits", "user_ids": [first["id"], 987654, second["id"]], "amount": 10},
    )
    assert response.status_code == 200
    payload = response.json()
    assert payload["adjusted"] == 2
    assert [failure["user_id"] for failure in payload["failed"]] == [987654]
    assert balance_of(first["id"]) == 80
    assert balance_of(second["id"]) == 80


def test_reset_monthly_grants_tier_credits(admin_client, make_user):
    user = make_user()
    response = admin_client.post("/api/admin/credits", json={"action": "reset_monthly", "user_id": user["id"]})
    assert response.status_code == 200
    assert response.json()["new_balance"] == 120


def test_credit_overview_and_users(admin_client, make_user):
    user = make_user()
    overview = admin_client.get("/api/admin/credits?action=overview")
    assert overview.status_code == 200
    assert overview.json()["overview"]["total_credits_in_system"] >= 70

    users = admin_client.get("/api/admin/credits?action=users&limit=200").json()
    assert user["email"] in [row["email"] for row in users["users"]]

    transactions = admin_client.get(f"/api/admin/credits?action=transactions&user_id={user['id']}")
    assert transactions.json()["transactions"][0]["type"] == "bonus"

    missing = admin_client.get("/api/admin/credits?action=transactions")
    assert missing.status_code == 400
    assert missing.json()["detail"]["code"] == "USER_ID_REQUIRED"

    unknown = admin_client.get("/api/admin/credits?action=explode")
    assert unknown.status_code == 400
    assert unknown.json()["detail"]["code"] == "INVALID_ACTION"


def test_package_lifecycle(admin_client, client):
    created = admin_client.post(
        "/api/admin/credits",
        json={"action": "create_package", "name": "Pytest Pack", "credits": 42, "price": 1.5, "sort_order": 99},
    )
    assert created.status_code == 200
    package = created.json()["package"]
    assert package["credits"] == 42

    updated = admin_client.post(
        "/api/admin/credits",
        json={"action": "update_package", "id": package["id"], "bonus_credits": 8, "is_popular": True},
    )
    assert updated.status_code == 200
    assert updated.json()["package"]["bonus_credits"] == 8
    assert updated.json()["package"]["is_popular"] == 1

    public = client.get("/api/credits/packages").json()["packages"]
    assert public[-1]["name"] == "Pytest Pack"
    assert public[-1]["total_credits"] == 50

    assert admin_client.delete(f"/api/admin/credits?package_id={package['id']}").status_code == 200
    assert admin_client.delete(f"/api/admin/credits?package_id={package['id']}").status_code == 404

    missing = admin_client.post("/api/admin/credits", json={"action": "update_package", "id": package["id"], "credits": 5})
    assert missing.status_code == 404


def test_create_package_validates_body(admin_client):
    response = admin_client.post("/api/admin/credits", json={"action": "create_package", "name": "Bad", "credits": 0, "price": 1})
    assert response.status_code == 422
    assert response.json()["detail"]["code"] == "INVALID_REQUEST"


def test_update_package_validates_fields(admin_client, db):
    created = admin_client.post(
        "/api/admin/credits",
        json={"action": "create_package", "name": "Pytest Guarded", "credits": 10, "price": 2.0, "sort_order": 98},
    )
    package_id = created.json()["package"]["id"]
    try:
        response = admin_client.post(
            "/api/admin/credits",
            json={"action": "update_package", "id": package_id, "credits": -500, "price": -3},
        )
        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "INVALID_REQUEST"

        row = db.execute("SELECT credits, price FROM credit_packages WHERE id = ?", (package_id,)).fetchone()
        assert row["credits"] == 10
        assert row["price"] == 2.0
    finally:
        admin_client.delete(f"/api/admin/credits?package_id={package_id}")


def test_rate_limit_config_crud(admin_client, make_user, db):
    created = admin_client.post(
        "/api/admin/rate-limits",
        json={
            "action": "create",
            "endpoint": "/api/pytest/admin/*",
            "requests_per_minute": 3,
            "requests_per_hour": 30,
            "requests_per_day": 300,
        },
    )
    assert created.status_code == 200
    config = created.json()["config"]
    assert config["is_enabled"] is True

    updated = admin_client.post(
        "/api/admin/rate-limits",
        json={
            "action": "update",
            "id": config["id"],
            "endpoint": "/api/pytest/admin/*",
            "subscription_tier": "premium",
            "requests_per_minute": 6,
            "requests_per_hour": 60,
            "requests_per_day": 600,
        },
    )
    assert updated.json()["config"]["subscription_tier"] == "premium"

    toggled = admin_client.post("/api/admin/rate-limits", json={"action": "toggle", "id": config["id"]})
    assert toggled.json()["config"]["is_enabled"] is False

    listed = admin_client.get("/api/admin/rate-limits").json()
    assert config["id"] in [row["id"] for row in listed["configs"]]
    assert listed["tier_defaults"]["free"]["requests_per_minute"] == 10

    assert admin_client.delete(f"/api/admin/rate-limits?id={config['id']}").status_code == 200
    missing = admin_client.post("/api/admin/rate-limits", json={"action": "toggle", "id": config["id"]})
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "CONFIG_NOT_FOUND"


def test_rate_limit_defaults_and_reset(admin_client, client, make_user, db, monkeypatch):
    monkeypatch.setattr(market_data, "get_market_overview", lambda: {"indices": [], "timestamp": "now"})
    before = {row["id"] for row in db.execute("SELECT id FROM rate_limit_config").fetchall()}
    response = admin_client.post("/api/admin/rate-limits", json={"action": "initialize_defaults"})
    assert response.status_code == 200
    try:
        assert response.json()["inserted"] >= 1
        again = admin_client.post("/api/admin/rate-limits", json={"action": "initialize_defaults"})
        assert again.json()["inserted"] == 0
    finally:
        after = {row["id"] for row in db.execute("SELECT id FROM rate_limit_config").fetchall()}
        for config_id in after - before:
            db.execute("DELETE FROM rate_limit_config WHERE id = ?", (config_id,))
        db.commit()

    user = make_user()
    client.get("/api/market/overview", headers=user["headers"])
    reset = admin_client.post("/api/admin/rate-limits", json={"action": "reset", "user_id": user["id"]})
    assert reset.json()["deleted"] == 1

    no_identifier = admin_client.post("/api/admin/rate-limits", json={"action": "reset"})
    assert no_identifier.status_code == 400
    assert no_identifier.json()["detail"]["code"] == "IDENTIFIER_REQUIRED"


def test_admin_stats_and_analytics(admin_client, make_user):
    make_user(onboarded=True)
    stats = admin_client.get("/api/admin/stats")
    assert stats.status_code == 200
    payload = stats.json()
    assert payload["total_users"] >= 1
    assert payload["onboarded_users"] >= 1
    assert "timestamp" in payload

    analytics = admin_client.get("/api/admin/analytics")
    assert analytics.status_code == 200


def test_admin_session_login_time_is_utc_epoch():
    before = int(time.time() * 1000)
    session = verify_admin_session(create_admin_session("pytest-admin"))
    after = int(time.time() * 1000)

    assert session["username"] == "pytest-admin"
    assert before <= session["logged_in_at"] <= after
