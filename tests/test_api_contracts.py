import pytest


def _auth_headers(api_key: str):
    return {"X-API-Key": api_key}


def test_health_endpoint_is_public(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "healthy"
    assert "version" in payload


def test_root_endpoint_lists_core_routes(client):
    response = client.get("/")
    assert response.status_code == 200
    endpoints = response.json().get("endpoints")
    assert isinstance(endpoints, list)
    assert "/api/credits" in endpoints
    assert "/api/health" in endpoints


@pytest.mark.parametrize(
    "method,route",
    [
        ("get", "/api/credits"),
        ("get", "/api/credits/history"),
        ("get", "/api/credits/analytics"),
        ("get", "/api/auth/me"),
        ("get", "/api/stocks/quote/AAPL"),
        ("get", "/api/stocks/search?q=apple"),
        ("get", "/api/market/news"),
        ("get", "/api/payments/history"),
        ("get", "/api/subscriptions/current"),
        ("get", "/api/rate-limit/status"),
        ("get", "/api/ai-report/status?symbol=AAPL&type=retail"),
    ],
)
def test_protected_routes_require_api_key(client, method, route):
    response = getattr(client, method)(route)
    assert response.status_code == 401
    detail = response.json().get("detail", {})
    assert detail.get("code") == "AUTH_MISSING"


def test_invalid_api_key_is_rejected(client):
    response = client.get("/api/credits", headers=_auth_headers("dt-free-not-a-real-key"))
    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "AUTH_INVALID"


def test_register_login_and_key_rotation(client):
    email = "pytest-contract-auth@example.com"
    register = client.post(
        "/api/auth/register",
        json={"email": email, "password": "ValidPass123", "first_name": "Py", "last_name": "Test"},
    )
    assert register.status_code == 200
    register_payload = register.json()
    first_key = register_payload["api_key"]
    assert first_key.startswith("dt-free-")
    assert register_payload["credits"] == 70
    assert register_payload["user"]["onboarding_completed"] is False

    login = client.post("/api/auth/login", json={"email": email, "password": "ValidPass123"})
    assert login.status_code == 200
    second_key = login.json()["api_key"]
    assert second_key.startswith("dt-free-")
    assert second_key != first_key

    old_key_login = client.post("/api/auth/key-login", json={"api_key": first_key})
    assert old_key_login.status_code == 401

    new_key_login = client.post("/api/auth/key-login", json={"api_key": second_key})
    assert new_key_login.status_code == 200
    assert new_key_login.json()["tier"] == "free"


def test_register_rejects_duplicate_email(client):
    payload = {"email": "pytest-contract-dupe@example.com", "password": "ValidPass123"}
    assert client.post("/api/auth/register", json=payload).status_code == 200

    response = client.post("/api/auth/register", json=dict(payload, email="PYTEST-contract-dupe@example.com"))
    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "EMAIL_EXISTS"


def test_register_rejects_short_password(client):
    response = client.post("/api/auth/register", json={"email": "pytest-short@example.com", "password": "short"})
    assert response.status_code == 422


def test_login_with_wrong_password(client, make_user):
    user = make_user()
    response = client.post("/api/auth/login", json={"email": user["email"], "password": "WrongPass123"})
    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "AUTH_INVALID"


def test_logout_deactivates_key(client, make_user):
    user = make_user()
    assert client.post("/api/auth/logout", headers=user["headers"]).status_code == 200
    response = client.get("/api/credits", headers=user["headers"])
    assert response.status_code == 401


def test_onboarding_risk_profile_completes_onboarding(client, make_user):
    user = make_user()
    response = client.post(
        "/api/onboarding/risk-profile",
        json={"risk_tolerance": "moderate", "investment_horizon": "long", "investment_experience": "beginner"},
        headers=user["headers"],
    )
    assert response.status_code == 200
    assert response.json()["onboarding_completed"] is True

    me = client.get("/api/auth/me", headers=user["headers"])
    assert me.status_code == 200
    assert me.json()["user"]["onboarding_completed"] is True


def test_onboarding_rejects_unknown_values(client, make_user):
    user = make_user()
    response = client.post(
        "/api/onboarding/risk-profile",
        json={"risk_tolerance": "yolo", "investment_horizon": "long", "investment_experience": "beginner"},
        headers=user["headers"],
    )
    assert response.status_code == 422


def test_credits_summary_contract(client, make_user):
    user = make_user()
    response = client.get("/api/credits", headers=user["headers"])
    assert response.status_code == 200
    payload = response.json()
    assert payload["balance"] == 70
    assert payload["tier"] == "free"
    assert payload["monthly_free_credits"] == 50
    assert payload["credit_costs"]["ai_analysis"] == 25
    assert response.headers["X-Credit-Balance"] == "70"


def test_credit_packages_are_public(client):
    response = client.get("/api/credits/packages")
    assert response.status_code == 200
    payload = response.json()
    names = [package["name"] for package in payload["packages"]]
    assert names[:5] == ["Starter", "Basic", "Pro", "Business", "Enterprise"]
    pro = payload["packages"][2]
    assert pro["total_credits"] == 700
    assert pro["is_popular"] is True
    assert "pro" in payload["subscription_plans"]


def test_credit_history_lists_signup_bonus(client, make_user):
    user = make_user()
    response = client.get("/api/credits/history?type=bonus", headers=user["headers"])
    assert response.status_code == 200
    payload = response.json()
    assert payload["total"] == 1
    assert payload["transactions"][0]["amount"] == 70
    assert payload["has_more"] is False


def test_credit_analytics_contract(client, make_user):
    user = make_user()
    response = client.get("/api/credits/analytics", headers=user["headers"])
    assert response.status_code == 200
    payload = response.json()
    assert payload["current_balance"] == 70
    assert payload["top_action"] == "none"
    assert payload["days_until_empty"] is None

    history = client.get("/api/credits/analytics?type=history", headers=user["headers"])
    assert history.status_code == 200
    assert len(history.json()["transactions"]) == 1


def test_direct_purchase_is_disabled_outside_development(client, make_user):
    user = make_user()
    response = client.post("/api/credits/purchase", json={"package_id": 1}, headers=user["headers"])
    assert response.status_code == 501
    assert response.json()["detail"]["code"] == "PAYMENT_NOT_CONFIGURED"


def test_direct_purchase_in_development(client, make_user, balance_of, monkeypatch):
    monkeypatch.setenv("DEEPTERM_ENV", "development")
    user = make_user()
    response = client.post("/api/credits/purchase", json={"package_id": 1}, headers=user["headers"])
    assert response.status_code == 200
    assert response.json()["credits_added"] == 100
    assert balance_of(user["id"]) == 170


def test_rate_limit_status_contract(client, make_user):
    user = make_user()
    response = client.get("/api/rate-limit/status?endpoint=/api/pytest/unconfigured", headers=user["headers"])
    assert response.status_code == 200
    windows = response.json()["windows"]
    assert set(windows.keys()) == {"minute", "hour", "day"}
    assert windows["minute"]["limit"] == 10


def test_payments_readiness_contract(client):
    response = client.get("/api/payments/nowpayments/readiness")
    assert response.status_code == 200
    payload = response.json()
    assert {"api_key", "ipn_secret", "public_app_url"}.issubset(set(payload["env"].keys()))
    assert payload["ready_for_invoices"] is False
    assert payload["ready_for_webhook"] is False


def test_webhook_get_reports_active(client):
    response = client.get("/api/payments/nowpayments/webhook")
    assert response.status_code == 200
    assert response.json() == {"status": "Webhook endpoint active"}


def test_payment_creation_reports_not_configured(client, make_user):
    user = make_user()
    response = client.post("/api/payments/nowpayments/create", json={"package_id": 1}, headers=user["headers"])
    assert response.status_code == 503
    assert response.json()["detail"]["code"] == "PAYMENT_NOT_CONFIGURED"
