import itertools
import os
import tempfile

# Must run before deepterm_api is imported: the database path is fixed at import.
os.environ["DEEPTERM_DATA_DIR"] = tempfile.mkdtemp(prefix="deepterm-api-tests-")
os.environ["DEEPTERM_ENV"] = "test"
for _name in (
    "NOWPAYMENTS_API_KEY",
    "NOWPAYMENTS_IPN_SECRET",
    "NOWPAYMENTS_SANDBOX",
    "OPENROUTER_API_KEY",
    "OPENROUTER_MODEL",
    "FMP_API_KEY",
    "PRODUCTION_URL",
    "NEXT_PUBLIC_APP_URL",
    "APP_URL",
):
    os.environ.pop(_name, None)
os.environ["ADMIN_USERNAME"] = "pytest-admin"
os.environ["ADMIN_PASSWORD"] = "pytest-admin-password"
os.environ["ADMIN_JWT_SECRET"] = "pytest-admin-jwt-secret-0123456789abcdef"
os.environ["CRON_SECRET"] = "pytest-cron-secret"

import pytest
from fastapi.testclient import TestClient

from deepterm_api import market_data, payments
from deepterm_api.auth import api_key_name, create_user, rotate_api_key
from deepterm_api.database import get_db
from deepterm_api.ledger import initialize_user_credits

BASE_URL = "https://testserver"

_user_ids = itertools.count(1)


@pytest.fixture(scope="session")
def api_module():
    from deepterm_api import main
    return main


@pytest.fixture(scope="session")
def client(api_module):
    with TestClient(api_module.app, base_url=BASE_URL) as test_client:
        yield test_client


@pytest.fixture
def db():
    conn = get_db()
    yield conn
    conn.close()


@pytest.fixture(autouse=True)
def reset_process_state(api_module):
    market_data.clear_cache()
    payments.clear_currency_cache()
    yield
    api_module.app.dependency_overrides.clear()


@pytest.fixture
def make_user():
    """Create a user with an active API key; balance defaults to the signup grant."""

    def _make(tier="free", onboarded=False, balance=None):
        email = f"pytest-user-{next(_user_ids)}@example.com"
        conn = get_db()
        try:
            user = create_user(email=email, password="ValidPass123", conn=conn, first_name="Py")
            conn.execute(
                "UPDATE users SET tier = ?, onboarding_completed = ? WHERE id = ?",
                (tier, 1 if onboarded else 0, user["id"]),
            )
            key_payload = rotate_api_key(
                user_id=user["id"], name=api_key_name(email, tier), tier=tier, conn=conn
            )
            initialize_user_credits(user["id"], conn=conn)
            if balance is not None:
                conn.execute("UPDATE user_credits SET balance = ? WHERE user_id = ?", (balance, user["id"]))
            conn.commit()
        finally:
            conn.close()
        return {
            "id": user["id"],
            "email": email,
            "api_key": key_payload["key"],
            "headers": {"X-API-Key": key_payload["key"]},
        }

    return _make


def get_balance(user_id):
    conn = get_db()
    try:
        row = conn.execute("SELECT balance FROM user_credits WHERE user_id = ?", (user_id,)).fetchone()
        return row["balance"]
    finally:
        conn.close()


@pytest.fixture
def balance_of():
    return get_balance


@pytest.fixture
def admin_client(api_module):
    test_client = TestClient(api_module.app, base_url=BASE_URL)
    response = test_client.post(
        "/api/admin/auth",
        json={"username": "pytest-admin", "password": "pytest-admin-password"},
    )
    assert response.status_code == 200
    return test_client
