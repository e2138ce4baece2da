import json

import pytest
import requests

from deepterm_api.alerting import low_credit_monitor


class FakeResponse:
    def __init__(self, status_code):
        self.status_code = status_code


@pytest.fixture
def alert_config(tmp_path, monkeypatch):
    monkeypatch.setattr(low_credit_monitor, "CONFIG_PATH", tmp_path / "alerts.json")
    low_credit_monitor.init_alert_db()
    return {
        "threshold": 20,
        "dashboard_url": "https://deepterm.example.com/dashboard/settings/credits",
        "channels": {
            "email": {"enabled": False},
            "webhook": {"enabled": True, "url": "https://hooks.example.com/low-credits"},
            "discord": {"enabled": False},
        },
    }


@pytest.fixture
def webhook_posts(monkeypatch):
    posts = []

    def fake_post(url, json=None, headers=None, timeout=None):
        posts.append({"url": url, "json": json})
        return FakeResponse(200)

    monkeypatch.setattr(low_credit_monitor.requests, "post", fake_post)
    return posts


def _alert_state(db, user_id):
    row = db.execute("SELECT * FROM low_credit_alert_state WHERE user_id = ?", (user_id,)).fetchone()
    return dict(row) if row else None


def test_cheapest_actions():
    assert low_credit_monitor.cheapest_actions(5) == [
        "news_fetch",
        "real_time_quote",
        "stock_search",
        "watchlist_alert",
    ]
    assert low_credit_monitor.cheapest_actions(1) == []


def test_find_low_balance_users(alert_config, make_user, db):
    low = make_user(balance=5)
    healthy = make_user(balance=500)
    found = {user["user_id"]: user for user in low_credit_monitor.find_low_balance_users(20, db)}
    assert found[low["id"]]["balance"] == 5
    assert healthy["id"] not in found


def test_monitor_alerts_once_per_day(alert_config, webhook_posts, make_user, db):
    user = make_user(balance=3)

    assert low_credit_monitor.run_monitor(alert_config) >= 1
    payloads = [post["json"] for post in webhook_posts if post["json"]["user_id"] == user["id"]]
    assert len(payloads) == 1
    assert payloads[0]["alert_type"] == "low_credits"
    assert payloads[0]["balance"] == 3
    assert payloads[0]["threshold"] == 20

    state = _alert_state(db, user["id"])
    assert state["alert_count"] == 1
    assert state["last_balance"] == 3

    webhook_posts.clear()
    low_credit_monitor.run_monitor(alert_config)
    assert user["id"] not in [post["json"]["user_id"] for post in webhook_posts]


def test_failed_delivery_is_retried_next_run(alert_config, make_user, db, monkeypatch):
    user = make_user(balance=0)
    monkeypatch.setattr(low_credit_monitor.requests, "post", lambda *args, **kwargs: FakeResponse(500))
    low_credit_monitor.run_monitor(alert_config)
    assert _alert_state(db, user["id"]) is None

    def unreachable(*args, **kwargs):
        raise requests.ConnectionError("no route to host")

    monkeypatch.setattr(low_credit_monitor.requests, "post", unreachable)
    low_credit_monitor.run_monitor(alert_config)
    assert _alert_state(db, user["id"]) is None

    assert user["id"] in [row["user_id"] for row in low_credit_monitor.find_low_balance_users(20, db)]


def test_disabled_channels_send_nothing(alert_config):
    config = dict(alert_config, channels={"email": {"enabled": False}, "webhook": {"enabled": False}})
    user = {"user_id": 1, "email": "pytest@example.com", "first_name": None, "tier": "free", "balance": 4}
    results = low_credit_monitor.send_alert(user, config)
    assert results == [("email", False), ("webhook", False), ("discord", False)]


def test_test_mode_does_not_alert(alert_config, webhook_posts, make_user, db):
    user = make_user(balance=1)
    assert low_credit_monitor.run_monitor(alert_config, test_mode=True) == 0
    assert webhook_posts == []
    assert _alert_state(db, user["id"]) is None


def test_load_config_writes_default(alert_config, capsys):
    config = low_credit_monitor.load_config()
    assert config["threshold"] == 20
    assert low_credit_monitor.CONFIG_PATH.exists()
    assert "Created default config" in capsys.readouterr().out

    low_credit_monitor.CONFIG_PATH.write_text(json.dumps({"threshold": 50}))
    reloaded = low_credit_monitor.load_config()
    assert reloaded["threshold"] == 50
    assert reloaded["channels"]["webhook"]["enabled"] is False


def test_main_test_flag(alert_config, webhook_posts, make_user, capsys):
    make_user(balance=2)
    low_credit_monitor.main(["--test"])
    assert "Test mode: Would alert" in capsys.readouterr().out
    assert webhook_posts == []


def test_email_html_escapes_first_name(alert_config, webhook_posts, monkeypatch):
    sent = []

    def fake_email(to_address, subject, body, html_body, config):
        sent.append(html_body)
        return True

    monkeypatch.setattr(low_credit_monitor, "send_email_alert", fake_email)
    user = {
        "user_id": 1,
        "email": "pytest-html@example.com",
        "first_name": "<b>Py</b>",
        "tier": "free",
        "balance": 3,
    }
    results = low_credit_monitor.send_alert(user, alert_config)

    assert ("email", True) in results
    assert "Hi &lt;b&gt;Py&lt;/b&gt;," in sent[0]
    assert "<b>Py</b>" not in sent[0]


class StopDaemon(BaseException):
    pass


def test_daemon_survives_unexpected_errors(monkeypatch, capsys):
    calls = []
    sleeps = []

    def flaky_monitor(config):
        calls.append(config)
        if len(calls) == 1:
            raise KeyError("threshold")
        return 0

    def fake_sleep(seconds):
        sleeps.append(seconds)
        if len(sleeps) == 2:
            raise StopDaemon()

    monkeypatch.setattr(low_credit_monitor, "run_monitor", flaky_monitor)
    monkeypatch.setattr(low_credit_monitor.time, "sleep", fake_sleep)

    with pytest.raises(StopDaemon):
        low_credit_monitor.run_daemon({}, interval=5)

    assert len(calls) == 2
    assert sleeps == [5, 5]
    assert "Monitor error: 'threshold'" in capsys.readouterr().out
