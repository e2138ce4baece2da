from types import SimpleNamespace

import pandas as pd
import pytest

from deepterm_api import market_data

INFO = {
    "AAPL": {
        "symbol": "AAPL",
        "shortName": "Apple",
        "longName": "Apple Inc.",
        "regularMarketPrice": 110.0,
        "regularMarketPreviousClose": 100.0,
        "regularMarketVolume": 51234567,
        "marketCap": 2900000000000,
        "trailingPE": 29.5,
        "beta": 1.2,
        "sector": "Technology",
        "industry": "Consumer Electronics",
        "fullTimeEmployees": 161000,
        "currency": "USD",
    },
}

NEWS = [
    {
        "id": "new-format",
        "content": {
            "title": "Apple ships new chips",
            "summary": "A summary",
            "pubDate": "2026-10-17T12:00:00Z",
            "provider": {"displayName": "Reuters"},
            "canonicalUrl": {"url": "https://example.com/apple-chips"},
        },
    },
    {
        "uuid": "old-format",
        "title": "Markets close higher",
        "publisher": "AP",
        "link": "https://example.com/markets",
        "providerPublishTime": 1700000000,
    },
]


class FakeTicker:
    created = []

    def __init__(self, symbol):
        FakeTicker.created.append(symbol)
        self.symbol = symbol

    @property
    def info(self):
        if self.symbol == "FAIL":
            raise RuntimeError("yahoo is down")
        return dict(INFO.get(self.symbol, {}))

    def history(self, period, interval):
        if self.symbol == "EMPTY":
            return pd.DataFrame()
        index = pd.DatetimeIndex(["2026-10-15", "2026-10-16"])
        return pd.DataFrame(
            {
                "Open": [100.0, 101.0],
                "High": [102.0, 103.5],
                "Low": [99.5, 100.25],
                "Close": [101.0, 103.0],
                "Volume": [1000, 2000],
            },
            index=index,
        )

    @property
    def fast_info(self):
        return SimpleNamespace(last_price=5000.0, previous_close=4950.0)

    @property
    def news(self):
        return NEWS


class FakeSearch:
    def __init__(self, query, max_results=10):
        self.quotes = [
            {"symbol": "AAPL", "shortname": "Apple Inc.", "exchange": "NMS", "quoteType": "EQUITY"},
            {"shortname": "No symbol"},
        ][:max_results]


class FakeResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        return self._payload


@pytest.fixture
def yahoo(monkeypatch):
    FakeTicker.created = []
    monkeypatch.setattr(market_data.yf, "Ticker", FakeTicker)
    monkeypatch.setattr(market_data.yf, "Search", FakeSearch)
    return FakeTicker


@pytest.mark.parametrize("raw,expected", [(" aapl ", "AAPL"), ("brk.b", "BRK.B"), ("^gspc", "^GSPC")])
def test_normalize_symbol(raw, expected):
    assert market_data.normalize_symbol(raw) == expected


@pytest.mark.parametrize("raw", ["", "bad symbol", "AAPL;DROP", "X" * 20])
def test_normalize_symbol_rejects_garbage(raw):
    with pytest.raises(market_data.InvalidSymbolError):
        market_data.normalize_symbol(raw)


def test_reshape_quote_derives_change_from_previous_close():
    quote = market_data.reshape_quote("AAPL", INFO["AAPL"])
    assert quote["price"] == 110.0
    assert quote["change"] == 10.0
    assert quote["change_percent"] == 10.0
    assert quote["volume"] == 51234567

    with pytest.raises(market_data.SymbolNotFoundError):
        market_data.reshape_quote("NOPE", {"shortName": "Nothing"})


def test_quote_is_cached(yahoo):
    first = market_data.get_quote("AAPL", include_stats=True, include_profile=True)
    second = market_data.get_quote("aapl")
    assert first["stats"]["beta"] == 1.2
    assert first["profile"]["employees"] == 161000
    assert second["price"] == 110.0
    assert yahoo.created == ["AAPL"]


def test_cache_is_bounded(monkeypatch):
    monkeypatch.setattr(market_data, "CACHE_MAX_ENTRIES", 3)
    market_data.set_cache("expired", 0, ttl=-1)
    market_data.set_cache("a", 1, ttl=60)
    market_data.set_cache("b", 2, ttl=60)
    market_data.set_cache("c", 3, ttl=60)
    assert market_data.cached("a") == 1

    market_data.set_cache("d", 4, ttl=60)
    assert market_data.cached("a") is None
    assert [market_data.cached(key) for key in ("b", "c", "d")] == [2, 3, 4]
    assert len(market_data._cache) == 3


def test_historical_reshapes_rows(yahoo):
    result = market_data.get_historical("AAPL", range_="5d", interval="1d")
    assert result["range"] == "5d"
    assert [point["close"] for point in result["data"]] == [101.0, 103.0]
    assert result["data"][1]["volume"] == 2000
    assert result["data"][0]["date"].startswith("2026-10-15")

    with pytest.raises(market_data.SymbolNotFoundError):
        market_data.get_historical("EMPTY")


@pytest.mark.parametrize("range_,interval", [("7d", "1d"), ("1mo", "2h")])
def test_historical_rejects_unknown_parameters(range_, interval):
    with pytest.raises(market_data.InvalidParameterError):
        market_data.get_historical("AAPL", range_=range_, interval=interval)


def test_search_skips_items_without_symbol(yahoo):
    assert market_data.search_symbols("apple") == [
        {"symbol": "AAPL", "name": "Apple Inc.", "exchange": "NMS", "type": "EQUITY"}
    ]
    assert market_data.search_symbols("   ") == []


def test_market_overview_lists_indices(yahoo):
    overview = market_data.get_market_overview()
    assert [index["symbol"] for index in overview["indices"]] == list(market_data.MAJOR_INDICES)
    assert overview["indices"][0]["change"] == 50.0


def test_news_handles_both_item_formats(yahoo):
    news = market_data.get_news("AAPL", limit=5)
    assert news["symbol"] == "AAPL"
    assert news["count"] == 2
    first, second = news["articles"]
    assert first["publisher"] == "Reuters"
    assert first["url"] == "https://example.com/apple-chips"
    assert second["id"] == "old-format"
    assert second["published_at"] == "2023-11-14T22:13:20"

    general = market_data.get_news(limit=1)
    assert general["symbol"] is None
    assert general["count"] == 1


def test_financials_require_provider_key():
    with pytest.raises(market_data.ProviderNotConfiguredError):
        market_data.get_financials("AAPL")


def test_financials_fetch_all_statements(monkeypatch):
    monkeypatch.setenv("FMP_API_KEY", "pytest-fmp-key")
    requested = []

    def fake_get(url, params=None, timeout=None):
        requested.append(url.rsplit("/", 2)[-2])
        assert params["apikey"] == "pytest-fmp-key"
        return FakeResponse(200, [{"date": "2025-12-31", "revenue": 1000}])

    monkeypatch.setattr(market_data.requests, "get", fake_get)
    result = market_data.get_financials("AAPL", period="quarter")
    assert requested == ["income-statement", "balance-sheet-statement", "cash-flow-statement"]
    assert result["period"] == "quarter"
    assert result["income_statement"][0]["revenue"] == 1000


def test_quote_endpoint_charges_after_success(client, make_user, yahoo, balance_of, db):
    user = make_user()
    response = client.get("/api/stocks/quote/aapl?stats=true", headers=user["headers"])
    assert response.status_code == 200
    assert response.json()["symbol"] == "AAPL"
    assert "stats" in response.json()
    assert response.headers["X-Credit-Balance"] == "67"
    assert response.headers["X-RateLimit-Limit"] == "10"
    assert balance_of(user["id"]) == 67

    usage = db.execute(
        "SELECT action, metadata FROM credit_transactions WHERE user_id = ? AND type = 'usage'", (user["id"],)
    ).fetchone()
    assert usage["action"] == "real_time_quote"
    assert '"symbol": "AAPL"' in usage["metadata"]


@pytest.mark.parametrize(
    "symbol,expected_status,code",
    [
        ("FAIL", 502, "UPSTREAM_ERROR"),
        ("ZZZZ", 404, "SYMBOL_NOT_FOUND"),
        ("BAD!", 400, "INVALID_SYMBOL"),
    ],
)
def test_failed_quote_costs_nothing(client, make_user, yahoo, balance_of, symbol, expected_status, code):
    user = make_user()
    response = client.get(f"/api/stocks/quote/{symbol}", headers=user["headers"])
    assert response.status_code == expected_status
    assert response.json()["detail"]["code"] == code
    assert balance_of(user["id"]) == 70


def test_quote_without_enough_credits(client, make_user, yahoo):
    user = make_user(balance=2)
    response = client.get("/api/stocks/quote/AAPL", headers=user["headers"])
    assert response.status_code == 402
    detail = response.json()["detail"]
    assert detail["code"] == "INSUFFICIENT_CREDITS"
    assert detail["required_credits"] == 3
    assert response.headers["X-Credit-Balance"] == "2"
    assert response.headers["X-Credit-Shortfall"] == "1"
    assert yahoo.created == []


def test_search_and_news_endpoints_charge(client, make_user, yahoo, balance_of):
    user = make_user()
    search = client.get("/api/stocks/search?q=apple", headers=user["headers"])
    assert search.status_code == 200
    assert search.json()["count"] == 1

    news = client.get("/api/market/news?symbol=AAPL&limit=1", headers=user["headers"])
    assert news.status_code == 200
    assert news.json()["count"] == 1
    assert balance_of(user["id"]) == 70 - 2 - 5


def test_financials_endpoint_without_provider(client, make_user, balance_of):
    user = make_user()
    response = client.get("/api/stocks/financials/AAPL", headers=user["headers"])
    assert response.status_code == 503
    assert response.json()["detail"]["code"] == "PROVIDER_NOT_CONFIGURED"
    assert balance_of(user["id"]) == 70


def test_historical_endpoint_is_rate_limited_by_ip(client, yahoo):
    headers = {"X-Forwarded-For": "198.51.100.20"}
    response = client.get("/api/stocks/historical/AAPL?range=5d", headers=headers)
    assert response.status_code == 200
    assert len(response.json()["data"]) == 2
    assert response.headers["X-RateLimit-Limit"] == "10"
    assert response.headers["X-RateLimit-Remaining"] == "9"

    invalid = client.get("/api/stocks/historical/AAPL?range=7d", headers=headers)
    assert invalid.status_code == 400
    assert invalid.json()["detail"]["code"] == "INVALID_PARAMETER"


def test_market_overview_endpoint(client, yahoo):
    response = client.get("/api/market/overview", headers={"X-Forwarded-For": "198.51.100.21"})
    assert response.status_code == 200
    assert len(response.json()["indices"]) == 5


def test_historical_rejects_invalid_api_key(client):
    response = client.get("/api/stocks/historical/AAPL", headers={"X-API-Key": "dt-free-bogus"})
    assert response.status_code == 401
