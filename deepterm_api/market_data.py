"""
Market-data proxies.

Quotes, history, search, index levels and news come from Yahoo Finance via
yfinance; financial statements come from FMP. Responses are reshaped into
flat dicts and cached in process per kind.
"""

import logging
import math
import os
import re
import threading
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import requests
import yfinance as yf

from deepterm_api.settings import FMP_ENV

logger = logging.getLogger(__name__)

CACHE_TTLS = {
    "quote": 5 * 60,
    "historical": 60 * 60,
    "profile": 24 * 60 * 60,
    "search": 15 * 60,
    "index": 60,
    "news": 15 * 60,
    "financials": 24 * 60 * 60,
}

MAJOR_INDICES = {
    "^GSPC": "S&P 500",
    "^DJI": "Dow Jones",
    "^IXIC": "NASDAQ",
    "^RUT": "Russell 2000",
    "^VIX": "VIX",
}

HISTORICAL_RANGES = {"1d", "5d", "1mo", "3mo", "6mo", "1y", "2y", "5y", "10y", "ytd", "max"}
HISTORICAL_INTERVALS = {"1m", "5m", "15m", "30m", "1h", "1d", "1wk", "1mo"}

FMP_BASE_URL = "https://financialmodelingprep.com/api/v3"
SYMBOL_PATTERN = re.compile(r"^[A-Z0-9^][A-Z0-9.\-=^]{0,14}$")

CACHE_MAX_ENTRIES = 2000

_cache: Dict[str, Tuple[Any, float]] = {}
_cache_lock = threading.Lock()

class MarketDataError(Exception):
    pass

class SymbolNotFoundError(MarketDataError):
    pass

class InvalidParameterError(MarketDataError):
    pass

class InvalidSymbolError(InvalidParameterError):
    pass

class ProviderNotConfiguredError(MarketDataError):
    pass

def cached(key: str) -> Optional[Any]:
    with _cache_lock:
        entry = _cache.get(key)
        if not entry:
            return None
        value, expires = entry
        if time.time() >= expires:
            del _cache[key]
            return None
        return value

def set_cache(key: str, value: Any, ttl: int) -> None:
    now = time.time()
    with _cache_lock:
        if key not in _cache and len(_cache) >= CACHE_MAX_ENTRIES:
            for stale_key in [k for k, (_, expires) in _cache.items() if expires <= now]:
                del _cache[stale_key]
            # Still full: drop the oldest entries.
            while len(_cache) >= CACHE_MAX_ENTRIES:
                del _cache[next(iter(_cache))]
        _cache[key] = (value, now + ttl)

def clear_cache() -> None:
    with _cache_lock:
        _cache.clear()

def normalize_symbol(symbol: str) -> str:
    normalized = str(symbol or "").strip().upper()
    if not SYMBOL_PATTERN.match(normalized):
        raise InvalidSymbolError(f"Invalid symbol: {symbol!r}")
    return normalized

def _num(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(number) or math.isinf(number) else number

def _int(value: Any) -> Optional[int]:
    number = _num(value)
    return int(number) if number is not None else None

def _first(info: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if info.get(key) is not None:
            return info[key]
    return None

def _fetch_info(symbol: str) -> Dict[str, Any]:
    try:
        info = yf.Ticker(symbol).info
    except Exception as exc:
        raise MarketDataError(f"Yahoo Finance lookup failed for {symbol}: {exc}") from exc
    return info or {}

def reshape_quote(symbol: str, info: Dict[str, Any]) -> Dict[str, Any]:
    price = _num(_first(info, "regularMarketPrice", "currentPrice"))
    if price is None:
        raise SymbolNotFoundError(f"No quote available for {symbol}")
    previous_close = _num(_first(info, "regularMarketPreviousClose", "previousClose"))
    change = _num(info.get("regularMarketChange"))
    if change is None and previous_close:
        change = price - previous_close
    change_percent = _num(info.get("regularMarketChangePercent"))
    if change_percent is None and previous_close and change is not None:
        change_percent = change / previous_close * 100

    return {
        "symbol": info.get("symbol") or symbol,
        "short_name": info.get("shortName"),
        "long_name": info.get("longName"),
        "price": price,
        "previous_close": previous_close,
        "open": _num(_first(info, "regularMarketOpen", "open")),
        "day_high": _num(_first(info, "regularMarketDayHigh", "dayHigh")),
        "day_low": _num(_first(info, "regularMarketDayLow", "dayLow")),
        "change": round(change, 4) if change is not None else None,
        "change_percent": round(change_percent, 4) if change_percent is not None else None,
        "volume": _int(_first(info, "regularMarketVolume", "volume")),
        "avg_volume": _int(_first(info, "averageVolume", "averageDailyVolume3Month")),
        "market_cap": _int(info.get("marketCap")),
        "pe_ratio": _num(info.get("trailingPE")),
        "eps": _num(info.get("trailingEps")),
        "dividend": _num(info.get("dividendRate")),
        "dividend_yield": _num(info.get("dividendYield")),
        "fifty_two_week_high": _num(info.get("fiftyTwoWeekHigh")),
        "fifty_two_week_low": _num(info.get("fiftyTwoWeekLow")),
        "exchange": info.get("exchange"),
        "currency": info.get("currency"),
        "market_state": info.get("marketState"),
    }

def reshape_stats(info: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "beta": _num(info.get("beta")),
        "forward_pe": _num(info.get("forwardPE")),
        "price_to_book": _num(info.get("priceToBook")),
        "profit_margins": _num(info.get("profitMargins")),
        "return_on_equity": _num(info.get("returnOnEquity")),
        "debt_to_equity": _num(info.get("debtToEquity")),
        "revenue_growth": _num(info.get("revenueGrowth")),
        "earnings_growth": _num(info.get("earningsGrowth")),
        "target_mean_price": _num(info.get("targetMeanPrice")),
        "recommendation": info.get("recommendationKey"),
    }

def reshape_profile(info: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "sector": info.get("sector"),
        "industry": info.get("industry"),
        "website": info.get("website"),
        "summary": info.get("longBusinessSummary"),
        "employees": _int(info.get("fullTimeEmployees")),
        "country": info.get("country"),
        "city": info.get("city"),
    }

def get_quote(symbol: str, include_stats: bool = False, include_profile: bool = False) -> Dict[str, Any]:
    symbol = normalize_symbol(symbol)
    key = f"quote:{symbol}"
    info = cached(key)
    if info is None:
        info = _fetch_info(symbol)
        set_cache(key, info, CACHE_TTLS["quote"])

    quote = reshape_quote(symbol, info)
    if include_stats:
        quote["stats"] = reshape_stats(info)
    if include_profile:
        profile = cached(f"profile:{symbol}")
        if profile is None:
            profile = reshape_profile(info)
            set_cache(f"profile:{symbol}", profile, CACHE_TTLS["profile"])
        quote["profile"] = profile
    return quote

def get_historical(symbol: str, range_: str = "1mo", interval: str = "1d") -> Dict[str, Any]:
    symbol = normalize_symbol(symbol)
    if range_ not in HISTORICAL_RANGES:
        raise InvalidParameterError(f"Unsupported range {range_!r}")
    if interval not in HISTORICAL_INTERVALS:
        raise InvalidParameterError(f"Unsupported interval {interval!r}")

    key = f"historical:{symbol}:{range_}:{interval}"
    result = cached(key)
    if result is not None:
        return result

    try:
        history = yf.Ticker(symbol).history(period=range_, interval=interval)
    except Exception as exc:
        raise MarketDataError(f"Yahoo Finance history failed for {symbol}: {exc}") from exc
    if history is None or history.empty:
        raise SymbolNotFoundError(f"No history available for {symbol}")

    points = []
    for index, row in history.iterrows():
        points.append({
            "date": index.isoformat() if hasattr(index, "isoformat") else str(index),
            "open": _num(row.get("Open")),
            "high": _num(row.get("High")),
            "low": _num(row.get("Low")),
            "close": _num(row.get("Close")),
            "volume": _int(row.get("Volume")),
        })
    result = {"symbol": symbol, "range": range_, "interval": interval, "data": points}
    set_cache(key, result, CACHE_TTLS["historical"])
    return result

def search_symbols(query: str, limit: int = 10) -> List[Dict[str, Any]]:
    query = str(query or "").strip()
    if not query:
        return []
    key = f"search:{query.lower()}:{limit}"
    results = cached(key)
    if results is not None:
        return results

    try:
        quotes = yf.Search(query, max_results=limit).quotes or []
    except Exception as exc:
        raise MarketDataError(f"Yahoo Finance search failed: {exc}") from exc
    results = [
        {
            "symbol": item.get("symbol"),
            "name": item.get("shortname") or item.get("longname") or item.get("symbol"),
            "exchange": item.get("exchange") or item.get("exchDisp"),
            "type": item.get("quoteType"),
        }
        for item in quotes
        if item.get("symbol")
    ]
    set_cache(key, results, CACHE_TTLS["search"])
    return results

def _index_level(symbol: str) -> Optional[Dict[str, Any]]:
    key = f"index:{symbol}"
    level = cached(key)
    if level is not None:
        return level
    try:
        fast_info = yf.Ticker(symbol).fast_info
        price = _num(fast_info.last_price)
        previous_close = _num(fast_info.previous_close)
    except Exception as exc:
        logger.warning("Index lookup failed for %s: %s", symbol, exc)
        return None
    if price is None:
        return None
    change = price - previous_close if previous_close else None
    level = {
        "symbol": symbol,
        "name": MAJOR_INDICES.get(symbol, symbol),
        "price": price,
        "previous_close": previous_close,
        "change": round(change, 4) if change is not None else None,
        "change_percent": round(change / previous_close * 100, 4) if change is not None else None,
    }
    set_cache(key, level, CACHE_TTLS["index"])
    return level

def get_market_overview() -> Dict[str, Any]:
    indices = [level for level in (_index_level(symbol) for symbol in MAJOR_INDICES) if level]
    if not indices:
        raise MarketDataError("No index data available")
    return {"indices": indices, "timestamp": datetime.utcnow().isoformat()}

def _reshape_news_item(item: Dict[str, Any]) -> Dict[str, Any]:
    content = item.get("content")
    if isinstance(content, dict):
        provider = content.get("provider") or {}
        url = (content.get("canonicalUrl") or {}).get("url") or (content.get("clickThroughUrl") or {}).get("url")
        return {
            "id": item.get("id") or content.get("id"),
            "title": content.get("title"),
            "summary": content.get("summary"),
            "publisher": provider.get("displayName"),
            "url": url,
            "published_at": content.get("pubDate"),
        }
    published = item.get("providerPublishTime")
    return {
        "id": item.get("uuid"),
        "title": item.get("title"),
        "summary": None,
        "publisher": item.get("publisher"),
        "url": item.get("link"),
        "published_at": datetime.utcfromtimestamp(published).isoformat() if published else None,
    }

def get_news(symbol: Optional[str] = None, limit: int = 10) -> Dict[str, Any]:
    target = normalize_symbol(symbol) if symbol else "^GSPC"
    key = f"news:{target}"
    items = cached(key)
    if items is None:
        try:
            raw_items = yf.Ticker(target).news or []
        except Exception as exc:
            raise MarketDataError(f"Yahoo Finance news failed for {target}: {exc}") from exc
        items = [_reshape_news_item(item) for item in raw_items if isinstance(item, dict)]
        set_cache(key, items, CACHE_TTLS["news"])
    return {"symbol": symbol and target, "articles": items[:limit], "count": min(len(items), limit)}

def get_financials(symbol: str, period: str = "annual", limit: int = 4) -> Dict[str, Any]:
    symbol = normalize_symbol(symbol)
    api_key = os.getenv(FMP_ENV["api_key"], "")
    if not api_key:
        raise ProviderNotConfiguredError("FMP API key is not configured")

    key = f"financials:{symbol}:{period}:{limit}"
    result = cached(key)
    if result is not None:
        return result

    statements = {}
    for name, path in (("income_statement", "income-statement"), ("balance_sheet", "balance-sheet-statement"),
                       ("cash_flow", "cash-flow-statement")):
        try:
            response = requests.get(
                f"{FMP_BASE_URL}/{path}/{symbol}",
                params={"period": period, "limit": limit, "apikey": api_key},
                timeout=30,
            )
        except requests.RequestException as exc:
            raise MarketDataError(f"FMP request failed: {exc}") from exc
        if response.status_code >= 400:
            raise MarketDataError(f"FMP returned {response.status_code} for {path}")
        statements[name] = response.json() or []

    if not statements["income_statement"]:
        raise SymbolNotFoundError(f"No financial statements for {symbol}")
    result = {"symbol": symbol, "period": period, **statements}
    set_cache(key, result, CACHE_TTLS["financials"])
    return result

def get_company_snapshot(symbol: str) -> Dict[str, Any]:
    """Quote plus profile and stats, used as report context."""
    return get_quote(symbol, include_stats=True, include_profile=True)
