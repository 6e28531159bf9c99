from __future__ import annotations

import json
import logging
import os
import random
from dataclasses import dataclass, field
from datetime import datetime, time as dtime, timedelta, timezone
from http.client import HTTPException as HTTPClientError
from typing import Any, Callable
from urllib import parse, request
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)

MARKET_DATA_PROVIDERS = [
    name.strip().lower()
    for name in os.environ.get("MARKET_DATA_PROVIDERS", "alpaca,yahoo,mock").split(",")
    if name.strip()
]
ALPACA_API_KEY = os.environ.get("ALPACA_API_KEY", "").strip()
ALPACA_API_SECRET = os.environ.get("ALPACA_API_SECRET", "").strip()
ALPACA_DATA_BASE_URL = os.environ.get("ALPACA_DATA_BASE_URL", "https://data.alpaca.markets").rstrip("/")
YAHOO_CHART_BASE_URL = os.environ.get(
    "YAHOO_CHART_BASE_URL", "https://query1.finance.yahoo.com/v8/finance/chart"
).rstrip("/")
MARKET_DATA_TIMEOUT_SECONDS = float(os.environ.get("MARKET_DATA_TIMEOUT_SECONDS", "5"))
MOCK_PRICE_JITTER_PCT = float(os.environ.get("MOCK_PRICE_JITTER_PCT", "0"))

MARKET_TZ = ZoneInfo("America/New_York")
MARKET_OPEN = dtime(9, 30)
MARKET_CLOSE = dtime(16, 0)

DEFAULT_MOCK_PRICE = 100.0
MOCK_PRICES: dict[str, float] = {
    "AAPL": 201.00,
    "MSFT": 335.15,
    "AMZN": 130.25,
    "GOOGL": 140.80,
    "META": 290.35,
    "TSLA": 245.75,
    "NVDA": 425.65,
    "AMD": 155.20,
    "INTC": 45.80,
    "NFLX": 410.30,
    "SPY": 445.20,
    "QQQ": 375.80,
    "IWM": 195.45,
    "GLD": 180.30,
    "TLT": 95.75,
}

SYMBOL_CATALOG: dict[str, str] = {
    "AAPL": "Apple Inc.",
    "MSFT": "Microsoft Corporation",
    "AMZN": "Amazon.com, Inc.",
    "GOOGL": "Alphabet Inc. Class A",
    "META": "Meta Platforms, Inc.",
    "TSLA": "Tesla, Inc.",
    "NVDA": "NVIDIA Corporation",
    "AMD": "Advanced Micro Devices, Inc.",
    "INTC": "Intel Corporation",
    "NFLX": "Netflix, Inc.",
    "SPY": "SPDR S&P 500 ETF Trust",
    "QQQ": "Invesco QQQ Trust",
    "IWM": "iShares Russell 2000 ETF",
    "GLD": "SPDR Gold Shares",
    "TLT": "iShares 20+ Year Treasury Bond ETF",
}

# interval -> (seconds per bar, yahoo interval, alpaca timeframe, default lookback days)
INTERVALS: dict[str, tuple[int, str, str, int]] = {
    "1m": (60, "1m", "1Min", 5),
    "5m": (300, "5m", "5Min", 7),
    "15m": (900, "15m", "15Min", 14),
    "30m": (1800, "30m", "30Min", 14),
    "1h": (3600, "60m", "1Hour", 30),
    "4h": (14400, "60m", "4Hour", 90),
    "1d": (86400, "1d", "1Day", 365),
    "1w": (604800, "1wk", "1Week", 730),
}


class MarketDataError(Exception):
    pass


@dataclass
class Quote:
    symbol: str
    price: float
    source: str
    bid: float | None = None
    ask: float | None = None
    previous_close: float | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class Bar:
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: int


def normalize_symbol(raw_symbol: str | None) -> str:
    return (raw_symbol or "").strip().upper()


def is_market_open(now: datetime | None = None) -> bool:
    current = (now or datetime.now(timezone.utc)).astimezone(MARKET_TZ)
    if current.weekday() >= 5:
        return False
    return MARKET_OPEN <= current.time() < MARKET_CLOSE


def http_get_json(url: str, timeout: float, headers: dict[str, str] | None = None) -> Any:
    req = request.Request(url, headers={"User-Agent": "whoptrade/1.0", **(headers or {})}, method="GET")
    with request.urlopen(req, timeout=timeout) as response:
        return json.loads(response.read().decode("utf-8"))


def alpaca_configured() -> bool:
    return bool(ALPACA_API_KEY and ALPACA_API_SECRET)


def alpaca_headers() -> dict[str, str]:
    return {"APCA-API-KEY-ID": ALPACA_API_KEY, "APCA-API-SECRET-KEY": ALPACA_API_SECRET}


def fetch_alpaca_quote(symbol: str) -> Quote | None:
    if not alpaca_configured():
        return None
    url = f"{ALPACA_DATA_BASE_URL}/v2/stocks/{parse.quote(symbol)}/quotes/latest"
    payload = http_get_json(url, MARKET_DATA_TIMEOUT_SECONDS, headers=alpaca_headers())
    quote = payload["quote"]
    bid = float(quote.get("bp") or 0)
    ask = float(quote.get("ap") or 0)
    if bid > 0 and ask > 0:
        price = (bid + ask) / 2
    else:
        price = bid or ask
    return Quote(symbol=symbol, price=price, source="alpaca", bid=bid or None, ask=ask or None)


def fetch_yahoo_quote(symbol: str) -> Quote | None:
    url = f"{YAHOO_CHART_BASE_URL}/{parse.quote(symbol)}?interval=1d&range=1d"
    payload = http_get_json(url, MARKET_DATA_TIMEOUT_SECONDS)
    results = payload["chart"]["result"]
    if not results:
        raise MarketDataError(f"Yahoo returned no chart data for {symbol}")
    meta = results[0]["meta"]
    previous_close = meta.get("previousClose") or meta.get("chartPreviousClose")
    price = meta.get("regularMarketPrice") or previous_close
    if price is None:
        raise MarketDataError(f"Yahoo returned no price for {symbol}")
    return Quote(
        symbol=symbol,
        price=float(price),
        source="yahoo",
        previous_close=float(previous_close) if previous_close is not None else None,
    )


def mock_price(symbol: str, now: datetime | None = None, rng: random.Random | None = None) -> float:
    base = MOCK_PRICES.get(symbol, DEFAULT_MOCK_PRICE)
    if MOCK_PRICE_JITTER_PCT <= 0 or not is_market_open(now):
        return base
    pct = MOCK_PRICE_JITTER_PCT / 100
    jitter = (rng or random).uniform(-pct, pct)
    return round(base * (1 + jitter), 2)


def fetch_mock_quote(symbol: str) -> Quote:
    return Quote(
        symbol=symbol,
        price=mock_price(symbol),
        source="mock",
        previous_close=MOCK_PRICES.get(symbol, DEFAULT_MOCK_PRICE),
    )


QUOTE_PROVIDERS: dict[str, Callable[[str], Quote | None]] = {
    "alpaca": fetch_alpaca_quote,
    "yahoo": fetch_yahoo_quote,
    "mock": fetch_mock_quote,
}

PROVIDER_ERRORS = (
    OSError,
    HTTPClientError,
    MarketDataError,
    ValueError,
    KeyError,
    IndexError,
    TypeError,
)


def get_quote(raw_symbol: str) -> Quote:
    """
    Resolve a price by walking the configured providers in order.

    Each provider either answers, skips (returns None), or fails; failures are
    logged and the next provider is tried. The mock table always answers last.
    """
    symbol = normalize_symbol(raw_symbol)
    if not symbol:
        raise ValueError("symbol is required")

    for name in MARKET_DATA_PROVIDERS:
        if name == "mock":
            break
        fetcher = QUOTE_PROVIDERS.get(name)
        if fetcher is None:
            logger.warning("Unknown market data provider %r ignored", name)
            continue
        try:
            quote = fetcher(symbol)
        except PROVIDER_ERRORS as exc:
            logger.warning("Quote provider %s failed for %s: %s", name, symbol, exc)
            continue
        if quote is None:
            continue
        if quote.price <= 0:
            logger.warning("Quote provider %s returned non-positive price for %s", name, symbol)
            continue
        return quote

    return fetch_mock_quote(symbol)


def resolve_interval(interval: str) -> tuple[int, str, str, int]:
    try:
        return INTERVALS[interval]
    except KeyError:
        raise ValueError(f"Unsupported interval '{interval}'. Use one of: {', '.join(INTERVALS)}") from None


def fetch_alpaca_bars(symbol: str, interval: str, limit: int) -> list[Bar] | None:
    if not alpaca_configured():
        return None
    _, _, timeframe, lookback_days = resolve_interval(interval)
    start = (datetime.now(timezone.utc) - timedelta(days=lookback_days)).strftime("%Y-%m-%dT%H:%M:%SZ")
    query = parse.urlencode({"timeframe": timeframe, "limit": limit, "start": start})
    url = f"{ALPACA_DATA_BASE_URL}/v2/stocks/{parse.quote(symbol)}/bars?{query}"
    payload = http_get_json(url, MARKET_DATA_TIMEOUT_SECONDS, headers=alpaca_headers())
    rows = payload.get("bars") or []
    return [
        Bar(
            timestamp=datetime.fromisoformat(str(row["t"]).replace("Z", "+00:00")),
            open=float(row["o"]),
            high=float(row["h"]),
            low=float(row["l"]),
            close=float(row["c"]),
            volume=int(row.get("v") or 0),
        )
        for row in rows
    ][-limit:]


def fetch_yahoo_bars(symbol: str, interval: str, limit: int) -> list[Bar] | None:
    _, yahoo_interval, _, lookback_days = resolve_interval(interval)
    end = datetime.now(timezone.utc)
    start = end - timedelta(days=lookback_days)
    query = parse.urlencode(
        {
            "interval": yahoo_interval,
            "period1": int(start.timestamp()),
            "period2": int(end.timestamp()),
        }
    )
    payload = http_get_json(f"{YAHOO_CHART_BASE_URL}/{parse.quote(symbol)}?{query}", MARKET_DATA_TIMEOUT_SECONDS)
    results = payload["chart"]["result"]
    if not results:
        raise MarketDataError(f"Yahoo returned no chart data for {symbol}")
    result = results[0]
    timestamps = result.get("timestamp") or []
    series = result["indicators"]["quote"][0]
    bars: list[Bar] = []
    for i, ts in enumerate(timestamps):
        close = series["close"][i]
        if close is None:
            # Yahoo pads halted/illiquid slots with nulls.
            continue
        bars.append(
            Bar(
                timestamp=datetime.fromtimestamp(int(ts), tz=timezone.utc),
                open=float(series["open"][i] if series["open"][i] is not None else close),
                high=float(series["high"][i] if series["high"][i] is not None else close),
                low=float(series["low"][i] if series["low"][i] is not None else close),
                close=float(close),
                volume=int(series["volume"][i] or 0),
            )
        )
    return bars[-limit:]


def generate_mock_bars(symbol: str, interval: str, limit: int, end: datetime | None = None) -> list[Bar]:
    """
    Deterministic random walk around the mock price table.

    Seeded from symbol and interval so repeated requests draw the same chart.
    Higher-priced names swing a little more than cheap ones.
    """
    seconds, _, _, _ = resolve_interval(interval)
    rng = random.Random(f"{symbol}:{interval}")
    base = MOCK_PRICES.get(symbol, DEFAULT_MOCK_PRICE)
    volatility = 0.01
    if base > 300:
        volatility *= 1.2
    elif base <= 100:
        volatility *= 0.8

    last_ts = (end or datetime.now(timezone.utc)).replace(microsecond=0)
    first_ts = last_ts - timedelta(seconds=seconds * (limit - 1))
    price = base
    bars: list[Bar] = []
    for i in range(limit):
        change = price * volatility * (rng.random() - 0.48)
        open_price = price
        close_price = max(0.01, price + change)
        high = max(open_price, close_price) * (1 + rng.random() * volatility * 0.5)
        low = min(open_price, close_price) * (1 - rng.random() * volatility * 0.5)
        bars.append(
            Bar(
                timestamp=first_ts + timedelta(seconds=seconds * i),
                open=round(open_price, 2),
                high=round(high, 2),
                low=round(low, 2),
                close=round(close_price, 2),
                volume=rng.randint(100_000, 1_100_000),
            )
        )
        price = close_price
    return bars


BAR_PROVIDERS: dict[str, Callable[[str, str, int], list[Bar] | None]] = {
    "alpaca": fetch_alpaca_bars,
    "yahoo": fetch_yahoo_bars,
}


def get_bars(raw_symbol: str, interval: str = "1d", limit: int = 100) -> tuple[list[Bar], str]:
    symbol = normalize_symbol(raw_symbol)
    if not symbol:
        raise ValueError("symbol is required")
    resolve_interval(interval)
    if limit < 1:
        raise ValueError("limit must be >= 1")

    for name in MARKET_DATA_PROVIDERS:
        if name == "mock":
            break
        fetcher = BAR_PROVIDERS.get(name)
        if fetcher is None:
            continue
        try:
            bars = fetcher(symbol, interval, limit)
        except PROVIDER_ERRORS as exc:
            logger.warning("Bar provider %s failed for %s %s: %s", name, symbol, interval, exc)
            continue
        if bars:
            return bars, name

    return generate_mock_bars(symbol, interval, limit), "mock"


def search_symbols(query: str, limit: int = 10) -> list[dict[str, str]]:
    needle = (query or "").strip().upper()
    if not needle:
        return []
    symbol_hits = [symbol for symbol in SYMBOL_CATALOG if symbol.startswith(needle)]
    name_hits = [
        symbol
        for symbol, name in SYMBOL_CATALOG.items()
        if symbol not in symbol_hits and needle in name.upper()
    ]
    return [
        {"symbol": symbol, "name": SYMBOL_CATALOG[symbol]}
        for symbol in (symbol_hits + name_hits)[:limit]
    ]
