"""Tests for quote resolution, bar generation and symbol search."""

from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from app import market_data
from app.market_data import (
    MOCK_PRICES,
    Quote,
    generate_mock_bars,
    get_bars,
    get_quote,
    is_market_open,
    search_symbols,
)


class TestMarketHours:
    def test_open_mid_session(self) -> None:
        # 2024-01-10 is a Wednesday; 15:00 UTC is 10:00 in New York.
        assert is_market_open(datetime(2024, 1, 10, 15, 0, tzinfo=timezone.utc))

    def test_closed_before_open_and_after_close(self) -> None:
        assert not is_market_open(datetime(2024, 1, 10, 14, 0, tzinfo=timezone.utc))
        assert not is_market_open(datetime(2024, 1, 10, 21, 0, tzinfo=timezone.utc))

    def test_closed_on_weekend(self) -> None:
        assert not is_market_open(datetime(2024, 1, 13, 16, 0, tzinfo=timezone.utc))


class TestGetQuote:
    def test_mock_table_price(self) -> None:
        quote = get_quote("aapl")
        assert quote.symbol == "AAPL"
        assert quote.price == MOCK_PRICES["AAPL"]
        assert quote.source == "mock"

    def test_unknown_symbol_uses_default_price(self) -> None:
        assert get_quote("ZZZZ").price == market_data.DEFAULT_MOCK_PRICE

    def test_empty_symbol_rejected(self) -> None:
        with pytest.raises(ValueError, match="symbol is required"):
            get_quote("  ")

    def test_first_provider_that_answers_wins(self) -> None:
        alpaca = Quote(symbol="MSFT", price=333.0, source="alpaca")
        with patch.object(market_data, "MARKET_DATA_PROVIDERS", ["alpaca", "yahoo", "mock"]), patch.dict(
            market_data.QUOTE_PROVIDERS, {"alpaca": lambda s: alpaca, "yahoo": lambda s: None}
        ):
            assert get_quote("MSFT") is alpaca

    def test_failing_provider_falls_through(self) -> None:
        def broken(symbol: str):
            raise OSError("connection refused")

        yahoo = Quote(symbol="MSFT", price=330.0, source="yahoo")
        with patch.object(market_data, "MARKET_DATA_PROVIDERS", ["alpaca", "yahoo"]), patch.dict(
            market_data.QUOTE_PROVIDERS, {"alpaca": broken, "yahoo": lambda s: yahoo}
        ):
            assert get_quote("MSFT").source == "yahoo"

    def test_non_positive_price_is_skipped(self) -> None:
        with patch.object(market_data, "MARKET_DATA_PROVIDERS", ["yahoo", "mock"]), patch.dict(
            market_data.QUOTE_PROVIDERS, {"yahoo": lambda s: Quote(symbol=s, price=0.0, source="yahoo")}
        ):
            assert get_quote("TSLA").source == "mock"

    def test_alpaca_without_credentials_skips(self) -> None:
        with patch.object(market_data, "ALPACA_API_KEY", ""):
            assert market_data.fetch_alpaca_quote("AAPL") is None


class TestBars:
    def test_mock_bars_are_deterministic(self) -> None:
        end = datetime(2024, 1, 10, tzinfo=timezone.utc)
        first = generate_mock_bars("AAPL", "1d", 30, end=end)
        second = generate_mock_bars("AAPL", "1d", 30, end=end)
        assert first == second
        assert len(first) == 30
        assert first[-1].timestamp == end

    def test_bars_are_well_formed(self) -> None:
        for bar in generate_mock_bars("NVDA", "1h", 50):
            assert bar.low <= min(bar.open, bar.close)
            assert bar.high >= max(bar.open, bar.close)
            assert bar.volume > 0

    def test_get_bars_reports_source(self) -> None:
        bars, source = get_bars("spy", "15m", 10)
        assert source == "mock"
        assert len(bars) == 10

    def test_unknown_interval_rejected(self) -> None:
        with pytest.raises(ValueError, match="Unsupported interval"):
            get_bars("SPY", "3d", 10)


class TestSearch:
    def test_prefix_matches_come_first(self) -> None:
        results = search_symbols("A")
        assert results[0]["symbol"] in {"AAPL", "AMZN", "AMD"}
        assert all("symbol" in row and "name" in row for row in results)

    def test_name_match(self) -> None:
        assert {"symbol": "TSLA", "name": "Tesla, Inc."} in search_symbols("tesla")

    def test_empty_query_returns_nothing(self) -> None:
        assert search_symbols("") == []


class TestMarketDataRoutes:
    def test_quote_route(self, client) -> None:
        response = client.get("/market-data/quote", params={"symbol": "AAPL"})
        assert response.status_code == 200
        data = response.json()
        assert data["price"] == MOCK_PRICES["AAPL"]
        assert data["source"] == "mock"
        assert "market_open" in data

    def test_quote_requires_symbol(self, client) -> None:
        response = client.get("/market-data/quote")
        assert response.status_code == 400
        assert response.json() == {"error": "symbol is required"}

    def test_indicators_route(self, client) -> None:
        response = client.get(
            "/market-data/indicators",
            params={"symbol": "AAPL", "limit": 60, "sma": "5,10", "bollinger": "true"},
        )
        assert response.status_code == 200
        data = response.json()
        assert len(data["timestamps"]) == 60
        assert set(data["indicators"]["sma"]) == {"5", "10"}
        assert "bollinger" in data["indicators"]
        assert "macd" in data["indicators"]

    def test_indicators_reject_bad_periods(self, client) -> None:
        response = client.get("/market-data/indicators", params={"symbol": "AAPL", "sma": "abc"})
        assert response.status_code == 400

    def test_indicators_reject_zero_rsi_and_atr(self, client) -> None:
        for params in ({"rsi": 0}, {"atr": 0}):
            response = client.get("/market-data/indicators", params={"symbol": "AAPL", **params})
            assert response.status_code == 400
            assert response.json() == {"error": "period must be >= 1, got 0"}

    def test_bars_reject_bad_interval(self, client) -> None:
        response = client.get("/market-data/bars", params={"symbol": "AAPL", "interval": "2y"})
        assert response.status_code == 400
        assert "Unsupported interval" in response.json()["error"]
