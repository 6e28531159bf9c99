"""Tests for the technical indicator functions."""

import pytest

from app.indicators import (
    atr,
    bollinger_bands,
    calculate_indicators,
    ema,
    ichimoku,
    macd,
    rsi,
    sma,
    stochastic,
)


def _bars(closes: list[float], spread: float = 1.0) -> list[dict]:
    return [{"high": c + spread, "low": c - spread, "close": c} for c in closes]


class TestMovingAverages:
    def test_sma_values_and_warmup(self) -> None:
        result = sma([1, 2, 3, 4, 5], 3)
        assert result[:2] == [None, None]
        assert result[2] == pytest.approx(2.0)
        assert result[4] == pytest.approx(4.0)

    def test_sma_rejects_invalid_period(self) -> None:
        with pytest.raises(ValueError, match="period must be >= 1"):
            sma([1, 2, 3], 0)

    def test_ema_is_seeded_with_sma(self) -> None:
        result = ema([2, 4, 6, 8], 3)
        assert result[:2] == [None, None]
        assert result[2] == pytest.approx(4.0)
        # multiplier 0.5: (8 - 4) * 0.5 + 4
        assert result[3] == pytest.approx(6.0)

    def test_ema_shorter_than_period_is_all_none(self) -> None:
        assert ema([1, 2], 5) == [None, None]


class TestBollingerBands:
    def test_flat_series_collapses_bands(self) -> None:
        bands = bollinger_bands([10.0] * 5, period=3)
        assert bands["middle"][4] == pytest.approx(10.0)
        assert bands["upper"][4] == pytest.approx(10.0)
        assert bands["lower"][4] == pytest.approx(10.0)

    def test_band_width_uses_population_std(self) -> None:
        bands = bollinger_bands([1, 2, 3], period=3, num_std=2.0)
        # population std of 1,2,3 is sqrt(2/3)
        assert bands["upper"][2] - bands["middle"][2] == pytest.approx(2 * (2 / 3) ** 0.5)
        assert bands["upper"][1] is None


class TestRSI:
    def test_first_value_at_index_period(self) -> None:
        values = [float(i) for i in range(20)]
        result = rsi(values, 14)
        assert all(v is None for v in result[:14])
        assert result[14] is not None

    def test_only_gains_reads_100(self) -> None:
        result = rsi([float(i) for i in range(20)], 14)
        assert result[-1] == pytest.approx(100.0)

    def test_flat_series_reads_50(self) -> None:
        result = rsi([5.0] * 20, 14)
        assert result[-1] == pytest.approx(50.0)

    def test_values_stay_in_range(self) -> None:
        values = [44, 44.3, 44.1, 43.6, 44.3, 44.8, 45.1, 45.4, 45.8, 46.1, 45.9, 46.3, 46.2, 45.6, 46.3, 46.3, 46.0]
        result = [v for v in rsi(values, 14) if v is not None]
        assert result
        assert all(0 <= v <= 100 for v in result)


class TestMACD:
    def test_alignment_of_macd_and_signal(self) -> None:
        values = [100 + (i % 7) - (i % 3) for i in range(60)]
        result = macd(values, 12, 26, 9)
        assert result["macd"][24] is None
        assert result["macd"][25] is not None
        assert result["signal"][32] is None
        assert result["signal"][33] is not None
        assert result["histogram"][33] == pytest.approx(result["macd"][33] - result["signal"][33])

    def test_fast_must_be_shorter_than_slow(self) -> None:
        with pytest.raises(ValueError):
            macd([1.0] * 40, fast_period=26, slow_period=12)


class TestOscillators:
    def test_stochastic_at_top_of_range_reads_100(self) -> None:
        closes = [float(i) for i in range(1, 21)]
        highs = closes
        lows = [c - 2 for c in closes]
        result = stochastic(highs, lows, closes, 14, 3)
        assert result["k"][13] == pytest.approx(100.0)
        assert result["k"][12] is None
        assert result["d"][15] == pytest.approx(100.0)

    def test_atr_constant_range(self) -> None:
        closes = [10.0] * 20
        highs = [11.0] * 20
        lows = [9.0] * 20
        result = atr(highs, lows, closes, 14)
        assert result[13] is None
        assert result[14] == pytest.approx(2.0)
        assert result[-1] == pytest.approx(2.0)


class TestIchimoku:
    def test_keys_and_chikou_shift(self) -> None:
        closes = [float(i) for i in range(80)]
        highs = [c + 1 for c in closes]
        lows = [c - 1 for c in closes]
        result = ichimoku(highs, lows, closes)
        assert set(result) == {"tenkan_sen", "kijun_sen", "senkou_span_a", "senkou_span_b", "chikou_span"}
        assert result["tenkan_sen"][8] == pytest.approx(4.0)
        assert result["chikou_span"][30] == pytest.approx(closes[4])


class TestCalculateIndicators:
    def test_only_configured_indicators_are_returned(self) -> None:
        bars = _bars([100 + i for i in range(60)])
        result = calculate_indicators(bars, {"sma": {"periods": [5, 20]}, "rsi": {"period": 14}})
        assert set(result) == {"sma", "rsi"}
        assert set(result["sma"]) == {"5", "20"}
        assert len(result["sma"]["5"]) == 60

    def test_accepts_objects_with_attributes(self) -> None:
        class Bar:
            def __init__(self, close: float) -> None:
                self.high = close + 1
                self.low = close - 1
                self.close = close

        result = calculate_indicators([Bar(float(i)) for i in range(30)], {"atr": {"period": 5}})
        assert result["atr"][5] == pytest.approx(2.0)

    def test_invalid_period_raises(self) -> None:
        with pytest.raises(ValueError, match="must be >= 1"):
            calculate_indicators(_bars([1.0] * 10), {"ema": {"periods": [0]}})
