"""
Technical indicators over OHLC bar series.

Every function returns a list aligned with its input: position `i` holds the
indicator value for bar `i`, or None while the indicator is still warming up.

Usage:
    from .indicators import calculate_indicators, sma

    closes = [bar.close for bar in bars]
    sma(closes, 20)
    calculate_indicators(bars, {"sma": {"periods": [20, 50]}, "rsi": {"period": 14}})
"""

from __future__ import annotations

import math
from typing import Any, Mapping, Sequence

Series = list[float | None]


def _check_period(name: str, period: int) -> None:
    if period < 1:
        raise ValueError(f"{name} must be >= 1, got {period}")


def _field(bar: Any, name: str) -> float:
    if isinstance(bar, Mapping):
        return float(bar[name])
    return float(getattr(bar, name))


def sma(values: Sequence[float], period: int) -> Series:
    """Simple moving average of the trailing `period` values."""
    _check_period("period", period)
    result: Series = []
    window_sum = 0.0
    for i, value in enumerate(values):
        window_sum += float(value)
        if i >= period:
            window_sum -= float(values[i - period])
        result.append(window_sum / period if i >= period - 1 else None)
    return result


def ema(values: Sequence[float], period: int) -> Series:
    """
    Exponential moving average.

    Seeded with the SMA of the first `period` values, then smoothed with
    multiplier 2 / (period + 1).
    """
    _check_period("period", period)
    result: Series = [None] * len(values)
    if len(values) < period:
        return result

    multiplier = 2.0 / (period + 1)
    current = sum(float(v) for v in values[:period]) / period
    result[period - 1] = current
    for i in range(period, len(values)):
        current = (float(values[i]) - current) * multiplier + current
        result[i] = current
    return result


def bollinger_bands(values: Sequence[float], period: int = 20, num_std: float = 2.0) -> dict[str, Series]:
    """Middle band is the SMA; upper/lower are +/- `num_std` population standard deviations."""
    middle = sma(values, period)
    upper: Series = []
    lower: Series = []
    for i, mean in enumerate(middle):
        if mean is None:
            upper.append(None)
            lower.append(None)
            continue
        window = [float(v) for v in values[i - period + 1 : i + 1]]
        variance = sum((v - mean) ** 2 for v in window) / period
        deviation = math.sqrt(variance)
        upper.append(mean + num_std * deviation)
        lower.append(mean - num_std * deviation)
    return {"upper": upper, "middle": middle, "lower": lower}


def _rsi_value(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return 50.0 if avg_gain == 0 else 100.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def rsi(values: Sequence[float], period: int = 14) -> Series:
    """
    Relative Strength Index with Wilder smoothing.

    The first value lands on index `period` (it needs `period` price changes).
    A window with no losses reads 100; a completely flat window reads 50.
    """
    _check_period("period", period)
    result: Series = [None] * len(values)
    if len(values) <= period:
        return result

    gains: list[float] = []
    losses: list[float] = []
    for i in range(1, len(values)):
        change = float(values[i]) - float(values[i - 1])
        gains.append(max(change, 0.0))
        losses.append(max(-change, 0.0))

    avg_gain = sum(gains[:period]) / period
    avg_loss = sum(losses[:period]) / period
    result[period] = _rsi_value(avg_gain, avg_loss)

    for i in range(period, len(gains)):
        avg_gain = (avg_gain * (period - 1) + gains[i]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i]) / period
        result[i + 1] = _rsi_value(avg_gain, avg_loss)
    return result


def macd(
    values: Sequence[float],
    fast_period: int = 12,
    slow_period: int = 26,
    signal_period: int = 9,
) -> dict[str, Series]:
    """
    MACD line = EMA(fast) - EMA(slow); signal = EMA(signal_period) of the defined MACD values.

    The signal series is mapped back onto bar positions, so its first value
    sits at index slow_period + signal_period - 2.
    """
    _check_period("fast_period", fast_period)
    _check_period("slow_period", slow_period)
    _check_period("signal_period", signal_period)
    if fast_period >= slow_period:
        raise ValueError("fast_period must be < slow_period")

    fast = ema(values, fast_period)
    slow = ema(values, slow_period)
    macd_line: Series = [
        (f - s) if f is not None and s is not None else None for f, s in zip(fast, slow)
    ]

    defined_idx = [i for i, value in enumerate(macd_line) if value is not None]
    signal_line: Series = [None] * len(values)
    signal_values = ema([macd_line[i] for i in defined_idx], signal_period)
    for idx, value in zip(defined_idx, signal_values):
        signal_line[idx] = value

    histogram: Series = [
        (m - s) if m is not None and s is not None else None for m, s in zip(macd_line, signal_line)
    ]
    return {"macd": macd_line, "signal": signal_line, "histogram": histogram}


def stochastic(
    highs: Sequence[float],
    lows: Sequence[float],
    closes: Sequence[float],
    k_period: int = 14,
    d_period: int = 3,
) -> dict[str, Series]:
    _check_period("k_period", k_period)
    _check_period("d_period", d_period)
    size = len(closes)
    k_values: Series = [None] * size
    for i in range(k_period - 1, size):
        highest = max(float(h) for h in highs[i - k_period + 1 : i + 1])
        lowest = min(float(low) for low in lows[i - k_period + 1 : i + 1])
        price_range = highest - lowest
        # Flat window: treat the close as the top of the range.
        k_values[i] = 100.0 if price_range == 0 else (float(closes[i]) - lowest) / price_range * 100.0

    d_values: Series = [None] * size
    for i in range(k_period + d_period - 2, size):
        window = k_values[i - d_period + 1 : i + 1]
        d_values[i] = sum(window) / d_period
    return {"k": k_values, "d": d_values}


def atr(
    highs: Sequence[float],
    lows: Sequence[float],
    closes: Sequence[float],
    period: int = 14,
) -> Series:
    """
    Average True Range with Wilder smoothing.

    True range for bar i is max(high - low, |high - prev close|, |low - prev close|),
    so the first ATR value lands on index `period`.
    """
    _check_period("period", period)
    size = len(closes)
    result: Series = [None] * size
    if size <= period:
        return result

    true_ranges: list[float] = []
    for i in range(1, size):
        high = float(highs[i])
        low = float(lows[i])
        prev_close = float(closes[i - 1])
        true_ranges.append(max(high - low, abs(high - prev_close), abs(low - prev_close)))

    current = sum(true_ranges[:period]) / period
    result[period] = current
    for i in range(period, len(true_ranges)):
        current = (current * (period - 1) + true_ranges[i]) / period
        result[i + 1] = current
    return result


def _midpoint(highs: Sequence[float], lows: Sequence[float], period: int) -> Series:
    result: Series = [None] * len(highs)
    for i in range(period - 1, len(highs)):
        highest = max(float(h) for h in highs[i - period + 1 : i + 1])
        lowest = min(float(low) for low in lows[i - period + 1 : i + 1])
        result[i] = (highest + lowest) / 2
    return result


def ichimoku(
    highs: Sequence[float],
    lows: Sequence[float],
    closes: Sequence[float],
    tenkan_period: int = 9,
    kijun_period: int = 26,
    senkou_b_period: int = 52,
    displacement: int = 26,
) -> dict[str, Series]:
    """
    Ichimoku cloud lines, unshifted.

    Spans A and B are reported at the bar they are computed on; projecting
    them forward by `displacement` is left to the chart.
    """
    for name, period in (
        ("tenkan_period", tenkan_period),
        ("kijun_period", kijun_period),
        ("senkou_b_period", senkou_b_period),
        ("displacement", displacement),
    ):
        _check_period(name, period)

    tenkan = _midpoint(highs, lows, tenkan_period)
    kijun = _midpoint(highs, lows, kijun_period)
    span_a: Series = [
        (t + k) / 2 if t is not None and k is not None else None for t, k in zip(tenkan, kijun)
    ]
    span_b = _midpoint(highs, lows, senkou_b_period)
    chikou: Series = [
        float(closes[i - displacement]) if i >= displacement else None for i in range(len(closes))
    ]
    return {
        "tenkan_sen": tenkan,
        "kijun_sen": kijun,
        "senkou_span_a": span_a,
        "senkou_span_b": span_b,
        "chikou_span": chikou,
    }


def calculate_indicators(bars: Sequence[Any], config: Mapping[str, Any]) -> dict[str, Any]:
    """
    Compute every indicator named in `config` over `bars`.

    Bars may be mappings or objects exposing high/low/close. Recognised keys:
        sma / ema:   {"periods": [20, 50]}
        bollinger:   {"period": 20, "std_dev": 2}
        rsi / atr:   {"period": 14}
        macd:        {"fast_period": 12, "slow_period": 26, "signal_period": 9}
        stochastic:  {"k_period": 14, "d_period": 3}
        ichimoku:    {"tenkan_period": 9, "kijun_period": 26, "senkou_b_period": 52, "displacement": 26}
    """
    closes = [_field(bar, "close") for bar in bars]
    highs = [_field(bar, "high") for bar in bars]
    lows = [_field(bar, "low") for bar in bars]

    results: dict[str, Any] = {}
    if "sma" in config:
        results["sma"] = {str(p): sma(closes, int(p)) for p in config["sma"].get("periods", [20])}
    if "ema" in config:
        results["ema"] = {str(p): ema(closes, int(p)) for p in config["ema"].get("periods", [20])}
    if "bollinger" in config:
        params = config["bollinger"]
        results["bollinger"] = bollinger_bands(
            closes, int(params.get("period", 20)), float(params.get("std_dev", 2))
        )
    if "rsi" in config:
        results["rsi"] = rsi(closes, int(config["rsi"].get("period", 14)))
    if "macd" in config:
        params = config["macd"]
        results["macd"] = macd(
            closes,
            int(params.get("fast_period", 12)),
            int(params.get("slow_period", 26)),
            int(params.get("signal_period", 9)),
        )
    if "stochastic" in config:
        params = config["stochastic"]
        results["stochastic"] = stochastic(
            highs, lows, closes, int(params.get("k_period", 14)), int(params.get("d_period", 3))
        )
    if "atr" in config:
        results["atr"] = atr(highs, lows, closes, int(config["atr"].get("period", 14)))
    if "ichimoku" in config:
        params = config["ichimoku"]
        results["ichimoku"] = ichimoku(
            highs,
            lows,
            closes,
            int(params.get("tenkan_period", 9)),
            int(params.get("kijun_period", 26)),
            int(params.get("senkou_b_period", 52)),
            int(params.get("displacement", 26)),
        )
    return results
