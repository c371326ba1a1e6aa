"""
Technical Indicator Engine.

Pure functions computing MACD, RSI, Stochastic, Bollinger Bands, SMA/EMA,
VWAP, Williams %R and ATR from an ascending price series.

Every calculate_* function returns a list right-aligned with its input: an
output of length m over n inputs covers inputs n-m .. n-1.
"""

from __future__ import annotations

import math
from typing import List, Optional, Sequence, Tuple

from engine.errors import InsufficientDataError
from engine.models import (
    BollingerValue,
    DataSufficiency,
    IndicatorSet,
    MacdValue,
    PriceBar,
    StochasticValue,
)

MIN_BARS_FOR_INDICATORS = 50
RECOMMENDED_BARS = 100

MACD_FAST = 12
MACD_SLOW = 26
MACD_SIGNAL = 9
RSI_PERIOD = 14
STOCHASTIC_K = 14
STOCHASTIC_SLOWING = 3
STOCHASTIC_D = 3
BOLLINGER_PERIOD = 20
BOLLINGER_MULTIPLIER = 2.0
WILLIAMS_PERIOD = 14
ATR_PERIOD = 14


def calculate_sma(values: Sequence[float], period: int) -> List[float]:
    """Simple moving average; empty until `period` values exist."""
    if period <= 0 or len(values) < period:
        return []
    result: List[float] = []
    window_sum = sum(values[:period])
    result.append(window_sum / period)
    for i in range(period, len(values)):
        window_sum += values[i] - values[i - period]
        result.append(window_sum / period)
    return result


def calculate_ema(values: Sequence[float], period: int) -> List[float]:
    """Exponential moving average seeded with the SMA of the first `period` values."""
    if period <= 0 or len(values) < period:
        return []
    multiplier = 2.0 / (period + 1)
    ema = sum(values[:period]) / period
    result = [ema]
    for price in values[period:]:
        ema = (price - ema) * multiplier + ema
        result.append(ema)
    return result


def calculate_macd(
    closes: Sequence[float],
    fast_period: int = MACD_FAST,
    slow_period: int = MACD_SLOW,
    signal_period: int = MACD_SIGNAL,
) -> Tuple[List[float], List[float], List[float]]:
    """
    Moving Average Convergence Divergence.

    Returns:
        (macd_line, signal_line, histogram). The signal line and histogram are
        shorter than the MACD line by signal_period - 1 values.
    """
    fast = calculate_ema(closes, fast_period)
    slow = calculate_ema(closes, slow_period)
    if not slow:
        return [], [], []

    offset = len(fast) - len(slow)
    macd_line = [fast[i + offset] - slow[i] for i in range(len(slow))]
    signal_line = calculate_ema(macd_line, signal_period)

    signal_offset = len(macd_line) - len(signal_line)
    histogram = [macd_line[i + signal_offset] - signal_line[i] for i in range(len(signal_line))]
    return macd_line, signal_line, histogram


def _rsi_value(avg_gain: float, avg_loss: float) -> float:
    # No losses in the window: pinned to 100, or neutral when the series is flat.
    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def calculate_rsi(closes: Sequence[float], period: int = RSI_PERIOD) -> List[float]:
    """Relative Strength Index with Wilder smoothing."""
    if period <= 0 or len(closes) < period + 1:
        return []

    deltas = [closes[i] - closes[i - 1] for i in range(1, len(closes))]
    avg_gain = sum(max(delta, 0.0) for delta in deltas[:period]) / period
    avg_loss = sum(max(-delta, 0.0) for delta in deltas[:period]) / period

    result = [_rsi_value(avg_gain, avg_loss)]
    for delta in deltas[period:]:
        avg_gain = (avg_gain * (period - 1) + max(delta, 0.0)) / period
        avg_loss = (avg_loss * (period - 1) + max(-delta, 0.0)) / period
        result.append(_rsi_value(avg_gain, avg_loss))
    return result


def calculate_stochastic(
    highs: Sequence[float],
    lows: Sequence[float],
    closes: Sequence[float],
    k_period: int = STOCHASTIC_K,
    k_slowing: int = STOCHASTIC_SLOWING,
    d_period: int = STOCHASTIC_D,
) -> Tuple[List[float], List[float]]:
    """
    Slow stochastic oscillator.

    Raw %K is 50 when the period high equals the period low. Smoothed %K is
    the SMA(k_slowing) of raw %K and %D is the SMA(d_period) of smoothed %K.
    """
    if len(closes) < k_period:
        return [], []

    raw_k: List[float] = []
    for i in range(k_period - 1, len(closes)):
        period_high = max(highs[i - k_period + 1:i + 1])
        period_low = min(lows[i - k_period + 1:i + 1])
        if period_high == period_low:
            raw_k.append(50.0)
        else:
            raw_k.append((closes[i] - period_low) / (period_high - period_low) * 100.0)

    k_values = calculate_sma(raw_k, k_slowing)
    d_values = calculate_sma(k_values, d_period)
    return k_values, d_values


def calculate_bollinger_bands(
    closes: Sequence[float],
    period: int = BOLLINGER_PERIOD,
    multiplier: float = BOLLINGER_MULTIPLIER,
) -> List[BollingerValue]:
    """Bollinger Bands using the population standard deviation."""
    if period <= 0 or len(closes) < period:
        return []

    result: List[BollingerValue] = []
    for i in range(period - 1, len(closes)):
        window = closes[i - period + 1:i + 1]
        middle = sum(window) / period
        variance = sum((value - middle) ** 2 for value in window) / period
        band = multiplier * math.sqrt(variance)
        result.append(BollingerValue(upper=middle + band, middle=middle, lower=middle - band))
    return result


def calculate_vwap(series: Sequence[PriceBar]) -> List[float]:
    """Cumulative volume-weighted average price from the start of the series."""
    result: List[float] = []
    cumulative_pv = 0.0
    cumulative_volume = 0.0
    for bar in series:
        typical = bar.typical_price
        cumulative_pv += typical * bar.volume
        cumulative_volume += bar.volume
        result.append(cumulative_pv / cumulative_volume if cumulative_volume > 0 else typical)
    return result


def calculate_williams_r(
    highs: Sequence[float],
    lows: Sequence[float],
    closes: Sequence[float],
    period: int = WILLIAMS_PERIOD,
) -> List[float]:
    """Williams %R in [-100, 0]; -50 when the period range is flat."""
    if len(closes) < period:
        return []
    result: List[float] = []
    for i in range(period - 1, len(closes)):
        period_high = max(highs[i - period + 1:i + 1])
        period_low = min(lows[i - period + 1:i + 1])
        if period_high == period_low:
            result.append(-50.0)
        else:
            result.append((period_high - closes[i]) / (period_high - period_low) * -100.0)
    return result


def calculate_atr(
    highs: Sequence[float],
    lows: Sequence[float],
    closes: Sequence[float],
    period: int = ATR_PERIOD,
) -> List[float]:
    """Average True Range as the SMA of true range, starting at the second bar."""
    if len(closes) < 2:
        return []
    true_ranges = []
    for i in range(1, len(closes)):
        previous_close = closes[i - 1]
        true_ranges.append(max(
            highs[i] - lows[i],
            abs(highs[i] - previous_close),
            abs(lows[i] - previous_close),
        ))
    return calculate_sma(true_ranges, period)


def _align(values: Sequence, length: int) -> List[Optional[object]]:
    """Left-pad a right-aligned indicator output with None up to `length`."""
    return [None] * (length - len(values)) + list(values)


def generate_indicators(series: Sequence[PriceBar], symbol: str = "") -> List[IndicatorSet]:
    """
    Compute one IndicatorSet per bar from the first bar where the slow EMA exists.

    Args:
        series: Bars in ascending timestamp order
        symbol: Symbol stamped on each set

    Returns:
        Indicator sets in the same order as the series

    Raises:
        InsufficientDataError: Fewer than 50 bars supplied
    """
    count = len(series)
    if count < MIN_BARS_FOR_INDICATORS:
        raise InsufficientDataError(
            f"Insufficient data for technical analysis (need at least "
            f"{MIN_BARS_FOR_INDICATORS} bars, got {count})",
            available=count,
            required=MIN_BARS_FOR_INDICATORS,
        )

    closes = [bar.close for bar in series]
    highs = [bar.high for bar in series]
    lows = [bar.low for bar in series]

    macd_line, signal_line, histogram = calculate_macd(closes)
    k_values, d_values = calculate_stochastic(highs, lows, closes)

    macd_col = _align(macd_line, count)
    signal_col = _align(signal_line, count)
    histogram_col = _align(histogram, count)
    rsi_col = _align(calculate_rsi(closes), count)
    k_col = _align(k_values, count)
    d_col = _align(d_values, count)
    bollinger_col = _align(calculate_bollinger_bands(closes), count)
    sma20_col = _align(calculate_sma(closes, 20), count)
    sma50_col = _align(calculate_sma(closes, 50), count)
    ema12_col = _align(calculate_ema(closes, MACD_FAST), count)
    ema26_col = _align(calculate_ema(closes, MACD_SLOW), count)
    vwap_col = calculate_vwap(series)
    williams_col = _align(calculate_williams_r(highs, lows, closes), count)
    atr_col = _align(calculate_atr(highs, lows, closes), count)

    result: List[IndicatorSet] = []
    for i in range(MACD_SLOW - 1, count):
        macd = None
        if signal_col[i] is not None:
            macd = MacdValue(macd=macd_col[i], signal=signal_col[i], histogram=histogram_col[i])
        stochastic = None
        if k_col[i] is not None and d_col[i] is not None:
            stochastic = StochasticValue(k=k_col[i], d=d_col[i])

        result.append(IndicatorSet(
            symbol=symbol,
            timestamp=series[i].timestamp,
            macd=macd,
            rsi=rsi_col[i],
            stochastic=stochastic,
            bollinger_bands=bollinger_col[i],
            sma20=sma20_col[i],
            sma50=sma50_col[i],
            ema12=ema12_col[i],
            ema26=ema26_col[i],
            vwap=vwap_col[i],
            williams_r=williams_col[i],
            atr=atr_col[i],
        ))
    return result


def get_latest_indicators(series: Sequence[PriceBar], symbol: str = "") -> Optional[IndicatorSet]:
    """Indicator set for the most recent bar, or None when history is too short."""
    if len(series) < MIN_BARS_FOR_INDICATORS:
        return None
    indicators = generate_indicators(series, symbol=symbol)
    return indicators[-1] if indicators else None


def validate_data_sufficiency(series: Sequence[PriceBar]) -> DataSufficiency:
    """Report which indicators the series cannot support. Never raises."""
    count = len(series)
    missing: List[str] = []
    recommendations: List[str] = []

    if count < MACD_SLOW:
        missing.append(f"MACD requires at least {MACD_SLOW} data points")
    if count < RSI_PERIOD:
        missing.append(f"RSI requires at least {RSI_PERIOD} data points")
    if count < BOLLINGER_PERIOD:
        missing.append(f"Bollinger Bands require at least {BOLLINGER_PERIOD} data points")

    if count < MIN_BARS_FOR_INDICATORS:
        recommendations.append(f"Use at least {MIN_BARS_FOR_INDICATORS} data points for SMA50")
    if count < RECOMMENDED_BARS:
        recommendations.append(f"Use at least {RECOMMENDED_BARS} data points for stable analysis")

    return DataSufficiency(
        valid=not missing,
        missing=tuple(missing),
        recommendations=tuple(recommendations),
    )
