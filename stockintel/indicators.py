"""
Technical indicator engine.

Pure functions over chronologically ordered (oldest first) series. Every
indicator raises InsufficientDataError when the series is shorter than its
lookback instead of returning a degraded value.
"""
from typing import Any, Dict, Optional, Sequence

import numpy as np
import pandas as pd

from stockintel.errors import InsufficientDataError
from stockintel.models import (
    BollingerBands,
    IndicatorSet,
    MACDResult,
    PricePoint,
    PricePosition,
    VolumeAnalysis,
)


DEFAULT_PARAMS: Dict[str, Any] = {
    'rsi_period': 14,
    'macd_fast': 12,
    'macd_slow': 26,
    'macd_signal': 9,
    'bollinger_period': 20,
    'bollinger_std': 2.0,
    'atr_period': 14,
    'volume_period': 20,
}

# MACD slow EMA is the most data-hungry indicator in an IndicatorSet
MIN_HISTORY = 26


def _require(indicator: str, values: Sequence[float], required: int) -> None:
    if len(values) < required:
        raise InsufficientDataError(indicator, required, len(values))


def _array(values: Sequence[float]) -> np.ndarray:
    return np.asarray(values, dtype=float)


def rsi(closes: Sequence[float], period: int = 14) -> float:
    """
    Calculate Wilder's Relative Strength Index.

    The first average gain/loss is the simple mean of the first `period`
    changes; later values use Wilder smoothing.

    Args:
        closes: Closing prices, oldest first
        period: RSI period

    Returns:
        RSI value (0-100). A series with no movement returns 50.

    Raises:
        InsufficientDataError: If fewer than period + 1 closes are given
    """
    _require('RSI', closes, period + 1)

    deltas = np.diff(_array(closes))
    gains = np.where(deltas > 0, deltas, 0.0)
    losses = np.where(deltas < 0, -deltas, 0.0)

    avg_gain = gains[:period].mean()
    avg_loss = losses[:period].mean()
    for gain, loss in zip(gains[period:], losses[period:]):
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period

    if avg_loss == 0:
        return 50.0 if avg_gain == 0 else 100.0

    rs = avg_gain / avg_loss
    return float(100.0 - 100.0 / (1.0 + rs))


def ema(closes: Sequence[float], span: int) -> pd.Series:
    """Exponential moving average series."""
    return pd.Series(_array(closes)).ewm(span=span, adjust=False).mean()


def macd(
    closes: Sequence[float],
    fast: int = 12,
    slow: int = 26,
    signal_period: int = 9
) -> MACDResult:
    """
    Calculate MACD line, signal line and histogram at the latest bar.

    Args:
        closes: Closing prices, oldest first
        fast: Fast EMA span
        slow: Slow EMA span
        signal_period: Signal EMA span

    Returns:
        MACDResult with histogram = macd - signal

    Raises:
        InsufficientDataError: If fewer than `slow` closes are given
    """
    _require('MACD', closes, slow)

    macd_line = ema(closes, fast) - ema(closes, slow)
    signal_line = macd_line.ewm(span=signal_period, adjust=False).mean()
    histogram = macd_line - signal_line

    return MACDResult(
        macd=float(macd_line.iloc[-1]),
        signal=float(signal_line.iloc[-1]),
        histogram=float(histogram.iloc[-1]),
    )


def sma(closes: Sequence[float], period: int) -> float:
    """Arithmetic mean of the last `period` closes."""
    _require(f'SMA{period}', closes, period)
    return float(_array(closes)[-period:].mean())


def bollinger_bands(
    closes: Sequence[float],
    period: int = 20,
    std_dev: float = 2.0
) -> BollingerBands:
    """
    Calculate Bollinger Bands over the last `period` closes.

    Uses the population standard deviation. %B is 0.5 when the bands have
    zero width (flat prices).
    """
    _require('Bollinger', closes, period)

    window = _array(closes)[-period:]
    middle = float(window.mean())
    spread = float(window.std(ddof=0)) * std_dev
    upper = middle + spread
    lower = middle - spread

    price = float(window[-1])
    width = upper - lower
    percent_b = (price - lower) / width if width > 0 else 0.5

    return BollingerBands(upper=upper, middle=middle, lower=lower, percent_b=float(percent_b))


def atr(
    highs: Sequence[float],
    lows: Sequence[float],
    closes: Sequence[float],
    period: int = 14
) -> float:
    """
    Calculate Average True Range with Wilder smoothing.

    Raises:
        InsufficientDataError: If fewer than period + 1 bars are given
    """
    _require('ATR', closes, period + 1)

    high = _array(highs)
    low = _array(lows)
    close = _array(closes)
    prev_close = close[:-1]

    true_range = np.maximum.reduce([
        high[1:] - low[1:],
        np.abs(high[1:] - prev_close),
        np.abs(low[1:] - prev_close),
    ])

    value = true_range[:period].mean()
    for tr in true_range[period:]:
        value = (value * (period - 1) + tr) / period
    return float(value)


def analyze_volume(
    volumes: Sequence[float],
    period: int = 20,
    high_ratio: float = 1.5,
    low_ratio: float = 0.8
) -> VolumeAnalysis:
    """
    Compare the latest volume against the average of the preceding bars.

    Up to `period` prior bars are averaged; the latest bar is excluded from
    its own baseline.
    """
    _require('Volume', volumes, 2)

    values = _array(volumes)
    current = float(values[-1])
    average = float(values[-period - 1:-1].mean())
    ratio = current / average if average > 0 else 1.0

    if ratio > high_ratio:
        level = 'high'
    elif ratio < low_ratio:
        level = 'low'
    else:
        level = 'normal'

    return VolumeAnalysis(current=current, average=average, ratio=float(ratio), level=level)


def analyze_price_position(closes: Sequence[float]) -> PricePosition:
    """
    Derive price-vs-SMA flags used for trend classification.

    Flags that depend on an SMA the history cannot support are None.
    """
    _require('Price position', closes, 20)

    price = float(closes[-1])
    sma20 = sma(closes, 20)
    sma50 = sma(closes, 50) if len(closes) >= 50 else None
    sma200 = sma(closes, 200) if len(closes) >= 200 else None

    crosses_known = sma50 is not None and sma200 is not None

    return PricePosition(
        price=price,
        sma20=sma20,
        sma50=sma50,
        sma200=sma200,
        above_sma20=price > sma20,
        above_sma50=(price > sma50) if sma50 is not None else None,
        golden_cross=(sma50 > sma200) if crosses_known else None,
        death_cross=(sma50 < sma200) if crosses_known else None,
    )


def compute_indicators(
    prices: Sequence[PricePoint],
    params: Optional[Dict[str, Any]] = None
) -> IndicatorSet:
    """
    Compute the full indicator snapshot for a chronological price series.

    Args:
        prices: PricePoints, oldest first
        params: Optional overrides for DEFAULT_PARAMS (the `indicators`
            config section)

    Returns:
        IndicatorSet for the latest bar

    Raises:
        InsufficientDataError: If the series is shorter than the slowest
            indicator's lookback
    """
    p = dict(DEFAULT_PARAMS)
    p.update(params or {})

    required = max(MIN_HISTORY, p['macd_slow'], p['bollinger_period'], p['rsi_period'] + 1)
    _require('Technical analysis', prices, required)

    closes = [point.close for point in prices]
    highs = [point.high for point in prices]
    lows = [point.low for point in prices]
    volumes = [point.volume for point in prices]

    volume = analyze_volume(volumes, period=p['volume_period'])
    position = analyze_price_position(closes)

    return IndicatorSet(
        rsi=rsi(closes, p['rsi_period']),
        macd=macd(closes, p['macd_fast'], p['macd_slow'], p['macd_signal']),
        sma20=position.sma20,
        sma50=position.sma50,
        bollinger=bollinger_bands(closes, p['bollinger_period'], p['bollinger_std']),
        atr=atr(highs, lows, closes, p['atr_period']) if len(closes) > p['atr_period'] else None,
        volume_ratio=volume.ratio,
        volume=volume,
        position=position,
    )
