"""
Signal scoring: indicator values to directional signals, and signals to an
aggregate verdict.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from stockintel.models import (
    AggregateScore,
    BollingerBands,
    Direction,
    IndicatorSet,
    MACDResult,
    PricePosition,
    Signal,
    Trend,
    clamp,
)


@dataclass(frozen=True)
class SignalThresholds:
    """Breakpoints for every indicator rule (the `signals` config section)."""
    rsi_oversold: float = 30.0
    rsi_overbought: float = 70.0
    bollinger_lower_pct_b: float = 0.1
    bollinger_upper_pct_b: float = 0.9
    bollinger_band_proximity: float = 0.02
    volume_high_ratio: float = 1.5
    volume_low_ratio: float = 0.8
    volume_amplification: float = 1.25
    volume_dampening: float = 0.75

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]]) -> "SignalThresholds":
        section = (config or {}).get('signals', {}) or {}
        known = {k: float(v) for k, v in section.items() if k in cls.__dataclass_fields__}
        return cls(**known)


# Label breakpoints on the aggregate percentage, checked top-down
LABEL_BREAKPOINTS: Tuple[Tuple[float, bool, str, Direction], ...] = (
    (80.0, True, "Strong Bullish", Direction.BULLISH),
    (60.0, True, "Bullish", Direction.BULLISH),
    (40.0, False, "Neutral", Direction.NEUTRAL),
    (20.0, False, "Bearish", Direction.BEARISH),
)
FLOOR_LABEL = ("Strong Bearish", Direction.BEARISH)


def _neutral(indicator: str, value: Optional[float], description: str) -> Signal:
    return Signal(indicator, Direction.NEUTRAL, 0.0, value, description)


def rsi_signal(value: float, thresholds: SignalThresholds = SignalThresholds()) -> Signal:
    if value < thresholds.rsi_oversold:
        strength = 0.5 + (thresholds.rsi_oversold - value) / thresholds.rsi_oversold
        return Signal('RSI', Direction.BULLISH, clamp(strength, 0, 1), value,
                      f"RSI {value:.1f} is oversold")
    if value > thresholds.rsi_overbought:
        strength = 0.5 + (value - thresholds.rsi_overbought) / (100 - thresholds.rsi_overbought)
        return Signal('RSI', Direction.BEARISH, clamp(strength, 0, 1), value,
                      f"RSI {value:.1f} is overbought")
    return _neutral('RSI', value, f"RSI {value:.1f} is neutral")


def macd_signal(result: MACDResult) -> Signal:
    hist = result.histogram
    scale = abs(result.macd) + abs(result.signal)
    strength = clamp(abs(hist) / scale, 0, 1) if scale > 0 else 0.0

    if hist > 0 and hist > result.signal:
        return Signal('MACD', Direction.BULLISH, strength, hist, "MACD histogram positive and above signal")
    if hist < 0:
        return Signal('MACD', Direction.BEARISH, strength, hist, "MACD histogram negative")
    return _neutral('MACD', hist, "MACD momentum flat")


def sma_signal(price: float, average: Optional[float], name: str) -> Signal:
    """Price versus one moving average. Unavailable averages score neutral."""
    if average is None:
        return _neutral(name, None, f"{name} unavailable (insufficient history)")

    distance = (price - average) / average if average else 0.0
    strength = clamp(abs(distance) * 10, 0, 1)

    if price > average:
        return Signal(name, Direction.BULLISH, strength, average, f"Price above {name}")
    if price < average:
        return Signal(name, Direction.BEARISH, strength, average, f"Price below {name}")
    return _neutral(name, average, f"Price at {name}")


def bollinger_signal(
    price: float,
    bands: BollingerBands,
    thresholds: SignalThresholds = SignalThresholds()
) -> Signal:
    if bands.upper <= bands.lower:
        return _neutral('Bollinger', bands.percent_b, "Bands have no width")

    proximity = thresholds.bollinger_band_proximity
    lower_zone = bands.percent_b < thresholds.bollinger_lower_pct_b or price <= bands.lower * (1 + proximity)
    upper_zone = bands.percent_b > thresholds.bollinger_upper_pct_b or price >= bands.upper * (1 - proximity)
    strength = clamp(abs(bands.percent_b - 0.5) * 2, 0, 1)

    if lower_zone and not upper_zone:
        return Signal('Bollinger', Direction.BULLISH, strength, bands.percent_b, "Price near lower band")
    if upper_zone and not lower_zone:
        return Signal('Bollinger', Direction.BEARISH, strength, bands.percent_b, "Price near upper band")
    return _neutral('Bollinger', bands.percent_b, "Price inside the bands")


def volume_signal(
    ratio: float,
    signals: Sequence[Signal],
    thresholds: SignalThresholds = SignalThresholds()
) -> Tuple[Signal, List[Signal]]:
    """
    Volume confirms, it never leads.

    High relative volume takes the prevailing direction of the other signals
    (neutral on a tie) and strengthens the directional ones; low volume
    weakens them.

    Returns:
        (volume signal, adjusted copies of `signals`)
    """
    if ratio > thresholds.volume_high_ratio:
        factor = thresholds.volume_amplification
    elif ratio < thresholds.volume_low_ratio:
        factor = thresholds.volume_dampening
    else:
        return _neutral('Volume', ratio, f"Volume {ratio:.2f}x average"), list(signals)

    adjusted = [
        s if s.direction == Direction.NEUTRAL
        else Signal(s.indicator, s.direction, clamp(s.strength * factor, 0, 1), s.value, s.description)
        for s in signals
    ]

    if factor < 1:
        return _neutral('Volume', ratio, f"Low volume {ratio:.2f}x average"), adjusted

    bullish = sum(1 for s in signals if s.direction == Direction.BULLISH)
    bearish = sum(1 for s in signals if s.direction == Direction.BEARISH)
    if bullish == bearish:
        return _neutral('Volume', ratio, f"High volume {ratio:.2f}x average, no prevailing direction"), adjusted

    direction = Direction.BULLISH if bullish > bearish else Direction.BEARISH
    strength = clamp((ratio - thresholds.volume_high_ratio) / thresholds.volume_high_ratio + 0.5, 0, 1)
    return (
        Signal('Volume', direction, strength, ratio, f"High volume {ratio:.2f}x average confirms {direction.value} move"),
        adjusted,
    )


def score_indicators(
    indicators: IndicatorSet,
    price: float,
    thresholds: SignalThresholds = SignalThresholds()
) -> Tuple[Signal, ...]:
    """
    Produce the six technical signals: RSI, MACD, SMA20, SMA50, Bollinger, Volume.
    """
    base = [
        rsi_signal(indicators.rsi, thresholds),
        macd_signal(indicators.macd),
        sma_signal(price, indicators.sma20, 'SMA20'),
        sma_signal(price, indicators.sma50, 'SMA50'),
        bollinger_signal(price, indicators.bollinger, thresholds),
    ]
    volume, adjusted = volume_signal(indicators.volume_ratio, base, thresholds)
    return tuple(adjusted) + (volume,)


def aggregate_signals(signals: Sequence[Signal]) -> AggregateScore:
    """
    Reduce signals to a single score.

    Neutral signals count as half bullish, so the percentage is 50 whenever
    bullish and bearish counts are equal.
    """
    bullish = sum(1 for s in signals if s.direction == Direction.BULLISH)
    bearish = sum(1 for s in signals if s.direction == Direction.BEARISH)
    neutral = sum(1 for s in signals if s.direction == Direction.NEUTRAL)
    total = len(signals)

    if total == 0:
        percentage = 50.0
    else:
        percentage = clamp((bullish + 0.5 * neutral) / total * 100.0, 0.0, 100.0)

    if bullish == bearish:
        label, sentiment = "Neutral", Direction.NEUTRAL
    else:
        label, sentiment = label_for_percentage(percentage)

    return AggregateScore(
        bullish_count=bullish,
        bearish_count=bearish,
        neutral_count=neutral,
        total=total,
        percentage=round(percentage, 1),
        sentiment=sentiment,
        label=label,
    )


def label_for_percentage(percentage: float) -> Tuple[str, Direction]:
    for breakpoint, inclusive, label, sentiment in LABEL_BREAKPOINTS:
        if percentage > breakpoint or (inclusive and percentage == breakpoint):
            return label, sentiment
    return FLOOR_LABEL


def classify_trend(position: PricePosition) -> Tuple[Trend, str]:
    """
    Classify the trend from price-vs-SMA alignment.

    Strong: price above (below) every available SMA and a golden (death)
    cross. Moderate: the SMA alignment alone. Anything else is sideways.

    Returns:
        (trend, strength) where strength is "strong", "moderate" or "none"
    """
    averages = [a for a in (position.sma20, position.sma50) if a is not None]
    if not averages:
        return Trend.SIDEWAYS, "none"

    price = position.price
    if all(price > a for a in averages):
        return Trend.UPTREND, "strong" if position.golden_cross else "moderate"
    if all(price < a for a in averages):
        return Trend.DOWNTREND, "strong" if position.death_cross else "moderate"
    return Trend.SIDEWAYS, "none"
