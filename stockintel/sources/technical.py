"""
Technical analysis source. Computed locally from daily price history.
"""
from typing import Any, Dict, Optional

import httpx
from loguru import logger

from stockintel.credentials import CredentialProvider
from stockintel.errors import InsufficientDataError
from stockintel.indicators import compute_indicators
from stockintel.models import (
    AggregateScore,
    GatherContext,
    IndicatorSet,
    IntelligenceSource,
    Report,
    TechnicalData,
    TechnicalPosition,
    Trend,
)
from stockintel.signals import SignalThresholds, aggregate_signals, classify_trend, score_indicators
from stockintel.sources.base import IntelligenceGatherer

# Price within this fraction of a band counts as sitting on support/resistance
BAND_TOUCH = 0.02


class TechnicalSource(IntelligenceGatherer):
    """
    Indicator-based report. Needs no credential; uses `ctx.price_data` when
    given, otherwise pulls daily bars through the market data client.
    """

    source = IntelligenceSource.TECHNICAL
    config_key = "technical"

    def __init__(
        self,
        config: Dict[str, Any],
        credentials: CredentialProvider,
        client: Optional[httpx.AsyncClient] = None,
        market_data: Optional[Any] = None
    ):
        super().__init__(config, credentials, client)
        self.market_data = market_data
        self.indicator_params = config.get('indicators', {})
        self.thresholds = SignalThresholds.from_config(config)
        self.history_days = int(config.get('aggregator', {}).get('history_days', 365))

    def is_available(self) -> bool:
        return True

    async def _gather(self, symbol: str, ctx: GatherContext) -> Optional[Report]:
        prices = ctx.price_data
        if prices is None and self.market_data is not None:
            prices = await self.market_data.get_daily_bars(symbol, days=self.history_days)

        if not prices:
            logger.info(f"{self.name} | no price history for {symbol}")
            return None

        try:
            return self.analyze(symbol, prices, ctx.current_price)
        except InsufficientDataError as e:
            logger.info(f"{self.name} | skipping {symbol}: {e}")
            return None

    def analyze(self, symbol: str, prices, current_price: Optional[float] = None) -> Report:
        """
        Build the technical report from chronological prices.

        Raises:
            InsufficientDataError: If the history is too short
        """
        indicators = compute_indicators(prices, self.indicator_params)
        price = float(current_price) if current_price else prices[-1].close

        signals = score_indicators(indicators, price, self.thresholds)
        score = aggregate_signals(signals)
        trend, strength = classify_trend(indicators.position)

        bands = indicators.bollinger
        has_width = bands.upper > bands.lower
        position = TechnicalPosition(
            near_support=has_width and price <= bands.lower * (1 + BAND_TOUCH),
            near_resistance=has_width and price >= bands.upper * (1 - BAND_TOUCH),
            trend=trend,
            trend_strength=strength,
        )

        data = TechnicalData(
            current_price=price,
            indicators=indicators,
            signals=signals,
            aggregate_score=score,
            price_position=position,
        )

        return Report(
            source=self.source,
            confidence=technical_confidence(score),
            data=data,
            summary=technical_summary(symbol, indicators, score, position),
        )


def technical_confidence(score: AggregateScore) -> int:
    """More agreement between signals means more confidence (60-95)."""
    if score.total == 0:
        return 60
    agreement = max(score.bullish_count, score.bearish_count) / score.total
    return round(60 + agreement * 35)


def technical_summary(
    symbol: str,
    indicators: IndicatorSet,
    score: AggregateScore,
    position: TechnicalPosition
) -> str:
    parts = [
        f"{symbol} shows {score.sentiment.value} signals "
        f"({score.label}, {score.bullish_count}/{score.total} bullish)."
    ]

    if indicators.rsi < 30:
        parts.append(f"RSI at {indicators.rsi:.1f} indicates oversold conditions.")
    elif indicators.rsi > 70:
        parts.append(f"RSI at {indicators.rsi:.1f} indicates overbought conditions.")
    else:
        parts.append(f"RSI at {indicators.rsi:.1f} is in neutral territory.")

    momentum = "bullish" if indicators.macd.histogram > 0 else "bearish"
    if position.trend == Trend.SIDEWAYS:
        parts.append(f"Price is moving sideways with {momentum} momentum.")
    else:
        parts.append(f"Price is in a {position.trend_strength} {position.trend.value} with {momentum} momentum.")

    hist = indicators.macd.histogram
    if hist > 0:
        parts.append(f"MACD histogram is positive ({hist:.2f}).")
    elif hist < 0:
        parts.append(f"MACD histogram is negative ({hist:.2f}).")
    else:
        parts.append("MACD histogram is flat.")

    if position.near_support:
        parts.append("Price is testing the lower Bollinger band.")
    elif position.near_resistance:
        parts.append("Price is testing the upper Bollinger band.")

    return " ".join(parts)
