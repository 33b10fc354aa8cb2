"""
Intelligence aggregator: gathers every available source concurrently and
scores the resulting bundle.
"""
import asyncio
import time
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

import httpx
from loguru import logger

from stockintel.config import load_config
from stockintel.credentials import ConfigCredentialProvider, CredentialProvider
from stockintel.logging_utils import log_error_with_context
from stockintel.models import (
    ALL_SOURCES,
    AggregatedIntelligence,
    DataQuality,
    GatherContext,
    IntelligenceSource,
    Report,
    clamp,
)
from stockintel.sources import IntelligenceGatherer, build_gatherers

DEFAULT_WEIGHTS = {
    IntelligenceSource.TECHNICAL.value: 25,
    IntelligenceSource.NEWS.value: 25,
    IntelligenceSource.SOCIAL.value: 15,
    IntelligenceSource.RESEARCH.value: 20,
    IntelligenceSource.OPTIONS.value: 15,
}

QUALITY_LABELS = ((80, 'excellent'), (60, 'good'), (40, 'limited'))


def quality_label(score: float) -> str:
    for minimum, label in QUALITY_LABELS:
        if score >= minimum:
            return label
    return 'minimal'


def compute_data_quality(
    available: Sequence[IntelligenceSource],
    reports: Sequence[Report],
    weights: Optional[Mapping[str, float]] = None
) -> DataQuality:
    """
    Blend breadth and depth into one 0-100 score.

    The weights of every available source are summed, then scaled by the
    mean confidence of the reports that actually came back. An available
    source that returned nothing adds weight but no confidence.
    """
    if not reports:
        return DataQuality(score=0, label='minimal')

    weights = weights or DEFAULT_WEIGHTS
    base = sum(float(weights.get(source.value, 0)) for source in available)
    avg_confidence = sum(r.confidence for r in reports) / len(reports)
    score = int(round(clamp(base * avg_confidence / 100.0, 0, 100)))
    return DataQuality(score=score, label=quality_label(score))


class IntelligenceAggregator:
    """
    Orchestrates the intelligence sources for one symbol at a time.
    """

    def __init__(
        self,
        config: Dict[str, Any],
        credentials: CredentialProvider,
        market_data: Optional[Any] = None,
        client: Optional[httpx.AsyncClient] = None,
        gatherers: Optional[Mapping[IntelligenceSource, IntelligenceGatherer]] = None
    ):
        """
        Initialize aggregator.

        Args:
            config: Application configuration
            credentials: Credential lookup shared by all sources
            market_data: MarketDataClient for technical price history
            client: Shared HTTP client passed to every source
            gatherers: Explicit gatherers by source (defaults to one of each)
        """
        agg_config = config.get('aggregator', {})
        self.weights = dict(agg_config.get('weights') or DEFAULT_WEIGHTS)
        self.timeouts = dict(agg_config.get('timeouts') or {})
        self.quick_score = int(agg_config.get('quick_score', 25))
        self.credentials = credentials
        self.gatherers = dict(gatherers) if gatherers is not None else build_gatherers(
            config, credentials, client, market_data
        )

        logger.info(
            f"IntelligenceAggregator initialized | "
            f"Sources: {[s.value for s in self.gatherers]}, "
            f"Available: {[s.value for s in self.available_sources()]}"
        )

    def available_sources(self) -> Tuple[IntelligenceSource, ...]:
        """Sources with a gatherer whose credentials are present, in declared order."""
        return tuple(
            source for source in ALL_SOURCES
            if source in self.gatherers and self.gatherers[source].is_available()
        )

    async def _gather_one(
        self,
        source: IntelligenceSource,
        symbol: str,
        ctx: GatherContext
    ) -> Optional[Report]:
        timeout = float(self.timeouts.get(source.value, 30.0))
        try:
            return await asyncio.wait_for(self.gatherers[source].gather(symbol, ctx), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{source.value} timed out after {timeout:.0f}s for {symbol}")
            return None

    async def gather_intelligence(
        self,
        symbol: str,
        ctx: Optional[GatherContext] = None
    ) -> AggregatedIntelligence:
        """
        Gather all available sources concurrently and assemble the bundle.

        Never raises for source failures: a failed, timed-out or empty source
        simply contributes no report.

        Args:
            symbol: Stock symbol
            ctx: Optional gather context

        Returns:
            AggregatedIntelligence with reports in declared source order
        """
        symbol = symbol.upper()
        ctx = ctx or GatherContext()
        started = time.monotonic()

        available = self.available_sources()
        missing = tuple(source for source in ALL_SOURCES if source not in available)

        results = await asyncio.gather(
            *(self._gather_one(source, symbol, ctx) for source in available),
            return_exceptions=True
        )

        reports = []
        for source, result in zip(available, results):
            if isinstance(result, BaseException):
                log_error_with_context(result, f"{source.value} gather", symbol=symbol)
                continue
            if result is not None:
                reports.append(result)

        quality = compute_data_quality(available, reports, self.weights)

        logger.info(
            f"Intelligence gathered | {symbol} | "
            f"reports={len(reports)}/{len(available)} available | "
            f"missing={[s.value for s in missing]} | "
            f"quality={quality.score} ({quality.label}) | "
            f"{time.monotonic() - started:.2f}s"
        )

        return AggregatedIntelligence(
            symbol=symbol,
            reports=tuple(reports),
            available_sources=available,
            missing_sources=missing,
            data_quality=quality,
            company_name=ctx.company_name,
        )

    async def gather_quick_intelligence(
        self,
        symbol: str,
        ctx: Optional[GatherContext] = None
    ) -> AggregatedIntelligence:
        """
        Technical-only bundle with no network calls.

        Uses `ctx.price_data` only; without it the bundle has no reports.
        The quality score is fixed and low.
        """
        symbol = symbol.upper()
        ctx = ctx or GatherContext()

        report = None
        technical = self.gatherers.get(IntelligenceSource.TECHNICAL)
        if technical is not None and ctx.price_data:
            report = await technical.gather(symbol, ctx)
        else:
            logger.info(f"Quick intelligence for {symbol} has no price data to analyze")

        return AggregatedIntelligence(
            symbol=symbol,
            reports=(report,) if report is not None else (),
            available_sources=(IntelligenceSource.TECHNICAL,),
            missing_sources=tuple(s for s in ALL_SOURCES if s != IntelligenceSource.TECHNICAL),
            data_quality=DataQuality(score=self.quick_score, label=quality_label(self.quick_score)),
            company_name=ctx.company_name,
        )


def _default_aggregator(
    config: Optional[Dict[str, Any]],
    credentials: Optional[CredentialProvider],
    client: Optional[httpx.AsyncClient]
) -> IntelligenceAggregator:
    config = config if config is not None else load_config(None)
    credentials = credentials or ConfigCredentialProvider(config)
    return IntelligenceAggregator(config, credentials, client=client)


async def gather_intelligence(
    symbol: str,
    ctx: Optional[GatherContext] = None,
    config: Optional[Dict[str, Any]] = None,
    credentials: Optional[CredentialProvider] = None,
    client: Optional[httpx.AsyncClient] = None
) -> AggregatedIntelligence:
    """One-shot helper building an aggregator from config and gathering."""
    return await _default_aggregator(config, credentials, client).gather_intelligence(symbol, ctx)


async def gather_quick_intelligence(
    symbol: str,
    ctx: Optional[GatherContext] = None,
    config: Optional[Dict[str, Any]] = None
) -> AggregatedIntelligence:
    aggregator = _default_aggregator(config, None, None)
    return await aggregator.gather_quick_intelligence(symbol, ctx)
