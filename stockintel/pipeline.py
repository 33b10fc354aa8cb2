"""
Analysis pipeline: wires market data, sources, aggregation, synthesis and
history together from one configuration.
"""
from dataclasses import replace
from typing import Any, Dict, Iterable, Optional, Tuple

import httpx
from loguru import logger

from stockintel.aggregator import IntelligenceAggregator
from stockintel.credentials import ConfigCredentialProvider, CredentialProvider
from stockintel.history import AnalysisHistory
from stockintel.market_data import MarketDataClient
from stockintel.models import AggregatedIntelligence, GatherContext, OrchestratorInstructions, SynthesisResult
from stockintel.quote_cache import CacheEntry, QuoteCache
from stockintel.synthesis import PromptOrchestrator, SynthesisClient


class AnalysisPipeline:
    """
    End-to-end analysis for a symbol: gather, synthesize, record.
    """

    def __init__(
        self,
        config: Dict[str, Any],
        credentials: Optional[CredentialProvider] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        """
        Initialize pipeline.

        Args:
            config: Application configuration
            credentials: Credential lookup (defaults to the config section)
            client: Shared HTTP client for every outbound call
        """
        logger.info("=" * 80)
        logger.info("INITIALIZING ANALYSIS PIPELINE")
        logger.info("=" * 80)

        self.config = config
        self.credentials = credentials or ConfigCredentialProvider(config)

        md_config = config.get('market_data', {})
        self.quote_cache = QuoteCache(ttl_seconds=float(md_config.get('quote_ttl_seconds', 60)))
        self.market_data = MarketDataClient(config, self.credentials, self.quote_cache, client)
        self.aggregator = IntelligenceAggregator(
            config, self.credentials, market_data=self.market_data, client=client
        )
        self.synthesis = SynthesisClient(config, self.credentials, client)
        self.orchestrator = PromptOrchestrator(config, self.synthesis)

        history_config = config.get('history', {})
        self.history = AnalysisHistory(
            max_per_symbol=int(history_config.get('max_per_symbol', 10)),
            path=history_config.get('path') or None,
        )

    async def gather(
        self,
        symbol: str,
        ctx: Optional[GatherContext] = None,
        quick: bool = False
    ) -> AggregatedIntelligence:
        if quick:
            return await self.aggregator.gather_quick_intelligence(symbol, ctx)
        return await self.aggregator.gather_intelligence(symbol, ctx)

    async def analyze(
        self,
        symbol: str,
        ctx: Optional[GatherContext] = None
    ) -> Tuple[AggregatedIntelligence, SynthesisResult, Optional[OrchestratorInstructions]]:
        """
        Plan per-source prompts, gather intelligence, synthesize scenarios
        and record the result.

        Planning is skipped when the caller already supplied a custom or
        per-source prompt; the instructions are then None.

        Raises:
            SynthesisError: Subclass describing why synthesis failed
        """
        ctx = ctx or GatherContext()
        instructions = None
        if not ctx.custom_prompt and not ctx.source_prompts:
            instructions = await self.orchestrator.instructions(symbol, ctx.company_name, ctx.current_price)
            ctx = replace(ctx, source_prompts=instructions.prompts)

        bundle = await self.aggregator.gather_intelligence(symbol, ctx)
        result = await self.synthesis.synthesize(bundle, ctx.company_name)
        self.history.add(result)
        return bundle, result, instructions

    async def quotes(self, symbols: Iterable[str]) -> CacheEntry:
        return await self.market_data.get_quotes(symbols)
