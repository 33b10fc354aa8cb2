"""
Web research source: analyst consensus, price targets, recent developments.

Providers are tried in `sources.research.providers` order (Gemini, then
Perplexity by default).
"""
from typing import Any, Dict, Optional

from stockintel.errors import ProviderError
from stockintel.models import (
    Citation,
    GatherContext,
    IntelligenceSource,
    PriceTargets,
    Report,
    ResearchData,
)
from stockintel.sources.base import (
    EMPTY_REPORT_CONFIDENCE,
    IntelligenceGatherer,
    extract_json,
    string_list,
)

RESEARCH_SCHEMA = """Return ONLY valid JSON:
{
  "research": {
    "analystConsensus": "<strong-buy|buy|hold|sell|strong-sell>",
    "averagePriceTarget": <number or null>,
    "priceTargetRange": {"low": <number>, "high": <number>} or null,
    "numberOfAnalysts": <number or null>
  },
  "keyFindings": ["<finding 1 with date>", "<finding 2 with date>", "<finding 3 with date>"],
  "recentDevelopments": ["<development 1 with date>", "<development 2 with date>"],
  "upcomingEvents": ["<event with date>"]
}"""

PROVIDER_LABELS = {'gemini': 'Gemini', 'perplexity': 'Perplexity'}


def research_prompt(symbol: str, company: str, price: Optional[float], custom: Optional[str]) -> str:
    lines = [
        f"Research {symbol} ({company}) using the most recent public information.",
        "Cover the current analyst consensus and price targets, the most important",
        "developments from the last 30 days, and upcoming scheduled events.",
    ]
    if price:
        lines.append(f"The stock currently trades at ${price:.2f}.")
    if custom:
        lines.append(f"Additional focus: {custom}")
    lines.append("")
    lines.append(RESEARCH_SCHEMA)
    return "\n".join(lines)


class ResearchSource(IntelligenceGatherer):
    """Analyst and fundamentals research via LLM web search providers."""

    source = IntelligenceSource.RESEARCH
    config_key = "research"

    def __init__(self, config: Dict[str, Any], credentials, client=None):
        super().__init__(config, credentials, client)
        self.provider_confidence = dict(self.settings.get('confidence', {}) or {})

    async def _gather(self, symbol: str, ctx: GatherContext) -> Optional[Report]:
        async with self.http_client() as client:
            provider, result = await self.run_provider_chain(client, symbol, ctx)

        if not result:
            return self.empty_report(symbol)
        return self.build_report(symbol, provider, result, ctx.current_price)

    async def fetch_gemini(self, client, symbol: str, key: str, ctx: GatherContext) -> Dict[str, Any]:
        prompt = research_prompt(symbol, ctx.company_name or symbol, ctx.current_price, ctx.prompt_for(self.source))
        url = f"{self.settings.get('gemini_url')}/models/{self.settings.get('gemini_model')}:generateContent"
        body = await self.post_json(
            client, 'gemini', url,
            {
                "contents": [{"parts": [{"text": prompt}]}],
                "generationConfig": {"temperature": 0.3},
            },
            headers={"x-goog-api-key": key}
        )
        try:
            text = body["candidates"][0]["content"]["parts"][0]["text"]
            result = extract_json(text)
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise ProviderError('gemini', f"unparsable answer: {e}")

        result['_citations'] = [{
            'title': 'Gemini AI Analysis',
            'url': 'https://ai.google.dev',
            'snippet': 'AI-generated research based on web data',
        }]
        return result if _has_findings(result) else {}

    async def fetch_perplexity(self, client, symbol: str, key: str, ctx: GatherContext) -> Dict[str, Any]:
        prompt = research_prompt(symbol, ctx.company_name or symbol, ctx.current_price, ctx.prompt_for(self.source))
        content, body = await self.chat_completion(
            client, 'perplexity', self.settings.get('perplexity_url'), key,
            self.settings.get('perplexity_model'),
            "You are an equity research assistant. Cite recent sources.", prompt
        )
        try:
            result = extract_json(content)
        except ValueError as e:
            raise ProviderError('perplexity', f"unparsable answer: {e}")

        result['_citations'] = [
            {'title': url, 'url': url} for url in (body.get('citations') or []) if isinstance(url, str)
        ]
        return result if _has_findings(result) else {}

    def build_report(
        self,
        symbol: str,
        provider: str,
        result: Dict[str, Any],
        current_price: Optional[float] = None
    ) -> Report:
        research = result.get('research') or {}
        consensus = str(research.get('analystConsensus') or 'unknown')
        targets = _price_targets(research, current_price)

        data = ResearchData(
            key_findings=string_list(result.get('keyFindings'), limit=5),
            recent_developments=string_list(result.get('recentDevelopments'), limit=5),
            analyst_consensus=f"Analyst consensus: {consensus.upper()}",
            price_targets=targets,
            upcoming_events=string_list(result.get('upcomingEvents'), limit=5),
            citations=tuple(
                Citation(title=c.get('title', ''), url=c.get('url', ''), snippet=c.get('snippet', ''))
                for c in result.get('_citations', [])
            ),
            provider=provider,
        )

        confidence = float(self.provider_confidence.get(provider, 70))
        if targets is not None:
            confidence += 5

        return Report(
            source=self.source,
            confidence=confidence,
            data=data,
            summary=research_summary(symbol, data),
        )

    def empty_report(self, symbol: str) -> Report:
        data = ResearchData(
            key_findings=(),
            recent_developments=(),
            analyst_consensus="Analyst consensus: UNKNOWN",
            price_targets=None,
            upcoming_events=(),
            citations=(),
        )
        return Report(
            source=self.source,
            confidence=EMPTY_REPORT_CONFIDENCE,
            data=data,
            summary=f"No recent research findings available for {symbol}.",
        )


def _has_findings(result: Dict[str, Any]) -> bool:
    return bool(string_list(result.get('keyFindings')) or string_list(result.get('recentDevelopments')))


def _price_targets(research: Dict[str, Any], current_price: Optional[float]) -> Optional[PriceTargets]:
    average = research.get('averagePriceTarget')
    if not isinstance(average, (int, float)) or average <= 0:
        return None

    target_range = research.get('priceTargetRange') or {}
    low = target_range.get('low') or (current_price * 0.8 if current_price else average)
    high = target_range.get('high') or (current_price * 1.3 if current_price else average)
    analysts = research.get('numberOfAnalysts')

    return PriceTargets(
        low=float(low),
        median=float(average),
        high=float(high),
        number_of_analysts=int(analysts) if isinstance(analysts, (int, float)) else None,
    )


def research_summary(symbol: str, data: ResearchData) -> str:
    label = PROVIDER_LABELS.get(data.provider or '', data.provider or 'web')
    parts = [
        f"{label} research on {symbol} surfaced {len(data.key_findings)} key findings.",
        f"{data.analyst_consensus}.",
    ]
    if data.price_targets is not None:
        t = data.price_targets
        parts.append(
            f"Average analyst price target is ${t.median:.2f} (range ${t.low:.2f}-${t.high:.2f})."
        )
    parts.append(
        f"{len(data.recent_developments)} recent developments and "
        f"{len(data.upcoming_events)} upcoming events noted."
    )
    return " ".join(parts)
