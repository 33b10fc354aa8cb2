"""
Social sentiment source (X/Twitter via Grok).
"""
from typing import Any, Dict, Optional

from stockintel.errors import ProviderError
from stockintel.models import (
    Direction,
    EngagementMetrics,
    GatherContext,
    IntelligenceSource,
    Report,
    SocialData,
    clamp,
)
from stockintel.sources.base import (
    EMPTY_REPORT_CONFIDENCE,
    IntelligenceGatherer,
    classify_sentiment,
    extract_json,
    string_list,
)

SYSTEM_PROMPT = """You are a social media sentiment analyst with access to X/Twitter data.
Analyze the current sentiment around a stock and return ONLY valid JSON.

Output format:
{
  "sentiment": {"score": <number -1 to 1>, "label": "<bullish|neutral|bearish>", "confidence": <number 0-100>},
  "metrics": {"mentionCount": <estimated number>, "trending": <boolean>, "buzzLevel": "<low|medium|high|viral>"},
  "topTakes": [{"text": "<key opinion>", "engagement": <number>, "sentiment": "<positive|neutral|negative>"}],
  "retailVsInstitutional": "<retail-heavy|mixed|institutional>"
}"""

RETAIL_MIX = ('retail-heavy', 'mixed', 'institutional')


def social_confidence(upstream_confidence: float) -> int:
    """Upstream self-reported confidence, held within 50-95."""
    return round(min(95.0, max(50.0, upstream_confidence)))


class SocialSource(IntelligenceGatherer):
    """Retail chatter sentiment from the configured social providers."""

    source = IntelligenceSource.SOCIAL
    config_key = "social"

    def __init__(self, config: Dict[str, Any], credentials, client=None):
        super().__init__(config, credentials, client)
        self.band = float(self.settings.get('sentiment_band', 0.2))

    async def _gather(self, symbol: str, ctx: GatherContext) -> Optional[Report]:
        async with self.http_client() as client:
            provider, result = await self.run_provider_chain(client, symbol, ctx)

        if not result:
            return self.empty_report(symbol)
        return self.build_report(symbol, result)

    async def fetch_grok(self, client, symbol: str, key: str, ctx: GatherContext) -> Dict[str, Any]:
        company = ctx.company_name or symbol
        user_prompt = (
            f"Analyze current X/Twitter sentiment for {symbol} ({company}).\n"
            "What are people saying? Is it trending? What's the retail vs institutional breakdown?\n"
            "Consider posts from the last 24-48 hours."
        )
        focus = ctx.prompt_for(self.source)
        if focus:
            user_prompt += f"\n\nAdditional focus: {focus}"

        content, _ = await self.chat_completion(
            client, 'grok', self.settings.get('grok_url'), key,
            self.settings.get('grok_model'), SYSTEM_PROMPT, user_prompt
        )
        try:
            result = extract_json(content)
        except ValueError as e:
            raise ProviderError('grok', f"unparsable answer: {e}")

        metrics = result.get('metrics') or {}
        if not int(metrics.get('mentionCount') or 0) and not result.get('topTakes'):
            return {}
        return result

    def build_report(self, symbol: str, result: Dict[str, Any]) -> Report:
        sentiment = result.get('sentiment') or {}
        metrics = result.get('metrics') or {}
        takes = [t for t in (result.get('topTakes') or []) if isinstance(t, dict)]

        score = clamp(float(sentiment.get('score') or 0.0), -1.0, 1.0)
        likes = int(sum(float(t.get('engagement') or 0) for t in takes))
        mix = result.get('retailVsInstitutional')

        data = SocialData(
            platform='twitter',
            mention_count=int(metrics.get('mentionCount') or 0),
            sentiment_score=round(score, 3),
            sentiment=classify_sentiment(score, self.band),
            trending=bool(metrics.get('trending', False)),
            top_takes=string_list(takes, limit=5),
            retail_vs_institutional=mix if mix in RETAIL_MIX else 'mixed',
            engagement=EngagementMetrics(
                likes=likes,
                retweets=round(likes * 0.3),
                replies=round(likes * 0.1),
            ),
            buzz_level=str(metrics.get('buzzLevel') or 'low'),
        )
        return Report(
            source=self.source,
            confidence=social_confidence(float(sentiment.get('confidence') or 0)),
            data=data,
            summary=social_summary(symbol, data),
        )

    def empty_report(self, symbol: str) -> Report:
        data = SocialData(
            platform='twitter',
            mention_count=0,
            sentiment_score=0.0,
            sentiment=Direction.NEUTRAL,
            trending=False,
            top_takes=(),
            retail_vs_institutional='mixed',
            engagement=EngagementMetrics(),
        )
        return Report(
            source=self.source,
            confidence=EMPTY_REPORT_CONFIDENCE,
            data=data,
            summary=f"No meaningful social media discussion found for {symbol}.",
        )


def social_summary(symbol: str, data: SocialData) -> str:
    parts = [
        f"X/Twitter sentiment for {symbol} is {data.sentiment.value} "
        f"(score {data.sentiment_score:+.2f}) across roughly {data.mention_count:,} mentions."
    ]
    if data.trending:
        parts.append(f"{symbol} is currently trending with {data.buzz_level} buzz.")
    else:
        parts.append(f"Buzz level is {data.buzz_level}.")
    parts.append(f"Participation looks {data.retail_vs_institutional}.")
    if data.engagement.likes:
        parts.append(f"Top takes drew about {data.engagement.likes:,} engagements.")
    return " ".join(parts)
