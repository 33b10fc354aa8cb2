"""
News sentiment source.

Headlines come from the first provider in `sources.news.providers` that has
a credential and answers (Finnhub company news, then NewsAPI by default) and
are scored with a keyword lexicon.
"""
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

import httpx

from stockintel.errors import ProviderError
from stockintel.models import (
    Direction,
    GatherContext,
    IntelligenceSource,
    NewsData,
    NewsHeadline,
    Report,
)
from stockintel.sources.base import EMPTY_REPORT_CONFIDENCE, IntelligenceGatherer, classify_sentiment

POSITIVE_WORDS = (
    'surge', 'jump', 'gain', 'rise', 'beat', 'profit', 'growth', 'bullish', 'upgrade',
    'record', 'soar', 'rally', 'boost', 'exceed', 'outperform', 'strong', 'positive',
)
NEGATIVE_WORDS = (
    'fall', 'drop', 'decline', 'loss', 'miss', 'cut', 'bearish', 'downgrade', 'crash',
    'plunge', 'tumble', 'sink', 'weak', 'negative', 'concern', 'risk', 'warning',
)

COMPANY_NAMES = {
    'AAPL': 'Apple',
    'MSFT': 'Microsoft',
    'GOOGL': 'Google Alphabet',
    'AMZN': 'Amazon',
    'NVDA': 'NVIDIA',
    'META': 'Meta Facebook',
    'TSLA': 'Tesla',
    'JPM': 'JPMorgan Chase',
    'AMD': 'AMD Advanced Micro Devices',
    'NFLX': 'Netflix',
    'SPY': 'S&P 500 ETF',
    'QQQ': 'NASDAQ-100 ETF',
}

SENTIMENT_VALUES = {'positive': 1, 'neutral': 0, 'negative': -1}


def headline_sentiment(headline: str) -> str:
    """Rule-based sentiment for one headline: positive, negative or neutral."""
    lower = headline.lower()
    positive = sum(1 for word in POSITIVE_WORDS if word in lower)
    negative = sum(1 for word in NEGATIVE_WORDS if word in lower)
    if positive > negative:
        return 'positive'
    if negative > positive:
        return 'negative'
    return 'neutral'


def news_confidence(article_count: int, sentiment_score: float) -> int:
    """
    Base 60, plus up to 15 for article volume and up to 10 for sentiment
    strength, capped at 90.
    """
    confidence = 60.0
    if article_count >= 5:
        confidence += 15
    elif article_count >= 3:
        confidence += 10
    elif article_count >= 1:
        confidence += 5
    confidence += abs(sentiment_score) * 10
    return min(90, round(confidence))


class NewsSource(IntelligenceGatherer):
    """News headline sentiment with an ordered provider fallback."""

    source = IntelligenceSource.NEWS
    config_key = "news"

    def __init__(self, config: Dict[str, Any], credentials, client: Optional[httpx.AsyncClient] = None):
        super().__init__(config, credentials, client)
        self.band = float(self.settings.get('sentiment_band', 0.2))
        self.max_articles = int(self.settings.get('max_articles', 10))
        self.days_back = int(self.settings.get('days_back', 7))

    async def _gather(self, symbol: str, ctx: GatherContext) -> Optional[Report]:
        async with self.http_client() as client:
            provider, headlines = await self.run_provider_chain(client, symbol, ctx)

        if not headlines:
            return self.empty_report(symbol)
        return self.build_report(symbol, headlines, provider)

    async def fetch_finnhub(self, client, symbol: str, key: str, ctx: GatherContext) -> List[NewsHeadline]:
        to_date = datetime.now(timezone.utc).date()
        from_date = to_date - timedelta(days=self.days_back)
        data = await self.get_json(
            client, 'finnhub', f"{self.settings.get('finnhub_url')}/company-news",
            params={'symbol': symbol, 'from': from_date.isoformat(), 'to': to_date.isoformat(), 'token': key}
        )
        if not isinstance(data, list):
            raise ProviderError('finnhub', 'unexpected response format')

        headlines = []
        for item in data[:self.max_articles]:
            title = (item.get('headline') or '').strip()
            if not title:
                continue
            published = item.get('datetime')
            headlines.append(NewsHeadline(
                title=title,
                source=item.get('source') or 'Finnhub',
                url=item.get('url') or '',
                published_at=datetime.fromtimestamp(published, timezone.utc).isoformat() if published else '',
                sentiment=headline_sentiment(title),
            ))
        return headlines

    async def fetch_newsapi(self, client, symbol: str, key: str, ctx: GatherContext) -> List[NewsHeadline]:
        query = ctx.company_name or COMPANY_NAMES.get(symbol, symbol)
        data = await self.get_json(
            client, 'newsapi', f"{self.settings.get('newsapi_url')}/everything",
            params={'q': query, 'language': 'en', 'sortBy': 'publishedAt',
                    'pageSize': self.max_articles, 'apiKey': key}
        )
        if data.get('status') == 'error':
            raise ProviderError('newsapi', data.get('message', 'error status'))

        headlines = []
        for item in (data.get('articles') or [])[:self.max_articles]:
            title = (item.get('title') or '').strip()
            if not title or title == '[Removed]':
                continue
            headlines.append(NewsHeadline(
                title=title,
                source=(item.get('source') or {}).get('name') or 'NewsAPI',
                url=item.get('url') or '',
                published_at=item.get('publishedAt') or '',
                sentiment=headline_sentiment(title),
            ))
        return headlines

    def build_report(self, symbol: str, headlines: Sequence[NewsHeadline], provider: Optional[str]) -> Report:
        score = sum(SENTIMENT_VALUES[h.sentiment] for h in headlines) / len(headlines)
        top_sources = tuple(name for name, _ in Counter(h.source for h in headlines).most_common(3))

        data = NewsData(
            headlines=tuple(headlines),
            overall_sentiment=classify_sentiment(score, self.band),
            sentiment_score=round(score, 3),
            article_count=len(headlines),
            top_sources=top_sources,
            provider=provider,
        )
        return Report(
            source=self.source,
            confidence=news_confidence(data.article_count, data.sentiment_score),
            data=data,
            summary=news_summary(symbol, data),
        )

    def empty_report(self, symbol: str) -> Report:
        data = NewsData(
            headlines=(),
            overall_sentiment=Direction.NEUTRAL,
            sentiment_score=0.0,
            article_count=0,
            top_sources=(),
        )
        return Report(
            source=self.source,
            confidence=EMPTY_REPORT_CONFIDENCE,
            data=data,
            summary=f"No recent news articles found for {symbol}.",
        )


def news_summary(symbol: str, data: NewsData) -> str:
    tone = {
        Direction.BULLISH: 'positive',
        Direction.BEARISH: 'negative',
        Direction.NEUTRAL: 'mixed',
    }[data.overall_sentiment]
    counts = Counter(h.sentiment for h in data.headlines)

    parts = [
        f"Found {data.article_count} recent articles on {symbol}.",
        f"Overall news sentiment is {tone} (score {data.sentiment_score:+.2f}).",
        f"{counts['positive']} positive, {counts['negative']} negative and "
        f"{counts['neutral']} neutral headlines.",
    ]
    if data.top_sources:
        parts.append(f"Top sources: {', '.join(data.top_sources)}.")
    return " ".join(parts)
