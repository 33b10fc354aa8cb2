"""
Intelligence sources. One gatherer per IntelligenceSource.
"""
from typing import Any, Dict, Optional

import httpx

from stockintel.credentials import CredentialProvider
from stockintel.models import IntelligenceSource
from stockintel.sources.base import IntelligenceGatherer, classify_sentiment, extract_json
from stockintel.sources.news import NewsSource
from stockintel.sources.options import OptionsSource
from stockintel.sources.research import ResearchSource
from stockintel.sources.social import SocialSource
from stockintel.sources.technical import TechnicalSource

SOURCE_CLASSES = {
    IntelligenceSource.TECHNICAL: TechnicalSource,
    IntelligenceSource.NEWS: NewsSource,
    IntelligenceSource.SOCIAL: SocialSource,
    IntelligenceSource.RESEARCH: ResearchSource,
    IntelligenceSource.OPTIONS: OptionsSource,
}


def build_gatherers(
    config: Dict[str, Any],
    credentials: CredentialProvider,
    client: Optional[httpx.AsyncClient] = None,
    market_data: Optional[Any] = None
) -> Dict[IntelligenceSource, IntelligenceGatherer]:
    """Instantiate every source, in declared source order."""
    gatherers: Dict[IntelligenceSource, IntelligenceGatherer] = {}
    for source, source_class in SOURCE_CLASSES.items():
        if source_class is TechnicalSource:
            gatherers[source] = TechnicalSource(config, credentials, client, market_data=market_data)
        else:
            gatherers[source] = source_class(config, credentials, client)
    return gatherers


__all__ = [
    'IntelligenceGatherer',
    'TechnicalSource',
    'NewsSource',
    'SocialSource',
    'ResearchSource',
    'OptionsSource',
    'SOURCE_CLASSES',
    'build_gatherers',
    'classify_sentiment',
    'extract_json',
]
