"""
Multi-source stock intelligence: technical indicators, news, social,
research and options flow gathered concurrently and synthesized into
bull/bear/base scenarios.
"""
from stockintel.aggregator import (
    IntelligenceAggregator,
    compute_data_quality,
    gather_intelligence,
    gather_quick_intelligence,
)
from stockintel.models import (
    ALL_SOURCES,
    AggregatedIntelligence,
    GatherContext,
    IntelligenceSource,
    PricePoint,
    Report,
)

__version__ = "0.1.0"

__all__ = [
    'ALL_SOURCES',
    'AggregatedIntelligence',
    'GatherContext',
    'IntelligenceAggregator',
    'IntelligenceSource',
    'PricePoint',
    'Report',
    'compute_data_quality',
    'gather_intelligence',
    'gather_quick_intelligence',
]
