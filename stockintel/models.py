"""
Data models for the intelligence pipeline.

Reports are a tagged variant: every Report carries an IntelligenceSource tag
and exactly one payload type per tag (see REPORT_DATA_TYPES).
"""
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence, Tuple, Union


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def to_jsonable(obj: Any) -> Any:
    """Convert dataclasses, enums and tuples into plain JSON-serializable values."""
    if isinstance(obj, Enum):
        return obj.value
    if is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: to_jsonable(getattr(obj, f.name)) for f in fields(obj)}
    if isinstance(obj, Mapping):
        return {(k.value if isinstance(k, Enum) else k): to_jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_jsonable(item) for item in obj]
    return obj


class Direction(str, Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


class Trend(str, Enum):
    UPTREND = "uptrend"
    DOWNTREND = "downtrend"
    SIDEWAYS = "sideways"


class IntelligenceSource(str, Enum):
    TECHNICAL = "technical-analysis"
    NEWS = "news-sentiment"
    SOCIAL = "social-sentiment"
    RESEARCH = "web-research"
    OPTIONS = "options-flow"

    @property
    def display_name(self) -> str:
        return SOURCE_DISPLAY_NAMES[self]


ALL_SOURCES: Tuple[IntelligenceSource, ...] = tuple(IntelligenceSource)

SOURCE_DISPLAY_NAMES = {
    IntelligenceSource.TECHNICAL: "Technical Analysis",
    IntelligenceSource.NEWS: "News Sentiment",
    IntelligenceSource.SOCIAL: "Social Sentiment",
    IntelligenceSource.RESEARCH: "Web Research",
    IntelligenceSource.OPTIONS: "Options Flow",
}


@dataclass(frozen=True)
class PricePoint:
    """One trading day."""
    date: str
    open: float
    high: float
    low: float
    close: float
    volume: float


def prices_from_records(
    records: Iterable[Union[Mapping[str, Any], PricePoint]],
    newest_first: bool = False
) -> Tuple[PricePoint, ...]:
    """
    Build a chronological (oldest first) tuple of PricePoints.

    Args:
        records: PricePoints or mappings with date/open/high/low/close/volume
        newest_first: True when the records are ordered newest to oldest

    Returns:
        Tuple of PricePoints, oldest first
    """
    points = []
    for record in records:
        if isinstance(record, PricePoint):
            points.append(record)
            continue
        points.append(PricePoint(
            date=str(record.get('date', '')),
            open=float(record['open']),
            high=float(record['high']),
            low=float(record['low']),
            close=float(record['close']),
            volume=float(record.get('volume', 0) or 0),
        ))
    if newest_first:
        points.reverse()
    return tuple(points)


@dataclass(frozen=True)
class Quote:
    symbol: str
    price: float
    change: float = 0.0
    change_percent: float = 0.0
    volume: float = 0.0
    open: float = 0.0
    high: float = 0.0
    low: float = 0.0
    previous_close: float = 0.0
    latest_trading_day: str = ""


@dataclass(frozen=True)
class MACDResult:
    macd: float
    signal: float
    histogram: float


@dataclass(frozen=True)
class BollingerBands:
    upper: float
    middle: float
    lower: float
    percent_b: float


@dataclass(frozen=True)
class VolumeAnalysis:
    current: float
    average: float
    ratio: float
    level: str  # "high" | "normal" | "low"


@dataclass(frozen=True)
class PricePosition:
    """Price relative to its moving averages. None means not enough history."""
    price: float
    sma20: Optional[float]
    sma50: Optional[float]
    sma200: Optional[float]
    above_sma20: Optional[bool]
    above_sma50: Optional[bool]
    golden_cross: Optional[bool]
    death_cross: Optional[bool]


@dataclass(frozen=True)
class IndicatorSet:
    rsi: float
    macd: MACDResult
    sma20: float
    sma50: Optional[float]
    bollinger: BollingerBands
    atr: Optional[float]
    volume_ratio: float
    volume: VolumeAnalysis
    position: PricePosition


@dataclass(frozen=True)
class Signal:
    indicator: str
    direction: Direction
    strength: float
    value: Optional[float] = None
    description: str = ""


@dataclass(frozen=True)
class AggregateScore:
    bullish_count: int
    bearish_count: int
    neutral_count: int
    total: int
    percentage: float
    sentiment: Direction
    label: str


@dataclass(frozen=True)
class TechnicalPosition:
    near_support: bool
    near_resistance: bool
    trend: Trend
    trend_strength: str  # "strong" | "moderate" | "none"


@dataclass(frozen=True)
class TechnicalData:
    current_price: float
    indicators: IndicatorSet
    signals: Tuple[Signal, ...]
    aggregate_score: AggregateScore
    price_position: TechnicalPosition


@dataclass(frozen=True)
class NewsHeadline:
    title: str
    source: str
    url: str = ""
    published_at: str = ""
    sentiment: str = "neutral"  # positive | neutral | negative
    relevance: float = 1.0


@dataclass(frozen=True)
class NewsData:
    headlines: Tuple[NewsHeadline, ...]
    overall_sentiment: Direction
    sentiment_score: float
    article_count: int
    top_sources: Tuple[str, ...]
    provider: Optional[str] = None


@dataclass(frozen=True)
class EngagementMetrics:
    likes: int = 0
    retweets: int = 0
    replies: int = 0


@dataclass(frozen=True)
class SocialData:
    platform: str
    mention_count: int
    sentiment_score: float
    sentiment: Direction
    trending: bool
    top_takes: Tuple[str, ...]
    retail_vs_institutional: str
    engagement: EngagementMetrics
    buzz_level: str = "low"


@dataclass(frozen=True)
class PriceTargets:
    low: float
    median: float
    high: float
    number_of_analysts: Optional[int] = None


@dataclass(frozen=True)
class Citation:
    title: str
    url: str
    snippet: str = ""


@dataclass(frozen=True)
class ResearchData:
    key_findings: Tuple[str, ...]
    recent_developments: Tuple[str, ...]
    analyst_consensus: str
    price_targets: Optional[PriceTargets]
    upcoming_events: Tuple[str, ...]
    citations: Tuple[Citation, ...]
    provider: Optional[str] = None


@dataclass(frozen=True)
class LargeOrder:
    contract_type: str  # call | put
    strike: float
    expiry: str
    premium: float
    volume: float
    open_interest: float
    sentiment: Direction


@dataclass(frozen=True)
class OptionsData:
    contract_count: int
    put_call_ratio: float
    total_call_volume: float
    total_put_volume: float
    total_call_oi: float
    total_put_oi: float
    avg_call_iv: float
    avg_put_iv: float
    aggregate_delta: float
    unusual_activity: bool
    large_orders: Tuple[LargeOrder, ...]
    max_pain: Optional[float]
    gamma_exposure: str  # positive | negative | neutral
    institutional_flow: Direction


ReportData = Union[TechnicalData, NewsData, SocialData, ResearchData, OptionsData]

REPORT_DATA_TYPES = {
    IntelligenceSource.TECHNICAL: TechnicalData,
    IntelligenceSource.NEWS: NewsData,
    IntelligenceSource.SOCIAL: SocialData,
    IntelligenceSource.RESEARCH: ResearchData,
    IntelligenceSource.OPTIONS: OptionsData,
}


@dataclass(frozen=True)
class Report:
    """
    One source's intelligence. Confidence is clamped into [0, 100] on creation
    and the payload type must match the source tag.
    """
    source: IntelligenceSource
    confidence: int
    data: ReportData
    summary: str
    timestamp: str = field(default_factory=utc_now)

    def __post_init__(self):
        expected = REPORT_DATA_TYPES[self.source]
        if not isinstance(self.data, expected):
            raise TypeError(
                f"{self.source.value} report needs {expected.__name__}, "
                f"got {type(self.data).__name__}"
            )
        object.__setattr__(self, 'confidence', int(round(clamp(float(self.confidence), 0, 100))))

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)


@dataclass(frozen=True)
class GatherContext:
    company_name: Optional[str] = None
    price_data: Optional[Sequence[PricePoint]] = None
    current_price: Optional[float] = None
    custom_prompt: Optional[str] = None
    source_prompts: Optional[Mapping[IntelligenceSource, str]] = None

    def prompt_for(self, source: IntelligenceSource) -> Optional[str]:
        """Extra focus for one source: its own prompt, else the shared custom prompt."""
        if self.source_prompts and self.source_prompts.get(source):
            return self.source_prompts[source]
        return self.custom_prompt


@dataclass(frozen=True)
class DataQuality:
    score: int
    label: str


@dataclass(frozen=True)
class AggregatedIntelligence:
    symbol: str
    reports: Tuple[Report, ...]
    available_sources: Tuple[IntelligenceSource, ...]
    missing_sources: Tuple[IntelligenceSource, ...]
    data_quality: DataQuality
    company_name: Optional[str] = None
    timestamp: str = field(default_factory=utc_now)

    def report_for(self, source: IntelligenceSource) -> Optional[Report]:
        for report in self.reports:
            if report.source == source:
                return report
        return None

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)


@dataclass(frozen=True)
class Scenario:
    probability: int
    price_target: str
    timeframe: str
    title: str
    summary: str
    catalysts: Tuple[str, ...] = ()
    risks: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SourceAssessment:
    source: str
    sentiment: Direction
    score: float
    reason: str


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int
    output_tokens: int
    cost: float


@dataclass(frozen=True)
class OrchestratorInstructions:
    """Per-source research prompts written by the synthesis model before gathering."""
    company_type: str
    key_topics: Tuple[str, ...]
    prompts: Mapping[IntelligenceSource, str]
    token_usage: Optional[TokenUsage] = None
    fallback: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)


@dataclass(frozen=True)
class SynthesisResult:
    symbol: str
    bull: Scenario
    bear: Scenario
    base: Scenario
    confidence: int
    reasoning: str
    sources_used: Tuple[str, ...] = ()
    bottom_line: Optional[str] = None
    overall_sentiment: Direction = Direction.NEUTRAL
    overall_score: float = 5
    source_assessments: Tuple[SourceAssessment, ...] = ()
    token_usage: Optional[TokenUsage] = None
    timestamp: str = field(default_factory=utc_now)

    @property
    def probabilities(self) -> Dict[str, int]:
        return {
            'bull': self.bull.probability,
            'base': self.base.probability,
            'bear': self.bear.probability,
        }

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)
