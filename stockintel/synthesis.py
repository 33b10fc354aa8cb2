"""
Scenario synthesis: hands the aggregated bundle to an LLM (Anthropic Messages
API) and validates the bull/bear/base answer. Before a deep analysis the
same API plans per-source research prompts (PromptOrchestrator); every call
records its token usage and USD cost.

This is the one stage allowed to fail loudly. Each failure class raises its
own SynthesisError subclass with a distinct user-facing message.
"""
import json
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx
from loguru import logger

from stockintel.credentials import CredentialProvider
from stockintel.errors import (
    InvalidCredentialError,
    MalformedUpstreamResponse,
    RateLimitError,
    SynthesisError,
    UpstreamUnavailableError,
)
from stockintel.logging_utils import log_synthesis
from stockintel.models import (
    AggregatedIntelligence,
    Direction,
    IntelligenceSource,
    OrchestratorInstructions,
    Scenario,
    SourceAssessment,
    SynthesisResult,
    TokenUsage,
    clamp,
    to_jsonable,
)
from stockintel.sources.base import extract_json

SEPARATOR = "=" * 63

SYSTEM_PROMPT = """You are a senior equity analyst synthesizing intelligence from several independent sources.

Weigh the sources: technical analysis 25%, news sentiment 25%, social sentiment 15%,
web research 20%, options flow 15%. Identify and explain conflicts between sources and
attribute insights to the source they came from. Scale your confidence with the number of
sources available (all five: 80-95, three or four: 65-85, two: 50-70, technical only: 40-60)
and state which missing sources limit the analysis.

OUTPUT FORMAT: valid JSON only, no markdown.
{
  "bull": {"probability": number, "priceTarget": string, "timeframe": string, "title": string, "summary": string, "catalysts": string[], "risks": string[]},
  "bear": {same shape},
  "base": {same shape},
  "confidence": number,
  "reasoning": string,
  "sourcesUsed": string[],
  "bottomLine": string,
  "overallSentiment": "bullish" | "bearish" | "neutral",
  "overallScore": number,
  "sourceAssessments": [{"source": string, "sentiment": "bullish" | "bearish" | "neutral", "score": number, "reason": string}]
}
The three probabilities must sum to 100. Only assess sources that provided data."""

DEFAULT_TITLES = {'bull': 'Bull Case', 'bear': 'Bear Case', 'base': 'Base Case'}
DEFAULT_REASONING = "Analysis synthesized from available intelligence sources."
DEFAULT_BOTTOM_LINE = "Review the scenarios above for a comprehensive view of potential outcomes."
MAX_LIST_ITEMS = 4


def _number(value: Any, default: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return float(value)


def _text(value: Any, default: str) -> str:
    return value if isinstance(value, str) and value.strip() else default


def _items(value: Any) -> Tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(str(item) for item in value if item)[:MAX_LIST_ITEMS]


def build_synthesis_request(bundle: AggregatedIntelligence, company_name: Optional[str] = None) -> Dict[str, Any]:
    """JSON payload describing the bundle."""
    return {
        'symbol': bundle.symbol,
        'companyName': company_name or bundle.company_name,
        'reports': [report.to_dict() for report in bundle.reports],
        'availableSources': [s.value for s in bundle.available_sources],
        'missingSources': [s.value for s in bundle.missing_sources],
        'dataQuality': to_jsonable(bundle.data_quality),
    }


def build_synthesis_prompt(bundle: AggregatedIntelligence, company_name: Optional[str] = None) -> str:
    name = company_name or bundle.company_name
    lines = [
        f"Analyze {bundle.symbol}{f' ({name})' if name else ''} using the following intelligence:",
        "",
        SEPARATOR,
        "DATA AVAILABILITY",
        SEPARATOR,
        f"Available Sources: {', '.join(s.display_name for s in bundle.available_sources) or 'None'}",
        f"Missing Sources: {', '.join(s.display_name for s in bundle.missing_sources) or 'None'}",
        f"Data Quality: {bundle.data_quality.label} ({bundle.data_quality.score}%)",
        "",
    ]

    for report in bundle.reports:
        lines.extend([
            SEPARATOR,
            f"SOURCE: {report.source.display_name.upper()}",
            SEPARATOR,
            f"Confidence: {report.confidence}%",
            f"Summary: {report.summary}",
            "",
            "Data:",
            json.dumps(to_jsonable(report.data), indent=2),
            "",
        ])

    lines.extend([
        SEPARATOR,
        "TASK",
        SEPARATOR,
        "Generate Bull/Bear/Base scenarios as JSON.",
    ])
    return "\n".join(lines)


def normalize_probabilities(bull: float, bear: float, base: float) -> Tuple[int, int, int]:
    """
    Bring scenario probabilities back to a total of 100.

    Totals inside [90, 110] are kept (rounded). Anything else is scaled
    proportionally; base absorbs the rounding remainder.

    Returns:
        (bull, bear, base)
    """
    total = bull + bear + base
    if total <= 0:
        return 33, 33, 34
    if 90 <= total <= 110:
        return int(round(bull)), int(round(bear)), int(round(base))

    factor = 100.0 / total
    new_bull = int(round(bull * factor))
    new_bear = int(round(bear * factor))
    return new_bull, new_bear, 100 - new_bull - new_bear


def normalize_scenario(raw: Dict[str, Any], key: str) -> Scenario:
    return Scenario(
        probability=int(round(_number(raw.get('probability'), 33))),
        price_target=_text(raw.get('priceTarget'), 'N/A'),
        timeframe=_text(raw.get('timeframe'), '6-12 months'),
        title=_text(raw.get('title'), DEFAULT_TITLES[key]),
        summary=_text(raw.get('summary'), 'No summary available.'),
        catalysts=_items(raw.get('catalysts')),
        risks=_items(raw.get('risks')),
    )


def _direction(value: Any) -> Direction:
    try:
        return Direction(value)
    except ValueError:
        return Direction.NEUTRAL


def parse_synthesis_response(text: str, symbol: str) -> SynthesisResult:
    """
    Validate a raw model answer into a SynthesisResult.

    Raises:
        MalformedUpstreamResponse: If there is no JSON object or a scenario
            is missing
    """
    try:
        parsed = extract_json(text)
    except ValueError as e:
        raise MalformedUpstreamResponse(f"Synthesis response is not valid JSON: {e}")

    missing = [key for key in ('bull', 'bear', 'base') if not isinstance(parsed.get(key), dict)]
    if missing:
        raise MalformedUpstreamResponse(f"Synthesis response is missing scenarios: {', '.join(missing)}")

    bull = normalize_scenario(parsed['bull'], 'bull')
    bear = normalize_scenario(parsed['bear'], 'bear')
    base = normalize_scenario(parsed['base'], 'base')

    p_bull, p_bear, p_base = normalize_probabilities(bull.probability, bear.probability, base.probability)
    if (p_bull, p_bear, p_base) != (bull.probability, bear.probability, base.probability):
        logger.debug(
            f"Scenario probabilities normalized for {symbol}: "
            f"{bull.probability}/{bear.probability}/{base.probability} -> {p_bull}/{p_bear}/{p_base}"
        )

    assessments: List[SourceAssessment] = []
    raw_assessments = parsed.get('sourceAssessments')
    for item in raw_assessments if isinstance(raw_assessments, list) else []:
        if not isinstance(item, dict):
            continue
        assessments.append(SourceAssessment(
            source=_text(item.get('source'), 'Unknown'),
            sentiment=_direction(item.get('sentiment')),
            score=clamp(_number(item.get('score'), 5), 1, 10),
            reason=_text(item.get('reason'), ''),
        ))

    sources_used = parsed.get('sourcesUsed')

    return SynthesisResult(
        symbol=symbol,
        bull=replace(bull, probability=p_bull),
        bear=replace(bear, probability=p_bear),
        base=replace(base, probability=p_base),
        confidence=int(round(clamp(_number(parsed.get('confidence'), 70), 0, 100))),
        reasoning=_text(parsed.get('reasoning'), DEFAULT_REASONING),
        sources_used=tuple(str(s) for s in sources_used) if isinstance(sources_used, list) else (),
        bottom_line=_text(parsed.get('bottomLine'), DEFAULT_BOTTOM_LINE),
        overall_sentiment=_direction(parsed.get('overallSentiment')),
        overall_score=clamp(_number(parsed.get('overallScore'), 5), 1, 10),
        source_assessments=tuple(assessments),
    )


def read_message(response: httpx.Response) -> Tuple[str, Dict[str, Any]]:
    """
    Concatenate the text blocks of a Messages API response.

    Returns:
        (text, parsed body)

    Raises:
        MalformedUpstreamResponse: Body is not a JSON object or carries no text
    """
    try:
        body = response.json()
    except ValueError as e:
        raise MalformedUpstreamResponse(f"Synthesis body is not JSON: {e}")
    if not isinstance(body, dict):
        raise MalformedUpstreamResponse("Synthesis body is not a JSON object")

    content = body.get('content')
    blocks = content if isinstance(content, list) else []
    text = "".join(
        block['text'] for block in blocks
        if isinstance(block, dict) and block.get('type') == 'text' and isinstance(block.get('text'), str)
    )
    if not text:
        raise MalformedUpstreamResponse("Synthesis response has no text content")
    return text, body


def token_cost(input_tokens: int, output_tokens: int, input_per_1k: float, output_per_1k: float) -> float:
    """USD cost of one call, rounded to 4 decimals."""
    return round(input_tokens / 1000 * input_per_1k + output_tokens / 1000 * output_per_1k, 4)


def token_usage(body: Dict[str, Any], input_per_1k: float, output_per_1k: float) -> TokenUsage:
    usage = body.get('usage') if isinstance(body.get('usage'), dict) else {}
    input_tokens = int(_number(usage.get('input_tokens'), 0))
    output_tokens = int(_number(usage.get('output_tokens'), 0))
    return TokenUsage(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        cost=token_cost(input_tokens, output_tokens, input_per_1k, output_per_1k),
    )


def estimate_analysis_cost(
    input_per_1k: float = 0.003,
    output_per_1k: float = 0.015,
    avg_input_tokens: int = 1200,
    avg_output_tokens: int = 1500
) -> Dict[str, float]:
    """Expected synthesis cost range for a typical prompt and answer size."""
    avg = avg_input_tokens / 1000 * input_per_1k + avg_output_tokens / 1000 * output_per_1k
    return {
        'min': round(avg * 0.7, 4),
        'max': round(avg * 1.5, 4),
        'avg': round(avg, 4),
    }


class SynthesisClient:
    """
    Anthropic Messages API client for scenario synthesis.
    """

    credential_id = "anthropic"

    def __init__(
        self,
        config: Dict[str, Any],
        credentials: CredentialProvider,
        client: Optional[httpx.AsyncClient] = None
    ):
        synthesis_config = config.get('synthesis', {})
        self.url = synthesis_config.get('url', 'https://api.anthropic.com/v1/messages')
        self.model = synthesis_config.get('model')
        self.api_version = synthesis_config.get('api_version', '2023-06-01')
        self.max_tokens = int(synthesis_config.get('max_tokens', 4096))
        self.timeout = float(synthesis_config.get('timeout', 120.0))
        self.input_cost_per_1k = float(synthesis_config.get('input_cost_per_1k', 0.003))
        self.output_cost_per_1k = float(synthesis_config.get('output_cost_per_1k', 0.015))
        self.credentials = credentials
        self.client = client

        logger.info(f"SynthesisClient initialized | Model: {self.model}")

    def is_available(self) -> bool:
        return self.credentials.has_credential(self.credential_id)

    def estimated_cost(self) -> Dict[str, float]:
        return estimate_analysis_cost(self.input_cost_per_1k, self.output_cost_per_1k)

    @asynccontextmanager
    async def _http(self) -> AsyncIterator[httpx.AsyncClient]:
        if self.client is not None:
            yield self.client
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                yield client

    async def send(self, payload: Dict[str, Any], symbol: str) -> Tuple[str, Dict[str, Any]]:
        """
        POST one Messages request and return its text and body.

        Raises:
            InvalidCredentialError: Missing or rejected API key
            RateLimitError: HTTP 429
            UpstreamUnavailableError: 5xx, timeout or connection failure
            MalformedUpstreamResponse: Body has no usable text
            SynthesisError: Any other non-success status
        """
        api_key = self.credentials.get_credential(self.credential_id)
        if not api_key:
            raise InvalidCredentialError("No synthesis API key configured.")

        headers = {
            "x-api-key": api_key,
            "anthropic-version": self.api_version,
            "content-type": "application/json",
        }

        try:
            async with self._http() as client:
                response = await client.post(self.url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Synthesis transport error for {symbol}: {e}")
            raise UpstreamUnavailableError() from e

        self._raise_for_status(response, symbol)
        return read_message(response)

    async def synthesize(
        self,
        bundle: AggregatedIntelligence,
        company_name: Optional[str] = None
    ) -> SynthesisResult:
        """
        Generate bull/bear/base scenarios for a bundle.

        Raises:
            SynthesisError: Subclass per failure mode (see `send`), or
                MalformedUpstreamResponse when the answer is not a valid
                scenario document
        """
        payload = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": SYSTEM_PROMPT,
            "messages": [{"role": "user", "content": build_synthesis_prompt(bundle, company_name)}],
        }
        text, body = await self.send(payload, bundle.symbol)

        usage = token_usage(body, self.input_cost_per_1k, self.output_cost_per_1k)
        result = replace(parse_synthesis_response(text, bundle.symbol), token_usage=usage)
        log_synthesis(
            bundle.symbol, result.confidence, result.probabilities,
            quality=bundle.data_quality.label, sources=len(bundle.reports), cost=usage.cost
        )
        return result

    @staticmethod
    def _raise_for_status(response: httpx.Response, symbol: str) -> None:
        status = response.status_code
        if status == 200:
            return

        if status in (401, 403):
            error: SynthesisError = InvalidCredentialError(status_code=status)
        elif status == 429:
            error = RateLimitError(status_code=status)
        elif status >= 500:
            error = UpstreamUnavailableError(status_code=status)
        else:
            error = SynthesisError(f"Synthesis request failed (HTTP {status}).", status_code=status)

        logger.error(f"Synthesis failed for {symbol} | HTTP {status} | {error}")
        raise error


COMPANY_TYPES = ('biotech', 'tech', 'finance', 'retail', 'energy', 'healthcare', 'industrial', 'other')

# answer key per orchestrated source
PROMPT_KEYS = {
    IntelligenceSource.SOCIAL: 'socialPrompt',
    IntelligenceSource.RESEARCH: 'researchPrompt',
}


def build_orchestrator_prompt(
    symbol: str,
    company_name: Optional[str] = None,
    current_price: Optional[float] = None,
    sector: Optional[str] = None
) -> str:
    price = f"${current_price:.2f}" if current_price else "unknown"
    return f"""You are a financial research orchestrator. Plan the research for one stock and write
focused search prompts for the other AI systems.

STOCK: {symbol} - {company_name or symbol}
SECTOR: {sector or 'Unknown'}
CURRENT PRICE: {price}

1. Classify the company: {', '.join(COMPANY_TYPES)}.
2. List the key topics to research (products, trials, executives, competitors, recent events).
3. Write one prompt for social media search and one for web/analyst research.

OUTPUT FORMAT (JSON only, no markdown):
{{
  "companyType": "<one of the types above>",
  "keyTopics": ["topic1", "topic2", "topic3"],
  "socialPrompt": "Search X/Twitter for: <cashtags, product and executive names, last 7 days>",
  "researchPrompt": "Search news for: <analyst coverage, filings, industry context, last 14 days>"
}}

Example for AAPL (Apple - tech):
{{
  "companyType": "tech",
  "keyTopics": ["iPhone sales", "Services revenue", "AI features", "China market"],
  "socialPrompt": "Search X/Twitter for: $AAPL, Apple stock, iPhone, Apple AI. Find retail sentiment and product reactions from the last 7 days.",
  "researchPrompt": "Search news for: Apple financial performance, iPhone market share, services growth, China sales data from the last 14 days."
}}

Now plan the research for {symbol}:"""


def fallback_instructions(symbol: str, company_name: Optional[str] = None) -> OrchestratorInstructions:
    company = company_name or symbol
    return OrchestratorInstructions(
        company_type='other',
        key_topics=(company, symbol, 'stock', 'earnings'),
        prompts={
            IntelligenceSource.SOCIAL: (
                f"Search X/Twitter for: ${symbol}, {company} stock. "
                "Find retail sentiment and recent mentions from the last 7 days."
            ),
            IntelligenceSource.RESEARCH: (
                f"Search news for: {company} financial performance, analyst coverage "
                "and recent developments from the last 14 days."
            ),
        },
        fallback=True,
    )


def parse_orchestrator_response(
    text: str,
    symbol: str,
    company_name: Optional[str] = None,
    usage: Optional[TokenUsage] = None
) -> OrchestratorInstructions:
    """
    Validate the planning answer; missing prompts take the fallback wording.

    Raises:
        MalformedUpstreamResponse: If there is no JSON object
    """
    try:
        parsed = extract_json(text)
    except ValueError as e:
        raise MalformedUpstreamResponse(f"Orchestrator response is not valid JSON: {e}")

    defaults = fallback_instructions(symbol, company_name)
    company_type = parsed.get('companyType')
    topics = _items(parsed.get('keyTopics'))

    return OrchestratorInstructions(
        company_type=company_type if company_type in COMPANY_TYPES else 'other',
        key_topics=topics or defaults.key_topics,
        prompts={
            source: _text(parsed.get(key), defaults.prompts[source])
            for source, key in PROMPT_KEYS.items()
        },
        token_usage=usage,
    )


class PromptOrchestrator:
    """
    Asks the synthesis model for per-source research prompts before a deep
    analysis. Any failure falls back to generic prompts; gathering never
    waits on a broken planner.
    """

    def __init__(self, config: Dict[str, Any], synthesis: SynthesisClient):
        orchestrator_config = config.get('orchestrator', {})
        self.enabled = bool(orchestrator_config.get('enabled', True))
        self.model = orchestrator_config.get('model') or synthesis.model
        self.max_tokens = int(orchestrator_config.get('max_tokens', 1000))
        self.input_cost_per_1k = float(orchestrator_config.get('input_cost_per_1k', 0.015))
        self.output_cost_per_1k = float(orchestrator_config.get('output_cost_per_1k', 0.075))
        self.synthesis = synthesis

    async def instructions(
        self,
        symbol: str,
        company_name: Optional[str] = None,
        current_price: Optional[float] = None,
        sector: Optional[str] = None
    ) -> OrchestratorInstructions:
        symbol = symbol.upper()
        if not self.enabled or not self.synthesis.is_available():
            return fallback_instructions(symbol, company_name)

        payload = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": [{
                "role": "user",
                "content": build_orchestrator_prompt(symbol, company_name, current_price, sector),
            }],
        }
        try:
            text, body = await self.synthesis.send(payload, symbol)
            usage = token_usage(body, self.input_cost_per_1k, self.output_cost_per_1k)
            result = parse_orchestrator_response(text, symbol, company_name, usage)
        except SynthesisError as e:
            logger.warning(f"Orchestrator failed for {symbol}, using generic prompts: {e}")
            return fallback_instructions(symbol, company_name)

        logger.info(
            f"Orchestrator planned {symbol} | type={result.company_type} | "
            f"topics={len(result.key_topics)} | cost=${usage.cost:.4f}"
        )
        return result
