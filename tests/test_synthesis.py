import asyncio
import json

import httpx
import pytest

from stockintel.credentials import StaticCredentialProvider
from stockintel.errors import (
    InvalidCredentialError,
    MalformedUpstreamResponse,
    RateLimitError,
    SynthesisError,
    UpstreamUnavailableError,
)
from stockintel.models import (
    AggregatedIntelligence,
    DataQuality,
    Direction,
    IntelligenceSource,
    NewsData,
    NewsHeadline,
    Report,
)
from stockintel.synthesis import (
    PromptOrchestrator,
    SynthesisClient,
    build_orchestrator_prompt,
    build_synthesis_prompt,
    build_synthesis_request,
    estimate_analysis_cost,
    fallback_instructions,
    normalize_probabilities,
    parse_synthesis_response,
    token_cost,
)


def make_bundle():
    news = NewsData(
        headlines=(NewsHeadline(title="Apple beats estimates", source="Reuters", sentiment="positive"),),
        overall_sentiment=Direction.BULLISH,
        sentiment_score=1.0,
        article_count=1,
        top_sources=("Reuters",),
        provider="finnhub",
    )
    report = Report(IntelligenceSource.NEWS, 75, news, "Found 1 recent articles on AAPL.")
    return AggregatedIntelligence(
        symbol="AAPL",
        reports=(report,),
        available_sources=(IntelligenceSource.TECHNICAL, IntelligenceSource.NEWS),
        missing_sources=(
            IntelligenceSource.SOCIAL, IntelligenceSource.RESEARCH, IntelligenceSource.OPTIONS,
        ),
        data_quality=DataQuality(score=38, label='minimal'),
        company_name="Apple Inc.",
    )


def scenario(probability, title):
    return {
        "probability": probability,
        "priceTarget": "$200",
        "timeframe": "6 months",
        "title": title,
        "summary": f"{title} summary",
        "catalysts": ["a", "b", "c", "d", "e"],
        "risks": ["r1"],
    }


ANSWER = {
    "bull": scenario(35, "Services flywheel"),
    "bear": scenario(20, "China slowdown"),
    "base": scenario(45, "Steady compounding"),
    "confidence": 68,
    "reasoning": "News is constructive while technicals are mixed.",
    "sourcesUsed": ["news-sentiment"],
    "bottomLine": "Hold with a modest bullish tilt.",
    "overallSentiment": "bullish",
    "overallScore": 6.5,
    "sourceAssessments": [
        {"source": "News Sentiment", "sentiment": "bullish", "score": 7, "reason": "Earnings beat"},
    ],
}


def anthropic_body(text):
    return {"content": [{"type": "text", "text": text}], "stop_reason": "end_turn"}


def synthesize_with(handler, keys=None):
    async def _run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            credentials = StaticCredentialProvider({'anthropic': 'sk-test'} if keys is None else keys)
            synthesis = SynthesisClient({'synthesis': {'model': 'test-model'}}, credentials, client)
            return await synthesis.synthesize(make_bundle())
    return asyncio.run(_run())


def test_probabilities_summing_to_130_are_rescaled():
    bull, bear, base = normalize_probabilities(60, 30, 40)
    assert bull + bear + base == 100
    assert (bull, bear, base) == (46, 23, 31)
    assert bull > base > bear


def test_probabilities_near_100_are_kept():
    assert normalize_probabilities(35, 20, 45) == (35, 20, 45)
    assert normalize_probabilities(40, 30, 35) == (40, 30, 35)


def test_zero_probabilities_split_evenly():
    assert normalize_probabilities(0, 0, 0) == (33, 33, 34)


def test_parse_full_answer():
    result = parse_synthesis_response("```json\n" + json.dumps(ANSWER) + "\n```", "AAPL")

    assert result.probabilities == {'bull': 35, 'base': 45, 'bear': 20}
    assert result.bull.title == "Services flywheel"
    assert len(result.bull.catalysts) == 4
    assert result.confidence == 68
    assert result.overall_sentiment == Direction.BULLISH
    assert result.source_assessments[0].score == 7
    assert result.sources_used == ("news-sentiment",)


def test_parse_applies_defaults():
    answer = {"bull": {}, "bear": {"probability": "lots"}, "base": {}, "confidence": 250,
              "overallSentiment": "euphoric", "overallScore": 42}
    result = parse_synthesis_response(json.dumps(answer), "AAPL")

    assert result.bull.title == "Bull Case"
    assert result.bear.title == "Bear Case"
    assert result.base.price_target == "N/A"
    assert result.base.timeframe == "6-12 months"
    assert result.base.summary == "No summary available."
    assert sum(result.probabilities.values()) in (99, 100)
    assert result.confidence == 100
    assert result.overall_sentiment == Direction.NEUTRAL
    assert result.overall_score == 10


def test_parse_rescales_out_of_range_probabilities():
    answer = dict(ANSWER, bull=scenario(60, "Bull"), bear=scenario(30, "Bear"), base=scenario(40, "Base"))
    result = parse_synthesis_response(json.dumps(answer), "AAPL")
    assert result.probabilities == {'bull': 46, 'base': 31, 'bear': 23}


def test_parse_rejects_missing_scenario():
    answer = {"bull": scenario(50, "Bull"), "base": scenario(50, "Base")}
    with pytest.raises(MalformedUpstreamResponse):
        parse_synthesis_response(json.dumps(answer), "AAPL")


def test_parse_rejects_non_json():
    with pytest.raises(MalformedUpstreamResponse):
        parse_synthesis_response("The outlook is positive.", "AAPL")


def test_prompt_lists_availability_and_sources():
    prompt = build_synthesis_prompt(make_bundle())
    assert "Analyze AAPL (Apple Inc.)" in prompt
    assert "Available Sources: Technical Analysis, News Sentiment" in prompt
    assert "Missing Sources: Social Sentiment, Web Research, Options Flow" in prompt
    assert "SOURCE: NEWS SENTIMENT" in prompt
    assert "Confidence: 75%" in prompt


def test_request_payload_is_json_serializable():
    payload = build_synthesis_request(make_bundle())
    encoded = json.dumps(payload)
    assert payload['missingSources'] == ['social-sentiment', 'web-research', 'options-flow']
    assert '"overall_sentiment": "bullish"' in encoded


def test_synthesize_success():
    def handler(request):
        assert request.url.path == "/v1/messages"
        assert request.headers['x-api-key'] == "sk-test"
        assert request.headers['anthropic-version'] == "2023-06-01"
        body = json.loads(request.content)
        assert body['model'] == 'test-model'
        assert "DATA AVAILABILITY" in body['messages'][0]['content']
        return httpx.Response(200, json=anthropic_body(json.dumps(ANSWER)))

    result = synthesize_with(handler)
    assert result.symbol == "AAPL"
    assert result.bottom_line == "Hold with a modest bullish tilt."


@pytest.mark.parametrize("status,error", [
    (401, InvalidCredentialError),
    (403, InvalidCredentialError),
    (429, RateLimitError),
    (500, UpstreamUnavailableError),
    (529, UpstreamUnavailableError),
])
def test_synthesize_status_errors(status, error):
    def handler(request):
        return httpx.Response(status, json={"error": {"message": "nope"}})

    with pytest.raises(error) as exc:
        synthesize_with(handler)
    assert exc.value.status_code == status


def test_synthesize_other_status_is_generic_error():
    def handler(request):
        return httpx.Response(400, json={"error": {"message": "bad request"}})

    with pytest.raises(SynthesisError) as exc:
        synthesize_with(handler)
    assert type(exc.value) is SynthesisError


def test_synthesize_transport_failure():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(UpstreamUnavailableError):
        synthesize_with(handler)


def test_synthesize_malformed_answers():
    def not_json(request):
        return httpx.Response(200, text="<html>oops</html>")

    def no_scenarios(request):
        return httpx.Response(200, json=anthropic_body('{"confidence": 50}'))

    with pytest.raises(MalformedUpstreamResponse):
        synthesize_with(not_json)
    with pytest.raises(MalformedUpstreamResponse):
        synthesize_with(no_scenarios)


@pytest.mark.parametrize("body", [
    [],
    "oops",
    {"content": [{"type": "text", "text": None}]},
    {"content": "not a list"},
])
def test_synthesize_rejects_unexpected_body_shapes(body):
    def handler(request):
        return httpx.Response(200, json=body)

    with pytest.raises(MalformedUpstreamResponse):
        synthesize_with(handler)


def test_synthesize_without_key():
    def handler(request):
        raise AssertionError("no request expected")

    with pytest.raises(InvalidCredentialError):
        synthesize_with(handler, keys={})


def test_error_messages_are_distinct():
    messages = {
        cls().user_message
        for cls in (InvalidCredentialError, RateLimitError, UpstreamUnavailableError, MalformedUpstreamResponse)
    }
    assert len(messages) == 4


def test_synthesis_records_token_usage():
    def handler(request):
        body = anthropic_body(json.dumps(ANSWER))
        body["usage"] = {"input_tokens": 2000, "output_tokens": 1000}
        return httpx.Response(200, json=body)

    result = synthesize_with(handler)
    assert result.token_usage.input_tokens == 2000
    assert result.token_usage.output_tokens == 1000
    assert result.token_usage.cost == pytest.approx(0.021)
    assert result.to_dict()["token_usage"]["cost"] == pytest.approx(0.021)


def test_token_cost_and_estimate():
    assert token_cost(1000, 1000, 0.003, 0.015) == pytest.approx(0.018)
    assert token_cost(0, 0, 0.003, 0.015) == 0

    estimate = estimate_analysis_cost()
    assert estimate["avg"] == pytest.approx(0.0261)
    assert estimate["min"] < estimate["avg"] < estimate["max"]


PLAN = {
    "companyType": "tech",
    "keyTopics": ["Cybertruck", "FSD", "Deliveries"],
    "socialPrompt": "Search X/Twitter for: $TSLA, Cybertruck, FSD from the last 7 days.",
    "researchPrompt": "Search news for: Tesla deliveries and analyst price targets from the last 14 days.",
}


def plan_with(handler, keys=None, config=None):
    async def _run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            credentials = StaticCredentialProvider({'anthropic': 'sk-test'} if keys is None else keys)
            cfg = config or {'synthesis': {'model': 'test-model'}, 'orchestrator': {'model': 'planner-model'}}
            orchestrator = PromptOrchestrator(cfg, SynthesisClient(cfg, credentials, client))
            return await orchestrator.instructions("tsla", "Tesla", 250.0)
    return asyncio.run(_run())


def test_orchestrator_plans_source_prompts():
    def handler(request):
        body = json.loads(request.content)
        assert body['model'] == 'planner-model'
        assert body['max_tokens'] == 1000
        assert 'system' not in body
        assert "STOCK: TSLA - Tesla" in body['messages'][0]['content']
        assert "CURRENT PRICE: $250.00" in body['messages'][0]['content']
        answer = anthropic_body(json.dumps(PLAN))
        answer["usage"] = {"input_tokens": 1000, "output_tokens": 200}
        return httpx.Response(200, json=answer)

    plan = plan_with(handler)

    assert plan.fallback is False
    assert plan.company_type == "tech"
    assert plan.key_topics == ("Cybertruck", "FSD", "Deliveries")
    assert plan.prompts[IntelligenceSource.SOCIAL] == PLAN["socialPrompt"]
    assert plan.prompts[IntelligenceSource.RESEARCH] == PLAN["researchPrompt"]
    assert plan.token_usage.cost == pytest.approx(0.03)
    assert plan.to_dict()["prompts"]["social-sentiment"] == PLAN["socialPrompt"]


def test_orchestrator_fills_missing_fields():
    def handler(request):
        return httpx.Response(200, json=anthropic_body('{"companyType": "spaceship", "socialPrompt": "Focus on $TSLA"}'))

    plan = plan_with(handler)
    assert plan.company_type == "other"
    assert plan.prompts[IntelligenceSource.SOCIAL] == "Focus on $TSLA"
    assert "Tesla financial performance" in plan.prompts[IntelligenceSource.RESEARCH]
    assert "TSLA" in plan.key_topics


@pytest.mark.parametrize("response", [
    httpx.Response(500, json={"error": {"message": "overloaded"}}),
    httpx.Response(429, json={"error": {"message": "slow down"}}),
    httpx.Response(200, json=anthropic_body("I would rather not.")),
    httpx.Response(200, json=[]),
])
def test_orchestrator_failures_fall_back_to_generic_prompts(response):
    def handler(request):
        return response

    plan = plan_with(handler)
    assert plan.fallback is True
    assert plan.prompts == fallback_instructions("TSLA", "Tesla").prompts
    assert plan.token_usage is None


def test_orchestrator_without_key_or_disabled_makes_no_request():
    def handler(request):
        raise AssertionError("no request expected")

    assert plan_with(handler, keys={}).fallback is True

    disabled = {'synthesis': {'model': 'test-model'}, 'orchestrator': {'enabled': False}}
    assert plan_with(handler, config=disabled).fallback is True


def test_orchestrator_prompt_without_price():
    prompt = build_orchestrator_prompt("AAPL")
    assert "STOCK: AAPL - AAPL" in prompt
    assert "CURRENT PRICE: unknown" in prompt
    assert "SECTOR: Unknown" in prompt
