import pytest
from fastapi.testclient import TestClient

from stockintel.credentials import StaticCredentialProvider
from stockintel.errors import RateLimitError
from stockintel.models import Scenario, SynthesisResult
from stockintel.server.main import make_app


def make_client(config, keys=None):
    app = make_app(config, StaticCredentialProvider(keys or {}))
    app.state.pipeline.orchestrator.enabled = False
    return app, TestClient(app)


def fake_result(symbol):
    def scenario(probability, title):
        return Scenario(probability=probability, price_target="$1", timeframe="1 year", title=title, summary="")

    return SynthesisResult(
        symbol=symbol,
        bull=scenario(40, "Bull Case"),
        bear=scenario(20, "Bear Case"),
        base=scenario(40, "Base Case"),
        confidence=55,
        reasoning="Limited data.",
    )


def test_health_reports_sources(config):
    _, client = make_client(config, {'finnhub': 'k'})
    body = client.get("/health").json()

    assert body["status"] == "healthy"
    assert body["available_sources"] == ["technical-analysis", "news-sentiment"]
    assert "options-flow" in body["missing_sources"]
    assert body["synthesis_available"] is False
    assert body["estimated_analysis_cost"]["avg"] == pytest.approx(0.0261)


def test_intelligence_without_providers_returns_empty_bundle(config):
    _, client = make_client(config)

    resp = client.get("/intelligence/aapl")
    assert resp.status_code == 200
    bundle = resp.json()["intelligence"]
    assert bundle["symbol"] == "AAPL"
    assert bundle["reports"] == []
    assert bundle["available_sources"] == ["technical-analysis"]

    quick = client.get("/intelligence/aapl", params={"quick": "true"}).json()["intelligence"]
    assert quick["data_quality"] == {"score": 25, "label": "minimal"}


def test_analysis_without_key_is_unauthorized(config):
    _, client = make_client(config)
    resp = client.post("/analysis/AAPL")

    assert resp.status_code == 401
    assert resp.json()["error"] == "InvalidCredentialError"


def test_analysis_rate_limit_maps_to_429(config, monkeypatch):
    app, client = make_client(config, {'anthropic': 'sk'})

    async def limited(bundle, company_name=None):
        raise RateLimitError(status_code=429)

    monkeypatch.setattr(app.state.pipeline.synthesis, "synthesize", limited)
    resp = client.post("/analysis/AAPL")
    assert resp.status_code == 429
    assert resp.json()["message"] == RateLimitError.user_message


def test_analysis_is_recorded_in_history(config, monkeypatch):
    app, client = make_client(config, {'anthropic': 'sk'})

    async def synthesize(bundle, company_name=None):
        return fake_result(bundle.symbol)

    monkeypatch.setattr(app.state.pipeline.synthesis, "synthesize", synthesize)

    resp = client.post("/analysis/msft", params={"company": "Microsoft"})
    assert resp.status_code == 200
    assert resp.json()["synthesis"]["bull"]["probability"] == 40
    assert resp.json()["orchestration"]["fallback"] is True

    history = client.get("/analysis/MSFT/history").json()
    assert len(history["analyses"]) == 1
    assert history["analyses"][0]["confidence"] == 55

    assert client.get("/analysis").json()["symbols"] == ["MSFT"]


def test_quotes_validation_and_provider_failure(config):
    _, client = make_client(config)

    assert client.get("/quotes", params={"symbols": " , "}).status_code == 400
    resp = client.get("/quotes", params={"symbols": "AAPL"})
    assert resp.status_code == 502
    assert resp.json()["error"] == "ProviderError"
