import json

from stockintel.history import AnalysisHistory
from stockintel.models import Scenario, SynthesisResult


def make_result(symbol="AAPL", confidence=70):
    def scenario(probability, title):
        return Scenario(probability=probability, price_target="N/A", timeframe="6-12 months",
                        title=title, summary="")

    return SynthesisResult(
        symbol=symbol,
        bull=scenario(30, "Bull Case"),
        bear=scenario(20, "Bear Case"),
        base=scenario(50, "Base Case"),
        confidence=confidence,
        reasoning="",
    )


def test_history_keeps_newest_first_and_caps():
    history = AnalysisHistory(max_per_symbol=3)
    for confidence in range(5):
        history.add(make_result(confidence=confidence))

    entries = history.get("aapl")
    assert [e['confidence'] for e in entries] == [4, 3, 2]
    assert history.latest("AAPL")['confidence'] == 4
    assert history.symbols() == ["AAPL"]


def test_history_clear():
    history = AnalysisHistory()
    history.add(make_result("AAPL"))
    history.add(make_result("MSFT"))

    history.clear("aapl")
    assert history.get("AAPL") == []
    assert history.symbols() == ["MSFT"]

    history.clear()
    assert history.symbols() == []


def test_history_persists_to_json(tmp_path):
    path = tmp_path / "nested" / "history.json"
    history = AnalysisHistory(max_per_symbol=2, path=str(path))
    history.add(make_result(confidence=60))
    history.add(make_result(confidence=65))

    saved = json.loads(path.read_text())
    assert [e['confidence'] for e in saved["AAPL"]] == [65, 60]
    assert saved["AAPL"][0]['bull']['title'] == "Bull Case"

    reloaded = AnalysisHistory(max_per_symbol=2, path=str(path))
    assert reloaded.latest("AAPL")['confidence'] == 65
    assert not list(path.parent.glob(".history-*"))


def test_history_ignores_unreadable_file(tmp_path):
    path = tmp_path / "history.json"
    path.write_text("{not json")
    history = AnalysisHistory(path=str(path))
    assert history.symbols() == []
