import pytest

from conftest import make_prices
from stockintel.errors import InsufficientDataError
from stockintel.indicators import (
    MIN_HISTORY,
    analyze_price_position,
    analyze_volume,
    atr,
    bollinger_bands,
    compute_indicators,
    macd,
    rsi,
    sma,
)


def test_rsi_flat_series_is_fifty():
    assert rsi([100.0] * 20) == pytest.approx(50.0)


def test_rsi_monotonic_series_hits_bounds():
    rising = [100.0 + i for i in range(30)]
    falling = [200.0 - i for i in range(30)]
    assert rsi(rising) == pytest.approx(100.0)
    assert rsi(falling) == pytest.approx(0.0)


def test_rsi_mixed_series_stays_inside_bounds():
    closes = [100, 102, 101, 103, 102, 104, 103, 105, 104, 106, 105, 107, 106, 108, 107, 109]
    value = rsi(closes)
    assert 50.0 < value < 100.0


def test_rsi_needs_period_plus_one_closes():
    with pytest.raises(InsufficientDataError) as exc:
        rsi([100.0] * 14, period=14)
    assert exc.value.required == 15
    assert exc.value.available == 14
    assert isinstance(exc.value, ValueError)


def test_macd_flat_and_rising():
    flat = macd([100.0] * 30)
    assert flat.histogram == pytest.approx(0.0)
    assert flat.macd == pytest.approx(0.0)

    rising = macd([100.0 + i for i in range(30)])
    assert rising.macd > 0
    assert rising.histogram > 0
    assert rising.histogram == pytest.approx(rising.macd - rising.signal)


def test_macd_needs_slow_period():
    with pytest.raises(InsufficientDataError):
        macd([100.0] * 25)


def test_sma_uses_trailing_window():
    assert sma([1, 2, 3, 4], 2) == pytest.approx(3.5)
    with pytest.raises(InsufficientDataError):
        sma([1, 2, 3], 5)


def test_bollinger_flat_series_has_zero_width():
    bands = bollinger_bands([50.0] * 20)
    assert bands.upper == bands.lower == bands.middle == 50.0
    assert bands.percent_b == 0.5


def test_bollinger_rising_series_sits_high_in_band():
    closes = [100.0 + i for i in range(20)]
    bands = bollinger_bands(closes)
    assert bands.middle == pytest.approx(109.5)
    assert bands.lower < bands.middle < bands.upper
    assert bands.percent_b > 0.5


def test_atr_constant_range():
    closes = [100.0] * 20
    highs = [101.0] * 20
    lows = [99.0] * 20
    assert atr(highs, lows, closes) == pytest.approx(2.0)


def test_volume_ratio_excludes_latest_bar():
    result = analyze_volume([100.0] * 20 + [300.0])
    assert result.average == pytest.approx(100.0)
    assert result.ratio == pytest.approx(3.0)
    assert result.level == 'high'

    quiet = analyze_volume([100.0] * 5 + [50.0])
    assert quiet.ratio == pytest.approx(0.5)
    assert quiet.level == 'low'


def test_price_position_flags_unknown_without_history():
    closes = [100.0 + i for i in range(30)]
    position = analyze_price_position(closes)
    assert position.above_sma20 is True
    assert position.sma50 is None
    assert position.above_sma50 is None
    assert position.golden_cross is None
    assert position.death_cross is None


def test_price_position_golden_cross_on_long_uptrend():
    closes = [100.0 + i for i in range(220)]
    position = analyze_price_position(closes)
    assert position.above_sma50 is True
    assert position.golden_cross is True
    assert position.death_cross is False


def test_compute_indicators_flat_series():
    indicators = compute_indicators(make_prices([100.0] * 30))
    assert indicators.rsi == pytest.approx(50.0)
    assert indicators.macd.histogram == pytest.approx(0.0)
    assert indicators.sma20 == pytest.approx(100.0)
    assert indicators.sma50 is None
    assert indicators.bollinger.percent_b == 0.5
    assert indicators.atr == pytest.approx(2.0)
    assert indicators.volume_ratio == pytest.approx(1.0)


def test_compute_indicators_steady_uptrend():
    indicators = compute_indicators(make_prices([100.0 + i for i in range(30)]))
    assert indicators.rsi > 70
    assert indicators.macd.histogram > 0
    assert indicators.position.above_sma20 is True


def test_compute_indicators_rejects_short_history():
    with pytest.raises(InsufficientDataError) as exc:
        compute_indicators(make_prices([100.0] * (MIN_HISTORY - 1)))
    assert exc.value.required == MIN_HISTORY


def test_compute_indicators_is_pure():
    prices = make_prices([100.0 + (i % 7) * 1.5 - (i % 3) for i in range(60)])
    first = compute_indicators(prices)
    second = compute_indicators(prices)
    assert first == second
