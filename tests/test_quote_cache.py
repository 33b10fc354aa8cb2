import asyncio

import httpx
import pytest

from stockintel.credentials import StaticCredentialProvider
from stockintel.errors import ProviderError
from stockintel.market_data import MarketDataClient
from stockintel.models import Quote
from stockintel.quote_cache import QuoteCache


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def quotes(*symbols, price=100.0):
    return {s: Quote(symbol=s, price=price) for s in symbols}


def test_empty_cache_is_stale_and_misses():
    cache = QuoteCache()
    assert cache.is_stale()
    assert cache.get(["AAPL"]) is None


def test_put_then_get_and_expire():
    clock = FakeClock()
    cache = QuoteCache(ttl_seconds=60, clock=clock)
    cache.put(["AAPL", "MSFT"], quotes("AAPL", "MSFT"), "polygon")

    hit = cache.get(["aapl"])
    assert hit.source == "polygon"
    assert list(hit.quotes_by_symbol) == ["AAPL"]
    assert not cache.is_stale()

    clock.now += 59
    assert not cache.is_stale()
    clock.now += 1
    assert cache.is_stale()
    assert cache.get(["AAPL"]) is not None


def test_missing_symbol_is_a_miss():
    cache = QuoteCache(clock=FakeClock())
    cache.put(["AAPL"], quotes("AAPL"), "polygon")
    assert cache.get(["AAPL", "TSLA"]) is None


def test_entries_are_read_only():
    cache = QuoteCache(clock=FakeClock())
    entry = cache.put(["AAPL"], quotes("AAPL"), "polygon")
    with pytest.raises(TypeError):
        entry.quotes_by_symbol["MSFT"] = Quote(symbol="MSFT", price=1.0)


def test_put_replaces_whole_batch():
    cache = QuoteCache(clock=FakeClock())
    first = cache.put(["AAPL"], quotes("AAPL"), "polygon")
    cache.put(["MSFT"], quotes("MSFT"), "alphavantage")

    assert cache.get(["AAPL"]) is None
    assert cache.entry.source == "alphavantage"
    assert "AAPL" in first.quotes_by_symbol


def test_miss_fetches_synchronously():
    cache = QuoteCache(clock=FakeClock())
    calls = []

    async def fetch(symbols):
        calls.append(symbols)
        return "polygon", quotes(*symbols)

    entry = asyncio.run(cache.get_or_refresh(["aapl", "msft"], fetch))
    assert calls == [("AAPL", "MSFT")]
    assert set(entry.quotes_by_symbol) == {"AAPL", "MSFT"}


def test_stale_hit_serves_old_data_and_refreshes_once():
    clock = FakeClock()
    cache = QuoteCache(ttl_seconds=60, clock=clock)
    cache.put(["AAPL"], quotes("AAPL", price=100.0), "polygon")
    clock.now += 120
    calls = []

    async def fetch(symbols):
        calls.append(symbols)
        await asyncio.sleep(0.01)
        return "alphavantage", quotes(*symbols, price=105.0)

    async def scenario():
        first = await cache.get_or_refresh(["AAPL"], fetch)
        second = await cache.get_or_refresh(["AAPL"], fetch)
        await cache.wait_for_refresh()
        return first, second

    first, second = asyncio.run(scenario())

    assert first.quotes_by_symbol["AAPL"].price == 100.0
    assert second.quotes_by_symbol["AAPL"].price == 100.0
    assert len(calls) == 1
    assert cache.entry.source == "alphavantage"
    assert cache.get(["AAPL"]).quotes_by_symbol["AAPL"].price == 105.0
    assert not cache.is_stale()


def test_partial_stale_read_refreshes_whole_batch():
    clock = FakeClock()
    cache = QuoteCache(ttl_seconds=60, clock=clock)
    cache.put(["AAPL", "MSFT"], quotes("AAPL", "MSFT", price=100.0), "polygon")
    clock.now += 120
    calls = []

    async def fetch(symbols):
        calls.append(symbols)
        return "polygon", quotes(*symbols, price=110.0)

    async def scenario():
        hit = await cache.get_or_refresh(["AAPL"], fetch)
        await cache.wait_for_refresh()
        return hit

    hit = asyncio.run(scenario())

    assert list(hit.quotes_by_symbol) == ["AAPL"]
    assert calls == [("AAPL", "MSFT")]
    msft = cache.get(["MSFT"])
    assert msft is not None
    assert msft.quotes_by_symbol["MSFT"].price == 110.0
    assert not cache.is_stale()


def test_failed_background_refresh_keeps_old_entry():
    clock = FakeClock()
    cache = QuoteCache(ttl_seconds=60, clock=clock)
    cache.put(["AAPL"], quotes("AAPL"), "polygon")
    clock.now += 120

    async def fetch(symbols):
        raise ProviderError("market_data", "down")

    async def scenario():
        hit = await cache.get_or_refresh(["AAPL"], fetch)
        await cache.wait_for_refresh()
        return hit

    hit = asyncio.run(scenario())
    assert hit.source == "polygon"
    assert cache.entry.source == "polygon"


def polygon_snapshot(*symbols):
    return {
        'status': 'OK',
        'tickers': [
            {
                'ticker': s,
                'todaysChange': 1.5,
                'todaysChangePerc': 0.8,
                'updated': 1700000000000000000,
                'day': {'o': 180.0, 'h': 186.0, 'l': 179.0, 'c': 185.0, 'v': 5000000},
                'prevDay': {'c': 183.5},
            }
            for s in symbols
        ],
    }


def alphavantage_quote(symbol):
    return {
        'Global Quote': {
            '01. symbol': symbol,
            '02. open': '180.00',
            '03. high': '186.00',
            '04. low': '179.00',
            '05. price': '185.00',
            '06. volume': '5000000',
            '07. latest trading day': '2024-05-01',
            '08. previous close': '183.50',
            '09. change': '1.50',
            '10. change percent': '0.8174%',
        }
    }


def run_client(config, keys, handler, coro_factory):
    async def _run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            market_data = MarketDataClient(config, StaticCredentialProvider(keys), client=client)
            return await coro_factory(market_data)
    return asyncio.run(_run())


def test_quotes_from_polygon_are_cached(config):
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json=polygon_snapshot("AAPL", "MSFT"))

    async def twice(market_data):
        first = await market_data.get_quotes(["AAPL", "MSFT"])
        second = await market_data.get_quotes(["MSFT"])
        return first, second

    first, second = run_client(config, {'polygon': 'p'}, handler, twice)

    assert len(requests) == 1
    assert requests[0].url.params['tickers'] == "AAPL,MSFT"
    assert first.source == "polygon"
    assert first.quotes_by_symbol["AAPL"].price == 185.0
    assert first.quotes_by_symbol["AAPL"].previous_close == 183.5
    assert list(second.quotes_by_symbol) == ["MSFT"]


def test_quotes_fall_back_to_alphavantage(config):
    def handler(request):
        if request.url.host == "api.polygon.io":
            return httpx.Response(429)
        return httpx.Response(200, json=alphavantage_quote(request.url.params['symbol']))

    entry = run_client(
        config, {'polygon': 'p', 'alphavantage': 'a'}, handler,
        lambda md: md.get_quotes(["AAPL"])
    )
    assert entry.source == "alphavantage"
    assert entry.quotes_by_symbol["AAPL"].change_percent == pytest.approx(0.8174)


def test_alphavantage_rate_limit_note_is_an_error(config):
    def handler(request):
        return httpx.Response(200, json={'Note': 'Thank you for using Alpha Vantage!'})

    with pytest.raises(ProviderError):
        run_client(config, {'alphavantage': 'a'}, handler, lambda md: md.fetch_quotes(("AAPL",)))


def test_no_configured_provider_raises(config):
    def handler(request):
        raise AssertionError("no request expected")

    with pytest.raises(ProviderError):
        run_client(config, {}, handler, lambda md: md.get_quotes(["AAPL"]))


def test_daily_bars_are_chronological(config):
    series = {
        '2024-05-03': {'1. open': '3', '2. high': '4', '3. low': '2', '4. close': '3.5', '5. volume': '300'},
        '2024-05-01': {'1. open': '1', '2. high': '2', '3. low': '0.5', '4. close': '1.5', '5. volume': '100'},
        '2024-05-02': {'1. open': '2', '2. high': '3', '3. low': '1', '4. close': '2.5', '5. volume': '200'},
    }

    def handler(request):
        assert request.url.params['function'] == 'TIME_SERIES_DAILY'
        return httpx.Response(200, json={'Time Series (Daily)': series})

    bars = run_client(
        config, {'alphavantage': 'a'}, handler,
        lambda md: md.get_daily_bars("aapl", days=100000)
    )
    assert [b.date for b in bars] == ['2024-05-01', '2024-05-02', '2024-05-03']
    assert bars[-1].close == 3.5
    assert bars[0].volume == 100.0
