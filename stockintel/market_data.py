"""
Market data providers (quotes and daily bars) with ordered fallback.
"""
import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Optional, Tuple

import httpx
from loguru import logger

from stockintel.credentials import CredentialProvider
from stockintel.errors import ProviderError
from stockintel.models import PricePoint, Quote, prices_from_records
from stockintel.quote_cache import CacheEntry, QuoteCache


class MarketDataProvider(ABC):
    """
    Abstract base class for quote/bar providers.
    """

    name: str = "base"

    def __init__(self, config: Dict[str, Any], api_key: Optional[str]):
        self.config = config
        self.api_key = api_key or ''

    def is_available(self) -> bool:
        return bool(self.api_key)

    @abstractmethod
    async def get_quotes(self, client: httpx.AsyncClient, symbols: Tuple[str, ...]) -> Dict[str, Quote]:
        pass

    @abstractmethod
    async def get_daily_bars(self, client: httpx.AsyncClient, symbol: str, days: int) -> List[Dict[str, Any]]:
        """Daily bars as dicts, in any order."""
        pass

    async def _get(self, client: httpx.AsyncClient, url: str, params: Dict[str, Any]) -> Any:
        response = await client.get(url, params=params)
        if response.status_code != 200:
            raise ProviderError(self.name, f"HTTP {response.status_code}", response.status_code)
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(self.name, f"invalid JSON: {e}")


class PolygonMarketData(MarketDataProvider):
    """Polygon.io: one bulk snapshot call covers the whole symbol list."""

    name = "polygon"

    async def get_quotes(self, client, symbols):
        body = await self._get(
            client,
            f"{self.config.get('polygon_url')}/v2/snapshot/locale/us/markets/stocks/tickers",
            {'tickers': ','.join(symbols), 'apiKey': self.api_key}
        )
        quotes = {}
        for ticker in body.get('tickers') or []:
            day = ticker.get('day') or {}
            prev = ticker.get('prevDay') or {}
            updated = ticker.get('updated')
            quotes[ticker['ticker']] = Quote(
                symbol=ticker['ticker'],
                price=float(day.get('c') or prev.get('c') or 0.0),
                change=float(ticker.get('todaysChange') or 0.0),
                change_percent=float(ticker.get('todaysChangePerc') or 0.0),
                volume=float(day.get('v') or prev.get('v') or 0.0),
                open=float(day.get('o') or prev.get('o') or 0.0),
                high=float(day.get('h') or prev.get('h') or 0.0),
                low=float(day.get('l') or prev.get('l') or 0.0),
                previous_close=float(prev.get('c') or 0.0),
                # updated is in nanoseconds
                latest_trading_day=(
                    datetime.fromtimestamp(updated / 1e9, timezone.utc).date().isoformat() if updated else ''
                ),
            )
        return quotes

    async def get_daily_bars(self, client, symbol, days):
        to_date = datetime.now(timezone.utc).date()
        from_date = to_date - timedelta(days=days)
        body = await self._get(
            client,
            f"{self.config.get('polygon_url')}/v2/aggs/ticker/{symbol}/range/1/day/"
            f"{from_date.isoformat()}/{to_date.isoformat()}",
            {'adjusted': 'true', 'sort': 'asc', 'limit': 50000, 'apiKey': self.api_key}
        )
        return [
            {
                'date': datetime.fromtimestamp(bar['t'] / 1000, timezone.utc).date().isoformat(),
                'open': bar['o'],
                'high': bar['h'],
                'low': bar['l'],
                'close': bar['c'],
                'volume': bar.get('v', 0),
            }
            for bar in body.get('results') or []
        ]


class AlphaVantageMarketData(MarketDataProvider):
    """Alpha Vantage: one GLOBAL_QUOTE call per symbol."""

    name = "alphavantage"

    def _check(self, body: Dict[str, Any]) -> None:
        if body.get('Error Message'):
            raise ProviderError(self.name, body['Error Message'])
        if body.get('Note') or body.get('Information'):
            raise ProviderError(self.name, 'API rate limit exceeded', 429)

    async def _quote(self, client, symbol: str) -> Optional[Quote]:
        body = await self._get(
            client, self.config.get('alphavantage_url'),
            {'function': 'GLOBAL_QUOTE', 'symbol': symbol, 'apikey': self.api_key}
        )
        self._check(body)
        quote = body.get('Global Quote') or {}
        if not quote.get('05. price'):
            logger.warning(f"Alpha Vantage has no quote for {symbol}")
            return None
        return Quote(
            symbol=quote.get('01. symbol', symbol),
            open=float(quote.get('02. open', 0)),
            high=float(quote.get('03. high', 0)),
            low=float(quote.get('04. low', 0)),
            price=float(quote['05. price']),
            volume=float(quote.get('06. volume', 0)),
            latest_trading_day=quote.get('07. latest trading day', ''),
            previous_close=float(quote.get('08. previous close', 0)),
            change=float(quote.get('09. change', 0)),
            change_percent=float(str(quote.get('10. change percent', '0')).rstrip('%') or 0),
        )

    async def get_quotes(self, client, symbols):
        results = await asyncio.gather(*(self._quote(client, s) for s in symbols))
        return {q.symbol: q for q in results if q is not None}

    async def get_daily_bars(self, client, symbol, days):
        body = await self._get(
            client, self.config.get('alphavantage_url'),
            {
                'function': 'TIME_SERIES_DAILY',
                'symbol': symbol,
                'outputsize': 'full' if days > 100 else 'compact',
                'apikey': self.api_key,
            }
        )
        self._check(body)
        series = body.get('Time Series (Daily)') or {}
        cutoff = (datetime.now(timezone.utc).date() - timedelta(days=days)).isoformat()
        return [
            {
                'date': date,
                'open': values['1. open'],
                'high': values['2. high'],
                'low': values['3. low'],
                'close': values['4. close'],
                'volume': values.get('5. volume', 0),
            }
            for date, values in sorted(series.items())
            if date >= cutoff
        ]


PROVIDER_CLASSES = {
    'polygon': PolygonMarketData,
    'alphavantage': AlphaVantageMarketData,
}


class MarketDataClient:
    """
    Quotes and daily bars from the first provider that answers.
    Quotes are served through the QuoteCache.
    """

    def __init__(
        self,
        config: Dict[str, Any],
        credentials: CredentialProvider,
        cache: Optional[QuoteCache] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        """
        Initialize market data client.

        Args:
            config: Full application configuration
            credentials: Credential lookup
            cache: Quote cache; a private one is created when omitted
            client: Shared HTTP client
        """
        md_config = config.get('market_data', {})
        self.config = md_config
        self.client = client
        self.timeout = float(md_config.get('timeout', 15.0))
        self.cache = cache or QuoteCache(ttl_seconds=float(md_config.get('quote_ttl_seconds', 60)))

        self.providers: List[MarketDataProvider] = []
        for name in md_config.get('providers', []):
            provider_class = PROVIDER_CLASSES.get(name)
            if provider_class is None:
                logger.warning(f"Unknown market data provider '{name}' ignored")
                continue
            self.providers.append(provider_class(md_config, credentials.get_credential(name)))

        logger.info(
            f"MarketDataClient initialized | "
            f"Order: {[p.name for p in self.providers]}, "
            f"Available: {[p.name for p in self.providers if p.is_available()]}"
        )

    @asynccontextmanager
    async def _http(self) -> AsyncIterator[httpx.AsyncClient]:
        if self.client is not None:
            yield self.client
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                yield client

    async def get_quotes(self, symbols: Iterable[str]) -> CacheEntry:
        """Quotes for symbols, from cache when fresh (stale reads refresh in background)."""
        return await self.cache.get_or_refresh(symbols, self.fetch_quotes)

    async def fetch_quotes(self, symbols: Tuple[str, ...]) -> Tuple[str, Mapping[str, Quote]]:
        """
        Fetch quotes bypassing the cache.

        Returns:
            (provider name, quotes by symbol)

        Raises:
            ProviderError: If every provider failed
        """
        async with self._http() as client:
            for provider in self.providers:
                if not provider.is_available():
                    continue
                try:
                    quotes = await provider.get_quotes(client, symbols)
                except Exception as e:
                    logger.warning(f"Quote fetch from {provider.name} failed: {e}")
                    continue
                if quotes:
                    logger.debug(f"Retrieved {len(quotes)} quotes from {provider.name}")
                    return provider.name, quotes
                logger.warning(f"{provider.name} returned no quotes")

        logger.error(f"All market data sources failed for {', '.join(symbols)}")
        raise ProviderError('market_data', 'no provider returned quotes')

    async def get_daily_bars(self, symbol: str, days: int = 365) -> Tuple[PricePoint, ...]:
        """
        Daily bars, oldest first.

        Raises:
            ProviderError: If every provider failed
        """
        async with self._http() as client:
            for provider in self.providers:
                if not provider.is_available():
                    continue
                try:
                    records = await provider.get_daily_bars(client, symbol.upper(), days)
                except Exception as e:
                    logger.warning(f"Daily bars from {provider.name} failed for {symbol}: {e}")
                    continue
                if records:
                    logger.debug(f"Retrieved {len(records)} bars for {symbol} from {provider.name}")
                    return prices_from_records(sorted(records, key=lambda r: r['date']))

        logger.error(f"All market data sources failed for {symbol}")
        raise ProviderError('market_data', f'no daily bars for {symbol}')
