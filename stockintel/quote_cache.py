"""
Quote cache with a fixed freshness window and stale-while-revalidate reads.
"""
import asyncio
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Awaitable, Callable, Iterable, Mapping, Optional, Tuple

from loguru import logger

from stockintel.models import Quote

QuoteFetcher = Callable[[Tuple[str, ...]], Awaitable[Tuple[str, Mapping[str, Quote]]]]


@dataclass(frozen=True)
class CacheEntry:
    """One fetched batch: quotes keyed by symbol plus provenance."""
    quotes_by_symbol: Mapping[str, Quote]
    fetched_at: float
    source: str


def _symbols(symbols: Iterable[str]) -> Tuple[str, ...]:
    return tuple(dict.fromkeys(s.upper() for s in symbols))


class QuoteCache:
    """
    Holds the last fetched quote batch.

    The entry is never mutated; `put` swaps in a new one, so a reader always
    sees a complete batch. Staleness is checked lazily against the clock.
    """

    def __init__(self, ttl_seconds: float = 60.0, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entry: Optional[CacheEntry] = None
        self._refresh_task: Optional[asyncio.Task] = None

    @property
    def entry(self) -> Optional[CacheEntry]:
        return self._entry

    def is_stale(self) -> bool:
        if self._entry is None:
            return True
        return self._clock() - self._entry.fetched_at >= self.ttl_seconds

    def get(self, symbols: Iterable[str]) -> Optional[CacheEntry]:
        """
        Look up a set of symbols.

        Returns:
            Entry restricted to the requested symbols, or None on a miss
            (empty cache or any symbol absent). Stale data is still returned.
        """
        entry = self._entry
        wanted = _symbols(symbols)
        if entry is None or not wanted or any(s not in entry.quotes_by_symbol for s in wanted):
            return None
        return CacheEntry(
            quotes_by_symbol=MappingProxyType({s: entry.quotes_by_symbol[s] for s in wanted}),
            fetched_at=entry.fetched_at,
            source=entry.source,
        )

    def put(self, symbols: Iterable[str], quotes: Mapping[str, Quote], source: str) -> CacheEntry:
        """Replace the cached batch with freshly fetched quotes."""
        wanted = set(_symbols(symbols))
        batch = {s.upper(): q for s, q in quotes.items() if s.upper() in wanted}
        entry = CacheEntry(
            quotes_by_symbol=MappingProxyType(batch),
            fetched_at=self._clock(),
            source=source,
        )
        self._entry = entry
        logger.debug(f"QuoteCache updated | {len(batch)} symbols from {source}")
        return entry

    def clear(self) -> None:
        self._entry = None

    async def get_or_refresh(self, symbols: Iterable[str], fetch: QuoteFetcher) -> CacheEntry:
        """
        Serve quotes from cache, fetching on a miss.

        A stale hit is returned immediately and a single background refresh
        of the whole cached batch is scheduled, so symbols outside this
        request are not evicted. Concurrent stale reads share that refresh.
        """
        wanted = _symbols(symbols)
        hit = self.get(wanted)

        if hit is None:
            source, quotes = await fetch(wanted)
            return self.put(wanted, quotes, source)

        if self.is_stale() and (self._refresh_task is None or self._refresh_task.done()):
            batch = _symbols(self._entry.quotes_by_symbol)
            logger.debug(f"QuoteCache stale | refreshing {', '.join(batch)} in background")
            self._refresh_task = asyncio.ensure_future(self._refresh(batch, fetch))

        return hit

    async def wait_for_refresh(self) -> None:
        """Await an in-flight background refresh, if any."""
        if self._refresh_task is not None:
            await self._refresh_task

    async def _refresh(self, symbols: Tuple[str, ...], fetch: QuoteFetcher) -> None:
        try:
            source, quotes = await fetch(symbols)
        except Exception as e:
            logger.warning(f"QuoteCache background refresh failed: {e}")
            return
        self.put(symbols, quotes, source)
