"""
Base interface for intelligence sources.

Every source answers `gather(symbol, ctx) -> Report | None`. None means the
source is unavailable (no credential) or failed; an empty-but-valid answer is
a low-confidence Report. Nothing raised inside a source escapes `gather`.
"""
import json
import re
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx
from loguru import logger

from stockintel.credentials import CredentialProvider
from stockintel.errors import ProviderError
from stockintel.logging_utils import log_report
from stockintel.models import Direction, GatherContext, IntelligenceSource, Report

EMPTY_REPORT_CONFIDENCE = 20

_JSON_OBJECT = re.compile(r'\{[\s\S]*\}')


def classify_sentiment(score: float, band: float = 0.2) -> Direction:
    """Map a -1..1 sentiment score onto a direction using a symmetric band."""
    if score > band:
        return Direction.BULLISH
    if score < -band:
        return Direction.BEARISH
    return Direction.NEUTRAL


def extract_json(text: str) -> Dict[str, Any]:
    """
    Pull the outermost JSON object out of a model response.

    Raises:
        ValueError: If no object is present or it does not parse
    """
    match = _JSON_OBJECT.search(text or "")
    if not match:
        raise ValueError("no JSON object in response")
    parsed = json.loads(match.group(0))
    if not isinstance(parsed, dict):
        raise ValueError("response JSON is not an object")
    return parsed


def string_list(value: Any, limit: Optional[int] = None) -> Tuple[str, ...]:
    """Coerce a JSON list of strings (or {"text": ...} objects) to a tuple."""
    if not isinstance(value, list):
        return ()
    items = []
    for item in value:
        if isinstance(item, dict):
            item = item.get('text', '')
        if item:
            items.append(str(item))
    return tuple(items[:limit]) if limit is not None else tuple(items)


class IntelligenceGatherer(ABC):
    """
    Abstract base class for intelligence sources.

    Subclasses set `source` and `config_key`, and implement `_gather`.
    Sources backed by external providers list them, in fallback order, under
    `sources.<config_key>.providers`; the source is available when any of
    them has a credential.
    """

    source: IntelligenceSource
    config_key: str = ""

    def __init__(
        self,
        config: Dict[str, Any],
        credentials: CredentialProvider,
        client: Optional[httpx.AsyncClient] = None
    ):
        """
        Initialize the source.

        Args:
            config: Application configuration
            credentials: Credential lookup
            client: Shared HTTP client; one is opened per gather when omitted
        """
        self.config = config
        self.credentials = credentials
        self.client = client
        self.name = self.__class__.__name__
        self.settings = config.get('sources', {}).get(self.config_key, {}) or {}
        self.providers: List[str] = list(self.settings.get('providers', []))
        self.timeout = float(
            config.get('aggregator', {}).get('timeouts', {}).get(self.source.value, 30.0)
        )

    def is_available(self) -> bool:
        if not self.providers:
            return True
        return any(self.credentials.has_credential(p) for p in self.providers)

    async def gather(self, symbol: str, ctx: Optional[GatherContext] = None) -> Optional[Report]:
        """
        Gather a report for a symbol.

        Args:
            symbol: Stock symbol
            ctx: Optional context (company name, price data, current price,
                custom prompt)

        Returns:
            Report, or None when unavailable or failed
        """
        if not self.is_available():
            logger.debug(f"{self.name} unavailable | no credential for {', '.join(self.providers)}")
            return None

        symbol = symbol.upper()
        try:
            report = await self._gather(symbol, ctx or GatherContext())
        except Exception as e:
            logger.warning(f"{self.name} failed for {symbol}: {type(e).__name__}: {e}")
            return None

        if report is not None:
            log_report(symbol, report)
        return report

    @abstractmethod
    async def _gather(self, symbol: str, ctx: GatherContext) -> Optional[Report]:
        pass

    @asynccontextmanager
    async def http_client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self.client is not None:
            yield self.client
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                yield client

    async def get_json(
        self,
        client: httpx.AsyncClient,
        provider: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> Any:
        response = await client.get(url, params=params, headers=headers)
        return self._decode(provider, response)

    async def post_json(
        self,
        client: httpx.AsyncClient,
        provider: str,
        url: str,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None
    ) -> Any:
        response = await client.post(url, json=payload, headers=headers)
        return self._decode(provider, response)

    @staticmethod
    def _decode(provider: str, response: httpx.Response) -> Any:
        if response.status_code != 200:
            raise ProviderError(provider, f"HTTP {response.status_code}", response.status_code)
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(provider, f"invalid JSON: {e}")

    async def chat_completion(
        self,
        client: httpx.AsyncClient,
        provider: str,
        base_url: str,
        api_key: str,
        model: str,
        system: str,
        user: str
    ) -> Tuple[str, Dict[str, Any]]:
        """
        Call an OpenAI-compatible chat completions endpoint.

        Returns:
            (message content, full response body)
        """
        payload = {
            "model": model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "temperature": 0.3,
        }
        body = await self.post_json(
            client, provider, f"{base_url}/chat/completions", payload,
            headers={"Authorization": f"Bearer {api_key}"}
        )
        try:
            content = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            raise ProviderError(provider, "response has no message content")
        if not content:
            raise ProviderError(provider, "empty message content")
        return content, body

    async def run_provider_chain(
        self,
        client: httpx.AsyncClient,
        symbol: str,
        ctx: GatherContext
    ) -> Tuple[Optional[str], Any]:
        """
        Try each configured provider in order until one returns data.

        A provider is called through `fetch_<provider>(client, symbol, key, ctx)`.
        Providers without a credential are skipped. An empty answer falls
        through to the next provider but is kept in case nobody has data.

        Returns:
            (provider name, result); (name, empty result) when every
            reachable provider came back empty

        Raises:
            ProviderError: If every provider failed or none is configured
        """
        empty: Optional[Tuple[str, Any]] = None
        failures = []

        for provider in self.providers:
            key = self.credentials.get_credential(provider)
            if not key:
                logger.debug(f"{self.name} | skipping {provider}: no credential")
                continue

            fetch = getattr(self, f"fetch_{provider}", None)
            if fetch is None:
                logger.warning(f"{self.name} | unknown provider '{provider}' in fallback order")
                continue

            try:
                result = await fetch(client, symbol, key, ctx)
            except Exception as e:
                logger.warning(f"{self.name} | {provider} failed for {symbol}: {e}")
                failures.append(provider)
                continue

            if result:
                logger.debug(f"{self.name} | {symbol} served by {provider}")
                return provider, result

            logger.info(f"{self.name} | {provider} returned no data for {symbol}, trying next")
            if empty is None:
                empty = (provider, result)

        if empty is not None:
            return empty
        raise ProviderError(self.name, f"all providers failed ({', '.join(failures) or 'none configured'})")
