"""
Options flow source (Polygon options chain snapshot).
"""
from typing import Any, Dict, List, Optional, Sequence

from loguru import logger

from stockintel.errors import ProviderError
from stockintel.models import (
    Direction,
    GatherContext,
    IntelligenceSource,
    LargeOrder,
    OptionsData,
    Report,
)
from stockintel.sources.base import EMPTY_REPORT_CONFIDENCE, IntelligenceGatherer

CONTRACT_TIERS = ((100, 20), (20, 10), (1, 5))
MAX_PUT_CALL = 10.0


def _ratio(puts: float, calls: float) -> float:
    if calls <= 0:
        return MAX_PUT_CALL
    return min(puts / calls, MAX_PUT_CALL)


def normalize_contract(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten one Polygon snapshot result into the fields the metrics use."""
    details = raw.get('details') or {}
    day = raw.get('day') or {}
    greeks = raw.get('greeks') or {}
    quote = raw.get('last_quote') or {}
    price = day.get('close') or day.get('vwap') or quote.get('midpoint') or 0.0

    return {
        'type': details.get('contract_type') or raw.get('contract_type') or '',
        'strike': float(details.get('strike_price') or raw.get('strike_price') or 0.0),
        'expiry': details.get('expiration_date') or raw.get('expiration_date') or '',
        'volume': float(day.get('volume') or 0.0),
        'open_interest': float(raw.get('open_interest') or 0.0),
        'iv': raw.get('implied_volatility'),
        'delta': greeks.get('delta'),
        'gamma': greeks.get('gamma'),
        'price': float(price),
    }


def max_pain(contracts: Sequence[Dict[str, Any]]) -> Optional[float]:
    """
    Strike at which option holders of the nearest expiry collect the least.
    """
    expiries = sorted({c['expiry'] for c in contracts if c['expiry']})
    if not expiries:
        return None
    chain = [c for c in contracts if c['expiry'] == expiries[0] and c['open_interest'] > 0]
    strikes = sorted({c['strike'] for c in chain})
    if not strikes:
        return None

    def payout(settle: float) -> float:
        total = 0.0
        for c in chain:
            if c['type'] == 'call':
                total += max(0.0, settle - c['strike']) * c['open_interest']
            elif c['type'] == 'put':
                total += max(0.0, c['strike'] - settle) * c['open_interest']
        return total

    return min(strikes, key=payout)


def options_metrics(
    contracts: Sequence[Dict[str, Any]],
    bullish_put_call: float = 0.8,
    bearish_put_call: float = 1.1,
    large_order_count: int = 5
) -> OptionsData:
    """
    Summarize a normalized options chain.

    The put/call ratio uses volume, then open interest when nothing traded,
    then 1.0. One-sided put activity with no calls reads as MAX_PUT_CALL.
    """
    calls = [c for c in contracts if c['type'] == 'call']
    puts = [c for c in contracts if c['type'] == 'put']

    call_volume = sum(c['volume'] for c in calls)
    put_volume = sum(c['volume'] for c in puts)
    call_oi = sum(c['open_interest'] for c in calls)
    put_oi = sum(c['open_interest'] for c in puts)

    if call_volume > 0 or put_volume > 0:
        put_call = _ratio(put_volume, call_volume)
    elif call_oi > 0 or put_oi > 0:
        put_call = _ratio(put_oi, call_oi)
    else:
        put_call = 1.0

    def avg_iv(group: List[Dict[str, Any]]) -> float:
        values = [c['iv'] for c in group if c['iv'] is not None]
        return sum(values) / len(values) if values else 0.0

    gamma = sum(
        (c['gamma'] or 0.0) * c['open_interest'] * (1 if c['type'] == 'call' else -1)
        for c in contracts if c['gamma'] is not None
    )

    orders = sorted(
        (c for c in contracts if c['volume'] > 0 and c['price'] > 0),
        key=lambda c: c['volume'] * c['price'],
        reverse=True
    )[:large_order_count]

    if put_call < bullish_put_call:
        flow = Direction.BULLISH
    elif put_call > bearish_put_call:
        flow = Direction.BEARISH
    else:
        flow = Direction.NEUTRAL

    return OptionsData(
        contract_count=len(contracts),
        put_call_ratio=round(put_call, 3),
        total_call_volume=call_volume,
        total_put_volume=put_volume,
        total_call_oi=call_oi,
        total_put_oi=put_oi,
        avg_call_iv=round(avg_iv(calls), 4),
        avg_put_iv=round(avg_iv(puts), 4),
        aggregate_delta=round(sum(c['delta'] for c in contracts if c['delta'] is not None), 3),
        unusual_activity=any(c['volume'] > c['open_interest'] > 0 for c in contracts),
        large_orders=tuple(
            LargeOrder(
                contract_type=c['type'],
                strike=c['strike'],
                expiry=c['expiry'],
                premium=round(c['volume'] * c['price'] * 100, 2),
                volume=c['volume'],
                open_interest=c['open_interest'],
                sentiment=Direction.BULLISH if c['type'] == 'call' else Direction.BEARISH,
            )
            for c in orders
        ),
        max_pain=max_pain(contracts),
        gamma_exposure='positive' if gamma > 0 else 'negative' if gamma < 0 else 'neutral',
        institutional_flow=flow,
    )


def options_confidence(data: OptionsData) -> int:
    confidence = 50
    for minimum, bonus in CONTRACT_TIERS:
        if data.contract_count >= minimum:
            confidence += bonus
            break
    if data.institutional_flow != Direction.NEUTRAL:
        confidence += 10
    return confidence


class OptionsSource(IntelligenceGatherer):
    """Put/call positioning, IV and large orders from the options chain."""

    source = IntelligenceSource.OPTIONS
    config_key = "options"

    def __init__(self, config: Dict[str, Any], credentials, client=None):
        super().__init__(config, credentials, client)
        self.bullish_put_call = float(self.settings.get('bullish_put_call', 0.8))
        self.bearish_put_call = float(self.settings.get('bearish_put_call', 1.1))
        self.large_order_count = int(self.settings.get('large_order_count', 5))

    async def _gather(self, symbol: str, ctx: GatherContext) -> Optional[Report]:
        async with self.http_client() as client:
            provider, contracts = await self.run_provider_chain(client, symbol, ctx)

        if not contracts:
            return self.empty_report(symbol)

        data = options_metrics(contracts, self.bullish_put_call, self.bearish_put_call, self.large_order_count)
        return Report(
            source=self.source,
            confidence=options_confidence(data),
            data=data,
            summary=options_summary(symbol, data),
        )

    async def fetch_polygon(self, client, symbol: str, key: str, ctx: GatherContext) -> List[Dict[str, Any]]:
        body = await self.get_json(
            client, 'polygon', f"{self.settings.get('polygon_url')}/v3/snapshot/options/{symbol}",
            params={'limit': 250, 'apiKey': key}
        )
        results = body.get('results') if isinstance(body, dict) else None
        if results is None:
            raise ProviderError('polygon', body.get('error', 'no results field') if isinstance(body, dict) else 'bad body')

        contracts = [normalize_contract(r) for r in results if isinstance(r, dict)]
        contracts = [c for c in contracts if c['type'] in ('call', 'put')]
        logger.debug(f"OptionsSource | {symbol}: {len(contracts)} contracts")
        return contracts

    def empty_report(self, symbol: str) -> Report:
        data = options_metrics([], self.bullish_put_call, self.bearish_put_call)
        return Report(
            source=self.source,
            confidence=EMPTY_REPORT_CONFIDENCE,
            data=data,
            summary=f"No options activity found for {symbol}.",
        )


def options_summary(symbol: str, data: OptionsData) -> str:
    parts = [
        f"{symbol} options flow shows {data.institutional_flow.value} positioning.",
        f"Put/call ratio is {data.put_call_ratio:.2f} across {data.contract_count} contracts.",
        f"Average implied volatility is {data.avg_call_iv:.0%} for calls and {data.avg_put_iv:.0%} for puts.",
    ]
    if data.unusual_activity:
        parts.append("Unusual activity detected with volume above open interest.")
    if data.max_pain is not None:
        parts.append(f"Max pain sits at ${data.max_pain:.2f}.")
    return " ".join(parts)
