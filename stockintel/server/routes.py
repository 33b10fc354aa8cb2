"""
Intelligence routes: bundles, analyses, history and quotes.
"""
from typing import Optional

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse
from loguru import logger

from stockintel.errors import (
    InvalidCredentialError,
    ProviderError,
    RateLimitError,
    SynthesisError,
)
from stockintel.models import GatherContext, to_jsonable
from stockintel.pipeline import AnalysisPipeline


def synthesis_status(error: SynthesisError) -> int:
    if isinstance(error, InvalidCredentialError):
        return 401
    if isinstance(error, RateLimitError):
        return 429
    return 502


def _error(status: int, error: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content={"ok": False, "error": type(error).__name__, "message": str(error)},
    )


def make_router(pipeline: AnalysisPipeline) -> APIRouter:
    router = APIRouter()

    @router.get("/intelligence/{symbol}")
    async def intelligence(symbol: str, quick: bool = False, company: Optional[str] = None):
        ctx = GatherContext(company_name=company)
        if quick:
            try:
                prices = await pipeline.market_data.get_daily_bars(symbol)
            except ProviderError as e:
                logger.warning(f"Quick intelligence without price history for {symbol}: {e}")
                prices = None
            ctx = GatherContext(company_name=company, price_data=prices)

        bundle = await pipeline.gather(symbol, ctx, quick=quick)
        return {"ok": True, "intelligence": bundle.to_dict()}

    @router.post("/analysis/{symbol}")
    async def analysis(symbol: str, company: Optional[str] = None):
        try:
            bundle, result, instructions = await pipeline.analyze(symbol, GatherContext(company_name=company))
        except SynthesisError as e:
            return _error(synthesis_status(e), e)
        return {
            "ok": True,
            "intelligence": bundle.to_dict(),
            "synthesis": result.to_dict(),
            "orchestration": instructions.to_dict() if instructions is not None else None,
        }

    @router.get("/analysis")
    async def analyzed_symbols():
        return {"ok": True, "symbols": pipeline.history.symbols()}

    @router.get("/analysis/{symbol}/history")
    async def history(symbol: str):
        return {"ok": True, "symbol": symbol.upper(), "analyses": pipeline.history.get(symbol)}

    @router.get("/quotes")
    async def quotes(symbols: str = Query(..., description="Comma-separated symbols")):
        wanted = [s.strip() for s in symbols.split(",") if s.strip()]
        if not wanted:
            return JSONResponse(status_code=400, content={"ok": False, "message": "No symbols given"})
        try:
            entry = await pipeline.quotes(wanted)
        except ProviderError as e:
            return _error(502, e)
        return {
            "ok": True,
            "source": entry.source,
            "fetched_at": entry.fetched_at,
            "stale": pipeline.quote_cache.is_stale(),
            "quotes": to_jsonable(dict(entry.quotes_by_symbol)),
        }

    return router
