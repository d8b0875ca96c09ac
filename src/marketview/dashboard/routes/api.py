"""JSON API endpoints for chart data, market snapshots and diagnostics.

Chart responses carry an explicit ``status`` so the UI can render its
loading / error / populated states without guessing: ``populated`` when
there is data, ``empty`` when the window holds no candles.
"""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from marketview.exceptions import (
    InvalidChartRequest,
    MarketViewError,
    NetworkError,
    UnresolvedSymbol,
    UpstreamError,
    UpstreamPayloadError,
)
from marketview.logging import get_logger, request_context
from marketview.models import ChartConfig, ChartMode, Timeframe

log = get_logger(__name__)

router = APIRouter()


def _error_response(error: MarketViewError, symbol: str) -> JSONResponse:
    """Map the error taxonomy to HTTP responses."""
    if isinstance(error, UnresolvedSymbol):
        return JSONResponse(
            status_code=404,
            content={"error": "unresolved_symbol", "symbol": symbol, "detail": str(error)},
        )
    if isinstance(error, InvalidChartRequest):
        return JSONResponse(
            status_code=400,
            content={"error": "invalid_request", "detail": str(error)},
        )
    if isinstance(error, (UpstreamError, NetworkError, UpstreamPayloadError)):
        content = {"error": error.kind, "detail": str(error)}
        if isinstance(error, UpstreamError):
            content["upstream_status"] = error.status
        return JSONResponse(status_code=502, content=content)
    return JSONResponse(status_code=500, content={"error": "internal", "detail": str(error)})


@router.get("/chart/{symbol}")
async def get_chart(
    request: Request,
    symbol: str,
    trade_time: str,
    mode: ChartMode | None = None,
    timeframe: Timeframe | None = None,
    cache_ttl: int | None = None,
) -> JSONResponse:
    """Candles (ohlc) or price points (line) around a trade's execution time."""
    service = request.app.state.market_data
    defaults = service.default_config()
    config = ChartConfig(
        mode=mode or defaults.mode,
        timeframe=timeframe or defaults.timeframe,
        cache_ttl_ms=cache_ttl if cache_ttl is not None else defaults.cache_ttl_ms,
    )

    try:
        with request_context(symbol=symbol, route="chart"):
            data = await service.get_chart_data(symbol, trade_time, config)
    except MarketViewError as e:
        log.warning("chart_request_failed", symbol=symbol, error=str(e))
        return _error_response(e, symbol)

    return JSONResponse(content={
        "symbol": symbol,
        "mode": config.mode.value,
        "timeframe": config.timeframe.value,
        "status": "populated" if data else "empty",
        "data": [item.to_dict() for item in data],
    })


@router.post("/chart/{symbol}/refresh")
async def refresh_chart(request: Request, symbol: str) -> JSONResponse:
    """Retry action: drop cached data so the next chart request refetches."""
    service = request.app.state.market_data
    try:
        with request_context(symbol=symbol, route="refresh"):
            coin_id = await service.refresh(symbol)
    except MarketViewError as e:
        return _error_response(e, symbol)
    return JSONResponse(content={"symbol": symbol, "coin_id": coin_id, "refreshed": True})


@router.get("/market/{symbol}")
async def get_market(request: Request, symbol: str) -> JSONResponse:
    """Current market snapshot for the live ticker widget."""
    service = request.app.state.market_data
    try:
        with request_context(symbol=symbol, route="market"):
            snapshot = await service.get_market_snapshot(symbol)
    except MarketViewError as e:
        log.warning("market_request_failed", symbol=symbol, error=str(e))
        return _error_response(e, symbol)
    return JSONResponse(content={"symbol": symbol, **snapshot.to_dict()})


@router.get("/market/{symbol}/chart")
async def get_market_chart(
    request: Request,
    symbol: str,
    mode: ChartMode = ChartMode.LINE,
    days: int = Query(1, ge=1),
    interval: int = Query(5, ge=1),
    from_ts: int | None = None,
    to_ts: int | None = None,
) -> JSONResponse:
    """Live chart series: price points (line) or candles bucketed from them (ohlc)."""
    service = request.app.state.market_data
    try:
        with request_context(symbol=symbol, route="market_chart"):
            if mode == ChartMode.OHLC:
                data = await service.get_live_candles(
                    symbol, days=days, interval_minutes=interval, from_ts=from_ts, to_ts=to_ts
                )
            else:
                data = await service.get_price_series(
                    symbol, days=days, from_ts=from_ts, to_ts=to_ts
                )
    except MarketViewError as e:
        log.warning("market_chart_request_failed", symbol=symbol, error=str(e))
        return _error_response(e, symbol)

    return JSONResponse(content={
        "symbol": symbol,
        "mode": mode.value,
        "status": "populated" if data else "empty",
        "data": [item.to_dict() for item in data],
    })


@router.get("/resolve/{symbol}")
async def resolve_symbol(request: Request, symbol: str) -> JSONResponse:
    """Resolver diagnostics: which coin id (if any) a ticker maps to."""
    resolver = request.app.state.resolver
    coin_id = await resolver.resolve_async(symbol)
    return JSONResponse(content={
        "symbol": symbol,
        "coin_id": coin_id,
        "discovered": symbol.upper().strip() in resolver.discovered,
    })


@router.get("/status")
async def get_status(request: Request) -> JSONResponse:
    """Throttle queue and cache backend status."""
    throttle = request.app.state.throttle
    return JSONResponse(content={
        "throttle": asdict(throttle.status()),
        "cache_backend": request.app.state.cache_backend,
    })
