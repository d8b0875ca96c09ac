"""Entry point for the chart data API.

Wires all components together and serves them through FastAPI. The cache
backend and the shared httpx client are opened and closed by the lifespan
context manager so they live exactly as long as the server.

Component wiring order (in _build_components):
1. AppSettings (configuration)
2. Logging setup
3. Cache backend (memory or SQLite)
4. CoinCacheStore (per-coin market data) + TTLCache (market snapshots)
5. httpx client + CoinGeckoClient (retrying API client)
6. SymbolResolver (static table + discovery via CoinGecko search)
7. RequestThrottle (shared upstream concurrency limit)
8. MarketDataService (chart data orchestration)
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any

import httpx
import uvicorn
from fastapi import FastAPI

from marketview.cache.backends import KeyValueBackend, MemoryBackend, SqliteBackend
from marketview.cache.store import CoinCacheStore, TTLCache
from marketview.config import AppSettings
from marketview.logging import get_logger, setup_logging
from marketview.market_data.coingecko import CoinGeckoClient
from marketview.market_data.retry import ErrorKind, RetryPolicy
from marketview.market_data.service import MarketDataService
from marketview.market_data.symbols import SymbolResolver
from marketview.market_data.throttle import RequestThrottle


def _build_backend(settings: AppSettings) -> KeyValueBackend:
    if settings.cache.backend == "sqlite":
        return SqliteBackend(settings.cache.db_path, max_bytes=settings.cache.max_bytes)
    return MemoryBackend(max_bytes=settings.cache.max_bytes)


def _log_retry(attempt: int, error: ErrorKind) -> None:
    get_logger("marketview.main").info("coingecko_retry", attempt=attempt, error=error.value)


def _build_components(settings: AppSettings) -> dict[str, Any]:
    """Build all components from settings.

    Note: Does NOT connect the cache backend -- that happens in the lifespan.

    Returns:
        Dict mapping component names to instances.
    """
    logger = get_logger("marketview.main")

    backend = _build_backend(settings)
    coin_cache = CoinCacheStore(backend, prefix=settings.cache.coin_prefix)
    live_cache = TTLCache(
        backend,
        prefix=settings.cache.generic_prefix,
        default_ttl_ms=settings.cache.default_ttl_ms,
    )

    if not settings.coingecko.api_key.get_secret_value():
        logger.warning(
            "no_api_key_configured",
            note="Public CoinGecko endpoints work but are heavily rate limited.",
        )

    http_client = httpx.AsyncClient()
    coingecko = CoinGeckoClient(
        settings.coingecko,
        policy=RetryPolicy.from_settings(settings.retry),
        client=http_client,
        on_retry=_log_retry,
    )

    resolver = SymbolResolver(search=coingecko.search)

    throttle = RequestThrottle(
        max_concurrent=settings.throttle.max_concurrent,
        spacing_seconds=settings.throttle.spacing_seconds,
    )

    market_data = MarketDataService(
        resolver=resolver,
        client=coingecko,
        cache=coin_cache,
        throttle=throttle,
        coingecko_settings=settings.coingecko,
        chart_settings=settings.chart,
        live_cache=live_cache,
    )

    return {
        "backend": backend,
        "coin_cache": coin_cache,
        "live_cache": live_cache,
        "http_client": http_client,
        "coingecko": coingecko,
        "resolver": resolver,
        "throttle": throttle,
        "market_data": market_data,
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open shared resources on startup and release them on shutdown."""
    logger = get_logger("marketview.main")
    settings: AppSettings = app.state.settings
    components = app.state.components

    backend = components["backend"]
    if isinstance(backend, SqliteBackend):
        await backend.connect()

    app.state.market_data = components["market_data"]
    app.state.throttle = components["throttle"]
    app.state.resolver = components["resolver"]
    app.state.cache_backend = settings.cache.backend

    evicted = await components["coin_cache"].evict_expired()
    evicted += await components["live_cache"].clear_expired()
    logger.info("lifespan_started", cache_backend=settings.cache.backend, evicted=evicted)

    yield

    await components["throttle"].wait_idle()
    await components["http_client"].aclose()
    await backend.close()

    logger.info("marketview_stopped")


async def run() -> None:
    """Run the chart data API server."""
    # 1. Load settings
    settings = AppSettings()

    # 2. Setup logging
    setup_logging(settings.log_level, settings.log_format)
    logger = get_logger("marketview.main")

    # 3-8. Build all components
    components = _build_components(settings)

    from marketview.dashboard.app import create_dashboard_app

    app = create_dashboard_app(lifespan=lifespan)
    app.state.settings = settings
    app.state.components = components

    logger.info(
        "starting_api_server",
        host=settings.dashboard.host,
        port=settings.dashboard.port,
    )

    config = uvicorn.Config(
        app,
        host=settings.dashboard.host,
        port=settings.dashboard.port,
        log_level="warning",  # Suppress uvicorn access logs
    )
    server = uvicorn.Server(config)
    await server.serve()


def main() -> None:
    """Synchronous entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
