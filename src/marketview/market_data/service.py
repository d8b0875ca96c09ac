"""Chart data orchestration: resolve, cache, fetch, aggregate, window.

One CoinGecko OHLC fetch per coin feeds every timeframe and every trade
window for that coin until the cache entry expires:

    symbol --SymbolResolver--> coin id --CoinCacheStore--> hit?
        yes: slice the requested window out of the cached entry
        no:  RequestThrottle -> CoinGeckoClient.fetch_ohlc (with retry)
             -> aggregate 15m -> CoinCacheStore.put -> slice window

Concurrent misses for the same coin share one in-flight fetch.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

from marketview.cache.store import Clock, CoinCacheStore, TTLCache
from marketview.config import ChartSettings, CoinGeckoSettings
from marketview.exceptions import InvalidChartRequest, UnresolvedSymbol
from marketview.logging import get_logger
from marketview.market_data.coingecko import CoinGeckoClient
from marketview.market_data.symbols import SymbolResolver
from marketview.market_data.throttle import RequestThrottle
from marketview.market_data.windows import (
    aggregate_to_15m,
    calculate_fetch_range,
    candles_to_price_points,
    compute_window,
    convert_prices_to_candles,
    filter_window,
    select_window,
)
from marketview.models import (
    NATIVE_TIMEFRAME,
    Candle,
    ChartConfig,
    ChartMode,
    CoinCacheEntry,
    MarketSnapshot,
    PricePoint,
    SourceRange,
    Timeframe,
)

logger = get_logger(__name__)


def parse_trade_timestamp(value: str) -> int:
    """Convert an ISO-8601 timestamp to epoch seconds. Naive values are UTC."""
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except (AttributeError, ValueError) as e:
        raise InvalidChartRequest(f"invalid trade timestamp: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp())


def build_cache_entry(
    coin_id: str,
    symbol: str,
    raw: list[Candle],
    fetched_at_ms: int,
    ttl_ms: int,
    source_range: SourceRange,
) -> CoinCacheEntry:
    """Assemble a cache entry with every timeframe pre-computed.

    There is no data finer than the raw series, so 1m and 3m reuse it
    unchanged.
    """
    raw_candles = tuple(raw)
    return CoinCacheEntry(
        coin_id=coin_id,
        symbol=symbol,
        raw_candles=raw_candles,
        fetched_at_ms=fetched_at_ms,
        ttl_ms=ttl_ms,
        source_range=source_range,
        aggregated={
            NATIVE_TIMEFRAME.value: raw_candles,
            Timeframe.FIFTEEN_MIN.value: tuple(aggregate_to_15m(raw_candles)),
            Timeframe.ONE_MIN.value: raw_candles,
            Timeframe.THREE_MIN.value: raw_candles,
        },
    )


class MarketDataService:
    """Public entry point for chart data.

    Args:
        resolver: Ticker to coin id resolution.
        client: CoinGecko API client.
        cache: Per-coin cache store.
        throttle: Shared upstream concurrency limiter.
        coingecko_settings: Quote currency and fetch depth.
        chart_settings: Chart defaults and line-mode windowing.
        live_cache: Optional short-TTL cache for snapshots and live price series.
        clock: Time source returning epoch seconds (default time.time).
    """

    def __init__(
        self,
        resolver: SymbolResolver,
        client: CoinGeckoClient,
        cache: CoinCacheStore,
        throttle: RequestThrottle,
        coingecko_settings: CoinGeckoSettings | None = None,
        chart_settings: ChartSettings | None = None,
        live_cache: TTLCache | None = None,
        clock: Clock = time.time,
    ) -> None:
        self._resolver = resolver
        self._client = client
        self._cache = cache
        self._throttle = throttle
        self._coingecko_settings = coingecko_settings or CoinGeckoSettings()
        self._chart_settings = chart_settings or ChartSettings()
        self._live_cache = live_cache
        self._clock = clock
        self._inflight: dict[str, asyncio.Task[CoinCacheEntry]] = {}

    def default_config(self) -> ChartConfig:
        return ChartConfig(
            mode=self._chart_settings.default_mode,
            timeframe=self._chart_settings.default_timeframe,
            cache_ttl_ms=self._chart_settings.default_cache_ttl_ms,
        )

    async def resolve(self, symbol: str) -> str:
        """Resolve a ticker or raise UnresolvedSymbol."""
        coin_id = await self._resolver.resolve_async(symbol)
        if coin_id is None:
            logger.warning("symbol_unsupported", symbol=symbol)
            raise UnresolvedSymbol(symbol)
        return coin_id

    async def get_chart_data(
        self,
        symbol: str,
        trade_timestamp: str,
        config: ChartConfig | None = None,
    ) -> list[Candle] | list[PricePoint]:
        """Return candles (ohlc) or price points (line) around a trade.

        Raises:
            InvalidChartRequest: symbol or timestamp missing/invalid.
            UnresolvedSymbol: the ticker has no CoinGecko id.
            UpstreamError / NetworkError: the fetch failed after retries.
        """
        if not symbol or not trade_timestamp:
            raise InvalidChartRequest("symbol and trade timestamp are required")
        config = config or self.default_config()

        coin_id = await self.resolve(symbol)
        trade_time = parse_trade_timestamp(trade_timestamp)

        entry = await self._cache.get(coin_id)
        if entry is None:
            entry = await self._load(coin_id, symbol, trade_time, config.cache_ttl_ms)

        return self._extract(entry, trade_time, config)

    async def get_market_snapshot(self, symbol: str) -> MarketSnapshot:
        coin_id = await self.resolve(symbol)
        key = f"snapshot:{coin_id}"
        cached = await self._recall(key)
        if cached is not None:
            return MarketSnapshot(**cached)

        snapshot = await self._throttle.schedule(
            lambda: self._client.fetch_market_snapshot(coin_id)
        )
        await self._remember(key, snapshot.to_dict())
        return snapshot

    async def get_price_series(
        self,
        symbol: str,
        days: int = 1,
        from_ts: int | None = None,
        to_ts: int | None = None,
    ) -> list[PricePoint]:
        """Raw price points for the live and line charts.

        With ``from_ts`` and ``to_ts`` (epoch seconds) the range endpoint is
        queried, otherwise the last ``days`` days.
        """
        if (from_ts is None) != (to_ts is None):
            raise InvalidChartRequest("from_ts and to_ts must be given together")
        if from_ts is not None and to_ts is not None and from_ts >= to_ts:
            raise InvalidChartRequest(f"empty range: {from_ts} >= {to_ts}")
        if days < 1:
            raise InvalidChartRequest(f"days must be >= 1, got {days}")

        coin_id = await self.resolve(symbol)
        fetch: Callable[[], Awaitable[list[PricePoint]]]
        if from_ts is not None and to_ts is not None:
            key = f"market_chart:{coin_id}:{from_ts}-{to_ts}"
            fetch = lambda: self._client.fetch_market_chart_range(coin_id, from_ts, to_ts)
        else:
            key = f"market_chart:{coin_id}:{days}d"
            fetch = lambda: self._client.fetch_market_chart(coin_id, days=days)

        cached = await self._recall(key)
        if cached is not None:
            return [PricePoint(**p) for p in cached]

        points = await self._throttle.schedule(fetch)
        await self._remember(key, [p.to_dict() for p in points])
        return points

    async def get_live_candles(
        self,
        symbol: str,
        days: int = 1,
        interval_minutes: int = 5,
        from_ts: int | None = None,
        to_ts: int | None = None,
    ) -> list[Candle]:
        """Candles bucketed from the market-chart price series."""
        if interval_minutes < 1:
            raise InvalidChartRequest(f"interval must be >= 1 minute, got {interval_minutes}")
        points = await self.get_price_series(symbol, days=days, from_ts=from_ts, to_ts=to_ts)
        return convert_prices_to_candles(points, interval_minutes)

    async def refresh(self, symbol: str) -> str:
        """Drop the cached entry for a symbol so the next request refetches."""
        coin_id = await self.resolve(symbol)
        await self._cache.delete(coin_id)
        logger.info("coin_cache_refreshed", symbol=symbol, coin_id=coin_id)
        return coin_id

    async def _recall(self, key: str) -> Any | None:
        if self._live_cache is None:
            return None
        return await self._live_cache.get(key)

    async def _remember(self, key: str, data: Any) -> None:
        if self._live_cache is not None:
            await self._live_cache.set(key, data)

    def _now(self) -> int:
        return int(self._clock())

    def _extract(
        self, entry: CoinCacheEntry, trade_time: int, config: ChartConfig
    ) -> list[Candle] | list[PricePoint]:
        now = self._now()
        if config.mode == ChartMode.OHLC:
            return select_window(entry, trade_time, config.timeframe, now)

        candles: tuple[Candle, ...] | list[Candle] = entry.raw_candles
        if self._chart_settings.window_line_mode:
            candles = filter_window(candles, compute_window(trade_time, config.timeframe, now))
        return candles_to_price_points(candles)

    async def _load(
        self, coin_id: str, symbol: str, trade_time: int, ttl_ms: int
    ) -> CoinCacheEntry:
        """Fetch and cache a coin, joining an in-flight fetch if there is one."""
        task = self._inflight.get(coin_id)
        if task is None:
            task = asyncio.create_task(self._fetch_entry(coin_id, symbol, trade_time, ttl_ms))
            self._inflight[coin_id] = task
            task.add_done_callback(lambda t: self._fetch_done(coin_id, t))
        else:
            logger.debug("coin_fetch_joined", coin_id=coin_id)
        # shield: one caller going away must not cancel the fetch for the others
        return await asyncio.shield(task)

    def _fetch_done(self, coin_id: str, task: asyncio.Task[CoinCacheEntry]) -> None:
        self._inflight.pop(coin_id, None)
        # Every waiter may have been cancelled; mark the failure as seen
        if not task.cancelled() and task.exception() is not None:
            logger.debug("coin_fetch_failed", coin_id=coin_id, error=str(task.exception()))

    async def _fetch_entry(
        self, coin_id: str, symbol: str, trade_time: int, ttl_ms: int
    ) -> CoinCacheEntry:
        now = self._now()
        days = self._coingecko_settings.fetch_days
        source_range = calculate_fetch_range(trade_time, now, days)
        logger.info(
            "coin_cache_fetching",
            coin_id=coin_id,
            symbol=symbol,
            range_from=source_range.from_ts,
            range_to=source_range.to_ts,
            days=days,
        )

        raw = await self._throttle.schedule(
            lambda: self._client.fetch_ohlc(coin_id, self._client.vs_currency, days)
        )

        entry = build_cache_entry(
            coin_id=coin_id,
            symbol=symbol,
            raw=raw,
            fetched_at_ms=int(self._clock() * 1000),
            ttl_ms=ttl_ms,
            source_range=source_range,
        )
        await self._cache.put(entry)
        return entry
