"""Tests for CoinCacheStore and TTLCache on the in-memory backend."""

import json

import aiosqlite
import pytest

from conftest import FakeClock, epoch, make_candles
from marketview.cache.backends import MemoryBackend
from marketview.cache.store import SCHEMA_VERSION, CoinCacheStore, TTLCache
from marketview.market_data.service import build_cache_entry
from marketview.models import CoinCacheEntry, SourceRange, Timeframe


def _entry(coin_id: str, clock: FakeClock, ttl_ms: int = 60_000, count: int = 12) -> CoinCacheEntry:
    now = int(clock.now)
    return build_cache_entry(
        coin_id=coin_id,
        symbol=f"{coin_id.upper()}USDT",
        raw=make_candles(epoch("2024-01-02T00:00:00"), count),
        fetched_at_ms=now * 1000,
        ttl_ms=ttl_ms,
        source_range=SourceRange(from_ts=now - 7 * 86_400, to_ts=now),
    )


class TestCoinCacheStore:
    @pytest.mark.asyncio
    async def test_put_then_get(self, coin_cache: CoinCacheStore, clock: FakeClock) -> None:
        entry = _entry("bitcoin", clock)
        await coin_cache.put(entry)

        cached = await coin_cache.get("bitcoin")

        assert cached == entry
        assert cached.series_for(Timeframe.FIVE_MIN) == entry.raw_candles
        assert len(cached.series_for(Timeframe.FIFTEEN_MIN)) == 4

    @pytest.mark.asyncio
    async def test_miss(self, coin_cache: CoinCacheStore) -> None:
        assert await coin_cache.get("bitcoin") is None

    @pytest.mark.asyncio
    async def test_valid_up_to_ttl_then_expired(
        self, coin_cache: CoinCacheStore, backend: MemoryBackend, clock: FakeClock
    ) -> None:
        await coin_cache.put(_entry("bitcoin", clock, ttl_ms=60_000))

        clock.advance(60)
        assert await coin_cache.get("bitcoin") is not None

        clock.advance(1)
        assert await coin_cache.get("bitcoin") is None
        # expired entries are removed on read
        assert await backend.keys("coin_data_") == []

    @pytest.mark.asyncio
    async def test_put_replaces_previous_entry(
        self, coin_cache: CoinCacheStore, clock: FakeClock
    ) -> None:
        await coin_cache.put(_entry("bitcoin", clock, count=12))
        await coin_cache.put(_entry("bitcoin", clock, count=6))

        cached = await coin_cache.get("bitcoin")
        assert len(cached.raw_candles) == 6

    @pytest.mark.asyncio
    async def test_other_schema_version_is_a_miss(
        self, coin_cache: CoinCacheStore, backend: MemoryBackend, clock: FakeClock
    ) -> None:
        payload = _entry("bitcoin", clock).to_dict()
        await backend.set(
            "coin_data_bitcoin",
            json.dumps({"schema_version": SCHEMA_VERSION - 1, "payload": payload}),
        )

        assert await coin_cache.get("bitcoin") is None
        assert await backend.get("coin_data_bitcoin") is None

    @pytest.mark.asyncio
    async def test_unversioned_entry_is_a_miss(
        self, coin_cache: CoinCacheStore, backend: MemoryBackend, clock: FakeClock
    ) -> None:
        await backend.set("coin_data_bitcoin", json.dumps(_entry("bitcoin", clock).to_dict()))
        assert await coin_cache.get("bitcoin") is None

    @pytest.mark.asyncio
    async def test_corrupt_entry_is_a_miss(
        self, coin_cache: CoinCacheStore, backend: MemoryBackend
    ) -> None:
        await backend.set("coin_data_bitcoin", "{not json")
        assert await coin_cache.get("bitcoin") is None

    @pytest.mark.asyncio
    async def test_evict_expired(
        self, coin_cache: CoinCacheStore, backend: MemoryBackend, clock: FakeClock
    ) -> None:
        await coin_cache.put(_entry("bitcoin", clock, ttl_ms=10_000))
        await coin_cache.put(_entry("ethereum", clock, ttl_ms=600_000))
        await backend.set("coin_data_broken", "garbage")
        await backend.set("other_key", "untouched")
        clock.advance(60)

        assert await coin_cache.evict_expired() == 2
        assert await backend.keys("coin_data_") == ["coin_data_ethereum"]
        assert await backend.get("other_key") == "untouched"

    @pytest.mark.asyncio
    async def test_clear_only_touches_coin_prefix(
        self, coin_cache: CoinCacheStore, backend: MemoryBackend, clock: FakeClock
    ) -> None:
        await coin_cache.put(_entry("bitcoin", clock))
        await coin_cache.put(_entry("ethereum", clock))
        await backend.set("cg_cache_search", "{}")

        assert await coin_cache.clear() == 2
        assert await backend.keys() == ["cg_cache_search"]


class TestCapacity:
    @staticmethod
    async def _entry_size(entry: CoinCacheEntry, clock: FakeClock) -> int:
        probe = MemoryBackend()
        await CoinCacheStore(probe, clock=clock).put(entry)
        return probe.size_bytes

    @pytest.mark.asyncio
    async def test_full_cache_evicts_expired_and_retries(self, clock: FakeClock) -> None:
        old = _entry("coin-a", clock, ttl_ms=1_000)
        size = await self._entry_size(old, clock)
        backend = MemoryBackend(max_bytes=size + size // 2)
        store = CoinCacheStore(backend, clock=clock)

        await store.put(old)
        clock.advance(5)
        fresh = _entry("coin-b", clock, ttl_ms=60_000)
        await store.put(fresh)

        assert await backend.keys("coin_data_") == ["coin_data_coin-b"]
        assert await store.get("coin-b") == fresh

    @pytest.mark.asyncio
    async def test_write_failure_is_silent(self, clock: FakeClock) -> None:
        store = CoinCacheStore(MemoryBackend(max_bytes=64), clock=clock)

        await store.put(_entry("bitcoin", clock))

        assert await store.get("bitcoin") is None

    @pytest.mark.asyncio
    async def test_full_of_fresh_entries_drops_new_write(self, clock: FakeClock) -> None:
        first = _entry("coin-a", clock)
        size = await self._entry_size(first, clock)
        backend = MemoryBackend(max_bytes=size + size // 2)
        store = CoinCacheStore(backend, clock=clock)

        await store.put(first)
        await store.put(_entry("coin-b", clock))

        assert await store.get("coin-a") == first
        assert await store.get("coin-b") is None


class FailingBackend(MemoryBackend):
    def __init__(self, error: Exception) -> None:
        super().__init__()
        self._error = error

    async def set(self, key: str, value: str) -> None:
        raise self._error


class TestStorageErrors:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [aiosqlite.OperationalError("disk I/O error"), OSError(28, "No space left on device")],
    )
    async def test_coin_put_swallows_storage_error(
        self, error: Exception, clock: FakeClock
    ) -> None:
        store = CoinCacheStore(FailingBackend(error), clock=clock)

        await store.put(_entry("bitcoin", clock))

        assert await store.get("bitcoin") is None

    @pytest.mark.asyncio
    async def test_ttl_set_swallows_storage_error(self, clock: FakeClock) -> None:
        cache = TTLCache(FailingBackend(aiosqlite.OperationalError("disk I/O error")), clock=clock)

        await cache.set("snapshot:bitcoin", {"current_price": 1.0})

        assert await cache.get("snapshot:bitcoin") is None


class TestTTLCache:
    @pytest.fixture
    def cache(self, backend: MemoryBackend, clock: FakeClock) -> TTLCache:
        return TTLCache(backend, default_ttl_ms=30_000, clock=clock)

    @pytest.mark.asyncio
    async def test_set_and_get(self, cache: TTLCache) -> None:
        await cache.set("search:VFY", [{"id": "zkverify"}])
        assert await cache.get("search:VFY") == [{"id": "zkverify"}]

    @pytest.mark.asyncio
    async def test_default_ttl(self, cache: TTLCache, clock: FakeClock) -> None:
        await cache.set("price:bitcoin", 65000.0)
        clock.advance(31)
        assert await cache.get("price:bitcoin") is None

    @pytest.mark.asyncio
    async def test_explicit_ttl(self, cache: TTLCache, clock: FakeClock) -> None:
        await cache.set("price:bitcoin", 65000.0, ttl_ms=300_000)
        clock.advance(31)
        assert await cache.get("price:bitcoin") == 65000.0

    @pytest.mark.asyncio
    async def test_clear_expired(
        self, cache: TTLCache, backend: MemoryBackend, clock: FakeClock
    ) -> None:
        await cache.set("short", 1)
        await cache.set("long", 2, ttl_ms=600_000)
        await backend.set("cg_cache_bad", "nope")
        clock.advance(60)

        assert await cache.clear_expired() == 2
        assert await cache.get("long") == 2

    @pytest.mark.asyncio
    async def test_clear_leaves_coin_entries(
        self,
        cache: TTLCache,
        coin_cache: CoinCacheStore,
        clock: FakeClock,
    ) -> None:
        await cache.set("a", 1)
        await coin_cache.put(_entry("bitcoin", clock))

        assert await cache.clear() == 1
        assert await coin_cache.get("bitcoin") is not None
