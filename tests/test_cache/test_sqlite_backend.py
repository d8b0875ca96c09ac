"""Tests for the aiosqlite key/value backend."""

import pytest

from conftest import FakeClock, epoch, make_candles
from marketview.cache.backends import SqliteBackend
from marketview.cache.store import CoinCacheStore
from marketview.exceptions import CacheCapacityError
from marketview.market_data.service import build_cache_entry
from marketview.models import SourceRange


@pytest.fixture
def db_path(tmp_path) -> str:
    return str(tmp_path / "cache" / "marketview.db")


class TestSqliteBackend:
    @pytest.mark.asyncio
    async def test_set_get_delete(self, db_path: str) -> None:
        async with SqliteBackend(db_path) as backend:
            await backend.set("coin_data_bitcoin", '{"a": 1}')
            assert await backend.get("coin_data_bitcoin") == '{"a": 1}'

            await backend.set("coin_data_bitcoin", '{"a": 2}')
            assert await backend.get("coin_data_bitcoin") == '{"a": 2}'

            await backend.delete("coin_data_bitcoin")
            assert await backend.get("coin_data_bitcoin") is None

    @pytest.mark.asyncio
    async def test_keys_prefix_is_literal(self, db_path: str) -> None:
        async with SqliteBackend(db_path) as backend:
            await backend.set("coin_data_bitcoin", "1")
            await backend.set("coinXdataYsolana", "2")
            await backend.set("cg_cache_search", "3")

            assert await backend.keys("coin_data_") == ["coin_data_bitcoin"]
            assert sorted(await backend.keys()) == [
                "cg_cache_search",
                "coinXdataYsolana",
                "coin_data_bitcoin",
            ]

    @pytest.mark.asyncio
    async def test_capacity_limit(self, db_path: str) -> None:
        async with SqliteBackend(db_path, max_bytes=40) as backend:
            await backend.set("k1", "x" * 20)
            with pytest.raises(CacheCapacityError):
                await backend.set("k2", "y" * 20)
            # replacing an existing key only counts the new value
            await backend.set("k1", "z" * 30)
            assert await backend.get("k1") == "z" * 30

    @pytest.mark.asyncio
    async def test_not_connected(self, db_path: str) -> None:
        backend = SqliteBackend(db_path)
        with pytest.raises(RuntimeError, match="not connected"):
            await backend.get("anything")

    @pytest.mark.asyncio
    async def test_entries_survive_reopen(self, db_path: str) -> None:
        clock = FakeClock(float(epoch("2024-01-03T00:00:00")))
        now = int(clock.now)
        entry = build_cache_entry(
            coin_id="solana",
            symbol="SOLUSDT",
            raw=make_candles(epoch("2024-01-02T00:00:00"), 24),
            fetched_at_ms=now * 1000,
            ttl_ms=3_600_000,
            source_range=SourceRange(from_ts=now - 7 * 86_400, to_ts=now),
        )

        async with SqliteBackend(db_path) as backend:
            await CoinCacheStore(backend, clock=clock).put(entry)

        async with SqliteBackend(db_path) as backend:
            assert await CoinCacheStore(backend, clock=clock).get("solana") == entry
