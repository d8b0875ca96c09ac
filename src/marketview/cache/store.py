"""Typed cache stores on top of a KeyValueBackend.

CoinCacheStore holds one CoinCacheEntry per coin under ``<prefix><coin_id>``.
TTLCache is a generic short-lived key/value namespace sharing the same
backend under its own prefix.

Every persisted coin entry is wrapped in a versioned envelope; an entry
written with another schema version reads as a miss and is deleted.
Caching is best-effort: a write that still fails after evicting expired
entries, or that hits a storage error, is logged and dropped.
"""

import json
import time
from collections.abc import Awaitable, Callable
from typing import Any

import aiosqlite

from marketview.cache.backends import KeyValueBackend
from marketview.exceptions import CacheCapacityError, CacheWriteFailure
from marketview.logging import get_logger
from marketview.models import CacheTTL, CoinCacheEntry

logger = get_logger(__name__)

SCHEMA_VERSION = 2

Clock = Callable[[], float]

# Backend failures other than a full store; a cache write never fails a request
_STORAGE_ERRORS = (aiosqlite.Error, OSError)


async def _write_with_eviction(
    backend: KeyValueBackend,
    key: str,
    value: str,
    evict: Callable[[], Awaitable[int]],
) -> None:
    """Write once; on a capacity error evict expired entries and retry once.

    Raises CacheWriteFailure if the retry fails too, or if the backend fails
    with a storage error (SQLite I/O, disk) at any point.
    """
    try:
        await backend.set(key, value)
        return
    except CacheCapacityError as e:
        logger.warning("cache_full_evicting", key=key, error=str(e))
    except _STORAGE_ERRORS as e:
        raise CacheWriteFailure(f"cache write failed for {key}: {e!r}") from e

    try:
        await evict()
        await backend.set(key, value)
    except (CacheCapacityError, *_STORAGE_ERRORS) as e:
        raise CacheWriteFailure(f"cache write failed for {key}: {e!r}") from e


class CoinCacheStore:
    """Per-coin market data cache with TTL expiry.

    Args:
        backend: Key/value backend shared with other caches.
        prefix: Key prefix for coin entries.
        clock: Time source returning epoch seconds (default time.time).
    """

    def __init__(
        self,
        backend: KeyValueBackend,
        prefix: str = "coin_data_",
        clock: Clock = time.time,
    ) -> None:
        self._backend = backend
        self._prefix = prefix
        self._clock = clock

    def _key(self, coin_id: str) -> str:
        return f"{self._prefix}{coin_id}"

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def get(self, coin_id: str) -> CoinCacheEntry | None:
        """Return the cached entry, or None on a miss.

        Expired, unreadable and other-schema entries are deleted on read.
        """
        key = self._key(coin_id)
        raw = await self._backend.get(key)
        if raw is None:
            logger.debug("coin_cache_miss", coin_id=coin_id)
            return None

        entry = self._decode(raw)
        if entry is None:
            logger.warning("coin_cache_incompatible", coin_id=coin_id)
            await self._backend.delete(key)
            return None

        if entry.is_expired(self._now_ms()):
            logger.info("coin_cache_expired", coin_id=coin_id)
            await self._backend.delete(key)
            return None

        logger.debug("coin_cache_hit", coin_id=coin_id, candles=len(entry.raw_candles))
        return entry

    async def put(self, entry: CoinCacheEntry) -> None:
        """Store an entry, fully replacing any previous one for the coin."""
        key = self._key(entry.coin_id)
        payload = json.dumps(
            {"schema_version": SCHEMA_VERSION, "payload": entry.to_dict()},
            separators=(",", ":"),
        )
        try:
            await _write_with_eviction(self._backend, key, payload, self.evict_expired)
        except CacheWriteFailure as e:
            logger.error("coin_cache_write_failed", coin_id=entry.coin_id, error=str(e))
            return

        logger.info(
            "coin_cache_set",
            coin_id=entry.coin_id,
            candles=len(entry.raw_candles),
            range_from=entry.source_range.from_ts,
            range_to=entry.source_range.to_ts,
            ttl_ms=entry.ttl_ms,
            timeframes=sorted(entry.aggregated),
        )

    async def delete(self, coin_id: str) -> None:
        await self._backend.delete(self._key(coin_id))

    async def evict_expired(self) -> int:
        """Remove expired or unreadable coin entries. Returns the number removed."""
        now_ms = self._now_ms()
        cleared = 0
        for key in await self._backend.keys(self._prefix):
            raw = await self._backend.get(key)
            entry = self._decode(raw) if raw is not None else None
            if entry is None or entry.is_expired(now_ms):
                await self._backend.delete(key)
                cleared += 1
        if cleared:
            logger.info("cache_entries_cleared", namespace="coin", cleared=cleared)
        return cleared

    async def clear(self) -> int:
        """Remove every coin entry. Returns the number removed."""
        keys = await self._backend.keys(self._prefix)
        for key in keys:
            await self._backend.delete(key)
        logger.info("cache_entries_cleared", namespace="coin", cleared=len(keys))
        return len(keys)

    @staticmethod
    def _decode(raw: str) -> CoinCacheEntry | None:
        try:
            envelope = json.loads(raw)
            if envelope.get("schema_version") != SCHEMA_VERSION:
                return None
            return CoinCacheEntry.from_dict(envelope["payload"])
        except (ValueError, KeyError, TypeError, AttributeError):
            return None


class TTLCache:
    """Generic short-TTL JSON cache (e.g. search results, market snapshots).

    Args:
        backend: Key/value backend shared with other caches.
        prefix: Key prefix for this namespace.
        default_ttl_ms: TTL used when ``set`` is called without one.
        clock: Time source returning epoch seconds (default time.time).
    """

    def __init__(
        self,
        backend: KeyValueBackend,
        prefix: str = "cg_cache_",
        default_ttl_ms: int = int(CacheTTL.SHORT),
        clock: Clock = time.time,
    ) -> None:
        self._backend = backend
        self._prefix = prefix
        self._default_ttl_ms = default_ttl_ms
        self._clock = clock

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def get(self, key: str) -> Any | None:
        cache_key = self._key(key)
        raw = await self._backend.get(cache_key)
        if raw is None:
            return None

        try:
            cached = json.loads(raw)
            expired = self._now_ms() - cached["timestamp"] > cached["ttl"]
        except (ValueError, KeyError, TypeError):
            await self._backend.delete(cache_key)
            return None

        if expired:
            await self._backend.delete(cache_key)
            return None

        logger.debug("cache_hit", key=key)
        return cached["data"]

    async def set(self, key: str, data: Any, ttl_ms: int | None = None) -> None:
        ttl = self._default_ttl_ms if ttl_ms is None else ttl_ms
        payload = json.dumps({"data": data, "timestamp": self._now_ms(), "ttl": ttl})
        try:
            await _write_with_eviction(
                self._backend, self._key(key), payload, self.clear_expired
            )
        except CacheWriteFailure as e:
            logger.error("cache_write_failed", key=key, error=str(e))
            return
        logger.debug("cache_set", key=key, ttl_ms=ttl)

    async def clear_expired(self) -> int:
        now_ms = self._now_ms()
        cleared = 0
        for cache_key in await self._backend.keys(self._prefix):
            raw = await self._backend.get(cache_key)
            try:
                cached = json.loads(raw) if raw is not None else None
                stale = cached is None or now_ms - cached["timestamp"] > cached["ttl"]
            except (ValueError, KeyError, TypeError):
                stale = True
            if stale:
                await self._backend.delete(cache_key)
                cleared += 1
        if cleared:
            logger.info("cache_entries_cleared", namespace="generic", cleared=cleared)
        return cleared

    async def clear(self) -> int:
        keys = await self._backend.keys(self._prefix)
        for cache_key in keys:
            await self._backend.delete(cache_key)
        logger.info("cache_entries_cleared", namespace="generic", cleared=len(keys))
        return len(keys)
