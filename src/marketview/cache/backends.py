"""Key/value storage backends for the local caches.

Both backends store plain JSON strings under string keys and may be capped
by total payload size, mirroring a browser localStorage quota. A write that
would exceed the cap raises CacheCapacityError; the stores above decide
how to recover.
"""

import os
from abc import ABC, abstractmethod
from typing import Self

import aiosqlite

from marketview.exceptions import CacheCapacityError
from marketview.logging import get_logger

logger = get_logger(__name__)

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS kv_cache (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


class KeyValueBackend(ABC):
    """Abstract async key/value store."""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the stored value or None."""
        ...

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """Store a value, replacing any previous one.

        Raises CacheCapacityError if the store is full.
        """
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a key if present."""
        ...

    @abstractmethod
    async def keys(self, prefix: str = "") -> list[str]:
        """Return all keys starting with ``prefix``."""
        ...

    async def close(self) -> None:
        """Release resources. No-op by default."""


class MemoryBackend(KeyValueBackend):
    """In-process store that lives as long as the application."""

    def __init__(self, max_bytes: int | None = None) -> None:
        self._data: dict[str, str] = {}
        self._max_bytes = max_bytes
        self._size = 0

    @property
    def size_bytes(self) -> int:
        return self._size

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        previous = self._data.get(key)
        new_size = self._size - _entry_size(key, previous) + _entry_size(key, value)
        if self._max_bytes is not None and new_size > self._max_bytes:
            raise CacheCapacityError(
                f"memory cache full: {new_size} > {self._max_bytes} bytes"
            )
        self._data[key] = value
        self._size = new_size

    async def delete(self, key: str) -> None:
        previous = self._data.pop(key, None)
        self._size -= _entry_size(key, previous)

    async def keys(self, prefix: str = "") -> list[str]:
        return [k for k in self._data if k.startswith(prefix)]


class SqliteBackend(KeyValueBackend):
    """aiosqlite-backed store that survives restarts.

    Usage:
        async with SqliteBackend("data/cache.db") as backend:
            store = CoinCacheStore(backend)
    """

    def __init__(self, db_path: str, max_bytes: int | None = None) -> None:
        self._db_path = db_path
        self._max_bytes = max_bytes
        self._connection: aiosqlite.Connection | None = None

    @property
    def db(self) -> aiosqlite.Connection:
        """Access the raw aiosqlite connection.

        Raises RuntimeError if not connected.
        """
        if self._connection is None:
            raise RuntimeError("Cache database not connected. Call connect() first.")
        return self._connection

    async def connect(self) -> None:
        """Open the database, creating its directory and table if needed."""
        db_dir = os.path.dirname(self._db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        self._connection = await aiosqlite.connect(self._db_path)
        await self._connection.execute("PRAGMA journal_mode=WAL")
        await self._connection.execute("PRAGMA synchronous=NORMAL")
        await self._connection.executescript(_CREATE_TABLES_SQL)
        await self._connection.commit()
        logger.info("cache_db_connected", db_path=self._db_path)

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info("cache_db_closed", db_path=self._db_path)

    async def get(self, key: str) -> str | None:
        cursor = await self.db.execute("SELECT value FROM kv_cache WHERE key = ?", (key,))
        row = await cursor.fetchone()
        return row[0] if row is not None else None

    async def set(self, key: str, value: str) -> None:
        if self._max_bytes is not None:
            cursor = await self.db.execute(
                "SELECT COALESCE(SUM(LENGTH(key) + LENGTH(value)), 0) "
                "FROM kv_cache WHERE key != ?",
                (key,),
            )
            row = await cursor.fetchone()
            new_size = (row[0] if row else 0) + _entry_size(key, value)
            if new_size > self._max_bytes:
                raise CacheCapacityError(
                    f"sqlite cache full: {new_size} > {self._max_bytes} bytes"
                )
        try:
            await self.db.execute(
                "INSERT OR REPLACE INTO kv_cache (key, value) VALUES (?, ?)",
                (key, value),
            )
            await self.db.commit()
        except aiosqlite.OperationalError as e:
            if "full" in str(e).lower():
                raise CacheCapacityError(str(e)) from e
            raise

    async def delete(self, key: str) -> None:
        await self.db.execute("DELETE FROM kv_cache WHERE key = ?", (key,))
        await self.db.commit()

    async def keys(self, prefix: str = "") -> list[str]:
        # substr comparison avoids LIKE wildcards inside the prefix
        cursor = await self.db.execute(
            "SELECT key FROM kv_cache WHERE substr(key, 1, ?) = ?",
            (len(prefix), prefix),
        )
        rows = await cursor.fetchall()
        return [row[0] for row in rows]

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        await self.close()


def _entry_size(key: str, value: str | None) -> int:
    if value is None:
        return 0
    return len(key) + len(value)
