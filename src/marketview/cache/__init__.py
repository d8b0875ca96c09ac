"""Local cache layer -- key/value backends and typed TTL stores."""

from marketview.cache.backends import KeyValueBackend, MemoryBackend, SqliteBackend
from marketview.cache.store import SCHEMA_VERSION, CoinCacheStore, TTLCache

__all__ = [
    "SCHEMA_VERSION",
    "CoinCacheStore",
    "KeyValueBackend",
    "MemoryBackend",
    "SqliteBackend",
    "TTLCache",
]
