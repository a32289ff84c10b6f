"""
Response caching.

The revalidating cache serves every endpoint: fresh values are returned
directly, stale values are returned while one background refresh runs, and
concurrent recomputation of the same key is never started twice.
"""

from .revalidating_cache import CacheEntry, RevalidatingCache
from .stores import CacheStore, MemoryStore, RedisStore, StoredValue

__all__ = [
    "CacheEntry",
    "RevalidatingCache",
    "CacheStore",
    "MemoryStore",
    "RedisStore",
    "StoredValue",
]
