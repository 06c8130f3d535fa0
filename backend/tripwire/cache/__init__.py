"""Versioned read-through cache for list and read endpoints."""

from tripwire.cache.kv import SQLiteKV
from tripwire.cache.query_cache import QueryCache, canonicalize

__all__ = ["SQLiteKV", "QueryCache", "canonicalize"]
