"""Key/value store with per-key expiry, backed by the cache_entry table."""

from __future__ import annotations

import time

from tripwire.db.sqlite import SQLiteDB


class SQLiteKV:
    """String key/value store. Expired entries read as missing and are purged lazily.

    Usage:
        kv = SQLiteKV(db)
        kv.put("runs:cache:version", "abc")
        kv.put("runs:cache:abc:read:1", '{"success": true}', ttl_seconds=60)
        kv.get("runs:cache:version")  # "abc"
    """

    def __init__(self, db: SQLiteDB) -> None:
        self._db = db

    def get(self, key: str) -> str | None:
        row = self._db.fetchone(
            "SELECT value, expires_at FROM cache_entry WHERE key = ?", (key,)
        )
        if row is None:
            return None
        expires_at = row["expires_at"]
        if expires_at is not None and expires_at <= time.time():
            self._db.execute(
                "DELETE FROM cache_entry WHERE key = ? AND expires_at <= ?",
                (key, time.time()),
            )
            return None
        return row["value"]

    def put(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        """Store *value* under *key*, replacing any previous value."""
        expires_at = time.time() + ttl_seconds if ttl_seconds else None
        self._db.execute(
            "INSERT OR REPLACE INTO cache_entry (key, value, expires_at) VALUES (?, ?, ?)",
            (key, value, expires_at),
        )

    def delete(self, key: str) -> None:
        self._db.execute("DELETE FROM cache_entry WHERE key = ?", (key,))

    def purge_expired(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        cursor = self._db.execute(
            "DELETE FROM cache_entry WHERE expires_at IS NOT NULL AND expires_at <= ?",
            (time.time(),),
        )
        return cursor.rowcount

    def delete_prefix(self, prefix: str) -> int:
        """Drop every entry whose key starts with *prefix*. Returns the number removed."""
        cursor = self._db.execute(
            "DELETE FROM cache_entry WHERE substr(key, 1, ?) = ?",
            (len(prefix), prefix),
        )
        return cursor.rowcount
