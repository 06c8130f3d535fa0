"""Versioned read-through cache for list and read endpoints.

Keys are ``{resource}:cache:{version}:{operation}:{args}``. The version
token of a resource family lives under ``{resource}:cache:version``;
rotating it on any write orphans every key built with the old token.
Orphans under the previous token are deleted with the rotation, and
expired entries are purged at most once per ``PURGE_INTERVAL_SECONDS``.

The cache never decides correctness. Backend errors and malformed
payloads are logged and treated as a miss (reads) or a no-op (writes).

Cached payloads have the shape ``{"success": bool, "result": list | dict}``.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Any, Callable
from urllib.parse import parse_qsl, urlencode, urlsplit

from tripwire.cache.kv import SQLiteKV
from tripwire.config import MIN_CACHE_TTL_SECONDS

logger = logging.getLogger(__name__)

Validator = Callable[[Any], Any]

PURGE_INTERVAL_SECONDS = 60


def canonicalize(url: str) -> str:
    """Path plus query parameters sorted by key, then value.

    >>> canonicalize("/tasks?b=2&a=1&a=0")
    '/tasks?a=0&a=1&b=2'
    """
    parts = urlsplit(url)
    params = sorted(parse_qsl(parts.query, keep_blank_values=True))
    path = parts.path or "/"
    if not params:
        return path
    return f"{path}?{urlencode(params)}"


def validate_list_payload(value: Any) -> dict[str, Any]:
    """Accept ``{"success": bool, "result": list}``, raise ValueError otherwise."""
    if not isinstance(value, dict):
        raise ValueError("Invalid cached list payload")
    if not isinstance(value.get("success"), bool):
        raise ValueError("Invalid cached list payload: success")
    if not isinstance(value.get("result"), list):
        raise ValueError("Invalid cached list payload: result")
    return value


def validate_read_payload(value: Any) -> dict[str, Any]:
    """Accept ``{"success": bool, "result": dict}``, raise ValueError otherwise."""
    if not isinstance(value, dict):
        raise ValueError("Invalid cached read payload")
    if not isinstance(value.get("success"), bool):
        raise ValueError("Invalid cached read payload: success")
    if not isinstance(value.get("result"), dict):
        raise ValueError("Invalid cached read payload: result")
    return value


class QueryCache:
    """Versioned cache for one resource family.

    Parameters
    ----------
    kv : SQLiteKV
        Backing key/value store.
    resource : str
        Family name used as the key prefix (for example "runs" or "records").
    ttl_seconds : int
        Entry lifetime. Values under the floor fall back to the floor.
    """

    def __init__(self, kv: SQLiteKV, resource: str, ttl_seconds: int = MIN_CACHE_TTL_SECONDS) -> None:
        self._kv = kv
        self.resource = resource
        self.ttl_seconds = max(ttl_seconds, MIN_CACHE_TTL_SECONDS)
        self._last_purge = 0.0

    @property
    def version_key(self) -> str:
        return f"{self.resource}:cache:version"

    def version_prefix(self, version: str) -> str:
        return f"{self.resource}:cache:{version}:"

    # -- Keys -----------------------------------------------------------------

    def key(self, version: str, operation: str, args: str) -> str:
        return f"{self.version_prefix(version)}{operation}:{args}"

    def list_key(self, version: str, url: str) -> str:
        return self.key(version, "list", canonicalize(url))

    def read_key(self, version: str, item_id: int | str) -> str:
        return self.key(version, "read", str(item_id))

    # -- Version token ----------------------------------------------------------

    def get_version(self) -> str:
        """Current version token, creating one on first use.

        The token is re-read after creation so that concurrent cold starts
        usually converge on the same value. A lost race only costs a few
        extra misses.
        """
        existing = self._kv.get(self.version_key)
        if existing:
            return existing
        created = uuid.uuid4().hex
        self._kv.put(self.version_key, created)
        return self._kv.get(self.version_key) or created

    def invalidate(self) -> None:
        """Rotate the version token and drop the entries it orphans.

        Failures are logged, never raised.
        """
        try:
            previous = self._kv.get(self.version_key)
            self._kv.put(self.version_key, uuid.uuid4().hex)
            if previous:
                self._kv.delete_prefix(self.version_prefix(previous))
        except Exception:
            logger.warning("Failed to invalidate %s cache", self.resource, exc_info=True)
            return
        self.purge_expired()

    def purge_expired(self, force: bool = False) -> int:
        """Drop expired entries, at most once per ``PURGE_INTERVAL_SECONDS``.

        Covers orphans whose rotation could not delete them (a concurrent
        writer or a failed delete). Returns the number removed.
        """
        now = time.time()
        if not force and now - self._last_purge < PURGE_INTERVAL_SECONDS:
            return 0
        self._last_purge = now
        try:
            removed = self._kv.purge_expired()
        except Exception:
            logger.warning("Failed to purge expired %s cache entries", self.resource, exc_info=True)
            return 0
        if removed:
            logger.info("Purged %d expired cache entries", removed)
        return removed

    # -- Entries ----------------------------------------------------------------

    def get(self, key: str, validate: Validator | None = None) -> Any | None:
        """Cached value for *key*, or None on a miss.

        A payload rejected by *validate*, or a backend failure, counts as
        a miss.
        """
        try:
            raw = self._kv.get(key)
        except Exception:
            logger.warning("%s cache get failed for %s", self.resource, key, exc_info=True)
            return None
        if raw is None:
            return None
        try:
            value = json.loads(raw)
            return validate(value) if validate else value
        except (json.JSONDecodeError, ValueError) as exc:
            logger.info("Discarding malformed %s cache entry %s: %s", self.resource, key, exc)
            return None

    def put(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        """Store *value* under *key*. Backend failures are logged and ignored.

        Raises
        ------
        ValueError
            If *value* is not JSON serializable.
        """
        try:
            serialized = json.dumps(value)
        except (TypeError, ValueError) as exc:
            raise ValueError(f'Failed to serialize cache value for key "{key}"') from exc
        try:
            self._kv.put(key, serialized, ttl_seconds or self.ttl_seconds)
        except Exception:
            logger.warning("%s cache put failed for %s", self.resource, key, exc_info=True)

    def read_through(
        self,
        operation: str,
        args: str,
        loader: Callable[[], dict[str, Any]],
        validate: Validator | None = None,
    ) -> dict[str, Any]:
        """Serve ``operation(args)`` from cache, or from *loader* on a miss.

        Every cache error degrades to calling *loader*; loader errors
        propagate untouched.
        """
        key: str | None = None
        try:
            key = self.key(self.get_version(), operation, args)
            cached = self.get(key, validate)
            if cached is not None:
                return cached
        except Exception:
            logger.warning(
                "%s cache read failed (%s). Returning fresh.", self.resource, operation,
                exc_info=True,
            )

        fresh = loader()
        if key is not None:
            try:
                self.put(key, fresh)
            except Exception:
                logger.warning(
                    "%s cache write failed (%s). Returning fresh.", self.resource, operation,
                    exc_info=True,
                )
        return fresh

    def read_list(self, url: str, loader: Callable[[], dict[str, Any]]) -> dict[str, Any]:
        return self.read_through("list", canonicalize(url), loader, validate_list_payload)

    def read_item(self, item_id: int | str, loader: Callable[[], dict[str, Any]]) -> dict[str, Any]:
        return self.read_through("read", str(item_id), loader, validate_read_payload)
