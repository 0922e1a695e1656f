"""TTL cache-aside helper shared by the external lookups."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Generic, TypeVar

from diag_engine.models import utcnow
from diag_engine.storage.cache import CacheBackend
from diag_engine.types import CacheEntry, CacheKey, CacheResult

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TTLCache(Generic[T]):
    """Cache-aside reads over a `CacheBackend`.

    Read path:
    1. A non-expired entry is returned as-is with `cached=True`.
    2. Otherwise `fetch` runs; its payload replaces any previous entry for the
       key (delete, then insert with a fresh TTL).
    3. If `fetch` raises, an expired entry is served with `stale=True`, or the
       default payload when nothing was ever cached.

    `get` matches keys exactly; `get_matching` matches the last key part as a
    substring within a scope. Neither raises; backend failures are logged and
    treated as a miss.
    """

    def __init__(
        self,
        name: str,
        backend: CacheBackend[T],
        ttl: timedelta,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.name = name
        self.ttl = ttl
        self._backend = backend
        self._clock = clock

    def get(
        self,
        key: CacheKey,
        fetch: Callable[[], T],
        default_factory: Callable[[], T],
    ) -> CacheResult[T]:
        return self._resolve(key, self._read(key), fetch, default_factory)

    def get_matching(
        self,
        scope: CacheKey,
        needle: str,
        fetch: Callable[[], T] | None,
        default_factory: Callable[[], T],
    ) -> CacheResult[T]:
        """Like `get`, for the newest entry in `scope` whose last key part contains `needle`.

        A fetched payload is stored under `scope + (needle,)`. Without `fetch`
        the lookup is read-only: an expired match is served stale, and a miss
        returns the default without an error.
        """
        key = (*scope, needle)
        entry = self._find(scope, needle)
        if fetch is None:
            if entry is None:
                logger.debug("%s cache miss for %s, no live source", self.name, key)
                return CacheResult(payload=default_factory())
            if not entry.is_fresh(self._clock()):
                logger.warning(
                    "%s entry for %s expired %s, serving stale",
                    self.name,
                    key,
                    entry.expires_at.isoformat(),
                )
                return CacheResult(payload=entry.payload, stale=True, fetched_at=entry.fetched_at)
        return self._resolve(key, entry, fetch, default_factory)

    def put(self, key: CacheKey, payload: T) -> CacheEntry[T]:
        """Store `payload` under `key` with a fresh TTL."""
        fetched_at = self._clock()
        entry = CacheEntry(key=key, payload=payload, fetched_at=fetched_at, expires_at=fetched_at + self.ttl)
        self._backend.delete(key)
        self._backend.insert(entry)
        return entry

    def _resolve(
        self,
        key: CacheKey,
        entry: CacheEntry[T] | None,
        fetch: Callable[[], T] | None,
        default_factory: Callable[[], T],
    ) -> CacheResult[T]:
        now = self._clock()
        if entry is not None and entry.is_fresh(now):
            logger.info("%s cache hit for %s (expires %s)", self.name, entry.key, entry.expires_at.isoformat())
            return CacheResult(payload=entry.payload, cached=True, fetched_at=entry.fetched_at)

        logger.info("%s cache miss for %s, fetching", self.name, key)
        try:
            payload = fetch()
        except Exception as exc:
            if entry is not None:
                logger.warning(
                    "%s fetch failed for %s, serving stale entry from %s: %s",
                    self.name,
                    key,
                    entry.fetched_at.isoformat(),
                    exc,
                )
                return CacheResult(
                    payload=entry.payload,
                    stale=True,
                    fetched_at=entry.fetched_at,
                    error=str(exc),
                )
            logger.warning("%s fetch failed for %s with nothing cached: %s", self.name, key, exc)
            return CacheResult(payload=default_factory(), error=str(exc))

        fetched_at = self._clock()
        self._store(CacheEntry(key=key, payload=payload, fetched_at=fetched_at, expires_at=fetched_at + self.ttl))
        return CacheResult(payload=payload, fetched_at=fetched_at)

    def _read(self, key: CacheKey) -> CacheEntry[T] | None:
        try:
            return self._backend.read(key)
        except Exception as exc:
            logger.error("%s cache read failed for %s: %s", self.name, key, exc)
            return None

    def _find(self, scope: CacheKey, needle: str) -> CacheEntry[T] | None:
        try:
            return self._backend.find(scope, needle)
        except Exception as exc:
            logger.error("%s cache scan failed for %s ~ %r: %s", self.name, scope, needle, exc)
            return None

    def _store(self, entry: CacheEntry[T]) -> None:
        # At most one entry per key after a refresh.
        try:
            self._backend.delete(entry.key)
            self._backend.insert(entry)
        except Exception as exc:
            logger.error("%s cache write failed for %s (non-fatal): %s", self.name, entry.key, exc)
