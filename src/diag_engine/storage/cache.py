"""Storage backends for the TTL caches."""

from __future__ import annotations

import json
import re
import sqlite3
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any, Generic, Protocol, TypeVar

from diag_engine.types import CacheEntry, CacheKey

T = TypeVar("T")

_TABLE_NAME = re.compile(r"^[a-z_][a-z0-9_]*$")


class CacheBackend(Protocol[T]):
    """Keyed storage for cache entries, expired ones included."""

    def read(self, key: CacheKey) -> CacheEntry[T] | None:
        """Return the most recent entry for `key`, fresh or expired."""

    def delete(self, key: CacheKey) -> None:
        """Remove every entry stored under `key`."""

    def insert(self, entry: CacheEntry[T]) -> None:
        """Store a new entry."""

    def find(self, scope: CacheKey, needle: str) -> CacheEntry[T] | None:
        """Most recent entry under `scope` whose last key part contains `needle`.

        `scope` is every key part but the last; matching is case-insensitive.
        """


class InMemoryCacheBackend(Generic[T]):
    def __init__(self) -> None:
        self._entries: dict[CacheKey, CacheEntry[T]] = {}

    def read(self, key: CacheKey) -> CacheEntry[T] | None:
        return self._entries.get(key)

    def delete(self, key: CacheKey) -> None:
        self._entries.pop(key, None)

    def insert(self, entry: CacheEntry[T]) -> None:
        self._entries[entry.key] = entry

    def find(self, scope: CacheKey, needle: str) -> CacheEntry[T] | None:
        wanted = needle.lower()
        hits = [
            entry
            for key, entry in self._entries.items()
            if key and key[:-1] == scope and wanted in str(key[-1]).lower()
        ]
        return max(hits, key=lambda entry: entry.fetched_at, default=None)


class SqliteCacheBackend(Generic[T]):
    """One SQLite table per cache, payloads stored as JSON text.

    Besides the full key, each row keeps its scope (every key part but the
    last) and the lowercased last part so `find` can match on a substring.
    """

    def __init__(
        self,
        sqlite_path: str | Path,
        table: str,
        *,
        dump: Callable[[T], Any],
        load: Callable[[Any], T],
    ) -> None:
        if not _TABLE_NAME.match(table):
            raise ValueError(f"Invalid cache table name: {table}")
        self._db_file = Path(sqlite_path)
        self._table = table
        self._dump = dump
        self._load = load
        with sqlite3.connect(self._db_file) as conn:
            conn.execute(
                f"CREATE TABLE IF NOT EXISTS {table} ("
                "cache_key TEXT NOT NULL, scope_key TEXT NOT NULL, detail TEXT NOT NULL, "
                "payload TEXT NOT NULL, fetched_at TEXT NOT NULL, expires_at TEXT NOT NULL)"
            )
            conn.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_key ON {table}(cache_key)")
            conn.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_scope ON {table}(scope_key)")
            conn.commit()

    def read(self, key: CacheKey) -> CacheEntry[T] | None:
        with sqlite3.connect(self._db_file) as conn:
            row = conn.execute(
                f"SELECT cache_key, payload, fetched_at, expires_at FROM {self._table} "
                "WHERE cache_key = ? ORDER BY fetched_at DESC LIMIT 1",
                (_encode_key(key),),
            ).fetchone()
        return self._entry(row) if row else None

    def find(self, scope: CacheKey, needle: str) -> CacheEntry[T] | None:
        with sqlite3.connect(self._db_file) as conn:
            row = conn.execute(
                f"SELECT cache_key, payload, fetched_at, expires_at FROM {self._table} "
                "WHERE scope_key = ? AND detail LIKE ? ESCAPE '\\' "
                "ORDER BY fetched_at DESC LIMIT 1",
                (_encode_key(scope), f"%{_escape_like(needle.lower())}%"),
            ).fetchone()
        return self._entry(row) if row else None

    def delete(self, key: CacheKey) -> None:
        with sqlite3.connect(self._db_file) as conn:
            conn.execute(f"DELETE FROM {self._table} WHERE cache_key = ?", (_encode_key(key),))
            conn.commit()

    def insert(self, entry: CacheEntry[T]) -> None:
        key = tuple(entry.key)
        with sqlite3.connect(self._db_file) as conn:
            conn.execute(
                f"INSERT INTO {self._table}"
                "(cache_key, scope_key, detail, payload, fetched_at, expires_at) "
                "VALUES(?, ?, ?, ?, ?, ?)",
                (
                    _encode_key(key),
                    _encode_key(key[:-1]),
                    str(key[-1]).lower() if key else "",
                    json.dumps(self._dump(entry.payload)),
                    entry.fetched_at.isoformat(),
                    entry.expires_at.isoformat(),
                ),
            )
            conn.commit()

    def _entry(self, row: tuple[str, str, str, str]) -> CacheEntry[T]:
        cache_key, payload, fetched_at, expires_at = row
        return CacheEntry(
            key=tuple(json.loads(cache_key)),
            payload=self._load(json.loads(payload)),
            fetched_at=datetime.fromisoformat(fetched_at),
            expires_at=datetime.fromisoformat(expires_at),
        )


def _encode_key(key: CacheKey) -> str:
    return json.dumps(list(key))


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
