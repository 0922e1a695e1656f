"""Labor-time lookup through the 90-day labor cache."""

from __future__ import annotations

import logging
from functools import partial
from typing import Any, Protocol

from diag_engine.cache.manager import TTLCache
from diag_engine.errors import LaborLookupUnavailable
from diag_engine.models import LaborTimeRecord
from diag_engine.types import CacheKey, CacheResult, LaborTime

logger = logging.getLogger(__name__)


class LaborTimeSource(Protocol):
    def fetch(self, year: int, make: str, model: str, procedure: str) -> LaborTime | None:
        """Look up labor time live; None when the guide has no entry."""


def normalize_procedure(procedure: str) -> str:
    return " ".join(procedure.lower().split())


def labor_scope(year: int, make: str, model: str) -> CacheKey:
    return (make.strip().upper(), model.strip().upper(), int(year))


class LaborTimeLookup:
    """Cached labor times scoped by vehicle, matched on procedure name.

    A stored procedure matches when it contains the requested one, so a
    seeded "Catalytic converter failure - replace" serves a lookup for
    "Catalytic converter failure". Without a live source only stored
    entries are served, stale ones included.
    """

    def __init__(self, cache: TTLCache[LaborTime | None], source: LaborTimeSource | None = None) -> None:
        self._cache = cache
        self._source = source

    def lookup(
        self, year: int | None, make: str | None, model: str | None, procedure: str
    ) -> CacheResult[LaborTime | None]:
        needle = normalize_procedure(procedure)
        if year is None or not make or not model or not needle:
            return CacheResult(payload=None, error="Incomplete labor lookup parameters")

        fetch = (
            partial(_fetch_live, self._source, int(year), make, model, procedure)
            if self._source is not None
            else None
        )
        return self._cache.get_matching(
            labor_scope(year, make, model),
            needle,
            fetch=fetch,
            default_factory=lambda: None,
        )

    def seed(self, record: LaborTimeRecord) -> CacheKey:
        """Store a reference labor time with a fresh TTL."""
        key = (*labor_scope(record.year, record.make, record.model), normalize_procedure(record.procedure))
        self._cache.put(key, LaborTime(hours=record.hours, source=record.source, notes=record.notes))
        return key


def _fetch_live(source: LaborTimeSource, year: int, make: str, model: str, procedure: str) -> LaborTime:
    result = source.fetch(year, make, model, procedure)
    if result is None:
        raise LaborLookupUnavailable(f"No labor time found for {procedure!r}")
    logger.info("Live labor lookup: %.1fh for %s (%s)", result.hours, procedure, result.source)
    return result


def labor_to_json(labor: LaborTime | None) -> dict[str, Any] | None:
    if labor is None:
        return None
    return {"hours": labor.hours, "source": labor.source, "notes": labor.notes}


def labor_from_json(raw: dict[str, Any] | None) -> LaborTime | None:
    if raw is None:
        return None
    return LaborTime(hours=float(raw["hours"]), source=raw.get("source") or "labor_cache", notes=raw.get("notes"))
