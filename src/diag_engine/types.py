"""Runtime records used inside the engine and its caches."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Generic, TypeVar

T = TypeVar("T")

CacheKey = tuple[Any, ...]


@dataclass(slots=True)
class CacheEntry(Generic[T]):
    """A cached payload with its TTL window."""

    key: CacheKey
    payload: T
    fetched_at: datetime
    expires_at: datetime

    def is_fresh(self, now: datetime) -> bool:
        return now < self.expires_at


@dataclass(slots=True)
class CacheResult(Generic[T]):
    """Outcome of a cache-aside read.

    `cached` marks a fresh hit; `stale` marks an expired entry served because
    the live fetch failed. Both false means the payload was fetched just now,
    or is the default when nothing was available.
    """

    payload: T
    cached: bool = False
    stale: bool = False
    fetched_at: datetime | None = None
    error: str | None = None


@dataclass(slots=True)
class RegistryData:
    """Recalls and complaints for one vehicle."""

    recalls: list[dict[str, Any]] = field(default_factory=list)
    complaints: list[dict[str, Any]] = field(default_factory=list)


@dataclass(slots=True)
class LaborTime:
    """Labor time for one procedure on one vehicle."""

    hours: float
    source: str = "labor_cache"
    notes: str | None = None


@dataclass(slots=True)
class ScoreBreakdown:
    """Inputs that produced one final confidence value."""

    similarity: float
    base_confidence: float
    success_rate: float
    vehicle_bonus: float
    mileage_factor: float
    raw: float
    final: float
