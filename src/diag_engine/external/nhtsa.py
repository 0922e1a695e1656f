"""Recall and complaint lookups against the NHTSA public API."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Protocol

import httpx

from diag_engine.cache.manager import TTLCache
from diag_engine.errors import RegistryFetchError
from diag_engine.types import CacheResult, RegistryData

logger = logging.getLogger(__name__)


class RegistrySource(Protocol):
    def fetch_recalls(self, make: str, model: str, year: int) -> list[dict[str, Any]]:
        """Return recall campaigns for a vehicle."""

    def fetch_complaints(self, make: str, model: str, year: int) -> list[dict[str, Any]]:
        """Return owner complaints for a vehicle."""


class NhtsaClient:
    """Thin synchronous client for the NHTSA recalls/complaints endpoints."""

    def __init__(
        self,
        *,
        base_url: str = "https://api.nhtsa.gov",
        timeout: float = 15.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout)

    def fetch_recalls(self, make: str, model: str, year: int) -> list[dict[str, Any]]:
        return self._get_results("/recalls/recallsByVehicle", make, model, year)

    def fetch_complaints(self, make: str, model: str, year: int) -> list[dict[str, Any]]:
        return self._get_results("/complaints/complaintsByVehicle", make, model, year)

    def close(self) -> None:
        self._client.close()

    def _get_results(self, path: str, make: str, model: str, year: int) -> list[dict[str, Any]]:
        logger.info("Fetching %s for %s %s %s", path, make, model, year)
        response = self._client.get(path, params={"make": make, "model": model, "modelYear": year})
        response.raise_for_status()
        results = response.json().get("results") or []
        logger.info("NHTSA %s returned %d rows for %s %s %s", path, len(results), make, model, year)
        return list(results)


class RecallLookup:
    """Reads registry data through the 30-day recall cache."""

    def __init__(self, source: RegistrySource, cache: TTLCache[RegistryData]) -> None:
        self._source = source
        self._cache = cache

    def lookup(self, make: str | None, model: str | None, year: int | None) -> CacheResult[RegistryData]:
        norm_make = (make or "").strip().upper()
        norm_model = (model or "").strip().upper()
        if not norm_make or not norm_model or year is None:
            return CacheResult(
                payload=RegistryData(),
                error="Invalid vehicle parameters: make, model, and year are required",
            )

        return self._cache.get(
            (norm_make, norm_model, int(year)),
            fetch=lambda: self._fetch(make or "", model or "", int(year)),
            default_factory=RegistryData,
        )

    def _fetch(self, make: str, model: str, year: int) -> RegistryData:
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="nhtsa") as pool:
            recall_future = pool.submit(self._source.fetch_recalls, make, model, year)
            complaint_future = pool.submit(self._source.fetch_complaints, make, model, year)

        data = RegistryData()
        failures: list[str] = []
        try:
            data.recalls = recall_future.result()
        except Exception as exc:
            logger.warning("Recall fetch failed for %s %s %s: %s", make, model, year, exc)
            failures.append(f"recalls: {exc}")
        try:
            data.complaints = complaint_future.result()
        except Exception as exc:
            logger.warning("Complaint fetch failed for %s %s %s: %s", make, model, year, exc)
            failures.append(f"complaints: {exc}")

        if len(failures) == 2:
            raise RegistryFetchError("NHTSA fetch failed", {"failures": failures})
        return data


def registry_to_json(data: RegistryData) -> dict[str, Any]:
    return {"recalls": data.recalls, "complaints": data.complaints}


def registry_from_json(raw: dict[str, Any]) -> RegistryData:
    return RegistryData(recalls=list(raw.get("recalls") or []), complaints=list(raw.get("complaints") or []))
