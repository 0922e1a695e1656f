"""Corpus ingest pipeline: load -> validate -> embed -> insert."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

from pydantic import ValidationError

from diag_engine.external.labor import LaborTimeLookup
from diag_engine.ingest.embedder import Embedder, build_case_text
from diag_engine.models import LaborTimeRecord, RetrievedCase
from diag_engine.storage.cases import CaseStore

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 20


@dataclass(slots=True)
class IngestReport:
    inserted: int = 0
    errors: int = 0
    case_ids: list[str] = field(default_factory=list)


class CaseIngestPipeline:
    """Loads repair cases into the case store.

    Ingestion is offline work: a batch that fails to embed or insert is
    counted in the report and the remaining batches still run.
    """

    def __init__(
        self,
        embedder: Embedder,
        case_store: CaseStore,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._embedder = embedder
        self._case_store = case_store
        self._batch_size = batch_size

    def ingest(self, records: Iterable[RetrievedCase | dict[str, Any]]) -> IngestReport:
        report = IngestReport()
        cases: list[RetrievedCase] = []
        for record in records:
            try:
                cases.append(
                    record if isinstance(record, RetrievedCase) else RetrievedCase.model_validate(record)
                )
            except ValidationError as exc:
                logger.warning("Skipping invalid case record: %s", exc.errors()[:1])
                report.errors += 1

        for start in range(0, len(cases), self._batch_size):
            batch = cases[start : start + self._batch_size]
            try:
                embeddings = self._embedder.embed_documents([build_case_text(case) for case in batch])
                stored = [
                    self._case_store.insert(case, embedding)
                    for case, embedding in zip(batch, embeddings)
                ]
            except Exception as exc:
                logger.error("Batch %d failed: %s", start // self._batch_size + 1, exc)
                report.errors += len(batch)
                continue
            report.inserted += len(stored)
            report.case_ids.extend(case.id for case in stored if case.id)
            logger.info("Inserted %d/%d cases", min(start + len(batch), len(cases)), len(cases))

        logger.info("Ingest done: %d inserted, %d errors", report.inserted, report.errors)
        return report

    def ingest_path(self, path: str | Path) -> IngestReport:
        """Ingest a JSON file holding a list of cases or `{"cases": [...]}`."""
        return self.ingest(_load_records(path, "cases"))


class LaborSeedPipeline:
    """Loads reference labor times into the labor cache.

    Each record is stored with a fresh TTL; an invalid or unwritable record
    is counted and skipped.
    """

    def __init__(self, labor_lookup: LaborTimeLookup) -> None:
        self._labor_lookup = labor_lookup

    def ingest(self, records: Iterable[LaborTimeRecord | dict[str, Any]]) -> IngestReport:
        report = IngestReport()
        for record in records:
            try:
                labor = (
                    record if isinstance(record, LaborTimeRecord) else LaborTimeRecord.model_validate(record)
                )
                self._labor_lookup.seed(labor)
            except ValidationError as exc:
                logger.warning("Skipping invalid labor record: %s", exc.errors()[:1])
                report.errors += 1
                continue
            except Exception as exc:
                logger.error("Labor seed failed for %s: %s", record, exc)
                report.errors += 1
                continue
            report.inserted += 1

        logger.info("Labor seed done: %d stored, %d errors", report.inserted, report.errors)
        return report

    def ingest_path(self, path: str | Path) -> IngestReport:
        """Ingest a JSON file holding a list of labor times or `{"labor_times": [...]}`."""
        return self.ingest(_load_records(path, "labor_times"))


def _load_records(path: str | Path, wrapper_key: str) -> list[Any]:
    source = Path(path)
    if not source.exists():
        raise FileNotFoundError(f"Seed file not found: {source}")
    payload = json.loads(source.read_text(encoding="utf-8"))
    if isinstance(payload, dict):
        payload = payload.get(wrapper_key, [])
    if not isinstance(payload, list):
        raise ValueError(f"Expected a list of records in {source}")
    logger.info("Loaded %d records from %s", len(payload), source)
    return payload
