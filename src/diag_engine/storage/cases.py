"""Case store contract and concrete adapters."""

from __future__ import annotations

import json
import sqlite3
import uuid
from dataclasses import dataclass, field
from math import sqrt
from pathlib import Path
from typing import Protocol

from diag_engine.models import RepairPlan, RetrievedCase


@dataclass(slots=True)
class CaseFilter:
    """Optional filters applied to vector search."""

    dtc_code: str | None = None
    make: str | None = None
    model: str | None = None
    year: int | None = None


@dataclass(slots=True)
class ExactFilter:
    """Filters for the exact-match lookup used when vector search is unavailable."""

    dtc_codes: list[str] = field(default_factory=list)
    make: str | None = None


class CaseStore(Protocol):
    """Minimal case store contract for retrieval and outcome learning."""

    def insert(self, case: RetrievedCase, embedding: list[float] | None = None) -> RetrievedCase:
        """Persist a case and return it with its assigned id."""

    def search(
        self,
        query_embedding: list[float],
        filters: CaseFilter,
        limit: int,
        min_similarity: float,
    ) -> list[RetrievedCase]:
        """Return cases ranked by vector similarity."""

    def exact_lookup(self, filters: ExactFilter, limit: int) -> list[RetrievedCase]:
        """Return cases matching the DTC codes, ordered by base confidence."""

    def read_repair_plan(self, case_id: str) -> RepairPlan | None:
        """Return the stored repair plan of one case, if any."""


class InMemoryCaseStore:
    """Deterministic case store used for tests and local prototyping."""

    def __init__(self) -> None:
        self._cases: dict[str, RetrievedCase] = {}
        self._embeddings: dict[str, list[float]] = {}

    def __len__(self) -> int:
        return len(self._cases)

    def insert(self, case: RetrievedCase, embedding: list[float] | None = None) -> RetrievedCase:
        stored = case.model_copy(update={"id": case.id or str(uuid.uuid4()), "similarity": 0.0})
        self._cases[stored.id] = stored
        if embedding is not None:
            self._embeddings[stored.id] = embedding
        return stored

    def search(
        self,
        query_embedding: list[float],
        filters: CaseFilter,
        limit: int,
        min_similarity: float,
    ) -> list[RetrievedCase]:
        scored = [
            (case, _cosine_similarity(query_embedding, self._embeddings[case_id]))
            for case_id, case in self._cases.items()
            if case_id in self._embeddings and _passes_filter(case, filters)
        ]
        return _rank(scored, limit, min_similarity)

    def exact_lookup(self, filters: ExactFilter, limit: int) -> list[RetrievedCase]:
        codes = {code.upper() for code in filters.dtc_codes}
        hits = [
            case
            for case in self._cases.values()
            if case.dtc_code.upper() in codes and _scope_matches(case.vehicle_make, filters.make)
        ]
        hits.sort(key=lambda case: case.base_confidence, reverse=True)
        return [case.model_copy() for case in hits[:limit]]

    def read_repair_plan(self, case_id: str) -> RepairPlan | None:
        case = self._cases.get(case_id)
        if case is None or case.repair_plan is None:
            return None
        return case.repair_plan.model_copy(deep=True)


class SqliteCaseStore:
    """Case store persisted in a local SQLite file.

    Embeddings are stored as JSON and scored in-process, so this adapter suits
    corpora of a few thousand cases.
    """

    def __init__(self, sqlite_path: str | Path) -> None:
        self._db_file = Path(sqlite_path)
        _ensure_case_table(self._db_file)

    def insert(self, case: RetrievedCase, embedding: list[float] | None = None) -> RetrievedCase:
        stored = case.model_copy(update={"id": case.id or str(uuid.uuid4()), "similarity": 0.0})
        with sqlite3.connect(self._db_file) as conn:
            conn.execute(
                "INSERT INTO cases(id, dtc_code, vehicle_make, base_confidence, payload, embedding) "
                "VALUES(?, ?, ?, ?, ?, ?)",
                (
                    stored.id,
                    stored.dtc_code.upper(),
                    stored.vehicle_make,
                    stored.base_confidence,
                    stored.model_dump_json(exclude={"similarity"}),
                    json.dumps(embedding) if embedding is not None else None,
                ),
            )
            conn.commit()
        return stored

    def search(
        self,
        query_embedding: list[float],
        filters: CaseFilter,
        limit: int,
        min_similarity: float,
    ) -> list[RetrievedCase]:
        sql = "SELECT payload, embedding FROM cases WHERE embedding IS NOT NULL"
        params: list[object] = []
        if filters.dtc_code:
            sql += " AND dtc_code = ?"
            params.append(filters.dtc_code.upper())
        with sqlite3.connect(self._db_file) as conn:
            rows = conn.execute(sql, params).fetchall()

        scored = []
        for payload, raw_embedding in rows:
            case = RetrievedCase.model_validate_json(payload)
            if not _passes_filter(case, filters):
                continue
            scored.append((case, _cosine_similarity(query_embedding, json.loads(raw_embedding))))
        return _rank(scored, limit, min_similarity)

    def exact_lookup(self, filters: ExactFilter, limit: int) -> list[RetrievedCase]:
        codes = [code.upper() for code in filters.dtc_codes]
        if not codes:
            return []
        placeholders = ", ".join("?" for _ in codes)
        sql = f"SELECT payload FROM cases WHERE dtc_code IN ({placeholders})"
        params: list[object] = list(codes)
        if filters.make:
            sql += " AND (vehicle_make IS NULL OR UPPER(vehicle_make) = ?)"
            params.append(filters.make.upper())
        sql += " ORDER BY base_confidence DESC LIMIT ?"
        params.append(limit)
        with sqlite3.connect(self._db_file) as conn:
            rows = conn.execute(sql, params).fetchall()
        return [RetrievedCase.model_validate_json(row[0]) for row in rows]

    def read_repair_plan(self, case_id: str) -> RepairPlan | None:
        with sqlite3.connect(self._db_file) as conn:
            row = conn.execute("SELECT payload FROM cases WHERE id = ?", (case_id,)).fetchone()
        if not row:
            return None
        return RetrievedCase.model_validate_json(row[0]).repair_plan


def _rank(
    scored: list[tuple[RetrievedCase, float]], limit: int, min_similarity: float
) -> list[RetrievedCase]:
    ranked = sorted(
        ((case, score) for case, score in scored if score >= min_similarity),
        key=lambda item: item[1],
        reverse=True,
    )
    return [
        case.model_copy(update={"similarity": round(min(1.0, max(0.0, score)), 4)})
        for case, score in ranked[:limit]
    ]


def _passes_filter(case: RetrievedCase, filters: CaseFilter) -> bool:
    if filters.dtc_code and case.dtc_code.upper() != filters.dtc_code.upper():
        return False
    if not _scope_matches(case.vehicle_make, filters.make):
        return False
    if not _scope_matches(case.vehicle_model, filters.model):
        return False
    return case.matches_year(filters.year)


def _scope_matches(case_value: str | None, wanted: str | None) -> bool:
    # Cases without vehicle scope apply to every vehicle.
    if not wanted or case_value is None:
        return True
    return case_value.upper() == wanted.upper()


def _cosine_similarity(a: list[float], b: list[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    numerator = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = sqrt(sum(x * x for x in a))
    norm_b = sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return numerator / (norm_a * norm_b)


def _ensure_case_table(db_path: Path) -> None:
    with sqlite3.connect(db_path) as conn:
        conn.execute(
            "CREATE TABLE IF NOT EXISTS cases ("
            "id TEXT PRIMARY KEY, dtc_code TEXT NOT NULL, vehicle_make TEXT, "
            "base_confidence REAL NOT NULL, payload TEXT NOT NULL, embedding TEXT)"
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_cases_dtc ON cases(dtc_code)")
        conn.commit()
