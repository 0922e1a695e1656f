"""Durable run log and outcome storage."""

from __future__ import annotations

import sqlite3
import uuid
from pathlib import Path
from typing import Protocol

from diag_engine.models import OutcomeRecord, RunSummary


class DiagnosisLog(Protocol):
    def append(self, summary: RunSummary) -> str:
        """Store a completed run and return its id."""

    def lookup_run(self, run_id: str) -> RunSummary | None:
        """Return a logged run, or None when unknown."""

    def list_recent(self, limit: int = 20) -> list[RunSummary]:
        """Most recent runs, oldest first."""

    def count(self) -> int:
        """Number of logged runs."""


class OutcomeStore(Protocol):
    def append(self, record: OutcomeRecord) -> OutcomeRecord:
        """Store an outcome and return it with its id."""

    def query_all(self) -> list[OutcomeRecord]:
        """Every recorded outcome."""


class InMemoryRunLog:
    def __init__(self) -> None:
        self._runs: dict[str, RunSummary] = {}

    def append(self, summary: RunSummary) -> str:
        run_id = summary.id or str(uuid.uuid4())
        self._runs[run_id] = summary.model_copy(update={"id": run_id})
        return run_id

    def lookup_run(self, run_id: str) -> RunSummary | None:
        return self._runs.get(run_id)

    def list_recent(self, limit: int = 20) -> list[RunSummary]:
        return list(self._runs.values())[-limit:]

    def count(self) -> int:
        return len(self._runs)


class InMemoryOutcomeStore:
    def __init__(self) -> None:
        self._records: list[OutcomeRecord] = []

    def append(self, record: OutcomeRecord) -> OutcomeRecord:
        stored = record.model_copy(update={"id": record.id or str(uuid.uuid4())})
        self._records.append(stored)
        return stored

    def query_all(self) -> list[OutcomeRecord]:
        return list(self._records)


class SqliteRunLog:
    """Run log persisted as JSON rows in SQLite."""

    def __init__(self, sqlite_path: str | Path) -> None:
        self._db_file = Path(sqlite_path)
        with sqlite3.connect(self._db_file) as conn:
            conn.execute(
                "CREATE TABLE IF NOT EXISTS diagnosis_log ("
                "id TEXT PRIMARY KEY, created_at TEXT NOT NULL, payload TEXT NOT NULL)"
            )
            conn.commit()

    def append(self, summary: RunSummary) -> str:
        run_id = summary.id or str(uuid.uuid4())
        stored = summary.model_copy(update={"id": run_id})
        with sqlite3.connect(self._db_file) as conn:
            conn.execute(
                "INSERT INTO diagnosis_log(id, created_at, payload) VALUES(?, ?, ?)",
                (run_id, stored.created_at.isoformat(), stored.model_dump_json()),
            )
            conn.commit()
        return run_id

    def lookup_run(self, run_id: str) -> RunSummary | None:
        with sqlite3.connect(self._db_file) as conn:
            row = conn.execute("SELECT payload FROM diagnosis_log WHERE id = ?", (run_id,)).fetchone()
        return RunSummary.model_validate_json(row[0]) if row else None

    def list_recent(self, limit: int = 20) -> list[RunSummary]:
        with sqlite3.connect(self._db_file) as conn:
            rows = conn.execute(
                "SELECT payload FROM diagnosis_log ORDER BY created_at DESC LIMIT ?", (limit,)
            ).fetchall()
        return [RunSummary.model_validate_json(row[0]) for row in reversed(rows)]

    def count(self) -> int:
        with sqlite3.connect(self._db_file) as conn:
            return int(conn.execute("SELECT COUNT(*) FROM diagnosis_log").fetchone()[0])


class SqliteOutcomeStore:
    def __init__(self, sqlite_path: str | Path) -> None:
        self._db_file = Path(sqlite_path)
        with sqlite3.connect(self._db_file) as conn:
            conn.execute(
                "CREATE TABLE IF NOT EXISTS diagnosis_outcomes ("
                "id TEXT PRIMARY KEY, run_id TEXT NOT NULL, recorded_at TEXT NOT NULL, "
                "payload TEXT NOT NULL)"
            )
            conn.commit()

    def append(self, record: OutcomeRecord) -> OutcomeRecord:
        stored = record.model_copy(update={"id": record.id or str(uuid.uuid4())})
        with sqlite3.connect(self._db_file) as conn:
            conn.execute(
                "INSERT INTO diagnosis_outcomes(id, run_id, recorded_at, payload) VALUES(?, ?, ?, ?)",
                (stored.id, stored.run_id, stored.recorded_at.isoformat(), stored.model_dump_json()),
            )
            conn.commit()
        return stored

    def query_all(self) -> list[OutcomeRecord]:
        with sqlite3.connect(self._db_file) as conn:
            rows = conn.execute(
                "SELECT payload FROM diagnosis_outcomes ORDER BY recorded_at"
            ).fetchall()
        return [OutcomeRecord.model_validate_json(row[0]) for row in rows]
