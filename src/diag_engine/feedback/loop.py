"""Outcome tracking, accuracy stats and corpus learning."""

from __future__ import annotations

import logging

from diag_engine.errors import RunNotFoundError
from diag_engine.ingest.embedder import Embedder, build_case_text
from diag_engine.models import (
    AccuracyStats,
    CodeAccuracy,
    OutcomeRecord,
    OverallAccuracy,
    RetrievedCase,
    RunSummary,
)
from diag_engine.storage.cases import CaseStore
from diag_engine.storage.runs import DiagnosisLog, OutcomeStore

logger = logging.getLogger(__name__)

LEARNED_BASE_CONFIDENCE = 0.6
LEARNED_SUCCESS_RATE = 1.0
LEARNED_SOURCE = "outcome_learning"


class OutcomeFeedback:
    """Closes the loop between technician outcomes and the case store.

    `learn_from_outcome` is the only code path that writes new cases into the
    corpus retrieval reads from.
    """

    def __init__(
        self,
        *,
        diagnosis_log: DiagnosisLog,
        outcome_store: OutcomeStore,
        case_store: CaseStore,
        embedder: Embedder | None = None,
    ) -> None:
        self.diagnosis_log = diagnosis_log
        self.outcome_store = outcome_store
        self.case_store = case_store
        self.embedder = embedder

    def record_outcome(
        self,
        run_id: str,
        actual_cause: str,
        was_correct: bool,
        parts_used: list[str] | None = None,
        labor_hours: float | None = None,
        notes: str | None = None,
    ) -> OutcomeRecord:
        run = self._lookup(run_id)
        record = self.outcome_store.append(
            OutcomeRecord(
                run_id=run_id,
                predicted_cause=run.top_prediction,
                actual_cause=actual_cause,
                was_correct=was_correct,
                parts_used=list(parts_used or []),
                labor_actual_hours=labor_hours,
                technician_notes=notes,
            )
        )
        logger.info("Outcome recorded: %s (correct: %s)", record.id, was_correct)
        return record

    def accuracy_stats(self) -> AccuracyStats:
        outcomes = self.outcome_store.query_all()
        runs: dict[str, RunSummary | None] = {}
        by_dtc: dict[str, CodeAccuracy] = {}

        for outcome in outcomes:
            if outcome.run_id not in runs:
                runs[outcome.run_id] = self.diagnosis_log.lookup_run(outcome.run_id)
            run = runs[outcome.run_id]
            for code in run.dtc_codes if run else []:
                entry = by_dtc.setdefault(code, CodeAccuracy())
                entry.total += 1
                entry.correct += int(outcome.was_correct)

        for entry in by_dtc.values():
            entry.accuracy = _percent(entry.correct, entry.total)

        correct = sum(1 for outcome in outcomes if outcome.was_correct)
        overall = OverallAccuracy(
            total_runs=self.diagnosis_log.count(),
            total=len(outcomes),
            correct=correct,
            accuracy=_percent(correct, len(outcomes)),
        )
        logger.info(
            "Accuracy stats: %d/%d correct (%.2f%%) across %d runs",
            correct,
            len(outcomes),
            overall.accuracy,
            overall.total_runs,
        )
        return AccuracyStats(overall=overall, by_dtc=by_dtc)

    def learn_from_outcome(self, run_id: str, actual_cause: str) -> list[RetrievedCase]:
        """Insert one case per DTC of the run, scoped to the run's vehicle."""
        run = self._lookup(run_id)
        if not run.dtc_codes:
            logger.warning("No DTC codes on run %s, nothing to learn", run_id)
            return []

        inserted: list[RetrievedCase] = []
        for code in run.dtc_codes:
            case = RetrievedCase(
                dtc_code=code,
                vehicle_make=run.vehicle_make,
                vehicle_model=run.vehicle_model,
                year_range_start=run.vehicle_year,
                year_range_end=run.vehicle_year,
                engine_type=run.engine,
                cause=actual_cause,
                base_confidence=LEARNED_BASE_CONFIDENCE,
                success_rate=LEARNED_SUCCESS_RATE,
                source=LEARNED_SOURCE,
            )
            inserted.append(self.case_store.insert(case, self._embed(case)))
            logger.info(
                "Learned from outcome: %s on %s %s %s -> %r",
                code,
                run.vehicle_year,
                run.vehicle_make,
                run.vehicle_model,
                actual_cause,
            )
        return inserted

    def _lookup(self, run_id: str) -> RunSummary:
        run = self.diagnosis_log.lookup_run(run_id)
        if run is None:
            logger.error("Diagnosis run %s not found", run_id)
            raise RunNotFoundError(f"Diagnosis not found: {run_id}", {"run_id": run_id})
        return run

    def _embed(self, case: RetrievedCase) -> list[float] | None:
        # Without a vector the case is still reachable through exact lookup.
        if self.embedder is None:
            return None
        try:
            return self.embedder.embed_documents([build_case_text(case)])[0]
        except Exception as exc:
            logger.warning("Embedding failed for learned case %s, storing without vector: %s", case.dtc_code, exc)
            return None


def _percent(correct: int, total: int) -> float:
    return round(correct / total * 100, 2) if total else 0.0
