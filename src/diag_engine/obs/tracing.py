"""Run timing, best-effort run logging and aggregate run metrics."""

from __future__ import annotations

import logging
import time

from diag_engine.models import DiagnosticPath, RunSummary
from diag_engine.storage.runs import DiagnosisLog

logger = logging.getLogger(__name__)


class RunRecorder:
    """Writes completed runs to the durable log without ever failing a run.

    Any error from the underlying log is logged and swallowed; the caller
    gets `None` instead of a run id.
    """

    def __init__(self, diagnosis_log: DiagnosisLog) -> None:
        self.diagnosis_log = diagnosis_log

    def record(self, summary: RunSummary) -> str | None:
        try:
            run_id = self.diagnosis_log.append(summary)
        except Exception as exc:
            logger.error("Diagnosis logging failed (non-fatal): %s", exc)
            return None
        logger.info("Diagnosis logged as %s", run_id)
        return run_id


def summarize_runs(
    runs: list[RunSummary], low_confidence_threshold: float = 0.70
) -> dict[str, float | int | dict[str, int]]:
    """Aggregate run metrics for dashboard display."""
    total = len(runs)
    path_counts = {path.value: 0 for path in DiagnosticPath}
    if total == 0:
        return {
            "total_runs": 0,
            "avg_processing_ms": 0.0,
            "p95_processing_ms": 0.0,
            "low_confidence_share": 0.0,
            "paths": path_counts,
        }

    for run in runs:
        if run.diagnostic_path is not None:
            path_counts[run.diagnostic_path.value] += 1

    latencies = sorted(run.processing_time_ms for run in runs)
    p95_index = max(0, int((len(latencies) * 0.95) - 1))
    low = sum(
        1
        for run in runs
        if run.top_confidence is None or run.top_confidence < low_confidence_threshold
    )
    return {
        "total_runs": total,
        "avg_processing_ms": sum(latencies) / total,
        "p95_processing_ms": latencies[p95_index],
        "low_confidence_share": low / total,
        "paths": path_counts,
    }


class Timer:
    """Simple context timer used by the engine."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0
