from diag_engine.models import DiagnosticPath, RunSummary
from diag_engine.obs.tracing import RunRecorder, Timer, summarize_runs
from diag_engine.storage.runs import InMemoryRunLog


class _FailingLog(InMemoryRunLog):
    def append(self, summary: RunSummary) -> str:
        raise OSError("database is locked")


def test_recorder_returns_run_id() -> None:
    log = InMemoryRunLog()

    run_id = RunRecorder(log).record(RunSummary(dtc_codes=["P0420"]))

    assert run_id is not None
    assert log.lookup_run(run_id).dtc_codes == ["P0420"]


def test_recorder_swallows_log_failures() -> None:
    assert RunRecorder(_FailingLog()).record(RunSummary()) is None


def test_summarize_runs() -> None:
    runs = [
        RunSummary(diagnostic_path=DiagnosticPath.KB_DIRECT, top_confidence=0.8, processing_time_ms=100.0),
        RunSummary(diagnostic_path=DiagnosticPath.CLAUDE_ONLY, top_confidence=0.5, processing_time_ms=300.0),
        RunSummary(diagnostic_path=DiagnosticPath.KB_DIRECT, top_confidence=None, processing_time_ms=200.0),
        RunSummary(diagnostic_path=DiagnosticPath.KB_WITH_CLAUDE, top_confidence=0.9, processing_time_ms=400.0),
    ]

    summary = summarize_runs(runs)

    assert summary["total_runs"] == 4
    assert summary["avg_processing_ms"] == 250.0
    assert summary["p95_processing_ms"] == 300.0
    assert summary["low_confidence_share"] == 0.5
    assert summary["paths"] == {"kb_direct": 2, "kb_with_claude": 1, "claude_only": 1}


def test_summarize_no_runs() -> None:
    assert summarize_runs([])["total_runs"] == 0


def test_timer_measures_elapsed_time() -> None:
    with Timer() as timer:
        sum(range(1000))

    assert timer.elapsed_ms >= 0.0
