import pytest

from diag_engine.errors import RunNotFoundError
from diag_engine.feedback.loop import OutcomeFeedback
from diag_engine.ingest.embedder import Embedder, HashingEmbedder
from diag_engine.models import RunSummary
from diag_engine.storage.cases import ExactFilter, InMemoryCaseStore
from diag_engine.storage.runs import InMemoryOutcomeStore, InMemoryRunLog


class _DownEmbedder(Embedder):
    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        raise ConnectionError("embedding service unavailable")

    def embed_query(self, text: str) -> list[float]:
        raise ConnectionError("embedding service unavailable")


def _feedback(embedder=None):
    log = InMemoryRunLog()
    store = InMemoryCaseStore()
    feedback = OutcomeFeedback(
        diagnosis_log=log,
        outcome_store=InMemoryOutcomeStore(),
        case_store=store,
        embedder=embedder,
    )
    return feedback, log, store


def _run(log, dtc_codes, top_prediction="Catalytic converter failure") -> str:
    return log.append(
        RunSummary(
            vehicle_year=2018,
            vehicle_make="Honda",
            vehicle_model="Civic",
            engine="2.0L I4",
            dtc_codes=dtc_codes,
            top_prediction=top_prediction,
            top_confidence=0.72,
        )
    )


def test_record_outcome_copies_predicted_cause() -> None:
    feedback, log, _ = _feedback()
    run_id = _run(log, ["P0420"])

    record = feedback.record_outcome(
        run_id, "Failed downstream O2 sensor", False, parts_used=["O2 sensor"], labor_hours=0.8, notes="Sensor lazy"
    )

    assert record.id
    assert record.predicted_cause == "Catalytic converter failure"
    assert record.actual_cause == "Failed downstream O2 sensor"
    assert record.labor_actual_hours == 0.8
    assert feedback.outcome_store.query_all() == [record]


def test_record_outcome_for_unknown_run_is_reported() -> None:
    feedback, _, _ = _feedback()

    with pytest.raises(RunNotFoundError):
        feedback.record_outcome("missing", "Anything", True)
    assert feedback.outcome_store.query_all() == []


def test_accuracy_stats_overall_and_per_code() -> None:
    feedback, log, _ = _feedback()
    both = _run(log, ["P0420", "P0171"])
    single = _run(log, ["P0420"])
    _run(log, ["P0300"])

    feedback.record_outcome(both, "Catalytic converter failure", True)
    feedback.record_outcome(both, "Catalytic converter failure", True)
    feedback.record_outcome(single, "Exhaust leak", False)

    stats = feedback.accuracy_stats()

    assert stats.overall.total_runs == 3
    assert stats.overall.total == 3
    assert stats.overall.correct == 2
    assert stats.overall.accuracy == 66.67
    assert stats.by_dtc["P0420"].total == 3
    assert stats.by_dtc["P0420"].accuracy == 66.67
    assert stats.by_dtc["P0171"].accuracy == 100.0
    assert "P0300" not in stats.by_dtc


def test_accuracy_stats_without_outcomes() -> None:
    feedback, _, _ = _feedback()

    stats = feedback.accuracy_stats()

    assert stats.overall.total == 0
    assert stats.overall.accuracy == 0.0
    assert stats.by_dtc == {}


def test_learn_inserts_one_case_per_code() -> None:
    feedback, log, store = _feedback(HashingEmbedder())
    run_id = _run(log, ["P0420", "P0171"])

    cases = feedback.learn_from_outcome(run_id, "Cracked exhaust manifold")

    assert [case.dtc_code for case in cases] == ["P0420", "P0171"]
    for case in cases:
        assert case.id
        assert case.cause == "Cracked exhaust manifold"
        assert case.base_confidence == 0.6
        assert case.success_rate == 1.0
        assert case.source == "outcome_learning"
        assert (case.year_range_start, case.year_range_end) == (2018, 2018)
        assert case.engine_type == "2.0L I4"
    assert len(store) == 2


def test_learned_case_is_stored_even_when_embedding_fails() -> None:
    feedback, log, store = _feedback(_DownEmbedder())
    run_id = _run(log, ["P0420"])

    feedback.learn_from_outcome(run_id, "Cracked exhaust manifold")

    [case] = store.exact_lookup(ExactFilter(dtc_codes=["P0420"], make="Honda"), limit=5)
    assert case.cause == "Cracked exhaust manifold"


def test_learn_without_codes_inserts_nothing() -> None:
    feedback, log, store = _feedback()
    run_id = _run(log, [])

    assert feedback.learn_from_outcome(run_id, "Loose gas cap") == []
    assert len(store) == 0
