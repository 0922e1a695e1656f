import json
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from diag_engine.cache.manager import TTLCache
from diag_engine.config import Settings
from diag_engine.errors import SynthesisError
from diag_engine.external.nhtsa import RecallLookup
from diag_engine.models import Diagnosis, SynthesisResult
from diag_engine.storage.cache import InMemoryCacheBackend

CASES = [
    {
        "dtc_code": "P0420",
        "dtc_description": "Catalyst system efficiency below threshold",
        "vehicle_make": "Honda",
        "vehicle_model": "Civic",
        "year_range_start": 2016,
        "year_range_end": 2021,
        "cause": "Catalytic converter failure",
        "confidence_base": 0.75,
        "success_rate": 0.85,
        "parts_needed": ["Catalytic converter"],
        "repair_plan": {
            "parts": [{"name": "Catalytic converter", "qty": 1, "type": "oem"}],
            "labor": {"hours": 1.6, "category": "intermediate", "source": "kb"},
        },
    }
]

LABOR_TIMES = [
    {
        "vehicle_year": 2018,
        "vehicle_make": "Honda",
        "vehicle_model": "Civic",
        "procedure_name": "Catalytic converter failure - replace",
        "labor_hours": 1.3,
        "notes": "Penetrating oil on flange bolts",
    }
]


class _Registry:
    def fetch_recalls(self, make, model, year):
        return []

    def fetch_complaints(self, make, model, year):
        return [{"odiNumber": 11223344, "components": "ENGINE", "summary": "Check engine light"}]


class _Synthesizer:
    def __init__(self) -> None:
        self.fail = False

    def synthesize(self, query, cases, registry, existing_plan=None):
        if self.fail:
            raise SynthesisError("Synthesis service call failed: 529 overloaded")
        return SynthesisResult(
            diagnoses=[Diagnosis(cause="Catalytic converter failure", confidence=0.7, labor_hours=1.2)],
            diagnostic_steps=["Check downstream O2 sensor switching"],
            summary="Converter efficiency low.",
        )


@pytest.fixture
def api(tmp_path):
    from diag_engine.api.main import build_services, create_app

    settings = Settings(db_path=str(tmp_path / "diag.db"))
    services = build_services(settings)
    services.engine.recall_lookup = RecallLookup(
        _Registry(), TTLCache("recall", InMemoryCacheBackend(), timedelta(days=30))
    )
    synthesizer = _Synthesizer()
    services.engine.synthesizer = synthesizer
    return TestClient(create_app(services, settings)), synthesizer


def _diagnose(client: TestClient, **overrides):
    payload = {"make": "Honda", "model": "Civic", "year": 2018, "dtc_codes": ["p0420"], "mileage": 95000}
    payload.update(overrides)
    return client.post("/diagnose", json=payload)


def test_api_ingest_diagnose_feedback_metrics(api) -> None:
    client, _ = api

    health = client.get("/health")
    assert health.status_code == 200
    assert health.json()["status"] == "ok"
    assert health.json()["llm_configured"] is False

    ingest_resp = client.post("/ingest", json={"cases": CASES})
    assert ingest_resp.status_code == 200
    assert ingest_resp.json()["inserted"] == 1

    diagnose_resp = _diagnose(client)
    assert diagnose_resp.status_code == 200
    result = diagnose_resp.json()
    assert result["diagnostic_path"] in {"kb_direct", "kb_with_claude"}
    assert result["diagnoses"][0]["cause"] == "Catalytic converter failure"
    assert 0.05 <= result["diagnoses"][0]["confidence"] <= 0.95
    assert result["complaints"][0]["odiNumber"] == 11223344
    assert result["repair_plan"]["parts"][0]["name"] == "Catalytic converter"
    run_id = result["run_id"]
    assert run_id

    run_resp = client.get(f"/runs/{run_id}")
    assert run_resp.status_code == 200
    assert run_resp.json()["dtc_codes"] == ["P0420"]

    outcome_resp = client.post(
        "/outcomes",
        json={"run_id": run_id, "actual_cause": "Catalytic converter failure", "was_correct": True, "labor_hours": 1.4},
    )
    assert outcome_resp.status_code == 200
    assert outcome_resp.json()["predicted_cause"] == "Catalytic converter failure"

    learn_resp = client.post("/outcomes/learn", json={"run_id": run_id, "actual_cause": "Catalytic converter failure"})
    assert learn_resp.status_code == 200
    assert learn_resp.json()["cases_created"] == 1

    accuracy = client.get("/accuracy").json()
    assert accuracy["overall"] == {"total": 1, "correct": 1, "accuracy": 100.0, "total_runs": 1}
    assert accuracy["by_dtc"]["P0420"]["accuracy"] == 100.0

    metrics = client.get("/metrics").json()
    assert metrics["total_runs"] == 1
    assert sum(metrics["paths"].values()) == 1


def test_api_ingest_from_file(api, tmp_path) -> None:
    client, _ = api
    source = tmp_path / "cases.json"
    source.write_text(json.dumps(CASES), encoding="utf-8")

    assert client.post("/ingest", json={"path": str(source)}).json()["inserted"] == 1
    assert client.post("/ingest", json={"path": str(tmp_path / "missing.json")}).status_code == 400
    assert client.post("/ingest", json={}).status_code == 400


def test_api_error_mapping(api) -> None:
    client, synthesizer = api

    invalid = _diagnose(client, make=None)
    assert invalid.status_code == 422
    assert invalid.json()["detail"]["error"] == "InputValidationError"

    synthesizer.fail = True
    failed = _diagnose(client)
    assert failed.status_code == 502
    assert failed.json()["detail"]["error"] == "SynthesisError"

    assert client.get("/runs/unknown").status_code == 404
    missing = client.post("/outcomes", json={"run_id": "unknown", "actual_cause": "x", "was_correct": False})
    assert missing.status_code == 404
    assert client.post("/outcomes/learn", json={"run_id": "unknown", "actual_cause": "x"}).status_code == 404


def test_api_seeded_labor_time_applies_to_diagnosis(api) -> None:
    client, _ = api
    assert client.post("/ingest", json={"cases": CASES}).json()["inserted"] == 1

    seed_resp = client.post("/labor", json={"labor_times": LABOR_TIMES + [{"vehicle_make": "Honda"}]})
    assert seed_resp.status_code == 200
    assert seed_resp.json() == {"inserted": 1, "errors": 1}

    result = _diagnose(client).json()

    assert result["repair_plan"]["labor"]["hours"] == 1.3
    assert result["repair_plan"]["labor"]["source"] == "estimated"
    assert result["repair_plan"]["labor"]["special_notes"] == "Penetrating oil on flange bolts"
    assert result["diagnoses"][0]["labor_hours"] == 1.3
    assert result["labor_stale"] is False


def test_api_seed_labor_from_file(api, tmp_path) -> None:
    client, _ = api
    source = tmp_path / "labor.json"
    source.write_text(json.dumps({"labor_times": LABOR_TIMES}), encoding="utf-8")

    assert client.post("/labor", json={"path": str(source)}).json() == {"inserted": 1, "errors": 0}
    assert client.post("/labor", json={"path": str(tmp_path / "missing.json")}).status_code == 400
    assert client.post("/labor", json={}).status_code == 400
