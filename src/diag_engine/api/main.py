"""FastAPI entrypoint for ingest/diagnose/outcome/metrics endpoints."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from diag_engine.agent.engine import DiagnosticEngine
from diag_engine.agent.synthesis import LLMSynthesizer, create_openai_llm
from diag_engine.cache.manager import TTLCache
from diag_engine.config import EngineConfig, Settings
from diag_engine.errors import DiagnosisError, InputValidationError, RunNotFoundError, SynthesisError
from diag_engine.external.labor import LaborTimeLookup, labor_from_json, labor_to_json
from diag_engine.external.nhtsa import NhtsaClient, RecallLookup, registry_from_json, registry_to_json
from diag_engine.feedback.loop import OutcomeFeedback
from diag_engine.ingest.embedder import Embedder, HashingEmbedder, create_openai_embedder
from diag_engine.ingest.pipeline import CaseIngestPipeline, LaborSeedPipeline
from diag_engine.models import DiagnosisResult, DiagnosticQuery, OutcomeRecord, RetrievedCase
from diag_engine.obs.tracing import RunRecorder, summarize_runs
from diag_engine.retrieval.retriever import CaseRetriever
from diag_engine.storage.cache import InMemoryCacheBackend, SqliteCacheBackend
from diag_engine.storage.cases import CaseStore, InMemoryCaseStore, SqliteCaseStore
from diag_engine.storage.runs import (
    DiagnosisLog,
    InMemoryOutcomeStore,
    InMemoryRunLog,
    OutcomeStore,
    SqliteOutcomeStore,
    SqliteRunLog,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Services:
    """Process-wide collaborators shared by every request."""

    engine: DiagnosticEngine
    ingest: CaseIngestPipeline
    labor_seed: LaborSeedPipeline
    feedback: OutcomeFeedback
    diagnosis_log: DiagnosisLog
    case_store: CaseStore
    llm_configured: bool
    config: EngineConfig


def build_services(settings: Settings, config: EngineConfig | None = None) -> Services:
    config = config or EngineConfig()

    case_store: CaseStore
    diagnosis_log: DiagnosisLog
    outcome_store: OutcomeStore
    if settings.db_path:
        case_store = SqliteCaseStore(settings.db_path)
        diagnosis_log = SqliteRunLog(settings.db_path)
        outcome_store = SqliteOutcomeStore(settings.db_path)
        recall_backend = SqliteCacheBackend(
            settings.db_path, "recall_cache", dump=registry_to_json, load=registry_from_json
        )
        labor_backend = SqliteCacheBackend(
            settings.db_path, "labor_cache", dump=labor_to_json, load=labor_from_json
        )
    else:
        case_store = InMemoryCaseStore()
        diagnosis_log = InMemoryRunLog()
        outcome_store = InMemoryOutcomeStore()
        recall_backend = InMemoryCacheBackend()
        labor_backend = InMemoryCacheBackend()

    embedder: Embedder
    synthesizer: LLMSynthesizer | None = None
    if settings.openai_api_key:
        embedder = create_openai_embedder(settings.embedding_model, settings.openai_api_key)
        synthesizer = LLMSynthesizer(llm=create_openai_llm(settings.chat_model, settings.openai_api_key))
    else:
        logger.warning("OPENAI_API_KEY not set: hashing embeddings, synthesis disabled")
        embedder = HashingEmbedder()

    recall_lookup = RecallLookup(
        NhtsaClient(base_url=settings.nhtsa_base_url, timeout=settings.http_timeout_seconds),
        TTLCache("recall", recall_backend, timedelta(days=config.cache.recall_ttl_days)),
    )
    labor_lookup = LaborTimeLookup(
        TTLCache("labor", labor_backend, timedelta(days=config.cache.labor_ttl_days))
    )

    engine = DiagnosticEngine(
        retriever=CaseRetriever(case_store, embedder, config.retrieval),
        synthesizer=synthesizer,
        recall_lookup=recall_lookup,
        labor_lookup=labor_lookup,
        run_recorder=RunRecorder(diagnosis_log),
        config=config,
    )
    return Services(
        engine=engine,
        ingest=CaseIngestPipeline(embedder, case_store),
        labor_seed=LaborSeedPipeline(labor_lookup),
        feedback=OutcomeFeedback(
            diagnosis_log=diagnosis_log,
            outcome_store=outcome_store,
            case_store=case_store,
            embedder=embedder,
        ),
        diagnosis_log=diagnosis_log,
        case_store=case_store,
        llm_configured=synthesizer is not None,
        config=config,
    )


class IngestRequest(BaseModel):
    path: str | None = None
    cases: list[dict[str, Any]] = Field(default_factory=list)


class LaborSeedRequest(BaseModel):
    path: str | None = None
    labor_times: list[dict[str, Any]] = Field(default_factory=list)


class DiagnoseRequest(BaseModel):
    vin: str | None = None
    year: int | None = None
    make: str | None = None
    model: str | None = None
    engine: str | None = None
    mileage: int | None = None
    dtc_codes: list[str] = Field(default_factory=list)
    symptoms: str | None = None


class OutcomeRequest(BaseModel):
    run_id: str = Field(min_length=1)
    actual_cause: str = Field(min_length=1)
    was_correct: bool
    parts_used: list[str] = Field(default_factory=list)
    labor_hours: float | None = Field(default=None, ge=0.0)
    notes: str | None = None


class LearnRequest(BaseModel):
    run_id: str = Field(min_length=1)
    actual_cause: str = Field(min_length=1)


def _http_error(exc: DiagnosisError) -> HTTPException:
    if isinstance(exc, InputValidationError):
        status = 422
    elif isinstance(exc, RunNotFoundError):
        status = 404
    elif isinstance(exc, SynthesisError):
        status = 502
    else:
        status = 500
    return HTTPException(
        status_code=status,
        detail={"error": type(exc).__name__, "message": exc.message, "details": exc.details},
    )


def create_app(services: Services | None = None, settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    svc = services or build_services(settings)
    app = FastAPI(title="Diagnostic Engine", version="0.1.0")

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "llm_configured": svc.llm_configured,
            "run_count": svc.diagnosis_log.count(),
        }

    @app.post("/ingest")
    def ingest(request: IngestRequest) -> dict[str, Any]:
        if not request.path and not request.cases:
            raise HTTPException(status_code=400, detail="Provide a case file path or inline cases")
        try:
            report = svc.ingest.ingest_path(request.path) if request.path else svc.ingest.ingest(request.cases)
        except (OSError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"inserted": report.inserted, "errors": report.errors, "case_ids": report.case_ids}

    @app.post("/labor")
    def seed_labor(request: LaborSeedRequest) -> dict[str, Any]:
        if not request.path and not request.labor_times:
            raise HTTPException(status_code=400, detail="Provide a labor file path or inline labor times")
        try:
            report = (
                svc.labor_seed.ingest_path(request.path)
                if request.path
                else svc.labor_seed.ingest(request.labor_times)
            )
        except (OSError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"inserted": report.inserted, "errors": report.errors}

    @app.post("/diagnose", response_model=DiagnosisResult)
    def diagnose(request: DiagnoseRequest) -> DiagnosisResult:
        try:
            query = DiagnosticQuery.model_validate(request.model_dump())
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        try:
            return svc.engine.diagnose(query)
        except DiagnosisError as exc:
            raise _http_error(exc) from exc

    @app.get("/runs/{run_id}")
    def run_detail(run_id: str) -> dict[str, Any]:
        run = svc.diagnosis_log.lookup_run(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail=f"Diagnosis not found: {run_id}")
        return run.model_dump(mode="json")

    @app.post("/outcomes", response_model=OutcomeRecord)
    def record_outcome(request: OutcomeRequest) -> OutcomeRecord:
        try:
            return svc.feedback.record_outcome(
                request.run_id,
                request.actual_cause,
                request.was_correct,
                parts_used=request.parts_used,
                labor_hours=request.labor_hours,
                notes=request.notes,
            )
        except DiagnosisError as exc:
            raise _http_error(exc) from exc

    @app.post("/outcomes/learn")
    def learn(request: LearnRequest) -> dict[str, Any]:
        try:
            cases: list[RetrievedCase] = svc.feedback.learn_from_outcome(request.run_id, request.actual_cause)
        except DiagnosisError as exc:
            raise _http_error(exc) from exc
        return {"cases_created": len(cases), "case_ids": [case.id for case in cases]}

    @app.get("/accuracy")
    def accuracy() -> dict[str, Any]:
        return svc.feedback.accuracy_stats().model_dump()

    @app.get("/metrics")
    def metrics(limit: int = 1000) -> dict[str, Any]:
        return summarize_runs(
            svc.diagnosis_log.list_recent(limit=limit),
            low_confidence_threshold=svc.config.low_confidence_threshold,
        )

    return app


app = create_app()
