"""Diagnosis pipeline: retrieve, route, synthesize, score, plan."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor

from diag_engine.agent.plans import diagnoses_from_cases, merge_repair_plans, plan_from_synthesis
from diag_engine.agent.router import choose_path
from diag_engine.agent.scoring import ConfidenceScorer
from diag_engine.agent.synthesis import Synthesizer
from diag_engine.config import EngineConfig
from diag_engine.errors import InputValidationError, SynthesisError
from diag_engine.external.labor import LaborTimeLookup
from diag_engine.external.nhtsa import RecallLookup
from diag_engine.models import (
    Diagnosis,
    DiagnosisResult,
    DiagnosticPath,
    DiagnosticQuery,
    RepairPlan,
    RetrievedCase,
    RunSummary,
    SynthesisResult,
)
from diag_engine.obs.tracing import RunRecorder, Timer
from diag_engine.retrieval.retriever import CaseRetriever
from diag_engine.types import CacheResult, RegistryData

logger = logging.getLogger(__name__)


def validate_query(query: DiagnosticQuery) -> None:
    if not query.make or not query.model or query.year is None:
        raise InputValidationError("Vehicle make, model, and year are required")
    if not query.dtc_codes and not query.symptoms:
        raise InputValidationError("At least one DTC code or symptom description is required")


class DiagnosticEngine:
    """Runs one diagnosis per call; holds no per-run state between calls.

    Only synthesis failures and invalid input surface as exceptions
    (`SynthesisError`, `InputValidationError`). Every other collaborator
    failure degrades the run: fewer cases, no registry data, stored labor
    estimates, or a missing run id.
    """

    def __init__(
        self,
        *,
        retriever: CaseRetriever,
        synthesizer: Synthesizer | None = None,
        recall_lookup: RecallLookup | None = None,
        labor_lookup: LaborTimeLookup | None = None,
        run_recorder: RunRecorder | None = None,
        config: EngineConfig | None = None,
    ) -> None:
        self.retriever = retriever
        self.synthesizer = synthesizer
        self.recall_lookup = recall_lookup
        self.labor_lookup = labor_lookup
        self.run_recorder = run_recorder
        self.config = config or EngineConfig()
        self.scorer = ConfidenceScorer(self.config.scoring)

    def diagnose(self, query: DiagnosticQuery) -> DiagnosisResult:
        validate_query(query)
        logger.info("Starting diagnosis for %s %s %s", query.year, query.make, query.model)
        if query.dtc_codes:
            logger.info("DTC codes: %s", ", ".join(query.dtc_codes))

        with Timer() as timer:
            result, cases_used = self._run(query)
        result.processing_time_ms = timer.elapsed_ms

        top_confidence = result.diagnoses[0].confidence if result.diagnoses else 0.0
        logger.info(
            "Diagnosis complete in %.0fms, path: %s, top confidence: %.1f%%%s",
            timer.elapsed_ms,
            result.diagnostic_path.value,
            top_confidence * 100,
            " (LOW)" if result.low_confidence_warning else "",
        )

        if self.run_recorder is not None:
            result.run_id = self.run_recorder.record(_run_summary(query, result, cases_used))
        return result

    def _run(self, query: DiagnosticQuery) -> tuple[DiagnosisResult, int]:
        cases, registry_result = self._gather(query)
        registry = registry_result.payload

        existing_plan = self._resolve_plan(cases)
        top_similarity = cases[0].similarity if cases else 0.0
        path = choose_path(top_similarity, existing_plan is not None, self.config.routing)
        logger.info(
            "Path: %s (top similarity: %.1f%%, repair plan: %s)",
            path.value,
            top_similarity * 100,
            "yes" if existing_plan is not None else "no",
        )

        summary: str | None = None
        if path is DiagnosticPath.KB_DIRECT:
            routing = self.config.routing
            kb_cases = [case for case in cases if case.similarity >= routing.kb_case_floor]
            diagnoses = diagnoses_from_cases(kb_cases[: routing.kb_max_cases])
            repair_plan = existing_plan
            diagnostic_steps = list(cases[0].diagnostic_steps)
        else:
            context_plan = existing_plan if path is DiagnosticPath.KB_WITH_CLAUDE else None
            synthesis = self._synthesize(query, cases, registry, context_plan)
            diagnoses = synthesis.diagnoses
            synthesized_plan = plan_from_synthesis(synthesis)
            repair_plan = (
                merge_repair_plans(existing_plan, synthesized_plan)
                if existing_plan is not None
                else synthesized_plan
            )
            diagnostic_steps = synthesis.diagnostic_steps
            summary = synthesis.summary or None

        diagnoses = self.scorer.score(
            diagnoses, cases, make=query.make, model=query.model, mileage=query.mileage
        )
        diagnoses.sort(key=lambda diagnosis: diagnosis.confidence, reverse=True)
        diagnoses, labor_stale = self._apply_labor_time(query, repair_plan, diagnoses)

        top_confidence = diagnoses[0].confidence if diagnoses else 0.0
        result = DiagnosisResult(
            diagnoses=diagnoses,
            repair_plan=repair_plan,
            recalls=registry.recalls,
            complaints=registry.complaints,
            registry_cached=registry_result.cached,
            registry_stale=registry_result.stale,
            labor_stale=labor_stale,
            diagnostic_steps=diagnostic_steps,
            diagnostic_path=path,
            summary=summary,
            low_confidence_warning=top_confidence < self.config.low_confidence_threshold,
        )
        return result, len(cases)

    def _gather(self, query: DiagnosticQuery) -> tuple[list[RetrievedCase], CacheResult[RegistryData]]:
        """Retrieval and registry lookup in parallel; either may fail alone."""
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="diagnose") as pool:
            cases_future = pool.submit(self.retriever.retrieve, query)
            registry_future = (
                pool.submit(self.recall_lookup.lookup, query.make, query.model, query.year)
                if self.recall_lookup is not None
                else None
            )

        cases: list[RetrievedCase] = []
        try:
            cases = cases_future.result()
        except Exception as exc:
            logger.error("Case retrieval failed: %s", exc)

        registry_result: CacheResult[RegistryData] = CacheResult(payload=RegistryData())
        if registry_future is not None:
            try:
                registry_result = registry_future.result()
            except Exception as exc:
                logger.error("Registry lookup failed: %s", exc)
        if registry_result.error:
            logger.warning("Registry lookup degraded: %s", registry_result.error)
        else:
            logger.info(
                "Registry lookup: %d recalls, %d complaints%s",
                len(registry_result.payload.recalls),
                len(registry_result.payload.complaints),
                " (cached)" if registry_result.cached else "",
            )
        return cases, registry_result

    def _resolve_plan(self, cases: list[RetrievedCase]) -> RepairPlan | None:
        if not cases:
            return None
        top = cases[0]
        if top.repair_plan is not None:
            return top.repair_plan.model_copy(deep=True)
        if top.id is None or top.similarity < self.config.routing.plan_fetch_threshold:
            return None
        try:
            plan = self.retriever.case_store.read_repair_plan(top.id)
        except Exception as exc:
            logger.error("Failed to fetch repair plan for case %s (non-fatal): %s", top.id, exc)
            return None
        if plan is not None:
            logger.info("Found repair plan in knowledge base for case %s", top.id)
        return plan

    def _synthesize(
        self,
        query: DiagnosticQuery,
        cases: list[RetrievedCase],
        registry: RegistryData,
        existing_plan: RepairPlan | None,
    ) -> SynthesisResult:
        if self.synthesizer is None:
            raise SynthesisError("Synthesis service is not configured")
        try:
            return self.synthesizer.synthesize(query, cases, registry, existing_plan)
        except SynthesisError:
            logger.error("Synthesis failed for %s %s %s", query.year, query.make, query.model)
            raise
        except Exception as exc:
            logger.error("Synthesis failed: %s", exc)
            raise SynthesisError(f"Synthesis failed: {exc}") from exc

    def _apply_labor_time(
        self,
        query: DiagnosticQuery,
        repair_plan: RepairPlan | None,
        diagnoses: list[Diagnosis],
    ) -> tuple[list[Diagnosis], bool]:
        """Override plan and top-diagnosis hours from the labor cache; report staleness."""
        if self.labor_lookup is None or repair_plan is None or not diagnoses:
            return diagnoses, False

        result = self.labor_lookup.lookup(query.year, query.make, query.model, diagnoses[0].cause)
        labor = result.payload
        if labor is None:
            return diagnoses, False

        logger.info(
            "Overriding labor hours: %.1fh (source: %s%s)",
            labor.hours,
            labor.source,
            ", stale" if result.stale else "",
        )
        repair_plan.labor.hours = labor.hours
        repair_plan.labor.source = labor.source
        if labor.notes:
            repair_plan.labor.special_notes = labor.notes
        return [diagnoses[0].model_copy(update={"labor_hours": labor.hours}), *diagnoses[1:]], result.stale


def _run_summary(query: DiagnosticQuery, result: DiagnosisResult, cases_used: int) -> RunSummary:
    top = result.diagnoses[0] if result.diagnoses else None
    return RunSummary(
        vin=query.vin,
        vehicle_year=query.year,
        vehicle_make=query.make,
        vehicle_model=query.model,
        engine=query.engine,
        mileage=query.mileage,
        dtc_codes=list(query.dtc_codes),
        symptoms=query.symptoms,
        top_prediction=top.cause if top else None,
        top_confidence=top.confidence if top else None,
        all_predictions=result.diagnoses,
        recalls_found=len(result.recalls),
        complaints_found=len(result.complaints),
        cases_used=cases_used,
        diagnostic_path=result.diagnostic_path,
        processing_time_ms=result.processing_time_ms,
    )
