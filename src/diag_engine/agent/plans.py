"""Repair plan construction and merging."""

from __future__ import annotations

from diag_engine.models import (
    Diagnosis,
    LaborEstimate,
    RepairPart,
    RepairPlan,
    RetrievedCase,
    SynthesisResult,
    Verification,
)

AI_PART_CONDITION = "Identified by AI analysis"
AI_LABOR_NOTE = "AI adjusted labor up from KB estimate."
PART_CONFIDENCE_FLOOR = 0.30


def diagnoses_from_cases(cases: list[RetrievedCase]) -> list[Diagnosis]:
    return [
        Diagnosis(
            cause=case.cause,
            confidence=case.base_confidence or 0.5,
            reasoning=f"Based on {case.similarity * 100:.0f}% match in knowledge base",
            parts_needed=list(case.parts_needed),
            labor_category=case.labor_category or "intermediate",
            labor_hours=case.labor_hours_estimate or 1.0,
            common_misdiagnosis=case.common_misdiagnosis,
        )
        for case in cases
    ]


def plan_from_synthesis(result: SynthesisResult) -> RepairPlan:
    """Build a plan from raw synthesis output.

    Parts come from every diagnosis at or above the confidence floor; parts of
    causes other than the leading one are conditional on that cause.
    """
    top = result.diagnoses[0] if result.diagnoses else None
    parts: list[RepairPart] = []
    seen: set[str] = set()
    for diagnosis in result.diagnoses:
        if diagnosis.confidence < PART_CONFIDENCE_FLOOR:
            continue
        primary = diagnosis is top
        for name in diagnosis.parts_needed:
            key = name.lower()
            if key in seen:
                continue
            seen.add(key)
            parts.append(
                RepairPart(
                    name=name,
                    conditional=not primary,
                    condition=None if primary else f"If {diagnosis.cause} is confirmed",
                    search_terms=[name],
                )
            )

    return RepairPlan(
        parts=parts,
        labor=LaborEstimate(
            hours=top.labor_hours if top else 1.0,
            category=top.labor_category if top else "intermediate",
            source="ai",
        ),
        verification=Verification(
            before_repair=result.diagnostic_steps[0] if result.diagnostic_steps else None,
            after_repair="Clear codes and verify repair",
        ),
    )


def merge_repair_plans(base: RepairPlan, synthesized: RepairPlan) -> RepairPlan:
    """Fold a synthesized plan into a stored one without overriding it.

    Unseen parts are appended as conditional, and labor takes the larger
    estimate with an attribution note. Tools, torque specs and verification
    stay as stored; the synthesized equivalents are dropped.
    """
    merged = base.model_copy(deep=True)
    known = {part.name.lower() for part in merged.parts}
    for part in synthesized.parts:
        if part.name.lower() in known:
            continue
        known.add(part.name.lower())
        merged.parts.append(
            part.model_copy(update={"conditional": True, "condition": AI_PART_CONDITION})
        )

    if synthesized.labor.hours > merged.labor.hours:
        notes = merged.labor.special_notes
        merged.labor.hours = synthesized.labor.hours
        merged.labor.special_notes = f"{notes}. {AI_LABOR_NOTE}" if notes else AI_LABOR_NOTE
    return merged
