"""Pydantic models exchanged between the engine and its collaborators.

Field names here are the contract between retrieval, scoring and plan merging;
renaming one is a breaking change for stored cases and repair plans.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DiagnosticPath(str, Enum):
    """Synthesis strategy chosen once per run."""

    KB_DIRECT = "kb_direct"
    KB_WITH_CLAUDE = "kb_with_claude"
    CLAUDE_ONLY = "claude_only"


class RepairPart(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1)
    position: str | None = None
    quantity: int = Field(default=1, ge=1, validation_alias=AliasChoices("quantity", "qty"))
    part_type: str = Field(default="any", validation_alias=AliasChoices("part_type", "type"))
    oem_preferred: bool = False
    conditional: bool = False
    condition: str | None = None
    search_terms: list[str] = Field(default_factory=list)


class LaborEstimate(BaseModel):
    hours: float = Field(default=1.0, ge=0.0)
    category: str = "intermediate"
    source: str = "estimated"
    requires_lift: bool = False
    special_notes: str | None = None


class Verification(BaseModel):
    before_repair: str | None = None
    after_repair: str | None = None


class RepairPlan(BaseModel):
    """Parts, labor, tools and verification for the leading diagnosis."""

    parts: list[RepairPart] = Field(default_factory=list)
    labor: LaborEstimate = Field(default_factory=LaborEstimate)
    tools: list[str] = Field(default_factory=list)
    torque_specs: dict[str, Any] = Field(default_factory=dict)
    verification: Verification = Field(default_factory=Verification)
    diagrams_needed: list[str] = Field(default_factory=list)


class RetrievedCase(BaseModel):
    """A case-store record surfaced for one query.

    `similarity` only means something for the query that produced it and is
    never written back to the store.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str | None = None
    dtc_code: str
    dtc_description: str | None = None
    vehicle_make: str | None = None
    vehicle_model: str | None = None
    year_range_start: int | None = None
    year_range_end: int | None = None
    engine_type: str | None = None
    cause: str = Field(min_length=1)
    cause_category: str | None = None
    base_confidence: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        validation_alias=AliasChoices("base_confidence", "confidence_base"),
    )
    success_rate: float | None = Field(default=None, ge=0.0, le=1.0)
    parts_needed: list[str] = Field(default_factory=list)
    labor_category: str | None = None
    labor_hours_estimate: float | None = Field(default=None, ge=0.0)
    diagnostic_steps: list[str] = Field(default_factory=list)
    common_misdiagnosis: str | None = None
    source: str = "community"
    repair_plan: RepairPlan | None = None
    similarity: float = Field(default=0.0, ge=0.0, le=1.0)

    @field_validator("parts_needed", "diagnostic_steps", mode="before")
    @classmethod
    def _none_to_list(cls, value: Any) -> Any:
        return [] if value is None else value

    def matches_year(self, year: int | None) -> bool:
        if year is None:
            return True
        if self.year_range_start is not None and year < self.year_range_start:
            return False
        if self.year_range_end is not None and year > self.year_range_end:
            return False
        return True


class Diagnosis(BaseModel):
    """One ranked probable cause."""

    cause: str = Field(min_length=1)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    reasoning: str = ""
    parts_needed: list[str] = Field(default_factory=list)
    labor_category: str = "intermediate"
    labor_hours: float = Field(default=1.0, ge=0.0)
    common_misdiagnosis: str | None = None

    @field_validator("parts_needed", mode="before")
    @classmethod
    def _none_to_list(cls, value: Any) -> Any:
        return [] if value is None else value


class DiagnosticQuery(BaseModel):
    """Immutable input to one diagnosis run."""

    model_config = ConfigDict(frozen=True)

    vin: str | None = None
    year: int | None = Field(default=None, ge=1900, le=2100)
    make: str | None = None
    model: str | None = None
    engine: str | None = None
    mileage: int | None = Field(default=None, ge=0)
    dtc_codes: tuple[str, ...] = ()
    symptoms: str | None = None

    @field_validator("dtc_codes", mode="before")
    @classmethod
    def _normalize_codes(cls, value: Any) -> Any:
        if value is None:
            return ()
        return tuple(str(code).strip().upper() for code in value if str(code).strip())

    @field_validator("make", "model", "engine", "symptoms", "vin", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value.strip() if isinstance(value, str) else value

    @property
    def primary_code(self) -> str | None:
        return self.dtc_codes[0] if self.dtc_codes else None


class SynthesisResult(BaseModel):
    """Validated output of the synthesis service."""

    diagnoses: list[Diagnosis] = Field(default_factory=list)
    diagnostic_steps: list[str] = Field(default_factory=list)
    summary: str = ""


class DiagnosisResult(BaseModel):
    """Everything returned to the caller for one run."""

    run_id: str | None = None
    diagnoses: list[Diagnosis] = Field(default_factory=list)
    repair_plan: RepairPlan | None = None
    recalls: list[dict[str, Any]] = Field(default_factory=list)
    complaints: list[dict[str, Any]] = Field(default_factory=list)
    registry_cached: bool = False
    registry_stale: bool = False
    labor_stale: bool = False
    diagnostic_steps: list[str] = Field(default_factory=list)
    diagnostic_path: DiagnosticPath
    summary: str | None = None
    low_confidence_warning: bool = False
    processing_time_ms: float = 0.0


class RunSummary(BaseModel):
    """Durable log row for a completed diagnosis run."""

    id: str | None = None
    vin: str | None = None
    vehicle_year: int | None = None
    vehicle_make: str | None = None
    vehicle_model: str | None = None
    engine: str | None = None
    mileage: int | None = None
    dtc_codes: list[str] = Field(default_factory=list)
    symptoms: str | None = None
    top_prediction: str | None = None
    top_confidence: float | None = None
    all_predictions: list[Diagnosis] = Field(default_factory=list)
    recalls_found: int = 0
    complaints_found: int = 0
    cases_used: int = 0
    diagnostic_path: DiagnosticPath | None = None
    processing_time_ms: float = 0.0
    created_at: datetime = Field(default_factory=utcnow)


class OutcomeRecord(BaseModel):
    """Technician-confirmed result of a prior run."""

    model_config = ConfigDict(frozen=True)

    id: str | None = None
    run_id: str
    predicted_cause: str | None = None
    actual_cause: str = Field(min_length=1)
    was_correct: bool
    parts_used: list[str] = Field(default_factory=list)
    labor_actual_hours: float | None = Field(default=None, ge=0.0)
    technician_notes: str | None = None
    recorded_at: datetime = Field(default_factory=utcnow)


class CodeAccuracy(BaseModel):
    total: int = 0
    correct: int = 0
    accuracy: float = 0.0


class OverallAccuracy(CodeAccuracy):
    total_runs: int = 0


class AccuracyStats(BaseModel):
    overall: OverallAccuracy
    by_dtc: dict[str, CodeAccuracy] = Field(default_factory=dict)


class LaborTimeRecord(BaseModel):
    """Reference labor time for one procedure on one vehicle, as seeded."""

    model_config = ConfigDict(populate_by_name=True)

    year: int = Field(ge=1900, le=2100, validation_alias=AliasChoices("year", "vehicle_year"))
    make: str = Field(min_length=1, validation_alias=AliasChoices("make", "vehicle_make"))
    model: str = Field(min_length=1, validation_alias=AliasChoices("model", "vehicle_model"))
    procedure: str = Field(min_length=1, validation_alias=AliasChoices("procedure", "procedure_name"))
    hours: float = Field(ge=0.0, validation_alias=AliasChoices("hours", "labor_hours"))
    source: str = Field(default="estimated", validation_alias=AliasChoices("source", "labor_source"))
    notes: str | None = None
