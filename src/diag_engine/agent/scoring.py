"""Confidence scoring shared by every synthesis path."""

from __future__ import annotations

from diag_engine.config import ScoringConfig
from diag_engine.models import Diagnosis, RetrievedCase
from diag_engine.types import ScoreBreakdown

NEUTRAL = 0.5


def vehicle_specificity_bonus(
    cases: list[RetrievedCase], make: str | None, model: str | None
) -> float:
    """0.10 for an exact make+model case, 0.05 for make only, else 0."""
    if not cases or not make:
        return 0.0
    norm_make = make.upper()
    norm_model = (model or "").upper()

    if norm_model and any(
        (case.vehicle_make or "").upper() == norm_make
        and (case.vehicle_model or "").upper() == norm_model
        for case in cases
    ):
        return 0.10
    if any((case.vehicle_make or "").upper() == norm_make for case in cases):
        return 0.05
    return 0.0


def mileage_factor(mileage: int | None) -> float:
    """Wear-probability weight of the odometer reading."""
    if not mileage or mileage <= 0:
        return NEUTRAL
    if mileage < 30_000:
        return 0.4
    if mileage < 60_000:
        return 0.7
    if mileage <= 120_000:
        return 0.9
    if mileage <= 200_000:
        return 0.8
    return 0.6


def match_case(diagnosis: Diagnosis, cases: list[RetrievedCase]) -> RetrievedCase | None:
    """First case whose cause contains the diagnosis' leading word."""
    tokens = diagnosis.cause.lower().split()
    if not tokens:
        return None
    needle = tokens[0]
    for case in cases:
        if needle in case.cause.lower():
            return case
    return None


class ConfidenceScorer:
    """Blends retrieval and prior signals into one bounded confidence.

    final = similarity*w1 + base*w2 + success*w3 + vehicle_bonus*w4 + mileage*w5

    The result is clamped to [floor, ceiling]; no cause is ever reported as
    impossible or certain.
    """

    def __init__(self, config: ScoringConfig | None = None) -> None:
        self.config = config or ScoringConfig()

    def score(
        self,
        diagnoses: list[Diagnosis],
        cases: list[RetrievedCase],
        *,
        make: str | None,
        model: str | None,
        mileage: int | None,
    ) -> list[Diagnosis]:
        bonus = vehicle_specificity_bonus(cases, make, model)
        wear = mileage_factor(mileage)
        mean_similarity = (
            sum(case.similarity for case in cases) / len(cases) if cases else NEUTRAL
        )

        scored: list[Diagnosis] = []
        for diagnosis in diagnoses:
            breakdown = self.breakdown(diagnosis, cases, bonus, wear, mean_similarity)
            scored.append(diagnosis.model_copy(update={"confidence": breakdown.final}))
        return scored

    def breakdown(
        self,
        diagnosis: Diagnosis,
        cases: list[RetrievedCase],
        vehicle_bonus: float,
        wear: float,
        mean_similarity: float,
    ) -> ScoreBreakdown:
        matched = match_case(diagnosis, cases)
        similarity = matched.similarity if matched else mean_similarity
        success = NEUTRAL
        if matched is not None and matched.success_rate is not None:
            success = matched.success_rate
        base = diagnosis.confidence if diagnosis.confidence else NEUTRAL

        cfg = self.config
        raw = (
            similarity * cfg.similarity_weight
            + base * cfg.base_confidence_weight
            + success * cfg.success_rate_weight
            + vehicle_bonus * cfg.vehicle_weight
            + wear * cfg.mileage_weight
        )
        final = round(min(cfg.ceiling, max(cfg.floor, raw)), 4)
        return ScoreBreakdown(
            similarity=similarity,
            base_confidence=base,
            success_rate=success,
            vehicle_bonus=vehicle_bonus,
            mileage_factor=wear,
            raw=raw,
            final=final,
        )
