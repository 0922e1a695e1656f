import pytest
from pydantic import ValidationError

from diag_engine.agent.scoring import (
    ConfidenceScorer,
    match_case,
    mileage_factor,
    vehicle_specificity_bonus,
)
from diag_engine.config import ScoringConfig
from diag_engine.models import Diagnosis, RetrievedCase


def _case(cause: str, similarity: float, **kwargs) -> RetrievedCase:
    return RetrievedCase(dtc_code="P0420", cause=cause, similarity=similarity, **kwargs)


def test_default_weights_sum_to_one() -> None:
    assert ScoringConfig().weight_sum() == pytest.approx(1.0, abs=1e-12)


def test_weights_not_summing_to_one_rejected() -> None:
    with pytest.raises(ValidationError):
        ScoringConfig(similarity_weight=0.40)


def test_floor_must_be_below_ceiling() -> None:
    with pytest.raises(ValidationError):
        ScoringConfig(floor=0.9, ceiling=0.5)


@pytest.mark.parametrize(
    ("mileage", "expected"),
    [
        (None, 0.5),
        (0, 0.5),
        (-10, 0.5),
        (29_999, 0.4),
        (30_000, 0.7),
        (59_999, 0.7),
        (60_000, 0.9),
        (120_000, 0.9),
        (120_001, 0.8),
        (200_000, 0.8),
        (200_001, 0.6),
    ],
)
def test_mileage_factor_windows(mileage, expected) -> None:
    assert mileage_factor(mileage) == expected


def test_vehicle_specificity_bonus() -> None:
    civic = _case("Catalytic converter", 0.8, vehicle_make="Honda", vehicle_model="Civic")
    accord = _case("Catalytic converter", 0.8, vehicle_make="Honda", vehicle_model="Accord")
    generic = _case("Catalytic converter", 0.8)

    assert vehicle_specificity_bonus([generic, civic], "honda", "CIVIC") == 0.10
    assert vehicle_specificity_bonus([accord, generic], "Honda", "Civic") == 0.05
    assert vehicle_specificity_bonus([generic], "Honda", "Civic") == 0.0
    assert vehicle_specificity_bonus([], "Honda", "Civic") == 0.0


def test_match_case_uses_leading_word() -> None:
    cases = [_case("Vacuum leak at intake", 0.6), _case("Failed catalytic converter", 0.8)]

    matched = match_case(Diagnosis(cause="Catalytic converter efficiency"), cases)

    assert matched is cases[1]
    assert match_case(Diagnosis(cause="Wiring fault"), cases) is None


def test_score_combines_all_signals() -> None:
    case = _case(
        "Catalytic converter failure",
        0.85,
        vehicle_make="Honda",
        vehicle_model="Civic",
        success_rate=0.9,
    )
    diagnosis = Diagnosis(cause="Catalytic converter failure", confidence=0.8)

    scored = ConfidenceScorer().score([diagnosis], [case], make="Honda", model="Civic", mileage=95_000)

    # 0.85*.30 + 0.8*.25 + 0.9*.25 + 0.10*.10 + 0.9*.10
    assert scored[0].confidence == pytest.approx(0.78)
    assert diagnosis.confidence == 0.8


def test_unmatched_diagnosis_uses_mean_similarity_and_neutral_success() -> None:
    cases = [_case("Vacuum leak", 0.6, success_rate=0.1), _case("Vacuum hose", 0.8)]
    scorer = ConfidenceScorer()

    breakdown = scorer.breakdown(Diagnosis(cause="Ignition coil", confidence=0.4), cases, 0.0, 0.5, 0.7)

    assert breakdown.similarity == 0.7
    assert breakdown.success_rate == 0.5
    assert breakdown.base_confidence == 0.4


def test_zero_success_rate_is_not_replaced() -> None:
    case = _case("Ignition coil", 0.7, success_rate=0.0)

    breakdown = ConfidenceScorer().breakdown(Diagnosis(cause="Ignition coil"), [case], 0.0, 0.5, 0.7)

    assert breakdown.success_rate == 0.0


def test_no_cases_scores_with_neutral_inputs() -> None:
    scored = ConfidenceScorer().score(
        [Diagnosis(cause="Misfire", confidence=0.5)], [], make="Honda", model="Civic", mileage=None
    )

    # 0.5*.30 + 0.5*.25 + 0.5*.25 + 0 + 0.5*.10
    assert scored[0].confidence == pytest.approx(0.45)


def test_final_confidence_is_clamped() -> None:
    config = ScoringConfig(
        similarity_weight=1.0,
        base_confidence_weight=0.0,
        success_rate_weight=0.0,
        vehicle_weight=0.0,
        mileage_weight=0.0,
    )
    scorer = ConfidenceScorer(config)
    diagnosis = Diagnosis(cause="Oxygen sensor")

    high = scorer.score([diagnosis], [_case("Oxygen sensor", 1.0)], make=None, model=None, mileage=None)
    low = scorer.score([diagnosis], [_case("Oxygen sensor", 0.0)], make=None, model=None, mileage=None)

    assert high[0].confidence == 0.95
    assert low[0].confidence == 0.05


@pytest.mark.parametrize("similarity", [0.0, 0.3, 0.7, 1.0])
@pytest.mark.parametrize("success_rate", [None, 0.0, 1.0])
@pytest.mark.parametrize("mileage", [None, 10_000, 90_000, 300_000])
def test_default_scoring_stays_in_bounds(similarity, success_rate, mileage) -> None:
    case = _case(
        "Coolant leak",
        similarity,
        vehicle_make="Ford",
        vehicle_model="F-150",
        success_rate=success_rate,
    )
    diagnoses = [Diagnosis(cause="Coolant leak", confidence=0.95), Diagnosis(cause="Other", confidence=0.0)]

    scored = ConfidenceScorer().score(diagnoses, [case], make="Ford", model="F-150", mileage=mileage)

    assert all(0.05 <= diagnosis.confidence <= 0.95 for diagnosis in scored)
