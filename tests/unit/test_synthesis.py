import json
from dataclasses import dataclass

import pytest

from diag_engine.agent.synthesis import (
    MAX_REGISTRY_ITEMS,
    LLMSynthesizer,
    build_user_prompt,
    format_registry,
    parse_synthesis,
)
from diag_engine.errors import SynthesisError
from diag_engine.models import DiagnosticQuery, LaborEstimate, RepairPlan, RetrievedCase
from diag_engine.types import RegistryData

QUERY = DiagnosticQuery(make="Honda", model="Civic", year=2018, dtc_codes=["P0420"], mileage=95_000)

ANSWER = {
    "diagnoses": [
        {
            "cause": "Catalytic converter failure",
            "confidence": 0.7,
            "reasoning": "Matches prior cases",
            "parts_needed": ["Catalytic converter"],
            "labor_category": "intermediate",
            "labor_hours": None,
            "common_misdiagnosis": None,
        }
    ],
    "diagnostic_steps": ["Compare upstream and downstream O2 readings"],
    "summary": "Converter efficiency below threshold.",
}


@dataclass
class _Message:
    content: object


class _ScriptedLLM:
    def __init__(self, content: object) -> None:
        self.content = content
        self.messages = None

    def invoke(self, messages):
        self.messages = messages
        return _Message(self.content)


class _DownLLM:
    def invoke(self, messages):
        raise TimeoutError("model timed out")


def test_parse_strips_fences_and_null_fields() -> None:
    result = parse_synthesis(f"```json\n{json.dumps(ANSWER)}\n```")

    assert result.diagnoses[0].cause == "Catalytic converter failure"
    assert result.diagnoses[0].labor_hours == 1.0
    assert result.diagnoses[0].common_misdiagnosis is None
    assert result.diagnostic_steps == ["Compare upstream and downstream O2 readings"]
    assert result.summary == "Converter efficiency below threshold."


@pytest.mark.parametrize(
    "text",
    [
        "I think it is the catalytic converter.",
        "[]",
        json.dumps({"diagnoses": [{"cause": "Converter", "confidence": 1.4}]}),
        json.dumps({"diagnoses": [{"confidence": 0.4}]}),
    ],
)
def test_unusable_output_is_a_synthesis_error(text) -> None:
    with pytest.raises(SynthesisError):
        parse_synthesis(text)


def test_synthesizer_sends_system_rules_and_request() -> None:
    llm = _ScriptedLLM(json.dumps(ANSWER))

    result = LLMSynthesizer(llm=llm).synthesize(QUERY, [], RegistryData())

    assert len(result.diagnoses) == 1
    system, human = llm.messages
    assert "Never exceed 95% confidence" in system.content
    assert "Vehicle: 2018 Honda Civic" in human.content
    assert "DTC Code(s): P0420" in human.content


def test_synthesizer_accepts_content_blocks() -> None:
    llm = _ScriptedLLM([{"type": "text", "text": json.dumps(ANSWER)}])

    assert LLMSynthesizer(llm=llm).synthesize(QUERY, [], RegistryData()).summary


def test_transport_failure_is_a_synthesis_error() -> None:
    with pytest.raises(SynthesisError):
        LLMSynthesizer(llm=_DownLLM()).synthesize(QUERY, [], RegistryData())


def test_user_prompt_includes_cases_and_existing_plan() -> None:
    case = RetrievedCase(
        dtc_code="P0420",
        vehicle_make="Honda",
        vehicle_model="Civic",
        year_range_start=2016,
        year_range_end=2021,
        cause="Catalytic converter failure",
        success_rate=0.8,
        similarity=0.55,
    )
    plan = RepairPlan(labor=LaborEstimate(hours=1.5))

    prompt = build_user_prompt(QUERY, [case], RegistryData(), plan)

    assert "Case 1 [55.0% similarity]:" in prompt
    assert "Vehicle: Honda Civic (2016-2021)" in prompt
    assert "Historical Success Rate: 80%" in prompt
    assert "EXISTING REPAIR PLAN" in prompt
    assert '"hours": 1.5' in prompt


def test_prompt_without_cases_or_plan() -> None:
    prompt = build_user_prompt(QUERY, [], RegistryData())

    assert "No similar past cases found in the database." in prompt
    assert "EXISTING REPAIR PLAN" not in prompt


def test_registry_formatting_is_capped() -> None:
    registry = RegistryData(
        recalls=[{"NHTSACampaignNumber": f"18V{idx:03d}000"} for idx in range(15)],
        complaints=[],
    )

    text = format_registry(registry)

    assert "RECALLS (15 found):" in text
    assert f"Recall {MAX_REGISTRY_ITEMS}:" in text
    assert f"Recall {MAX_REGISTRY_ITEMS + 1}:" not in text
    assert "COMPLAINTS: None found." in text
