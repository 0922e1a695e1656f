"""LLM-backed diagnostic synthesis."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Protocol

from langchain_core.prompts import ChatPromptTemplate
from pydantic import ValidationError

from diag_engine.errors import SynthesisError
from diag_engine.models import DiagnosticQuery, RepairPlan, RetrievedCase, SynthesisResult
from diag_engine.types import RegistryData

logger = logging.getLogger(__name__)

_SYSTEM_PROMPT = """
You are an expert automotive diagnostic AI. Given a vehicle, DTC code(s), symptoms,
similar past cases from our database, and any relevant TSBs/recalls, provide a
structured diagnosis.

Rules:
1. Rank causes by probability. Never exceed 95% confidence.
2. Confidence scores must sum to ~100% across all causes.
3. If similar past cases strongly agree, weight them heavily.
4. If a TSB or recall exists for this exact vehicle and DTC, mention it prominently.
5. Always suggest diagnostic verification steps before committing to a repair.
6. Flag common misdiagnoses.
7. Be conservative: recommend verification for anything below 80%.
8. When an existing repair plan is provided, adjust it instead of inventing a new one.

Respond ONLY with valid JSON matching this schema:
{
  "diagnoses": [
    {
      "cause": "string",
      "confidence": 0.0-0.95,
      "reasoning": "string",
      "parts_needed": ["string"],
      "labor_category": "basic|intermediate|advanced",
      "labor_hours": number,
      "common_misdiagnosis": "string or null"
    }
  ],
  "diagnostic_steps": ["string"],
  "summary": "string"
}
""".strip()

_PROMPT = ChatPromptTemplate.from_messages([("system", "{system}"), ("human", "{request}")])

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$")

MAX_REGISTRY_ITEMS = 10


class Synthesizer(Protocol):
    def synthesize(
        self,
        query: DiagnosticQuery,
        cases: list[RetrievedCase],
        registry: RegistryData,
        existing_plan: RepairPlan | None = None,
    ) -> SynthesisResult:
        """Produce ranked diagnoses; raise `SynthesisError` on any failure."""


class LLMSynthesizer:
    """Synthesizer over any LangChain chat model."""

    def __init__(self, *, llm: Any) -> None:
        self.llm = llm

    def synthesize(
        self,
        query: DiagnosticQuery,
        cases: list[RetrievedCase],
        registry: RegistryData,
        existing_plan: RepairPlan | None = None,
    ) -> SynthesisResult:
        request = build_user_prompt(query, cases, registry, existing_plan)
        messages = _PROMPT.format_messages(system=_SYSTEM_PROMPT, request=request)
        try:
            response = self.llm.invoke(messages)
        except Exception as exc:
            raise SynthesisError(f"Synthesis service call failed: {exc}") from exc

        result = parse_synthesis(_message_text(response))
        logger.info("Synthesis returned %d diagnoses", len(result.diagnoses))
        return result


def create_openai_llm(model: str, api_key: str) -> Any:
    from langchain_openai import ChatOpenAI

    return ChatOpenAI(model=model, api_key=api_key, temperature=0)


def parse_synthesis(text: str) -> SynthesisResult:
    """Parse and validate the model's JSON answer."""
    cleaned = _FENCE.sub("", text.strip()).strip()
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        logger.error("Synthesis output is not JSON: %s", cleaned[:500])
        raise SynthesisError(f"Synthesis returned invalid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise SynthesisError("Synthesis returned JSON that is not an object")

    diagnoses = payload.get("diagnoses") or []
    if isinstance(diagnoses, list):
        payload["diagnoses"] = [
            {key: value for key, value in item.items() if value is not None}
            if isinstance(item, dict)
            else item
            for item in diagnoses
        ]
    try:
        return SynthesisResult.model_validate(payload)
    except ValidationError as exc:
        raise SynthesisError("Synthesis output failed validation", {"errors": exc.errors()}) from exc


def build_user_prompt(
    query: DiagnosticQuery,
    cases: list[RetrievedCase],
    registry: RegistryData,
    existing_plan: RepairPlan | None = None,
) -> str:
    lines = [
        f"Vehicle: {query.year} {query.make} {query.model}",
        f"Engine: {query.engine or 'Unknown'}",
        f"Mileage: {query.mileage or 'Unknown'}",
        f"VIN: {query.vin or 'Not provided'}",
        "",
        f"DTC Code(s): {', '.join(query.dtc_codes) if query.dtc_codes else 'None provided'}",
        f"Symptoms: {query.symptoms or 'None described'}",
        "",
        "=== SIMILAR PAST CASES (from our database) ===",
        format_cases(cases),
        "",
        "=== TSBs & RECALLS ===",
        format_registry(registry),
        "",
    ]
    if existing_plan is not None:
        lines += [
            "=== EXISTING REPAIR PLAN (from knowledge base, use as starting point, adjust as needed) ===",
            existing_plan.model_dump_json(indent=2),
            "",
        ]
    lines.append("Provide your diagnosis as JSON.")
    return "\n".join(lines)


def format_cases(cases: list[RetrievedCase]) -> str:
    if not cases:
        return "No similar past cases found in the database."

    blocks: list[str] = []
    for idx, case in enumerate(cases, start=1):
        vehicle = " ".join(part for part in (case.vehicle_make, case.vehicle_model) if part) or "Any vehicle"
        if case.year_range_start and case.year_range_end:
            vehicle += f" ({case.year_range_start}-{case.year_range_end})"
        description = f" - {case.dtc_description}" if case.dtc_description else ""
        lines = [
            f"Case {idx} [{case.similarity * 100:.1f}% similarity]:",
            f"  DTC: {case.dtc_code}{description}",
            f"  Vehicle: {vehicle}",
            f"  Cause: {case.cause}",
        ]
        if case.cause_category:
            lines.append(f"  Category: {case.cause_category}")
        lines.append(f"  Base Confidence: {case.base_confidence * 100:.0f}%")
        if case.success_rate is not None:
            lines.append(f"  Historical Success Rate: {case.success_rate * 100:.0f}%")
        if case.parts_needed:
            lines.append(f"  Parts: {', '.join(case.parts_needed)}")
        if case.labor_category:
            hours = case.labor_hours_estimate if case.labor_hours_estimate is not None else "?"
            lines.append(f"  Labor: {case.labor_category} (~{hours}h)")
        if case.common_misdiagnosis:
            lines.append(f"  Common Misdiagnosis: {case.common_misdiagnosis}")
        if case.diagnostic_steps:
            lines.append(f"  Diagnostic Steps: {'; '.join(case.diagnostic_steps)}")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def format_registry(registry: RegistryData) -> str:
    sections: list[str] = []

    if registry.recalls:
        recall_blocks = []
        for idx, recall in enumerate(registry.recalls[:MAX_REGISTRY_ITEMS], start=1):
            lines = [f"Recall {idx}:"]
            for label, field_name in (
                ("Campaign", "NHTSACampaignNumber"),
                ("Component", "Component"),
                ("Summary", "Summary"),
                ("Consequence", "Consequence"),
                ("Remedy", "Remedy"),
            ):
                if recall.get(field_name):
                    lines.append(f"  {label}: {recall[field_name]}")
            recall_blocks.append("\n".join(lines))
        sections.append(f"RECALLS ({len(registry.recalls)} found):\n" + "\n\n".join(recall_blocks))
    else:
        sections.append("RECALLS: None found.")

    if registry.complaints:
        complaint_blocks = []
        for idx, complaint in enumerate(registry.complaints[:MAX_REGISTRY_ITEMS], start=1):
            lines = [f"Complaint {idx}:"]
            for label, field_name in (
                ("Component", "components"),
                ("Summary", "summary"),
                ("ODI#", "odiNumber"),
            ):
                if complaint.get(field_name):
                    lines.append(f"  {label}: {complaint[field_name]}")
            complaint_blocks.append("\n".join(lines))
        sections.append(
            f"COMPLAINTS ({len(registry.complaints)} found):\n" + "\n\n".join(complaint_blocks)
        )
    else:
        sections.append("COMPLAINTS: None found.")

    return "\n\n".join(sections)


def _message_text(response: Any) -> str:
    content = getattr(response, "content", response)
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and "text" in item:
                parts.append(str(item["text"]))
            else:
                parts.append(str(item))
        return " ".join(parts).strip()
    return str(content)
