"""Synthesis path selection."""

from __future__ import annotations

from diag_engine.config import RoutingConfig
from diag_engine.models import DiagnosticPath

_DEFAULT_ROUTING = RoutingConfig()


def choose_path(
    top_similarity: float,
    has_repair_plan: bool,
    config: RoutingConfig = _DEFAULT_ROUTING,
) -> DiagnosticPath:
    """Pick the synthesis path from the top case alone.

    - plan and similarity >= threshold: `kb_direct`, no synthesis call.
    - plan below the threshold: `kb_with_claude`, synthesis adjusts the plan.
    - no plan at all: `claude_only`.
    """
    if not has_repair_plan:
        return DiagnosticPath.CLAUDE_ONLY
    if top_similarity >= config.kb_direct_threshold:
        return DiagnosticPath.KB_DIRECT
    return DiagnosticPath.KB_WITH_CLAUDE
