"""Exception types raised by the diagnostic engine."""

from __future__ import annotations

from typing import Any


class DiagnosisError(Exception):
    """Base error for run-level failures."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class InputValidationError(DiagnosisError):
    """Query rejected before any external call."""


class SynthesisError(DiagnosisError):
    """Synthesis service unreachable or returned unusable output."""


class RunNotFoundError(DiagnosisError):
    """Referenced diagnosis run does not exist in the run log."""


class RegistryFetchError(DiagnosisError):
    """Neither recalls nor complaints could be fetched."""


class LaborLookupUnavailable(DiagnosisError):
    """The live labor source has no entry for the procedure."""
