"""Diagnostic decision engine package."""

from .config import EngineConfig, ScoringConfig

__all__ = ["EngineConfig", "ScoringConfig"]
