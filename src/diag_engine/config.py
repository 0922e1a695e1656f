"""Configuration models for the diagnostic engine."""

from __future__ import annotations

import os
from math import isclose

from pydantic import BaseModel, Field, model_validator


class RetrievalConfig(BaseModel):
    """Configures vector search and the exact-match fallback."""

    vector_limit: int = Field(default=10, ge=1)
    min_similarity: float = Field(default=0.5, ge=0.0, le=1.0)
    exact_limit: int = Field(default=15, ge=1)
    vehicle_boost: float = Field(default=0.15, ge=0.0, le=1.0)
    boost_cap: float = Field(default=0.95, ge=0.0, le=1.0)


class RoutingConfig(BaseModel):
    """Similarity thresholds that pick the synthesis path."""

    kb_direct_threshold: float = Field(default=0.70, ge=0.0, le=1.0)
    plan_fetch_threshold: float = Field(default=0.50, ge=0.0, le=1.0)
    kb_case_floor: float = Field(default=0.50, ge=0.0, le=1.0)
    kb_max_cases: int = Field(default=5, ge=1)


class ScoringConfig(BaseModel):
    """Weights of the confidence formula.

    The five weights must sum to 1.0 so a candidate with every signal at its
    maximum scores exactly 1.0 before clamping.
    """

    similarity_weight: float = Field(default=0.30, ge=0.0, le=1.0)
    base_confidence_weight: float = Field(default=0.25, ge=0.0, le=1.0)
    success_rate_weight: float = Field(default=0.25, ge=0.0, le=1.0)
    vehicle_weight: float = Field(default=0.10, ge=0.0, le=1.0)
    mileage_weight: float = Field(default=0.10, ge=0.0, le=1.0)
    floor: float = Field(default=0.05, ge=0.0, le=1.0)
    ceiling: float = Field(default=0.95, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_weights(self) -> "ScoringConfig":
        if not isclose(self.weight_sum(), 1.0, abs_tol=1e-9):
            raise ValueError(f"scoring weights must sum to 1.0, got {self.weight_sum():.4f}")
        if self.floor >= self.ceiling:
            raise ValueError("floor must be lower than ceiling")
        return self

    def weight_sum(self) -> float:
        return (
            self.similarity_weight
            + self.base_confidence_weight
            + self.success_rate_weight
            + self.vehicle_weight
            + self.mileage_weight
        )


class CacheConfig(BaseModel):
    """TTLs for the external lookup caches."""

    recall_ttl_days: int = Field(default=30, ge=1)
    labor_ttl_days: int = Field(default=90, ge=1)


class EngineConfig(BaseModel):
    """Top-level engine configuration."""

    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    low_confidence_threshold: float = Field(default=0.70, ge=0.0, le=1.0)


class Settings(BaseModel):
    """Process-level settings resolved from the environment."""

    openai_api_key: str | None = None
    chat_model: str = "gpt-4o-mini"
    embedding_model: str = "text-embedding-3-small"
    db_path: str | None = None
    nhtsa_base_url: str = "https://api.nhtsa.gov"
    http_timeout_seconds: float = Field(default=15.0, gt=0.0)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            chat_model=os.getenv("DIAG_CHAT_MODEL", "gpt-4o-mini"),
            embedding_model=os.getenv("DIAG_EMBEDDING_MODEL", "text-embedding-3-small"),
            db_path=os.getenv("DIAG_DB_PATH") or None,
            nhtsa_base_url=os.getenv("NHTSA_BASE_URL", "https://api.nhtsa.gov"),
            http_timeout_seconds=float(os.getenv("DIAG_HTTP_TIMEOUT", "15")),
            log_level=os.getenv("DIAG_LOG_LEVEL", "INFO"),
        )
