"""Embedding abstractions for case and query vectors."""

from __future__ import annotations

from abc import ABC, abstractmethod
from hashlib import blake2b
from math import sqrt
from typing import Any

from diag_engine.models import RetrievedCase


class Embedder(ABC):
    """Embedder interface used by ingest, retrieval and outcome learning."""

    @abstractmethod
    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """Embed many case texts."""

    @abstractmethod
    def embed_query(self, text: str) -> list[float]:
        """Embed one diagnostic query."""


class HashingEmbedder(Embedder):
    """Deterministic bag-of-tokens embedding without external model calls.

    Used for offline runs and tests; production wiring uses
    `LangChainEmbedder` over an OpenAI embedding model.
    """

    def __init__(self, dimension: int = 256) -> None:
        self.dimension = dimension

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [self._embed(text) for text in texts]

    def embed_query(self, text: str) -> list[float]:
        return self._embed(text)

    def _embed(self, text: str) -> list[float]:
        vector = [0.0 for _ in range(self.dimension)]
        tokens = text.lower().replace(",", " ").split()
        if not tokens:
            return vector

        for token in tokens:
            digest = blake2b(token.encode("utf-8"), digest_size=8).digest()
            idx = int.from_bytes(digest[:4], "little") % self.dimension
            vector[idx] += 1.0

        norm = sqrt(sum(value * value for value in vector))
        if norm == 0:
            return vector
        return [value / norm for value in vector]


class LangChainEmbedder(Embedder):
    """Adapts any LangChain `Embeddings` implementation."""

    def __init__(self, embeddings: Any) -> None:
        self._embeddings = embeddings

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [list(vector) for vector in self._embeddings.embed_documents(texts)]

    def embed_query(self, text: str) -> list[float]:
        return list(self._embeddings.embed_query(text))


def create_openai_embedder(model: str, api_key: str) -> LangChainEmbedder:
    from langchain_openai import OpenAIEmbeddings

    return LangChainEmbedder(OpenAIEmbeddings(model=model, api_key=api_key))


def build_case_text(case: RetrievedCase) -> str:
    """Text a stored case is embedded from."""
    year_range = (
        f"{case.year_range_start}-{case.year_range_end}"
        if case.year_range_start and case.year_range_end
        else None
    )
    parts = [
        case.dtc_code,
        case.dtc_description,
        case.vehicle_make,
        case.vehicle_model,
        year_range,
        case.engine_type,
        case.cause,
        case.cause_category,
        case.common_misdiagnosis,
    ]
    return " ".join(part for part in parts if part)
