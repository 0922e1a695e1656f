"""Similar-case retrieval with an exact-match fallback."""

from __future__ import annotations

import logging

from diag_engine.config import RetrievalConfig
from diag_engine.ingest.embedder import Embedder
from diag_engine.models import DiagnosticQuery, RetrievedCase
from diag_engine.storage.cases import CaseFilter, CaseStore, ExactFilter

logger = logging.getLogger(__name__)


def build_query_text(query: DiagnosticQuery) -> str:
    """DTCs first, then symptoms, then vehicle descriptors."""
    parts: list[str] = []
    if query.dtc_codes:
        parts.append(f"DTC: {', '.join(query.dtc_codes)}")
    if query.symptoms:
        parts.append(f"Symptoms: {query.symptoms}")
    for descriptor in (query.make, query.model, query.year, query.engine):
        if descriptor:
            parts.append(str(descriptor))
    return " ".join(parts)


class CaseRetriever:
    """Finds historical cases similar to a diagnostic query.

    Vector search runs when an embedding can be produced. When it yields
    nothing and the query carries DTC codes, the store is queried by code
    directly and each hit gets a similarity synthesized from its base
    confidence, boosted for an exact make+model match.

    `retrieve` never raises: a failed retrieval is an empty candidate list.
    """

    def __init__(
        self,
        case_store: CaseStore,
        embedder: Embedder | None,
        config: RetrievalConfig | None = None,
    ) -> None:
        self.case_store = case_store
        self.embedder = embedder
        self.config = config or RetrievalConfig()

    def retrieve(self, query: DiagnosticQuery) -> list[RetrievedCase]:
        try:
            cases = self._vector_search(query)
            if not cases and query.dtc_codes:
                logger.info("No vector results, trying DTC direct lookup for %s", ", ".join(query.dtc_codes))
                cases = self._exact_lookup(query)
            return cases
        except Exception as exc:
            logger.error("Retrieval failed, continuing without similar cases: %s", exc)
            return []

    def _vector_search(self, query: DiagnosticQuery) -> list[RetrievedCase]:
        embedding = self._embed(build_query_text(query))
        if embedding is None:
            logger.info("Skipping vector search, no embedding available")
            return []

        filters = CaseFilter(
            dtc_code=query.primary_code,
            make=query.make,
            model=query.model,
            year=query.year,
        )
        try:
            cases = self.case_store.search(
                embedding,
                filters,
                limit=self.config.vector_limit,
                min_similarity=self.config.min_similarity,
            )
        except Exception as exc:
            logger.error("Vector search failed: %s", exc)
            return []
        logger.info("Vector search: %d similar cases", len(cases))
        return cases

    def _embed(self, text: str) -> list[float] | None:
        if self.embedder is None:
            return None
        try:
            embedding = self.embedder.embed_query(text)
        except Exception as exc:
            logger.warning("Embedding generation failed: %s", exc)
            return None
        logger.debug("Embedding generated (%d dimensions)", len(embedding))
        return embedding or None

    def _exact_lookup(self, query: DiagnosticQuery) -> list[RetrievedCase]:
        rows = self.case_store.exact_lookup(
            ExactFilter(dtc_codes=list(query.dtc_codes), make=query.make),
            limit=self.config.exact_limit,
        )
        cases = [
            row.model_copy(update={"similarity": self._synthesized_similarity(row, query)})
            for row in rows
        ]
        cases.sort(key=lambda case: case.similarity, reverse=True)
        logger.info("DTC direct lookup: %d matches", len(cases))
        return cases

    def _synthesized_similarity(self, case: RetrievedCase, query: DiagnosticQuery) -> float:
        similarity = case.base_confidence or 0.5
        if _same(case.vehicle_make, query.make) and _same(case.vehicle_model, query.model):
            similarity = min(self.config.boost_cap, similarity + self.config.vehicle_boost)
        return round(similarity, 4)


def _same(left: str | None, right: str | None) -> bool:
    return bool(left and right) and left.upper() == right.upper()
