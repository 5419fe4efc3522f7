"""
Cosine-similarity ranking of candidate chunks.

rank() is a linear scan and is the reference behaviour for any indexed
search: candidates below the threshold are dropped, the rest are ordered by
similarity descending, ties broken by created_at ascending (oldest first),
and at most `limit` results are returned.
"""

import logging
from typing import Optional, Sequence

import numpy as np

from .citation import LegalCitationFormatter
from .exceptions import DimensionMismatchError
from .metrics import get_metrics_collector
from .models import Chunk, SearchResult, as_utc

logger = logging.getLogger(__name__)


def _norm(vector: np.ndarray) -> float:
    return float(np.linalg.norm(vector))


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Compute cosine similarity between two vectors.

    Returns 0.0 when either vector has zero norm.

    Raises:
        DimensionMismatchError: vectors have different lengths
    """
    a_arr = np.asarray(a, dtype=np.float64)
    b_arr = np.asarray(b, dtype=np.float64)
    if a_arr.shape != b_arr.shape:
        raise DimensionMismatchError(expected=a_arr.size, actual=b_arr.size)
    return _cosine(a_arr, _norm(a_arr), b_arr)


def _cosine(query: np.ndarray, query_norm: float, other: np.ndarray) -> float:
    other_norm = _norm(other)
    if query_norm == 0 or other_norm == 0:
        return 0.0
    similarity = float(np.dot(query, other) / (query_norm * other_norm))
    # Rounding can push |similarity| marginally past 1
    return max(-1.0, min(1.0, similarity))


class SimilarityRanker:
    """
    Scores, filters, orders and truncates candidate chunks.

    Read-only with respect to chunks; holds no per-query state.
    """

    def __init__(self, citation_formatter: Optional[LegalCitationFormatter] = None):
        self._citations = citation_formatter or LegalCitationFormatter()

    def score(self, query_vector: Sequence[float], chunk: Chunk) -> float:
        """Similarity of one chunk to the query (raises DimensionMismatchError)."""
        query = np.asarray(query_vector, dtype=np.float64)
        embedding = np.asarray(chunk.embedding, dtype=np.float64)
        if embedding.shape != query.shape:
            raise DimensionMismatchError(
                expected=query.size, actual=embedding.size, chunk_id=chunk.id
            )
        return _cosine(query, _norm(query), embedding)

    def rank(
        self,
        query_vector: Sequence[float],
        candidates: Sequence[Chunk],
        limit: int,
        threshold: float,
    ) -> list[SearchResult]:
        """
        Rank candidates against a query embedding.

        Args:
            query_vector: Query embedding
            candidates: Chunks to score
            limit: Maximum number of results
            threshold: Minimum similarity to keep a candidate

        Returns:
            SearchResults ordered by similarity desc, created_at asc
        """
        if limit <= 0 or not candidates:
            return []

        query = np.asarray(query_vector, dtype=np.float64)
        query_norm = _norm(query)

        scored: list[tuple[float, Chunk]] = []
        skipped = 0
        for chunk in candidates:
            embedding = np.asarray(chunk.embedding, dtype=np.float64)
            if embedding.shape != query.shape:
                skipped += 1
                mismatch = DimensionMismatchError(
                    expected=query.size, actual=embedding.size, chunk_id=chunk.id
                )
                logger.warning(f"Skipping candidate: {mismatch}")
                continue

            similarity = _cosine(query, query_norm, embedding)
            if similarity < threshold:
                continue
            scored.append((similarity, chunk))

        if skipped:
            get_metrics_collector().record_skipped_candidates(skipped)

        scored.sort(key=lambda item: (-item[0], as_utc(item[1].created_at)))

        return [
            SearchResult(
                chunk=chunk,
                similarity=similarity,
                citation=self._citations.format(chunk.source_type, chunk.metadata),
            )
            for similarity, chunk in scored[:limit]
        ]
