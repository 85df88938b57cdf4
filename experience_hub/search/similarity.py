"""
Experience Hub Similarity Ranking

Exact cosine similarity scan over candidate embeddings. The corpus is
small enough that no ANN index is needed.

Functions:
    cosine_similarity — Cosine similarity of two vectors, clipped to [-1, 1]
    rank_by_vector    — Rank candidates against a query vector above a threshold

Rules:
    - Never log embedding vectors — only metadata
    - A zero vector has similarity 0.0 with everything (never NaN)
"""

from typing import Any, Iterable, Optional, Sequence

import numpy as np
import structlog

from experience_hub.config import settings
from experience_hub.search.exceptions import DimensionMismatch

logger = structlog.get_logger(__name__)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity between two vectors.

    Raises:
        DimensionMismatch: If the vectors differ in length.
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise DimensionMismatch(va.size, vb.size)

    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0

    value = float(np.dot(va, vb) / (norm_a * norm_b))
    return float(np.clip(value, -1.0, 1.0))


def rank_by_vector(
    query_vector: Sequence[float],
    candidates: Iterable[dict[str, Any]],
    threshold: Optional[float] = None,
) -> list[tuple[str, float]]:
    """
    Score every embedded candidate against the query vector.

    Args:
        query_vector: The embedded query.
        candidates: DAL dicts with ``id`` and ``embedding`` keys.
        threshold: Results with similarity <= threshold are dropped.
                   Defaults to SEARCH_SIMILARITY_THRESHOLD.

    Returns:
        ``[(experience_id, similarity)]`` sorted by similarity descending,
        ties broken by id ascending.
    """
    if threshold is None:
        threshold = settings.SEARCH_SIMILARITY_THRESHOLD

    scored: list[tuple[str, float]] = []
    skipped = 0
    for candidate in candidates:
        embedding = candidate.get("embedding")
        if embedding is None:
            continue
        try:
            similarity = cosine_similarity(query_vector, embedding)
        except DimensionMismatch as exc:
            # A stale vector from an older model: exclude it for this request only.
            skipped += 1
            logger.warning(
                "similarity_dimension_mismatch",
                experience_id=candidate.get("id"),
                expected=exc.expected,
                actual=exc.actual,
            )
            continue
        if similarity > threshold:
            scored.append((str(candidate["id"]), similarity))

    scored.sort(key=lambda item: (-item[1], item[0]))

    if skipped:
        logger.info("rank_by_vector_skipped", skipped_count=skipped)
    return scored
