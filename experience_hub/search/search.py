"""
Experience Hub Hybrid Search

Combines vector similarity and lexical matching into one ranked,
paginated result set over eligible (published, non-deleted) experiences.

Functions:
    query_experiences — Hybrid / lexical / browse / id-lookup query entry point

Rules:
    - Candidates are always loaded first; lexical scoring always runs
    - An id list narrows the candidate set before any scoring
    - Fused relevance = max(vector similarity, lexical score)
    - Any embedding failure degrades the request to lexical only (degraded=True)
    - Storage errors propagate to the caller
    - Never log embedding vectors — only metadata
"""

import time
from typing import Any, Optional, Sequence

import structlog
from sqlalchemy.orm import Session

from experience_hub.config import settings
from experience_hub.db import dal
from experience_hub.search.embeddings import EmbeddingProvider
from experience_hub.search.exceptions import SearchError
from experience_hub.search.lexical import created_at_key, rank_lexical
from experience_hub.search.similarity import rank_by_vector

logger = structlog.get_logger(__name__)

SORT_RELEVANCE = "relevance"
SORT_QUERY_COUNT = "query_count"
SORT_CREATED_AT = "created_at"
SORT_OPTIONS = (SORT_RELEVANCE, SORT_QUERY_COUNT, SORT_CREATED_AT)

MODE_HYBRID = "hybrid"
MODE_LEXICAL = "lexical"
MODE_BROWSE = "browse"
MODE_IDS = "ids"


def _clean_terms(values: Optional[Sequence[str]]) -> list[str]:
    return [k.strip() for k in values or [] if k and k.strip()]


def _embed_query(
    provider: EmbeddingProvider,
    query_text: str,
    candidates: list[dict[str, Any]],
) -> Optional[dict[str, float]]:
    """
    Vector-rank candidates against the query text.

    Returns None when the provider is unavailable or the query could not
    be embedded, so the caller falls back to lexical ranking.
    """
    if not provider.is_available():
        logger.info("query_provider_unavailable", provider=provider.name)
        return None
    try:
        query_vector = provider.generate_embedding(query_text)
    except SearchError as exc:
        logger.warning(
            "query_embedding_failed",
            provider=provider.name,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return None
    return dict(rank_by_vector(query_vector, candidates))


def _sort_results(results: list[dict[str, Any]], sort: str) -> None:
    # Stable sorts, least significant key first.
    results.sort(key=lambda r: r["id"])
    results.sort(key=created_at_key, reverse=True)
    if sort == SORT_RELEVANCE:
        results.sort(key=lambda r: r["_relevance"], reverse=True)
    elif sort == SORT_QUERY_COUNT:
        results.sort(key=lambda r: r["query_count"], reverse=True)


def query_experiences(
    db: Session,
    provider: EmbeddingProvider,
    q: Optional[str] = None,
    keywords: Optional[Sequence[str]] = None,
    limit: Optional[int] = None,
    offset: int = 0,
    sort: str = SORT_RELEVANCE,
    ids: Optional[Sequence[str]] = None,
) -> dict[str, Any]:
    """
    Hybrid query over eligible experiences.

    Steps:
        1. Validate arguments
        2. Load eligible candidates
        3. With q/keywords: lexical scoring, plus vector ranking if the
           provider is available; fuse with max(); drop zero-relevance records
        4. Without q/keywords: browse every eligible record (or only the
           requested ids)
        5. Sort, then paginate

    Args:
        db: SQLAlchemy session.
        provider: The configured EmbeddingProvider.
        q: Free-text problem description.
        keywords: Keyword list (case-insensitive).
        limit: Page size. Defaults to SEARCH_DEFAULT_LIMIT, capped at SEARCH_MAX_LIMIT.
        offset: Number of results to skip.
        sort: One of relevance, query_count, created_at.
        ids: Restrict the query to these experience ids. Drafts, deleted
            and unknown ids are left out.

    Returns:
        Dict with experiences, total_count, has_more, degraded, search_mode
        (hybrid, lexical, browse or ids).
        Each experience carries relevance_score, similarity (None when no
        vector score) and lexical_score.

    Raises:
        ValueError: If limit, offset, sort or any id is invalid.
    """
    start_time = time.time()

    if limit is None:
        limit = settings.SEARCH_DEFAULT_LIMIT
    if limit < 1 or limit > settings.SEARCH_MAX_LIMIT:
        raise ValueError(
            f"limit ({limit}) must be between 1 and {settings.SEARCH_MAX_LIMIT}"
        )
    if offset < 0:
        raise ValueError(f"offset ({offset}) must be non-negative")
    if sort not in SORT_OPTIONS:
        raise ValueError(f"sort must be one of {list(SORT_OPTIONS)}, got {sort!r}")

    query_text_q = (q or "").strip()
    cleaned_keywords = _clean_terms(keywords)
    cleaned_ids = _clean_terms(ids) or None

    # 1. Candidates are always loaded first
    candidates = dal.fetch_eligible_candidates(db=db, ids=cleaned_ids)

    degraded = False
    results: list[dict[str, Any]] = []

    if not query_text_q and not cleaned_keywords:
        # 2a. Browse mode
        search_mode = MODE_IDS if cleaned_ids else MODE_BROWSE
        for candidate in candidates:
            results.append({**candidate, "_relevance": 0.0, "_similarity": None, "_lexical": 0.0})
    else:
        # 2b. Lexical always, vector when possible
        lexical_scores = dict(rank_lexical(candidates, cleaned_keywords, query_text_q))
        query_text = " ".join([query_text_q, *cleaned_keywords]).strip()
        vector_scores = _embed_query(provider, query_text, candidates)
        if vector_scores is None:
            degraded = True
            vector_scores = {}
        search_mode = MODE_LEXICAL if degraded else MODE_HYBRID

        # 3. Fuse
        for candidate in candidates:
            similarity = vector_scores.get(candidate["id"])
            lexical = lexical_scores.get(candidate["id"], 0.0)
            relevance = max(similarity or 0.0, lexical)
            if relevance <= 0.0:
                continue
            results.append({
                **candidate,
                "_relevance": relevance,
                "_similarity": similarity,
                "_lexical": lexical,
            })

    # 4. Sort and paginate
    _sort_results(results, sort)
    total_count = len(results)
    page = results[offset:offset + limit]

    experiences = []
    for item in page:
        public = {k: v for k, v in item.items() if not k.startswith("_") and k != "embedding"}
        public["relevance_score"] = round(item["_relevance"], 4)
        public["similarity"] = (
            round(item["_similarity"], 4) if item["_similarity"] is not None else None
        )
        public["lexical_score"] = round(item["_lexical"], 4)
        experiences.append(public)

    elapsed = round(time.time() - start_time, 3)
    logger.info(
        "query_experiences",
        query=query_text_q[:100],
        keyword_count=len(cleaned_keywords),
        id_count=len(cleaned_ids or []),
        search_mode=search_mode,
        degraded=degraded,
        sort=sort,
        candidate_count=len(candidates),
        total_count=total_count,
        result_count=len(experiences),
        elapsed_seconds=elapsed,
    )

    return {
        "experiences": experiences,
        "total_count": total_count,
        "has_more": offset + limit < total_count,
        "degraded": degraded,
        "search_mode": search_mode,
    }
