"""
Experience Hub Experiences API Router

REST endpoints for hybrid experience search and the embedding lifecycle.

Mount point: /api/v1

Endpoints:
    GET    /experiences                           — Hybrid search / browse / id lookup
    PATCH  /experiences/{experience_id}           — Edit content (drops a stale embedding)
    POST   /experiences/{experience_id}/embedding — Ensure (or refresh) an embedding
    DELETE /experiences/{experience_id}/embedding — Clear a stored embedding
    POST   /experiences/embeddings/batch          — Backfill sweep
    POST   /experiences/{experience_id}/view      — Record a detail view

Rules:
    - Return 404 for unknown ids, 400 for invalid params
    - 503 when the embedding provider is unavailable, 502 when generation failed
    - 422 when a record has no text to embed
    - Log endpoint name, params, and response time via structlog
"""

import time
from typing import Any, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from experience_hub.config import settings
from experience_hub.db import dal
from experience_hub.db.session import get_db
from experience_hub.search.embeddings import EmbeddingProvider, get_embedding_provider
from experience_hub.search.exceptions import (
    EmbeddingEmptyInput,
    EmbeddingGenerationFailed,
    EmbeddingServiceUnavailable,
    ExperienceNotFoundError,
)
from experience_hub.search.indexer import (
    batch_ensure_embeddings,
    clear_embedding,
    ensure_embedding,
    refresh_embedding,
    update_experience_content,
)
from experience_hub.search.search import SORT_RELEVANCE, query_experiences

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["Experiences"])


# ── Request / Response schemas ──────────────────────────────────────────────

class EnsureEmbeddingResponse(BaseModel):
    experience_id: str
    outcome: str


class UpdateExperienceRequest(BaseModel):
    title: Optional[str] = None
    problem_description: Optional[str] = None
    root_cause: Optional[str] = None
    solution: Optional[str] = None
    context: Optional[str] = None
    keywords: Optional[list[str]] = None


class UpdateExperienceResponse(BaseModel):
    experience_id: str
    has_embedding: bool
    embedding_cleared: bool


class ClearEmbeddingResponse(BaseModel):
    experience_id: str
    cleared: bool


class BatchEmbeddingRequest(BaseModel):
    limit: Optional[int] = Field(None, ge=1, le=1000, description="Max records to process")
    offset: int = Field(0, ge=0, description="Backlog records to skip")


class BatchEmbeddingResponse(BaseModel):
    processed: int
    succeeded: int
    failed: int
    cancelled: bool
    errors: list[dict[str, str]]


class ViewResponse(BaseModel):
    experience_id: str
    view_count: int


def _not_found(experience_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Experience '{experience_id}' not found",
    )


# ── GET /experiences: hybrid search ──────────────────────────────────────

@router.get(
    "/experiences",
    summary="Search experiences by problem description and/or keywords",
    response_description="Ranked, paginated experiences with relevance scores",
)
def query_experiences_endpoint(
    q: Optional[str] = Query(None, description="Free-text problem description"),
    keywords: Optional[list[str]] = Query(None, description="Keywords (repeatable)"),
    limit: Optional[int] = Query(None, ge=1, le=settings.SEARCH_MAX_LIMIT, description="Page size"),
    offset: int = Query(0, ge=0, description="Results to skip"),
    sort: str = Query(SORT_RELEVANCE, description="relevance | query_count | created_at"),
    ids: Optional[list[str]] = Query(None, description="Restrict to these experience ids (repeatable)"),
    db: Session = Depends(get_db),
    provider: EmbeddingProvider = Depends(get_embedding_provider),
) -> dict[str, Any]:
    """
    Hybrid search. Without q and keywords, browses all published experiences
    (only the requested ``ids`` when given).

    Each returned experience has its query_count incremented.
    """
    start_time = time.time()
    log = logger.bind(endpoint="query_experiences", query=(q or "")[:100])

    try:
        result = query_experiences(
            db,
            provider,
            q=q,
            keywords=keywords,
            limit=limit,
            offset=offset,
            sort=sort,
            ids=ids,
        )
        returned_ids = [e["id"] for e in result["experiences"]]
        if returned_ids:
            dal.increment_query_count(returned_ids, db=db)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except (SQLAlchemyError, RuntimeError) as exc:
        log.error("query_experiences_error", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Search failed"
        )

    log.info(
        "query_experiences_response",
        result_count=len(result["experiences"]),
        total_count=result["total_count"],
        search_mode=result["search_mode"],
        degraded=result["degraded"],
        elapsed_seconds=round(time.time() - start_time, 3),
    )
    return result


# ── POST /experiences/embeddings/batch: backfill sweep ───────────────────

@router.post(
    "/experiences/embeddings/batch",
    response_model=BatchEmbeddingResponse,
    summary="Generate embeddings for published experiences that lack one",
)
def batch_embeddings_endpoint(
    body: BatchEmbeddingRequest,
    db: Session = Depends(get_db),
    provider: EmbeddingProvider = Depends(get_embedding_provider),
) -> BatchEmbeddingResponse:
    """
    Run one backfill batch synchronously. Per-record failures are reported
    in ``errors``; the request itself only fails on storage errors.
    """
    try:
        result = batch_ensure_embeddings(db, provider, limit=body.limit, offset=body.offset)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    logger.info(
        "batch_embeddings_response",
        processed=result.processed,
        succeeded=result.succeeded,
        failed=result.failed,
    )
    return BatchEmbeddingResponse(**result.as_dict())


# ── PATCH /experiences/{id}: content edit ─────────────────────────────────

@router.patch(
    "/experiences/{experience_id}",
    response_model=UpdateExperienceResponse,
    summary="Edit an experience; a text change drops its embedding",
)
def update_experience_endpoint(
    experience_id: str,
    body: UpdateExperienceRequest,
    db: Session = Depends(get_db),
) -> UpdateExperienceResponse:
    try:
        record, cleared = update_experience_content(
            experience_id, db, **body.model_dump(exclude_unset=True)
        )
    except ExperienceNotFoundError:
        raise _not_found(experience_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return UpdateExperienceResponse(
        experience_id=record["id"],
        has_embedding=record["has_embedding"],
        embedding_cleared=cleared,
    )


# ── POST/DELETE /experiences/{id}/embedding ───────────────────────────────

@router.post(
    "/experiences/{experience_id}/embedding",
    response_model=EnsureEmbeddingResponse,
    summary="Generate the embedding for one experience if it has none",
)
def ensure_embedding_endpoint(
    experience_id: str,
    refresh: bool = Query(False, description="Drop the current embedding and regenerate it"),
    db: Session = Depends(get_db),
    provider: EmbeddingProvider = Depends(get_embedding_provider),
) -> EnsureEmbeddingResponse:
    try:
        if refresh:
            outcome = refresh_embedding(experience_id, db, provider)
        else:
            outcome = ensure_embedding(experience_id, db, provider)
    except ExperienceNotFoundError:
        raise _not_found(experience_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except EmbeddingServiceUnavailable as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    except EmbeddingGenerationFailed as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    except EmbeddingEmptyInput as exc:
        raise HTTPException(status_code=422, detail=str(exc))

    return EnsureEmbeddingResponse(experience_id=experience_id, outcome=outcome.value)


@router.delete(
    "/experiences/{experience_id}/embedding",
    response_model=ClearEmbeddingResponse,
    summary="Remove the stored embedding of one experience",
)
def clear_embedding_endpoint(
    experience_id: str,
    db: Session = Depends(get_db),
) -> ClearEmbeddingResponse:
    try:
        cleared = clear_embedding(experience_id, db)
    except ExperienceNotFoundError:
        raise _not_found(experience_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return ClearEmbeddingResponse(experience_id=experience_id, cleared=cleared)


# ── POST /experiences/{id}/view ───────────────────────────────────────────

@router.post(
    "/experiences/{experience_id}/view",
    response_model=ViewResponse,
    summary="Record that an experience was opened",
)
def record_view_endpoint(
    experience_id: str,
    db: Session = Depends(get_db),
) -> ViewResponse:
    try:
        view_count = dal.increment_view_count(experience_id, db=db)
    except ExperienceNotFoundError:
        raise _not_found(experience_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return ViewResponse(experience_id=experience_id, view_count=view_count)
