"""
Experience Hub Embedding Celery Tasks

Background tasks that generate embeddings outside the request path.

Tasks:
    ensure_embedding_task     — Embed a single experience (e.g. right after publish)
    backfill_embeddings_task  — Periodic sweep over eligible records lacking embeddings

Rules:
    - Retry only on retryable lifecycle errors (service unavailable, generation failed)
    - Do NOT retry on permanent errors (unknown id, empty content)
    - Storage errors are logged and re-raised
"""

import time
from typing import Optional

import structlog

from experience_hub.celery_app import celery
from experience_hub.db.session import SessionLocal
from experience_hub.search.embeddings import get_embedding_provider
from experience_hub.search.exceptions import (
    EmbeddingEmptyInput,
    EmbeddingGenerationFailed,
    EmbeddingServiceUnavailable,
    ExperienceNotFoundError,
)
from experience_hub.search.indexer import batch_ensure_embeddings, ensure_embedding

logger = structlog.get_logger(__name__)


@celery.task(
    name="experience_hub.search.tasks.ensure_embedding_task",
    bind=True,
    max_retries=3,
    default_retry_delay=30,
    autoretry_for=(EmbeddingServiceUnavailable, EmbeddingGenerationFailed),
    retry_backoff=True,
    retry_jitter=True,
)
def ensure_embedding_task(self, experience_id: str) -> dict:
    """
    Generate the embedding for one experience.

    Args:
        experience_id: Id of the experience to embed.

    Returns:
        Dict with experience_id and outcome (or error for permanent failures).
    """
    start_time = time.time()
    logger.info(
        "ensure_embedding_task_started",
        experience_id=experience_id,
        retry_count=self.request.retries,
    )

    db = SessionLocal()
    try:
        outcome = ensure_embedding(experience_id, db, get_embedding_provider())
        logger.info(
            "ensure_embedding_task_complete",
            experience_id=experience_id,
            outcome=outcome.value,
            elapsed_seconds=round(time.time() - start_time, 3),
        )
        return {"experience_id": experience_id, "outcome": outcome.value}

    except (ExperienceNotFoundError, EmbeddingEmptyInput, ValueError) as exc:
        # Permanent errors: do NOT retry
        logger.error(
            "ensure_embedding_task_permanent_error",
            experience_id=experience_id,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return {"experience_id": experience_id, "outcome": None, "error": str(exc)}

    finally:
        db.close()


@celery.task(name="experience_hub.search.tasks.backfill_embeddings_task")
def backfill_embeddings_task(limit: Optional[int] = None, offset: int = 0) -> dict:
    """
    Periodic backfill: embed eligible records that still lack an embedding.

    Skips the sweep entirely while the provider is unavailable, so a
    missing API key does not turn every beat tick into N failures.
    """
    provider = get_embedding_provider()
    if not provider.is_available():
        logger.info("backfill_embeddings_skipped", provider=provider.name)
        return {"processed": 0, "succeeded": 0, "failed": 0, "cancelled": False, "errors": []}

    db = SessionLocal()
    try:
        result = batch_ensure_embeddings(db, provider, limit=limit, offset=offset)
        return result.as_dict()
    except Exception as exc:
        logger.error(
            "backfill_embeddings_task_failed",
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise
    finally:
        db.close()
