"""
Experience Hub Embedding Lifecycle

Keeps each record's embedding consistent with its content and publish state.
This is the only module that decides when ``embedding`` / ``has_embedding``
change; the DAL performs the writes, embeddings.py talks to the backend.

Functions:
    ensure_embedding          — Generate and store an embedding if missing
    clear_embedding           — Idempotently drop a stored embedding
    refresh_embedding         — Clear then ensure (explicit regeneration)
    handle_content_update     — Drop a stale embedding after a content edit
    update_experience_content — Apply a content edit, then handle_content_update
    batch_ensure_embeddings   — Backfill sweep over eligible records

Rules:
    - Failed generation never touches the record
    - Concurrent writers are resolved by the conditional update in the DAL
    - Batch failures are counted per item, never raised (storage errors excepted)
    - Never log embedding vectors — only metadata
"""

import enum
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

import structlog
from sqlalchemy.orm import Session

from experience_hub.config import settings
from experience_hub.db import dal
from experience_hub.db.models import EMBEDDED_CONTENT_FIELDS
from experience_hub.search.embeddings import (
    EmbeddingProvider,
    build_experience_embedding_text,
)
from experience_hub.search.exceptions import (
    DimensionMismatch,
    EmbeddingEmptyInput,
    EmbeddingGenerationFailed,
    EmbeddingRequestFailed,
    EmbeddingServiceUnavailable,
    EmbeddingUnavailable,
    SearchError,
)

logger = structlog.get_logger(__name__)


class EmbeddingOutcome(str, enum.Enum):
    EMBEDDED = "embedded"
    ALREADY_EMBEDDED = "already_embedded"


@dataclass
class BatchResult:
    """Summary of one backfill sweep."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    cancelled: bool = False
    errors: list[dict[str, str]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "errors": list(self.errors),
        }


# ── Single record ──────────────────────────────────────────────────────────


def ensure_embedding(
    experience_id: Any,
    db: Session,
    provider: EmbeddingProvider,
) -> EmbeddingOutcome:
    """
    Make sure an experience has an embedding.

    Steps:
        1. Load the record (ExperienceNotFoundError if missing)
        2. Return ALREADY_EMBEDDED if has_embedding is already set
        3. Check provider availability
        4. Build the canonical text and embed it
        5. Conditionally write embedding + has_embedding=True

    If another writer stored an embedding between steps 2 and 5 the
    conditional write matches nothing and the winner's vector is kept.

    Args:
        experience_id: Id of the experience.
        db: SQLAlchemy session.
        provider: The configured EmbeddingProvider.

    Returns:
        EmbeddingOutcome.EMBEDDED or EmbeddingOutcome.ALREADY_EMBEDDED.

    Raises:
        ExperienceNotFoundError: Unknown id.
        EmbeddingServiceUnavailable: Provider not ready; record unchanged.
        EmbeddingEmptyInput: The record has no text to embed.
        EmbeddingGenerationFailed: Provider call failed; record unchanged.
    """
    start_time = time.time()
    record = dal.get_experience(experience_id, db=db)
    if record["has_embedding"]:
        return EmbeddingOutcome.ALREADY_EMBEDDED

    if not provider.is_available():
        logger.warning(
            "ensure_embedding_provider_unavailable",
            experience_id=record["id"],
            provider=provider.name,
        )
        raise EmbeddingServiceUnavailable(
            f"Embedding provider '{provider.name}' is not available"
        )

    text = build_experience_embedding_text(record)
    if not text.strip():
        raise EmbeddingEmptyInput(f"Experience {record['id']} has no text to embed")

    try:
        vector = provider.generate_embedding(text)
        if len(vector) != provider.dimensions:
            raise DimensionMismatch(provider.dimensions, len(vector))
    except EmbeddingUnavailable as exc:
        raise EmbeddingServiceUnavailable(str(exc), cause=exc) from exc
    except (EmbeddingRequestFailed, DimensionMismatch) as exc:
        logger.error(
            "ensure_embedding_failed",
            experience_id=record["id"],
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise EmbeddingGenerationFailed(
            f"Embedding generation failed for experience {record['id']}: {exc}",
            experience_id=record["id"],
            cause=exc,
        ) from exc

    written = dal.write_embedding(
        record["id"], vector, expected_has_embedding=False, db=db
    )
    if not written:
        logger.info("ensure_embedding_lost_race", experience_id=record["id"])
        return EmbeddingOutcome.ALREADY_EMBEDDED

    logger.info(
        "ensure_embedding_complete",
        experience_id=record["id"],
        text_length=len(text),
        dimensions=len(vector),
        elapsed_seconds=round(time.time() - start_time, 3),
    )
    return EmbeddingOutcome.EMBEDDED


def clear_embedding(experience_id: Any, db: Session) -> bool:
    """
    Drop a stored embedding. Safe to call on a record that has none.

    Returns:
        True if an embedding was removed.
    """
    cleared = dal.clear_embedding_fields(experience_id, db=db)
    logger.info("clear_embedding", experience_id=str(experience_id), cleared=cleared)
    return cleared


def refresh_embedding(
    experience_id: Any,
    db: Session,
    provider: EmbeddingProvider,
) -> EmbeddingOutcome:
    """
    Regenerate an embedding after the record's content changed.

    The old vector is dropped first, so on failure the record is left
    without an embedding (and ranked lexically) rather than with a stale one.
    """
    clear_embedding(experience_id, db)
    return ensure_embedding(experience_id, db, provider)


def handle_content_update(
    experience_id: Any,
    changed_fields: Iterable[str],
    db: Session,
) -> bool:
    """
    Invalidate the embedding when canonical text fields were edited.

    Keyword-only edits keep the embedding, since keywords are not part of
    the embedded text.

    Returns:
        True if a stale embedding was cleared.
    """
    stale = sorted(set(changed_fields) & set(EMBEDDED_CONTENT_FIELDS))
    if not stale:
        return False
    logger.info(
        "embedding_stale",
        experience_id=str(experience_id),
        changed_fields=stale,
    )
    return clear_embedding(experience_id, db)


def update_experience_content(
    experience_id: Any,
    db: Session,
    **fields: Any,
) -> tuple[dict[str, Any], bool]:
    """
    Edit an experience and drop its embedding if the embedded text changed.

    The cleared record is picked up again by the backfill sweep.

    Returns:
        ``(record, embedding_cleared)`` with the record as stored after the edit.

    Raises:
        ExperienceNotFoundError: Unknown id.
        ValueError: Unknown or blank fields.
    """
    record, changed = dal.update_experience(experience_id, db=db, **fields)
    cleared = handle_content_update(record["id"], changed, db)
    if cleared:
        record = dal.get_experience(record["id"], db=db)
    logger.info(
        "update_experience_content",
        experience_id=record["id"],
        changed_fields=sorted(changed),
        embedding_cleared=cleared,
    )
    return record, cleared


# ── Batch backfill ─────────────────────────────────────────────────────────


def batch_ensure_embeddings(
    db: Session,
    provider: EmbeddingProvider,
    limit: Optional[int] = None,
    offset: int = 0,
    delay_seconds: Optional[float] = None,
    cancel_event: Optional[threading.Event] = None,
) -> BatchResult:
    """
    Generate embeddings for eligible records that lack one, newest first.

    Each item goes through ensure_embedding. A short sleep between items
    keeps the sweep under provider rate limits. Setting ``cancel_event``
    stops the sweep before the next item; the current item always finishes.

    Args:
        db: SQLAlchemy session.
        provider: The configured EmbeddingProvider.
        limit: Max records to process. Defaults to EMBEDDING_BATCH_DEFAULT_LIMIT.
        offset: Number of backlog records to skip.
        delay_seconds: Pause between items. Defaults to EMBEDDING_BATCH_DELAY_SECONDS.
        cancel_event: Optional cooperative cancellation flag.

    Returns:
        BatchResult with counts and per-item errors.

    Raises:
        ValueError: If limit or offset is invalid.
    """
    start_time = time.time()
    if limit is None:
        limit = settings.EMBEDDING_BATCH_DEFAULT_LIMIT
    if delay_seconds is None:
        delay_seconds = settings.EMBEDDING_BATCH_DELAY_SECONDS

    experience_ids = dal.list_embedding_backlog(limit=limit, offset=offset, db=db)
    result = BatchResult()

    for index, experience_id in enumerate(experience_ids):
        if cancel_event is not None and cancel_event.is_set():
            result.cancelled = True
            break
        if index > 0 and delay_seconds > 0:
            time.sleep(delay_seconds)

        result.processed += 1
        try:
            ensure_embedding(experience_id, db, provider)
            result.succeeded += 1
        except SearchError as exc:
            result.failed += 1
            result.errors.append({"experience_id": experience_id, "error": str(exc)})
            logger.warning(
                "batch_item_failed",
                experience_id=experience_id,
                error_type=type(exc).__name__,
            )

    logger.info(
        "batch_ensure_embeddings_complete",
        candidates=len(experience_ids),
        processed=result.processed,
        succeeded=result.succeeded,
        failed=result.failed,
        cancelled=result.cancelled,
        elapsed_seconds=round(time.time() - start_time, 3),
    )
    return result
