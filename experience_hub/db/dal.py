"""
Experience Hub Data Access Layer (DAL)

The single module where all experience_records queries live.  The search
package never builds SQL itself — everything goes through here.

Every public function:
    - Accepts a SQLAlchemy ``Session`` as the keyword argument ``db``.
    - Logs the function name and wall-clock execution time (ms) via structlog.
    - Returns plain Python dicts (never SQLAlchemy model instances).
    - Raises ``ValueError`` for invalid inputs and ``ExperienceNotFoundError``
      for unknown ids.
    - Raises ``RuntimeError`` for unexpected database errors.

Embedding columns are only written through ``write_embedding`` and
``clear_embedding_fields``, which always set ``embedding`` and
``has_embedding`` together.
"""

from __future__ import annotations

import time
import uuid
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Sequence

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from experience_hub.db.models import (
    EMBEDDED_CONTENT_FIELDS,
    PUBLISH_STATUS_DRAFT,
    PUBLISH_STATUS_PUBLISHED,
    PUBLISH_STATUSES,
    ExperienceRecord,
)
from experience_hub.search.exceptions import ExperienceNotFoundError, SearchError

logger = structlog.get_logger(__name__)

_EDITABLE_FIELDS = frozenset(EMBEDDED_CONTENT_FIELDS) | {"keywords"}
_REQUIRED_TEXT_FIELDS = ("title", "problem_description", "solution")


# ── Helpers ────────────────────────────────────────────────────────────────

def _experience_to_dict(row: ExperienceRecord, include_embedding: bool = False) -> dict[str, Any]:
    """Convert an ExperienceRecord ORM instance to a plain dict."""
    data = {
        "id": str(row.id),
        "title": row.title,
        "problem_description": row.problem_description,
        "root_cause": row.root_cause,
        "solution": row.solution,
        "context": row.context,
        "keywords": list(row.keywords or []),
        "has_embedding": bool(row.has_embedding),
        "publish_status": row.publish_status,
        "is_deleted": bool(row.is_deleted),
        "query_count": row.query_count or 0,
        "view_count": row.view_count or 0,
        "created_at": row.created_at,
        "updated_at": row.updated_at,
        "deleted_at": row.deleted_at,
    }
    if include_embedding:
        data["embedding"] = (
            [float(v) for v in row.embedding] if row.embedding is not None else None
        )
    return data


def _coerce_id(experience_id: Any) -> uuid.UUID:
    """Parse an experience id, raising ValueError for malformed input."""
    if isinstance(experience_id, uuid.UUID):
        return experience_id
    try:
        return uuid.UUID(str(experience_id))
    except (TypeError, ValueError):
        raise ValueError(f"Invalid experience id: {experience_id!r}")


def normalize_keywords(keywords: Optional[Iterable[str]]) -> list[str]:
    """Lower-case and trim keywords, dropping blanks and repeats (first one wins)."""
    normalized: list[str] = []
    for keyword in keywords or []:
        value = str(keyword).strip().lower()
        if value and value not in normalized:
            normalized.append(value)
    return normalized


def _load(experience_id: Any, db: Session) -> ExperienceRecord:
    row = db.execute(
        select(ExperienceRecord)
        .where(ExperienceRecord.id == _coerce_id(experience_id))
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if row is None:
        raise ExperienceNotFoundError(experience_id)
    return row


def _timed(fn_name: str, start: float) -> None:
    """Log elapsed time in milliseconds."""
    elapsed_ms = round((time.perf_counter() - start) * 1000, 2)
    logger.info("dal_query", function=fn_name, elapsed_ms=elapsed_ms)


# ── Record CRUD (collaborator surface) ─────────────────────────────────────


def create_experience(
    *,
    title: str,
    problem_description: str,
    solution: str,
    root_cause: Optional[str] = None,
    context: Optional[str] = None,
    keywords: Optional[Sequence[str]] = None,
    db: Session,
) -> dict[str, Any]:
    """
    Insert a new experience as a draft with no embedding.

    Embeddings are never generated on create; see search.indexer.
    """
    start = time.perf_counter()
    values = {
        "title": title,
        "problem_description": problem_description,
        "solution": solution,
    }
    for field in _REQUIRED_TEXT_FIELDS:
        if not (values[field] or "").strip():
            raise ValueError(f"{field} must not be empty")

    try:
        row = ExperienceRecord(
            title=title.strip(),
            problem_description=problem_description,
            solution=solution,
            root_cause=root_cause,
            context=context,
            keywords=normalize_keywords(keywords),
            publish_status=PUBLISH_STATUS_DRAFT,
            is_deleted=False,
            has_embedding=False,
            embedding=None,
            query_count=0,
            view_count=0,
        )
        db.add(row)
        db.commit()
        db.refresh(row)
        return _experience_to_dict(row)
    except Exception as exc:
        db.rollback()
        raise RuntimeError(f"create_experience failed: {exc}") from exc
    finally:
        _timed("create_experience", start)


def get_experience(
    experience_id: Any,
    *,
    db: Session,
    include_embedding: bool = False,
) -> dict[str, Any]:
    """
    Return one experience by id, whatever its publish / delete state.

    Raises ``ExperienceNotFoundError`` if the id does not exist.
    """
    start = time.perf_counter()
    try:
        return _experience_to_dict(_load(experience_id, db), include_embedding=include_embedding)
    except (ValueError, SearchError):
        raise
    except Exception as exc:
        raise RuntimeError(f"get_experience failed: {exc}") from exc
    finally:
        _timed("get_experience", start)


def update_experience(
    experience_id: Any,
    *,
    db: Session,
    **fields: Any,
) -> tuple[dict[str, Any], list[str]]:
    """
    Update content fields of an experience.

    Only content fields and ``keywords`` may be changed here.  Returns the
    updated record and the list of fields whose value actually changed, so
    the caller can hand them to ``indexer.handle_content_update``.
    """
    start = time.perf_counter()
    unknown = set(fields) - _EDITABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields cannot be updated: {sorted(unknown)}")
    for field in _REQUIRED_TEXT_FIELDS:
        if field in fields and not (fields[field] or "").strip():
            raise ValueError(f"{field} must not be empty")

    try:
        row = _load(experience_id, db)
        changed: list[str] = []
        for field, value in fields.items():
            if field == "keywords":
                value = normalize_keywords(value)
            if getattr(row, field) != value:
                setattr(row, field, value)
                changed.append(field)
        if changed:
            db.commit()
            db.refresh(row)
        return _experience_to_dict(row), changed
    except (ValueError, SearchError):
        raise
    except Exception as exc:
        db.rollback()
        raise RuntimeError(f"update_experience failed: {exc}") from exc
    finally:
        _timed("update_experience", start)


def set_publish_status(experience_id: Any, status: str, *, db: Session) -> dict[str, Any]:
    """Move an experience between ``draft`` and ``published``."""
    start = time.perf_counter()
    if status not in PUBLISH_STATUSES:
        raise ValueError(f"Invalid publish status: {status!r}")
    try:
        row = _load(experience_id, db)
        row.publish_status = status
        db.commit()
        db.refresh(row)
        return _experience_to_dict(row)
    except (ValueError, SearchError):
        raise
    except Exception as exc:
        db.rollback()
        raise RuntimeError(f"set_publish_status failed: {exc}") from exc
    finally:
        _timed("set_publish_status", start)


def soft_delete_experience(experience_id: Any, *, db: Session) -> dict[str, Any]:
    """
    Mark an experience deleted.  The embedding is left intact so a restore
    brings the record straight back into vector ranking.
    """
    start = time.perf_counter()
    try:
        row = _load(experience_id, db)
        if not row.is_deleted:
            row.is_deleted = True
            row.deleted_at = datetime.now(timezone.utc)
            db.commit()
            db.refresh(row)
        return _experience_to_dict(row)
    except (ValueError, SearchError):
        raise
    except Exception as exc:
        db.rollback()
        raise RuntimeError(f"soft_delete_experience failed: {exc}") from exc
    finally:
        _timed("soft_delete_experience", start)


def restore_experience(experience_id: Any, *, db: Session) -> dict[str, Any]:
    """Undo a soft delete."""
    start = time.perf_counter()
    try:
        row = _load(experience_id, db)
        if row.is_deleted:
            row.is_deleted = False
            row.deleted_at = None
            db.commit()
            db.refresh(row)
        return _experience_to_dict(row)
    except (ValueError, SearchError):
        raise
    except Exception as exc:
        db.rollback()
        raise RuntimeError(f"restore_experience failed: {exc}") from exc
    finally:
        _timed("restore_experience", start)


# ── Retrieval reads ────────────────────────────────────────────────────────


def fetch_eligible_candidates(
    *,
    db: Session,
    ids: Optional[Sequence[Any]] = None,
) -> list[dict[str, Any]]:
    """
    Return every published, non-deleted experience including its embedding.

    The corpus is small enough for an exact scan, so no ANN index is used.
    When ``ids`` is given, only those experiences are considered; unknown
    or ineligible ids are silently left out.

    Raises:
        ValueError: If any of ``ids`` is not a valid experience id.
    """
    start = time.perf_counter()
    id_filter = [_coerce_id(i) for i in ids] if ids is not None else None
    try:
        stmt = (
            select(ExperienceRecord)
            .where(ExperienceRecord.publish_status == PUBLISH_STATUS_PUBLISHED)
            .where(ExperienceRecord.is_deleted == False)  # noqa: E712
            .order_by(ExperienceRecord.created_at.desc(), ExperienceRecord.id.asc())
            .execution_options(populate_existing=True)
        )
        if id_filter is not None:
            stmt = stmt.where(ExperienceRecord.id.in_(id_filter))
        rows = db.execute(stmt).scalars().all()
        return [_experience_to_dict(r, include_embedding=True) for r in rows]
    except Exception as exc:
        raise RuntimeError(f"fetch_eligible_candidates failed: {exc}") from exc
    finally:
        _timed("fetch_eligible_candidates", start)


def list_embedding_backlog(*, limit: int, offset: int = 0, db: Session) -> list[str]:
    """
    Return ids of eligible experiences that have no embedding, newest first.
    """
    start = time.perf_counter()
    if limit < 1:
        raise ValueError(f"limit must be positive, got {limit}")
    if offset < 0:
        raise ValueError(f"offset must be non-negative, got {offset}")
    try:
        stmt = (
            select(ExperienceRecord.id)
            .where(ExperienceRecord.publish_status == PUBLISH_STATUS_PUBLISHED)
            .where(ExperienceRecord.is_deleted == False)  # noqa: E712
            .where(ExperienceRecord.has_embedding == False)  # noqa: E712
            .order_by(ExperienceRecord.created_at.desc(), ExperienceRecord.id.asc())
            .limit(limit)
            .offset(offset)
        )
        return [str(experience_id) for experience_id in db.execute(stmt).scalars().all()]
    except Exception as exc:
        raise RuntimeError(f"list_embedding_backlog failed: {exc}") from exc
    finally:
        _timed("list_embedding_backlog", start)


# ── Embedding writes ───────────────────────────────────────────────────────


def write_embedding(
    experience_id: Any,
    embedding: Sequence[float],
    *,
    expected_has_embedding: bool = False,
    db: Session,
) -> bool:
    """
    Conditionally store an embedding.

    The UPDATE only matches when ``has_embedding`` still equals
    *expected_has_embedding*, so of two concurrent writers exactly one wins.
    Returns ``True`` if this call wrote the row.
    """
    start = time.perf_counter()
    if embedding is None or len(embedding) == 0:
        raise ValueError("embedding must be a non-empty vector")
    eid = _coerce_id(experience_id)
    try:
        stmt = (
            update(ExperienceRecord)
            .where(ExperienceRecord.id == eid)
            .where(ExperienceRecord.has_embedding == expected_has_embedding)
            .values(
                embedding=[float(v) for v in embedding],
                has_embedding=True,
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        result = db.execute(stmt)
        db.commit()
        db.expire_all()
        return result.rowcount == 1
    except Exception as exc:
        db.rollback()
        raise RuntimeError(f"write_embedding failed: {exc}") from exc
    finally:
        _timed("write_embedding", start)


def clear_embedding_fields(experience_id: Any, *, db: Session) -> bool:
    """
    Null the embedding and reset ``has_embedding``.

    Returns ``True`` if a stored embedding was removed, ``False`` if the
    record had none.  Raises ``ExperienceNotFoundError`` for unknown ids.
    """
    start = time.perf_counter()
    eid = _coerce_id(experience_id)
    try:
        stmt = (
            update(ExperienceRecord)
            .where(ExperienceRecord.id == eid)
            .where(ExperienceRecord.has_embedding == True)  # noqa: E712
            .values(embedding=None, has_embedding=False, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        result = db.execute(stmt)
        db.commit()
        db.expire_all()
        if result.rowcount == 1:
            return True
        # Nothing cleared: distinguish "already clear" from "no such record".
        _load(eid, db)
        return False
    except (ValueError, SearchError):
        raise
    except Exception as exc:
        db.rollback()
        raise RuntimeError(f"clear_embedding_fields failed: {exc}") from exc
    finally:
        _timed("clear_embedding_fields", start)


# ── Popularity counters ────────────────────────────────────────────────────


def increment_query_count(experience_ids: Sequence[Any], *, db: Session) -> int:
    """Add one to ``query_count`` for each given experience.  Returns rows updated."""
    start = time.perf_counter()
    ids = [_coerce_id(experience_id) for experience_id in experience_ids]
    if not ids:
        return 0
    try:
        stmt = (
            update(ExperienceRecord)
            .where(ExperienceRecord.id.in_(ids))
            .values(query_count=ExperienceRecord.query_count + 1)
            .execution_options(synchronize_session=False)
        )
        result = db.execute(stmt)
        db.commit()
        db.expire_all()
        return result.rowcount
    except Exception as exc:
        db.rollback()
        raise RuntimeError(f"increment_query_count failed: {exc}") from exc
    finally:
        _timed("increment_query_count", start)


def increment_view_count(experience_id: Any, *, db: Session) -> int:
    """Add one to ``view_count`` and return the new value."""
    start = time.perf_counter()
    try:
        row = _load(experience_id, db)
        row.view_count = (row.view_count or 0) + 1
        db.commit()
        return row.view_count
    except (ValueError, SearchError):
        raise
    except Exception as exc:
        db.rollback()
        raise RuntimeError(f"increment_view_count failed: {exc}") from exc
    finally:
        _timed("increment_view_count", start)
