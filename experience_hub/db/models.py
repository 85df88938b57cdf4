"""
Experience Hub Database Models

SQLAlchemy 2.x ORM models for troubleshooting experience records.

Tables:
    1. experience_records - One row per problem / root cause / solution write-up

Constraints:
    - ck_experience_records_publish_status - draft | published
    - ck_experience_records_embedding_state - has_embedding agrees with embedding
"""

from datetime import datetime
from typing import Optional
import uuid

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func


PUBLISH_STATUS_DRAFT = "draft"
PUBLISH_STATUS_PUBLISHED = "published"
PUBLISH_STATUSES = (PUBLISH_STATUS_DRAFT, PUBLISH_STATUS_PUBLISHED)

# Fields that make up the canonical embedding text, in order.
EMBEDDED_CONTENT_FIELDS = (
    "title",
    "problem_description",
    "root_cause",
    "solution",
    "context",
)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


# =============================================================================
# Table 1: experience_records
# =============================================================================
class ExperienceRecord(Base):
    """
    One record per troubleshooting experience.

    Only the embedding lifecycle (search.indexer, through the DAL) writes
    ``embedding`` and ``has_embedding``; the two columns are always written
    together and the CHECK constraint rejects any row where they disagree.
    """
    __tablename__ = "experience_records"
    __table_args__ = (
        CheckConstraint(
            "publish_status IN ('draft', 'published')",
            name="ck_experience_records_publish_status",
        ),
        CheckConstraint(
            "(has_embedding AND embedding IS NOT NULL) "
            "OR (NOT has_embedding AND embedding IS NULL)",
            name="ck_experience_records_embedding_state",
        ),
        Index("ix_experience_records_eligible", "publish_status", "is_deleted"),
        Index("ix_experience_records_created_at", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    problem_description: Mapped[str] = mapped_column(Text, nullable=False)
    root_cause: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    solution: Mapped[str] = mapped_column(Text, nullable=False)
    context: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    keywords: Mapped[list] = mapped_column(JSONB, default=list, nullable=False)

    # Dimensionality is validated by the lifecycle before writing, so a model
    # change surfaces as DimensionMismatch instead of a failed insert.
    embedding = mapped_column(Vector(), nullable=True)
    has_embedding: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    publish_status: Mapped[str] = mapped_column(
        String(20), default=PUBLISH_STATUS_DRAFT, nullable=False
    )
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    query_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    view_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
