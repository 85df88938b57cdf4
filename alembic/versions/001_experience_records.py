"""
001 - Experience Records

Creates the experience_records table used by hybrid retrieval.

New tables:
    - experience_records — one row per troubleshooting experience

Constraints:
    - ck_experience_records_publish_status  — draft | published
    - ck_experience_records_embedding_state — has_embedding iff embedding IS NOT NULL

IMPORTANT: the embedding column is added via op.execute() with raw SQL
because Alembic has no native pgvector column type. No ANN index is
created; retrieval does an exact scan.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# Revision identifiers
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create pgvector extension and the experience_records table."""

    # =========================================================================
    # Step 1: Enable pgvector extension
    # =========================================================================
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    # =========================================================================
    # Step 2: Create experience_records table
    # =========================================================================
    op.create_table(
        "experience_records",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("problem_description", sa.Text(), nullable=False),
        sa.Column("root_cause", sa.Text(), nullable=True),
        sa.Column("solution", sa.Text(), nullable=False),
        sa.Column("context", sa.Text(), nullable=True),
        sa.Column(
            "keywords",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        # embedding column added below via raw SQL (vector type)
        sa.Column("has_embedding", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("publish_status", sa.String(20), nullable=False, server_default=sa.text("'draft'")),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("query_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("view_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "publish_status IN ('draft', 'published')",
            name="ck_experience_records_publish_status",
        ),
    )

    # Add the vector column (no fixed dimension; the lifecycle validates size)
    op.execute("ALTER TABLE experience_records ADD COLUMN embedding vector")

    op.execute(
        """
        ALTER TABLE experience_records
        ADD CONSTRAINT ck_experience_records_embedding_state
        CHECK (
            (has_embedding AND embedding IS NOT NULL)
            OR (NOT has_embedding AND embedding IS NULL)
        )
        """
    )

    # =========================================================================
    # Step 3: Indexes
    # =========================================================================
    op.create_index(
        "ix_experience_records_eligible",
        "experience_records",
        ["publish_status", "is_deleted"],
    )
    op.create_index(
        "ix_experience_records_created_at",
        "experience_records",
        ["created_at"],
    )


def downgrade() -> None:
    """Drop experience_records. The vector extension is left installed."""
    op.drop_index("ix_experience_records_created_at", table_name="experience_records")
    op.drop_index("ix_experience_records_eligible", table_name="experience_records")
    op.drop_table("experience_records")
