"""
Shared pytest fixtures.

Provides:
- SQLite in-memory database (adapted for non-PostgreSQL types)
- FakeEmbeddingProvider with controllable availability and vectors
- make_experience factory for seeding records with explicit timestamps
- FastAPI TestClient with DB and provider overrides
"""

from datetime import datetime, timedelta
from types import SimpleNamespace
from typing import Callable, Generator, Optional
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from pgvector.sqlalchemy import Vector
from sqlalchemy import create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from experience_hub.db.models import Base, ExperienceRecord
from experience_hub.search.embeddings import EmbeddingProvider, OpenAIEmbeddingProvider
from experience_hub.search.exceptions import EmbeddingEmptyInput

# ---------------------------------------------------------------------------
# SQLite type-compilation workarounds for Postgres-specific column types.
# We compile JSONB → JSON and vector → TEXT so that create_all() works.
# pgvector's bind/result processors still round-trip the "[1,2,3]" text form.
# ---------------------------------------------------------------------------


@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(element, compiler, **kw):
    return "JSON"


@compiles(Vector, "sqlite")
def _compile_vector_sqlite(element, compiler, **kw):
    return "TEXT"


TEST_DIMENSIONS = 4
BASE_TIME = datetime(2026, 1, 1, 12, 0, 0)


# =============================================================================
# Fake embedding provider
# =============================================================================
class FakeEmbeddingProvider(EmbeddingProvider):
    """
    In-memory provider.

    ``vectors`` maps exact input text to a vector; anything else gets
    ``default_vector``. Set ``available`` or ``error`` to simulate outages.
    """

    name = "fake"

    def __init__(
        self,
        dimensions: int = TEST_DIMENSIONS,
        available: bool = True,
        vectors: Optional[dict] = None,
        default_vector: Optional[list] = None,
        error: Optional[Exception] = None,
    ) -> None:
        super().__init__(dimensions=dimensions, availability_ttl=0.0)
        self.available = available
        self.vectors = dict(vectors or {})
        self.default_vector = default_vector or [1.0] + [0.0] * (dimensions - 1)
        self.error = error
        self.side_effect: Optional[Callable[[str], None]] = None
        self.calls: list[str] = []

    def _check_available(self) -> bool:
        return self.available

    def generate_embedding(self, text: str) -> list[float]:
        if not (text or "").strip():
            raise EmbeddingEmptyInput("Cannot embed empty text")
        self.calls.append(text)
        if self.side_effect is not None:
            self.side_effect(text)
        if self.error is not None:
            raise self.error
        return list(self.vectors.get(text, self.default_vector))


# =============================================================================
# SQLite in-memory engine & session
# =============================================================================
TEST_DATABASE_URL = "sqlite:///:memory:"


@pytest.fixture(scope="session")
def test_engine():
    """Create a single in-memory SQLite engine for the session."""
    return create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


@pytest.fixture(scope="session")
def create_tables(test_engine):
    """Create all tables once per test session."""
    Base.metadata.create_all(bind=test_engine)
    yield
    Base.metadata.drop_all(bind=test_engine)


@pytest.fixture()
def db_session(test_engine, create_tables) -> Generator[Session, None, None]:
    """Provide a transactional DB session that rolls back after each test."""
    connection = test_engine.connect()
    transaction = connection.begin()
    session = Session(bind=connection)

    yield session

    session.close()
    transaction.rollback()
    connection.close()


@pytest.fixture()
def provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture()
def garbled_openai_provider() -> OpenAIEmbeddingProvider:
    """Real OpenAI provider whose mocked client returns a non-numeric vector."""
    client = MagicMock()
    client.embeddings.create.return_value = SimpleNamespace(
        data=[SimpleNamespace(embedding=[None, 0.0, 0.0, 0.0], index=0)]
    )
    return OpenAIEmbeddingProvider(
        api_key="sk-test",
        model="text-embedding-3-small",
        dimensions=TEST_DIMENSIONS,
        availability_ttl=0.0,
        client=client,
    )


@pytest.fixture()
def make_experience(db_session):
    """
    Factory that inserts an ExperienceRecord and returns its id as a string.

    ``age_minutes`` controls created_at relative to BASE_TIME (larger = older).
    """

    def _make(
        title: str = "Connection pool exhausted under load",
        problem_description: str = "Requests time out once traffic spikes.",
        solution: str = "Raise the pool size and close sessions after each request.",
        root_cause: Optional[str] = None,
        context: Optional[str] = None,
        keywords: Optional[list] = None,
        embedding: Optional[list] = None,
        publish_status: str = "published",
        is_deleted: bool = False,
        query_count: int = 0,
        age_minutes: int = 0,
    ) -> str:
        record = ExperienceRecord(
            title=title,
            problem_description=problem_description,
            solution=solution,
            root_cause=root_cause,
            context=context,
            keywords=list(keywords or []),
            embedding=embedding,
            has_embedding=embedding is not None,
            publish_status=publish_status,
            is_deleted=is_deleted,
            query_count=query_count,
            view_count=0,
            created_at=BASE_TIME - timedelta(minutes=age_minutes),
            updated_at=BASE_TIME - timedelta(minutes=age_minutes),
        )
        db_session.add(record)
        db_session.commit()
        return str(record.id)

    return _make


# =============================================================================
# FastAPI TestClient with DB & provider overrides
# =============================================================================
@pytest.fixture()
def client(db_session, provider) -> Generator[TestClient, None, None]:
    """
    FastAPI TestClient that overrides get_db with the test SQLite session
    and get_embedding_provider with the fake provider.
    """
    from experience_hub.db.session import get_db
    from experience_hub.main import app
    from experience_hub.search.embeddings import get_embedding_provider

    def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_embedding_provider] = lambda: provider

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()
