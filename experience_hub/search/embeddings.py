"""
Experience Hub Embedding Generation

Centralized module for all embedding API calls and embedding text
construction. This is the ONLY module in the codebase that talks to an
embedding backend.

Classes:
    AvailabilityCache               — Short-lived, thread-safe readiness cache
    EmbeddingProvider               — Capability interface {is_available, generate_embedding}
    OpenAIEmbeddingProvider         — OpenAI or any OpenAI-compatible endpoint
    UnsupportedEmbeddingProvider    — Backend without an embeddings API (never available)

Functions:
    build_experience_embedding_text — Canonical text for an experience record
    build_embedding_provider        — Resolve the configured provider once
    get_embedding_provider          — Process-wide provider built from settings

Rules:
    - Never log embedding vectors — only metadata
    - No DB access in this module — callers resolve records before calling
    - Raise errors immediately — retry policy lives in the lifecycle / Celery task
"""

import threading
import time
from collections.abc import Mapping
from functools import lru_cache
from typing import Any, Callable, Optional

import openai
import structlog

from experience_hub.config import Settings, settings as default_settings
from experience_hub.db.models import EMBEDDED_CONTENT_FIELDS
from experience_hub.search.exceptions import (
    DimensionMismatch,
    EmbeddingEmptyInput,
    EmbeddingRequestFailed,
    EmbeddingUnavailable,
)

logger = structlog.get_logger(__name__)

_SEGMENT_SEPARATOR = "\n\n"


def _field(record: Any, name: str) -> Optional[str]:
    if isinstance(record, Mapping):
        return record.get(name)
    return getattr(record, name, None)


def build_experience_embedding_text(record: Any) -> str:
    """
    Build the text string to embed for an experience.

    Joins title, problem description, root cause, solution and context with
    blank lines. Missing or blank segments are left out entirely.

    Args:
        record: An ExperienceRecord ORM object or a DAL dict.

    Returns:
        A single string ready for embedding (empty if the record has no content).
    """
    segments = []
    for name in EMBEDDED_CONTENT_FIELDS:
        value = _field(record, name)
        if value and str(value).strip():
            segments.append(str(value).strip())
    return _SEGMENT_SEPARATOR.join(segments)


# ── Availability cache ─────────────────────────────────────────────────────


class AvailabilityCache:
    """
    Holds the last readiness result for at most ``ttl_seconds``.

    Owned by a single provider instance. Reads and writes take the lock;
    writing the same value twice is harmless.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = max(0.0, float(ttl_seconds))
        self._clock = clock
        self._lock = threading.Lock()
        self._value: Optional[bool] = None
        self._expires_at = 0.0

    def get(self) -> Optional[bool]:
        """Return the cached value, or None if absent or expired."""
        with self._lock:
            if self._value is None or self._clock() >= self._expires_at:
                return None
            return self._value

    def set(self, value: bool) -> None:
        with self._lock:
            self._value = bool(value)
            self._expires_at = self._clock() + self._ttl

    def invalidate(self) -> None:
        with self._lock:
            self._value = None
            self._expires_at = 0.0


# ── Providers ──────────────────────────────────────────────────────────────


class EmbeddingProvider:
    """
    Capability interface for embedding backends.

    Subclasses implement ``_check_available`` and ``generate_embedding``;
    ``is_available`` wraps the check with the availability cache and
    guarantees it never raises.
    """

    name = "base"

    def __init__(self, dimensions: int, availability_ttl: float = 5.0) -> None:
        if dimensions < 1:
            raise ValueError(f"dimensions must be positive, got {dimensions}")
        self._dimensions = dimensions
        self._availability = AvailabilityCache(availability_ttl)

    @property
    def dimensions(self) -> int:
        """Fixed vector length produced by this provider."""
        return self._dimensions

    def is_available(self) -> bool:
        """
        Cheap readiness check. Returns False on any failure instead of raising.
        """
        cached = self._availability.get()
        if cached is not None:
            return cached

        try:
            available = bool(self._check_available())
        except Exception as exc:
            logger.warning(
                "embedding_availability_check_failed",
                provider=self.name,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            available = False

        self._availability.set(available)
        return available

    def invalidate_availability(self) -> None:
        """Forget the cached readiness result (e.g. after a settings change)."""
        self._availability.invalidate()

    def _check_available(self) -> bool:
        raise NotImplementedError

    def generate_embedding(self, text: str) -> list[float]:
        raise NotImplementedError

    def _validate_vector(self, vector: Any) -> list[float]:
        values = [float(v) for v in vector]
        if len(values) != self._dimensions:
            raise DimensionMismatch(self._dimensions, len(values))
        return values


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """
    Embedding provider backed by the OpenAI SDK.

    Also serves OpenAI-compatible endpoints ("custom" provider) by passing
    ``base_url`` and ``require_base_url=True``.
    """

    def __init__(
        self,
        api_key: Optional[str],
        model: Optional[str],
        dimensions: int,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        probe: bool = False,
        availability_ttl: float = 5.0,
        require_base_url: bool = False,
        name: str = "openai",
        client: Any = None,
    ) -> None:
        super().__init__(dimensions=dimensions, availability_ttl=availability_ttl)
        self.name = name
        self._api_key = api_key
        self._model = model
        self._base_url = base_url
        self._timeout = timeout
        self._probe = probe
        self._require_base_url = require_base_url
        self._client = client
        self._client_lock = threading.Lock()

    @property
    def model(self) -> Optional[str]:
        return self._model

    def _is_configured(self) -> bool:
        if not (self._api_key and self._model):
            return False
        if self._require_base_url and not self._base_url:
            return False
        return True

    def _get_client(self):
        with self._client_lock:
            if self._client is None:
                self._client = openai.OpenAI(
                    api_key=self._api_key,
                    base_url=self._base_url,
                    timeout=self._timeout,
                )
            return self._client

    def _check_available(self) -> bool:
        if not self._is_configured():
            return False
        if self._probe:
            self._get_client().models.retrieve(self._model)
        return True

    def generate_embedding(self, text: str) -> list[float]:
        """
        Embed one text string.

        Raises:
            EmbeddingEmptyInput: text is empty after trimming.
            EmbeddingUnavailable: provider is not configured.
            EmbeddingRequestFailed: the API call failed or returned a malformed
                vector (cause attached).
            DimensionMismatch: the backend returned a vector of the wrong size.
        """
        cleaned = (text or "").strip()
        if not cleaned:
            raise EmbeddingEmptyInput("Cannot embed empty text")
        if not self._is_configured():
            raise EmbeddingUnavailable(
                f"Embedding provider '{self.name}' is not configured"
            )

        start_time = time.time()
        try:
            response = self._get_client().embeddings.create(
                input=cleaned,
                model=self._model,
            )
            vector = response.data[0].embedding
            values = self._validate_vector(vector)
        except openai.OpenAIError as exc:
            logger.error(
                "embedding_request_failed",
                provider=self.name,
                model=self._model,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise EmbeddingRequestFailed(
                f"Embedding request to '{self.name}' failed: {exc}", cause=exc
            ) from exc
        except (AttributeError, IndexError, TypeError, ValueError) as exc:
            logger.error(
                "embedding_response_malformed",
                provider=self.name,
                model=self._model,
                error_type=type(exc).__name__,
            )
            raise EmbeddingRequestFailed(
                "Unexpected embedding response format", cause=exc
            ) from exc

        # Log metadata only, never the vector
        logger.info(
            "embedding_generated",
            provider=self.name,
            model=self._model,
            text_length=len(cleaned),
            dimensions=len(values),
            elapsed_seconds=round(time.time() - start_time, 3),
        )
        return values


class UnsupportedEmbeddingProvider(EmbeddingProvider):
    """Backend that offers no embeddings API. Never available."""

    def __init__(self, name: str, dimensions: int, reason: str) -> None:
        super().__init__(dimensions=dimensions, availability_ttl=0.0)
        self.name = name
        self._reason = reason

    def _check_available(self) -> bool:
        return False

    def generate_embedding(self, text: str) -> list[float]:
        if not (text or "").strip():
            raise EmbeddingEmptyInput("Cannot embed empty text")
        raise EmbeddingUnavailable(self._reason)


def _strip_embeddings_suffix(url: Optional[str]) -> Optional[str]:
    """Accept both '.../v1' and '.../v1/embeddings' as base URLs."""
    if not url:
        return url
    url = url.rstrip("/")
    if url.endswith("/embeddings"):
        url = url[: -len("/embeddings")]
    return url


def build_embedding_provider(config: Optional[Settings] = None) -> EmbeddingProvider:
    """
    Build the embedding provider selected by ``EMBEDDING_PROVIDER``.

    Selection happens once here; the rest of the code only sees the
    EmbeddingProvider interface.

    Raises:
        ValueError: If the provider name is not recognised.
    """
    config = config or default_settings
    kind = (config.EMBEDDING_PROVIDER or "openai").strip().lower()

    if kind == "openai":
        provider: EmbeddingProvider = OpenAIEmbeddingProvider(
            api_key=config.OPENAI_API_KEY,
            model=config.EMBEDDING_MODEL,
            dimensions=config.EMBEDDING_DIMENSIONS,
            base_url=_strip_embeddings_suffix(config.OPENAI_BASE_URL),
            timeout=config.EMBEDDING_TIMEOUT_SECONDS,
            probe=config.EMBEDDING_AVAILABILITY_PROBE,
            availability_ttl=config.EMBEDDING_AVAILABILITY_TTL_SECONDS,
        )
    elif kind == "custom":
        provider = OpenAIEmbeddingProvider(
            api_key=config.CUSTOM_EMBEDDING_API_KEY,
            model=config.CUSTOM_EMBEDDING_MODEL,
            dimensions=config.EMBEDDING_DIMENSIONS,
            base_url=_strip_embeddings_suffix(config.CUSTOM_EMBEDDING_API_URL),
            timeout=config.EMBEDDING_TIMEOUT_SECONDS,
            probe=config.EMBEDDING_AVAILABILITY_PROBE,
            availability_ttl=config.EMBEDDING_AVAILABILITY_TTL_SECONDS,
            require_base_url=True,
            name="custom",
        )
    elif kind == "anthropic":
        provider = UnsupportedEmbeddingProvider(
            name="anthropic",
            dimensions=config.EMBEDDING_DIMENSIONS,
            reason="Anthropic does not offer an embeddings API",
        )
    else:
        raise ValueError(f"Unknown EMBEDDING_PROVIDER: {config.EMBEDDING_PROVIDER!r}")

    logger.info(
        "embedding_provider_selected",
        provider=provider.name,
        dimensions=provider.dimensions,
    )
    return provider


@lru_cache
def get_embedding_provider() -> EmbeddingProvider:
    """Return the process-wide provider built from the global settings."""
    return build_embedding_provider()
