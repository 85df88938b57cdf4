"""
Custom exceptions for the hybrid retrieval engine.

Provider-level errors (EmbeddingUnavailable, EmbeddingRequestFailed) are
raised by embeddings.py. The lifecycle in indexer.py translates them into
EmbeddingServiceUnavailable / EmbeddingGenerationFailed so callers can tell
"the backend is down" from "this record could not be embedded".
"""

from __future__ import annotations


class SearchError(Exception):
    """Base exception for all retrieval engine errors."""

    pass


class EmbeddingError(SearchError):
    """Base exception for embedding generation errors."""

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        """Initialize with message and optional cause.

        Args:
            message: Human-readable error description
            cause: Original exception that caused this error
        """
        super().__init__(message)
        self.cause = cause


class EmbeddingUnavailable(EmbeddingError):
    """Raised when the embedding provider is not configured or not reachable."""

    pass


class EmbeddingRequestFailed(EmbeddingError):
    """Raised when the embedding backend returns an error or the transport fails."""

    pass


class EmbeddingEmptyInput(EmbeddingError):
    """Raised when there is no text to embed.

    Not retryable: the record content must be fixed first.
    """

    pass


class EmbeddingServiceUnavailable(EmbeddingError):
    """Raised by the lifecycle when the provider is not ready.

    The record is left unchanged and the operation can be retried later.
    """

    pass


class EmbeddingGenerationFailed(EmbeddingError):
    """Raised by the lifecycle when the provider call failed for a record.

    The record is left unchanged. Retryable; ``cause`` holds the provider error.
    """

    def __init__(
        self,
        message: str,
        experience_id: str | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message, cause=cause)
        self.experience_id = experience_id


class DimensionMismatch(SearchError):
    """Raised when two vectors (or a vector and the configured size) disagree in length."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"Vector dimension mismatch: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class ExperienceNotFoundError(SearchError, LookupError):
    """Raised when an experience record does not exist."""

    def __init__(self, experience_id) -> None:
        super().__init__(f"Experience not found: {experience_id}")
        self.experience_id = experience_id
