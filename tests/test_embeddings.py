"""
Tests for the embedding provider module.

Tests:
    1. build_experience_embedding_text joins segments and skips blanks
    2. AvailabilityCache honours its TTL and invalidation
    3. OpenAIEmbeddingProvider availability, generation, and error mapping
    4. build_embedding_provider selects the configured backend
"""

from types import SimpleNamespace
from unittest.mock import MagicMock

import openai
import pytest


def _mock_embedding_response(vector):
    """Build a mock OpenAI embeddings.create() response for one vector."""
    return SimpleNamespace(data=[SimpleNamespace(embedding=vector, index=0)])


def _make_provider(client=None, **overrides):
    from experience_hub.search.embeddings import OpenAIEmbeddingProvider

    kwargs = {
        "api_key": "sk-test",
        "model": "text-embedding-3-small",
        "dimensions": 4,
        "availability_ttl": 60.0,
        "client": client or MagicMock(),
    }
    kwargs.update(overrides)
    return OpenAIEmbeddingProvider(**kwargs)


def _settings(**overrides):
    defaults = {
        "EMBEDDING_PROVIDER": "openai",
        "OPENAI_API_KEY": "sk-test",
        "OPENAI_BASE_URL": None,
        "CUSTOM_EMBEDDING_API_URL": None,
        "CUSTOM_EMBEDDING_API_KEY": None,
        "CUSTOM_EMBEDDING_MODEL": None,
        "EMBEDDING_MODEL": "text-embedding-3-small",
        "EMBEDDING_DIMENSIONS": 1536,
        "EMBEDDING_TIMEOUT_SECONDS": 30.0,
        "EMBEDDING_AVAILABILITY_PROBE": False,
        "EMBEDDING_AVAILABILITY_TTL_SECONDS": 5.0,
    }
    defaults.update(overrides)
    return SimpleNamespace(**defaults)


# ── Test 1: build_experience_embedding_text ──────────────────────────────────


class TestBuildExperienceEmbeddingText:
    def test_joins_all_segments_in_order(self):
        from experience_hub.search.embeddings import build_experience_embedding_text

        record = {
            "title": "CORS error",
            "problem_description": "Preflight fails",
            "root_cause": "Missing header",
            "solution": "Add Access-Control-Allow-Origin",
            "context": "Next.js 14",
        }
        text = build_experience_embedding_text(record)

        assert text == (
            "CORS error\n\nPreflight fails\n\nMissing header\n\n"
            "Add Access-Control-Allow-Origin\n\nNext.js 14"
        )

    def test_skips_missing_and_blank_segments(self):
        from experience_hub.search.embeddings import build_experience_embedding_text

        record = SimpleNamespace(
            title="Disk full",
            problem_description="   ",
            root_cause=None,
            solution="Rotate logs",
            context="",
        )
        assert build_experience_embedding_text(record) == "Disk full\n\nRotate logs"

    def test_empty_record_gives_empty_string(self):
        from experience_hub.search.embeddings import build_experience_embedding_text

        assert build_experience_embedding_text({}) == ""


# ── Test 2: AvailabilityCache ────────────────────────────────────────────────


class TestAvailabilityCache:
    def test_value_expires_after_ttl(self):
        from experience_hub.search.embeddings import AvailabilityCache

        now = [100.0]
        cache = AvailabilityCache(5.0, clock=lambda: now[0])
        assert cache.get() is None

        cache.set(True)
        now[0] = 104.9
        assert cache.get() is True

        now[0] = 105.0
        assert cache.get() is None

    def test_invalidate_drops_value(self):
        from experience_hub.search.embeddings import AvailabilityCache

        cache = AvailabilityCache(60.0)
        cache.set(False)
        assert cache.get() is False

        cache.invalidate()
        assert cache.get() is None


# ── Test 3: OpenAIEmbeddingProvider ──────────────────────────────────────────


class TestOpenAIProviderAvailability:
    def test_available_when_configured(self):
        provider = _make_provider()
        assert provider.is_available() is True

    def test_unavailable_without_api_key(self):
        provider = _make_provider(api_key=None)
        assert provider.is_available() is False

    def test_custom_requires_base_url(self):
        provider = _make_provider(require_base_url=True, base_url=None)
        assert provider.is_available() is False

    def test_probe_failure_returns_false_instead_of_raising(self):
        client = MagicMock()
        client.models.retrieve.side_effect = RuntimeError("connection refused")
        provider = _make_provider(client=client, probe=True)

        assert provider.is_available() is False

    def test_result_is_cached_within_ttl(self):
        client = MagicMock()
        provider = _make_provider(client=client, probe=True)

        assert provider.is_available() is True
        assert provider.is_available() is True
        assert client.models.retrieve.call_count == 1

        provider.invalidate_availability()
        provider.is_available()
        assert client.models.retrieve.call_count == 2


class TestOpenAIProviderGenerate:
    def test_returns_vector_of_configured_dimensions(self):
        client = MagicMock()
        client.embeddings.create.return_value = _mock_embedding_response([0.1, 0.2, 0.3, 0.4])
        provider = _make_provider(client=client)

        vector = provider.generate_embedding("  cors error  ")

        assert vector == [0.1, 0.2, 0.3, 0.4]
        kwargs = client.embeddings.create.call_args.kwargs
        assert kwargs["input"] == "cors error"
        assert kwargs["model"] == "text-embedding-3-small"

    def test_blank_text_raises_empty_input(self):
        from experience_hub.search.exceptions import EmbeddingEmptyInput

        client = MagicMock()
        provider = _make_provider(client=client)

        with pytest.raises(EmbeddingEmptyInput):
            provider.generate_embedding("   ")
        client.embeddings.create.assert_not_called()

    def test_unconfigured_raises_unavailable(self):
        from experience_hub.search.exceptions import EmbeddingUnavailable

        provider = _make_provider(api_key="")
        with pytest.raises(EmbeddingUnavailable):
            provider.generate_embedding("text")

    def test_api_error_raises_request_failed_with_cause(self):
        from experience_hub.search.exceptions import EmbeddingRequestFailed

        client = MagicMock()
        original = openai.OpenAIError("rate limited")
        client.embeddings.create.side_effect = original
        provider = _make_provider(client=client)

        with pytest.raises(EmbeddingRequestFailed) as exc_info:
            provider.generate_embedding("text")
        assert exc_info.value.cause is original

    def test_wrong_length_raises_dimension_mismatch(self):
        from experience_hub.search.exceptions import DimensionMismatch

        client = MagicMock()
        client.embeddings.create.return_value = _mock_embedding_response([0.1, 0.2])
        provider = _make_provider(client=client)

        with pytest.raises(DimensionMismatch) as exc_info:
            provider.generate_embedding("text")
        assert exc_info.value.expected == 4
        assert exc_info.value.actual == 2

    @pytest.mark.parametrize(
        "response",
        [
            _mock_embedding_response([None, 0.0, 0.0, 0.0]),
            _mock_embedding_response(["abc", 0.0, 0.0, 0.0]),
            _mock_embedding_response(None),
            SimpleNamespace(data=[]),
        ],
    )
    def test_malformed_response_raises_request_failed(self, response):
        from experience_hub.search.exceptions import EmbeddingRequestFailed

        client = MagicMock()
        client.embeddings.create.return_value = response
        provider = _make_provider(client=client)

        with pytest.raises(EmbeddingRequestFailed) as exc_info:
            provider.generate_embedding("text")
        assert isinstance(exc_info.value.cause, (TypeError, ValueError, IndexError))


class TestUnsupportedProvider:
    def test_never_available_and_raises(self):
        from experience_hub.search.embeddings import UnsupportedEmbeddingProvider
        from experience_hub.search.exceptions import EmbeddingUnavailable

        provider = UnsupportedEmbeddingProvider("anthropic", 1536, "no embeddings API")

        assert provider.is_available() is False
        with pytest.raises(EmbeddingUnavailable):
            provider.generate_embedding("text")


# ── Test 4: build_embedding_provider ─────────────────────────────────────────


class TestBuildEmbeddingProvider:
    def test_openai(self):
        from experience_hub.search.embeddings import (
            OpenAIEmbeddingProvider,
            build_embedding_provider,
        )

        provider = build_embedding_provider(_settings())

        assert isinstance(provider, OpenAIEmbeddingProvider)
        assert provider.name == "openai"
        assert provider.dimensions == 1536

    def test_custom_strips_embeddings_suffix(self):
        from experience_hub.search.embeddings import build_embedding_provider

        provider = build_embedding_provider(_settings(
            EMBEDDING_PROVIDER="custom",
            CUSTOM_EMBEDDING_API_URL="https://llm.internal/v1/embeddings/",
            CUSTOM_EMBEDDING_API_KEY="key",
            CUSTOM_EMBEDDING_MODEL="bge-m3",
        ))

        assert provider.name == "custom"
        assert provider.model == "bge-m3"
        assert provider._base_url == "https://llm.internal/v1"
        assert provider.is_available() is True

    def test_anthropic_is_unsupported(self):
        from experience_hub.search.embeddings import (
            UnsupportedEmbeddingProvider,
            build_embedding_provider,
        )

        provider = build_embedding_provider(_settings(EMBEDDING_PROVIDER="Anthropic"))

        assert isinstance(provider, UnsupportedEmbeddingProvider)
        assert provider.is_available() is False

    def test_unknown_provider_raises_value_error(self):
        from experience_hub.search.embeddings import build_embedding_provider

        with pytest.raises(ValueError):
            build_embedding_provider(_settings(EMBEDDING_PROVIDER="cohere"))
