"""
Tests for Embedding Service Module

Cloud calls are mocked; tests marked slow load a real local model.
"""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from config.settings import EmbeddingConfig
from botforge.embeddings import (
    EmbeddingService,
    LocalEmbeddingProvider,
    OpenAIEmbeddingProvider,
    cosine_similarity,
)
from botforge.errors import ConfigurationError, EmbeddingError


def embeddings_response(vectors, shuffle=False):
    data = [SimpleNamespace(index=i, embedding=v) for i, v in enumerate(vectors)]
    if shuffle:
        data.reverse()
    return SimpleNamespace(data=data)


class TestCosineSimilarity:
    """Tests for cosine similarity function."""

    def test_identical_vectors(self):
        """Test similarity of identical vectors is 1."""
        assert cosine_similarity([1.0, 2.0, 3.0], [1.0, 2.0, 3.0]) == pytest.approx(1.0)

    def test_orthogonal_vectors(self):
        """Test similarity of orthogonal vectors is 0."""
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    def test_opposite_vectors(self):
        """Test similarity of opposite vectors is -1."""
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)

    def test_zero_norm(self):
        """Test that a zero vector scores 0 instead of dividing by zero."""
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0

    def test_empty(self):
        """Test that empty vectors score 0."""
        assert cosine_similarity([], [1.0]) == 0.0

    def test_length_mismatch_uses_prefix(self):
        """Test that only the overlapping prefix is compared."""
        assert cosine_similarity([1.0, 0.0, 5.0], [1.0, 0.0]) == pytest.approx(1.0)

    def test_bounded(self):
        """Test that self-similarity never exceeds 1."""
        vec = [0.1] * 1536
        assert cosine_similarity(vec, vec) <= 1.0


class TestOpenAIEmbeddingProvider:
    """Tests for the OpenAI provider with a mocked client."""

    @pytest.fixture
    def provider(self):
        provider = OpenAIEmbeddingProvider(api_key="sk-test", batch_size=2)
        provider._client = MagicMock()
        return provider

    def test_order_restored_by_index(self, provider):
        """Test that results are ordered by their index field."""
        provider._client.embeddings.create.return_value = embeddings_response(
            [[1.0], [2.0]], shuffle=True
        )

        assert provider.embed_batch(["a", "b"]) == [[1.0], [2.0]]

    def test_batching(self, provider):
        """Test that inputs are sent batch_size at a time."""
        provider._client.embeddings.create.side_effect = [
            embeddings_response([[1.0], [2.0]]),
            embeddings_response([[3.0], [4.0]]),
            embeddings_response([[5.0]]),
        ]

        result = provider.embed_batch(["a", "b", "c", "d", "e"])

        assert result == [[1.0], [2.0], [3.0], [4.0], [5.0]]
        assert provider._client.embeddings.create.call_count == 3

    def test_count_mismatch(self, provider):
        """Test that a short response raises EmbeddingError."""
        provider._client.embeddings.create.return_value = embeddings_response([[1.0]])

        with pytest.raises(EmbeddingError, match="count mismatch"):
            provider.embed_batch(["a", "b"])

    def test_upstream_failure(self, provider):
        """Test that API errors surface as EmbeddingError with the status."""
        error = RuntimeError("rate limited")
        error.status_code = 429
        provider._client.embeddings.create.side_effect = error

        with pytest.raises(EmbeddingError) as exc_info:
            provider.embed_batch(["a"])

        assert exc_info.value.upstream_status == 429
        assert exc_info.value.status_code == 500

    def test_missing_key(self):
        """Test that a missing key is a configuration error."""
        provider = OpenAIEmbeddingProvider(api_key=None)

        with pytest.raises(ConfigurationError, match="Server missing OpenAI API key."):
            provider.embed_batch(["a"])

    def test_dimension(self):
        """Test model dimensions."""
        assert OpenAIEmbeddingProvider("text-embedding-3-small").dimension == 1536
        assert OpenAIEmbeddingProvider("text-embedding-3-large").dimension == 3072

    def test_empty_input(self, provider):
        """Test that no texts means no request."""
        assert provider.embed_batch([]) == []
        provider._client.embeddings.create.assert_not_called()


class TestEmbeddingService:
    """Tests for EmbeddingService class."""

    @pytest.fixture
    def service(self):
        return EmbeddingService(provider="openai", config=EmbeddingConfig(openai_api_key="sk-test"))

    def test_provider_selection(self, service):
        """Test the configured provider and dimension."""
        assert service.provider_name == "openai"
        assert service.dimension == 1536
        assert service.model_name == "text-embedding-3-small"

    def test_unknown_provider(self):
        """Test that an unknown provider raises ValueError."""
        with pytest.raises(ValueError, match="Unknown embedding provider"):
            EmbeddingService(provider="bogus", config=EmbeddingConfig())

    def test_empty_text_rejected(self, service):
        """Test that empty text cannot be embedded."""
        with pytest.raises(ValueError):
            service.embed_query("  ")

    def test_empty_item_in_batch_rejected(self, service):
        """Test that an empty item in a batch is rejected before any call."""
        with pytest.raises(ValueError):
            service.embed_batch(["fine", ""])

    def test_embed_query_delegates(self, service):
        """Test that embed_query returns the provider's vector."""
        service._provider._client = MagicMock()
        service._provider._client.embeddings.create.return_value = embeddings_response([[0.5, 0.5]])

        assert service.embed_query("refund policy") == [0.5, 0.5]


class TestLocalEmbeddingProvider:
    """Tests for the sentence-transformers provider."""

    @pytest.mark.slow
    def test_embed_batch(self):
        """Test embedding with the real MiniLM model."""
        provider = LocalEmbeddingProvider("all-MiniLM-L6-v2")

        vectors = provider.embed_batch(["Hello world", "Refund policy"])

        assert len(vectors) == 2
        assert len(vectors[0]) == provider.dimension == 384

    @pytest.mark.slow
    def test_similar_texts_score_higher(self):
        """Test that related texts are closer than unrelated ones."""
        provider = LocalEmbeddingProvider("all-MiniLM-L6-v2")
        refund, returns, weather = provider.embed_batch(
            ["How do I get a refund?", "What is the return policy?", "It is sunny today."]
        )

        assert cosine_similarity(refund, returns) > cosine_similarity(refund, weather)
