"""
Embedding Service Module

Provides an abstraction layer for embedding generation, supporting both:
- Cloud: OpenAI (text-embedding-3-small) - production default, 1536 dims
- Local: Sentence Transformers (all-MiniLM-L6-v2) - development, no API key

Design Rationale:
- Abstract interface allows easy switching between providers
- Inputs are sent in batches of 64 per request to bound request size
- Output is order-preserving: one vector per input, in input order
- Provider failures surface as EmbeddingError (HTTP 500); nothing is retried

Embedding Dimensions:
- all-MiniLM-L6-v2: 384 dimensions
- all-mpnet-base-v2: 768 dimensions
- text-embedding-3-small: 1536 dimensions
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional
import numpy as np

from config.settings import get_settings, EmbeddingConfig
from botforge.errors import ConfigurationError, EmbeddingError

# Configure logging
logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 64


class BaseEmbeddingProvider(ABC):
    """
    Abstract base class for embedding providers.

    All embedding providers must implement:
    - embed_batch: Embed multiple texts, order-preserving
    - dimension: Return the embedding dimension
    """

    @abstractmethod
    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for multiple texts.

        Args:
            texts: List of input texts

        Returns:
            List of embedding vectors, one per input
        """
        pass

    def embed_text(self, text: str) -> List[float]:
        """Generate embedding for a single text."""
        return self.embed_batch([text])[0]

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Return the dimension of embeddings produced."""
        pass

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Return the name of the embedding model."""
        pass


class LocalEmbeddingProvider(BaseEmbeddingProvider):
    """
    Local embedding provider using Sentence Transformers.

    Used for development without an API key. Vectors from this provider
    are not interchangeable with OpenAI ones: a knowledge store must be
    populated and queried with the same model.
    """

    def __init__(self, model_name: str = "all-MiniLM-L6-v2", batch_size: int = DEFAULT_BATCH_SIZE):
        """
        Initialize the local embedding provider.

        Args:
            model_name: Name of the sentence-transformers model
            batch_size: Encoder batch size
        """
        self._model_name = model_name
        self._batch_size = batch_size
        self._model = None
        self._dimension = None

        logger.info(f"Initializing LocalEmbeddingProvider with model: {model_name}")

    def _load_model(self):
        """Lazy load the model (only when first needed)."""
        if self._model is None:
            from sentence_transformers import SentenceTransformer

            logger.info(f"Loading sentence-transformers model: {self._model_name}")
            self._model = SentenceTransformer(self._model_name)
            self._dimension = self._model.get_sentence_embedding_dimension()
            logger.info(f"Model loaded. Embedding dimension: {self._dimension}")

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Encode texts locally; batching is handled by the encoder."""
        if not texts:
            return []

        self._load_model()

        logger.debug(f"Embedding batch of {len(texts)} texts locally")

        try:
            embeddings = self._model.encode(
                texts,
                convert_to_numpy=True,
                show_progress_bar=False,
                batch_size=self._batch_size,
            )
        except Exception as e:
            raise EmbeddingError(f"Local embedding failed: {e}")

        return embeddings.tolist()

    @property
    def dimension(self) -> int:
        """Return embedding dimension."""
        self._load_model()
        return self._dimension

    @property
    def model_name(self) -> str:
        """Return model name."""
        return self._model_name


class OpenAIEmbeddingProvider(BaseEmbeddingProvider):
    """
    OpenAI embedding provider using the embeddings API.

    Models:
    - text-embedding-3-small: 1536 dims (default)
    - text-embedding-3-large: 3072 dims
    - text-embedding-ada-002: 1536 dims (legacy)
    """

    # Model dimensions mapping
    MODEL_DIMENSIONS = {
        "text-embedding-3-small": 1536,
        "text-embedding-3-large": 3072,
        "text-embedding-ada-002": 1536,
    }

    def __init__(
        self,
        model_name: str = "text-embedding-3-small",
        api_key: Optional[str] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        """
        Initialize the OpenAI embedding provider.

        Args:
            model_name: Name of the OpenAI embedding model
            api_key: OpenAI API key
            batch_size: Inputs per embeddings request
        """
        self._model_name = model_name
        self._api_key = api_key
        self._batch_size = batch_size
        self._client = None

        if model_name not in self.MODEL_DIMENSIONS:
            logger.warning(
                f"Unknown model {model_name}, assuming 1536 dimensions. "
                f"Known models: {list(self.MODEL_DIMENSIONS.keys())}"
            )

        logger.info(f"Initializing OpenAIEmbeddingProvider with model: {model_name}")

    def _get_client(self):
        """Get or create the OpenAI client."""
        if self._client is None:
            from openai import OpenAI

            if not self._api_key:
                raise ConfigurationError("Server missing OpenAI API key.")

            self._client = OpenAI(api_key=self._api_key)
            logger.info("OpenAI embeddings client initialized")

        return self._client

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings through the OpenAI API, batch_size inputs at a time.

        Args:
            texts: List of input texts

        Returns:
            List of embedding vectors, one per input

        Raises:
            ConfigurationError: If no API key is configured
            EmbeddingError: On any API failure or a count mismatch
        """
        if not texts:
            return []

        client = self._get_client()
        all_embeddings: List[List[float]] = []

        for i in range(0, len(texts), self._batch_size):
            batch = texts[i:i + self._batch_size]
            logger.debug(f"Embedding batch of {len(batch)} texts via OpenAI")

            try:
                response = client.embeddings.create(
                    input=batch,
                    model=self._model_name,
                )
            except Exception as e:
                status = getattr(e, "status_code", None)
                logger.error(f"OpenAI embedding request failed (status={status}): {e}")
                raise EmbeddingError(
                    f"Embedding request failed{f' ({status})' if status else ''}",
                    upstream_status=status,
                )

            if len(response.data) != len(batch):
                raise EmbeddingError("Embedding count mismatch")

            # Sort by index to maintain order
            sorted_data = sorted(response.data, key=lambda x: x.index)
            all_embeddings.extend(item.embedding for item in sorted_data)

        return all_embeddings

    @property
    def dimension(self) -> int:
        """Return embedding dimension."""
        return self.MODEL_DIMENSIONS.get(self._model_name, 1536)

    @property
    def model_name(self) -> str:
        """Return model name."""
        return self._model_name


class EmbeddingService:
    """
    Main embedding service that provides a unified interface.

    This is the class that other components should use.
    It handles provider selection based on configuration.

    Example:
        service = EmbeddingService()  # Uses config
        embedding = service.embed_query("How do refunds work?")
        embeddings = service.embed_batch(["chunk one", "chunk two"])

        # Or specify provider explicitly
        service = EmbeddingService(provider="local")
    """

    def __init__(
        self,
        provider: Optional[str] = None,
        config: Optional[EmbeddingConfig] = None,
    ):
        """
        Initialize the embedding service.

        Args:
            provider: "openai" or "local" (default from config)
            config: Optional EmbeddingConfig instance
        """
        self.config = config or get_settings().embedding

        provider = provider or self.config.provider

        if provider == "openai":
            self._provider = OpenAIEmbeddingProvider(
                model_name=self.config.openai_model,
                api_key=self.config.openai_api_key,
                batch_size=self.config.batch_size,
            )
        elif provider == "local":
            self._provider = LocalEmbeddingProvider(
                model_name=self.config.local_model,
                batch_size=self.config.batch_size,
            )
        else:
            raise ValueError(f"Unknown embedding provider: {provider}")

        self._provider_name = provider
        logger.info(f"EmbeddingService initialized with {provider} provider")

    def embed_text(self, text: str) -> List[float]:
        """
        Generate embedding for a single text.

        Raises:
            ValueError: If the text is empty
        """
        if not text or not text.strip():
            raise ValueError("Cannot embed empty text")

        return self._provider.embed_text(text)

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for multiple texts, one vector per input.

        Raises:
            ValueError: If any text is empty (it would shift the output order)
            EmbeddingError: If the provider returns the wrong number of vectors
        """
        if any(not t or not t.strip() for t in texts):
            raise ValueError("Cannot embed empty text")

        embeddings = self._provider.embed_batch(texts)
        if len(embeddings) != len(texts):
            raise EmbeddingError("Embedding count mismatch")
        return embeddings

    def embed_query(self, query: str) -> List[float]:
        """
        Embed a user query for retrieval.

        Semantic alias for embed_text, used for clarity when embedding
        user questions vs knowledge chunks.
        """
        return self.embed_text(query)

    @property
    def dimension(self) -> int:
        """Return the embedding dimension."""
        return self._provider.dimension

    @property
    def model_name(self) -> str:
        """Return the model name."""
        return self._provider.model_name

    @property
    def provider_name(self) -> str:
        """Return the provider name (openai/local)."""
        return self._provider_name


def cosine_similarity(vec1: List[float], vec2: List[float]) -> float:
    """
    Calculate cosine similarity between two vectors.

    Only the overlapping prefix of the two vectors is compared, so a
    length mismatch degrades the score instead of raising. Ingestion
    rejects mismatched vectors, which keeps this path for legacy rows.

    Args:
        vec1: First embedding vector
        vec2: Second embedding vector

    Returns:
        Similarity score between -1 and 1 (0.0 if either norm is zero)
    """
    n = min(len(vec1 or []), len(vec2 or []))
    if n == 0:
        return 0.0

    arr1 = np.asarray(vec1[:n], dtype=float)
    arr2 = np.asarray(vec2[:n], dtype=float)

    norm1 = np.linalg.norm(arr1)
    norm2 = np.linalg.norm(arr2)

    if norm1 == 0 or norm2 == 0:
        return 0.0

    similarity = float(np.dot(arr1, arr2) / (norm1 * norm2))
    # Clamp float error so self-similarity never exceeds the bounds
    return max(-1.0, min(1.0, similarity))
