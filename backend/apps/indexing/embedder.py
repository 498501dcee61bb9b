"""
Embedding generation.

Turns text into fixed-length dense vectors through an external service:
- Ollama (/api/embed, native batch input)
- OpenAI-compatible APIs (/embeddings, dimensions pinned to 768)

The same client embeds document chunks at ingestion time and questions at
query time, so both live in the same vector space.
"""
import logging
from abc import ABC, abstractmethod
from typing import List, Optional

import httpx
from django.conf import settings

from apps.indexing.models import EMBEDDING_DIMENSION

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100
DEFAULT_EMBED_TIMEOUT = 30


class EmbeddingError(Exception):
    """Raised when embedding generation fails."""
    pass


class BaseEmbeddingClient(ABC):
    """Abstract base class for embedding clients."""

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = float(timeout or getattr(settings, 'EMBEDDING_TIMEOUT', DEFAULT_EMBED_TIMEOUT))

    @abstractmethod
    async def embed(self, texts: List[str]) -> List[List[float]]:
        """
        Embed a batch of texts.

        Args:
            texts: Texts to embed

        Returns:
            One vector per input text, in input order

        Raises:
            EmbeddingError: If the request fails
        """
        pass

    @property
    @abstractmethod
    def model_name(self) -> str:
        pass

    async def embed_one(self, text: str) -> List[float]:
        """Embed a single text."""
        if not text or not text.strip():
            raise EmbeddingError("Cannot generate embedding for empty text")
        return (await self.embed([text]))[0]

    def _check_vectors(self, vectors: List[List[float]], expected: int) -> List[List[float]]:
        if len(vectors) != expected:
            raise EmbeddingError(
                f"Embedding count mismatch: expected {expected}, got {len(vectors)}"
            )
        for vector in vectors:
            if len(vector) != EMBEDDING_DIMENSION:
                raise EmbeddingError(
                    f"Embedding dimension mismatch: expected {EMBEDDING_DIMENSION}, got {len(vector)}"
                )
        return vectors

    async def _post(self, url: str, payload: dict, headers: Optional[dict] = None) -> dict:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, json=payload, headers=headers)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Embedding request failed: {e}")
            raise EmbeddingError(f"Embedding service error: {e.response.status_code}")
        except httpx.TimeoutException:
            logger.error("Embedding request timed out")
            raise EmbeddingError("Embedding service timed out")
        except httpx.RequestError as e:
            logger.error(f"Embedding connection error: {e}")
            raise EmbeddingError("Could not connect to embedding service")
        except ValueError as e:
            logger.error(f"Embedding response was not JSON: {e}")
            raise EmbeddingError("Invalid response from embedding service")


class OllamaEmbeddingClient(BaseEmbeddingClient):
    """Embedding client for Ollama local inference."""

    def __init__(self, timeout: Optional[float] = None):
        super().__init__(timeout)
        self.base_url = getattr(settings, 'OLLAMA_BASE_URL', 'http://ollama:11434')
        self.model = getattr(settings, 'OLLAMA_EMBED_MODEL', 'nomic-embed-text')

    @property
    def model_name(self) -> str:
        return self.model

    async def embed(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        data = await self._post(
            f"{self.base_url}/api/embed",
            {"model": self.model, "input": texts},
        )
        vectors = data.get("embeddings")
        if not vectors:
            raise EmbeddingError("No embedding in response")
        return self._check_vectors(vectors, len(texts))


class OpenAIEmbeddingClient(BaseEmbeddingClient):
    """
    Embedding client for OpenAI-compatible APIs.

    Requests 768 dimensions so vectors fit the embeddings table.
    """

    def __init__(self, timeout: Optional[float] = None):
        super().__init__(timeout)
        self.api_key = getattr(settings, 'OPENAI_API_KEY', '')
        self.base_url = getattr(settings, 'OPENAI_BASE_URL', 'https://api.openai.com/v1')
        self.model = getattr(settings, 'OPENAI_EMBED_MODEL', 'text-embedding-3-small')

        if not self.api_key:
            raise EmbeddingError("OPENAI_API_KEY not configured")

    @property
    def model_name(self) -> str:
        return self.model

    async def embed(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        data = await self._post(
            f"{self.base_url}/embeddings",
            {"model": self.model, "input": texts, "dimensions": EMBEDDING_DIMENSION},
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        items = data.get("data")
        if not items:
            raise EmbeddingError("No embedding in response")
        items = sorted(items, key=lambda item: item.get("index", 0))
        return self._check_vectors([item["embedding"] for item in items], len(texts))


async def embed_in_batches(
    client: BaseEmbeddingClient,
    texts: List[str],
    batch_size: Optional[int] = None,
) -> List[List[float]]:
    """
    Embed many texts with one request per batch.

    Args:
        client: Embedding client
        texts: Texts to embed
        batch_size: Texts per request (default EMBEDDING_BATCH_SIZE)

    Returns:
        List of embedding vectors (same order as input)

    Raises:
        EmbeddingError: If any batch fails
    """
    batch_size = max(1, batch_size or getattr(settings, 'EMBEDDING_BATCH_SIZE', DEFAULT_BATCH_SIZE))
    vectors: List[List[float]] = []

    for offset in range(0, len(texts), batch_size):
        batch = texts[offset:offset + batch_size]
        vectors.extend(await client.embed(batch))
        logger.debug(f"Embedded {min(offset + batch_size, len(texts))}/{len(texts)} texts")

    return vectors


# =============================================================================
# Client Factory
# =============================================================================

_client_instance: Optional[BaseEmbeddingClient] = None


def get_embedding_client() -> BaseEmbeddingClient:
    """
    Get the configured embedding client instance.

    Uses EMBEDDING_PROVIDER setting:
    - "ollama" (default): Local Ollama inference
    - "openai": OpenAI or compatible API
    """
    global _client_instance

    if _client_instance is not None:
        return _client_instance

    provider = getattr(settings, 'EMBEDDING_PROVIDER', 'ollama').lower()

    if provider == 'openai':
        logger.info("Using OpenAI-compatible API for embeddings")
        _client_instance = OpenAIEmbeddingClient()
    else:
        logger.info("Using Ollama for embeddings")
        _client_instance = OllamaEmbeddingClient()

    return _client_instance


def reset_embedding_client():
    """Reset the cached client instance. Useful for testing."""
    global _client_instance
    _client_instance = None
