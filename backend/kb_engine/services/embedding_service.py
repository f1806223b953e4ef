"""Embedding service: batched text embeddings from OpenAI-compatible APIs or Sentence Transformers."""
import asyncio
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, List, Optional

import httpx
from sentence_transformers import SentenceTransformer

from kb_engine.exceptions import EmbeddingError
from kb_engine.utils.logger import logger


DEFAULT_BATCH_SIZE = 64
ERROR_PAYLOAD_CHARS = 200


class EmbeddingProvider(ABC):
    """Turns a batch of texts into vectors, in input order."""

    model_name: str = ""

    @abstractmethod
    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        ...

    async def close(self) -> None:
        return None


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """Calls an OpenAI-compatible ``/embeddings`` endpoint over HTTP."""

    def __init__(
        self,
        api_key: str,
        model_name: str = "text-embedding-3-small",
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the provider.

        Args:
            api_key: Bearer token for the embeddings API
            model_name: Embedding model identifier
            base_url: API base URL (without ``/embeddings``)
            timeout_seconds: Per-request timeout
            client: Optional pre-configured httpx client (tests inject a mock transport)
        """
        self.api_key = api_key
        self.model_name = model_name
        self.url = base_url.rstrip("/") + "/embeddings"
        self.client = client or httpx.AsyncClient(timeout=timeout_seconds, trust_env=False)

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        try:
            response = await self.client.post(
                self.url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={"model": self.model_name, "input": texts},
            )
        except httpx.HTTPError as e:
            raise EmbeddingError(f"Embedding request failed: {str(e)[:ERROR_PAYLOAD_CHARS]}") from e

        if response.status_code >= 400:
            raise EmbeddingError(
                f"Embedding failed ({response.status_code}): {response.text[:ERROR_PAYLOAD_CHARS]}"
            )

        try:
            data = response.json()["data"]
            rows = sorted(data, key=lambda row: row.get("index", 0))
            return [[float(x) for x in row["embedding"]] for row in rows]
        except (ValueError, KeyError, TypeError) as e:
            raise EmbeddingError(f"Malformed embedding response: {response.text[:ERROR_PAYLOAD_CHARS]}") from e

    async def close(self) -> None:
        await self.client.aclose()


class SentenceTransformerProvider(EmbeddingProvider):
    """Runs a local Sentence Transformers model in a worker thread."""

    def __init__(self, model_name: str = "sentence-transformers/all-MiniLM-L6-v2", device: str = "cpu"):
        self.model_name = model_name
        self.device = device
        self._model: Optional[SentenceTransformer] = None
        self._lock = threading.Lock()

    def _get_model(self) -> SentenceTransformer:
        if self._model is None:
            with self._lock:
                if self._model is None:
                    logger.info(f"Loading embedding model: {self.model_name}")
                    self._model = SentenceTransformer(self.model_name, device=self.device)
        return self._model

    def _encode(self, texts: List[str]) -> List[List[float]]:
        embeddings = self._get_model().encode(
            texts,
            show_progress_bar=False,
            convert_to_numpy=True,
            normalize_embeddings=False,
        )
        return embeddings.tolist()

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        try:
            return await asyncio.to_thread(self._encode, texts)
        except Exception as e:
            raise EmbeddingError(f"Local embedding failed: {str(e)[:ERROR_PAYLOAD_CHARS]}") from e


class EmbeddingService:
    """Batches texts through an embedding provider and validates the output."""

    def __init__(self, provider: EmbeddingProvider, batch_size: int = DEFAULT_BATCH_SIZE):
        """
        Initialize embedding service.

        Args:
            provider: Backend that embeds one batch
            batch_size: Maximum texts per provider call
        """
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.provider = provider
        self.batch_size = batch_size

    @property
    def model_name(self) -> str:
        return self.provider.model_name

    async def embed_texts(self, texts: List[str]) -> List[List[float]]:
        """
        Embed texts in sequential batches.

        Args:
            texts: Texts to embed

        Returns:
            One vector per input text, in input order

        Raises:
            EmbeddingError: If any batch fails or returns malformed vectors
        """
        if not texts:
            return []

        start_time = time.time()
        vectors: List[List[float]] = []
        batch_count = 0
        for offset in range(0, len(texts), self.batch_size):
            batch = texts[offset:offset + self.batch_size]
            batch_vectors = await self.provider.embed_batch(batch)
            if len(batch_vectors) != len(batch):
                raise EmbeddingError(
                    f"Embedding provider returned {len(batch_vectors)} vectors for {len(batch)} inputs"
                )
            vectors.extend(batch_vectors)
            batch_count += 1

        _check_dimensions(vectors)
        logger.debug(
            f"Embedded {len(texts)} texts in {time.time() - start_time:.2f}s",
            extra={"batch_count": batch_count},
        )
        return vectors

    async def embed_query(self, text: str) -> List[float]:
        """Embed a single query text (a batch of one)."""
        return (await self.embed_texts([text]))[0]

    async def close(self) -> None:
        await self.provider.close()


def _check_dimensions(vectors: List[Any]) -> None:
    dims = {len(v) for v in vectors}
    if len(dims) > 1 or 0 in dims:
        raise EmbeddingError(f"Inconsistent embedding dimensions: {sorted(dims)}")


def create_embedding_service(
    provider: str,
    model_name: str,
    api_key: str = "",
    base_url: str = "https://api.openai.com/v1",
    batch_size: int = DEFAULT_BATCH_SIZE,
    timeout_seconds: float = 15.0,
) -> EmbeddingService:
    """Build an EmbeddingService for the configured provider ('openai' or 'local')."""
    if provider == "local":
        backend: EmbeddingProvider = SentenceTransformerProvider(model_name=model_name)
    elif provider == "openai":
        backend = OpenAIEmbeddingProvider(
            api_key=api_key,
            model_name=model_name,
            base_url=base_url,
            timeout_seconds=timeout_seconds,
        )
    else:
        raise ValueError(f"Unknown embedding provider: {provider}")
    logger.info(f"Embedding provider: {provider} ({model_name}), batch size {batch_size}")
    return EmbeddingService(backend, batch_size=batch_size)
