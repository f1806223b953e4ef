"""Pytest configuration and fixtures."""
import hashlib
import math
import re
from typing import List
from unittest.mock import AsyncMock, Mock

import pytest

from kb_engine.services.chunker import Chunker
from kb_engine.services.document_repository import DocumentRepository
from kb_engine.services.embedding_service import EmbeddingProvider, EmbeddingService
from kb_engine.services.ingestion_service import IngestionService
from kb_engine.services.llm_service import LLMService
from kb_engine.services.passage_store import PassageStore
from kb_engine.services.retrieval_cache import RetrievalCache
from kb_engine.services.retrieval_engine import RetrievalEngine
from kb_engine.services.tenant_settings import TenantSettingsProvider
from kb_engine.services.text_extractor import TextExtractor


EMBEDDING_DIM = 64


class HashingEmbeddingProvider(EmbeddingProvider):
    """Deterministic bag-of-words embeddings; similar texts get similar vectors."""

    def __init__(self):
        self.calls: List[List[str]] = []

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        return [embed_words(text) for text in texts]


def embed_words(text: str) -> List[float]:
    vector = [0.0] * EMBEDDING_DIM
    vector[0] = 0.1
    for word in re.findall(r"[a-z0-9]+", text.lower()):
        bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % (EMBEDDING_DIM - 1) + 1
        vector[bucket] += 1.0
    norm = math.sqrt(sum(v * v for v in vector))
    return [v / norm for v in vector]


@pytest.fixture
def embed():
    """The deterministic embedding function used by the test provider."""
    return embed_words


@pytest.fixture
def embedding_provider():
    return HashingEmbeddingProvider()


@pytest.fixture
def embedding_service(embedding_provider):
    return EmbeddingService(embedding_provider, batch_size=4)


@pytest.fixture
def passage_store():
    store = PassageStore(db_path=":memory:", collection_name="test_passages")
    yield store
    store.close()


@pytest.fixture
def repository():
    repo = DocumentRepository("sqlite://")
    yield repo
    repo.close()


@pytest.fixture
def retrieval_cache():
    return RetrievalCache(ttl_seconds=180)


@pytest.fixture
def settings_provider(retrieval_cache):
    return TenantSettingsProvider(cache=retrieval_cache)


@pytest.fixture
def ingestion_service(embedding_service, passage_store, repository, settings_provider, retrieval_cache):
    return IngestionService(
        text_extractor=TextExtractor(),
        chunker=Chunker(target_tokens=1000, overlap_tokens=120),
        embedding_service=embedding_service,
        passage_store=passage_store,
        repository=repository,
        settings_provider=settings_provider,
        cache=retrieval_cache,
    )


@pytest.fixture
def retrieval_engine(embedding_service, passage_store, retrieval_cache, settings_provider):
    return RetrievalEngine(
        embedding_service=embedding_service,
        passage_store=passage_store,
        cache=retrieval_cache,
        settings_provider=settings_provider,
    )


@pytest.fixture
def mock_llm_service():
    """Mock LLM service."""
    service = Mock(spec=LLMService)
    service.generate_answer = AsyncMock(
        return_value={
            "answer": "This is a test answer [1].",
            "token_usage": {"prompt_tokens": 100, "completion_tokens": 50, "total_tokens": 150},
            "response_time_ms": 500.0,
        }
    )
    return service
