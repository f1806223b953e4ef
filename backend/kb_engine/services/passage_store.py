"""Passage store: Qdrant vector search plus BM25 keyword search, scoped by tenant."""
import hashlib
import os
import re
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from qdrant_client import QdrantClient
from qdrant_client.http import models
from qdrant_client.models import Distance, PointStruct, VectorParams
from rank_bm25 import BM25Plus

from kb_engine.exceptions import SearchBackendError, StorageError
from kb_engine.models.document import Passage
from kb_engine.models.retrieval import SearchHit
from kb_engine.utils.logger import logger
from kb_engine.utils.text_cleaner import normalize_query, tokenize


OR_SPLIT_RE = re.compile(r"\s+OR\s+")
PHRASE_RE = re.compile(r'"([^"]*)"')
SCROLL_PAGE_SIZE = 256


@dataclass
class KeywordClause:
    """One OR-branch of a keyword query: every term and phrase must match."""

    terms: List[str] = field(default_factory=list)
    phrases: List[str] = field(default_factory=list)

    def matches(self, tokens: set, text: str) -> bool:
        if not all(term in tokens for term in self.terms):
            return False
        return all(_contains_phrase(text, phrase) for phrase in self.phrases)


def _contains_phrase(text: str, phrase: str) -> bool:
    return re.search(r"(?<!\w)" + re.escape(phrase) + r"(?!\w)", text) is not None


def parse_keyword_query(query: str) -> List[KeywordClause]:
    """
    Parse web-search style syntax: ``a b OR "exact phrase" OR c``.

    Plain words inside a clause are AND-ed (stopwords dropped); quoted
    phrases must appear verbatim (case-insensitive, whitespace-collapsed).
    """
    clauses: List[KeywordClause] = []
    for part in OR_SPLIT_RE.split(query.strip()):
        phrases = [normalize_query(p) for p in PHRASE_RE.findall(part)]
        phrases = [p for p in phrases if p]
        terms = tokenize(PHRASE_RE.sub(" ", part))
        if terms or phrases:
            clauses.append(KeywordClause(terms=terms, phrases=phrases))
    return clauses


@dataclass
class _KeywordIndex:
    bm25: Optional[BM25Plus]
    rows: List[Dict]
    tokens: List[List[str]]
    texts: List[str]


class PassageStore:
    """Stores passages with embeddings in Qdrant and serves tenant-scoped search."""

    def __init__(
        self,
        db_path: str = "./qdrant_db",
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        collection_name: str = "kb_passages",
        batch_size: int = 100,
    ):
        """
        Initialize Qdrant client.

        Args:
            db_path: Local storage directory, or ":memory:" for an ephemeral store
            url: Remote Qdrant URL (takes precedence over db_path)
            api_key: API key for remote Qdrant
            collection_name: Collection holding every tenant's passages
            batch_size: Points per upsert call
        """
        if url:
            self.client = QdrantClient(url=url, api_key=api_key)
        elif db_path == ":memory:":
            self.client = QdrantClient(location=":memory:")
        else:
            os.makedirs(db_path, exist_ok=True)
            self.client = QdrantClient(path=db_path)

        self.collection_name = collection_name
        self.batch_size = batch_size
        self._keyword_indexes: Dict[str, _KeywordIndex] = {}
        self._keyword_generations: Dict[str, int] = {}
        self._lock = threading.Lock()
        logger.info(f"Passage store initialized ({url or db_path}, collection {collection_name})")

    def _point_id(self, tenant_id: str, doc_id: str, chunk_idx: int) -> int:
        """Stable unsigned 63-bit id derived from tenant, document and ordinal."""
        combined = f"{tenant_id}:{doc_id}:{chunk_idx}".encode("utf-8")
        point_id = int.from_bytes(hashlib.md5(combined).digest()[:8], byteorder="big")
        return point_id & 0x7FFFFFFFFFFFFFFF

    def _tenant_filter(self, tenant_id: str, doc_id: Optional[str] = None) -> models.Filter:
        must = [models.FieldCondition(key="tenant_id", match=models.MatchValue(value=tenant_id))]
        if doc_id is not None:
            must.append(models.FieldCondition(key="doc_id", match=models.MatchValue(value=doc_id)))
        return models.Filter(must=must)

    def _collection_exists(self) -> bool:
        collections = self.client.get_collections().collections
        return self.collection_name in [c.name for c in collections]

    def _ensure_collection(self, vector_size: int) -> None:
        """Create the collection, or verify its vector size matches."""
        if not self._collection_exists():
            self.client.create_collection(
                collection_name=self.collection_name,
                vectors_config=VectorParams(size=vector_size, distance=Distance.COSINE),
            )
            logger.info(f"Created Qdrant collection {self.collection_name} (dim {vector_size})")
            return

        params = self.client.get_collection(self.collection_name).config.params.vectors
        existing = params.size if isinstance(params, VectorParams) else None
        if existing is not None and existing != vector_size:
            raise StorageError(
                f"Embedding dimension {vector_size} does not match store dimension {existing}"
            )

    def _invalidate_keyword_index(self, tenant_id: str) -> None:
        with self._lock:
            self._keyword_generations[tenant_id] = self._keyword_generations.get(tenant_id, 0) + 1
            self._keyword_indexes.pop(tenant_id, None)

    def insert_passages(self, tenant_id: str, passages: List[Passage]) -> int:
        """
        Insert passages in batches.

        Args:
            tenant_id: Owning tenant
            passages: Passages with embeddings of equal dimensionality

        Returns:
            Number of passages written

        Raises:
            StorageError: On dimension mismatch or Qdrant failure
        """
        if not passages:
            return 0
        dims = {len(p.embedding) for p in passages}
        if len(dims) != 1 or 0 in dims:
            raise StorageError(f"Passages have inconsistent embedding dimensions: {sorted(dims)}")

        try:
            self._ensure_collection(dims.pop())
            for offset in range(0, len(passages), self.batch_size):
                batch = passages[offset:offset + self.batch_size]
                points = [
                    PointStruct(
                        id=self._point_id(tenant_id, p.doc_id, p.chunk_idx),
                        vector=p.embedding,
                        payload={
                            "tenant_id": tenant_id,
                            "doc_id": p.doc_id,
                            "chunk_idx": p.chunk_idx,
                            "title": p.title,
                            "content": p.content,
                            "source_uri": p.source_uri,
                            "allowed_roles": list(p.allowed_roles),
                            "metadata": p.metadata,
                        },
                    )
                    for p in batch
                ]
                self.client.upsert(collection_name=self.collection_name, points=points, wait=True)
        except StorageError:
            raise
        except Exception as e:
            logger.error(f"Error storing passages: {str(e)}", exc_info=True)
            raise StorageError(f"Failed to store passages: {str(e)}")
        finally:
            self._invalidate_keyword_index(tenant_id)

        return len(passages)

    def delete_document(self, tenant_id: str, doc_id: str) -> None:
        """Delete every passage of a document."""
        try:
            if self._collection_exists():
                self.client.delete(
                    collection_name=self.collection_name,
                    points_selector=models.FilterSelector(filter=self._tenant_filter(tenant_id, doc_id)),
                    wait=True,
                )
        except Exception as e:
            logger.error(f"Error deleting passages for {doc_id}: {str(e)}", exc_info=True)
            raise StorageError(f"Failed to delete passages: {str(e)}")
        finally:
            self._invalidate_keyword_index(tenant_id)

    def count_passages(self, tenant_id: str, doc_id: Optional[str] = None) -> int:
        if not self._collection_exists():
            return 0
        result = self.client.count(
            collection_name=self.collection_name,
            count_filter=self._tenant_filter(tenant_id, doc_id),
            exact=True,
        )
        return result.count

    def get_passages(self, tenant_id: str, doc_id: str) -> List[Dict]:
        """Payloads of a document's passages ordered by chunk_idx."""
        rows = self._scroll(self._tenant_filter(tenant_id, doc_id))
        return sorted(rows, key=lambda r: r["chunk_idx"])

    def _scroll(self, scroll_filter: models.Filter) -> List[Dict]:
        if not self._collection_exists():
            return []
        rows: List[Dict] = []
        offset = None
        while True:
            points, offset = self.client.scroll(
                collection_name=self.collection_name,
                scroll_filter=scroll_filter,
                limit=SCROLL_PAGE_SIZE,
                offset=offset,
                with_payload=True,
                with_vectors=False,
            )
            rows.extend(point.payload for point in points)
            if offset is None:
                break
        return rows

    def vector_search(self, tenant_id: str, vector: List[float], limit: int) -> List[SearchHit]:
        """Cosine similarity search over the tenant's passages."""
        try:
            if not self._collection_exists():
                return []
            response = self.client.query_points(
                collection_name=self.collection_name,
                query=vector,
                query_filter=self._tenant_filter(tenant_id),
                limit=limit,
                with_payload=True,
            )
        except Exception as e:
            logger.error(f"Vector search failed: {str(e)}", exc_info=True)
            raise SearchBackendError("Vector search failed") from e

        return [_hit_from_payload(point.payload, float(point.score)) for point in response.points]

    def _keyword_index(self, tenant_id: str) -> _KeywordIndex:
        with self._lock:
            index = self._keyword_indexes.get(tenant_id)
            generation = self._keyword_generations.get(tenant_id, 0)
        if index is not None:
            return index

        rows = sorted(
            self._scroll(self._tenant_filter(tenant_id)),
            key=lambda r: (r["doc_id"], r["chunk_idx"]),
        )
        texts = [normalize_query(r.get("content") or "") for r in rows]
        tokens = [tokenize(t) for t in texts]
        # BM25 needs at least one non-empty document
        bm25 = BM25Plus(tokens) if any(tokens) else None
        index = _KeywordIndex(bm25=bm25, rows=rows, tokens=tokens, texts=texts)
        with self._lock:
            # A write during the build makes this index stale; serve it once but do not keep it
            if self._keyword_generations.get(tenant_id, 0) == generation:
                self._keyword_indexes[tenant_id] = index
        return index

    def keyword_search(self, tenant_id: str, query: str, limit: int) -> List[SearchHit]:
        """
        Lexical search with web-search syntax, ranked by BM25.

        A passage is returned when at least one OR clause matches it.
        """
        clauses = parse_keyword_query(query)
        if not clauses:
            return []

        try:
            index = self._keyword_index(tenant_id)
        except Exception as e:
            logger.error(f"Keyword search failed: {str(e)}", exc_info=True)
            raise SearchBackendError("Keyword search failed") from e
        if index.bm25 is None:
            return []

        query_tokens: List[str] = []
        for clause in clauses:
            query_tokens.extend(clause.terms)
            for phrase in clause.phrases:
                query_tokens.extend(tokenize(phrase))
        scores = index.bm25.get_scores(query_tokens) if query_tokens else [0.0] * len(index.rows)

        matched: List[Tuple[float, Dict]] = []
        for i, row in enumerate(index.rows):
            token_set = set(index.tokens[i])
            if any(clause.matches(token_set, index.texts[i]) for clause in clauses):
                matched.append((float(scores[i]), row))

        matched.sort(key=lambda m: (-m[0], m[1]["doc_id"], m[1]["chunk_idx"]))
        return [_hit_from_payload(row, score) for score, row in matched[:limit]]

    def close(self) -> None:
        self.client.close()


def _hit_from_payload(payload: Dict, score: float) -> SearchHit:
    return SearchHit(
        doc_id=payload["doc_id"],
        chunk_idx=int(payload["chunk_idx"]),
        content=payload.get("content") or "",
        score=score,
        title=payload.get("title"),
        source_uri=payload.get("source_uri"),
    )
