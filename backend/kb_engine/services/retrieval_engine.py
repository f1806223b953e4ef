"""Hybrid retrieval: vector + keyword search, fusion, optional rerank, diversity cap, caching."""
import asyncio
import re
import time
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from kb_engine.exceptions import RerankError, SearchBackendError
from kb_engine.models.retrieval import (
    RetrievalCandidate,
    RetrievalResult,
    RetrievalStats,
    RetrievalStrategy,
    RetrievedChunk,
    SearchHit,
)
from kb_engine.services.embedding_service import EmbeddingService
from kb_engine.services.passage_store import PassageStore
from kb_engine.services.rerank_service import RerankService
from kb_engine.services.retrieval_cache import RetrievalCache
from kb_engine.services.tenant_settings import TenantRagSettings, TenantSettingsProvider
from kb_engine.utils.logger import logger
from kb_engine.utils.metrics import RERANK_OUTCOMES, RETRIEVAL_CACHE, RETRIEVAL_LATENCY
from kb_engine.utils.tracer import get_tracer


DEFAULT_K = 8
MAX_SEARCH_LIMIT = 100
MAX_RERANK_WINDOW = 50
VECTOR_WEIGHT = 0.65
KEYWORD_WEIGHT = 0.35

SYNONYM_RULES: List[Tuple[re.Pattern, List[str]]] = [
    (
        re.compile(r"account\s*number|account\s*no\.?|acct\.?", re.IGNORECASE),
        ['"account number"', '"account no"', '"account #"', "acct", '"acct #"', '"acct #:"'],
    ),
    (
        re.compile(r"receipt\s*number|receipt\s*no\.?", re.IGNORECASE),
        ['"receipt number"', '"receipt no"', '"receipt #"'],
    ),
    (re.compile(r"cheque|check", re.IGNORECASE), ["cheque", "check"]),
]

tracer = get_tracer(__name__)


def expand_keyword_synonyms(query: str) -> str:
    """OR-join known synonym phrases onto the raw query for lexical search."""
    expansions: List[str] = []
    for pattern, synonyms in SYNONYM_RULES:
        if pattern.search(query):
            expansions.extend(s for s in synonyms if s not in expansions)
    if not expansions:
        return query
    return f"{query} OR {' OR '.join(expansions)}"


def min_max_normalizer(scores: Sequence[float]) -> Callable[[float], float]:
    """Map scores onto [0, 1] within their own set; a flat set maps to 0.5."""
    if not scores:
        return lambda s: 0.0
    low, high = min(scores), max(scores)
    if high == low:
        return lambda s: 0.5
    return lambda s: (s - low) / (high - low)


def fuse(vector_hits: List[SearchHit], keyword_hits: List[SearchHit]) -> List[RetrievalCandidate]:
    """
    Merge independently normalized result sets and order them deterministically.

    Candidates are keyed by (doc_id, chunk_idx); a side that did not return a
    candidate contributes 0. Ties fall back to doc_id, then chunk_idx.
    """
    norm_v = min_max_normalizer([h.score for h in vector_hits])
    norm_k = min_max_normalizer([h.score for h in keyword_hits])

    by_key: Dict[Tuple[str, int], RetrievalCandidate] = {}
    for hits, attr, normalize in ((vector_hits, "v_norm", norm_v), (keyword_hits, "k_norm", norm_k)):
        for hit in hits:
            key = (hit.doc_id, hit.chunk_idx)
            candidate = by_key.get(key)
            if candidate is None:
                candidate = RetrievalCandidate(
                    doc_id=hit.doc_id,
                    chunk_idx=hit.chunk_idx,
                    content=hit.content,
                    title=hit.title,
                    source_uri=hit.source_uri,
                )
                by_key[key] = candidate
            setattr(candidate, attr, normalize(hit.score))

    for candidate in by_key.values():
        candidate.score = VECTOR_WEIGHT * candidate.v_norm + KEYWORD_WEIGHT * candidate.k_norm

    return sort_candidates(list(by_key.values()))


def sort_candidates(candidates: List[RetrievalCandidate]) -> List[RetrievalCandidate]:
    return sorted(candidates, key=lambda c: (-c.score, c.doc_id, c.chunk_idx))


def apply_diversity_cap(candidates: List[RetrievalCandidate], k: int, doc_cap: int) -> List[RetrievalCandidate]:
    """Greedily take candidates in order, at most ``doc_cap`` per document, until ``k``."""
    selected: List[RetrievalCandidate] = []
    per_doc: Dict[str, int] = {}
    for candidate in candidates:
        if len(selected) >= k:
            break
        count = per_doc.get(candidate.doc_id, 0)
        if count >= doc_cap:
            continue
        selected.append(candidate)
        per_doc[candidate.doc_id] = count + 1
    return selected


def _to_chunk(candidate: RetrievalCandidate) -> RetrievedChunk:
    return RetrievedChunk(
        doc_id=candidate.doc_id,
        chunk_idx=candidate.chunk_idx,
        title=candidate.title,
        content=candidate.content,
        source_uri=candidate.source_uri,
        score=candidate.score,
        v_norm=candidate.v_norm,
        k_norm=candidate.k_norm,
    )


def _elapsed_ms(start: float) -> float:
    return (time.time() - start) * 1000


class RetrievalEngine:
    """Tenant-scoped hybrid retrieval with a short-lived result cache."""

    def __init__(
        self,
        embedding_service: EmbeddingService,
        passage_store: PassageStore,
        cache: RetrievalCache,
        settings_provider: TenantSettingsProvider,
        rerank_service: Optional[RerankService] = None,
        rerank_enabled: bool = False,
        rerank_timeout_seconds: float = 8.0,
        default_k: int = DEFAULT_K,
    ):
        """
        Initialize retrieval engine.

        Args:
            embedding_service: Embeds the query
            passage_store: Vector and keyword search backend
            cache: Result cache owned by the application
            settings_provider: Per-tenant RAG settings
            rerank_service: Optional scoring model for low-confidence results
            rerank_enabled: Enable rerank for every tenant
            rerank_timeout_seconds: Upper bound for one rerank call
            default_k: Result count when neither caller nor tenant sets one
        """
        self.embedding_service = embedding_service
        self.passage_store = passage_store
        self.cache = cache
        self.settings_provider = settings_provider
        self.rerank_service = rerank_service
        self.rerank_enabled = rerank_enabled
        self.rerank_timeout_seconds = rerank_timeout_seconds
        self.default_k = default_k

    def select_strategy(
        self, rag: TenantRagSettings, k: Optional[int], use_rerank: bool
    ) -> RetrievalStrategy:
        """Resolve every configuration-dependent choice for one call."""
        effective_k = rag.retriever_top_k or k or self.default_k
        return RetrievalStrategy(
            k=effective_k,
            search_limit=max(effective_k, min(MAX_SEARCH_LIMIT, rag.overfetch)),
            hybrid=rag.hybrid_enabled,
            rerank_enabled=rag.rerank_enabled or self.rerank_enabled or use_rerank,
            rerank_forced=use_rerank,
            rerank_window=min(MAX_RERANK_WINDOW, max(effective_k, rag.rerank_window)),
            rerank_trigger=rag.rerank_trigger,
            doc_cap=rag.doc_cap,
        )

    async def retrieve(
        self,
        tenant_id: str,
        query: str,
        k: Optional[int] = None,
        use_rerank: bool = False,
        bypass_cache: bool = False,
    ) -> RetrievalResult:
        """
        Retrieve ranked, diversified passages for a query.

        Args:
            tenant_id: Tenant whose passages are searched
            query: Free-text query
            k: Desired number of results (tenant retriever_top_k wins when set)
            use_rerank: Force a rerank pass
            bypass_cache: Skip cache read and write

        Returns:
            RetrievalResult with chunks and timing stats

        Raises:
            EmbeddingError: If the query cannot be embedded
            SearchBackendError: If a required search fails or times out
        """
        cache_key = self.cache.make_key(tenant_id, query, k or self.default_k, use_rerank)
        if not bypass_cache:
            cached = self.cache.get(cache_key)
            if cached is not None:
                RETRIEVAL_CACHE.labels(result="hit").inc()
                logger.debug("Retrieval cache hit", extra={"tenant_id": tenant_id, "cache_hit": True})
                return cached
            RETRIEVAL_CACHE.labels(result="miss").inc()

        rag = self.settings_provider.get(tenant_id)
        strategy = self.select_strategy(rag, k, use_rerank)
        timeout = rag.retrieval_timeout_ms / 1000
        start_time = time.time()

        with tracer.start_as_current_span("kb.retrieve") as span:
            span.set_attribute("kb.tenant_id", tenant_id)
            span.set_attribute("kb.strategy", strategy.name)

            query_vector = await self.embedding_service.embed_query(query)
            vector_hits, keyword_hits, vector_ms, keyword_ms = await self._search(
                tenant_id, query, query_vector, strategy, timeout
            )

            candidates = fuse(vector_hits, keyword_hits)
            rerank_ms = 0.0
            top_score = candidates[0].score if candidates else None
            if strategy.should_rerank(top_score):
                candidates, rerank_ms = await self._rerank(query, candidates, strategy)
            elif strategy.rerank_enabled:
                RERANK_OUTCOMES.labels(outcome="skipped").inc()

            selected = apply_diversity_cap(candidates, strategy.k, strategy.doc_cap)
            span.set_attribute("kb.result_count", len(selected))

        result = RetrievalResult(
            chunks=[_to_chunk(c) for c in selected],
            stats=RetrievalStats(vector_ms=vector_ms, keyword_ms=keyword_ms, rerank_ms=rerank_ms),
        )
        RETRIEVAL_LATENCY.labels(strategy=strategy.name).observe(time.time() - start_time)
        logger.info(
            f"Retrieved {len(selected)} passages",
            extra={
                "tenant_id": tenant_id,
                "strategy": strategy.name,
                "cache_hit": False,
                "vector_ms": round(vector_ms, 1),
                "keyword_ms": round(keyword_ms, 1),
                "rerank_ms": round(rerank_ms, 1),
                "top_score": round(top_score, 4) if top_score is not None else None,
            },
        )

        if not bypass_cache:
            self.cache.set(cache_key, result)
        return result

    async def _search(
        self,
        tenant_id: str,
        query: str,
        query_vector: List[float],
        strategy: RetrievalStrategy,
        timeout: float,
    ) -> Tuple[List[SearchHit], List[SearchHit], float, float]:
        """Run vector and (when hybrid) keyword search concurrently."""
        vector_task = self._timed_search(
            "vector", self.passage_store.vector_search, tenant_id, query_vector, strategy.search_limit, timeout
        )
        if not strategy.hybrid:
            vector_hits, vector_ms = await vector_task
            return vector_hits, [], vector_ms, 0.0

        keyword_task = self._timed_search(
            "keyword",
            self.passage_store.keyword_search,
            tenant_id,
            expand_keyword_synonyms(query),
            strategy.search_limit,
            timeout,
        )
        (vector_hits, vector_ms), (keyword_hits, keyword_ms) = await asyncio.gather(vector_task, keyword_task)
        return vector_hits, keyword_hits, vector_ms, keyword_ms

    async def _timed_search(self, label: str, search, tenant_id: str, query, limit: int, timeout: float):
        start = time.time()
        try:
            hits = await asyncio.wait_for(asyncio.to_thread(search, tenant_id, query, limit), timeout)
        except asyncio.TimeoutError as e:
            logger.error(f"{label.capitalize()} search timed out after {timeout}s", extra={"tenant_id": tenant_id})
            raise SearchBackendError(f"{label.capitalize()} search timed out") from e
        except SearchBackendError:
            raise
        except Exception as e:
            logger.error(f"{label.capitalize()} search failed: {str(e)}", extra={"tenant_id": tenant_id})
            raise SearchBackendError(f"{label.capitalize()} search failed") from e
        return hits, _elapsed_ms(start)

    async def _rerank(
        self, query: str, candidates: List[RetrievalCandidate], strategy: RetrievalStrategy
    ) -> Tuple[List[RetrievalCandidate], float]:
        """
        Rescore the top window; on any failure keep the fused order.

        Returns the top ``k`` candidates and the elapsed milliseconds.
        """
        start = time.time()
        window = candidates[:strategy.rerank_window]
        if self.rerank_service is None:
            RERANK_OUTCOMES.labels(outcome="unavailable").inc()
            return candidates[:strategy.k], _elapsed_ms(start)

        try:
            scores = await asyncio.wait_for(
                self.rerank_service.score(query, [c.content for c in window]),
                self.rerank_timeout_seconds,
            )
            if len(scores) != len(window):
                raise RerankError(f"Rerank returned {len(scores)} scores for {len(window)} passages")
        except Exception as e:
            RERANK_OUTCOMES.labels(outcome="fallback").inc()
            logger.warning(f"Rerank failed, keeping fused order: {str(e) or type(e).__name__}")
            return candidates[:strategy.k], _elapsed_ms(start)

        reranked = [
            RetrievalCandidate(
                doc_id=c.doc_id,
                chunk_idx=c.chunk_idx,
                content=c.content,
                title=c.title,
                source_uri=c.source_uri,
                v_norm=c.v_norm,
                k_norm=c.k_norm,
                score=score,
            )
            for c, score in zip(window, scores)
        ]
        RERANK_OUTCOMES.labels(outcome="applied").inc()
        # Stable sort: equal rerank scores keep the fused order
        reranked.sort(key=lambda c: -c.score)
        return reranked[:strategy.k], _elapsed_ms(start)
