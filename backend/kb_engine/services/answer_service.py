"""Question answering over retrieved passages with confidence gating."""
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from kb_engine.models.retrieval import RetrievalStats, RetrievedChunk
from kb_engine.services.document_repository import DocumentRepository
from kb_engine.services.llm_service import LLMService
from kb_engine.services.retrieval_engine import RetrievalEngine
from kb_engine.services.tenant_settings import TenantSettingsProvider
from kb_engine.utils.logger import logger
from kb_engine.utils.text_cleaner import truncate


MIN_CONTENT_TOKENS = 3
SCORE_FLOOR = 0.45
VECTOR_FLOOR = 0.15
KEYWORD_TOP1_FLOOR = 0.9
ASK_TOP_K = 8
CITATION_SNIPPET_CHARS = 300
PREVIEW_SNIPPET_CHARS = 220
PREVIEW_DEFAULT_K = 3
PREVIEW_MAX_K = 5

GATE_STOPWORDS = frozenset(
    ["the", "a", "an", "and", "or", "but", "of", "to", "in", "on", "for", "with",
     "is", "it", "this", "that", "hey", "hi", "hello", "thanks"]
)

CLARIFY_MESSAGE = "Ask a tenant-specific question (topic, doc, ID…) to get grounded answers with citations."
NOT_FOUND_MESSAGE = (
    "I couldn't find relevant documents to answer that. Try refining your question or uploading docs."
)


@dataclass
class Citation:
    doc_id: str
    chunk_idx: int
    title: Optional[str]
    source_uri: Optional[str]
    snippet: str
    score: float


@dataclass
class AnswerResult:
    """Answer text plus the citations it is grounded on."""

    answer: str
    citations: List[Citation] = field(default_factory=list)
    grounded: bool = False
    stats: Optional[RetrievalStats] = None
    token_usage: Optional[Dict[str, Any]] = None


@dataclass
class PreviewHit:
    doc_id: str
    title: str
    snippet: str
    score: float
    source_uri: Optional[str] = None


def content_tokens(question: str) -> List[str]:
    return [t for t in re.split(r"[^a-z0-9]+", question.lower()) if t and t not in GATE_STOPWORDS]


def is_answerable_query(question: str, min_tokens: int = MIN_CONTENT_TOKENS) -> bool:
    """Low-signal chitchat ("hi there", "thanks!") does not warrant retrieval."""
    return len(content_tokens(question)) >= min_tokens


def gate_chunks(chunks: List[RetrievedChunk], allow_keyword_top1: bool = True) -> List[RetrievedChunk]:
    """
    Keep chunks confident enough to ground an answer.

    A chunk needs a combined score of at least SCORE_FLOOR and either some
    semantic support or, for the top result only, a near-perfect keyword match.
    """
    kept = []
    for i, chunk in enumerate(chunks):
        if chunk.score < SCORE_FLOOR:
            continue
        keyword_top1 = allow_keyword_top1 and i == 0 and chunk.k_norm >= KEYWORD_TOP1_FLOOR
        if chunk.v_norm >= VECTOR_FLOOR or keyword_top1:
            kept.append(chunk)
    return kept


class AnswerService:
    """Gated question answering and search previews for one tenant at a time."""

    def __init__(
        self,
        retrieval_engine: RetrievalEngine,
        llm_service: LLMService,
        settings_provider: TenantSettingsProvider,
        repository: Optional[DocumentRepository] = None,
        allow_keyword_top1: bool = True,
    ):
        """
        Initialize answer service.

        Args:
            retrieval_engine: Hybrid retrieval engine
            llm_service: Answer synthesis
            settings_provider: Per-tenant chat model and temperature
            repository: Document records, used for preview titles
            allow_keyword_top1: Let a strong keyword-only top hit pass gating
        """
        self.retrieval_engine = retrieval_engine
        self.llm_service = llm_service
        self.settings_provider = settings_provider
        self.repository = repository
        self.allow_keyword_top1 = allow_keyword_top1

    async def ask(self, tenant_id: str, question: str, use_rerank: bool = False) -> AnswerResult:
        """
        Answer a question from the tenant's documents.

        Returns a clarification prompt for low-signal questions and a
        not-found answer when no passage passes gating; neither calls the LLM.
        """
        question = question.strip()
        if not is_answerable_query(question):
            logger.info("Question below content-token minimum; asking for clarification", extra={"tenant_id": tenant_id})
            return AnswerResult(answer=CLARIFY_MESSAGE)

        result = await self.retrieval_engine.retrieve(tenant_id, question, k=ASK_TOP_K, use_rerank=use_rerank)
        gated = gate_chunks(result.chunks, self.allow_keyword_top1)
        if not gated:
            logger.info(
                "No passage passed confidence gating",
                extra={"tenant_id": tenant_id, "result_count": len(result.chunks)},
            )
            return AnswerResult(answer=NOT_FOUND_MESSAGE, stats=result.stats)

        rag = self.settings_provider.get(tenant_id)
        generated = await self.llm_service.generate_answer(
            question,
            gated,
            model=rag.chat_model,
            temperature=rag.temperature,
            char_budget=rag.max_context_tokens * 4,
        )
        citations = [
            Citation(
                doc_id=c.doc_id,
                chunk_idx=c.chunk_idx,
                title=c.title,
                source_uri=c.source_uri,
                snippet=c.content[:CITATION_SNIPPET_CHARS],
                score=c.score,
            )
            for c in gated
        ]
        return AnswerResult(
            answer=generated["answer"],
            citations=citations,
            grounded=True,
            stats=result.stats,
            token_usage=generated.get("token_usage"),
        )

    async def preview_search(self, tenant_id: str, query: str, k: Optional[int] = None) -> List[PreviewHit]:
        """Top passages as short snippets; ``k`` is clamped to 1..5 (default 3)."""
        query = query.strip()
        if not query:
            return []
        k = max(1, min(PREVIEW_MAX_K, k or PREVIEW_DEFAULT_K))

        result = await self.retrieval_engine.retrieve(tenant_id, query, k=k)
        titles: Dict[str, str] = {}
        hits = []
        for chunk in result.chunks[:k]:
            title = chunk.title or self._document_title(tenant_id, chunk.doc_id, titles)
            hits.append(
                PreviewHit(
                    doc_id=chunk.doc_id,
                    title=title or "Untitled",
                    snippet=truncate(chunk.content, PREVIEW_SNIPPET_CHARS, ellipsis="…"),
                    score=chunk.score,
                    source_uri=chunk.source_uri,
                )
            )
        return hits

    def _document_title(self, tenant_id: str, doc_id: str, titles: Dict[str, str]) -> Optional[str]:
        if self.repository is None:
            return None
        if doc_id not in titles:
            document = self.repository.get(tenant_id, doc_id)
            titles[doc_id] = document.title if document else ""
        return titles[doc_id]
