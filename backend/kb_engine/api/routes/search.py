"""Retrieval and search preview endpoints."""
from fastapi import APIRouter, Depends, HTTPException

from kb_engine.api.dependencies import get_tenant_id, to_http_exception
from kb_engine.api.schemas import (
    PreviewHitResponse,
    PreviewRequest,
    PreviewResponse,
    RetrievalStatsResponse,
    RetrievedChunkResponse,
    RetrieveRequest,
    RetrieveResponse,
)
from kb_engine.exceptions import KnowledgeBaseError
from kb_engine.services.answer_service import AnswerService
from kb_engine.services.retrieval_engine import RetrievalEngine
from kb_engine.utils.logger import logger


router = APIRouter()


def get_retrieval_engine() -> RetrievalEngine:
    """Get retrieval engine from main app."""
    from kb_engine.main import retrieval_engine
    if retrieval_engine is None:
        raise HTTPException(status_code=503, detail="Retrieval engine not initialized")
    return retrieval_engine


def get_answer_service() -> AnswerService:
    """Get answer service from main app."""
    from kb_engine.main import answer_service
    if answer_service is None:
        raise HTTPException(status_code=503, detail="Answer service not initialized")
    return answer_service


@router.post("/retrieve", response_model=RetrieveResponse)
async def retrieve(
    request: RetrieveRequest,
    tenant_id: str = Depends(get_tenant_id),
    retrieval_engine: RetrievalEngine = Depends(get_retrieval_engine),
):
    """
    Hybrid retrieval over the tenant's passages.

    Returns:
        Ranked chunks with normalized sub-scores and timing stats
    """
    try:
        result = await retrieval_engine.retrieve(
            tenant_id,
            request.query,
            k=request.k,
            use_rerank=request.use_rerank,
            bypass_cache=request.bypass_cache,
        )
    except KnowledgeBaseError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Unexpected error during retrieval: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail="Retrieval failed")

    return RetrieveResponse(
        chunks=[
            RetrievedChunkResponse(
                doc_id=c.doc_id,
                chunk_idx=c.chunk_idx,
                title=c.title,
                content=c.content,
                source_uri=c.source_uri,
                score=c.score,
                v_norm=c.v_norm,
                k_norm=c.k_norm,
            )
            for c in result.chunks
        ],
        stats=RetrievalStatsResponse(
            vector_ms=result.stats.vector_ms,
            keyword_ms=result.stats.keyword_ms,
            rerank_ms=result.stats.rerank_ms,
        ),
    )


@router.post("/search/preview", response_model=PreviewResponse)
async def search_preview(
    request: PreviewRequest,
    tenant_id: str = Depends(get_tenant_id),
    answer_service: AnswerService = Depends(get_answer_service),
):
    """Short snippets of the best matching passages (at most 5)."""
    try:
        hits = await answer_service.preview_search(tenant_id, request.query, k=request.k)
    except KnowledgeBaseError as e:
        raise to_http_exception(e)

    return PreviewResponse(
        results=[
            PreviewHitResponse(
                doc_id=h.doc_id, title=h.title, snippet=h.snippet, score=h.score, source_uri=h.source_uri
            )
            for h in hits
        ]
    )
