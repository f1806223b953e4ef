"""Ask endpoint for question answering."""
from fastapi import APIRouter, Depends, HTTPException

from kb_engine.api.dependencies import get_tenant_id, to_http_exception
from kb_engine.api.routes.search import get_answer_service
from kb_engine.api.schemas import AskRequest, AskResponse, CitationResponse, RetrievalStatsResponse
from kb_engine.exceptions import KnowledgeBaseError
from kb_engine.services.answer_service import AnswerService
from kb_engine.utils.logger import logger


router = APIRouter()


@router.post("/ask", response_model=AskResponse)
async def ask_question(
    request: AskRequest,
    tenant_id: str = Depends(get_tenant_id),
    answer_service: AnswerService = Depends(get_answer_service),
):
    """
    Answer a question about the tenant's documents.

    Low-signal questions get a clarification prompt and weakly supported
    ones a not-found message; otherwise the answer cites the passages used.

    Args:
        request: AskRequest with question
        tenant_id: Tenant from the X-Tenant-Id header
        answer_service: Answer service instance

    Returns:
        AskResponse with answer, citations and retrieval stats
    """
    try:
        result = await answer_service.ask(tenant_id, request.question, use_rerank=request.use_rerank)
    except KnowledgeBaseError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Unexpected error answering question: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to generate answer")

    stats = None
    if result.stats is not None:
        stats = RetrievalStatsResponse(
            vector_ms=result.stats.vector_ms,
            keyword_ms=result.stats.keyword_ms,
            rerank_ms=result.stats.rerank_ms,
        )
    return AskResponse(
        answer=result.answer,
        citations=[
            CitationResponse(
                doc_id=c.doc_id,
                chunk_idx=c.chunk_idx,
                title=c.title,
                source_uri=c.source_uri,
                snippet=c.snippet,
                score=c.score,
            )
            for c in result.citations
        ],
        grounded=result.grounded,
        stats=stats,
        token_usage=result.token_usage,
    )
