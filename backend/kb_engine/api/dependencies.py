"""Shared request dependencies and error mapping for API routes."""
from fastapi import Header, HTTPException

from kb_engine.exceptions import (
    DocumentNotFoundError,
    EmbeddingError,
    ExtractionError,
    KnowledgeBaseError,
    ProcessingError,
    SearchBackendError,
    ServiceUnavailableError,
    StorageError,
    ValidationError,
)
from kb_engine.utils.logger import logger


def get_tenant_id(x_tenant_id: str = Header(..., min_length=1, max_length=128)) -> str:
    """Opaque tenant id supplied by the caller."""
    tenant_id = x_tenant_id.strip()
    if not tenant_id:
        raise HTTPException(status_code=400, detail="X-Tenant-Id header is required")
    return tenant_id


def to_http_exception(e: KnowledgeBaseError) -> HTTPException:
    """Convert a typed knowledge base error to an HTTP response."""
    if isinstance(e, ValidationError):
        return HTTPException(status_code=400, detail=str(e))
    elif isinstance(e, ExtractionError):
        return HTTPException(status_code=422, detail=str(e))
    elif isinstance(e, ProcessingError):
        logger.error(f"Document processing error: {str(e)}")
        return HTTPException(status_code=500, detail="Failed to process document")
    elif isinstance(e, DocumentNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    elif isinstance(e, EmbeddingError):
        logger.error(f"Embedding provider error: {str(e)}")
        return HTTPException(status_code=502, detail="Embedding provider unavailable")
    elif isinstance(e, SearchBackendError):
        logger.error(f"Search backend error: {str(e)}")
        return HTTPException(status_code=502, detail="Search backend unavailable")
    elif isinstance(e, StorageError):
        return HTTPException(status_code=500, detail=str(e))
    elif isinstance(e, ServiceUnavailableError):
        return HTTPException(status_code=503, detail=str(e))
    logger.error(f"Unhandled knowledge base error: {str(e)}", exc_info=True)
    return HTTPException(status_code=500, detail="Internal error")
