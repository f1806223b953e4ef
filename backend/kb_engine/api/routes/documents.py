"""Document upload, listing and deletion endpoints."""
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile

from kb_engine.api.dependencies import get_tenant_id, to_http_exception
from kb_engine.api.schemas import DocumentListResponse, DocumentResponse
from kb_engine.exceptions import KnowledgeBaseError
from kb_engine.models.document import Document
from kb_engine.services.ingestion_service import IngestionService
from kb_engine.utils.logger import logger


router = APIRouter()


def get_ingestion_service() -> IngestionService:
    """Get ingestion service from main app."""
    from kb_engine.main import ingestion_service
    if ingestion_service is None:
        raise HTTPException(status_code=503, detail="Ingestion service not initialized")
    return ingestion_service


def _to_response(document: Document) -> DocumentResponse:
    return DocumentResponse(
        id=document.id,
        title=document.title,
        status=document.status.value,
        version=document.version,
        content_hash=document.content_hash,
        error_message=document.error_message,
        file_ext=document.file_ext,
        allowed_roles=document.allowed_roles,
        passage_count=document.passage_count,
        created_at=document.created_at,
        updated_at=document.updated_at,
    )


def parse_roles(raw: Optional[str]) -> Optional[list]:
    """Comma-separated roles; blank input means the tenant default."""
    if not raw:
        return None
    roles = [role.strip() for role in raw.split(",") if role.strip()]
    return roles or None


@router.post("/documents", response_model=DocumentResponse, status_code=201)
async def upload_document(
    file: Annotated[UploadFile, File(...)],
    allowed_roles: Annotated[Optional[str], Form()] = None,
    tenant_id: str = Depends(get_tenant_id),
    ingestion_service: IngestionService = Depends(get_ingestion_service),
):
    """
    Upload and ingest a document (PDF, DOCX, Markdown, HTML or text).

    Args:
        file: Document file to upload and process
        allowed_roles: Optional comma-separated roles stored on every passage
        tenant_id: Tenant from the X-Tenant-Id header
        ingestion_service: Ingestion service instance

    Returns:
        DocumentResponse for the ready document
    """
    try:
        content = await file.read()
        document = await ingestion_service.ingest(
            tenant_id, content, file.filename or "", allowed_roles=parse_roles(allowed_roles)
        )
        return _to_response(document)

    except KnowledgeBaseError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Unexpected error uploading document: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to process document")


@router.get("/documents", response_model=DocumentListResponse)
async def list_documents(
    tenant_id: str = Depends(get_tenant_id),
    ingestion_service: IngestionService = Depends(get_ingestion_service),
):
    """List the tenant's documents, newest first."""
    documents = ingestion_service.list_documents(tenant_id)
    return DocumentListResponse(documents=[_to_response(d) for d in documents])


@router.delete("/documents/{document_id}", status_code=204)
async def delete_document(
    document_id: str,
    tenant_id: str = Depends(get_tenant_id),
    ingestion_service: IngestionService = Depends(get_ingestion_service),
):
    """Delete a document and all of its passages."""
    try:
        ingestion_service.delete_document(tenant_id, document_id)
    except KnowledgeBaseError as e:
        raise to_http_exception(e)
