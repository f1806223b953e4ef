"""Document ingestion: validate, extract, chunk, embed and replace passages."""
import asyncio
import time
import uuid
from typing import List, Optional

from kb_engine.exceptions import (
    DocumentNotFoundError,
    EmbeddingError,
    ExtractionError,
    ProcessingError,
    StorageError,
)
from kb_engine.models.document import Document, DocumentStatus, ExtractionResult, Passage, TextChunk
from kb_engine.services.chunker import Chunker
from kb_engine.services.document_repository import DocumentRepository
from kb_engine.services.embedding_service import EmbeddingService
from kb_engine.services.passage_store import PassageStore
from kb_engine.services.retrieval_cache import RetrievalCache
from kb_engine.services.tenant_settings import TenantSettingsProvider
from kb_engine.services.text_extractor import TextExtractor, hash_content
from kb_engine.utils.logger import logger
from kb_engine.utils.metrics import INGESTED_PASSAGES, INGESTIONS
from kb_engine.utils.tracer import get_tracer
from kb_engine.validators import validate_upload


tracer = get_tracer(__name__)


class IngestionService:
    """Turns uploaded files into searchable passages and tracks document lifecycle."""

    def __init__(
        self,
        text_extractor: TextExtractor,
        chunker: Chunker,
        embedding_service: EmbeddingService,
        passage_store: PassageStore,
        repository: DocumentRepository,
        settings_provider: TenantSettingsProvider,
        cache: Optional[RetrievalCache] = None,
        max_file_size_mb: float = 20,
    ):
        """
        Initialize ingestion service.

        Args:
            text_extractor: Format-dispatching extractor
            chunker: Token-budgeted chunker
            embedding_service: Embedding client
            passage_store: Passage storage and search backend
            repository: Document record storage
            settings_provider: Per-tenant settings (default allowed roles)
            cache: Retrieval cache to invalidate when a tenant's corpus changes
            max_file_size_mb: Upload size limit
        """
        self.text_extractor = text_extractor
        self.chunker = chunker
        self.embedding_service = embedding_service
        self.passage_store = passage_store
        self.repository = repository
        self.settings_provider = settings_provider
        self.cache = cache
        self.max_file_size_mb = max_file_size_mb

    async def ingest(
        self,
        tenant_id: str,
        content: bytes,
        filename: str,
        allowed_roles: Optional[List[str]] = None,
    ) -> Document:
        """
        Ingest one uploaded file.

        Re-ingesting a title that already exists for the tenant bumps its
        version and replaces all of its passages.

        Args:
            tenant_id: Owning tenant
            content: Raw file bytes
            filename: Original filename (also the document title)
            allowed_roles: Roles stored on every passage (tenant default if omitted)

        Returns:
            The Document record in status ``ready``

        Raises:
            ValidationError: Before any record is created
            ExtractionError, EmbeddingError, StorageError, ProcessingError: After
                the record is marked ``error`` and its passages removed
        """
        file_ext = validate_upload(content, filename, self.max_file_size_mb)
        roles = allowed_roles or list(self.settings_provider.get(tenant_id).default_allowed_roles)

        document = self.repository.get_by_title(tenant_id, filename)
        if document is None:
            document = Document(id=str(uuid.uuid4()), tenant_id=tenant_id, title=filename)
        else:
            document.version += 1
        document.status = DocumentStatus.PROCESSING
        document.error_message = None
        document.file_ext = file_ext
        document.allowed_roles = roles
        self.repository.save(document)

        start_time = time.time()
        log_extra = {"tenant_id": tenant_id, "document_id": document.id, "uploaded_filename": filename}

        with tracer.start_as_current_span("kb.ingest") as span:
            span.set_attribute("kb.tenant_id", tenant_id)
            span.set_attribute("kb.document_id", document.id)
            try:
                extraction = await asyncio.to_thread(self.text_extractor.extract, content, filename)
                document.content_hash = hash_content(extraction.text)

                chunks = self._chunk(extraction)
                if not chunks:
                    raise ExtractionError("No extractable text content")

                embeddings = await self.embedding_service.embed_texts([c.content for c in chunks])
                if len(embeddings) != len(chunks):
                    raise EmbeddingError("Embedding generation failed: mismatched batch sizes")

                passages = [
                    Passage(
                        doc_id=document.id,
                        chunk_idx=idx,
                        content=chunk.content,
                        embedding=embedding,
                        title=chunk.title,
                        allowed_roles=roles,
                        metadata={"section_index": chunk.section_index, "file_ext": file_ext, **chunk.metadata},
                    )
                    for idx, (chunk, embedding) in enumerate(zip(chunks, embeddings))
                ]
                await asyncio.to_thread(self._replace_passages, tenant_id, document.id, passages)

            except (ExtractionError, EmbeddingError, StorageError) as e:
                self._mark_failed(document, e)
                INGESTIONS.labels(status="error").inc()
                raise
            except asyncio.CancelledError:
                self._mark_failed(document, ProcessingError("Ingestion was cancelled"))
                INGESTIONS.labels(status="error").inc()
                raise
            except Exception as e:
                error = ProcessingError(f"Document processing failed: {str(e)}")
                self._mark_failed(document, error)
                INGESTIONS.labels(status="error").inc()
                raise error from e

        document.status = DocumentStatus.READY
        document.passage_count = len(passages)
        self.repository.save(document)
        self._invalidate(tenant_id)

        INGESTIONS.labels(status="ready").inc()
        INGESTED_PASSAGES.inc(len(passages))
        logger.info(
            f"Document ingested: {document.id}",
            extra={
                **log_extra,
                "status": document.status.value,
                "version": document.version,
                "passage_count": len(passages),
                "processing_time_seconds": round(time.time() - start_time, 3),
            },
        )
        return document

    def _chunk(self, extraction: ExtractionResult) -> List[TextChunk]:
        if extraction.layout is not None:
            return self.chunker.chunk_lines(extraction.layout.lines, extraction.layout.kv_candidates)
        return self.chunker.chunk_sections(extraction.sections)

    def _replace_passages(self, tenant_id: str, doc_id: str, passages: List[Passage]) -> None:
        self.passage_store.delete_document(tenant_id, doc_id)
        self.passage_store.insert_passages(tenant_id, passages)

    def _mark_failed(self, document: Document, error: Exception) -> None:
        """Remove any passages of the document and record the failure."""
        try:
            self.passage_store.delete_document(document.tenant_id, document.id)
        except StorageError as cleanup_error:
            logger.warning(f"Cleanup of passages for {document.id} failed: {str(cleanup_error)}")
        document.status = DocumentStatus.ERROR
        document.error_message = str(error)
        document.passage_count = 0
        self.repository.save(document)
        self._invalidate(document.tenant_id)
        logger.error(
            f"Document ingestion failed: {str(error)}",
            extra={"tenant_id": document.tenant_id, "document_id": document.id, "status": document.status.value},
        )

    def _invalidate(self, tenant_id: str) -> None:
        if self.cache is not None:
            self.cache.invalidate_tenant(tenant_id)

    def delete_document(self, tenant_id: str, doc_id: str) -> None:
        """
        Delete a document's passages, then its record.

        Raises:
            DocumentNotFoundError: If the document does not exist for the tenant
        """
        if self.repository.get(tenant_id, doc_id) is None:
            raise DocumentNotFoundError(f"Document {doc_id} not found")
        self.passage_store.delete_document(tenant_id, doc_id)
        self.repository.delete(tenant_id, doc_id)
        self._invalidate(tenant_id)
        logger.info(f"Document deleted: {doc_id}", extra={"tenant_id": tenant_id, "document_id": doc_id})

    def list_documents(self, tenant_id: str) -> List[Document]:
        return self.repository.list_for_tenant(tenant_id)

    def get_document(self, tenant_id: str, doc_id: str) -> Document:
        document = self.repository.get(tenant_id, doc_id)
        if document is None:
            raise DocumentNotFoundError(f"Document {doc_id} not found")
        return document
