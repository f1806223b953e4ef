"""Custom exception classes for ingestion and retrieval."""


class KnowledgeBaseError(Exception):
    """Base exception for knowledge base errors."""
    pass


class ValidationError(KnowledgeBaseError):
    """Raised when an uploaded file fails validation."""
    pass


class UnsupportedFileTypeError(ValidationError):
    """Raised when an unsupported file type is encountered."""
    pass


class FileSizeExceededError(ValidationError):
    """Raised when file size exceeds the maximum allowed."""
    pass


class EmptyFileError(ValidationError):
    """Raised when an uploaded file has no bytes."""
    pass


class ProcessingError(KnowledgeBaseError):
    """Raised when document processing fails."""
    pass


class ExtractionError(ProcessingError):
    """Raised when text extraction from a document fails."""
    pass


class EmbeddingError(KnowledgeBaseError):
    """Raised when the embedding provider fails or returns malformed output."""
    pass


class RerankError(KnowledgeBaseError):
    """Raised when the rerank provider fails. Recovered inside retrieval."""
    pass


class SearchBackendError(KnowledgeBaseError):
    """Raised when vector or keyword search fails."""
    pass


class StorageError(KnowledgeBaseError):
    """Raised when storing or deleting passages fails."""
    pass


class DocumentNotFoundError(KnowledgeBaseError):
    """Raised when a document does not exist for the tenant."""
    pass


class ServiceUnavailableError(KnowledgeBaseError):
    """Raised when required services are not available."""
    pass
