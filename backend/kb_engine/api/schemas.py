"""Pydantic schemas for API requests and responses."""
import re
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


def _strip_control_characters(v: str) -> str:
    # Keep \n, \t and \r
    cleaned = re.sub(r"[\x00-\x08\x0B-\x0C\x0E-\x1F\x7F]", "", v).strip()
    if not cleaned:
        raise ValueError("Text cannot be empty after cleaning")
    return cleaned


class DocumentResponse(BaseModel):
    """A tenant document record."""

    id: str
    title: str
    status: str
    version: int
    content_hash: Optional[str] = None
    error_message: Optional[str] = None
    file_ext: Optional[str] = None
    allowed_roles: List[str] = Field(default_factory=list)
    passage_count: int = 0
    created_at: datetime
    updated_at: datetime


class DocumentListResponse(BaseModel):
    documents: List[DocumentResponse]


class RetrieveRequest(BaseModel):
    """Request schema for hybrid retrieval."""

    query: str = Field(..., min_length=1, description="Free-text query")
    k: Optional[int] = Field(None, ge=1, le=50, description="Number of passages to return")
    use_rerank: bool = Field(False, description="Force a rerank pass")
    bypass_cache: bool = Field(False, description="Skip the retrieval cache")

    @field_validator("query")
    @classmethod
    def clean_query(cls, v: str) -> str:
        return _strip_control_characters(v)


class RetrievedChunkResponse(BaseModel):
    doc_id: str
    chunk_idx: int
    title: Optional[str] = None
    content: str
    source_uri: Optional[str] = None
    score: float
    v_norm: float
    k_norm: float


class RetrievalStatsResponse(BaseModel):
    vector_ms: float
    keyword_ms: float
    rerank_ms: float


class RetrieveResponse(BaseModel):
    """Response schema for retrieval."""

    chunks: List[RetrievedChunkResponse]
    stats: RetrievalStatsResponse


class PreviewRequest(BaseModel):
    query: str = Field("", description="Search text; empty returns no results")
    k: Optional[int] = Field(None, description="Result count, clamped to 1..5")


class PreviewHitResponse(BaseModel):
    doc_id: str
    title: str
    snippet: str
    score: float
    source_uri: Optional[str] = None


class PreviewResponse(BaseModel):
    results: List[PreviewHitResponse]


class AskRequest(BaseModel):
    """Request schema for asking questions."""

    question: str = Field(..., min_length=1, description="User's question")
    use_rerank: bool = Field(False, description="Force a rerank pass")

    @field_validator("question")
    @classmethod
    def clean_question(cls, v: str) -> str:
        """
        Clean question by removing invalid control characters.

        Args:
            v: Raw question string

        Returns:
            Cleaned question string
        """
        return _strip_control_characters(v)


class CitationResponse(BaseModel):
    doc_id: str
    chunk_idx: int
    title: Optional[str] = None
    source_uri: Optional[str] = None
    snippet: str
    score: float


class AskResponse(BaseModel):
    """Response schema for question answering."""

    answer: str = Field(..., description="Grounded answer, clarification or not-found message")
    citations: List[CitationResponse] = Field(default_factory=list)
    grounded: bool = Field(False, description="Whether the answer was synthesized from passages")
    stats: Optional[RetrievalStatsResponse] = None
    token_usage: Optional[Dict[str, int]] = Field(None, description="Token usage statistics")
