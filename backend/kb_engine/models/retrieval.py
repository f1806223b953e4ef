"""Retrieval data models."""
from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class SearchHit:
    """A row returned by vector or keyword search."""

    doc_id: str
    chunk_idx: int
    content: str
    score: float
    title: Optional[str] = None
    source_uri: Optional[str] = None


@dataclass
class RetrievalCandidate:
    """A passage reference with independently normalized sub-scores."""

    doc_id: str
    chunk_idx: int
    content: str
    title: Optional[str] = None
    source_uri: Optional[str] = None
    v_norm: float = 0.0
    k_norm: float = 0.0
    score: float = 0.0

    @property
    def key(self) -> str:
        return f"{self.doc_id}#{self.chunk_idx}"


@dataclass(frozen=True)
class RetrievedChunk:
    """A ranked passage returned to callers."""

    doc_id: str
    chunk_idx: int
    title: Optional[str]
    content: str
    source_uri: Optional[str]
    score: float
    v_norm: float
    k_norm: float


@dataclass(frozen=True)
class RetrievalStats:
    """Timing breakdown in milliseconds."""

    vector_ms: float = 0.0
    keyword_ms: float = 0.0
    rerank_ms: float = 0.0


@dataclass(frozen=True)
class RetrievalResult:
    """Chunks plus stats for one retrieval call."""

    chunks: List[RetrievedChunk] = field(default_factory=list)
    stats: RetrievalStats = field(default_factory=RetrievalStats)


@dataclass(frozen=True)
class RetrievalStrategy:
    """Configuration-derived choices fixed at the start of a retrieval call."""

    k: int
    search_limit: int
    hybrid: bool
    rerank_enabled: bool
    rerank_forced: bool
    rerank_window: int
    rerank_trigger: float
    doc_cap: int

    @property
    def name(self) -> str:
        mode = "hybrid" if self.hybrid else "vector"
        if not self.rerank_enabled:
            return mode
        return f"{mode}+rerank" if self.rerank_forced else f"{mode}+rerank_on_low_confidence"

    def should_rerank(self, top_score: Optional[float]) -> bool:
        if not self.rerank_enabled or top_score is None:
            return False
        return self.rerank_forced or top_score < self.rerank_trigger
