"""Document, passage and layout data models."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class DocumentStatus(str, Enum):
    """Lifecycle status of an ingested document."""

    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    ERROR = "error"


@dataclass
class Document:
    """A tenant-scoped document record."""

    id: str
    tenant_id: str
    title: str
    status: DocumentStatus = DocumentStatus.PENDING
    content_hash: Optional[str] = None
    version: int = 1
    error_message: Optional[str] = None
    file_ext: Optional[str] = None
    allowed_roles: List[str] = field(default_factory=list)
    passage_count: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class Passage:
    """A bounded slice of a document stored for retrieval."""

    doc_id: str
    chunk_idx: int
    content: str
    embedding: List[float]
    title: Optional[str] = None
    source_uri: Optional[str] = None
    allowed_roles: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Section:
    """A titled block of plain text produced by extraction."""

    text: str
    title: Optional[str] = None


@dataclass
class BoundingBox:
    """Axis-aligned box in page coordinates (y grows downwards)."""

    x: float
    y: float
    w: float
    h: float

    @property
    def right(self) -> float:
        return self.x + self.w

    @property
    def bottom(self) -> float:
        return self.y + self.h

    def union(self, other: "BoundingBox") -> "BoundingBox":
        x = min(self.x, other.x)
        y = min(self.y, other.y)
        return BoundingBox(
            x=x,
            y=y,
            w=max(self.right, other.right) - x,
            h=max(self.bottom, other.bottom) - y,
        )

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y, "w": self.w, "h": self.h}


@dataclass
class PositionedToken:
    """A text fragment with its position on a page. Never persisted."""

    text: str
    page: int
    x: float
    y: float
    w: float
    h: float
    font_size: float

    @property
    def right(self) -> float:
        return self.x + self.w

    @property
    def bbox(self) -> BoundingBox:
        return BoundingBox(self.x, self.y, self.w, self.h)


@dataclass
class Line:
    """Tokens sharing a vertical band on a page, ordered left to right."""

    page: int
    tokens: List[PositionedToken]
    text: str
    bbox: BoundingBox


@dataclass
class KeyValueCandidate:
    """A label/value pair detected inside a line."""

    label: str
    value: str
    page: int
    label_bbox: BoundingBox
    value_bboxes: List[BoundingBox]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label,
            "value": self.value,
            "page": self.page,
            "bboxes": [self.label_bbox.to_dict()] + [b.to_dict() for b in self.value_bboxes],
        }


@dataclass
class LayoutResult:
    """Reading-ordered output of the PDF layout parser."""

    lines: List[Line]
    text: str
    page_count: int
    kv_candidates: List[KeyValueCandidate]


@dataclass
class ExtractionResult:
    """Plain text, section outline and optional layout for one file."""

    text: str
    sections: List[Section]
    file_ext: str
    layout: Optional[LayoutResult] = None


@dataclass
class TextChunk:
    """A chunk produced by the chunker, before embedding."""

    content: str
    section_index: int
    title: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
