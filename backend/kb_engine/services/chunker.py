"""Token-budgeted chunking of sections and layout lines."""
import re
from typing import List

from kb_engine.models.document import (
    BoundingBox,
    KeyValueCandidate,
    Line,
    Section,
    TextChunk,
)
from kb_engine.utils.logger import logger


CHARS_PER_TOKEN = 4
# A sentence cut is only taken past this share of the window
SENTENCE_CUT_MIN_RATIO = 0.6


class Chunker:
    """Splits extracted content into overlapping, token-budgeted chunks."""

    def __init__(self, target_tokens: int = 1000, overlap_tokens: int = 120):
        """
        Initialize chunker.

        Args:
            target_tokens: Approximate chunk size in tokens
            overlap_tokens: Approximate overlap between consecutive chunks in tokens
        """
        if target_tokens <= 0:
            raise ValueError("target_tokens must be positive")
        self.target_tokens = target_tokens
        self.overlap_tokens = overlap_tokens

    @property
    def max_chars(self) -> int:
        return self.target_tokens * CHARS_PER_TOKEN

    @property
    def overlap_chars(self) -> int:
        # Overlap must stay below the window or the window never advances
        overlap = max(0, self.overlap_tokens * CHARS_PER_TOKEN)
        return min(overlap, self.max_chars - 1)

    def split_text(self, text: str) -> List[str]:
        """Split one block of text with a sliding, sentence-aware window."""
        text = re.sub(r"\s+", " ", text).strip()
        if not text:
            return []

        max_chars = self.max_chars
        if len(text) <= max_chars:
            return [text]

        overlap = self.overlap_chars
        pieces: List[str] = []
        start = 0
        while start < len(text):
            end = min(start + max_chars, len(text))
            window = text[start:end]
            if end < len(text):
                last_period = window.rfind(". ")
                if last_period > max_chars * SENTENCE_CUT_MIN_RATIO:
                    window = window[: last_period + 1]

            piece = window.strip()
            if piece:
                pieces.append(piece)
            if start + len(window) >= len(text):
                break

            next_start = max(0, start + len(window) - overlap)
            start = next_start if next_start > start else start + len(window)

        return pieces

    def chunk_sections(self, sections: List[Section]) -> List[TextChunk]:
        """
        Chunk titled sections.

        Args:
            sections: Sections in document order

        Returns:
            Chunks carrying their section title and section_index
        """
        chunks: List[TextChunk] = []
        section_index = 0
        for section in sections:
            pieces = self.split_text(section.text)
            if not pieces:
                continue
            for piece in pieces:
                chunks.append(TextChunk(content=piece, section_index=section_index, title=section.title))
            section_index += 1

        logger.debug(f"Chunked {len(sections)} sections into {len(chunks)} chunks")
        return chunks

    def chunk_lines(self, lines: List[Line], kv_candidates: List[KeyValueCandidate]) -> List[TextChunk]:
        """
        Pack ordered layout lines into chunks with page and bounding-box metadata.

        A line longer than the budget becomes a chunk of its own.
        """
        max_chars = self.max_chars
        chunks: List[TextChunk] = []
        buffer: List[Line] = []
        chars = 0

        def flush() -> None:
            if not buffer:
                return
            pages = [line.page for line in buffer]
            page_start, page_end = min(pages), max(pages)
            bbox_union: BoundingBox = buffer[0].bbox
            for line in buffer[1:]:
                bbox_union = bbox_union.union(line.bbox)
            chunks.append(
                TextChunk(
                    content="\n".join(line.text for line in buffer),
                    section_index=len(chunks),
                    metadata={
                        "page_start": page_start,
                        "page_end": page_end,
                        "bbox_union": bbox_union.to_dict(),
                        "kv_candidates": [
                            kv.to_dict() for kv in kv_candidates if page_start <= kv.page <= page_end
                        ],
                        "line_bboxes": [{"page": line.page, "bbox": line.bbox.to_dict()} for line in buffer],
                    },
                )
            )
            buffer.clear()

        for line in lines:
            if not line.text.strip():
                continue
            line_chars = len(line.text) + 1
            if chars + line_chars > max_chars and buffer:
                flush()
                chars = 0
            buffer.append(line)
            chars += line_chars
        flush()

        logger.debug(f"Chunked {len(lines)} layout lines into {len(chunks)} chunks")
        return chunks
