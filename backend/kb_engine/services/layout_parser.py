"""Layout-aware PDF parsing: reading order and key/value detection from positioned words."""
import io
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import pdfplumber

from kb_engine.exceptions import ExtractionError
from kb_engine.models.document import (
    BoundingBox,
    KeyValueCandidate,
    LayoutResult,
    Line,
    PositionedToken,
)
from kb_engine.utils.logger import logger


# Strict label: "Invoice No:", "Total#", "No.", "ID", "Ref"
LABEL_RE = re.compile(r"[:#]$|^(?:No\.?|ID|Ref)\.?$")
# Loose label used only when deciding whether to insert ": "
LABEL_LIKE_RE = re.compile(r"[:#]$|^(?:\w{2,}|No\.?|ID|Ref)\.?$")
VALUE_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9 \-/.]*$")
LABEL_SUFFIX_RE = re.compile(r"[:#]$")
WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class LayoutThresholds:
    """Empirically tuned layout heuristics, in PDF units or font-size multiples."""

    line_band_ratio: float = 0.6
    line_band_min: float = 2.0
    split_gap_ratio: float = 3.0
    split_gap_min: float = 20.0
    space_gap_ratio: float = 0.25
    space_gap_min: float = 2.0
    column_gap_ratio: float = 0.5
    column_gap_min: float = 10.0
    kv_label_gap_ratio: float = 5.0
    kv_chain_gap_ratio: float = 0.8
    max_kv_candidates: int = 1000
    word_x_tolerance: float = 1.5


DEFAULT_THRESHOLDS = LayoutThresholds()


def looks_like_label(text: str) -> bool:
    return bool(LABEL_RE.search(text.strip()))


def looks_like_value(text: str) -> bool:
    """Alphanumeric run containing a digit or an uppercase letter."""
    s = text.strip()
    if not s or not VALUE_RE.match(s):
        return False
    return any(c.isdigit() for c in s) or any("A" <= c <= "Z" for c in s)


def normalize_spaces(text: str) -> str:
    return WHITESPACE_RE.sub(" ", text).strip()


def _gap(prev: PositionedToken, token: PositionedToken) -> float:
    return token.x - prev.right


def _average_font(tokens: List[PositionedToken]) -> float:
    return sum(t.font_size for t in tokens) / max(1, len(tokens))


def _union_bbox(boxes: List[BoundingBox]) -> BoundingBox:
    result = boxes[0]
    for box in boxes[1:]:
        result = result.union(box)
    return result


class LayoutParser:
    """Reconstructs reading order from unordered positioned text fragments."""

    def __init__(self, thresholds: Optional[LayoutThresholds] = None):
        """
        Initialize layout parser.

        Args:
            thresholds: Heuristic thresholds (defaults to DEFAULT_THRESHOLDS)
        """
        self.thresholds = thresholds or DEFAULT_THRESHOLDS

    def parse(self, content: bytes) -> LayoutResult:
        """
        Parse PDF bytes into ordered lines and key/value candidates.

        Raises:
            ExtractionError: If the PDF cannot be read or has no text
        """
        tokens, page_count = self.extract_tokens(content)
        result = self.parse_tokens(tokens, page_count)
        if not result.text.strip():
            raise ExtractionError("No extractable text content")
        logger.info(
            f"Parsed PDF layout: {page_count} pages, {len(result.lines)} lines, "
            f"{len(result.kv_candidates)} key/value candidates"
        )
        return result

    def extract_tokens(self, content: bytes) -> Tuple[List[PositionedToken], int]:
        """Read positioned words from every page with pdfplumber."""
        tokens: List[PositionedToken] = []
        try:
            with pdfplumber.open(io.BytesIO(content)) as pdf:
                page_count = len(pdf.pages)
                for page_number, page in enumerate(pdf.pages, 1):
                    words = page.extract_words(
                        keep_blank_chars=True,
                        x_tolerance=self.thresholds.word_x_tolerance,
                        extra_attrs=["size"],
                    )
                    for word in words:
                        text = word["text"].replace("\x00", "")
                        if not text.strip():
                            continue
                        tokens.append(
                            PositionedToken(
                                text=text,
                                page=page_number,
                                x=float(word["x0"]),
                                y=float(word["top"]),
                                w=float(word["x1"]) - float(word["x0"]),
                                h=float(word["bottom"]) - float(word["top"]),
                                font_size=max(1.0, abs(float(word.get("size") or 0))),
                            )
                        )
        except Exception as e:
            logger.error(f"Error reading PDF: {str(e)}")
            raise ExtractionError(f"Failed to process PDF file: {str(e)}")

        return tokens, page_count

    def parse_tokens(self, tokens: List[PositionedToken], page_count: int = 0) -> LayoutResult:
        """Run line grouping, column ordering and key/value detection over tokens."""
        lines = self.group_lines(tokens)
        lines = self.order_columns(lines)
        kv_candidates = self.detect_kv_candidates(lines)
        text = "\n".join(line.text for line in lines)
        pages = page_count or max((t.page for t in tokens), default=0)
        return LayoutResult(lines=lines, text=text, page_count=pages, kv_candidates=kv_candidates)

    def group_lines(self, tokens: List[PositionedToken]) -> List[Line]:
        """Cluster tokens into lines by vertical band, then split on large label gaps."""
        by_page: Dict[int, List[PositionedToken]] = {}
        for token in tokens:
            by_page.setdefault(token.page, []).append(token)

        lines: List[Line] = []
        for page in sorted(by_page):
            page_tokens = sorted(by_page[page], key=lambda t: (t.y, t.x))
            band = max(
                self.thresholds.line_band_min,
                self.thresholds.line_band_ratio * _average_font(page_tokens),
            )

            groups: List[List[PositionedToken]] = []
            for token in page_tokens:
                if groups and abs(token.y - groups[-1][0].y) <= band:
                    groups[-1].append(token)
                else:
                    groups.append([token])

            for group in groups:
                group.sort(key=lambda t: t.x)
                for part in self.split_line(group):
                    lines.append(self.build_line(page, part))

        return lines

    def split_line(self, tokens: List[PositionedToken]) -> List[List[PositionedToken]]:
        """
        Split a vertical band where an unrelated fragment starts after a large gap.

        A new line starts when the gap exceeds the split threshold and either the
        fragment looks like a label or the fragment before the gap is not a label
        still waiting for its value.
        """
        if not tokens:
            return []
        big_gap = max(
            self.thresholds.split_gap_min,
            self.thresholds.split_gap_ratio * _average_font(tokens),
        )

        parts: List[List[PositionedToken]] = [[tokens[0]]]
        for prev, token in zip(tokens, tokens[1:]):
            if _gap(prev, token) > big_gap and (
                looks_like_label(token.text) or not looks_like_label(prev.text)
            ):
                parts.append([token])
            else:
                parts[-1].append(token)
        return parts

    def build_line(self, page: int, tokens: List[PositionedToken]) -> Line:
        return Line(
            page=page,
            tokens=list(tokens),
            text=self.join_tokens(tokens),
            bbox=_union_bbox([t.bbox for t in tokens]),
        )

    def join_tokens(self, tokens: List[PositionedToken]) -> str:
        """Join tokens using horizontal gaps, restoring ': ' between label and value."""
        if not tokens:
            return ""
        small_gap = max(
            self.thresholds.space_gap_min,
            self.thresholds.space_gap_ratio * _average_font(tokens),
        )

        pieces = [tokens[0].text]
        for prev, token in zip(tokens, tokens[1:]):
            if _gap(prev, token) > small_gap:
                prev_text = prev.text.strip()
                if (
                    LABEL_LIKE_RE.search(prev_text)
                    and not prev_text.endswith(":")
                    and looks_like_value(token.text)
                ):
                    pieces.append(": ")
                else:
                    pieces.append(" ")
            pieces.append(token.text)

        return normalize_spaces("".join(pieces))

    def order_columns(self, lines: List[Line]) -> List[Line]:
        """Order each page column by column, left to right, top to bottom."""
        by_page: Dict[int, List[Line]] = {}
        for line in lines:
            by_page.setdefault(line.page, []).append(line)

        ordered: List[Line] = []
        for page in sorted(by_page):
            page_lines = sorted(by_page[page], key=lambda l: l.bbox.x)
            avg_width = sum(l.bbox.w for l in page_lines) / max(1, len(page_lines))
            column_gap = max(
                self.thresholds.column_gap_min,
                self.thresholds.column_gap_ratio * avg_width,
            )

            columns: List[List[Line]] = []
            for line in page_lines:
                for column in columns:
                    if abs(column[0].bbox.x - line.bbox.x) <= column_gap:
                        column.append(line)
                        break
                else:
                    columns.append([line])

            columns.sort(key=lambda c: c[0].bbox.x)
            for column in columns:
                column.sort(key=lambda l: (l.bbox.y, l.bbox.x))
                ordered.extend(column)

        return ordered

    def detect_kv_candidates(self, lines: List[Line]) -> List[KeyValueCandidate]:
        """Find label tokens immediately followed by a run of value-like tokens."""
        limit = self.thresholds.max_kv_candidates
        candidates: List[KeyValueCandidate] = []

        for line in lines:
            tokens = line.tokens
            i = 0
            while i < len(tokens) - 1:
                label_token, first = tokens[i], tokens[i + 1]
                if not (
                    looks_like_label(label_token.text)
                    and _gap(label_token, first)
                    < self.thresholds.kv_label_gap_ratio * label_token.font_size
                    and looks_like_value(first.text)
                ):
                    i += 1
                    continue

                value_tokens = [first]
                j = i + 2
                while j < len(tokens):
                    prev = value_tokens[-1]
                    if _gap(prev, tokens[j]) <= self.thresholds.kv_chain_gap_ratio * prev.font_size and looks_like_value(
                        tokens[j].text
                    ):
                        value_tokens.append(tokens[j])
                        j += 1
                    else:
                        break

                candidates.append(
                    KeyValueCandidate(
                        label=LABEL_SUFFIX_RE.sub("", label_token.text.strip()).strip(),
                        value=normalize_spaces(" ".join(t.text for t in value_tokens)),
                        page=line.page,
                        label_bbox=label_token.bbox,
                        value_bboxes=[t.bbox for t in value_tokens],
                    )
                )
                if len(candidates) >= limit:
                    return candidates
                i = j

        return candidates
