"""Text extraction for PDF, DOCX, Markdown, HTML and plain-text uploads."""
import hashlib
import io
import re
from html.parser import HTMLParser
from pathlib import Path
from typing import List, Optional, Tuple

from docx import Document as DocxDocument

from kb_engine.exceptions import ExtractionError, UnsupportedFileTypeError
from kb_engine.models.document import ExtractionResult, Section
from kb_engine.services.layout_parser import LayoutParser
from kb_engine.utils.logger import logger
from kb_engine.utils.text_cleaner import clean_text


MARKDOWN_EXTENSIONS = {"md", "markdown"}
HTML_EXTENSIONS = {"html", "htm"}
TEXT_EXTENSIONS = {"txt", "csv", "json", "log"}
SUPPORTED_EXTENSIONS = {"pdf", "docx"} | MARKDOWN_EXTENSIONS | HTML_EXTENSIONS | TEXT_EXTENSIONS

MD_HEADING_RE = re.compile(r"^(#{1,6})\s+(.*)$")


def get_file_extension(filename: str) -> str:
    """Lowercase extension without the dot ('' when missing)."""
    return Path(filename or "").suffix.lower().lstrip(".")


def hash_content(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def split_by_headings(text: str, markdown: bool = False) -> List[Section]:
    """
    Split text into sections at blank lines (and Markdown headings).

    Args:
        text: Text to split
        markdown: Treat '#'..'######' lines as section titles

    Returns:
        Sections in document order; the whole text as one section if none found
    """
    sections: List[Section] = []
    title: Optional[str] = None
    current: List[str] = []

    def push() -> None:
        content = "\n".join(current).strip()
        if content:
            sections.append(Section(text=content, title=title))
        current.clear()

    for line in text.splitlines():
        heading = MD_HEADING_RE.match(line) if markdown else None
        if heading:
            if current:
                push()
            title = heading.group(2).strip()
        elif not line.strip() and current:
            push()
            title = None
        else:
            current.append(line)

    if current:
        push()
    if not sections and text.strip():
        sections.append(Section(text=text.strip()))
    return sections


def strip_markdown(text: str) -> str:
    """Remove Markdown syntax, keeping the readable text."""
    text = re.sub(r"```[^\n]*\n?", "", text)
    text = re.sub(r"!\[([^\]]*)\]\([^)]*\)", r"\1", text)
    text = re.sub(r"\[([^\]]*)\]\([^)]*\)", r"\1", text)
    text = re.sub(r"`([^`]*)`", r"\1", text)
    text = re.sub(r"(\*\*|__)(.+?)\1", r"\2", text)
    text = re.sub(r"(?<![\w*])[*_](?!\s)(.+?)(?<!\s)[*_](?![\w*])", r"\1", text)
    text = re.sub(r"~~(.+?)~~", r"\1", text)
    text = re.sub(r"^\s{0,3}#{1,6}\s+", "", text, flags=re.MULTILINE)
    text = re.sub(r"^\s{0,3}>\s?", "", text, flags=re.MULTILINE)
    text = re.sub(r"^\s*(?:[-*+]|\d+[.)])\s+", "", text, flags=re.MULTILINE)
    text = re.sub(r"^\s*[-*_]{3,}\s*$", "", text, flags=re.MULTILINE)
    text = re.sub(r"^\s*\|?(?:\s*:?-+:?\s*\|)+\s*:?-*:?\s*$", "", text, flags=re.MULTILINE)
    text = text.replace("|", " ")
    return text.strip()


class _OutlineParser(HTMLParser):
    """Collects visible text nodes and a heading/paragraph outline."""

    SKIP_TAGS = {"script", "style", "noscript", "template", "head"}
    HEADING_TAGS = {"h1", "h2", "h3", "h4", "h5", "h6"}
    BLOCK_TAGS = HEADING_TAGS | {"p", "li", "td", "th", "pre", "blockquote"}

    def __init__(self):
        super().__init__(convert_charrefs=True)
        self.parts: List[str] = []
        self.outline: List[Tuple[str, str]] = []
        self._skip_depth = 0
        self._block_stack: List[Tuple[str, List[str]]] = []

    def handle_starttag(self, tag, attrs):
        if tag in self.SKIP_TAGS:
            self._skip_depth += 1
        elif tag in self.BLOCK_TAGS:
            self._block_stack.append((tag, []))

    def handle_endtag(self, tag):
        if tag in self.SKIP_TAGS:
            self._skip_depth = max(0, self._skip_depth - 1)
            return
        if tag not in self.BLOCK_TAGS:
            return
        # Close the innermost matching block; unclosed inner blocks fold into it
        while self._block_stack:
            open_tag, texts = self._block_stack.pop()
            text = " ".join(" ".join(texts).split())
            if open_tag == tag:
                if text:
                    self.outline.append((tag, text))
                break
            if self._block_stack:
                self._block_stack[-1][1].extend(texts)

    def handle_data(self, data):
        if self._skip_depth:
            return
        text = data.strip()
        if not text:
            return
        self.parts.append(text)
        if self._block_stack:
            self._block_stack[-1][1].append(text)

    def close(self):
        super().close()
        while self._block_stack:
            tag, texts = self._block_stack.pop()
            text = " ".join(" ".join(texts).split())
            if text:
                self.outline.append((tag, text))


def split_outline(outline: List[Tuple[str, str]]) -> List[Section]:
    """Group outline blocks under the most recent heading."""
    sections: List[Section] = []
    title: Optional[str] = None
    current: List[str] = []

    for tag, text in outline:
        if tag in _OutlineParser.HEADING_TAGS:
            if current:
                sections.append(Section(text="\n".join(current), title=title))
                current = []
            title = text
        else:
            current.append(text)

    if current:
        sections.append(Section(text="\n".join(current), title=title))
    if not sections and outline:
        sections.append(Section(text="\n".join(text for _, text in outline)))
    return sections


def _decode(content: bytes) -> str:
    return content.decode("utf-8", errors="replace").replace("\x00", "")


def extract_text_from_markdown(content: bytes) -> Tuple[str, List[Section]]:
    raw = _decode(content)
    sections = []
    for section in split_by_headings(raw, markdown=True):
        text = strip_markdown(section.text)
        if text:
            sections.append(Section(text=text, title=section.title))
    return strip_markdown(raw), sections


def extract_text_from_html(content: bytes) -> Tuple[str, List[Section]]:
    parser = _OutlineParser()
    try:
        parser.feed(_decode(content))
        parser.close()
    except Exception as e:
        raise ExtractionError(f"Failed to process HTML file: {str(e)}")
    text = " ".join(" ".join(parser.parts).split())
    return text, split_outline(parser.outline)


def extract_text_from_docx(content: bytes) -> Tuple[str, List[Section]]:
    """
    Extract paragraphs and table cells from a DOCX file.

    Paragraphs styled as headings start a new titled section.
    """
    try:
        doc = DocxDocument(io.BytesIO(content))
    except Exception as e:
        logger.error(f"Error processing DOCX file: {str(e)}")
        raise ExtractionError(f"Failed to process DOCX file: {str(e)}")

    sections: List[Section] = []
    title: Optional[str] = None
    current: List[str] = []
    full_text: List[str] = []

    for paragraph in doc.paragraphs:
        text = paragraph.text.strip()
        if not text:
            continue
        full_text.append(text)
        style_name = paragraph.style.name if paragraph.style is not None else ""
        if style_name.lower().startswith(("heading", "title")):
            if current:
                sections.append(Section(text="\n".join(current), title=title))
                current = []
            title = text
        else:
            current.append(text)

    if current:
        sections.append(Section(text="\n".join(current), title=title))

    cells: List[str] = []
    for table in doc.tables:
        for row in table.rows:
            for cell in row.cells:
                if cell.text.strip() and cell.text.strip() not in cells:
                    cells.append(cell.text.strip())
    if cells:
        full_text.extend(cells)
        sections.append(Section(text="\n".join(cells), title=title))

    return "\n\n".join(full_text), sections


def extract_text_from_txt(content: bytes) -> Tuple[str, List[Section]]:
    text = _decode(content).strip()
    return text, split_by_headings(text)


class TextExtractor:
    """Converts raw file bytes into plain text, a section outline and PDF layout."""

    def __init__(self, layout_parser: Optional[LayoutParser] = None):
        """
        Initialize text extractor.

        Args:
            layout_parser: Parser used for PDFs (default thresholds if omitted)
        """
        self.layout_parser = layout_parser or LayoutParser()

    def extract(self, content: bytes, filename: str) -> ExtractionResult:
        """
        Extract text and sections from a file.

        Args:
            content: Raw file bytes
            filename: Original filename, used for format dispatch

        Returns:
            ExtractionResult with text, sections and (for PDFs) layout

        Raises:
            UnsupportedFileTypeError: If the extension is not supported
            ExtractionError: If the file cannot be read or has no text
        """
        file_ext = get_file_extension(filename)
        if file_ext not in SUPPORTED_EXTENSIONS:
            raise UnsupportedFileTypeError(
                f"Unsupported file type: .{file_ext or '?'}. "
                f"Supported: {', '.join('.' + e for e in sorted(SUPPORTED_EXTENSIONS))}"
            )

        layout = None
        if file_ext == "pdf":
            layout = self.layout_parser.parse(content)
            text, sections = layout.text, split_by_headings(layout.text)
        elif file_ext == "docx":
            text, sections = extract_text_from_docx(content)
        elif file_ext in MARKDOWN_EXTENSIONS:
            text, sections = extract_text_from_markdown(content)
        elif file_ext in HTML_EXTENSIONS:
            text, sections = extract_text_from_html(content)
        else:
            text, sections = extract_text_from_txt(content)

        if not clean_text(text):
            raise ExtractionError("No extractable text content")

        logger.info(f"Extracted {len(text)} chars in {len(sections)} sections from {filename}")
        return ExtractionResult(text=text, sections=sections, file_ext=file_ext, layout=layout)
