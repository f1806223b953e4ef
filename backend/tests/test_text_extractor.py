"""Tests for format-specific text extraction."""
import hashlib
import io
from unittest.mock import Mock

import pytest
from docx import Document as DocxDocument

from kb_engine.exceptions import ExtractionError, UnsupportedFileTypeError, ValidationError
from kb_engine.models.document import LayoutResult, Section
from kb_engine.services.layout_parser import LayoutParser
from kb_engine.services.text_extractor import (
    TextExtractor,
    get_file_extension,
    hash_content,
    split_by_headings,
    strip_markdown,
)


@pytest.fixture
def extractor():
    return TextExtractor()


class TestHelpers:
    def test_get_file_extension(self):
        assert get_file_extension("Report.PDF") == "pdf"
        assert get_file_extension("notes") == ""
        assert get_file_extension("archive.tar.md") == "md"

    def test_hash_content_is_sha256_of_text(self):
        assert hash_content("hello") == hashlib.sha256(b"hello").hexdigest()

    def test_split_by_blank_lines(self):
        sections = split_by_headings("First block\ncontinues.\n\nSecond block.")
        assert sections == [Section(text="First block\ncontinues."), Section(text="Second block.")]

    def test_markdown_headings_become_titles(self):
        sections = split_by_headings("# Intro\nHello.\n\n## Next\nWorld.", markdown=True)
        assert [(s.title, s.text) for s in sections] == [("Intro", "Hello."), ("Next", "World.")]

    def test_single_section_fallback(self):
        assert split_by_headings("  just text  ") == [Section(text="just text")]

    def test_strip_markdown(self):
        text = strip_markdown("Some **bold**, `code` and ![alt](img.png) with [a link](http://x).\n> quoted")
        assert text == "Some bold, code and alt with a link.\nquoted"


class TestTextExtractor:
    def test_markdown(self, extractor):
        content = b"# Intro\nSome **bold** text and a [link](http://x).\n\n## Details\n- item one\n- item two\n"
        result = extractor.extract(content, "guide.md")

        assert result.file_ext == "md"
        assert result.layout is None
        assert [(s.title, s.text) for s in result.sections] == [
            ("Intro", "Some bold text and a link."),
            ("Details", "item one\nitem two"),
        ]
        assert "**" not in result.text

    def test_html_skips_scripts_and_styles(self, extractor):
        content = (
            b"<html><head><title>T</title><style>p{color:red}</style></head><body>"
            b"<h1>Guide</h1><p>First para.</p><script>var x = 1;</script><p>Second para.</p>"
            b"<h2>More</h2><ul><li>Item A</li></ul></body></html>"
        )
        result = extractor.extract(content, "page.html")

        assert result.text == "Guide First para. Second para. More Item A"
        assert [(s.title, s.text) for s in result.sections] == [
            ("Guide", "First para.\nSecond para."),
            ("More", "Item A"),
        ]

    def test_txt_removes_nul_and_splits_paragraphs(self, extractor):
        result = extractor.extract(b"Para one line.\n\nPara two.\x00", "notes.txt")
        assert [s.text for s in result.sections] == ["Para one line.", "Para two."]
        assert "\x00" not in result.text

    def test_csv_is_read_as_text(self, extractor):
        result = extractor.extract(b"id,name\n1,Widget\n", "items.csv")
        assert result.text == "id,name\n1,Widget"

    def test_docx_headings_and_tables(self, extractor):
        doc = DocxDocument()
        doc.add_heading("Overview", level=1)
        doc.add_paragraph("Body text here.")
        table = doc.add_table(rows=1, cols=2)
        table.rows[0].cells[0].text = "Cell A"
        table.rows[0].cells[1].text = "Cell B"
        buffer = io.BytesIO()
        doc.save(buffer)

        result = extractor.extract(buffer.getvalue(), "handbook.docx")

        assert [(s.title, s.text) for s in result.sections] == [
            ("Overview", "Body text here."),
            ("Overview", "Cell A\nCell B"),
        ]
        assert "Cell B" in result.text

    def test_corrupt_docx(self, extractor):
        with pytest.raises(ExtractionError):
            extractor.extract(b"not a zip", "broken.docx")

    def test_pdf_uses_layout_parser(self):
        layout_parser = Mock(spec=LayoutParser)
        layout_parser.parse.return_value = LayoutResult(
            lines=[], text="Invoice No: 42\n\nTotal: 10", page_count=1, kv_candidates=[]
        )
        result = TextExtractor(layout_parser).extract(b"%PDF-1.4", "invoice.pdf")

        layout_parser.parse.assert_called_once_with(b"%PDF-1.4")
        assert result.layout is layout_parser.parse.return_value
        assert [s.text for s in result.sections] == ["Invoice No: 42", "Total: 10"]

    def test_unsupported_extension(self, extractor):
        with pytest.raises(UnsupportedFileTypeError) as exc_info:
            extractor.extract(b"MZ", "setup.exe")
        assert isinstance(exc_info.value, ValidationError)

    def test_whitespace_only_file(self, extractor):
        with pytest.raises(ExtractionError, match="No extractable text content"):
            extractor.extract(b"   \n\n  ", "blank.txt")
