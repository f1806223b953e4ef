"""Tests for the PDF layout parser."""
import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from kb_engine.exceptions import ExtractionError
from kb_engine.models.document import PositionedToken
from kb_engine.services.layout_parser import (
    DEFAULT_THRESHOLDS,
    LayoutParser,
    LayoutThresholds,
    looks_like_label,
    looks_like_value,
)


FIXTURES = Path(__file__).parent / "fixtures"


def make_token(text, x, y, w, page=1, font_size=10.0):
    return PositionedToken(text=text, page=page, x=x, y=y, w=w, h=10.0, font_size=font_size)


def load_fixture(name: str):
    data = json.loads((FIXTURES / name).read_text(encoding="utf-8"))
    tokens = [
        PositionedToken(
            text=t["text"],
            page=t["page"],
            x=float(t["x"]),
            y=float(t["y"]),
            w=float(t["w"]),
            h=float(t["h"]),
            font_size=float(t["font_size"]),
        )
        for t in data["tokens"]
    ]
    return tokens, data["expected"]


def as_golden(result):
    return {
        "text": result.text,
        "page_count": result.page_count,
        "lines": [{"page": line.page, "text": line.text, "bbox": line.bbox.to_dict()} for line in result.lines],
        "kv_candidates": [kv.to_dict() for kv in result.kv_candidates],
    }


class TestGoldenLayouts:
    """Golden outputs for representative pages."""

    @pytest.mark.parametrize("fixture", ["layout_two_column.json", "layout_label_value_form.json"])
    def test_matches_golden(self, fixture):
        tokens, expected = load_fixture(fixture)
        result = LayoutParser().parse_tokens(tokens)
        assert as_golden(result) == expected

    def test_two_column_reads_left_column_first(self):
        tokens, _ = load_fixture("layout_two_column.json")
        result = LayoutParser().parse_tokens(tokens)
        assert result.text.index("Gamma text") < result.text.index("Results")


class TestLabelHeuristics:
    def test_strict_labels(self):
        assert looks_like_label("Invoice No:")
        assert looks_like_label("Total#")
        assert looks_like_label("No.")
        assert looks_like_label("ID")
        assert looks_like_label("Ref")
        assert not looks_like_label("Reference")
        assert not looks_like_label("Date")

    def test_values(self):
        assert looks_like_value("INV-2024-001")
        assert looks_like_value("12/03/2024")
        assert looks_like_value("Acme")
        assert not looks_like_value("lowercase")
        assert not looks_like_value("$100")
        assert not looks_like_value("")


class TestLineSplitting:
    def test_large_gap_between_plain_fragments_splits_line(self):
        tokens = [make_token("left cell", 50, 100, 60), make_token("right cell", 200, 100, 60)]
        result = LayoutParser().parse_tokens(tokens)
        assert [line.text for line in result.lines] == ["left cell", "right cell"]

    def test_strict_label_keeps_distant_value(self):
        tokens = [make_token("Total:", 50, 100, 40), make_token("1,200", 200, 100, 30)]
        result = LayoutParser().parse_tokens(tokens)
        assert [line.text for line in result.lines] == ["Total: 1,200"]

    def test_label_after_gap_starts_new_line(self):
        tokens = [make_token("Total:", 50, 100, 40), make_token("Due:", 200, 100, 30)]
        result = LayoutParser().parse_tokens(tokens)
        assert len(result.lines) == 2

    def test_small_gap_concatenates(self):
        tokens = [make_token("foo", 50, 100, 20), make_token("bar", 71, 100, 20)]
        result = LayoutParser().parse_tokens(tokens)
        assert result.text == "foobar"

    @pytest.mark.parametrize(
        "label, expected",
        [("Acct #", "Acct #: 4521-889"), ("Acct No:", "Acct No: 4521-889"), ("Account", "Account: 4521-889")],
    )
    def test_label_value_separator(self, label, expected):
        tokens = [make_token(label, 50, 100, 30), make_token("4521-889", 90, 100, 45)]
        assert LayoutParser().join_tokens(tokens) == expected

    def test_tokens_within_band_share_a_line(self):
        tokens = [make_token("hello", 50, 100, 30), make_token("world", 85, 103, 30)]
        result = LayoutParser().parse_tokens(tokens)
        assert result.text == "hello world"

    def test_pages_are_ordered(self):
        tokens = [make_token("second page", 50, 100, 60, page=2), make_token("first page", 50, 500, 60, page=1)]
        result = LayoutParser().parse_tokens(tokens)
        assert result.text == "first page\nsecond page"
        assert result.page_count == 2


class TestThresholds:
    def test_defaults(self):
        assert DEFAULT_THRESHOLDS.split_gap_min == 20.0
        assert DEFAULT_THRESHOLDS.kv_label_gap_ratio == 5.0
        assert DEFAULT_THRESHOLDS.max_kv_candidates == 1000

    def test_override_disables_splitting(self):
        tokens, _ = load_fixture("layout_two_column.json")
        parser = LayoutParser(LayoutThresholds(split_gap_min=1000.0))
        result = parser.parse_tokens(tokens)
        assert len(result.lines) == 3

    def test_kv_candidates_capped(self):
        tokens = []
        for row in range(5):
            tokens.append(make_token("ID", 50, 100 + row * 20, 12))
            tokens.append(make_token(f"A{row}", 66, 100 + row * 20, 14))
        parser = LayoutParser(LayoutThresholds(max_kv_candidates=3))
        result = parser.parse_tokens(tokens)
        assert len(result.kv_candidates) == 3
        assert [kv.value for kv in result.kv_candidates] == ["A0", "A1", "A2"]


class TestPdfExtraction:
    def test_corrupt_pdf_raises_extraction_error(self):
        with pytest.raises(ExtractionError):
            LayoutParser().parse(b"not a pdf at all")

    @patch("kb_engine.services.layout_parser.pdfplumber.open")
    def test_extract_tokens_from_words(self, mock_open):
        page = MagicMock()
        page.extract_words.return_value = [
            {"text": "Invoice\x00 No:", "x0": 50, "x1": 105, "top": 100, "bottom": 110, "size": 10},
            {"text": "   ", "x0": 106, "x1": 108, "top": 100, "bottom": 110, "size": 10},
            {"text": "INV-1", "x0": 110, "x1": 140, "top": 100, "bottom": 110, "size": 0},
        ]
        pdf = MagicMock()
        pdf.pages = [page]
        mock_open.return_value.__enter__.return_value = pdf

        tokens, page_count = LayoutParser().extract_tokens(b"%PDF-1.4")

        assert page_count == 1
        assert [t.text for t in tokens] == ["Invoice No:", "INV-1"]
        assert tokens[1].font_size == 1.0
        assert tokens[0].w == 55

    @patch("kb_engine.services.layout_parser.pdfplumber.open")
    def test_image_only_pdf_has_no_text(self, mock_open):
        page = MagicMock()
        page.extract_words.return_value = []
        pdf = MagicMock()
        pdf.pages = [page]
        mock_open.return_value.__enter__.return_value = pdf

        with pytest.raises(ExtractionError, match="No extractable text content"):
            LayoutParser().parse(b"%PDF-1.4")
