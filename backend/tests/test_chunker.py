"""Tests for the chunker."""
import pytest

from kb_engine.models.document import BoundingBox, KeyValueCandidate, Line, Section
from kb_engine.services.chunker import Chunker


def make_line(text, page, x, y, w, h=10.0):
    return Line(page=page, tokens=[], text=text, bbox=BoundingBox(x, y, w, h))


class TestSplitText:
    def test_short_text_is_one_chunk(self):
        assert Chunker(target_tokens=100).split_text("  a   short\ntext ") == ["a short text"]

    def test_sliding_window_with_overlap(self):
        text = "abcdefghij" * 10
        pieces = Chunker(target_tokens=10, overlap_tokens=2).split_text(text)
        assert pieces == [text[0:40], text[32:72], text[64:100]]

    def test_cuts_after_sentence_past_sixty_percent(self):
        text = "A" * 30 + ". " + "B" * 30
        pieces = Chunker(target_tokens=10, overlap_tokens=2).split_text(text)
        assert pieces[0] == "A" * 30 + "."
        assert pieces[1] == "A" * 7 + ". " + "B" * 30

    def test_pieces_cover_the_whole_text(self):
        text = " ".join(f"word{i}." for i in range(300))
        pieces = Chunker(target_tokens=25, overlap_tokens=5).split_text(text)
        assert len(pieces) > 1
        assert text.startswith(pieces[0])
        assert text.endswith(pieces[-1])
        assert all(len(p) <= 100 for p in pieces)
        for i in range(300):
            assert any(f"word{i}." in p for p in pieces)

    def test_overlap_larger_than_budget_still_advances(self):
        chunker = Chunker(target_tokens=1, overlap_tokens=5)
        assert chunker.overlap_chars == 3
        pieces = chunker.split_text("abcdefghij")
        assert pieces[0] == "abcd"
        assert pieces[-1] == "ghij"
        assert len(pieces) == 7

    def test_negative_overlap_is_zero(self):
        assert Chunker(target_tokens=10, overlap_tokens=-5).overlap_chars == 0

    def test_non_positive_target_rejected(self):
        with pytest.raises(ValueError):
            Chunker(target_tokens=0)


class TestChunkSections:
    def test_titles_and_section_index(self):
        sections = [
            Section(text="   ", title="Empty"),
            Section(text="alpha   beta", title="A"),
            Section(text="gamma", title=None),
        ]
        chunks = Chunker().chunk_sections(sections)
        assert [(c.content, c.title, c.section_index) for c in chunks] == [
            ("alpha beta", "A", 0),
            ("gamma", None, 1),
        ]

    def test_long_section_keeps_index_across_pieces(self):
        chunks = Chunker(target_tokens=10, overlap_tokens=0).chunk_sections([Section(text="x" * 100, title="T")])
        assert len(chunks) == 3
        assert {c.section_index for c in chunks} == {0}
        assert {c.title for c in chunks} == {"T"}


class TestChunkLines:
    def test_packs_lines_with_layout_metadata(self):
        lines = [
            make_line("line one", 1, 50, 100, 40),
            make_line("line two", 1, 60, 115, 40),
            make_line("line three", 2, 50, 100, 50),
        ]
        kv = [
            KeyValueCandidate("Total", "42", 2, BoundingBox(50, 100, 20, 10), [BoundingBox(75, 100, 10, 10)]),
            KeyValueCandidate("Ref", "A1", 3, BoundingBox(50, 100, 20, 10), [BoundingBox(75, 100, 10, 10)]),
        ]
        chunks = Chunker(target_tokens=5).chunk_lines(lines, kv)

        assert [c.content for c in chunks] == ["line one\nline two", "line three"]
        assert [c.section_index for c in chunks] == [0, 1]

        first = chunks[0].metadata
        assert first["page_start"] == 1 and first["page_end"] == 1
        assert first["bbox_union"] == {"x": 50, "y": 100, "w": 50, "h": 25}
        assert first["kv_candidates"] == []
        assert first["line_bboxes"][1] == {"page": 1, "bbox": {"x": 60, "y": 115, "w": 40, "h": 10}}

        second = chunks[1].metadata
        assert second["page_start"] == 2
        assert [c["label"] for c in second["kv_candidates"]] == ["Total"]

    def test_oversized_line_is_its_own_chunk(self):
        lines = [make_line("short", 1, 0, 0, 10), make_line("x" * 50, 1, 0, 20, 100), make_line("tail", 1, 0, 40, 10)]
        chunks = Chunker(target_tokens=5).chunk_lines(lines, [])
        assert [c.content for c in chunks] == ["short", "x" * 50, "tail"]

    def test_blank_lines_are_skipped(self):
        chunks = Chunker().chunk_lines([make_line("  ", 1, 0, 0, 10)], [])
        assert chunks == []
