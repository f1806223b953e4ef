"""Tests for the Qdrant/BM25 passage store."""
import pytest

from kb_engine.exceptions import StorageError
from kb_engine.models.document import Passage
from kb_engine.services.passage_store import parse_keyword_query


def make_passage(embed, doc_id, chunk_idx, content, title=None):
    return Passage(
        doc_id=doc_id,
        chunk_idx=chunk_idx,
        content=content,
        embedding=embed(content),
        title=title,
        source_uri=f"{doc_id}.txt",
        allowed_roles=["member"],
        metadata={"section_index": chunk_idx},
    )


@pytest.fixture
def seeded_store(passage_store, embed):
    passage_store.insert_passages(
        "tenant-a",
        [
            make_passage(embed, "doc-1", 0, "Your account number is printed on the invoice.", "Billing"),
            make_passage(embed, "doc-1", 1, "Invoices are sent monthly by email."),
            make_passage(embed, "doc-2", 0, "Reset your password from the login page."),
        ],
    )
    passage_store.insert_passages("tenant-b", [make_passage(embed, "doc-9", 0, "Tenant B account number policy.")])
    return passage_store


class TestParseKeywordQuery:
    def test_and_terms_with_stopwords_dropped(self):
        clauses = parse_keyword_query("what is the account number")
        assert len(clauses) == 1
        assert clauses[0].terms == ["account", "number"]

    def test_or_and_phrases(self):
        clauses = parse_keyword_query('invoice OR "Account   Number" OR password')
        assert [c.terms for c in clauses] == [["invoice"], [], ["password"]]
        assert clauses[1].phrases == ["account number"]

    def test_stopword_only_query_has_no_clauses(self):
        assert parse_keyword_query("what is the") == []


class TestKeywordSearch:
    def test_all_terms_must_match(self, seeded_store):
        hits = seeded_store.keyword_search("tenant-a", "account invoice", limit=10)
        assert [(h.doc_id, h.chunk_idx) for h in hits] == [("doc-1", 0)]
        assert hits[0].title == "Billing"
        assert hits[0].source_uri == "doc-1.txt"

    def test_or_clauses(self, seeded_store):
        hits = seeded_store.keyword_search("tenant-a", "password OR monthly", limit=10)
        assert {(h.doc_id, h.chunk_idx) for h in hits} == {("doc-1", 1), ("doc-2", 0)}

    def test_phrase_must_appear_verbatim(self, seeded_store):
        assert seeded_store.keyword_search("tenant-a", '"number account"', limit=10) == []
        hits = seeded_store.keyword_search("tenant-a", '"ACCOUNT NUMBER"', limit=10)
        assert [h.doc_id for h in hits] == ["doc-1"]

    def test_limit_and_ordering(self, seeded_store):
        hits = seeded_store.keyword_search("tenant-a", "invoice OR invoices OR password", limit=2)
        assert len(hits) == 2
        assert hits[0].score >= hits[1].score

    def test_tenant_isolation(self, seeded_store):
        hits = seeded_store.keyword_search("tenant-b", "account number", limit=10)
        assert [h.doc_id for h in hits] == ["doc-9"]
        assert seeded_store.keyword_search("tenant-c", "account", limit=10) == []

    def test_index_refreshes_after_insert(self, seeded_store, embed):
        assert seeded_store.keyword_search("tenant-a", "refund", limit=10) == []
        seeded_store.insert_passages("tenant-a", [make_passage(embed, "doc-3", 0, "Refund requests take five days.")])
        assert [h.doc_id for h in seeded_store.keyword_search("tenant-a", "refund", limit=10)] == ["doc-3"]

    def test_write_during_index_build_is_not_lost(self, seeded_store, embed, monkeypatch):
        original_scroll = seeded_store._scroll
        calls = []

        def scroll_then_insert(scroll_filter):
            rows = original_scroll(scroll_filter)
            if not calls:
                calls.append(scroll_filter)
                seeded_store.insert_passages("tenant-a", [make_passage(embed, "doc-3", 0, "Refund requests take five days.")])
            return rows

        monkeypatch.setattr(seeded_store, "_scroll", scroll_then_insert)

        assert seeded_store.keyword_search("tenant-a", "refund", limit=10) == []
        assert [h.doc_id for h in seeded_store.keyword_search("tenant-a", "refund", limit=10)] == ["doc-3"]


class TestVectorSearch:
    def test_nearest_passage_first(self, seeded_store, embed):
        hits = seeded_store.vector_search("tenant-a", embed("reset password login"), limit=3)
        assert hits[0].doc_id == "doc-2"
        assert all(h.doc_id != "doc-9" for h in hits)

    def test_empty_store(self, passage_store, embed):
        assert passage_store.vector_search("tenant-a", embed("anything"), limit=5) == []


class TestStorage:
    def test_count_and_delete(self, seeded_store):
        assert seeded_store.count_passages("tenant-a") == 3
        assert seeded_store.count_passages("tenant-a", "doc-1") == 2

        seeded_store.delete_document("tenant-a", "doc-1")

        assert seeded_store.count_passages("tenant-a", "doc-1") == 0
        assert seeded_store.count_passages("tenant-b") == 1
        assert seeded_store.keyword_search("tenant-a", "invoice", limit=10) == []

    def test_get_passages_ordered(self, seeded_store):
        rows = seeded_store.get_passages("tenant-a", "doc-1")
        assert [r["chunk_idx"] for r in rows] == [0, 1]
        assert rows[0]["allowed_roles"] == ["member"]
        assert rows[0]["metadata"] == {"section_index": 0}

    def test_reinsert_same_ordinal_overwrites(self, seeded_store, embed):
        seeded_store.insert_passages("tenant-a", [make_passage(embed, "doc-2", 0, "Password resets need MFA.")])
        rows = seeded_store.get_passages("tenant-a", "doc-2")
        assert [r["content"] for r in rows] == ["Password resets need MFA."]

    def test_dimension_mismatch(self, seeded_store):
        bad = Passage(doc_id="doc-x", chunk_idx=0, content="short vector", embedding=[1.0, 0.0])
        with pytest.raises(StorageError, match="does not match store dimension"):
            seeded_store.insert_passages("tenant-a", [bad])

    def test_inconsistent_batch(self, passage_store):
        passages = [
            Passage(doc_id="d", chunk_idx=0, content="a", embedding=[1.0, 0.0]),
            Passage(doc_id="d", chunk_idx=1, content="b", embedding=[1.0]),
        ]
        with pytest.raises(StorageError):
            passage_store.insert_passages("tenant-a", passages)

    def test_empty_insert(self, passage_store):
        assert passage_store.insert_passages("tenant-a", []) == 0
