"""Tests for BM25Scorer, TextNormalizer and KeywordIndex."""

import math
import pytest
from memdex import BM25Scorer, KeywordIndex, TextNormalizer


class TestTextNormalizer:
    """Test the normalization pipeline used for indexing and queries."""

    def test_prepare_strips_elisions_and_punctuation(self):
        """Test lowercasing, elision removal and punctuation stripping."""
        normalizer = TextNormalizer()
        assert normalizer.prepare("It's the cat's toy, isn't it?") == "it the cat toy isn it"

    def test_prepare_collapses_whitespace(self):
        """Test that runs of whitespace collapse to single spaces."""
        normalizer = TextNormalizer()
        assert normalizer.prepare("  many\t\tspaces \n here  ") == "many spaces here"

    def test_tokenize_stems(self):
        """Test that inflected forms share a stem."""
        normalizer = TextNormalizer()
        assert normalizer.tokenize("Running RUNS") == ["run", "run"]

    def test_tokenize_without_stemming(self):
        """Test the pipeline with stemming disabled."""
        normalizer = TextNormalizer(stem=False)
        assert normalizer.tokenize("Running RUNS") == ["running", "runs"]

    def test_tokenize_empty(self):
        """Test that empty input yields no tokens."""
        assert TextNormalizer().tokenize("") == []
        assert TextNormalizer().tokenize("?!...") == []


class TestBM25Scorer:
    """Test the incremental BM25Scorer class."""

    def test_initialization(self):
        """Test BM25Scorer initialization with default parameters."""
        scorer = BM25Scorer()
        assert scorer.k1 == 1.2
        assert scorer.b == 0.75
        assert scorer.field_weights == {"title": 4.0, "content": 1.0}
        assert scorer.doc_count == 0
        assert scorer.avg_doc_length == 0

    def test_initialization_custom_params(self):
        """Test BM25Scorer initialization with custom parameters."""
        scorer = BM25Scorer(k1=1.5, b=0.8, field_weights={"content": 1.0})
        assert scorer.k1 == 1.5
        assert scorer.b == 0.8
        assert scorer.field_weights == {"content": 1.0}

    def test_add_applies_field_weights(self):
        """Test that title tokens count with the title weight."""
        scorer = BM25Scorer()
        scorer.add("a", {"title": ["fox"], "content": ["fox", "dog"]})

        assert scorer.term_frequencies[0] == {"fox": 5.0, "dog": 1.0}
        assert scorer.doc_lengths == [6.0]
        assert scorer.doc_freqs["fox"] == 1

    def test_average_length_updates_incrementally(self):
        """Test that collection statistics grow with each add."""
        scorer = BM25Scorer()
        scorer.add("a", {"content": ["one", "two", "three"]})
        scorer.add("b", {"content": ["four"]})

        assert scorer.doc_count == 2
        assert scorer.avg_doc_length == 2.0

    def test_idf_never_negative(self):
        """Test that a term present in every document keeps a non-negative IDF."""
        scorer = BM25Scorer()
        scorer.add("a", {"content": ["common", "x"]})
        scorer.add("b", {"content": ["common", "y"]})

        assert scorer.idf("common") == pytest.approx(math.log(1.2))
        assert scorer.idf("common") >= 0
        assert scorer.idf("missing") == 0.0

    def test_rare_terms_weigh_more(self):
        """Test that rarer terms get higher IDF."""
        scorer = BM25Scorer()
        scorer.add("a", {"content": ["fox", "dog"]})
        scorer.add("b", {"content": ["dog"]})
        scorer.add("c", {"content": ["dog", "cat"]})

        assert scorer.idf("fox") > scorer.idf("dog")

    def test_score_out_of_range(self):
        """Test that invalid document indexes score zero."""
        scorer = BM25Scorer()
        scorer.add("a", {"content": ["fox"]})
        assert scorer.score(["fox"], 5) == 0.0
        assert scorer.score(["fox"], -1) == 0.0

    def test_search_orders_by_score_then_insertion(self):
        """Test ranking order with ties broken by insertion order."""
        scorer = BM25Scorer()
        scorer.add("first", {"content": ["fox", "dog"]})
        scorer.add("second", {"content": ["fox", "dog"]})
        scorer.add("best", {"content": ["fox", "fox", "fox"]})
        scorer.add("none", {"content": ["cat"]})

        results = scorer.search(["fox"], limit=10)
        assert [doc_id for doc_id, _ in results] == ["best", "first", "second"]

    def test_search_respects_limit(self):
        """Test that search returns at most limit results."""
        scorer = BM25Scorer()
        for index in range(5):
            scorer.add(f"doc{index}", {"content": ["fox"]})
        assert len(scorer.search(["fox"], limit=2)) == 2

    def test_search_ignores_duplicate_query_terms(self):
        """Test that repeating a query term does not change scores."""
        scorer = BM25Scorer()
        scorer.add("a", {"content": ["fox", "dog"]})
        scorer.add("b", {"content": ["cat"]})
        assert scorer.search(["fox", "fox"], 5) == scorer.search(["fox"], 5)

    def test_readd_supersedes_previous_posting(self):
        """Test that adding an id again hides the older posting."""
        scorer = BM25Scorer()
        scorer.add("a", {"content": ["old"]})
        scorer.add("a", {"content": ["new"]})

        assert scorer.search(["old"], 5) == []
        assert [doc_id for doc_id, _ in scorer.search(["new"], 5)] == ["a"]
        # The superseded posting still counts toward collection statistics
        assert scorer.doc_count == 2


class TestKeywordIndex:
    """Test KeywordIndex search, expansion and removal semantics."""

    def test_search_returns_ranked_hits(self, record_factory):
        """Test that matching documents come back with their metadata."""
        index = KeywordIndex(quiet=True)
        index.add_document(record_factory("public/a.md", "Fox facts", "The quick brown fox", tags=("animals",)))
        index.add_document(record_factory("public/b.md", "Cats", "Cats sleep a lot"))

        hits = index.search("foxes")
        assert [hit.record_id for hit in hits] == ["public/a.md"]
        assert hits[0].title == "Fox facts"
        assert hits[0].content == "The quick brown fox"
        assert hits[0].tags == ("animals",)
        assert hits[0].score > 0

    def test_title_matches_outrank_content_matches(self, record_factory):
        """Test the title field weighting."""
        index = KeywordIndex(quiet=True)
        index.add_document(record_factory("public/body.md", "Other things", "a fox appears here in passing"))
        index.add_document(record_factory("public/title.md", "Fox", "nothing else relevant in passing"))

        hits = index.search("fox")
        assert [hit.record_id for hit in hits] == ["public/title.md", "public/body.md"]

    def test_expansion_improves_recall(self, record_factory):
        """Test that a paraphrased query reaches a document through expansion."""
        index = KeywordIndex(quiet=True)
        index.add_document(record_factory("public/voice.md", "Vocal records", "the lowest note ever sung"))
        index.add_document(record_factory("public/other.md", "Cooking", "boil the pasta"))

        hits = index.search("deepest")
        assert [hit.record_id for hit in hits] == ["public/voice.md"]

    def test_configured_expansions(self, record_factory):
        """Test that expansion tables come from configuration."""
        record = record_factory("public/voice.md", "Vocal records", "the lowest note ever sung")

        plain = KeywordIndex(quiet=True)
        plain.add_document(record)
        assert plain.search("zorb") == []

        configured = KeywordIndex({"search": {"expansions": {"zorb": ["lowest"]}}}, quiet=True)
        configured.add_document(record)
        assert [hit.record_id for hit in configured.search("zorb")] == ["public/voice.md"]

    def test_configured_bm25_params(self):
        """Test that k1, b and field weights come from configuration."""
        index = KeywordIndex({"bm25": {"k1": 2.0, "b": 0.5, "field_weights": {"title": 2}}}, quiet=True)
        stats = index.get_stats()
        assert stats["k1"] == 2.0
        assert stats["b"] == 0.5
        assert stats["field_weights"] == {"title": 2.0, "content": 1.0}

    def test_remove_document_filters_results(self, record_factory):
        """Test that removed documents never appear in results."""
        index = KeywordIndex(quiet=True)
        index.add_document(record_factory("public/a.md", "Fox one", "fox"))
        index.add_document(record_factory("public/b.md", "Fox two", "fox"))

        assert index.remove_document("public/a.md") is True
        assert index.remove_document("public/a.md") is False

        hits = index.search("fox")
        assert [hit.record_id for hit in hits] == ["public/b.md"]
        assert index.pending_removals == 1

    def test_removed_document_still_occupies_limit_window(self, record_factory):
        """Test that stale postings count against the limit until rebuild."""
        index = KeywordIndex(quiet=True)
        index.add_document(record_factory("public/strong.md", "Fox", "fox fox fox"))
        index.add_document(record_factory("public/weak.md", "Other", "a fox"))
        index.remove_document("public/strong.md")

        assert index.search("fox", limit=1) == []

        index.rebuild_index()
        assert [hit.record_id for hit in index.search("fox", limit=1)] == ["public/weak.md"]

    def test_rebuild_clears_pending_removals(self, record_factory):
        """Test that rebuild drops stale postings."""
        index = KeywordIndex(quiet=True)
        for name in ("a", "b", "c"):
            index.add_document(record_factory(f"public/{name}.md", name, f"fox {name}"))
        index.remove_document("public/b.md")
        assert index.get_stats()["ranked_documents"] == 3

        index.rebuild_index()
        stats = index.get_stats()
        assert stats["documents"] == 2
        assert stats["ranked_documents"] == 2
        assert stats["pending_removals"] == 0

    def test_readding_updates_content(self, record_factory):
        """Test that re-adding a record replaces what it matches."""
        index = KeywordIndex(quiet=True)
        index.add_document(record_factory("public/a.md", "Note", "penguins"))
        index.add_document(record_factory("public/a.md", "Note", "giraffes"))

        assert index.search("penguins") == []
        assert [hit.content for hit in index.search("giraffes")] == ["giraffes"]
        assert len(index) == 1

    def test_reset_replaces_documents(self, record_factory):
        """Test that reset loads exactly the given records."""
        index = KeywordIndex(quiet=True)
        index.add_document(record_factory("public/old.md", "Old", "fox"))
        index.reset([record_factory("public/new.md", "New", "fox")])

        assert "public/old.md" not in index
        assert [hit.record_id for hit in index.search("fox")] == ["public/new.md"]

    def test_empty_query(self, record_factory):
        """Test that a query with no terms returns nothing."""
        index = KeywordIndex(quiet=True)
        index.add_document(record_factory("public/a.md", "Fox", "fox"))
        assert index.search("") == []
        assert index.search("?!") == []
