"""
Tests for the lexical search adapters (FTS5, LIKE fallback, BM25).
"""

from unittest.mock import patch

import pytest

from docs_search.indexing.lexical_search import BM25LexicalSearch, FTS5LexicalSearch, rank_results

from conftest import requires_fts5


class TestFTS5Search:
    """Tests for SQLite FTS5 search."""

    @requires_fts5
    def test_matches_ranked(self, database):
        results = FTS5LexicalSearch(database, "nodes").search("send email", limit=10)
        ids = [r.entity_id for r in results]

        assert ids[0] == "nodes-base.emailSend"
        assert "nodes-base.slack" in ids
        assert "nodes-base.postgres" not in ids
        assert all(r.source_method == "lexical" for r in results)

    @requires_fts5
    def test_rank_scores_decrease(self, database):
        results = FTS5LexicalSearch(database, "nodes").search("send email", limit=10)
        scores = [r.relevance_score for r in results]

        assert scores == sorted(scores, reverse=True)
        assert [r.score_trace["lexical_rank"] for r in results] == list(range(1, len(results) + 1))

    @requires_fts5
    def test_templates(self, database):
        results = FTS5LexicalSearch(database, "templates").search("slack webhook", limit=5)

        assert [r.entity_id for r in results] == [1]
        assert results[0].corpus == "templates"
        assert results[0].display_fields["author"] == "alice"

    @requires_fts5
    def test_limit(self, database):
        results = FTS5LexicalSearch(database, "nodes").search("send email http", limit=1)

        assert len(results) == 1

    @requires_fts5
    def test_quotes_in_query(self, database):
        # Must not raise an FTS syntax error
        results = FTS5LexicalSearch(database, "nodes").search('slack "channels', limit=5)

        assert results[0].entity_id == "nodes-base.slack"

    def test_blank_query(self, database):
        assert FTS5LexicalSearch(database, "nodes").search("   ", limit=5) == []

    def test_build_match_query(self):
        assert FTS5LexicalSearch.build_match_query('send "email') == '"send" OR """email"'


class TestLikeFallback:
    """Tests for the LIKE fallback used without an FTS5 table."""

    def test_fallback_without_fts_table(self, bare_database):
        results = FTS5LexicalSearch(bare_database, "nodes").search("Email", limit=5)

        assert [r.entity_id for r in results] == ["nodes-base.emailSend"]
        assert results[0].source_method == "fallback"

    @requires_fts5
    def test_fallback_when_match_fails(self, database):
        searcher = FTS5LexicalSearch(database, "templates")
        real_fetchall = database.fetchall

        def failing_match(sql, params=()):
            if "MATCH" in sql:
                raise RuntimeError("fts5: syntax error")
            return real_fetchall(sql, params)

        with patch.object(database, "fetchall", side_effect=failing_match):
            results = searcher.search("digest", limit=5)

        assert [r.entity_id for r in results] == [2]
        assert results[0].source_method == "fallback"


class TestBM25Search:
    """Tests for the in-memory BM25 adapter."""

    @pytest.fixture
    def bm25(self, database):
        return BM25LexicalSearch(database.iter_entities("nodes"))

    def test_best_match_first(self, bm25):
        results = bm25.search("postgres database", limit=5)

        assert results[0].entity_id == "nodes-base.postgres"

    def test_no_match(self, bm25):
        assert bm25.search("kubernetes", limit=5) == []

    def test_empty_corpus(self):
        searcher = BM25LexicalSearch([], corpus="templates")

        assert not searcher.is_available()
        assert searcher.search("anything", limit=5) == []

    def test_add_entities(self, database):
        searcher = BM25LexicalSearch([], corpus="nodes")

        searcher.add_entities(database.iter_entities("nodes"))

        assert searcher.is_available()
        assert searcher.search("smtp", limit=5)[0].entity_id == "nodes-base.emailSend"


def test_rank_results_scores(database):
    entities = database.iter_entities("nodes")

    results = rank_results(entities)

    assert [r.relevance_score for r in results] == pytest.approx([1.0, 0.75, 0.5, 0.25])
