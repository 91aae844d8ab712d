"""
Tests for embedding storage, cosine similarity search and staleness tracking.
"""

import numpy as np
import pytest

from docs_search.errors import SchemaNotReady
from docs_search.indexing.vector_store import (
    VectorStore,
    blob_to_vector,
    cosine_similarities,
    cosine_similarity,
    vector_to_blob,
)
from docs_search.models.entity import EmbeddingRecord

from conftest import keyword_vector


class TestCosineSimilarity:
    """Tests for the similarity function."""

    def test_identical_vectors(self):
        assert cosine_similarity(np.array([1.0, 2.0, 3.0]), np.array([1.0, 2.0, 3.0])) == pytest.approx(1.0)

    def test_opposite_vectors(self):
        assert cosine_similarity(np.array([1.0, 0.0]), np.array([-1.0, 0.0])) == pytest.approx(-1.0)

    def test_orthogonal_vectors(self):
        assert cosine_similarity(np.array([1.0, 0.0]), np.array([0.0, 1.0])) == pytest.approx(0.0)

    def test_zero_vector_is_zero_not_nan(self):
        similarity = cosine_similarity(np.zeros(4), np.array([1.0, 2.0, 3.0, 4.0]))

        assert similarity == 0.0
        assert not np.isnan(similarity)

    def test_range(self):
        rng = np.random.default_rng(7)
        for _ in range(50):
            a, b = rng.normal(size=16), rng.normal(size=16)
            assert -1.0 <= cosine_similarity(a, b) <= 1.0

    def test_length_mismatch(self):
        with pytest.raises(ValueError):
            cosine_similarity(np.ones(3), np.ones(4))

    def test_vectorized_matches_scalar(self):
        rng = np.random.default_rng(3)
        matrix = rng.normal(size=(5, 8))
        matrix[2] = 0.0
        query = rng.normal(size=8)

        batch = cosine_similarities(matrix, query)

        assert batch == pytest.approx([cosine_similarity(row, query) for row in matrix])
        assert batch[2] == 0.0

    def test_blob_round_trip_is_float32(self):
        vector = np.array([0.1, 0.2, 0.3], dtype=np.float64)

        restored = blob_to_vector(vector_to_blob(vector))

        assert restored.dtype == np.float32
        assert restored == pytest.approx(vector, rel=1e-6)


class TestSaveAndLoad:
    """Tests for embedding writes."""

    def test_save_and_get(self, vector_store):
        vector_store.save_embedding("nodes", "nodes-base.slack", np.array([0.0, 0.0, 1.0, 0.0]), "hash-1")

        stored = vector_store.get_embedding("nodes", "nodes-base.slack")
        record = vector_store.get_record("nodes", "nodes-base.slack")

        assert stored.tolist() == [0.0, 0.0, 1.0, 0.0]
        assert record.content_hash == "hash-1"
        assert record.dimensions == 4
        assert record.model == "fake-embedding"
        assert record.generated_at is not None

    def test_overwrite_in_place(self, vector_store):
        vector_store.save_embedding("templates", 2, np.ones(4), "old")
        vector_store.save_embedding("templates", 2, np.zeros(4), "new")

        assert vector_store.get_record("templates", 2).content_hash == "new"

    def test_missing_embedding(self, vector_store):
        assert vector_store.get_embedding("nodes", "nodes-base.postgres") is None

    def test_unknown_entity(self, vector_store):
        with pytest.raises(KeyError):
            vector_store.save_embedding("nodes", "nodes-base.unknown", np.ones(4), "h")

    def test_batch_save_is_atomic(self, vector_store):
        records = [
            EmbeddingRecord("nodes-base.slack", "nodes", np.ones(4), "h1", "m"),
            EmbeddingRecord("nodes-base.unknown", "nodes", np.ones(4), "h2", "m"),
        ]

        with pytest.raises(KeyError):
            vector_store.batch_save_embeddings("nodes", records)

        # The first record was rolled back with the failing one
        assert vector_store.get_embedding("nodes", "nodes-base.slack") is None

    def test_delete_embedding(self, vector_store):
        vector_store.save_embedding("nodes", "nodes-base.slack", np.ones(4), "h")

        assert vector_store.delete_embedding("nodes", "nodes-base.slack")
        assert vector_store.get_embedding("nodes", "nodes-base.slack") is None


class TestFindSimilar:
    """Tests for the linear similarity scan."""

    def test_best_match_first(self, embedded_store):
        results = embedded_store.find_similar("nodes", keyword_vector("send an email"), limit=5)

        assert results[0].entity_id == "nodes-base.emailSend"
        assert results[0].relevance_score == pytest.approx(1.0)
        assert results[0].source_method == "vector"
        assert results[0].score_trace["vector_rank"] == 1

    def test_threshold_filters(self, embedded_store):
        # Only the email node is similar to an email query; the rest score 0
        results = embedded_store.find_similar("nodes", keyword_vector("email"), limit=10, threshold=0.2)

        assert [r.entity_id for r in results] == ["nodes-base.emailSend"]

    def test_limit(self, embedded_store):
        query = np.ones(4, dtype=np.float32)

        results = embedded_store.find_similar("nodes", query, limit=2, threshold=0.0)

        assert len(results) == 2

    def test_sorted_descending(self, embedded_store):
        results = embedded_store.find_similar("templates", np.array([1.0, 0.2, 0.9, 0.0]), limit=10, threshold=-1.0)
        scores = [r.relevance_score for r in results]

        assert scores == sorted(scores, reverse=True)
        assert results[0].entity_id == 1

    def test_dimension_mismatch_skipped(self, embedded_store):
        assert embedded_store.find_similar("nodes", np.ones(8), limit=5, threshold=-1.0) == []

    def test_schema_not_ready(self, bare_database):
        store = VectorStore(bare_database)

        assert not store.is_ready()
        with pytest.raises(SchemaNotReady):
            store.find_similar("nodes", np.ones(4), limit=5)
        with pytest.raises(SchemaNotReady):
            store.save_embedding("nodes", "nodes-base.slack", np.ones(4), "h")

    def test_migration_makes_store_ready(self, bare_database):
        store = VectorStore(bare_database)

        added = bare_database.migrate_embedding_columns()

        assert "nodes.embedding_vector" in added
        assert store.is_ready()
        assert bare_database.migrate_embedding_columns() == []


class TestStaleness:
    """Tests for detection of entities needing (re-)embedding."""

    def test_all_pending_initially(self, vector_store):
        pending = vector_store.get_entities_needing_embeddings("nodes")

        assert len(pending) == 4

    def test_embedded_entities_not_pending(self, embedded_store):
        assert embedded_store.get_entities_needing_embeddings("nodes") == []
        assert embedded_store.get_entities_needing_embeddings("templates") == []

    def test_changed_text_reported_then_cleared(self, embedded_store):
        db = embedded_store.db
        db.upsert_node(
            node_type="nodes-base.slack",
            display_name="Slack",
            description="Post messages and files to Slack channels",
            category="Communication",
        )

        pending = embedded_store.get_entities_needing_embeddings("nodes")
        assert [e.entity_id for e in pending] == ["nodes-base.slack"]

        entity = pending[0]
        embedded_store.save_embedding(
            "nodes", entity.entity_id, keyword_vector(entity.searchable_text()), entity.content_hash()
        )

        assert embedded_store.get_entities_needing_embeddings("nodes") == []

    def test_record_is_stale(self, embedded_store):
        entity = embedded_store.db.get_entity("nodes", "nodes-base.slack")
        record = embedded_store.get_record("nodes", "nodes-base.slack")

        assert not record.is_stale(entity)
        entity.description = "Changed"
        assert record.is_stale(entity)

    def test_embedding_stats(self, embedded_store):
        embedded_store.delete_embedding("nodes", "nodes-base.postgres")

        stats = embedded_store.get_embedding_stats()

        assert stats["nodes"]["total"] == 4
        assert stats["nodes"]["with_embeddings"] == 3
        assert stats["nodes"]["percentage"] == pytest.approx(75.0)
        assert stats["templates"]["with_embeddings"] == 2
        assert stats["total_embedding_size"] == 5 * 4 * 4
        assert stats["newest_embedding"] is not None
