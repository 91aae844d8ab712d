"""
Tests for data models, search options and configuration validation.
"""

import numpy as np
import pytest

from docs_search.config import Config
from docs_search.errors import InvalidQuery
from docs_search.models.entity import EmbeddingRecord, Entity, content_hash
from docs_search.models.search import SearchOptions, SearchResult, make_cache_key, normalize_query

from conftest import make_result


class TestEntity:
    """Tests for searchable text and fingerprints."""

    def test_searchable_text(self):
        entity = Entity(
            entity_id="nodes-base.httpRequest",
            corpus="nodes",
            name="HTTP Request",
            description="Makes HTTP requests",
            category="Core Nodes",
            tags=["GET", "POST"],
        )

        assert entity.searchable_text() == "HTTP Request | Makes HTTP requests | Core Nodes | GET | POST"

    def test_empty_fields_skipped(self):
        entity = Entity(entity_id=1, corpus="templates", name="Digest", description="  ")

        assert entity.searchable_text() == "Digest"

    def test_content_hash_tracks_text(self):
        entity = Entity(entity_id=1, corpus="templates", name="Digest")
        before = entity.content_hash()

        entity.description = "Daily digest"

        assert entity.content_hash() != before
        assert entity.content_hash() == content_hash("Digest | Daily digest")

    def test_display_fields_include_attributes(self):
        entity = Entity(entity_id=1, corpus="templates", name="Digest", attributes={"views": 3})

        assert entity.display_fields()["views"] == 3

    def test_embedding_record_dimensions(self):
        record = EmbeddingRecord(1, "templates", [0.1, 0.2, 0.3], "h", "model")

        assert record.dimensions == 3
        assert record.vector.dtype == np.float32


class TestSearchOptions:
    """Tests for option normalization and cache keys."""

    def test_methods_normalized(self):
        options = SearchOptions(methods=("vector", "lexical", "vector"))

        assert options.methods == ("lexical", "vector")
        assert options.lexical_enabled and options.vector_enabled

    def test_single_method_string(self):
        assert SearchOptions(methods="lexical").methods == ("lexical",)

    def test_merged_ignores_none(self):
        options = SearchOptions(limit=5)

        assert options.merged(limit=None) is options
        assert options.merged(limit=8).limit == 8

    def test_merged_validates(self):
        with pytest.raises(InvalidQuery):
            SearchOptions(limit=5).merged(limit=-1)

    def test_normalize_query(self):
        assert normalize_query("  send \t an\nemail ") == "send an email"
        assert normalize_query(None) == ""

    def test_cache_key_stable(self):
        options = SearchOptions(limit=5, methods=("vector", "lexical"))
        same = SearchOptions(limit=5, methods=("lexical", "vector"))

        assert make_cache_key("send  email", "nodes", options) == make_cache_key("send email", "nodes", same)

    def test_cache_key_varies(self):
        options = SearchOptions(limit=5)

        keys = {
            make_cache_key("send email", "nodes", options),
            make_cache_key("send email", "templates", options),
            make_cache_key("Send email", "nodes", options),
            make_cache_key("send email", "nodes", options.merged(limit=6)),
            make_cache_key("send email", "nodes", options.merged(enable_reranking=not options.enable_reranking)),
        }

        assert len(keys) == 5

    def test_result_fields_are_read_only_copies(self):
        fields = {"name": "Digest"}
        result = SearchResult(entity_id=1, corpus="templates", display_fields=fields,
                              relevance_score=0.5, source_method="lexical")

        fields["name"] = "changed"

        assert result.name == "Digest"
        with pytest.raises(TypeError):
            result.display_fields["name"] = "changed"
        assert result.to_dict()["name"] == "Digest"

    def test_result_with_score_keeps_original(self):
        result = make_result("A", score=0.5)

        updated = result.with_score(0.9, source_method="hybrid", rrf_score=0.9)

        assert result.relevance_score == 0.5
        assert updated.relevance_score == 0.9
        assert updated.source_method == "hybrid"
        assert updated.score_trace == {"rrf_score": 0.9}


class TestConfig:
    """Tests for settings validation."""

    def test_defaults_valid(self):
        config = Config(_env_file=None)

        config.validate_settings()
        assert config.rrf_k_parameter == 60
        assert config.embedding_batch_size == 100
        assert config.cache_ttl == 300

    def test_invalid_values_reported_together(self):
        config = Config(_env_file=None, rrf_k_parameter=0, similarity_threshold=3.0, max_retries=0)

        with pytest.raises(ValueError) as exc_info:
            config.validate_settings()

        message = str(exc_info.value)
        assert "RRF_K_PARAMETER" in message
        assert "SIMILARITY_THRESHOLD" in message
        assert "MAX_RETRIES" in message

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("RRF_K_PARAMETER", "30")
        monkeypatch.setenv("ENABLE_RERANKING", "false")

        config = Config(_env_file=None)

        assert config.rrf_k_parameter == 30
        assert config.enable_reranking is False
