"""
Shared fixtures: an in-memory corpus database and fake providers.

No test talks to a real embedding or rerank API.
"""

import sqlite3
from typing import List

import numpy as np
import pytest

from docs_search.embeddings.openai_client import BatchEmbeddingResult, EmbeddingResult
from docs_search.errors import ProviderUnavailable
from docs_search.indexing.database import DocumentDatabase
from docs_search.indexing.vector_store import VectorStore
from docs_search.models.search import SearchResult


def _fts5_available() -> bool:
    conn = sqlite3.connect(":memory:")
    try:
        conn.execute("CREATE VIRTUAL TABLE probe USING fts5(body)")
        return True
    except sqlite3.OperationalError:
        return False
    finally:
        conn.close()


FTS5_AVAILABLE = _fts5_available()
requires_fts5 = pytest.mark.skipif(not FTS5_AVAILABLE, reason="SQLite built without FTS5")

# One dimension per keyword, so similarities are easy to reason about
KEYWORDS = ("http", "email", "slack", "database")


def keyword_vector(text: str) -> np.ndarray:
    lowered = text.lower()
    return np.array([1.0 if keyword in lowered else 0.0 for keyword in KEYWORDS], dtype=np.float32)


class FakeEmbeddingClient:
    """Deterministic stand-in for OpenAIEmbeddingClient"""

    model = "fake-embedding"
    dimensions = len(KEYWORDS)

    def __init__(self, available: bool = True, fail: bool = False):
        self.available = available
        self.fail = fail
        self.embed_calls: List[str] = []
        self.batch_calls: List[List[str]] = []

    def is_available(self) -> bool:
        return self.available

    def embed_one(self, text: str) -> EmbeddingResult:
        self.embed_calls.append(text)
        if self.fail:
            raise ProviderUnavailable("embedding provider down")
        return EmbeddingResult(embedding=keyword_vector(text), token_count=len(text.split()), cost=0.0)

    def generate_embeddings(self, texts, show_progress_bar: bool = False) -> BatchEmbeddingResult:
        self.batch_calls.append(list(texts))
        if self.fail:
            raise ProviderUnavailable("embedding provider down")
        tokens = sum(len(text.split()) for text in texts)
        return BatchEmbeddingResult(
            embeddings=[keyword_vector(text) for text in texts],
            total_tokens=tokens,
            total_cost=tokens * 0.00000002,
            processing_time=0.0,
        )

    def estimate_cost(self, texts) -> dict:
        chars = sum(len(text) for text in texts)
        return {"estimated_tokens": int(chars * 0.75), "estimated_cost": chars * 0.75 * 0.00000002}

    def get_cache_stats(self) -> dict:
        return {"size": 0}

    def clear_cache(self) -> None:
        pass

    def close(self) -> None:
        pass


class StaticLexicalSearch:
    """Lexical adapter returning a fixed ranking and counting calls"""

    def __init__(self, results=None, error: Exception = None):
        self.results = list(results or [])
        self.error = error
        self.calls = 0

    def search(self, query: str, limit: int) -> List[SearchResult]:
        self.calls += 1
        if self.error:
            raise self.error
        return self.results[:limit]

    def is_available(self) -> bool:
        return True


def make_result(entity_id, score: float = 1.0, source_method: str = "lexical", corpus: str = "nodes", **fields):
    display = {"name": str(entity_id), "description": "", "category": "", **fields}
    return SearchResult(
        entity_id=entity_id,
        corpus=corpus,
        display_fields=display,
        relevance_score=score,
        source_method=source_method,
    )


def ranked(ids, source_method: str = "lexical", corpus: str = "nodes") -> List[SearchResult]:
    """Results for ids in the given order with descending scores"""
    return [
        make_result(entity_id, score=1.0 - i * 0.1, source_method=source_method, corpus=corpus)
        for i, entity_id in enumerate(ids)
    ]


NODES = [
    dict(
        node_type="nodes-base.httpRequest",
        display_name="HTTP Request",
        description="Makes HTTP requests and returns the response",
        category="Core Nodes",
        package_name="n8n-nodes-base",
        operations=[{"name": "GET"}, {"name": "POST"}],
    ),
    dict(
        node_type="nodes-base.emailSend",
        display_name="Send Email",
        description="Sends an email via SMTP",
        category="Communication",
        package_name="n8n-nodes-base",
    ),
    dict(
        node_type="nodes-base.slack",
        display_name="Slack",
        description="Send messages to Slack channels",
        category="Communication",
        package_name="n8n-nodes-base",
    ),
    dict(
        node_type="nodes-base.postgres",
        display_name="Postgres",
        description="Query a Postgres database",
        category="Data",
        package_name="n8n-nodes-base",
    ),
]

TEMPLATES = [
    dict(
        template_id=1,
        name="Post to Slack from an HTTP webhook",
        description="Receive an HTTP webhook and post the payload to Slack",
        categories=["Communication"],
        nodes_used=["nodes-base.webhook", "nodes-base.slack"],
        author_name="alice",
        views=120,
    ),
    dict(
        template_id=2,
        name="Daily email digest",
        description="Send a daily email digest of new rows",
        categories=["Productivity"],
        nodes_used=["nodes-base.emailSend"],
        author_name="bob",
        views=45,
    ),
]


@pytest.fixture
def database():
    """In-memory corpus with embedding columns (and FTS5 when available)"""
    db = DocumentDatabase(":memory:")
    db.create_schema(with_embeddings=True, with_fts=FTS5_AVAILABLE)
    for node in NODES:
        db.upsert_node(**node)
    for template in TEMPLATES:
        db.upsert_template(**template)
    yield db
    db.close()


@pytest.fixture
def bare_database():
    """Corpus tables without embedding columns"""
    db = DocumentDatabase(":memory:")
    db.create_schema(with_embeddings=False, with_fts=False)
    for node in NODES:
        db.upsert_node(**node)
    yield db
    db.close()


@pytest.fixture
def fake_embeddings():
    return FakeEmbeddingClient()


@pytest.fixture
def vector_store(database):
    return VectorStore(database, default_model=FakeEmbeddingClient.model)


@pytest.fixture
def embedded_store(vector_store, fake_embeddings):
    """Vector store with every entity embedded"""
    for corpus in ("nodes", "templates"):
        for entity in vector_store.db.iter_entities(corpus):
            vector_store.save_embedding(
                corpus, entity.entity_id, keyword_vector(entity.searchable_text()), entity.content_hash()
            )
    return vector_store
