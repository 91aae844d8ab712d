"""Lexical (keyword) search adapters

The engine only consumes the adapter contract: search(query, limit) returns
a list ordered by rank. Rank position, not any internal score, is what the
fusion stage uses.
"""

from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

import numpy as np
from rank_bm25 import BM25Okapi

from ..models.entity import Corpus, Entity
from ..models.search import SearchResult, SourceMethod
from ..utils.logger import setup_logger
from .database import DocumentDatabase, entity_from_row, get_corpus_table

logger = setup_logger(__name__)


def rank_results(
    entities: Sequence[Entity], source_method: SourceMethod = "lexical"
) -> List[SearchResult]:
    """Turn a rank-ordered entity list into results with rank-normalised scores"""
    total = max(len(entities), 1)
    return [
        SearchResult(
            entity_id=entity.entity_id,
            corpus=entity.corpus,
            display_fields=entity.display_fields(),
            relevance_score=1.0 - (index / total),
            source_method=source_method,
            score_trace={"lexical_rank": index + 1},
        )
        for index, entity in enumerate(entities)
    ]


class LexicalSearchAdapter(ABC):
    """Contract for full-text search backends"""

    corpus: Corpus

    @abstractmethod
    def search(self, query: str, limit: int) -> List[SearchResult]:
        """Return up to limit results ordered by rank (best first)"""

    def is_available(self) -> bool:
        return True


class FTS5LexicalSearch(LexicalSearchAdapter):
    """
    SQLite FTS5 search over one corpus

    Falls back to a LIKE scan (results tagged "fallback") when the FTS5
    table is missing or the MATCH query fails.
    """

    def __init__(self, database: DocumentDatabase, corpus: Corpus):
        self.db = database
        self.corpus = corpus
        self.spec = get_corpus_table(corpus)

    def is_available(self) -> bool:
        return self.db.has_table(self.spec.table)

    def has_fts(self) -> bool:
        return self.db.has_table(self.spec.fts_table)

    @staticmethod
    def build_match_query(query: str) -> str:
        """Quote every word and OR them together"""
        words = [w for w in query.split() if w]
        return " OR ".join('"' + word.replace('"', '""') + '"' for word in words)

    def search(self, query: str, limit: int) -> List[SearchResult]:
        if not query.strip() or limit < 1:
            return []

        if not self.has_fts():
            logger.debug(f"{self.spec.fts_table} not available, using LIKE search")
            return self.like_search(query, limit)

        columns = ", ".join(f"t.{column}" for column in self.spec.select_columns)
        try:
            rows = self.db.fetchall(
                f"""
                SELECT {columns}
                FROM {self.spec.fts_table}
                JOIN {self.spec.table} t ON t.rowid = {self.spec.fts_table}.rowid
                WHERE {self.spec.fts_table} MATCH ?
                ORDER BY {self.spec.fts_table}.rank, t.{self.spec.id_column}
                LIMIT ?
                """,
                (self.build_match_query(query), limit),
            )
        except Exception as e:
            logger.error(f"FTS5 search on {self.spec.fts_table} failed: {e}")
            return self.like_search(query, limit)

        results = rank_results([entity_from_row(self.corpus, row) for row in rows])
        logger.debug(f"FTS5 search on {self.corpus} returned {len(results)} results")
        return results

    def like_search(self, query: str, limit: int) -> List[SearchResult]:
        """Substring match on name and description"""
        name_column = "display_name" if self.corpus == "nodes" else "name"
        like_query = f"%{query.strip()}%"
        rows = self.db.fetchall(
            f"""
            SELECT {', '.join(self.spec.select_columns)}
            FROM {self.spec.table}
            WHERE {name_column} LIKE ? OR description LIKE ?
            ORDER BY {name_column}, {self.spec.id_column}
            LIMIT ?
            """,
            (like_query, like_query, limit),
        )
        results = rank_results([entity_from_row(self.corpus, row) for row in rows], source_method="fallback")
        logger.debug(f"LIKE search on {self.corpus} returned {len(results)} results")
        return results


class BM25LexicalSearch(LexicalSearchAdapter):
    """
    In-memory BM25 keyword search over a list of entities

    Useful for corpora that are not backed by an FTS5 index.
    """

    def __init__(self, entities: Sequence[Entity], corpus: Optional[Corpus] = None):
        self.entities: List[Entity] = list(entities)
        self.corpus = corpus or (self.entities[0].corpus if self.entities else "nodes")
        self.bm25_index = None
        self._build_index()

    @staticmethod
    def tokenize(text: str) -> List[str]:
        return text.lower().split()

    def _build_index(self) -> None:
        documents = [self.tokenize(entity.searchable_text()) for entity in self.entities]
        if documents and any(documents):
            self.bm25_index = BM25Okapi(documents)
            logger.info(f"BM25 index built ({len(documents)} {self.corpus})")

    def add_entities(self, entities: Sequence[Entity]) -> None:
        self.entities.extend(entities)
        self._build_index()

    def is_available(self) -> bool:
        return self.bm25_index is not None

    def search(self, query: str, limit: int) -> List[SearchResult]:
        if not self.bm25_index or not query.strip() or limit < 1:
            return []

        # Tokenize query same as documents
        scores = self.bm25_index.get_scores(self.tokenize(query))

        # Stable order: score desc, then corpus order
        order = np.argsort(-scores, kind="stable")
        matched = [self.entities[i] for i in order if scores[i] > 0][:limit]

        results = rank_results(matched)
        logger.debug(f"BM25 search returned {len(results)} results")
        return results
