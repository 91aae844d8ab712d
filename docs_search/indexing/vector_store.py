"""Embedding storage and brute-force cosine similarity search"""

from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

import numpy as np

from ..config import config
from ..errors import SchemaNotReady
from ..models.entity import CORPORA, Corpus, EmbeddingRecord, Entity, EntityId
from ..models.search import SearchResult
from ..utils.logger import setup_logger
from .database import DocumentDatabase, entity_from_row, get_corpus_table

logger = setup_logger(__name__)


def vector_to_blob(vector: np.ndarray) -> bytes:
    return np.asarray(vector, dtype=np.float32).tobytes()


def blob_to_vector(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype=np.float32)


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """
    Cosine similarity dot(a, b) / (|a| * |b|)

    A zero-norm vector gives 0.0 instead of NaN. The result is clipped to
    [-1, 1] to absorb float rounding.
    """
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    if a.shape != b.shape:
        raise ValueError(f"Vectors must have the same length ({a.shape[0]} != {b.shape[0]})")

    denominator = np.linalg.norm(a) * np.linalg.norm(b)
    if denominator == 0 or not np.isfinite(denominator):
        return 0.0
    return float(np.clip(np.dot(a, b) / denominator, -1.0, 1.0))


def cosine_similarities(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    """Row-wise cosine similarity of matrix against query, same zero-norm rule"""
    matrix = np.asarray(matrix, dtype=np.float64)
    query = np.asarray(query, dtype=np.float64)

    denominators = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    dots = matrix @ query
    with np.errstate(divide="ignore", invalid="ignore"):
        similarities = np.where(denominators > 0, dots / denominators, 0.0)
    similarities = np.nan_to_num(similarities, nan=0.0, posinf=0.0, neginf=0.0)
    return np.clip(similarities, -1.0, 1.0)


class VectorStore:
    """
    Stores one embedding per entity next to its content fingerprint

    Similarity search is a linear scan over every stored vector of the corpus.
    That is fine for corpora in the low thousands; larger corpora need an ANN
    index, which this store deliberately does not provide.
    """

    def __init__(self, database: DocumentDatabase, default_model: Optional[str] = None):
        self.db = database
        self.default_model = default_model or config.embedding_model

    def is_ready(self, corpus: Optional[Corpus] = None) -> bool:
        """Whether the vector and fingerprint columns exist (for one or all corpora)"""
        corpora = [corpus] if corpus else list(CORPORA)
        try:
            return all(self.db.has_embedding_columns(c) for c in corpora)
        except Exception as e:
            logger.error(f"Failed to check vector storage readiness: {e}")
            return False

    def _require_ready(self, corpus: Corpus) -> None:
        if not self.is_ready(corpus):
            raise SchemaNotReady(f"Embedding columns are missing for corpus '{corpus}'")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _update_sql(self, corpus: Corpus) -> str:
        spec = get_corpus_table(corpus)
        return f"""
            UPDATE {spec.table}
            SET embedding_vector = ?,
                embedding_content_hash = ?,
                embedding_generated_at = ?,
                embedding_model = ?,
                embedding_dimensions = ?
            WHERE {spec.id_column} = ?
        """

    def save_embedding(
        self,
        corpus: Corpus,
        entity_id: EntityId,
        vector: np.ndarray,
        content_hash: str,
        model: Optional[str] = None,
    ) -> None:
        """
        Save (or overwrite) the embedding of one entity

        Raises:
            SchemaNotReady: If the embedding columns do not exist
            KeyError: If the entity does not exist
        """
        self.batch_save_embeddings(
            corpus,
            [EmbeddingRecord(entity_id, corpus, vector, content_hash, model or self.default_model)],
        )
        logger.debug(f"Saved embedding for {corpus} entity: {entity_id}")

    def batch_save_embeddings(self, corpus: Corpus, records: Iterable[EmbeddingRecord]) -> int:
        """
        Save several embeddings in one transaction: all are committed or none

        Returns:
            Number of records saved
        """
        self._require_ready(corpus)
        sql = self._update_sql(corpus)
        generated_at = datetime.now(timezone.utc).isoformat()
        saved = 0

        with self.db.transaction() as conn:
            for record in records:
                vector = np.asarray(record.vector, dtype=np.float32)
                cursor = conn.execute(
                    sql,
                    (
                        vector_to_blob(vector),
                        record.content_hash,
                        generated_at,
                        record.model or self.default_model,
                        int(vector.shape[0]),
                        record.entity_id,
                    ),
                )
                if cursor.rowcount == 0:
                    raise KeyError(f"Unknown {corpus} entity: {record.entity_id}")
                saved += 1

        if saved > 1:
            logger.info(f"Batch saved {saved} {corpus} embeddings")
        return saved

    def delete_embedding(self, corpus: Corpus, entity_id: EntityId) -> bool:
        """Clear the embedding columns of one entity"""
        self._require_ready(corpus)
        spec = get_corpus_table(corpus)
        with self.db.transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE {spec.table}
                SET embedding_vector = NULL,
                    embedding_content_hash = NULL,
                    embedding_generated_at = NULL,
                    embedding_model = NULL,
                    embedding_dimensions = NULL
                WHERE {spec.id_column} = ?
                """,
                (entity_id,),
            )
        logger.debug(f"Deleted embedding for {corpus} entity: {entity_id}")
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_embedding(self, corpus: Corpus, entity_id: EntityId) -> Optional[np.ndarray]:
        record = self.get_record(corpus, entity_id)
        return record.vector if record else None

    def get_record(self, corpus: Corpus, entity_id: EntityId) -> Optional[EmbeddingRecord]:
        if not self.is_ready(corpus):
            return None
        spec = get_corpus_table(corpus)
        row = self.db.fetchone(
            f"""
            SELECT embedding_vector, embedding_content_hash, embedding_model,
                   embedding_dimensions, embedding_generated_at
            FROM {spec.table}
            WHERE {spec.id_column} = ? AND embedding_vector IS NOT NULL
            """,
            (entity_id,),
        )
        if row is None:
            return None

        generated_at = row["embedding_generated_at"]
        return EmbeddingRecord(
            entity_id=entity_id,
            corpus=corpus,
            vector=blob_to_vector(row["embedding_vector"]),
            content_hash=row["embedding_content_hash"] or "",
            model=row["embedding_model"] or "",
            dimensions=row["embedding_dimensions"] or 0,
            generated_at=datetime.fromisoformat(generated_at) if generated_at else None,
        )

    def find_similar(
        self,
        corpus: Corpus,
        query_vector: np.ndarray,
        limit: int,
        threshold: Optional[float] = None,
    ) -> List[SearchResult]:
        """
        Rank every stored vector of the corpus by cosine similarity to the query

        Args:
            corpus: "nodes" or "templates"
            query_vector: Query embedding
            limit: Maximum number of results
            threshold: Minimum similarity kept (default 0.2)

        Returns:
            SearchResult list sorted by similarity (highest first)
        """
        threshold = config.similarity_threshold if threshold is None else threshold
        self._require_ready(corpus)

        spec = get_corpus_table(corpus)
        rows = self.db.fetchall(
            f"""
            SELECT {', '.join(spec.select_columns)}, embedding_vector
            FROM {spec.table}
            WHERE embedding_vector IS NOT NULL
            ORDER BY {spec.id_column}
            """
        )
        if not rows or limit < 1:
            return []

        query = np.asarray(query_vector, dtype=np.float32)
        candidates = []
        vectors = []
        for row in rows:
            vector = blob_to_vector(row["embedding_vector"])
            if vector.shape != query.shape:
                logger.debug(
                    f"Skipping {corpus} entity {row[spec.id_column]}: "
                    f"dimension {vector.shape[0]} != {query.shape[0]}"
                )
                continue
            candidates.append(row)
            vectors.append(vector)

        if not vectors:
            return []

        similarities = cosine_similarities(np.vstack(vectors), query)

        # Stable sort keeps id order among equal similarities
        order = np.argsort(-similarities, kind="stable")
        results: List[SearchResult] = []
        for index in order:
            similarity = float(similarities[index])
            if similarity < threshold:
                break
            entity = entity_from_row(corpus, candidates[index])
            results.append(
                SearchResult(
                    entity_id=entity.entity_id,
                    corpus=corpus,
                    display_fields=entity.display_fields(),
                    relevance_score=similarity,
                    source_method="vector",
                    score_trace={"vector_similarity": similarity, "vector_rank": len(results) + 1},
                )
            )
            if len(results) >= limit:
                break

        logger.debug(f"Found {len(results)} similar {corpus} with similarity >= {threshold}")
        return results

    def get_entities_needing_embeddings(self, corpus: Corpus) -> List[Entity]:
        """
        Entities without an embedding or whose stored fingerprint no longer
        matches their current searchable text
        """
        self._require_ready(corpus)
        spec = get_corpus_table(corpus)
        rows = self.db.fetchall(
            f"""
            SELECT {', '.join(spec.select_columns)}, embedding_content_hash,
                   embedding_vector IS NOT NULL AS has_vector
            FROM {spec.table}
            ORDER BY {spec.id_column}
            """
        )

        needing = []
        for row in rows:
            entity = entity_from_row(corpus, row)
            if not row["has_vector"] or row["embedding_content_hash"] != entity.content_hash():
                needing.append(entity)

        logger.debug(f"Found {len(needing)} {corpus} needing embeddings")
        return needing

    def get_embedding_stats(self) -> Dict:
        """Coverage per corpus plus storage size and age of embeddings"""
        stats: Dict = {}
        total_size = 0
        oldest = None
        newest = None

        for corpus in CORPORA:
            spec = get_corpus_table(corpus)
            total = self.db.count_entities(corpus)
            if not self.is_ready(corpus):
                stats[corpus] = {"total": total, "with_embeddings": 0, "stale": 0, "percentage": 0.0}
                continue

            row = self.db.fetchone(
                f"""
                SELECT COUNT(embedding_vector) AS with_embeddings,
                       COALESCE(SUM(LENGTH(embedding_vector)), 0) AS total_size,
                       MIN(embedding_generated_at) AS oldest,
                       MAX(embedding_generated_at) AS newest
                FROM {spec.table}
                """
            )
            with_embeddings = row["with_embeddings"]
            stale = len(self.get_entities_needing_embeddings(corpus)) - (total - with_embeddings)
            stats[corpus] = {
                "total": total,
                "with_embeddings": with_embeddings,
                "stale": stale,
                "percentage": (with_embeddings / total) * 100 if total > 0 else 0.0,
            }
            total_size += row["total_size"]
            if row["oldest"] and (oldest is None or row["oldest"] < oldest):
                oldest = row["oldest"]
            if row["newest"] and (newest is None or row["newest"] > newest):
                newest = row["newest"]

        stats["total_embedding_size"] = total_size
        stats["oldest_embedding"] = oldest
        stats["newest_embedding"] = newest
        return stats
