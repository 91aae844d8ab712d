"""Generate and store embeddings for entities whose text changed"""

import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from tqdm import tqdm

from ..config import config
from ..embeddings.openai_client import OpenAIEmbeddingClient
from ..errors import ProviderUnavailable, SchemaNotReady
from ..models.entity import CORPORA, Corpus, EmbeddingRecord, Entity
from ..utils.logger import setup_logger
from .vector_store import VectorStore

logger = setup_logger(__name__)


@dataclass
class IndexingStats:
    """Outcome of one generation run for one corpus"""

    corpus: Corpus
    total: int = 0
    pending: int = 0
    generated: int = 0
    failed: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    estimated_cost: float = 0.0
    processing_time: float = 0.0  # seconds
    errors: List[str] = field(default_factory=list)

    @property
    def skipped(self) -> int:
        return self.total - self.pending

    def to_dict(self) -> dict:
        return {
            "corpus": self.corpus,
            "total": self.total,
            "pending": self.pending,
            "skipped": self.skipped,
            "generated": self.generated,
            "failed": self.failed,
            "total_tokens": self.total_tokens,
            "total_cost": self.total_cost,
            "estimated_cost": self.estimated_cost,
            "processing_time": self.processing_time,
            "errors": list(self.errors),
        }


class EmbeddingIndexer:
    """
    Keeps stored embeddings in sync with entity text

    Only entities without an embedding, or whose content fingerprint changed,
    are sent to the provider unless force is set. Each chunk is saved in one
    transaction; a chunk the provider cannot embed is counted as failed and
    left for the next run.
    """

    def __init__(self, vector_store: VectorStore, embedding_client: OpenAIEmbeddingClient):
        self.vector_store = vector_store
        self.db = vector_store.db
        self.embedding_client = embedding_client

    def select_entities(self, corpus: Corpus, force: bool = False) -> List[Entity]:
        """Entities to embed: all of them with force, else missing or stale only"""
        if force:
            return self.db.iter_entities(corpus)
        return self.vector_store.get_entities_needing_embeddings(corpus)

    def generate(
        self,
        corpus: Optional[Corpus] = None,
        force: bool = False,
        dry_run: bool = False,
        batch_size: Optional[int] = None,
        show_progress: bool = True,
    ) -> Dict[Corpus, IndexingStats]:
        """
        Generate embeddings for one corpus or both

        Args:
            corpus: "nodes", "templates" or None for both
            force: Regenerate every embedding, stale or not
            dry_run: Only count pending entities and estimate the cost
            batch_size: Entities per provider call and per save transaction
            show_progress: Show a tqdm progress bar

        Returns:
            IndexingStats per processed corpus

        Raises:
            SchemaNotReady: If the embedding columns are missing
        """
        corpora = [corpus] if corpus else list(CORPORA)
        batch_size = batch_size or config.embedding_batch_size
        return {
            name: self._generate_corpus(name, force, dry_run, batch_size, show_progress)
            for name in corpora
        }

    def _generate_corpus(
        self, corpus: Corpus, force: bool, dry_run: bool, batch_size: int, show_progress: bool
    ) -> IndexingStats:
        start_time = time.perf_counter()
        if not self.vector_store.is_ready(corpus):
            raise SchemaNotReady(f"Embedding columns are missing for corpus '{corpus}' (run with --migrate)")

        stats = IndexingStats(corpus=corpus, total=self.db.count_entities(corpus))

        entities = self.select_entities(corpus, force=force)
        stats.pending = len(entities)
        texts = [entity.searchable_text() for entity in entities]
        stats.estimated_cost = self.embedding_client.estimate_cost(texts)["estimated_cost"]

        logger.info(
            f"{corpus}: {stats.pending}/{stats.total} entities need embeddings "
            f"(estimated cost ${stats.estimated_cost:.4f})"
        )

        if dry_run or not entities:
            stats.processing_time = time.perf_counter() - start_time
            return stats

        chunks = [entities[i:i + batch_size] for i in range(0, len(entities), batch_size)]
        progress = tqdm(total=len(entities), desc=f"Embedding {corpus}", unit="entity", disable=not show_progress)
        try:
            for chunk in chunks:
                self._embed_chunk(corpus, chunk, stats)
                progress.update(len(chunk))
        finally:
            progress.close()

        stats.processing_time = time.perf_counter() - start_time
        logger.info(
            f"{corpus}: generated {stats.generated}, failed {stats.failed}, "
            f"tokens {stats.total_tokens}, cost ${stats.total_cost:.6f}, "
            f"time {stats.processing_time:.1f}s"
        )
        return stats

    def _embed_chunk(self, corpus: Corpus, chunk: Sequence[Entity], stats: IndexingStats) -> None:
        try:
            result = self.embedding_client.generate_embeddings([entity.searchable_text() for entity in chunk])
        except ProviderUnavailable as e:
            logger.error(f"Failed to embed {len(chunk)} {corpus}: {e}")
            stats.failed += len(chunk)
            stats.errors.append(str(e))
            return

        records = [
            EmbeddingRecord(
                entity_id=entity.entity_id,
                corpus=corpus,
                vector=vector,
                content_hash=entity.content_hash(),
                model=self.embedding_client.model,
            )
            for entity, vector in zip(chunk, result.embeddings)
        ]
        stats.generated += self.vector_store.batch_save_embeddings(corpus, records)
        stats.total_tokens += result.total_tokens
        stats.total_cost += result.total_cost
