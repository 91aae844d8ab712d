"""Hybrid search engine combining lexical and semantic search"""

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from typing import Dict, List, Mapping, Optional

from ..config import config
from ..embeddings.openai_client import OpenAIEmbeddingClient
from ..errors import InvalidQuery, ProviderUnavailable, SchemaNotReady, SearchUnavailable
from ..models.entity import CORPORA, Corpus
from ..models.search import (
    CombinedSearchResult,
    SearchOptions,
    SearchOutcome,
    SearchResult,
    make_cache_key,
    normalize_query,
)
from ..utils.cache import TTLCache
from ..utils.logger import setup_logger
from .cohere_reranker import CohereReranker
from .database import DocumentDatabase
from .lexical_search import FTS5LexicalSearch, LexicalSearchAdapter
from .rrf_fusion import ReciprocalRankFusion
from .vector_store import VectorStore

logger = setup_logger(__name__)


class PipelineStage(str, Enum):
    IDLE = "idle"
    DISPATCHING = "dispatching"
    FUSING = "fusing"
    RERANKING = "reranking"
    SKIP_RERANK = "skip_rerank"
    TRUNCATING = "truncating"
    CACHE_WRITE = "cache_write"
    DONE = "done"
    FAILED = "failed"


class HybridSearchEngine:
    """
    Combines lexical full-text search with vector similarity search
    for high-quality retrieval over the node and template corpora

    Per query: both branches run concurrently, their rankings are merged with
    Reciprocal Rank Fusion, optionally reranked with Cohere, truncated and
    cached. A failing branch degrades the query to the other branch; only when
    vector search is the sole method does its failure reach the caller.
    """

    def __init__(
        self,
        database: Optional[DocumentDatabase] = None,
        embedding_client: Optional[OpenAIEmbeddingClient] = None,
        vector_store: Optional[VectorStore] = None,
        lexical_searchers: Optional[Mapping[Corpus, LexicalSearchAdapter]] = None,
        rrf_fusion: Optional[ReciprocalRankFusion] = None,
        reranker: Optional[CohereReranker] = None,
        cache: Optional[TTLCache] = None,
        max_workers: Optional[int] = None,
    ):
        """
        Initialize hybrid search engine

        Args:
            database: Corpus database (opened from config.database_path if omitted)
            embedding_client: Query embedding provider
            vector_store: Embedding storage and similarity scan
            lexical_searchers: Lexical adapter per corpus (FTS5 by default)
            rrf_fusion: Fusion engine (k and weights from config by default)
            reranker: Cohere reranker; reranking is skipped when it is unavailable
            cache: Result cache (TTL from config.cache_ttl)
            max_workers: Threads used to run the search branches
        """
        self._owns_database = database is None
        self.db = database or DocumentDatabase()
        self.embedding_client = embedding_client or OpenAIEmbeddingClient()
        self.vector_store = vector_store or VectorStore(self.db, default_model=self.embedding_client.model)
        self.lexical_searchers: Dict[Corpus, LexicalSearchAdapter] = dict(lexical_searchers or {})
        for corpus in CORPORA:
            self.lexical_searchers.setdefault(corpus, FTS5LexicalSearch(self.db, corpus))
        self.rrf_fusion = rrf_fusion or ReciprocalRankFusion.from_config()
        self.reranker = reranker or CohereReranker()
        self.cache = cache if cache is not None else TTLCache(ttl=config.cache_ttl, name="search cache")

        self.enable_cache = config.enable_cache
        self.similarity_threshold = config.similarity_threshold
        self.candidate_multiplier = config.candidate_multiplier
        self.auto_rerank_model = config.rerank_auto_model

        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or config.search_workers,
            thread_name_prefix="search-branch",
        )
        self._stats_lock = threading.Lock()
        self._stats = {"searches": 0, "cache_hits": 0, "degraded": 0, "failed": 0}

        logger.info(
            f"Hybrid search engine initialized (rrf k={self.rrf_fusion.k_parameter}, "
            f"cache ttl={self.cache.ttl}s)"
        )

    # ------------------------------------------------------------------
    # Public search surface
    # ------------------------------------------------------------------

    def search(self, query: str, options: Optional[SearchOptions] = None) -> List[SearchResult]:
        """Search the node corpus"""
        return self.search_detailed(query, "nodes", options).results

    def search_templates(self, query: str, options: Optional[SearchOptions] = None) -> List[SearchResult]:
        """Search the template corpus"""
        return self.search_detailed(query, "templates", options).results

    def search_detailed(
        self,
        query: str,
        corpus: Corpus = "nodes",
        options: Optional[SearchOptions] = None,
    ) -> SearchOutcome:
        """
        Run the full pipeline for one corpus

        Args:
            query: Natural-language query
            corpus: "nodes" or "templates"
            options: Limit, enabled methods, reranking flag and rrf k

        Returns:
            SearchOutcome with the results plus degradation flag, stage path
            and per-stage timings (ms)

        Raises:
            InvalidQuery: Unknown corpus
            SchemaNotReady, ProviderUnavailable: Vector search is the only
                enabled method and it cannot run
            SearchUnavailable: Every enabled branch failed
            FusionInputMismatch: A branch returned a malformed ranking
        """
        if corpus not in CORPORA:
            raise InvalidQuery(f"Unknown corpus: {corpus!r}")

        options = options or SearchOptions()
        outcome = SearchOutcome(results=[], stages=[PipelineStage.IDLE.value])

        normalized = normalize_query(query)
        if not normalized:
            outcome.stages.append(PipelineStage.DONE.value)
            return outcome

        self._count("searches")
        start_time = time.perf_counter()

        cache_key = make_cache_key(normalized, corpus, options)
        if self.enable_cache:
            cached = self.cache.get(cache_key)
            if cached is not None:
                logger.debug(f"Cache hit for {corpus} query '{normalized}'")
                self._count("cache_hits")
                outcome.results = list(cached)
                outcome.cache_hit = True
                outcome.stages.append(PipelineStage.DONE.value)
                return outcome

        try:
            branch_results = self._dispatch(normalized, corpus, options, outcome)
            fused = self._fuse(branch_results, options, outcome)
        except Exception:
            outcome.stages.append(PipelineStage.FAILED.value)
            self._count("failed")
            raise

        ranked = self._rerank(normalized, fused, options, outcome)

        stage_start = time.perf_counter()
        outcome.stages.append(PipelineStage.TRUNCATING.value)
        outcome.results = ranked[:options.limit]
        outcome.timings["truncating"] = (time.perf_counter() - stage_start) * 1000

        outcome.stages.append(PipelineStage.CACHE_WRITE.value)
        # Degraded results are not cached so a recovered provider is used on the next call
        if self.enable_cache and not outcome.degraded:
            try:
                self.cache.set(cache_key, tuple(outcome.results))
            except Exception as e:
                logger.warning(f"Failed to cache search results: {e}")

        outcome.stages.append(PipelineStage.DONE.value)
        outcome.timings["total"] = (time.perf_counter() - start_time) * 1000
        if outcome.degraded:
            self._count("degraded")

        logger.info(
            f"Search '{normalized}' on {corpus}: {len(outcome.results)} results in "
            f"{outcome.timings['total']:.0f}ms{' (degraded)' if outcome.degraded else ''}"
        )
        return outcome

    def search_combined(self, query: str, options: Optional[SearchOptions] = None) -> CombinedSearchResult:
        """
        Search nodes and templates concurrently

        The limit is split 70/30 between nodes and templates. Nodes always get
        at least one slot, so a limit of 1 searches nodes only. The total never
        exceeds the limit and the two corpora are never fused together.
        """
        options = options or SearchOptions()
        normalized = normalize_query(query)
        search_method = "hybrid" if len(options.methods) > 1 else options.methods[0]
        if not normalized:
            return CombinedSearchResult(query=normalized, nodes=[], templates=[], search_time=0.0,
                                        search_method=search_method)

        nodes_limit = min(options.limit, max(1, round(options.limit * config.combined_nodes_share)))
        templates_limit = options.limit - nodes_limit
        nodes_options = options.merged(limit=nodes_limit)

        start_time = time.perf_counter()
        # Separate pool: the corpus searches themselves submit branches to self._executor
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="search-corpus") as pool:
            nodes_future = pool.submit(self.search_detailed, normalized, "nodes", nodes_options)
            templates_future = None
            if templates_limit > 0:
                templates_future = pool.submit(
                    self.search_detailed, normalized, "templates", options.merged(limit=templates_limit)
                )
            nodes_outcome = nodes_future.result()
            templates_outcome = templates_future.result() if templates_future else SearchOutcome(results=[])

        search_time = (time.perf_counter() - start_time) * 1000
        logger.info(
            f"Combined search '{normalized}': {len(nodes_outcome.results)} nodes, "
            f"{len(templates_outcome.results)} templates in {search_time:.0f}ms"
        )

        return CombinedSearchResult(
            query=normalized,
            nodes=nodes_outcome.results,
            templates=templates_outcome.results,
            search_time=search_time,
            search_method=search_method,
            degraded=nodes_outcome.degraded or templates_outcome.degraded,
        )

    # ------------------------------------------------------------------
    # Pipeline stages
    # ------------------------------------------------------------------

    def _dispatch(
        self, query: str, corpus: Corpus, options: SearchOptions, outcome: SearchOutcome
    ) -> Dict[str, List[SearchResult]]:
        """Run the enabled branches concurrently and join them"""
        outcome.stages.append(PipelineStage.DISPATCHING.value)
        stage_start = time.perf_counter()
        candidate_limit = options.limit * self.candidate_multiplier

        futures: Dict[str, Future] = {}
        if options.lexical_enabled:
            futures["lexical"] = self._executor.submit(self._lexical_branch, query, corpus, candidate_limit)
        if options.vector_enabled:
            unsupported = self._vector_unsupported_reason(corpus)
            if unsupported and options.lexical_enabled:
                # Missing capability, not a failure: the query runs lexical-only and stays cacheable
                logger.debug(f"Skipping vector search on {corpus}: {unsupported}")
                outcome.skipped["vector"] = unsupported
            else:
                futures["vector"] = self._executor.submit(self._vector_branch, query, corpus, candidate_limit)

        results: Dict[str, List[SearchResult]] = {}
        failures: Dict[str, Exception] = {}
        for method, future in futures.items():
            try:
                results[method] = future.result()
            except Exception as e:
                failures[method] = e
                outcome.errors[method] = str(e)

        outcome.timings["dispatching"] = (time.perf_counter() - stage_start) * 1000

        if failures and not results:
            if len(options.methods) == 1:
                method, error = next(iter(failures.items()))
                logger.error(f"{method.capitalize()} search failed for '{query}': {error}")
                raise error
            unavailable = {**outcome.skipped, **outcome.errors}
            logger.error(f"All search methods failed for '{query}': {unavailable}")
            raise SearchUnavailable(f"All search methods failed: {unavailable}")

        for method, error in failures.items():
            logger.warning(f"{method.capitalize()} search failed, continuing without it: {error}")
            outcome.degraded = True

        logger.debug(
            f"Branches for '{query}' on {corpus}: "
            + ", ".join(f"{method}={len(r)}" for method, r in results.items())
        )
        return results

    def _lexical_branch(self, query: str, corpus: Corpus, limit: int) -> List[SearchResult]:
        return self.lexical_searchers[corpus].search(query, limit)

    def _vector_unsupported_reason(self, corpus: Corpus) -> Optional[str]:
        """Why vector search cannot run on this corpus at all, or None"""
        if not self.vector_store.is_ready(corpus):
            return "embedding columns missing"
        if not self.embedding_client.is_available():
            return "embedding provider not configured"
        return None

    def _vector_branch(self, query: str, corpus: Corpus, limit: int) -> List[SearchResult]:
        if not self.vector_store.is_ready(corpus):
            raise SchemaNotReady(f"Vector search is not available for '{corpus}' (embedding columns missing)")
        if not self.embedding_client.is_available():
            raise ProviderUnavailable("Embedding provider is not configured")

        query_embedding = self.embedding_client.embed_one(query)
        return self.vector_store.find_similar(
            corpus, query_embedding.embedding, limit, threshold=self.similarity_threshold
        )

    def _fuse(
        self, branch_results: Dict[str, List[SearchResult]], options: SearchOptions, outcome: SearchOutcome
    ) -> List[SearchResult]:
        outcome.stages.append(PipelineStage.FUSING.value)
        stage_start = time.perf_counter()

        non_empty = {method: results for method, results in branch_results.items() if results}
        if len(non_empty) > 1:
            fused = self.rrf_fusion.fuse(non_empty, k_parameter=options.rrf_k)
        elif non_empty:
            # A single ranking is used as is
            fused = next(iter(non_empty.values()))
        else:
            fused = []

        outcome.timings["fusing"] = (time.perf_counter() - stage_start) * 1000
        return fused

    def _rerank(
        self, query: str, candidates: List[SearchResult], options: SearchOptions, outcome: SearchOutcome
    ) -> List[SearchResult]:
        if not (options.enable_reranking and candidates and self.reranker and self.reranker.is_available()):
            outcome.stages.append(PipelineStage.SKIP_RERANK.value)
            return candidates

        outcome.stages.append(PipelineStage.RERANKING.value)
        stage_start = time.perf_counter()
        model = self.reranker.get_optimal_model(query) if self.auto_rerank_model else None
        reranked = self.reranker.rerank(query, candidates, top_n=options.limit, model=model)
        outcome.timings["reranking"] = (time.perf_counter() - stage_start) * 1000
        return reranked

    # ------------------------------------------------------------------
    # Status and maintenance
    # ------------------------------------------------------------------

    def is_ready(self) -> bool:
        """Whether semantic search can run (embedding schema present and provider configured)"""
        return self.vector_store.is_ready() and self.embedding_client.is_available()

    def get_statistics(self) -> dict:
        with self._stats_lock:
            queries = dict(self._stats)

        return {
            "queries": queries,
            "result_cache": self.cache.stats(),
            "embedding_cache": self.embedding_client.get_cache_stats(),
            "embeddings": self.vector_store.get_embedding_stats(),
            "rrf": self.rrf_fusion.get_parameters(),
            "reranker": {**self.reranker.get_config(), "available": self.reranker.is_available()},
            "semantic_ready": self.is_ready(),
            "settings": {
                "enable_cache": self.enable_cache,
                "similarity_threshold": self.similarity_threshold,
                "candidate_multiplier": self.candidate_multiplier,
                "auto_rerank_model": self.auto_rerank_model,
            },
        }

    def clear_cache(self) -> None:
        self.cache.clear()
        self.embedding_client.clear_cache()
        logger.info("Search caches cleared")

    def update_config(
        self,
        similarity_threshold: Optional[float] = None,
        candidate_multiplier: Optional[int] = None,
        rrf_k: Optional[int] = None,
        rrf_weights: Optional[Dict[str, float]] = None,
        enable_cache: Optional[bool] = None,
        auto_rerank_model: Optional[bool] = None,
    ) -> None:
        """Change tuning parameters; cached results are dropped since they no longer apply"""
        if similarity_threshold is not None:
            if not -1.0 <= similarity_threshold <= 1.0:
                raise ValueError("similarity_threshold must be between -1 and 1")
            self.similarity_threshold = similarity_threshold
        if candidate_multiplier is not None:
            if candidate_multiplier < 1:
                raise ValueError("candidate_multiplier must be >= 1")
            self.candidate_multiplier = candidate_multiplier
        if rrf_k is not None or rrf_weights is not None:
            self.rrf_fusion.update_parameters(
                rrf_k if rrf_k is not None else self.rrf_fusion.k_parameter, rrf_weights
            )
        if enable_cache is not None:
            self.enable_cache = enable_cache
        if auto_rerank_model is not None:
            self.auto_rerank_model = auto_rerank_model

        self.cache.clear()
        logger.info("Hybrid search configuration updated")

    def _count(self, key: str) -> None:
        with self._stats_lock:
            self._stats[key] += 1

    def close(self) -> None:
        self._executor.shutdown(wait=True)
        self.embedding_client.close()
        if self._owns_database:
            self.db.close()
        logger.info("Hybrid search engine closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
