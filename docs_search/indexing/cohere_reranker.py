"""Cohere Rerank API integration for improved search precision"""

import re
from typing import Any, List, Optional, Sequence

import httpx
from cohere.core.api_error import ApiError
from pydantic import BaseModel, ValidationError

from ..config import config
from ..errors import ProviderUnavailable
from ..models.search import SearchResult
from ..utils.logger import setup_logger
from ..utils.retry import RetryPolicy

logger = setup_logger(__name__)

ENGLISH_MODEL = "rerank-english-v3.0"
MULTILINGUAL_MODEL = "rerank-multilingual-v3.0"
SUPPORTED_MODELS = [
    "rerank-v3.5",
    "rerank-multilingual-v3.0",
    "rerank-english-v3.0",
    "rerank-multilingual-v2.0",
    "rerank-english-v2.0",
]

_ENGLISH_PATTERN = re.compile(r"^[a-zA-Z0-9\s\-_.,!?()]+$")
_ID_PREFIX_PATTERN = re.compile(r"^nodes-(base|langchain)\.")

# API status errors, transport failures and malformed responses; anything else propagates
RETRYABLE_ERRORS = (ApiError, httpx.RequestError, ValidationError)


class RerankItem(BaseModel):
    index: int
    relevance_score: float


class RerankResponse(BaseModel):
    """Shape of the rerank response; anything else is treated as a failure"""

    results: List[RerankItem]


class CohereReranker:
    """
    Cohere Rerank API integration for search result reranking

    Reranking is a quality enhancement only: every failure path returns the
    original candidate list untouched.
    """

    def __init__(
        self,
        model_name: Optional[str] = None,
        api_key: Optional[str] = None,
        max_documents: Optional[int] = None,
        timeout: Optional[float] = None,
        retry_policy: Optional[RetryPolicy] = None,
        client: Any = None,
    ):
        """
        Initialize Cohere reranker with API credentials

        Args:
            model_name: Name of Cohere rerank model (default from config)
            api_key: Cohere API key (default from config)
            max_documents: Most candidates sent per call; the rest pass through
            timeout: Request timeout in seconds
            retry_policy: Retry/backoff policy for the rerank call
            client: Pre-built Cohere client (injected in tests)
        """
        self.model_name = model_name or config.rerank_model
        self.api_key = config.cohere_api_key if api_key is None else api_key
        self.max_documents = max_documents or config.rerank_max_documents
        self.timeout = timeout or config.rerank_timeout
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=config.max_retries,
            base_delay=config.retry_base_delay,
            retry_on=RETRYABLE_ERRORS,
        )
        self.cost_per_search_unit = config.rerank_cost_per_search_unit
        self.client = client  # Lazy load on first use
        logger.info(f"Cohere reranker initialized (model: {self.model_name}, lazy loading)")

    def _load_client(self) -> bool:
        """Lazy load the Cohere client"""
        if self.client is not None:
            return True

        if not self.api_key:
            logger.debug("Cohere API key not configured, reranking unavailable")
            return False

        try:
            import cohere

            logger.info(f"Initializing Cohere client with model: {self.model_name}")
            self.client = cohere.ClientV2(api_key=self.api_key, timeout=self.timeout)
            logger.info("Cohere client initialized successfully")
            return True
        except Exception as e:
            logger.error(f"Error initializing Cohere client: {e}")
            return False

    def is_available(self) -> bool:
        """Check whether reranking can be attempted"""
        return self._load_client()

    @staticmethod
    def prepare_document(result: SearchResult) -> str:
        """Compact text for one candidate: name | description | category | short id"""
        short_id = _ID_PREFIX_PATTERN.sub("", str(result.entity_id))
        parts = [result.name, result.description, result.category, short_id]
        return " | ".join(part.strip() for part in parts if part and part.strip())

    def rerank(
        self,
        query: str,
        candidates: List[SearchResult],
        top_n: Optional[int] = None,
        model: Optional[str] = None,
    ) -> List[SearchResult]:
        """
        Rerank candidates using Cohere Rerank API

        Args:
            query: Search query
            candidates: Ranked candidates (fused or single-method)
            top_n: Number of reranked results requested from the API
            model: Override of the rerank model for this call

        Returns:
            Reranked prefix followed by candidates the API did not rank
            (scored 0.0), or the original list on any failure
        """
        if not candidates or not query.strip():
            return candidates

        if not self._load_client():
            logger.warning("Cohere client unavailable, returning original results")
            return candidates

        model = model or self.model_name
        limited = candidates[:self.max_documents]
        documents = [self.prepare_document(c) for c in limited]
        top_n = min(top_n or len(limited), len(limited))

        logger.info(f"Reranking {len(limited)} documents with Cohere {model}")

        try:
            response = self.retry_policy.call(
                lambda: self._call_rerank(model, query, documents, top_n),
                description="Cohere rerank",
            )
            reranked = self._apply_response(response, limited, query)
        except (ProviderUnavailable, ValidationError, ValueError) as e:
            logger.error(f"Error during Cohere reranking: {e}")
            logger.warning("Falling back to original ranking")
            return candidates

        # Candidates the API did not rank keep their order after the reranked prefix
        ranked_ids = {r.entity_id for r in reranked}
        tail = [c for c in limited if c.entity_id not in ranked_ids] + candidates[self.max_documents:]
        tail = [c.with_score(0.0, pre_rerank_score=c.relevance_score) for c in tail]

        if reranked:
            logger.info(
                f"Reranking complete. Top score: {reranked[0].relevance_score:.3f}, "
                f"Returned {len(reranked)} reranked + {len(tail)} passed through"
            )
        return reranked + tail

    def _call_rerank(self, model: str, query: str, documents: List[str], top_n: int) -> RerankResponse:
        response = self.client.rerank(
            model=model,
            query=query,
            documents=documents,
            top_n=top_n,
        )
        if isinstance(response, dict):
            return RerankResponse.model_validate(response)
        return RerankResponse.model_validate(response, from_attributes=True)

    def _apply_response(
        self, response: RerankResponse, candidates: Sequence[SearchResult], query: str
    ) -> List[SearchResult]:
        if not response.results:
            raise ValueError("Cohere returned no rerank results")

        indices = [item.index for item in response.results]
        if len(set(indices)) != len(indices) or any(not 0 <= i < len(candidates) for i in indices):
            raise ValueError(f"Cohere returned invalid result indices: {indices}")

        # Highest relevance first regardless of response order
        items = sorted(response.results, key=lambda item: item.relevance_score, reverse=True)

        reranked = []
        for rank, item in enumerate(items, start=1):
            original = candidates[item.index]
            reranked.append(
                original.with_score(
                    item.relevance_score,
                    rerank_score=item.relevance_score,
                    rerank_rank=rank,
                    pre_rerank_score=original.relevance_score,
                )
            )

        estimated_cost = self.estimate_cost(len(candidates))
        logger.debug(
            f"Cohere reranking for '{query}': {len(reranked)} results, ~${estimated_cost:.4f} cost"
        )
        return reranked

    @staticmethod
    def get_optimal_model(query: str) -> str:
        """English model for plain ASCII queries, multilingual model otherwise"""
        if query and _ENGLISH_PATTERN.match(query):
            return ENGLISH_MODEL
        return MULTILINGUAL_MODEL

    @staticmethod
    def get_supported_models() -> List[str]:
        return list(SUPPORTED_MODELS)

    def estimate_cost(self, document_count: int) -> float:
        """Roughly one search unit per document"""
        return min(document_count, self.max_documents) * self.cost_per_search_unit

    @staticmethod
    def analyze_reranking(original: Sequence[SearchResult], reranked: Sequence[SearchResult]) -> dict:
        """How much reranking moved the results"""
        if not original or not reranked:
            return {
                "original_top_result": None,
                "reranked_top_result": None,
                "top_result_changed": False,
                "average_score_change": 0.0,
                "position_changes": [],
            }

        original_positions = {r.entity_id: rank for rank, r in enumerate(original, start=1)}
        original_avg = sum(r.relevance_score for r in original) / len(original)
        reranked_avg = sum(r.relevance_score for r in reranked) / len(reranked)

        position_changes = []
        for new_rank, result in enumerate(reranked, start=1):
            original_rank = original_positions.get(result.entity_id, len(original) + 1)
            position_changes.append({
                "entity_id": result.entity_id,
                "original_rank": original_rank,
                "new_rank": new_rank,
                "change": original_rank - new_rank,
            })

        return {
            "original_top_result": original[0].entity_id,
            "reranked_top_result": reranked[0].entity_id,
            "top_result_changed": original[0].entity_id != reranked[0].entity_id,
            "average_score_change": reranked_avg - original_avg,
            "position_changes": position_changes,
        }

    def update_config(
        self,
        model_name: Optional[str] = None,
        max_documents: Optional[int] = None,
        max_retries: Optional[int] = None,
    ) -> None:
        if model_name:
            self.model_name = model_name
        if max_documents:
            self.max_documents = max_documents
        if max_retries:
            self.retry_policy = RetryPolicy(
                max_attempts=max_retries,
                base_delay=self.retry_policy.base_delay,
                retry_on=self.retry_policy.retry_on,
                sleep=self.retry_policy.sleep,
            )
        logger.debug(f"Cohere reranker config updated: {self.get_config()}")

    def get_config(self) -> dict:
        return {
            "model": self.model_name,
            "max_documents": self.max_documents,
            "max_retries": self.retry_policy.max_attempts,
        }
