"""OpenAI-compatible Embeddings API Client

This module turns text into fixed-length vectors through a remote embeddings
endpoint. It owns batching, per-text caching, retry/backoff and cost
accounting for the search engine.
"""

import time
from dataclasses import dataclass
from typing import Callable, List, Optional

import numpy as np
import requests
from pydantic import BaseModel, ValidationError
from tqdm import tqdm

from ..config import config
from ..errors import ProviderUnavailable
from ..models.entity import content_hash
from ..utils.cache import TTLCache
from ..utils.logger import setup_logger
from ..utils.retry import RetryPolicy

logger = setup_logger(__name__)


class EmbeddingItem(BaseModel):
    embedding: List[float]
    index: int


class EmbeddingUsage(BaseModel):
    total_tokens: int = 0


class EmbeddingResponse(BaseModel):
    """Shape of the provider response; anything else is rejected"""

    data: List[EmbeddingItem]
    usage: EmbeddingUsage = EmbeddingUsage()


@dataclass
class EmbeddingResult:
    embedding: np.ndarray
    token_count: int
    cost: float
    cached: bool = False


@dataclass
class BatchEmbeddingResult:
    embeddings: List[np.ndarray]
    total_tokens: int
    total_cost: float
    processing_time: float  # seconds


class OpenAIEmbeddingClient:
    """
    API client for OpenAI-style embeddings endpoints.

    Features:
    - Batch processing with automatic splitting and inter-batch delay
    - Retry logic with exponential backoff (shared RetryPolicy)
    - Response re-sorting by the index the API returns
    - Per-text TTL cache for single-text lookups (query embeddings)
    - Token usage and cost accounting
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        dimensions: Optional[int] = None,
        api_url: Optional[str] = None,
        batch_size: Optional[int] = None,
        batch_delay: Optional[float] = None,
        timeout: Optional[float] = None,
        cost_per_1k_tokens: Optional[float] = None,
        retry_policy: Optional[RetryPolicy] = None,
        cache: Optional[TTLCache] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize embedding client.

        Args:
            api_key: Provider API key (default from config)
            model: Embedding model name (default: text-embedding-3-small)
            dimensions: Requested vector length (default: 1536)
            api_url: API endpoint URL
            batch_size: Maximum texts per request (default: 100)
            batch_delay: Seconds to wait between batches
            timeout: Request timeout in seconds
            cost_per_1k_tokens: Price used for cost accounting
            retry_policy: Retry/backoff policy for each batch
            cache: Cache for single-text embeddings (24h TTL by default)
            session: requests session (injected in tests)
            sleep: Sleep function used for the inter-batch delay
        """
        self.api_key = config.openai_api_key if api_key is None else api_key
        self.model = model or config.embedding_model
        self.dimensions = dimensions or config.embedding_dimensions
        self.api_url = api_url or config.embedding_api_url
        self.batch_size = batch_size or config.embedding_batch_size
        self.batch_delay = config.embedding_batch_delay if batch_delay is None else batch_delay
        self.timeout = timeout or config.embedding_timeout
        per_1k = config.embedding_cost_per_1k_tokens if cost_per_1k_tokens is None else cost_per_1k_tokens
        self.cost_per_token = per_1k / 1000
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=config.max_retries,
            base_delay=config.retry_base_delay,
            retry_on=(requests.exceptions.RequestException, ValidationError, ValueError),
        )
        self.cache = cache if cache is not None else TTLCache(ttl=config.embedding_cache_ttl, name="embedding cache")
        self.sleep = sleep

        # Session for connection pooling
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        })

        logger.info(
            f"Embedding client initialized (model: {self.model}, dims: {self.dimensions}, "
            f"batch size: {self.batch_size})"
        )

    def is_available(self) -> bool:
        """Check whether the provider is configured"""
        return bool(self.api_key)

    def embed(self, texts: List[str], show_progress_bar: bool = False) -> List[np.ndarray]:
        """Embed texts, returning one vector per input in input order"""
        return self.generate_embeddings(texts, show_progress_bar=show_progress_bar).embeddings

    def generate_embeddings(self, texts: List[str], show_progress_bar: bool = False) -> BatchEmbeddingResult:
        """
        Generate embeddings for multiple texts with batching.

        Args:
            texts: Texts to embed
            show_progress_bar: Whether to show a tqdm progress bar over batches

        Returns:
            BatchEmbeddingResult with embeddings in input order

        Raises:
            ProviderUnavailable: If the provider is not configured or a batch
                fails after all retries
        """
        if not texts:
            return BatchEmbeddingResult(embeddings=[], total_tokens=0, total_cost=0.0, processing_time=0.0)

        if not self.is_available():
            raise ProviderUnavailable("Embedding API key is not configured (set OPENAI_API_KEY)")

        start_time = time.perf_counter()
        embeddings: List[np.ndarray] = []
        total_tokens = 0

        batches = self.create_batches(texts, self.batch_size)
        logger.info(f"Processing {len(texts)} texts in {len(batches)} batches")

        iterator = enumerate(batches)
        if show_progress_bar and len(batches) > 1:
            iterator = tqdm(iterator, desc=f"Embedding with {self.model}", total=len(batches), unit="batch")

        for i, batch in iterator:
            logger.debug(f"Processing batch {i + 1}/{len(batches)} with {len(batch)} texts")
            batch_embeddings, batch_tokens = self.retry_policy.call(
                lambda: self._encode_batch(batch),
                description=f"Embedding batch {i + 1}/{len(batches)}",
            )
            embeddings.extend(batch_embeddings)
            total_tokens += batch_tokens

            # Delay between batches to respect rate limits
            if i < len(batches) - 1 and self.batch_delay > 0:
                self.sleep(self.batch_delay)

        total_cost = total_tokens * self.cost_per_token
        processing_time = time.perf_counter() - start_time
        logger.info(
            f"Generated {len(embeddings)} embeddings in {processing_time * 1000:.0f}ms. "
            f"Tokens: {total_tokens}, cost: ${total_cost:.6f}"
        )

        return BatchEmbeddingResult(
            embeddings=embeddings,
            total_tokens=total_tokens,
            total_cost=total_cost,
            processing_time=processing_time,
        )

    def embed_one(self, text: str) -> EmbeddingResult:
        """Embed a single text, serving repeats from the cache at zero cost"""
        key = content_hash(text)

        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Returning cached embedding")
            return EmbeddingResult(embedding=cached, token_count=0, cost=0.0, cached=True)

        result = self.generate_embeddings([text])
        embedding = result.embeddings[0]
        # Shared between the cache and every caller that hits it
        embedding.setflags(write=False)
        self.cache.set(key, embedding)

        return EmbeddingResult(embedding=embedding, token_count=result.total_tokens, cost=result.total_cost)

    def _encode_batch(self, inputs: List[str]):
        """
        Encode a single batch via the embeddings API.

        Returns:
            Tuple of (embeddings sorted by input index, total tokens)

        Raises:
            requests.exceptions.RequestException: If the API request fails
            ValidationError: If the response does not have the expected shape
            ValueError: If the response does not cover every input exactly once
        """
        payload = {
            "model": self.model,
            "input": inputs,
            "dimensions": self.dimensions,
            "encoding_format": "float",
        }

        response = self.session.post(self.api_url, json=payload, timeout=self.timeout)

        # Raise exception for HTTP errors
        response.raise_for_status()

        parsed = EmbeddingResponse.model_validate(response.json())

        # The API may answer out of order
        items = sorted(parsed.data, key=lambda item: item.index)
        if [item.index for item in items] != list(range(len(inputs))):
            raise ValueError(
                f"Embedding response indices do not match inputs "
                f"(expected {len(inputs)}, got {[item.index for item in items]})"
            )

        embeddings = [np.asarray(item.embedding, dtype=np.float32) for item in items]
        return embeddings, parsed.usage.total_tokens

    @staticmethod
    def create_batches(texts: List[str], batch_size: int) -> List[List[str]]:
        return [texts[i:i + batch_size] for i in range(0, len(texts), batch_size)]

    def estimate_cost(self, texts: List[str]) -> dict:
        """Rough estimation: 0.75 tokens per character"""
        total_chars = sum(len(text) for text in texts)
        estimated_tokens = int(np.ceil(total_chars * 0.75))
        return {
            "estimated_tokens": estimated_tokens,
            "estimated_cost": estimated_tokens * self.cost_per_token,
        }

    def clear_cache(self) -> None:
        self.cache.clear()
        logger.debug("Embedding cache cleared")

    def get_cache_stats(self) -> dict:
        return self.cache.stats()

    def close(self) -> None:
        self.session.close()

    def __repr__(self):
        return f"OpenAIEmbeddingClient(model={self.model}, dimensions={self.dimensions})"
