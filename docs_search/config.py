"""Configuration module for Docs Hybrid Search"""

import os
from pathlib import Path
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env file and set environment variables BEFORE defining Config class
from dotenv import dotenv_values

# Find and load .env file from project root
env_file = Path(__file__).parent.parent / ".env"
if env_file.exists():
    env_values = dotenv_values(env_file)
    # Values already present in the environment win over .env
    for key, value in env_values.items():
        if value is not None and key not in os.environ:
            os.environ[key] = str(value)


class Config(BaseSettings):
    """Application configuration loaded from environment variables"""

    # Document store
    database_path: Path = Path("data/nodes.db")

    # Embedding provider (OpenAI-compatible embeddings endpoint)
    openai_api_key: str = ""
    embedding_api_url: str = "https://api.openai.com/v1/embeddings"
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536
    embedding_batch_size: int = 100  # Provider batch limit
    embedding_batch_delay: float = 0.1  # Seconds between batches (rate limits)
    embedding_cost_per_1k_tokens: float = 0.00002
    embedding_cache_ttl: int = 24 * 60 * 60  # 24 hours
    embedding_timeout: float = 30.0

    # Cohere Rerank configuration
    cohere_api_key: str = ""
    rerank_model: str = "rerank-multilingual-v3.0"
    enable_reranking: bool = True
    rerank_auto_model: bool = False  # Pick English/multilingual model from the query
    rerank_max_documents: int = 1000
    rerank_timeout: float = 30.0
    rerank_cost_per_search_unit: float = 0.001

    # RRF (Reciprocal Rank Fusion) settings
    rrf_k_parameter: int = 60
    rrf_lexical_weight: float = 1.0
    rrf_vector_weight: float = 1.0

    # Result cache
    enable_cache: bool = True
    cache_ttl: int = 300  # 5 minutes

    # Search settings
    similarity_threshold: float = 0.2  # Permissive so fusion/rerank see enough candidates
    default_limit: int = 20
    candidate_multiplier: int = 2  # Each branch fetches limit * multiplier candidates
    combined_nodes_share: float = 0.7  # Node share of the limit in combined search
    search_workers: int = 4

    # Provider retries
    max_retries: int = 3
    retry_base_delay: float = 1.0

    # Logging
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    def validate_settings(self) -> None:
        """Validate numeric ranges and raise ValueError listing every problem"""
        errors: List[str] = []

        if not 1 <= self.embedding_batch_size <= 2048:
            errors.append("EMBEDDING_BATCH_SIZE must be between 1 and 2048")
        if self.embedding_dimensions < 1:
            errors.append("EMBEDDING_DIMENSIONS must be positive")
        if not 1 <= self.rrf_k_parameter <= 1000:
            errors.append("RRF_K_PARAMETER must be between 1 and 1000")
        if self.rrf_lexical_weight < 0 or self.rrf_vector_weight < 0:
            errors.append("RRF weights must be non-negative")
        if self.rrf_lexical_weight + self.rrf_vector_weight == 0:
            errors.append("At least one RRF weight must be > 0")
        if not -1.0 <= self.similarity_threshold <= 1.0:
            errors.append("SIMILARITY_THRESHOLD must be within [-1, 1]")
        if not 0.0 < self.combined_nodes_share < 1.0:
            errors.append("COMBINED_NODES_SHARE must be between 0 and 1")
        if self.max_retries < 1:
            errors.append("MAX_RETRIES must be >= 1")
        if self.default_limit < 1:
            errors.append("DEFAULT_LIMIT must be >= 1")

        if errors:
            raise ValueError("Invalid configuration: " + "; ".join(errors))


# Global config instance
config = Config()
