"""Hybrid lexical + semantic search over node and template documentation"""

from .errors import (
    DocsSearchError,
    FusionInputMismatch,
    InvalidQuery,
    ProviderUnavailable,
    SchemaNotReady,
    SearchUnavailable,
)
from .indexing.hybrid_search import HybridSearchEngine
from .models.search import CombinedSearchResult, SearchOptions, SearchOutcome, SearchResult

__version__ = "0.1.0"

__all__ = [
    "HybridSearchEngine",
    "SearchOptions",
    "SearchResult",
    "SearchOutcome",
    "CombinedSearchResult",
    "DocsSearchError",
    "ProviderUnavailable",
    "SchemaNotReady",
    "InvalidQuery",
    "FusionInputMismatch",
    "SearchUnavailable",
]
