"""Search request/response models"""

from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple
import hashlib
import json

from ..config import config
from ..errors import InvalidQuery
from .entity import Corpus, EntityId

SourceMethod = Literal["lexical", "vector", "hybrid", "fallback"]
SEARCH_METHODS: Tuple[str, ...] = ("lexical", "vector")


@dataclass(frozen=True)
class SearchResult:
    """
    One ranked hit

    Frozen, and the field mappings are copied into read-only views, so a
    cached result list cannot be changed through a result handed to a caller.
    """

    entity_id: EntityId
    corpus: Corpus
    display_fields: Mapping[str, Any]
    relevance_score: float
    source_method: SourceMethod
    score_trace: Mapping[str, float] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "display_fields", MappingProxyType(dict(self.display_fields)))
        object.__setattr__(self, "score_trace", MappingProxyType(dict(self.score_trace)))

    @property
    def name(self) -> str:
        return self.display_fields.get("name", "")

    @property
    def description(self) -> str:
        return self.display_fields.get("description", "")

    @property
    def category(self) -> str:
        return self.display_fields.get("category", "")

    def with_score(self, score: float, source_method: Optional[SourceMethod] = None, **trace: float) -> "SearchResult":
        """Copy with a new relevance score and extra score trace entries"""
        return replace(
            self,
            relevance_score=score,
            source_method=source_method or self.source_method,
            score_trace={**self.score_trace, **trace},
        )

    def to_dict(self) -> dict:
        return {
            "entity_id": self.entity_id,
            "corpus": self.corpus,
            **self.display_fields,
            "relevance_score": self.relevance_score,
            "source_method": self.source_method,
            "score_trace": dict(self.score_trace),
        }


@dataclass(frozen=True)
class SearchOptions:
    """Per-query options; defaults come from config"""

    limit: int = field(default_factory=lambda: config.default_limit)
    methods: Tuple[str, ...] = SEARCH_METHODS
    enable_reranking: bool = field(default_factory=lambda: config.enable_reranking)
    rrf_k: Optional[int] = None  # None -> fusion engine default

    def __post_init__(self):
        if isinstance(self.methods, str):
            object.__setattr__(self, "methods", (self.methods,))
        # Order-insensitive, duplicate-free
        object.__setattr__(self, "methods", tuple(sorted(set(self.methods))))

        if self.limit < 1:
            raise InvalidQuery(f"limit must be >= 1, got {self.limit}")
        if not self.methods:
            raise InvalidQuery("at least one search method must be enabled")
        unknown = set(self.methods) - set(SEARCH_METHODS)
        if unknown:
            raise InvalidQuery(f"unknown search methods: {sorted(unknown)}")

    @property
    def lexical_enabled(self) -> bool:
        return "lexical" in self.methods

    @property
    def vector_enabled(self) -> bool:
        return "vector" in self.methods

    def merged(self, **overrides: Any) -> "SearchOptions":
        overrides = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **overrides) if overrides else self

    def to_dict(self) -> dict:
        return {
            "limit": self.limit,
            "methods": list(self.methods),
            "enable_reranking": self.enable_reranking,
            "rrf_k": self.rrf_k,
        }


def normalize_query(query: Optional[str]) -> str:
    """Strip and collapse whitespace"""
    return " ".join((query or "").split())


def make_cache_key(query: str, corpus: Corpus, options: SearchOptions) -> str:
    """Deterministic key over (normalized query, corpus, options)"""
    payload = json.dumps(
        {"query": normalize_query(query), "corpus": corpus, "options": options.to_dict()},
        sort_keys=True,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass
class SearchOutcome:
    """Results of one pipeline run plus how they were produced"""

    results: List[SearchResult]
    degraded: bool = False
    cache_hit: bool = False
    stages: List[str] = field(default_factory=list)
    timings: Dict[str, float] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)
    skipped: Dict[str, str] = field(default_factory=dict)  # methods the corpus cannot serve


@dataclass
class CombinedSearchResult:
    """Node and template results searched independently for one query"""

    query: str
    nodes: List[SearchResult]
    templates: List[SearchResult]
    search_time: float  # milliseconds
    search_method: str = "hybrid"
    degraded: bool = False

    @property
    def total_count(self) -> int:
        return len(self.nodes) + len(self.templates)

    def to_dict(self) -> dict:
        return {
            "query": self.query,
            "nodes": [r.to_dict() for r in self.nodes],
            "templates": [r.to_dict() for r in self.templates],
            "total_count": self.total_count,
            "search_time": self.search_time,
            "search_method": self.search_method,
            "degraded": self.degraded,
        }
