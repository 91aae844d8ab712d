"""Data models for searchable documentation entities"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union
import hashlib

import numpy as np

Corpus = Literal["nodes", "templates"]
CORPORA: tuple = ("nodes", "templates")

EntityId = Union[str, int]


def content_hash(text: str) -> str:
    """SHA-256 hex digest of a text (content fingerprint)"""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


@dataclass
class Entity:
    """
    A node or template as seen by the search engine

    Entities are owned by the document store; the engine only reads their
    searchable text and writes back embedding artifacts.
    """

    # Identifiers
    entity_id: EntityId  # node type string for nodes, integer id for templates
    corpus: Corpus

    # Display text fields
    name: str
    description: str = ""
    category: str = ""
    tags: List[str] = field(default_factory=list)  # operation names / template categories
    documentation: str = ""

    # Extra display-only data (package name, views, author...)
    attributes: Dict[str, Any] = field(default_factory=dict)

    def searchable_text(self) -> str:
        """
        Build the embedding input text

        Format: non-empty fields joined with " | "
        Example: "HTTP Request | Makes HTTP requests | Core Nodes | GET | POST"
        """
        parts = [self.name, self.description, self.category, self.documentation, *self.tags]
        return " | ".join(part.strip() for part in parts if part and part.strip())

    def content_hash(self) -> str:
        """Fingerprint of the current searchable text"""
        return content_hash(self.searchable_text())

    def display_fields(self) -> Dict[str, Any]:
        """Fields returned to callers alongside a search hit"""
        fields = {
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "tags": list(self.tags),
        }
        fields.update(self.attributes)
        return fields


@dataclass
class EmbeddingRecord:
    """Stored embedding of one entity together with the fingerprint that produced it"""

    entity_id: EntityId
    corpus: Corpus
    vector: np.ndarray
    content_hash: str
    model: str
    dimensions: int = 0
    generated_at: Optional[datetime] = None

    def __post_init__(self):
        self.vector = np.asarray(self.vector, dtype=np.float32)
        if not self.dimensions:
            self.dimensions = int(self.vector.shape[0])

    def is_stale(self, entity: Entity) -> bool:
        """True when the entity text changed since this vector was generated"""
        return self.content_hash != entity.content_hash()
