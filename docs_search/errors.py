"""Error taxonomy for the hybrid search pipeline"""

from typing import Optional


class DocsSearchError(Exception):
    """Base class for all search errors"""


class ProviderUnavailable(DocsSearchError):
    """Embedding or rerank provider failed after all retries (network, auth, bad response)"""

    def __init__(self, message: str, last_error: Optional[BaseException] = None):
        super().__init__(message)
        self.last_error = last_error


class SchemaNotReady(DocsSearchError):
    """Embedding columns are missing from the document store"""


class InvalidQuery(DocsSearchError):
    """Search options are malformed (bad limit, unknown search method)"""


class FusionInputMismatch(DocsSearchError):
    """Ranked lists handed to fusion are not well formed"""


class SearchUnavailable(DocsSearchError):
    """Every enabled search method failed and no fallback result exists"""
