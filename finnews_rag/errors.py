"""
Error taxonomy shared by the ingestion and retrieval pipelines.
"""

from typing import Optional


class NewsRAGError(Exception):
    """Base class for pipeline errors."""
    pass


class EmbeddingValidationError(NewsRAGError, ValueError):
    """Raised when embedding input is empty. Never retried."""
    pass


class ProviderError(NewsRAGError):
    """Raised when the embedding provider returns an unusable response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """Timeout, connection failure, 5xx or 429. Safe to retry."""

    @property
    def rate_limited(self) -> bool:
        """True when the provider answered HTTP 429."""
        return self.status_code == 429


class ProviderPermissionError(ProviderError):
    """Authentication or authorization failure (401/403). Not retried."""
    pass
