"""Error taxonomy shared by the crawl pipeline."""
from __future__ import annotations

from typing import Optional


class CrawlerError(Exception):
    """Base class for all crawler errors."""


class ConfigurationError(CrawlerError):
    """Raised when settings or a config file cannot be parsed."""


class TransientNetworkError(CrawlerError):
    """Timeout, connection reset or 5xx: safe to retry after a backoff."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class BlockedError(CrawlerError):
    """403/429 or a challenge page that the resolver could not clear."""


class FatalFetchError(CrawlerError):
    """Malformed target, exhausted retries or any non-retryable response."""


class DataIntegrityError(CrawlerError):
    """Persistence constraint violation outside the expected skip path."""

    def __init__(self, message: str, *, external_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.external_id = external_id
