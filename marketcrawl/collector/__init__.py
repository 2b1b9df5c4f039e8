"""Listing collection: fetch client, pacing, extraction and crawl sessions.

- Fetch client with egress rotation, retries and challenge handling
- Time-of-day scaled page pacing
- Selector-driven result page extraction
- Session orchestrator with duplicate-rate early stop
"""

from .extractor import Extractor, SelectorExtractor
from .fetcher import FetchClient, FetchContext, FetchResult, FetchStatus
from .pacing import Pacer, PacingConfig
from .session import (
    AbandonReason,
    CrawlOrchestrator,
    CrawlSession,
    SessionState,
    SessionSummary,
    build_egress_pool,
)

__all__ = [
    "AbandonReason",
    "CrawlOrchestrator",
    "CrawlSession",
    "Extractor",
    "FetchClient",
    "FetchContext",
    "FetchResult",
    "FetchStatus",
    "Pacer",
    "PacingConfig",
    "SelectorExtractor",
    "SessionState",
    "SessionSummary",
    "build_egress_pool",
]
