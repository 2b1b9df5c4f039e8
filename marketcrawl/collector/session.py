"""Crawl session orchestrator: paced pagination with a duplicate-rate early stop."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import quote_plus

import httpx

from ..antibot.challenge import (
    ChallengeDetector,
    ChallengeResolver,
    ChallengeStats,
    build_strategies,
)
from ..antibot.proxy import EgressPool
from ..antibot.retry import BackoffPolicy
from ..antibot.storage import ChallengeStore
from ..antibot.user_agent import HeaderProfilePool
from ..config import CrawlerSettings
from ..errors import CrawlerError, DataIntegrityError
from ..logging_utils import log_event
from ..models import ListingRecord, SaveOutcome
from ..upsert import ListingGateway
from .extractor import Extractor, SelectorExtractor
from .fetcher import FetchClient, FetchContext
from .pacing import Pacer, PacingConfig

LOGGER = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    EXTRACTING = "extracting"
    DUPLICATE_CHECK = "duplicate_check"
    CONTINUING = "continuing"
    STOPPING = "stopping"
    COMPLETED = "completed"
    ABANDONED_DUPLICATES = "abandoned_duplicates"
    ABANDONED_FATAL = "abandoned_fatal"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset(
    {
        SessionState.COMPLETED,
        SessionState.ABANDONED_DUPLICATES,
        SessionState.ABANDONED_FATAL,
        SessionState.CANCELLED,
    }
)


class AbandonReason(str, Enum):
    NONE = "none"
    TOO_MANY_DUPLICATES = "too-many-duplicates"
    NO_NEXT_PAGE = "no-next-page"
    MAX_PAGES = "max-pages"
    FATAL_ERROR = "fatal-error"
    CANCELLED = "cancelled"


@dataclass
class SessionSummary:
    """Terminal report handed back to whoever scheduled the session."""

    query: str
    outcome: SessionState
    abandon_reason: AbandonReason
    pages_fetched: int
    requests: int
    listings_seen: int
    saved: int
    skipped: int
    dropped: int
    sample_checked: int
    sample_duplicates: int
    challenge_stats: Dict[str, Any]
    quarantined_egress: int
    error: Optional[str]
    duration: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query": self.query,
            "outcome": self.outcome.value,
            "abandon_reason": self.abandon_reason.value,
            "pages_fetched": self.pages_fetched,
            "requests": self.requests,
            "listings_seen": self.listings_seen,
            "saved": self.saved,
            "skipped": self.skipped,
            "dropped": self.dropped,
            "sample_checked": self.sample_checked,
            "sample_duplicates": self.sample_duplicates,
            "challenge_stats": self.challenge_stats,
            "quarantined_egress": self.quarantined_egress,
            "error": self.error,
            "duration": round(self.duration, 3),
        }


@dataclass
class CrawlSession:
    """Operational telemetry of one running query."""

    query: str
    url: str
    state: SessionState = SessionState.IDLE
    reason: AbandonReason = AbandonReason.NONE
    pages_fetched: int = 0
    requests: int = 0
    listings_seen: int = 0
    sample_checked: int = 0
    sample_duplicates: int = 0
    saved: int = 0
    skipped: int = 0
    dropped: int = 0
    error: Optional[str] = None
    challenge_stats: ChallengeStats = field(default_factory=ChallengeStats)
    started_at: float = field(default_factory=time.monotonic)
    finished_at: Optional[float] = None

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, state: SessionState) -> None:
        if self.finished:
            return
        LOGGER.debug("Session %r: %s -> %s", self.query, self.state.value, state.value)
        self.state = state

    def finish(self, state: SessionState, reason: AbandonReason, error: Optional[str] = None) -> None:
        if self.finished:
            return
        if state is not SessionState.CANCELLED:
            self.transition(SessionState.STOPPING)
        self.state = state
        self.reason = reason
        self.error = error
        self.finished_at = time.monotonic()

    def summary(self, quarantined_egress: int = 0) -> SessionSummary:
        end = self.finished_at or time.monotonic()
        return SessionSummary(
            query=self.query,
            outcome=self.state,
            abandon_reason=self.reason,
            pages_fetched=self.pages_fetched,
            requests=self.requests,
            listings_seen=self.listings_seen,
            saved=self.saved,
            skipped=self.skipped,
            dropped=self.dropped,
            sample_checked=self.sample_checked,
            sample_duplicates=self.sample_duplicates,
            challenge_stats=self.challenge_stats.to_dict(),
            quarantined_egress=quarantined_egress,
            error=self.error,
            duration=end - self.started_at,
        )


def build_egress_pool(settings: CrawlerSettings) -> EgressPool:
    """Pool from the proxy file and/or the configured proxy list."""
    options = {
        "failure_threshold": settings.failure_threshold,
        "quarantine_cooldown": settings.quarantine_cooldown,
    }
    if settings.proxy_file:
        pool = EgressPool.from_file(settings.proxy_file, **options)
    else:
        pool = EgressPool(**options)
    for point in EgressPool.from_urls(settings.proxy_list).points:
        pool.add(point)
    if len(pool) == 0:
        LOGGER.warning("No egress points configured, requests go out directly")
    return pool


class CrawlOrchestrator:
    """Runs crawl sessions; the only component allowed to end one.

    Pages within a session are strictly sequential; sessions run
    concurrently up to ``max_concurrent_sessions``.
    """

    def __init__(
        self,
        settings: CrawlerSettings,
        gateway: ListingGateway,
        fetcher: FetchClient,
        *,
        extractor: Optional[Extractor] = None,
        pacer: Optional[Pacer] = None,
    ) -> None:
        self.settings = settings
        self.gateway = gateway
        self.fetcher = fetcher
        self.extractor = extractor or SelectorExtractor(settings.selectors)
        self.pacer = pacer or Pacer(PacingConfig(settings.page_delay_min, settings.page_delay_max))
        self._sessions = asyncio.Semaphore(settings.max_concurrent_sessions)
        self._source_lock = asyncio.Lock()
        self._source_id: Optional[int] = None

    @classmethod
    def from_settings(
        cls,
        settings: CrawlerSettings,
        gateway: ListingGateway,
        *,
        pool: Optional[EgressPool] = None,
        store: Optional[ChallengeStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> CrawlOrchestrator:
        """Wire the full pipeline from settings."""
        pool = pool if pool is not None else build_egress_pool(settings)
        profiles = HeaderProfilePool()
        store = store or ChallengeStore(
            Path(settings.challenge_dir),
            poll_interval=settings.operator_poll_interval,
        )
        strategies = build_strategies(
            settings.challenge_strategies,
            profiles=profiles,
            pool=pool,
            store=store,
            cooldown=settings.challenge_cooldown,
        )
        resolver = ChallengeResolver(strategies, ChallengeDetector.from_table(settings.signatures))
        policy = BackoffPolicy(
            base=settings.backoff_base,
            multiplier=settings.backoff_multiplier,
            cap=settings.backoff_cap,
            max_transient_attempts=settings.max_transient_attempts,
            max_blocked_attempts=settings.max_blocked_attempts,
        )
        fetcher = FetchClient(
            pool,
            resolver,
            policy=policy,
            profiles=profiles,
            timeout=settings.request_timeout,
            max_inflight=settings.max_inflight_fetches,
            accept_language=settings.accept_language,
            transport=transport,
        )
        return cls(settings, gateway, fetcher)

    async def __aenter__(self) -> CrawlOrchestrator:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.fetcher.aclose()

    def start_url(self, query: str) -> str:
        """A full URL is crawled as-is; anything else is a search keyword."""
        if query.startswith(("http://", "https://")):
            return query
        return f"{self.settings.base_url.rstrip('/')}/recherche?text={quote_plus(query)}"

    async def run(
        self,
        queries: Iterable[str],
        cancel_token: Optional[asyncio.Event] = None,
    ) -> List[SessionSummary]:
        """Crawl every query, at most ``max_concurrent_sessions`` at a time."""
        return list(
            await asyncio.gather(*(self.start_session(query, cancel_token) for query in queries))
        )

    async def start_session(
        self,
        query: str,
        cancel_token: Optional[asyncio.Event] = None,
    ) -> SessionSummary:
        """Crawl ``query`` to a terminal state.

        Setting ``cancel_token`` interrupts whatever the session is awaiting
        (pacing, fetch, backoff or operator wait) and ends it ``CANCELLED``.
        """
        session = CrawlSession(query=query, url=self.start_url(query))
        worker = asyncio.create_task(self._guarded_run(session))
        if cancel_token is None:
            await worker
        else:
            waiter = asyncio.create_task(cancel_token.wait())
            try:
                await asyncio.wait({worker, waiter}, return_when=asyncio.FIRST_COMPLETED)
                if not worker.done():
                    worker.cancel()
                    try:
                        await worker
                    except asyncio.CancelledError:
                        pass
                    session.finish(SessionState.CANCELLED, AbandonReason.CANCELLED)
                    LOGGER.warning("Session %r cancelled", query)
                elif not worker.cancelled() and worker.exception() is not None:
                    exc = worker.exception()
                    session.finish(
                        SessionState.ABANDONED_FATAL,
                        AbandonReason.FATAL_ERROR,
                        f"{exc.__class__.__name__}: {exc}",
                    )
            finally:
                waiter.cancel()
                if not worker.done():
                    worker.cancel()

        summary = session.summary(quarantined_egress=int(self.fetcher.pool.stats()["quarantined"]))
        log_event(LOGGER, logging.INFO, "session_finished", **summary.to_dict())
        return summary

    async def _guarded_run(self, session: CrawlSession) -> None:
        async with self._sessions:
            try:
                await self._run(session)
            except CrawlerError as exc:
                LOGGER.exception("Session %r failed", session.query)
                session.finish(SessionState.ABANDONED_FATAL, AbandonReason.FATAL_ERROR, str(exc))
            except Exception as exc:
                LOGGER.exception("Session %r crashed", session.query)
                session.finish(
                    SessionState.ABANDONED_FATAL,
                    AbandonReason.FATAL_ERROR,
                    f"{exc.__class__.__name__}: {exc}",
                )

    async def _resolve_source_id(self) -> int:
        async with self._source_lock:
            if self._source_id is None:
                self._source_id = await asyncio.to_thread(
                    self.gateway.get_source_id,
                    self.settings.source_name,
                    self.settings.base_url,
                )
            return self._source_id

    async def _run(self, session: CrawlSession) -> None:
        source_id = await self._resolve_source_id()
        context = FetchContext(source=self.settings.source_name)
        url = session.url
        log_event(LOGGER, logging.INFO, "session_started", query=session.query, url=url)

        while True:
            session.transition(SessionState.FETCHING)
            await self.pacer.wait()
            result = await self.fetcher.fetch(url, context)
            session.requests += result.requests
            if result.challenge is not None:
                session.challenge_stats.record(result.challenge)
            if not result.ok:
                session.finish(
                    SessionState.ABANDONED_FATAL,
                    AbandonReason.FATAL_ERROR,
                    str(result.error) if result.error else result.status.value,
                )
                return

            session.pages_fetched += 1
            context.profile = result.profile
            context.referer = result.final_url

            session.transition(SessionState.EXTRACTING)
            candidates = self.extractor.extract(result.body, result.final_url)
            records = [ListingRecord.from_candidate(source_id, c) for c in candidates]
            session.listings_seen += len(records)
            LOGGER.info(
                "Session %r page %d: %d listing(s)",
                session.query,
                session.pages_fetched,
                len(records),
            )

            if session.pages_fetched == 1:
                session.transition(SessionState.DUPLICATE_CHECK)
                if await self._too_many_duplicates(session, records):
                    session.finish(SessionState.ABANDONED_DUPLICATES, AbandonReason.TOO_MANY_DUPLICATES)
                    return

            await self._persist(session, records)

            next_url = self.extractor.find_next_page(result.body, result.final_url)
            if not next_url:
                session.finish(SessionState.COMPLETED, AbandonReason.NO_NEXT_PAGE)
                return
            if session.pages_fetched >= self.settings.max_pages:
                session.finish(SessionState.COMPLETED, AbandonReason.MAX_PAGES)
                return
            session.transition(SessionState.CONTINUING)
            url = next_url

    async def _too_many_duplicates(self, session: CrawlSession, records: List[ListingRecord]) -> bool:
        sample = records[: self.settings.sample_size]
        duplicates = 0
        for record in sample:
            if await asyncio.to_thread(self.gateway.exists, record.source_id, record.external_id):
                duplicates += 1
        session.sample_checked = len(sample)
        session.sample_duplicates = duplicates
        if len(sample) < self.settings.min_sample_size:
            return False

        rate = duplicates / len(sample)
        LOGGER.info(
            "Session %r duplicate rate %.2f (%d/%d)",
            session.query,
            rate,
            duplicates,
            len(sample),
        )
        if rate >= self.settings.duplicate_threshold:
            session.skipped += duplicates
            return True
        return False

    async def _persist(self, session: CrawlSession, records: List[ListingRecord]) -> None:
        for record in records:
            try:
                outcome = await asyncio.to_thread(self.gateway.save, record)
            except DataIntegrityError as exc:
                session.dropped += 1
                LOGGER.warning("Dropped listing %s: %s", exc.external_id or record.external_id, exc)
                continue
            if outcome is SaveOutcome.SAVED:
                session.saved += 1
            else:
                session.skipped += 1
