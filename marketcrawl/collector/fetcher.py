"""Fetch client: one logical request through egress, retry and challenge layers."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from ..antibot.challenge import (
    ChallengeDetector,
    ChallengeResolver,
    ResolutionContext,
    ResolutionOutcome,
)
from ..antibot.proxy import EgressPoint, EgressPool
from ..antibot.retry import AttemptClass, BackoffPolicy, FetchAttempt, RetryBudget
from ..antibot.user_agent import HeaderProfile, HeaderProfilePool
from ..errors import BlockedError, CrawlerError, FatalFetchError, TransientNetworkError

LOGGER = logging.getLogger(__name__)

DEFAULT_ACCEPT_LANGUAGE = "fr-FR,fr;q=0.9,en-US;q=0.8,en;q=0.7"


class FetchStatus(str, Enum):
    OK = "ok"
    BLOCKED = "blocked"
    FATAL = "fatal"


@dataclass
class FetchContext:
    """Per-session request state carried between fetches.

    ``source`` names saved challenge pages; the URL host is used when unset.
    """

    source: Optional[str] = None
    referer: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    profile: Optional[HeaderProfile] = None


@dataclass
class FetchResult:
    """Outcome of one logical fetch."""

    url: str
    status: FetchStatus
    attempt: Optional[FetchAttempt] = None
    attempts: List[FetchAttempt] = field(default_factory=list)
    challenge: Optional[ResolutionOutcome] = None
    profile: Optional[HeaderProfile] = None
    egress: Optional[EgressPoint] = None
    error: Optional[CrawlerError] = None

    @property
    def ok(self) -> bool:
        return self.status is FetchStatus.OK

    @property
    def body(self) -> str:
        return self.attempt.body if self.attempt else ""

    @property
    def final_url(self) -> str:
        if self.attempt and self.attempt.final_url:
            return self.attempt.final_url
        return self.url

    @property
    def requests(self) -> int:
        return len(self.attempts)

    @property
    def skipped(self) -> bool:
        return self.challenge is not None and self.challenge.skipped

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "status": self.status.value,
            "status_code": self.attempt.status_code if self.attempt else None,
            "requests": self.requests,
            "challenge": self.challenge.state.value if self.challenge else None,
            "proxy_used": self.egress.key if self.egress else None,
            "error": str(self.error) if self.error else None,
        }


@dataclass
class _RequestState:
    profile: HeaderProfile
    egress: Optional[EgressPoint]


class FetchClient:
    """Issues GET requests with egress rotation, retries and challenge handling.

    Target-side failures never raise: they come back as a ``FetchResult``
    with status ``BLOCKED`` or ``FATAL``.

    Parameters
    ----------
    pool : EgressPool
        Shared egress pool
    resolver : ChallengeResolver
        Strategy chain run on suspected challenges
    policy : BackoffPolicy, optional
        Classification limits and backoff timing
    profiles : HeaderProfilePool, optional
        Header profiles for new contexts
    timeout : float
        Hard per-request timeout in seconds
    max_inflight : int
        Global cap on simultaneous requests
    transport : httpx.AsyncBaseTransport, optional
        Replaces the network transport (tests)
    """

    def __init__(
        self,
        pool: EgressPool,
        resolver: ChallengeResolver,
        *,
        policy: Optional[BackoffPolicy] = None,
        profiles: Optional[HeaderProfilePool] = None,
        timeout: float = 20.0,
        max_inflight: int = 4,
        accept_language: str = DEFAULT_ACCEPT_LANGUAGE,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.pool = pool
        self.resolver = resolver
        self.policy = policy or BackoffPolicy()
        self.profiles = profiles or HeaderProfilePool()
        self.timeout = timeout
        self.accept_language = accept_language
        self._transport = transport
        self._inflight = asyncio.Semaphore(max_inflight)
        self._clients: Dict[str, httpx.AsyncClient] = {}

    @property
    def detector(self) -> ChallengeDetector:
        return self.resolver.detector

    async def __aenter__(self) -> FetchClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        clients, self._clients = self._clients, {}
        for client in clients.values():
            await client.aclose()

    async def fetch(self, url: str, context: Optional[FetchContext] = None) -> FetchResult:
        """Fetch ``url``; never raises for target-side failures."""
        context = context or FetchContext()
        problem = _validate_url(url)
        if problem:
            LOGGER.error("Refusing to fetch %s: %s", url, problem)
            return FetchResult(url=url, status=FetchStatus.FATAL, error=FatalFetchError(problem))

        state = _RequestState(
            profile=context.profile or self.profiles.get_random(),
            egress=self.pool.acquire(),
        )
        budget = RetryBudget(self.policy)
        attempts: List[FetchAttempt] = []

        attempt, category = await self._send_with_retry(url, context, state, budget, attempts)
        challenge = None

        if category is AttemptClass.RETRYABLE_BLOCKED or (
            category is AttemptClass.FATAL and attempt.challenge_flagged
        ):
            resolution = ResolutionContext(
                url=url,
                source=context.source or httpx.URL(url).host,
                attempt=attempt,
                verdict=attempt.verdict or self.detector.inspect(attempt),
                profile=state.profile,
                egress=state.egress,
            )

            async def refetch(ctx: ResolutionContext) -> FetchAttempt:
                state.profile = ctx.profile
                state.egress = ctx.egress
                retried, _ = await self._send_with_retry(url, context, state, budget, attempts)
                return retried

            challenge = await self.resolver.resolve(
                resolution,
                refetch,
                max_refetches=max(0, self.policy.max_blocked_attempts - 1),
            )
            state.profile = challenge.profile
            state.egress = challenge.egress
            attempt = challenge.attempt
            if not challenge.resolved:
                reason = "challenge skipped by operator" if challenge.skipped else (
                    f"challenge unresolved: {challenge.verdict.label}"
                )
                return self._result(url, FetchStatus.BLOCKED, attempt, attempts, state, challenge,
                                    BlockedError(reason))
            category = AttemptClass.SUCCESS

        if category is AttemptClass.SUCCESS:
            return self._result(url, FetchStatus.OK, attempt, attempts, state, challenge)

        if attempt.transport_failed or (attempt.status_code or 0) >= 500:
            error: CrawlerError = FatalFetchError(
                f"transient retries exhausted after {budget.count(AttemptClass.RETRYABLE_TRANSIENT)} "
                f"attempt(s): {attempt.error or attempt.status_code}"
            )
        else:
            error = FatalFetchError(f"HTTP {attempt.status_code}")
        return self._result(url, FetchStatus.FATAL, attempt, attempts, state, challenge, error)

    def _result(
        self,
        url: str,
        status: FetchStatus,
        attempt: FetchAttempt,
        attempts: List[FetchAttempt],
        state: _RequestState,
        challenge: Optional[ResolutionOutcome],
        error: Optional[CrawlerError] = None,
    ) -> FetchResult:
        if status is not FetchStatus.OK:
            LOGGER.warning("Fetch %s ended %s: %s", url, status.value, error)
        return FetchResult(
            url=url,
            status=status,
            attempt=attempt,
            attempts=attempts,
            challenge=challenge,
            profile=state.profile,
            egress=state.egress,
            error=error,
        )

    async def _send_with_retry(
        self,
        url: str,
        context: FetchContext,
        state: _RequestState,
        budget: RetryBudget,
        attempts: List[FetchAttempt],
    ) -> Tuple[FetchAttempt, AttemptClass]:
        """Send until the attempt is not transient; tenacity drives waits."""
        last: Optional[Tuple[FetchAttempt, AttemptClass]] = None
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(TransientNetworkError),
            stop=stop_after_attempt(self.policy.max_transient_attempts),
            wait=self.policy.tenacity_wait,
            reraise=True,
        )
        try:
            async for retry_attempt in retrying:
                with retry_attempt:
                    attempt = await self._send_once(url, context, state)
                    attempts.append(attempt)
                    category = budget.record(attempt)
                    last = (attempt, category)
                    if category is AttemptClass.RETRYABLE_TRANSIENT:
                        state.egress = self.pool.acquire()
                        raise TransientNetworkError(
                            attempt.error or f"HTTP {attempt.status_code}",
                            status_code=attempt.status_code,
                        )
        except TransientNetworkError:
            LOGGER.debug("Transient retries stopped for %s", url)
        if last is None:
            raise FatalFetchError(f"no attempt was made for {url}")
        attempt, category = last
        if category is AttemptClass.RETRYABLE_TRANSIENT:
            category = AttemptClass.FATAL
        return attempt, category

    async def _send_once(self, url: str, context: FetchContext, state: _RequestState) -> FetchAttempt:
        point = state.egress
        headers = state.profile.build(
            accept_language=self.accept_language,
            referer=context.referer,
            overrides=context.headers,
        )
        attempt = FetchAttempt(
            url=url,
            started_at=time.time(),
            egress=point.key if point else None,
            profile=state.profile.name,
        )
        client = self._client_for(point)
        started = time.monotonic()
        try:
            async with self._inflight:
                response = await client.get(url, headers=headers)
        except httpx.TimeoutException as exc:
            attempt.error = f"timeout: {exc.__class__.__name__}"
        except httpx.RequestError as exc:
            attempt.error = f"{exc.__class__.__name__}: {exc}"
        else:
            attempt.status_code = response.status_code
            attempt.headers = dict(response.headers)
            attempt.body = response.text
            attempt.final_url = str(response.url)
            attempt.verdict = self.detector.detect(response.status_code, attempt.headers, attempt.body)
        attempt.latency = time.monotonic() - started

        failed = attempt.transport_failed or attempt.challenge_flagged or (
            attempt.status_code is not None
            and (attempt.status_code >= 500 or attempt.status_code in (403, 429))
        )
        reason = None
        if failed:
            reason = attempt.error or f"HTTP {attempt.status_code}"
            if attempt.verdict is not None and attempt.verdict.suspected:
                reason = f"{reason} ({attempt.verdict.label})"
        self.pool.report(point, success=not failed, reason=reason)

        LOGGER.debug(
            "GET %s via %s -> %s in %.2fs",
            url,
            attempt.egress or "direct",
            attempt.status_code or attempt.error,
            attempt.latency,
        )
        return attempt

    def _client_for(self, point: Optional[EgressPoint]) -> httpx.AsyncClient:
        key = point.key if point else "direct"
        client = self._clients.get(key)
        if client is None:
            kwargs: Dict[str, Any] = {
                "timeout": httpx.Timeout(self.timeout),
                "follow_redirects": True,
            }
            if self._transport is not None:
                kwargs["transport"] = self._transport
            elif point is not None and point.proxy_url:
                kwargs["proxy"] = point.proxy_url
            client = httpx.AsyncClient(**kwargs)
            self._clients[key] = client
        return client


def _validate_url(url: str) -> Optional[str]:
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError) as exc:
        return f"malformed URL: {exc}"
    if parsed.scheme not in ("http", "https") or not parsed.host:
        return f"unsupported URL: {url!r}"
    return None
