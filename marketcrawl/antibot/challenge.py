"""Challenge page detection and the resolution strategy chain."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
)

from bs4 import BeautifulSoup

from .proxy import EgressPoint, EgressPool
from .retry import FetchAttempt
from .storage import ChallengeStore, OperatorDecision
from .user_agent import HeaderProfile, HeaderProfilePool
from ..errors import ConfigurationError, CrawlerError

LOGGER = logging.getLogger(__name__)


class ChallengeKind(str, Enum):
    SCRIPT_CHALLENGE = "script_challenge"
    MANAGED_CHALLENGE = "managed_challenge"
    UNKNOWN_SIGNATURE = "unknown_signature"


class VerdictType(str, Enum):
    NONE = "none"
    SOFT_BLOCK = "soft_block"
    HARD_BLOCK = "hard_block"
    RATE_LIMITED = "rate_limited"


class ChallengeState(str, Enum):
    """States a single detection/resolution run passes through."""

    CLEAN = "clean"
    DETECTING = "detecting"
    NONE = "none"
    SUSPECTED = "suspected"
    RESOLVING = "resolving"
    RESOLVED = "resolved"
    UNRESOLVED = "unresolved"


@dataclass(frozen=True)
class ChallengeVerdict:
    type: VerdictType
    kind: Optional[ChallengeKind] = None
    signature: Optional[str] = None
    reason: str = ""

    @property
    def suspected(self) -> bool:
        return self.type is not VerdictType.NONE

    @property
    def label(self) -> str:
        if self.kind is not None:
            return f"{self.type.value}:{self.kind.value}"
        return self.type.value


CLEAN_VERDICT = ChallengeVerdict(VerdictType.NONE)


@dataclass(frozen=True)
class SignatureGroup:
    """Named challenge kind recognised by body markers or CSS selectors."""

    name: str
    kind: ChallengeKind
    markers: Tuple[str, ...] = ()
    selectors: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SignatureGroup:
        try:
            name = str(data["name"])
            kind = ChallengeKind(data.get("kind", ChallengeKind.UNKNOWN_SIGNATURE.value))
        except (KeyError, ValueError) as exc:
            raise ConfigurationError(f"invalid signature group {data!r}: {exc}") from exc
        markers = tuple(str(m).lower() for m in data.get("markers") or ())
        selectors = tuple(str(s) for s in data.get("selectors") or ())
        if not markers and not selectors:
            raise ConfigurationError(f"signature group {name!r} has no markers or selectors")
        return cls(name=name, kind=kind, markers=markers, selectors=selectors)


@dataclass(frozen=True)
class HeaderSignal:
    """Vendor response header that marks a challenge, optionally by value."""

    header: str
    kind: ChallengeKind
    contains: Optional[str] = None
    min_status: int = 0

    def matches(self, headers: Mapping[str, str], status_code: int) -> bool:
        value = _header_value(headers, self.header)
        if value is None or status_code < self.min_status:
            return False
        return self.contains is None or self.contains in value.lower()


DEFAULT_SIGNATURES: Tuple[SignatureGroup, ...] = (
    SignatureGroup(
        name="datadome",
        kind=ChallengeKind.SCRIPT_CHALLENGE,
        markers=("captcha-delivery.com", "please enable js and disable any ad blocker"),
        selectors=('iframe[src*="captcha-delivery.com"]',),
    ),
    SignatureGroup(
        name="cloudflare",
        kind=ChallengeKind.SCRIPT_CHALLENGE,
        markers=("checking your browser", "cf-challenge", "cf_chl_opt", "challenge-platform"),
        selectors=("#cf-challenge-running", ".cf-challenge"),
    ),
    SignatureGroup(
        name="hcaptcha",
        kind=ChallengeKind.MANAGED_CHALLENGE,
        markers=("hcaptcha.com", "h-captcha"),
        selectors=('iframe[src*="hcaptcha"]', ".h-captcha"),
    ),
    SignatureGroup(
        name="recaptcha",
        kind=ChallengeKind.MANAGED_CHALLENGE,
        markers=("g-recaptcha", "recaptcha/api", "i'm not a robot"),
        selectors=('iframe[src*="recaptcha"]', ".g-recaptcha"),
    ),
    SignatureGroup(
        name="custom",
        kind=ChallengeKind.UNKNOWN_SIGNATURE,
        markers=("security check", "suspicious activity", "vous avez été bloqué"),
        selectors=('input[name*="captcha"]', 'img[src*="captcha"]'),
    ),
)

DEFAULT_HEADER_SIGNALS: Tuple[HeaderSignal, ...] = (
    HeaderSignal("cf-mitigated", ChallengeKind.MANAGED_CHALLENGE, contains="challenge"),
    HeaderSignal("cf-chl-bypass", ChallengeKind.SCRIPT_CHALLENGE),
    # DataDome stamps every response; only an error status means a challenge
    HeaderSignal("x-datadome", ChallengeKind.SCRIPT_CHALLENGE, min_status=400),
)


def _header_value(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, item in headers.items():
        if key.lower() == lowered:
            return item
    return None


class ChallengeDetector:
    """Pure classification of a response into a ``ChallengeVerdict``."""

    def __init__(
        self,
        signatures: Optional[Iterable[SignatureGroup]] = None,
        header_signals: Optional[Iterable[HeaderSignal]] = None,
    ) -> None:
        self.signatures = tuple(DEFAULT_SIGNATURES if signatures is None else signatures)
        self.header_signals = tuple(
            DEFAULT_HEADER_SIGNALS if header_signals is None else header_signals
        )

    @classmethod
    def from_table(cls, table: Sequence[Mapping[str, Any]]) -> ChallengeDetector:
        """Detector for a signature table loaded from configuration."""
        if not table:
            return cls()
        return cls([SignatureGroup.from_dict(row) for row in table])

    def detect(self, status_code: int, headers: Mapping[str, str], body: str) -> ChallengeVerdict:
        for signal in self.header_signals:
            if signal.matches(headers, status_code):
                return ChallengeVerdict(
                    VerdictType.SOFT_BLOCK,
                    kind=signal.kind,
                    signature=signal.header,
                    reason=f"challenge header {signal.header}",
                )

        matched = self._match_body(body)
        if matched is not None:
            group, marker = matched
            return ChallengeVerdict(
                VerdictType.SOFT_BLOCK,
                kind=group.kind,
                signature=group.name,
                reason=f"signature {group.name} matched {marker!r}",
            )

        if status_code == 429:
            return ChallengeVerdict(VerdictType.RATE_LIMITED, reason="HTTP 429")
        if status_code == 403:
            return ChallengeVerdict(VerdictType.HARD_BLOCK, reason="HTTP 403")
        return CLEAN_VERDICT

    def inspect(self, attempt: FetchAttempt) -> ChallengeVerdict:
        if attempt.status_code is None:
            return CLEAN_VERDICT
        return self.detect(attempt.status_code, attempt.headers, attempt.body)

    def _match_body(self, body: str) -> Optional[Tuple[SignatureGroup, str]]:
        if not body:
            return None
        lowered = body.lower()
        soup: Optional[BeautifulSoup] = None
        for group in self.signatures:
            for marker in group.markers:
                if marker in lowered:
                    return group, marker
            if group.selectors:
                if soup is None:
                    soup = BeautifulSoup(body, "html.parser")
                for selector in group.selectors:
                    if soup.select_one(selector) is not None:
                        return group, selector
        return None


class StrategyAction(str, Enum):
    """What a strategy asks the resolver to do next."""

    RETRY = "retry"
    SKIP = "skip"
    GIVE_UP = "give_up"


@dataclass
class ResolutionContext:
    """Mutable request state handed along the strategy chain."""

    url: str
    source: str
    attempt: FetchAttempt
    verdict: ChallengeVerdict
    profile: HeaderProfile
    egress: Optional[EgressPoint] = None
    extra_headers: Dict[str, str] = field(default_factory=dict)


class ResolutionStrategy(Protocol):
    name: str

    async def apply(self, context: ResolutionContext) -> StrategyAction:
        ...


class HeaderSwapStrategy:
    """Regenerate a full header set and retry straight away."""

    name = "header_swap"

    def __init__(self, profiles: HeaderProfilePool) -> None:
        self.profiles = profiles

    async def apply(self, context: ResolutionContext) -> StrategyAction:
        previous = context.profile
        context.profile = self.profiles.get_different(previous)
        LOGGER.info("Swapping header profile %s -> %s", previous.name, context.profile.name)
        return StrategyAction.RETRY


class TimedBackoffStrategy:
    name = "timed_backoff"

    def __init__(self, cooldown: float = 30.0) -> None:
        self.cooldown = cooldown

    async def apply(self, context: ResolutionContext) -> StrategyAction:
        LOGGER.info("Cooling down %.1fs before retrying %s", self.cooldown, context.url)
        await asyncio.sleep(self.cooldown)
        return StrategyAction.RETRY


class EgressRotationStrategy:
    """Quarantine the current egress point and retry through another one."""

    name = "egress_rotation"

    def __init__(self, pool: EgressPool) -> None:
        self.pool = pool

    async def apply(self, context: ResolutionContext) -> StrategyAction:
        current = context.egress
        self.pool.quarantine(current, reason=f"challenge: {context.verdict.label}")
        replacement = self.pool.acquire()
        if replacement is not None and current is not None and replacement.key == current.key:
            LOGGER.warning("No alternative egress point for %s, reusing %s", context.url, current.key)
        context.egress = replacement
        LOGGER.info(
            "Rotated egress %s -> %s",
            current.key if current else "direct",
            replacement.key if replacement else "direct",
        )
        return StrategyAction.RETRY


class ManualInterventionStrategy:
    """Save the page for an operator and wait for ``resolved`` or ``skip``."""

    name = "manual_intervention"

    def __init__(self, store: ChallengeStore) -> None:
        self.store = store

    async def apply(self, context: ResolutionContext) -> StrategyAction:
        record = await asyncio.to_thread(
            self.store.save,
            source=context.source,
            url=context.url,
            body=context.attempt.body,
            status_code=context.attempt.status_code,
            kind=context.verdict.label,
            reason=context.verdict.reason,
        )
        LOGGER.warning(
            "Waiting for operator decision on %s: marketcrawl challenges resolve|skip %s",
            context.url,
            record.key,
        )
        decision = await self.store.wait_for_decision(record.key)
        if decision is OperatorDecision.SKIP:
            return StrategyAction.SKIP
        return StrategyAction.RETRY


@dataclass
class ResolutionOutcome:
    """Result of one resolution run."""

    state: ChallengeState
    verdict: ChallengeVerdict
    attempt: FetchAttempt
    profile: HeaderProfile
    egress: Optional[EgressPoint] = None
    attempted: List[str] = field(default_factory=list)
    resolved_by: Optional[str] = None
    skipped: bool = False
    transitions: List[ChallengeState] = field(default_factory=list)

    @property
    def resolved(self) -> bool:
        return self.state is ChallengeState.RESOLVED


@dataclass
class ChallengeStats:
    detected: int = 0
    attempted: Dict[str, int] = field(default_factory=dict)
    resolved: Dict[str, int] = field(default_factory=dict)
    failed: int = 0
    skipped: int = 0

    def record(self, outcome: ResolutionOutcome) -> None:
        self.detected += 1
        for name in outcome.attempted:
            self.attempted[name] = self.attempted.get(name, 0) + 1
        if outcome.resolved_by is not None:
            self.resolved[outcome.resolved_by] = self.resolved.get(outcome.resolved_by, 0) + 1
        elif outcome.skipped:
            self.skipped += 1
        else:
            self.failed += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "detected": self.detected,
            "attempted": dict(self.attempted),
            "resolved": dict(self.resolved),
            "failed": self.failed,
            "skipped": self.skipped,
        }


Refetch = Callable[[ResolutionContext], Awaitable[FetchAttempt]]


class ChallengeResolver:
    """Runs the ordered strategy chain against a suspected challenge.

    A strategy only counts as having solved the challenge when the fetch
    retried after it is a clean 2xx.
    """

    def __init__(
        self,
        strategies: Sequence[ResolutionStrategy],
        detector: Optional[ChallengeDetector] = None,
    ) -> None:
        self.strategies = list(strategies)
        self.detector = detector or ChallengeDetector()
        self.stats = ChallengeStats()

    async def resolve(
        self,
        context: ResolutionContext,
        refetch: Refetch,
        *,
        max_refetches: Optional[int] = None,
    ) -> ResolutionOutcome:
        outcome = ResolutionOutcome(
            state=ChallengeState.RESOLVING,
            verdict=context.verdict,
            attempt=context.attempt,
            profile=context.profile,
            egress=context.egress,
            transitions=[
                ChallengeState.CLEAN,
                ChallengeState.DETECTING,
                ChallengeState.SUSPECTED,
                ChallengeState.RESOLVING,
            ],
        )
        LOGGER.warning("Challenge suspected on %s: %s", context.url, context.verdict.reason)

        refetches = 0
        for strategy in self.strategies:
            if max_refetches is not None and refetches >= max_refetches:
                LOGGER.warning("Blocked retry budget exhausted for %s", context.url)
                break
            outcome.attempted.append(strategy.name)
            try:
                action = await strategy.apply(context)
            except (CrawlerError, OSError) as exc:
                LOGGER.warning("Strategy %s failed for %s: %s", strategy.name, context.url, exc)
                continue

            if action is StrategyAction.SKIP:
                LOGGER.warning("Operator skipped %s", context.url)
                outcome.skipped = True
                break
            if action is StrategyAction.GIVE_UP:
                continue

            refetches += 1
            attempt = await refetch(context)
            verdict = attempt.verdict if attempt.verdict is not None else self.detector.inspect(attempt)
            context.attempt = attempt
            context.verdict = verdict
            if _is_clean_success(attempt, verdict):
                outcome.resolved_by = strategy.name
                break
            LOGGER.info(
                "Strategy %s did not clear %s (status=%s, verdict=%s)",
                strategy.name,
                context.url,
                attempt.status_code,
                verdict.label,
            )

        outcome.attempt = context.attempt
        outcome.verdict = context.verdict
        outcome.profile = context.profile
        outcome.egress = context.egress
        outcome.state = ChallengeState.RESOLVED if outcome.resolved_by else ChallengeState.UNRESOLVED
        outcome.transitions.append(outcome.state)
        self.stats.record(outcome)
        if outcome.resolved:
            LOGGER.info("Challenge on %s cleared by %s", context.url, outcome.resolved_by)
        else:
            LOGGER.error(
                "Challenge on %s unresolved after %s",
                context.url,
                ", ".join(outcome.attempted) or "no strategy",
            )
        return outcome


def _is_clean_success(attempt: FetchAttempt, verdict: ChallengeVerdict) -> bool:
    status = attempt.status_code
    return status is not None and 200 <= status < 300 and not verdict.suspected


def build_strategies(
    names: Sequence[str],
    *,
    profiles: HeaderProfilePool,
    pool: EgressPool,
    store: ChallengeStore,
    cooldown: float,
) -> List[ResolutionStrategy]:
    """Instantiate the configured strategy chain in declared order."""
    factories: Dict[str, Callable[[], ResolutionStrategy]] = {
        HeaderSwapStrategy.name: lambda: HeaderSwapStrategy(profiles),
        TimedBackoffStrategy.name: lambda: TimedBackoffStrategy(cooldown),
        EgressRotationStrategy.name: lambda: EgressRotationStrategy(pool),
        ManualInterventionStrategy.name: lambda: ManualInterventionStrategy(store),
    }
    strategies = []
    for name in names:
        factory = factories.get(name)
        if factory is None:
            raise ConfigurationError(f"unknown challenge strategy: {name}")
        strategies.append(factory())
    return strategies
