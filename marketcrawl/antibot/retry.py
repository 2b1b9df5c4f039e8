"""Failure classification and jittered exponential backoff."""
from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Dict, Mapping, Optional

from tenacity import RetryCallState

if TYPE_CHECKING:
    from .challenge import ChallengeVerdict

LOGGER = logging.getLogger(__name__)


class AttemptClass(str, Enum):
    """Outcome category of a single fetch attempt."""

    SUCCESS = "success"
    RETRYABLE_TRANSIENT = "retryable_transient"
    RETRYABLE_BLOCKED = "retryable_blocked"
    FATAL = "fatal"


@dataclass
class FetchAttempt:
    """Record of one HTTP attempt; ``status_code`` is ``None`` on transport error."""

    url: str
    started_at: float
    egress: Optional[str] = None
    profile: Optional[str] = None
    status_code: Optional[int] = None
    error: Optional[str] = None
    latency: float = 0.0
    headers: Mapping[str, str] = field(default_factory=dict)
    body: str = ""
    final_url: Optional[str] = None
    verdict: Optional[ChallengeVerdict] = None

    @property
    def challenge_flagged(self) -> bool:
        return self.verdict is not None and self.verdict.suspected

    @property
    def transport_failed(self) -> bool:
        return self.status_code is None


@dataclass
class BackoffPolicy:
    """Full-jitter exponential backoff: ``uniform(0, min(cap, base * multiplier**n))``."""

    base: float = 1.0
    multiplier: float = 2.0
    cap: float = 60.0
    max_transient_attempts: int = 3
    max_blocked_attempts: int = 5

    def ceiling(self, attempt_number: int) -> float:
        exponent = max(0, attempt_number)
        try:
            raw = self.base * (self.multiplier ** exponent)
        except OverflowError:
            return self.cap
        return min(self.cap, raw)

    def next_delay(self, attempt_number: int, rng: Optional[random.Random] = None) -> float:
        """Delay before the retry following attempt ``attempt_number`` (0-based)."""
        upper = self.ceiling(attempt_number)
        if upper <= 0:
            return 0.0
        return (rng or random).uniform(0.0, upper)

    def category(self, attempt: FetchAttempt) -> AttemptClass:
        """Category of ``attempt`` before attempt limits are applied."""
        status = attempt.status_code
        if attempt.transport_failed or 500 <= status < 600:
            return AttemptClass.RETRYABLE_TRANSIENT
        if status in (403, 429) or (200 <= status < 300 and attempt.challenge_flagged):
            return AttemptClass.RETRYABLE_BLOCKED
        if 200 <= status < 300:
            return AttemptClass.SUCCESS
        return AttemptClass.FATAL

    def classify(self, attempt: FetchAttempt, attempt_number: int) -> AttemptClass:
        """Categorise ``attempt``, the ``attempt_number``-th (1-based) of its kind."""
        category = self.category(attempt)
        if category is AttemptClass.RETRYABLE_TRANSIENT:
            limit = self.max_transient_attempts
        elif category is AttemptClass.RETRYABLE_BLOCKED:
            limit = self.max_blocked_attempts
        else:
            return category

        if attempt_number >= limit:
            LOGGER.debug(
                "%s attempts exhausted for %s (%d/%d)",
                category.value,
                attempt.url,
                attempt_number,
                limit,
            )
            return AttemptClass.FATAL
        return category

    def tenacity_wait(self, retry_state: RetryCallState) -> float:
        """``wait`` callable for tenacity retry loops."""
        return self.next_delay(retry_state.attempt_number - 1)


@dataclass
class RetryBudget:
    """Attempts spent within one logical fetch, per category."""

    policy: BackoffPolicy = field(default_factory=BackoffPolicy)
    attempts: Dict[AttemptClass, int] = field(default_factory=dict)

    def record(self, attempt: FetchAttempt) -> AttemptClass:
        """Classify ``attempt`` and count it against its category."""
        category = self.policy.category(attempt)
        if category is AttemptClass.SUCCESS:
            self.reset()
            return category
        if category is AttemptClass.FATAL:
            return category
        count = self.attempts.get(category, 0) + 1
        self.attempts[category] = count
        return self.policy.classify(attempt, count)

    def count(self, category: AttemptClass) -> int:
        return self.attempts.get(category, 0)

    @property
    def total(self) -> int:
        return sum(self.attempts.values())

    def reset(self) -> None:
        self.attempts.clear()


def classify(
    attempt: FetchAttempt,
    attempt_number: int,
    policy: Optional[BackoffPolicy] = None,
) -> AttemptClass:
    return (policy or BackoffPolicy()).classify(attempt, attempt_number)


def next_delay(attempt_number: int, policy: Optional[BackoffPolicy] = None) -> float:
    return (policy or BackoffPolicy()).next_delay(attempt_number)
