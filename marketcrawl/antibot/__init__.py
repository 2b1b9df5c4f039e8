"""Anti-bot toolkit for the crawler.

- Egress pool with health-based proxy selection
- Browser header profiles
- Failure classification and jittered backoff
- Challenge detection and the resolution strategy chain
- Operator channel for manual challenge review
"""

from .challenge import (
    ChallengeDetector,
    ChallengeKind,
    ChallengeResolver,
    ChallengeStats,
    ChallengeVerdict,
    ResolutionStrategy,
    VerdictType,
    build_strategies,
)
from .proxy import EgressHealth, EgressPoint, EgressPool, TransportKind
from .retry import AttemptClass, BackoffPolicy, FetchAttempt, RetryBudget, classify, next_delay
from .storage import ChallengeStore, OperatorDecision
from .user_agent import HeaderProfile, HeaderProfilePool

__all__ = [
    "AttemptClass",
    "BackoffPolicy",
    "ChallengeDetector",
    "ChallengeKind",
    "ChallengeResolver",
    "ChallengeStats",
    "ChallengeStore",
    "ChallengeVerdict",
    "EgressHealth",
    "EgressPoint",
    "EgressPool",
    "FetchAttempt",
    "HeaderProfile",
    "HeaderProfilePool",
    "OperatorDecision",
    "ResolutionStrategy",
    "RetryBudget",
    "TransportKind",
    "VerdictType",
    "build_strategies",
    "classify",
    "next_delay",
]
