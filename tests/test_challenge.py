import asyncio

import pytest

from marketcrawl.antibot.challenge import (
    ChallengeDetector,
    ChallengeKind,
    ChallengeResolver,
    ChallengeState,
    ResolutionContext,
    StrategyAction,
    VerdictType,
    build_strategies,
)
from marketcrawl.antibot.proxy import EgressPool
from marketcrawl.antibot.retry import FetchAttempt
from marketcrawl.antibot.storage import ChallengeStore
from marketcrawl.antibot.user_agent import HeaderProfilePool
from marketcrawl.errors import BlockedError, ConfigurationError

from pages import challenge_page, results_page

URL = "https://www.leboncoin.fr/recherche?text=velo"


def test_detects_datadome_body():
    verdict = ChallengeDetector().detect(403, {}, challenge_page())

    assert verdict.type is VerdictType.SOFT_BLOCK
    assert verdict.kind is ChallengeKind.SCRIPT_CHALLENGE
    assert verdict.signature == "datadome"


def test_detects_by_selector():
    body = '<html><body><form><input name="captcha_answer"></form></body></html>'

    verdict = ChallengeDetector().detect(200, {}, body)

    assert verdict.signature == "custom"
    assert verdict.kind is ChallengeKind.UNKNOWN_SIGNATURE


def test_first_matching_group_wins():
    body = "<div class='h-captcha'></div><p>Security check</p>"

    verdict = ChallengeDetector().detect(200, {}, body)

    assert verdict.signature == "hcaptcha"


def test_header_signals():
    detector = ChallengeDetector()

    managed = detector.detect(403, {"CF-Mitigated": "challenge"}, "")
    stamped = detector.detect(200, {"x-datadome": "protected"}, results_page([1]))
    blocked = detector.detect(403, {"x-datadome": "protected"}, "")

    assert managed.kind is ChallengeKind.MANAGED_CHALLENGE
    assert not stamped.suspected
    assert blocked.signature == "x-datadome"


@pytest.mark.parametrize(
    "status, expected",
    [
        (200, VerdictType.NONE),
        (404, VerdictType.NONE),
        (403, VerdictType.HARD_BLOCK),
        (429, VerdictType.RATE_LIMITED),
    ],
)
def test_status_fallback(status, expected):
    assert ChallengeDetector().detect(status, {}, "<html></html>").type is expected


def test_clean_listing_page_is_not_suspected():
    assert not ChallengeDetector().detect(200, {}, results_page(range(1, 21))).suspected


def test_signature_table_from_config():
    detector = ChallengeDetector.from_table(
        [{"name": "acme", "kind": "managed_challenge", "markers": ["Acme Shield"]}]
    )

    assert detector.detect(200, {}, "<p>acme shield active</p>").signature == "acme"
    assert not detector.detect(200, {}, challenge_page()).suspected


@pytest.mark.parametrize(
    "row",
    [
        {"kind": "managed_challenge", "markers": ["x"]},
        {"name": "bad-kind", "kind": "nope", "markers": ["x"]},
        {"name": "empty"},
    ],
)
def test_invalid_signature_rows(row):
    with pytest.raises(ConfigurationError):
        ChallengeDetector.from_table([row])


class Recorder:
    def __init__(self, name, log, action=StrategyAction.RETRY, error=None):
        self.name = name
        self.log = log
        self.action = action
        self.error = error

    async def apply(self, context):
        self.log.append(self.name)
        if self.error is not None:
            raise self.error
        return self.action


def blocked_attempt(status=403, body=None):
    return FetchAttempt(url=URL, started_at=0.0, status_code=status, body=body or challenge_page())


def resolve(strategies, responses, max_refetches=None):
    """Run the resolver; each refetch returns the next (status, body) pair."""
    detector = ChallengeDetector()
    resolver = ChallengeResolver(strategies, detector)
    first = blocked_attempt()
    context = ResolutionContext(
        url=URL,
        source="leboncoin",
        attempt=first,
        verdict=detector.inspect(first),
        profile=HeaderProfilePool.PROFILES[0],
    )
    queue = list(responses)

    async def refetch(ctx):
        status, body = queue.pop(0)
        return blocked_attempt(status, body)

    outcome = asyncio.run(resolver.resolve(context, refetch, max_refetches=max_refetches))
    return resolver, outcome


def test_chain_runs_in_order_until_unresolved():
    log = []
    strategies = [Recorder(name, log) for name in ("a", "b", "c")]

    resolver, outcome = resolve(strategies, [(403, None)] * 3)

    assert log == ["a", "b", "c"]
    assert outcome.state is ChallengeState.UNRESOLVED
    assert outcome.transitions[0] is ChallengeState.CLEAN
    assert outcome.transitions[-1] is ChallengeState.UNRESOLVED
    assert resolver.stats.failed == 1


def test_chain_stops_at_first_clean_success():
    log = []
    strategies = [Recorder(name, log) for name in ("a", "b", "c")]

    resolver, outcome = resolve(strategies, [(403, None), (200, results_page([1]))])

    assert log == ["a", "b"]
    assert outcome.resolved
    assert outcome.resolved_by == "b"
    assert outcome.attempt.status_code == 200
    assert resolver.stats.to_dict()["resolved"] == {"b": 1}


def test_soft_block_on_200_does_not_count_as_solved():
    log = []

    _, outcome = resolve([Recorder("a", log)], [(200, challenge_page())])

    assert not outcome.resolved


def test_skip_stops_chain():
    log = []
    strategies = [Recorder("a", log, action=StrategyAction.SKIP), Recorder("b", log)]

    resolver, outcome = resolve(strategies, [])

    assert log == ["a"]
    assert outcome.skipped
    assert resolver.stats.skipped == 1


def test_failing_or_giving_up_strategy_moves_on():
    log = []
    strategies = [
        Recorder("broken", log, error=BlockedError("no luck")),
        Recorder("pass", log, action=StrategyAction.GIVE_UP),
        Recorder("fix", log),
    ]

    _, outcome = resolve(strategies, [(200, results_page([1]))])

    assert log == ["broken", "pass", "fix"]
    assert outcome.resolved_by == "fix"
    assert outcome.attempted == ["broken", "pass", "fix"]


def test_refetch_budget_limits_chain():
    log = []
    strategies = [Recorder(name, log) for name in ("a", "b", "c", "d")]

    _, outcome = resolve(strategies, [(403, None)] * 4, max_refetches=2)

    assert log == ["a", "b"]
    assert not outcome.resolved


def test_build_strategies(tmp_path):
    strategies = build_strategies(
        ["egress_rotation", "header_swap"],
        profiles=HeaderProfilePool(),
        pool=EgressPool(),
        store=ChallengeStore(tmp_path),
        cooldown=0.0,
    )

    assert [s.name for s in strategies] == ["egress_rotation", "header_swap"]
    with pytest.raises(ConfigurationError):
        build_strategies(
            ["solve_it"],
            profiles=HeaderProfilePool(),
            pool=EgressPool(),
            store=ChallengeStore(tmp_path),
            cooldown=0.0,
        )
