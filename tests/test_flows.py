import asyncio
import os

import pytest

from marketcrawl import flows
from marketcrawl.antibot.proxy import EgressPool
from marketcrawl.collector.session import CrawlOrchestrator

from pages import FakeSite, results_page, search_url


@pytest.fixture
def site(tmp_path, monkeypatch):
    for name in list(os.environ):
        if name.startswith("MARKETCRAWL_") or name in ("DATABASE_URL", "PROXY_LIST"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("MARKETCRAWL_CHALLENGE_DIR", str(tmp_path / "saves"))
    monkeypatch.setenv("MARKETCRAWL_PAGE_DELAY_MIN", "0")
    monkeypatch.setenv("MARKETCRAWL_PAGE_DELAY_MAX", "0")

    site = FakeSite()

    class Wiring:
        @staticmethod
        def from_settings(settings, gateway):
            return CrawlOrchestrator.from_settings(
                settings, gateway, pool=EgressPool(), transport=site.transport()
            )

    monkeypatch.setattr(flows, "CrawlOrchestrator", Wiring)
    return site


def test_run_queries_dry_run(site):
    site.add(search_url("velo"), results_page(range(1, 4)))
    site.add(search_url("chaise"), results_page(range(4, 6)))

    summaries = asyncio.run(flows._run_queries(["velo", "chaise"], None, True))

    assert [s["query"] for s in summaries] == ["velo", "chaise"]
    assert [s["saved"] for s in summaries] == [3, 2]
    assert {s["outcome"] for s in summaries} == {"completed"}


def test_summarize_counts_outcomes(site):
    site.add(search_url("velo"), results_page(range(1, 4)))

    summaries = asyncio.run(flows._run_queries(["velo", "table"], None, True))
    totals = flows.summarize(summaries)

    assert totals["sessions"] == 2
    assert totals["pages"] == 1
    assert totals["saved"] == 3
    assert totals["outcomes"] == {"abandoned_fatal": 1, "completed": 1}


def test_summarize_empty():
    assert flows.summarize([]) == {
        "sessions": 0,
        "pages": 0,
        "requests": 0,
        "saved": 0,
        "skipped": 0,
        "outcomes": {},
    }
