"""Prefect flow wiring for scheduled crawls."""
from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional

import orjson
from dotenv import load_dotenv
from prefect import flow, get_run_logger, task

from marketcrawl.collector.session import CrawlOrchestrator
from marketcrawl.config import load_settings
from marketcrawl.upsert import InMemoryListingGateway, ListingGateway, PostgresListingGateway

BASE_DIR = Path(__file__).resolve().parents[1]
load_dotenv(BASE_DIR / ".env")


async def _run_queries(
    queries: List[str],
    config_path: Optional[str],
    dry_run: bool,
) -> List[Dict[str, Any]]:
    settings = load_settings(config_path)
    gateway: ListingGateway
    if dry_run or not settings.database_url:
        gateway = InMemoryListingGateway()
    else:
        gateway = PostgresListingGateway(settings.database_url)
        await asyncio.to_thread(gateway.ensure_schema)
    try:
        async with CrawlOrchestrator.from_settings(settings, gateway) as orchestrator:
            summaries = await orchestrator.run(queries or settings.queries)
    finally:
        gateway.close()
    return [summary.to_dict() for summary in summaries]


def summarize(summaries: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Totals across session summaries, with a count per outcome."""
    return {
        "sessions": len(summaries),
        "pages": sum(s["pages_fetched"] for s in summaries),
        "requests": sum(s["requests"] for s in summaries),
        "saved": sum(s["saved"] for s in summaries),
        "skipped": sum(s["skipped"] for s in summaries),
        "outcomes": {
            outcome: sum(1 for s in summaries if s["outcome"] == outcome)
            for outcome in sorted({s["outcome"] for s in summaries})
        },
    }


@task
def crawl_task(queries: List[str], config_path: Optional[str] = None, dry_run: bool = False) -> List[Dict[str, Any]]:
    """Run one crawl session per query."""
    logger = get_run_logger()
    summaries = asyncio.run(_run_queries(queries, config_path, dry_run))
    for summary in summaries:
        logger.info(
            "crawl_task query=%s outcome=%s saved=%s skipped=%s",
            summary["query"],
            summary["outcome"],
            summary["saved"],
            summary["skipped"],
        )
    return summaries


@flow(name="crawl-flow")
def crawl_flow(
    queries: Optional[List[str]] = None,
    config_path: Optional[str] = None,
    dry_run: bool = False,
) -> Dict[str, Any]:
    """Scheduled crawl: run every query and aggregate the counters."""
    summaries = crawl_task(queries or [], config_path, dry_run)
    totals = summarize(summaries)
    get_run_logger().info("crawl_flow summary=%s", orjson.dumps(totals).decode())
    return totals
