"""Command line interface for the crawler."""
from __future__ import annotations

import asyncio
import logging
import signal
from typing import List, Optional, Tuple

import click
import orjson

from .antibot.storage import ChallengeStore, OperatorDecision
from .collector.session import CrawlOrchestrator, SessionSummary, build_egress_pool
from .config import CrawlerSettings, load_settings
from .errors import ConfigurationError
from .logging_utils import configure_logging
from .upsert import InMemoryListingGateway, ListingGateway, PostgresListingGateway

LOGGER = logging.getLogger(__name__)


def _settings(ctx: click.Context) -> CrawlerSettings:
    return ctx.obj["settings"]


def _gateway(settings: CrawlerSettings, dry_run: bool) -> ListingGateway:
    if dry_run:
        return InMemoryListingGateway()
    if not settings.database_url:
        raise click.UsageError("DATABASE_URL is not set (use --dry-run to crawl without a database)")
    gateway = PostgresListingGateway(settings.database_url)
    gateway.ensure_schema()
    return gateway


async def _crawl(settings: CrawlerSettings, gateway: ListingGateway, queries: List[str]) -> List[SessionSummary]:
    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, cancel.set)
        except (NotImplementedError, RuntimeError):
            LOGGER.debug("Signal handler for %s unavailable", signum)
    async with CrawlOrchestrator.from_settings(settings, gateway) as orchestrator:
        return await orchestrator.run(queries, cancel)


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    help="YAML settings file (overrides environment)",
)
@click.option("--log-level", default="INFO", show_default=True, help="Logging level")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str], log_level: str) -> None:
    """Resilient listings crawler."""
    configure_logging(log_level)
    try:
        settings = load_settings(config_path)
    except ConfigurationError as exc:
        raise click.BadParameter(str(exc), param_hint="--config") from exc
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@cli.command()
@click.argument("queries", nargs=-1)
@click.option("--max-pages", type=int, help="Override max pages per session")
@click.option("--dry-run", is_flag=True, help="Keep results in memory instead of PostgreSQL")
@click.option("--json", "as_json", is_flag=True, help="Print summaries as JSON lines")
@click.pass_context
def crawl(
    ctx: click.Context,
    queries: Tuple[str, ...],
    max_pages: Optional[int],
    dry_run: bool,
    as_json: bool,
) -> None:
    """Crawl QUERIES (search keywords or result URLs)."""
    settings = _settings(ctx)
    if max_pages is not None:
        settings.max_pages = max_pages
        settings.validate()
    selected = list(queries) or list(settings.queries)
    if not selected:
        raise click.UsageError("no queries given and none configured")

    gateway = _gateway(settings, dry_run)
    try:
        summaries = asyncio.run(_crawl(settings, gateway, selected))
    finally:
        gateway.close()

    for summary in summaries:
        if as_json:
            click.echo(orjson.dumps(summary.to_dict()).decode())
            continue
        click.echo(
            f"{summary.query}: {summary.outcome.value} ({summary.abandon_reason.value}) "
            f"pages={summary.pages_fetched} requests={summary.requests} "
            f"saved={summary.saved} skipped={summary.skipped} dropped={summary.dropped}"
        )
        if summary.error:
            click.echo(f"  error: {summary.error}")


@cli.command()
@click.pass_context
def stats(ctx: click.Context) -> None:
    """Show listing counts per source."""
    settings = _settings(ctx)
    gateway = _gateway(settings, dry_run=False)
    try:
        counts = gateway.count_by_source()
    finally:
        gateway.close()

    click.echo("Listings by source")
    click.echo("=" * 30)
    for source_id, count in sorted(counts.items()):
        click.echo(f"  source {source_id:<6d}: {count:8d}")
    click.echo(f"Total: {sum(counts.values())}")


@cli.group()
def challenges() -> None:
    """Inspect and answer challenge pages waiting for an operator."""


def _store(ctx: click.Context) -> ChallengeStore:
    settings = _settings(ctx)
    return ChallengeStore(settings.challenge_dir, poll_interval=settings.operator_poll_interval)


@challenges.command("list")
@click.option("--all", "show_all", is_flag=True, help="Include decided challenges")
@click.pass_context
def list_challenges(ctx: click.Context, show_all: bool) -> None:
    """List pending challenges."""
    store = _store(ctx)
    records = store.list_challenges(pending_only=not show_all)
    if not records:
        click.echo("No challenges pending")
        return
    for record in records:
        click.echo(
            f"{record.key}  {record.status.value:8s}  {record.kind}  "
            f"{record.url}  ({store.html_path(record.key)})"
        )


def _decide(ctx: click.Context, key: str, decision: OperatorDecision) -> None:
    try:
        record = _store(ctx).decide(key, decision)
    except KeyError as exc:
        raise click.ClickException(f"unknown challenge: {key}") from exc
    click.echo(f"{record.key} marked {record.status.value}")


@challenges.command()
@click.argument("key")
@click.pass_context
def resolve(ctx: click.Context, key: str) -> None:
    """Mark challenge KEY as solved; the crawler retries the page."""
    _decide(ctx, key, OperatorDecision.RESOLVED)


@challenges.command()
@click.argument("key")
@click.pass_context
def skip(ctx: click.Context, key: str) -> None:
    """Give up on challenge KEY; the crawler abandons the page."""
    _decide(ctx, key, OperatorDecision.SKIP)


@cli.command()
@click.pass_context
def proxies(ctx: click.Context) -> None:
    """Show the configured egress pool."""
    pool = build_egress_pool(_settings(ctx))
    if len(pool) == 0:
        click.echo("No proxies configured (direct connection)")
        return
    for point in pool.points:
        click.echo(f"  {point.kind.value:7s} {point.key}{' (auth)' if point.username else ''}")
    click.echo(f"Total: {len(pool)}")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
