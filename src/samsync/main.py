"""samsync CLI entry point."""

import asyncio
import logging
import sys
from datetime import date, timedelta
from typing import Any, Coroutine, Optional, Tuple

import click

from .config import settings
from .models import SyncOptions, SyncResult, SyncRun
from .sam_client import SamOpportunitiesClient
from .storage import JsonlOpportunityStore, JsonlSyncRunLog
from .sync_service import SamSyncService, run_scheduled_sync_loop

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def _default_range() -> Tuple[str, str]:
    today = date.today()
    posted_from = today - timedelta(days=settings.SYNC_LOOKBACK_DAYS)
    return posted_from.isoformat(), today.isoformat()


def _log_result(result: SyncResult) -> None:
    logger.info(
        f"Sync {result.run_id}: success={result.success} "
        f"processed={result.processed} created={result.created} "
        f"updated={result.updated} failed={result.failed} "
        f"({result.duration_ms}ms)"
    )
    for error in result.errors[:10]:
        logger.warning(f"  - {error}")
    if len(result.errors) > 10:
        logger.warning(f"  ... and {len(result.errors) - 10} more errors")


def _log_run(run: SyncRun) -> None:
    logger.info(
        f"[{run.id}] {run.sync_type} {run.status} started {run.started_at:%Y-%m-%d %H:%M:%S} "
        f"processed={run.records_processed} created={run.records_created} "
        f"updated={run.records_updated} failed={run.records_failed}"
    )


def _run(command: Coroutine[Any, Any, int]) -> None:
    """Run an async command and exit with its status."""
    try:
        exit_code = asyncio.run(command)
    except KeyboardInterrupt:
        logger.info("Interrupted by user.")
        exit_code = 130
    except Exception:
        logger.exception("Command failed")
        raise
    sys.exit(exit_code)


async def _sync(options: SyncOptions) -> int:
    async with SamOpportunitiesClient() as client:
        service = SamSyncService(client, JsonlOpportunityStore(), JsonlSyncRunLog())
        result = await service.run_sync(options)
    _log_result(result)
    return 0 if result.success else 1


async def _sync_naics(
    codes: Tuple[str, ...],
    posted_from: Optional[str],
    posted_to: Optional[str],
    dry_run: bool,
) -> int:
    async with SamOpportunitiesClient() as client:
        service = SamSyncService(client, JsonlOpportunityStore(), JsonlSyncRunLog())
        result = await service.sync_naics_codes(
            naics_codes=list(codes) or None,
            posted_from=posted_from,
            posted_to=posted_to,
            dry_run=dry_run,
        )
    _log_result(result)
    return 0 if result.success else 1


async def _schedule(interval_minutes: Optional[int]) -> int:
    async with SamOpportunitiesClient() as client:
        service = SamSyncService(client, JsonlOpportunityStore(), JsonlSyncRunLog())
        await run_scheduled_sync_loop(service, interval_minutes=interval_minutes)
    return 0


async def _history(limit: int) -> int:
    runs = await JsonlSyncRunLog().get_recent(limit)
    if not runs:
        logger.info("No sync runs recorded yet.")
    for run in runs:
        _log_run(run)
    return 0


async def _show(run_id: str) -> int:
    run = await JsonlSyncRunLog().get_by_id(run_id)
    if run is None:
        logger.error(f"Sync run {run_id} not found")
        return 1
    _log_run(run)
    if run.notes:
        logger.info(f"  notes: {run.notes}")
    for error in run.error_details:
        logger.info(f"  error: {error.message}")
    return 0


async def _test_connection() -> int:
    async with SamOpportunitiesClient() as client:
        outcome = await client.test_connection()
    logger.info(outcome["message"])
    return 0 if outcome["success"] else 1


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
def cli(debug: bool) -> None:
    """Sync SAM.gov contract opportunities into local storage."""
    if debug:
        logging.getLogger().setLevel(logging.DEBUG)


@cli.command()
@click.option("--from", "posted_from", default=None, help="Posted from (YYYY-MM-DD)")
@click.option("--to", "posted_to", default=None, help="Posted to (YYYY-MM-DD)")
@click.option("--ptype", default=None, help="Procurement type code")
@click.option("--ncode", default=None, help="NAICS code")
@click.option("--batch-size", type=click.IntRange(min=1), default=None)
@click.option("--dry-run", is_flag=True, help="Count records without saving")
def sync(
    posted_from: Optional[str],
    posted_to: Optional[str],
    ptype: Optional[str],
    ncode: Optional[str],
    batch_size: Optional[int],
    dry_run: bool,
) -> None:
    """Run one sync over a posted-date range."""
    default_from, default_to = _default_range()
    options = SyncOptions(
        posted_from=posted_from or default_from,
        posted_to=posted_to or default_to,
        ptype=ptype,
        ncode=ncode,
        batch_size=batch_size,
        dry_run=dry_run,
    )
    _run(_sync(options))


@cli.command("sync-naics")
@click.option("--code", "codes", multiple=True, help="NAICS code (repeatable)")
@click.option("--from", "posted_from", default=None, help="Posted from (YYYY-MM-DD)")
@click.option("--to", "posted_to", default=None, help="Posted to (YYYY-MM-DD)")
@click.option("--dry-run", is_flag=True, help="Count records without saving")
def sync_naics(
    codes: Tuple[str, ...],
    posted_from: Optional[str],
    posted_to: Optional[str],
    dry_run: bool,
) -> None:
    """Run one sync across several NAICS codes."""
    _run(_sync_naics(codes, posted_from, posted_to, dry_run))


@cli.command()
@click.option("--interval-minutes", type=click.IntRange(min=1), default=None)
def schedule(interval_minutes: Optional[int]) -> None:
    """Sync the lookback window on a fixed interval."""
    _run(_schedule(interval_minutes))


@cli.command()
@click.option("--limit", type=int, default=20, show_default=True)
def history(limit: int) -> None:
    """List recent sync runs."""
    _run(_history(limit))


@cli.command()
@click.argument("run_id")
def show(run_id: str) -> None:
    """Show one sync run."""
    _run(_show(run_id))


@cli.command("test-connection")
def test_connection() -> None:
    """Check SAM.gov API access."""
    _run(_test_connection())


def main() -> None:
    """Main entry point."""
    cli(prog_name="samsync")


if __name__ == "__main__":
    main()
