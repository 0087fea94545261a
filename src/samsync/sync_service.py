"""
Sync orchestration: fetch opportunities from SAM.gov and reconcile them
against the opportunity store, one batch at a time, while recording every
run in the sync run log.
"""

import asyncio
import logging
import time
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from .bulk_fetcher import BulkFetcher
from .config import settings
from .exceptions import (
    ConcurrentUpdateError,
    DuplicateOpportunityError,
    OpportunityNotFoundError,
    RecordValidationError,
    StorageUnavailableError,
)
from .models import (
    Opportunity,
    OpportunityRecord,
    SyncErrorDetail,
    SyncOptions,
    SyncResult,
    SyncRun,
)
from .rate_limiter import Sleep
from .sam_client import SamOpportunitiesClient
from .storage import OpportunityStore, SyncRunLog

logger = logging.getLogger(__name__)

FetchStep = Callable[["SyncCounters"], Awaitable[List[Opportunity]]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def chunk(items: Sequence[Any], size: int) -> List[Sequence[Any]]:
    """Split ``items`` into consecutive slices of at most ``size``."""
    if size < 1:
        raise ValueError("batch size must be at least 1")
    return [items[i : i + size] for i in range(0, len(items), size)]


class SyncCounters:
    """Running totals for a batch or a whole run."""

    def __init__(self) -> None:
        self.processed = 0
        self.created = 0
        self.updated = 0
        self.failed = 0
        self.errors: List[SyncErrorDetail] = []

    def add_error(
        self,
        message: str,
        error: BaseException,
        opportunity_id: Optional[str] = None,
        batch_number: Optional[int] = None,
    ) -> None:
        self.errors.append(
            SyncErrorDetail(
                message=message,
                error_type=type(error).__name__,
                opportunity_id=opportunity_id,
                batch_number=batch_number,
            )
        )

    def merge(self, other: "SyncCounters") -> None:
        self.processed += other.processed
        self.created += other.created
        self.updated += other.updated
        self.failed += other.failed
        self.errors.extend(other.errors)

    def as_run_fields(self) -> Dict[str, Any]:
        return {
            "records_processed": self.processed,
            "records_created": self.created,
            "records_updated": self.updated,
            "records_failed": self.failed,
            "error_details": list(self.errors),
        }

    def summary(self) -> str:
        return (
            f"processed={self.processed}, created={self.created}, "
            f"updated={self.updated}, failed={self.failed}"
        )


class SamSyncService:
    """Runs sync jobs end to end.

    Usage:
        async with SamOpportunitiesClient() as client:
            service = SamSyncService(client, JsonlOpportunityStore(), JsonlSyncRunLog())
            result = await service.run_sync(
                SyncOptions(posted_from="2025-06-01", posted_to="2025-06-16")
            )
    """

    def __init__(
        self,
        client: SamOpportunitiesClient,
        opportunity_store: OpportunityStore,
        run_log: SyncRunLog,
        fetcher: Optional[BulkFetcher] = None,
        batch_size: Optional[int] = None,
        batch_delay: Optional[float] = None,
        sleep: Optional[Sleep] = None,
    ) -> None:
        self.client = client
        self.opportunity_store = opportunity_store
        self.run_log = run_log
        self.fetcher = fetcher or BulkFetcher(client, sleep=sleep)
        self.batch_size = batch_size or settings.SYNC_BATCH_SIZE
        self.batch_delay = (
            settings.SYNC_BATCH_DELAY_SECONDS if batch_delay is None else batch_delay
        )
        self._sleep = sleep or asyncio.sleep

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run_sync(self, options: SyncOptions) -> SyncResult:
        """Fetch and reconcile every opportunity matching ``options``.

        Always returns a SyncResult; failures are reported through
        ``success`` and ``errors`` rather than raised.
        """
        filters = {
            "ptype": options.ptype or settings.SAM_DEFAULT_PTYPE,
            "ncode": options.ncode or settings.SAM_DEFAULT_NCODE,
        }

        async def fetch(progress: SyncCounters) -> List[Opportunity]:
            return await self.fetcher.fetch_all(
                options.posted_from, options.posted_to, filters
            )

        return await self._execute(
            sync_type=options.sync_type,
            parameters=options.model_dump(mode="json"),
            fetch=fetch,
            batch_size=options.batch_size or self.batch_size,
            dry_run=options.dry_run,
        )

    async def sync_naics_codes(
        self,
        naics_codes: Optional[Sequence[str]] = None,
        posted_from: Optional[str] = None,
        posted_to: Optional[str] = None,
        ptype: Optional[str] = None,
        batch_size: Optional[int] = None,
        dry_run: bool = False,
    ) -> SyncResult:
        """One run covering several NAICS codes.

        A code whose fetch fails is recorded as an error and the remaining
        codes still sync.
        """
        codes = list(naics_codes or settings.TARGET_NAICS)
        today = date.today()
        posted_from = posted_from or (
            today - timedelta(days=settings.SYNC_LOOKBACK_DAYS)
        ).isoformat()
        posted_to = posted_to or today.isoformat()
        ptype = ptype or settings.SAM_DEFAULT_PTYPE

        async def fetch(progress: SyncCounters) -> List[Opportunity]:
            seen: Dict[str, Opportunity] = {}
            unkeyed: List[Opportunity] = []
            for code in codes:
                logger.info(f"Fetching opportunities for NAICS {code}")
                try:
                    records = await self.fetcher.fetch_all(
                        posted_from, posted_to, {"ptype": ptype, "ncode": code}
                    )
                except Exception as e:
                    logger.error(f"Failed to fetch NAICS {code}: {e}")
                    progress.add_error(f"Failed to sync NAICS {code}: {e}", e)
                    continue
                for record in records:
                    if record.opportunity_id:
                        seen.setdefault(record.opportunity_id, record)
                    else:
                        unkeyed.append(record)
            return list(seen.values()) + unkeyed

        return await self._execute(
            sync_type="naics_targeted",
            parameters={
                "naics_codes": codes,
                "posted_from": posted_from,
                "posted_to": posted_to,
                "ptype": ptype,
                "batch_size": batch_size,
                "dry_run": dry_run,
            },
            fetch=fetch,
            batch_size=batch_size or self.batch_size,
            dry_run=dry_run,
        )

    async def get_sync_history(self, limit: int = 50) -> List[SyncRun]:
        return await self.run_log.get_recent(limit)

    async def get_sync_run(self, run_id: str) -> Optional[SyncRun]:
        return await self.run_log.get_by_id(run_id)

    async def get_active_syncs(self) -> List[SyncRun]:
        return await self.run_log.get_active()

    async def get_sync_statistics(self) -> Dict[str, Any]:
        return await self.run_log.get_statistics()

    async def cleanup_old_sync_runs(self, retention_days: Optional[int] = None) -> int:
        """Drop sync run log entries started before the retention cutoff."""
        days = settings.RETENTION_DAYS if retention_days is None else retention_days
        cutoff = _utcnow() - timedelta(days=days)
        removed = await self.run_log.cleanup_older_than(cutoff)
        logger.info(f"Removed {removed} sync runs started before {cutoff.isoformat()}")
        return removed

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    async def _execute(
        self,
        sync_type: str,
        parameters: Dict[str, Any],
        fetch: FetchStep,
        batch_size: int,
        dry_run: bool,
    ) -> SyncResult:
        run_id = str(uuid.uuid4())
        started_at = _utcnow()
        start = time.monotonic()
        progress = SyncCounters()
        note: Optional[str] = None

        logger.info(f"Sync {run_id} ({sync_type}) started: {parameters}")
        await self.run_log.create(
            SyncRun(
                id=run_id,
                sync_type=sync_type,
                status="running",
                started_at=started_at,
                sync_parameters=parameters,
            )
        )

        try:
            try:
                opportunities = await fetch(progress)
            except Exception as e:
                logger.exception(f"Sync {run_id}: fetch phase failed")
                progress.add_error(f"Fetch failed: {e}", e)
                note = f"Sync failed during fetch: {e}"
            else:
                logger.info(f"Sync {run_id}: fetched {len(opportunities)} opportunities")
                await self._process_records(
                    run_id, opportunities, batch_size, dry_run, progress
                )
        except Exception as e:
            logger.exception(f"Sync {run_id} failed")
            progress.add_error(f"Sync failed: {e}", e)
            note = f"Sync failed: {e}"

        return await self._finalize(run_id, started_at, start, progress, note)

    async def _process_records(
        self,
        run_id: str,
        opportunities: List[Opportunity],
        batch_size: int,
        dry_run: bool,
        progress: SyncCounters,
    ) -> None:
        batches = chunk(opportunities, batch_size)

        for batch_number, batch in enumerate(batches, start=1):
            logger.info(
                f"Sync {run_id}: processing batch {batch_number}/{len(batches)} "
                f"({len(batch)} records)"
            )
            try:
                batch_counters = await self._process_batch(batch, batch_number, dry_run)
            except Exception as e:
                logger.exception(f"Sync {run_id}: batch {batch_number} failed")
                progress.failed += len(batch)
                progress.add_error(
                    f"Batch {batch_number} failed: {e}", e, batch_number=batch_number
                )
            else:
                progress.merge(batch_counters)

            try:
                await self.run_log.update(run_id, **progress.as_run_fields())
            except Exception as e:
                logger.exception(
                    f"Sync {run_id}: could not flush progress after batch {batch_number}"
                )
                progress.add_error(
                    f"Failed to flush sync run log after batch {batch_number}: {e}",
                    e,
                    batch_number=batch_number,
                )

            if batch_number < len(batches):
                await self._sleep(self.batch_delay)

    async def _process_batch(
        self, batch: Sequence[Opportunity], batch_number: int, dry_run: bool
    ) -> SyncCounters:
        counters = SyncCounters()

        for opportunity in batch:
            if dry_run:
                logger.debug(
                    f"Dry run: would process opportunity {opportunity.opportunity_id}"
                )
                counters.processed += 1
                continue

            try:
                outcome = await self._reconcile(opportunity)
            except StorageUnavailableError:
                raise
            except Exception as e:
                opportunity_id = opportunity.opportunity_id or "undefined"
                logger.error(f"Failed to process opportunity {opportunity_id}: {e}")
                counters.failed += 1
                counters.add_error(
                    f"Failed to process opportunity {opportunity_id}: {e}",
                    e,
                    opportunity_id=opportunity.opportunity_id,
                    batch_number=batch_number,
                )
                continue

            counters.processed += 1
            if outcome == "created":
                counters.created += 1
            else:
                counters.updated += 1

        return counters

    async def _reconcile(self, opportunity: Opportunity) -> str:
        """Create or update one record by natural key.

        Returns "created" or "updated". Lost races (a concurrent create, or
        a version bump between read and write) are retried once against a
        fresh read.
        """
        if not opportunity.opportunity_id:
            raise RecordValidationError("Missing required opportunity_id field")

        sync_fields = {
            "sync_status": "synced",
            "last_synced_at": _utcnow(),
            "sync_error": None,
        }
        existing = await self.opportunity_store.find_by_opportunity_id(
            opportunity.opportunity_id
        )

        if existing is None:
            try:
                await self.opportunity_store.create(opportunity, **sync_fields)
                return "created"
            except DuplicateOpportunityError:
                logger.info(
                    f"Opportunity {opportunity.opportunity_id} was created "
                    "concurrently; updating instead"
                )
                existing = await self._reread(opportunity.opportunity_id)

        fields = {**opportunity.model_dump(), **sync_fields}
        try:
            await self._update(existing, fields)
        except ConcurrentUpdateError:
            logger.info(
                f"Opportunity {opportunity.opportunity_id} changed during sync; "
                "retrying against the latest version"
            )
            existing = await self._reread(opportunity.opportunity_id)
            await self._update(existing, fields)
        return "updated"

    async def _reread(self, opportunity_id: str) -> OpportunityRecord:
        record = await self.opportunity_store.find_by_opportunity_id(opportunity_id)
        if record is None:
            raise OpportunityNotFoundError(
                f"Opportunity {opportunity_id} disappeared during sync"
            )
        return record

    async def _update(self, existing: OpportunityRecord, fields: Dict[str, Any]) -> None:
        await self.opportunity_store.update(
            existing.id, fields, expected_version=existing.version
        )

    async def _finalize(
        self,
        run_id: str,
        started_at: datetime,
        start: float,
        progress: SyncCounters,
        note: Optional[str],
    ) -> SyncResult:
        completed_at = _utcnow()
        duration_ms = int((time.monotonic() - start) * 1000)
        success = progress.failed == 0 and not progress.errors
        status = "completed" if success else "failed"
        if note is None:
            note = f"Sync {status}. Duration: {duration_ms}ms"

        try:
            await self.run_log.update(
                run_id,
                status=status,
                completed_at=completed_at,
                duration_ms=duration_ms,
                notes=note,
                **progress.as_run_fields(),
            )
        except Exception as e:
            logger.exception(f"Sync {run_id}: could not finalize sync run log")
            progress.add_error(f"Failed to finalize sync run log: {e}", e)
            success = False

        log = logger.info if success else logger.warning
        log(f"Sync {run_id} {status} in {duration_ms}ms: {progress.summary()}")

        return SyncResult(
            success=success,
            run_id=run_id,
            processed=progress.processed,
            created=progress.created,
            updated=progress.updated,
            failed=progress.failed,
            errors=[error.message for error in progress.errors],
            duration_ms=duration_ms,
            started_at=started_at,
            completed_at=completed_at,
        )


async def run_scheduled_sync_loop(
    service: SamSyncService,
    interval_minutes: Optional[int] = None,
    lookback_days: Optional[int] = None,
    iterations: Optional[int] = None,
    sleep: Optional[Sleep] = None,
) -> None:
    """Sync the trailing ``lookback_days`` every ``interval_minutes``.

    Runs forever unless ``iterations`` is given. Old sync runs are pruned
    at the start of every cycle.
    """
    interval_minutes = interval_minutes or settings.SYNC_INTERVAL_MINUTES
    lookback_days = lookback_days or settings.SYNC_LOOKBACK_DAYS
    sleep = sleep or asyncio.sleep

    logger.info(
        f"Starting scheduled sync. Running every {interval_minutes} minutes "
        f"over the last {lookback_days} days."
    )

    cycle = 0
    while iterations is None or cycle < iterations:
        cycle += 1
        logger.info("Starting scheduled sync cycle...")

        try:
            await service.cleanup_old_sync_runs()
        except Exception:
            logger.exception("Scheduled sync run cleanup failed")

        today = date.today()
        options = SyncOptions(
            posted_from=today - timedelta(days=lookback_days),
            posted_to=today,
            sync_type="scheduled",
        )
        try:
            result = await service.run_sync(options)
        except Exception:
            logger.exception("Scheduled sync cycle failed")
        else:
            logger.info(
                f"Scheduled sync {result.run_id} finished: success={result.success}, "
                f"processed={result.processed}, duration={result.duration_ms}ms"
            )

        if iterations is None or cycle < iterations:
            await sleep(interval_minutes * 60)
