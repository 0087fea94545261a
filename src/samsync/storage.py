"""
Storage for opportunities and sync runs.

The orchestrator only talks to the OpportunityStore and SyncRunLog
interfaces. Two implementations of each are provided: dict-backed
in-memory stores, and JSON-lines files where every write appends the full
snapshot of the record so that it is durable before the call returns.
"""

import json
import logging
import os
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, ValidationError

from .config import settings
from .exceptions import (
    ConcurrentUpdateError,
    DuplicateOpportunityError,
    OpportunityNotFoundError,
    RecordValidationError,
    StorageUnavailableError,
    SyncRunNotFoundError,
    SyncRunStateError,
)
from .models import Opportunity, OpportunityRecord, SyncRun, SyncStatus

logger = logging.getLogger(__name__)

SYNC_RUN_COUNTERS = (
    "records_processed",
    "records_created",
    "records_updated",
    "records_failed",
)

# Fields callers may not change through update()
PROTECTED_RECORD_FIELDS = {"id", "opportunity_id", "version", "created_at"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------


class OpportunityStore(ABC):
    """Persistence boundary for opportunity records.

    Each call is atomic for the single record it touches.
    """

    @abstractmethod
    async def find_by_opportunity_id(
        self, opportunity_id: str
    ) -> Optional[OpportunityRecord]: ...

    @abstractmethod
    async def find_by_id(self, record_id: str) -> Optional[OpportunityRecord]: ...

    @abstractmethod
    async def create(
        self, opportunity: Opportunity, **fields: Any
    ) -> OpportunityRecord:
        """Insert a new record.

        Raises:
            DuplicateOpportunityError: If the opportunity_id is already stored.
        """

    @abstractmethod
    async def update(
        self,
        record_id: str,
        fields: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> OpportunityRecord:
        """Update a record in place and bump its version.

        Raises:
            OpportunityNotFoundError: If ``record_id`` is unknown.
            ConcurrentUpdateError: If ``expected_version`` is stale.
        """

    @abstractmethod
    async def count(self) -> int: ...


class SyncRunLog(ABC):
    """Persistence boundary for sync run audit entries."""

    @abstractmethod
    async def create(self, run: SyncRun) -> SyncRun: ...

    @abstractmethod
    async def update(self, run_id: str, **fields: Any) -> SyncRun:
        """Apply a partial update.

        Raises:
            SyncRunNotFoundError: If ``run_id`` is unknown.
            SyncRunStateError: If the run is already finalized or a counter
                would decrease.
        """

    @abstractmethod
    async def get_by_id(self, run_id: str) -> Optional[SyncRun]: ...

    @abstractmethod
    async def get_recent(self, limit: int = 50) -> List[SyncRun]: ...

    @abstractmethod
    async def get_by_status(self, status: SyncStatus, limit: int = 50) -> List[SyncRun]: ...

    @abstractmethod
    async def cleanup_older_than(self, cutoff: datetime) -> int: ...

    async def get_active(self) -> List[SyncRun]:
        return await self.get_by_status("running", limit=0)

    async def get_statistics(self) -> Dict[str, Any]:
        """Totals by status, average completed duration and records processed."""
        runs = await self.get_recent(limit=0)
        by_status: Dict[str, int] = {}
        for run in runs:
            by_status[run.status] = by_status.get(run.status, 0) + 1

        durations = [
            run.duration_ms
            for run in runs
            if run.status == "completed" and run.duration_ms is not None
        ]
        return {
            "total_syncs": len(runs),
            "successful_syncs": by_status.get("completed", 0),
            "failed_syncs": by_status.get("failed", 0),
            "running_syncs": by_status.get("running", 0),
            "average_duration_ms": sum(durations) / len(durations) if durations else 0.0,
            "total_records_processed": sum(run.records_processed for run in runs),
            "by_status": by_status,
        }


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------


class InMemoryOpportunityStore(OpportunityStore):
    """Dict-backed store keyed by opportunity_id."""

    def __init__(self) -> None:
        self._records: Dict[str, OpportunityRecord] = {}
        self._ids: Dict[str, str] = {}

    def _persist(self, record: OpportunityRecord) -> None:
        """Hook called after every write; nothing to do in memory."""

    def _load(self, records: Iterable[OpportunityRecord]) -> None:
        for record in records:
            self._records[record.opportunity_id] = record
            self._ids[record.id] = record.opportunity_id

    async def find_by_opportunity_id(
        self, opportunity_id: str
    ) -> Optional[OpportunityRecord]:
        record = self._records.get(opportunity_id)
        return record.model_copy(deep=True) if record else None

    async def find_by_id(self, record_id: str) -> Optional[OpportunityRecord]:
        opportunity_id = self._ids.get(record_id)
        if opportunity_id is None:
            return None
        return await self.find_by_opportunity_id(opportunity_id)

    async def create(
        self, opportunity: Opportunity, **fields: Any
    ) -> OpportunityRecord:
        if not opportunity.opportunity_id:
            raise RecordValidationError("Missing required opportunity_id field")
        if opportunity.opportunity_id in self._records:
            raise DuplicateOpportunityError(
                f"Opportunity {opportunity.opportunity_id} already exists"
            )

        now = _utcnow()
        data = opportunity.model_dump()
        data.update(fields)
        data.update(id=str(uuid.uuid4()), version=1, created_at=now, updated_at=now)
        record = OpportunityRecord.model_validate(data)

        self._persist(record)
        self._records[record.opportunity_id] = record
        self._ids[record.id] = record.opportunity_id
        return record.model_copy(deep=True)

    async def update(
        self,
        record_id: str,
        fields: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> OpportunityRecord:
        opportunity_id = self._ids.get(record_id)
        if opportunity_id is None:
            raise OpportunityNotFoundError(f"Opportunity record {record_id} not found")

        current = self._records[opportunity_id]
        if expected_version is not None and current.version != expected_version:
            raise ConcurrentUpdateError(
                f"Opportunity {opportunity_id} is at version {current.version}, "
                f"expected {expected_version}"
            )
        if fields.get("opportunity_id", opportunity_id) != opportunity_id:
            raise RecordValidationError(
                f"Cannot change opportunity_id of {opportunity_id}"
            )

        changes = {k: v for k, v in fields.items() if k not in PROTECTED_RECORD_FIELDS}
        data = current.model_dump()
        data.update(changes)
        data.update(version=current.version + 1, updated_at=_utcnow())
        record = OpportunityRecord.model_validate(data)

        self._persist(record)
        self._records[opportunity_id] = record
        return record.model_copy(deep=True)

    async def count(self) -> int:
        return len(self._records)

    async def list_all(self) -> List[OpportunityRecord]:
        return [record.model_copy(deep=True) for record in self._records.values()]


class InMemorySyncRunLog(SyncRunLog):
    """Dict-backed sync run log."""

    def __init__(self) -> None:
        self._runs: Dict[str, SyncRun] = {}

    def _persist(self, run: SyncRun) -> None:
        """Hook called after every write; nothing to do in memory."""

    def _load(self, runs: Iterable[SyncRun]) -> None:
        for run in runs:
            self._runs[run.id] = run

    async def create(self, run: SyncRun) -> SyncRun:
        if run.id in self._runs:
            raise SyncRunStateError(f"Sync run {run.id} already exists")
        now = _utcnow()
        stored = run.model_copy(update={"created_at": now, "updated_at": now}, deep=True)
        self._persist(stored)
        self._runs[stored.id] = stored
        return stored.model_copy(deep=True)

    async def update(self, run_id: str, **fields: Any) -> SyncRun:
        current = self._runs.get(run_id)
        if current is None:
            raise SyncRunNotFoundError(f"Sync log with ID {run_id} not found")
        if current.is_final:
            raise SyncRunStateError(
                f"Sync run {run_id} is already {current.status} and cannot change"
            )

        unknown = set(fields) - set(SyncRun.model_fields)
        if unknown:
            raise ValueError(f"Unknown sync run fields: {sorted(unknown)}")
        for counter in SYNC_RUN_COUNTERS:
            if counter in fields and fields[counter] < getattr(current, counter):
                raise SyncRunStateError(
                    f"{counter} cannot decrease ({getattr(current, counter)} -> "
                    f"{fields[counter]}) for sync run {run_id}"
                )

        data = current.model_dump()
        data.update(
            {
                k: v.model_dump() if isinstance(v, BaseModel) else v
                for k, v in fields.items()
                if k not in ("id", "created_at")
            }
        )
        data["updated_at"] = _utcnow()
        updated = SyncRun.model_validate(data)

        self._persist(updated)
        self._runs[run_id] = updated
        return updated.model_copy(deep=True)

    async def get_by_id(self, run_id: str) -> Optional[SyncRun]:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    def _newest_first(self, runs: Iterable[SyncRun], limit: int) -> List[SyncRun]:
        ordered = sorted(runs, key=lambda r: r.started_at, reverse=True)
        if limit:
            ordered = ordered[:limit]
        return [run.model_copy(deep=True) for run in ordered]

    async def get_recent(self, limit: int = 50) -> List[SyncRun]:
        """Most recently started runs first; ``limit=0`` returns all."""
        return self._newest_first(self._runs.values(), limit)

    async def get_by_status(self, status: SyncStatus, limit: int = 50) -> List[SyncRun]:
        return self._newest_first(
            (run for run in self._runs.values() if run.status == status), limit
        )

    async def cleanup_older_than(self, cutoff: datetime) -> int:
        stale = [run_id for run_id, run in self._runs.items() if run.started_at < cutoff]
        for run_id in stale:
            del self._runs[run_id]
        return len(stale)


# ---------------------------------------------------------------------------
# JSON-lines implementations
# ---------------------------------------------------------------------------


class _JsonlFile:
    """Append-only JSON-lines file where the last line per key wins."""

    def __init__(self, path: str, key: str) -> None:
        self.path = path
        self.key = key
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)

    def load(self) -> Dict[str, Dict[str, Any]]:
        entries: Dict[str, Dict[str, Any]] = {}
        if not os.path.exists(self.path):
            return entries

        with open(self.path, "r", encoding="utf-8") as f:
            for line in f:
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue  # Skip corrupt lines
                if isinstance(entry, dict) and self.key in entry:
                    entries[entry[self.key]] = entry
        return entries

    def append(self, model: BaseModel) -> None:
        try:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(model.model_dump_json() + "\n")
        except OSError as e:
            raise StorageUnavailableError(f"Cannot write to {self.path}: {e}") from e

    def rewrite(self, models: Iterable[BaseModel]) -> None:
        """Replace the file with one line per model."""
        temp_file = self.path + ".tmp"
        try:
            with open(temp_file, "w", encoding="utf-8") as f_out:
                for model in models:
                    f_out.write(model.model_dump_json() + "\n")
            os.replace(temp_file, self.path)
        except OSError as e:
            if os.path.exists(temp_file):
                os.remove(temp_file)
            raise StorageUnavailableError(f"Cannot rewrite {self.path}: {e}") from e


class JsonlOpportunityStore(InMemoryOpportunityStore):
    """Opportunity store persisted to a JSON-lines file."""

    def __init__(self, path: Optional[str] = None) -> None:
        super().__init__()
        self._file = _JsonlFile(path or settings.OPPORTUNITY_STORE_FILE, "opportunity_id")
        self._load(self._validated(self._file.load().values()))
        logger.debug(f"Loaded {len(self._records)} opportunities from {self._file.path}")

    @staticmethod
    def _validated(entries: Iterable[Dict[str, Any]]) -> List[OpportunityRecord]:
        records = []
        for entry in entries:
            try:
                records.append(OpportunityRecord.model_validate(entry))
            except ValidationError as e:
                logger.warning(f"Skipping unreadable opportunity entry: {e}")
        return records

    def _persist(self, record: OpportunityRecord) -> None:
        self._file.append(record)

    def compact(self) -> None:
        self._file.rewrite(self._records.values())


class JsonlSyncRunLog(InMemorySyncRunLog):
    """Sync run log persisted to a JSON-lines file.

    Every create/update appends a full snapshot, so a crashed run leaves its
    last flushed counters on disk. Finalizing a run compacts the file back
    to one line per run.
    """

    def __init__(self, path: Optional[str] = None) -> None:
        super().__init__()
        self._file = _JsonlFile(path or settings.SYNC_RUN_LOG_FILE, "id")
        runs = []
        for entry in self._file.load().values():
            try:
                runs.append(SyncRun.model_validate(entry))
            except ValidationError as e:
                logger.warning(f"Skipping unreadable sync run entry: {e}")
        self._load(runs)

    def _persist(self, run: SyncRun) -> None:
        self._file.append(run)

    def compact(self) -> None:
        self._file.rewrite(self._runs.values())

    async def update(self, run_id: str, **fields: Any) -> SyncRun:
        """Append the new snapshot; a finalized run also compacts the file.

        Intermediate snapshots of a run carry its whole error list, so they
        are dropped once the final one is written.
        """
        run = await super().update(run_id, **fields)
        if run.is_final:
            try:
                self.compact()
            except StorageUnavailableError as e:
                logger.warning(f"Could not compact sync log after run {run_id}: {e}")
        return run

    async def cleanup_older_than(self, cutoff: datetime) -> int:
        removed = await super().cleanup_older_than(cutoff)
        if removed:
            self.compact()
            logger.info(f"Cleaned up sync log: removed {removed} old runs")
        return removed
