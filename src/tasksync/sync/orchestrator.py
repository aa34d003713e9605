"""
SyncOrchestrator — drives one synchronization pass over the change log.

Flow for a pass:
  1. Create SyncLog (status="running")
  2. Drain every eligible change-log entry in creation order and chunk it
     into batches (grouped by record first, when enabled)
  3. Exchange batches with the remote authority one at a time
  4. Apply each per-record outcome to all of that record's entries in the batch:
       success  → store server_id, mark synced, clear the record's entries
       conflict → last-write-wins against the local task, then as success
       error    → bump retry_count; escalate the task to "error" at max_retries
  5. Update SyncLog (status="success" or "partial")

Per-entry failures never raise; they end up in SyncResult.errors. A store
fault aborts the pass: SyncLog is set to "error" and the exception re-raised.
Each outcome is applied in its own transaction, so a pass interrupted midway
can simply be run again.

Passes must not overlap. run() refuses to start while the run-lock is held.
"""
import asyncio
import logging
from collections import OrderedDict
from typing import List, Optional

from sqlalchemy import func
from sqlmodel import Session, col, select

from tasksync.config import Settings, get_settings
from tasksync.models.sync import (
    SyncError,
    SyncLog,
    SyncQueueEntry,
    SyncResult,
    SyncStatusReport,
)
from tasksync.models.task import SyncStatus, Task
from tasksync.sync.change_log import ChangeLog
from tasksync.sync.protocol import (
    BatchProtocolClient,
    Conflict,
    Outcome,
    ProtocolError,
    Success,
)
from tasksync.sync.resolver import CONFLICT_UNRESOLVABLE, resolve
from tasksync.timeutil import utcnow

logger = logging.getLogger(__name__)


class SyncAlreadyRunningError(RuntimeError):
    """run() was called while another pass holds the run-lock."""


_run_lock: Optional[asyncio.Lock] = None


def get_run_lock() -> asyncio.Lock:
    """Process-wide run-lock shared by the API and the scheduler."""
    global _run_lock
    if _run_lock is None:
        _run_lock = asyncio.Lock()
    return _run_lock


class SyncOrchestrator:
    """Runs sync passes against one remote authority."""

    def __init__(
        self,
        engine,
        client: BatchProtocolClient,
        *,
        change_log: Optional[ChangeLog] = None,
        resolver=resolve,
        lock: Optional[asyncio.Lock] = None,
        batch_size: int = 50,
        max_retries: int = 3,
        dead_letter_after: Optional[int] = None,
        group_by_record: bool = True,
    ):
        """
        Args:
            engine: SQLAlchemy engine (SQLModel create_engine result).
            client: BatchProtocolClient (or AsyncMock in tests).
            change_log: ChangeLog over the same engine; built if omitted.
            resolver: Conflict resolver, called as resolver(local, remote).
            lock: Run-lock; pass get_run_lock() to share it across callers.
            batch_size: Max entries per exchange.
            max_retries: retry_count at which a task is escalated to "error".
            dead_letter_after: retry_count at which an entry is set aside
                from future drains. None keeps retrying forever.
            group_by_record: Keep each record's entries adjacent before chunking.
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.engine = engine
        self.client = client
        self.change_log = change_log or ChangeLog(engine)
        self.resolver = resolver
        self.lock = lock or asyncio.Lock()
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.dead_letter_after = dead_letter_after
        self.group_by_record = group_by_record

    async def run(self) -> SyncResult:
        """Run one full pass.

        Raises:
            SyncAlreadyRunningError: another pass is in progress.
            Any store exception (after recording the error in SyncLog).
        """
        if self.lock.locked():
            raise SyncAlreadyRunningError("A sync pass is already running")
        async with self.lock:
            return await self._run_pass()

    # ─── Internal helpers ─────────────────────────────────────────────────────

    async def _run_pass(self) -> SyncResult:
        log = self._create_sync_log()
        result = SyncResult()

        try:
            batches = self._partition(self.change_log.drain())
            logger.info(
                "Sync pass %s: %d batch(es) of up to %d",
                log.id, len(batches), self.batch_size,
            )
            for batch in batches:
                await self._process_batch(batch, result)
        except Exception as exc:
            self._finish_sync_log(log, status="error", result=result, error_message=str(exc))
            raise

        result.success = result.failed_count == 0
        self._finish_sync_log(log, status="success" if result.success else "partial", result=result)
        logger.info(
            "Sync pass %s finished: %d synced, %d failed",
            log.id, result.synced_count, result.failed_count,
        )
        return result

    def _partition(self, entries: List[SyncQueueEntry]) -> List[List[SyncQueueEntry]]:
        """Chunk drained entries into batches of at most batch_size."""
        if self.group_by_record:
            # Records keep the position of their oldest entry; per-record order is kept.
            grouped: "OrderedDict[str, List[SyncQueueEntry]]" = OrderedDict()
            for entry in entries:
                grouped.setdefault(entry.record_id, []).append(entry)
            entries = [entry for group in grouped.values() for entry in group]
        return [
            entries[i:i + self.batch_size]
            for i in range(0, len(entries), self.batch_size)
        ]

    async def _process_batch(self, batch: List[SyncQueueEntry], result: SyncResult) -> None:
        try:
            outcomes = await self.client.exchange(batch)
        except ProtocolError as exc:
            logger.warning("Batch of %d item(s) failed: %s", len(batch), exc)
            for entry in batch:
                self._record_failure(entry, str(exc), result)
            return

        # Outcomes are keyed by record_id; the first outcome for a record
        # answers every entry for that record in this batch.
        waiting: "OrderedDict[str, List[SyncQueueEntry]]" = OrderedDict()
        for entry in batch:
            waiting.setdefault(entry.record_id, []).append(entry)

        for item in outcomes:
            entries = waiting.pop(item.client_id, None)
            if entries is None:
                logger.warning(
                    "Ignoring outcome for unknown or already answered client_id %s",
                    item.client_id,
                )
                continue
            self._apply_outcome(entries, item.outcome, result)

        for entries in waiting.values():
            for entry in entries:
                self._record_failure(entry, "No outcome reported for item", result)

    def _apply_outcome(
        self, entries: List[SyncQueueEntry], outcome: Outcome, result: SyncResult
    ) -> None:
        record_id = entries[0].record_id
        through_seq = max(e.seq for e in entries)
        if isinstance(outcome, Success):
            self._apply_success(record_id, through_seq, outcome.remote_id)
            result.synced_count += 1
        elif isinstance(outcome, Conflict):
            if self._apply_conflict(record_id, through_seq, outcome):
                result.synced_count += 1
            else:
                for entry in entries:
                    self._record_failure(entry, CONFLICT_UNRESOLVABLE, result)
        else:
            for entry in entries:
                self._record_failure(entry, outcome.message, result)

    def _apply_success(self, record_id: str, through_seq: int, remote_id: Optional[str]) -> None:
        with Session(self.engine) as s:
            task = s.get(Task, record_id)
            self.change_log.remove_all_for(s, record_id, through_seq=through_seq)
            if task is not None:
                if task.server_id is None and remote_id:
                    task.server_id = remote_id
                self._mark_synced(s, task)
            s.commit()

    def _apply_conflict(self, record_id: str, through_seq: int, outcome: Conflict) -> bool:
        """Resolve a conflict against the local task. False when it can't be resolved."""
        remote = outcome.remote_snapshot
        with Session(self.engine) as s:
            task = s.get(Task, record_id)
            if task is None or task.is_deleted or remote is None:
                return False

            winner = self.resolver(task, remote)
            if winner is remote:
                task.title = remote.title
                task.description = remote.description
                task.completed = remote.completed
                task.updated_at = remote.updated_at
            if task.server_id is None:
                task.server_id = remote.server_id or outcome.remote_id

            self.change_log.remove_all_for(s, record_id, through_seq=through_seq)
            self._mark_synced(s, task)
            s.commit()

        logger.info(
            "Conflict on %s resolved in favour of the %s version",
            record_id, "remote" if winner is remote else "local",
        )
        return True

    def _mark_synced(self, session: Session, task: Task) -> None:
        """Mark synced unless newer entries for the task are still queued."""
        remaining = self.change_log.entries_for(session, task.id)
        if not remaining:
            task.sync_status = SyncStatus.SYNCED.value
            task.last_synced_at = utcnow()
        elif any(e.retry_count >= self.max_retries for e in remaining):
            task.sync_status = SyncStatus.ERROR.value
        else:
            task.sync_status = SyncStatus.PENDING.value
        session.add(task)

    def _record_failure(self, entry: SyncQueueEntry, message: str, result: SyncResult) -> None:
        with Session(self.engine) as s:
            retry_count = self.change_log.mark_failed(s, entry.id, message)
            if retry_count is not None:
                if retry_count >= self.max_retries:
                    task = s.get(Task, entry.record_id)
                    if task is not None:
                        task.sync_status = SyncStatus.ERROR.value
                        s.add(task)
                    logger.warning(
                        "Task %s escalated to error after %d failed attempts: %s",
                        entry.record_id, retry_count, message,
                    )
                if self.dead_letter_after is not None and retry_count >= self.dead_letter_after:
                    self.change_log.dead_letter(s, entry.id)
                    logger.warning(
                        "Entry %s (%s %s) dead-lettered after %d attempts",
                        entry.id, entry.operation, entry.record_id, retry_count,
                    )
            s.commit()

        result.failed_count += 1
        result.errors.append(
            SyncError(
                record_id=entry.record_id,
                operation=entry.operation,
                error=message,
                timestamp=utcnow(),
            )
        )

    def _create_sync_log(self) -> SyncLog:
        log = SyncLog(started_at=utcnow(), status="running")
        with Session(self.engine) as s:
            s.add(log)
            s.commit()
            s.refresh(log)
        return log

    def _finish_sync_log(
        self,
        log: SyncLog,
        *,
        status: str,
        result: SyncResult,
        error_message: Optional[str] = None,
    ) -> None:
        with Session(self.engine) as s:
            db_log = s.get(SyncLog, log.id)
            db_log.status = status
            db_log.finished_at = utcnow()
            db_log.synced_count = result.synced_count
            db_log.failed_count = result.failed_count
            db_log.error_message = error_message
            s.add(db_log)
            s.commit()


def build_orchestrator(
    engine,
    client: BatchProtocolClient,
    settings: Optional[Settings] = None,
) -> SyncOrchestrator:
    """Orchestrator configured from settings and sharing the process run-lock."""
    settings = settings or get_settings()
    change_log = ChangeLog(
        engine,
        backoff_base_seconds=settings.retry_backoff_seconds,
        backoff_max_seconds=settings.retry_backoff_max_seconds,
    )
    return SyncOrchestrator(
        engine,
        client,
        change_log=change_log,
        lock=get_run_lock(),
        batch_size=settings.sync_batch_size,
        max_retries=settings.max_retries,
        dead_letter_after=settings.dead_letter_after,
        group_by_record=settings.group_by_record,
    )


def build_status_report(engine, online: bool) -> SyncStatusReport:
    """Read-only summary of sync state for external callers."""
    change_log = ChangeLog(engine)
    with Session(engine) as s:
        pending = s.exec(
            select(func.count())
            .select_from(Task)
            .where(col(Task.sync_status).in_([SyncStatus.PENDING.value, SyncStatus.ERROR.value]))
        ).one()
        last_synced = s.exec(select(func.max(Task.last_synced_at))).one()
    return SyncStatusReport(
        pending_sync_count=pending,
        last_sync_timestamp=last_synced,
        is_online=online,
        sync_queue_size=change_log.count(),
        dead_letter_count=change_log.count_dead_letters(),
    )
