"""
ChangeLog — the durable, ordered queue of task mutations awaiting the remote.

Mutating methods take the caller's Session and never commit: an append must
land in the same transaction as the task write that caused it, and a removal
in the same transaction as the task update that resolves it.

Entries are only ever removed after the remote authority has acknowledged
them. A failure bumps retry_count and stores the message; the entry stays in
the queue and is drained again on the next pass.
"""
import logging
import random
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Set

from pydantic import BaseModel
from sqlalchemy import func
from sqlmodel import Session, col, select

from tasksync.models.sync import SyncQueueEntry
from tasksync.models.task import PAYLOAD_TYPES, Operation
from tasksync.timeutil import utcnow

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 500


class ChangeLog:
    """Append / drain / resolve operations over the sync_queue table."""

    def __init__(
        self,
        engine,
        *,
        backoff_base_seconds: float = 0.0,
        backoff_max_seconds: float = 300.0,
    ):
        """
        Args:
            engine: SQLAlchemy engine (SQLModel create_engine result).
            backoff_base_seconds: Delay before the first retry of a failed
                entry, doubled on every further failure. 0 disables backoff.
            backoff_max_seconds: Upper bound on the retry delay.
        """
        self.engine = engine
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds

    # ─── Writes (caller commits) ──────────────────────────────────────────────

    def append(
        self,
        session: Session,
        record_id: str,
        operation: Operation,
        payload: BaseModel,
    ) -> SyncQueueEntry:
        """Queue one mutation. The payload shape must match the operation."""
        operation = Operation(operation)
        expected = PAYLOAD_TYPES[operation]
        if not isinstance(payload, expected):
            raise TypeError(
                f"{operation.value} expects {expected.__name__}, "
                f"got {type(payload).__name__}"
            )
        entry = SyncQueueEntry(
            record_id=record_id,
            operation=operation.value,
            data=payload.model_dump_json(),
        )
        session.add(entry)
        return entry

    def remove(self, session: Session, entry_id: str) -> bool:
        entry = self._get(session, entry_id)
        if entry is None:
            return False
        session.delete(entry)
        return True

    def remove_all_for(
        self,
        session: Session,
        record_id: str,
        through_seq: Optional[int] = None,
    ) -> int:
        """Remove a record's entries, optionally only those queued up to through_seq.

        Returns the number of entries removed.
        """
        stmt = select(SyncQueueEntry).where(SyncQueueEntry.record_id == record_id)
        if through_seq is not None:
            stmt = stmt.where(SyncQueueEntry.seq <= through_seq)
        removed = 0
        for entry in session.exec(stmt).all():
            session.delete(entry)
            removed += 1
        session.flush()
        return removed

    def mark_failed(
        self,
        session: Session,
        entry_id: str,
        message: str,
        now: Optional[datetime] = None,
    ) -> Optional[int]:
        """Record a failed attempt. Returns the new retry_count, or None if the entry is gone."""
        entry = self._get(session, entry_id)
        if entry is None:
            logger.debug("mark_failed: entry %s already removed", entry_id)
            return None
        entry.retry_count += 1
        entry.error_message = message[:MAX_ERROR_LENGTH]
        if self.backoff_base_seconds > 0:
            entry.next_attempt_at = (now or utcnow()) + self._backoff(entry.retry_count)
        session.add(entry)
        return entry.retry_count

    def dead_letter(self, session: Session, entry_id: str) -> bool:
        """Set an entry aside: it stays in the table but is no longer drained."""
        entry = self._get(session, entry_id)
        if entry is None:
            return False
        entry.dead_lettered = True
        session.add(entry)
        return True

    # ─── Reads ────────────────────────────────────────────────────────────────

    def drain(
        self,
        batch_size: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[SyncQueueEntry]:
        """Return the oldest eligible entries in creation order, without removing them.

        An entry still backing off holds back every later entry for the same
        record, so a record's changes never reach the remote out of order.

        Args:
            batch_size: Max entries to return; None returns every eligible entry.
            now: Reference time for backoff eligibility (defaults to utcnow()).
        """
        now = now or utcnow()
        stmt = (
            select(SyncQueueEntry)
            .where(SyncQueueEntry.dead_lettered == False)  # noqa: E712
            .order_by(SyncQueueEntry.created_at, SyncQueueEntry.seq)
        )
        with Session(self.engine) as s:
            entries = s.exec(stmt).all()

        held: Set[str] = set()
        eligible: List[SyncQueueEntry] = []
        for entry in entries:
            if entry.record_id in held:
                continue
            if entry.next_attempt_at is not None and entry.next_attempt_at > now:
                held.add(entry.record_id)
                continue
            eligible.append(entry)
            if batch_size is not None and len(eligible) >= batch_size:
                break
        return eligible

    def entries_for(self, session: Session, record_id: str) -> Sequence[SyncQueueEntry]:
        return session.exec(
            select(SyncQueueEntry)
            .where(SyncQueueEntry.record_id == record_id)
            .order_by(SyncQueueEntry.created_at, SyncQueueEntry.seq)
        ).all()

    def count(self) -> int:
        """Number of entries still eligible for future passes."""
        with Session(self.engine) as s:
            return s.exec(
                select(func.count())
                .select_from(SyncQueueEntry)
                .where(SyncQueueEntry.dead_lettered == False)  # noqa: E712
            ).one()

    # ─── Dead letters ─────────────────────────────────────────────────────────

    def dead_letters(self) -> List[SyncQueueEntry]:
        with Session(self.engine) as s:
            return list(
                s.exec(
                    select(SyncQueueEntry)
                    .where(SyncQueueEntry.dead_lettered == True)  # noqa: E712
                    .order_by(SyncQueueEntry.created_at, SyncQueueEntry.seq)
                ).all()
            )

    def count_dead_letters(self) -> int:
        with Session(self.engine) as s:
            return s.exec(
                select(func.count())
                .select_from(SyncQueueEntry)
                .where(SyncQueueEntry.dead_lettered == True)  # noqa: E712
            ).one()

    def requeue_dead_letters(self, entry_ids: Optional[List[str]] = None) -> int:
        """Put dead-lettered entries back in the queue with a fresh retry budget.

        Args:
            entry_ids: Specific entry ids to requeue, or None for all.

        Returns:
            Number of entries requeued.
        """
        stmt = select(SyncQueueEntry).where(SyncQueueEntry.dead_lettered == True)  # noqa: E712
        if entry_ids:
            stmt = stmt.where(col(SyncQueueEntry.id).in_(entry_ids))
        with Session(self.engine) as s:
            entries = s.exec(stmt).all()
            for entry in entries:
                entry.dead_lettered = False
                entry.retry_count = 0
                entry.error_message = None
                entry.next_attempt_at = None
                s.add(entry)
            s.commit()
        return len(entries)

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _get(self, session: Session, entry_id: str) -> Optional[SyncQueueEntry]:
        return session.exec(
            select(SyncQueueEntry).where(SyncQueueEntry.id == entry_id)
        ).first()

    def _backoff(self, retry_count: int) -> timedelta:
        """Exponential delay with jitter: base * 2^(n-1), capped, scaled by [0.5, 1.0)."""
        delay = min(
            self.backoff_max_seconds,
            self.backoff_base_seconds * (2 ** (retry_count - 1)),
        )
        return timedelta(seconds=delay * random.uniform(0.5, 1.0))
