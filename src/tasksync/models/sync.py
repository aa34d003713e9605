"""Sync models: the change-log table, the pass audit log, and the batch wire format."""
import json
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, field_validator
from sqlmodel import Field, SQLModel

from tasksync.models.task import Operation
from tasksync.timeutil import to_naive_utc, utcnow


def _new_id() -> str:
    return str(uuid4())


class SyncQueueEntry(SQLModel, table=True):
    """
    One pending mutation awaiting acknowledgment from the remote authority.

    ``seq`` breaks ties between entries queued within the same timestamp, so
    (created_at, seq) is the processing order.
    """

    seq: Optional[int] = Field(default=None, primary_key=True)
    id: str = Field(default_factory=_new_id, unique=True, index=True)
    record_id: str = Field(index=True)
    operation: str  # "create", "update", "delete"
    data: str  # JSON snapshot taken at enqueue time
    created_at: datetime = Field(default_factory=utcnow, index=True)

    retry_count: int = 0
    error_message: Optional[str] = None

    # Only set when retry backoff / dead-lettering are enabled in settings
    next_attempt_at: Optional[datetime] = None
    dead_lettered: bool = Field(default=False, index=True)

    def payload(self) -> Dict[str, Any]:
        return json.loads(self.data)


class SyncLog(SQLModel, table=True):
    """Records each sync pass for audit and debugging."""

    id: Optional[int] = Field(default=None, primary_key=True)
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    status: str = "running"  # "running", "success", "partial", "error"
    synced_count: int = 0
    failed_count: int = 0
    error_message: Optional[str] = None


# ─── Batch wire format ────────────────────────────────────────────────────────


class SyncItem(BaseModel):
    id: str
    record_id: str
    operation: Operation
    data: Dict[str, Any]
    created_at: datetime
    retry_count: int = 0
    error_message: Optional[str] = None

    @classmethod
    def from_entry(cls, entry: SyncQueueEntry) -> "SyncItem":
        return cls(
            id=entry.id,
            record_id=entry.record_id,
            operation=entry.operation,
            data=entry.payload(),
            created_at=entry.created_at,
            retry_count=entry.retry_count,
            error_message=entry.error_message,
        )


class BatchSyncRequest(BaseModel):
    items: List[SyncItem]
    client_timestamp: datetime


class ProcessedItem(BaseModel):
    client_id: str  # the entry's record_id
    server_id: Optional[str] = None
    status: Literal["success", "conflict", "error"]
    resolved_data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class BatchSyncResponse(BaseModel):
    processed_items: List[ProcessedItem]


class RemoteTask(BaseModel):
    """The remote authority's version of a task, as sent with a conflict."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    title: str
    description: Optional[str] = None
    completed: bool = False
    updated_at: datetime
    server_id: Optional[str] = None

    @field_validator("updated_at")
    @classmethod
    def _as_naive_utc(cls, value: datetime) -> datetime:
        return to_naive_utc(value)


# ─── Results ──────────────────────────────────────────────────────────────────


class SyncError(BaseModel):
    record_id: str
    operation: str
    error: str
    timestamp: datetime


class SyncResult(BaseModel):
    success: bool = True
    synced_count: int = 0
    failed_count: int = 0
    errors: List[SyncError] = []


class SyncStatusReport(BaseModel):
    pending_sync_count: int
    last_sync_timestamp: Optional[datetime]
    is_online: bool
    sync_queue_size: int
    dead_letter_count: int = 0
