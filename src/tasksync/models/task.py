"""Task model: the synchronized record, plus the change payloads queued for it."""
from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Type, Union
from uuid import uuid4

from pydantic import BaseModel
from sqlmodel import Field, SQLModel

from tasksync.timeutil import utcnow


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"


class Operation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


def _new_id() -> str:
    return str(uuid4())


class Task(SQLModel, table=True):
    """One row per task. Soft-deleted rows stay behind as tombstones."""

    id: str = Field(default_factory=_new_id, primary_key=True)
    title: str
    description: Optional[str] = None
    completed: bool = False

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)  # conflict resolution basis
    is_deleted: bool = Field(default=False, index=True)

    sync_status: str = Field(default=SyncStatus.PENDING.value, index=True)  # "pending", "synced", "error"
    server_id: Optional[str] = None  # assigned by the remote authority, never changed afterwards
    last_synced_at: Optional[datetime] = None


# ─── Change payloads ──────────────────────────────────────────────────────────


class TaskSnapshot(BaseModel):
    """Full point-in-time copy of a task, queued with create and update."""

    id: str
    title: str
    description: Optional[str] = None
    completed: bool = False
    updated_at: datetime

    @classmethod
    def from_task(cls, task: Task) -> "TaskSnapshot":
        return cls(
            id=task.id,
            title=task.title,
            description=task.description,
            completed=task.completed,
            updated_at=task.updated_at,
        )


class DeletePayload(BaseModel):
    """Deletes only carry the identifier."""

    id: str


ChangePayload = Union[TaskSnapshot, DeletePayload]

PAYLOAD_TYPES: Dict[Operation, Type[BaseModel]] = {
    Operation.CREATE: TaskSnapshot,
    Operation.UPDATE: TaskSnapshot,
    Operation.DELETE: DeletePayload,
}
