"""
TaskService — the local mutation path for tasks.

Every create / update / delete writes the task row and appends exactly one
change-log entry in the same transaction, and leaves the task "pending".
Deletes are soft: the row is flagged and hidden from reads.
"""
from typing import List, Optional

from sqlmodel import Session, col, select

from tasksync.models.task import (
    DeletePayload,
    Operation,
    SyncStatus,
    Task,
    TaskSnapshot,
)
from tasksync.sync.change_log import ChangeLog
from tasksync.timeutil import utcnow


class TaskValidationError(ValueError):
    """Rejected before anything is written or queued."""


def _clean_title(title: Optional[str]) -> str:
    title = (title or "").strip()
    if not title:
        raise TaskValidationError("Title is required")
    return title


class TaskService:
    def __init__(self, engine, change_log: Optional[ChangeLog] = None):
        self.engine = engine
        self.change_log = change_log or ChangeLog(engine)

    def create_task(
        self,
        title: str,
        description: Optional[str] = None,
        completed: bool = False,
    ) -> Task:
        title = _clean_title(title)
        now = utcnow()
        task = Task(
            title=title,
            description=description,
            completed=completed,
            created_at=now,
            updated_at=now,
            sync_status=SyncStatus.PENDING.value,
        )
        with Session(self.engine) as s:
            s.add(task)
            self.change_log.append(s, task.id, Operation.CREATE, TaskSnapshot.from_task(task))
            s.commit()
            s.refresh(task)
        return task

    def update_task(
        self,
        task_id: str,
        *,
        title: Optional[str] = None,
        description: Optional[str] = None,
        completed: Optional[bool] = None,
    ) -> Optional[Task]:
        """Apply the given fields; None leaves a field unchanged. Returns None if not found."""
        with Session(self.engine) as s:
            task = s.get(Task, task_id)
            if task is None or task.is_deleted:
                return None
            if title is not None:
                task.title = _clean_title(title)
            if description is not None:
                task.description = description
            if completed is not None:
                task.completed = completed
            task.updated_at = utcnow()
            task.sync_status = SyncStatus.PENDING.value
            s.add(task)
            self.change_log.append(s, task.id, Operation.UPDATE, TaskSnapshot.from_task(task))
            s.commit()
            s.refresh(task)
        return task

    def delete_task(self, task_id: str) -> bool:
        with Session(self.engine) as s:
            task = s.get(Task, task_id)
            if task is None or task.is_deleted:
                return False
            task.is_deleted = True
            task.updated_at = utcnow()
            task.sync_status = SyncStatus.PENDING.value
            s.add(task)
            self.change_log.append(s, task.id, Operation.DELETE, DeletePayload(id=task.id))
            s.commit()
        return True

    def get_task(self, task_id: str) -> Optional[Task]:
        with Session(self.engine) as s:
            task = s.get(Task, task_id)
        if task is None or task.is_deleted:
            return None
        return task

    def list_tasks(self) -> List[Task]:
        with Session(self.engine) as s:
            return list(
                s.exec(
                    select(Task)
                    .where(Task.is_deleted == False)  # noqa: E712
                    .order_by(Task.created_at)
                ).all()
            )

    def tasks_needing_sync(self) -> List[Task]:
        with Session(self.engine) as s:
            return list(
                s.exec(
                    select(Task).where(
                        col(Task.sync_status).in_(
                            [SyncStatus.PENDING.value, SyncStatus.ERROR.value]
                        )
                    )
                ).all()
            )
