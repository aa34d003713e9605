"""Task CRUD routes. Every write is queued for the next sync pass."""
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel, StrictBool

from tasksync.db.engine import get_engine
from tasksync.models.task import Task
from tasksync.services.task_service import TaskService, TaskValidationError

router = APIRouter()


class TaskCreateRequest(BaseModel):
    title: str
    description: Optional[str] = None
    completed: StrictBool = False


class TaskUpdateRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    completed: Optional[StrictBool] = None


def get_task_service(engine=Depends(get_engine)) -> TaskService:
    return TaskService(engine)


@router.get("/", response_model=List[Task])
def list_tasks(service: TaskService = Depends(get_task_service)):
    """List all tasks that are not soft-deleted, oldest first."""
    return service.list_tasks()


@router.get("/{task_id}", response_model=Task)
def get_task(task_id: str, service: TaskService = Depends(get_task_service)):
    task = service.get_task(task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    return task


@router.post("/", response_model=Task, status_code=201)
def create_task(
    request: TaskCreateRequest,
    service: TaskService = Depends(get_task_service),
):
    try:
        return service.create_task(
            request.title,
            description=request.description,
            completed=request.completed,
        )
    except TaskValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@router.put("/{task_id}", response_model=Task)
def update_task(
    task_id: str,
    request: TaskUpdateRequest,
    service: TaskService = Depends(get_task_service),
):
    try:
        task = service.update_task(
            task_id,
            title=request.title,
            description=request.description,
            completed=request.completed,
        )
    except TaskValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    return task


@router.delete("/{task_id}", status_code=204)
def delete_task(task_id: str, service: TaskService = Depends(get_task_service)):
    if not service.delete_task(task_id):
        raise HTTPException(status_code=404, detail="Task not found")
    return Response(status_code=204)
