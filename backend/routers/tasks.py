"""Task endpoints. Static paths are declared before /tasks/{task_id}."""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, status

import config
import schemas
from dependencies import get_actor_id, get_task_service
from repositories.task_repository import TaskFilters
from services.task_service import TaskService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tasks", tags=["tasks"])

TASK_SORT_PATTERN = "^(id|created_at|updated_at|due_date|title|status|priority)$"
SORT_ORDER_PATTERN = "^(asc|desc)$"


@router.get("")
def list_tasks(
    status_filter: Optional[schemas.TaskStatus] = Query(None, alias="status"),
    priority: Optional[schemas.TaskPriority] = Query(None),
    assigned_to: Optional[int] = Query(None, ge=0, le=config.MAX_ID, description="User ID, 0 for unassigned tasks"),
    created_by: Optional[int] = Query(None, gt=0, le=config.MAX_ID),
    overdue: Optional[bool] = Query(None),
    with_due_date: Optional[bool] = Query(None),
    due_date_from: Optional[datetime] = Query(None),
    due_date_to: Optional[datetime] = Query(None),
    search: Optional[str] = Query(None, min_length=1, max_length=255),
    sort_by: str = Query("created_at", pattern=TASK_SORT_PATTERN),
    sort_order: str = Query("desc", pattern=SORT_ORDER_PATTERN),
    page: int = Query(1, ge=1),
    limit: int = Query(config.DEFAULT_PAGE_SIZE, ge=1, le=config.MAX_PAGE_SIZE),
    service: TaskService = Depends(get_task_service),
):
    """List active tasks with filtering, sorting and pagination."""
    filters = TaskFilters(
        status=status_filter.value if status_filter else None,
        priority=priority.value if priority else None,
        assigned_to=assigned_to,
        created_by=created_by,
        overdue=overdue,
        with_due_date=with_due_date,
        due_date_from=due_date_from,
        due_date_to=due_date_to,
        search=search,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return service.list_tasks(filters, page, limit)


@router.post("", status_code=status.HTTP_201_CREATED)
def create_task(
    task: schemas.TaskCreate,
    service: TaskService = Depends(get_task_service),
    actor_id: Optional[int] = Depends(get_actor_id),
):
    return service.create_task(task, actor_id)


@router.get("/trashed")
def list_trashed_tasks(
    page: int = Query(1, ge=1),
    limit: int = Query(config.DEFAULT_PAGE_SIZE, ge=1, le=config.MAX_PAGE_SIZE),
    service: TaskService = Depends(get_task_service),
):
    return service.list_trashed(page, limit)


@router.get("/stats")
def task_stats(service: TaskService = Depends(get_task_service)):
    return service.stats()


@router.post("/bulk")
def bulk_create_tasks(
    payload: schemas.BulkTaskCreate,
    service: TaskService = Depends(get_task_service),
    actor_id: Optional[int] = Depends(get_actor_id),
):
    """Create several tasks; each item succeeds or fails on its own."""
    return service.bulk_create(payload, actor_id)


@router.put("/bulk")
def bulk_update_tasks(
    payload: schemas.BulkTaskUpdate,
    service: TaskService = Depends(get_task_service),
    actor_id: Optional[int] = Depends(get_actor_id),
):
    return service.bulk_update(payload, actor_id)


@router.delete("/bulk")
def bulk_delete_tasks(
    payload: schemas.BulkTaskDelete,
    service: TaskService = Depends(get_task_service),
    actor_id: Optional[int] = Depends(get_actor_id),
):
    return service.bulk_delete(payload, actor_id)


@router.get("/{task_id}")
def get_task(task_id: int = Path(..., gt=0, le=config.MAX_ID), service: TaskService = Depends(get_task_service)):
    return service.get_task(task_id)


@router.put("/{task_id}")
@router.patch("/{task_id}")
def update_task(
    task_update: schemas.TaskUpdate,
    task_id: int = Path(..., gt=0, le=config.MAX_ID),
    service: TaskService = Depends(get_task_service),
    actor_id: Optional[int] = Depends(get_actor_id),
):
    """Sparse update: only the fields present in the body are changed."""
    return service.update_task(task_id, task_update, actor_id)


@router.delete("/{task_id}")
def delete_task(
    task_id: int = Path(..., gt=0, le=config.MAX_ID),
    service: TaskService = Depends(get_task_service),
    actor_id: Optional[int] = Depends(get_actor_id),
):
    """Move a task to the trash."""
    return service.delete_task(task_id, actor_id)


@router.post("/{task_id}/restore")
def restore_task(
    task_id: int = Path(..., gt=0, le=config.MAX_ID),
    service: TaskService = Depends(get_task_service),
    actor_id: Optional[int] = Depends(get_actor_id),
):
    return service.restore_task(task_id, actor_id)


@router.delete("/{task_id}/force")
def force_delete_task(
    task_id: int = Path(..., gt=0, le=config.MAX_ID),
    service: TaskService = Depends(get_task_service),
    actor_id: Optional[int] = Depends(get_actor_id),
):
    """Permanently delete a task, whether active or trashed."""
    return service.force_delete_task(task_id, actor_id)


@router.post("/{task_id}/complete")
def complete_task(
    task_id: int = Path(..., gt=0, le=config.MAX_ID),
    service: TaskService = Depends(get_task_service),
    actor_id: Optional[int] = Depends(get_actor_id),
):
    return service.mark_complete(task_id, actor_id)


@router.post("/{task_id}/start")
def start_task(
    task_id: int = Path(..., gt=0, le=config.MAX_ID),
    service: TaskService = Depends(get_task_service),
    actor_id: Optional[int] = Depends(get_actor_id),
):
    return service.mark_in_progress(task_id, actor_id)


@router.post("/{task_id}/cancel")
def cancel_task(
    task_id: int = Path(..., gt=0, le=config.MAX_ID),
    service: TaskService = Depends(get_task_service),
    actor_id: Optional[int] = Depends(get_actor_id),
):
    return service.mark_cancelled(task_id, actor_id)


@router.post("/{task_id}/assign")
def assign_task(
    assignment: schemas.AssignTask,
    task_id: int = Path(..., gt=0, le=config.MAX_ID),
    service: TaskService = Depends(get_task_service),
    actor_id: Optional[int] = Depends(get_actor_id),
):
    return service.assign(task_id, assignment.assigned_to, actor_id)


@router.delete("/{task_id}/assign")
def unassign_task(
    task_id: int = Path(..., gt=0, le=config.MAX_ID),
    service: TaskService = Depends(get_task_service),
    actor_id: Optional[int] = Depends(get_actor_id),
):
    return service.unassign(task_id, actor_id)
