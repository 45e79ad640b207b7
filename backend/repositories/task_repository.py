"""
Repository for Task persistence in the relational store.

Soft-deleted tasks (deleted_at set) are excluded from every default query
and only reachable through the trashed lookups. All writes run through
run_with_retry so transient lock/connection errors are retried.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import asc, desc, func, or_
from sqlalchemy.orm import Query, Session

import models
from concurrency import run_with_retry
from errors import TaskNotFoundError, TaskRestoreError
from time_utils import utc_now

logger = logging.getLogger(__name__)

SORTABLE_FIELDS = ("id", "created_at", "updated_at", "due_date", "title", "status", "priority")
TERMINAL_STATUSES = (models.TaskStatus.completed, models.TaskStatus.cancelled)


@dataclass
class TaskFilters:
    status: Optional[str] = None
    priority: Optional[str] = None
    assigned_to: Optional[int] = None
    created_by: Optional[int] = None
    overdue: Optional[bool] = None
    with_due_date: Optional[bool] = None
    due_date_from: Optional[datetime] = None
    due_date_to: Optional[datetime] = None
    search: Optional[str] = None
    sort_by: str = "created_at"
    sort_order: str = "desc"
    limit: Optional[int] = None
    offset: int = 0

    def applied(self) -> Dict[str, Any]:
        """Return the filters that narrow the result set (for echoing back)."""
        keys = (
            "status", "priority", "assigned_to", "created_by", "overdue",
            "with_due_date", "due_date_from", "due_date_to", "search",
        )
        result = {}
        for key in keys:
            value = getattr(self, key)
            if value is not None:
                result[key] = value.isoformat() if isinstance(value, datetime) else value
        return result


def _coerce_enums(data: Dict[str, Any]) -> Dict[str, Any]:
    values = dict(data)
    if values.get("status") is not None:
        values["status"] = models.TaskStatus(getattr(values["status"], "value", values["status"]))
    if values.get("priority") is not None:
        values["priority"] = models.TaskPriority(getattr(values["priority"], "value", values["priority"]))
    return values


class TaskRepository:
    """Repository for Task operations."""

    def __init__(self, db: Session):
        self.db = db

    # ----- reads -----

    def _active(self) -> Query:
        return self.db.query(models.Task).filter(models.Task.deleted_at.is_(None))

    def _trashed(self) -> Query:
        return self.db.query(models.Task).filter(models.Task.deleted_at.isnot(None))

    def find_by_id(self, task_id: int, include_trashed: bool = False) -> Optional[models.Task]:
        """Find an active task by ID (or any task when include_trashed=True)."""
        query = self.db.query(models.Task) if include_trashed else self._active()
        return query.filter(models.Task.id == task_id).first()

    def find_trashed_by_id(self, task_id: int) -> Optional[models.Task]:
        return self._trashed().filter(models.Task.id == task_id).first()

    def _apply_filters(self, query: Query, filters: TaskFilters) -> Query:
        if filters.status:
            query = query.filter(models.Task.status == models.TaskStatus(filters.status))
        if filters.priority:
            query = query.filter(models.Task.priority == models.TaskPriority(filters.priority))
        if filters.assigned_to is not None:
            # assigned_to=0 selects unassigned tasks
            if filters.assigned_to == 0:
                query = query.filter(models.Task.assigned_to.is_(None))
            else:
                query = query.filter(models.Task.assigned_to == filters.assigned_to)
        if filters.created_by is not None:
            query = query.filter(models.Task.created_by == filters.created_by)
        if filters.overdue is True:
            query = query.filter(
                models.Task.due_date < utc_now(),
                models.Task.status.notin_(TERMINAL_STATUSES),
            )
        elif filters.overdue is False:
            query = query.filter(
                or_(
                    models.Task.due_date.is_(None),
                    models.Task.due_date >= utc_now(),
                    models.Task.status.in_(TERMINAL_STATUSES),
                )
            )
        if filters.with_due_date is True:
            query = query.filter(models.Task.due_date.isnot(None))
        elif filters.with_due_date is False:
            query = query.filter(models.Task.due_date.is_(None))
        if filters.due_date_from:
            query = query.filter(models.Task.due_date >= filters.due_date_from)
        if filters.due_date_to:
            query = query.filter(models.Task.due_date <= filters.due_date_to)
        if filters.search:
            pattern = f"%{filters.search.strip().lower()}%"
            query = query.filter(
                or_(
                    func.lower(models.Task.title).like(pattern),
                    func.lower(func.coalesce(models.Task.description, "")).like(pattern),
                )
            )
        return query

    def _apply_sort(self, query: Query, sort_by: str, sort_order: str) -> Query:
        column = getattr(models.Task, sort_by if sort_by in SORTABLE_FIELDS else "created_at")
        direction = desc if sort_order == "desc" else asc
        # Task.id as tiebreaker for deterministic pagination
        if sort_by == "id":
            return query.order_by(direction(models.Task.id))
        return query.order_by(direction(column), direction(models.Task.id))

    def find_with_filters(self, filters: TaskFilters) -> List[models.Task]:
        logger.debug(f"Finding tasks with filters: {filters}")
        query = self._apply_filters(self._active(), filters)
        query = self._apply_sort(query, filters.sort_by, filters.sort_order)
        if filters.limit is not None:
            query = query.offset(filters.offset).limit(filters.limit)
        return query.all()

    def count_with_filters(self, filters: TaskFilters) -> int:
        return self._apply_filters(self._active(), filters).count()

    def find_trashed(self, limit: Optional[int] = None, offset: int = 0) -> List[models.Task]:
        query = self._trashed().order_by(desc(models.Task.deleted_at), desc(models.Task.id))
        if limit is not None:
            query = query.offset(offset).limit(limit)
        return query.all()

    def count_trashed(self) -> int:
        return self._trashed().count()

    def count_by_status(self, status: Optional[models.TaskStatus] = None) -> int:
        query = self._active()
        if status is not None:
            query = query.filter(models.Task.status == status)
        return query.count()

    def count_overdue(self) -> int:
        return self._apply_filters(self._active(), TaskFilters(overdue=True)).count()

    # ----- writes -----

    def create(self, data: Dict[str, Any]) -> models.Task:
        """
        Insert a new task.

        Args:
            data: Column values; status/priority may be schema enums or strings

        Returns:
            The persisted task, refreshed with store-assigned values
        """
        values = _coerce_enums(data)

        def _insert() -> models.Task:
            task = models.Task(**values)
            self.db.add(task)
            self.db.commit()
            self.db.refresh(task)
            return task

        task = run_with_retry(_insert, "create_task", self.db)
        logger.debug(f"Inserted task id={task.id}")
        return task

    def update(self, task_id: int, data: Dict[str, Any]) -> models.Task:
        """
        Apply a sparse update: only keys present in data are written.

        Raises:
            TaskNotFoundError: if no active task has this ID
        """
        values = _coerce_enums(data)

        def _apply() -> models.Task:
            task = self.find_by_id(task_id)
            if not task:
                raise TaskNotFoundError(task_id)
            for key, value in values.items():
                setattr(task, key, value)
            self.db.commit()
            self.db.refresh(task)
            return task

        return run_with_retry(_apply, "update_task", self.db)

    def delete(self, task_id: int) -> models.Task:
        """
        Soft delete: mark the task as trashed.

        Raises:
            TaskNotFoundError: if no active task has this ID
        """
        def _soft_delete() -> models.Task:
            task = self.find_by_id(task_id)
            if not task:
                raise TaskNotFoundError(task_id)
            task.deleted_at = utc_now()
            self.db.commit()
            self.db.refresh(task)
            return task

        return run_with_retry(_soft_delete, "delete_task", self.db)

    def restore(self, task_id: int) -> models.Task:
        """
        Bring a trashed task back.

        Raises:
            TaskRestoreError: reason "not_found" if the ID is unknown,
                "already_restored" if the task is active
        """
        def _restore() -> models.Task:
            task = self.find_by_id(task_id, include_trashed=True)
            if not task:
                raise TaskRestoreError(task_id, "not_found")
            if not task.is_trashed:
                raise TaskRestoreError(task_id, "already_restored")
            task.deleted_at = None
            self.db.commit()
            self.db.refresh(task)
            return task

        return run_with_retry(_restore, "restore_task", self.db)

    def force_delete(self, task_id: int) -> None:
        """
        Permanently remove a task, active or trashed.

        Raises:
            TaskNotFoundError: if the task does not exist in either state
        """
        def _purge() -> None:
            task = self.find_by_id(task_id, include_trashed=True)
            if not task:
                raise TaskNotFoundError(task_id)
            self.db.delete(task)
            self.db.commit()

        run_with_retry(_purge, "force_delete_task", self.db)
