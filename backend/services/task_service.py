"""
Task service: validation, persistence and audit logging for task operations.

Every mutation follows the same shape: validate, write through the
repository, then record an audit entry. The audit write happens after the
task change is committed and its failure is logged and ignored.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

import config
import models
import schemas
from concurrency import task_locks
from errors import AppError, BadRequestError, TaskNotFoundError
from repositories.task_repository import TaskFilters, TaskRepository
from responses import paginated_response, success_response
from services.log_service import LogService
from task_status import resolve_completion
from time_utils import ensure_utc

logger = logging.getLogger(__name__)

# Fields compared before/after an update to build changed_fields
TRACKED_FIELDS = ("title", "description", "status", "priority", "assigned_to", "due_date", "completed_at")


def serialize_task(task: models.Task) -> Dict[str, Any]:
    return schemas.Task.model_validate(task).model_dump(mode="json")


def task_snapshot(task: models.Task) -> Dict[str, Any]:
    """JSON-safe copy of a task for audit entries."""
    return schemas.Task.model_validate(task).model_dump(mode="json", exclude={"is_overdue"})


def _comparable(value: Any) -> Any:
    if isinstance(value, datetime):
        return ensure_utc(value)
    return getattr(value, "value", value)


class TaskService:
    """Orchestrates task operations over the task and log repositories."""

    def __init__(self, repository: TaskRepository, log_service: LogService):
        self.repository = repository
        self.log_service = log_service

    def _audit(
        self,
        task_id: int,
        action: models.LogAction,
        old_data: Optional[Dict[str, Any]] = None,
        new_data: Optional[Dict[str, Any]] = None,
        user_id: Optional[int] = None,
    ) -> None:
        try:
            self.log_service.record(task_id, action.value, old_data, new_data, user_id=user_id)
        except Exception as e:
            logger.warning(f"Failed to record '{action.value}' audit log for task {task_id}: {e}")

    def _get_or_404(self, task_id: int) -> models.Task:
        task = self.repository.find_by_id(task_id)
        if not task:
            logger.info(f"Task {task_id} not found")
            raise TaskNotFoundError(task_id)
        return task

    # ----- reads -----

    def list_tasks(self, filters: TaskFilters, page: int, per_page: int) -> Dict[str, Any]:
        logger.debug(f"Listing tasks page={page} per_page={per_page} filters={filters}")
        if filters.due_date_from and filters.due_date_to and ensure_utc(filters.due_date_from) > ensure_utc(filters.due_date_to):
            raise BadRequestError(
                "due_date_from must be before or equal to due_date_to",
                {"errors": {"due_date_from": ["due_date_from must be before or equal to due_date_to"]}},
            )
        filters.limit = per_page
        filters.offset = (page - 1) * per_page
        tasks = self.repository.find_with_filters(filters)
        total = self.repository.count_with_filters(filters)
        return paginated_response(
            [serialize_task(task) for task in tasks],
            page,
            per_page,
            total,
            "Tasks retrieved successfully",
            {"filters": filters.applied(), "sort": {"sort_by": filters.sort_by, "sort_order": filters.sort_order}},
        )

    def get_task(self, task_id: int) -> Dict[str, Any]:
        return success_response(serialize_task(self._get_or_404(task_id)), "Task retrieved successfully")

    def list_trashed(self, page: int, per_page: int) -> Dict[str, Any]:
        tasks = self.repository.find_trashed(per_page, (page - 1) * per_page)
        total = self.repository.count_trashed()
        return paginated_response(
            [serialize_task(task) for task in tasks], page, per_page, total,
            "Trashed tasks retrieved successfully",
        )

    def stats(self) -> Dict[str, Any]:
        data = schemas.TaskStats(
            total=self.repository.count_by_status(),
            pending=self.repository.count_by_status(models.TaskStatus.pending),
            in_progress=self.repository.count_by_status(models.TaskStatus.in_progress),
            completed=self.repository.count_by_status(models.TaskStatus.completed),
            cancelled=self.repository.count_by_status(models.TaskStatus.cancelled),
            overdue=self.repository.count_overdue(),
            trashed=self.repository.count_trashed(),
        )
        return success_response(data.model_dump(), "Task statistics retrieved successfully")

    # ----- single task mutations -----

    def _create(self, payload: schemas.TaskCreate, user_id: Optional[int]) -> models.Task:
        data = payload.model_dump()
        if data.get("created_by") is None:
            data["created_by"] = user_id
        data.update(resolve_completion(models.TaskStatus.pending, None, {"status": data["status"]}))
        task = self.repository.create(data)
        logger.info(f"Created task {task.id}: '{task.title}'")
        self._audit(task.id, models.LogAction.created, None, task_snapshot(task), user_id)
        return task

    def create_task(self, payload: schemas.TaskCreate, user_id: Optional[int] = None) -> Dict[str, Any]:
        task = self._create(payload, user_id)
        return success_response(serialize_task(task), "Task created successfully")

    def _update(self, task_id: int, changes: Dict[str, Any], user_id: Optional[int]) -> Tuple[models.Task, List[str]]:
        """
        Apply a sparse update under the task's update lock.

        Args:
            task_id: Task to update
            changes: Only the fields the caller supplied
            user_id: Acting user for the audit entry

        Returns:
            Tuple of (task after the update, names of fields that changed)
        """
        with task_locks.hold(f"task_update_{task_id}"):
            task = self._get_or_404(task_id)
            diff = {
                key: value for key, value in changes.items()
                if _comparable(value) != _comparable(getattr(task, key))
            }
            if not diff:
                logger.debug(f"Update of task {task_id} changes nothing")
                return task, []

            if "status" in diff or "completed_at" in diff:
                diff = resolve_completion(task.status, task.completed_at, diff)

            before = task_snapshot(task)
            task = self.repository.update(task_id, diff)
            after = task_snapshot(task)

        changed_fields = [field for field in TRACKED_FIELDS if before.get(field) != after.get(field)]
        if changed_fields:
            logger.info(f"Updated task {task_id}: {changed_fields}")
            self._audit(
                task_id,
                models.LogAction.updated,
                {field: before.get(field) for field in changed_fields},
                {field: after.get(field) for field in changed_fields},
                user_id,
            )
        return task, changed_fields

    def _update_response(self, task: models.Task, changed_fields: List[str], message: str) -> Dict[str, Any]:
        if not changed_fields:
            return success_response(serialize_task(task), "No changes detected", {"changed_fields": []})
        return success_response(serialize_task(task), message, {"changed_fields": changed_fields})

    def update_task(self, task_id: int, payload: schemas.TaskUpdate, user_id: Optional[int] = None) -> Dict[str, Any]:
        changes = payload.model_dump(exclude_unset=True)
        logger.debug(f"Updating task {task_id} with {changes}")
        task, changed_fields = self._update(task_id, changes, user_id)
        return self._update_response(task, changed_fields, "Task updated successfully")

    def mark_complete(self, task_id: int, user_id: Optional[int] = None) -> Dict[str, Any]:
        task, changed_fields = self._update(task_id, {"status": models.TaskStatus.completed}, user_id)
        return self._update_response(task, changed_fields, "Task marked as completed")

    def mark_in_progress(self, task_id: int, user_id: Optional[int] = None) -> Dict[str, Any]:
        task, changed_fields = self._update(task_id, {"status": models.TaskStatus.in_progress}, user_id)
        return self._update_response(task, changed_fields, "Task marked as in progress")

    def mark_cancelled(self, task_id: int, user_id: Optional[int] = None) -> Dict[str, Any]:
        task, changed_fields = self._update(task_id, {"status": models.TaskStatus.cancelled}, user_id)
        return self._update_response(task, changed_fields, "Task cancelled")

    def assign(self, task_id: int, assigned_to: int, user_id: Optional[int] = None) -> Dict[str, Any]:
        task, changed_fields = self._update(task_id, {"assigned_to": assigned_to}, user_id)
        return self._update_response(task, changed_fields, f"Task assigned to user {assigned_to}")

    def unassign(self, task_id: int, user_id: Optional[int] = None) -> Dict[str, Any]:
        task, changed_fields = self._update(task_id, {"assigned_to": None}, user_id)
        return self._update_response(task, changed_fields, "Task unassigned")

    def _soft_delete(self, task_id: int, user_id: Optional[int]) -> models.Task:
        with task_locks.hold(f"task_delete_{task_id}"):
            before = task_snapshot(self._get_or_404(task_id))
            task = self.repository.delete(task_id)
        logger.info(f"Moved task {task_id} to trash")
        self._audit(task_id, models.LogAction.deleted, before, task_snapshot(task), user_id)
        return task

    def delete_task(self, task_id: int, user_id: Optional[int] = None) -> Dict[str, Any]:
        task = self._soft_delete(task_id, user_id)
        data = {
            "id": task.id,
            "title": task.title,
            "deleted_at": ensure_utc(task.deleted_at).isoformat(),
            "restore": {"method": "POST", "url": f"{config.API_PREFIX}/tasks/{task.id}/restore"},
            "force_delete": {"method": "DELETE", "url": f"{config.API_PREFIX}/tasks/{task.id}/force"},
        }
        return success_response(data, "Task moved to trash. It can be restored or permanently deleted.")

    def restore_task(self, task_id: int, user_id: Optional[int] = None) -> Dict[str, Any]:
        with task_locks.hold(f"task_delete_{task_id}"):
            task = self.repository.restore(task_id)
        logger.info(f"Restored task {task_id} from trash")
        self._audit(task_id, models.LogAction.restored, None, task_snapshot(task), user_id)
        return success_response(serialize_task(task), "Task restored successfully")

    def _force_delete(self, task_id: int, user_id: Optional[int]) -> None:
        with task_locks.hold(f"task_delete_{task_id}"):
            task = self.repository.find_by_id(task_id, include_trashed=True)
            if not task:
                raise TaskNotFoundError(task_id)
            before = task_snapshot(task)
            self.repository.force_delete(task_id)
        logger.info(f"Permanently deleted task {task_id}")
        self._audit(task_id, models.LogAction.force_deleted, before, None, user_id)

    def force_delete_task(self, task_id: int, user_id: Optional[int] = None) -> Dict[str, Any]:
        self._force_delete(task_id, user_id)
        return success_response(
            {"id": task_id, "permanently_deleted": True},
            "Task permanently deleted. This action cannot be undone.",
        )

    # ----- bulk operations -----

    @staticmethod
    def _check_batch(items: List[Any], noun: str) -> None:
        if len(items) > config.MAX_BULK_ITEMS:
            logger.info(f"Batch size {len(items)} exceeds limit of {config.MAX_BULK_ITEMS}")
            raise BadRequestError(
                f"Maximum {config.MAX_BULK_ITEMS} {noun} per bulk operation",
                {"max_items": config.MAX_BULK_ITEMS, "received": len(items)},
            )

    @staticmethod
    def _unique_ids(task_ids: List[int]) -> List[int]:
        return list(dict.fromkeys(task_ids))

    def _item_failure(self, error: Exception, **position: Any) -> schemas.BulkOperationError:
        """Roll back a bulk item that failed outside the AppError taxonomy."""
        self.repository.db.rollback()
        logger.error(f"Bulk item {position} failed unexpectedly: {error!r}")
        return schemas.BulkOperationError(
            error="Unexpected error while processing this item",
            error_code="OPERATION_FAILED",
            **position,
        )

    @staticmethod
    def _bulk_result(task_ids: List[int], errors: List[schemas.BulkOperationError], message: str) -> Dict[str, Any]:
        result = schemas.BulkOperationResult(
            success=not errors,
            processed_count=len(task_ids),
            failed_count=len(errors),
            task_ids=task_ids,
            errors=errors,
        )
        return success_response(result.model_dump(), message)

    def bulk_create(self, payload: schemas.BulkTaskCreate, user_id: Optional[int] = None) -> Dict[str, Any]:
        logger.info(f"Bulk creating {len(payload.tasks)} tasks")
        self._check_batch(payload.tasks, "tasks")
        task_ids: List[int] = []
        errors: List[schemas.BulkOperationError] = []

        for index, item in enumerate(payload.tasks):
            try:
                task = self._create(schemas.TaskCreate.model_validate(item), user_id)
                task_ids.append(task.id)
            except PydanticValidationError as e:
                messages = "; ".join(
                    f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
                )
                logger.debug(f"Bulk create item {index} invalid: {messages}")
                errors.append(schemas.BulkOperationError(index=index, error=messages, error_code="VALIDATION_FAILED"))
            except AppError as e:
                errors.append(schemas.BulkOperationError(index=index, error=e.message, error_code=e.error_code))
            except Exception as e:
                errors.append(self._item_failure(e, index=index))

        logger.info(f"Bulk create finished: {len(task_ids)} created, {len(errors)} failed")
        return self._bulk_result(task_ids, errors, f"Created {len(task_ids)} of {len(payload.tasks)} tasks")

    def bulk_update(self, payload: schemas.BulkTaskUpdate, user_id: Optional[int] = None) -> Dict[str, Any]:
        task_ids = self._unique_ids(payload.task_ids)
        logger.info(f"Bulk updating {len(task_ids)} tasks")
        self._check_batch(task_ids, "tasks")
        changes = payload.updates.model_dump(exclude_unset=True)
        if not changes:
            raise BadRequestError("No update fields provided", {"errors": {"updates": ["At least one field is required"]}})

        updated: List[int] = []
        errors: List[schemas.BulkOperationError] = []
        for task_id in task_ids:
            try:
                self._update(task_id, changes, user_id)
                updated.append(task_id)
            except AppError as e:
                errors.append(schemas.BulkOperationError(task_id=task_id, error=e.message, error_code=e.error_code))
            except Exception as e:
                errors.append(self._item_failure(e, task_id=task_id))

        logger.info(f"Bulk update finished: {len(updated)} updated, {len(errors)} failed")
        return self._bulk_result(updated, errors, f"Updated {len(updated)} of {len(task_ids)} tasks")

    def bulk_delete(self, payload: schemas.BulkTaskDelete, user_id: Optional[int] = None) -> Dict[str, Any]:
        task_ids = self._unique_ids(payload.task_ids)
        logger.info(f"Bulk {'force ' if payload.force else ''}deleting {len(task_ids)} tasks")
        self._check_batch(task_ids, "tasks")

        deleted: List[int] = []
        errors: List[schemas.BulkOperationError] = []
        for task_id in task_ids:
            try:
                if payload.force:
                    self._force_delete(task_id, user_id)
                else:
                    self._soft_delete(task_id, user_id)
                deleted.append(task_id)
            except AppError as e:
                errors.append(schemas.BulkOperationError(task_id=task_id, error=e.message, error_code=e.error_code))
            except Exception as e:
                errors.append(self._item_failure(e, task_id=task_id))

        verb = "Permanently deleted" if payload.force else "Moved to trash"
        return self._bulk_result(deleted, errors, f"{verb} {len(deleted)} of {len(task_ids)} tasks")
