"""
Audit log service: recording task mutations and querying the log.

Writes go to the document store with a short retry, then to the
`task_logs_fallback` table when the store stays unavailable. Read paths
degrade to a fixed set of demo entries when the store is unreachable,
flagged with meta.fallback = true.
"""

import csv
import io
import logging
import re
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from pymongo.errors import PyMongoError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import config
from errors import BadRequestError, LogNotFoundError, OperationError, ValidationError
from models import LogAction, TaskLogFallback
from repositories.log_repository import LogFilters, LogRepository
from responses import paginated_response, success_response
from schemas import LogCleanupResult
from time_utils import days_ago, ensure_utc, utc_now

logger = logging.getLogger(__name__)

LOG_ID_PATTERN = re.compile(r"^[0-9a-fA-F]{24}$")
LOG_ID_FORMAT = "24-character hexadecimal string"
MAX_ACTION_LENGTH = 100
ACTION_PATTERN = re.compile(r"[A-Za-z0-9_.:-]{1,%d}" % MAX_ACTION_LENGTH)
MAX_EXPORT_ROWS = config.MAX_PAGE_SIZE * 10
CSV_COLUMNS = ["id", "task_id", "action", "user_id", "user_name", "description", "created_at", "changes"]


def _demo_entry(index: int, task_id: int, action: str, user_id: int, description: str, day: int, **extra: Any) -> Dict[str, Any]:
    entry = {
        "id": f"{index:024x}",
        "task_id": task_id,
        "action": action,
        "old_data": None,
        "new_data": None,
        "changes": None,
        "user_id": user_id,
        "user_name": "Demo User" if user_id else config.SYSTEM_USER_NAME,
        "description": description,
        "created_at": datetime(2025, 1, day, 9, 30, tzinfo=timezone.utc),
    }
    entry.update(extra)
    return entry


# Served when the document store is unreachable so clients still see the response shape
DEMO_LOGS: List[Dict[str, Any]] = [
    _demo_entry(1, 1, "created", 1, "Task 'Set up project' created", 6,
                new_data={"title": "Set up project", "status": "pending"}),
    _demo_entry(2, 1, "updated", 1, "Updated task - modified field: status", 7,
                old_data={"status": "pending"}, new_data={"status": "in_progress"},
                changes={"status": {"from": "pending", "to": "in_progress"}}),
    _demo_entry(3, 2, "created", 2, "Task 'Write documentation' created", 8,
                new_data={"title": "Write documentation", "status": "pending"}),
    _demo_entry(4, 2, "deleted", 2, "Task 'Write documentation' moved to trash", 9),
    _demo_entry(5, 2, "restored", config.SYSTEM_USER_ID, "Task 'Write documentation' restored from trash", 10),
]


def _matches_demo(entry: Dict[str, Any], filters: LogFilters) -> bool:
    if filters.action and entry["action"] != filters.action:
        return False
    if filters.task_id is not None and entry["task_id"] != filters.task_id:
        return False
    if filters.user_id is not None and entry["user_id"] != filters.user_id:
        return False
    if filters.start_date and entry["created_at"] < ensure_utc(filters.start_date):
        return False
    if filters.end_date and entry["created_at"] > ensure_utc(filters.end_date):
        return False
    return True


def demo_logs(filters: Optional[LogFilters] = None) -> List[Dict[str, Any]]:
    filters = filters or LogFilters()
    rows = [dict(entry) for entry in DEMO_LOGS if _matches_demo(entry, filters)]
    sort_by = filters.sort_by if filters.sort_by in ("created_at", "action", "task_id", "user_id") else "created_at"
    rows.sort(key=lambda row: (row[sort_by], row["id"]), reverse=filters.sort_order != "asc")
    return rows


def compute_changes(old_data: Optional[Dict[str, Any]], new_data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Return {field: {"from": old, "to": new}} for every field whose value differs."""
    old_data = old_data or {}
    new_data = new_data or {}
    changes = {}
    for field in sorted(set(old_data) | set(new_data)):
        if old_data.get(field) != new_data.get(field):
            changes[field] = {"from": old_data.get(field), "to": new_data.get(field)}
    return changes


def describe_action(action: str, changes: Dict[str, Any], title: Optional[str] = None) -> str:
    label = f"Task '{title}'" if title else "Task"
    if action == LogAction.created.value:
        return f"{label} created"
    if action == LogAction.updated.value:
        if not changes:
            return "Updated task with no changes"
        noun = "field" if len(changes) == 1 else "fields"
        return f"Updated task - modified {noun}: {', '.join(changes)}"
    if action == LogAction.deleted.value:
        return f"{label} moved to trash"
    if action == LogAction.restored.value:
        return f"{label} restored from trash"
    if action == LogAction.force_deleted.value:
        return f"{label} permanently deleted"
    return f"{label} {action.replace('_', ' ')}"


def validate_log_id(log_id: str) -> str:
    if not log_id or not LOG_ID_PATTERN.match(log_id):
        raise ValidationError(
            f"Invalid log ID format: '{log_id}'",
            {
                "errors": {"id": [f"Log ID must be a {LOG_ID_FORMAT}"]},
                "failed_fields": ["id"],
                "expected_format": LOG_ID_FORMAT,
                "example": "507f1f77bcf86cd799439011",
                "received": log_id,
            },
        )
    return log_id.lower()


def validate_action(action: Optional[str]) -> Optional[str]:
    """
    Check the shape of an action filter.

    Any slug up to MAX_ACTION_LENGTH characters is accepted, since entries
    may carry detail actions beyond the LogAction values.
    """
    if action is None:
        return None
    if not ACTION_PATTERN.fullmatch(action):
        known = [a.value for a in LogAction]
        raise BadRequestError(
            f"Invalid action '{action}'",
            {
                "errors": {
                    "action": [
                        f"Action must be 1-{MAX_ACTION_LENGTH} letters, digits, '_', '-', '.' or ':'"
                    ]
                },
                "valid_actions": known,
            },
        )
    return action


def validate_date_range(start_date: Optional[datetime], end_date: Optional[datetime]) -> None:
    if start_date and end_date and ensure_utc(start_date) > ensure_utc(end_date):
        raise BadRequestError(
            "start_date must be before or equal to end_date",
            {"errors": {"start_date": ["start_date must be before or equal to end_date"]}},
        )


class LogService:
    """Recording and querying audit log entries."""

    def __init__(
        self,
        repository: LogRepository,
        fallback_db: Optional[Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.repository = repository
        self.fallback_db = fallback_db
        self.sleep = sleep

    def _read(self, operation: str, read: Callable[[], Any], fallback: Callable[[], Any]) -> Tuple[Any, bool]:
        try:
            return read(), False
        except PyMongoError as e:
            logger.warning(f"Document store unavailable during {operation}, serving demo data: {e}")
            return fallback(), True

    @staticmethod
    def _meta(fallback: bool, **extra: Any) -> Dict[str, Any]:
        meta = dict(extra)
        if fallback:
            meta["fallback"] = True
            meta["fallback_reason"] = "Document store unavailable; showing demo data"
        return meta

    # ----- writes -----

    def record(
        self,
        task_id: int,
        action: str,
        old_data: Optional[Dict[str, Any]] = None,
        new_data: Optional[Dict[str, Any]] = None,
        user_id: Optional[int] = None,
        user_name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Append an audit entry for a task mutation.

        The document store write is retried LOG_WRITE_ATTEMPTS times; after that
        the entry goes to the task_logs_fallback table through fallback_db.

        Raises:
            PyMongoError: if the document store rejects the write and there is
                no fallback session
            SQLAlchemyError: if the fallback write fails as well
        """
        action_value = getattr(action, "value", action)
        changes = compute_changes(old_data, new_data) if action_value == LogAction.updated.value else None
        title = (new_data or {}).get("title") or (old_data or {}).get("title")
        if user_id is None:
            user_id = config.SYSTEM_USER_ID
            user_name = user_name or config.SYSTEM_USER_NAME

        entry = {
            "task_id": task_id,
            "action": action_value,
            "old_data": old_data,
            "new_data": new_data,
            "changes": changes,
            "user_id": user_id,
            "user_name": user_name,
            "description": description or describe_action(action_value, changes or {}, title),
            "created_at": utc_now(),
        }
        last_error: Optional[PyMongoError] = None
        for attempt in range(1, config.LOG_WRITE_ATTEMPTS + 1):
            try:
                log = self.repository.create(entry)
                logger.info(f"Recorded '{action_value}' log {log['id']} for task {task_id}")
                return log
            except PyMongoError as e:
                last_error = e
                logger.warning(
                    f"Log write for task {task_id} failed on attempt {attempt}/{config.LOG_WRITE_ATTEMPTS}: {e}"
                )
                if attempt < config.LOG_WRITE_ATTEMPTS:
                    self.sleep(config.LOG_WRITE_RETRY_DELAY * (2 ** (attempt - 1)))
        return self._store_fallback(entry, last_error)

    def _store_fallback(self, entry: Dict[str, Any], error: PyMongoError) -> Dict[str, Any]:
        if self.fallback_db is None:
            raise error
        row = TaskLogFallback(
            task_id=entry["task_id"],
            action=entry["action"],
            user_id=entry["user_id"],
            user_name=entry["user_name"],
            data={key: entry[key] for key in ("old_data", "new_data", "changes")},
            description=entry["description"],
            original_error=str(error),
            created_at=entry["created_at"],
        )
        try:
            self.fallback_db.add(row)
            self.fallback_db.commit()
        except SQLAlchemyError:
            self.fallback_db.rollback()
            raise
        logger.warning(f"Stored '{entry['action']}' log for task {entry['task_id']} in fallback table (row {row.id})")
        return {**entry, "id": None, "fallback_id": row.id}

    def cleanup(self, retention_days: int) -> Dict[str, Any]:
        if retention_days < 1 or retention_days > 3650:
            raise ValidationError.for_field("retention_days", "retention_days must be between 1 and 3650")
        cutoff = days_ago(retention_days)
        try:
            deleted = self.repository.delete_older_than(cutoff)
        except PyMongoError as e:
            logger.error(f"Log cleanup failed: {e}")
            raise OperationError(
                "Failed to clean up old logs",
                {"operation": "cleanup", "retention_days": retention_days},
                error_code="LOG_CLEANUP_FAILED",
            )
        result = LogCleanupResult(deleted_count=deleted, retention_days=retention_days, cutoff_date=cutoff)
        return success_response(
            result.model_dump(),
            f"Deleted {deleted} log entries older than {retention_days} days",
        )

    # ----- reads -----

    def list_logs(self, filters: LogFilters, page: int, per_page: int) -> Dict[str, Any]:
        logger.debug(f"Listing logs page={page} per_page={per_page} filters={filters}")
        validate_action(filters.action)
        validate_date_range(filters.start_date, filters.end_date)
        offset = (page - 1) * per_page

        def _read():
            return (
                self.repository.find_with_filters(filters, per_page, offset),
                self.repository.count_with_filters(filters),
                self.repository.counts_by_action(filters),
            )

        def _demo():
            rows = demo_logs(filters)
            counts: Dict[str, int] = {}
            for row in rows:
                counts[row["action"]] = counts.get(row["action"], 0) + 1
            return rows[offset:offset + per_page], len(rows), dict(sorted(counts.items()))

        (logs, total, counts), fallback = self._read("list_logs", _read, _demo)
        applied = filters.applied()
        statistics = {
            "total_logs": total,
            "logs_returned": len(logs),
            "counts_by_action": counts,
            "applied_filters_count": len(applied),
            "has_filters": bool(applied),
        }
        return paginated_response(
            logs, page, per_page, total,
            "Logs retrieved successfully",
            self._meta(
                fallback,
                filters={**applied, "sort_by": filters.sort_by, "sort_order": filters.sort_order},
                statistics=statistics,
            ),
        )

    def get_log(self, log_id: str) -> Dict[str, Any]:
        log_id = validate_log_id(log_id)

        def _demo():
            return next((dict(row) for row in DEMO_LOGS if row["id"] == log_id), None)

        log, fallback = self._read("get_log", lambda: self.repository.find_by_id(log_id), _demo)
        if not log:
            raise LogNotFoundError(log_id)
        return success_response(log, "Log retrieved successfully", self._meta(fallback))

    def task_logs(self, task_id: int, limit: int = 50) -> Dict[str, Any]:
        limit = min(limit, config.MAX_PAGE_SIZE)
        logs, fallback = self._read(
            "task_logs",
            lambda: self.repository.find_by_task(task_id, limit),
            lambda: demo_logs(LogFilters(task_id=task_id))[:limit],
        )
        return success_response(
            logs,
            f"Logs for task {task_id} retrieved successfully",
            self._meta(fallback, task_id=task_id, count=len(logs), limit=limit),
        )

    def recent(self, limit: int = 50) -> Dict[str, Any]:
        logs, fallback = self._read(
            "recent", lambda: self.repository.find_recent(limit), lambda: demo_logs()[:limit]
        )
        return success_response(logs, "Recent logs retrieved successfully", self._meta(fallback, count=len(logs), limit=limit))

    def _filtered(self, operation: str, filters: LogFilters, limit: int) -> Tuple[List[Dict[str, Any]], bool]:
        return self._read(
            operation,
            lambda: self.repository.find_with_filters(filters, limit, 0),
            lambda: demo_logs(filters)[:limit],
        )

    def by_action(self, action: str, limit: int = 50) -> Dict[str, Any]:
        validate_action(action)
        logs, fallback = self._filtered("by_action", LogFilters(action=action), limit)
        return success_response(
            logs, f"Logs with action '{action}' retrieved successfully",
            self._meta(fallback, action=action, count=len(logs), limit=limit),
        )

    def by_user(self, user_id: int, limit: int = 50) -> Dict[str, Any]:
        logs, fallback = self._filtered("by_user", LogFilters(user_id=user_id), limit)
        return success_response(
            logs, f"Logs for user {user_id} retrieved successfully",
            self._meta(fallback, user_id=user_id, count=len(logs), limit=limit),
        )

    def date_range(self, start_date: datetime, end_date: datetime, limit: int = 1000) -> Dict[str, Any]:
        validate_date_range(start_date, end_date)
        filters = LogFilters(start_date=start_date, end_date=end_date)
        logs, fallback = self._filtered("date_range", filters, limit)
        days_covered = (ensure_utc(end_date).date() - ensure_utc(start_date).date()).days + 1
        return success_response(
            logs, "Logs in date range retrieved successfully",
            self._meta(
                fallback,
                date_range={**filters.applied(), "days_covered": days_covered},
                count=len(logs),
                limit=limit,
            ),
        )

    def stats(self, start_date: Optional[datetime] = None, end_date: Optional[datetime] = None) -> Dict[str, Any]:
        validate_date_range(start_date, end_date)
        filters = LogFilters(start_date=start_date, end_date=end_date)

        def _read():
            return (
                self.repository.count_with_filters(filters),
                self.repository.counts_by_action(filters),
                self.repository.counts_by_day(filters),
            )

        def _demo():
            rows = demo_logs(filters)
            by_action: Dict[str, int] = {}
            by_day: Dict[str, int] = {}
            for row in rows:
                by_action[row["action"]] = by_action.get(row["action"], 0) + 1
                day = row["created_at"].date().isoformat()
                by_day[day] = by_day.get(day, 0) + 1
            return len(rows), dict(sorted(by_action.items())), dict(sorted(by_day.items()))

        (total, by_action, by_day), fallback = self._read("stats", _read, _demo)
        data = {
            "total_logs": total,
            "counts_by_action": by_action,
            "counts_by_day": by_day,
            "date_range": filters.applied(),
        }
        return success_response(data, "Log statistics retrieved successfully", self._meta(fallback))

    def _export_rows(self, filters: LogFilters) -> Tuple[List[Dict[str, Any]], bool]:
        validate_action(filters.action)
        validate_date_range(filters.start_date, filters.end_date)
        return self._filtered("export", filters, MAX_EXPORT_ROWS)

    def export_json(self, filters: LogFilters) -> Dict[str, Any]:
        logs, fallback = self._export_rows(filters)
        return success_response(
            logs, f"Exported {len(logs)} log entries",
            self._meta(fallback, format="json", count=len(logs), filters=filters.applied()),
        )

    def export_csv(self, filters: LogFilters) -> str:
        logs, _ = self._export_rows(filters)
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=CSV_COLUMNS, extrasaction="ignore")
        writer.writeheader()
        for log in logs:
            row = dict(log)
            row["created_at"] = row["created_at"].isoformat() if row.get("created_at") else ""
            row["changes"] = ", ".join(row["changes"]) if row.get("changes") else ""
            writer.writerow(row)
        return buffer.getvalue()
