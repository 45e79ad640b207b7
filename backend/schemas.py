from pydantic import BaseModel, Field, field_validator, computed_field
from datetime import datetime, timedelta
from typing import Annotated, Optional, List, Any, Dict
from enum import Enum

from config import MAX_ID
from time_utils import ensure_utc, utc_now, is_overdue


class TaskStatus(str, Enum):
    pending = "pending"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"


class TaskPriority(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"
    urgent = "urgent"


TaskId = Annotated[int, Field(gt=0, le=MAX_ID)]

MAX_DUE_DATE_YEARS = 10


def validate_due_date(value: Optional[datetime]) -> Optional[datetime]:
    """Due dates must lie in the future and no more than 10 years ahead."""
    if value is None:
        return None
    value = ensure_utc(value)
    now = utc_now()
    if value <= now:
        raise ValueError("due_date must be a date in the future")
    if value > now + timedelta(days=365 * MAX_DUE_DATE_YEARS + MAX_DUE_DATE_YEARS // 4):
        raise ValueError(f"due_date cannot be more than {MAX_DUE_DATE_YEARS} years in the future")
    return value


def _clean_title(value: Optional[str]) -> str:
    if value is None:
        raise ValueError("title cannot be null")
    if not isinstance(value, str):
        return value
    value = value.strip()
    if not value:
        raise ValueError("title cannot be empty or whitespace only")
    return value


# Task schemas
class TaskBase(BaseModel):
    title: str = Field(..., max_length=255)
    description: Optional[str] = Field(None, max_length=1000)
    status: TaskStatus = TaskStatus.pending
    priority: TaskPriority = TaskPriority.medium
    assigned_to: Optional[int] = Field(None, gt=0, le=MAX_ID, description="User ID (must be positive)")
    due_date: Optional[datetime] = None


class TaskCreate(TaskBase):
    created_by: Optional[int] = Field(None, gt=0, le=MAX_ID, description="User ID (must be positive)")

    @field_validator("title", mode="before")
    @classmethod
    def title_not_blank(cls, v):
        return _clean_title(v)

    @field_validator("due_date")
    @classmethod
    def due_date_in_range(cls, v):
        return validate_due_date(v)


class TaskUpdate(BaseModel):
    title: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = Field(None, max_length=1000)
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    assigned_to: Optional[int] = Field(None, gt=0, le=MAX_ID, description="User ID (must be positive, null to unassign)")
    due_date: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_validator("title", mode="before")
    @classmethod
    def title_not_blank(cls, v):
        return _clean_title(v)

    @field_validator("status", "priority")
    @classmethod
    def not_null(cls, v):
        if v is None:
            raise ValueError("field cannot be null")
        return v

    @field_validator("due_date")
    @classmethod
    def due_date_in_range(cls, v):
        return validate_due_date(v)


class AssignTask(BaseModel):
    assigned_to: int = Field(..., gt=0, le=MAX_ID, description="User ID to assign the task to")


class Task(BaseModel):
    id: int
    title: str
    description: Optional[str] = None
    status: TaskStatus
    priority: TaskPriority
    assigned_to: Optional[int] = None
    created_by: Optional[int] = None
    due_date: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @field_validator("due_date", "completed_at", "created_at", "updated_at", "deleted_at")
    @classmethod
    def as_utc(cls, v):
        return ensure_utc(v)

    @computed_field
    @property
    def is_overdue(self) -> bool:
        return is_overdue(self.due_date, self.status.value)


class TaskStats(BaseModel):
    total: int
    pending: int
    in_progress: int
    completed: int
    cancelled: int
    overdue: int
    trashed: int


# Bulk operation schemas
class BulkOperationError(BaseModel):
    index: Optional[int] = None
    task_id: Optional[int] = None
    error: str
    error_code: str  # NOT_FOUND, VALIDATION_FAILED, INVALID_STATUS_TRANSITION, etc.


class BulkOperationResult(BaseModel):
    success: bool
    processed_count: int = 0
    failed_count: int = 0
    task_ids: List[int] = []
    errors: List[BulkOperationError] = []


class BulkTaskCreate(BaseModel):
    # Items are validated one by one so a bad element does not reject the batch
    tasks: List[Dict[str, Any]]


class BulkTaskUpdate(BaseModel):
    task_ids: List[TaskId]
    updates: TaskUpdate


class BulkTaskDelete(BaseModel):
    task_ids: List[TaskId]
    force: bool = False


class LogCleanupResult(BaseModel):
    deleted_count: int
    retention_days: int
    cutoff_date: datetime
