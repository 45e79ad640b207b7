from sqlalchemy import Column, Integer, String, Text, DateTime, Enum, Index, JSON
from sqlalchemy.sql import func
import enum
from database import Base


class TaskStatus(str, enum.Enum):
    pending = "pending"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"


class TaskPriority(str, enum.Enum):
    low = "low"
    medium = "medium"
    high = "high"
    urgent = "urgent"


class LogAction(str, enum.Enum):
    """
    Known audit log actions.

    Note: the document store keeps action as a plain string, so entries
    written by other tools may carry additional detail actions.
    """
    created = "created"
    updated = "updated"
    deleted = "deleted"
    force_deleted = "force_deleted"
    restored = "restored"


class Task(Base):
    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text)
    status = Column(Enum(TaskStatus, name="task_status"), nullable=False, default=TaskStatus.pending, index=True)
    priority = Column(Enum(TaskPriority, name="task_priority"), nullable=False, default=TaskPriority.medium)

    # User references are plain integers; users live outside this service
    assigned_to = Column(Integer, nullable=True, index=True)
    created_by = Column(Integer, nullable=True, index=True)

    due_date = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Soft delete marker: non-null means the task is in the trash
    deleted_at = Column(DateTime(timezone=True), nullable=True, index=True)

    __table_args__ = (
        Index("ix_tasks_status_due_date", "status", "due_date"),
    )

    @property
    def is_trashed(self) -> bool:
        return self.deleted_at is not None


class TaskLogFallback(Base):
    """
    Audit entries that could not be written to the document store.

    Rows keep the full entry in `data` together with the error that sent
    them here, so they can be replayed into the document store later.
    """
    __tablename__ = "task_logs_fallback"

    id = Column(Integer, primary_key=True, index=True)
    task_id = Column(Integer, nullable=False, index=True)
    action = Column(String(100), nullable=False, index=True)
    user_id = Column(Integer, nullable=True)
    user_name = Column(String(255), nullable=True)
    data = Column(JSON, nullable=False)
    description = Column(Text)
    original_error = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
