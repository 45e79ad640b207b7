"""
Task status state machine.

Statuses move forward along pending -> in_progress -> completed. A task can be
cancelled while pending or in progress, and a cancelled task can be reopened
to pending. Completed is terminal.

completed_at is coupled to status in both directions: it is set exactly when
status is completed.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional, Union

from errors import ValidationError
from models import TaskStatus
from time_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    TaskStatus.pending: {TaskStatus.in_progress, TaskStatus.completed, TaskStatus.cancelled},
    TaskStatus.in_progress: {TaskStatus.completed, TaskStatus.cancelled},
    TaskStatus.completed: set(),
    TaskStatus.cancelled: {TaskStatus.pending},
}


def _as_status(value: Union[str, TaskStatus]) -> TaskStatus:
    if isinstance(value, TaskStatus):
        return value
    try:
        return TaskStatus(getattr(value, "value", value))
    except ValueError:
        raise ValidationError.for_field(
            "status",
            f"Invalid status '{value}'",
            valid_statuses=[s.value for s in TaskStatus],
        )


def can_transition(current: Union[str, TaskStatus], target: Union[str, TaskStatus]) -> bool:
    current_status = _as_status(current)
    target_status = _as_status(target)
    if current_status == target_status:
        return True
    return target_status in ALLOWED_TRANSITIONS[current_status]


def check_transition(current: Union[str, TaskStatus], target: Union[str, TaskStatus]) -> None:
    """
    Reject a status change that the state machine does not allow.

    Args:
        current: Status the task has now
        target: Requested status

    Raises:
        ValidationError: naming the offending from/to pair
    """
    current_status = _as_status(current)
    target_status = _as_status(target)
    if can_transition(current_status, target_status):
        return

    allowed = sorted(s.value for s in ALLOWED_TRANSITIONS[current_status])
    logger.info(f"Rejected status transition {current_status.value} -> {target_status.value}")
    raise ValidationError(
        f"Invalid status transition from '{current_status.value}' to '{target_status.value}'",
        {
            "errors": {"status": [f"Cannot change status from {current_status.value} to {target_status.value}"]},
            "failed_fields": ["status"],
            "from": current_status.value,
            "to": target_status.value,
            "allowed_transitions": allowed,
        },
        error_code="INVALID_STATUS_TRANSITION",
    )


def resolve_completion(
    current_status: Union[str, TaskStatus],
    current_completed_at: Optional[datetime],
    changes: Dict[str, Any],
) -> Dict[str, Any]:
    """
    Validate a status change and fill in the coupled completed_at value.

    Args:
        current_status: Status before the change (pending for new tasks)
        current_completed_at: completed_at before the change
        changes: Fields being written; may contain "status" and/or "completed_at"

    Returns:
        A copy of changes with status and completed_at made consistent

    Raises:
        ValidationError: on an illegal transition, a future completed_at, a
            completed_at supplied for a task that is not completed, or a null
            completed_at for a task that stays completed
    """
    resolved = dict(changes)
    target = _as_status(resolved.get("status", current_status))
    check_transition(current_status, target)

    supplied_completed_at = "completed_at" in resolved
    completed_at = ensure_utc(resolved.get("completed_at")) if supplied_completed_at else ensure_utc(current_completed_at)

    if target == TaskStatus.completed:
        if supplied_completed_at and resolved.get("completed_at") is None:
            raise ValidationError.for_field(
                "completed_at",
                "completed_at cannot be cleared while status is completed",
            )
        if completed_at is None:
            completed_at = utc_now()
        elif completed_at > utc_now():
            raise ValidationError.for_field("completed_at", "completed_at cannot be in the future")
        if supplied_completed_at or "status" in resolved or current_completed_at is None:
            resolved["completed_at"] = completed_at
    else:
        if supplied_completed_at and resolved.get("completed_at") is not None:
            raise ValidationError.for_field(
                "completed_at",
                "completed_at can only be set when status is completed",
            )
        if current_completed_at is not None or supplied_completed_at:
            resolved["completed_at"] = None

    if "status" in resolved:
        resolved["status"] = target
    return resolved
