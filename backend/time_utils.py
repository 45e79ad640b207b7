"""
Time utilities for the Task Log API.

This module provides a single source of truth for time operations,
ensuring consistency across both stores and preventing clock drift issues.
"""

from datetime import datetime, timezone, timedelta
from typing import Optional


def utc_now() -> datetime:
    """
    Get current UTC time.
    Single source of truth for "now" throughout the application.

    Returns:
        timezone-aware datetime in UTC
    """
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to timezone-aware UTC.

    Naive values are assumed to already be in UTC (SQLite and BSON both
    hand back naive datetimes).
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert a datetime to the naive-UTC form stored in the document store."""
    if value is None:
        return None
    return ensure_utc(value).replace(tzinfo=None)


def is_overdue(due_date: Optional[datetime], status: str) -> bool:
    """
    Check if a task is overdue.

    A task is overdue if it has a due date in the past and is not
    in 'completed' or 'cancelled' status.

    Args:
        due_date: The task's due date
        status: The task's status

    Returns:
        True if task is overdue, False otherwise
    """
    if not due_date or status in ('completed', 'cancelled'):
        return False
    return ensure_utc(due_date) < utc_now()


def days_ago(days: int) -> datetime:
    """Return the UTC instant `days` days before now."""
    return utc_now() - timedelta(days=days)


def humanize_seconds(seconds: int) -> str:
    """
    Render a duration as e.g. "2 days, 3 hours, 1 minute".

    Args:
        seconds: Duration in whole seconds

    Returns:
        Human readable string, "0 seconds" for zero
    """
    units = [("day", 86400), ("hour", 3600), ("minute", 60), ("second", 1)]
    parts = []
    remaining = max(0, int(seconds))
    for unit, size in units:
        count = remaining // size
        if count > 0:
            parts.append(f"{count} {unit}{'s' if count > 1 else ''}")
            remaining %= size
    return ", ".join(parts) if parts else "0 seconds"
