"""Audit log endpoints. Static paths are declared before /logs/{log_id}."""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Path, Query
from fastapi.responses import Response

import config
from dependencies import get_log_service
from repositories.log_repository import LogFilters
from services.log_service import LogService
from time_utils import utc_now

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/logs", tags=["logs"])

LOG_SORT_PATTERN = "^(created_at|action|task_id|user_id)$"
SORT_ORDER_PATTERN = "^(asc|desc)$"


@router.get("")
def list_logs(
    log_id: Optional[str] = Query(None, alias="id", description="Fetch a single log entry by ID"),
    action: Optional[str] = Query(None),
    task_id: Optional[int] = Query(None, gt=0, le=config.MAX_ID),
    user_id: Optional[int] = Query(None, ge=0, le=config.MAX_ID),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    sort_by: str = Query("created_at", pattern=LOG_SORT_PATTERN),
    sort_order: str = Query("desc", pattern=SORT_ORDER_PATTERN),
    page: int = Query(1, ge=1),
    limit: int = Query(config.DEFAULT_PAGE_SIZE, ge=1, le=config.MAX_PAGE_SIZE),
    service: LogService = Depends(get_log_service),
):
    """
    List audit entries with filters, pagination and summary statistics.

    `?id=` short-circuits to a single-entry lookup.
    """
    if log_id is not None:
        return service.get_log(log_id)
    filters = LogFilters(
        action=action,
        task_id=task_id,
        user_id=user_id,
        start_date=start_date,
        end_date=end_date,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return service.list_logs(filters, page, limit)


@router.get("/stats")
def log_stats(
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    service: LogService = Depends(get_log_service),
):
    return service.stats(start_date, end_date)


@router.get("/recent")
def recent_logs(
    limit: int = Query(config.DEFAULT_PAGE_SIZE, ge=1, le=config.MAX_PAGE_SIZE),
    service: LogService = Depends(get_log_service),
):
    return service.recent(limit)


@router.get("/date-range")
def logs_in_date_range(
    start_date: datetime = Query(...),
    end_date: datetime = Query(...),
    limit: int = Query(config.MAX_PAGE_SIZE, ge=1, le=config.MAX_PAGE_SIZE),
    service: LogService = Depends(get_log_service),
):
    return service.date_range(start_date, end_date, limit)


@router.get("/export")
def export_logs(
    export_format: str = Query("json", alias="format", pattern="^(json|csv)$"),
    action: Optional[str] = Query(None),
    task_id: Optional[int] = Query(None, gt=0, le=config.MAX_ID),
    user_id: Optional[int] = Query(None, ge=0, le=config.MAX_ID),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    service: LogService = Depends(get_log_service),
):
    filters = LogFilters(action=action, task_id=task_id, user_id=user_id, start_date=start_date, end_date=end_date)
    if export_format == "csv":
        filename = f"task_logs_{utc_now().strftime('%Y%m%d_%H%M%S')}.csv"
        return Response(
            content=service.export_csv(filters),
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )
    return service.export_json(filters)


@router.delete("/cleanup")
def cleanup_logs(
    retention_days: int = Query(config.LOG_RETENTION_DAYS, ge=1, le=3650),
    service: LogService = Depends(get_log_service),
):
    """Delete entries older than the retention window."""
    logger.info(f"Log cleanup requested with retention_days={retention_days}")
    return service.cleanup(retention_days)


@router.get("/tasks/{task_id}")
def task_logs(
    task_id: int = Path(..., gt=0, le=config.MAX_ID),
    limit: int = Query(config.DEFAULT_PAGE_SIZE, ge=1, le=config.MAX_PAGE_SIZE),
    service: LogService = Depends(get_log_service),
):
    """All entries for one task, newest first."""
    return service.task_logs(task_id, limit)


@router.get("/actions/{action}")
def logs_by_action(
    action: str,
    limit: int = Query(config.DEFAULT_PAGE_SIZE, ge=1, le=config.MAX_PAGE_SIZE),
    service: LogService = Depends(get_log_service),
):
    return service.by_action(action, limit)


@router.get("/users/{user_id}")
def logs_by_user(
    user_id: int = Path(..., ge=0, le=config.MAX_ID),
    limit: int = Query(config.DEFAULT_PAGE_SIZE, ge=1, le=config.MAX_PAGE_SIZE),
    service: LogService = Depends(get_log_service),
):
    return service.by_user(user_id, limit)


@router.get("/{log_id}")
def get_log(log_id: str, service: LogService = Depends(get_log_service)):
    return service.get_log(log_id)
