"""FastAPI dependencies wiring sessions and collections into services."""

import logging
from typing import Optional

from fastapi import Depends, Header
from pymongo.collection import Collection
from sqlalchemy.orm import Session

import config
from database import get_db
from document_store import get_log_collection
from repositories.log_repository import LogRepository
from repositories.task_repository import TaskRepository
from services.log_service import LogService
from services.task_service import TaskService

logger = logging.getLogger(__name__)


def get_log_service(
    collection: Collection = Depends(get_log_collection),
    db: Session = Depends(get_db),
) -> LogService:
    return LogService(LogRepository(collection), fallback_db=db)


def get_task_service(
    db: Session = Depends(get_db),
    log_service: LogService = Depends(get_log_service),
) -> TaskService:
    return TaskService(TaskRepository(db), log_service)


def get_actor_id(x_user_id: Optional[int] = Header(None, gt=0, le=config.MAX_ID)) -> Optional[int]:
    """
    Acting user for audit entries, taken from the X-User-ID header.

    There is no authentication; a missing header means the system user.
    """
    if x_user_id is not None:
        logger.debug(f"Request acting as user {x_user_id}")
    return x_user_id
