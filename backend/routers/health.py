"""Health check endpoints: store reachability, memory usage and uptime."""

import logging
import os
import resource
import sys
import time
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pymongo.collection import Collection
from sqlalchemy.orm import Session

import config
import database
import document_store
from database import get_db
from document_store import get_log_collection
from errors import NotFoundError
from responses import success_response
from time_utils import humanize_seconds

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["health"])

STARTED_AT = time.time()
CONNECTIONS = ("database", "mongodb")


def _rss_bytes() -> Optional[int]:
    try:
        with open("/proc/self/status") as f:
            for line in f:
                if line.startswith("VmRSS:"):
                    return int(line.split()[1]) * 1024
    except OSError:
        return None
    return None


def memory_usage() -> Dict[str, Any]:
    peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # ru_maxrss is bytes on macOS, kilobytes elsewhere
    peak_bytes = peak if sys.platform == "darwin" else peak * 1024
    current = _rss_bytes()
    return {
        "current_bytes": current,
        "current_mb": round(current / 1024 / 1024, 2) if current is not None else None,
        "peak_bytes": peak_bytes,
        "peak_mb": round(peak_bytes / 1024 / 1024, 2),
    }


def uptime() -> Dict[str, Any]:
    seconds = int(time.time() - STARTED_AT)
    return {"seconds": seconds, "human": humanize_seconds(seconds)}


def _check(name: str, db: Session, collection: Collection) -> Dict[str, Any]:
    if name == "database":
        return database.ping(db)
    return document_store.ping(collection)


@router.get("")
def health(db: Session = Depends(get_db), collection: Collection = Depends(get_log_collection)):
    """Overall health: healthy only when every store answers."""
    checks = {name: _check(name, db, collection) for name in CONNECTIONS}
    healthy = all(check["status"] == "healthy" for check in checks.values())
    if not healthy:
        logger.warning(f"Health check degraded: {checks}")

    status = "healthy" if healthy else "degraded"
    data = {
        "status": status,
        "service": config.APP_NAME,
        "version": config.APP_VERSION,
        "environment": config.ENVIRONMENT,
        "checks": checks,
        "memory": memory_usage(),
        "uptime": uptime(),
        "pid": os.getpid(),
    }
    body = success_response(data, f"Service is {status}")
    body["success"] = healthy
    return JSONResponse(status_code=200 if healthy else 503, content=body)


@router.get("/connections/{name}")
def connection_health(
    name: str,
    db: Session = Depends(get_db),
    collection: Collection = Depends(get_log_collection),
):
    if name not in CONNECTIONS:
        raise NotFoundError(
            f"Unknown connection '{name}'",
            {"connection": name, "available_connections": list(CONNECTIONS)},
            error_code="CONNECTION_NOT_FOUND",
        )
    check = _check(name, db, collection)
    healthy = check["status"] == "healthy"
    body = success_response({"connection": name, **check}, f"Connection '{name}' is {check['status']}")
    body["success"] = healthy
    return JSONResponse(status_code=200 if healthy else 503, content=body)


@router.get("/config")
def health_config():
    """Effective configuration with credentials masked."""
    return success_response(config.describe(), "Configuration retrieved successfully")
