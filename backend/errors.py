"""
Application error taxonomy and the FastAPI handlers that render it.

Every error raised by services carries its HTTP status, a machine-readable
error code and optional details, and is rendered through the standard
response envelope (see responses.py).
"""

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from responses import error_response

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base class for errors that map to a structured API response."""

    status_code = 500
    error = "Internal Server Error"
    error_code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if error_code:
            self.error_code = error_code

    def headers(self) -> Optional[Dict[str, str]]:
        return None


class BadRequestError(AppError):
    status_code = 400
    error = "Bad Request"
    error_code = "INVALID_PARAMETERS"


class ValidationError(AppError):
    """Malformed, missing or out-of-range input."""

    status_code = 422
    error = "Validation Error"
    error_code = "VALIDATION_FAILED"

    @classmethod
    def for_field(cls, field: str, message: str, **extra: Any) -> "ValidationError":
        details: Dict[str, Any] = {"errors": {field: [message]}, "failed_fields": [field]}
        details.update(extra)
        return cls(message, details)


class NotFoundError(AppError):
    status_code = 404
    error = "Not Found"
    error_code = "NOT_FOUND"


class TaskNotFoundError(NotFoundError):
    error_code = "TASK_NOT_FOUND"

    def __init__(self, task_id: int, message: Optional[str] = None):
        super().__init__(message or f"Task {task_id} not found", {"task_id": task_id})
        self.task_id = task_id


class LogNotFoundError(NotFoundError):
    error_code = "LOG_NOT_FOUND"

    def __init__(self, log_id: str):
        super().__init__(f"Log {log_id} not found", {"log_id": log_id})
        self.log_id = log_id


class ConflictError(AppError):
    status_code = 409
    error = "Conflict"
    error_code = "CONFLICT"


class TaskRestoreError(ConflictError):
    """Restore is not applicable to the task in its current state."""

    error_code = "RESTORE_NOT_APPLICABLE"

    SUGGESTIONS = {
        "not_found": [
            "Task does not exist. Check the task ID.",
            "Use GET /tasks/trashed to see available trashed tasks.",
        ],
        "already_restored": [
            "Task is already active and does not need to be restored.",
            "Use GET /tasks/{id} to verify task status.",
        ],
    }

    def __init__(self, task_id: int, reason: str):
        if reason == "not_found":
            message = f"Task {task_id} does not exist and cannot be restored"
        else:
            message = f"Task {task_id} is not in trash and cannot be restored"
        super().__init__(
            message,
            {
                "operation": "restore",
                "task_id": task_id,
                "reason": reason,
                "suggestions": self.SUGGESTIONS.get(reason, []),
            },
        )
        self.task_id = task_id
        self.reason = reason


class LockHeldError(ConflictError):
    """Another request currently holds the advisory lock for this key."""

    error_code = "OPERATION_IN_PROGRESS"

    def __init__(self, key: str):
        super().__init__(
            "Another operation on this resource is in progress. Please retry shortly.",
            {"lock_key": key},
        )
        self.key = key


class RateLimitError(AppError):
    status_code = 429
    error = "Too Many Requests"
    error_code = "RATE_LIMIT_EXCEEDED"

    def __init__(self, limit: int, retry_after: int):
        super().__init__(
            f"Rate limit of {limit} requests per minute exceeded",
            {"limit": limit, "retry_after_seconds": retry_after},
        )
        self.retry_after = retry_after

    def headers(self) -> Optional[Dict[str, str]]:
        return {"Retry-After": str(self.retry_after)}


class OperationError(AppError):
    """Internal failure during an otherwise valid request."""

    status_code = 500
    error = "Operation Failed"
    error_code = "OPERATION_FAILED"


class RequestTimeoutError(AppError):
    status_code = 504
    error = "Request Timeout"
    error_code = "REQUEST_TIMEOUT"


def _is_parameter_location(loc: Any) -> bool:
    return bool(loc) and loc[0] in ("query", "path", "header")


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.error_code}: {exc.message} {exc.details}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.error_code}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response(exc.error, exc.message, exc.error_code, exc.details),
        headers=exc.headers(),
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """
    Render pydantic/FastAPI validation failures.

    Malformed query/path parameters are a 400; invalid bodies are a 422.
    """
    field_errors: Dict[str, list] = {}
    for err in exc.errors():
        loc = err.get("loc", ())
        field = ".".join(str(part) for part in loc[1:]) or str(loc[0] if loc else "request")
        field_errors.setdefault(field, []).append(err.get("msg", "Invalid value"))

    parameter_only = all(_is_parameter_location(err.get("loc", ())) for err in exc.errors())
    if parameter_only:
        status_code, error, code, message = 400, "Bad Request", "INVALID_PARAMETERS", "Invalid request parameters"
    else:
        status_code, error, code, message = 422, "Validation Error", "VALIDATION_FAILED", "The given data was invalid"

    logger.info(f"{request.method} {request.url.path} validation failed: {field_errors}")
    return JSONResponse(
        status_code=status_code,
        content=error_response(
            error,
            message,
            code,
            {"errors": field_errors, "failed_fields": list(field_errors.keys()), "error_count": len(field_errors)},
        ),
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == 404:
        code, error = "ROUTE_NOT_FOUND", "Not Found"
    elif exc.status_code == 405:
        code, error = "METHOD_NOT_ALLOWED", "Method Not Allowed"
    else:
        code, error = "HTTP_ERROR", "HTTP Error"
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response(error, str(exc.detail), code),
        headers=getattr(exc, "headers", None),
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content=error_response(
            "Internal Server Error",
            "An error occurred while processing your request",
            "INTERNAL_ERROR",
        ),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
