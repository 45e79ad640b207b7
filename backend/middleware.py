"""HTTP middleware: request logging, per-request timeout and rate limiting."""

import asyncio
import logging
import threading
import time
import uuid
from typing import Callable, Dict, Optional, Tuple

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from errors import AppError, RateLimitError, RequestTimeoutError
from responses import error_response

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def _error_json(exc: AppError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response(exc.error, exc.message, exc.error_code, exc.details),
        headers=exc.headers(),
    )


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every request with its status and duration, and tag it with a request ID."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.perf_counter()
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id

        try:
            response = await call_next(request)
        except Exception:
            elapsed = round((time.perf_counter() - start_time) * 1000, 2)
            logger.exception(f"{request.method} {request.url.path} failed after {elapsed}ms [{request_id}]")
            raise

        elapsed = round((time.perf_counter() - start_time) * 1000, 2)
        logger.info(f"{request.method} {request.url.path} -> {response.status_code} in {elapsed}ms [{request_id}]")
        response.headers["X-Process-Time"] = str(elapsed)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class RequestTimeoutMiddleware(BaseHTTPMiddleware):
    """
    Turn a request that runs longer than `timeout` seconds into a 504.

    The handler itself is not interrupted if it runs in a worker thread; only
    the response is replaced.
    """

    def __init__(self, app, timeout: float):
        super().__init__(app)
        self.timeout = timeout

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await asyncio.wait_for(call_next(request), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(f"{request.method} {request.url.path} exceeded {self.timeout}s")
            return _error_json(
                RequestTimeoutError(
                    f"Request exceeded the {self.timeout:g} second time limit",
                    {"timeout_seconds": self.timeout},
                )
            )


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Fixed one-minute window per client address. Health checks are exempt."""

    def __init__(self, app, limit_per_minute: int, exempt_prefix: str = "/health"):
        super().__init__(app)
        self.limit = limit_per_minute
        self.exempt_prefix = exempt_prefix
        self._lock = threading.Lock()
        self._windows: Dict[str, Tuple[int, int]] = {}
        self._current_window = 0

    def _hit(self, client: str, now: Optional[float] = None) -> Tuple[bool, int]:
        now = time.time() if now is None else now
        window = int(now // 60)
        with self._lock:
            if window != self._current_window:
                # Drop counters left over from earlier windows
                self._windows = {
                    key: value for key, value in self._windows.items() if value[0] == window
                }
                self._current_window = window
            current_window, count = self._windows.get(client, (window, 0))
            if current_window != window:
                count = 0
            count += 1
            self._windows[client] = (window, count)
        retry_after = 60 - int(now % 60)
        return count <= self.limit, retry_after

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path.startswith(self.exempt_prefix):
            return await call_next(request)

        client = request.client.host if request.client else "unknown"
        allowed, retry_after = self._hit(client)
        if not allowed:
            logger.warning(f"Rate limit exceeded for {client} on {request.method} {request.url.path}")
            return _error_json(RateLimitError(self.limit, retry_after))

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        return response
