"""
Concurrency helpers: an advisory keyed lock and a retry loop for
transient database failures.

Both are best-effort. The keyed lock only coordinates requests inside one
process and never queues: a second caller for a held key is rejected.
"""

import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Optional, TypeVar

from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

import config
from errors import LockHeldError, OperationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# MySQL error numbers and PostgreSQL SQLSTATEs worth retrying
TRANSIENT_ERROR_CODES = {
    1205,  # lock wait timeout exceeded
    1213,  # deadlock found when trying to get lock
    2006,  # server has gone away
    2013,  # lost connection during query
    "40001",  # serialization_failure
    "40P01",  # deadlock_detected
    "55P03",  # lock_not_available
    "57P01",  # admin_shutdown
    "08000",  # connection_exception
    "08003",  # connection_does_not_exist
    "08006",  # connection_failure
}

TRANSIENT_MESSAGES = (
    "database is locked",
    "deadlock",
    "lock wait timeout",
    "server has gone away",
    "lost connection",
    "connection reset",
)


class KeyedLock:
    """
    In-process advisory mutex keyed by an operation identifier.

    A marker older than `timeout` seconds is treated as stale (its holder is
    assumed to have died) and is silently reclaimed.
    """

    def __init__(self, timeout: Optional[float] = None, wait: Optional[float] = None, poll_interval: float = 0.05):
        self.timeout = config.LOCK_TIMEOUT_SECONDS if timeout is None else timeout
        self.wait = config.LOCK_WAIT_SECONDS if wait is None else wait
        self.poll_interval = poll_interval
        self._guard = threading.Lock()
        self._held: Dict[str, float] = {}

    def try_acquire(self, key: str) -> bool:
        now = time.monotonic()
        with self._guard:
            acquired_at = self._held.get(key)
            if acquired_at is not None:
                if now - acquired_at < self.timeout:
                    return False
                logger.warning(f"Reclaiming stale lock '{key}' held for {now - acquired_at:.1f}s")
            self._held[key] = now
            return True

    def release(self, key: str) -> None:
        with self._guard:
            self._held.pop(key, None)

    def clear(self) -> None:
        with self._guard:
            self._held.clear()

    def is_held(self, key: str) -> bool:
        with self._guard:
            acquired_at = self._held.get(key)
            return acquired_at is not None and time.monotonic() - acquired_at < self.timeout

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        """
        Hold `key` for the duration of the block.

        Polls for up to `wait` seconds before giving up.

        Raises:
            LockHeldError: if the key is still held by another caller
        """
        deadline = time.monotonic() + self.wait
        while not self.try_acquire(key):
            if time.monotonic() >= deadline:
                logger.info(f"Lock '{key}' is held by another request, rejecting")
                raise LockHeldError(key)
            time.sleep(self.poll_interval)
        logger.debug(f"Acquired lock '{key}'")
        try:
            yield
        finally:
            self.release(key)
            logger.debug(f"Released lock '{key}'")


# Process-wide lock registry for task mutations
task_locks = KeyedLock()


def transient_error_code(exc: BaseException) -> Optional[object]:
    """Extract the driver error code (MySQL errno or PostgreSQL SQLSTATE) if any."""
    orig = getattr(exc, "orig", None)
    if orig is None:
        return None
    sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if sqlstate:
        return str(sqlstate)
    args = getattr(orig, "args", ())
    if args and isinstance(args[0], int):
        return args[0]
    return None


def is_transient_error(exc: BaseException) -> bool:
    if not isinstance(exc, DBAPIError):
        return False
    if exc.connection_invalidated:
        return True
    if transient_error_code(exc) in TRANSIENT_ERROR_CODES:
        return True
    message = str(getattr(exc, "orig", exc)).lower()
    return any(fragment in message for fragment in TRANSIENT_MESSAGES)


def run_with_retry(
    operation: Callable[[], T],
    operation_name: str,
    session: Optional[Session] = None,
    attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run a database operation, retrying transient failures with exponential backoff.

    Args:
        operation: Zero-argument callable performing the work (including commit)
        operation_name: Name used in logs and error details
        session: Session to roll back between attempts
        attempts: Maximum attempts (defaults to DB_RETRY_ATTEMPTS)
        base_delay: First backoff delay in seconds (defaults to DB_RETRY_BASE_DELAY)
        sleep: Sleep function, replaceable in tests

    Returns:
        Whatever the operation returns

    Raises:
        OperationError: when every attempt failed with a transient error
        Exception: any non-transient error, immediately and unchanged
    """
    max_attempts = attempts or config.DB_RETRY_ATTEMPTS
    delay = config.DB_RETRY_BASE_DELAY if base_delay is None else base_delay
    last_error: Optional[BaseException] = None

    for attempt in range(1, max_attempts + 1):
        try:
            return operation()
        except DBAPIError as e:
            if session is not None:
                session.rollback()
            if not is_transient_error(e):
                raise
            last_error = e
            logger.warning(
                f"Transient database error in '{operation_name}' on attempt {attempt}/{max_attempts}: "
                f"code={transient_error_code(e)} error={e.orig}"
            )
            if attempt < max_attempts:
                sleep(delay * (2 ** (attempt - 1)))

    logger.error(f"Database operation '{operation_name}' failed after {max_attempts} attempts")
    raise OperationError(
        f"Database operation '{operation_name}' failed after {max_attempts} attempts",
        {
            "operation": operation_name,
            "attempts": max_attempts,
            "last_error": str(getattr(last_error, "orig", last_error)),
            "error_code": transient_error_code(last_error) if last_error else None,
        },
        error_code="DATABASE_ERROR",
    )
