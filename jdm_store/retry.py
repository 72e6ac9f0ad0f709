"""
Retry wrapper for single-row mutations.

Only transient failures (lock contention, busy store) are retried; anything
else propagates on the first attempt.
"""

import logging
import sqlite3
import time
from typing import Callable, TypeVar

from .config import MAX_RETRIES, RETRY_DELAY
from .db import transaction
from .exceptions import StoreBusyError
from .pool import ConnectionPool

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient_error(exc: BaseException) -> bool:
    """True for OperationalErrors caused by lock contention."""
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    message = str(exc).lower()
    return "locked" in message or "busy" in message


class RetryExecutor:
    """
    Runs one mutating operation per call with bounded retries.

    Each attempt leases a handle, runs ``operation(cursor)`` inside a
    ``BEGIN IMMEDIATE`` transaction and commits. The elapsed time of a
    successful attempt is added to the pool's query counters.

    Usage:
        >>> executor = RetryExecutor(pool)
        >>> executor.execute(lambda cur: cur.execute(
        ...     "INSERT INTO patients VALUES (?, ?)", ("P1", "Alice")))
    """

    def __init__(
        self,
        pool: ConnectionPool,
        max_attempts: int = MAX_RETRIES,
        delay: float = RETRY_DELAY,
        is_retriable: Callable[[BaseException], bool] = is_transient_error,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if delay < 0:
            raise ValueError("delay cannot be negative")
        self._pool = pool
        self.max_attempts = max_attempts
        self.delay = delay
        self._is_retriable = is_retriable
        self._sleep = sleep

    def execute(self, operation: Callable[[sqlite3.Cursor], T]) -> T:
        """
        Run *operation* with retries on transient failures.

        Returns:
            Whatever *operation* returns

        Raises:
            StoreBusyError: Every attempt failed with a transient error
            Exception: First non-transient failure, unchanged
        """
        last_exception = None

        for attempt in range(1, self.max_attempts + 1):
            started = time.perf_counter()
            try:
                with self._pool.connection() as conn:
                    with transaction(conn, "IMMEDIATE") as cur:
                        result = operation(cur)
            except Exception as e:
                if not self._is_retriable(e):
                    raise
                last_exception = e
                if attempt < self.max_attempts:
                    logger.warning(
                        "Store busy, retrying in %.1fs (attempt %d/%d): %s",
                        self.delay, attempt, self.max_attempts, e,
                    )
                    self._sleep(self.delay)
                continue

            self._pool.record_query(time.perf_counter() - started)
            return result

        logger.error("Store still busy after %d attempts: %s", self.max_attempts, last_exception)
        raise StoreBusyError(
            f"Store busy after {self.max_attempts} attempts. "
            f"Close other connections and retry. Original error: {last_exception}"
        ) from last_exception
