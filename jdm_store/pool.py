"""
Bounded connection pool for the store file.

At most ``max_connections`` live handles exist at any time. ``acquire()``
hands out an idle handle (validated first), opens a new one while below
capacity, or spin-waits with a fixed poll interval until one is released.
The pool lock only guards list and counter bookkeeping; validation, opening
and closing happen outside it.

Maintenance operations drain the pool with ``close_all()`` and bring it back
with ``initialize()``. ``exclusive()`` keeps two such operations (import,
backup, restore, recovery) from overlapping.
"""

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Any, Iterator, List, Optional, Set

from .config import MAX_CONNECTIONS, POOL_POLL_INTERVAL, HEALTH_CHECK_TIMEOUT
from .db import open_connection, close_connection, apply_pragmas
from .exceptions import (
    StoreError,
    PoolClosedError,
    PoolTimeoutError,
    MaintenanceInProgressError,
)

logger = logging.getLogger(__name__)

# SQLite VM instructions between progress-handler calls during validation
_PROGRESS_STEPS = 1000


@dataclass(frozen=True)
class PoolStats:
    """Point-in-time snapshot of pool counters."""
    max_connections: int
    live_connections: int
    idle_connections: int
    active_connections: int
    waiting_threads: int
    total_acquisitions: int
    total_wait_ms: float
    total_queries: int
    total_query_ms: float
    closed: bool

    @property
    def average_wait_ms(self) -> float:
        return self.total_wait_ms / max(1, self.total_acquisitions)

    @property
    def average_query_ms(self) -> float:
        return self.total_query_ms / max(1, self.total_queries)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "max_connections": self.max_connections,
            "live_connections": self.live_connections,
            "idle_connections": self.idle_connections,
            "active_connections": self.active_connections,
            "waiting_threads": self.waiting_threads,
            "total_acquisitions": self.total_acquisitions,
            "average_wait_ms": round(self.average_wait_ms, 3),
            "total_queries": self.total_queries,
            "average_query_ms": round(self.average_query_ms, 3),
            "closed": self.closed,
        }


class ConnectionPool:
    """
    Fixed-capacity pool of sqlite3 handles bound to one store file.

    Usage:
        >>> pool = ConnectionPool(db_path)
        >>> pool.initialize()
        >>> with pool.connection() as conn:
        ...     conn.execute("SELECT COUNT(*) FROM patients").fetchone()
        >>> pool.close_all()
    """

    def __init__(
        self,
        db_path: Path,
        max_connections: int = MAX_CONNECTIONS,
        poll_interval: float = POOL_POLL_INTERVAL,
        validation_timeout: float = HEALTH_CHECK_TIMEOUT,
        connect: Callable[[Path], sqlite3.Connection] = open_connection,
    ):
        if max_connections < 1:
            raise ValueError("max_connections must be >= 1")
        if poll_interval <= 0:
            raise ValueError("poll_interval must be > 0")

        self.db_path = Path(db_path)
        self.max_connections = max_connections
        self.poll_interval = poll_interval
        self.validation_timeout = validation_timeout
        self._connect = connect

        self._lock = threading.Lock()
        self._idle: List[sqlite3.Connection] = []
        self._leased: Set[sqlite3.Connection] = set()
        self._retired: Set[sqlite3.Connection] = set()
        self._live = 0
        self._closed = True

        self._waiting = 0
        self._total_acquisitions = 0
        self._total_wait = 0.0
        self._total_queries = 0
        self._total_query_time = 0.0

        self._session_pragmas: Dict[str, Any] = {}

        self._exclusive_lock = threading.Lock()
        self._exclusive_owner: Optional[str] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    def initialize(self) -> None:
        """Open the pool and pre-open handles up to capacity. Idempotent."""
        with self._lock:
            if not self._closed:
                return
            self._closed = False

        opened = 0
        while True:
            with self._lock:
                if self._closed or self._live >= self.max_connections:
                    break
                self._live += 1
            conn = self._open_reserved()
            with self._lock:
                if self._closed:
                    self._live -= 1
                    to_close = conn
                else:
                    self._idle.append(conn)
                    to_close = None
            if to_close is not None:
                close_connection(to_close)
                break
            opened += 1

        logger.info("Connection pool initialized for %s (%d handles)", self.db_path, opened)

    def close_all(self) -> None:
        """
        Close idle handles and mark the pool closed.

        Handles still leased are retired: they are closed when released.
        """
        with self._lock:
            self._closed = True
            idle = self._idle
            self._idle = []
            self._live -= len(idle)
            self._retired.update(self._leased)
            retired = len(self._leased)
            self._leased.clear()

        for conn in idle:
            close_connection(conn)
        logger.info("Connection pool closed (%d idle closed, %d leased retired)", len(idle), retired)

    def reopen(self) -> None:
        self.close_all()
        self.initialize()

    # ------------------------------------------------------------------
    # Acquire / release
    # ------------------------------------------------------------------

    def acquire(self, timeout: Optional[float] = None) -> sqlite3.Connection:
        """
        Lease a handle, blocking while the pool is exhausted.

        Args:
            timeout: Seconds to wait for a free handle (None = forever)

        Raises:
            PoolClosedError: Pool is closed
            PoolTimeoutError: No handle became free within *timeout*
            StoreError: A new handle could not be opened
        """
        started = time.monotonic()
        deadline = None if timeout is None else started + timeout

        with self._lock:
            self._waiting += 1
        try:
            while True:
                conn = None
                reserved = False
                with self._lock:
                    if self._closed:
                        raise PoolClosedError(f"Connection pool for {self.db_path} is closed")
                    if self._idle:
                        conn = self._idle.pop(0)
                        self._leased.add(conn)
                    elif self._live < self.max_connections:
                        self._live += 1
                        reserved = True

                if conn is not None:
                    if self._validate(conn):
                        break
                    conn = self._replace(conn)
                    break

                if reserved:
                    conn = self._lease_new()
                    break

                if deadline is not None and time.monotonic() >= deadline:
                    raise PoolTimeoutError(
                        f"No connection available within {timeout:.2f}s "
                        f"({self.max_connections} in use)"
                    )
                time.sleep(self.poll_interval)
        finally:
            with self._lock:
                self._waiting -= 1

        waited = time.monotonic() - started
        with self._lock:
            self._total_acquisitions += 1
            self._total_wait += waited
        return conn

    def release(self, conn: Optional[sqlite3.Connection]) -> None:
        """
        Return a handle to the idle list.

        Releasing a handle that is already idle (or unknown) is a no-op.
        Any transaction left open is rolled back first.
        """
        if conn is None:
            return

        with self._lock:
            if conn in self._retired:
                self._retired.discard(conn)
                self._live -= 1
                retired = True
            elif conn in self._leased:
                self._leased.discard(conn)
                retired = False
            else:
                return

        if retired:
            close_connection(conn)
            return

        try:
            if conn.in_transaction:
                logger.warning("Rolling back transaction left open on released connection")
                conn.rollback()
        except sqlite3.Error as e:
            logger.warning("Discarding connection that failed to roll back: %s", e)
            with self._lock:
                self._live -= 1
            close_connection(conn)
            return

        with self._lock:
            if self._closed:
                self._live -= 1
                stale = True
            else:
                self._idle.append(conn)
                stale = False
        if stale:
            close_connection(conn)

    @contextmanager
    def connection(self, timeout: Optional[float] = None) -> Iterator[sqlite3.Connection]:
        """Acquire a handle for the duration of the block."""
        conn = self.acquire(timeout)
        try:
            yield conn
        finally:
            self.release(conn)

    # ------------------------------------------------------------------
    # Handle management (called without the pool lock held)
    # ------------------------------------------------------------------

    def _open_reserved(self) -> sqlite3.Connection:
        """Open a handle for a slot already counted in ``_live``."""
        try:
            conn = self._connect(self.db_path)
            if self._session_pragmas:
                apply_pragmas(conn, self._session_pragmas)
            return conn
        except (sqlite3.Error, OSError) as e:
            with self._lock:
                self._live -= 1
            logger.error("Failed to open connection to %s: %s", self.db_path, e)
            raise StoreError(f"Cannot open database {self.db_path}: {e}") from e

    def _lease_new(self) -> sqlite3.Connection:
        conn = self._open_reserved()
        with self._lock:
            if self._closed:
                self._live -= 1
                closed = True
            else:
                self._leased.add(conn)
                closed = False
        if closed:
            close_connection(conn)
            raise PoolClosedError(f"Connection pool for {self.db_path} is closed")
        return conn

    def _replace(self, dead: sqlite3.Connection) -> sqlite3.Connection:
        """Swap an unhealthy leased handle for a fresh one in the same slot."""
        with self._lock:
            self._leased.discard(dead)
            self._retired.discard(dead)
        close_connection(dead)
        return self._lease_new()

    def _validate(self, conn: sqlite3.Connection) -> bool:
        """Run ``SELECT 1`` with a deadline; any sqlite3 error marks the handle dead."""
        deadline = time.monotonic() + self.validation_timeout

        def _abort_when_late() -> int:
            return 1 if time.monotonic() > deadline else 0

        try:
            conn.set_progress_handler(_abort_when_late, _PROGRESS_STEPS)
            try:
                row = conn.execute("SELECT 1").fetchone()
            finally:
                conn.set_progress_handler(None, 0)
        except sqlite3.Error as e:
            logger.warning("Connection failed validation, replacing it: %s", e)
            return False
        return row is not None and row[0] == 1

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def record_query(self, elapsed_seconds: float) -> None:
        with self._lock:
            self._total_queries += 1
            self._total_query_time += elapsed_seconds

    def stats(self) -> PoolStats:
        with self._lock:
            return PoolStats(
                max_connections=self.max_connections,
                live_connections=self._live,
                idle_connections=len(self._idle),
                active_connections=len(self._leased),
                waiting_threads=self._waiting,
                total_acquisitions=self._total_acquisitions,
                total_wait_ms=self._total_wait * 1000.0,
                total_queries=self._total_queries,
                total_query_ms=self._total_query_time * 1000.0,
                closed=self._closed,
            )

    # ------------------------------------------------------------------
    # Session configuration / exclusivity
    # ------------------------------------------------------------------

    def apply_session_pragmas(self, pragmas: Dict[str, Any]) -> None:
        """
        Remember per-connection PRAGMAs and apply them to idle handles.

        New handles get them on open; handles currently leased are untouched.
        """
        with self._lock:
            self._session_pragmas.update(pragmas)
            handles = self._idle
            self._idle = []
            self._leased.update(handles)

        try:
            for conn in handles:
                apply_pragmas(conn, pragmas)
        finally:
            for conn in handles:
                self.release(conn)

    @contextmanager
    def exclusive(self, operation: str) -> Iterator[None]:
        """
        Guard a maintenance operation against concurrent ones.

        Raises:
            MaintenanceInProgressError: Another exclusive operation is running
        """
        if not self._exclusive_lock.acquire(blocking=False):
            raise MaintenanceInProgressError(
                f"Cannot start {operation}: {self._exclusive_owner or 'another operation'} is in progress"
            )
        self._exclusive_owner = operation
        try:
            yield
        finally:
            self._exclusive_owner = None
            self._exclusive_lock.release()

    @property
    def exclusive_operation(self) -> Optional[str]:
        return self._exclusive_owner
