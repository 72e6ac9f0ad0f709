"""
Maintenance and recovery.

Backup rotation, restore, export, integrity verification, corruption
recovery, lock waiting, tuning and statistics.

Backup, restore and recovery need the store file to themselves: they run
under ``ConnectionPool.exclusive()``, close every pooled handle, work on the
file, then reinitialize the pool (also when they fail).
"""

import logging
import shutil
import sqlite3
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Any, List, Optional

from .config import (
    BACKUP_PREFIX,
    MAX_BACKUPS,
    POOL_POLL_INTERVAL,
    PRAGMA_CONFIG,
    TUNING_PRAGMAS,
    TUNING_PAGE_SIZE,
)
from .db import SchemaManager, integrity_check, get_row_counts, apply_pragmas
from .exceptions import (
    BackupError,
    RestoreError,
    RecoveryError,
    LockTimeoutError,
    PoolTimeoutError,
)
from .pool import ConnectionPool
from .retry import is_transient_error
from .utils.dates import BACKUP_TIMESTAMP_FORMAT

logger = logging.getLogger(__name__)

SIDECAR_SUFFIXES = ("-wal", "-shm")

# Cheapest statement that still needs a shared lock on the file
_LOCK_PROBE = "SELECT COUNT(*) FROM sqlite_master"


def _sidecar(path: Path, suffix: str) -> Path:
    return path.with_name(path.name + suffix)


class MaintenanceManager:
    """
    Maintenance operations on the store file behind *pool*.

    Args:
        pool: Pool owning every handle on the store
        reinitialize: Called after the pool was drained (defaults to
            ``pool.initialize``); the store facade passes a callable that
            also brings the schema up to date
        backup_dir: Directory receiving ``<prefix><yyyyMMdd_HHmmss>.db``
        backup_prefix: Backup file name prefix
        max_backups: Backups kept after rotation
        clock: Source of the backup timestamp
    """

    def __init__(
        self,
        pool: ConnectionPool,
        backup_dir: Path,
        reinitialize: Optional[Callable[[], None]] = None,
        backup_prefix: str = BACKUP_PREFIX,
        max_backups: int = MAX_BACKUPS,
        clock: Callable[[], datetime] = datetime.now,
        poll_interval: float = POOL_POLL_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
        schema: Optional[SchemaManager] = None,
    ):
        if max_backups < 1:
            raise ValueError("max_backups must be >= 1")
        self._pool = pool
        self._reinitialize = reinitialize or pool.initialize
        self.backup_dir = Path(backup_dir)
        self.backup_prefix = backup_prefix
        self.max_backups = max_backups
        self._clock = clock
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._schema = schema or SchemaManager()

    @property
    def db_path(self) -> Path:
        return self._pool.db_path

    def _reinitialize_after(self, operation: str, failed: bool) -> None:
        """Bring the pool back; if the operation already failed, keep its error."""
        try:
            self._reinitialize()
        except Exception as e:
            if not failed:
                raise
            logger.error("Pool reinitialization after failed %s also failed: %s", operation, e)

    # ============================================================
    # Backup / Restore
    # ============================================================

    def create_backup(self) -> Path:
        """
        Copy the store file to a timestamped backup and rotate old backups.

        Returns:
            Path of the new backup

        Raises:
            MaintenanceInProgressError: Another exclusive operation is running
            BackupError: Copy failed (the pool is reinitialized regardless)
        """
        with self._pool.exclusive("backup"):
            return self._create_backup()

    def _create_backup(self) -> Path:
        failed = True
        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            self._pool.close_all()

            if not self.db_path.exists():
                raise BackupError(f"Database file not found: {self.db_path}")

            timestamp = self._clock().strftime(BACKUP_TIMESTAMP_FORMAT)
            backup_path = self.backup_dir / f"{self.backup_prefix}{timestamp}.db"
            counter = 1
            while backup_path.exists():
                backup_path = self.backup_dir / f"{self.backup_prefix}{timestamp}_{counter}.db"
                counter += 1

            shutil.copy2(self.db_path, backup_path)
            wal = _sidecar(self.db_path, "-wal")
            if wal.exists():
                shutil.copy2(wal, _sidecar(backup_path, "-wal"))

            logger.info("Database backup created: %s", backup_path)
            self.cleanup_old_backups()
            failed = False
            return backup_path

        except OSError as e:
            logger.error("Backup failed: %s", e)
            raise BackupError(f"Failed to create backup: {e}") from e

        finally:
            self._reinitialize_after("backup", failed)

    def list_backups(self) -> List[Path]:
        """Backups in the backup directory, newest name first."""
        if not self.backup_dir.exists():
            return []
        return sorted(self.backup_dir.glob(f"{self.backup_prefix}*.db"), key=lambda p: p.name, reverse=True)

    def cleanup_old_backups(self) -> int:
        """
        Delete backups beyond ``max_backups`` (oldest names first).

        Returns:
            Number of backups deleted
        """
        deleted = 0
        for old_backup in self.list_backups()[self.max_backups:]:
            try:
                old_backup.unlink()
                for suffix in SIDECAR_SUFFIXES:
                    sidecar = _sidecar(old_backup, suffix)
                    if sidecar.exists():
                        sidecar.unlink()
                deleted += 1
                logger.info("Deleted old backup: %s", old_backup.name)
            except OSError as e:
                logger.warning("Failed to delete %s: %s", old_backup.name, e)
        return deleted

    def restore_from_backup(self, backup_path: Path) -> None:
        """
        Overwrite the store file with *backup_path*.

        Raises:
            ValueError: Path is None or the file does not exist (pool untouched)
            MaintenanceInProgressError: Another exclusive operation is running
            RestoreError: Copy failed (the pool is reinitialized regardless)
        """
        if backup_path is None:
            raise ValueError("Backup path cannot be None")
        backup_path = Path(backup_path)
        if not backup_path.is_file():
            raise ValueError(f"Backup file not found: {backup_path}")

        with self._pool.exclusive("restore"):
            failed = True
            try:
                self._pool.close_all()

                for suffix in SIDECAR_SUFFIXES:
                    stale = _sidecar(self.db_path, suffix)
                    if stale.exists():
                        stale.unlink()

                self.db_path.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(backup_path, self.db_path)
                backup_wal = _sidecar(backup_path, "-wal")
                if backup_wal.exists():
                    shutil.copy2(backup_wal, _sidecar(self.db_path, "-wal"))

                logger.info("Database restored from: %s", backup_path)
                failed = False

            except OSError as e:
                logger.error("Restore failed: %s", e)
                raise RestoreError(f"Failed to restore backup {backup_path}: {e}") from e

            finally:
                self._reinitialize_after("restore", failed)

    def export_database(self, destination: Path) -> Path:
        """
        Copy the whole store to *destination* with SQLite's online backup API.

        Raises:
            FileExistsError: *destination* already exists
            BackupError: SQLite could not write the copy
        """
        destination = Path(destination)
        if destination.exists():
            raise FileExistsError(f"Export destination already exists: {destination}")
        destination.parent.mkdir(parents=True, exist_ok=True)

        with self._pool.connection() as conn:
            target = sqlite3.connect(str(destination))
            try:
                conn.backup(target)
            except sqlite3.Error as e:
                target.close()
                destination.unlink(missing_ok=True)
                raise BackupError(f"Export to {destination} failed: {e}") from e
            target.close()

        logger.info("Database exported to: %s", destination)
        return destination

    # ============================================================
    # Integrity / Recovery
    # ============================================================

    def check_integrity(self) -> bool:
        """Structural + referential check; problems are logged, not raised."""
        with self._pool.connection() as conn:
            healthy = integrity_check(conn)
        if healthy:
            logger.info("Integrity check passed")
        return healthy

    @staticmethod
    def _structurally_ok(conn: sqlite3.Connection) -> bool:
        rows = conn.execute("PRAGMA integrity_check").fetchall()
        return len(rows) == 1 and rows[0][0] == "ok"

    def recover_database(self) -> Path:
        """
        Attempt to repair the store.

        Takes a backup first, then runs integrity_check, optimize, VACUUM and
        REINDEX and checks again.

        Returns:
            Path of the safety backup taken before recovery

        Raises:
            RecoveryError: The store is still not "ok" afterwards
        """
        with self._pool.exclusive("recovery"):
            backup_path = self._create_backup()
            logger.info("Starting recovery (safety backup: %s)", backup_path)

            try:
                with self._pool.connection() as conn:
                    if not self._structurally_ok(conn):
                        logger.warning("Integrity problems found, attempting repair")
                    conn.execute("PRAGMA optimize")
                    conn.execute("VACUUM")
                    conn.execute("REINDEX")
                    healthy = self._structurally_ok(conn)
            except sqlite3.DatabaseError as e:
                logger.error("Recovery failed: %s", e)
                raise RecoveryError(f"Database recovery failed: {e}. Restore from {backup_path}") from e

            if not healthy:
                logger.error("Database still corrupted after recovery")
                raise RecoveryError(f"Database still corrupted after recovery. Restore from {backup_path}")

            logger.info("Database recovery completed")
            return backup_path

    # ============================================================
    # Lock waiting
    # ============================================================

    def wait_for_lock(self, timeout: float, conn: Optional[sqlite3.Connection] = None) -> None:
        """
        Block until the store can be read, or *timeout* seconds pass.

        Only "locked"/"busy" failures are waited out; any other error
        propagates immediately.

        Raises:
            LockTimeoutError: Still locked after *timeout*
        """
        deadline = time.monotonic() + timeout
        if conn is not None:
            self._poll_lock(conn, deadline, timeout)
            return

        try:
            with self._pool.connection(timeout=timeout) as pooled:
                self._poll_lock(pooled, deadline, timeout)
        except PoolTimeoutError as e:
            raise LockTimeoutError(f"No connection available within {timeout}s") from e

    def _poll_lock(self, conn: sqlite3.Connection, deadline: float, timeout: float) -> None:
        conn.execute("PRAGMA busy_timeout=0")
        try:
            while True:
                try:
                    conn.execute(_LOCK_PROBE).fetchone()
                    return
                except sqlite3.OperationalError as e:
                    if not is_transient_error(e):
                        raise
                    if time.monotonic() >= deadline:
                        raise LockTimeoutError(f"Timeout waiting for database lock after {timeout}s") from e
                    self._sleep(self.poll_interval)
        finally:
            conn.execute(f"PRAGMA busy_timeout={PRAGMA_CONFIG['busy_timeout']}")

    # ============================================================
    # Tuning / Statistics
    # ============================================================

    def optimize_database(self) -> None:
        """
        Apply performance settings. Safe to call repeatedly.

        page_size only takes effect through the VACUUM that follows, and only
        before the switch to WAL.
        """
        with self._pool.connection() as conn:
            conn.execute(f"PRAGMA page_size={TUNING_PAGE_SIZE}")
            conn.execute("VACUUM")
            conn.execute("PRAGMA journal_mode=WAL")
            apply_pragmas(conn, TUNING_PRAGMAS)
            conn.execute("ANALYZE")
            conn.execute("REINDEX")
        self._pool.apply_session_pragmas(TUNING_PRAGMAS)
        logger.info("Database optimization completed")

    def perform_maintenance(self) -> None:
        """ANALYZE, VACUUM, REINDEX."""
        with self._pool.connection() as conn:
            conn.execute("ANALYZE")
            conn.execute("VACUUM")
            conn.execute("REINDEX")
        logger.info("Database maintenance completed")

    def get_database_stats(self) -> Dict[str, Any]:
        """
        Get database statistics.

        Returns:
            Dictionary with page/cache figures, file size, journal mode,
            row counts per table, schema version and pool counters
        """
        with self._pool.connection() as conn:
            stats = {
                "page_count": conn.execute("PRAGMA page_count").fetchone()[0],
                "page_size": conn.execute("PRAGMA page_size").fetchone()[0],
                "cache_size": conn.execute("PRAGMA cache_size").fetchone()[0],
                "journal_mode": conn.execute("PRAGMA journal_mode").fetchone()[0],
                "schema_version": self._schema.get_current_version(conn),
                "row_counts": get_row_counts(conn),
            }
        stats["db_size_bytes"] = self.db_path.stat().st_size if self.db_path.exists() else 0
        stats["pool"] = self._pool.stats().as_dict()
        return stats
