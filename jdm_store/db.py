"""
SQLite connection helpers and schema management.

- Connection opening with PRAGMA configuration
- Transaction context manager
- Schema creation from the packaged DDL script
- Forward-only migrations recorded in the db_version ledger
- Integrity checks and statistics

Connections are opened in autocommit mode (``isolation_level=None``) and every
write runs inside an explicit ``BEGIN ... COMMIT`` issued by ``transaction()``.
This keeps ``PRAGMA foreign_keys`` switchable, since SQLite ignores it inside
an open transaction.
"""

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Optional, List, Tuple, Dict, Any, Iterator

from .config import PRAGMA_CONFIG
from .exceptions import SchemaError, MigrationError
from .utils.paths import get_schema_file, get_migrations_dir

logger = logging.getLogger(__name__)


# ============================================================
# Configuration Constants
# ============================================================

VERSION_TABLE = "db_version"

# Child-to-parent order (deletes run in this order, inserts in reverse)
CORE_TABLES = (
    "cmas_scores",
    "measurements",
    "lab_results",
    "lab_result_groups",
    "patients",
)

# Host parameter limit per statement (SQLITE_MAX_VARIABLE_NUMBER)
SQLITE_MAX_VARIABLES = 32766 if sqlite3.sqlite_version_info >= (3, 32, 0) else 999


# ============================================================
# Connection Management
# ============================================================

def apply_pragmas(conn: sqlite3.Connection, pragmas: Dict[str, Any]) -> None:
    """Apply ``PRAGMA name=value`` for every entry (outside any transaction)."""
    cursor = conn.cursor()
    for pragma, value in pragmas.items():
        cursor.execute(f"PRAGMA {pragma}={value}")


def open_connection(db_path: Path, pragmas: Optional[Dict[str, Any]] = None) -> sqlite3.Connection:
    """
    Open a SQLite connection configured for the store.

    Args:
        db_path: Path to the store file (parent directory is created)
        pragmas: PRAGMAs to apply (default: config.PRAGMA_CONFIG)

    Returns:
        Configured sqlite3.Connection

    Raises:
        sqlite3.Error: File cannot be opened or configured

    Configuration:
    - Autocommit mode; transactions are explicit
    - Row factory enabled (access columns by name)
    - check_same_thread=False so pooled handles can move between threads
      (a handle is only ever leased to one thread at a time)
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(
        str(db_path),
        timeout=5.0,
        check_same_thread=False,
        isolation_level=None,
    )
    try:
        conn.row_factory = sqlite3.Row
        apply_pragmas(conn, PRAGMA_CONFIG if pragmas is None else pragmas)
    except sqlite3.Error:
        conn.close()
        raise
    return conn


def close_connection(conn: Optional[sqlite3.Connection]) -> None:
    """Close *conn*, logging instead of raising on failure."""
    if conn is None:
        return
    try:
        conn.close()
    except sqlite3.Error as e:
        logger.warning("Error closing connection: %s", e)


@contextmanager
def transaction(conn: sqlite3.Connection, isolation_level: str = "DEFERRED") -> Iterator[sqlite3.Cursor]:
    """
    Transaction context manager with automatic commit/rollback.

    Args:
        conn: SQLite connection in autocommit mode
        isolation_level: DEFERRED (default), IMMEDIATE, or EXCLUSIVE

    Yields:
        sqlite3.Cursor: Cursor for executing queries

    Usage:
        >>> with transaction(conn, "IMMEDIATE") as cur:
        ...     cur.execute("INSERT INTO patients VALUES (?, ?)", ("P1", "Alice"))

    The original exception propagates after the rollback.
    """
    cursor = conn.cursor()
    cursor.execute(f"BEGIN {isolation_level}")
    try:
        yield cursor
        cursor.execute("COMMIT")
    except BaseException:
        if conn.in_transaction:
            try:
                conn.rollback()
            except sqlite3.Error as rollback_error:
                logger.error("Rollback failed: %s", rollback_error)
        raise


def split_sql_statements(script: str) -> List[str]:
    """
    Split a SQL script into independent statements.

    Uses sqlite3.complete_statement so semicolons inside string literals
    and triggers are handled. Comment-only tails are dropped.
    """
    statements = []
    buffer = ""
    for line in script.splitlines(keepends=True):
        buffer += line
        if sqlite3.complete_statement(buffer):
            statement = buffer.strip()
            if statement:
                statements.append(statement)
            buffer = ""

    leftover = [
        line for line in buffer.splitlines()
        if line.strip() and not line.strip().startswith("--")
    ]
    if leftover:
        statements.append(buffer.strip())
    return statements


def table_exists(conn: sqlite3.Connection, table: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type='table' AND name=? LIMIT 1", (table,)
    ).fetchone()
    return row is not None


# ============================================================
# Schema Management
# ============================================================

class SchemaManager:
    """
    Applies the DDL script and pending migrations.

    Migration script naming convention: NNN_description.sql
    Example: 001_baseline.sql, 002_measurement_time_index.sql
    """

    def __init__(self, schema_file: Optional[Path] = None, migrations_dir: Optional[Path] = None):
        self.schema_file = Path(schema_file) if schema_file else get_schema_file()
        self.migrations_dir = Path(migrations_dir) if migrations_dir else get_migrations_dir()

    def create_schema(self, conn: sqlite3.Connection) -> int:
        """
        Apply the DDL script statement by statement.

        FK enforcement is off while the tables are created and switched back
        on afterwards, even on failure.

        Returns:
            Number of statements executed

        Raises:
            SchemaError: Script missing or a statement failed
        """
        try:
            script = self.schema_file.read_text(encoding="utf-8")
        except OSError as e:
            raise SchemaError(f"Cannot read schema script {self.schema_file}: {e}") from e

        statements = split_sql_statements(script)
        conn.execute("PRAGMA foreign_keys=OFF")
        try:
            for statement in statements:
                conn.execute(statement)
        except sqlite3.Error as e:
            raise SchemaError(f"Schema creation failed: {e}") from e
        finally:
            conn.execute("PRAGMA foreign_keys=ON")

        logger.info("Schema created (%d statements)", len(statements))
        return len(statements)

    def missing_core_tables(self, conn: sqlite3.Connection) -> List[str]:
        return [table for table in CORE_TABLES if not table_exists(conn, table)]

    def ensure_version_table(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            f"CREATE TABLE IF NOT EXISTS {VERSION_TABLE} ("
            "version INTEGER NOT NULL, "
            "applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP)"
        )

    def get_current_version(self, conn: sqlite3.Connection) -> int:
        """
        Get current schema version.

        Returns:
            Highest recorded version (0 if the ledger is empty or absent)
        """
        try:
            row = conn.execute(f"SELECT MAX(version) FROM {VERSION_TABLE}").fetchone()
        except sqlite3.OperationalError:
            return 0
        return row[0] if row and row[0] is not None else 0

    def get_pending_migrations(self, conn: sqlite3.Connection) -> List[Tuple[int, Path]]:
        """
        Get list of pending migration scripts.

        Returns:
            List of (version, filepath) tuples sorted by version
        """
        current_version = self.get_current_version(conn)

        if not self.migrations_dir.exists():
            return []

        pending = []
        for migration_file in sorted(self.migrations_dir.glob("*.sql")):
            version_str = migration_file.stem.split("_")[0]
            try:
                version = int(version_str)
            except ValueError:
                logger.warning("Skipping invalid migration filename: %s", migration_file.name)
                continue

            if version > current_version:
                pending.append((version, migration_file))

        return sorted(pending, key=lambda x: x[0])

    def apply_migrations(self, conn: sqlite3.Connection) -> int:
        """
        Apply all pending migrations.

        Each migration runs in its own IMMEDIATE transaction together with
        its ledger row; a failure rolls back that migration only.

        Returns:
            Number of migrations applied

        Raises:
            MigrationError: A migration failed (earlier ones stay applied)
        """
        applied = 0
        for version, migration_path in self.get_pending_migrations(conn):
            try:
                script = migration_path.read_text(encoding="utf-8")
            except OSError as e:
                raise MigrationError(f"Cannot read migration {migration_path.name}: {e}") from e

            try:
                with transaction(conn, "IMMEDIATE") as cur:
                    for statement in split_sql_statements(script):
                        cur.execute(statement)
                    cur.execute(f"INSERT INTO {VERSION_TABLE} (version) VALUES (?)", (version,))
            except sqlite3.Error as e:
                logger.error("Migration %d (%s) failed: %s", version, migration_path.name, e)
                raise MigrationError(f"Migration {version} ({migration_path.name}) failed: {e}") from e

            logger.info("Applied migration %d: %s", version, migration_path.name)
            applied += 1
        return applied

    def initialize(self, conn: sqlite3.Connection, store_existed: bool = True) -> int:
        """
        Bring the store up to date.

        Args:
            conn: Connection to the store
            store_existed: False when the file was created by this open

        Returns:
            Schema version after initialization
        """
        if not store_existed or self.missing_core_tables(conn):
            self.create_schema(conn)
        self.ensure_version_table(conn)
        self.apply_migrations(conn)
        return self.get_current_version(conn)


# ============================================================
# Health Checks
# ============================================================

def integrity_check(conn: sqlite3.Connection) -> bool:
    """
    Run SQLite integrity checks.

    Returns:
        True if database is healthy, False otherwise

    Checks:
    - PRAGMA integrity_check (structural integrity)
    - PRAGMA foreign_key_check (referential integrity)
    """
    try:
        integrity_result = conn.execute("PRAGMA integrity_check").fetchall()
    except sqlite3.DatabaseError as e:
        logger.error("Integrity check could not run: %s", e)
        return False

    if len(integrity_result) != 1 or integrity_result[0][0] != "ok":
        for row in integrity_result[:10]:
            logger.error("Integrity check failed: %s", row[0])
        return False

    fk_violations = conn.execute("PRAGMA foreign_key_check").fetchall()
    if fk_violations:
        logger.error("Foreign key violations found (%d)", len(fk_violations))
        for row in fk_violations[:10]:
            logger.error("  table=%s rowid=%s parent=%s fk=%s", row[0], row[1], row[2], row[3])
        return False

    return True


def get_row_counts(conn: sqlite3.Connection) -> Dict[str, int]:
    """Row count per user table, skipping SQLite internals."""
    tables = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
    ).fetchall()
    return {
        row[0]: conn.execute(f'SELECT COUNT(*) FROM "{row[0]}"').fetchone()[0]
        for row in tables
    }
