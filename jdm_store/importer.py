"""
Bulk CSV import.

``BulkImporter.import_all`` replaces the content of the five clinical tables
in one transaction: everything is deleted child-to-parent, then patients,
groups, lab results, measurements and CMAS scores are written in batches.
Rows whose references do not resolve are skipped and counted, never fatal.
Any other failure rolls the whole import back.

``DataImporter`` is the directory-level entry point used by the CLI.
"""

import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from .config import BATCH_SIZE, CHECK_SCORE_PATIENTS, CMAS_PATIENT_ID
from .db import CORE_TABLES, SQLITE_MAX_VARIABLES
from .domain.models import Patient, LabResultGroup, LabResult, Measurement, CMASScore
from .exceptions import DataImportError
from .persistence.csv_layer import CSVReader
from .pool import ConnectionPool
from .utils.dates import format_db_datetime

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int], None]


# ============================================================
# Import Report
# ============================================================

@dataclass
class TableImportStats:
    """Statistics for a single table import"""
    table: str
    total_rows: int = 0
    inserted: int = 0
    skipped: int = 0
    duration_ms: float = 0.0


@dataclass
class ImportReport:
    """Complete import report"""
    started_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None
    table_stats: Dict[str, TableImportStats] = field(default_factory=dict)

    def add_stats(self, stats: TableImportStats) -> None:
        self.table_stats[stats.table] = stats

    def total_inserted(self) -> int:
        return sum(s.inserted for s in self.table_stats.values())

    def total_skipped(self) -> int:
        return sum(s.skipped for s in self.table_stats.values())

    @property
    def duration_seconds(self) -> float:
        if self.completed_at is None:
            return 0.0
        return (self.completed_at - self.started_at).total_seconds()

    def summary_lines(self) -> List[str]:
        lines = [
            f"Started: {self.started_at.strftime('%Y-%m-%d %H:%M:%S')}",
        ]
        if self.completed_at:
            lines.append(f"Completed: {self.completed_at.strftime('%Y-%m-%d %H:%M:%S')}")
            lines.append(f"Duration: {self.duration_seconds:.2f}s")
        for stats in self.table_stats.values():
            lines.append(
                f"{stats.table:20s}  Total: {stats.total_rows:6d}  "
                f"Inserted: {stats.inserted:6d}  Skipped: {stats.skipped:5d}"
            )
        lines.append(f"TOTAL ROWS IMPORTED: {self.total_inserted()}")
        lines.append(f"TOTAL ROWS SKIPPED: {self.total_skipped()}")
        return lines


# ============================================================
# Batch Sink
# ============================================================

class BatchSink:
    """
    Accumulates rows and writes them as multi-row INSERT statements.

    A full batch is written as soon as it is complete; the remainder is
    written by ``flush()`` or on leaving the ``with`` block without error.
    A batch is split further only when it would exceed SQLite's
    host-parameter limit.

    Usage:
        >>> with BatchSink(cur, "patients", ("patient_id", "name")) as sink:
        ...     sink.add(("P1", "Alice"))
    """

    def __init__(self, cursor: sqlite3.Cursor, table: str, columns: Sequence[str], batch_size: int = BATCH_SIZE):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if not columns:
            raise ValueError("columns cannot be empty")
        self._cursor = cursor
        self.table = table
        self.columns = tuple(columns)
        self.batch_size = batch_size
        self.rows_per_statement = max(1, min(batch_size, SQLITE_MAX_VARIABLES // len(self.columns)))
        self._pending: List[tuple] = []
        self.rows_written = 0
        self.statements_executed = 0

    def add(self, row: Sequence) -> None:
        if len(row) != len(self.columns):
            raise ValueError(f"{self.table}: expected {len(self.columns)} values, got {len(row)}")
        self._pending.append(tuple(row))
        if len(self._pending) >= self.batch_size:
            self.flush()

    def flush(self) -> int:
        """Write pending rows. Returns the number of rows written."""
        written = 0
        while self._pending:
            chunk = self._pending[:self.rows_per_statement]
            del self._pending[:self.rows_per_statement]
            self._cursor.execute(self._statement(len(chunk)), [value for row in chunk for value in row])
            self.statements_executed += 1
            written += len(chunk)
        self.rows_written += written
        return written

    def _statement(self, row_count: int) -> str:
        placeholders = "(" + ", ".join("?" * len(self.columns)) + ")"
        return (
            f"INSERT INTO {self.table} ({', '.join(self.columns)}) VALUES "
            + ", ".join([placeholders] * row_count)
        )

    def __enter__(self) -> "BatchSink":
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.flush()
        else:
            self._pending.clear()
        return False


# ============================================================
# Bulk Importer
# ============================================================

class BulkImporter:
    """
    Transactional full reimport of the clinical tables.

    Args:
        pool: Connection pool for the store
        batch_size: Rows per multi-row INSERT
        check_score_patients: When True, CMAS scores whose patient does not
            exist are skipped like other dangling rows. When False they are
            written as-is.
    """

    def __init__(
        self,
        pool: ConnectionPool,
        batch_size: int = BATCH_SIZE,
        check_score_patients: bool = CHECK_SCORE_PATIENTS,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._pool = pool
        self.batch_size = batch_size
        self.check_score_patients = check_score_patients

    def import_all(
        self,
        patients: Iterable[Patient],
        groups: Iterable[LabResultGroup],
        lab_results: Iterable[LabResult],
        measurements: Iterable[Measurement],
        scores: Iterable[CMASScore],
    ) -> ImportReport:
        """
        Replace the store content with the given records.

        Returns:
            ImportReport with per-table counts

        Raises:
            MaintenanceInProgressError: Another import/backup/restore is running
            DataImportError: Anything failed; the store is unchanged
        """
        report = ImportReport()

        with self._pool.exclusive("import"):
            conn = self._pool.acquire()
            try:
                conn.execute("PRAGMA foreign_keys=OFF")
                conn.execute("BEGIN IMMEDIATE")
                cur = conn.cursor()

                self._clear_tables(cur)
                report.add_stats(self._import_patients(cur, patients))
                report.add_stats(self._import_groups(cur, groups))
                report.add_stats(self._import_lab_results(cur, lab_results))
                report.add_stats(self._import_measurements(cur, measurements))
                report.add_stats(self._import_scores(cur, scores))

                conn.execute("COMMIT")
            except Exception as e:
                if conn.in_transaction:
                    conn.rollback()
                logger.error("Import failed, all changes rolled back: %s", e)
                raise DataImportError(f"Import failed and was rolled back: {e}") from e
            finally:
                try:
                    if conn.in_transaction:
                        conn.rollback()
                    conn.execute("PRAGMA foreign_keys=ON")
                except sqlite3.Error as e:
                    logger.error("Could not restore connection state after import: %s", e)
                self._pool.release(conn)

        report.completed_at = datetime.now()
        logger.info(
            "Import committed: %d rows inserted, %d skipped in %.2fs",
            report.total_inserted(), report.total_skipped(), report.duration_seconds,
        )
        return report

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _clear_tables(self, cur: sqlite3.Cursor) -> None:
        for table in CORE_TABLES:
            cur.execute(f"DELETE FROM {table}")
        # sqlite_sequence exists once any AUTOINCREMENT table has been created
        if cur.execute("SELECT 1 FROM sqlite_master WHERE name='sqlite_sequence'").fetchone():
            cur.execute("DELETE FROM sqlite_sequence WHERE name='cmas_scores'")

    def _import_patients(self, cur, patients: Iterable[Patient]) -> TableImportStats:
        stats = TableImportStats(table="patients")
        started = datetime.now()
        with BatchSink(cur, "patients", ("patient_id", "name"), self.batch_size) as sink:
            for patient in patients:
                stats.total_rows += 1
                sink.add((patient.patient_id, patient.name))
        stats.inserted = sink.rows_written
        stats.duration_ms = _elapsed_ms(started)
        return stats

    def _import_groups(self, cur, groups: Iterable[LabResultGroup]) -> TableImportStats:
        stats = TableImportStats(table="lab_result_groups")
        started = datetime.now()
        with BatchSink(cur, "lab_result_groups", ("group_id", "group_name"), self.batch_size) as sink:
            for group in groups:
                stats.total_rows += 1
                sink.add((group.group_id, group.group_name))
        stats.inserted = sink.rows_written
        stats.duration_ms = _elapsed_ms(started)
        return stats

    def _import_lab_results(self, cur, lab_results: Iterable[LabResult]) -> TableImportStats:
        stats = TableImportStats(table="lab_results")
        started = datetime.now()
        probe = _ReferenceProbe(cur)
        columns = ("result_id", "group_id", "patient_id", "result_name", "unit", "result_name_english")
        with BatchSink(cur, "lab_results", columns, self.batch_size) as sink:
            for result in lab_results:
                stats.total_rows += 1
                if result.group_id is not None and not probe.exists("lab_result_groups", "group_id", result.group_id):
                    logger.warning("Lab result %s skipped: group %s does not exist", result.result_id, result.group_id)
                    stats.skipped += 1
                    continue
                if result.patient_id is not None and not probe.exists("patients", "patient_id", result.patient_id):
                    logger.warning("Lab result %s skipped: patient %s does not exist", result.result_id, result.patient_id)
                    stats.skipped += 1
                    continue
                sink.add((
                    result.result_id,
                    result.group_id,
                    result.patient_id,
                    result.result_name,
                    result.unit,
                    result.result_name_english,
                ))
        stats.inserted = sink.rows_written
        stats.duration_ms = _elapsed_ms(started)
        return stats

    def _import_measurements(self, cur, measurements: Iterable[Measurement]) -> TableImportStats:
        stats = TableImportStats(table="measurements")
        started = datetime.now()
        probe = _ReferenceProbe(cur)
        columns = ("measurement_id", "result_id", "date_time", "value")
        with BatchSink(cur, "measurements", columns, self.batch_size) as sink:
            for measurement in measurements:
                stats.total_rows += 1
                if not probe.exists("lab_results", "result_id", measurement.result_id):
                    logger.warning(
                        "Measurement %s skipped: lab result %s does not exist",
                        measurement.measurement_id, measurement.result_id,
                    )
                    stats.skipped += 1
                    continue
                sink.add((
                    measurement.measurement_id,
                    measurement.result_id,
                    format_db_datetime(measurement.date_time),
                    measurement.value,
                ))
        stats.inserted = sink.rows_written
        stats.duration_ms = _elapsed_ms(started)
        return stats

    def _import_scores(self, cur, scores: Iterable[CMASScore]) -> TableImportStats:
        stats = TableImportStats(table="cmas_scores")
        started = datetime.now()
        probe = _ReferenceProbe(cur)
        columns = ("patient_id", "date", "score", "category")
        with BatchSink(cur, "cmas_scores", columns, self.batch_size) as sink:
            for score in scores:
                stats.total_rows += 1
                if self.check_score_patients and not probe.exists("patients", "patient_id", score.patient_id):
                    logger.warning("CMAS score on %s skipped: patient %s does not exist",
                                   format_db_datetime(score.date), score.patient_id)
                    stats.skipped += 1
                    continue
                sink.add((
                    score.patient_id,
                    format_db_datetime(score.date),
                    score.score,
                    score.category.value,
                ))
        stats.inserted = sink.rows_written
        stats.duration_ms = _elapsed_ms(started)
        return stats


class _ReferenceProbe:
    """Existence checks against already-written parent rows, memoised per key."""

    def __init__(self, cur: sqlite3.Cursor):
        self._cur = cur
        self._known: Dict[tuple, bool] = {}

    def exists(self, table: str, column: str, value: str) -> bool:
        key = (table, column, value)
        if key not in self._known:
            row = self._cur.execute(f"SELECT 1 FROM {table} WHERE {column} = ? LIMIT 1", (value,)).fetchone()
            self._known[key] = row is not None
        return self._known[key]


def _elapsed_ms(started: datetime) -> float:
    return (datetime.now() - started).total_seconds() * 1000.0


# ============================================================
# Directory Importer
# ============================================================

class DataImporter:
    """
    Imports a directory of dashboard CSV exports.

    Usage:
        >>> importer = DataImporter(BulkImporter(pool))
        >>> ok = importer.import_from_directory(Path("data/PatientX"),
        ...                                      progress=lambda msg, pct: print(pct, msg))
    """

    def __init__(
        self,
        importer: BulkImporter,
        reader: Optional[CSVReader] = None,
        cmas_patient_id: str = CMAS_PATIENT_ID,
    ):
        self._importer = importer
        self._reader = reader or CSVReader()
        self.cmas_patient_id = cmas_patient_id
        self._running = threading.Lock()
        self.last_report: Optional[ImportReport] = None
        self.last_error: Optional[Exception] = None

    @property
    def is_importing(self) -> bool:
        return self._running.locked()

    def import_from_directory(self, directory: Path, progress: Optional[ProgressCallback] = None) -> bool:
        """
        Parse the six CSV files in *directory* and import them.

        Returns:
            True on success. False when an import is already running, the
            directory or a file is missing, or the import failed (the
            reason is reported through *progress* and the log).
        """
        report_progress = progress or (lambda message, percent: None)

        if not self._running.acquire(blocking=False):
            logger.warning("Import already in progress")
            report_progress("Import already in progress", 0)
            return False

        try:
            directory = Path(directory)
            if not directory.is_dir():
                logger.error("Data directory does not exist: %s", directory)
                report_progress(f"Data directory does not exist: {directory}", 0)
                return False

            missing = self._reader.missing_files(directory)
            if missing:
                logger.error("Missing required CSV files in %s: %s", directory, ", ".join(missing))
                report_progress(f"One or more required CSV files are missing: {', '.join(missing)}", 0)
                return False

            report_progress("Starting import...", 5)
            reader = self._reader
            files = {name: reader.resolve_file(directory, name) for name in reader.REQUIRED_FILES}

            patients = reader.read_patients(files[reader.PATIENT_FILE])
            report_progress(f"Parsed {len(patients)} patients", 15)
            groups = reader.read_groups(files[reader.GROUP_FILE])
            report_progress(f"Parsed {len(groups)} lab result groups", 25)
            english_names = reader.read_english_names(files[reader.ENGLISH_NAMES_FILE])
            lab_results = reader.read_lab_results(files[reader.LAB_RESULT_FILE], english_names)
            report_progress(f"Parsed {len(lab_results)} lab results", 40)
            measurements = reader.read_measurements(files[reader.MEASUREMENT_FILE])
            report_progress(f"Parsed {len(measurements)} measurements", 55)
            scores = reader.read_cmas_scores(files[reader.CMAS_FILE], self.cmas_patient_id)
            report_progress(f"Parsed {len(scores)} CMAS scores", 65)

            report_progress("Writing to database...", 70)
            self.last_report = self._importer.import_all(patients, groups, lab_results, measurements, scores)
            self.last_error = None
            report_progress("Import complete", 100)
            return True

        except Exception as e:
            self.last_error = e
            logger.exception("Error importing data from %s", directory)
            report_progress(f"Error importing data: {e}", 0)
            return False

        finally:
            self._running.release()
