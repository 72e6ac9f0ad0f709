"""
Repository layer: read queries and single-row inserts.

- Reads lease a pooled handle for the duration of one query.  Lab results
  with nested measurements read both tables on one handle inside one read
  transaction, so a concurrent reimport cannot mix two snapshots.
- Inserts go through the RetryExecutor so transient lock contention is
  retried; IntegrityError is mapped to DuplicateKeyError / ForeignKeyError.
- Records come back as immutable domain objects.
"""

import logging
import sqlite3
import time
from typing import Dict, List, Optional, Tuple

from .domain.models import Patient, LabResultGroup, LabResult, Measurement, CMASScore
from .db import transaction
from .exceptions import DuplicateKeyError, ForeignKeyError
from .pool import ConnectionPool
from .retry import RetryExecutor
from .utils.dates import format_db_datetime, parse_db_datetime

logger = logging.getLogger(__name__)


def _require_id(value: Optional[str], label: str) -> str:
    if value is None or not str(value).strip():
        raise ValueError(f"{label} cannot be empty")
    return str(value).strip()


def _map_integrity_error(e: sqlite3.IntegrityError, entity: str, key: str) -> Exception:
    error_msg = str(e).lower()
    if "foreign key" in error_msg:
        return ForeignKeyError(f"{entity} {key} references a row that does not exist")
    if "unique" in error_msg or "primary key" in error_msg:
        return DuplicateKeyError(f"{entity} {key} already exists")
    return e


# ============================================================
# Row mapping
# ============================================================

def _patient(row: sqlite3.Row) -> Patient:
    return Patient(patient_id=row["patient_id"], name=row["name"])


def _group(row: sqlite3.Row) -> LabResultGroup:
    return LabResultGroup(group_id=row["group_id"], group_name=row["group_name"])


def _measurement(row: sqlite3.Row) -> Measurement:
    return Measurement(
        measurement_id=row["measurement_id"],
        result_id=row["result_id"],
        date_time=parse_db_datetime(row["date_time"]),
        value=row["value"],
    )


def _lab_result(row: sqlite3.Row, measurements=()) -> LabResult:
    return LabResult(
        result_id=row["result_id"],
        result_name=row["result_name"],
        group_id=row["group_id"],
        patient_id=row["patient_id"],
        unit=row["unit"] or "",
        result_name_english=row["result_name_english"] or "",
        measurements=tuple(measurements),
    )


def _score(row: sqlite3.Row) -> CMASScore:
    return CMASScore(
        patient_id=row["patient_id"],
        date=parse_db_datetime(row["date"]),
        score=row["score"],
        id=row["id"],
    )


def _map_rows(rows, mapper, table: str) -> list:
    """Convert rows, skipping (and logging) any that fail record validation."""
    records = []
    for row in rows:
        try:
            records.append(mapper(row))
        except (ValueError, TypeError) as e:
            logger.warning("Skipping invalid %s row %s: %s", table, tuple(row), e)
    return records


# ============================================================
# Clinical Repository
# ============================================================

class ClinicalRepository:
    """
    Query surface and incremental inserts for the five record kinds.

    Ordering:
    - measurements by date_time, then measurement_id
    - CMAS scores by date, then id
    - lab results in insertion order
    """

    def __init__(self, pool: ConnectionPool, executor: Optional[RetryExecutor] = None):
        self._pool = pool
        self._executor = executor or RetryExecutor(pool)

    def _query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        started = time.perf_counter()
        with self._pool.connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        self._pool.record_query(time.perf_counter() - started)
        return rows

    def _query_snapshot(self, *statements: Tuple[str, tuple]) -> List[List[sqlite3.Row]]:
        """Run several SELECTs against one consistent view of the store."""
        started = time.perf_counter()
        with self._pool.connection() as conn:
            with transaction(conn) as cur:
                results = [cur.execute(sql, params).fetchall() for sql, params in statements]
        self._pool.record_query(time.perf_counter() - started)
        return results

    # ------------------------------------------------------------------
    # Patients
    # ------------------------------------------------------------------

    def get_all_patients(self) -> List[Patient]:
        rows = self._query("SELECT patient_id, name FROM patients ORDER BY name, patient_id")
        return _map_rows(rows, _patient, "patients")

    def get_patient_by_id(self, patient_id: str) -> Optional[Patient]:
        """Return the patient or None if absent."""
        patient_id = _require_id(patient_id, "Patient ID")
        rows = self._query("SELECT patient_id, name FROM patients WHERE patient_id = ?", (patient_id,))
        patients = _map_rows(rows, _patient, "patients")
        return patients[0] if patients else None

    # ------------------------------------------------------------------
    # Lab results
    # ------------------------------------------------------------------

    def get_all_lab_result_groups(self) -> List[LabResultGroup]:
        rows = self._query("SELECT group_id, group_name FROM lab_result_groups ORDER BY group_name, group_id")
        return _map_rows(rows, _group, "lab_result_groups")

    def get_lab_results_for_patient(self, patient_id: str) -> List[LabResult]:
        """Lab results of a patient, each with its measurements (time-ordered)."""
        patient_id = _require_id(patient_id, "Patient ID")
        result_rows, measurement_rows = self._query_snapshot(
            ("SELECT * FROM lab_results WHERE patient_id = ? ORDER BY rowid", (patient_id,)),
            (
                "SELECT m.* FROM measurements m "
                "JOIN lab_results r ON r.result_id = m.result_id "
                "WHERE r.patient_id = ? "
                "ORDER BY m.date_time, m.measurement_id",
                (patient_id,),
            ),
        )
        return self._assemble(result_rows, measurement_rows)

    def get_lab_results_for_group(self, group_id: str) -> List[LabResult]:
        """Lab results in a group, each with its measurements (time-ordered)."""
        group_id = _require_id(group_id, "Group ID")
        result_rows, measurement_rows = self._query_snapshot(
            ("SELECT * FROM lab_results WHERE group_id = ? ORDER BY rowid", (group_id,)),
            (
                "SELECT m.* FROM measurements m "
                "JOIN lab_results r ON r.result_id = m.result_id "
                "WHERE r.group_id = ? "
                "ORDER BY m.date_time, m.measurement_id",
                (group_id,),
            ),
        )
        return self._assemble(result_rows, measurement_rows)

    def _assemble(self, result_rows, measurement_rows) -> List[LabResult]:
        by_result: Dict[str, List[Measurement]] = {}
        for measurement in _map_rows(measurement_rows, _measurement, "measurements"):
            by_result.setdefault(measurement.result_id, []).append(measurement)
        return _map_rows(
            result_rows,
            lambda row: _lab_result(row, by_result.get(row["result_id"], ())),
            "lab_results",
        )

    def get_measurements_for_lab_result(self, result_id: str) -> List[Measurement]:
        result_id = _require_id(result_id, "Result ID")
        rows = self._query(
            "SELECT * FROM measurements WHERE result_id = ? ORDER BY date_time, measurement_id",
            (result_id,),
        )
        return _map_rows(rows, _measurement, "measurements")

    # ------------------------------------------------------------------
    # CMAS scores
    # ------------------------------------------------------------------

    def get_cmas_scores_for_patient(self, patient_id: str) -> List[CMASScore]:
        patient_id = _require_id(patient_id, "Patient ID")
        rows = self._query(
            "SELECT * FROM cmas_scores WHERE patient_id = ? ORDER BY date, id", (patient_id,)
        )
        return _map_rows(rows, _score, "cmas_scores")

    def get_all_cmas_scores(self) -> List[CMASScore]:
        rows = self._query("SELECT * FROM cmas_scores ORDER BY date, id")
        return _map_rows(rows, _score, "cmas_scores")

    # ------------------------------------------------------------------
    # Single-row inserts
    # ------------------------------------------------------------------

    def insert_patient(self, patient: Patient) -> None:
        """
        Insert one patient.

        Raises:
            DuplicateKeyError: patient_id already exists
            StoreBusyError: store stayed locked through every retry
        """
        try:
            self._executor.execute(lambda cur: cur.execute(
                "INSERT INTO patients (patient_id, name) VALUES (?, ?)",
                (patient.patient_id, patient.name),
            ))
        except sqlite3.IntegrityError as e:
            raise _map_integrity_error(e, "Patient", patient.patient_id) from e

    def insert_lab_result_group(self, group: LabResultGroup) -> None:
        try:
            self._executor.execute(lambda cur: cur.execute(
                "INSERT INTO lab_result_groups (group_id, group_name) VALUES (?, ?)",
                (group.group_id, group.group_name),
            ))
        except sqlite3.IntegrityError as e:
            raise _map_integrity_error(e, "Lab result group", group.group_id) from e

    def insert_lab_result(self, result: LabResult) -> None:
        """
        Insert one lab result definition.

        Raises:
            DuplicateKeyError: result_id already exists
            ForeignKeyError: group or patient reference does not exist
        """
        try:
            self._executor.execute(lambda cur: cur.execute(
                "INSERT INTO lab_results "
                "(result_id, group_id, patient_id, result_name, unit, result_name_english) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    result.result_id,
                    result.group_id,
                    result.patient_id,
                    result.result_name,
                    result.unit,
                    result.result_name_english,
                ),
            ))
        except sqlite3.IntegrityError as e:
            raise _map_integrity_error(e, "Lab result", result.result_id) from e

    def insert_measurement(self, measurement: Measurement) -> None:
        try:
            self._executor.execute(lambda cur: cur.execute(
                "INSERT INTO measurements (measurement_id, result_id, date_time, value) VALUES (?, ?, ?, ?)",
                (
                    measurement.measurement_id,
                    measurement.result_id,
                    format_db_datetime(measurement.date_time),
                    measurement.value,
                ),
            ))
        except sqlite3.IntegrityError as e:
            raise _map_integrity_error(e, "Measurement", measurement.measurement_id) from e

    def insert_cmas_score(self, score: CMASScore) -> int:
        """
        Insert one CMAS score.

        Returns:
            Id assigned by the store
        """
        def _insert(cur: sqlite3.Cursor) -> int:
            cur.execute(
                "INSERT INTO cmas_scores (patient_id, date, score, category) VALUES (?, ?, ?, ?)",
                (score.patient_id, format_db_datetime(score.date), score.score, score.category.value),
            )
            return cur.lastrowid

        try:
            return self._executor.execute(_insert)
        except sqlite3.IntegrityError as e:
            raise _map_integrity_error(e, "CMAS score for patient", score.patient_id) from e
