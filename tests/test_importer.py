"""
Bulk import.

Tests:
1. BatchSink statement chunking
2. Full import from records and from a CSV directory
3. Dangling references skipped, empty references stored as NULL
4. All-or-nothing: any failure leaves the store unchanged
5. Score patient policy
6. Concurrency guards
7. Memory stays bounded on large imports
"""

import gc
from dataclasses import replace
from datetime import datetime, timedelta

import psutil
import pytest

from jdm_store.db import SQLITE_MAX_VARIABLES, open_connection, close_connection
from jdm_store.domain.models import Patient, LabResultGroup, LabResult, Measurement, CMASScore
from jdm_store.exceptions import DataImportError, MaintenanceInProgressError
from jdm_store.importer import BatchSink, BulkImporter
from jdm_store.store import ClinicalStore


def _count(store, table):
    with store.pool.connection() as conn:
        return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]


@pytest.fixture
def p1_store(db_path, tmp_path, fast_settings):
    """Store whose CMAS export belongs to P1."""
    settings = replace(fast_settings, cmas_patient_id="P1")
    s = ClinicalStore(db_path=db_path, settings=settings, backup_dir=tmp_path / "backups")
    s.initialize()
    yield s
    s.close()


# ============================================================
# Test 1: BatchSink
# ============================================================

def test_batch_sink_flushes_full_batches_and_remainder(tmp_path):
    conn = open_connection(tmp_path / "sink.db")
    conn.execute("CREATE TABLE t (a INTEGER, b TEXT)")
    cur = conn.cursor()

    with BatchSink(cur, "t", ("a", "b"), batch_size=10) as sink:
        for i in range(25):
            sink.add((i, str(i)))
        assert sink.rows_written == 20

    assert sink.rows_written == 25
    assert sink.statements_executed == 3
    assert tuple(conn.execute("SELECT COUNT(*), SUM(a) FROM t").fetchone()) == (25, sum(range(25)))
    close_connection(conn)


def test_batch_sink_respects_variable_limit(tmp_path):
    conn = open_connection(tmp_path / "sink.db")
    conn.execute("CREATE TABLE t (a, b, c, d)")
    sink = BatchSink(conn.cursor(), "t", ("a", "b", "c", "d"), batch_size=10 ** 6)

    assert sink.rows_per_statement == SQLITE_MAX_VARIABLES // 4

    rows = sink.rows_per_statement + 3
    for i in range(rows):
        sink.add((i, i, i, i))
    sink.flush()

    assert sink.statements_executed == 2
    assert conn.execute("SELECT COUNT(*) FROM t").fetchone()[0] == rows
    close_connection(conn)


def test_batch_sink_discards_pending_rows_on_error(tmp_path):
    conn = open_connection(tmp_path / "sink.db")
    conn.execute("CREATE TABLE t (a)")

    with pytest.raises(RuntimeError):
        with BatchSink(conn.cursor(), "t", ("a",), batch_size=100) as sink:
            sink.add((1,))
            raise RuntimeError("stop")

    assert conn.execute("SELECT COUNT(*) FROM t").fetchone()[0] == 0
    close_connection(conn)


def test_batch_sink_rejects_wrong_arity(tmp_path):
    conn = open_connection(tmp_path / "sink.db")
    sink = BatchSink(conn.cursor(), "t", ("a", "b"))
    with pytest.raises(ValueError):
        sink.add((1,))
    close_connection(conn)


# ============================================================
# Test 2: Full import
# ============================================================

def test_import_all_records(store, sample_records):
    report = store.import_all(*sample_records)

    assert report.total_inserted() == 5
    assert report.total_skipped() == 0
    assert report.completed_at is not None
    for table in ("patients", "lab_result_groups", "lab_results", "measurements", "cmas_scores"):
        assert _count(store, table) == 1


def test_reimport_replaces_content_and_resets_score_ids(store, sample_records):
    store.import_all(*sample_records)
    store.import_all(*sample_records)

    assert _count(store, "patients") == 1
    scores = store.repository.get_all_cmas_scores()
    assert [s.id for s in scores] == [1]


def test_import_from_directory(p1_store, csv_dir):
    progress = []

    ok = p1_store.import_from_directory(csv_dir, progress=lambda msg, pct: progress.append(pct))

    assert ok
    assert progress == [5, 15, 25, 40, 55, 65, 70, 100]
    report = p1_store.data_importer.last_report
    stats = report.table_stats
    assert stats["patients"].inserted == 2
    assert stats["lab_result_groups"].inserted == 2
    assert (stats["lab_results"].inserted, stats["lab_results"].skipped) == (2, 1)
    assert (stats["measurements"].inserted, stats["measurements"].skipped) == (2, 1)
    assert stats["cmas_scores"].inserted == 2
    assert any("TOTAL ROWS IMPORTED: 10" in line for line in report.summary_lines())


def test_import_from_directory_missing_file(p1_store, csv_dir):
    (csv_dir / "Measurement.csv").unlink()
    messages = []

    ok = p1_store.import_from_directory(csv_dir, progress=lambda msg, pct: messages.append(msg))

    assert not ok
    assert "Measurement.csv" in messages[-1]
    assert _count(p1_store, "patients") == 0


def test_import_from_missing_directory(p1_store, tmp_path):
    assert not p1_store.import_from_directory(tmp_path / "nowhere")


# ============================================================
# Test 3: References
# ============================================================

def test_dangling_and_empty_references(p1_store, csv_dir):
    assert p1_store.import_from_directory(csv_dir)

    with p1_store.pool.connection() as conn:
        ids = [row[0] for row in conn.execute("SELECT result_id FROM lab_results ORDER BY result_id")]
        r2_group = conn.execute("SELECT group_id FROM lab_results WHERE result_id='R2'").fetchone()[0]
        measurement_ids = [row[0] for row in conn.execute("SELECT measurement_id FROM measurements ORDER BY 1")]

    assert ids == ["R1", "R2"]
    assert r2_group is None
    assert measurement_ids == ["M1", "M2"]
    assert p1_store.check_integrity()


def test_lab_result_with_missing_patient_skipped(store):
    report = store.import_all(
        [Patient("P1", "Alice")],
        [],
        [LabResult("R1", "Weight", patient_id="P404")],
        [],
        [],
    )
    assert report.table_stats["lab_results"].skipped == 1
    assert _count(store, "lab_results") == 0


# ============================================================
# Test 4: Atomicity
# ============================================================

def test_failure_midway_leaves_store_unchanged(store, sample_records):
    store.import_all(*sample_records)

    def exploding_measurements():
        yield Measurement("M9", "R1", datetime(2024, 4, 1), "1")
        raise RuntimeError("disk on fire")

    patients = [Patient("P1", "Alice"), Patient("P2", "Bob")]
    with pytest.raises(DataImportError, match="disk on fire"):
        store.import_all(patients, [], [LabResult("R1", "Weight")], exploding_measurements(), [])

    assert _count(store, "patients") == 1
    assert [m.measurement_id for m in store.repository.get_measurements_for_lab_result("R1")] == ["M1"]
    with store.pool.connection() as conn:
        assert conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1


def test_duplicate_key_rolls_back(store):
    with pytest.raises(DataImportError):
        store.import_all([Patient("P1", "Alice"), Patient("P1", "Again")], [], [], [], [])

    assert _count(store, "patients") == 0
    assert store.pool.stats().active_connections == 0


# ============================================================
# Test 5: Score patient policy
# ============================================================

def test_score_for_unknown_patient_skipped_by_default(store):
    report = store.import_all(
        [Patient("P1", "Alice")], [], [], [],
        [CMASScore("P1", datetime(2024, 1, 1), 12), CMASScore("PX", datetime(2024, 1, 2), 6)],
    )
    assert report.table_stats["cmas_scores"].inserted == 1
    assert report.table_stats["cmas_scores"].skipped == 1


def test_score_patient_check_can_be_disabled(store):
    importer = BulkImporter(store.pool, check_score_patients=False)

    report = importer.import_all([], [], [], [], [CMASScore("PX", datetime(2024, 1, 2), 6)])

    assert report.table_stats["cmas_scores"].inserted == 1
    with store.pool.connection() as conn:
        row = conn.execute("SELECT patient_id, category FROM cmas_scores").fetchone()
    assert tuple(row) == ("PX", "CMAS Score 4-9")


# ============================================================
# Test 6: Concurrency guards
# ============================================================

def test_import_refused_while_maintenance_runs(store, sample_records):
    with store.pool.exclusive("backup"):
        with pytest.raises(MaintenanceInProgressError):
            store.import_all(*sample_records)


def test_second_directory_import_refused_while_running(p1_store, csv_dir):
    nested = []

    def progress(message, percent):
        if percent == 5:
            nested.append(p1_store.import_from_directory(csv_dir))

    assert p1_store.import_from_directory(csv_dir, progress=progress)
    assert nested == [False]
    assert not p1_store.data_importer.is_importing


# ============================================================
# Test 7: Memory
# ============================================================

def test_large_import_memory_is_bounded(store):
    rows = 50_000
    start = datetime(2020, 1, 1)

    def measurements():
        for i in range(rows):
            yield Measurement(f"M{i}", "R1", start + timedelta(minutes=i), str(i % 97))

    gc.collect()
    process = psutil.Process()
    before = process.memory_info().rss

    report = store.import_all(
        [Patient("P1", "Alice")],
        [LabResultGroup("G1", "Labs")],
        [LabResult("R1", "Weight", group_id="G1", patient_id="P1")],
        measurements(),
        [],
    )

    growth_mb = (process.memory_info().rss - before) / (1024 * 1024)
    assert report.table_stats["measurements"].inserted == rows
    assert _count(store, "measurements") == rows
    assert growth_mb < 100
