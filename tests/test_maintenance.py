"""
Maintenance and recovery.

Tests:
1. Backup naming and retention
2. Restore (round trip, invalid input, pool state afterwards)
3. Export through the online backup API
4. Integrity check and recovery
5. Lock waiting
6. Tuning and statistics
7. Exclusivity between maintenance operations
"""

import sqlite3
import threading
from datetime import datetime, timedelta

import pytest

from jdm_store.domain.models import Patient
from jdm_store.exceptions import LockTimeoutError, MaintenanceInProgressError, BackupError
from jdm_store.maintenance import MaintenanceManager
from jdm_store.store import ClinicalStore


class FakeClock:
    """Returns a new second on every call."""

    def __init__(self, start=datetime(2024, 1, 1, 12, 0, 0)):
        self.current = start

    def __call__(self):
        value = self.current
        self.current += timedelta(seconds=1)
        return value


@pytest.fixture
def maintenance(store):
    store.maintenance._clock = FakeClock()
    return store.maintenance


def _patient_names(store):
    return [p.name for p in store.repository.get_all_patients()]


# ============================================================
# Test 1: Backups
# ============================================================

def test_backup_name_and_content(store, maintenance):
    store.repository.insert_patient(Patient("P1", "Alice"))

    backup = maintenance.create_backup()

    assert backup.name == "jdm_dashboard_backup_20240101_120000.db"
    with sqlite3.connect(str(backup)) as conn:
        assert conn.execute("SELECT name FROM patients").fetchall() == [("Alice",)]
    assert not store.pool.closed
    assert _patient_names(store) == ["Alice"]


def test_backup_retention_keeps_five_newest(maintenance):
    created = [maintenance.create_backup() for _ in range(6)]

    backups = maintenance.list_backups()

    assert len(backups) == 5
    assert created[0] not in backups
    assert backups == sorted(created[1:], key=lambda p: p.name, reverse=True)


def test_same_second_backups_get_distinct_names(store):
    store.maintenance._clock = lambda: datetime(2024, 1, 1, 12, 0, 0)

    first = store.create_backup()
    second = store.create_backup()

    assert first != second
    assert second.name == "jdm_dashboard_backup_20240101_120000_1.db"


def test_list_backups_without_directory(store, tmp_path):
    manager = MaintenanceManager(store.pool, tmp_path / "never-created")
    assert manager.list_backups() == []


def test_backup_of_missing_file_fails_and_pool_recovers(store, maintenance):
    store.close()
    store.db_path.unlink()

    with pytest.raises(BackupError):
        maintenance.create_backup()

    # Reinitialization recreated an empty store
    assert not store.pool.closed
    assert store.schema_version == 2


# ============================================================
# Test 2: Restore
# ============================================================

def test_restore_round_trip(store, maintenance):
    store.repository.insert_patient(Patient("P1", "Alice"))
    backup = maintenance.create_backup()
    store.repository.insert_patient(Patient("P2", "Bob"))

    maintenance.restore_from_backup(backup)

    assert _patient_names(store) == ["Alice"]
    assert not store.pool.closed
    assert store.pool.stats().live_connections == store.settings.max_connections


@pytest.mark.parametrize("bad_path", [None, "missing.db"])
def test_restore_rejects_missing_input(store, maintenance, tmp_path, bad_path):
    path = None if bad_path is None else tmp_path / bad_path

    with pytest.raises(ValueError):
        maintenance.restore_from_backup(path)

    assert not store.pool.closed


def test_restore_migrates_old_backup(store, maintenance):
    backup = maintenance.create_backup()
    with sqlite3.connect(str(backup)) as conn:
        conn.execute("DELETE FROM db_version WHERE version = 2")
        conn.execute("DROP INDEX idx_measurements_date_time")

    maintenance.restore_from_backup(backup)

    assert store.schema_version == 2


# ============================================================
# Test 3: Export
# ============================================================

def test_export_then_restore(store, maintenance, tmp_path):
    store.repository.insert_patient(Patient("P1", "Alice"))
    exported = maintenance.export_database(tmp_path / "exports" / "copy.db")
    store.repository.insert_patient(Patient("P2", "Bob"))

    maintenance.restore_from_backup(exported)

    assert _patient_names(store) == ["Alice"]


def _query_surface(store):
    patient_ids = [p.patient_id for p in store.repository.get_all_patients()]
    group_ids = [g.group_id for g in store.repository.get_all_lab_result_groups()]
    return {
        "patients": store.repository.get_all_patients(),
        "groups": store.repository.get_all_lab_result_groups(),
        "by_patient": {pid: store.repository.get_lab_results_for_patient(pid) for pid in patient_ids},
        "by_group": {gid: store.repository.get_lab_results_for_group(gid) for gid in group_ids},
        "scores": store.repository.get_all_cmas_scores(),
        "scores_by_patient": {pid: store.repository.get_cmas_scores_for_patient(pid) for pid in patient_ids},
    }


def test_export_restores_identically_into_fresh_store(store, sample_records, tmp_path, fast_settings):
    store.import_all(*sample_records)
    exported = store.export_database(tmp_path / "exports" / "full.db")
    expected = _query_surface(store)

    with ClinicalStore(
        db_path=tmp_path / "other" / "fresh.db",
        settings=fast_settings,
        backup_dir=tmp_path / "other" / "backups",
    ) as fresh:
        fresh.restore_from_backup(exported)
        restored = _query_surface(fresh)

    assert restored == expected
    assert [p.patient_id for p in restored["patients"]] == ["P1"]
    assert restored["by_patient"]["P1"][0].measurement_count == 1
    assert [s.score for s in restored["scores"]] == [15]


def test_export_refuses_existing_destination(maintenance, tmp_path):
    destination = tmp_path / "taken.db"
    destination.write_bytes(b"keep me")

    with pytest.raises(FileExistsError):
        maintenance.export_database(destination)

    assert destination.read_bytes() == b"keep me"


# ============================================================
# Test 4: Integrity / recovery
# ============================================================

def test_integrity_of_healthy_store(store):
    assert store.check_integrity()


def test_integrity_detects_foreign_key_violation(store):
    with store.pool.connection() as conn:
        conn.execute("PRAGMA foreign_keys=OFF")
        conn.execute("INSERT INTO measurements VALUES ('M1', 'R404', '2024-01-01 00:00:00', '1')")
        conn.execute("PRAGMA foreign_keys=ON")

    assert not store.check_integrity()


def test_recover_healthy_store(store, maintenance):
    store.repository.insert_patient(Patient("P1", "Alice"))

    safety_backup = maintenance.recover_database()

    assert safety_backup.exists()
    assert safety_backup in maintenance.list_backups()
    assert _patient_names(store) == ["Alice"]
    assert store.check_integrity()


# ============================================================
# Test 5: Lock waiting
# ============================================================

def test_wait_for_lock_returns_when_free(maintenance):
    maintenance.wait_for_lock(timeout=1.0)


def test_wait_for_lock_times_out_under_exclusive_lock(store, maintenance):
    blocker = sqlite3.connect(str(store.db_path), isolation_level=None)
    blocker.execute("BEGIN EXCLUSIVE")
    try:
        with pytest.raises(LockTimeoutError):
            maintenance.wait_for_lock(timeout=0.2)
    finally:
        blocker.execute("ROLLBACK")
        blocker.close()

    # busy_timeout restored on the probed handle
    for conn in list(store.pool._idle):
        assert conn.execute("PRAGMA busy_timeout").fetchone()[0] == 5000


def test_wait_for_lock_succeeds_after_release(store, maintenance):
    blocker = sqlite3.connect(str(store.db_path), isolation_level=None, check_same_thread=False)
    blocker.execute("BEGIN EXCLUSIVE")
    timer = threading.Timer(0.2, lambda: blocker.execute("ROLLBACK"))
    timer.start()
    try:
        maintenance.wait_for_lock(timeout=5.0)
    finally:
        timer.join()
        blocker.close()


def test_wait_for_lock_propagates_other_errors(maintenance, tmp_path):
    broken = tmp_path / "not_a_db.db"
    broken.write_bytes(b"this is definitely not a sqlite database file" * 100)
    conn = sqlite3.connect(str(broken))
    try:
        with pytest.raises(sqlite3.DatabaseError) as exc_info:
            maintenance.wait_for_lock(timeout=1.0, conn=conn)
        assert not isinstance(exc_info.value, LockTimeoutError)
    finally:
        conn.close()


# ============================================================
# Test 6: Tuning / statistics
# ============================================================

def test_optimize_is_idempotent(store, maintenance):
    store.repository.insert_patient(Patient("P1", "Alice"))

    maintenance.optimize_database()
    maintenance.optimize_database()

    stats = maintenance.get_database_stats()
    assert stats["journal_mode"] == "wal"
    assert stats["page_size"] == 4096
    with store.pool.connection() as conn:
        assert conn.execute("PRAGMA synchronous").fetchone()[0] == 1  # NORMAL
    assert _patient_names(store) == ["Alice"]


def test_perform_maintenance_keeps_data(store, maintenance):
    store.repository.insert_patient(Patient("P1", "Alice"))
    maintenance.perform_maintenance()
    assert _patient_names(store) == ["Alice"]


def test_database_stats(store, maintenance):
    store.repository.insert_patient(Patient("P1", "Alice"))

    stats = maintenance.get_database_stats()

    assert stats["schema_version"] == 2
    assert stats["row_counts"]["patients"] == 1
    assert stats["row_counts"]["measurements"] == 0
    assert stats["db_size_bytes"] > 0
    assert stats["page_count"] > 0
    assert stats["pool"]["max_connections"] == store.settings.max_connections


# ============================================================
# Test 7: Exclusivity
# ============================================================

def test_backup_refused_during_import(store, maintenance):
    with store.pool.exclusive("import"):
        with pytest.raises(MaintenanceInProgressError, match="import"):
            maintenance.create_backup()
        with pytest.raises(MaintenanceInProgressError):
            maintenance.restore_from_backup(store.db_path)
        with pytest.raises(MaintenanceInProgressError):
            maintenance.recover_database()
