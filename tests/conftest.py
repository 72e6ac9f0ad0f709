"""Shared fixtures for the store tests."""

from datetime import datetime
from pathlib import Path

import pytest

from jdm_store.config import StoreSettings
from jdm_store.domain.models import Patient, LabResultGroup, LabResult, Measurement, CMASScore
from jdm_store.pool import ConnectionPool
from jdm_store.store import ClinicalStore


# ============================================================
# Fixtures
# ============================================================

@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Keep every path resolved through utils.paths inside tmp_path."""
    home = tmp_path / "home"
    monkeypatch.setenv("JDM_STORE_HOME", str(home))
    return home


@pytest.fixture
def fast_settings():
    return StoreSettings(retry_delay=0.0, poll_interval=0.01, validation_timeout=1.0)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "data" / "test.db"


@pytest.fixture
def store(db_path, tmp_path, fast_settings):
    """Initialized store on a fresh file."""
    s = ClinicalStore(db_path=db_path, settings=fast_settings, backup_dir=tmp_path / "backups")
    s.initialize()
    yield s
    s.close()


@pytest.fixture
def pool(tmp_path):
    p = ConnectionPool(tmp_path / "pool.db", max_connections=3, poll_interval=0.01)
    p.initialize()
    yield p
    p.close_all()


@pytest.fixture
def sample_records():
    """The P1 / G1 / R1 / M1 scenario plus one score."""
    patients = [Patient("P1", "Alice")]
    groups = [LabResultGroup("G1", "Labs")]
    lab_results = [LabResult("R1", "Weight", group_id="G1", patient_id="P1", unit="kg")]
    measurements = [Measurement("M1", "R1", datetime(2024, 3, 1, 9, 30, 0), "42.5")]
    scores = [CMASScore("P1", datetime(2024, 3, 1, 0, 0, 0), 15)]
    return patients, groups, lab_results, measurements, scores


def write_csv(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


@pytest.fixture
def csv_dir(tmp_path):
    """Directory with a complete, small set of CSV exports."""
    directory = tmp_path / "PatientX"
    write_csv(directory / "Patient.csv", "PatientID,Name\nP1,Alice\nP2,Bob\n")
    write_csv(directory / "LabResultGroup.csv", "GroupID,GroupName\nG1,Labs\nG2,Vitals\n")
    write_csv(
        directory / "LabResult.csv",
        "ResultID,GroupID,PatientID,ResultName,Unit\n"
        "R1,G1,P1,Gewicht,kg\n"
        "R2,,P1,CK,U/L\n"
        "R3,G9,P1,Orphan,mg\n",
    )
    write_csv(
        directory / "LabResults(EN).csv",
        "ResultID,GroupID,PatientID,ResultName,Unit,ResultNameEnglish\n"
        "R1,G1,P1,Gewicht,kg,Weight\n",
    )
    write_csv(
        directory / "Measurement.csv",
        "MeasurementID,ResultID,DateTime,Value\n"
        "M1,R1,01-03-2024 09:30:00,42.5\n"
        "M2,R2,2024-03-02 10:00:00,120\n"
        "M3,R3,2024-03-02 10:00:00,7\n",
    )
    write_csv(
        directory / "CMAS.csv",
        "Category,01-03-2024,15-03-2024\n"
        "CMAS Score > 10,15,\n"
        "CMAS Score 4-9,,8\n",
    )
    return directory
