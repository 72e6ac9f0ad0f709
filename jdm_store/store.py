"""
ClinicalStore: wires the pool, schema, retry executor, repository, importer
and maintenance manager around one store file.

Usage:
    >>> with ClinicalStore(Path("data/jdm_dashboard.db")) as store:
    ...     store.import_from_directory(Path("data/PatientX"))
    ...     store.repository.get_all_patients()
"""

import logging
from pathlib import Path
from typing import Iterable, Optional

from .config import StoreSettings, load_settings
from .db import SchemaManager
from .domain.models import Patient, LabResultGroup, LabResult, Measurement, CMASScore
from .importer import BulkImporter, DataImporter, ImportReport, ProgressCallback
from .maintenance import MaintenanceManager
from .pool import ConnectionPool
from .repositories import ClinicalRepository
from .retry import RetryExecutor
from .utils.paths import get_db_path, get_backup_dir

logger = logging.getLogger(__name__)


class ClinicalStore:
    """
    Owns every component bound to one store file.

    Nothing is global: two stores on two files are fully independent.
    """

    def __init__(
        self,
        db_path: Optional[Path] = None,
        settings: Optional[StoreSettings] = None,
        backup_dir: Optional[Path] = None,
        schema: Optional[SchemaManager] = None,
    ):
        self.settings = settings or load_settings()
        self.db_path = Path(db_path) if db_path else get_db_path()
        if backup_dir:
            self.backup_dir = Path(backup_dir)
        elif db_path:
            self.backup_dir = self.db_path.parent / "backups"
        else:
            self.backup_dir = get_backup_dir()
        self.schema = schema or SchemaManager()
        self.schema_version = 0

        s = self.settings
        self.pool = ConnectionPool(
            self.db_path,
            max_connections=s.max_connections,
            poll_interval=s.poll_interval,
            validation_timeout=s.validation_timeout,
        )
        self.executor = RetryExecutor(self.pool, max_attempts=s.max_retries, delay=s.retry_delay)
        self.repository = ClinicalRepository(self.pool, self.executor)
        self.importer = BulkImporter(
            self.pool,
            batch_size=s.batch_size,
            check_score_patients=s.check_score_patients,
        )
        self.data_importer = DataImporter(self.importer, cmas_patient_id=s.cmas_patient_id)
        self.maintenance = MaintenanceManager(
            self.pool,
            self.backup_dir,
            reinitialize=self._reinitialize,
            backup_prefix=s.backup_prefix,
            max_backups=s.max_backups,
            poll_interval=s.poll_interval,
            schema=self.schema,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> int:
        """
        Open the pool and bring the schema up to date.

        Returns:
            Schema version

        Raises:
            SchemaError / MigrationError: Startup cannot continue (pool closed)
        """
        store_existed = self.db_path.exists() and self.db_path.stat().st_size > 0
        self.pool.initialize()
        try:
            with self.pool.connection() as conn:
                self.schema_version = self.schema.initialize(conn, store_existed)
        except Exception:
            self.pool.close_all()
            raise
        logger.info("Store %s ready (schema version %d)", self.db_path, self.schema_version)
        return self.schema_version

    def _reinitialize(self) -> None:
        self.pool.initialize()
        with self.pool.connection() as conn:
            self.schema_version = self.schema.initialize(conn, store_existed=True)

    def close(self) -> None:
        self.pool.close_all()

    def __enter__(self) -> "ClinicalStore":
        self.initialize()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    # ------------------------------------------------------------------
    # Import
    # ------------------------------------------------------------------

    def import_all(
        self,
        patients: Iterable[Patient],
        groups: Iterable[LabResultGroup],
        lab_results: Iterable[LabResult],
        measurements: Iterable[Measurement],
        scores: Iterable[CMASScore],
    ) -> ImportReport:
        return self.importer.import_all(patients, groups, lab_results, measurements, scores)

    def import_from_directory(self, directory: Path, progress: Optional[ProgressCallback] = None) -> bool:
        return self.data_importer.import_from_directory(directory, progress)

    # ------------------------------------------------------------------
    # Maintenance shortcuts
    # ------------------------------------------------------------------

    def create_backup(self) -> Path:
        return self.maintenance.create_backup()

    def restore_from_backup(self, backup_path: Path) -> None:
        self.maintenance.restore_from_backup(backup_path)

    def export_database(self, destination: Path) -> Path:
        return self.maintenance.export_database(destination)

    def check_integrity(self) -> bool:
        return self.maintenance.check_integrity()
