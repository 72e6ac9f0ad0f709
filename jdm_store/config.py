"""
Store configuration and constants.

Module-level constants carry the defaults; ``load_settings()`` overlays the
optional ``settings.json`` in the data directory.
"""
import json
import logging
from dataclasses import dataclass, asdict, fields, replace
from pathlib import Path
from typing import Optional

from .utils.paths import get_settings_file

logger = logging.getLogger(__name__)

# ============================================================
# Defaults
# ============================================================

# Pool
MAX_CONNECTIONS = 5
POOL_POLL_INTERVAL = 0.1        # seconds between acquire polls
HEALTH_CHECK_TIMEOUT = 5.0      # seconds allowed for the SELECT 1 probe

# Retry
MAX_RETRIES = 3
RETRY_DELAY = 1.0               # seconds, fixed

# Import
BATCH_SIZE = 1000
CHECK_SCORE_PATIENTS = True

# Backups
BACKUP_PREFIX = "jdm_dashboard_backup_"
MAX_BACKUPS = 5

# Patient the CMAS export belongs to (the wide CMAS.csv carries no patient column)
CMAS_PATIENT_ID = "55e2d179-d738-47d1-b88c-606833ce4d31"

# Per-connection PRAGMAs applied on open
PRAGMA_CONFIG = {
    "foreign_keys": "ON",
    "busy_timeout": 5000,
}

# Tuning PRAGMAs applied by MaintenanceManager.optimize_database()
TUNING_PRAGMAS = {
    "synchronous": "NORMAL",
    "cache_size": -2000,
}
TUNING_PAGE_SIZE = 4096


# ============================================================
# Settings
# ============================================================

@dataclass(frozen=True)
class StoreSettings:
    """Tunable knobs; every field can be overridden from settings.json."""
    max_connections: int = MAX_CONNECTIONS
    poll_interval: float = POOL_POLL_INTERVAL
    validation_timeout: float = HEALTH_CHECK_TIMEOUT
    max_retries: int = MAX_RETRIES
    retry_delay: float = RETRY_DELAY
    batch_size: int = BATCH_SIZE
    check_score_patients: bool = CHECK_SCORE_PATIENTS
    backup_prefix: str = BACKUP_PREFIX
    max_backups: int = MAX_BACKUPS
    cmas_patient_id: str = CMAS_PATIENT_ID

    def __post_init__(self):
        if self.max_connections < 1:
            raise ValueError("max_connections must be >= 1")
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.max_backups < 1:
            raise ValueError("max_backups must be >= 1")
        if self.poll_interval <= 0 or self.retry_delay < 0 or self.validation_timeout <= 0:
            raise ValueError("intervals and timeouts must be positive")
        if not self.backup_prefix:
            raise ValueError("backup_prefix cannot be empty")

    def to_dict(self) -> dict:
        return asdict(self)


def load_settings(settings_file: Optional[Path] = None) -> StoreSettings:
    """
    Load StoreSettings from settings.json.

    Missing file → defaults.  Malformed JSON, unknown keys or invalid values
    are logged and ignored (defaults are used for the offending part).
    """
    path = Path(settings_file) if settings_file is not None else get_settings_file()
    defaults = StoreSettings()

    if not path.exists():
        return defaults

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("Could not read settings %s (%s); using defaults", path, e)
        return defaults

    if not isinstance(raw, dict):
        logger.warning("Settings file %s is not a JSON object; using defaults", path)
        return defaults

    known = {f.name for f in fields(StoreSettings)}
    overrides = {k: v for k, v in raw.items() if k in known}
    for key in sorted(set(raw) - known):
        logger.warning("Ignoring unknown setting %r in %s", key, path)

    try:
        return replace(defaults, **overrides)
    except (TypeError, ValueError) as e:
        logger.warning("Invalid settings in %s (%s); using defaults", path, e)
        return defaults


def save_settings(settings: StoreSettings, settings_file: Optional[Path] = None) -> None:
    path = Path(settings_file) if settings_file is not None else get_settings_file()
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(settings.to_dict(), f, indent=2)
