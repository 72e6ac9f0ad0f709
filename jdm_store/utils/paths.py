"""
Path resolver for jdm-store.

Rules
-----
* base_dir   → $JDM_STORE_HOME if set, otherwise the project root
* data_dir   → base_dir/data  (portable first); fallback ~/JDMDashboard/data
* logs_dir   → base_dir/logs  (portable first); fallback ~/JDMDashboard/logs
* db_path    → data_dir/jdm_dashboard.db
* backup_dir → data_dir/backups
* csv_dir    → data_dir/PatientX   (default location of the CSV exports)

Packaged resources (schema script, migrations) live next to the package and
are resolved with get_schema_file() / get_migrations_dir().

NEVER use os.getcwd() or relative Path("...") strings in runtime code;
always call one of the functions below.
"""

import os
from pathlib import Path

HOME_ENV_VAR = "JDM_STORE_HOME"
DB_FILENAME = "jdm_dashboard.db"

# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _get_base_dir() -> Path:
    """
    Return the application's root directory.

    - $JDM_STORE_HOME when set (tests, packaged installs)
    - dev / IDE: project root  (two levels up from jdm_store/utils/paths.py)
    """
    override = os.environ.get(HOME_ENV_VAR)
    if override:
        return Path(override).expanduser().resolve()
    return Path(__file__).resolve().parent.parent.parent


def _try_writable(path: Path) -> bool:
    """
    Return True if *path* can be created and used as a writable directory.

    Creates the directory if it does not exist.  Uses a canary-file probe
    so we detect permission issues (read-only install location).
    """
    try:
        path.mkdir(parents=True, exist_ok=True)
        canary = path / ".write_probe"
        canary.touch()
        canary.unlink()
        return True
    except OSError:
        return False


def _fallback_dir(sub: str) -> Path:
    """Return %APPDATA%/JDMDashboard/<sub> (Windows) or ~/JDMDashboard/<sub>."""
    appdata = os.environ.get("APPDATA") or str(Path.home())
    return Path(appdata) / "JDMDashboard" / sub


def _writable_or_fallback(sub: str) -> Path:
    primary = _get_base_dir() / sub
    if _try_writable(primary):
        return primary
    fallback = _fallback_dir(sub)
    fallback.mkdir(parents=True, exist_ok=True)
    return fallback


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def get_data_dir() -> Path:
    """
    Portable data directory.

    Priority:
      1. <base_dir>/data
      2. %APPDATA%/JDMDashboard/data  ← fallback if base_dir is read-only
    """
    return _writable_or_fallback("data")


def get_logs_dir() -> Path:
    """Portable logs directory (same priority rules as the data directory)."""
    return _writable_or_fallback("logs")


def get_db_path() -> Path:
    """Full path to the SQLite database file."""
    return get_data_dir() / DB_FILENAME


def get_backup_dir() -> Path:
    """Full path to the backup directory."""
    return get_data_dir() / "backups"


def get_csv_dir() -> Path:
    """Default directory holding the CSV exports to import."""
    return get_data_dir() / "PatientX"


def get_settings_file() -> Path:
    return get_data_dir() / "settings.json"


def get_schema_file() -> Path:
    """Packaged DDL script applied on first initialization."""
    return Path(__file__).resolve().parent.parent / "sql" / "schema.sql"


def get_migrations_dir() -> Path:
    """Packaged forward-only migration scripts (NNN_description.sql)."""
    return Path(__file__).resolve().parent.parent / "migrations"
