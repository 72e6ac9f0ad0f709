"""
Operator CLI for the JDM clinical store.

Usage:
    jdm-store init
    jdm-store import data/PatientX
    jdm-store verify
    jdm-store stats
    jdm-store backup
    jdm-store list-backups
    jdm-store restore data/backups/jdm_dashboard_backup_20240101_120000.db
    jdm-store export /tmp/copy.db
    jdm-store optimize
    jdm-store maintain
    jdm-store recover

Global options (--db, --backup-dir, --settings, --log-dir) go before the command.
"""

import argparse
import logging
import sqlite3
import sys
from pathlib import Path
from typing import List, Optional

from .config import load_settings
from .exceptions import StoreError
from .store import ClinicalStore
from .utils.error_formatting import format_error_for_cli, format_error
from .utils.logging_config import setup_logging
from .utils.paths import get_csv_dir

logger = logging.getLogger(__name__)


def _print_progress(message: str, percent: int) -> None:
    print(f"[{percent:3d}%] {message}")


# ============================================================
# Commands
# ============================================================

def cmd_init(store: ClinicalStore, args) -> int:
    print(f"Database ready: {store.db_path} (schema version {store.schema_version})")
    return 0


def cmd_import(store: ClinicalStore, args) -> int:
    directory = Path(args.directory) if args.directory else get_csv_dir()
    ok = store.import_from_directory(directory, progress=_print_progress)
    if not ok:
        if store.data_importer.last_error is not None:
            _, message = format_error_for_cli(store.data_importer.last_error, "import", {"file": str(directory)})
            print(message, file=sys.stderr)
        return 1
    for line in store.data_importer.last_report.summary_lines():
        print(line)
    return 0


def cmd_verify(store: ClinicalStore, args) -> int:
    if store.check_integrity():
        print("Database is healthy")
        return 0
    print("Database has issues (see log for details)", file=sys.stderr)
    return 1


def cmd_stats(store: ClinicalStore, args) -> int:
    stats = store.maintenance.get_database_stats()
    print("Database Statistics:")
    print(f"  File: {store.db_path}")
    print(f"  Schema version: {stats['schema_version']}")
    print(f"  Size: {stats['db_size_bytes']:,} bytes "
          f"({stats['page_count']} pages x {stats['page_size']} bytes)")
    print(f"  Cache size: {stats['cache_size']}")
    print(f"  Journal mode: {stats['journal_mode']}")
    print("  Row counts:")
    for table, count in sorted(stats["row_counts"].items()):
        print(f"    {table}: {count:,}")
    return 0


def cmd_backup(store: ClinicalStore, args) -> int:
    backup_path = store.create_backup()
    print(f"Backup created: {backup_path}")
    return 0


def cmd_list_backups(store: ClinicalStore, args) -> int:
    backups = store.maintenance.list_backups()
    if not backups:
        print(f"No backups in {store.backup_dir}")
        return 0
    for backup in backups:
        print(f"{backup.name}  {backup.stat().st_size:>12,} bytes")
    return 0


def cmd_restore(store: ClinicalStore, args) -> int:
    store.restore_from_backup(Path(args.backup))
    print(f"Database restored from {args.backup}")
    return 0


def cmd_export(store: ClinicalStore, args) -> int:
    destination = store.export_database(Path(args.destination))
    print(f"Database exported to {destination}")
    return 0


def cmd_optimize(store: ClinicalStore, args) -> int:
    store.maintenance.optimize_database()
    print("Database optimized")
    return 0


def cmd_maintain(store: ClinicalStore, args) -> int:
    store.maintenance.perform_maintenance()
    print("Maintenance completed (ANALYZE, VACUUM, REINDEX)")
    return 0


def cmd_recover(store: ClinicalStore, args) -> int:
    backup_path = store.maintenance.recover_database()
    print(f"Recovery completed (safety backup: {backup_path})")
    return 0


# ============================================================
# Entry point
# ============================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="jdm-store",
        description="JDM clinical store maintenance",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--db", type=str, help="Database file (default: data/jdm_dashboard.db)")
    parser.add_argument("--backup-dir", type=str, help="Backup directory (default: next to the database)")
    parser.add_argument("--settings", type=str, help="settings.json to load")
    parser.add_argument("--log-dir", type=str, help="Directory for log files")
    parser.add_argument("-v", "--verbose", action="store_true", help="Echo INFO logs to the console")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("init", help="Create the database and apply migrations").set_defaults(func=cmd_init)

    p = sub.add_parser("import", help="Import the CSV exports from a directory")
    p.add_argument("directory", nargs="?", help="Directory with the six CSV files")
    p.set_defaults(func=cmd_import)

    sub.add_parser("verify", help="Run integrity and foreign key checks").set_defaults(func=cmd_verify)
    sub.add_parser("stats", help="Show database statistics").set_defaults(func=cmd_stats)
    sub.add_parser("backup", help="Create a timestamped backup").set_defaults(func=cmd_backup)
    sub.add_parser("list-backups", help="List backups, newest first").set_defaults(func=cmd_list_backups)

    p = sub.add_parser("restore", help="Overwrite the database with a backup")
    p.add_argument("backup", help="Backup file")
    p.set_defaults(func=cmd_restore)

    p = sub.add_parser("export", help="Copy the database to a new file")
    p.add_argument("destination", help="Destination path (must not exist)")
    p.set_defaults(func=cmd_export)

    sub.add_parser("optimize", help="Apply tuning PRAGMAs, VACUUM and REINDEX").set_defaults(func=cmd_optimize)
    sub.add_parser("maintain", help="ANALYZE, VACUUM and REINDEX").set_defaults(func=cmd_maintain)
    sub.add_parser("recover", help="Back up, then try to repair the database").set_defaults(func=cmd_recover)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    setup_logging(
        log_dir=args.log_dir,
        console_level=logging.INFO if args.verbose else logging.WARNING,
    )

    store = None
    try:
        settings = load_settings(Path(args.settings) if args.settings else None)
        store = ClinicalStore(
            db_path=Path(args.db) if args.db else None,
            settings=settings,
            backup_dir=Path(args.backup_dir) if args.backup_dir else None,
        )
        store.initialize()
        return args.func(store, args)

    except (StoreError, sqlite3.Error, OSError, ValueError) as e:
        logger.error(format_error(e, args.command).format_for_log())
        title, message = format_error_for_cli(e, args.command)
        print(f"{title}: {message}", file=sys.stderr)
        return 1

    finally:
        if store is not None:
            store.close()


if __name__ == "__main__":
    sys.exit(main())
