"""
Logging for jdm-store.

Every module logs through ``logging.getLogger(__name__)``; those loggers sit
under the ``jdm_store`` package logger, which ``setup_logging`` equips with:

- a daily, size-rotated file (``<app>_YYYYMMDD.log``) receiving INFO and up,
  so skipped import rows and failed lock probes leave a trail
- a stderr handler whose threshold the CLI raises or lowers with ``-v``
"""
import logging
import logging.handlers
from pathlib import Path
from datetime import datetime

APP_LOGGER_NAME = "jdm_store"

LOG_FILE_MAX_BYTES = 5 * 1024 * 1024
LOG_FILE_BACKUPS = 3
FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
CONSOLE_FORMAT = "%(levelname)s: %(message)s"


def _resolve_log_dir(log_dir: "str | Path | None") -> Path:
    if log_dir is None:
        from .paths import get_logs_dir  # noqa: PLC0415
        return get_logs_dir()
    return Path(log_dir)


def _rotating_file_handler(log_dir: Path, app_name: str) -> logging.Handler:
    stamp = datetime.now().strftime("%Y%m%d")
    handler = logging.handlers.RotatingFileHandler(
        log_dir / f"{app_name}_{stamp}.log",
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUPS,
        encoding="utf-8",
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    return handler


def _console_handler(level: int) -> logging.Handler:
    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    return handler


def setup_logging(
    log_dir: "str | Path | None" = None,
    app_name: str = APP_LOGGER_NAME,
    console_level: int = logging.WARNING,
) -> logging.Logger:
    """
    Attach the file and console handlers to the *app_name* logger.

    Calling it again returns the already configured logger untouched, so the
    CLI and library callers can both invoke it safely.

    Args:
        log_dir: Where log files go; defaults to ``utils.paths.get_logs_dir()``
        app_name: Logger name, also the log file prefix
        console_level: Minimum level echoed to stderr
    """
    logger = logging.getLogger(app_name)
    if logger.handlers:
        return logger

    log_path = _resolve_log_dir(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    logger.setLevel(logging.DEBUG)
    logger.addHandler(_rotating_file_handler(log_path, app_name))
    logger.addHandler(_console_handler(console_level))
    return logger
