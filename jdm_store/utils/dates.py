"""
Timestamp handling.

The store keeps timestamps as text in ``DB_DATETIME_FORMAT``.  CSV exports use
a handful of day-first layouts; anything the explicit formats miss falls back
to ``dateutil`` with ``dayfirst=True``; partial values such as a bare year
or month name are rejected rather than completed from today.
"""
from datetime import datetime
from typing import Optional

from dateutil import parser as date_parser

DB_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"
BACKUP_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"

# Tried in order; first match wins
CSV_DATETIME_FORMATS = (
    "%d-%m-%Y %H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%d/%m/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M:%S",
    "%d-%m-%Y%H:%M",
    "%d-%m-%Y %H:%M",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%dT%H:%M:%S",
)

CSV_DATE_FORMATS = (
    "%d-%m-%Y",
    "%Y-%m-%d",
    "%d/%m/%Y",
    "%m/%d/%Y",
)

_FILL_DEFAULTS = (datetime(1900, 1, 1), datetime(1901, 2, 2))


def format_db_datetime(value: datetime) -> str:
    return value.strftime(DB_DATETIME_FORMAT)


def parse_db_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse a timestamp as stored on disk; tolerate a trailing fraction."""
    if value is None:
        return None
    text = value.strip()
    if not text:
        return None
    try:
        return datetime.strptime(text[:19], DB_DATETIME_FORMAT)
    except ValueError:
        return date_parser.isoparse(text)


def parse_csv_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse a CSV timestamp.

    Args:
        value: Raw field text (may be None or blank)

    Returns:
        datetime, or None when the field is blank or unparseable.

    Fractional seconds (``dd-MM-yyyyHH:mm.S``) are dropped before matching.
    Date-only values are accepted and land at midnight.
    """
    if value is None:
        return None
    text = value.strip()
    if not text:
        return None

    # "25-03-202314:30.5" style exports
    if "." in text and text.count(":") == 1:
        text = text.split(".", 1)[0]

    for fmt in CSV_DATETIME_FORMATS + CSV_DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue

    # Two different defaults expose any field dateutil had to invent
    try:
        first = date_parser.parse(text, dayfirst=True, default=_FILL_DEFAULTS[0])
        second = date_parser.parse(text, dayfirst=True, default=_FILL_DEFAULTS[1])
    except (ValueError, OverflowError):
        return None
    if first != second:
        return None
    return first


def parse_csv_date(value: Optional[str]) -> Optional[datetime]:
    """Parse a date-only CSV cell (CMAS header) to midnight of that day."""
    parsed = parse_csv_datetime(value)
    if parsed is None:
        return None
    return parsed.replace(hour=0, minute=0, second=0, microsecond=0)
