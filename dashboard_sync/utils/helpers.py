"""
Helper Utilities Module
Common utility functions used across the sync engine.
"""

import calendar
from datetime import date, datetime
from typing import Any, Iterator, List, Optional, Tuple, Union

import pytz
from dateutil import parser as date_parser


def utcnow() -> datetime:
    """Current time as a naive UTC datetime (the storage convention)."""
    return datetime.now(pytz.UTC).replace(tzinfo=None)


def parse_utc_datetime(value: Union[str, datetime, None]) -> Optional[datetime]:
    """
    Parse a timestamp and normalize it to naive UTC.

    A value without an offset (e.g. '2025-01-31 14:05:00') is read as UTC.
    A value with an offset is converted to UTC.

    Args:
        value: Datetime string or datetime

    Returns:
        Naive UTC datetime or None if the value is empty or unparseable
    """
    if value is None:
        return None

    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            parsed = date_parser.parse(text)
        except (ValueError, TypeError, OverflowError):
            return None

    if parsed.tzinfo is None:
        return parsed
    return parsed.astimezone(pytz.UTC).replace(tzinfo=None)


def to_int(value: Any, default: int = 0) -> int:
    """Coerce a loosely typed value to int."""
    if value is None or value == '':
        return default
    try:
        return int(float(value))
    except (ValueError, TypeError):
        return default


def to_float(value: Any, default: float = 0.0) -> float:
    """Coerce a loosely typed value to float."""
    if value is None or value == '':
        return default
    try:
        return float(value)
    except (ValueError, TypeError):
        return default


def to_str(value: Any) -> str:
    """Coerce a value to a stripped string, empty for None."""
    if value is None:
        return ''
    return str(value).strip()


def chunk_list(lst: List[Any], chunk_size: int) -> List[List[Any]]:
    """
    Split a list into chunks of specified size.

    Args:
        lst: List to split
        chunk_size: Size of each chunk

    Returns:
        List of chunks
    """
    return [lst[i:i + chunk_size] for i in range(0, len(lst), chunk_size)]


def sanitize_string(text: Optional[str], max_length: int = None) -> Optional[str]:
    """
    Strip a string and optionally truncate it.

    Args:
        text: Input string
        max_length: Maximum length (optional)

    Returns:
        Sanitized string
    """
    if text is None:
        return None

    text = str(text).strip()

    if max_length and len(text) > max_length:
        text = text[:max_length]

    return text


def percentage(part: int, whole: int) -> float:
    """Percentage rounded to 2 decimals, 0 when whole is 0."""
    if not whole:
        return 0.0
    return round(part / whole * 100, 2)


# ========================================
# Calendar Month Helpers
# ========================================

def iter_months(start: date, end: date) -> Iterator[Tuple[int, int]]:
    """
    Yield (year, month) pairs covering [start, end] inclusive.

    Args:
        start: First date of the range
        end: Last date of the range

    Yields:
        (year, month) tuples in ascending order
    """
    year, month = start.year, start.month
    while (year, month) <= (end.year, end.month):
        yield year, month
        month += 1
        if month > 12:
            year += 1
            month = 1


def month_key(year: int, month: int) -> str:
    """Format a calendar month as 'YYYY-MM'."""
    return f"{year:04d}-{month:02d}"


def month_window(year: int, month: int, end: date = None) -> Tuple[datetime, datetime]:
    """
    Get the first and last second of a calendar month.

    When the range end falls inside the month, the window is capped at
    that day.

    Args:
        year: Year
        month: Month (1-12)
        end: Optional range end date

    Returns:
        (window_start, window_end) naive datetimes
    """
    last_day = calendar.monthrange(year, month)[1]
    if end is not None and (end.year, end.month) == (year, month):
        last_day = min(last_day, end.day)

    window_start = datetime(year, month, 1, 0, 0, 0)
    window_end = datetime(year, month, last_day, 23, 59, 59)
    return window_start, window_end


def format_api_datetime(value: datetime) -> str:
    """Format a datetime the way the reporting API expects date filters."""
    return value.strftime('%Y-%m-%d %H:%M:%S')


def parse_date_arg(value: Union[str, date, None]) -> Optional[date]:
    """
    Parse a 'YYYY-MM-DD' (or any ISO-like) date argument.

    Raises:
        ValueError: If the value cannot be parsed
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date_parser.parse(str(value)).date()
