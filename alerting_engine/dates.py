"""
Date math and interval parsing.

Rules describe their look-back window with relative expressions such as
"now-6m" or "now-1d/d" and their schedule with intervals such as "5m".
All datetimes produced here are timezone-aware UTC.

Example:
    >>> now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
    >>> parse_date_math("now-6m", now)
    datetime.datetime(2024, 1, 1, 11, 54, tzinfo=datetime.timezone.utc)
    >>> parse_interval("5m")
    datetime.timedelta(seconds=300)
"""

import calendar
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from alerting_engine.errors import ConfigurationError

DATE_MATH_PATTERN = re.compile(
    r"^now(?P<ops>(?:[+-]\d+[smhdwMy])*)(?:/(?P<round>[smhdwMy]))?$"
)
DATE_MATH_OP_PATTERN = re.compile(r"([+-])(\d+)([smhdwMy])")
INTERVAL_PATTERN = re.compile(r"^(?P<value>\d+)(?P<unit>[smhd])$")

FIXED_UNITS = {
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
    "w": timedelta(weeks=1),
}


def utc_now() -> datetime:
    """Return the current time in UTC."""
    return datetime.now(timezone.utc)


def _ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _round_down(value: datetime, unit: str) -> datetime:
    if unit == "s":
        return value.replace(microsecond=0)
    if unit == "m":
        return value.replace(second=0, microsecond=0)
    if unit == "h":
        return value.replace(minute=0, second=0, microsecond=0)
    day_start = value.replace(hour=0, minute=0, second=0, microsecond=0)
    if unit == "d":
        return day_start
    if unit == "w":
        return day_start - timedelta(days=day_start.weekday())
    if unit == "M":
        return day_start.replace(day=1)
    return day_start.replace(month=1, day=1)


def parse_date_math(expression: str, now: datetime) -> datetime:
    """
    Resolve a date math expression against a reference time.

    Supports "now" followed by any number of +/- offsets in s, m, h, d, w,
    M (months) or y, an optional "/unit" rounding suffix, and absolute
    ISO 8601 timestamps.

    Args:
        expression: Date math expression (e.g. "now-6m", "now-1d/d").
        now: Reference time.

    Returns:
        datetime: Resolved UTC datetime.

    Raises:
        ConfigurationError: If the expression cannot be parsed.
    """
    text = expression.strip()
    match = DATE_MATH_PATTERN.match(text)
    if match is None:
        parsed = parse_timestamp(text)
        if parsed is None:
            raise ConfigurationError(f"Failed to parse date math expression: '{expression}'")
        return parsed

    result = _ensure_utc(now)
    for sign, amount, unit in DATE_MATH_OP_PATTERN.findall(match.group("ops")):
        count = int(amount) if sign == "+" else -int(amount)
        if unit == "M":
            result = _add_months(result, count)
        elif unit == "y":
            result = _add_months(result, count * 12)
        else:
            result = result + FIXED_UNITS[unit] * count

    if match.group("round"):
        result = _round_down(result, match.group("round"))
    return result


def parse_interval(interval: str) -> timedelta:
    """
    Parse a schedule interval such as "30s", "5m", "1h" or "1d".

    Raises:
        ConfigurationError: If the interval is malformed or zero.
    """
    match = INTERVAL_PATTERN.match(interval.strip())
    if match is None:
        raise ConfigurationError(f"Invalid interval: '{interval}'")
    value = int(match.group("value"))
    if value <= 0:
        raise ConfigurationError(f"Interval must be positive: '{interval}'")
    return FIXED_UNITS[match.group("unit")] * value


def get_unit_suffix(expression: str) -> str:
    """Return the trailing unit character of a date math expression."""
    text = expression.strip()
    return text[-1] if text else ""


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a timestamp value from an event.

    Accepts datetimes, ISO 8601 strings (with "Z" or an offset) and epoch
    milliseconds.

    Returns:
        Optional[datetime]: UTC datetime, or None if the value is not a timestamp.
    """
    if isinstance(value, datetime):
        return _ensure_utc(value)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return parse_timestamp(int(text))
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return _ensure_utc(datetime.fromisoformat(text))
        except ValueError:
            return None
    return None


def to_iso(value: datetime) -> str:
    """Format a datetime as an ISO 8601 UTC string with milliseconds."""
    return _ensure_utc(value).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def describe_duration(duration: timedelta) -> str:
    """
    Describe a duration in words, largest unit first.

    Example:
        >>> describe_duration(timedelta(minutes=19, seconds=30))
        '19 minutes 30 seconds'
    """
    total = int(duration.total_seconds())
    if total <= 0:
        return "0 seconds"
    parts = []
    for name, size in (("day", 86400), ("hour", 3600), ("minute", 60), ("second", 1)):
        amount, total = divmod(total, size)
        if amount:
            parts.append(f"{amount} {name}{'s' if amount != 1 else ''}")
    return " ".join(parts)
