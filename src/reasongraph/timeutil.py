"""Time parsing for selectors and imported timestamps.

Accepts ISO dates and datetimes, "N units ago", and a few named
references ("today", "yesterday", "last week"). Everything returned is
timezone-aware UTC.
"""

import re
from datetime import datetime, timedelta, timezone

from dateutil import parser as dateparser
from dateutil.relativedelta import relativedelta

_AGO = re.compile(r"^(\d+)\s*(second|minute|hour|day|week|month|year)s?\s+ago$")

_UNITS = {
    "second": lambda n: timedelta(seconds=n),
    "minute": lambda n: timedelta(minutes=n),
    "hour": lambda n: timedelta(hours=n),
    "day": lambda n: timedelta(days=n),
    "week": lambda n: timedelta(weeks=n),
    "month": lambda n: relativedelta(months=n),
    "year": lambda n: relativedelta(years=n),
}


def parse_timestamp(value: str | datetime) -> datetime:
    """Parse an absolute timestamp and normalise it to UTC.

    Naive values are taken to be UTC already.

    Raises:
        ValueError: If the value is not a recognisable timestamp
    """
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = dateparser.isoparse(value)
        except (ValueError, OverflowError):
            try:
                parsed = dateparser.parse(value)
            except (ValueError, OverflowError, dateparser.ParserError) as e:
                raise ValueError(f"Cannot parse timestamp: {value}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_time_reference(ref: str, now: datetime | None = None) -> datetime:
    """Parse a human-friendly time reference.

    Examples:
        >>> parse_time_reference("2025-01-15")
        datetime(2025, 1, 15, 0, 0, tzinfo=timezone.utc)
        >>> parse_time_reference("3 days ago")  # relative to now
    """
    now = now or datetime.now(timezone.utc)
    text = ref.strip().lower()
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)

    named = {
        "now": now,
        "today": midnight,
        "yesterday": midnight - timedelta(days=1),
        "last week": now - timedelta(weeks=1),
        "last month": now - relativedelta(months=1),
    }
    if text in named:
        return named[text]

    match = _AGO.match(text)
    if match:
        amount, unit = int(match.group(1)), match.group(2)
        return now - _UNITS[unit](amount)

    return parse_timestamp(ref.strip())


def format_relative_time(dt: datetime, now: datetime | None = None) -> str:
    """Render a timestamp as "5 minutes ago" style text."""
    now = now or datetime.now(timezone.utc)
    seconds = int((now - dt).total_seconds())
    if seconds < 0:
        return "in the future"
    if seconds < 60:
        return "just now"

    for size, unit in ((31536000, "year"), (2592000, "month"), (604800, "week"),
                       (86400, "day"), (3600, "hour"), (60, "minute")):
        if seconds >= size:
            count = seconds // size
            return f"{count} {unit}{'s' if count != 1 else ''} ago"
    return "just now"
