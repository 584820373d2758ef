"""Calendar-aware month arithmetic for credit periods.

Adding months keeps the day of month when the target month has it and clamps
to the target month's last day otherwise, so Jan 31 + 1 month is Feb 28 (or 29).
"""

import calendar
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def next_reset_at(last_reset: datetime) -> datetime:
    """When an account's next credit period starts; it is due once this is <= now."""
    return add_months(last_reset, 1)
