"""
Time helpers shared by scheduling, sync and aggregation.

Every day-level decision in the tracker (is this dose today? is it overdue?)
is made on local dates in one reference timezone, never on raw instants.
Instants are persisted as naive UTC, matching the rest of the models.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Union
from zoneinfo import ZoneInfo

from config import Config


def reference_tz(name: Optional[str] = None) -> ZoneInfo:
    return ZoneInfo(name or Config.APP_TIMEZONE)


def utc_now() -> datetime:
    """Current instant, timezone-aware (UTC). Only called at the edges."""
    return datetime.now(timezone.utc)


def to_aware(value: datetime, tz: ZoneInfo) -> datetime:
    """Attach `tz` to naive datetimes; leave aware ones untouched."""
    if value.tzinfo is None:
        return value.replace(tzinfo=tz)
    return value


def local_date(value: datetime, tz: ZoneInfo) -> date:
    """Calendar date of an instant in the reference timezone.

    Naive datetimes are treated as UTC (that is how they are stored).
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(tz).date()


def combine_local(day: date, at: time, tz: ZoneInfo) -> datetime:
    return datetime.combine(day, at).replace(tzinfo=tz)


def parse_instant(value: Union[str, datetime, date], tz: ZoneInfo) -> datetime:
    """Parse a client/server timestamp into an aware datetime.

    Accepts ISO-8601 strings with or without offset (a trailing ``Z`` is UTC),
    bare dates (midnight in `tz`) and datetime/date objects. Naive values are
    interpreted in `tz`.
    """
    if isinstance(value, datetime):
        return to_aware(value, tz)
    if isinstance(value, date):
        return combine_local(value, time(0, 0), tz)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Invalid timestamp: {value!r}")

    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ValueError(f"Invalid timestamp: {value!r}") from None
    return to_aware(parsed, tz)


def parse_date(value: Union[str, date, datetime, None]) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        raise ValueError(f"Invalid date: {value!r}") from None


def canonical_instant(value: Union[str, datetime, date], tz: Optional[ZoneInfo] = None) -> str:
    """Canonical UTC string used in natural keys: ``YYYY-MM-DDTHH:MM:SSZ``.

    Two spellings of the same instant ("2026-03-01T08:00:00.000Z",
    "2026-03-01T08:00:00+00:00", a naive datetime read back from the
    database) map to the same string.
    """
    tz = tz or reference_tz()
    if isinstance(value, datetime) and value.tzinfo is None:
        # naive datetimes coming out of the store are UTC
        value = value.replace(tzinfo=timezone.utc)
    instant = parse_instant(value, tz).astimezone(timezone.utc)
    return instant.replace(microsecond=0).strftime("%Y-%m-%dT%H:%M:%SZ")


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def iso_utc(value: Optional[datetime]) -> Optional[str]:
    """Render a stored (naive UTC) datetime for JSON output."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def date_range(start: date, end: date):
    """Inclusive iteration over calendar dates."""
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)
