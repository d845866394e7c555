"""Datetime helpers shared by the scheduling engine.

The engine reasons in timezone-aware datetimes. Columns store naive UTC, so
values are converted on the way in (``to_db``) and out (``from_db``).
"""

from datetime import date, datetime, time, timedelta
from typing import Optional

from dateutil import tz

UTC = tz.UTC


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime; naive input is taken to be UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def to_db(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return as_utc(value).replace(tzinfo=None)


def from_db(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=UTC)


def local_day_bounds(day: date, tzinfo) -> tuple[datetime, datetime]:
    """UTC instants covering ``day`` in ``tzinfo``: [midnight, next midnight)"""
    start = datetime.combine(day, time.min).replace(tzinfo=tzinfo)
    end = datetime.combine(day + timedelta(days=1), time.min).replace(tzinfo=tzinfo)
    return as_utc(start), as_utc(end)
