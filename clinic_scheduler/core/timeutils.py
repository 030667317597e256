"""Conversions between stored naive-UTC datetimes and clinic-local time."""

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from clinic_scheduler.core import config


def clinic_tz() -> ZoneInfo:
    return ZoneInfo(config.CLINIC_TIMEZONE)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc(value: datetime) -> datetime:
    """Normalize an incoming datetime to naive UTC.

    Naive values are taken as clinic-local wall-clock time.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=clinic_tz())
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def local_to_utc(day: date, wall_time: time) -> datetime:
    return to_utc(datetime.combine(day, wall_time))


def to_local(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc).astimezone(clinic_tz())


def local_date(value: datetime) -> date:
    return to_local(value).date()


def day_bounds(day: date) -> tuple[datetime, datetime]:
    return local_to_utc(day, time(0, 0)), local_to_utc(day + timedelta(days=1), time(0, 0))


def format_window(start: datetime, end: datetime) -> str:
    return f"{to_local(start):%H:%M} - {to_local(end):%H:%M}"


def as_utc(value: datetime | None) -> datetime | None:
    """Attach the UTC offset to a stored naive value for serialization."""
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)
