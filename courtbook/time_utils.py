from __future__ import annotations

from datetime import date as date_type
from datetime import datetime, timedelta, timezone

# Civil calendar of the facility. Fixed offset, no DST.
CIVIL_TZ = timezone(timedelta(hours=8))

MINUTES_PER_DAY = 24 * 60


def parse_ymd(value: str) -> date_type:
    return datetime.strptime(value, "%Y-%m-%d").date()


def hm_to_minute(value: str) -> int:
    hour_str, minute_str = value.split(":")
    return int(hour_str) * 60 + int(minute_str)


def minute_to_hm(value: int) -> str:
    hour = value // 60
    minute = value % 60
    return f"{hour:02d}:{minute:02d}"


WEEKDAY_LABELS = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]


def weekday_label(weekday: int) -> str:
    if 0 <= weekday <= 6:
        return WEEKDAY_LABELS[weekday]
    return str(weekday)


def as_utc(instant: datetime) -> datetime:
    """Attach UTC to naive instants; convert aware ones."""
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


def to_naive_utc(instant: datetime) -> datetime:
    return as_utc(instant).replace(tzinfo=None)


def civil_date(instant: datetime) -> date_type:
    """Calendar date of ``instant`` as seen on the facility's wall clock."""
    return as_utc(instant).astimezone(CIVIL_TZ).date()


def civil_date_str(instant: datetime) -> str:
    return civil_date(instant).strftime("%Y-%m-%d")


def calendar_day_diff(from_instant: datetime, to_instant: datetime) -> int:
    """
    Whole civil days from ``from_instant`` to ``to_instant``.

    Both instants are reduced to their UTC+8 ``YYYY-MM-DD`` date before
    subtracting, so 23:59 and 00:01 on consecutive local days are one day
    apart regardless of how many hours separate them.
    """
    from_day = parse_ymd(civil_date_str(from_instant))
    to_day = parse_ymd(civil_date_str(to_instant))
    return (to_day - from_day).days


def add_calendar_days(instant: datetime, days: int) -> datetime:
    """Move ``instant`` by whole civil days, keeping its local wall-clock time."""
    local = as_utc(instant).astimezone(CIVIL_TZ)
    moved_day = local.date() + timedelta(days=days)
    moved = datetime.combine(moved_day, local.timetz())
    return to_naive_utc(moved)


def civil_to_utc(day: str, minute: int) -> datetime:
    """Naive UTC instant of ``minute`` past local midnight on civil ``day``."""
    local_midnight = datetime.combine(parse_ymd(day), datetime.min.time(), tzinfo=CIVIL_TZ)
    return to_naive_utc(local_midnight + timedelta(minutes=minute))


def hours_between(start: datetime, end: datetime) -> float:
    return (as_utc(end) - as_utc(start)).total_seconds() / 3600


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


class FixedClock:
    """Clock frozen at a given instant; tests move it with ``advance``."""

    def __init__(self, instant: datetime):
        self._instant = to_naive_utc(instant)

    def now(self) -> datetime:
        return self._instant

    def advance(self, **kwargs) -> None:
        self._instant = self._instant + timedelta(**kwargs)


system_clock = SystemClock()
