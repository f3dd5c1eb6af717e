from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from courtbook.errors import ValidationError
from courtbook.time_utils import MINUTES_PER_DAY, minute_to_hm, parse_ymd


@dataclass(frozen=True)
class Interval:
    """Half-open ``[start_minute, end_minute)`` range within one civil day."""

    start_minute: int
    end_minute: int

    def __post_init__(self) -> None:
        if not 0 <= self.start_minute < MINUTES_PER_DAY:
            raise ValidationError("Start time must fall within the day")
        if not 0 < self.end_minute <= MINUTES_PER_DAY:
            raise ValidationError("End time must fall within the day")
        if self.end_minute <= self.start_minute:
            raise ValidationError("End time must be after start time")

    @property
    def duration(self) -> int:
        return self.end_minute - self.start_minute

    def overlaps(self, other: "Interval") -> bool:
        return self.start_minute < other.end_minute and self.end_minute > other.start_minute

    def shifted_to(self, start_minute: int) -> "Interval":
        return Interval(start_minute, start_minute + self.duration)

    def __str__(self) -> str:
        return f"{minute_to_hm(self.start_minute)}-{minute_to_hm(self.end_minute)}"


@dataclass(frozen=True)
class DateWindow:
    """
    The civil dates a commitment occupies.

    A single date is a window with ``start == end`` and no weekday filter.
    A weekly recurrence covers every ``weekday`` in ``[start, end]``; an open
    ``end`` means the window never closes. Dates are ``YYYY-MM-DD`` strings,
    which compare correctly as text.
    """

    start: str
    end: Optional[str]
    weekday: Optional[int] = None

    def __post_init__(self) -> None:
        try:
            first = parse_ymd(self.start)
            last = parse_ymd(self.end) if self.end is not None else None
        except ValueError:
            raise ValidationError("Invalid date format, expected YYYY-MM-DD")
        if last is not None and last < first:
            raise ValidationError("End date must not be before start date")
        if self.weekday is not None and not 0 <= self.weekday <= 6:
            raise ValidationError("Weekday must be between 0 (Monday) and 6 (Sunday)")

    @classmethod
    def single(cls, day: str) -> "DateWindow":
        return cls(start=day, end=day)

    @classmethod
    def weekly(cls, weekday: int, start: str, end: Optional[str] = None) -> "DateWindow":
        return cls(start=start, end=end, weekday=weekday)

    @property
    def is_single_day(self) -> bool:
        return self.start == self.end

    def effective_weekday(self) -> Optional[int]:
        if self.weekday is not None:
            return self.weekday
        if self.is_single_day:
            return parse_ymd(self.start).weekday()
        return None

    def contains(self, day: str) -> bool:
        if day < self.start:
            return False
        if self.end is not None and day > self.end:
            return False
        if self.weekday is not None and parse_ymd(day).weekday() != self.weekday:
            return False
        return True
