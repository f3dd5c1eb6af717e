"""
Court occupancy checks.

A *commitment* is anything that holds a court for an interval on one or more
civil dates: an ad-hoc booking, a weekly recurring booking or a lesson
session. Each kind is read through a CommitmentSource, and the resolver
is written once against that interface.

Callers run the check twice: before opening the write transaction to fail
fast, and again inside ``with_transaction`` right before the write.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func, or_
from sqlmodel import Session, select

from courtbook.errors import SlotConflict
from courtbook.intervals import DateWindow, Interval
from courtbook.models import (
    ACTIVE_BOOKING_STATUSES,
    Booking,
    LessonEnrollment,
    LessonSession,
    LessonStatus,
    RecurringBooking,
    ReplacementBooking,
    ReplacementBookingStatus,
)
from courtbook.services.lesson_types import max_students_for
from courtbook.time_utils import parse_ymd

logger = logging.getLogger(__name__)


class CommitmentKind(str, Enum):
    booking = "booking"
    recurring_booking = "recurring_booking"
    lesson = "lesson"


CONFLICT_MESSAGES = {
    CommitmentKind.booking: "This time slot conflicts with an existing booking",
    CommitmentKind.recurring_booking: "This time slot conflicts with a recurring booking",
    CommitmentKind.lesson: "This time slot conflicts with a scheduled lesson",
}


@dataclass(frozen=True)
class CommitmentRef:
    kind: CommitmentKind
    id: int


@dataclass(frozen=True)
class Commitment:
    kind: CommitmentKind
    id: int
    court_id: int
    window: DateWindow
    interval: Interval

    @property
    def ref(self) -> CommitmentRef:
        return CommitmentRef(self.kind, self.id)

    def collides_with(self, window: DateWindow, interval: Interval) -> bool:
        if not self.interval.overlaps(interval):
            return False
        return _windows_intersect(self.window, window)


@dataclass(frozen=True)
class Conflict:
    commitment: Commitment

    @property
    def message(self) -> str:
        return CONFLICT_MESSAGES[self.commitment.kind]

    def to_dict(self) -> dict:
        return {
            "kind": self.commitment.kind.value,
            "id": self.commitment.id,
            "court_id": self.commitment.court_id,
            "start_minute": self.commitment.interval.start_minute,
            "end_minute": self.commitment.interval.end_minute,
            "message": self.message,
        }


def _windows_intersect(a: DateWindow, b: DateWindow) -> bool:
    if a.end is not None and a.end < b.start:
        return False
    if b.end is not None and b.end < a.start:
        return False
    a_day, b_day = a.effective_weekday(), b.effective_weekday()
    if a_day is not None and b_day is not None and a_day != b_day:
        return False
    if a.is_single_day:
        return a.contains(a.start) and b.contains(a.start)
    if b.is_single_day:
        return b.contains(b.start) and a.contains(b.start)
    # Two recurring windows on the same weekday with overlapping date ranges
    # share at least one date unless the overlap is shorter than a week and
    # misses that weekday.
    first = max(a.start, b.start)
    last = min((d for d in (a.end, b.end) if d is not None), default=None)
    if last is None:
        return True
    weekday = a_day if a_day is not None else b_day
    if weekday is None:
        return True
    span = (parse_ymd(last) - parse_ymd(first)).days
    if span >= 6:
        return True
    offset = (weekday - parse_ymd(first).weekday()) % 7
    return offset <= span


class CommitmentSource:
    kind: CommitmentKind

    def load(self, session: Session, court_id: int, window: DateWindow) -> List[Commitment]:
        raise NotImplementedError


def _date_bounds(column, window: DateWindow):
    clauses = [column >= window.start]
    if window.end is not None:
        clauses.append(column <= window.end)
    return clauses


def _on_weekday(day: str, window: DateWindow) -> bool:
    weekday = window.effective_weekday()
    return weekday is None or parse_ymd(day).weekday() == weekday


class BookingSource(CommitmentSource):
    kind = CommitmentKind.booking

    def load(self, session: Session, court_id: int, window: DateWindow) -> List[Commitment]:
        rows = session.exec(
            select(Booking).where(
                Booking.court_id == court_id,
                Booking.status.in_(ACTIVE_BOOKING_STATUSES),
                *_date_bounds(Booking.date, window),
            )
        ).all()
        return [
            Commitment(
                kind=self.kind,
                id=row.id,
                court_id=row.court_id,
                window=DateWindow.single(row.date),
                interval=Interval(row.start_minute, row.end_minute),
            )
            for row in rows
            if _on_weekday(row.date, window)
        ]


class RecurringBookingSource(CommitmentSource):
    kind = CommitmentKind.recurring_booking

    def load(self, session: Session, court_id: int, window: DateWindow) -> List[Commitment]:
        query = select(RecurringBooking).where(
            RecurringBooking.court_id == court_id,
            RecurringBooking.is_active == True,  # noqa: E712
            or_(RecurringBooking.end_date.is_(None), RecurringBooking.end_date >= window.start),
        )
        if window.end is not None:
            query = query.where(RecurringBooking.start_date <= window.end)
        weekday = window.effective_weekday()
        if weekday is not None:
            query = query.where(RecurringBooking.day_of_week == weekday)
        rows = session.exec(query).all()
        return [
            Commitment(
                kind=self.kind,
                id=row.id,
                court_id=row.court_id,
                window=DateWindow.weekly(row.day_of_week, row.start_date, row.end_date),
                interval=Interval(row.start_minute, row.end_minute),
            )
            for row in rows
        ]


class LessonSessionSource(CommitmentSource):
    kind = CommitmentKind.lesson

    def load(self, session: Session, court_id: int, window: DateWindow) -> List[Commitment]:
        rows = session.exec(
            select(LessonSession).where(
                LessonSession.court_id == court_id,
                LessonSession.status == LessonStatus.scheduled,
                *_date_bounds(LessonSession.date, window),
            )
        ).all()
        return [
            Commitment(
                kind=self.kind,
                id=row.id,
                court_id=row.court_id,
                window=DateWindow.single(row.date),
                interval=Interval(row.start_minute, row.end_minute),
            )
            for row in rows
            if _on_weekday(row.date, window)
        ]


DEFAULT_SOURCES: Tuple[CommitmentSource, ...] = (
    BookingSource(),
    RecurringBookingSource(),
    LessonSessionSource(),
)


def iter_commitments(
    session: Session,
    court_id: int,
    window: DateWindow,
    sources: Sequence[CommitmentSource] = DEFAULT_SOURCES,
) -> Iterable[Commitment]:
    for source in sources:
        yield from source.load(session, court_id, window)


def find_conflict(
    session: Session,
    court_id: int,
    window: DateWindow,
    interval: Interval,
    exclude: Optional[CommitmentRef] = None,
    sources: Sequence[CommitmentSource] = DEFAULT_SOURCES,
) -> Optional[Conflict]:
    """Return the first active commitment overlapping ``interval`` on ``window``."""
    for commitment in iter_commitments(session, court_id, window, sources):
        if exclude is not None and commitment.ref == exclude:
            continue
        if commitment.collides_with(window, interval):
            return Conflict(commitment)
    return None


def check_conflict(
    session: Session,
    court_id: int,
    date: str,
    start_minute: int,
    end_minute: int,
    day_of_week: Optional[int] = None,
    end_date: Optional[str] = None,
    exclude: Optional[CommitmentRef] = None,
) -> Optional[Conflict]:
    """
    Read-only probe for a proposed commitment.

    Without ``day_of_week`` the proposal is a one-off on ``date``; with it,
    ``date`` starts a weekly series that runs until ``end_date`` (open ended
    when omitted).
    """
    interval = Interval(start_minute, end_minute)
    if day_of_week is None:
        window = DateWindow.single(date)
    else:
        window = DateWindow.weekly(day_of_week, date, end_date)
    return find_conflict(session, court_id, window, interval, exclude=exclude)


def ensure_slot_free(
    session: Session,
    court_id: int,
    window: DateWindow,
    interval: Interval,
    exclude: Optional[CommitmentRef] = None,
) -> None:
    conflict = find_conflict(session, court_id, window, interval, exclude=exclude)
    if conflict is None:
        return
    logger.warning(
        f"Slot conflict on court {court_id} {window.start}..{window.end} {interval} "
        f"with {conflict.commitment.kind.value} {conflict.commitment.id}"
    )
    raise SlotConflict(conflict.message, details=conflict.to_dict())


@dataclass(frozen=True)
class Occupancy:
    enrolled: int
    replacements: int
    max_students: int

    @property
    def taken(self) -> int:
        return self.enrolled + self.replacements

    @property
    def free(self) -> int:
        return max(self.max_students - self.taken, 0)

    @property
    def is_full(self) -> bool:
        return self.taken >= self.max_students


def session_occupancy(session: Session, lesson: LessonSession) -> Occupancy:
    """Seats taken in ``lesson``: enrolled students plus confirmed replacements."""
    enrolled = session.exec(
        select(func.count())
        .select_from(LessonEnrollment)
        .where(LessonEnrollment.lesson_session_id == lesson.id)
    ).one()
    replacements = session.exec(
        select(func.count())
        .select_from(ReplacementBooking)
        .where(
            ReplacementBooking.lesson_session_id == lesson.id,
            ReplacementBooking.status == ReplacementBookingStatus.CONFIRMED,
        )
    ).one()
    return Occupancy(
        enrolled=int(enrolled),
        replacements=int(replacements),
        max_students=max_students_for(session, lesson.lesson_type),
    )
