from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Tuple

from sqlmodel import Session, select

from courtbook.db import with_transaction
from courtbook.errors import BookingError, NotFoundError, SlotFull, ValidationError
from courtbook.intervals import DateWindow, Interval
from courtbook.models import (
    LessonEnrollment,
    LessonSession,
    LessonStatus,
    ReplacementBooking,
    ReplacementBookingStatus,
    ReplacementCredit,
    User,
)
from courtbook.services.bookings import ensure_not_past, get_active_court
from courtbook.services.conflicts import CommitmentKind, CommitmentRef, ensure_slot_free
from courtbook.services.credits import refund_credit
from courtbook.services.lesson_types import get_lesson_type
from courtbook.services.notifications import Notifier
from courtbook.time_utils import civil_date, civil_to_utc, system_clock

logger = logging.getLogger(__name__)


def create_lesson(
    session: Session,
    court_id: int,
    lesson_type: str,
    date: str,
    start_minute: int,
    end_minute: int,
    student_ids: Iterable[int] = (),
    coach_id: Optional[int] = None,
    clock=system_clock,
) -> LessonSession:
    window = DateWindow.single(date)
    interval = Interval(start_minute, end_minute)
    students = sorted(set(student_ids))

    catalog_entry = get_lesson_type(session, lesson_type)
    if not catalog_entry or not catalog_entry.is_active:
        raise ValidationError("Unknown lesson type")
    if len(students) > catalog_entry.max_students:
        raise SlotFull(
            f"A {catalog_entry.name} lesson takes at most {catalog_entry.max_students} students"
        )
    for student_id in students:
        if session.get(User, student_id) is None:
            raise NotFoundError(f"Student {student_id} not found")
    get_active_court(session, court_id)
    now = clock.now()
    ensure_not_past(date, start_minute, now)
    ensure_slot_free(session, court_id, window, interval)

    def _write(tx: Session) -> LessonSession:
        ensure_slot_free(tx, court_id, window, interval)
        lesson = LessonSession(
            court_id=court_id,
            coach_id=coach_id,
            lesson_type=lesson_type,
            date=date,
            start_minute=interval.start_minute,
            end_minute=interval.end_minute,
            status=LessonStatus.scheduled,
            created_at=now,
            updated_at=now,
        )
        tx.add(lesson)
        tx.flush()
        for student_id in students:
            tx.add(LessonEnrollment(lesson_session_id=lesson.id, user_id=student_id))
        return lesson

    lesson = with_transaction(session, _write)
    session.refresh(lesson)
    logger.info(f"Lesson {lesson.id} ({lesson_type}) scheduled on court {court_id} {date} {interval}")
    return lesson


def reschedule_lesson(
    session: Session,
    lesson_id: int,
    new_court_id: int,
    new_start_minute: int,
    clock=system_clock,
) -> LessonSession:
    lesson = session.get(LessonSession, lesson_id)
    if not lesson:
        raise NotFoundError("Lesson not found")
    if lesson.status != LessonStatus.scheduled:
        raise BookingError("Only scheduled lessons can be rescheduled")
    get_active_court(session, new_court_id)

    date = lesson.date
    window = DateWindow.single(date)
    interval = Interval(lesson.start_minute, lesson.end_minute).shifted_to(new_start_minute)
    ensure_not_past(date, interval.start_minute, clock.now())
    own = CommitmentRef(CommitmentKind.lesson, lesson_id)
    ensure_slot_free(session, new_court_id, window, interval, exclude=own)

    def _write(tx: Session) -> LessonSession:
        ensure_slot_free(tx, new_court_id, window, interval, exclude=own)
        current = tx.get(LessonSession, lesson_id)
        if current.status != LessonStatus.scheduled:
            raise BookingError("Only scheduled lessons can be rescheduled")
        current.court_id = new_court_id
        current.start_minute = interval.start_minute
        current.end_minute = interval.end_minute
        current.updated_at = clock.now()
        tx.add(current)
        return current

    lesson = with_transaction(session, _write)
    session.refresh(lesson)
    logger.info(f"Lesson {lesson_id} moved to court {new_court_id} {date} {interval}")
    return lesson


def _settle_replacements(
    tx: Session, lesson_id: int, status: ReplacementBookingStatus, now
) -> List[ReplacementBooking]:
    """Close the confirmed replacement seats of a lesson leaving the schedule."""
    bookings = tx.exec(
        select(ReplacementBooking).where(
            ReplacementBooking.lesson_session_id == lesson_id,
            ReplacementBooking.status == ReplacementBookingStatus.CONFIRMED,
        )
    ).all()
    for booking in bookings:
        booking.status = status
        if status == ReplacementBookingStatus.CANCELLED:
            booking.cancelled_at = now
            refund_credit(tx, tx.get(ReplacementCredit, booking.replacement_credit_id))
        tx.add(booking)
    return list(bookings)


def _set_status(
    session: Session,
    lesson_id: int,
    status: LessonStatus,
    replacement_status: ReplacementBookingStatus,
    clock,
) -> Tuple[LessonSession, List[ReplacementBooking]]:
    lesson = session.get(LessonSession, lesson_id)
    if not lesson:
        raise NotFoundError("Lesson not found")
    now = clock.now()

    def _write(tx: Session) -> Tuple[LessonSession, List[ReplacementBooking]]:
        current = tx.get(LessonSession, lesson_id)
        if current.status == status:
            raise BookingError(f"Lesson is already {status.value}")
        if current.status == LessonStatus.cancelled:
            raise BookingError("Cannot change a cancelled lesson")
        current.status = status
        current.updated_at = now
        tx.add(current)
        return current, _settle_replacements(tx, lesson_id, replacement_status, now)

    lesson, settled = with_transaction(session, _write)
    session.refresh(lesson)
    logger.info(f"Lesson {lesson_id} {status.value}, {len(settled)} replacement seats settled")
    return lesson, settled


def cancel_lesson(
    session: Session,
    lesson_id: int,
    clock=system_clock,
    notifier: Optional[Notifier] = None,
) -> LessonSession:
    """Cancel a lesson; replacement seats in it are cancelled and their credits returned."""
    lesson, refunded = _set_status(
        session, lesson_id, LessonStatus.cancelled, ReplacementBookingStatus.CANCELLED, clock
    )
    if notifier:
        lesson_day = civil_date(civil_to_utc(lesson.date, lesson.start_minute)).strftime("%d %b %Y")
        for booking in refunded:
            notifier.notify(
                user_id=booking.user_id,
                type="replacement_cancelled",
                title="Replacement Cancelled",
                message=f"The {lesson_day} lesson you were replacing into was cancelled. Credit returned.",
            )
    return lesson


def complete_lesson(session: Session, lesson_id: int, clock=system_clock) -> LessonSession:
    lesson, _ = _set_status(
        session, lesson_id, LessonStatus.completed, ReplacementBookingStatus.COMPLETED, clock
    )
    return lesson
