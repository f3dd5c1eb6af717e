"""
Redeeming replacement credits into seats of other lesson sessions.

Booking follows the same check, transact, re-check protocol as court
commitments: seat, credit and duplicate checks run once up front and again
inside the write transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from courtbook.db import with_transaction
from courtbook.errors import (
    AlreadyBooked,
    CreditUnavailable,
    NotFoundError,
    SlotFull,
    ValidationError,
)
from courtbook.models import (
    Absence,
    Court,
    LessonEnrollment,
    LessonSession,
    LessonStatus,
    ReplacementBooking,
    ReplacementBookingStatus,
    ReplacementCredit,
)
from courtbook.services.absences import lesson_start, page_bounds
from courtbook.services.conflicts import Occupancy, session_occupancy
from courtbook.services.credits import (
    ensure_credit_available,
    get_user_credit,
    redeem_credit,
    refund_credit,
)
from courtbook.services.notifications import Notifier
from courtbook.time_utils import civil_date, hours_between, minute_to_hm, system_clock

logger = logging.getLogger(__name__)

REFUND_CUTOFF_HOURS = 24
AVAILABLE_SESSIONS_LIMIT = 20


@dataclass(frozen=True)
class AvailableSession:
    lesson: LessonSession
    occupancy: Occupancy


def _origin_lesson_type(session: Session, credit: ReplacementCredit) -> Optional[str]:
    row = session.exec(
        select(LessonSession.lesson_type)
        .join(Absence, Absence.lesson_session_id == LessonSession.id)
        .where(Absence.id == credit.absence_id)
    ).first()
    return row


def _is_enrolled(session: Session, lesson_session_id: int, user_id: int) -> bool:
    return session.get(LessonEnrollment, (lesson_session_id, user_id)) is not None


def _confirmed_booking_for(
    session: Session, user_id: int, lesson_session_id: int
) -> Optional[ReplacementBooking]:
    return session.exec(
        select(ReplacementBooking).where(
            ReplacementBooking.user_id == user_id,
            ReplacementBooking.lesson_session_id == lesson_session_id,
            ReplacementBooking.status == ReplacementBookingStatus.CONFIRMED,
        )
    ).first()


def _ensure_seat(session: Session, lesson: LessonSession) -> Occupancy:
    occupancy = session_occupancy(session, lesson)
    if occupancy.is_full:
        logger.warning(
            f"Lesson {lesson.id} full: {occupancy.taken}/{occupancy.max_students} seats taken"
        )
        raise SlotFull("No available slots in this session")
    return occupancy


def book_replacement(
    session: Session,
    user_id: int,
    credit_id: int,
    lesson_session_id: int,
    clock=system_clock,
    notifier: Optional[Notifier] = None,
) -> ReplacementBooking:
    now = clock.now()

    credit = get_user_credit(session, credit_id, user_id)
    ensure_credit_available(credit, now)

    lesson = session.get(LessonSession, lesson_session_id)
    if not lesson:
        raise NotFoundError("Lesson session not found")
    if lesson.status != LessonStatus.scheduled or lesson_start(lesson) <= now:
        raise ValidationError("Lesson session is not open for replacement")
    if _origin_lesson_type(session, credit) != lesson.lesson_type:
        raise ValidationError("Replacement must be for the same lesson type")
    if _is_enrolled(session, lesson_session_id, user_id):
        raise AlreadyBooked("You are already enrolled in this session")
    _ensure_seat(session, lesson)

    def _write(tx: Session) -> ReplacementBooking:
        current = tx.get(LessonSession, lesson_session_id)
        if current is None or current.status != LessonStatus.scheduled:
            raise ValidationError("Lesson session is not open for replacement")
        _ensure_seat(tx, current)
        redeem_credit(tx, credit_id, user_id, now)
        if _confirmed_booking_for(tx, user_id, lesson_session_id):
            raise AlreadyBooked("Already booked for this session")
        booking = ReplacementBooking(
            user_id=user_id,
            replacement_credit_id=credit_id,
            lesson_session_id=lesson_session_id,
            status=ReplacementBookingStatus.CONFIRMED,
            created_at=now,
        )
        tx.add(booking)
        tx.flush()
        return booking

    try:
        booking = with_transaction(session, _write)
    except IntegrityError as exc:
        if "replacement_credit_id" in str(exc.orig) or "active_credit" in str(exc.orig):
            raise CreditUnavailable("This credit has already been used for a booking")
        raise AlreadyBooked("Already booked for this session")

    session.refresh(booking)
    logger.info(
        f"User {user_id} booked replacement {booking.id} into lesson {lesson_session_id} "
        f"with credit {credit_id}"
    )

    if notifier:
        court = session.get(Court, lesson.court_id)
        lesson_day = civil_date(lesson_start(lesson)).strftime("%d %b %Y")
        notifier.notify(
            user_id=user_id,
            type="replacement_booked",
            title="Replacement Session Booked",
            message=(
                f"Your replacement session on {lesson_day} at {minute_to_hm(lesson.start_minute)} "
                f"({court.name if court else 'court'}) has been confirmed. 1 credit used."
            ),
        )
    return booking


def cancel_replacement(
    session: Session,
    booking_id: int,
    user_id: int,
    clock=system_clock,
    notifier: Optional[Notifier] = None,
) -> Tuple[ReplacementBooking, bool]:
    """
    Cancel a confirmed replacement booking.

    The credit comes back only when the session is more than 24 hours away
    and the credit itself has not expired; otherwise it stays consumed.
    """
    now = clock.now()
    booking = session.get(ReplacementBooking, booking_id)
    if (
        not booking
        or booking.user_id != user_id
        or booking.status != ReplacementBookingStatus.CONFIRMED
    ):
        raise NotFoundError("Booking not found or not cancellable")

    def _write(tx: Session) -> Tuple[ReplacementBooking, bool]:
        current = tx.get(ReplacementBooking, booking_id)
        if current is None or current.status != ReplacementBookingStatus.CONFIRMED:
            raise NotFoundError("Booking not found or not cancellable")
        lesson = tx.get(LessonSession, current.lesson_session_id)
        credit = tx.get(ReplacementCredit, current.replacement_credit_id)
        hours_until_session = hours_between(now, lesson_start(lesson))
        credit_returned = hours_until_session > REFUND_CUTOFF_HOURS and credit.expires_at > now

        current.status = ReplacementBookingStatus.CANCELLED
        current.cancelled_at = now
        tx.add(current)
        if credit_returned:
            refund_credit(tx, credit)
        return current, credit_returned

    booking, credit_returned = with_transaction(session, _write)
    session.refresh(booking)
    logger.info(
        f"Replacement {booking_id} cancelled by user {user_id}, credit_returned={credit_returned}"
    )

    if notifier:
        lesson = session.get(LessonSession, booking.lesson_session_id)
        lesson_day = civil_date(lesson_start(lesson)).strftime("%d %b %Y")
        if credit_returned:
            message = f"Your replacement for {lesson_day} has been cancelled. Credit returned."
        else:
            message = (
                f"Your replacement for {lesson_day} has been cancelled. Credit was not "
                f"returned (within {REFUND_CUTOFF_HOURS} hours of session)."
            )
        notifier.notify(
            user_id=user_id,
            type="replacement_cancelled",
            title="Replacement Cancelled",
            message=message,
        )
    return booking, credit_returned


def list_available_sessions(
    session: Session,
    user_id: int,
    lesson_type: Optional[str] = None,
    clock=system_clock,
) -> List[AvailableSession]:
    """Future scheduled sessions with a free seat the user could replace into."""
    now = clock.now()
    enrolled = select(LessonEnrollment.lesson_session_id).where(LessonEnrollment.user_id == user_id)
    replacing = select(ReplacementBooking.lesson_session_id).where(
        ReplacementBooking.user_id == user_id,
        ReplacementBooking.status == ReplacementBookingStatus.CONFIRMED,
    )
    query = select(LessonSession).where(
        LessonSession.status == LessonStatus.scheduled,
        LessonSession.date >= civil_date(now).strftime("%Y-%m-%d"),
        LessonSession.id.not_in(enrolled),
        LessonSession.id.not_in(replacing),
    )
    if lesson_type:
        query = query.where(LessonSession.lesson_type == lesson_type)
    query = query.order_by(LessonSession.date.asc(), LessonSession.start_minute.asc())

    available: List[AvailableSession] = []
    for lesson in session.exec(query).all():
        if lesson_start(lesson) <= now:
            continue
        occupancy = session_occupancy(session, lesson)
        if occupancy.free <= 0:
            continue
        available.append(AvailableSession(lesson=lesson, occupancy=occupancy))
        if len(available) >= AVAILABLE_SESSIONS_LIMIT:
            break
    return available


def list_replacement_bookings(
    session: Session, user_id: int
) -> List[Tuple[ReplacementBooking, LessonSession]]:
    rows = session.exec(
        select(ReplacementBooking, LessonSession)
        .join(LessonSession, LessonSession.id == ReplacementBooking.lesson_session_id)
        .where(ReplacementBooking.user_id == user_id)
        .order_by(LessonSession.date.desc(), LessonSession.start_minute.desc())
    ).all()
    return [(booking, lesson) for booking, lesson in rows]



def list_replacements(
    session: Session,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> Tuple[List[Tuple[ReplacementBooking, LessonSession]], int]:
    """Admin view of every replacement booking, newest first, with the total count."""
    offset, limit = page_bounds(page, limit)
    filters = []
    if status:
        try:
            filters.append(ReplacementBooking.status == ReplacementBookingStatus(status))
        except ValueError:
            raise ValidationError("Invalid status filter")

    rows = session.exec(
        select(ReplacementBooking, LessonSession)
        .join(LessonSession, LessonSession.id == ReplacementBooking.lesson_session_id)
        .where(*filters)
        .order_by(ReplacementBooking.created_at.desc(), ReplacementBooking.id.desc())
        .offset(offset)
        .limit(limit)
    ).all()
    total = session.exec(
        select(func.count()).select_from(ReplacementBooking).where(*filters)
    ).one()
    return [(booking, lesson) for booking, lesson in rows], total
