from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from courtbook.db import with_transaction
from courtbook.errors import BookingError, NotFoundError, SlotConflict, ValidationError
from courtbook.intervals import DateWindow, Interval
from courtbook.models import ACTIVE_BOOKING_STATUSES, Booking, BookingStatus, Court
from courtbook.services.conflicts import CommitmentKind, CommitmentRef, ensure_slot_free
from courtbook.services.notifications import Notifier
from courtbook.time_utils import civil_date, civil_to_utc, hours_between, minute_to_hm, system_clock

logger = logging.getLogger(__name__)

STANDARD_EXPIRATION_HOURS = 48
SHORT_WINDOW_HOURS_BEFORE = 12
EXPIRY_WARNING_HOURS = 24
BOOKINGS_LINK = "/profile"


def get_active_court(session: Session, court_id: int) -> Court:
    court = session.get(Court, court_id)
    if not court or not court.is_active:
        raise NotFoundError("Court not found")
    return court


def ensure_not_past(day: str, start_minute: int, now) -> None:
    if civil_to_utc(day, start_minute) <= now:
        raise ValidationError("Cannot book a time slot in the past")


def get_booking_by_payment_session(session: Session, payment_session_id: str) -> Optional[Booking]:
    return session.exec(
        select(Booking).where(Booking.payment_session_id == payment_session_id)
    ).first()


def create_booking(
    session: Session,
    user_id: Optional[int],
    court_id: int,
    date: str,
    start_minute: int,
    end_minute: int,
    status: BookingStatus = BookingStatus.pending,
    payment_session_id: Optional[str] = None,
    clock=system_clock,
) -> Booking:
    """
    Book a court for one interval on one date.

    A ``payment_session_id`` makes the call idempotent: a retried payment
    callback gets the booking created by the first call back.
    """
    if status not in ACTIVE_BOOKING_STATUSES:
        raise ValidationError("New bookings must be pending or confirmed")
    window = DateWindow.single(date)
    interval = Interval(start_minute, end_minute)

    if payment_session_id:
        existing = get_booking_by_payment_session(session, payment_session_id)
        if existing:
            return existing

    get_active_court(session, court_id)
    now = clock.now()
    ensure_not_past(date, start_minute, now)
    try:
        ensure_slot_free(session, court_id, window, interval)
    except SlotConflict:
        existing = payment_session_id and get_booking_by_payment_session(session, payment_session_id)
        if existing:
            return existing
        raise

    def _write(tx: Session) -> Booking:
        if payment_session_id:
            paid = get_booking_by_payment_session(tx, payment_session_id)
            if paid:
                return paid
        ensure_slot_free(tx, court_id, window, interval)
        booking = Booking(
            court_id=court_id,
            user_id=user_id,
            date=date,
            start_minute=interval.start_minute,
            end_minute=interval.end_minute,
            status=status,
            payment_session_id=payment_session_id,
            created_at=now,
            updated_at=now,
        )
        tx.add(booking)
        tx.flush()
        return booking

    try:
        booking = with_transaction(session, _write)
    except IntegrityError:
        if payment_session_id:
            existing = get_booking_by_payment_session(session, payment_session_id)
            if existing:
                return existing
        raise
    session.refresh(booking)
    logger.info(f"Booking {booking.id} created on court {court_id} {date} {interval}")
    return booking


def reschedule_booking(
    session: Session,
    booking_id: int,
    new_court_id: int,
    new_start_minute: int,
    clock=system_clock,
) -> Booking:
    """Move a booking to another court or start time; its duration is kept."""
    booking = session.get(Booking, booking_id)
    if not booking:
        raise NotFoundError("Booking not found")
    if booking.status not in ACTIVE_BOOKING_STATUSES:
        raise BookingError(f"Cannot reschedule a {booking.status.value} booking")
    get_active_court(session, new_court_id)

    date = booking.date
    window = DateWindow.single(date)
    interval = Interval(booking.start_minute, booking.end_minute).shifted_to(new_start_minute)
    own = CommitmentRef(CommitmentKind.booking, booking_id)
    ensure_slot_free(session, new_court_id, window, interval, exclude=own)

    def _write(tx: Session) -> Booking:
        ensure_slot_free(tx, new_court_id, window, interval, exclude=own)
        current = tx.get(Booking, booking_id)
        if current.status not in ACTIVE_BOOKING_STATUSES:
            raise BookingError(f"Cannot reschedule a {current.status.value} booking")
        current.court_id = new_court_id
        current.start_minute = interval.start_minute
        current.end_minute = interval.end_minute
        current.updated_at = clock.now()
        tx.add(current)
        return current

    booking = with_transaction(session, _write)
    session.refresh(booking)
    logger.info(f"Booking {booking_id} moved to court {new_court_id} {date} {interval}")
    return booking


def cancel_booking(session: Session, booking_id: int, user_id: int, clock=system_clock) -> Booking:
    booking = session.get(Booking, booking_id)
    if not booking or booking.user_id != user_id:
        raise NotFoundError("Booking not found")
    if booking.status not in ACTIVE_BOOKING_STATUSES:
        raise BookingError(f"Booking is already {booking.status.value}")
    now = clock.now()
    booking.status = BookingStatus.cancelled
    booking.cancelled_at = now
    booking.updated_at = now
    session.add(booking)
    session.commit()
    session.refresh(booking)
    return booking


def confirm_booking(session: Session, booking_id: int, clock=system_clock) -> Booking:
    booking = session.get(Booking, booking_id)
    if not booking:
        raise NotFoundError("Booking not found")
    if booking.status != BookingStatus.pending:
        raise BookingError("Only pending bookings can be confirmed")
    booking.status = BookingStatus.confirmed
    booking.updated_at = clock.now()
    session.add(booking)
    session.commit()
    session.refresh(booking)
    return booking


def confirm_booking_payment(
    session: Session, payment_session_id: str, clock=system_clock
) -> Booking:
    """Mark the booking paid for by ``payment_session_id`` confirmed. Safe to repeat."""
    booking = get_booking_by_payment_session(session, payment_session_id)
    if not booking:
        raise NotFoundError("Booking not found for payment session")
    if booking.status == BookingStatus.confirmed:
        return booking
    if booking.status not in ACTIVE_BOOKING_STATUSES:
        raise BookingError(f"Booking was {booking.status.value} before payment completed")
    booking.status = BookingStatus.confirmed
    booking.updated_at = clock.now()
    session.add(booking)
    session.commit()
    session.refresh(booking)
    logger.info(f"Booking {booking.id} confirmed by payment {payment_session_id}")
    return booking


def booking_start(booking: Booking) -> datetime:
    return civil_to_utc(booking.date, booking.start_minute)


def expiration_deadline(booking: Booking) -> datetime:
    """
    Latest instant a pending booking may stay unconfirmed.

    A booking made less than 48 hours ahead of its slot must be confirmed
    12 hours before the slot starts; one made further ahead gets 48 hours
    from creation.
    """
    start = booking_start(booking)
    if hours_between(booking.created_at, start) <= STANDARD_EXPIRATION_HOURS:
        return start - timedelta(hours=SHORT_WINDOW_HOURS_BEFORE)
    return booking.created_at + timedelta(hours=STANDARD_EXPIRATION_HOURS)


@dataclass
class ExpirySweepResult:
    expired: List[int] = field(default_factory=list)
    warned: List[int] = field(default_factory=list)


def expire_pending_bookings(
    session: Session, now: datetime, notifier: Optional[Notifier] = None
) -> ExpirySweepResult:
    """
    Expire pending bookings past their confirmation deadline, freeing their
    slots, and warn owners whose deadline falls within the next 24 hours.
    """
    result = ExpirySweepResult()
    warn_hours = {}

    def _write(tx: Session) -> None:
        pending = tx.exec(
            select(Booking).where(
                Booking.status == BookingStatus.pending,
                Booking.expired_at.is_(None),
            )
        ).all()
        for booking in pending:
            hours_left = hours_between(now, expiration_deadline(booking))
            if hours_left <= 0:
                booking.status = BookingStatus.expired
                booking.expired_at = now
                booking.updated_at = now
                tx.add(booking)
                result.expired.append(booking.id)
            elif hours_left <= EXPIRY_WARNING_HOURS and not booking.expiration_warning_sent:
                booking.expiration_warning_sent = True
                tx.add(booking)
                result.warned.append(booking.id)
                warn_hours[booking.id] = hours_left

    with_transaction(session, _write)
    logger.info(
        f"Booking expiry sweep: {len(result.expired)} expired, {len(result.warned)} warned"
    )

    if notifier:
        for booking_id in result.expired + result.warned:
            booking = session.get(Booking, booking_id)
            if booking.user_id is None:
                continue
            court = session.get(Court, booking.court_id)
            court_name = court.name if court else "court"
            when = (
                f"{civil_date(booking_start(booking)).strftime('%d %b %Y')} "
                f"at {minute_to_hm(booking.start_minute)}"
            )
            if booking_id in warn_hours:
                notifier.notify(
                    user_id=booking.user_id,
                    type="booking_warning",
                    title="Booking Confirmation Pending",
                    message=(
                        f"Your booking for {court_name} on {when} will expire in "
                        f"{math.ceil(warn_hours[booking_id])} hours if not confirmed."
                    ),
                    link=BOOKINGS_LINK,
                )
            else:
                notifier.notify(
                    user_id=booking.user_id,
                    type="booking_expired",
                    title="Booking Expired",
                    message=(
                        f"Your booking for {court_name} on {when} has expired as it was "
                        "not confirmed in time."
                    ),
                    link=BOOKINGS_LINK,
                )
    return result
