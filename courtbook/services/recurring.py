from __future__ import annotations

import logging
from typing import Optional

from sqlmodel import Session

from courtbook.db import with_transaction
from courtbook.errors import BookingError, NotFoundError
from courtbook.intervals import DateWindow, Interval
from courtbook.models import RecurringBooking
from courtbook.services.bookings import get_active_court
from courtbook.services.conflicts import ensure_slot_free
from courtbook.time_utils import civil_date_str, system_clock, weekday_label

logger = logging.getLogger(__name__)


def create_recurring_booking(
    session: Session,
    court_id: int,
    day_of_week: int,
    start_minute: int,
    end_minute: int,
    start_date: str,
    end_date: Optional[str] = None,
    user_id: Optional[int] = None,
    label: str = "",
    clock=system_clock,
) -> RecurringBooking:
    """
    Reserve a court every ``day_of_week`` between ``start_date`` and ``end_date``.

    Every date of the window is checked against one-off bookings, lessons and
    other recurring bookings; one clash anywhere rejects the whole series.
    """
    window = DateWindow.weekly(day_of_week, start_date, end_date)
    interval = Interval(start_minute, end_minute)
    if end_date is not None and end_date < civil_date_str(clock.now()):
        raise BookingError("Recurring booking would end in the past")
    get_active_court(session, court_id)
    ensure_slot_free(session, court_id, window, interval)

    def _write(tx: Session) -> RecurringBooking:
        ensure_slot_free(tx, court_id, window, interval)
        recurring = RecurringBooking(
            court_id=court_id,
            user_id=user_id,
            label=label,
            day_of_week=day_of_week,
            start_minute=interval.start_minute,
            end_minute=interval.end_minute,
            start_date=start_date,
            end_date=end_date,
            is_active=True,
            created_at=clock.now(),
        )
        tx.add(recurring)
        tx.flush()
        return recurring

    recurring = with_transaction(session, _write)
    session.refresh(recurring)
    logger.info(
        f"Recurring booking {recurring.id} on court {court_id} every "
        f"{weekday_label(day_of_week)} {interval} from {start_date}"
    )
    return recurring


def deactivate_recurring_booking(session: Session, recurring_id: int) -> RecurringBooking:
    recurring = session.get(RecurringBooking, recurring_id)
    if not recurring:
        raise NotFoundError("Recurring booking not found")
    if not recurring.is_active:
        raise BookingError("Recurring booking is already inactive")
    recurring.is_active = False
    session.add(recurring)
    session.commit()
    session.refresh(recurring)
    return recurring
