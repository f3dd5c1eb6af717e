"""
Replacement credit ledger.

A credit is minted together with the absence that earns it, is valid for
30 civil days from the moment it was earned, and is consumed by exactly one
confirmed replacement booking at a time.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlmodel import Session, select

from courtbook.errors import CreditUnavailable, NotFoundError
from courtbook.models import Absence, ReplacementCredit
from courtbook.services.notifications import Notifier
from courtbook.time_utils import add_calendar_days, civil_date

logger = logging.getLogger(__name__)

CREDIT_VALIDITY_DAYS = 30
EXPIRY_WARNING_DAYS = 3
CREDIT_EXPIRING = "credit_expiring"


def credit_expiry(from_instant: datetime) -> datetime:
    return add_calendar_days(from_instant, CREDIT_VALIDITY_DAYS)


def credit_is_available(credit: ReplacementCredit, now: datetime) -> bool:
    return credit.used_at is None and credit.expires_at > now


def issue_credit(
    session: Session, user_id: int, absence_id: int, from_instant: datetime
) -> ReplacementCredit:
    """Add a fresh credit to the caller's open transaction."""
    credit = ReplacementCredit(
        user_id=user_id,
        absence_id=absence_id,
        expires_at=credit_expiry(from_instant),
        used_at=None,
        created_at=from_instant,
    )
    session.add(credit)
    session.flush()
    logger.info(f"Issued replacement credit {credit.id} to user {user_id} for absence {absence_id}")
    return credit


def get_user_credit(session: Session, credit_id: int, user_id: int) -> ReplacementCredit:
    credit = session.get(ReplacementCredit, credit_id)
    if not credit or credit.user_id != user_id:
        raise NotFoundError("Replacement credit not found")
    return credit


def ensure_credit_available(credit: ReplacementCredit, now: datetime) -> None:
    if credit.used_at is not None:
        raise CreditUnavailable("Replacement credit has already been used")
    if credit.expires_at <= now:
        raise CreditUnavailable("Replacement credit has expired")


def redeem_credit(
    session: Session, credit_id: int, user_id: int, now: datetime
) -> ReplacementCredit:
    """
    Mark a credit used. Must run inside ``with_transaction``.

    The credit is re-read so the decision is made against the state the
    transaction sees, not whatever the caller loaded earlier.
    """
    credit = session.exec(
        select(ReplacementCredit).where(
            ReplacementCredit.id == credit_id,
            ReplacementCredit.user_id == user_id,
        )
    ).first()
    if not credit or not credit_is_available(credit, now):
        logger.warning(f"Credit {credit_id} of user {user_id} no longer available at redemption")
        raise CreditUnavailable("Credit is no longer available")
    credit.used_at = now
    session.add(credit)
    return credit


def refund_credit(session: Session, credit: ReplacementCredit) -> ReplacementCredit:
    credit.used_at = None
    session.add(credit)
    logger.info(f"Refunded replacement credit {credit.id}")
    return credit


def list_available_credits(
    session: Session, user_id: int, now: datetime
) -> List[ReplacementCredit]:
    return list(
        session.exec(
            select(ReplacementCredit)
            .where(
                ReplacementCredit.user_id == user_id,
                ReplacementCredit.used_at.is_(None),
                ReplacementCredit.expires_at > now,
            )
            .order_by(ReplacementCredit.expires_at.asc())
        ).all()
    )


def notify_expiring_credits(
    session: Session, now: datetime, notifier: Optional[Notifier]
) -> int:
    """
    Warn owners of unused credits that expire within the next three days.

    Each credit is warned about once; the ``(credit_id, type)`` unique key on
    notifications rejects repeats, so reruns of the sweep are harmless.
    """
    if notifier is None:
        return 0
    horizon = now + timedelta(days=EXPIRY_WARNING_DAYS)
    rows = session.exec(
        select(ReplacementCredit, Absence)
        .join(Absence, Absence.id == ReplacementCredit.absence_id)
        .where(
            ReplacementCredit.used_at.is_(None),
            ReplacementCredit.expires_at > now,
            ReplacementCredit.expires_at <= horizon,
        )
        .order_by(ReplacementCredit.expires_at.asc())
    ).all()

    created = 0
    for credit, absence in rows:
        lesson_day = civil_date(absence.lesson_at).strftime("%d %b %Y")
        sent = notifier.notify(
            user_id=credit.user_id,
            type=CREDIT_EXPIRING,
            title="Replacement Credit Expiring Soon",
            message=(
                f"Your replacement credit (from {lesson_day} absence) expires in "
                f"{EXPIRY_WARNING_DAYS} days. Book a lesson to use it."
            ),
            credit_id=credit.id,
        )
        if sent:
            created += 1
    logger.info(f"Credit expiry sweep: {len(rows)} expiring, {created} notified")
    return created
