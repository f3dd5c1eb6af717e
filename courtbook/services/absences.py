from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from courtbook.db import with_transaction
from courtbook.errors import ConflictError, DuplicateAbsence, NotFoundError, ValidationError
from courtbook.models import (
    Absence,
    AbsenceStatus,
    AbsenceType,
    LessonEnrollment,
    LessonSession,
    ReplacementCredit,
)
from courtbook.services.credits import issue_credit
from courtbook.services.notifications import Notifier
from courtbook.time_utils import calendar_day_diff, civil_date, civil_to_utc, system_clock

logger = logging.getLogger(__name__)

APPLY_NOTICE_DAYS = 7
LATE_NOTICE_DAYS = 3
MAX_PROOF_URL_LENGTH = 2048
MAX_TEXT_LENGTH = 1000


def classify_absence(applied_at: datetime, lesson_at: datetime) -> AbsenceType:
    """
    Classify an absence by how many civil days ahead of the lesson it was filed.

    >= 7 days: APPLY, 3 to 6 days: LATE_NOTICE, fewer: ABSENT.
    MEDICAL is chosen by the student and never returned here.
    """
    days = calendar_day_diff(applied_at, lesson_at)
    if days >= APPLY_NOTICE_DAYS:
        return AbsenceType.APPLY
    if days >= LATE_NOTICE_DAYS:
        return AbsenceType.LATE_NOTICE
    return AbsenceType.ABSENT


def absence_status_for(absence_type: AbsenceType) -> AbsenceStatus:
    if absence_type == AbsenceType.APPLY:
        return AbsenceStatus.APPROVED
    if absence_type == AbsenceType.MEDICAL:
        return AbsenceStatus.PENDING_REVIEW
    return AbsenceStatus.RECORDED


def lesson_start(lesson: LessonSession) -> datetime:
    return civil_to_utc(lesson.date, lesson.start_minute)


def sanitise_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = value.strip()
    if not cleaned:
        return None
    return cleaned[:MAX_TEXT_LENGTH]


def validate_proof_url(proof_url: Optional[str]) -> Optional[str]:
    if proof_url is None or proof_url == "":
        return None
    if not proof_url.startswith("https://") or len(proof_url) > MAX_PROOF_URL_LENGTH:
        raise ValidationError("Invalid proof URL")
    return proof_url


def _is_enrolled(session: Session, lesson_session_id: int, user_id: int) -> bool:
    return (
        session.get(LessonEnrollment, (lesson_session_id, user_id)) is not None
    )


def submit_absence(
    session: Session,
    user_id: int,
    lesson_session_id: int,
    is_medical: bool = False,
    reason: Optional[str] = None,
    proof_url: Optional[str] = None,
    clock=system_clock,
    notifier: Optional[Notifier] = None,
) -> Tuple[Absence, Optional[ReplacementCredit]]:
    """
    Record a student's absence from one of their lessons.

    An APPLY absence earns a replacement credit, created in the same
    transaction as the absence. A MEDICAL absence waits for admin review.
    """
    proof_url = validate_proof_url(proof_url)
    reason = sanitise_text(reason)

    lesson = session.get(LessonSession, lesson_session_id)
    if not lesson or not _is_enrolled(session, lesson_session_id, user_id):
        raise NotFoundError("Lesson session not found or user not enrolled")

    applied_at = clock.now()
    lesson_at = lesson_start(lesson)
    if lesson_at <= applied_at:
        raise ValidationError("Cannot submit absence for a past lesson")

    existing = session.exec(
        select(Absence).where(
            Absence.user_id == user_id,
            Absence.lesson_session_id == lesson_session_id,
        )
    ).first()
    if existing:
        raise DuplicateAbsence("Absence already submitted for this session")

    absence_type = AbsenceType.MEDICAL if is_medical else classify_absence(applied_at, lesson_at)
    status = absence_status_for(absence_type)

    def _write(tx: Session) -> Tuple[Absence, Optional[ReplacementCredit]]:
        absence = Absence(
            user_id=user_id,
            lesson_session_id=lesson_session_id,
            type=absence_type,
            status=status,
            reason=reason,
            proof_url=proof_url,
            applied_at=applied_at,
            lesson_at=lesson_at,
        )
        tx.add(absence)
        tx.flush()
        credit = None
        if absence_type == AbsenceType.APPLY:
            credit = issue_credit(tx, user_id, absence.id, applied_at)
        return absence, credit

    try:
        absence, credit = with_transaction(session, _write)
    except IntegrityError:
        raise DuplicateAbsence("Absence already submitted for this session")

    session.refresh(absence)
    if credit is not None:
        session.refresh(credit)
    logger.info(
        f"User {user_id} reported absence {absence.id} for lesson {lesson_session_id} "
        f"as {absence_type.value}"
    )

    if notifier:
        lesson_day = civil_date(lesson_at).strftime("%d %b %Y")
        notifier.notify(
            user_id=user_id,
            type="absence_submitted",
            title="Absence Recorded",
            message=f"Your absence for the {lesson_day} lesson has been recorded as {absence_type.value}.",
        )
    return absence, credit


def review_absence(
    session: Session,
    absence_id: int,
    credit_awarded: bool,
    notes: Optional[str] = None,
    reviewed_by: Optional[str] = None,
    clock=system_clock,
    notifier: Optional[Notifier] = None,
) -> Absence:
    """Settle a MEDICAL absence; awarding a credit mints it from the review instant."""
    if not isinstance(credit_awarded, bool):
        raise ValidationError("creditAwarded (boolean) is required")
    notes = sanitise_text(notes)
    reviewed_at = clock.now()

    def _write(tx: Session) -> Absence:
        absence = tx.get(Absence, absence_id)
        if not absence:
            raise NotFoundError("Absence not found")
        if absence.status != AbsenceStatus.PENDING_REVIEW:
            raise ConflictError(
                "Absence is not awaiting review", code="absence_not_reviewable"
            )
        absence.status = AbsenceStatus.REVIEWED
        absence.credit_awarded = credit_awarded
        absence.admin_notes = notes
        absence.reviewed_by = reviewed_by
        absence.reviewed_at = reviewed_at
        tx.add(absence)
        if credit_awarded:
            issue_credit(tx, absence.user_id, absence.id, reviewed_at)
        return absence

    try:
        absence = with_transaction(session, _write)
    except IntegrityError:
        raise ConflictError("Credit already awarded for this absence", code="credit_already_awarded")

    session.refresh(absence)
    logger.info(f"Absence {absence_id} reviewed by {reviewed_by}, credit_awarded={credit_awarded}")

    if notifier:
        notifier.notify(
            user_id=absence.user_id,
            type="absence_reviewed",
            title="Replacement Credit Awarded" if credit_awarded else "Absence Reviewed",
            message=(
                "Your medical absence has been reviewed and a replacement credit has been awarded."
                if credit_awarded
                else "Your medical absence has been reviewed."
            ),
        )
    return absence


def attach_proof(session: Session, user_id: int, absence_id: int, proof_url: str) -> Absence:
    if not proof_url:
        raise ValidationError("proofUrl is required")
    proof_url = validate_proof_url(proof_url)
    absence = session.exec(
        select(Absence).where(
            Absence.id == absence_id,
            Absence.user_id == user_id,
            Absence.status == AbsenceStatus.PENDING_REVIEW,
        )
    ).first()
    if not absence:
        raise NotFoundError("Absence not found or not in PENDING_REVIEW status")
    absence.proof_url = proof_url
    session.add(absence)
    session.commit()
    session.refresh(absence)
    return absence


def list_absences(
    session: Session, user_id: int
) -> List[Tuple[Absence, Optional[ReplacementCredit]]]:
    rows = session.exec(
        select(Absence, ReplacementCredit)
        .join(ReplacementCredit, ReplacementCredit.absence_id == Absence.id, isouter=True)
        .where(Absence.user_id == user_id)
        .order_by(Absence.lesson_at.desc())
    ).all()
    return [(absence, credit) for absence, credit in rows]


ADMIN_PAGE_LIMIT = 100


def page_bounds(page: int, limit: int) -> Tuple[int, int]:
    """Clamp 1-based ``page`` and ``limit`` to sane values; returns ``(offset, limit)``."""
    page = max(1, page)
    limit = min(ADMIN_PAGE_LIMIT, max(1, limit))
    return (page - 1) * limit, limit


def _parse_filter(enum_cls, value: Optional[str], label: str):
    if not value:
        return None
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f"Invalid {label} filter")


def list_absences_for_review(
    session: Session,
    type: Optional[str] = None,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
) -> Tuple[List[Tuple[Absence, Optional[ReplacementCredit]]], int]:
    """Admin view of absences, newest first, with the total matching count."""
    absence_type = _parse_filter(AbsenceType, type, "type")
    absence_status = _parse_filter(AbsenceStatus, status, "status")
    offset, limit = page_bounds(page, limit)

    filters = []
    if absence_type is not None:
        filters.append(Absence.type == absence_type)
    if absence_status is not None:
        filters.append(Absence.status == absence_status)

    rows = session.exec(
        select(Absence, ReplacementCredit)
        .join(ReplacementCredit, ReplacementCredit.absence_id == Absence.id, isouter=True)
        .where(*filters)
        .order_by(Absence.applied_at.desc(), Absence.id.desc())
        .offset(offset)
        .limit(limit)
    ).all()
    total = session.exec(select(func.count()).select_from(Absence).where(*filters)).one()
    return [(absence, credit) for absence, credit in rows], total
