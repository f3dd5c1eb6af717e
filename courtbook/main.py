import logging
from typing import Optional

from fastapi import Depends, FastAPI, Form, Header, Request
from starlette.middleware.sessions import SessionMiddleware
from starlette.responses import JSONResponse
from sqlmodel import Session, select

from courtbook.auth import (
    SESSION_USER_KEY,
    Identity,
    authenticate_user,
    current_identity,
    ensure_bootstrap_admin,
    get_current_user,
    require_admin,
)
from courtbook.db import create_db_and_tables, engine, get_session
from courtbook.errors import BookingError, InternalError, UnauthorizedError, ValidationError
from courtbook.models import (
    Absence,
    Booking,
    BookingStatus,
    Court,
    LessonSession,
    RecurringBooking,
    ReplacementBooking,
    ReplacementCredit,
    User,
)
from courtbook.services.absences import (
    attach_proof,
    list_absences,
    list_absences_for_review,
    review_absence,
    submit_absence,
)
from courtbook.services.availability import build_slots_for_court
from courtbook.services.bookings import (
    cancel_booking,
    confirm_booking,
    confirm_booking_payment,
    create_booking,
    expire_pending_bookings,
    reschedule_booking,
)
from courtbook.services.conflicts import check_conflict
from courtbook.services.credits import list_available_credits, notify_expiring_credits
from courtbook.services.lessons import cancel_lesson, complete_lesson, create_lesson, reschedule_lesson
from courtbook.services.notifications import Notifier
from courtbook.services.recurring import create_recurring_booking, deactivate_recurring_booking
from courtbook.services.replacements import (
    book_replacement,
    cancel_replacement,
    list_available_sessions,
    list_replacement_bookings,
    list_replacements,
)
from courtbook.settings import settings
from courtbook.time_utils import hm_to_minute, minute_to_hm, system_clock

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


app = FastAPI(title="courtbook")
app.add_middleware(
    SessionMiddleware,
    secret_key=settings.secret_key,
    same_site="lax",
    https_only=settings.cookie_secure,
)


@app.exception_handler(BookingError)
def booking_error_handler(request: Request, exc: BookingError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    error = InternalError("Internal server error")
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


@app.on_event("startup")
def on_startup() -> None:
    create_db_and_tables()
    with Session(engine) as session:
        ensure_bootstrap_admin(
            session=session,
            username=settings.bootstrap_admin_username,
            password=settings.bootstrap_admin_password,
        )


def get_clock():
    return system_clock


def get_notifier() -> Notifier:
    return Notifier(engine)


def _minute(value: str) -> int:
    try:
        return hm_to_minute(value)
    except ValueError:
        raise ValidationError("Invalid time format, expected HH:MM")


def _booking_out(booking: Booking) -> dict:
    return {
        "id": booking.id,
        "court_id": booking.court_id,
        "user_id": booking.user_id,
        "date": booking.date,
        "start_minute": booking.start_minute,
        "end_minute": booking.end_minute,
        "start_hm": minute_to_hm(booking.start_minute),
        "end_hm": minute_to_hm(booking.end_minute),
        "status": booking.status,
    }


def _recurring_out(recurring: RecurringBooking) -> dict:
    return {
        "id": recurring.id,
        "court_id": recurring.court_id,
        "user_id": recurring.user_id,
        "label": recurring.label,
        "day_of_week": recurring.day_of_week,
        "start_minute": recurring.start_minute,
        "end_minute": recurring.end_minute,
        "start_date": recurring.start_date,
        "end_date": recurring.end_date,
        "is_active": recurring.is_active,
    }


def _lesson_out(lesson: LessonSession) -> dict:
    return {
        "id": lesson.id,
        "court_id": lesson.court_id,
        "coach_id": lesson.coach_id,
        "lesson_type": lesson.lesson_type,
        "date": lesson.date,
        "start_minute": lesson.start_minute,
        "end_minute": lesson.end_minute,
        "start_hm": minute_to_hm(lesson.start_minute),
        "end_hm": minute_to_hm(lesson.end_minute),
        "status": lesson.status,
    }


def _credit_out(credit: Optional[ReplacementCredit]) -> Optional[dict]:
    if credit is None:
        return None
    return {
        "id": credit.id,
        "absence_id": credit.absence_id,
        "expires_at": credit.expires_at.isoformat(),
        "used_at": credit.used_at.isoformat() if credit.used_at else None,
    }


def _absence_out(absence: Absence, credit: Optional[ReplacementCredit] = None) -> dict:
    return {
        "id": absence.id,
        "lesson_session_id": absence.lesson_session_id,
        "type": absence.type,
        "status": absence.status,
        "reason": absence.reason,
        "proof_url": absence.proof_url,
        "applied_at": absence.applied_at.isoformat(),
        "lesson_at": absence.lesson_at.isoformat(),
        "credit_awarded": absence.credit_awarded,
        "admin_notes": absence.admin_notes,
        "reviewed_at": absence.reviewed_at.isoformat() if absence.reviewed_at else None,
        "credit": _credit_out(credit),
    }


def _replacement_out(booking: ReplacementBooking) -> dict:
    return {
        "id": booking.id,
        "replacement_credit_id": booking.replacement_credit_id,
        "lesson_session_id": booking.lesson_session_id,
        "status": booking.status,
        "created_at": booking.created_at.isoformat(),
        "cancelled_at": booking.cancelled_at.isoformat() if booking.cancelled_at else None,
    }


@app.get("/health")
def health():
    return {"ok": True}


@app.post("/login")
def login_submit(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    session: Session = Depends(get_session),
):
    user = authenticate_user(session=session, username=username, password=password)
    if not user:
        raise UnauthorizedError("Invalid username or password")
    request.session[SESSION_USER_KEY] = user.id
    return {"id": user.id, "username": user.username, "role": user.role}


@app.post("/logout")
def logout(request: Request):
    request.session.clear()
    return {"ok": True}


@app.get("/api/me")
def me(identity: Identity = Depends(current_identity)):
    return {"id": identity.id, "email": identity.email, "is_admin": identity.is_admin}


@app.get("/api/courts")
def api_list_courts(
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    courts = session.exec(select(Court).where(Court.is_active == True).order_by(Court.name)).all()  # noqa: E712
    return [{"id": c.id, "name": c.name} for c in courts]


@app.get("/api/courts/{court_id}/availability")
def api_court_availability(
    court_id: int,
    date: str,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    slots = build_slots_for_court(
        session=session,
        court_id=court_id,
        date=date,
        slot_minutes=settings.default_slot_minutes,
    )
    return [
        {
            "date": s.date,
            "start_minute": s.start_minute,
            "end_minute": s.end_minute,
            "start_hm": minute_to_hm(s.start_minute),
            "end_hm": minute_to_hm(s.end_minute),
            "available": s.available,
            "blocked_by": s.blocked_by,
        }
        for s in slots
    ]


@app.post("/api/conflicts/check")
def api_check_conflict(
    court_id: int = Form(...),
    date: str = Form(...),
    start_hm: str = Form(...),
    end_hm: str = Form(...),
    day_of_week: Optional[int] = Form(None),
    end_date: Optional[str] = Form(None),
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    conflict = check_conflict(
        session=session,
        court_id=court_id,
        date=date,
        start_minute=_minute(start_hm),
        end_minute=_minute(end_hm),
        day_of_week=day_of_week,
        end_date=end_date or None,
    )
    if conflict is None:
        return {"conflict": False}
    return {"conflict": True, **conflict.to_dict()}


@app.post("/api/bookings")
def api_create_booking(
    court_id: int = Form(...),
    date: str = Form(...),
    start_hm: str = Form(...),
    end_hm: str = Form(...),
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    clock=Depends(get_clock),
):
    booking = create_booking(
        session=session,
        user_id=user.id,
        court_id=court_id,
        date=date,
        start_minute=_minute(start_hm),
        end_minute=_minute(end_hm),
        clock=clock,
    )
    return _booking_out(booking)


@app.post("/api/bookings/{booking_id}/cancel")
def api_cancel_booking(
    booking_id: int,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    clock=Depends(get_clock),
):
    booking = cancel_booking(session=session, booking_id=booking_id, user_id=user.id, clock=clock)
    return {"id": booking.id, "status": booking.status}


@app.post("/api/admin/bookings/{booking_id}/confirm")
def api_confirm_booking(
    booking_id: int,
    user: User = Depends(require_admin),
    session: Session = Depends(get_session),
    clock=Depends(get_clock),
):
    booking = confirm_booking(session=session, booking_id=booking_id, clock=clock)
    return {"id": booking.id, "status": booking.status}


@app.post("/api/admin/bookings/{booking_id}/reschedule")
def api_reschedule_booking(
    booking_id: int,
    court_id: int = Form(...),
    start_hm: str = Form(...),
    user: User = Depends(require_admin),
    session: Session = Depends(get_session),
    clock=Depends(get_clock),
):
    booking = reschedule_booking(
        session=session,
        booking_id=booking_id,
        new_court_id=court_id,
        new_start_minute=_minute(start_hm),
        clock=clock,
    )
    return _booking_out(booking)


@app.post("/api/payments/confirm")
def api_confirm_payment(
    payment_session_id: str = Form(...),
    court_id: Optional[int] = Form(None),
    date: Optional[str] = Form(None),
    start_hm: Optional[str] = Form(None),
    end_hm: Optional[str] = Form(None),
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    clock=Depends(get_clock),
):
    """
    Payment success callback. With slot fields the booking is created already
    confirmed (idempotently); without them an existing pending booking is confirmed.
    """
    if court_id is None:
        booking = confirm_booking_payment(
            session=session, payment_session_id=payment_session_id, clock=clock
        )
        return _booking_out(booking)
    if not (date and start_hm and end_hm):
        raise ValidationError("date, start_hm and end_hm are required with court_id")
    booking = create_booking(
        session=session,
        user_id=user.id,
        court_id=court_id,
        date=date,
        start_minute=_minute(start_hm),
        end_minute=_minute(end_hm),
        status=BookingStatus.confirmed,
        payment_session_id=payment_session_id,
        clock=clock,
    )
    return _booking_out(booking)


@app.post("/api/admin/recurring-bookings")
def api_create_recurring_booking(
    court_id: int = Form(...),
    day_of_week: int = Form(...),
    start_hm: str = Form(...),
    end_hm: str = Form(...),
    start_date: str = Form(...),
    end_date: Optional[str] = Form(None),
    label: str = Form(""),
    user_id: Optional[int] = Form(None),
    user: User = Depends(require_admin),
    session: Session = Depends(get_session),
    clock=Depends(get_clock),
):
    recurring = create_recurring_booking(
        session=session,
        court_id=court_id,
        day_of_week=day_of_week,
        start_minute=_minute(start_hm),
        end_minute=_minute(end_hm),
        start_date=start_date,
        end_date=end_date or None,
        user_id=user_id,
        label=label.strip(),
        clock=clock,
    )
    return _recurring_out(recurring)


@app.post("/api/admin/recurring-bookings/{recurring_id}/deactivate")
def api_deactivate_recurring_booking(
    recurring_id: int,
    user: User = Depends(require_admin),
    session: Session = Depends(get_session),
):
    recurring = deactivate_recurring_booking(session=session, recurring_id=recurring_id)
    return _recurring_out(recurring)


@app.post("/api/admin/lessons")
def api_create_lesson(
    court_id: int = Form(...),
    lesson_type: str = Form(...),
    date: str = Form(...),
    start_hm: str = Form(...),
    end_hm: str = Form(...),
    student_ids: str = Form(""),
    coach_id: Optional[int] = Form(None),
    user: User = Depends(require_admin),
    session: Session = Depends(get_session),
    clock=Depends(get_clock),
):
    try:
        students = [int(s) for s in student_ids.split(",") if s.strip()]
    except ValueError:
        raise ValidationError("student_ids must be a comma separated list of ids")
    lesson = create_lesson(
        session=session,
        court_id=court_id,
        lesson_type=lesson_type,
        date=date,
        start_minute=_minute(start_hm),
        end_minute=_minute(end_hm),
        student_ids=students,
        coach_id=coach_id,
        clock=clock,
    )
    return _lesson_out(lesson)


@app.post("/api/admin/lessons/{lesson_id}/reschedule")
def api_reschedule_lesson(
    lesson_id: int,
    court_id: int = Form(...),
    start_hm: str = Form(...),
    user: User = Depends(require_admin),
    session: Session = Depends(get_session),
    clock=Depends(get_clock),
):
    lesson = reschedule_lesson(
        session=session,
        lesson_id=lesson_id,
        new_court_id=court_id,
        new_start_minute=_minute(start_hm),
        clock=clock,
    )
    return _lesson_out(lesson)


@app.post("/api/admin/lessons/{lesson_id}/cancel")
def api_cancel_lesson(
    lesson_id: int,
    user: User = Depends(require_admin),
    session: Session = Depends(get_session),
    clock=Depends(get_clock),
    notifier: Notifier = Depends(get_notifier),
):
    lesson = cancel_lesson(session=session, lesson_id=lesson_id, clock=clock, notifier=notifier)
    return _lesson_out(lesson)


@app.post("/api/admin/lessons/{lesson_id}/complete")
def api_complete_lesson(
    lesson_id: int,
    user: User = Depends(require_admin),
    session: Session = Depends(get_session),
    clock=Depends(get_clock),
):
    return _lesson_out(complete_lesson(session=session, lesson_id=lesson_id, clock=clock))


@app.post("/api/absences")
def api_submit_absence(
    lesson_session_id: int = Form(...),
    is_medical: bool = Form(False),
    reason: Optional[str] = Form(None),
    proof_url: Optional[str] = Form(None),
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    clock=Depends(get_clock),
    notifier: Notifier = Depends(get_notifier),
):
    absence, credit = submit_absence(
        session=session,
        user_id=user.id,
        lesson_session_id=lesson_session_id,
        is_medical=is_medical,
        reason=reason,
        proof_url=proof_url,
        clock=clock,
        notifier=notifier,
    )
    return _absence_out(absence, credit)


@app.get("/api/absences")
def api_list_absences(
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    return [_absence_out(absence, credit) for absence, credit in list_absences(session, user.id)]


@app.get("/api/absences/credits")
def api_list_credits(
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    clock=Depends(get_clock),
):
    credits = list_available_credits(session, user.id, clock.now())
    return [_credit_out(credit) for credit in credits]


@app.post("/api/absences/{absence_id}/proof")
def api_attach_proof(
    absence_id: int,
    proof_url: str = Form(...),
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    absence = attach_proof(session=session, user_id=user.id, absence_id=absence_id, proof_url=proof_url)
    return _absence_out(absence)


@app.get("/api/admin/absences")
def api_admin_list_absences(
    type: Optional[str] = None,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
    user: User = Depends(require_admin),
    session: Session = Depends(get_session),
):
    rows, total = list_absences_for_review(session, type=type, status=status, page=page, limit=limit)
    return {
        "absences": [{**_absence_out(absence, credit), "user_id": absence.user_id} for absence, credit in rows],
        "total": total,
    }


@app.post("/api/admin/absences/{absence_id}/review")
def api_review_absence(
    absence_id: int,
    credit_awarded: bool = Form(...),
    notes: Optional[str] = Form(None),
    user: User = Depends(require_admin),
    session: Session = Depends(get_session),
    clock=Depends(get_clock),
    notifier: Notifier = Depends(get_notifier),
):
    absence = review_absence(
        session=session,
        absence_id=absence_id,
        credit_awarded=credit_awarded,
        notes=notes,
        reviewed_by=user.email or user.username,
        clock=clock,
        notifier=notifier,
    )
    return _absence_out(absence)


@app.get("/api/replacement/available")
def api_available_sessions(
    lesson_type: Optional[str] = None,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    clock=Depends(get_clock),
):
    available = list_available_sessions(session, user.id, lesson_type=lesson_type, clock=clock)
    return [
        {
            **_lesson_out(item.lesson),
            "max_students": item.occupancy.max_students,
            "available_spots": item.occupancy.free,
        }
        for item in available
    ]


@app.post("/api/replacement/book")
def api_book_replacement(
    credit_id: int = Form(...),
    lesson_session_id: int = Form(...),
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    clock=Depends(get_clock),
    notifier: Notifier = Depends(get_notifier),
):
    booking = book_replacement(
        session=session,
        user_id=user.id,
        credit_id=credit_id,
        lesson_session_id=lesson_session_id,
        clock=clock,
        notifier=notifier,
    )
    return _replacement_out(booking)


@app.post("/api/replacement/{booking_id}/cancel")
def api_cancel_replacement(
    booking_id: int,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    clock=Depends(get_clock),
    notifier: Notifier = Depends(get_notifier),
):
    booking, credit_returned = cancel_replacement(
        session=session, booking_id=booking_id, user_id=user.id, clock=clock, notifier=notifier
    )
    return {**_replacement_out(booking), "credit_returned": credit_returned}


@app.get("/api/replacement/my-bookings")
def api_my_replacements(
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    return [
        {**_replacement_out(booking), "session": _lesson_out(lesson)}
        for booking, lesson in list_replacement_bookings(session, user.id)
    ]


@app.get("/api/admin/replacements")
def api_admin_list_replacements(
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    user: User = Depends(require_admin),
    session: Session = Depends(get_session),
):
    rows, total = list_replacements(session, status=status, page=page, limit=limit)
    return {
        "bookings": [
            {**_replacement_out(booking), "user_id": booking.user_id, "session": _lesson_out(lesson)}
            for booking, lesson in rows
        ],
        "total": total,
    }


def _require_cron_secret(authorization: Optional[str]) -> None:
    if not settings.cron_secret or authorization != f"Bearer {settings.cron_secret}":
        raise UnauthorizedError("Unauthorized")


@app.post("/api/cron/credit-expiry")
def api_credit_expiry_sweep(
    authorization: Optional[str] = Header(None),
    session: Session = Depends(get_session),
    clock=Depends(get_clock),
    notifier: Notifier = Depends(get_notifier),
):
    _require_cron_secret(authorization)
    notified = notify_expiring_credits(session, clock.now(), notifier)
    return {"notified": notified}


@app.post("/api/cron/expire-bookings")
def api_booking_expiry_sweep(
    authorization: Optional[str] = Header(None),
    session: Session = Depends(get_session),
    clock=Depends(get_clock),
    notifier: Notifier = Depends(get_notifier),
):
    _require_cron_secret(authorization)
    result = expire_pending_bookings(session, clock.now(), notifier)
    return {"expired": result.expired, "warned": result.warned}
