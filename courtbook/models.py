from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Index, UniqueConstraint, text
from sqlmodel import Field, SQLModel

from courtbook.time_utils import system_clock


def _utcnow() -> datetime:
    return system_clock.now()


class UserRole(str, Enum):
    member = "member"
    coach = "coach"
    admin = "admin"


class BookingStatus(str, Enum):
    pending = "pending"
    confirmed = "confirmed"
    cancelled = "cancelled"
    expired = "expired"


ACTIVE_BOOKING_STATUSES = (BookingStatus.pending, BookingStatus.confirmed)


class LessonStatus(str, Enum):
    scheduled = "scheduled"
    completed = "completed"
    cancelled = "cancelled"


class AbsenceType(str, Enum):
    APPLY = "APPLY"
    LATE_NOTICE = "LATE_NOTICE"
    ABSENT = "ABSENT"
    MEDICAL = "MEDICAL"


class AbsenceStatus(str, Enum):
    APPROVED = "APPROVED"
    RECORDED = "RECORDED"
    PENDING_REVIEW = "PENDING_REVIEW"
    REVIEWED = "REVIEWED"


class ReplacementBookingStatus(str, Enum):
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"


class User(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("username"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True)
    email: Optional[str] = Field(default=None, index=True)
    password_hash: str
    role: UserRole = Field(default=UserRole.member, index=True)
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=_utcnow, index=True)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.admin


class Court(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    is_active: bool = Field(default=True, index=True)


class LessonType(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("slug"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    slug: str = Field(index=True)
    name: str
    max_students: int = 1
    is_active: bool = Field(default=True, index=True)


class Booking(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("payment_session_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    court_id: int = Field(foreign_key="court.id", index=True)
    user_id: Optional[int] = Field(default=None, foreign_key="user.id", index=True)
    date: str = Field(index=True)
    start_minute: int = Field(index=True)
    end_minute: int
    status: BookingStatus = Field(default=BookingStatus.pending, index=True)
    payment_session_id: Optional[str] = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=_utcnow, index=True)
    updated_at: datetime = Field(default_factory=_utcnow, index=True)
    cancelled_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    expiration_warning_sent: bool = False


class RecurringBooking(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    court_id: int = Field(foreign_key="court.id", index=True)
    user_id: Optional[int] = Field(default=None, foreign_key="user.id", index=True)
    label: str = ""
    day_of_week: int = Field(index=True)
    start_minute: int
    end_minute: int
    start_date: str = Field(index=True)
    end_date: Optional[str] = Field(default=None, index=True)
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=_utcnow)


class LessonEnrollment(SQLModel, table=True):
    lesson_session_id: int = Field(foreign_key="lessonsession.id", primary_key=True)
    user_id: int = Field(foreign_key="user.id", primary_key=True)


class LessonSession(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    court_id: int = Field(foreign_key="court.id", index=True)
    coach_id: Optional[int] = Field(default=None, foreign_key="user.id", index=True)
    lesson_type: str = Field(index=True)
    date: str = Field(index=True)
    start_minute: int
    end_minute: int
    status: LessonStatus = Field(default=LessonStatus.scheduled, index=True)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class Absence(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("user_id", "lesson_session_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    lesson_session_id: int = Field(foreign_key="lessonsession.id", index=True)
    type: AbsenceType = Field(index=True)
    status: AbsenceStatus = Field(index=True)
    reason: Optional[str] = None
    proof_url: Optional[str] = Field(default=None, max_length=2048)
    applied_at: datetime
    lesson_at: datetime = Field(index=True)
    credit_awarded: Optional[bool] = None
    admin_notes: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None


class ReplacementCredit(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("absence_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    absence_id: int = Field(foreign_key="absence.id")
    expires_at: datetime = Field(index=True)
    used_at: Optional[datetime] = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=_utcnow)


_CONFIRMED_ONLY = text("status = 'CONFIRMED'")


class ReplacementBooking(SQLModel, table=True):
    # A credit backs at most one live booking; once cancelled (and possibly
    # refunded) it may back a new one.
    __table_args__ = (
        Index(
            "uq_replacementbooking_active_credit",
            "replacement_credit_id",
            unique=True,
            sqlite_where=_CONFIRMED_ONLY,
            postgresql_where=_CONFIRMED_ONLY,
        ),
        Index(
            "uq_replacementbooking_active_user_session",
            "user_id",
            "lesson_session_id",
            unique=True,
            sqlite_where=_CONFIRMED_ONLY,
            postgresql_where=_CONFIRMED_ONLY,
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    replacement_credit_id: int = Field(foreign_key="replacementcredit.id", index=True)
    lesson_session_id: int = Field(foreign_key="lessonsession.id", index=True)
    status: ReplacementBookingStatus = Field(
        default=ReplacementBookingStatus.CONFIRMED, index=True
    )
    created_at: datetime = Field(default_factory=_utcnow)
    cancelled_at: Optional[datetime] = None


class Notification(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("credit_id", "type"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    type: str = Field(index=True)
    title: str
    message: str
    link: Optional[str] = None
    credit_id: Optional[int] = Field(default=None, foreign_key="replacementcredit.id")
    is_read: bool = Field(default=False, index=True)
    created_at: datetime = Field(default_factory=_utcnow, index=True)
