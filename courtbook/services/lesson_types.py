from __future__ import annotations

from typing import Optional

from sqlmodel import Session, select

from courtbook.models import LessonType


def get_lesson_type(session: Session, slug: str) -> Optional[LessonType]:
    return session.exec(select(LessonType).where(LessonType.slug == slug)).first()


def max_students_for(session: Session, slug: str) -> int:
    """Seat limit of a lesson type; unknown or retired types have no seats."""
    lesson_type = get_lesson_type(session, slug)
    if not lesson_type or not lesson_type.is_active:
        return 0
    return lesson_type.max_students
