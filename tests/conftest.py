from datetime import datetime
from typing import Iterable

import pytest
from sqlmodel import Session

from courtbook.db import create_db_and_tables, make_engine
from courtbook.models import (
    Court,
    LessonEnrollment,
    LessonSession,
    LessonStatus,
    LessonType,
    User,
    UserRole,
)
from courtbook.services.notifications import Notifier
from courtbook.time_utils import FixedClock

# 2026-02-19 10:00 on the facility's UTC+8 wall clock.
NOW = datetime(2026, 2, 19, 2, 0)


@pytest.fixture()
def engine(tmp_path):
    """File-backed SQLite so threads can hold separate connections."""
    engine = make_engine(f"sqlite:///{tmp_path / 'courtbook-test.db'}")
    create_db_and_tables(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture()
def clock():
    return FixedClock(NOW)


@pytest.fixture()
def notifier(engine):
    return Notifier(engine)


def make_user(session: Session, username: str, role: UserRole = UserRole.member) -> User:
    user = User(
        username=username,
        email=f"{username}@example.com",
        password_hash="not-a-real-hash",
        role=role,
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def make_court(session: Session, name: str = "Court 1") -> Court:
    court = Court(name=name)
    session.add(court)
    session.commit()
    session.refresh(court)
    return court


def make_lesson_type(session: Session, slug: str = "group", max_students: int = 4) -> LessonType:
    lesson_type = LessonType(slug=slug, name=slug.title(), max_students=max_students)
    session.add(lesson_type)
    session.commit()
    session.refresh(lesson_type)
    return lesson_type


def make_lesson(
    session: Session,
    court: Court,
    date: str,
    start_minute: int = 18 * 60,
    end_minute: int = 19 * 60,
    lesson_type: str = "group",
    students: Iterable[User] = (),
) -> LessonSession:
    """Insert a scheduled lesson directly, skipping the conflict checks."""
    lesson = LessonSession(
        court_id=court.id,
        lesson_type=lesson_type,
        date=date,
        start_minute=start_minute,
        end_minute=end_minute,
        status=LessonStatus.scheduled,
    )
    session.add(lesson)
    session.commit()
    session.refresh(lesson)
    for student in students:
        session.add(LessonEnrollment(lesson_session_id=lesson.id, user_id=student.id))
    session.commit()
    return lesson


@pytest.fixture()
def court(session):
    return make_court(session)


@pytest.fixture()
def member(session):
    return make_user(session, "alice")


@pytest.fixture()
def admin(session):
    return make_user(session, "root", role=UserRole.admin)
