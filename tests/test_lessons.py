import pytest
from sqlmodel import select

from courtbook.errors import BookingError, NotFoundError, SlotConflict, SlotFull, ValidationError
from courtbook.models import LessonEnrollment, LessonStatus
from courtbook.services.bookings import create_booking
from courtbook.services.lessons import cancel_lesson, complete_lesson, create_lesson, reschedule_lesson
from courtbook.services.recurring import create_recurring_booking, deactivate_recurring_booking

from conftest import make_lesson_type, make_user

MONDAY = "2026-02-23"


@pytest.fixture()
def group(session):
    return make_lesson_type(session, "group", max_students=2)


def test_create_lesson_enrolls_students(session, court, group, clock):
    students = [make_user(session, "s1"), make_user(session, "s2")]
    lesson = create_lesson(
        session, court.id, "group", MONDAY, 1080, 1140, [s.id for s in students], clock=clock
    )
    assert lesson.status == LessonStatus.scheduled
    enrolled = session.exec(
        select(LessonEnrollment.user_id).where(LessonEnrollment.lesson_session_id == lesson.id)
    ).all()
    assert sorted(enrolled) == sorted(s.id for s in students)


def test_create_lesson_rejects_too_many_students(session, court, group, clock):
    students = [make_user(session, f"s{i}") for i in range(3)]
    with pytest.raises(SlotFull):
        create_lesson(session, court.id, "group", MONDAY, 1080, 1140, [s.id for s in students], clock=clock)


def test_create_lesson_rejects_unknown_type_and_student(session, court, group, clock):
    with pytest.raises(ValidationError):
        create_lesson(session, court.id, "yoga", MONDAY, 1080, 1140, clock=clock)
    with pytest.raises(NotFoundError):
        create_lesson(session, court.id, "group", MONDAY, 1080, 1140, [12345], clock=clock)


def test_lesson_and_booking_exclude_each_other(session, court, group, member, clock):
    create_booking(session, member.id, court.id, MONDAY, 1050, 1110, clock=clock)
    with pytest.raises(SlotConflict) as excinfo:
        create_lesson(session, court.id, "group", MONDAY, 1080, 1140, clock=clock)
    assert excinfo.value.details["kind"] == "booking"


def test_reschedule_lesson_excludes_itself(session, court, group, clock):
    lesson = create_lesson(session, court.id, "group", MONDAY, 1080, 1140, clock=clock)
    moved = reschedule_lesson(session, lesson.id, court.id, 1110, clock=clock)
    assert (moved.start_minute, moved.end_minute) == (1110, 1170)


def test_reschedule_lesson_into_recurring_block_conflicts(session, court, group, clock):
    create_recurring_booking(session, court.id, 0, 1200, 1260, "2026-02-01", clock=clock)
    lesson = create_lesson(session, court.id, "group", MONDAY, 1080, 1140, clock=clock)
    with pytest.raises(SlotConflict) as excinfo:
        reschedule_lesson(session, lesson.id, court.id, 1170, clock=clock)
    assert "recurring booking" in excinfo.value.message


def test_only_scheduled_lessons_move(session, court, group, clock):
    lesson = create_lesson(session, court.id, "group", MONDAY, 1080, 1140, clock=clock)
    complete_lesson(session, lesson.id, clock=clock)
    with pytest.raises(BookingError):
        reschedule_lesson(session, lesson.id, court.id, 1110, clock=clock)


def test_cancelled_lesson_frees_court(session, court, group, member, clock):
    lesson = create_lesson(session, court.id, "group", MONDAY, 1080, 1140, clock=clock)
    assert cancel_lesson(session, lesson.id, clock=clock).status == LessonStatus.cancelled
    with pytest.raises(BookingError):
        complete_lesson(session, lesson.id, clock=clock)
    create_booking(session, member.id, court.id, MONDAY, 1080, 1140, clock=clock)


def test_recurring_booking_blocks_future_weeks(session, court, member, clock):
    recurring = create_recurring_booking(
        session, court.id, 0, 1080, 1200, "2026-02-16", label="Club night", clock=clock
    )
    assert recurring.is_active
    with pytest.raises(SlotConflict):
        create_booking(session, member.id, court.id, "2026-06-01", 1140, 1200, clock=clock)
    # Sunday is free.
    create_booking(session, member.id, court.id, "2026-05-31", 1140, 1200, clock=clock)


def test_recurring_booking_rejects_clash_with_any_future_date(session, court, member, clock):
    create_booking(session, member.id, court.id, "2026-04-13", 1080, 1140, clock=clock)
    with pytest.raises(SlotConflict):
        create_recurring_booking(session, court.id, 0, 1110, 1170, "2026-02-16", clock=clock)
    create_recurring_booking(session, court.id, 0, 1110, 1170, "2026-02-16", "2026-04-12", clock=clock)


def test_recurring_series_cannot_overlap_each_other(session, court, clock):
    create_recurring_booking(session, court.id, 2, 600, 720, "2026-03-01", clock=clock)
    with pytest.raises(SlotConflict):
        create_recurring_booking(session, court.id, 2, 690, 750, "2026-02-01", "2026-03-31", clock=clock)
    create_recurring_booking(session, court.id, 3, 690, 750, "2026-02-01", clock=clock)


def test_deactivated_recurring_booking_frees_slot(session, court, member, clock):
    recurring = create_recurring_booking(session, court.id, 0, 1080, 1200, "2026-02-16", clock=clock)
    assert not deactivate_recurring_booking(session, recurring.id).is_active
    with pytest.raises(BookingError):
        deactivate_recurring_booking(session, recurring.id)
    create_booking(session, member.id, court.id, MONDAY, 1080, 1140, clock=clock)
