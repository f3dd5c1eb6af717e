import pytest
from sqlmodel import select

from courtbook.errors import BookingError, SlotConflict
from courtbook.intervals import DateWindow, Interval
from courtbook.models import (
    ACTIVE_BOOKING_STATUSES,
    Booking,
    BookingStatus,
    LessonSession,
    LessonStatus,
    RecurringBooking,
)
from courtbook.services.bookings import cancel_booking, create_booking, reschedule_booking
from courtbook.services.conflicts import (
    CommitmentKind,
    CommitmentRef,
    check_conflict,
    ensure_slot_free,
    find_conflict,
)
from courtbook.services.lessons import cancel_lesson, create_lesson, reschedule_lesson
from courtbook.services.recurring import create_recurring_booking, deactivate_recurring_booking
from courtbook.time_utils import parse_ymd

from conftest import make_court, make_lesson, make_lesson_type

# 2026-02-23 is a Monday.
MONDAY = "2026-02-23"


def _booking(session, court, date=MONDAY, start=600, end=660, status=BookingStatus.confirmed):
    booking = Booking(court_id=court.id, date=date, start_minute=start, end_minute=end, status=status)
    session.add(booking)
    session.commit()
    session.refresh(booking)
    return booking


def _recurring(session, court, day_of_week=0, start=1080, end=1200, start_date="2026-02-01", end_date=None):
    recurring = RecurringBooking(
        court_id=court.id,
        day_of_week=day_of_week,
        start_minute=start,
        end_minute=end,
        start_date=start_date,
        end_date=end_date,
    )
    session.add(recurring)
    session.commit()
    session.refresh(recurring)
    return recurring


def test_free_slot_has_no_conflict(session, court):
    _booking(session, court)
    assert find_conflict(session, court.id, DateWindow.single(MONDAY), Interval(720, 780)) is None


def test_back_to_back_booking_is_allowed(session, court):
    _booking(session, court, start=600, end=660)
    assert find_conflict(session, court.id, DateWindow.single(MONDAY), Interval(660, 720)) is None
    assert find_conflict(session, court.id, DateWindow.single(MONDAY), Interval(540, 600)) is None


def test_overlapping_booking_conflicts(session, court):
    booking = _booking(session, court)
    conflict = find_conflict(session, court.id, DateWindow.single(MONDAY), Interval(630, 690))
    assert conflict is not None
    assert conflict.commitment.kind == CommitmentKind.booking
    assert conflict.commitment.id == booking.id
    assert "existing booking" in conflict.message


def test_cancelled_booking_frees_the_slot(session, court):
    _booking(session, court, status=BookingStatus.cancelled)
    assert find_conflict(session, court.id, DateWindow.single(MONDAY), Interval(600, 660)) is None


def test_other_court_is_independent(session, court):
    other = make_court(session, "Court 2")
    _booking(session, other)
    assert find_conflict(session, court.id, DateWindow.single(MONDAY), Interval(600, 660)) is None


def test_recurring_booking_blocks_matching_weekday(session, court):
    _recurring(session, court)
    conflict = find_conflict(session, court.id, DateWindow.single("2026-03-02"), Interval(1140, 1200))
    assert conflict.commitment.kind == CommitmentKind.recurring_booking
    assert "recurring booking" in conflict.message
    # Tuesday is not covered.
    assert find_conflict(session, court.id, DateWindow.single("2026-03-03"), Interval(1140, 1200)) is None


def test_recurring_booking_respects_its_date_range(session, court):
    _recurring(session, court, start_date="2026-03-01", end_date="2026-03-31")
    assert find_conflict(session, court.id, DateWindow.single(MONDAY), Interval(1080, 1140)) is None
    assert find_conflict(session, court.id, DateWindow.single("2026-04-06"), Interval(1080, 1140)) is None
    assert find_conflict(session, court.id, DateWindow.single("2026-03-16"), Interval(1080, 1140))


def test_inactive_recurring_booking_is_ignored(session, court):
    recurring = _recurring(session, court)
    recurring.is_active = False
    session.add(recurring)
    session.commit()
    assert find_conflict(session, court.id, DateWindow.single(MONDAY), Interval(1080, 1140)) is None


def test_weekly_window_hits_future_one_off_booking(session, court):
    _booking(session, court, date="2026-04-13", start=1080, end=1140)
    window = DateWindow.weekly(0, "2026-02-16")
    conflict = find_conflict(session, court.id, window, Interval(1050, 1110))
    assert conflict.commitment.kind == CommitmentKind.booking


def test_weekly_windows_on_same_weekday_collide(session, court):
    _recurring(session, court, start_date="2026-06-01")
    conflict = find_conflict(session, court.id, DateWindow.weekly(0, "2026-02-16", "2026-12-31"), Interval(1100, 1130))
    assert conflict.commitment.kind == CommitmentKind.recurring_booking


def test_short_weekly_windows_missing_the_weekday_do_not_collide(session, court):
    # Overlap of the two ranges is Tue 2026-02-24 .. Thu 2026-02-26, no Monday in it.
    _recurring(session, court, start_date="2026-02-24", end_date="2026-03-31")
    window = DateWindow.weekly(0, "2026-02-01", "2026-02-26")
    assert find_conflict(session, court.id, window, Interval(1080, 1140)) is None


def test_scheduled_lesson_conflicts_until_cancelled(session, court):
    lesson = make_lesson(session, court, MONDAY, 600, 720)
    conflict = find_conflict(session, court.id, DateWindow.single(MONDAY), Interval(700, 760))
    assert conflict.commitment.kind == CommitmentKind.lesson
    assert "scheduled lesson" in conflict.message

    lesson.status = LessonStatus.cancelled
    session.add(lesson)
    session.commit()
    assert find_conflict(session, court.id, DateWindow.single(MONDAY), Interval(700, 760)) is None


def test_exclude_ignores_the_moving_commitment(session, court):
    booking = _booking(session, court)
    own = CommitmentRef(CommitmentKind.booking, booking.id)
    assert find_conflict(session, court.id, DateWindow.single(MONDAY), Interval(630, 690), exclude=own) is None


def test_ensure_slot_free_raises_with_details(session, court):
    make_lesson(session, court, MONDAY, 600, 720)
    with pytest.raises(SlotConflict) as excinfo:
        ensure_slot_free(session, court.id, DateWindow.single(MONDAY), Interval(660, 690))
    assert excinfo.value.status_code == 409
    assert excinfo.value.details["kind"] == "lesson"


def test_check_conflict_for_weekly_proposal(session, court):
    _booking(session, court, date="2026-03-09", start=600, end=660)
    assert check_conflict(session, court.id, "2026-02-16", 630, 700, day_of_week=0)
    assert check_conflict(session, court.id, "2026-02-16", 630, 700, day_of_week=1) is None
    assert check_conflict(session, court.id, "2026-03-09", 660, 720) is None


def _outcome(fn, *args, **kwargs):
    try:
        return fn(*args, **kwargs)
    except BookingError:
        return None


def _active_intervals(session, court_id, day):
    weekday = parse_ymd(day).weekday()
    intervals = [
        (b.start_minute, b.end_minute)
        for b in session.exec(
            select(Booking).where(
                Booking.court_id == court_id,
                Booking.date == day,
                Booking.status.in_(ACTIVE_BOOKING_STATUSES),
            )
        ).all()
    ]
    intervals += [
        (r.start_minute, r.end_minute)
        for r in session.exec(
            select(RecurringBooking).where(
                RecurringBooking.court_id == court_id,
                RecurringBooking.is_active == True,  # noqa: E712
                RecurringBooking.day_of_week == weekday,
                RecurringBooking.start_date <= day,
            )
        ).all()
        if r.end_date is None or r.end_date >= day
    ]
    intervals += [
        (lesson.start_minute, lesson.end_minute)
        for lesson in session.exec(
            select(LessonSession).where(
                LessonSession.court_id == court_id,
                LessonSession.date == day,
                LessonSession.status == LessonStatus.scheduled,
            )
        ).all()
    ]
    return sorted(intervals)


def test_mixed_operations_never_leave_overlaps(session, court, member, clock):
    make_lesson_type(session, "group")
    second = make_court(session, "Court 2")
    court_id, second_id, member_id = court.id, second.id, member.id
    tuesday, next_monday = "2026-02-24", "2026-03-02"

    steps = []

    def step(fn, *args, **kwargs):
        result = _outcome(fn, *args, clock=clock, **kwargs)
        steps.append(result is not None)
        return result

    morning = step(create_booking, session, member_id, court_id, MONDAY, 600, 660)
    step(create_booking, session, member_id, court_id, MONDAY, 630, 690)
    evenings = step(create_recurring_booking, session, court_id, 0, 1080, 1200, "2026-02-16")
    step(create_lesson, session, court_id, "group", MONDAY, 1140, 1200)
    lesson = step(create_lesson, session, court_id, "group", MONDAY, 660, 720)
    step(reschedule_booking, session, morning.id, court_id, 690)
    step(reschedule_lesson, session, lesson.id, court_id, 600)
    step(cancel_booking, session, morning.id, member_id)
    step(reschedule_lesson, session, lesson.id, court_id, 600)
    step(create_booking, session, member_id, court_id, next_monday, 1100, 1160)
    step(create_booking, session, member_id, court_id, tuesday, 1100, 1160)
    step(create_recurring_booking, session, court_id, 1, 1080, 1140, "2026-02-17")
    deactivate_recurring_booking(session, evenings.id)
    late = step(create_booking, session, member_id, court_id, next_monday, 1100, 1160)
    step(create_recurring_booking, session, court_id, 0, 1140, 1260, "2026-03-09")
    step(reschedule_booking, session, late.id, second_id, 1140)
    step(create_lesson, session, second_id, "group", next_monday, 1150, 1210)
    step(cancel_lesson, session, lesson.id)
    step(create_booking, session, member_id, court_id, MONDAY, 630, 690)

    assert steps == [
        True, False, True, False, True, False, False, True, True, False,
        True, False, True, True, True, False, True, True,
    ]

    for cid in (court_id, second_id):
        for day in (MONDAY, tuesday, next_monday, "2026-03-09", "2026-03-16"):
            intervals = _active_intervals(session, cid, day)
            for (_, prev_end), (next_start, _) in zip(intervals, intervals[1:]):
                assert prev_end <= next_start, (cid, day, intervals)
