from datetime import datetime, timedelta, timezone

import pytest

from courtbook.time_utils import (
    FixedClock,
    add_calendar_days,
    calendar_day_diff,
    civil_date_str,
    civil_to_utc,
    hm_to_minute,
    hours_between,
    minute_to_hm,
)


def test_hm_round_trip():
    assert hm_to_minute("08:30") == 510
    assert minute_to_hm(510) == "08:30"
    assert minute_to_hm(0) == "00:00"


def test_civil_date_rolls_over_at_utc_plus_eight_midnight():
    assert civil_date_str(datetime(2026, 2, 19, 15, 59)) == "2026-02-19"
    assert civil_date_str(datetime(2026, 2, 19, 16, 0)) == "2026-02-20"


def test_calendar_day_diff_uses_civil_dates_not_elapsed_hours():
    # 23:59 -> 00:01 local is two minutes but one civil day.
    assert calendar_day_diff(datetime(2026, 2, 19, 15, 59), datetime(2026, 2, 19, 16, 1)) == 1
    # Seven and a half days apart on the same local day boundary.
    applied = datetime(2026, 2, 19, 15, 59)
    lesson = datetime(2026, 2, 26, 16, 0)
    assert lesson - applied < timedelta(days=7, hours=1)
    assert calendar_day_diff(applied, lesson) == 8


def test_calendar_day_diff_is_signed():
    assert calendar_day_diff(datetime(2026, 3, 1), datetime(2026, 2, 27)) == -2


def test_aware_instants_are_converted():
    aware = datetime(2026, 2, 19, 23, 0, tzinfo=timezone(timedelta(hours=8)))
    assert calendar_day_diff(aware, datetime(2026, 2, 19, 15, 0)) == 0


def test_add_calendar_days_keeps_wall_clock_time():
    moved = add_calendar_days(datetime(2026, 2, 19, 0, 0), 30)
    assert moved == datetime(2026, 3, 21, 0, 0)


def test_civil_to_utc():
    assert civil_to_utc("2026-02-20", 18 * 60) == datetime(2026, 2, 20, 10, 0)
    assert civil_to_utc("2026-02-20", 0) == datetime(2026, 2, 19, 16, 0)


def test_hours_between():
    assert hours_between(datetime(2026, 2, 19), datetime(2026, 2, 20, 6)) == pytest.approx(30.0)


def test_fixed_clock_advance():
    clock = FixedClock(datetime(2026, 2, 19, 2, 0))
    clock.advance(hours=3)
    assert clock.now() == datetime(2026, 2, 19, 5, 0)
