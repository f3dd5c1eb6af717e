import pytest

from courtbook.errors import ValidationError
from courtbook.intervals import DateWindow, Interval


def test_back_to_back_intervals_do_not_overlap():
    assert not Interval(600, 660).overlaps(Interval(660, 720))
    assert not Interval(660, 720).overlaps(Interval(600, 660))


def test_partial_and_nested_overlap():
    assert Interval(600, 660).overlaps(Interval(630, 690))
    assert Interval(600, 720).overlaps(Interval(630, 660))


@pytest.mark.parametrize("start,end", [(600, 600), (660, 600), (-1, 60), (0, 1441)])
def test_invalid_intervals_are_rejected(start, end):
    with pytest.raises(ValidationError):
        Interval(start, end)


def test_shifted_to_keeps_duration():
    moved = Interval(600, 690).shifted_to(900)
    assert (moved.start_minute, moved.end_minute) == (900, 990)
    assert str(moved) == "15:00-16:30"


def test_single_day_window():
    window = DateWindow.single("2026-02-20")
    assert window.is_single_day
    assert window.effective_weekday() == 4
    assert window.contains("2026-02-20")
    assert not window.contains("2026-02-21")


def test_weekly_window_contains_only_its_weekday():
    window = DateWindow.weekly(0, "2026-02-16")
    assert window.contains("2026-02-23")
    assert window.contains("2030-01-07")
    assert not window.contains("2026-02-24")
    assert not window.contains("2026-02-09")


def test_window_validation():
    with pytest.raises(ValidationError):
        DateWindow.single("20-02-2026")
    with pytest.raises(ValidationError):
        DateWindow("2026-03-01", "2026-02-01")
    with pytest.raises(ValidationError):
        DateWindow.weekly(7, "2026-02-16")
