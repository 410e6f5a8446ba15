from __future__ import annotations

import datetime
import sys
from pathlib import Path

import pytest

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from hours import (  # noqa: E402
    crosses_midnight,
    format_hhmm,
    paid_hours,
    parse_hhmm,
    shift_bounds,
    shift_paid_hours,
    span_minutes,
)


def test_overnight_shift_with_break() -> None:
    assert paid_hours("18:00", "02:00", 30, True) == pytest.approx(7.5)


def test_overnight_flag_adds_a_day() -> None:
    assert paid_hours("22:00", "02:00", 0, True) == pytest.approx(4.0)


def test_end_before_start_wraps_without_flag() -> None:
    assert paid_hours("22:00", "02:00", 0, False) == pytest.approx(paid_hours("22:00", "02:00", 0, True))
    assert crosses_midnight("22:00", "02:00") is True


def test_equal_start_and_end_wraps_to_a_full_day() -> None:
    assert paid_hours("09:00", "09:00", 0, False) == pytest.approx(24.0)
    assert crosses_midnight("09:00", "09:00") is True
    start, end = shift_bounds(datetime.date(2024, 6, 3), "09:00", "09:00")
    assert end - start == datetime.timedelta(hours=24)


def test_equal_start_and_end_flagged_overnight_is_a_full_day() -> None:
    assert paid_hours("09:00", "09:00", 0, True) == pytest.approx(24.0)


def test_break_longer_than_span_clamps_to_zero() -> None:
    assert paid_hours("10:00", "11:00", 90) == 0


def test_day_shift() -> None:
    assert paid_hours("09:00", "17:30", 30) == pytest.approx(8.0)
    assert span_minutes("09:00", "17:30") == 510


@pytest.mark.parametrize(
    "start,end",
    [("06:00", "14:00"), ("17:00", "01:30"), ("23:45", "00:15"), ("12:00", "12:00"), ("00:00", "00:00")],
)
def test_break_never_increases_hours(start: str, end: str) -> None:
    base = paid_hours(start, end, 0, False)
    for break_minutes in (1, 15, 30, 60, 600, 2000):
        adjusted = paid_hours(start, end, break_minutes, False)
        assert adjusted >= 0
        assert base >= adjusted


def test_accepts_time_objects_and_seconds() -> None:
    assert paid_hours(datetime.time(8, 0), datetime.time(12, 0)) == pytest.approx(4.0)
    assert parse_hhmm("08:15:59") == datetime.time(8, 15)
    assert format_hhmm(datetime.time(7, 5)) == "07:05"


@pytest.mark.parametrize("value", ["", "7", "25:00", "12:60", "noon", None])
def test_rejects_malformed_times(value) -> None:
    with pytest.raises(ValueError):
        parse_hhmm(value)


def test_shift_bounds_roll_end_to_next_day() -> None:
    start, end = shift_bounds(datetime.date(2024, 6, 8), "18:00", "02:00", True)
    assert start == datetime.datetime(2024, 6, 8, 18, 0)
    assert end == datetime.datetime(2024, 6, 9, 2, 0)


def test_shift_paid_hours_reads_dicts() -> None:
    shift = {"start_time": "18:00", "end_time": "02:00", "unpaid_break_minutes": 30, "is_overnight": True}
    assert shift_paid_hours(shift) == pytest.approx(7.5)
