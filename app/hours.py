from __future__ import annotations

import datetime
import re
from typing import Optional, Union

MINUTES_PER_DAY = 24 * 60
TIME_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})(?::\d{2})?$")

TimeLike = Union[str, datetime.time]


def parse_hhmm(value: TimeLike) -> datetime.time:
    """Parse ``HH:MM`` (seconds tolerated and dropped) into a ``datetime.time``."""
    if isinstance(value, datetime.datetime):
        return value.time().replace(second=0, microsecond=0)
    if isinstance(value, datetime.time):
        return value.replace(second=0, microsecond=0)
    text = (value or "").strip() if isinstance(value, str) else ""
    match = TIME_PATTERN.match(text)
    if not match:
        raise ValueError(f"Time must be HH:MM, got {value!r}.")
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ValueError(f"Time out of range: {value!r}.")
    return datetime.time(hour, minute)


def format_hhmm(value: TimeLike) -> str:
    return parse_hhmm(value).strftime("%H:%M")


def minutes_since_midnight(value: TimeLike) -> int:
    parsed = parse_hhmm(value)
    return parsed.hour * 60 + parsed.minute


def crosses_midnight(start: TimeLike, end: TimeLike, is_overnight: bool = False) -> bool:
    """True when the shift ends on the next calendar day.

    An end at or before the start is read as wrapping past midnight even when
    the overnight flag was not set, so equal start and end is a full day.
    """
    if is_overnight:
        return True
    return minutes_since_midnight(end) <= minutes_since_midnight(start)


def span_minutes(start: TimeLike, end: TimeLike, is_overnight: bool = False) -> int:
    start_m = minutes_since_midnight(start)
    end_m = minutes_since_midnight(end)
    if crosses_midnight(start, end, is_overnight):
        end_m += MINUTES_PER_DAY
    return end_m - start_m


def paid_hours(
    start: TimeLike,
    end: TimeLike,
    break_minutes: int = 0,
    is_overnight: bool = False,
) -> float:
    """Paid hours for a shift: span minus unpaid break, never negative.

    This is the single definition used by the grid, templates, budgets and
    exports.
    """
    worked = span_minutes(start, end, is_overnight) - int(break_minutes or 0)
    return max(0, worked) / 60


def actual_paid_hours(
    clock_in: datetime.datetime, clock_out: Optional[datetime.datetime]
) -> Optional[float]:
    """Hours between clock-in and clock-out in whole minutes; ``None`` while still clocked in."""
    if clock_out is None:
        return None
    worked = int((clock_out - clock_in).total_seconds() // 60)
    return max(0, worked) / 60


def shift_paid_hours(shift) -> float:
    """``paid_hours`` for a shift-shaped mapping or ORM row."""
    if isinstance(shift, dict):
        return paid_hours(
            shift["start_time"],
            shift["end_time"],
            shift.get("unpaid_break_minutes") or 0,
            bool(shift.get("is_overnight")),
        )
    return paid_hours(
        shift.start_time,
        shift.end_time,
        shift.unpaid_break_minutes or 0,
        bool(shift.is_overnight),
    )


def shift_bounds(
    shift_date: datetime.date,
    start: TimeLike,
    end: TimeLike,
    is_overnight: bool = False,
) -> tuple[datetime.datetime, datetime.datetime]:
    """Naive start/end datetimes, rolling the end to the next day when the shift wraps."""
    start_dt = datetime.datetime.combine(shift_date, parse_hhmm(start))
    end_date = shift_date + datetime.timedelta(days=1) if crosses_midnight(start, end, is_overnight) else shift_date
    end_dt = datetime.datetime.combine(end_date, parse_hhmm(end))
    return start_dt, end_dt
