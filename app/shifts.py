from __future__ import annotations

import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select

from assignment import Assignment, AssignedTo, Unassigned, coerce_assignment
from database import (
    SHIFT_STATUS_CANCELLED,
    SHIFT_STATUS_SCHEDULED,
    SHIFT_STATUS_SICK,
    RotaWeek,
    Shift,
    get_or_create_week,
    shift_to_dict,
)
from departments import department_names, normalize_department
from hours import crosses_midnight, parse_hhmm, span_minutes
from publishing import mark_week_changed
from results import RotaNotFoundError, RotaValidationError, StaleShiftError

EDITABLE_FIELDS = {
    "start_time",
    "end_time",
    "unpaid_break_minutes",
    "department",
    "notes",
    "is_overnight",
    "name",
}
PLACEMENT_FIELDS = {"shift_date", "employee_id", "assignment"}


def parse_date(value: Any, field: str = "shift_date") -> datetime.date:
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return datetime.date.fromisoformat(value.strip())
        except ValueError as exc:
            raise RotaValidationError(f"Invalid {field} '{value}'. Use YYYY-MM-DD.") from exc
    raise RotaValidationError(f"{field} is required.")


def require_time(value: Any, label: str) -> datetime.time:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise RotaValidationError(f"{label} is required.")
    try:
        return parse_hhmm(value)
    except ValueError as exc:
        raise RotaValidationError(f"{label}: {exc}") from exc


def require_break(value: Any) -> int:
    if value in (None, ""):
        return 0
    if isinstance(value, bool):
        raise RotaValidationError("Unpaid break must be a whole number of minutes.")
    try:
        minutes = int(value)
    except (TypeError, ValueError) as exc:
        raise RotaValidationError("Unpaid break must be a whole number of minutes.") from exc
    if minutes < 0:
        raise RotaValidationError("Unpaid break cannot be negative.")
    return minutes


def require_department(value: Any, allowed: Optional[Iterable[str]] = None) -> str:
    department = normalize_department(value if isinstance(value, str) else "")
    if not department:
        raise RotaValidationError("Department is required.")
    choices = [normalize_department(name) for name in (allowed if allowed is not None else department_names())]
    if department not in choices:
        raise RotaValidationError(f"Unknown department '{value}'.")
    return department


def check_window(start: datetime.time, end: datetime.time, break_minutes: int, is_overnight: bool) -> None:
    if break_minutes > span_minutes(start, end, is_overnight):
        raise RotaValidationError("Unpaid break cannot be longer than the shift.")


def clean_text(value: Any, limit: int) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text[:limit] or None


def _coerce(value: Any) -> Assignment:
    try:
        return coerce_assignment(value)
    except ValueError as exc:
        raise RotaValidationError(str(exc)) from exc


def _check_version(shift: Shift, expected_version: Optional[int]) -> None:
    if expected_version is None:
        return
    if int(expected_version) != shift.version:
        raise StaleShiftError(shift.id, int(expected_version), shift.version)


def _touch(session, shift: Shift) -> None:
    shift.version = (shift.version or 0) + 1
    mark_week_changed(session, shift.week)


def _commit(session, shift: Optional[Shift] = None) -> None:
    try:
        session.commit()
    except Exception:
        session.rollback()
        raise
    if shift is not None:
        session.refresh(shift)


def get_shift(session, shift_id: int) -> Shift:
    shift = session.get(Shift, shift_id)
    if shift is None:
        raise RotaNotFoundError(f"Shift {shift_id} was not found.")
    return shift


def create_shift(
    session,
    payload: Dict[str, Any],
    *,
    actor: Optional[str] = None,
    allowed_departments: Optional[Iterable[str]] = None,
) -> Shift:
    """Insert a shift from a dict payload.

    ``week_id`` is optional: without it the week holding ``shift_date`` is
    resolved (and created on first access). ``employee_id`` of ``None`` makes
    an open shift.
    """
    shift_date = parse_date(payload.get("shift_date"))
    start = require_time(payload.get("start_time"), "Start time")
    end = require_time(payload.get("end_time"), "End time")
    break_minutes = require_break(payload.get("unpaid_break_minutes"))
    is_overnight = crosses_midnight(start, end, bool(payload.get("is_overnight")))
    department = require_department(payload.get("department"), allowed_departments)
    check_window(start, end, break_minutes, is_overnight)
    assignment = _coerce(payload.get("assignment", payload.get("employee_id")))

    week_id = payload.get("week_id")
    if week_id:
        week = session.get(RotaWeek, week_id)
        if week is None:
            raise RotaNotFoundError(f"Rota week {week_id} was not found.")
    else:
        week = get_or_create_week(session, shift_date)
    if not week.contains(shift_date):
        raise RotaValidationError(
            f"Shift date {shift_date.isoformat()} is outside the week starting {week.week_start.isoformat()}."
        )

    shift = Shift(
        week_id=week.id,
        employee_id=assignment.employee_id,
        template_id=payload.get("template_id"),
        shift_date=shift_date,
        start_time=start,
        end_time=end,
        unpaid_break_minutes=break_minutes,
        is_overnight=is_overnight,
        department=department,
        status=SHIFT_STATUS_SCHEDULED,
        name=clean_text(payload.get("name"), 80),
        notes=clean_text(payload.get("notes"), 255),
        version=1,
        created_by=actor,
    )
    session.add(shift)
    mark_week_changed(session, week)
    _commit(session, shift)
    return shift


def update_shift(
    session,
    shift_id: int,
    patch: Dict[str, Any],
    *,
    expected_version: Optional[int] = None,
    allowed_departments: Optional[Iterable[str]] = None,
) -> Shift:
    """Edit the time window, break, department, label, notes or overnight flag.

    Placement (date and assignee) is changed only through ``move_shift``. A
    patch that leaves every value as it was writes nothing.
    """
    placement = PLACEMENT_FIELDS.intersection(patch)
    if placement:
        raise RotaValidationError(
            f"Use move to change {', '.join(sorted(placement))}; edits only touch times and details."
        )
    unknown = set(patch) - EDITABLE_FIELDS
    if unknown:
        raise RotaValidationError(f"Unsupported shift fields: {', '.join(sorted(unknown))}.")

    shift = get_shift(session, shift_id)
    _check_version(shift, expected_version)

    start = require_time(patch["start_time"], "Start time") if "start_time" in patch else shift.start_time
    end = require_time(patch["end_time"], "End time") if "end_time" in patch else shift.end_time
    if "unpaid_break_minutes" in patch:
        break_minutes = require_break(patch["unpaid_break_minutes"])
    else:
        break_minutes = shift.unpaid_break_minutes or 0
    if "is_overnight" in patch:
        overnight_flag = bool(patch["is_overnight"])
    elif "start_time" in patch or "end_time" in patch:
        overnight_flag = False
    else:
        overnight_flag = bool(shift.is_overnight)
    is_overnight = crosses_midnight(start, end, overnight_flag)
    check_window(start, end, break_minutes, is_overnight)

    changes = {
        "start_time": start,
        "end_time": end,
        "unpaid_break_minutes": break_minutes,
        "is_overnight": is_overnight,
    }
    if "department" in patch:
        changes["department"] = require_department(patch["department"], allowed_departments)
    if "name" in patch:
        changes["name"] = clean_text(patch["name"], 80)
    if "notes" in patch:
        changes["notes"] = clean_text(patch["notes"], 255)
    changes = {field: value for field, value in changes.items() if getattr(shift, field) != value}
    if not changes:
        # Nothing differs: no version bump and no drift on a published week.
        return shift

    for field, value in changes.items():
        setattr(shift, field, value)
    _touch(session, shift)
    _commit(session, shift)
    return shift


def move_shift(
    session,
    shift_id: int,
    target: Assignment | int | None,
    target_date: datetime.date | str,
    *,
    expected_version: Optional[int] = None,
) -> Tuple[Shift, bool]:
    """Place a shift on another row and/or day of its week.

    Returns ``(shift, moved)``. Moving onto the current placement writes
    nothing and returns ``moved=False``.
    """
    shift = get_shift(session, shift_id)
    assignment = _coerce(target)
    day = parse_date(target_date, "target date")
    if assignment.employee_id == shift.employee_id and day == shift.shift_date:
        return shift, False
    _check_version(shift, expected_version)
    week = shift.week
    if not week.contains(day):
        raise RotaValidationError(
            f"Shifts can only move within their week ({week.week_start.isoformat()} to {week.week_end.isoformat()})."
        )
    shift.employee_id = assignment.employee_id
    shift.shift_date = day
    _touch(session, shift)
    _commit(session, shift)
    return shift, True


def reassign_shift(
    session,
    shift_id: int,
    employee_id: Optional[int],
    *,
    reason: Optional[str] = None,
    actor: Optional[str] = None,
    expected_version: Optional[int] = None,
) -> Shift:
    """Hand a shift to someone else on the same day, keeping who had it first."""
    shift = get_shift(session, shift_id)
    _check_version(shift, expected_version)
    assignment = _coerce(employee_id)
    if assignment.employee_id == shift.employee_id:
        raise RotaValidationError("Shift is already assigned there.")
    if shift.status == SHIFT_STATUS_CANCELLED:
        raise RotaValidationError("Cancelled shifts cannot be reassigned.")
    previous = shift.employee_id
    if shift.original_employee_id is None:
        shift.original_employee_id = previous
    shift.reassigned_from_id = previous
    shift.employee_id = assignment.employee_id
    shift.reassigned_at = datetime.datetime.now(datetime.timezone.utc)
    shift.reassigned_by = actor
    shift.reassignment_reason = clean_text(reason, 255)
    if shift.status == SHIFT_STATUS_SICK:
        shift.status = SHIFT_STATUS_SCHEDULED
    _touch(session, shift)
    _commit(session, shift)
    return shift


def _set_status(session, shift_id: int, status: str, expected_version: Optional[int]) -> Shift:
    shift = get_shift(session, shift_id)
    _check_version(shift, expected_version)
    if shift.status == status:
        return shift
    if shift.status == SHIFT_STATUS_CANCELLED:
        raise RotaValidationError("Cancelled shifts cannot change status.")
    shift.status = status
    _touch(session, shift)
    _commit(session, shift)
    return shift


def mark_shift_sick(session, shift_id: int, *, expected_version: Optional[int] = None) -> Shift:
    """Soft status change; the shift keeps its date, times and assignee."""
    return _set_status(session, shift_id, SHIFT_STATUS_SICK, expected_version)


def cancel_shift(session, shift_id: int, *, expected_version: Optional[int] = None) -> Shift:
    return _set_status(session, shift_id, SHIFT_STATUS_CANCELLED, expected_version)


def delete_shift(session, shift_id: int) -> Dict[str, Any]:
    """Hard delete. Returns the last state of the row for the caller's records."""
    shift = get_shift(session, shift_id)
    snapshot = shift_to_dict(shift)
    mark_week_changed(session, shift.week)
    session.delete(shift)
    _commit(session)
    return snapshot


def list_shifts_between(
    session,
    from_date: datetime.date,
    to_date: datetime.date,
    *,
    employee_id: Optional[int] = None,
    include_cancelled: bool = True,
) -> List[Shift]:
    stmt = select(Shift).where(Shift.shift_date >= from_date, Shift.shift_date <= to_date)
    if employee_id is not None:
        stmt = stmt.where(Shift.employee_id == employee_id)
    if not include_cancelled:
        stmt = stmt.where(Shift.status != SHIFT_STATUS_CANCELLED)
    stmt = stmt.order_by(Shift.shift_date, Shift.start_time, Shift.id)
    return list(session.scalars(stmt))


def list_week_shifts(session, week_start: datetime.date | str, *, include_cancelled: bool = True) -> List[Shift]:
    week = get_or_create_week(session, parse_date(week_start, "week start"))
    return list_shifts_between(
        session, week.week_start, week.week_end, include_cancelled=include_cancelled
    )


def find_same_day_shifts(
    session,
    target: Assignment | int | None,
    shift_date: datetime.date,
    *,
    exclude_shift_id: Optional[int] = None,
) -> List[Shift]:
    """Other live shifts on the same row and day."""
    assignment = _coerce(target)
    stmt = select(Shift).where(Shift.shift_date == shift_date, Shift.status != SHIFT_STATUS_CANCELLED)
    if isinstance(assignment, Unassigned):
        stmt = stmt.where(Shift.employee_id.is_(None))
    elif isinstance(assignment, AssignedTo):
        stmt = stmt.where(Shift.employee_id == assignment.employee_id)
    if exclude_shift_id is not None:
        stmt = stmt.where(Shift.id != exclude_shift_id)
    return list(session.scalars(stmt.order_by(Shift.start_time)))
