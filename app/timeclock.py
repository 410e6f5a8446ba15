"""Timeclock sessions and planned-versus-worked reconciliation.

Staff clock in and out against the rota. A clock-in is linked to the
employee's scheduled shift that day when it starts within two hours of it;
otherwise the session is flagged unscheduled. Clock times are venue
wall-clock time, the same frame shift start and end times use.
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select

from database import (
    SHIFT_STATUS_SCHEDULED,
    SHIFT_STATUS_SICK,
    Shift,
    TimeclockSession,
    normalize_week_start,
)
from hours import actual_paid_hours, format_hhmm, shift_bounds, shift_paid_hours
from results import RotaNotFoundError, RotaValidationError
from shifts import clean_text, list_shifts_between, parse_date, require_time

LINK_WINDOW = datetime.timedelta(hours=2)
VARIANCE_HOURS = 0.5

FLAG_UNSCHEDULED = "unscheduled"
FLAG_UNMATCHED = "unmatched_session"
FLAG_SICK = "sick"
FLAG_VARIANCE = "variance"
FLAG_OPEN = "still_clocked_in"

SESSION_FIELDS = {"clock_in", "clock_out", "notes"}


def _now() -> datetime.datetime:
    return datetime.datetime.now().replace(second=0, microsecond=0)


def _require_employee(value: Any) -> int:
    if isinstance(value, bool):
        raise RotaValidationError("Employee id must be a positive whole number.")
    try:
        employee_id = int(value)
    except (TypeError, ValueError) as exc:
        raise RotaValidationError("Employee id must be a positive whole number.") from exc
    if employee_id <= 0:
        raise RotaValidationError("Employee id must be a positive whole number.")
    return employee_id


def _require_moment(value: Any, label: str) -> datetime.datetime:
    if isinstance(value, datetime.datetime):
        moment = value
    elif isinstance(value, str) and value.strip():
        try:
            moment = datetime.datetime.fromisoformat(value.strip())
        except ValueError as exc:
            raise RotaValidationError(f"Invalid {label} '{value}'. Use YYYY-MM-DDTHH:MM.") from exc
    else:
        raise RotaValidationError(f"{label} is required.")
    if moment.tzinfo is not None:
        moment = moment.astimezone().replace(tzinfo=None)
    return moment.replace(second=0, microsecond=0)


def _on_day(day: datetime.date, value: Any, label: str) -> datetime.datetime:
    return datetime.datetime.combine(day, require_time(value, label))


def _check_order(clock_in: datetime.datetime, clock_out: Optional[datetime.datetime]) -> None:
    if clock_out is not None and clock_out <= clock_in:
        raise RotaValidationError("Clock-out must be after clock-in.")


def get_session(session, session_id: int) -> TimeclockSession:
    entry = session.get(TimeclockSession, session_id)
    if entry is None:
        raise RotaNotFoundError(f"Timeclock session {session_id} was not found.")
    return entry


def open_session(session, employee_id: int) -> Optional[TimeclockSession]:
    stmt = (
        select(TimeclockSession)
        .where(TimeclockSession.employee_id == employee_id, TimeclockSession.clock_out_at.is_(None))
        .order_by(TimeclockSession.clock_in_at.desc())
    )
    return session.scalars(stmt).first()


def list_open_sessions(session) -> List[TimeclockSession]:
    stmt = (
        select(TimeclockSession)
        .where(TimeclockSession.clock_out_at.is_(None))
        .order_by(TimeclockSession.clock_in_at, TimeclockSession.id)
    )
    return list(session.scalars(stmt))


def list_sessions_between(
    session,
    from_date: datetime.date,
    to_date: datetime.date,
    *,
    employee_id: Optional[int] = None,
) -> List[TimeclockSession]:
    stmt = select(TimeclockSession).where(
        TimeclockSession.work_date >= from_date, TimeclockSession.work_date <= to_date
    )
    if employee_id is not None:
        stmt = stmt.where(TimeclockSession.employee_id == employee_id)
    stmt = stmt.order_by(TimeclockSession.work_date, TimeclockSession.clock_in_at, TimeclockSession.id)
    return list(session.scalars(stmt))


def week_sessions(session, week_start: datetime.date | str) -> List[TimeclockSession]:
    start = normalize_week_start(parse_date(week_start, "week start"))
    return list_sessions_between(session, start, start + datetime.timedelta(days=6))


def _shift_start(shift: Shift) -> datetime.datetime:
    return shift_bounds(shift.shift_date, shift.start_time, shift.end_time, bool(shift.is_overnight))[0]


def find_shift_for_clock_in(session, employee_id: int, at: datetime.datetime) -> Optional[Shift]:
    """The employee's scheduled shift that day starting nearest ``at``, within two hours."""
    stmt = select(Shift).where(
        Shift.employee_id == employee_id,
        Shift.shift_date == at.date(),
        Shift.status == SHIFT_STATUS_SCHEDULED,
    )
    best, best_gap = None, None
    for shift in session.scalars(stmt.order_by(Shift.start_time, Shift.id)):
        gap = abs(at - _shift_start(shift))
        if gap < LINK_WINDOW and (best_gap is None or gap < best_gap):
            best, best_gap = shift, gap
    return best


def clock_in(
    session,
    employee_id: Any,
    *,
    at: Optional[datetime.datetime | str] = None,
    actor: Optional[str] = None,
) -> TimeclockSession:
    employee_id = _require_employee(employee_id)
    moment = _require_moment(at, "clock-in time") if at is not None else _now()
    if open_session(session, employee_id) is not None:
        raise RotaValidationError("Already clocked in. Please clock out first.")
    shift = find_shift_for_clock_in(session, employee_id, moment)
    entry = TimeclockSession(
        employee_id=employee_id,
        work_date=moment.date(),
        clock_in_at=moment,
        linked_shift_id=shift.id if shift is not None else None,
        is_unscheduled=shift is None,
        created_by=actor,
    )
    session.add(entry)
    session.commit()
    session.refresh(entry)
    return entry


def clock_out(session, employee_id: Any, *, at: Optional[datetime.datetime | str] = None) -> TimeclockSession:
    employee_id = _require_employee(employee_id)
    moment = _require_moment(at, "clock-out time") if at is not None else _now()
    entry = open_session(session, employee_id)
    if entry is None:
        raise RotaNotFoundError("No open clock-in session found.")
    _check_order(entry.clock_in_at, moment)
    entry.clock_out_at = moment
    session.commit()
    session.refresh(entry)
    return entry


def record_session(session, payload: Dict[str, Any], *, actor: Optional[str] = None) -> TimeclockSession:
    """Manager entry for a missed clock-in. Times are ``HH:MM`` on ``work_date``."""
    employee_id = _require_employee(payload.get("employee_id"))
    work_date = parse_date(payload.get("work_date"), "work_date")
    clock_in_at = _on_day(work_date, payload.get("clock_in"), "Clock-in time")
    raw_out = payload.get("clock_out")
    clock_out_at = _on_day(work_date, raw_out, "Clock-out time") if raw_out not in (None, "") else None
    _check_order(clock_in_at, clock_out_at)
    if clock_out_at is None and open_session(session, employee_id) is not None:
        raise RotaValidationError("Already clocked in. Please clock out first.")
    entry = TimeclockSession(
        employee_id=employee_id,
        work_date=work_date,
        clock_in_at=clock_in_at,
        clock_out_at=clock_out_at,
        notes=clean_text(payload.get("notes"), 255),
        created_by=actor,
    )
    session.add(entry)
    session.commit()
    session.refresh(entry)
    return entry


def update_session(session, session_id: int, patch: Dict[str, Any]) -> TimeclockSession:
    """Manager correction of clock times or notes on the session's own work date."""
    unknown = set(patch) - SESSION_FIELDS
    if unknown:
        raise RotaValidationError(f"Unsupported timeclock fields: {', '.join(sorted(unknown))}.")
    entry = get_session(session, session_id)
    clock_in_at = entry.clock_in_at
    if "clock_in" in patch:
        clock_in_at = _on_day(entry.work_date, patch["clock_in"], "Clock-in time")
    if "clock_out" in patch:
        raw_out = patch["clock_out"]
        clock_out_at = _on_day(entry.work_date, raw_out, "Clock-out time") if raw_out not in (None, "") else None
    else:
        clock_out_at = entry.clock_out_at
    _check_order(clock_in_at, clock_out_at)
    entry.clock_in_at = clock_in_at
    entry.clock_out_at = clock_out_at
    if "notes" in patch:
        entry.notes = clean_text(patch["notes"], 255)
    session.commit()
    session.refresh(entry)
    return entry


def approve_session(session, session_id: int) -> TimeclockSession:
    entry = get_session(session, session_id)
    if not entry.is_reviewed:
        entry.is_reviewed = True
        session.commit()
        session.refresh(entry)
    return entry


def delete_session(session, session_id: int) -> Dict[str, Any]:
    entry = get_session(session, session_id)
    snapshot = {"id": entry.id, "employee_id": entry.employee_id, "work_date": entry.work_date.isoformat()}
    session.delete(entry)
    session.commit()
    return snapshot


# -- reconciliation ----------------------------------------------------------


@dataclass
class ReconciliationRow:
    """One planned shift and the session worked against it, or a session with no shift."""

    employee_id: int
    work_date: datetime.date
    department: str = ""
    shift_id: Optional[int] = None
    session_id: Optional[int] = None
    planned_start: Optional[str] = None
    planned_end: Optional[str] = None
    actual_start: Optional[str] = None
    actual_end: Optional[str] = None
    planned_hours: Optional[float] = None
    actual_hours: Optional[float] = None
    session_notes: Optional[str] = None
    flags: List[str] = field(default_factory=list)

    @property
    def variance_hours(self) -> Optional[float]:
        if self.planned_hours is None or self.actual_hours is None:
            return None
        return round(self.actual_hours - self.planned_hours, 2)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "employee_id": self.employee_id,
            "work_date": self.work_date.isoformat(),
            "department": self.department,
            "shift_id": self.shift_id,
            "session_id": self.session_id,
            "planned_start": self.planned_start,
            "planned_end": self.planned_end,
            "actual_start": self.actual_start,
            "actual_end": self.actual_end,
            "planned_hours": self.planned_hours,
            "actual_hours": self.actual_hours,
            "variance_hours": self.variance_hours,
            "session_notes": self.session_notes,
            "flags": list(self.flags),
        }


def _round(value: Optional[float]) -> Optional[float]:
    return round(value, 2) if value is not None else None


def _apply_session(row: ReconciliationRow, entry: TimeclockSession) -> None:
    row.session_id = entry.id
    row.actual_start = format_hhmm(entry.clock_in_at)
    row.actual_end = format_hhmm(entry.clock_out_at) if entry.clock_out_at else None
    row.actual_hours = _round(actual_paid_hours(entry.clock_in_at, entry.clock_out_at))
    row.session_notes = entry.notes
    if entry.clock_out_at is None:
        row.flags.append(FLAG_OPEN)


def reconcile_shifts(shifts: Iterable[Shift], sessions: Iterable[TimeclockSession]) -> List[ReconciliationRow]:
    """Pair planned shifts with worked sessions.

    A session linked at clock-in pairs with its shift. Otherwise the shift
    takes the unlinked session of the same employee and day whose clock-in is
    nearest its start. Sessions left over get their own row so worked time is
    never dropped. Open shifts and cancelled shifts are not planned labour.
    """
    consumed = set()
    linked: Dict[int, List[TimeclockSession]] = {}
    unlinked: Dict[tuple, List[TimeclockSession]] = {}
    sessions = list(sessions)
    for entry in sessions:
        if entry.linked_shift_id is not None:
            linked.setdefault(entry.linked_shift_id, []).append(entry)
        else:
            unlinked.setdefault((entry.employee_id, entry.work_date), []).append(entry)

    def take(shift: Shift) -> Optional[TimeclockSession]:
        for entry in linked.get(shift.id, []):
            if entry.id not in consumed:
                consumed.add(entry.id)
                return entry
        start = _shift_start(shift)
        candidates = [
            entry
            for entry in unlinked.get((shift.employee_id, shift.shift_date), [])
            if entry.id not in consumed
        ]
        if not candidates:
            return None
        best = min(candidates, key=lambda entry: abs(entry.clock_in_at - start))
        consumed.add(best.id)
        return best

    rows: List[ReconciliationRow] = []
    planned = [
        shift
        for shift in shifts
        if shift.employee_id is not None and shift.status in (SHIFT_STATUS_SCHEDULED, SHIFT_STATUS_SICK)
    ]
    for shift in sorted(planned, key=lambda s: (s.employee_id, s.shift_date, s.start_time, s.id)):
        row = ReconciliationRow(
            employee_id=shift.employee_id,
            work_date=shift.shift_date,
            department=shift.department,
            shift_id=shift.id,
            planned_start=format_hhmm(shift.start_time),
            planned_end=format_hhmm(shift.end_time),
            planned_hours=_round(shift_paid_hours(shift)),
        )
        entry = take(shift)
        if entry is not None:
            _apply_session(row, entry)
            if entry.is_unscheduled:
                row.flags.append(FLAG_UNSCHEDULED)
        if shift.status == SHIFT_STATUS_SICK:
            row.flags.append(FLAG_SICK)
        if row.actual_hours is not None and abs(row.planned_hours - row.actual_hours) > VARIANCE_HOURS:
            row.flags.append(FLAG_VARIANCE)
        rows.append(row)

    for entry in sessions:
        if entry.id in consumed:
            continue
        row = ReconciliationRow(employee_id=entry.employee_id, work_date=entry.work_date)
        row.flags.append(FLAG_UNSCHEDULED if entry.is_unscheduled or entry.linked_shift_id is None else FLAG_UNMATCHED)
        _apply_session(row, entry)
        rows.append(row)

    rows.sort(key=lambda row: (row.employee_id, row.work_date, row.planned_start or row.actual_start or ""))
    return rows


def reconcile_week(session, week_start: datetime.date | str) -> List[ReconciliationRow]:
    start = normalize_week_start(parse_date(week_start, "week start"))
    end = start + datetime.timedelta(days=6)
    shifts = list_shifts_between(session, start, end, include_cancelled=False)
    return reconcile_shifts(shifts, list_sessions_between(session, start, end))


def reconciliation_totals(rows: Iterable[ReconciliationRow]) -> Dict[str, Any]:
    rows = list(rows)
    planned = sum(row.planned_hours or 0 for row in rows)
    actual = sum(row.actual_hours or 0 for row in rows)
    return {
        "planned_hours": round(planned, 2),
        "actual_hours": round(actual, 2),
        "variance_hours": round(actual - planned, 2),
        "flagged_rows": sum(1 for row in rows if row.flags),
    }
