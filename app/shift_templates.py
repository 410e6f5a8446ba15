from __future__ import annotations

import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select

from assignment import coerce_assignment
from database import (
    SHIFT_STATUS_SCHEDULED,
    RotaWeek,
    Shift,
    ShiftTemplate,
)
from hours import crosses_midnight
from publishing import mark_week_changed
from results import RotaNotFoundError, RotaValidationError
from shifts import check_window, clean_text, require_break, require_department, require_time

TEMPLATE_FIELDS = {
    "name",
    "start_time",
    "end_time",
    "unpaid_break_minutes",
    "department",
    "colour",
    "day_of_week",
    "employee_id",
}


def _clean_day_of_week(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    if isinstance(value, bool):
        raise RotaValidationError("Day of week must be 0 (Monday) to 6 (Sunday).")
    try:
        day = int(value)
    except (TypeError, ValueError) as exc:
        raise RotaValidationError("Day of week must be 0 (Monday) to 6 (Sunday).") from exc
    if not 0 <= day <= 6:
        raise RotaValidationError("Day of week must be 0 (Monday) to 6 (Sunday).")
    return day


def _clean_employee(value: Any) -> Optional[int]:
    try:
        return coerce_assignment(value).employee_id
    except ValueError as exc:
        raise RotaValidationError(str(exc)) from exc


def _clean_name(value: Any) -> str:
    name = clean_text(value, 80)
    if not name:
        raise RotaValidationError("Template name is required.")
    return name


def get_template(session, template_id: int) -> ShiftTemplate:
    template = session.get(ShiftTemplate, template_id)
    if template is None:
        raise RotaNotFoundError(f"Shift template {template_id} was not found.")
    return template


def list_templates(session, *, active_only: bool = True) -> List[ShiftTemplate]:
    stmt = select(ShiftTemplate)
    if active_only:
        stmt = stmt.where(ShiftTemplate.is_active.is_(True))
    stmt = stmt.order_by(ShiftTemplate.department, ShiftTemplate.start_time, ShiftTemplate.name)
    return list(session.scalars(stmt))


def create_template(
    session,
    payload: Dict[str, Any],
    *,
    actor: Optional[str] = None,
    allowed_departments: Optional[Iterable[str]] = None,
) -> ShiftTemplate:
    start = require_time(payload.get("start_time"), "Start time")
    end = require_time(payload.get("end_time"), "End time")
    break_minutes = require_break(payload.get("unpaid_break_minutes"))
    check_window(start, end, break_minutes, False)
    template = ShiftTemplate(
        name=_clean_name(payload.get("name")),
        start_time=start,
        end_time=end,
        unpaid_break_minutes=break_minutes,
        department=require_department(payload.get("department"), allowed_departments),
        colour=clean_text(payload.get("colour"), 16),
        day_of_week=_clean_day_of_week(payload.get("day_of_week")),
        employee_id=_clean_employee(payload.get("employee_id")),
        is_active=True,
        created_by=actor,
    )
    session.add(template)
    session.commit()
    session.refresh(template)
    return template


def update_template(
    session,
    template_id: int,
    patch: Dict[str, Any],
    *,
    allowed_departments: Optional[Iterable[str]] = None,
) -> ShiftTemplate:
    """Edit a template. Shifts already generated from it are left alone."""
    unknown = set(patch) - TEMPLATE_FIELDS
    if unknown:
        raise RotaValidationError(f"Unsupported template fields: {', '.join(sorted(unknown))}.")
    template = get_template(session, template_id)
    start = require_time(patch["start_time"], "Start time") if "start_time" in patch else template.start_time
    end = require_time(patch["end_time"], "End time") if "end_time" in patch else template.end_time
    if "unpaid_break_minutes" in patch:
        break_minutes = require_break(patch["unpaid_break_minutes"])
    else:
        break_minutes = template.unpaid_break_minutes or 0
    check_window(start, end, break_minutes, False)

    template.start_time = start
    template.end_time = end
    template.unpaid_break_minutes = break_minutes
    if "name" in patch:
        template.name = _clean_name(patch["name"])
    if "department" in patch:
        template.department = require_department(patch["department"], allowed_departments)
    if "colour" in patch:
        template.colour = clean_text(patch["colour"], 16)
    if "day_of_week" in patch:
        template.day_of_week = _clean_day_of_week(patch["day_of_week"])
    if "employee_id" in patch:
        template.employee_id = _clean_employee(patch["employee_id"])
    session.commit()
    session.refresh(template)
    return template


def deactivate_template(session, template_id: int) -> ShiftTemplate:
    """Soft delete. Templates are never removed once created."""
    template = get_template(session, template_id)
    if template.is_active:
        template.is_active = False
        session.commit()
        session.refresh(template)
    return template


def _existing_keys(session, week: RotaWeek) -> Tuple[set, set]:
    by_template = set()
    by_window = set()
    stmt = select(Shift).where(Shift.week_id == week.id)
    for shift in session.scalars(stmt):
        if shift.template_id is not None:
            by_template.add((shift.template_id, shift.shift_date))
        by_window.add((shift.employee_id, shift.shift_date, shift.start_time, shift.end_time))
    return by_template, by_window


def auto_populate_week_from_templates(
    session,
    week_id: int,
    days: Optional[Iterable[datetime.date]] = None,
    *,
    actor: Optional[str] = None,
) -> Tuple[int, List[Shift]]:
    """Create the week's shifts from day-of-week templates.

    A template is skipped for a date when the week already holds a shift
    generated from it on that date, or a shift on the same row, date and time
    window. Running it twice therefore creates nothing the second time. All
    created shifts are committed together or not at all.
    """
    week = session.get(RotaWeek, week_id)
    if week is None:
        raise RotaNotFoundError(f"Rota week {week_id} was not found.")
    dates = list(days) if days is not None else week.days
    outside = [day for day in dates if not week.contains(day)]
    if outside:
        raise RotaValidationError(
            f"Dates outside the week starting {week.week_start.isoformat()}: "
            + ", ".join(day.isoformat() for day in outside)
        )
    by_weekday = {day.weekday(): day for day in dates}
    by_template, by_window = _existing_keys(session, week)

    created: List[Shift] = []
    templates = [template for template in list_templates(session) if template.day_of_week is not None]
    try:
        for template in templates:
            day = by_weekday.get(template.day_of_week)
            if day is None:
                continue
            if (template.id, day) in by_template:
                continue
            window = (template.employee_id, day, template.start_time, template.end_time)
            if window in by_window:
                continue
            shift = Shift(
                week_id=week.id,
                employee_id=template.employee_id,
                template_id=template.id,
                shift_date=day,
                start_time=template.start_time,
                end_time=template.end_time,
                unpaid_break_minutes=template.unpaid_break_minutes or 0,
                is_overnight=crosses_midnight(template.start_time, template.end_time),
                department=template.department,
                status=SHIFT_STATUS_SCHEDULED,
                name=template.name,
                version=1,
                created_by=actor,
            )
            session.add(shift)
            created.append(shift)
            by_template.add((template.id, day))
            by_window.add(window)
        if created:
            mark_week_changed(session, week)
            session.commit()
    except Exception:
        session.rollback()
        raise
    for shift in created:
        session.refresh(shift)
    return len(created), created
