from __future__ import annotations

from collections import defaultdict
from typing import Any, Dict, Iterable, List, Mapping, Optional

from database import SHIFT_STATUS_CANCELLED
from hours import shift_paid_hours

WEEKS_PER_YEAR = 52
WARNING_THRESHOLD = 0.85

BAND_NORMAL = "normal"
BAND_WARNING = "warning"
BAND_OVER = "over"
BAND_NONE = "none"


def _field(shift, name: str):
    if isinstance(shift, dict):
        return shift.get(name)
    return getattr(shift, name)


def counted_shifts(shifts: Iterable[Any]) -> List[Any]:
    """Shifts that count towards hours: everything except cancellations."""
    return [shift for shift in shifts if _field(shift, "status") != SHIFT_STATUS_CANCELLED]


def employee_week_hours(shifts: Iterable[Any], employee_id: int) -> float:
    return sum(
        shift_paid_hours(shift)
        for shift in counted_shifts(shifts)
        if _field(shift, "employee_id") == employee_id
    )


def department_week_hours(shifts: Iterable[Any], department: str) -> float:
    target = (department or "").strip().lower()
    return sum(
        shift_paid_hours(shift)
        for shift in counted_shifts(shifts)
        if (_field(shift, "department") or "").strip().lower() == target
    )


def hours_by_employee(shifts: Iterable[Any]) -> Dict[Optional[int], float]:
    """Paid hours per assignee; open shifts are collected under ``None``."""
    totals: Dict[Optional[int], float] = defaultdict(float)
    for shift in counted_shifts(shifts):
        totals[_field(shift, "employee_id")] += shift_paid_hours(shift)
    return dict(totals)


def hours_by_department(shifts: Iterable[Any]) -> Dict[str, float]:
    totals: Dict[str, float] = defaultdict(float)
    for shift in counted_shifts(shifts):
        totals[(_field(shift, "department") or "").strip().lower()] += shift_paid_hours(shift)
    return dict(totals)


def is_over_cap(hours: float, max_weekly_hours: Optional[float]) -> bool:
    if max_weekly_hours is None:
        return False
    return hours > float(max_weekly_hours)


def weekly_target(annual_hours: Optional[float]) -> Optional[float]:
    if not annual_hours or annual_hours <= 0:
        return None
    return float(annual_hours) / WEEKS_PER_YEAR


def budget_utilization(scheduled_hours: float, annual_hours: Optional[float]) -> Optional[float]:
    """Scheduled hours as a fraction of the weekly share of the annual target."""
    target = weekly_target(annual_hours)
    if target is None:
        return None
    return scheduled_hours / target


def budget_band(utilization: Optional[float]) -> str:
    if utilization is None:
        return BAND_NONE
    if utilization > 1.0:
        return BAND_OVER
    if utilization >= WARNING_THRESHOLD:
        return BAND_WARNING
    return BAND_NORMAL


def employee_hours_rollup(
    shifts: Iterable[Any], employees: Iterable[Mapping[str, Any]]
) -> List[Dict[str, Any]]:
    """One row per employee with their week total and whether it breaks their cap.

    Over-cap is informational only; nothing here stops a shift being added.
    """
    totals = hours_by_employee(list(shifts))
    rows = []
    for employee in employees:
        employee_id = employee["employee_id"]
        hours = totals.get(employee_id, 0.0)
        cap = employee.get("max_weekly_hours")
        rows.append(
            {
                "employee_id": employee_id,
                "hours": round(hours, 2),
                "max_weekly_hours": cap,
                "over_cap": is_over_cap(hours, cap),
            }
        )
    return rows


def department_budget_rollup(
    shifts: Iterable[Any],
    departments: Iterable[Mapping[str, Any]],
    budgets: Iterable[Mapping[str, Any]],
) -> List[Dict[str, Any]]:
    """Budget bar rows: scheduled hours vs the weekly share of each annual target."""
    totals = hours_by_department(list(shifts))
    annual = {
        (budget.get("department") or "").strip().lower(): budget.get("annual_hours")
        for budget in budgets
    }
    rows = []
    for department in departments:
        name = department["name"]
        scheduled = totals.get(name, 0.0)
        target = weekly_target(annual.get(name))
        utilization = budget_utilization(scheduled, annual.get(name))
        rows.append(
            {
                "department": name,
                "label": department.get("label") or name.title(),
                "scheduled_hours": round(scheduled, 2),
                "weekly_target_hours": round(target, 2) if target is not None else None,
                "utilization": round(utilization, 4) if utilization is not None else None,
                "percent": round(utilization * 100, 1) if utilization is not None else None,
                "band": budget_band(utilization),
            }
        )
    return rows
