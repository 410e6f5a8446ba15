from __future__ import annotations

import asyncio
import datetime
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from budget import department_budget_rollup, employee_hours_rollup
from collaborators import (
    LEAVE_APPROVED,
    BudgetRegistry,
    DayInfo,
    EmployeeDirectory,
    LeaveRegistry,
    NullDayInfoProvider,
)
from database import (
    SessionLocal,
    get_or_create_week,
    normalize_week_start,
    shift_to_dict,
    template_to_dict,
    week_dates,
    week_to_dict,
)
from publishing import publish_banner, publish_state
from shift_templates import list_templates
from shifts import list_shifts_between


@dataclass
class WeekView:
    """Everything the grid needs to render one week."""

    week_start: datetime.date
    week: Optional[Dict[str, Any]]
    days: List[Dict[str, Any]]
    employees: List[Dict[str, Any]]
    shifts: List[Dict[str, Any]]
    templates: List[Dict[str, Any]]
    leave_days: List[Dict[str, Any]]
    departments: List[Dict[str, Any]]
    budgets: List[Dict[str, Any]]
    facet_errors: Dict[str, str] = field(default_factory=dict)

    @property
    def dates(self) -> List[datetime.date]:
        return week_dates(self.week_start)

    @property
    def publish_state(self) -> Optional[str]:
        return publish_state(self.week) if self.week else None

    def approved_leave(self) -> set:
        return {
            (entry["employee_id"], entry["leave_date"])
            for entry in self.leave_days
            if entry.get("status") == LEAVE_APPROVED
        }

    def employee_hours(self) -> List[Dict[str, Any]]:
        return employee_hours_rollup(self.shifts, self.employees)

    def budget_rows(self) -> List[Dict[str, Any]]:
        return department_budget_rollup(self.shifts, self.departments, self.budgets)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "week_start": self.week_start.isoformat(),
            "week": self.week,
            "publish_state": self.publish_state,
            "banner": publish_banner(self.week) if self.week else None,
            "days": self.days,
            "employees": self.employees,
            "shifts": self.shifts,
            "templates": self.templates,
            "leave_days": self.leave_days,
            "departments": self.departments,
            "budgets": self.budgets,
            "employee_hours": self.employee_hours(),
            "budget_rows": self.budget_rows(),
            "facet_errors": dict(self.facet_errors),
        }


async def _facet(name: str, errors: Dict[str, str], default: Any, func: Callable, *args) -> Any:
    try:
        return await asyncio.to_thread(func, *args)
    except Exception as exc:  # noqa: BLE001
        errors[name] = str(exc) or exc.__class__.__name__
        return default


def _load_week(session_factory, week_start: datetime.date) -> Dict[str, Any]:
    with session_factory() as session:
        return week_to_dict(get_or_create_week(session, week_start))


def _load_shifts(session_factory, week_start: datetime.date, week_end: datetime.date) -> List[Dict[str, Any]]:
    with session_factory() as session:
        return [shift_to_dict(shift) for shift in list_shifts_between(session, week_start, week_end)]


def _load_templates(session_factory) -> List[Dict[str, Any]]:
    with session_factory() as session:
        return [template_to_dict(template) for template in list_templates(session)]


async def assemble_week(
    requested: datetime.date,
    *,
    session_factory=None,
    directory: Optional[EmployeeDirectory] = None,
    leave_registry: Optional[LeaveRegistry] = None,
    budget_registry: Optional[BudgetRegistry] = None,
    day_info_provider=None,
) -> WeekView:
    """Build the view model for the week holding ``requested``.

    The facets are fetched concurrently. A facet that fails leaves an empty
    value and an entry in ``facet_errors``; the rest of the week still loads.
    """
    session_factory = session_factory or SessionLocal
    directory = directory or EmployeeDirectory()
    leave_registry = leave_registry or LeaveRegistry()
    budget_registry = budget_registry or BudgetRegistry()
    day_info_provider = day_info_provider or NullDayInfoProvider()

    week_start = normalize_week_start(requested)
    dates = week_dates(week_start)
    week_end = dates[-1]
    budget_year = week_start.isocalendar()[0]
    errors: Dict[str, str] = {}

    week, employees, shifts, templates, leave_days, budgets, departments, day_info = await asyncio.gather(
        _facet("week", errors, None, _load_week, session_factory, week_start),
        _facet("employees", errors, [], directory.list_active_employees, week_end),
        _facet("shifts", errors, [], _load_shifts, session_factory, week_start, week_end),
        _facet("templates", errors, [], _load_templates, session_factory),
        _facet("leave_days", errors, [], leave_registry.list_leave_days, week_start, week_end),
        _facet("budgets", errors, [], budget_registry.list_department_budgets, budget_year),
        _facet("departments", errors, [], budget_registry.list_departments),
        _facet("day_info", errors, {}, day_info_provider.day_info, week_start, week_end),
    )

    # Inactive staff keep their row while they still hold shifts this week.
    known = {employee["employee_id"] for employee in employees}
    missing = sorted({shift["employee_id"] for shift in shifts if shift["employee_id"] is not None} - known)
    if missing:
        former = await _facet("former_employees", errors, [], directory.get_employees, missing)
        found = {employee["employee_id"] for employee in former}
        for employee in former:
            employees.append({**employee, "is_active": False})
        for employee_id in missing:
            if employee_id not in found:
                employees.append(
                    {
                        "employee_id": employee_id,
                        "first_name": "",
                        "last_name": "",
                        "name": f"Employee #{employee_id}",
                        "job_title": "",
                        "max_weekly_hours": None,
                        "is_active": False,
                    }
                )

    days = []
    for day in dates:
        info = day_info.get(day) or DayInfo()
        days.append({"date": day.isoformat(), "weekday": day.strftime("%a"), "info": info.to_dict()})

    return WeekView(
        week_start=week_start,
        week=week,
        days=days,
        employees=employees,
        shifts=shifts,
        templates=templates,
        leave_days=leave_days,
        departments=departments,
        budgets=budgets,
        facet_errors=errors,
    )
