"""Read-only collaborators the rota consumes.

Employees, leave and department budgets belong to other parts of the
back office. The rota only reads them, through the small classes below, so
tests and other deployments can hand in their own implementations.
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import select

from database import (
    DepartmentBudget,
    DirectorySessionLocal,
    Employee,
    LeaveDay,
    employee_to_dict,
)
from departments import load_departments

LEAVE_APPROVED = "approved"


class EmployeeDirectory:
    """Employees from the HR tables in ``directory.db``."""

    def __init__(self, session_factory=None) -> None:
        self._session_factory = session_factory or DirectorySessionLocal

    def list_active_employees(self, as_of: Optional[datetime.date] = None) -> List[Dict[str, Any]]:
        """Active employees, limited to those employed on ``as_of`` when given."""
        with self._session_factory() as session:
            stmt = select(Employee).order_by(Employee.last_name, Employee.first_name, Employee.id)
            return [
                employee_to_dict(employee)
                for employee in session.scalars(stmt)
                if employee.is_active and (as_of is None or employee.employed_on(as_of))
            ]

    def get_employees(self, employee_ids: Iterable[int]) -> List[Dict[str, Any]]:
        ids = sorted({int(value) for value in employee_ids if value is not None})
        if not ids:
            return []
        with self._session_factory() as session:
            stmt = select(Employee).where(Employee.id.in_(ids)).order_by(Employee.last_name, Employee.first_name)
            return [employee_to_dict(employee) for employee in session.scalars(stmt)]


class LeaveRegistry:
    def __init__(self, session_factory=None) -> None:
        self._session_factory = session_factory or DirectorySessionLocal

    def list_leave_days(self, week_start: datetime.date, week_end: datetime.date) -> List[Dict[str, Any]]:
        with self._session_factory() as session:
            stmt = (
                select(LeaveDay)
                .where(LeaveDay.leave_date >= week_start, LeaveDay.leave_date <= week_end)
                .order_by(LeaveDay.leave_date, LeaveDay.employee_id)
            )
            return [
                {
                    "employee_id": leave.employee_id,
                    "leave_date": leave.leave_date.isoformat(),
                    "status": leave.status,
                    "request_ref": leave.request_ref,
                }
                for leave in session.scalars(stmt)
            ]

    def approved_leave_on(self, employee_id: int, day: datetime.date) -> bool:
        return any(
            entry["employee_id"] == employee_id and entry["status"] == LEAVE_APPROVED
            for entry in self.list_leave_days(day, day)
        )


class BudgetRegistry:
    def __init__(self, session_factory=None) -> None:
        self._session_factory = session_factory or DirectorySessionLocal

    def list_department_budgets(self, year: int) -> List[Dict[str, Any]]:
        with self._session_factory() as session:
            stmt = select(DepartmentBudget).where(DepartmentBudget.budget_year == year)
            return [
                {
                    "department": budget.department.strip().lower(),
                    "budget_year": budget.budget_year,
                    "annual_hours": float(budget.annual_hours or 0.0),
                }
                for budget in session.scalars(stmt.order_by(DepartmentBudget.department))
            ]

    def list_departments(self) -> List[Dict[str, str]]:
        return [{"name": entry["name"], "label": entry["label"], "colour": entry["colour"]} for entry in load_departments()]


@dataclass
class DayInfo:
    """Decorative context for one date in the grid header."""

    events: List[Dict[str, Any]] = field(default_factory=list)
    private_bookings: List[Dict[str, Any]] = field(default_factory=list)
    table_covers: int = 0
    calendar_notes: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.events or self.private_bookings or self.table_covers or self.calendar_notes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "events": list(self.events),
            "private_bookings": list(self.private_bookings),
            "table_covers": int(self.table_covers),
            "calendar_notes": list(self.calendar_notes),
        }


class NullDayInfoProvider:
    def day_info(self, week_start: datetime.date, week_end: datetime.date) -> Dict[datetime.date, DayInfo]:
        return {}


class StaticDayInfoProvider:
    """Day info from a fixed mapping, as used by the desktop app and tests."""

    def __init__(self, entries: Optional[Mapping[datetime.date, DayInfo]] = None) -> None:
        self._entries = dict(entries or {})

    def day_info(self, week_start: datetime.date, week_end: datetime.date) -> Dict[datetime.date, DayInfo]:
        return {day: info for day, info in self._entries.items() if week_start <= day <= week_end}
