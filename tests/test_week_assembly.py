from __future__ import annotations

import asyncio
import datetime

from conftest import MONDAY, seed_budget, seed_employee, seed_leave, shift_payload
from collaborators import BudgetRegistry, DayInfo, EmployeeDirectory, LeaveRegistry, StaticDayInfoProvider
from shifts import create_shift
from week_assembly import assemble_week


class BrokenLeave:
    def list_leave_days(self, week_start, week_end):
        raise RuntimeError("leave service unavailable")


def _assemble(rota_db, requested=MONDAY, **overrides):
    kwargs = {
        "session_factory": rota_db["Session"],
        "directory": EmployeeDirectory(rota_db["DirectorySession"]),
        "leave_registry": LeaveRegistry(rota_db["DirectorySession"]),
        "budget_registry": BudgetRegistry(rota_db["DirectorySession"]),
    }
    kwargs.update(overrides)
    return asyncio.run(assemble_week(requested, **kwargs))


def test_midweek_date_loads_monday_week(rota_db) -> None:
    view = _assemble(rota_db, datetime.date(2024, 6, 6))
    assert view.week_start == MONDAY
    assert view.week["week_start"] == "2024-06-03"
    assert [day["date"] for day in view.days][0] == "2024-06-03"
    assert len(view.days) == 7
    assert view.publish_state == "draft"
    assert view.facet_errors == {}


def test_collects_every_facet(rota_db) -> None:
    directory = rota_db["DirectorySession"]
    alice = seed_employee(directory, "Alice", max_weekly_hours=8)
    seed_leave(directory, alice, datetime.date(2024, 6, 4))
    seed_leave(directory, alice, datetime.date(2024, 6, 5), status="pending")
    seed_budget(directory, "bar", 2024, 5200)
    create_shift(rota_db["session"], shift_payload(employee_id=alice, end_time="18:00"))

    view = _assemble(rota_db)
    assert [employee["name"] for employee in view.employees] == ["Alice Test"]
    assert len(view.shifts) == 1
    assert view.approved_leave() == {(alice, "2024-06-04")}
    assert view.budgets[0]["annual_hours"] == 5200
    assert [department["name"] for department in view.departments] == ["bar", "kitchen"]

    hours = view.employee_hours()[0]
    assert hours["hours"] == 8.5
    assert hours["over_cap"] is True
    bar = view.budget_rows()[0]
    assert bar["weekly_target_hours"] == 100.0
    assert bar["band"] == "normal"


def test_failed_facet_degrades_to_empty(rota_db) -> None:
    seed_employee(rota_db["DirectorySession"], "Bea")
    view = _assemble(rota_db, leave_registry=BrokenLeave())
    assert view.leave_days == []
    assert view.facet_errors == {"leave_days": "leave service unavailable"}
    assert len(view.employees) == 1
    assert view.week is not None


def test_former_employee_keeps_row_while_holding_shifts(rota_db) -> None:
    directory = rota_db["DirectorySession"]
    seed_employee(directory, "Active")
    gone = seed_employee(directory, "Gone", status="terminated")
    seed_employee(directory, "Idle", status="terminated")
    create_shift(rota_db["session"], shift_payload(employee_id=gone))
    create_shift(rota_db["session"], shift_payload(employee_id=999))

    view = _assemble(rota_db)
    rows = {employee["employee_id"]: employee for employee in view.employees}
    assert len(rows) == 3
    assert rows[gone]["is_active"] is False
    assert rows[999]["name"] == "Employee #999"
    assert all(employee["first_name"] != "Idle" for employee in view.employees)


def test_employee_rows_follow_employment_dates(rota_db) -> None:
    directory = rota_db["DirectorySession"]
    seed_employee(directory, "Starter", employment_start_date=datetime.date(2024, 6, 5))
    seed_employee(directory, "Future", employment_start_date=datetime.date(2024, 6, 10))
    seed_employee(directory, "Leaver", employment_end_date=datetime.date(2024, 5, 31))
    seed_employee(directory, "Staying", employment_start_date=datetime.date(2023, 1, 9))

    names = [employee["first_name"] for employee in _assemble(rota_db).employees]
    assert sorted(names) == ["Starter", "Staying"]

    everyone = EmployeeDirectory(directory).list_active_employees()
    assert len(everyone) == 4
    as_of = EmployeeDirectory(directory).list_active_employees(datetime.date(2024, 6, 1))
    assert [employee["first_name"] for employee in as_of] == ["Staying"]


def test_day_info_reaches_the_header(rota_db) -> None:
    provider = StaticDayInfoProvider(
        {
            datetime.date(2024, 6, 7): DayInfo(events=[{"title": "Quiz night"}], table_covers=80),
            datetime.date(2024, 6, 20): DayInfo(calendar_notes=["outside"]),
        }
    )
    view = _assemble(rota_db, day_info_provider=provider)
    friday = view.days[4]
    assert friday["info"]["table_covers"] == 80
    assert friday["info"]["events"] == [{"title": "Quiz night"}]
    assert all(not day["info"]["calendar_notes"] for day in view.days)


def test_to_dict_is_plain(rota_db) -> None:
    payload = _assemble(rota_db).to_dict()
    assert payload["week_start"] == "2024-06-03"
    assert payload["banner"].startswith("This rota is a draft")
    assert payload["budget_rows"][0]["band"] == "none"
