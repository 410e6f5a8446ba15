from __future__ import annotations

import datetime
import os
import sys
import tempfile
from pathlib import Path

import pytest

# Keep the module-level engines and config files out of the source tree.
os.environ.setdefault("ROTA_DATA_DIR", tempfile.mkdtemp(prefix="rota-tests-"))

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from sqlalchemy.orm import sessionmaker  # noqa: E402

import calendar_feed  # noqa: E402
import database as db  # noqa: E402
import departments  # noqa: E402
import permissions  # noqa: E402
from actions import RotaActions  # noqa: E402
from collaborators import BudgetRegistry, EmployeeDirectory, LeaveRegistry  # noqa: E402
from database import Base, DirectoryBase, Employee, LeaveDay, DepartmentBudget, make_engine  # noqa: E402
from permissions import RolePermissions  # noqa: E402

MONDAY = datetime.date(2024, 6, 3)


@pytest.fixture()
def rota_db(monkeypatch, tmp_path):
    """File-backed rota and directory databases; worker threads need real files."""
    rota_engine = make_engine(f"sqlite:///{(tmp_path / 'rota.db').as_posix()}")
    directory_engine = make_engine(f"sqlite:///{(tmp_path / 'directory.db').as_posix()}")
    Base.metadata.create_all(rota_engine)
    DirectoryBase.metadata.create_all(directory_engine)
    Session = sessionmaker(bind=rota_engine, expire_on_commit=False, future=True)
    DirectorySession = sessionmaker(bind=directory_engine, expire_on_commit=False, future=True)

    monkeypatch.setattr(db, "SessionLocal", Session)
    monkeypatch.setattr(db, "DirectorySessionLocal", DirectorySession)
    monkeypatch.setattr(departments, "DEPARTMENTS_FILE", tmp_path / "departments.json")
    monkeypatch.setattr(permissions, "USERS_FILE", tmp_path / "rota_users.json")
    monkeypatch.setattr(calendar_feed, "FEED_SECRET_FILE", tmp_path / "feed_secret")
    monkeypatch.delenv(calendar_feed.FEED_SECRET_ENV, raising=False)

    session = Session()
    try:
        yield {
            "Session": Session,
            "DirectorySession": DirectorySession,
            "session": session,
            "tmp": tmp_path,
        }
    finally:
        session.close()
        rota_engine.dispose()
        directory_engine.dispose()


def seed_employee(
    DirectorySession,
    first_name: str,
    *,
    status: str = "active",
    max_weekly_hours=None,
    employment_start_date=None,
    employment_end_date=None,
) -> int:
    with DirectorySession() as session:
        employee = Employee(
            first_name=first_name,
            last_name="Test",
            job_title="Bartender",
            status=status,
            max_weekly_hours=max_weekly_hours,
            employment_start_date=employment_start_date,
            employment_end_date=employment_end_date,
        )
        session.add(employee)
        session.commit()
        return employee.id


def seed_leave(DirectorySession, employee_id: int, day: datetime.date, status: str = "approved") -> None:
    with DirectorySession() as session:
        session.add(LeaveDay(employee_id=employee_id, leave_date=day, status=status))
        session.commit()


def seed_budget(DirectorySession, department: str, year: int, annual_hours: float) -> None:
    with DirectorySession() as session:
        session.add(DepartmentBudget(department=department, budget_year=year, annual_hours=annual_hours))
        session.commit()


def shift_payload(**overrides):
    payload = {
        "shift_date": MONDAY.isoformat(),
        "start_time": "09:00",
        "end_time": "17:00",
        "unpaid_break_minutes": 30,
        "department": "bar",
        "employee_id": None,
    }
    payload.update(overrides)
    return payload


TEST_ROLES = {"admin": "super_admin", "sam": "supervisor", "sid": "staff"}


def build_actions(rota_db, user_id, roles=None):
    """Actions wired to the test databases; module defaults were bound at import time."""
    directory = rota_db["DirectorySession"]
    return RotaActions(
        user_id,
        session_factory=rota_db["Session"],
        permissions=RolePermissions(TEST_ROLES if roles is None else roles),
        directory=EmployeeDirectory(directory),
        leave_registry=LeaveRegistry(directory),
        budget_registry=BudgetRegistry(directory),
    )
