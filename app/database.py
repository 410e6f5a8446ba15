from __future__ import annotations

import datetime
import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    select,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, sessionmaker
from sqlalchemy.types import Time

from assignment import Assignment, assignment_for
from hours import actual_paid_hours, format_hhmm, paid_hours


DATA_DIR = Path(os.environ.get("ROTA_DATA_DIR") or Path(__file__).resolve().parent / "data")
DATA_DIR.mkdir(parents=True, exist_ok=True)
ROTA_DATABASE_URL = f"sqlite:///{(DATA_DIR / 'rota.db').as_posix()}"
DIRECTORY_DATABASE_URL = f"sqlite:///{(DATA_DIR / 'directory.db').as_posix()}"

WEEK_STATUS_DRAFT = "draft"
WEEK_STATUS_PUBLISHED = "published"
WEEK_STATUS_CHOICES = {WEEK_STATUS_DRAFT, WEEK_STATUS_PUBLISHED}

SHIFT_STATUS_SCHEDULED = "scheduled"
SHIFT_STATUS_SICK = "sick"
SHIFT_STATUS_CANCELLED = "cancelled"
SHIFT_STATUS_CHOICES = {SHIFT_STATUS_SCHEDULED, SHIFT_STATUS_SICK, SHIFT_STATUS_CANCELLED}

LEAVE_STATUS_CHOICES = {"approved", "pending", "declined"}
EMPLOYEE_STATUS_ACTIVE = "active"


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def normalize_week_start(date_value: datetime.date) -> datetime.date:
    """Return the Monday of the ISO week holding ``date_value``."""
    if isinstance(date_value, datetime.datetime):
        date_value = date_value.date()
    weekday = date_value.weekday()
    if weekday == 0:
        return date_value
    return date_value - datetime.timedelta(days=weekday)


def week_dates(week_start: datetime.date) -> List[datetime.date]:
    monday = normalize_week_start(week_start)
    return [monday + datetime.timedelta(days=offset) for offset in range(7)]


def format_week_label(week_start: datetime.date) -> str:
    iso_year, iso_week, _ = week_start.isocalendar()
    end = week_start + datetime.timedelta(days=6)
    start_str = week_start.strftime("%b %d")
    end_str = end.strftime("%b %d")
    if week_start.year != end.year:
        start_str = week_start.strftime("%b %d %Y")
        end_str = end.strftime("%b %d %Y")
    return f"{iso_year} W{iso_week:02d} ({start_str} - {end_str})"


class DirectoryBase(DeclarativeBase):
    """Metadata for collaborator-owned tables living in directory.db."""

    pass


class Base(DeclarativeBase):
    """Metadata for rota tables living in rota.db."""

    pass


class Employee(DirectoryBase):
    __tablename__ = "employees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    first_name: Mapped[str] = mapped_column(String(80), nullable=False, default="")
    last_name: Mapped[str] = mapped_column(String(80), nullable=False, default="")
    job_title: Mapped[str] = mapped_column(String(80), nullable=False, default="")
    status: Mapped[str] = mapped_column(String(12), nullable=False, default=EMPLOYEE_STATUS_ACTIVE)
    max_weekly_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    email: Mapped[str] = mapped_column(String(160), nullable=False, default="")
    employment_start_date: Mapped[datetime.date | None] = mapped_column(Date, nullable=True)
    employment_end_date: Mapped[datetime.date | None] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    leave_days: Mapped[List["LeaveDay"]] = relationship(
        back_populates="employee", cascade="all, delete-orphan"
    )

    @property
    def is_active(self) -> bool:
        return (self.status or "").strip().lower() == EMPLOYEE_STATUS_ACTIVE

    def employed_on(self, day: datetime.date) -> bool:
        if self.employment_start_date is not None and self.employment_start_date > day:
            return False
        return self.employment_end_date is None or self.employment_end_date >= day

    @property
    def display_name(self) -> str:
        full = " ".join(part for part in (self.first_name, self.last_name) if part)
        return full or "Unknown"


class LeaveDay(DirectoryBase):
    __tablename__ = "leave_days"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    employee_id: Mapped[int] = mapped_column(ForeignKey("employees.id", ondelete="CASCADE"), nullable=False)
    leave_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(12), nullable=False, default="pending")
    request_ref: Mapped[str] = mapped_column(String(60), nullable=False, default="")

    employee: Mapped[Employee] = relationship(back_populates="leave_days")

    __table_args__ = (UniqueConstraint("employee_id", "leave_date", name="uq_leave_days_employee_date"),)


class DepartmentBudget(DirectoryBase):
    __tablename__ = "department_budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    department: Mapped[str] = mapped_column(String(40), nullable=False)
    budget_year: Mapped[int] = mapped_column(Integer, nullable=False)
    annual_hours: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    __table_args__ = (UniqueConstraint("department", "budget_year", name="uq_department_budget_year"),)


class RotaWeek(Base):
    __tablename__ = "rota_weeks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    week_start: Mapped[datetime.date] = mapped_column(Date, nullable=False, unique=True)
    iso_year: Mapped[int] = mapped_column(Integer, nullable=False)
    iso_week: Mapped[int] = mapped_column(Integer, nullable=False)
    label: Mapped[str] = mapped_column(String(48), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=WEEK_STATUS_DRAFT)
    has_unpublished_changes: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    published_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    published_by: Mapped[str | None] = mapped_column(String(60), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    shifts: Mapped[List["Shift"]] = relationship(back_populates="week", cascade="all, delete-orphan")

    @property
    def days(self) -> List[datetime.date]:
        return week_dates(self.week_start)

    @property
    def week_end(self) -> datetime.date:
        return self.week_start + datetime.timedelta(days=6)

    def contains(self, day: datetime.date) -> bool:
        return self.week_start <= day <= self.week_end


class ShiftTemplate(Base):
    __tablename__ = "rota_shift_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(80), nullable=False)
    start_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    end_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    unpaid_break_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    department: Mapped[str] = mapped_column(String(40), nullable=False)
    colour: Mapped[str | None] = mapped_column(String(16), nullable=True)
    day_of_week: Mapped[int | None] = mapped_column(Integer, nullable=True)  # 0 = Monday
    employee_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_by: Mapped[str | None] = mapped_column(String(60), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class Shift(Base):
    __tablename__ = "rota_shifts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    week_id: Mapped[int] = mapped_column(ForeignKey("rota_weeks.id", ondelete="CASCADE"), nullable=False)
    employee_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    template_id: Mapped[int | None] = mapped_column(
        ForeignKey("rota_shift_templates.id", ondelete="SET NULL"), nullable=True
    )
    shift_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    start_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    end_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    unpaid_break_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_overnight: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    department: Mapped[str] = mapped_column(String(40), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=SHIFT_STATUS_SCHEDULED)
    name: Mapped[str | None] = mapped_column(String(80), nullable=True)
    notes: Mapped[str | None] = mapped_column(String(255), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    original_employee_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reassigned_from_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reassigned_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reassigned_by: Mapped[str | None] = mapped_column(String(60), nullable=True)
    reassignment_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(60), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    week: Mapped[RotaWeek] = relationship(back_populates="shifts")

    @property
    def assignment(self) -> Assignment:
        return assignment_for(self.employee_id)

    @property
    def is_open_shift(self) -> bool:
        return self.employee_id is None


class PublishedShift(Base):
    """Snapshot of a week's shifts as they were when last published."""

    __tablename__ = "rota_published_shifts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    week_id: Mapped[int] = mapped_column(ForeignKey("rota_weeks.id", ondelete="CASCADE"), nullable=False)
    shift_id: Mapped[int] = mapped_column(Integer, nullable=False)
    employee_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    shift_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    start_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    end_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    unpaid_break_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_overnight: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    department: Mapped[str] = mapped_column(String(40), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=SHIFT_STATUS_SCHEDULED)
    name: Mapped[str | None] = mapped_column(String(80), nullable=True)
    notes: Mapped[str | None] = mapped_column(String(255), nullable=True)
    published_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    @property
    def is_open_shift(self) -> bool:
        return self.employee_id is None


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(60), nullable=False)
    action: Mapped[str] = mapped_column(String(60), nullable=False)
    target_type: Mapped[str] = mapped_column(String(32), nullable=False, default="Shift")
    target_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payloadJSON: Mapped[str] = mapped_column(String(2000), nullable=False, default="{}")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class TimeclockSession(Base):
    """One clock-in to clock-out stretch. Clock times are venue wall-clock time."""

    __tablename__ = "timeclock_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    employee_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    work_date: Mapped[datetime.date] = mapped_column(Date, nullable=False, index=True)
    clock_in_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False)
    clock_out_at: Mapped[datetime.datetime | None] = mapped_column(DateTime, nullable=True)
    linked_shift_id: Mapped[int | None] = mapped_column(
        ForeignKey("rota_shifts.id", ondelete="SET NULL"), nullable=True
    )
    is_unscheduled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_reviewed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notes: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(60), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    linked_shift: Mapped[Shift | None] = relationship()

    @property
    def is_open(self) -> bool:
        return self.clock_out_at is None


def make_engine(url: str):
    # Week assembly opens sessions from worker threads.
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, echo=False, future=True, connect_args=connect_args)


def create_session_factory(url: str) -> sessionmaker:
    return sessionmaker(bind=make_engine(url), expire_on_commit=False, future=True)


rota_engine = make_engine(ROTA_DATABASE_URL)
directory_engine = make_engine(DIRECTORY_DATABASE_URL)
SessionLocal = sessionmaker(bind=rota_engine, expire_on_commit=False, future=True)
DirectorySessionLocal = sessionmaker(bind=directory_engine, expire_on_commit=False, future=True)


def init_database() -> None:
    Base.metadata.create_all(rota_engine)
    DirectoryBase.metadata.create_all(directory_engine)


def get_week(session, week_id: int) -> Optional[RotaWeek]:
    return session.get(RotaWeek, week_id)


def get_or_create_week(session, week_start_date: datetime.date) -> RotaWeek:
    """Return the week row for the Monday of ``week_start_date``, creating it on first access."""
    if not isinstance(week_start_date, (datetime.date, datetime.datetime)):
        raise TypeError("week_start_date must be a date or datetime instance.")
    normalized = normalize_week_start(week_start_date)
    stmt = select(RotaWeek).where(RotaWeek.week_start == normalized)
    week = session.scalars(stmt).first()
    if week:
        return week
    iso_year, iso_week, _ = normalized.isocalendar()
    week = RotaWeek(
        week_start=normalized,
        iso_year=iso_year,
        iso_week=iso_week,
        label=format_week_label(normalized),
        status=WEEK_STATUS_DRAFT,
        has_unpublished_changes=False,
    )
    session.add(week)
    try:
        session.commit()
    except IntegrityError:
        # Another session created the row first.
        session.rollback()
        return session.scalars(stmt).one()
    session.refresh(week)
    return week


def week_to_dict(week: RotaWeek) -> Dict[str, Any]:
    return {
        "id": week.id,
        "week_start": week.week_start.isoformat(),
        "week_end": week.week_end.isoformat(),
        "label": week.label,
        "status": week.status,
        "has_unpublished_changes": bool(week.has_unpublished_changes),
        "published_at": week.published_at.isoformat() if week.published_at else None,
        "published_by": week.published_by,
    }


def shift_to_dict(shift: Shift | PublishedShift) -> Dict[str, Any]:
    payload = {
        "id": shift.id,
        "week_id": shift.week_id,
        "employee_id": shift.employee_id,
        "is_open_shift": shift.employee_id is None,
        "shift_date": shift.shift_date.isoformat(),
        "start_time": format_hhmm(shift.start_time),
        "end_time": format_hhmm(shift.end_time),
        "unpaid_break_minutes": int(shift.unpaid_break_minutes or 0),
        "is_overnight": bool(shift.is_overnight),
        "department": shift.department,
        "status": shift.status,
        "name": shift.name,
        "notes": shift.notes,
        "paid_hours": round(
            paid_hours(shift.start_time, shift.end_time, shift.unpaid_break_minutes or 0, bool(shift.is_overnight)),
            2,
        ),
    }
    if isinstance(shift, PublishedShift):
        payload["shift_id"] = shift.shift_id
        payload["published_at"] = shift.published_at.isoformat() if shift.published_at else None
        return payload
    payload.update(
        {
            "template_id": shift.template_id,
            "version": shift.version,
            "original_employee_id": shift.original_employee_id,
            "reassigned_from_id": shift.reassigned_from_id,
            "reassigned_at": shift.reassigned_at.isoformat() if shift.reassigned_at else None,
            "reassigned_by": shift.reassigned_by,
            "reassignment_reason": shift.reassignment_reason,
        }
    )
    return payload


def template_to_dict(template: ShiftTemplate) -> Dict[str, Any]:
    return {
        "id": template.id,
        "name": template.name,
        "start_time": format_hhmm(template.start_time),
        "end_time": format_hhmm(template.end_time),
        "unpaid_break_minutes": int(template.unpaid_break_minutes or 0),
        "department": template.department,
        "colour": template.colour,
        "day_of_week": template.day_of_week,
        "employee_id": template.employee_id,
        "is_active": bool(template.is_active),
        "paid_hours": round(
            paid_hours(template.start_time, template.end_time, template.unpaid_break_minutes or 0), 2
        ),
    }


def timeclock_session_to_dict(entry: TimeclockSession) -> Dict[str, Any]:
    actual = actual_paid_hours(entry.clock_in_at, entry.clock_out_at)
    return {
        "id": entry.id,
        "employee_id": entry.employee_id,
        "work_date": entry.work_date.isoformat(),
        "clock_in_at": entry.clock_in_at.isoformat(timespec="minutes"),
        "clock_out_at": entry.clock_out_at.isoformat(timespec="minutes") if entry.clock_out_at else None,
        "clock_in_local": format_hhmm(entry.clock_in_at),
        "clock_out_local": format_hhmm(entry.clock_out_at) if entry.clock_out_at else None,
        "linked_shift_id": entry.linked_shift_id,
        "is_unscheduled": bool(entry.is_unscheduled),
        "is_reviewed": bool(entry.is_reviewed),
        "is_open": entry.clock_out_at is None,
        "notes": entry.notes,
        "actual_hours": round(actual, 2) if actual is not None else None,
    }


def employee_to_dict(employee: Employee, *, is_active: Optional[bool] = None) -> Dict[str, Any]:
    return {
        "employee_id": employee.id,
        "first_name": employee.first_name,
        "last_name": employee.last_name,
        "name": employee.display_name,
        "job_title": employee.job_title,
        "max_weekly_hours": employee.max_weekly_hours,
        "is_active": employee.is_active if is_active is None else is_active,
    }


def record_audit_log(
    session,
    user_id: str,
    action: str,
    target_type: str = "Shift",
    target_id: Optional[int] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    log = AuditLog(
        user_id=user_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        payloadJSON=json.dumps(payload or {}, default=str),
    )
    session.add(log)
    session.commit()
    return log
