from __future__ import annotations

import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select

from database import (
    SHIFT_STATUS_CANCELLED,
    WEEK_STATUS_PUBLISHED,
    PublishedShift,
    RotaWeek,
    Shift,
)
from results import RotaNotFoundError

PUBLISH_STATE_DRAFT = "draft"
PUBLISH_STATE_PUBLISHED = "published"
PUBLISH_STATE_PENDING = "published_with_changes"

PUBLISH_BANNERS = {
    PUBLISH_STATE_DRAFT: "This rota is a draft. Staff cannot see it until published.",
    PUBLISH_STATE_PENDING: "Changes made since the last publish are not visible to staff yet.",
}


def publish_state(week: RotaWeek | Dict[str, Any]) -> str:
    """Display state of a week: draft, published, or published with pending changes."""
    if isinstance(week, dict):
        status = week.get("status")
        pending = bool(week.get("has_unpublished_changes"))
    else:
        status = week.status
        pending = bool(week.has_unpublished_changes)
    if status != WEEK_STATUS_PUBLISHED:
        return PUBLISH_STATE_DRAFT
    if pending:
        return PUBLISH_STATE_PENDING
    return PUBLISH_STATE_PUBLISHED


def publish_banner(week: RotaWeek | Dict[str, Any]) -> Optional[str]:
    return PUBLISH_BANNERS.get(publish_state(week))


def mark_week_changed(session, week: RotaWeek | int | None) -> bool:
    """Flag drift on a published week. Drafts are untouched. Caller commits."""
    if isinstance(week, int):
        week = session.get(RotaWeek, week)
    if week is None or week.status != WEEK_STATUS_PUBLISHED:
        return False
    week.has_unpublished_changes = True
    return True


def publish_rota_week(session, week_id: int, *, published_by: Optional[str] = None) -> RotaWeek:
    """Publish a week and replace its staff-visible snapshot in one transaction.

    There is no way back to draft: a published week only moves forward by
    being re-published.
    """
    week = session.get(RotaWeek, week_id)
    if week is None:
        raise RotaNotFoundError("Rota week not found")
    now = datetime.datetime.now(datetime.timezone.utc)
    try:
        week.status = WEEK_STATUS_PUBLISHED
        week.has_unpublished_changes = False
        week.published_at = now
        week.published_by = published_by
        session.execute(delete(PublishedShift).where(PublishedShift.week_id == week.id))
        stmt = (
            select(Shift)
            .where(Shift.week_id == week.id, Shift.status != SHIFT_STATUS_CANCELLED)
            .order_by(Shift.shift_date, Shift.start_time)
        )
        for shift in session.scalars(stmt):
            session.add(
                PublishedShift(
                    week_id=week.id,
                    shift_id=shift.id,
                    employee_id=shift.employee_id,
                    shift_date=shift.shift_date,
                    start_time=shift.start_time,
                    end_time=shift.end_time,
                    unpaid_break_minutes=shift.unpaid_break_minutes,
                    is_overnight=shift.is_overnight,
                    department=shift.department,
                    status=shift.status,
                    name=shift.name,
                    notes=shift.notes,
                    published_at=now,
                )
            )
        session.commit()
    except Exception:
        session.rollback()
        raise
    session.refresh(week)
    return week


def published_shifts_between(
    session,
    from_date: datetime.date,
    to_date: datetime.date,
    *,
    employee_id: Optional[int] = None,
    open_only: bool = False,
) -> List[PublishedShift]:
    stmt = select(PublishedShift).where(
        PublishedShift.shift_date >= from_date,
        PublishedShift.shift_date <= to_date,
    )
    if open_only:
        stmt = stmt.where(PublishedShift.employee_id.is_(None))
    elif employee_id is not None:
        stmt = stmt.where(PublishedShift.employee_id == employee_id)
    stmt = stmt.order_by(PublishedShift.shift_date, PublishedShift.start_time)
    return list(session.scalars(stmt))


def employee_published_shifts(
    session, employee_id: int, from_date: datetime.date, to_date: datetime.date
) -> List[PublishedShift]:
    return published_shifts_between(session, from_date, to_date, employee_id=employee_id)


def open_published_shifts(session, from_date: datetime.date, to_date: datetime.date) -> List[PublishedShift]:
    return published_shifts_between(session, from_date, to_date, open_only=True)
