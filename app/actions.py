"""Permission-gated rota actions.

Every public method returns an ``ActionResult``; engine exceptions never
escape this module. Successful mutations and refused attempts are written to
the audit log.
"""

from __future__ import annotations

import asyncio
import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from collaborators import BudgetRegistry, EmployeeDirectory, LeaveRegistry
from database import (
    SHIFT_STATUS_CANCELLED,
    SessionLocal,
    get_or_create_week,
    normalize_week_start,
    record_audit_log,
    shift_to_dict,
    template_to_dict,
    timeclock_session_to_dict,
    week_to_dict,
)
from hours import format_hhmm
from permissions import Capability, RolePermissions
from publishing import employee_published_shifts, open_published_shifts, publish_rota_week
from results import (
    ERROR_BACKEND,
    ERROR_PERMISSION,
    PERMISSION_DENIED_MESSAGE,
    ActionResult,
    Advisory,
    RotaError,
    RotaValidationError,
)
from shift_templates import (
    auto_populate_week_from_templates,
    create_template,
    deactivate_template,
    list_templates,
    update_template,
)
from shifts import (
    cancel_shift,
    create_shift,
    delete_shift,
    find_same_day_shifts,
    get_shift,
    list_week_shifts,
    mark_shift_sick,
    move_shift,
    parse_date,
    reassign_shift,
    update_shift,
)
from timeclock import (
    approve_session,
    clock_in,
    clock_out,
    delete_session,
    list_open_sessions,
    reconcile_week,
    reconciliation_totals,
    record_session,
    update_session,
    week_sessions,
)
from week_assembly import assemble_week

ADVISORY_DUPLICATE = "duplicate_shift"
ADVISORY_LEAVE = "leave_conflict"
ADVISORY_AUDIT = "audit_not_recorded"
ADVISORY_CHECKS = "checks_unavailable"


class RotaActions:
    def __init__(
        self,
        user_id: Optional[str],
        *,
        session_factory=None,
        permissions: Optional[RolePermissions] = None,
        directory: Optional[EmployeeDirectory] = None,
        leave_registry: Optional[LeaveRegistry] = None,
        budget_registry: Optional[BudgetRegistry] = None,
        day_info_provider=None,
        allowed_departments: Optional[Iterable[str]] = None,
    ) -> None:
        self.user_id = user_id
        self.session_factory = session_factory or SessionLocal
        self.permissions = permissions or RolePermissions()
        self.directory = directory or EmployeeDirectory()
        self.leave_registry = leave_registry or LeaveRegistry()
        self.budget_registry = budget_registry or BudgetRegistry()
        self.day_info_provider = day_info_provider
        self.allowed_departments = list(allowed_departments) if allowed_departments is not None else None

    # -- plumbing ---------------------------------------------------------

    @property
    def actor(self) -> str:
        return self.user_id or "anonymous"

    def allowed(self, capability: Capability) -> bool:
        return self.permissions.has(self.user_id, capability)

    def deny(self, session, action: str) -> ActionResult:
        try:
            record_audit_log(session, self.actor, "PERMISSION_DENIED", "Rota", None, {"attempted": action})
        except SQLAlchemyError:
            session.rollback()
        return ActionResult.fail(PERMISSION_DENIED_MESSAGE, ERROR_PERMISSION)

    def _run(self, capability: Capability, action: str, work: Callable[[Any], ActionResult]) -> ActionResult:
        with self.session_factory() as session:
            if not self.allowed(capability):
                return self.deny(session, action)
            try:
                return work(session)
            except RotaError as exc:
                session.rollback()
                return ActionResult.from_error(exc)
            except SQLAlchemyError as exc:
                session.rollback()
                return ActionResult.fail(str(exc), ERROR_BACKEND)

    def _audit(self, session, action: str, target_type: str, target_id: Optional[int], payload: Dict[str, Any]) -> None:
        record_audit_log(session, self.actor, action, target_type, target_id, payload)

    def _committed(self, session, data: Any, audit: tuple, shift=None) -> ActionResult:
        """Result for a change the store has already committed.

        Advisory checks and the audit row run afterwards; a failure there is
        reported as a warning and never turns the saved change into an error.
        """
        warnings: List[Advisory] = []
        if shift is not None:
            try:
                warnings.extend(self._advisories(session, shift))
            except SQLAlchemyError:
                session.rollback()
                warnings.append(Advisory(ADVISORY_CHECKS, "Saved, but overlap and leave checks could not run."))
        try:
            self._audit(session, *audit)
        except SQLAlchemyError as exc:
            session.rollback()
            warnings.append(
                Advisory(ADVISORY_AUDIT, "Saved, but the audit log entry could not be written.", {"error": str(exc)})
            )
        return ActionResult.ok(data, warnings)

    def _advisories(self, session, shift) -> List[Advisory]:
        if shift.employee_id is None or shift.status == SHIFT_STATUS_CANCELLED:
            return []
        warnings: List[Advisory] = []
        others = find_same_day_shifts(session, shift.employee_id, shift.shift_date, exclude_shift_id=shift.id)
        if others:
            warnings.append(
                Advisory(
                    ADVISORY_DUPLICATE,
                    f"This employee already has {len(others)} other shift(s) on {shift.shift_date.isoformat()}.",
                    {"shift_ids": [other.id for other in others], "employee_id": shift.employee_id},
                )
            )
        if self.leave_registry.approved_leave_on(shift.employee_id, shift.shift_date):
            warnings.append(
                Advisory(
                    ADVISORY_LEAVE,
                    f"This employee has approved leave on {shift.shift_date.isoformat()}.",
                    {"employee_id": shift.employee_id, "date": shift.shift_date.isoformat()},
                )
            )
        return warnings

    # -- reads ------------------------------------------------------------

    def get_or_create_week(self, week_start: datetime.date | str) -> ActionResult:
        def work(session):
            week = get_or_create_week(session, parse_date(week_start, "week start"))
            return ActionResult.ok(week_to_dict(week))

        return self._run(Capability.VIEW_ROTA, "get_or_create_week", work)

    def list_week_shifts(self, week_start: datetime.date | str) -> ActionResult:
        def work(session):
            return ActionResult.ok([shift_to_dict(shift) for shift in list_week_shifts(session, week_start)])

        return self._run(Capability.VIEW_ROTA, "list_week_shifts", work)

    def list_templates(self, *, active_only: bool = True) -> ActionResult:
        def work(session):
            return ActionResult.ok([template_to_dict(t) for t in list_templates(session, active_only=active_only)])

        return self._run(Capability.VIEW_ROTA, "list_templates", work)

    def employee_published_shifts(
        self, employee_id: int, from_date: datetime.date, to_date: datetime.date
    ) -> ActionResult:
        def work(session):
            start, end = parse_date(from_date, "from"), parse_date(to_date, "to")
            rows = employee_published_shifts(session, employee_id, start, end)
            return ActionResult.ok([shift_to_dict(row) for row in rows])

        return self._run(Capability.VIEW_ROTA, "employee_published_shifts", work)

    def open_published_shifts(self, from_date: datetime.date, to_date: datetime.date) -> ActionResult:
        def work(session):
            rows = open_published_shifts(session, parse_date(from_date, "from"), parse_date(to_date, "to"))
            return ActionResult.ok([shift_to_dict(row) for row in rows])

        return self._run(Capability.VIEW_ROTA, "open_published_shifts", work)

    def load_week(self, week_start: datetime.date | str) -> ActionResult:
        """Assemble the full week view. Runs its own event loop; use ``AsyncRotaClient`` from async code."""
        return asyncio.run(AsyncRotaClient(self).load_week(week_start))

    # -- shifts -----------------------------------------------------------

    def create_shift(self, payload: Dict[str, Any]) -> ActionResult:
        def work(session):
            shift = create_shift(session, payload, actor=self.actor, allowed_departments=self.allowed_departments)
            data = shift_to_dict(shift)
            return self._committed(session, data, ("SHIFT_CREATE", "Shift", shift.id, data), shift)

        return self._run(Capability.EDIT_ROTA, "create_shift", work)

    def update_shift(
        self, shift_id: int, patch: Dict[str, Any], *, expected_version: Optional[int] = None
    ) -> ActionResult:
        def work(session):
            version = get_shift(session, shift_id).version
            shift = update_shift(
                session,
                shift_id,
                patch,
                expected_version=expected_version,
                allowed_departments=self.allowed_departments,
            )
            data = shift_to_dict(shift)
            if shift.version == version:
                return ActionResult.ok(data)
            details = {"patch": patch, "version": shift.version}
            return self._committed(session, data, ("SHIFT_UPDATE", "Shift", shift.id, details))

        return self._run(Capability.EDIT_ROTA, "update_shift", work)

    def move_shift(
        self,
        shift_id: int,
        target_employee_id: Optional[int],
        target_date: datetime.date | str,
        *,
        expected_version: Optional[int] = None,
    ) -> ActionResult:
        def work(session):
            before = get_shift(session, shift_id)
            origin = {"employee_id": before.employee_id, "shift_date": before.shift_date.isoformat()}
            shift, moved = move_shift(
                session, shift_id, target_employee_id, target_date, expected_version=expected_version
            )
            data = {"shift": shift_to_dict(shift), "moved": moved}
            if not moved:
                return ActionResult.ok(data)
            target = {"employee_id": shift.employee_id, "shift_date": shift.shift_date.isoformat()}
            details = {"from": origin, "to": target}
            return self._committed(session, data, ("SHIFT_MOVE", "Shift", shift.id, details), shift)

        return self._run(Capability.EDIT_ROTA, "move_shift", work)

    def reassign_shift(
        self,
        shift_id: int,
        employee_id: Optional[int],
        *,
        reason: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> ActionResult:
        def work(session):
            shift = reassign_shift(
                session, shift_id, employee_id, reason=reason, actor=self.actor, expected_version=expected_version
            )
            data = shift_to_dict(shift)
            details = {"from": shift.reassigned_from_id, "to": shift.employee_id, "reason": shift.reassignment_reason}
            return self._committed(session, data, ("SHIFT_REASSIGN", "Shift", shift.id, details), shift)

        return self._run(Capability.EDIT_ROTA, "reassign_shift", work)

    def mark_shift_sick(self, shift_id: int, *, expected_version: Optional[int] = None) -> ActionResult:
        def work(session):
            shift = mark_shift_sick(session, shift_id, expected_version=expected_version)
            data = shift_to_dict(shift)
            details = {"employee_id": shift.employee_id}
            return self._committed(session, data, ("SHIFT_SICK", "Shift", shift.id, details))

        return self._run(Capability.EDIT_ROTA, "mark_shift_sick", work)

    def cancel_shift(self, shift_id: int, *, expected_version: Optional[int] = None) -> ActionResult:
        def work(session):
            shift = cancel_shift(session, shift_id, expected_version=expected_version)
            data = shift_to_dict(shift)
            details = {"employee_id": shift.employee_id}
            return self._committed(session, data, ("SHIFT_CANCEL", "Shift", shift.id, details))

        return self._run(Capability.EDIT_ROTA, "cancel_shift", work)

    def delete_shift(self, shift_id: int) -> ActionResult:
        def work(session):
            snapshot = delete_shift(session, shift_id)
            return self._committed(session, snapshot, ("SHIFT_DELETE", "Shift", shift_id, snapshot))

        return self._run(Capability.EDIT_ROTA, "delete_shift", work)

    # -- templates --------------------------------------------------------

    def create_template(self, payload: Dict[str, Any]) -> ActionResult:
        def work(session):
            template = create_template(
                session, payload, actor=self.actor, allowed_departments=self.allowed_departments
            )
            data = template_to_dict(template)
            return self._committed(session, data, ("TEMPLATE_CREATE", "ShiftTemplate", template.id, data))

        return self._run(Capability.EDIT_ROTA, "create_template", work)

    def update_template(self, template_id: int, patch: Dict[str, Any]) -> ActionResult:
        def work(session):
            template = update_template(session, template_id, patch, allowed_departments=self.allowed_departments)
            data = template_to_dict(template)
            return self._committed(session, data, ("TEMPLATE_UPDATE", "ShiftTemplate", template.id, {"patch": patch}))

        return self._run(Capability.EDIT_ROTA, "update_template", work)

    def deactivate_template(self, template_id: int) -> ActionResult:
        def work(session):
            template = deactivate_template(session, template_id)
            data = template_to_dict(template)
            return self._committed(
                session, data, ("TEMPLATE_DEACTIVATE", "ShiftTemplate", template.id, {"name": template.name})
            )

        return self._run(Capability.EDIT_ROTA, "deactivate_template", work)

    # -- week -------------------------------------------------------------

    def auto_populate_week(self, week_id: int, days: Optional[Iterable[datetime.date]] = None) -> ActionResult:
        def work(session):
            count, created = auto_populate_week_from_templates(session, week_id, days, actor=self.actor)
            data = {"created_count": count, "shifts": [shift_to_dict(shift) for shift in created]}
            details = {"created_count": count}
            return self._committed(session, data, ("WEEK_AUTO_POPULATE", "RotaWeek", week_id, details))

        return self._run(Capability.EDIT_ROTA, "auto_populate_week", work)

    def publish_week(self, week_id: int) -> ActionResult:
        def work(session):
            week = publish_rota_week(session, week_id, published_by=self.actor)
            data = week_to_dict(week)
            details = {"week_start": data["week_start"]}
            return self._committed(session, data, ("WEEK_PUBLISH", "RotaWeek", week.id, details))

        return self._run(Capability.PUBLISH_ROTA, "publish_week", work)

    # -- timeclock --------------------------------------------------------

    def _employee_names(self, employee_ids) -> Dict[int, str]:
        return {row["employee_id"]: row["name"] for row in self.directory.get_employees(employee_ids)}

    def clock_in(self, employee_id: int, *, at=None) -> ActionResult:
        def work(session):
            entry = clock_in(session, employee_id, at=at, actor=self.actor)
            data = timeclock_session_to_dict(entry)
            details = {
                "employee_id": entry.employee_id,
                "work_date": data["work_date"],
                "linked_shift_id": entry.linked_shift_id,
            }
            return self._committed(session, data, ("CLOCK_IN", "TimeclockSession", entry.id, details))

        return self._run(Capability.CLOCK, "clock_in", work)

    def clock_out(self, employee_id: int, *, at=None) -> ActionResult:
        def work(session):
            entry = clock_out(session, employee_id, at=at)
            data = timeclock_session_to_dict(entry)
            details = {"employee_id": entry.employee_id, "clock_out_at": data["clock_out_at"]}
            return self._committed(session, data, ("CLOCK_OUT", "TimeclockSession", entry.id, details))

        return self._run(Capability.CLOCK, "clock_out", work)

    def open_timeclock_sessions(self) -> ActionResult:
        def work(session):
            entries = list_open_sessions(session)
            names = self._employee_names(entry.employee_id for entry in entries)
            rows = []
            for entry in entries:
                row = timeclock_session_to_dict(entry)
                row["employee_name"] = names.get(entry.employee_id, "Unknown")
                rows.append(row)
            return ActionResult.ok(rows)

        return self._run(Capability.CLOCK, "open_timeclock_sessions", work)

    def week_timeclock_sessions(self, week_start: datetime.date | str) -> ActionResult:
        def work(session):
            entries = week_sessions(session, week_start)
            names = self._employee_names(entry.employee_id for entry in entries)
            rows = []
            for entry in entries:
                row = timeclock_session_to_dict(entry)
                row["employee_name"] = names.get(entry.employee_id, "Unknown")
                shift = entry.linked_shift
                row["planned_start"] = format_hhmm(shift.start_time) if shift is not None else None
                row["planned_end"] = format_hhmm(shift.end_time) if shift is not None else None
                rows.append(row)
            return ActionResult.ok(rows)

        return self._run(Capability.VIEW_TIMECLOCK, "week_timeclock_sessions", work)

    def record_timeclock_session(self, payload: Dict[str, Any]) -> ActionResult:
        def work(session):
            entry = record_session(session, payload, actor=self.actor)
            data = timeclock_session_to_dict(entry)
            details = {"employee_id": entry.employee_id, "work_date": data["work_date"], "manual": True}
            return self._committed(session, data, ("TIMECLOCK_CREATE", "TimeclockSession", entry.id, details))

        return self._run(Capability.MANAGE_TIMECLOCK, "record_timeclock_session", work)

    def update_timeclock_session(self, session_id: int, patch: Dict[str, Any]) -> ActionResult:
        def work(session):
            entry = update_session(session, session_id, patch)
            data = timeclock_session_to_dict(entry)
            details = {"patch": patch}
            return self._committed(session, data, ("TIMECLOCK_UPDATE", "TimeclockSession", entry.id, details))

        return self._run(Capability.MANAGE_TIMECLOCK, "update_timeclock_session", work)

    def approve_timeclock_session(self, session_id: int) -> ActionResult:
        def work(session):
            entry = approve_session(session, session_id)
            data = timeclock_session_to_dict(entry)
            details = {"employee_id": entry.employee_id}
            return self._committed(session, data, ("TIMECLOCK_APPROVE", "TimeclockSession", entry.id, details))

        return self._run(Capability.MANAGE_TIMECLOCK, "approve_timeclock_session", work)

    def delete_timeclock_session(self, session_id: int) -> ActionResult:
        def work(session):
            snapshot = delete_session(session, session_id)
            return self._committed(session, snapshot, ("TIMECLOCK_DELETE", "TimeclockSession", session_id, snapshot))

        return self._run(Capability.MANAGE_TIMECLOCK, "delete_timeclock_session", work)

    def reconcile_week(self, week_start: datetime.date | str) -> ActionResult:
        """Planned shift hours against clocked hours for every row in the week."""

        def work(session):
            rows = reconcile_week(session, week_start)
            names = self._employee_names(row.employee_id for row in rows)
            payload = []
            for row in rows:
                item = row.to_dict()
                item["employee_name"] = names.get(row.employee_id, f"Employee #{row.employee_id}")
                payload.append(item)
            start = normalize_week_start(parse_date(week_start, "week start"))
            return ActionResult.ok(
                {"week_start": start.isoformat(), "rows": payload, "totals": reconciliation_totals(rows)}
            )

        return self._run(Capability.VIEW_TIMECLOCK, "reconcile_week", work)


class AsyncRotaClient:
    """Awaitable face of ``RotaActions`` for the grid controller.

    Each call runs the blocking action on a worker thread.
    """

    def __init__(self, actions: RotaActions) -> None:
        self.actions = actions

    @property
    def user_id(self) -> Optional[str]:
        return self.actions.user_id

    def can(self, capability: Capability) -> bool:
        return self.actions.allowed(capability)

    async def _call(self, name: str, *args, **kwargs) -> ActionResult:
        return await asyncio.to_thread(getattr(self.actions, name), *args, **kwargs)

    async def load_week(self, week_start: datetime.date | str) -> ActionResult:
        if not self.can(Capability.VIEW_ROTA):
            return await asyncio.to_thread(self._denied, "load_week")
        try:
            day = parse_date(week_start, "week start")
        except RotaValidationError as exc:
            return ActionResult.from_error(exc)
        view = await assemble_week(
            normalize_week_start(day),
            session_factory=self.actions.session_factory,
            directory=self.actions.directory,
            leave_registry=self.actions.leave_registry,
            budget_registry=self.actions.budget_registry,
            day_info_provider=self.actions.day_info_provider,
        )
        return ActionResult.ok(view)

    def _denied(self, action: str) -> ActionResult:
        with self.actions.session_factory() as session:
            return self.actions.deny(session, action)

    async def create_shift(self, payload: Dict[str, Any]) -> ActionResult:
        return await self._call("create_shift", payload)

    async def update_shift(self, shift_id: int, patch: Dict[str, Any], **kwargs) -> ActionResult:
        return await self._call("update_shift", shift_id, patch, **kwargs)

    async def move_shift(self, shift_id: int, target_employee_id, target_date, **kwargs) -> ActionResult:
        return await self._call("move_shift", shift_id, target_employee_id, target_date, **kwargs)

    async def reassign_shift(self, shift_id: int, employee_id, **kwargs) -> ActionResult:
        return await self._call("reassign_shift", shift_id, employee_id, **kwargs)

    async def mark_shift_sick(self, shift_id: int, **kwargs) -> ActionResult:
        return await self._call("mark_shift_sick", shift_id, **kwargs)

    async def cancel_shift(self, shift_id: int, **kwargs) -> ActionResult:
        return await self._call("cancel_shift", shift_id, **kwargs)

    async def delete_shift(self, shift_id: int) -> ActionResult:
        return await self._call("delete_shift", shift_id)

    async def auto_populate_week(self, week_id: int, days=None) -> ActionResult:
        return await self._call("auto_populate_week", week_id, days)

    async def publish_week(self, week_id: int) -> ActionResult:
        return await self._call("publish_week", week_id)
