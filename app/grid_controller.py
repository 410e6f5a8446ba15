"""Interaction state for the weekly rota grid.

The controller owns the client's working copy of the week. Local state only
changes after the server has confirmed a mutation, so a failed request
leaves the grid exactly as it was. One structural mutation runs at a time;
drags started while one is in flight are refused.
"""

from __future__ import annotations

import asyncio
import datetime
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from assignment import CellRef, assignment_for, decode_cell
from budget import department_budget_rollup, employee_hours_rollup
from database import WEEK_STATUS_PUBLISHED, normalize_week_start, week_dates
from permissions import Capability
from publishing import publish_banner, publish_state
from results import ERROR_CONFLICT, ERROR_NOT_FOUND, ERROR_VALIDATION, ActionResult

DRAG_IDLE = "idle"
DRAG_DRAGGING = "dragging"

DROP_MOVED = "moved"
DROP_NO_OP = "no_op"
DROP_INVALID_TARGET = "invalid_target"
DROP_CANCELLED = "cancelled"
DROP_REJECTED = "rejected"
DROP_BUSY = "busy"

ERROR_BUSY = "busy"
BUSY_MESSAGE = "Another change is still saving. Try again in a moment."
READ_ONLY_MESSAGE = "You can view this rota but not change it."

REFRESH_ON = {ERROR_NOT_FOUND, ERROR_CONFLICT}


@dataclass
class Toast:
    level: str
    message: str


@dataclass
class DropOutcome:
    kind: str
    shift: Optional[Dict[str, Any]] = None
    result: Optional[ActionResult] = None

    @property
    def moved(self) -> bool:
        return self.kind == DROP_MOVED


@dataclass
class DragState:
    phase: str = DRAG_IDLE
    shift_id: Optional[int] = None
    origin: Optional[CellRef] = None


def shift_cell(shift: Dict[str, Any]) -> CellRef:
    return CellRef(assignment_for(shift.get("employee_id")), datetime.date.fromisoformat(shift["shift_date"]))


class GridController:
    def __init__(self, client, week_start: datetime.date) -> None:
        self.client = client
        self.week_start = normalize_week_start(week_start)
        self.view = None
        self.week: Optional[Dict[str, Any]] = None
        self.shifts: Dict[int, Dict[str, Any]] = {}
        self.drag = DragState()
        self.toasts: List[Toast] = []
        self.facet_errors: Dict[str, str] = {}
        self._lock = asyncio.Lock()
        self._listeners: List[Callable[[], None]] = []

    # -- observers --------------------------------------------------------

    def subscribe(self, callback: Callable[[], None]) -> None:
        self._listeners.append(callback)

    def _changed(self) -> None:
        for callback in list(self._listeners):
            callback()

    def _toast(self, level: str, message: str) -> None:
        self.toasts.append(Toast(level, message))

    def drain_toasts(self) -> List[Toast]:
        pending, self.toasts = self.toasts, []
        return pending

    # -- derived state ----------------------------------------------------

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @property
    def can_edit(self) -> bool:
        return self.client.can(Capability.EDIT_ROTA)

    @property
    def can_publish(self) -> bool:
        return self.client.can(Capability.PUBLISH_ROTA)

    @property
    def dates(self) -> List[datetime.date]:
        return week_dates(self.week_start)

    @property
    def employees(self) -> List[Dict[str, Any]]:
        return list(self.view.employees) if self.view else []

    @property
    def publish_state(self) -> Optional[str]:
        return publish_state(self.week) if self.week else None

    @property
    def banner(self) -> Optional[str]:
        return publish_banner(self.week) if self.week else None

    def shifts_in_cell(self, cell: CellRef) -> List[Dict[str, Any]]:
        rows = [shift for shift in self.shifts.values() if shift_cell(shift) == cell]
        return sorted(rows, key=lambda shift: (shift["start_time"], shift["id"]))

    def employee_hours(self) -> List[Dict[str, Any]]:
        return employee_hours_rollup(self.shifts.values(), self.employees)

    def budget_rows(self) -> List[Dict[str, Any]]:
        if not self.view:
            return []
        return department_budget_rollup(self.shifts.values(), self.view.departments, self.view.budgets)

    def approved_leave(self, employee_id: Optional[int], day: datetime.date) -> bool:
        if not self.view or employee_id is None:
            return False
        return (employee_id, day.isoformat()) in self.view.approved_leave()

    # -- loading ----------------------------------------------------------

    async def load(self, week_start: Optional[datetime.date] = None) -> ActionResult:
        """Full reload of the working copy, used on navigation and after stale errors."""
        if week_start is not None:
            self.week_start = normalize_week_start(week_start)
        self.drag = DragState()
        result = await self.client.load_week(self.week_start)
        if not result.success:
            self._toast("error", result.error or "Could not load the rota.")
            self._changed()
            return result
        view = result.data
        self.view = view
        self.week = dict(view.week) if view.week else None
        self.shifts = {shift["id"]: dict(shift) for shift in view.shifts}
        self.facet_errors = dict(view.facet_errors)
        for facet in sorted(self.facet_errors):
            self._toast("warning", f"Some rota data could not be loaded ({facet}).")
        self._changed()
        return result

    async def navigate(self, weeks: int) -> ActionResult:
        return await self.load(self.week_start + datetime.timedelta(weeks=weeks))

    # -- merge helpers ----------------------------------------------------

    def _merge(self, shift: Dict[str, Any]) -> None:
        self.shifts[shift["id"]] = dict(shift)
        self._week_touched()

    def _forget(self, shift_id: int) -> None:
        self.shifts.pop(shift_id, None)
        self._week_touched()

    def _week_touched(self) -> None:
        if self.week and self.week.get("status") == WEEK_STATUS_PUBLISHED:
            self.week["has_unpublished_changes"] = True

    def _report(self, result: ActionResult, success_message: Optional[str] = None) -> None:
        if result.success:
            if success_message:
                self._toast("success", success_message)
            for warning in result.warnings:
                self._toast("warning", warning.message)
        else:
            self._toast("error", result.error or "Something went wrong.")

    async def _after_failure(self, result: ActionResult) -> None:
        if not result.success and result.error_kind in REFRESH_ON:
            await self.load()

    def _refuse(self, message: str, kind: str = ERROR_VALIDATION) -> ActionResult:
        self._toast("error", message)
        self._changed()
        return ActionResult.fail(message, kind)

    async def _mutate(self, call, success_message: Optional[str], on_success: Callable[[Any], None]) -> ActionResult:
        if not self.can_edit:
            return self._refuse(READ_ONLY_MESSAGE)
        if self.busy:
            return self._refuse(BUSY_MESSAGE, ERROR_BUSY)
        async with self._lock:
            self._changed()
            result = await call()
            if result.success:
                on_success(result.data)
            self._report(result, success_message)
        await self._after_failure(result)
        self._changed()
        return result

    # -- drag and drop ----------------------------------------------------

    def start_drag(self, shift_id: int) -> bool:
        if self.busy or not self.can_edit or self.drag.phase != DRAG_IDLE:
            return False
        shift = self.shifts.get(shift_id)
        if shift is None:
            return False
        self.drag = DragState(DRAG_DRAGGING, shift_id, shift_cell(shift))
        self._changed()
        return True

    def cancel_drag(self) -> DropOutcome:
        shift = self.shifts.get(self.drag.shift_id) if self.drag.shift_id is not None else None
        self.drag = DragState()
        self._changed()
        return DropOutcome(DROP_CANCELLED, shift)

    async def drop(self, cell_id: Optional[str]) -> DropOutcome:
        """Finish the current drag on the cell encoded as ``cell_id``."""
        if self.drag.phase != DRAG_DRAGGING:
            return DropOutcome(DROP_INVALID_TARGET)
        shift_id = self.drag.shift_id
        origin = self.drag.origin
        self.drag = DragState()
        shift = self.shifts.get(shift_id)
        target = decode_cell(cell_id)
        if shift is None or target is None or target.date not in self.dates:
            self._changed()
            return DropOutcome(DROP_INVALID_TARGET, shift)
        if target == origin:
            self._changed()
            return DropOutcome(DROP_NO_OP, shift)
        if self.busy:
            self._toast("error", BUSY_MESSAGE)
            self._changed()
            return DropOutcome(DROP_BUSY, shift)

        async with self._lock:
            self._changed()
            result = await self.client.move_shift(
                shift_id,
                target.assignment.employee_id,
                target.date,
                expected_version=shift.get("version"),
            )
            if result.success:
                moved = result.data["shift"]
                if result.data.get("moved", True):
                    self._merge(moved)
                self._report(result, "Shift moved.")
        if not result.success:
            self._report(result)
            await self._after_failure(result)
            self._changed()
            return DropOutcome(DROP_REJECTED, shift, result)
        self._changed()
        kind = DROP_MOVED if result.data.get("moved", True) else DROP_NO_OP
        return DropOutcome(kind, self.shifts.get(shift_id), result)

    # -- other mutations --------------------------------------------------

    def new_shift_seed(self, cell_id: str) -> Optional[Dict[str, Any]]:
        """Initial values for the add-shift dialog opened from a cell's "+" button."""
        cell = decode_cell(cell_id)
        if cell is None or cell.date not in self.dates:
            return None
        departments = self.view.departments if self.view else []
        return {
            "employee_id": cell.assignment.employee_id,
            "shift_date": cell.date.isoformat(),
            "start_time": "09:00",
            "end_time": "17:00",
            "unpaid_break_minutes": 0,
            "is_overnight": False,
            "department": departments[0]["name"] if departments else "",
            "name": "",
            "notes": "",
        }

    async def add_shift(self, payload: Dict[str, Any]) -> ActionResult:
        data = dict(payload)
        if self.week:
            data.setdefault("week_id", self.week["id"])
        return await self._mutate(lambda: self.client.create_shift(data), "Shift added.", self._merge)

    async def edit_shift(self, shift_id: int, patch: Dict[str, Any]) -> ActionResult:
        version = self.shifts.get(shift_id, {}).get("version")
        return await self._mutate(
            lambda: self.client.update_shift(shift_id, patch, expected_version=version),
            "Shift updated.",
            self._merge,
        )

    async def reassign_shift(self, shift_id: int, employee_id: Optional[int], reason: Optional[str] = None) -> ActionResult:
        version = self.shifts.get(shift_id, {}).get("version")
        return await self._mutate(
            lambda: self.client.reassign_shift(shift_id, employee_id, reason=reason, expected_version=version),
            "Shift reassigned.",
            self._merge,
        )

    async def mark_sick(self, shift_id: int) -> ActionResult:
        version = self.shifts.get(shift_id, {}).get("version")
        return await self._mutate(
            lambda: self.client.mark_shift_sick(shift_id, expected_version=version),
            "Marked as sick.",
            self._merge,
        )

    async def cancel_shift(self, shift_id: int) -> ActionResult:
        version = self.shifts.get(shift_id, {}).get("version")
        return await self._mutate(
            lambda: self.client.cancel_shift(shift_id, expected_version=version),
            "Shift cancelled.",
            self._merge,
        )

    async def delete_shift(self, shift_id: int) -> ActionResult:
        return await self._mutate(
            lambda: self.client.delete_shift(shift_id),
            "Shift deleted.",
            lambda _data: self._forget(shift_id),
        )

    async def auto_populate(self) -> ActionResult:
        if not self.week:
            return self._refuse("Load a week before auto-populating.")

        def merge_created(data: Dict[str, Any]) -> None:
            for shift in data["shifts"]:
                self._merge(shift)
            if data["created_count"] == 0:
                self._toast("info", "Every template shift is already on the rota.")

        result = await self._mutate(
            lambda: self.client.auto_populate_week(self.week["id"]),
            None,
            merge_created,
        )
        if result.success and result.data["created_count"]:
            self._toast("success", f"Added {result.data['created_count']} shift(s) from templates.")
        return result

    async def publish(self) -> ActionResult:
        if not self.can_publish:
            return self._refuse(READ_ONLY_MESSAGE)
        if not self.week:
            return self._refuse("Load a week before publishing.")
        if self.busy:
            return self._refuse(BUSY_MESSAGE, ERROR_BUSY)
        async with self._lock:
            self._changed()
            result = await self.client.publish_week(self.week["id"])
            if result.success:
                self.week = dict(result.data)
            self._report(result, "Rota published.")
        await self._after_failure(result)
        self._changed()
        return result
