from __future__ import annotations

import asyncio
import datetime
import json

import pytest
from sqlalchemy.exc import OperationalError

from conftest import MONDAY, build_actions, seed_employee, seed_leave, shift_payload
import actions as actions_module
from actions import AsyncRotaClient
from database import AuditLog, Shift
from permissions import Capability, RolePermissions, load_user_roles, save_user_roles


def _audit_actions(session):
    return [row.action for row in session.query(AuditLog).order_by(AuditLog.id)]


def test_staff_cannot_edit_and_attempt_is_audited(rota_db) -> None:
    actions = build_actions(rota_db, "sid")
    result = actions.create_shift(shift_payload())
    assert result.success is False
    assert result.error_kind == "permission"
    assert result.error == "Permission denied"

    log = rota_db["session"].query(AuditLog).one()
    assert log.action == "PERMISSION_DENIED"
    assert log.user_id == "sid"
    assert json.loads(log.payloadJSON) == {"attempted": "create_shift"}


def test_unknown_user_cannot_even_view(rota_db) -> None:
    result = build_actions(rota_db, "stranger").list_week_shifts(MONDAY)
    assert result.error_kind == "permission"


def test_supervisor_cannot_publish(rota_db) -> None:
    actions = build_actions(rota_db, "sam")
    week = actions.get_or_create_week(MONDAY).data
    assert actions.publish_week(week["id"]).error_kind == "permission"
    assert build_actions(rota_db, "admin").publish_week(week["id"]).success


def test_create_is_audited(rota_db) -> None:
    result = build_actions(rota_db, "sam").create_shift(shift_payload())
    assert result.success
    assert result.warnings == []
    assert result.data["version"] == 1
    assert _audit_actions(rota_db["session"]) == ["SHIFT_CREATE"]


def test_duplicate_day_is_an_advisory_not_a_block(rota_db) -> None:
    actions = build_actions(rota_db, "admin")
    first = actions.create_shift(shift_payload(employee_id=5))
    second = actions.create_shift(shift_payload(employee_id=5, start_time="18:00", end_time="23:00"))
    assert second.success
    assert [w.code for w in second.warnings] == ["duplicate_shift"]
    assert second.warnings[0].details["shift_ids"] == [first.data["id"]]


def test_open_shifts_never_warn(rota_db) -> None:
    actions = build_actions(rota_db, "admin")
    actions.create_shift(shift_payload())
    assert actions.create_shift(shift_payload()).warnings == []


def test_move_onto_leave_day_warns(rota_db) -> None:
    employee_id = seed_employee(rota_db["DirectorySession"], "Lee")
    seed_leave(rota_db["DirectorySession"], employee_id, datetime.date(2024, 6, 4))
    actions = build_actions(rota_db, "admin")
    shift = actions.create_shift(shift_payload()).data

    result = actions.move_shift(shift["id"], employee_id, "2024-06-04", expected_version=shift["version"])
    assert result.success
    assert result.data["moved"] is True
    assert result.data["shift"]["employee_id"] == employee_id
    assert [w.code for w in result.warnings] == ["leave_conflict"]
    assert _audit_actions(rota_db["session"])[-1] == "SHIFT_MOVE"


def test_no_op_move_is_not_audited(rota_db) -> None:
    actions = build_actions(rota_db, "admin")
    shift = actions.create_shift(shift_payload()).data
    result = actions.move_shift(shift["id"], None, MONDAY)
    assert result.success
    assert result.data["moved"] is False
    assert _audit_actions(rota_db["session"]) == ["SHIFT_CREATE"]


def test_unchanged_update_is_not_audited(rota_db) -> None:
    actions = build_actions(rota_db, "admin")
    shift = actions.create_shift(shift_payload()).data
    result = actions.update_shift(shift["id"], {"start_time": "09:00"}, expected_version=1)
    assert result.success
    assert result.data["version"] == 1
    assert _audit_actions(rota_db["session"]) == ["SHIFT_CREATE"]


@pytest.mark.parametrize("week_start", ["2024-06-05", MONDAY])
def test_week_reads_accept_iso_strings(rota_db, week_start) -> None:
    actions = build_actions(rota_db, "admin")
    actions.create_shift(shift_payload())
    week = actions.get_or_create_week(week_start)
    assert week.success
    assert week.data["week_start"] == "2024-06-03"
    shifts = actions.list_week_shifts(week_start)
    assert shifts.success
    assert len(shifts.data) == 1
    assert actions.load_week(week_start).data.week_start == MONDAY


@pytest.mark.parametrize("week_start", ["June", "", None, 20240603])
def test_bad_week_start_is_a_validation_result(rota_db, week_start) -> None:
    actions = build_actions(rota_db, "admin")
    for result in (
        actions.get_or_create_week(week_start),
        actions.list_week_shifts(week_start),
        actions.load_week(week_start),
        actions.open_published_shifts(week_start, MONDAY),
    ):
        assert result.success is False
        assert result.error_kind == "validation"


def test_audit_failure_does_not_undo_a_saved_shift(rota_db, monkeypatch) -> None:
    def broken_audit(*args, **kwargs):
        raise OperationalError("INSERT INTO audit_log", {}, Exception("database is locked"))

    monkeypatch.setattr(actions_module, "record_audit_log", broken_audit)
    actions = build_actions(rota_db, "admin")
    result = actions.create_shift(shift_payload(employee_id=5))
    assert result.success
    assert [w.code for w in result.warnings] == ["audit_not_recorded"]
    assert rota_db["session"].query(Shift).count() == 1

    moved = actions.move_shift(result.data["id"], 6, MONDAY)
    assert moved.success
    assert moved.data["shift"]["employee_id"] == 6
    published = actions.publish_week(result.data["week_id"])
    assert published.success
    assert published.data["status"] == "published"


def test_failed_advisory_checks_still_return_the_saved_shift(rota_db) -> None:
    class BrokenLeave:
        def approved_leave_on(self, employee_id, day):
            raise OperationalError("SELECT leave_days", {}, Exception("no such table"))

    actions = build_actions(rota_db, "admin")
    actions.leave_registry = BrokenLeave()
    result = actions.create_shift(shift_payload(employee_id=5))
    assert result.success
    assert [w.code for w in result.warnings] == ["checks_unavailable"]
    assert _audit_actions(rota_db["session"]) == ["SHIFT_CREATE"]


def test_stale_update_is_a_conflict(rota_db) -> None:
    actions = build_actions(rota_db, "admin")
    shift = actions.create_shift(shift_payload()).data
    assert actions.update_shift(shift["id"], {"notes": "a"}, expected_version=1).success
    result = actions.update_shift(shift["id"], {"notes": "b"}, expected_version=1)
    assert result.success is False
    assert result.error_kind == "conflict"


def test_missing_shift_is_not_found(rota_db) -> None:
    actions = build_actions(rota_db, "admin")
    for result in (actions.delete_shift(41), actions.cancel_shift(41), actions.move_shift(41, None, MONDAY)):
        assert result.error_kind == "not_found"


def test_validation_error_carries_message(rota_db) -> None:
    result = build_actions(rota_db, "admin").create_shift(shift_payload(department="spa"))
    assert result.error_kind == "validation"
    assert "spa" in result.error


def test_allowed_departments_narrow_the_choice(rota_db) -> None:
    actions = build_actions(rota_db, "admin")
    actions.allowed_departments = ["kitchen"]
    assert actions.create_shift(shift_payload(department="bar")).error_kind == "validation"
    assert actions.create_shift(shift_payload(department="kitchen")).success


def test_reassign_sick_cancel_delete_are_audited(rota_db) -> None:
    actions = build_actions(rota_db, "admin")
    shift = actions.create_shift(shift_payload(employee_id=1)).data
    assert actions.reassign_shift(shift["id"], 2, reason="swap").data["original_employee_id"] == 1
    assert actions.mark_shift_sick(shift["id"]).data["status"] == "sick"
    assert actions.cancel_shift(shift["id"]).data["status"] == "cancelled"
    assert actions.delete_shift(shift["id"]).data["id"] == shift["id"]
    assert _audit_actions(rota_db["session"]) == [
        "SHIFT_CREATE",
        "SHIFT_REASSIGN",
        "SHIFT_SICK",
        "SHIFT_CANCEL",
        "SHIFT_DELETE",
    ]


def test_templates_and_auto_populate(rota_db) -> None:
    actions = build_actions(rota_db, "admin")
    template = actions.create_template(
        {"name": "Lunch", "start_time": "11:00", "end_time": "15:00", "department": "kitchen", "day_of_week": 2}
    )
    assert template.success
    week = actions.get_or_create_week(MONDAY).data
    first = actions.auto_populate_week(week["id"])
    assert first.data["created_count"] == 1
    assert first.data["shifts"][0]["shift_date"] == "2024-06-05"
    assert actions.auto_populate_week(week["id"]).data["created_count"] == 0
    assert actions.deactivate_template(template.data["id"]).data["is_active"] is False
    assert actions.list_templates().data == []
    assert len(actions.list_templates(active_only=False).data) == 1


def test_portal_reads_follow_publish(rota_db) -> None:
    actions = build_actions(rota_db, "admin")
    shift = actions.create_shift(shift_payload(employee_id=9)).data
    sunday = MONDAY + datetime.timedelta(days=6)
    assert actions.employee_published_shifts(9, MONDAY, sunday).data == []
    actions.publish_week(shift["week_id"])
    rows = actions.employee_published_shifts(9, MONDAY, sunday).data
    assert [row["shift_id"] for row in rows] == [shift["id"]]
    assert actions.open_published_shifts(MONDAY, sunday).data == []


def test_load_week_returns_view(rota_db) -> None:
    actions = build_actions(rota_db, "sid")
    result = actions.load_week(datetime.date(2024, 6, 8))
    assert result.success
    assert result.data.week_start == MONDAY


def test_async_client_checks_view_capability(rota_db) -> None:
    client = AsyncRotaClient(build_actions(rota_db, "nobody"))
    result = asyncio.run(client.load_week(MONDAY))
    assert result.error_kind == "permission"
    assert _audit_actions(rota_db["session"]) == ["PERMISSION_DENIED"]


def test_async_client_runs_actions(rota_db) -> None:
    client = AsyncRotaClient(build_actions(rota_db, "sam"))
    assert client.can(Capability.EDIT_ROTA)
    assert not client.can(Capability.PUBLISH_ROTA)
    result = asyncio.run(client.create_shift(shift_payload()))
    assert result.success


class TestRolePermissions:
    def test_role_map(self) -> None:
        permissions = RolePermissions({"m": "Manager", "s": "staff", "x": "chef"})
        assert permissions.can_publish_rota("m")
        assert permissions.can_view_rota("s") and not permissions.can_edit_rota("s")
        assert permissions.capabilities("x") == set()
        assert permissions.capabilities(None) == set()

    def test_users_file_round_trip(self, rota_db) -> None:
        save_user_roles({"jo": "manager"})
        roles = load_user_roles()
        assert roles["jo"] == "manager"
        assert roles["admin"] == "super_admin"
        assert RolePermissions().can_publish_rota("jo")

    def test_unknown_role_rejected(self, rota_db) -> None:
        with pytest.raises(ValueError):
            save_user_roles({"jo": "owner"})
