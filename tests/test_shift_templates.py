from __future__ import annotations

import datetime
import unittest

import pytest

from conftest import MONDAY, shift_payload
from database import RotaWeek, Shift, get_or_create_week
from publishing import publish_rota_week
from results import RotaNotFoundError, RotaValidationError
from shift_templates import (
    auto_populate_week_from_templates,
    create_template,
    deactivate_template,
    list_templates,
    update_template,
)
from shifts import create_shift


def _template(**overrides):
    payload = {
        "name": "Bar open",
        "start_time": "10:00",
        "end_time": "16:00",
        "unpaid_break_minutes": 30,
        "department": "bar",
        "day_of_week": 0,
        "employee_id": None,
    }
    payload.update(overrides)
    return payload


class AutoPopulateTests(unittest.TestCase):
    @pytest.fixture(autouse=True)
    def _db(self, rota_db):
        self.session = rota_db["session"]
        self.week = get_or_create_week(self.session, MONDAY)

    def test_creates_open_and_assigned_shifts(self) -> None:
        open_template = create_template(self.session, _template())
        assigned = create_template(self.session, _template(name="Kitchen close", department="kitchen", day_of_week=4, employee_id=12))
        count, created = auto_populate_week_from_templates(self.session, self.week.id, actor="manager")
        self.assertEqual(count, 2)
        by_template = {shift.template_id: shift for shift in created}
        self.assertIsNone(by_template[open_template.id].employee_id)
        self.assertEqual(by_template[open_template.id].shift_date, MONDAY)
        self.assertEqual(by_template[assigned.id].employee_id, 12)
        self.assertEqual(by_template[assigned.id].shift_date, datetime.date(2024, 6, 7))
        self.assertEqual(by_template[assigned.id].name, "Kitchen close")
        self.assertTrue(all(shift.version == 1 for shift in created))

    def test_second_run_creates_nothing(self) -> None:
        create_template(self.session, _template())
        create_template(self.session, _template(name="Late", start_time="18:00", end_time="23:00", day_of_week=5))
        first, _ = auto_populate_week_from_templates(self.session, self.week.id)
        second, created = auto_populate_week_from_templates(self.session, self.week.id)
        self.assertEqual(first, 2)
        self.assertEqual(second, 0)
        self.assertEqual(created, [])
        self.assertEqual(self.session.query(Shift).count(), 2)

    def test_skips_a_matching_hand_made_shift(self) -> None:
        create_template(self.session, _template())
        create_shift(self.session, shift_payload(start_time="10:00", end_time="16:00"))
        count, _ = auto_populate_week_from_templates(self.session, self.week.id)
        self.assertEqual(count, 0)

    def test_limited_to_requested_days(self) -> None:
        create_template(self.session, _template(day_of_week=0))
        create_template(self.session, _template(day_of_week=2))
        count, created = auto_populate_week_from_templates(self.session, self.week.id, [datetime.date(2024, 6, 5)])
        self.assertEqual(count, 1)
        self.assertEqual(created[0].shift_date, datetime.date(2024, 6, 5))

    def test_rejects_days_outside_the_week(self) -> None:
        create_template(self.session, _template())
        with self.assertRaises(RotaValidationError):
            auto_populate_week_from_templates(self.session, self.week.id, [datetime.date(2024, 6, 10)])
        self.assertEqual(self.session.query(Shift).count(), 0)

    def test_ignores_templates_without_a_day(self) -> None:
        create_template(self.session, _template(day_of_week=None))
        count, _ = auto_populate_week_from_templates(self.session, self.week.id)
        self.assertEqual(count, 0)

    def test_overnight_template_makes_overnight_shift(self) -> None:
        create_template(self.session, _template(start_time="20:00", end_time="02:00"))
        _, created = auto_populate_week_from_templates(self.session, self.week.id)
        self.assertTrue(created[0].is_overnight)

    def test_unknown_week(self) -> None:
        with self.assertRaises(RotaNotFoundError):
            auto_populate_week_from_templates(self.session, 404)

    def test_flags_published_week_only_when_something_was_created(self) -> None:
        publish_rota_week(self.session, self.week.id)
        auto_populate_week_from_templates(self.session, self.week.id)
        self.assertFalse(self.session.get(RotaWeek, self.week.id).has_unpublished_changes)
        create_template(self.session, _template())
        auto_populate_week_from_templates(self.session, self.week.id)
        self.assertTrue(self.session.get(RotaWeek, self.week.id).has_unpublished_changes)


def test_deactivating_template_keeps_its_shifts(rota_db) -> None:
    session = rota_db["session"]
    week = get_or_create_week(session, MONDAY)
    template = create_template(session, _template())
    _, created = auto_populate_week_from_templates(session, week.id)
    deactivate_template(session, template.id)
    assert list_templates(session) == []
    assert [t.id for t in list_templates(session, active_only=False)] == [template.id]
    shift = session.get(Shift, created[0].id)
    assert shift.template_id == template.id
    assert shift.start_time == datetime.time(10, 0)


def test_editing_template_leaves_existing_shifts(rota_db) -> None:
    session = rota_db["session"]
    week = get_or_create_week(session, MONDAY)
    template = create_template(session, _template())
    _, created = auto_populate_week_from_templates(session, week.id)
    update_template(session, template.id, {"start_time": "11:00", "name": "Bar late open"})
    shift = session.get(Shift, created[0].id)
    assert shift.start_time == datetime.time(10, 0)
    assert shift.name == "Bar open"


@pytest.mark.parametrize(
    "overrides",
    [{"name": " "}, {"day_of_week": 7}, {"day_of_week": True}, {"department": "garden"}, {"unpaid_break_minutes": 400}],
)
def test_template_validation(rota_db, overrides) -> None:
    with pytest.raises(RotaValidationError):
        create_template(rota_db["session"], _template(**overrides))


def test_update_template_rejects_unknown_fields(rota_db) -> None:
    session = rota_db["session"]
    template = create_template(session, _template())
    with pytest.raises(RotaValidationError):
        update_template(session, template.id, {"is_active": False})
