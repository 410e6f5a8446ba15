from __future__ import annotations

import datetime
import sys
from pathlib import Path

import pytest

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from assignment import OPEN, AssignedTo, CellRef, Unassigned, assignment_for, coerce_assignment, decode_cell  # noqa: E402


def test_null_employee_is_open() -> None:
    assert assignment_for(None) is OPEN
    assert isinstance(coerce_assignment(None), Unassigned)
    assert OPEN.employee_id is None


def test_employee_ids_become_assigned() -> None:
    assert coerce_assignment(7) == AssignedTo(7)
    assert coerce_assignment("7") == AssignedTo(7)
    assert coerce_assignment(AssignedTo(3)) == AssignedTo(3)


@pytest.mark.parametrize("value", [True, "abc", 1.5j])
def test_rejects_non_ids(value) -> None:
    with pytest.raises(ValueError):
        coerce_assignment(value)


def test_cell_ids_round_trip() -> None:
    day = datetime.date(2024, 6, 5)
    for cell in (CellRef(OPEN, day), CellRef(AssignedTo(12), day)):
        assert decode_cell(cell.encode()) == cell
    assert CellRef(OPEN, day).encode() == "cell:open:2024-06-05"
    assert CellRef(AssignedTo(12), day).encode() == "cell:emp-12:2024-06-05"


def test_open_row_cannot_collide_with_an_employee() -> None:
    day = datetime.date(2024, 6, 5)
    assert CellRef(OPEN, day).encode() != CellRef(AssignedTo(0), day).encode()


@pytest.mark.parametrize(
    "cell_id",
    [None, "", "cell:open", "row:open:2024-06-05", "cell:emp-x:2024-06-05", "cell:bob:2024-06-05", "cell:open:2024-13-01"],
)
def test_malformed_cells_are_not_targets(cell_id) -> None:
    assert decode_cell(cell_id) is None
