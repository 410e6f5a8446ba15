from __future__ import annotations

import datetime
from dataclasses import dataclass
from typing import Optional, Union

CELL_PREFIX = "cell"
OPEN_ROW_TOKEN = "open"
EMPLOYEE_TOKEN_PREFIX = "emp-"


@dataclass(frozen=True)
class Unassigned:
    """An open shift: nobody is assigned and anyone may claim it."""

    @property
    def employee_id(self) -> None:
        return None

    def row_token(self) -> str:
        return OPEN_ROW_TOKEN


@dataclass(frozen=True)
class AssignedTo:
    employee_id: int

    def row_token(self) -> str:
        return f"{EMPLOYEE_TOKEN_PREFIX}{self.employee_id}"


Assignment = Union[Unassigned, AssignedTo]
OPEN = Unassigned()


def assignment_for(employee_id: Optional[int]) -> Assignment:
    """Map a nullable employee column onto an ``Assignment``."""
    if employee_id is None:
        return OPEN
    return AssignedTo(int(employee_id))


def coerce_assignment(value) -> Assignment:
    if isinstance(value, (Unassigned, AssignedTo)):
        return value
    if value is None:
        return OPEN
    if isinstance(value, bool):
        raise ValueError("Employee id must be an integer.")
    try:
        return AssignedTo(int(value))
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Unrecognised employee id {value!r}.") from exc


def is_open(assignment: Assignment) -> bool:
    return isinstance(assignment, Unassigned)


@dataclass(frozen=True)
class CellRef:
    """Identity of one grid cell: a row (employee or the open row) and a date."""

    assignment: Assignment
    date: datetime.date

    def encode(self) -> str:
        return f"{CELL_PREFIX}:{self.assignment.row_token()}:{self.date.isoformat()}"


def decode_cell(cell_id: Optional[str]) -> Optional[CellRef]:
    """Parse ``cell:<row>:<YYYY-MM-DD>``; anything else is not a droppable cell."""
    if not cell_id or not isinstance(cell_id, str):
        return None
    parts = cell_id.split(":")
    if len(parts) != 3 or parts[0] != CELL_PREFIX:
        return None
    row, date_text = parts[1], parts[2]
    try:
        date_value = datetime.date.fromisoformat(date_text)
    except ValueError:
        return None
    if row == OPEN_ROW_TOKEN:
        return CellRef(OPEN, date_value)
    if not row.startswith(EMPLOYEE_TOKEN_PREFIX):
        return None
    try:
        employee_id = int(row[len(EMPLOYEE_TOKEN_PREFIX):])
    except ValueError:
        return None
    return CellRef(AssignedTo(employee_id), date_value)
