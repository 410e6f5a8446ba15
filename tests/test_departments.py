from __future__ import annotations

import pytest

import departments
from departments import (
    FALLBACK_COLOUR,
    colour_for_department,
    department_names,
    load_departments,
    reset_departments_to_defaults,
    save_departments,
)


def test_baseline_when_file_missing(rota_db) -> None:
    assert department_names() == ["bar", "kitchen"]


def test_saved_list_is_cleaned(rota_db) -> None:
    save_departments([{"name": " Floor ", "colour": "#111111"}, "Bar", {"name": ""}, 7])
    assert load_departments() == [
        {"name": "floor", "label": "Floor", "colour": "#111111"},
        {"name": "bar", "label": "Bar", "colour": FALLBACK_COLOUR},
    ]
    assert colour_for_department("FLOOR") == "#111111"
    assert colour_for_department("spa") == FALLBACK_COLOUR


def test_broken_file_falls_back(rota_db) -> None:
    departments.DEPARTMENTS_FILE.write_text("{not json", encoding="utf-8")
    assert department_names() == ["bar", "kitchen"]


def test_empty_list_is_refused_and_reset_restores(rota_db) -> None:
    with pytest.raises(ValueError):
        save_departments([])
    save_departments(["cellar"])
    reset_departments_to_defaults()
    assert department_names() == ["bar", "kitchen"]
