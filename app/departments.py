from __future__ import annotations

import json
from typing import Any, Dict, List

from database import DATA_DIR


DEPARTMENTS_FILE = DATA_DIR / "departments.json"

BASELINE_DEPARTMENTS: List[Dict[str, str]] = [
    {"name": "bar", "label": "Bar", "colour": "#3b82f6"},
    {"name": "kitchen", "label": "Kitchen", "colour": "#f97316"},
]
FALLBACK_COLOUR = "#9ca3af"


def normalize_department(name: str) -> str:
    return (name or "").strip().lower()


def baseline_departments() -> List[Dict[str, str]]:
    return [dict(entry) for entry in BASELINE_DEPARTMENTS]


def _clean_entry(entry: Any) -> Dict[str, str] | None:
    if isinstance(entry, str):
        entry = {"name": entry}
    if not isinstance(entry, dict):
        return None
    name = normalize_department(entry.get("name", ""))
    if not name:
        return None
    label = str(entry.get("label") or name.title())
    colour = str(entry.get("colour") or FALLBACK_COLOUR)
    return {"name": name, "label": label, "colour": colour}


def load_departments() -> List[Dict[str, str]]:
    """Configured departments, falling back to the baseline list when the file is missing or broken."""
    if not DEPARTMENTS_FILE.exists():
        return baseline_departments()
    try:
        data = json.loads(DEPARTMENTS_FILE.read_text(encoding="utf-8"))
        if not isinstance(data, list):
            raise ValueError
    except Exception:  # noqa: BLE001
        return baseline_departments()
    departments: List[Dict[str, str]] = []
    seen = set()
    for raw in data:
        entry = _clean_entry(raw)
        if not entry or entry["name"] in seen:
            continue
        seen.add(entry["name"])
        departments.append(entry)
    return departments or baseline_departments()


def save_departments(entries: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    cleaned = [entry for entry in (_clean_entry(raw) for raw in entries) if entry]
    if not cleaned:
        raise ValueError("At least one department is required.")
    DEPARTMENTS_FILE.write_text(json.dumps(cleaned, indent=2), encoding="utf-8")
    return cleaned


def department_names() -> List[str]:
    return [entry["name"] for entry in load_departments()]


def colour_for_department(name: str) -> str:
    target = normalize_department(name)
    for entry in load_departments():
        if entry["name"] == target:
            return entry["colour"]
    return FALLBACK_COLOUR


def reset_departments_to_defaults() -> None:
    save_departments(baseline_departments())
