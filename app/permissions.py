from __future__ import annotations

import json
from enum import Enum
from typing import Dict, Mapping, Optional, Set

from database import DATA_DIR


USERS_FILE = DATA_DIR / "rota_users.json"


class Capability(str, Enum):
    VIEW_ROTA = "rota:view"
    EDIT_ROTA = "rota:edit"
    PUBLISH_ROTA = "rota:publish"
    CLOCK = "timeclock:clock"
    VIEW_TIMECLOCK = "timeclock:view"
    MANAGE_TIMECLOCK = "timeclock:edit"


ROLE_CAPABILITIES: Dict[str, Set[Capability]] = {
    "super_admin": set(Capability),
    "manager": set(Capability),
    "supervisor": {Capability.VIEW_ROTA, Capability.EDIT_ROTA, Capability.CLOCK, Capability.VIEW_TIMECLOCK},
    "staff": {Capability.VIEW_ROTA, Capability.CLOCK},
}

BASELINE_USERS: Dict[str, str] = {"admin": "super_admin"}


def normalize_role(role: str) -> str:
    return (role or "").strip().lower()


def load_user_roles() -> Dict[str, str]:
    """User id to role, read from ``rota_users.json`` with the baseline admin merged in."""
    users = dict(BASELINE_USERS)
    if not USERS_FILE.exists():
        return users
    try:
        data = json.loads(USERS_FILE.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError
    except Exception:  # noqa: BLE001
        return users
    for user_id, role in data.items():
        if isinstance(user_id, str) and isinstance(role, str) and user_id.strip():
            users[user_id.strip()] = normalize_role(role)
    return users


def save_user_roles(mapping: Mapping[str, str]) -> Dict[str, str]:
    cleaned = {}
    for user_id, role in mapping.items():
        role = normalize_role(role)
        if role not in ROLE_CAPABILITIES:
            raise ValueError(f"Unknown role '{role}'.")
        cleaned[str(user_id).strip()] = role
    USERS_FILE.write_text(json.dumps(cleaned, indent=2, sort_keys=True), encoding="utf-8")
    return cleaned


class RolePermissions:
    """Permission collaborator answering capability questions for a user id.

    Unknown users and unknown roles get no capabilities at all.
    """

    def __init__(self, user_roles: Optional[Mapping[str, str]] = None) -> None:
        self._user_roles = dict(user_roles) if user_roles is not None else None

    def role_for(self, user_id: Optional[str]) -> Optional[str]:
        if not user_id:
            return None
        roles = self._user_roles if self._user_roles is not None else load_user_roles()
        role = roles.get(user_id)
        return normalize_role(role) if role else None

    def capabilities(self, user_id: Optional[str]) -> Set[Capability]:
        return set(ROLE_CAPABILITIES.get(self.role_for(user_id) or "", set()))

    def has(self, user_id: Optional[str], capability: Capability) -> bool:
        return capability in self.capabilities(user_id)

    def can_view_rota(self, user_id: Optional[str]) -> bool:
        return self.has(user_id, Capability.VIEW_ROTA)

    def can_edit_rota(self, user_id: Optional[str]) -> bool:
        return self.has(user_id, Capability.EDIT_ROTA)

    def can_publish_rota(self, user_id: Optional[str]) -> bool:
        return self.has(user_id, Capability.PUBLISH_ROTA)

    def can_manage_timeclock(self, user_id: Optional[str]) -> bool:
        return self.has(user_id, Capability.MANAGE_TIMECLOCK)
