from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

ERROR_VALIDATION = "validation"
ERROR_PERMISSION = "permission"
ERROR_NOT_FOUND = "not_found"
ERROR_CONFLICT = "conflict"
ERROR_BACKEND = "backend"

PERMISSION_DENIED_MESSAGE = "Permission denied"


class RotaError(Exception):
    """Base class for errors raised inside the rota engine."""

    kind = ERROR_BACKEND


class RotaValidationError(RotaError, ValueError):
    kind = ERROR_VALIDATION


class RotaNotFoundError(RotaError, LookupError):
    kind = ERROR_NOT_FOUND


class RotaPermissionError(RotaError, PermissionError):
    kind = ERROR_PERMISSION

    def __init__(self, message: str = PERMISSION_DENIED_MESSAGE) -> None:
        super().__init__(message)


class StaleShiftError(RotaError):
    """Raised when a caller edits a shift from an outdated copy."""

    kind = ERROR_CONFLICT

    def __init__(self, shift_id: int, expected: int, actual: int) -> None:
        super().__init__(
            f"Shift {shift_id} was changed by someone else (version {actual}, you had {expected}). Reload and try again."
        )
        self.shift_id = shift_id
        self.expected = expected
        self.actual = actual


@dataclass
class Advisory:
    """Non-blocking warning attached to a successful action."""

    code: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": dict(self.details)}


@dataclass
class ActionResult:
    success: bool
    data: Any = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    warnings: List[Advisory] = field(default_factory=list)

    @classmethod
    def ok(cls, data: Any = None, warnings: Optional[List[Advisory]] = None) -> "ActionResult":
        return cls(success=True, data=data, warnings=list(warnings or []))

    @classmethod
    def fail(cls, error: str, kind: str = ERROR_BACKEND) -> "ActionResult":
        return cls(success=False, error=error, error_kind=kind)

    @classmethod
    def from_error(cls, exc: Exception) -> "ActionResult":
        kind = getattr(exc, "kind", ERROR_BACKEND)
        message = str(exc) or exc.__class__.__name__
        return cls.fail(message, kind)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.success}
        if self.success:
            payload["data"] = self.data
            payload["warnings"] = [warning.to_dict() for warning in self.warnings]
        else:
            payload["error"] = self.error
            payload["error_kind"] = self.error_kind
        return payload
