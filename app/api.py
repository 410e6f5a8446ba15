"""HTTP surface for the rota engine.

Every rota endpoint returns the action result envelope
(``success``/``data``/``warnings`` or ``success``/``error``/``error_kind``);
the HTTP status mirrors the error kind. The caller is identified by the
``X-Rota-User`` header and authorised through the role file.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import datetime
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, Response

# Ensure flat imports (e.g., "import database") resolve when served by uvicorn.
APP_DIR = Path(__file__).resolve().parent
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from actions import AsyncRotaClient, RotaActions  # noqa: E402
from calendar_feed import employee_feed, feed_token, verify_feed_token  # noqa: E402
from collaborators import BudgetRegistry, EmployeeDirectory, LeaveRegistry  # noqa: E402
from database import DirectorySessionLocal, SessionLocal, init_database  # noqa: E402
from permissions import Capability, RolePermissions  # noqa: E402
from results import (  # noqa: E402
    ERROR_BACKEND,
    ERROR_CONFLICT,
    ERROR_NOT_FOUND,
    ERROR_PERMISSION,
    ERROR_VALIDATION,
    ActionResult,
)

STATUS_BY_KIND = {
    ERROR_VALIDATION: 400,
    ERROR_PERMISSION: 403,
    ERROR_NOT_FOUND: 404,
    ERROR_CONFLICT: 409,
    ERROR_BACKEND: 500,
}


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_database()
    yield


app = FastAPI(title="Rota API", version="0.1", lifespan=lifespan)


def get_session_factory():
    return SessionLocal


def get_directory_session_factory():
    return DirectorySessionLocal


def get_permissions() -> RolePermissions:
    return RolePermissions()


def get_db(session_factory=Depends(get_session_factory)):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


def get_current_user(x_rota_user: Optional[str] = Header(None)) -> str:
    user = (x_rota_user or "").strip()
    if not user:
        raise HTTPException(status_code=401, detail="X-Rota-User header is required")
    return user


def get_actions(
    user: str = Depends(get_current_user),
    session_factory=Depends(get_session_factory),
    directory_session_factory=Depends(get_directory_session_factory),
    permissions: RolePermissions = Depends(get_permissions),
) -> RotaActions:
    return RotaActions(
        user,
        session_factory=session_factory,
        permissions=permissions,
        directory=EmployeeDirectory(directory_session_factory),
        leave_registry=LeaveRegistry(directory_session_factory),
        budget_registry=BudgetRegistry(directory_session_factory),
    )


def _parse_date(value: Optional[str], label: str = "weekStart") -> datetime.date:
    try:
        return datetime.date.fromisoformat(value or "")
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{label} must be YYYY-MM-DD")


def _respond(result: ActionResult, success_status: int = 200) -> JSONResponse:
    status = success_status if result.success else STATUS_BY_KIND.get(result.error_kind, 500)
    return JSONResponse(status_code=status, content=jsonable_encoder(result.to_dict()))


def _expected_version(payload: Dict[str, Any]) -> Optional[int]:
    value = payload.get("expected_version")
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="expected_version must be an integer")


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


# -- weeks -----------------------------------------------------------------


@app.get("/api/v1/weeks/{week_start}")
def get_week(week_start: str, actions: RotaActions = Depends(get_actions)) -> JSONResponse:
    return _respond(actions.get_or_create_week(_parse_date(week_start)))


@app.get("/api/v1/weeks/{week_start}/shifts")
def week_shifts(week_start: str, actions: RotaActions = Depends(get_actions)) -> JSONResponse:
    return _respond(actions.list_week_shifts(_parse_date(week_start)))


@app.get("/api/v1/weeks/{week_start}/view")
async def week_view(week_start: str, actions: RotaActions = Depends(get_actions)) -> JSONResponse:
    result = await AsyncRotaClient(actions).load_week(_parse_date(week_start))
    if result.success:
        result.data = result.data.to_dict()
    return _respond(result)


@app.post("/api/v1/weeks/{week_id}/auto-populate")
def auto_populate(
    week_id: int,
    payload: Optional[Dict[str, Any]] = None,
    actions: RotaActions = Depends(get_actions),
) -> JSONResponse:
    raw_days = (payload or {}).get("days")
    days = [_parse_date(str(value), "days") for value in raw_days] if raw_days else None
    return _respond(actions.auto_populate_week(week_id, days))


@app.post("/api/v1/weeks/{week_id}/publish")
def publish_week(week_id: int, actions: RotaActions = Depends(get_actions)) -> JSONResponse:
    return _respond(actions.publish_week(week_id))


# -- shifts ----------------------------------------------------------------


@app.post("/api/v1/shifts")
def create_shift(payload: Dict[str, Any], actions: RotaActions = Depends(get_actions)) -> JSONResponse:
    return _respond(actions.create_shift(payload), success_status=201)


@app.patch("/api/v1/shifts/{shift_id}")
def update_shift(shift_id: int, payload: Dict[str, Any], actions: RotaActions = Depends(get_actions)) -> JSONResponse:
    patch = {key: value for key, value in payload.items() if key != "expected_version"}
    return _respond(actions.update_shift(shift_id, patch, expected_version=_expected_version(payload)))


@app.post("/api/v1/shifts/{shift_id}/move")
def move_shift(shift_id: int, payload: Dict[str, Any], actions: RotaActions = Depends(get_actions)) -> JSONResponse:
    return _respond(
        actions.move_shift(
            shift_id,
            payload.get("employee_id"),
            payload.get("shift_date"),
            expected_version=_expected_version(payload),
        )
    )


@app.post("/api/v1/shifts/{shift_id}/reassign")
def reassign_shift(shift_id: int, payload: Dict[str, Any], actions: RotaActions = Depends(get_actions)) -> JSONResponse:
    return _respond(
        actions.reassign_shift(
            shift_id,
            payload.get("employee_id"),
            reason=payload.get("reason"),
            expected_version=_expected_version(payload),
        )
    )


@app.post("/api/v1/shifts/{shift_id}/sick")
def mark_sick(
    shift_id: int,
    payload: Optional[Dict[str, Any]] = None,
    actions: RotaActions = Depends(get_actions),
) -> JSONResponse:
    return _respond(actions.mark_shift_sick(shift_id, expected_version=_expected_version(payload or {})))


@app.post("/api/v1/shifts/{shift_id}/cancel")
def cancel_shift(
    shift_id: int,
    payload: Optional[Dict[str, Any]] = None,
    actions: RotaActions = Depends(get_actions),
) -> JSONResponse:
    return _respond(actions.cancel_shift(shift_id, expected_version=_expected_version(payload or {})))


@app.delete("/api/v1/shifts/{shift_id}")
def delete_shift(shift_id: int, actions: RotaActions = Depends(get_actions)) -> JSONResponse:
    return _respond(actions.delete_shift(shift_id))


# -- templates -------------------------------------------------------------


@app.get("/api/v1/templates")
def list_templates(
    include_inactive: bool = Query(False),
    actions: RotaActions = Depends(get_actions),
) -> JSONResponse:
    return _respond(actions.list_templates(active_only=not include_inactive))


@app.post("/api/v1/templates")
def create_template(payload: Dict[str, Any], actions: RotaActions = Depends(get_actions)) -> JSONResponse:
    return _respond(actions.create_template(payload), success_status=201)


@app.patch("/api/v1/templates/{template_id}")
def update_template(template_id: int, payload: Dict[str, Any], actions: RotaActions = Depends(get_actions)) -> JSONResponse:
    return _respond(actions.update_template(template_id, payload))


@app.post("/api/v1/templates/{template_id}/deactivate")
def deactivate_template(template_id: int, actions: RotaActions = Depends(get_actions)) -> JSONResponse:
    return _respond(actions.deactivate_template(template_id))


# -- timeclock -------------------------------------------------------------


@app.post("/api/v1/timeclock/clock-in")
def timeclock_clock_in(payload: Dict[str, Any], actions: RotaActions = Depends(get_actions)) -> JSONResponse:
    return _respond(actions.clock_in(payload.get("employee_id"), at=payload.get("at")), success_status=201)


@app.post("/api/v1/timeclock/clock-out")
def timeclock_clock_out(payload: Dict[str, Any], actions: RotaActions = Depends(get_actions)) -> JSONResponse:
    return _respond(actions.clock_out(payload.get("employee_id"), at=payload.get("at")))


@app.get("/api/v1/timeclock/open")
def timeclock_open(actions: RotaActions = Depends(get_actions)) -> JSONResponse:
    return _respond(actions.open_timeclock_sessions())


@app.post("/api/v1/timeclock/sessions")
def timeclock_record(payload: Dict[str, Any], actions: RotaActions = Depends(get_actions)) -> JSONResponse:
    return _respond(actions.record_timeclock_session(payload), success_status=201)


@app.patch("/api/v1/timeclock/sessions/{session_id}")
def timeclock_update(session_id: int, payload: Dict[str, Any], actions: RotaActions = Depends(get_actions)) -> JSONResponse:
    return _respond(actions.update_timeclock_session(session_id, payload))


@app.post("/api/v1/timeclock/sessions/{session_id}/approve")
def timeclock_approve(session_id: int, actions: RotaActions = Depends(get_actions)) -> JSONResponse:
    return _respond(actions.approve_timeclock_session(session_id))


@app.delete("/api/v1/timeclock/sessions/{session_id}")
def timeclock_delete(session_id: int, actions: RotaActions = Depends(get_actions)) -> JSONResponse:
    return _respond(actions.delete_timeclock_session(session_id))


@app.get("/api/v1/weeks/{week_start}/timeclock")
def week_timeclock(week_start: str, actions: RotaActions = Depends(get_actions)) -> JSONResponse:
    return _respond(actions.week_timeclock_sessions(_parse_date(week_start)))


@app.get("/api/v1/weeks/{week_start}/reconciliation")
def week_reconciliation(week_start: str, actions: RotaActions = Depends(get_actions)) -> JSONResponse:
    return _respond(actions.reconcile_week(_parse_date(week_start)))


# -- staff portal ----------------------------------------------------------


@app.get("/api/v1/portal/employees/{employee_id}/shifts")
def portal_employee_shifts(
    employee_id: int,
    from_date: str = Query(..., alias="from"),
    to_date: str = Query(..., alias="to"),
    actions: RotaActions = Depends(get_actions),
) -> JSONResponse:
    return _respond(
        actions.employee_published_shifts(employee_id, _parse_date(from_date, "from"), _parse_date(to_date, "to"))
    )


@app.get("/api/v1/portal/open-shifts")
def portal_open_shifts(
    from_date: str = Query(..., alias="from"),
    to_date: str = Query(..., alias="to"),
    actions: RotaActions = Depends(get_actions),
) -> JSONResponse:
    return _respond(actions.open_published_shifts(_parse_date(from_date, "from"), _parse_date(to_date, "to")))


# -- calendar feed ---------------------------------------------------------


@app.get("/api/v1/feeds/{employee_id}/link")
def feed_link(employee_id: int, actions: RotaActions = Depends(get_actions)) -> JSONResponse:
    if not actions.allowed(Capability.EDIT_ROTA):
        with actions.session_factory() as session:
            return _respond(actions.deny(session, "feed_link"))
    token = feed_token(employee_id)
    data = {"employee_id": employee_id, "token": token, "path": f"/api/v1/feeds/{employee_id}.ics?token={token}"}
    return _respond(ActionResult.ok(data))


@app.get("/api/v1/feeds/{employee_id}.ics")
def calendar_feed(
    employee_id: int,
    token: str = Query(""),
    db=Depends(get_db),
    directory_session_factory=Depends(get_directory_session_factory),
) -> Response:
    if not verify_feed_token(employee_id, token):
        raise HTTPException(status_code=403, detail="Invalid feed token")
    matches = EmployeeDirectory(directory_session_factory).get_employees([employee_id])
    name = matches[0]["name"] if matches else None
    body = employee_feed(db, employee_id, employee_name=name)
    return Response(content=body, media_type="text/calendar; charset=utf-8")
