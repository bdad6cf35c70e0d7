"""Lightweight FastAPI wrapper on the week manager.

The app keeps one :class:`WeekManager` in ``app.state``; every endpoint works on
the week currently selected there, the way the desktop views do.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import datetime
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

# Ensure legacy absolute imports (e.g., "import database") still resolve.
APP_DIR = Path(__file__).resolve().parent
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import database  # noqa: E402
from audit import audit_logger  # noqa: E402
from backup import backup_before_promotion  # noqa: E402
from data_exchange import (  # noqa: E402
    export_archive,
    export_staff,
    export_week_context,
    import_archive,
    import_staff,
)
from database import init_database, record_audit_log  # noqa: E402
from exporter import export_machine_report  # noqa: E402
from machines import TEAMS  # noqa: E402
from planning import PropagationMode  # noqa: E402
from store import WeekStore  # noqa: E402
from week_manager import Outcome, WeekManager  # noqa: E402


def build_manager() -> WeekManager:
    manager = WeekManager(WeekStore(), audit=audit_logger, backup=backup_before_promotion)
    manager.load()
    return manager


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_database()
    app.state.manager = build_manager()
    yield


app = FastAPI(title="BAL Production Planner API", version="0.1", lifespan=lifespan)


def get_db():
    db = database.SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_staff_db():
    db = database.StaffSessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_manager(request: Request) -> WeekManager:
    return request.app.state.manager


def _parse_date(value: Any, field: str = "date") -> datetime.date:
    try:
        return datetime.date.fromisoformat(str(value))
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{field} must be YYYY-MM-DD")


def _import_path(payload: Optional[Dict[str, Any]]) -> Path:
    raw = (payload or {}).get("path")
    if not raw:
        raise HTTPException(status_code=400, detail="path is required")
    path = Path(str(raw))
    if not path.is_file():
        raise HTTPException(status_code=404, detail=f"File not found: {path.name}")
    return path


def _file_response(path: Path) -> JSONResponse:
    return JSONResponse(content={"file": path.name, "path": str(path)})


def _require_confirm(payload: Optional[Dict[str, Any]]) -> str:
    payload = payload or {}
    if payload.get("confirm") is not True:
        raise HTTPException(status_code=400, detail="confirm must be true")
    return (payload.get("actor") or "api").strip() or "api"


def _accept(_message: str, _destructive: bool) -> bool:
    return True


def _outcome_response(outcome: Outcome, error_status: int = 400) -> JSONResponse:
    if not outcome.success:
        raise HTTPException(status_code=error_status, detail=outcome.message)
    return JSONResponse(content={"success": True, "message": outcome.message})


def _audit(db: Session, actor: str, action: str, payload: Optional[Dict[str, Any]] = None) -> None:
    record_audit_log(db, user_id=actor, action=action, target_type="Week", target_id=None, payload=payload)


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/api/v1/weeks")
def list_weeks(manager: WeekManager = Depends(get_manager)) -> JSONResponse:
    return JSONResponse(
        content=jsonable_encoder({"selected": manager.selected_week_id, "weeks": manager.week_options()})
    )


@app.post("/api/v1/weeks/select")
def select_week(payload: Dict[str, Any], manager: WeekManager = Depends(get_manager)) -> JSONResponse:
    week_id = payload.get("week_id")
    if week_id is None:
        raise HTTPException(status_code=400, detail="week_id is required")
    outcome = manager.select_week(week_id)
    return _outcome_response(outcome, error_status=404)


@app.get("/api/v1/dashboard")
def dashboard(manager: WeekManager = Depends(get_manager)) -> JSONResponse:
    return JSONResponse(content=jsonable_encoder(manager.dashboard()))


@app.get("/api/v1/staffing")
def staffing(manager: WeekManager = Depends(get_manager)) -> JSONResponse:
    return JSONResponse(content=jsonable_encoder(manager.staffing()))


@app.post("/api/v1/logs")
def save_log(payload: Dict[str, Any], manager: WeekManager = Depends(get_manager)) -> JSONResponse:
    team = payload.get("team")
    machine_id = payload.get("machine_id")
    if not team or not machine_id or not payload.get("date"):
        raise HTTPException(status_code=400, detail="date, team and machine_id are required")
    outcome = manager.save_log_entry(
        _parse_date(payload.get("date")),
        team,
        machine_id,
        payload.get("bal"),
        payload.get("hours"),
    )
    return _outcome_response(outcome)


@app.post("/api/v1/planning/propagate")
def propagate_planning(payload: Dict[str, Any], manager: WeekManager = Depends(get_manager)) -> JSONResponse:
    team = payload.get("team")
    key = payload.get("key")
    if team not in TEAMS or not key:
        raise HTTPException(status_code=400, detail="team and key are required")
    if manager.context.read_only:
        raise HTTPException(status_code=409, detail="Archived weeks are read-only.")
    selected = _parse_date(payload.get("date"))
    manager.last_error = None
    editor = manager.editor(team, selected)
    editor.select_date(selected)
    if payload.get("mode"):
        try:
            editor.set_mode(PropagationMode(str(payload["mode"]).upper()))
        except ValueError:
            raise HTTPException(status_code=400, detail="mode must be WEEK, DAY or FUTURE")
    try:
        if "name" in payload:
            updates = editor.change_name(key, str(payload.get("name") or ""), manager.staff)
        elif "is_interim" in payload:
            updates = editor.change_status(key, bool(payload["is_interim"]))
        else:
            raise HTTPException(status_code=400, detail="name or is_interim is required")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if manager.last_error:
        raise HTTPException(status_code=500, detail=manager.last_error)
    return JSONResponse(
        content=jsonable_encoder(
            {"mode": editor.mode.value, "updated": [record.to_dict() for record in updates]}
        )
    )


@app.post("/api/v1/weeks/reset")
def reset_week(
    payload: Optional[Dict[str, Any]] = None,
    db=Depends(get_db),
    manager: WeekManager = Depends(get_manager),
) -> JSONResponse:
    actor = _require_confirm(payload)
    outcome = manager.reset_week(_accept)
    if outcome.success:
        _audit(db, actor=actor, action="WEEK_RESET", payload={"week": manager.context.week_label})
    return _outcome_response(outcome)


@app.post("/api/v1/weeks/promote")
def promote_week(
    payload: Optional[Dict[str, Any]] = None,
    db=Depends(get_db),
    manager: WeekManager = Depends(get_manager),
) -> JSONResponse:
    actor = _require_confirm(payload)
    outcome = manager.promote_week(_accept)
    if outcome.success or outcome.promotion_failed:
        _audit(
            db,
            actor=actor,
            action="WEEK_PROMOTED" if outcome.success else "PROMOTION_FAILED",
            payload={"message": outcome.message},
        )
    return _outcome_response(outcome, error_status=500 if outcome.promotion_failed else 400)


@app.post("/api/v1/weeks/export")
def export_selected_week(manager: WeekManager = Depends(get_manager)) -> JSONResponse:
    return _file_response(export_week_context(manager.context))


@app.post("/api/v1/archives/{archive_id}/export")
def export_archive_file(archive_id: int, db=Depends(get_db)) -> JSONResponse:
    try:
        path = export_archive(db, archive_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return _file_response(path)


@app.post("/api/v1/archives/import")
def import_archive_file(
    payload: Optional[Dict[str, Any]] = None,
    db=Depends(get_db),
    manager: WeekManager = Depends(get_manager),
) -> JSONResponse:
    path = _import_path(payload)
    try:
        archive = import_archive(db, path)
    except (ValueError, OSError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    outcome = manager.refresh()
    if not outcome.success:
        raise HTTPException(status_code=500, detail=manager.last_error or outcome.message)
    return JSONResponse(content={"id": archive.id, "label": archive.week_label})


@app.post("/api/v1/reports/machines")
def export_machines_report(manager: WeekManager = Depends(get_manager)) -> JSONResponse:
    return _file_response(export_machine_report(manager.dashboard()))


@app.post("/api/v1/staff/export")
def export_staff_file(staff_db=Depends(get_staff_db)) -> JSONResponse:
    return _file_response(export_staff(staff_db))


@app.post("/api/v1/staff/import")
def import_staff_file(
    payload: Optional[Dict[str, Any]] = None,
    staff_db=Depends(get_staff_db),
    manager: WeekManager = Depends(get_manager),
) -> JSONResponse:
    path = _import_path(payload)
    try:
        created, updated = import_staff(staff_db, path)
    except (ValueError, OSError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    outcome = manager.refresh()
    if not outcome.success:
        raise HTTPException(status_code=500, detail=manager.last_error or outcome.message)
    return JSONResponse(content={"created": created, "updated": updated})
