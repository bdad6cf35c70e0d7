from __future__ import annotations

import datetime
import json
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import api  # noqa: E402
import data_exchange  # noqa: E402
import database as db  # noqa: E402
import exporter  # noqa: E402
from audit import AuditLogger  # noqa: E402
from database import insert_archive  # noqa: E402
from store import WeekStore  # noqa: E402
from week_manager import WeekManager  # noqa: E402

TODAY = datetime.date(2025, 3, 12)


def _memory_engine():
    return create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


@pytest.fixture()
def client(monkeypatch, tmp_path):
    production_engine = _memory_engine()
    staff_engine = _memory_engine()
    monkeypatch.setattr(db, "production_engine", production_engine)
    monkeypatch.setattr(db, "staff_engine", staff_engine)
    monkeypatch.setattr(db, "SessionLocal", sessionmaker(bind=production_engine, expire_on_commit=False, future=True))
    monkeypatch.setattr(db, "StaffSessionLocal", sessionmaker(bind=staff_engine, expire_on_commit=False, future=True))
    audit = AuditLogger(tmp_path / "audit.log")
    monkeypatch.setattr(api, "audit_logger", audit)
    monkeypatch.setattr(api, "backup_before_promotion", lambda: (True, "backup ok"))
    monkeypatch.setattr(data_exchange, "EXPORT_DIR", tmp_path)
    monkeypatch.setattr(exporter, "DATA_DIR", tmp_path)

    with TestClient(api.app) as test_client:
        manager = WeekManager(WeekStore(), today=TODAY, audit=audit, backup=lambda: (True, "backup ok"))
        manager.load()
        api.app.state.manager = manager
        yield test_client


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_lists_live_weeks(client):
    payload = client.get("/api/v1/weeks").json()

    assert payload["selected"] == "current"
    assert [week["label"] for week in payload["weeks"]] == [
        "S12 DU 17/03/2025 AU 23/03/2025",
        "S13 DU 24/03/2025 AU 30/03/2025",
    ]


def test_log_entry_shows_on_dashboard(client):
    response = client.post(
        "/api/v1/logs",
        json={"date": "2025-03-18", "team": "MATIN", "machine_id": "M1", "bal": "5000", "hours": "4"},
    )
    assert response.status_code == 200

    dashboard = client.get("/api/v1/dashboard").json()
    assert dashboard["week_start"] == "2025-03-17"
    assert dashboard["overview"]["total_produced_bal"] == 5000
    assert dashboard["teams"]["MATIN"]["hours"] == 4


@pytest.mark.parametrize(
    "payload, status",
    [
        ({"date": "2025-03-18", "team": "MATIN", "machine_id": "M1", "bal": "abc"}, 400),
        ({"date": "18/03/2025", "team": "MATIN", "machine_id": "M1", "bal": "1"}, 400),
        ({"team": "MATIN", "machine_id": "M1", "bal": "1"}, 400),
    ],
)
def test_invalid_log_entries(client, payload, status):
    assert client.post("/api/v1/logs", json=payload).status_code == status


def test_next_week_refuses_production(client):
    assert client.post("/api/v1/weeks/select", json={"week_id": "next"}).status_code == 200

    response = client.post(
        "/api/v1/logs",
        json={"date": "2025-03-25", "team": "MATIN", "machine_id": "M1", "bal": "10", "hours": "1"},
    )

    assert response.status_code == 400
    assert client.post("/api/v1/weeks/select", json={"week_id": "12345"}).status_code == 404


def test_propagate_name_over_the_week(client):
    response = client.post(
        "/api/v1/planning/propagate",
        json={"team": "SOIR", "key": "M1_PIMA_0", "date": "2025-03-17", "name": "Karim"},
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["mode"] == "WEEK"
    assert [record["date"] for record in payload["updated"]] == [
        "2025-03-17",
        "2025-03-18",
        "2025-03-19",
        "2025-03-20",
        "2025-03-21",
    ]
    assert payload["updated"][0]["assignments"]["M1_PIMA_0"]["name"] == "Karim"


def test_propagate_rejects_bad_input(client):
    base = {"team": "SOIR", "key": "M1_PIMA_0", "date": "2025-03-17"}

    assert client.post("/api/v1/planning/propagate", json=dict(base, mode="MONTH", name="x")).status_code == 400
    assert client.post("/api/v1/planning/propagate", json=base).status_code == 400
    assert client.post("/api/v1/planning/propagate", json=dict(base, team="NUIT", name="x")).status_code == 400


def test_staffing_view(client):
    payload = client.get("/api/v1/staffing").json()

    assert payload["headcount"]["total_need"] == 0
    assert payload["hours"]["rows"] == []


def test_reset_requires_confirmation(client):
    assert client.post("/api/v1/weeks/reset").status_code == 400
    assert client.post("/api/v1/weeks/reset", json={"confirm": "yes"}).status_code == 400

    response = client.post("/api/v1/weeks/reset", json={"confirm": True, "actor": "chef"})

    assert response.status_code == 200
    with db.SessionLocal() as session:
        actions = [(row.user_id, row.action) for row in session.scalars(select(db.AuditLog))]
    assert actions == [("chef", "WEEK_RESET")]


def test_promotion_archives_current_week(client):
    assert client.post("/api/v1/weeks/promote", json={"confirm": True}).status_code == 400

    client.post("/api/v1/weeks/select", json={"week_id": "next"})
    response = client.post("/api/v1/weeks/promote", json={"confirm": True})

    assert response.status_code == 200
    weeks = client.get("/api/v1/weeks").json()
    assert weeks["selected"] == "current"
    assert weeks["weeks"][-1]["type"] == "ARCHIVE"
    assert weeks["weeks"][-1]["label"] == "S12 DU 17/03/2025 AU 23/03/2025"
    with db.SessionLocal() as session:
        actions = [row.action for row in session.scalars(select(db.AuditLog))]
    assert actions == ["WEEK_PROMOTED"]


def test_promotion_failure_is_a_server_error(client):
    manager = api.app.state.manager
    manager.backup = lambda: (False, "disk full")
    manager.select_week("next")

    response = client.post("/api/v1/weeks/promote", json={"confirm": True})

    assert response.status_code == 500
    assert "disk full" in response.json()["detail"]
    with db.SessionLocal() as session:
        actions = [row.action for row in session.scalars(select(db.AuditLog))]
    assert actions == ["PROMOTION_FAILED"]


def test_archive_export_and_import(client, tmp_path):
    with db.SessionLocal() as session:
        archive = insert_archive(session, "S10 DU 03/03/2025 AU 09/03/2025", datetime.date(2025, 3, 3), {"logs": []})

    assert client.post("/api/v1/archives/999/export").status_code == 404
    exported = client.post(f"/api/v1/archives/{archive.id}/export")
    assert exported.status_code == 200
    path = Path(exported.json()["path"])
    assert path.parent == tmp_path
    assert json.loads(path.read_text(encoding="utf-8"))["week_label"] == "S10 DU 03/03/2025 AU 09/03/2025"

    imported = client.post("/api/v1/archives/import", json={"path": str(path)})

    assert imported.status_code == 200
    labels = [week["label"] for week in client.get("/api/v1/weeks").json()["weeks"] if week["type"] == "ARCHIVE"]
    assert labels == ["S10 DU 03/03/2025 AU 09/03/2025"] * 2
    assert client.post("/api/v1/weeks/select", json={"week_id": imported.json()["id"]}).status_code == 200


def test_archive_import_rejects_bad_files(client, tmp_path):
    broken = tmp_path / "broken.json"
    broken.write_text(json.dumps({"week_label": "S10"}), encoding="utf-8")

    assert client.post("/api/v1/archives/import", json={}).status_code == 400
    assert client.post("/api/v1/archives/import", json={"path": str(tmp_path / "absent.json")}).status_code == 404
    assert client.post("/api/v1/archives/import", json={"path": str(broken)}).status_code == 400
    assert all(week["type"] != "ARCHIVE" for week in client.get("/api/v1/weeks").json()["weeks"])


def test_selected_week_export(client):
    response = client.post("/api/v1/weeks/export")

    assert response.status_code == 200
    payload = json.loads(Path(response.json()["path"]).read_text(encoding="utf-8"))
    assert payload["start_date"] == "2025-03-17"
    assert set(payload["data"]) == {"logs", "planning", "machine_configs", "global_forecasts"}


def test_machine_report_download(client, tmp_path):
    client.post(
        "/api/v1/logs",
        json={"date": "2025-03-18", "team": "MATIN", "machine_id": "M1", "bal": "5000", "hours": "4"},
    )

    response = client.post("/api/v1/reports/machines")

    assert response.status_code == 200
    path = Path(response.json()["path"])
    assert path.parent == tmp_path
    assert path.suffix == ".csv"
    assert path.read_text(encoding="utf-8").splitlines()[0] == "S12 DU 17/03/2025 AU 23/03/2025"


def test_staff_export_and_import_refreshes_roster(client, tmp_path):
    roster = tmp_path / "roster.json"
    roster.write_text(
        json.dumps({"staff": [{"id": "s1", "name": "Karim", "default_role": "PIMA"}, {"name": "Nadia", "is_interim": True}]}),
        encoding="utf-8",
    )

    response = client.post("/api/v1/staff/import", json={"path": str(roster)})

    assert response.status_code == 200
    assert response.json() == {"created": 2, "updated": 0}
    assert sorted(member.name for member in api.app.state.manager.staff) == ["Karim", "Nadia"]

    exported = client.post("/api/v1/staff/export")
    assert exported.status_code == 200
    names = [entry["name"] for entry in json.loads(Path(exported.json()["path"]).read_text(encoding="utf-8"))["staff"]]
    assert names == ["Karim", "Nadia"]
