from __future__ import annotations

import datetime
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import database as db  # noqa: E402
from machines import TEAM_MATIN, TEAM_SOIR, AssignmentKey  # noqa: E402
from store import PersistenceError, WeekStore  # noqa: E402
from week_state import (  # noqa: E402
    ContextKind,
    GlobalForecasts,
    MachineConfig,
    PlanningAssignment,
    ProductionLog,
    StaffAssignment,
    WeeklyArchive,
)

MONDAY = datetime.date(2025, 3, 17)


def _memory_engine():
    return create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


@pytest.fixture()
def memory_db(monkeypatch):
    production_engine = _memory_engine()
    staff_engine = _memory_engine()
    Session = sessionmaker(bind=production_engine, expire_on_commit=False, future=True)
    StaffSession = sessionmaker(bind=staff_engine, expire_on_commit=False, future=True)
    monkeypatch.setattr(db, "production_engine", production_engine)
    monkeypatch.setattr(db, "staff_engine", staff_engine)
    monkeypatch.setattr(db, "SessionLocal", Session)
    monkeypatch.setattr(db, "StaffSessionLocal", StaffSession)
    db.init_database()
    return Session


def test_init_seeds_both_weeks_once(memory_db):
    with memory_db() as session:
        assert db.seed_defaults(session) == 0
        ids = [row.id for row in session.scalars(select(db.MachineSetting))]
        forecasts = session.scalars(select(db.ForecastRecord)).all()

    assert len(ids) == 14
    assert "PAC_NEXT" in ids
    assert sorted(row.id for row in forecasts) == [1, 2]


def test_contexts_read_their_own_configs(memory_db):
    store = WeekStore()
    store.save_machine_configs({"M1": MachineConfig("M1", active=True, target_bal=1000)})
    store.save_machine_configs({"M1": MachineConfig("M1", active=True, target_bal=3000)}, "_NEXT")
    store.save_forecasts(2, GlobalForecasts(total_volume=80))
    store.insert_log(ProductionLog("a", MONDAY, "M1", TEAM_SOIR, 400, 0, 1.0))

    current = store.load_context(ContextKind.CURRENT)
    preparation = store.load_context(ContextKind.PREPARATION)

    assert current.configs["M1"].target_bal == 1000
    assert preparation.configs["M1"].target_bal == 3000
    assert list(preparation.configs) == ["M1", "M2", "M3", "M4", "M5", "M6", "PAC"]
    assert current.forecasts.total_volume == 0
    assert preparation.forecasts.total_volume == 80
    assert [log.id for log in current.logs] == ["a"]
    assert preparation.logs == ()
    with pytest.raises(ValueError):
        store.load_context(ContextKind.ARCHIVE)


def test_log_update_and_delete(memory_db):
    store = WeekStore()
    log = ProductionLog("a", MONDAY, "M2", TEAM_SOIR, 100, 0, 1.0)
    store.insert_log(log)
    store.insert_log(ProductionLog("b", MONDAY, "M1", TEAM_SOIR, 50, 0, 0.5))

    store.update_log(ProductionLog("a", MONDAY, "M2", TEAM_SOIR, 900, 3, 2.5))
    store.delete_log("b")

    logs = store.load_context(ContextKind.CURRENT).logs
    assert logs == (ProductionLog("a", MONDAY, "M2", TEAM_SOIR, 900, 3, 2.5),)
    assert store.delete_all_logs() == 1


def test_planning_upsert_keeps_one_row_per_day_and_team(memory_db):
    store = WeekStore()
    key = AssignmentKey("M1", "PIMA", 0)
    first = PlanningAssignment(MONDAY, TEAM_SOIR, {key: StaffAssignment("Karim")})
    second = PlanningAssignment(MONDAY, TEAM_SOIR, {key: StaffAssignment("Julien", True, 6.0)})
    other_team = PlanningAssignment(MONDAY, TEAM_MATIN, {key: StaffAssignment("Nadia")})

    assert store.upsert_planning([first, other_team]) == 2
    store.upsert_planning([second])

    planning = store.load_context(ContextKind.CURRENT).planning
    assert len(planning) == 2
    soir = next(record for record in planning if record.team == TEAM_SOIR)
    assert soir.get(key) == StaffAssignment("Julien", True, 6.0)


def test_legacy_string_assignments_are_read(memory_db):
    with memory_db() as session:
        db.upsert_planning(session, MONDAY, TEAM_SOIR, {"M1_PIMA_0": "Karim", "broken": "x"})

    record = WeekStore().load_context(ContextKind.CURRENT).planning[0]

    assert record.get("M1_PIMA_0") == StaffAssignment("Karim", False)
    assert len(record.assignments) == 1


def test_archive_insert_and_load(memory_db):
    store = WeekStore()
    archive = WeeklyArchive(
        id=None,
        week_label="S12 DU 17/03/2025 AU 23/03/2025",
        start_date=MONDAY,
        created_at=datetime.datetime(2025, 3, 22, 18, 0),
        data={"logs": [], "planning": [], "machine_configs": {}, "global_forecasts": {}},
    )

    stored = store.insert_archive(archive)

    assert stored.id is not None
    assert store.load_archive(stored.id).week_label == archive.week_label
    assert store.load_archive(stored.id + 1) is None
    assert [item.id for item in store.list_archives()] == [stored.id]


def test_driver_errors_become_persistence_errors(memory_db):
    db.Base.metadata.drop_all(db.production_engine)
    store = WeekStore()

    with pytest.raises(PersistenceError):
        store.list_archives()
    with pytest.raises(PersistenceError):
        store.insert_log(ProductionLog("a", MONDAY, "M1", TEAM_SOIR))
