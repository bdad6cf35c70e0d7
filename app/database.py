from __future__ import annotations

import datetime
import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    select,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from machines import CONTEXT_SUFFIX_NEXT, MACHINE_IDS
from plant_defaults import (
    CURRENT_FORECAST_ID,
    DEFAULT_WEEKLY_HOURS,
    PREPARATION_FORECAST_ID,
    build_default_forecasts,
    build_default_machine_configs,
)


DATA_DIR = Path(os.environ.get("BAL_PLANNER_DATA_DIR") or Path(__file__).resolve().parent / "data")
DATA_DIR.mkdir(parents=True, exist_ok=True)
PRODUCTION_DATABASE_URL = f"sqlite:///{(DATA_DIR / 'production.db').as_posix()}"
STAFF_DATABASE_URL = f"sqlite:///{(DATA_DIR / 'staff.db').as_posix()}"
DATABASE_FILES = ["production.db", "staff.db"]


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class StaffBase(DeclarativeBase):
    """Standalone metadata for the roster living in staff.db."""

    pass


class Base(DeclarativeBase):
    """Metadata for production/planning tables living in production.db."""

    pass


class StaffRecord(StaffBase):
    __tablename__ = "staff"

    id: Mapped[str] = mapped_column(String(40), primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    default_role: Mapped[str | None] = mapped_column(String(20), nullable=True)
    is_interim: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    weekly_hours: Mapped[float] = mapped_column(Float, nullable=False, default=DEFAULT_WEEKLY_HOURS)
    assigned_team: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_absent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_secouriste: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_guide_file: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_serre_file: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class MachineSetting(Base):
    """One machine's weekly targets; ids carry ``_NEXT`` for the preparation week."""

    __tablename__ = "machine_configs"

    id: Mapped[str] = mapped_column(String(16), primary_key=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    target_bal: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    target_volume: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    target_cadence: Mapped[float] = mapped_column(Float, nullable=False, default=0)


class ProductionEntry(Base):
    __tablename__ = "production_logs"

    id: Mapped[str] = mapped_column(String(40), primary_key=True)
    date: Mapped[datetime.date] = mapped_column(Date, nullable=False, index=True)
    machine_id: Mapped[str] = mapped_column(String(16), nullable=False)
    team: Mapped[str] = mapped_column(String(8), nullable=False)
    bal_produced: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    docs_produced: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    hours: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class PlanningDay(Base):
    __tablename__ = "planning"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    team: Mapped[str] = mapped_column(String(8), nullable=False)
    assignmentsJSON: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (UniqueConstraint("date", "team", name="uq_planning_date_team"),)

    def assignments_dict(self) -> Dict[str, Any]:
        try:
            payload = json.loads(self.assignmentsJSON or "{}")
        except json.JSONDecodeError:
            return {}
        return payload if isinstance(payload, dict) else {}


class ForecastRecord(Base):
    __tablename__ = "global_forecasts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    total_volume: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    total_weight: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    predicted_bal: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    max_docs_per_handful: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    max_weight_per_handful: Mapped[float] = mapped_column(Float, nullable=False, default=0)


class ArchiveRecord(Base):
    __tablename__ = "weekly_archives"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    week_label: Mapped[str] = mapped_column(String(60), nullable=False)
    start_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    dataJSON: Mapped[str] = mapped_column(Text, nullable=False, default="{}")

    def data_dict(self) -> Dict[str, Any]:
        try:
            payload = json.loads(self.dataJSON or "{}")
        except json.JSONDecodeError:
            return {}
        return payload if isinstance(payload, dict) else {}


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(60), nullable=False)
    action: Mapped[str] = mapped_column(String(60), nullable=False)
    target_type: Mapped[str] = mapped_column(String(32), nullable=False, default="Week")
    target_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payloadJSON: Mapped[str] = mapped_column(String(2000), nullable=False, default="{}")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


production_engine = create_engine(
    PRODUCTION_DATABASE_URL,
    echo=False,
    future=True,
)
staff_engine = create_engine(
    STAFF_DATABASE_URL,
    echo=False,
    future=True,
)
SessionLocal = sessionmaker(bind=production_engine, expire_on_commit=False, future=True)
StaffSessionLocal = sessionmaker(bind=staff_engine, expire_on_commit=False, future=True)


def init_database() -> None:
    StaffBase.metadata.create_all(staff_engine)
    Base.metadata.create_all(production_engine)
    with SessionLocal() as session:
        seed_defaults(session)


def seed_defaults(session) -> int:
    """Create the missing machine and forecast rows for both week contexts."""
    created = 0
    defaults = build_default_machine_configs()
    for suffix in ("", CONTEXT_SUFFIX_NEXT):
        for machine_id in MACHINE_IDS:
            config_id = f"{machine_id}{suffix}"
            if session.get(MachineSetting, config_id) is None:
                session.add(MachineSetting(id=config_id, **defaults[machine_id]))
                created += 1
    for forecast_id in (CURRENT_FORECAST_ID, PREPARATION_FORECAST_ID):
        if session.get(ForecastRecord, forecast_id) is None:
            session.add(ForecastRecord(id=forecast_id, **build_default_forecasts()))
            created += 1
    session.commit()
    return created


def _coerce_staff_session(session):
    """Return (staff_session, should_close) ensuring we talk to the staff database."""
    if session is None:
        return StaffSessionLocal(), True
    bind = getattr(session, "bind", None)
    if bind is production_engine:
        return StaffSessionLocal(), True
    return session, False


# ---------------------------------------------------------------------------
# Machine configs and forecasts


def list_machine_configs(session, suffix: str = "") -> List[MachineSetting]:
    rows = session.scalars(select(MachineSetting).order_by(MachineSetting.id)).all()
    if suffix:
        return [row for row in rows if row.id.endswith(suffix)]
    return [row for row in rows if not row.id.endswith(CONTEXT_SUFFIX_NEXT)]


def upsert_machine_config(session, config_id: str, values: Dict[str, Any], *, commit: bool = True) -> MachineSetting:
    row = session.get(MachineSetting, config_id)
    if row is None:
        row = MachineSetting(id=config_id)
        session.add(row)
    for name in ("active", "target_bal", "target_volume", "target_cadence"):
        if name in values:
            setattr(row, name, values[name])
    if commit:
        session.commit()
    return row


def get_forecast(session, forecast_id: int) -> Optional[ForecastRecord]:
    return session.get(ForecastRecord, forecast_id)


def upsert_forecast(session, forecast_id: int, values: Dict[str, Any], *, commit: bool = True) -> ForecastRecord:
    row = session.get(ForecastRecord, forecast_id)
    if row is None:
        row = ForecastRecord(id=forecast_id, **build_default_forecasts())
        session.add(row)
    for name in build_default_forecasts():
        if name in values:
            setattr(row, name, values[name])
    if commit:
        session.commit()
    return row


# ---------------------------------------------------------------------------
# Production logs


def list_logs(session) -> List[ProductionEntry]:
    stmt = select(ProductionEntry).order_by(ProductionEntry.date, ProductionEntry.team, ProductionEntry.machine_id)
    return list(session.scalars(stmt))


def insert_log(session, values: Dict[str, Any]) -> ProductionEntry:
    row = ProductionEntry(
        id=str(values["id"]),
        date=values["date"],
        machine_id=values["machine_id"],
        team=values["team"],
        bal_produced=int(values.get("bal_produced") or 0),
        docs_produced=int(values.get("docs_produced") or 0),
        hours=float(values.get("hours") or 0.0),
    )
    session.add(row)
    session.commit()
    return row


def update_log(session, log_id: str, values: Dict[str, Any]) -> Optional[ProductionEntry]:
    row = session.get(ProductionEntry, log_id)
    if row is None:
        return None
    for name in ("bal_produced", "docs_produced", "hours"):
        if name in values:
            setattr(row, name, values[name])
    session.commit()
    return row


def delete_log(session, log_id: str) -> None:
    session.execute(delete(ProductionEntry).where(ProductionEntry.id == log_id))
    session.commit()


def delete_all_logs(session) -> int:
    result = session.execute(delete(ProductionEntry))
    session.commit()
    return int(result.rowcount or 0)


# ---------------------------------------------------------------------------
# Planning


def list_planning(session) -> List[PlanningDay]:
    stmt = select(PlanningDay).order_by(PlanningDay.date, PlanningDay.team)
    return list(session.scalars(stmt))


def upsert_planning(
    session,
    date_value: datetime.date,
    team: str,
    assignments: Dict[str, Any],
    *,
    commit: bool = True,
) -> PlanningDay:
    """Insert or replace the assignments of one (date, team)."""
    stmt = select(PlanningDay).where(PlanningDay.date == date_value, PlanningDay.team == team)
    row = session.scalars(stmt).first()
    if row is None:
        row = PlanningDay(date=date_value, team=team)
        session.add(row)
    row.assignmentsJSON = json.dumps(assignments or {}, ensure_ascii=False)
    if commit:
        session.commit()
    return row


# ---------------------------------------------------------------------------
# Archives


def list_archives(session) -> List[ArchiveRecord]:
    stmt = select(ArchiveRecord).order_by(ArchiveRecord.created_at.desc(), ArchiveRecord.id.desc())
    return list(session.scalars(stmt))


def get_archive(session, archive_id: int) -> Optional[ArchiveRecord]:
    return session.get(ArchiveRecord, archive_id)


def insert_archive(
    session,
    week_label: str,
    start_date: datetime.date,
    data: Dict[str, Any],
    created_at: Optional[datetime.datetime] = None,
) -> ArchiveRecord:
    row = ArchiveRecord(
        week_label=week_label,
        start_date=start_date,
        created_at=created_at or _utcnow(),
        dataJSON=json.dumps(data or {}, ensure_ascii=False),
    )
    session.add(row)
    session.commit()
    session.refresh(row)
    return row


# ---------------------------------------------------------------------------
# Staff roster


STAFF_FIELDS = (
    "name",
    "default_role",
    "is_interim",
    "active",
    "weekly_hours",
    "assigned_team",
    "is_absent",
    "is_secouriste",
    "is_guide_file",
    "is_serre_file",
)


def list_staff(staff_session=None) -> List[StaffRecord]:
    staff_session, close_session = _coerce_staff_session(staff_session)
    try:
        stmt = select(StaffRecord).order_by(StaffRecord.name)
        return list(staff_session.scalars(stmt))
    finally:
        if close_session:
            staff_session.close()


def upsert_staff(staff_session, values: Dict[str, Any]) -> StaffRecord:
    staff_session, close_session = _coerce_staff_session(staff_session)
    try:
        member_id = str(values["id"])
        row = staff_session.get(StaffRecord, member_id)
        if row is None:
            row = StaffRecord(id=member_id, name=values.get("name") or "")
            staff_session.add(row)
        for name in STAFF_FIELDS:
            if name in values:
                setattr(row, name, values[name])
        staff_session.commit()
        return row
    finally:
        if close_session:
            staff_session.close()


def set_staff_interim(staff_session, member_id: str, is_interim: bool) -> Optional[StaffRecord]:
    staff_session, close_session = _coerce_staff_session(staff_session)
    try:
        row = staff_session.get(StaffRecord, member_id)
        if row is None:
            return None
        row.is_interim = bool(is_interim)
        staff_session.commit()
        return row
    finally:
        if close_session:
            staff_session.close()


def delete_staff(staff_session, member_id: str) -> None:
    staff_session, close_session = _coerce_staff_session(staff_session)
    try:
        staff_session.execute(delete(StaffRecord).where(StaffRecord.id == member_id))
        staff_session.commit()
    finally:
        if close_session:
            staff_session.close()


def record_audit_log(
    session,
    user_id: str,
    action: str,
    target_type: str = "Week",
    target_id: Optional[int] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    log = AuditLog(
        user_id=user_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        payloadJSON=json.dumps(payload or {}, default=str),
    )
    session.add(log)
    session.commit()
    return log
