"""SQLAlchemy-backed reads and writes of whole week contexts.

Row helpers live in :mod:`database`; this module converts rows to the
``week_state`` records and turns driver failures into :class:`PersistenceError`.
"""

from __future__ import annotations

import datetime
import logging
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError

import database
from machines import CONTEXT_SUFFIX_NEXT, normalize_machine_id
from plant_defaults import CURRENT_FORECAST_ID, PREPARATION_FORECAST_ID
from week_state import (
    ContextKind,
    GlobalForecasts,
    MachineConfig,
    PlanningAssignment,
    ProductionLog,
    StaffMember,
    WeekContext,
    WeeklyArchive,
    complete_configs,
    parse_assignments,
)

logger = logging.getLogger(__name__)


class PersistenceError(RuntimeError):
    """A write or read against the backing store failed."""


def _config_from_row(row: database.MachineSetting) -> MachineConfig:
    return MachineConfig(
        machine_id=normalize_machine_id(row.id),
        active=bool(row.active),
        target_bal=row.target_bal or 0,
        target_volume=row.target_volume or 0,
        target_cadence=row.target_cadence or 0,
    )


def _forecasts_from_row(row: Optional[database.ForecastRecord]) -> GlobalForecasts:
    if row is None:
        return GlobalForecasts()
    return GlobalForecasts(
        total_volume=row.total_volume or 0,
        total_weight=row.total_weight or 0,
        predicted_bal=row.predicted_bal or 0,
        max_docs_per_handful=row.max_docs_per_handful or 0,
        max_weight_per_handful=row.max_weight_per_handful or 0,
    )


def _log_from_row(row: database.ProductionEntry) -> ProductionLog:
    return ProductionLog(
        id=row.id,
        date=row.date,
        machine_id=row.machine_id,
        team=row.team,
        bal_produced=row.bal_produced or 0,
        docs_produced=row.docs_produced or 0,
        hours=row.hours or 0.0,
    )


def _planning_from_row(row: database.PlanningDay) -> PlanningAssignment:
    return PlanningAssignment(date=row.date, team=row.team, assignments=parse_assignments(row.assignments_dict()))


def _staff_from_row(row: database.StaffRecord) -> StaffMember:
    return StaffMember(
        id=row.id,
        name=row.name,
        default_role=row.default_role,
        is_interim=bool(row.is_interim),
        active=bool(row.active),
        weekly_hours=row.weekly_hours or 35,
        assigned_team=row.assigned_team,
        is_absent=bool(row.is_absent),
        is_secouriste=bool(row.is_secouriste),
        is_guide_file=bool(row.is_guide_file),
        is_serre_file=bool(row.is_serre_file),
    )


def archive_from_row(row: database.ArchiveRecord) -> WeeklyArchive:
    return WeeklyArchive(
        id=row.id,
        week_label=row.week_label,
        start_date=row.start_date,
        created_at=row.created_at,
        data=row.data_dict(),
    )


class WeekStore:
    """Persistence collaborator of the week manager."""

    def __init__(self, session_factory=None, staff_session_factory=None) -> None:
        self._session_factory = session_factory
        self._staff_session_factory = staff_session_factory

    @contextmanager
    def _session(self) -> Iterator:
        factory = self._session_factory or database.SessionLocal
        session = factory()
        try:
            yield session
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error("Production store operation failed: %s", exc)
            raise PersistenceError(str(exc)) from exc
        finally:
            session.close()

    @contextmanager
    def _staff_session(self) -> Iterator:
        factory = self._staff_session_factory or database.StaffSessionLocal
        session = factory()
        try:
            yield session
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error("Staff store operation failed: %s", exc)
            raise PersistenceError(str(exc)) from exc
        finally:
            session.close()

    # -- reads ----------------------------------------------------------

    def load_context(self, kind: ContextKind, *, week_label: str = "", week_start: Optional[datetime.date] = None) -> WeekContext:
        if kind is ContextKind.ARCHIVE:
            raise ValueError("Archives are loaded through load_archive().")
        preparation = kind is ContextKind.PREPARATION
        forecast_id = PREPARATION_FORECAST_ID if preparation else CURRENT_FORECAST_ID
        suffix = CONTEXT_SUFFIX_NEXT if preparation else ""
        with self._session() as session:
            forecasts = _forecasts_from_row(database.get_forecast(session, forecast_id))
            configs = {
                config.machine_id: config
                for config in (_config_from_row(row) for row in database.list_machine_configs(session, suffix))
            }
            # The preparation week never holds production.
            logs = () if preparation else tuple(_log_from_row(row) for row in database.list_logs(session))
            planning = tuple(_planning_from_row(row) for row in database.list_planning(session))
        return WeekContext(
            kind=kind,
            forecasts=forecasts,
            configs=complete_configs(configs),
            logs=logs,
            planning=planning,
            week_label=week_label,
            week_start=week_start,
        )

    def list_archives(self) -> List[WeeklyArchive]:
        with self._session() as session:
            return [archive_from_row(row) for row in database.list_archives(session)]

    def load_archive(self, archive_id: int) -> Optional[WeeklyArchive]:
        with self._session() as session:
            row = database.get_archive(session, archive_id)
            return archive_from_row(row) if row is not None else None

    def list_staff(self) -> List[StaffMember]:
        with self._staff_session() as session:
            return [_staff_from_row(row) for row in database.list_staff(session)]

    # -- writes ---------------------------------------------------------

    def save_machine_configs(self, configs: Mapping[str, MachineConfig], suffix: str = "") -> None:
        with self._session() as session:
            for config in configs.values():
                values = config.to_dict()
                values.pop("machine_id")
                database.upsert_machine_config(session, f"{config.machine_id}{suffix}", values, commit=False)
            session.commit()

    def save_forecasts(self, forecast_id: int, forecasts: GlobalForecasts) -> None:
        with self._session() as session:
            database.upsert_forecast(session, forecast_id, forecasts.to_dict())

    def insert_log(self, log: ProductionLog) -> None:
        with self._session() as session:
            values = log.to_dict()
            values["date"] = log.date
            database.insert_log(session, values)

    def update_log(self, log: ProductionLog) -> None:
        with self._session() as session:
            database.update_log(
                session,
                log.id,
                {"bal_produced": log.bal_produced, "docs_produced": log.docs_produced, "hours": log.hours},
            )

    def delete_log(self, log_id: str) -> None:
        with self._session() as session:
            database.delete_log(session, log_id)

    def delete_all_logs(self) -> int:
        with self._session() as session:
            return database.delete_all_logs(session)

    def upsert_planning(self, records: Iterable[PlanningAssignment]) -> int:
        count = 0
        with self._session() as session:
            for record in records:
                database.upsert_planning(session, record.date, record.team, record.assignments_to_dict(), commit=False)
                count += 1
            session.commit()
        return count

    def insert_archive(self, archive: WeeklyArchive) -> WeeklyArchive:
        with self._session() as session:
            row = database.insert_archive(
                session,
                archive.week_label,
                archive.start_date,
                archive.data,
                created_at=archive.created_at,
            )
            return archive_from_row(row)

    def save_staff(self, member: StaffMember) -> None:
        with self._staff_session() as session:
            database.upsert_staff(session, member.to_dict())

    def set_staff_interim(self, member_id: str, is_interim: bool) -> None:
        with self._staff_session() as session:
            database.set_staff_interim(session, member_id, is_interim)

    def delete_staff(self, member_id: str) -> None:
        with self._staff_session() as session:
            database.delete_staff(session, member_id)

    def record_event(self, action: str, payload: Optional[Dict] = None, *, actor: str = "planner") -> None:
        with self._session() as session:
            database.record_audit_log(session, user_id=actor, action=action, payload=payload)
