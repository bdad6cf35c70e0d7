"""Week selection, edits, reset and promotion of the production weeks.

The manager holds one :class:`WeekContext` at a time. Every command first
applies its change to a new context, then writes it through the store; a store
failure leaves the local change in place and is reported in the returned
:class:`Outcome`.
"""

from __future__ import annotations

import datetime
import logging
import uuid
from dataclasses import dataclass, replace
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

from audit import AuditLogger
from machines import (
    CONTEXT_SUFFIX_NEXT,
    TEAM_MATIN,
    TEAMS,
    AssignmentKey,
    format_week_label,
    is_known_machine,
    monday_of,
    normalize_machine_id,
)
from metrics import build_dashboard
from planning import PlanningEditor
from plant_defaults import (
    CURRENT_FORECAST_ID,
    PREPARATION_FORECAST_ID,
    PROMOTION_RESET_CONFIG_FIELDS,
    PROMOTION_RESET_FORECAST_FIELDS,
)
from staffing import (
    apply_hours_override,
    coarse_headcount,
    interim_hours_tracking,
    parse_hours,
    precise_hours,
)
from store import PersistenceError, WeekStore
from week_state import (
    ContextKind,
    GlobalForecasts,
    PlanningAssignment,
    ProductionLog,
    StaffMember,
    WeekContext,
    WeeklyArchive,
    context_from_archive,
    default_machine_configs,
    reference_monday,
)

logger = logging.getLogger(__name__)

ConfirmCallback = Callable[[str, bool], bool]
BackupHook = Callable[[], Tuple[bool, str]]
WeekId = Union[str, int]

CURRENT_WEEK_ID = "current"
NEXT_WEEK_ID = "next"

_CONTEXT_OFFSETS = {ContextKind.CURRENT: 1, ContextKind.PREPARATION: 2}
_CONFIG_FIELDS = ("active", "target_bal", "target_volume", "target_cadence")


@dataclass(frozen=True)
class Outcome:
    success: bool
    message: str
    promotion_failed: bool = False


def parse_count(raw_value) -> Optional[int]:
    """Parse a typed BAL count; decimals are truncated."""
    value = parse_hours(raw_value)
    if value is None:
        return None
    return int(value)


def _parse_numbers(changes: Dict[str, object], *skip: str) -> Optional[Dict[str, float]]:
    """Parse typed target or forecast values; None when one is not a number >= 0."""
    values: Dict[str, float] = {}
    for name, raw_value in changes.items():
        if name in skip:
            continue
        value = None if isinstance(raw_value, bool) else parse_hours(raw_value)
        if value is None or value < 0:
            return None
        values[name] = value
    return values


def promote(
    current: WeekContext,
    preparation: WeekContext,
    *,
    week_label: str,
    week_start: datetime.date,
    created_at: Optional[datetime.datetime] = None,
) -> Tuple[WeekContext, WeekContext, WeeklyArchive]:
    """Archive ``current`` and move ``preparation`` into its place.

    Forecast capacities (documents and weight per handful) survive in the
    preparation week; its volumes and targets start again from zero.
    """
    archive = WeeklyArchive(
        id=None,
        week_label=week_label,
        start_date=week_start,
        created_at=created_at or datetime.datetime.now(),
        data=current.snapshot(),
    )
    new_current = replace(
        current,
        kind=ContextKind.CURRENT,
        forecasts=preparation.forecasts,
        configs=dict(preparation.configs),
        logs=(),
    )
    new_preparation = replace(
        preparation,
        forecasts=replace(preparation.forecasts, **{name: 0 for name in PROMOTION_RESET_FORECAST_FIELDS}),
        configs={
            machine_id: replace(config, **{name: 0 for name in PROMOTION_RESET_CONFIG_FIELDS})
            for machine_id, config in preparation.configs.items()
        },
        logs=(),
    )
    return new_current, new_preparation, archive


class WeekManager:
    """Owns the selected week and routes every edit to the store."""

    def __init__(
        self,
        store: Optional[WeekStore] = None,
        *,
        today: Optional[datetime.date] = None,
        audit: Optional[AuditLogger] = None,
        backup: Optional[BackupHook] = None,
    ) -> None:
        self.store = store or WeekStore()
        self._today = today
        self.audit = audit
        self.backup = backup
        self.context = WeekContext(kind=ContextKind.CURRENT)
        self.staff: List[StaffMember] = []
        self.archives: List[WeeklyArchive] = []
        self.selected_week_id: WeekId = CURRENT_WEEK_ID
        self.last_error: Optional[str] = None

    @property
    def today(self) -> datetime.date:
        return self._today or datetime.date.today()

    # -- helpers --------------------------------------------------------

    def _failure(self, message: str, exc: Exception, *, promotion_failed: bool = False) -> Outcome:
        logger.error("%s: %s", message, exc)
        self.last_error = f"{message}: {exc}"
        return Outcome(False, message, promotion_failed=promotion_failed)

    def _persist(self, write: Callable[[], object], message: str) -> Outcome:
        try:
            write()
        except PersistenceError as exc:
            return self._failure("Save failed", exc)
        self.last_error = None
        return Outcome(True, message)

    def _audit(self, event: str, details: Optional[Dict] = None) -> None:
        if self.audit is not None:
            self.audit.log(event, week_label=self.context.week_label, details=details)

    def _read_only_outcome(self) -> Optional[Outcome]:
        if self.context.read_only:
            return Outcome(False, "Archived weeks are read-only.")
        return None

    # -- calendar -------------------------------------------------------

    def week_start_for(self, offset: int) -> datetime.date:
        return monday_of(self.today + datetime.timedelta(days=7 * offset))

    def week_label(self, offset: int) -> str:
        return format_week_label(self.week_start_for(offset))

    def planning_start_date(self) -> datetime.date:
        """Monday the planning editor opens on for the selected week."""
        if self.context.kind is ContextKind.ARCHIVE and self.context.week_start is not None:
            return monday_of(self.context.week_start)
        return self.week_start_for(_CONTEXT_OFFSETS[self.context.kind])

    def week_options(self) -> List[Dict[str, object]]:
        options: List[Dict[str, object]] = [
            {"id": CURRENT_WEEK_ID, "label": self.week_label(1), "type": ContextKind.CURRENT.value},
            {"id": NEXT_WEEK_ID, "label": self.week_label(2), "type": ContextKind.PREPARATION.value},
        ]
        for archive in self.archives:
            options.append({"id": archive.id, "label": archive.week_label, "type": ContextKind.ARCHIVE.value})
        return options

    # -- loading --------------------------------------------------------

    def load(self) -> Outcome:
        outcome = self.refresh()
        if not outcome.success:
            return outcome
        return self.select_week(CURRENT_WEEK_ID)

    def refresh(self) -> Outcome:
        """Reload archives and roster, keeping the selected week."""
        try:
            self.archives = self.store.list_archives()
            self.staff = self.store.list_staff()
        except PersistenceError as exc:
            return self._failure("Loading failed", exc)
        return Outcome(True, "Archives and staff reloaded")

    def _find_archive(self, week_id: WeekId) -> Optional[WeeklyArchive]:
        for archive in self.archives:
            if str(archive.id) == str(week_id):
                return archive
        if str(week_id).isdigit():
            return self.store.load_archive(int(week_id))
        return None

    def select_week(self, week_id: WeekId) -> Outcome:
        try:
            if week_id in (CURRENT_WEEK_ID, NEXT_WEEK_ID):
                kind = ContextKind.CURRENT if week_id == CURRENT_WEEK_ID else ContextKind.PREPARATION
                offset = _CONTEXT_OFFSETS[kind]
                context = self.store.load_context(
                    kind,
                    week_label=self.week_label(offset),
                    week_start=self.week_start_for(offset),
                )
            else:
                archive = self._find_archive(week_id)
                if archive is None:
                    return Outcome(False, f"Unknown week: {week_id}")
                context = context_from_archive(archive)
        except PersistenceError as exc:
            return self._failure("Loading failed", exc)
        self.context = context
        self.selected_week_id = week_id if week_id in (CURRENT_WEEK_ID, NEXT_WEEK_ID) else context.archive_id
        return Outcome(True, f"{context.week_label} loaded")

    # -- production logs ------------------------------------------------

    def _log_guard(self) -> Optional[Outcome]:
        if not self.context.accepts_logs:
            return Outcome(False, "Production can only be entered for the current week.")
        return None

    def find_log(self, date_value: datetime.date, team: str, machine_id: str) -> Optional[ProductionLog]:
        for log in self.context.logs:
            if log.date == date_value and log.team == team and log.machine_id == machine_id:
                return log
        return None

    def add_log(self, log: ProductionLog) -> Outcome:
        refused = self._log_guard()
        if refused:
            return refused
        self.context = self.context.with_logs(self.context.logs + (log,))
        return self._persist(lambda: self.store.insert_log(log), "Production saved")

    def update_log(self, log: ProductionLog) -> Outcome:
        refused = self._log_guard()
        if refused:
            return refused
        if not any(existing.id == log.id for existing in self.context.logs):
            return Outcome(False, f"Unknown production entry: {log.id}")
        self.context = self.context.with_logs(log if existing.id == log.id else existing for existing in self.context.logs)
        return self._persist(lambda: self.store.update_log(log), "Production updated")

    def delete_log(self, log_id: str) -> Outcome:
        refused = self._log_guard()
        if refused:
            return refused
        if not any(existing.id == log_id for existing in self.context.logs):
            return Outcome(False, f"Unknown production entry: {log_id}")
        self.context = self.context.with_logs(log for log in self.context.logs if log.id != log_id)
        return self._persist(lambda: self.store.delete_log(log_id), "Production deleted")

    def save_log_entry(
        self,
        date_value: datetime.date,
        team: str,
        machine_id: str,
        raw_bal,
        raw_hours,
    ) -> Outcome:
        """Save the BAL and hours typed for one (machine, date, team) cell."""
        refused = self._log_guard()
        if refused:
            return refused
        machine_id = normalize_machine_id(machine_id)
        if team not in TEAMS or not is_known_machine(machine_id):
            return Outcome(False, f"Unknown team or machine: {team} {machine_id}")
        bal_text = "" if raw_bal is None else str(raw_bal).strip()
        hours_text = "" if raw_hours is None else str(raw_hours).strip()
        if not bal_text and not hours_text:
            return Outcome(False, "Nothing to save")

        # A cell needs both values; one blank field rejects the entry.
        bal = parse_count(bal_text)
        hours = parse_hours(hours_text)
        if bal is None or hours is None or bal < 0 or hours < 0:
            logger.warning(
                "Rejected production entry %s %s %s: bal=%r hours=%r",
                machine_id, date_value, team, raw_bal, raw_hours,
            )
            return Outcome(False, "Invalid BAL or hours value")

        existing = self.find_log(date_value, team, machine_id)
        if existing is not None:
            return self.update_log(replace(existing, bal_produced=bal, hours=hours))
        return self.add_log(
            ProductionLog(
                id=uuid.uuid4().hex,
                date=date_value,
                machine_id=machine_id,
                team=team,
                bal_produced=bal,
                docs_produced=0,
                hours=hours,
            )
        )

    def clear_log_entry(self, date_value: datetime.date, team: str, machine_id: str) -> Outcome:
        existing = self.find_log(date_value, team, normalize_machine_id(machine_id))
        if existing is None:
            return Outcome(True, "Nothing to clear")
        return self.delete_log(existing.id)

    # -- targets and forecasts ------------------------------------------

    def update_machine_config(self, machine_id: str, **changes) -> Outcome:
        refused = self._read_only_outcome()
        if refused:
            return refused
        machine_id = normalize_machine_id(machine_id)
        if machine_id not in self.context.configs:
            return Outcome(False, f"Unknown machine: {machine_id}")
        unknown = set(changes) - set(_CONFIG_FIELDS)
        if unknown:
            return Outcome(False, f"Unknown machine settings: {', '.join(sorted(unknown))}")
        values = _parse_numbers(changes, "active")
        if values is None:
            logger.warning("Rejected settings for %s: %r", machine_id, changes)
            return Outcome(False, "Invalid machine setting value")
        if "active" in changes:
            values["active"] = bool(changes["active"])
        config = replace(self.context.configs[machine_id], **values)
        suffix = self.context.config_suffix
        self.context = self.context.with_config(config)
        return self._persist(
            lambda: self.store.save_machine_configs({machine_id: config}, suffix),
            f"{machine_id} settings saved",
        )

    def update_forecasts(self, **changes) -> Outcome:
        refused = self._read_only_outcome()
        if refused:
            return refused
        unknown = set(changes) - set(GlobalForecasts().to_dict())
        if unknown:
            return Outcome(False, f"Unknown forecast fields: {', '.join(sorted(unknown))}")
        values = _parse_numbers(changes)
        if values is None:
            logger.warning("Rejected forecast values: %r", changes)
            return Outcome(False, "Invalid forecast value")
        forecasts = replace(self.context.forecasts, **values)
        forecast_id = self.context.forecast_id
        self.context = self.context.with_forecasts(forecasts)
        return self._persist(lambda: self.store.save_forecasts(forecast_id, forecasts), "Forecasts saved")

    # -- planning -------------------------------------------------------

    def save_planning(self, records: Iterable[PlanningAssignment]) -> Outcome:
        refused = self._read_only_outcome()
        if refused:
            return refused
        records = list(records)
        if not records:
            return Outcome(True, "Nothing to save")
        self.context = self.context.with_planning_updates(records)
        return self._persist(lambda: self.store.upsert_planning(records), "Planning saved")

    def set_hours_override(
        self,
        date_value: datetime.date,
        team: str,
        key: Union[AssignmentKey, str],
        raw_value,
    ) -> Outcome:
        key = AssignmentKey.parse(key)
        record = self.context.planning_for(date_value, team)
        if record is None or key not in record.assignments:
            return Outcome(False, f"No assignment for {key.as_string()} on {date_value:%d/%m/%Y}")
        return self.save_planning([apply_hours_override(record, key, raw_value)])

    def _save_from_editor(self, updates: List[PlanningAssignment]) -> Outcome:
        outcome = self.save_planning(updates)
        if outcome.success and len(updates) > 1:
            self._audit("PLANNING_BULK_COPY", {"records": len(updates)})
        return outcome

    def editor(self, team: str = TEAM_MATIN, initial_date: Optional[datetime.date] = None) -> PlanningEditor:
        return PlanningEditor(
            self.context.planning,
            team=team,
            initial_date=initial_date or self.planning_start_date(),
            read_only=self.context.read_only,
            on_save=self._save_from_editor,
        )

    # -- staff ----------------------------------------------------------

    def _find_staff(self, member_id: str) -> Optional[StaffMember]:
        return next((member for member in self.staff if member.id == member_id), None)

    def add_staff(self, member: StaffMember) -> Outcome:
        if self._find_staff(member.id) is not None:
            return Outcome(False, f"Staff member already exists: {member.id}")
        self.staff = self.staff + [member]
        return self._persist(lambda: self.store.save_staff(member), f"{member.name} added")

    def update_staff(self, member: StaffMember) -> Outcome:
        if self._find_staff(member.id) is None:
            return Outcome(False, f"Unknown staff member: {member.id}")
        self.staff = [member if existing.id == member.id else existing for existing in self.staff]
        return self._persist(lambda: self.store.save_staff(member), f"{member.name} updated")

    def delete_staff(self, member_id: str) -> Outcome:
        if self._find_staff(member_id) is None:
            return Outcome(False, f"Unknown staff member: {member_id}")
        self.staff = [member for member in self.staff if member.id != member_id]
        return self._persist(lambda: self.store.delete_staff(member_id), "Staff member deleted")

    def toggle_interim(self, member_id: str) -> Outcome:
        member = self._find_staff(member_id)
        if member is None:
            return Outcome(False, f"Unknown staff member: {member_id}")
        updated = replace(member, is_interim=not member.is_interim)
        self.staff = [updated if existing.id == member_id else existing for existing in self.staff]
        return self._persist(
            lambda: self.store.set_staff_interim(member_id, updated.is_interim),
            f"{member.name} is now {'interim' if updated.is_interim else 'salaried'}",
        )

    # -- views ----------------------------------------------------------

    def dashboard(self) -> Dict[str, object]:
        return build_dashboard(self.context, today=self.planning_start_date())

    def staffing(self) -> Dict[str, object]:
        context = self.context
        week_start = reference_monday(context.logs, context.planning, self.planning_start_date())
        return {
            "headcount": coarse_headcount(context.configs, self.staff),
            "hours": precise_hours(context.configs, self.staff),
            "interim": interim_hours_tracking(self.staff, context.planning, context.logs, week_start),
        }

    # -- lifecycle ------------------------------------------------------

    def reset_week(self, confirm: ConfirmCallback) -> Outcome:
        """Put the selected live week back to its empty defaults."""
        refused = self._read_only_outcome()
        if refused:
            return refused
        preparation = self.context.kind is ContextKind.PREPARATION
        if preparation:
            message = "Reset the preparation of the next week (S+2)? Targets and forecasts will be cleared."
        else:
            message = "Reset the current week (S+1)? Production, targets and forecasts will be cleared."
        if not confirm(message, True):
            return Outcome(False, "Reset cancelled")

        configs = default_machine_configs()
        forecasts = GlobalForecasts()
        suffix = self.context.config_suffix
        forecast_id = self.context.forecast_id
        context = self.context if preparation else self.context.with_logs(())
        self.context = context.with_configs(configs).with_forecasts(forecasts)

        def write() -> None:
            if not preparation:
                self.store.delete_all_logs()
            self.store.save_forecasts(forecast_id, forecasts)
            self.store.save_machine_configs(configs, suffix)

        outcome = self._persist(write, "Week reset")
        if outcome.success:
            self._audit("WEEK_RESET", {"kind": self.context.kind.value})
        return outcome

    def promote_week(self, confirm: ConfirmCallback) -> Outcome:
        """Archive S+1, move S+2 into S+1 and start a blank S+2."""
        if self.context.kind is not ContextKind.PREPARATION:
            return Outcome(False, "Promotion starts from the next week (S+2).")
        if not confirm(
            "CONFIRMATION: archive the current week and promote the next week (S+2) to current (S+1)?",
            True,
        ):
            return Outcome(False, "Promotion cancelled")

        if self.backup is not None:
            ok, message = self.backup()
            if not ok:
                logger.error("Backup before promotion failed: %s", message)
                self.last_error = message
                return Outcome(False, f"Backup before promotion failed: {message}", promotion_failed=True)
            self._audit("BACKUP_CREATED", {"message": message})

        label = self.week_label(1)
        start = self.week_start_for(1)
        step = "reading the weeks"
        try:
            current = self.store.load_context(ContextKind.CURRENT, week_label=label, week_start=start)
            preparation = self.store.load_context(
                ContextKind.PREPARATION,
                week_label=self.week_label(2),
                week_start=self.week_start_for(2),
            )
            new_current, new_preparation, archive = promote(current, preparation, week_label=label, week_start=start)
            step = "archiving the current week"
            archive = self.store.insert_archive(archive)
            step = "copying the next week into the current week"
            self.store.save_forecasts(CURRENT_FORECAST_ID, new_current.forecasts)
            self.store.save_machine_configs(new_current.configs, "")
            step = "clearing production logs"
            self.store.delete_all_logs()
            step = "clearing the next week targets"
            self.store.save_forecasts(PREPARATION_FORECAST_ID, new_preparation.forecasts)
            self.store.save_machine_configs(new_preparation.configs, CONTEXT_SUFFIX_NEXT)
        except PersistenceError as exc:
            self._audit("PROMOTION_FAILED", {"step": step, "error": str(exc)})
            return self._failure(f"Week promotion failed while {step}", exc, promotion_failed=True)

        self._audit("WEEK_PROMOTED", {"archive_id": archive.id, "archived_week": label})
        reloaded = self.load()
        if not reloaded.success:
            return Outcome(False, f"Week promoted, but reloading failed: {reloaded.message}")
        return Outcome(True, f"{label} archived, next week promoted")

