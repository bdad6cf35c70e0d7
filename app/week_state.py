"""In-memory week context shared by the metrics, staffing and planning modules.

Records are frozen dataclasses and every change produces a new ``WeekContext``
through :func:`dataclasses.replace`, so a collection handed to a reader is never
modified underneath it.
"""

from __future__ import annotations

import copy
import datetime
import enum
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from machines import (
    CONTEXT_SUFFIX_NEXT,
    MACHINE_IDS,
    AssignmentKey,
    monday_of,
    normalize_machine_id,
)
from plant_defaults import (
    CURRENT_FORECAST_ID,
    DEFAULT_WEEKLY_HOURS,
    PREPARATION_FORECAST_ID,
    build_default_forecasts,
    build_default_machine_configs,
)


class ContextKind(str, enum.Enum):
    CURRENT = "CURRENT"
    PREPARATION = "PREPARATION"
    ARCHIVE = "ARCHIVE"


class ReadOnlyWeekError(RuntimeError):
    """Raised when a change targets an archived week."""


def _camel_case(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def read_field(payload: Mapping[str, Any], name: str, default: Any = None) -> Any:
    """Read a snake_case field, falling back to its camelCase spelling."""
    if name in payload:
        return payload[name]
    return payload.get(_camel_case(name), default)


def _as_date(value: Any) -> datetime.date:
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    return datetime.date.fromisoformat(str(value)[:10])


@dataclass(frozen=True)
class MachineConfig:
    machine_id: str
    active: bool = False
    target_bal: float = 0
    target_volume: float = 0
    target_cadence: float = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "machine_id": self.machine_id,
            "active": self.active,
            "target_bal": self.target_bal,
            "target_volume": self.target_volume,
            "target_cadence": self.target_cadence,
        }

    @classmethod
    def from_dict(cls, machine_id: str, payload: Mapping[str, Any]) -> "MachineConfig":
        return cls(
            machine_id=normalize_machine_id(machine_id),
            active=bool(read_field(payload, "active", False)),
            target_bal=read_field(payload, "target_bal") or 0,
            target_volume=read_field(payload, "target_volume") or 0,
            target_cadence=read_field(payload, "target_cadence") or 0,
        )


@dataclass(frozen=True)
class ProductionLog:
    id: str
    date: datetime.date
    machine_id: str
    team: str
    bal_produced: int = 0
    docs_produced: int = 0
    hours: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "date": self.date.isoformat(),
            "machine_id": self.machine_id,
            "team": self.team,
            "bal_produced": self.bal_produced,
            "docs_produced": self.docs_produced,
            "hours": self.hours,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ProductionLog":
        return cls(
            id=str(payload["id"]),
            date=_as_date(payload["date"]),
            machine_id=str(read_field(payload, "machine_id")),
            team=str(payload["team"]),
            bal_produced=int(read_field(payload, "bal_produced") or 0),
            docs_produced=int(read_field(payload, "docs_produced") or 0),
            hours=float(read_field(payload, "hours") or 0.0),
        )


@dataclass(frozen=True)
class StaffAssignment:
    name: str = ""
    is_interim: bool = False
    hours_override: Optional[float] = None

    @property
    def is_filled(self) -> bool:
        return bool(self.name and self.name.strip())

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"name": self.name, "is_interim": self.is_interim}
        if self.hours_override is not None:
            payload["hours_override"] = self.hours_override
        return payload

    @classmethod
    def from_value(cls, value: Any) -> "StaffAssignment":
        """Accept both the structured form and bare legacy names."""
        if isinstance(value, StaffAssignment):
            return value
        if value is None:
            return cls()
        if isinstance(value, str):
            return cls(name=value, is_interim=False)
        override = read_field(value, "hours_override")
        return cls(
            name=str(read_field(value, "name") or ""),
            is_interim=bool(read_field(value, "is_interim", False)),
            hours_override=None if override is None else float(override),
        )


@dataclass(frozen=True)
class PlanningAssignment:
    date: datetime.date
    team: str
    assignments: Dict[AssignmentKey, StaffAssignment] = field(default_factory=dict)

    def get(self, key: AssignmentKey | str) -> StaffAssignment:
        return self.assignments.get(AssignmentKey.parse(key), StaffAssignment())

    def filled(self) -> List[Tuple[AssignmentKey, StaffAssignment]]:
        return [(key, value) for key, value in sorted(self.assignments.items()) if value.is_filled]

    def with_assignment(self, key: AssignmentKey, value: StaffAssignment) -> "PlanningAssignment":
        assignments = dict(self.assignments)
        assignments[key] = copy.deepcopy(value)
        return replace(self, assignments=assignments)

    def assignments_to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {key.as_string(): value.to_dict() for key, value in sorted(self.assignments.items())}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "team": self.team,
            "assignments": self.assignments_to_dict(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "PlanningAssignment":
        return cls(
            date=_as_date(payload["date"]),
            team=str(payload["team"]),
            assignments=parse_assignments(read_field(payload, "assignments") or {}),
        )


def parse_assignments(raw: Mapping[str, Any]) -> Dict[AssignmentKey, StaffAssignment]:
    parsed: Dict[AssignmentKey, StaffAssignment] = {}
    for key, value in raw.items():
        try:
            parsed[AssignmentKey.parse(key)] = StaffAssignment.from_value(value)
        except ValueError:
            continue
    return parsed


@dataclass(frozen=True)
class StaffMember:
    id: str
    name: str
    default_role: Optional[str] = None
    is_interim: bool = False
    active: bool = True
    weekly_hours: float = DEFAULT_WEEKLY_HOURS
    assigned_team: Optional[int] = None
    is_absent: bool = False
    is_secouriste: bool = False
    is_guide_file: bool = False
    is_serre_file: bool = False

    @property
    def is_available_salaried(self) -> bool:
        return not self.is_interim and self.active and not self.is_absent

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "default_role": self.default_role,
            "is_interim": self.is_interim,
            "active": self.active,
            "weekly_hours": self.weekly_hours,
            "assigned_team": self.assigned_team,
            "is_absent": self.is_absent,
            "is_secouriste": self.is_secouriste,
            "is_guide_file": self.is_guide_file,
            "is_serre_file": self.is_serre_file,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "StaffMember":
        team = read_field(payload, "assigned_team")
        return cls(
            id=str(payload["id"]),
            name=str(read_field(payload, "name") or ""),
            default_role=read_field(payload, "default_role"),
            is_interim=bool(read_field(payload, "is_interim", False)),
            active=bool(read_field(payload, "active", True)),
            weekly_hours=read_field(payload, "weekly_hours") or DEFAULT_WEEKLY_HOURS,
            assigned_team=int(team) if team in (1, 2, "1", "2") else None,
            is_absent=bool(read_field(payload, "is_absent", False)),
            is_secouriste=bool(read_field(payload, "is_secouriste", False)),
            is_guide_file=bool(read_field(payload, "is_guide_file", False)),
            is_serre_file=bool(read_field(payload, "is_serre_file", False)),
        )


@dataclass(frozen=True)
class GlobalForecasts:
    total_volume: float = 0
    total_weight: float = 0
    predicted_bal: float = 0
    max_docs_per_handful: float = 0
    max_weight_per_handful: float = 0

    def to_dict(self) -> Dict[str, float]:
        return {
            "total_volume": self.total_volume,
            "total_weight": self.total_weight,
            "predicted_bal": self.predicted_bal,
            "max_docs_per_handful": self.max_docs_per_handful,
            "max_weight_per_handful": self.max_weight_per_handful,
        }

    @classmethod
    def from_dict(cls, payload: Optional[Mapping[str, Any]]) -> "GlobalForecasts":
        payload = payload or {}
        defaults = build_default_forecasts()
        return cls(**{name: read_field(payload, name) or defaults[name] for name in defaults})


@dataclass(frozen=True)
class WeeklyArchive:
    id: Optional[int]
    week_label: str
    start_date: datetime.date
    created_at: datetime.datetime
    data: Dict[str, Any] = field(default_factory=dict)


def default_machine_configs() -> Dict[str, MachineConfig]:
    return {
        machine_id: MachineConfig.from_dict(machine_id, payload)
        for machine_id, payload in build_default_machine_configs().items()
    }


def complete_configs(configs: Mapping[str, MachineConfig]) -> Dict[str, MachineConfig]:
    """Fill missing machines with defaults, keeping the fixed machine order."""
    defaults = default_machine_configs()
    return {machine_id: configs.get(machine_id, defaults[machine_id]) for machine_id in MACHINE_IDS}


WINDOW_DAYS = 6


def week_window(week_start: datetime.date) -> List[datetime.date]:
    """Monday to Saturday of the week containing ``week_start``."""
    monday = monday_of(week_start)
    return [monday + datetime.timedelta(days=offset) for offset in range(WINDOW_DAYS)]


def logs_in_week(logs: Iterable[ProductionLog], week_start: datetime.date) -> List[ProductionLog]:
    monday = monday_of(week_start)
    sunday = monday + datetime.timedelta(days=6)
    return [log for log in logs if monday <= log.date <= sunday]


def reference_monday(
    logs: Sequence[ProductionLog],
    planning: Sequence[PlanningAssignment],
    today: Optional[datetime.date] = None,
) -> datetime.date:
    """Monday of the latest log, else of the latest planning day, else of today."""
    if logs:
        return monday_of(max(log.date for log in logs))
    if planning:
        return monday_of(max(record.date for record in planning))
    return monday_of(today or datetime.date.today())


def merge_planning(
    planning: Iterable[PlanningAssignment],
    updates: Iterable[PlanningAssignment],
) -> Tuple[PlanningAssignment, ...]:
    """Replace records by (date, team); never keeps two records for the same key."""
    merged: Dict[Tuple[datetime.date, str], PlanningAssignment] = {}
    for record in planning:
        merged[(record.date, record.team)] = record
    for record in updates:
        merged.pop((record.date, record.team), None)
        merged[(record.date, record.team)] = record
    return tuple(merged.values())


@dataclass(frozen=True)
class WeekContext:
    kind: ContextKind
    forecasts: GlobalForecasts = field(default_factory=GlobalForecasts)
    configs: Dict[str, MachineConfig] = field(default_factory=default_machine_configs)
    logs: Tuple[ProductionLog, ...] = ()
    planning: Tuple[PlanningAssignment, ...] = ()
    week_label: str = ""
    week_start: Optional[datetime.date] = None
    archive_id: Optional[int] = None

    @property
    def read_only(self) -> bool:
        return self.kind is ContextKind.ARCHIVE

    @property
    def accepts_logs(self) -> bool:
        return self.kind is ContextKind.CURRENT

    @property
    def config_suffix(self) -> str:
        return CONTEXT_SUFFIX_NEXT if self.kind is ContextKind.PREPARATION else ""

    @property
    def forecast_id(self) -> int:
        if self.kind is ContextKind.PREPARATION:
            return PREPARATION_FORECAST_ID
        return CURRENT_FORECAST_ID

    def active_machine_ids(self) -> List[str]:
        return [machine_id for machine_id, config in self.configs.items() if config.active]

    def planning_for(self, date_value: datetime.date, team: str) -> Optional[PlanningAssignment]:
        for record in self.planning:
            if record.date == date_value and record.team == team:
                return record
        return None

    def _ensure_writable(self) -> None:
        if self.read_only:
            raise ReadOnlyWeekError("Archived weeks are read-only.")

    def with_logs(self, logs: Iterable[ProductionLog]) -> "WeekContext":
        self._ensure_writable()
        return replace(self, logs=tuple(logs))

    def with_planning_updates(self, updates: Iterable[PlanningAssignment]) -> "WeekContext":
        self._ensure_writable()
        return replace(self, planning=merge_planning(self.planning, updates))

    def with_config(self, config: MachineConfig) -> "WeekContext":
        self._ensure_writable()
        configs = dict(self.configs)
        configs[config.machine_id] = config
        return replace(self, configs=configs)

    def with_configs(self, configs: Mapping[str, MachineConfig]) -> "WeekContext":
        self._ensure_writable()
        return replace(self, configs=complete_configs(configs))

    def with_forecasts(self, forecasts: GlobalForecasts) -> "WeekContext":
        self._ensure_writable()
        return replace(self, forecasts=forecasts)

    def snapshot(self) -> Dict[str, Any]:
        """JSON-ready copy of the week data, as stored in an archive."""
        return {
            "logs": [log.to_dict() for log in self.logs],
            "planning": [record.to_dict() for record in self.planning],
            "machine_configs": {machine_id: config.to_dict() for machine_id, config in self.configs.items()},
            "global_forecasts": self.forecasts.to_dict(),
        }


def context_from_archive(archive: WeeklyArchive) -> WeekContext:
    """Static view over an archive payload, with defaults for missing sections."""
    data = copy.deepcopy(archive.data or {})
    configs = {
        normalize_machine_id(machine_id): MachineConfig.from_dict(machine_id, payload)
        for machine_id, payload in (read_field(data, "machine_configs") or {}).items()
    }
    return WeekContext(
        kind=ContextKind.ARCHIVE,
        forecasts=GlobalForecasts.from_dict(read_field(data, "global_forecasts")),
        configs=complete_configs(configs),
        logs=tuple(ProductionLog.from_dict(entry) for entry in data.get("logs") or []),
        planning=tuple(PlanningAssignment.from_dict(entry) for entry in data.get("planning") or []),
        week_label=archive.week_label,
        week_start=archive.start_date,
        archive_id=archive.id,
    )
