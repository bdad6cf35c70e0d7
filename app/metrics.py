"""Production metrics derived from the logs of one week.

Everything here is a pure function over the week context collections. Logs whose
machine has no configuration are skipped; no function raises on bad data.
"""

from __future__ import annotations

import datetime
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from machines import TEAMS, effective_cadence, machine_label
from staffing import role_hours_breakdown
from week_state import (
    MachineConfig,
    ProductionLog,
    WeekContext,
    logs_in_week,
    reference_monday,
    week_window,
)


@dataclass(frozen=True)
class TeamMetrics:
    team: str
    produced_bal: int = 0
    avg_cadence: int = 0
    hours: float = 0.0
    gap_hours: float = 0.0


@dataclass(frozen=True)
class Cell:
    bal: int = 0
    hours: float = 0.0
    gap: float = 0.0
    date: Optional[datetime.date] = None


@dataclass(frozen=True)
class MachineDetail:
    machine_id: str
    label: str
    target_bal: float
    cadence: float
    days: List[datetime.date]
    team_days: Dict[str, List[Cell]] = field(default_factory=dict)
    total_days: List[Cell] = field(default_factory=list)
    team_totals: Dict[str, Cell] = field(default_factory=dict)
    grand_total: Cell = field(default_factory=Cell)
    progress_bal: float = 0.0


def progress_percent(produced: float, target: float, clamp: bool = False) -> float:
    if target <= 0:
        return 0.0
    value = produced / target * 100
    if clamp:
        return max(0.0, min(100.0, value))
    return value


def _cadence_for(machine_id: str, configs: Mapping[str, MachineConfig]) -> Optional[float]:
    config = configs.get(machine_id)
    if config is None:
        return None
    return effective_cadence(machine_id, config.target_cadence)


def team_metrics(
    logs: Iterable[ProductionLog],
    configs: Mapping[str, MachineConfig],
    week_start: datetime.date,
    team: str,
) -> TeamMetrics:
    team_logs = [log for log in logs_in_week(logs, week_start) if log.team == team]
    produced_bal = sum(log.bal_produced for log in team_logs)
    hours = sum(log.hours for log in team_logs)
    avg_cadence = int(math.floor(produced_bal / hours + 0.5)) if hours > 0 else 0

    standard_hours = 0.0
    actual_hours = 0.0
    for log in team_logs:
        cadence = _cadence_for(log.machine_id, configs)
        # Both sums only cover machines with a usable cadence.
        if not cadence or cadence <= 0:
            continue
        standard_hours += log.bal_produced / cadence
        actual_hours += log.hours
    return TeamMetrics(
        team=team,
        produced_bal=produced_bal,
        avg_cadence=avg_cadence,
        hours=hours,
        gap_hours=standard_hours - actual_hours,
    )


def _cell(logs: Sequence[ProductionLog], cadence: float, date_value: Optional[datetime.date] = None) -> Cell:
    bal = sum(log.bal_produced for log in logs)
    hours = sum(log.hours for log in logs)
    gap = 0.0
    # Output without hours leaves the gap undetermined, reported as zero.
    if cadence > 0 and hours > 0:
        gap = bal / cadence - hours
    return Cell(bal=bal, hours=hours, gap=gap, date=date_value)


def machine_detail(
    logs: Iterable[ProductionLog],
    configs: Mapping[str, MachineConfig],
    week_start: datetime.date,
    machine_id: str,
) -> MachineDetail:
    days = week_window(week_start)
    config = configs.get(machine_id)
    if config is None:
        machine_logs: List[ProductionLog] = []
        cadence = 0.0
        target_bal = 0
    else:
        machine_logs = [log for log in logs_in_week(logs, week_start) if log.machine_id == machine_id]
        cadence = effective_cadence(machine_id, config.target_cadence)
        target_bal = config.target_bal or 0

    team_days: Dict[str, List[Cell]] = {}
    team_totals: Dict[str, Cell] = {}
    for team in TEAMS:
        team_logs = [log for log in machine_logs if log.team == team]
        team_days[team] = [
            _cell([log for log in team_logs if log.date == day], cadence, day) for day in days
        ]
        team_totals[team] = _cell(team_logs, cadence)
    total_days = [_cell([log for log in machine_logs if log.date == day], cadence, day) for day in days]
    grand_total = _cell(machine_logs, cadence)
    return MachineDetail(
        machine_id=machine_id,
        label=machine_label(machine_id),
        target_bal=target_bal,
        cadence=cadence,
        days=days,
        team_days=team_days,
        total_days=total_days,
        team_totals=team_totals,
        grand_total=grand_total,
        progress_bal=progress_percent(grand_total.bal, target_bal),
    )


def weekly_overview(
    logs: Iterable[ProductionLog],
    configs: Mapping[str, MachineConfig],
    week_start: datetime.date,
) -> Dict[str, float]:
    total_target = sum(config.target_bal or 0 for config in configs.values() if config.active)
    produced = sum(log.bal_produced for log in logs_in_week(logs, week_start))
    return {
        "total_target_bal": total_target,
        "total_produced_bal": produced,
        "progress_percent": progress_percent(produced, total_target),
    }


def production_chart(
    logs: Iterable[ProductionLog],
    configs: Mapping[str, MachineConfig],
    week_start: datetime.date,
) -> List[Dict[str, Any]]:
    week_logs = logs_in_week(logs, week_start)
    rows: List[Dict[str, Any]] = []
    for machine_id, config in configs.items():
        if not config.active:
            continue
        produced = sum(log.bal_produced for log in week_logs if log.machine_id == machine_id)
        rows.append({"machine_id": machine_id, "produced": produced, "target": config.target_bal or 0})
    return rows


def build_dashboard(context: WeekContext, today: Optional[datetime.date] = None) -> Dict[str, Any]:
    """Assemble the production dashboard view model for a week context."""
    week_start = reference_monday(context.logs, context.planning, today)
    active = context.active_machine_ids()
    return {
        "week_label": context.week_label,
        "kind": context.kind.value,
        "read_only": context.read_only,
        "week_start": week_start,
        "days": week_window(week_start),
        "overview": weekly_overview(context.logs, context.configs, week_start),
        "teams": {team: team_metrics(context.logs, context.configs, week_start, team) for team in TEAMS},
        "machines": [machine_detail(context.logs, context.configs, week_start, machine_id) for machine_id in active],
        "chart": production_chart(context.logs, context.configs, week_start),
        "roles": role_hours_breakdown(context.planning, context.logs, week_start),
    }
