"""Workforce estimates and hour tracking.

Two estimators live here and are meant to disagree: :func:`coarse_headcount`
counts heads from the crew rules, :func:`precise_hours` turns weekly BAL targets
into man-hours. Neither is derived from the other.
"""

from __future__ import annotations

import datetime
import math
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set

from machines import (
    MANUAL_BAGGING,
    PAIR_GROUPS,
    ROLES,
    SINGLE_MACHINES,
    AssignmentKey,
    machine_label,
    partner_machine,
)
from plant_defaults import LEGAL_WEEKLY_HOURS, STAFFING_RULES
from week_state import (
    MachineConfig,
    PlanningAssignment,
    ProductionLog,
    StaffAssignment,
    StaffMember,
    logs_in_week,
    week_window,
)


@dataclass(frozen=True)
class HeadcountEstimate:
    per_shift: int
    total_need: int
    available: int
    interim: int


@dataclass(frozen=True)
class HoursRow:
    machine_id: str
    label: str
    bal: float
    cadence: float
    hours: float
    staff: int
    man_hours: float


@dataclass(frozen=True)
class HoursEstimate:
    rows: List[HoursRow]
    total_man_hours: float
    max_shift_duration: float
    salaried_count: int
    salary_capacity: float
    interim_hours: float
    interim_staff: int


def _is_active(configs: Mapping[str, MachineConfig], machine_id: str) -> bool:
    config = configs.get(machine_id)
    return bool(config and config.active)


def available_salaried(staff: Iterable[StaffMember]) -> int:
    return sum(1 for member in staff if member.is_available_salaried)


def coarse_headcount(
    configs: Mapping[str, MachineConfig],
    staff: Iterable[StaffMember],
    rules: Optional[Mapping] = None,
) -> HeadcountEstimate:
    rules = rules or STAFFING_RULES
    per_shift = 0
    for machine_id, crew in rules["single_machine_crew"].items():
        if _is_active(configs, machine_id):
            per_shift += crew
    for pair in PAIR_GROUPS:
        active = [machine_id for machine_id in pair if _is_active(configs, machine_id)]
        per_shift += rules["pair_base_crew"] * len(active)
        if active:
            per_shift += rules["pair_shared_crew"]
    total_need = per_shift * rules["shift_teams"]
    available = available_salaried(staff)
    return HeadcountEstimate(
        per_shift=per_shift,
        total_need=total_need,
        available=available,
        interim=max(0, total_need - available),
    )


def run_time(config: Optional[MachineConfig], rules: Optional[Mapping] = None) -> float:
    """Weekly run time in hours; any machine without cadence uses the flat fallback."""
    rules = rules or STAFFING_RULES
    if config is None or not config.active:
        return 0.0
    cadence = config.target_cadence or rules["run_time_fallback_cadence"]
    return (config.target_bal or 0) / cadence


def precise_hours(
    configs: Mapping[str, MachineConfig],
    staff: Iterable[StaffMember],
    rules: Optional[Mapping] = None,
) -> HoursEstimate:
    rules = rules or STAFFING_RULES
    run_times: Dict[str, float] = {machine_id: run_time(config, rules) for machine_id, config in configs.items()}
    max_shift_duration = max(run_times.values(), default=0.0)
    rows: List[HoursRow] = []

    def add_row(machine_id: str, crew: int, man_hours: float) -> None:
        config = configs[machine_id]
        rows.append(
            HoursRow(
                machine_id=machine_id,
                label=machine_label(machine_id),
                bal=config.target_bal or 0,
                cadence=rules["run_time_fallback_cadence"] if config.target_cadence == 0 else config.target_cadence,
                hours=run_times[machine_id],
                staff=crew,
                man_hours=man_hours,
            )
        )

    for machine_id in SINGLE_MACHINES + [MANUAL_BAGGING]:
        if _is_active(configs, machine_id):
            crew = rules["single_machine_crew"][machine_id]
            add_row(machine_id, crew, run_times[machine_id] * crew)

    for first, second in PAIR_GROUPS:
        first_active = _is_active(configs, first)
        second_active = _is_active(configs, second)
        if first_active and second_active:
            # The pooled crew is split as one unit per machine, not two on one side.
            shared = max(run_times[first], run_times[second])
            for machine_id in (first, second):
                man_hours = (
                    run_times[machine_id] * rules["pair_both_active_base"]
                    + shared * rules["pair_both_active_shared"]
                )
                add_row(machine_id, rules["pair_both_active_display"], man_hours)
        elif first_active or second_active:
            machine_id = first if first_active else second
            add_row(
                machine_id,
                rules["pair_single_active_display"],
                run_times[machine_id] * rules["pair_single_active"],
            )

    total_man_hours = sum(row.man_hours for row in rows)
    salaried = available_salaried(staff)
    salary_capacity = salaried * LEGAL_WEEKLY_HOURS
    interim_hours = max(0.0, total_man_hours - salary_capacity)
    return HoursEstimate(
        rows=rows,
        total_man_hours=total_man_hours,
        max_shift_duration=max_shift_duration,
        salaried_count=salaried,
        salary_capacity=salary_capacity,
        interim_hours=interim_hours,
        interim_staff=math.ceil(interim_hours / LEGAL_WEEKLY_HOURS),
    )


# ---------------------------------------------------------------------------
# Hours from production logs


def _matching_logs(
    logs: Sequence[ProductionLog],
    date_value: datetime.date,
    team: str,
    machine_id: str,
) -> List[ProductionLog]:
    return [log for log in logs if log.date == date_value and log.team == team and log.machine_id == machine_id]


def machine_hours(logs: Sequence[ProductionLog], date_value: datetime.date, team: str, machine_id: str) -> float:
    return sum(log.hours for log in _matching_logs(logs, date_value, team, machine_id))


def slot_hours(logs: Sequence[ProductionLog], date_value: datetime.date, team: str, key: AssignmentKey) -> float:
    """Hours worked in a slot; shared slots stay as long as either paired machine runs."""
    own = machine_hours(logs, date_value, team, key.machine_id)
    if key.is_shared:
        partner = partner_machine(key.machine_id)
        return max(own, machine_hours(logs, date_value, team, partner) if partner else 0.0)
    return own


@dataclass
class RoleHours:
    role: str
    salaried_names: Set[str] = field(default_factory=set)
    interim_names: Set[str] = field(default_factory=set)
    salaried_hours: float = 0.0
    interim_hours: float = 0.0

    @property
    def total_hours(self) -> float:
        return self.salaried_hours + self.interim_hours

    @property
    def interim_percent(self) -> float:
        total = self.total_hours
        return self.interim_hours / total * 100 if total > 0 else 0.0


@dataclass
class RoleBreakdown:
    roles: Dict[str, RoleHours]

    @property
    def salaried_hours(self) -> float:
        return sum(entry.salaried_hours for entry in self.roles.values())

    @property
    def interim_hours(self) -> float:
        return sum(entry.interim_hours for entry in self.roles.values())

    @property
    def total_hours(self) -> float:
        return self.salaried_hours + self.interim_hours

    @property
    def interim_percent(self) -> float:
        total = self.total_hours
        return self.interim_hours / total * 100 if total > 0 else 0.0


def role_hours_breakdown(
    planning: Iterable[PlanningAssignment],
    logs: Sequence[ProductionLog],
    week_start: datetime.date,
) -> RoleBreakdown:
    """Salaried versus interim hours per role over the week's filled slots."""
    week_logs = logs_in_week(logs, week_start)
    days = week_window(week_start)
    first, last = days[0], days[0] + datetime.timedelta(days=6)
    stats = {role: RoleHours(role=role) for role in ROLES}
    for record in planning:
        if not first <= record.date <= last:
            continue
        for key, assignment in record.filled():
            entry = stats.get(key.role)
            if entry is None:
                continue
            hours = slot_hours(week_logs, record.date, record.team, key)
            if assignment.is_interim:
                entry.interim_names.add(assignment.name)
                entry.interim_hours += hours
            else:
                entry.salaried_names.add(assignment.name)
                entry.salaried_hours += hours
    return RoleBreakdown(roles=stats)


# ---------------------------------------------------------------------------
# Interim tracking grid


@dataclass(frozen=True)
class TrackedDay:
    date: datetime.date
    hours: float = 0.0
    machine_id: Optional[str] = None
    is_override: bool = False
    team: Optional[str] = None
    key: Optional[AssignmentKey] = None


@dataclass(frozen=True)
class InterimRow:
    staff_id: str
    name: str
    role: Optional[str]
    days: Dict[datetime.date, TrackedDay]
    total: float


@dataclass(frozen=True)
class InterimTracking:
    days: List[datetime.date]
    rows: List[InterimRow]
    total_interim_hours: float


def _tracked_hours(
    logs: Sequence[ProductionLog],
    record: PlanningAssignment,
    key: AssignmentKey,
    assignment: StaffAssignment,
) -> TrackedDay:
    if assignment.hours_override is not None:
        hours = assignment.hours_override
        is_override = True
    else:
        is_override = False
        if _matching_logs(logs, record.date, record.team, key.machine_id):
            hours = machine_hours(logs, record.date, record.team, key.machine_id)
        elif key.is_shared:
            hours = slot_hours(logs, record.date, record.team, key)
        else:
            hours = 0.0
    return TrackedDay(
        date=record.date,
        hours=hours,
        machine_id=key.machine_id,
        is_override=is_override,
        team=record.team,
        key=key,
    )


def interim_hours_tracking(
    staff: Iterable[StaffMember],
    planning: Sequence[PlanningAssignment],
    logs: Sequence[ProductionLog],
    week_start: datetime.date,
) -> InterimTracking:
    """Hours per interim worker and day, across both teams, matched by name."""
    days = week_window(week_start)
    by_day: Dict[datetime.date, List[PlanningAssignment]] = {day: [] for day in days}
    for record in planning:
        if record.date in by_day:
            by_day[record.date].append(record)

    rows: List[InterimRow] = []
    for member in staff:
        if not member.is_interim:
            continue
        target = member.name.strip().lower()
        tracked: Dict[datetime.date, TrackedDay] = {}
        for day in days:
            found = TrackedDay(date=day)
            for record in by_day[day]:
                for key, assignment in sorted(record.assignments.items()):
                    if assignment.name.strip().lower() == target and target:
                        # Later matches win, as in the planning grid order.
                        found = _tracked_hours(logs, record, key, assignment)
            tracked[day] = found
        rows.append(
            InterimRow(
                staff_id=member.id,
                name=member.name,
                role=member.default_role,
                days=tracked,
                total=sum(day.hours for day in tracked.values()),
            )
        )
    return InterimTracking(days=days, rows=rows, total_interim_hours=sum(row.total for row in rows))


def parse_hours(raw_value) -> Optional[float]:
    """Parse a typed hour value; commas are accepted as decimal separator."""
    if raw_value is None:
        return None
    if isinstance(raw_value, (int, float)):
        value = float(raw_value)
    else:
        text = str(raw_value).strip().replace(",", ".")
        if not text:
            return None
        try:
            value = float(text)
        except ValueError:
            return None
    if math.isnan(value) or math.isinf(value):
        return None
    return value


def apply_hours_override(
    record: PlanningAssignment,
    key: AssignmentKey,
    raw_value,
) -> PlanningAssignment:
    """Set or clear the manual hours of one slot; unparsable input clears it."""
    current = record.assignments.get(key)
    if current is None:
        raise KeyError(key.as_string())
    return record.with_assignment(key, replace(current, hours_override=parse_hours(raw_value)))
