"""Staff planning edits and their propagation across a team's working week."""

from __future__ import annotations

import copy
import datetime
import enum
import logging
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from machines import (
    MACHINE_LABELS,
    MANUAL_BAGGING,
    PAIR_GROUPS,
    ROLE_LABELS,
    ROLES,
    TEAM_MATIN,
    TEAMS,
    AssignmentKey,
    is_team_first_day,
    monday_of,
    team_first_day,
    team_week_dates,
)
from week_state import (
    PlanningAssignment,
    StaffAssignment,
    StaffMember,
    merge_planning,
)

logger = logging.getLogger(__name__)

ConfirmCallback = Callable[[str, bool], bool]
SaveCallback = Callable[[List[PlanningAssignment]], object]


class PropagationMode(str, enum.Enum):
    WEEK = "WEEK"
    DAY = "DAY"
    FUTURE = "FUTURE"


class NoSourceDataError(LookupError):
    """Raised when the previous week holds no planning to copy."""


def _staff_key(name: str) -> str:
    return (name or "").strip().lower()


class PlanningEditor:
    """Edits one team's planning, one (date, team) grid at a time.

    Commands return the batch of records they wrote; the batch is merged into
    ``planning`` and handed to ``on_save`` when one is set.
    """

    def __init__(
        self,
        planning: Iterable[PlanningAssignment],
        *,
        team: str = TEAM_MATIN,
        initial_date: Optional[datetime.date] = None,
        read_only: bool = False,
        on_save: Optional[SaveCallback] = None,
    ) -> None:
        if team not in TEAMS:
            raise ValueError(f"Unknown team: {team}")
        self.planning: Tuple[PlanningAssignment, ...] = tuple(planning)
        self.team = team
        self.selected_date = initial_date or datetime.date.today()
        self.week_start = monday_of(self.selected_date)
        self.mode = PropagationMode.WEEK
        self.read_only = read_only
        self.on_save = on_save

    # -- navigation -----------------------------------------------------

    def select_team(self, team: str) -> None:
        if team not in TEAMS:
            raise ValueError(f"Unknown team: {team}")
        self.team = team
        self.selected_date = team_first_day(self.week_start, team)
        self.mode = PropagationMode.WEEK

    def select_date(self, date_value: datetime.date) -> None:
        self.selected_date = date_value
        self.week_start = monday_of(date_value)
        if is_team_first_day(date_value, self.team):
            self.mode = PropagationMode.WEEK
        else:
            self.mode = PropagationMode.FUTURE

    def select_week_start(self, monday: datetime.date) -> None:
        self.week_start = monday_of(monday)
        self.selected_date = team_first_day(self.week_start, self.team)

    def set_mode(self, mode: PropagationMode | str) -> None:
        self.mode = PropagationMode(mode)

    def team_dates(self) -> List[datetime.date]:
        return team_week_dates(self.week_start, self.team)

    # -- reads ----------------------------------------------------------

    def record_for(self, date_value: datetime.date, team: Optional[str] = None) -> Optional[PlanningAssignment]:
        team = team or self.team
        for record in self.planning:
            if record.date == date_value and record.team == team:
                return record
        return None

    def current_record(self) -> PlanningAssignment:
        return self.record_for(self.selected_date) or PlanningAssignment(date=self.selected_date, team=self.team)

    def used_names(self) -> set:
        return {_staff_key(value.name) for value in self.current_record().assignments.values() if value.is_filled}

    def name_suggestions(self, staff: Iterable[StaffMember]) -> List[str]:
        """Roster names still free in the selected (date, team)."""
        used = self.used_names()
        names = [
            member.name
            for member in staff
            if not member.is_absent and member.name and _staff_key(member.name) not in used
        ]
        return sorted(names, key=str.lower)

    def weekly_rows(self, active_machine_ids: Sequence[str]) -> List[Dict[str, object]]:
        """Rows of the weekly grid; optional second preparers show once any day uses them."""
        dates = self.team_dates()
        active = set(active_machine_ids)

        def has_second_preparer(machine_id: str) -> bool:
            key = AssignmentKey(machine_id, "PREPARATEUR", 1)
            for day in dates:
                record = self.record_for(day)
                if record is not None and record.get(key).is_filled:
                    return True
            return False

        def row(key: AssignmentKey, label: str, shared: bool = False) -> Dict[str, object]:
            cells = {}
            for day in dates:
                record = self.record_for(day)
                cells[day] = record.get(key) if record else StaffAssignment()
            return {"key": key, "label": label, "is_shared": shared, "cells": cells}

        rows: List[Dict[str, object]] = []
        for machine_id in MACHINE_LABELS:
            pair = next((pair for pair in PAIR_GROUPS if machine_id in pair), None)
            if machine_id in active:
                if machine_id == MANUAL_BAGGING:
                    base_roles = ["OPERATEUR", "PREPARATEUR"]
                elif pair is not None:
                    base_roles = ["PIMA", "OPERATEUR"]
                else:
                    base_roles = ROLES
                for role in base_roles:
                    label = f"{MACHINE_LABELS[machine_id]} - {ROLE_LABELS[role]}"
                    rows.append(row(AssignmentKey(machine_id, role, 0), label))
            if pair is None or machine_id != pair[1]:
                continue
            # Shared slots close the pair, shown while either machine runs.
            lead, partner = pair
            if lead not in active and partner not in active:
                continue
            prefix = f"{lead}/{partner}"
            rows.append(row(AssignmentKey(lead, "GESTIONNAIRE", 0), f"{prefix} - Gestionnaire", True))
            rows.append(row(AssignmentKey(lead, "PREPARATEUR", 0), f"{prefix} - Préparateur 1", True))
            if has_second_preparer(lead):
                rows.append(row(AssignmentKey(lead, "PREPARATEUR", 1), f"{prefix} - Préparateur 2", True))
        return rows

    # -- writes ---------------------------------------------------------

    def _save(self, updates: List[PlanningAssignment]) -> List[PlanningAssignment]:
        if not updates:
            return updates
        self.planning = merge_planning(self.planning, updates)
        if self.on_save is not None:
            self.on_save(updates)
        return updates

    def _target_dates(self) -> List[datetime.date]:
        dates = self.team_dates()
        if self.mode is PropagationMode.WEEK:
            return dates
        if self.mode is PropagationMode.DAY:
            return [day for day in dates if day == self.selected_date]
        return [day for day in dates if day >= self.selected_date]

    def propagate_change(self, key: AssignmentKey | str, value: StaffAssignment) -> List[PlanningAssignment]:
        if self.read_only:
            return []
        key = AssignmentKey.parse(key)
        updates: List[PlanningAssignment] = []
        for day in self._target_dates():
            existing = self.record_for(day) or PlanningAssignment(date=day, team=self.team)
            updates.append(existing.with_assignment(key, value))
        return self._save(updates)

    def change_name(self, key: AssignmentKey | str, name: str, staff: Iterable[StaffMember]) -> List[PlanningAssignment]:
        if self.read_only:
            return []
        key = AssignmentKey.parse(key)
        previous = self.current_record().get(key)
        member = next((entry for entry in staff if _staff_key(entry.name) == _staff_key(name)), None)
        is_interim = member.is_interim if member is not None else previous.is_interim
        value = StaffAssignment(name=name, is_interim=is_interim, hours_override=previous.hours_override)
        return self.propagate_change(key, value)

    def change_status(self, key: AssignmentKey | str, is_interim: bool) -> List[PlanningAssignment]:
        if self.read_only:
            return []
        key = AssignmentKey.parse(key)
        previous = self.current_record().get(key)
        value = StaffAssignment(name=previous.name, is_interim=is_interim, hours_override=previous.hours_override)
        return self.propagate_change(key, value)

    def manual_propagate(self, confirm: ConfirmCallback) -> List[PlanningAssignment]:
        """Copy the whole selected day over the rest of the team's week."""
        if self.read_only:
            return []
        source = self.current_record()
        has_content = any(value.is_filled for value in source.assignments.values())
        if has_content:
            message = f"Copy the {self.selected_date:%d/%m/%Y} planning over the whole week?"
        else:
            message = (
                "The selected day is EMPTY. Continuing will erase this team's planning "
                "for the whole week. Erase everything?"
            )
        if not confirm(message, not has_content):
            return []
        updates = [
            PlanningAssignment(date=day, team=self.team, assignments=copy.deepcopy(source.assignments))
            for day in self.team_dates()
            if day != self.selected_date
        ]
        logger.info("Copied %s %s planning over %d days", self.team, self.selected_date, len(updates))
        return self._save(updates)

    def copy_previous_week(self, confirm: ConfirmCallback) -> List[PlanningAssignment]:
        """Shift last week's records of this team forward by seven days."""
        if self.read_only:
            return []
        previous_monday = self.week_start - datetime.timedelta(days=7)
        previous_sunday = previous_monday + datetime.timedelta(days=6)
        sources = [
            record
            for record in self.planning
            if record.team == self.team and previous_monday <= record.date <= previous_sunday
        ]
        if not sources:
            raise NoSourceDataError(
                f"No planning found for team {self.team} between "
                f"{previous_monday:%d/%m/%Y} and {previous_sunday:%d/%m/%Y}."
            )
        message = (
            f"Import the planning of the week of {previous_monday:%d/%m/%Y} (team {self.team}) "
            f"into the week of {self.week_start:%d/%m/%Y}? Existing days will be overwritten."
        )
        if not confirm(message, True):
            return []
        updates = [
            PlanningAssignment(
                date=record.date + datetime.timedelta(days=7),
                team=record.team,
                assignments=copy.deepcopy(record.assignments),
            )
            for record in sources
        ]
        return self._save(updates)
