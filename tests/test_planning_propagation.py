from __future__ import annotations

import datetime
import sys
from pathlib import Path

import pytest

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from machines import TEAM_MATIN, TEAM_SOIR, AssignmentKey, team_week_dates  # noqa: E402
from planning import NoSourceDataError, PlanningEditor, PropagationMode  # noqa: E402
from week_state import PlanningAssignment, StaffAssignment, StaffMember  # noqa: E402

MONDAY = datetime.date(2025, 3, 17)
PIMA_M1 = AssignmentKey("M1", "PIMA", 0)
OPERATOR_M1 = AssignmentKey("M1", "OPERATEUR", 0)


class Recorder:
    def __init__(self):
        self.batches = []

    def __call__(self, updates):
        self.batches.append(list(updates))


class Confirm:
    def __init__(self, answer):
        self.answer = answer
        self.calls = []

    def __call__(self, message, destructive):
        self.calls.append((message, destructive))
        return self.answer


def _day(date_value, team, **assignments):
    return PlanningAssignment(
        date=date_value,
        team=team,
        assignments={AssignmentKey.parse(key): StaffAssignment(name) for key, name in assignments.items()},
    )


def test_team_selection_moves_to_first_working_day():
    editor = PlanningEditor([], team=TEAM_MATIN, initial_date=MONDAY + datetime.timedelta(days=3))

    editor.select_team(TEAM_SOIR)
    assert editor.selected_date == MONDAY
    assert editor.mode is PropagationMode.WEEK

    editor.select_team(TEAM_MATIN)
    assert editor.selected_date == MONDAY + datetime.timedelta(days=1)


def test_date_selection_switches_mode():
    editor = PlanningEditor([], team=TEAM_SOIR, initial_date=MONDAY)

    editor.select_date(MONDAY + datetime.timedelta(days=2))
    assert editor.mode is PropagationMode.FUTURE

    editor.select_date(MONDAY)
    assert editor.mode is PropagationMode.WEEK


def test_week_mode_writes_every_working_day_and_keeps_other_cells():
    soir_days = team_week_dates(MONDAY, TEAM_SOIR)
    existing = [_day(day, TEAM_SOIR, M1_OPERATEUR_0="Laura") for day in soir_days[:3]]
    recorder = Recorder()
    editor = PlanningEditor(existing, team=TEAM_SOIR, initial_date=MONDAY, on_save=recorder)

    updates = editor.propagate_change(PIMA_M1, StaffAssignment("Mehdi"))

    assert [record.date for record in updates] == soir_days
    assert len(recorder.batches) == 1
    for record in updates:
        assert record.get(PIMA_M1).name == "Mehdi"
    for record in updates[:3]:
        assert record.get(OPERATOR_M1).name == "Laura"
    assert len(editor.planning) == 5


def test_day_mode_twice_keeps_a_single_record():
    day = MONDAY + datetime.timedelta(days=2)
    editor = PlanningEditor([], team=TEAM_MATIN, initial_date=day)
    editor.set_mode(PropagationMode.DAY)

    editor.propagate_change(PIMA_M1, StaffAssignment("Karim"))
    editor.propagate_change(PIMA_M1, StaffAssignment("Julien"))

    records = [record for record in editor.planning if record.date == day and record.team == TEAM_MATIN]
    assert len(records) == 1
    assert records[0].get(PIMA_M1).name == "Julien"
    assert len(editor.planning) == 1


def test_future_mode_skips_earlier_days():
    thursday = MONDAY + datetime.timedelta(days=3)
    editor = PlanningEditor([], team=TEAM_MATIN, initial_date=MONDAY)
    editor.select_date(thursday)

    updates = editor.propagate_change("M2_OPERATEUR_0", StaffAssignment("Sophie"))

    assert [record.date for record in updates] == [thursday, thursday + datetime.timedelta(days=1), thursday + datetime.timedelta(days=2)]


def test_propagated_value_is_copied_per_day():
    editor = PlanningEditor([], team=TEAM_SOIR, initial_date=MONDAY)
    value = StaffAssignment("Mehdi")

    updates = editor.propagate_change(PIMA_M1, value)

    assert updates[0].get(PIMA_M1) == value
    assert updates[0].get(PIMA_M1) is not value
    assert updates[0].get(PIMA_M1) is not updates[1].get(PIMA_M1)


def test_change_name_takes_interim_flag_from_roster():
    staff = [StaffMember(id="1", name="Lucas", is_interim=True)]
    editor = PlanningEditor([], team=TEAM_SOIR, initial_date=MONDAY)
    editor.set_mode(PropagationMode.DAY)

    updates = editor.change_name(OPERATOR_M1, "lucas", staff)

    assert updates[0].get(OPERATOR_M1).is_interim is True
    updates = editor.change_status(OPERATOR_M1, False)
    assert updates[0].get(OPERATOR_M1) == StaffAssignment("lucas", False)


def test_manual_propagate_copies_whole_day():
    source = _day(MONDAY, TEAM_SOIR, M1_PIMA_0="Mehdi", M3_GESTIONNAIRE_0="Ines")
    target = _day(MONDAY + datetime.timedelta(days=1), TEAM_SOIR, M2_OPERATEUR_0="Laura")
    confirm = Confirm(True)
    editor = PlanningEditor([source, target], team=TEAM_SOIR, initial_date=MONDAY)

    updates = editor.manual_propagate(confirm)

    assert len(updates) == 4
    assert confirm.calls[0][1] is False
    copied = editor.record_for(MONDAY + datetime.timedelta(days=1))
    assert copied.assignments == source.assignments
    assert copied.get("M2_OPERATEUR_0").is_filled is False


def test_manual_propagate_from_empty_day_is_flagged_and_can_be_declined():
    target = _day(MONDAY + datetime.timedelta(days=1), TEAM_SOIR, M2_OPERATEUR_0="Laura")
    recorder = Recorder()
    confirm = Confirm(False)
    editor = PlanningEditor([target], team=TEAM_SOIR, initial_date=MONDAY, on_save=recorder)

    assert editor.manual_propagate(confirm) == []
    assert confirm.calls[0][1] is True
    assert "EMPTY" in confirm.calls[0][0]
    assert recorder.batches == []
    assert editor.record_for(MONDAY + datetime.timedelta(days=1)).get("M2_OPERATEUR_0").name == "Laura"


def test_copy_previous_week_shifts_records_by_seven_days():
    previous_monday = MONDAY - datetime.timedelta(days=7)
    planning = [
        _day(previous_monday + datetime.timedelta(days=1), TEAM_MATIN, M1_PIMA_0="Karim"),
        _day(previous_monday + datetime.timedelta(days=6), TEAM_MATIN, M1_PIMA_0="Julien"),
        _day(previous_monday + datetime.timedelta(days=1), TEAM_SOIR, M1_PIMA_0="Mehdi"),
        _day(MONDAY + datetime.timedelta(days=1), TEAM_MATIN, M2_PIMA_0="Old"),
    ]
    recorder = Recorder()
    editor = PlanningEditor(planning, team=TEAM_MATIN, initial_date=MONDAY + datetime.timedelta(days=1), on_save=recorder)

    updates = editor.copy_previous_week(Confirm(True))

    assert sorted(record.date for record in updates) == [MONDAY + datetime.timedelta(days=1), MONDAY + datetime.timedelta(days=6)]
    tuesday = editor.record_for(MONDAY + datetime.timedelta(days=1))
    assert tuesday.get(PIMA_M1).name == "Karim"
    assert tuesday.get("M2_PIMA_0").is_filled is False
    assert len(recorder.batches) == 1


def test_copy_previous_week_without_source_raises_and_writes_nothing():
    planning = [_day(MONDAY - datetime.timedelta(days=6), TEAM_SOIR, M1_PIMA_0="Mehdi")]
    recorder = Recorder()
    confirm = Confirm(True)
    editor = PlanningEditor(planning, team=TEAM_MATIN, initial_date=MONDAY, on_save=recorder)

    with pytest.raises(NoSourceDataError):
        editor.copy_previous_week(confirm)

    assert recorder.batches == []
    assert confirm.calls == []
    assert editor.planning == tuple(planning)


def test_name_suggestions_skip_used_and_absent_names():
    record = _day(MONDAY, TEAM_SOIR, M1_PIMA_0="Mehdi")
    staff = [
        StaffMember(id="1", name="Mehdi"),
        StaffMember(id="2", name="laura"),
        StaffMember(id="3", name="Antoine", is_absent=True),
        StaffMember(id="4", name="Ines"),
    ]
    editor = PlanningEditor([record], team=TEAM_SOIR, initial_date=MONDAY)

    assert editor.name_suggestions(staff) == ["Ines", "laura"]


def test_weekly_rows_show_second_preparer_once_used():
    record = _day(MONDAY, TEAM_SOIR, M3_PREPARATEUR_1="Lucas")
    editor = PlanningEditor([record], team=TEAM_SOIR, initial_date=MONDAY)

    rows = editor.weekly_rows(["M4"])
    keys = [row["key"].as_string() for row in rows]

    assert keys == [
        "M4_PIMA_0",
        "M4_OPERATEUR_0",
        "M3_GESTIONNAIRE_0",
        "M3_PREPARATEUR_0",
        "M3_PREPARATEUR_1",
    ]
    assert rows[-1]["cells"][MONDAY].name == "Lucas"
    assert editor.weekly_rows(["M1"])[-1]["key"].as_string() == "M1_PREPARATEUR_0"


def test_read_only_editor_never_writes():
    recorder = Recorder()
    editor = PlanningEditor([], team=TEAM_SOIR, initial_date=MONDAY, read_only=True, on_save=recorder)

    assert editor.propagate_change(PIMA_M1, StaffAssignment("Mehdi")) == []
    assert editor.manual_propagate(Confirm(True)) == []
    assert editor.copy_previous_week(Confirm(True)) == []
    assert recorder.batches == []
