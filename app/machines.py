from __future__ import annotations

import datetime
from typing import Dict, List, NamedTuple, Optional, Tuple


MACHINE_IDS: List[str] = ["M1", "M2", "M3", "M4", "M5", "M6", "PAC"]

MACHINE_LABELS: Dict[str, str] = {
    "M1": "Machine 1",
    "M2": "Machine 2",
    "M3": "Machine 3",
    "M4": "Machine 4",
    "M5": "Machine 5",
    "M6": "Machine 6",
    "PAC": "PAC (Manuel)",
}

MANUAL_BAGGING = "PAC"
DEFAULT_MANUAL_CADENCE = 2000

TEAM_MATIN = "MATIN"
TEAM_SOIR = "SOIR"
TEAMS: List[str] = [TEAM_MATIN, TEAM_SOIR]

# Working days as offsets from Monday.
TEAM_DAY_OFFSETS: Dict[str, Tuple[int, ...]] = {
    TEAM_MATIN: (1, 2, 3, 4, 5),
    TEAM_SOIR: (0, 1, 2, 3, 4),
}

ROLES: List[str] = ["PIMA", "OPERATEUR", "GESTIONNAIRE", "PREPARATEUR"]
ROLE_LABELS: Dict[str, str] = {
    "PIMA": "Pilote/Opérateur",
    "OPERATEUR": "Opérateur",
    "GESTIONNAIRE": "Gestionnaire",
    "PREPARATEUR": "Préparateur",
}
SHARED_ROLES = frozenset({"GESTIONNAIRE", "PREPARATEUR"})

# Physically paired machines; the first one carries the shared slots.
PAIR_GROUPS: List[Tuple[str, str]] = [("M3", "M4"), ("M5", "M6")]
SINGLE_MACHINES: List[str] = ["M1", "M2"]

CONTEXT_SUFFIX_NEXT = "_NEXT"


def normalize_machine_id(value: str) -> str:
    label = (value or "").strip().upper()
    if label.endswith(CONTEXT_SUFFIX_NEXT):
        label = label[: -len(CONTEXT_SUFFIX_NEXT)]
    return label


def is_known_machine(machine_id: str) -> bool:
    return machine_id in MACHINE_LABELS


def machine_label(machine_id: str) -> str:
    return MACHINE_LABELS.get(machine_id, machine_id)


def effective_cadence(machine_id: str, cadence: Optional[float]) -> float:
    """Cadence to divide by; falsy cadence on manual bagging falls back to the flat rate."""
    if machine_id == MANUAL_BAGGING and not cadence:
        return float(DEFAULT_MANUAL_CADENCE)
    return float(cadence or 0)


def pair_for(machine_id: str) -> Optional[Tuple[str, str]]:
    for pair in PAIR_GROUPS:
        if machine_id in pair:
            return pair
    return None


def partner_machine(machine_id: str) -> Optional[str]:
    pair = pair_for(machine_id)
    if pair is None:
        return None
    return pair[1] if pair[0] == machine_id else pair[0]


def is_pair_lead(machine_id: str) -> bool:
    return any(machine_id == lead for lead, _ in PAIR_GROUPS)


def is_shared_slot(machine_id: str, role: str) -> bool:
    """Shared manager/preparer slots live on the first machine of each pair."""
    return is_pair_lead(machine_id) and role in SHARED_ROLES


class AssignmentKey(NamedTuple):
    """Planning cell identity: machine, role and slot index."""

    machine_id: str
    role: str
    slot: int = 0

    @classmethod
    def parse(cls, raw: "str | AssignmentKey") -> "AssignmentKey":
        if isinstance(raw, AssignmentKey):
            return raw
        parts = str(raw).strip().split("_")
        if len(parts) < 2 or not parts[0] or not parts[1]:
            raise ValueError(f"Malformed assignment key: {raw!r}")
        slot = 0
        if len(parts) >= 3:
            try:
                slot = int(parts[2])
            except ValueError as exc:
                raise ValueError(f"Malformed assignment key: {raw!r}") from exc
        return cls(parts[0].upper(), parts[1].upper(), slot)

    def as_string(self) -> str:
        return f"{self.machine_id}_{self.role}_{self.slot}"

    def sort_key(self) -> Tuple[int, int, int]:
        machine_rank = MACHINE_IDS.index(self.machine_id) if self.machine_id in MACHINE_IDS else len(MACHINE_IDS)
        role_rank = ROLES.index(self.role) if self.role in ROLES else len(ROLES)
        return (machine_rank, role_rank, self.slot)

    @property
    def is_shared(self) -> bool:
        return is_shared_slot(self.machine_id, self.role)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, AssignmentKey):
            return NotImplemented
        return self.sort_key() < other.sort_key()

    def __le__(self, other: object) -> bool:
        if not isinstance(other, AssignmentKey):
            return NotImplemented
        return self.sort_key() <= other.sort_key()

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, AssignmentKey):
            return NotImplemented
        return self.sort_key() > other.sort_key()

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, AssignmentKey):
            return NotImplemented
        return self.sort_key() >= other.sort_key()


def monday_of(date_value: datetime.date) -> datetime.date:
    """Return the Monday for the provided date."""
    if isinstance(date_value, datetime.datetime):
        date_value = date_value.date()
    return date_value - datetime.timedelta(days=date_value.weekday())


def team_first_day(week_start: datetime.date, team: str) -> datetime.date:
    return monday_of(week_start) + datetime.timedelta(days=TEAM_DAY_OFFSETS[team][0])


def team_week_dates(week_start: datetime.date, team: str) -> List[datetime.date]:
    monday = monday_of(week_start)
    return [monday + datetime.timedelta(days=offset) for offset in TEAM_DAY_OFFSETS[team]]


def is_team_first_day(date_value: datetime.date, team: str) -> bool:
    return date_value.weekday() == TEAM_DAY_OFFSETS[team][0]


def format_week_label(week_start: datetime.date) -> str:
    monday = monday_of(week_start)
    sunday = monday + datetime.timedelta(days=6)
    _, iso_week, _ = monday.isocalendar()
    return f"S{iso_week} DU {monday:%d/%m/%Y} AU {sunday:%d/%m/%Y}"
