from __future__ import annotations

import sys
import uuid
from pathlib import Path
from typing import Dict, List

from sqlalchemy import select

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from database import StaffRecord, StaffSessionLocal, init_database  # noqa: E402
from machines import ROLES, TEAM_MATIN, TEAM_SOIR  # noqa: E402

VALID_ROLES = set(ROLES)
TEAM_NUMBERS = {TEAM_MATIN: 1, TEAM_SOIR: 2}

SAMPLE_STAFF: List[Dict] = [
    # Equipe matin
    {"name": "Karim Benali", "role": "PIMA", "team": TEAM_MATIN, "secouriste": True},
    {"name": "Sophie Marchand", "role": "OPERATEUR", "team": TEAM_MATIN},
    {"name": "Julien Roux", "role": "OPERATEUR", "team": TEAM_MATIN, "guide_file": True},
    {"name": "Nadia Haddad", "role": "GESTIONNAIRE", "team": TEAM_MATIN},
    {"name": "Thomas Girard", "role": "PREPARATEUR", "team": TEAM_MATIN, "serre_file": True},
    {"name": "Claire Fontaine", "role": "PREPARATEUR", "team": TEAM_MATIN, "interim": True},
    # Equipe soir
    {"name": "Mehdi Lambert", "role": "PIMA", "team": TEAM_SOIR},
    {"name": "Laura Petit", "role": "OPERATEUR", "team": TEAM_SOIR, "secouriste": True},
    {"name": "Antoine Morel", "role": "OPERATEUR", "team": TEAM_SOIR, "interim": True},
    {"name": "Ines Garnier", "role": "GESTIONNAIRE", "team": TEAM_SOIR},
    {"name": "Lucas Faure", "role": "PREPARATEUR", "team": TEAM_SOIR, "interim": True},
    {"name": "Emma Chevalier", "role": "PREPARATEUR", "team": TEAM_SOIR, "weekly_hours": 28},
]


def normalize_role(role: str, name: str) -> str | None:
    if role in VALID_ROLES:
        return role
    print(f"[seed] Unknown role for {name}: {role}")
    return None


def seed_staff() -> None:
    init_database()
    created = 0
    refreshed = 0
    with StaffSessionLocal() as session:
        for entry in SAMPLE_STAFF:
            stmt = select(StaffRecord).where(StaffRecord.name == entry["name"])
            member = session.scalars(stmt).first()
            if not member:
                member = StaffRecord(id=uuid.uuid4().hex, name=entry["name"])
                session.add(member)
                created += 1
            else:
                refreshed += 1
            member.default_role = normalize_role(entry.get("role", ""), entry["name"])
            member.assigned_team = TEAM_NUMBERS.get(entry.get("team"))
            member.is_interim = bool(entry.get("interim", False))
            member.weekly_hours = entry.get("weekly_hours", 35)
            member.active = True
            member.is_absent = False
            member.is_secouriste = bool(entry.get("secouriste", False))
            member.is_guide_file = bool(entry.get("guide_file", False))
            member.is_serre_file = bool(entry.get("serre_file", False))
        session.commit()
    print(f"Seed complete. Created {created} staff members, refreshed {refreshed}.")


if __name__ == "__main__":
    seed_staff()
