from __future__ import annotations

import datetime
import json
import uuid
from pathlib import Path
from typing import Any, Dict, List, Tuple

from sqlalchemy import select

from database import (
    STAFF_FIELDS,
    ArchiveRecord,
    StaffRecord,
    get_archive,
    insert_archive,
    list_archives,
    upsert_staff,
)
from exporter import DATA_DIR as EXPORT_DIR
from machines import ROLES
from week_state import WeekContext, read_field

EXPORT_DIR.mkdir(parents=True, exist_ok=True)


def _timestamp() -> str:
    return datetime.datetime.now().strftime("%Y%m%d_%H%M%S")


def _week_file_stem(week_label: str) -> str:
    head = (week_label or "semaine").split(" ")[0]
    return "".join(ch for ch in head if ch.isalnum()) or "semaine"


# ---------------------------------------------------------------------------
# Weekly archives


def export_archive(session, archive_id: int) -> Path:
    archive = get_archive(session, archive_id)
    if archive is None:
        raise ValueError(f"Archive {archive_id} not found.")
    payload = {
        "generated_at": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        "week_label": archive.week_label,
        "start_date": archive.start_date.isoformat(),
        "created_at": archive.created_at.isoformat() if archive.created_at else None,
        "data": archive.data_dict(),
    }
    filename = EXPORT_DIR / f"archive_{_week_file_stem(archive.week_label)}_{_timestamp()}.json"
    filename.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
    return filename


def export_week_context(context: WeekContext) -> Path:
    """Write a live week in the archive file format."""
    start = context.week_start.isoformat() if context.week_start else None
    payload = {
        "generated_at": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        "week_label": context.week_label,
        "start_date": start,
        "data": context.snapshot(),
    }
    filename = EXPORT_DIR / f"week_{_week_file_stem(context.week_label)}_{_timestamp()}.json"
    filename.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
    return filename


def import_archive(session, file_path: Path) -> ArchiveRecord:
    """Store an exported week as a new archive row."""
    data = json.loads(file_path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("Archive file must be a JSON object.")
    week_label = read_field(data, "week_label")
    start_raw = read_field(data, "start_date")
    if not week_label or not start_raw:
        raise ValueError("Archive file needs week_label and start_date.")
    try:
        start_date = datetime.date.fromisoformat(str(start_raw)[:10])
    except ValueError as exc:
        raise ValueError(f"Invalid start_date: {start_raw}") from exc
    content = data.get("data") if isinstance(data.get("data"), dict) else {}
    week_data: Dict[str, Any] = {
        "logs": list(content.get("logs") or []),
        "planning": list(content.get("planning") or []),
        "machine_configs": dict(read_field(content, "machine_configs") or {}),
        "global_forecasts": dict(read_field(content, "global_forecasts") or {}),
    }
    return insert_archive(session, week_label, start_date, week_data)


def get_archives_summary(session) -> List[Dict[str, Any]]:
    return [
        {
            "id": archive.id,
            "label": archive.week_label,
            "start_date": archive.start_date.isoformat(),
        }
        for archive in list_archives(session)
    ]


# ---------------------------------------------------------------------------
# Staff roster


def export_staff(staff_session) -> Path:
    members = staff_session.scalars(select(StaffRecord).order_by(StaffRecord.name.asc())).all()
    payload: List[Dict[str, Any]] = []
    for member in members:
        entry = {"id": member.id}
        entry.update({name: getattr(member, name) for name in STAFF_FIELDS})
        payload.append(entry)
    filename = EXPORT_DIR / f"staff_{_timestamp()}.json"
    filename.write_text(
        json.dumps(
            {"generated_at": datetime.datetime.now(datetime.timezone.utc).isoformat(), "staff": payload},
            indent=2,
            ensure_ascii=False,
        ),
        encoding="utf-8",
    )
    return filename


def import_staff(staff_session, file_path: Path) -> Tuple[int, int]:
    """Merge a roster file by id, else by name. Returns (created, updated)."""
    data = json.loads(file_path.read_text(encoding="utf-8"))
    entries = data.get("staff", []) if isinstance(data, dict) else []
    existing = staff_session.scalars(select(StaffRecord)).all()
    by_id = {member.id: member for member in existing}
    by_name = {member.name.strip().lower(): member for member in existing}
    created = 0
    updated = 0
    for payload in entries:
        name = (payload.get("name") or "").strip()
        if not name:
            continue
        match = by_id.get(str(payload.get("id"))) or by_name.get(name.lower())
        values = {field: payload[field] for field in STAFF_FIELDS if field in payload}
        values["name"] = name
        if "default_role" in values and values["default_role"] not in ROLES:
            values["default_role"] = None
        if match is None:
            values["id"] = str(payload.get("id") or uuid.uuid4().hex)
            created += 1
        else:
            values["id"] = match.id
            updated += 1
        row = upsert_staff(staff_session, values)
        by_id[row.id] = row
        by_name[name.lower()] = row
    return created, updated
