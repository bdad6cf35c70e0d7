from __future__ import annotations

import datetime
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from database import DATA_DIR

AUDIT_FILE = DATA_DIR / "audit.log"


class AuditLogger:
    """Append-only JSON line log of week lifecycle events."""

    def __init__(self, file_path: Path) -> None:
        self.file_path = file_path
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        if not self.file_path.exists():
            self.file_path.touch()

    def log(
        self,
        event: str,
        actor: Optional[str] = None,
        *,
        week_label: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        entry: Dict[str, Any] = {
            "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
            "event": event,
            "actor": actor or "planner",
        }
        if week_label:
            entry["week_label"] = week_label
        if details:
            entry["details"] = details

        with self.file_path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(entry, default=str, ensure_ascii=False))
            handle.write("\n")

    def entries(self) -> List[Dict[str, Any]]:
        rows: List[Dict[str, Any]] = []
        with self.file_path.open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    rows.append(json.loads(line))
                except json.JSONDecodeError:
                    continue
        return rows


audit_logger = AuditLogger(AUDIT_FILE)
