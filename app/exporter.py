from __future__ import annotations

import csv
import datetime
from pathlib import Path
from typing import Iterable, List, Optional

from database import DATA_DIR as DATA_ROOT
from machines import TEAMS
from metrics import MachineDetail


DATA_DIR = DATA_ROOT / "exports"
DATA_DIR.mkdir(parents=True, exist_ok=True)

DAY_NAMES = ["Lun", "Mar", "Mer", "Jeu", "Ven", "Sam"]


def _safe_name(label: str) -> str:
    return "".join(ch if ch.isalnum() else "_" for ch in label).strip("_") or "semaine"


def machine_report_rows(machines: Iterable[MachineDetail]) -> List[List[str]]:
    """Flatten the per-machine detail tables into CSV rows, one per team and total."""
    rows: List[List[str]] = []
    for detail in machines:
        header = ["Machine", "Equipe"]
        header += [f"{DAY_NAMES[index]} {day:%d/%m}" for index, day in enumerate(detail.days)]
        header += ["Total BAL", "Heures", "Ecart (h)", "Objectif", "Avancement %"]
        rows.append(header)
        for team in TEAMS:
            cells = detail.team_days.get(team, [])
            total = detail.team_totals.get(team)
            rows.append(
                [detail.label, team]
                + [str(cell.bal) for cell in cells]
                + [str(total.bal), f"{total.hours:.2f}", f"{total.gap:.2f}", "", ""]
            )
        grand = detail.grand_total
        rows.append(
            [detail.label, "TOTAL"]
            + [str(cell.bal) for cell in detail.total_days]
            + [
                str(grand.bal),
                f"{grand.hours:.2f}",
                f"{grand.gap:.2f}",
                str(detail.target_bal),
                f"{detail.progress_bal:.1f}",
            ]
        )
        rows.append([])
    return rows


def export_machine_report(
    dashboard: dict,
    *,
    target_dir: Optional[Path] = None,
) -> Path:
    """Write the dashboard machine tables as a semicolon separated CSV file."""
    target_dir = target_dir or DATA_DIR
    target_dir.mkdir(parents=True, exist_ok=True)
    stamp = datetime.datetime.now().strftime("%Y%m%d_%H%M%S")
    filename = target_dir / f"production_{_safe_name(dashboard.get('week_label') or '')}_{stamp}.csv"
    with filename.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.writer(handle, delimiter=";")
        writer.writerow([dashboard.get("week_label") or ""])
        writer.writerows(machine_report_rows(dashboard.get("machines") or []))
    return filename
