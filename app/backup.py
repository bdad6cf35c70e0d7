from __future__ import annotations

import datetime
import json
import logging
import shutil
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import database
from database import DATA_DIR, DATABASE_FILES

logger = logging.getLogger(__name__)

BACKUP_ROOT = DATA_DIR.parent / "backups"
DATA_FILES = ["audit.log"]
AUTO_PREFIX = "auto_"
PROMOTION_PREFIX = "promotion_"


def _timestamp() -> str:
    """Generate timestamp string for backup naming."""
    return datetime.datetime.now().strftime("%Y%m%d_%H%M%S")


def get_backup_dir(backup_name: Optional[str] = None) -> Path:
    BACKUP_ROOT.mkdir(parents=True, exist_ok=True)
    if backup_name is None:
        backup_name = f"backup_{_timestamp()}"
    return BACKUP_ROOT / backup_name


def list_backups() -> List[Dict[str, Any]]:
    """List available backups, newest name first.

    Returns:
        List of dicts with 'name', 'path', 'created', 'size' keys.
    """
    if not BACKUP_ROOT.exists():
        return []

    backups = []
    for item in sorted(BACKUP_ROOT.iterdir(), reverse=True):
        if not item.is_dir():
            continue
        total_size = sum(f.stat().st_size for f in item.rglob("*") if f.is_file())
        created = datetime.datetime.fromtimestamp(item.stat().st_ctime)
        backups.append({
            "name": item.name,
            "path": item,
            "created": created,
            "size": total_size,
        })
    return backups


def backup_databases(backup_dir: Path) -> List[str]:
    """Copy the production and staff databases with the SQLite backup API."""
    copied = []
    for db_name in DATABASE_FILES:
        source_path = DATA_DIR / db_name
        if not source_path.exists():
            continue
        source = sqlite3.connect(str(source_path))
        target = sqlite3.connect(str(backup_dir / db_name))
        try:
            with target:
                source.backup(target)
        finally:
            target.close()
            source.close()
        copied.append(db_name)
    return copied


def backup_data_files(backup_dir: Path) -> None:
    for filename in DATA_FILES:
        source = DATA_DIR / filename
        if source.exists():
            shutil.copy2(source, backup_dir / filename)


def backup_exports(backup_dir: Path) -> None:
    exports_dir = DATA_DIR / "exports"
    if exports_dir.exists() and exports_dir.is_dir():
        shutil.copytree(exports_dir, backup_dir / "exports")


def create_backup_metadata(backup_dir: Path, reason: str = "manual") -> None:
    metadata = {
        "created_at": datetime.datetime.now().isoformat(),
        "version": "1.0",
        "reason": reason,
        "files_backed_up": sorted(f.name for f in backup_dir.iterdir() if f.is_file()),
    }
    metadata_path = backup_dir / "backup_metadata.json"
    metadata_path.write_text(json.dumps(metadata, indent=2), encoding="utf-8")


def create_full_backup(backup_name: Optional[str] = None, reason: str = "manual") -> Tuple[bool, str, Path]:
    """Create a complete backup of the planner data.

    Returns:
        Tuple of (success, message, backup_path)
    """
    try:
        backup_dir = get_backup_dir(backup_name)
        backup_dir.mkdir(parents=True, exist_ok=True)
        backup_databases(backup_dir)
        backup_data_files(backup_dir)
        backup_exports(backup_dir)
        create_backup_metadata(backup_dir, reason)
    except (OSError, sqlite3.Error) as exc:
        logger.error("Backup failed: %s", exc)
        return False, f"Backup failed: {exc}", Path()
    logger.info("Backup created in %s", backup_dir)
    return True, f"Backup created successfully: {backup_dir.name}", backup_dir


def restore_databases(backup_dir: Path) -> None:
    # Pooled connections still point at the files about to be replaced.
    database.production_engine.dispose()
    database.staff_engine.dispose()
    for db_name in DATABASE_FILES:
        backup_path = backup_dir / db_name
        if not backup_path.exists():
            continue
        target_path = DATA_DIR / db_name
        if target_path.exists():
            target_path.unlink()
        shutil.copy2(backup_path, target_path)


def restore_data_files(backup_dir: Path) -> None:
    for filename in DATA_FILES:
        backup_path = backup_dir / filename
        if backup_path.exists():
            shutil.copy2(backup_path, DATA_DIR / filename)


def restore_exports(backup_dir: Path) -> None:
    backup_exports_dir = backup_dir / "exports"
    if not backup_exports_dir.exists():
        return
    target_exports_dir = DATA_DIR / "exports"
    if target_exports_dir.exists():
        shutil.rmtree(target_exports_dir)
    shutil.copytree(backup_exports_dir, target_exports_dir)


def restore_from_backup(backup_path: Path) -> Tuple[bool, str]:
    """Restore the planner data from a backup directory.

    Returns:
        Tuple of (success, message)
    """
    if not backup_path.exists() or not backup_path.is_dir():
        return False, "Backup directory not found"
    try:
        restore_databases(backup_path)
        restore_data_files(backup_path)
        restore_exports(backup_path)
    except OSError as exc:
        logger.error("Restore from %s failed: %s", backup_path, exc)
        return False, f"Restore failed: {exc}"
    return True, f"Restore completed successfully from: {backup_path.name}"


def delete_backup(backup_path: Path) -> Tuple[bool, str]:
    if not backup_path.exists():
        return False, "Backup not found"
    try:
        shutil.rmtree(backup_path)
    except OSError as exc:
        return False, f"Failed to delete backup: {exc}"
    return True, f"Backup deleted: {backup_path.name}"


def format_size(size_bytes: float) -> str:
    """Format byte size to human-readable string (e.g. "1.5 MB")."""
    for unit in ["B", "KB", "MB", "GB"]:
        if size_bytes < 1024.0:
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.1f} TB"


def auto_backup_on_startup() -> Tuple[bool, str]:
    success, message, _ = create_full_backup(f"{AUTO_PREFIX}{_timestamp()}", reason="startup")
    return success, message


def backup_before_promotion() -> Tuple[bool, str]:
    """Backup taken right before a week promotion rewrites the live weeks."""
    success, message, _ = create_full_backup(f"{PROMOTION_PREFIX}{_timestamp()}", reason="promotion")
    return success, message


def cleanup_old_auto_backups(keep_count: int = 5, prefix: str = AUTO_PREFIX) -> int:
    """Remove old automatic backups, keeping only the most recent ones.

    Returns the number of directories removed.
    """
    if not BACKUP_ROOT.exists():
        return 0
    auto_backups = [item for item in BACKUP_ROOT.iterdir() if item.is_dir() and item.name.startswith(prefix)]
    auto_backups.sort(key=lambda item: item.name, reverse=True)
    removed = 0
    for old_backup in auto_backups[keep_count:]:
        try:
            shutil.rmtree(old_backup)
        except OSError as exc:
            logger.warning("Could not remove old backup %s: %s", old_backup, exc)
            continue
        removed += 1
    return removed
