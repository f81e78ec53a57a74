"""
Backup store (R2 mount) restore and sync.

Layout of the backup tree:
  BACKUP_DIR/openclaw/...   mirror of the local config dir
  BACKUP_DIR/workspace/...  mirror of the workspace (without skills)
  BACKUP_DIR/skills/...     mirror of the skills dir
  BACKUP_DIR/.last-sync     ISO-8601 timestamp of the last sync

The .last-sync marker is the only ordering signal between local and backup
state. A missing or unparseable marker is older than any present one.
"""

import subprocess
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

SYNC_MARKER = ".last-sync"
CONFIG_FILENAME = "openclaw.json"

EPOCH = datetime.fromtimestamp(0, timezone.utc)


def warn(message: str):
    print(f"[backup] WARNING: {message}", file=sys.stderr, flush=True)


def read_marker(path: Path) -> Optional[str]:
    """Read a sync marker file. Returns None if it does not exist."""
    try:
        text = path.read_text().strip()
    except FileNotFoundError:
        return None
    except OSError as e:
        warn(f"Could not read sync marker {path}: {e}")
        return None
    return text or None


def parse_marker(value: Optional[str]) -> datetime:
    """Parse an ISO-8601 marker. Missing or invalid values become the epoch."""
    if not value:
        return EPOCH
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        warn(f"Unparseable sync timestamp {value!r}, treating as epoch")
        return EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def should_restore(backup_dir: Path, config_dir: Path) -> bool:
    """True iff the backup marker is strictly newer than the local one."""
    backup_marker = read_marker(backup_dir / SYNC_MARKER)
    if backup_marker is None:
        print("[backup] No backup sync timestamp found, skipping restore", flush=True)
        return False

    local_marker = read_marker(config_dir / SYNC_MARKER)
    print(f"[backup] Backup last sync: {backup_marker}", flush=True)
    print(f"[backup] Local last sync: {local_marker or '(none)'}", flush=True)

    if parse_marker(backup_marker) > parse_marker(local_marker):
        print("[backup] Backup is newer, will restore", flush=True)
        return True
    print("[backup] Local data is newer or same, skipping restore", flush=True)
    return False


def copy_tree(src: Path, dest: Path, timeout: int) -> bool:
    """Copy src's contents over dest with `cp -a`, bounded by timeout. Never raises."""
    dest.mkdir(parents=True, exist_ok=True)
    try:
        result = subprocess.run(
            ["cp", "-a", f"{src}/.", f"{dest}/"],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        warn(f"Copy {src} -> {dest} timed out after {timeout}s")
        return False
    except OSError as e:
        warn(f"Copy {src} -> {dest} failed: {e}")
        return False
    if result.returncode != 0:
        warn(f"Copy {src} -> {dest} failed: {result.stderr.strip()}")
        return False
    return True


def _has_entries(path: Path) -> bool:
    try:
        return path.is_dir() and any(path.iterdir())
    except OSError:
        return False


def restore_from_backup(
    backup_dir: Path,
    config_dir: Path,
    workspace_dir: Path,
    skills_dir: Path,
    timeout: int = 60,
) -> dict:
    """Restore config, workspace and skills trees if the backup is newer.

    Each tree is restored independently. A failed or timed out copy is a
    warning; whatever local state exists is kept. Returns a per-tree report:
    "restored", "failed", or "skipped".
    """
    report = {"config": "skipped", "workspace": "skipped", "skills": "skipped"}

    if not backup_dir.is_dir():
        print(f"[backup] Backup store not mounted at {backup_dir}, starting fresh", flush=True)
        return report

    if not should_restore(backup_dir, config_dir):
        return report

    backup_config = backup_dir / "openclaw"
    if (backup_config / CONFIG_FILENAME).is_file():
        print(f"[backup] Restoring config from {backup_config} (timeout: {timeout}s)...", flush=True)
        if copy_tree(backup_config, config_dir, timeout):
            try:
                (config_dir / SYNC_MARKER).write_text((backup_dir / SYNC_MARKER).read_text())
            except OSError as e:
                warn(f"Could not copy sync marker: {e}")
            print("[backup] Restored config from backup", flush=True)
            report["config"] = "restored"
        else:
            warn("Config restore timed out or failed, starting fresh")
            report["config"] = "failed"
    else:
        print(f"[backup] Backup mounted at {backup_dir} but no config backup found yet", flush=True)

    for name, dest in (("workspace", workspace_dir), ("skills", skills_dir)):
        src = backup_dir / name
        if not _has_entries(src):
            continue
        print(f"[backup] Restoring {name} from {src} (timeout: {timeout}s)...", flush=True)
        if copy_tree(src, dest, timeout):
            print(f"[backup] Restored {name} from backup", flush=True)
            report[name] = "restored"
        else:
            warn(f"{name.capitalize()} restore timed out or failed")
            report[name] = "failed"

    return report


# ============================================================
# Sync (local -> backup), triggered by the controller
# ============================================================

@dataclass
class SyncResult:
    success: bool
    last_sync: Optional[str] = None
    error: Optional[str] = None
    details: Optional[str] = None

    def to_dict(self) -> dict:
        return {k: v for k, v in self.__dict__.items() if v is not None}


def sync_to_backup(
    backup_dir: Path,
    config_dir: Path,
    workspace_dir: Path,
    skills_dir: Path,
    timeout: int = 30,
) -> SyncResult:
    """Mirror local config, workspace and skills into the backup tree, then stamp .last-sync."""
    if not backup_dir.is_dir():
        return SyncResult(False, error="Backup storage is not configured", details=f"{backup_dir} is not mounted")

    if not (config_dir / CONFIG_FILENAME).is_file():
        return SyncResult(
            False,
            error="Sync aborted: no config file found",
            details=f"{CONFIG_FILENAME} not found in config directory.",
        )

    commands = [
        [
            "rsync", "-r", "--no-times", "--delete",
            "--exclude=*.lock", "--exclude=*.log", "--exclude=*.tmp",
            f"{config_dir}/", f"{backup_dir / 'openclaw'}/",
        ],
        ["rsync", "-r", "--no-times", "--delete", "--exclude=skills", f"{workspace_dir}/", f"{backup_dir / 'workspace'}/"],
        ["rsync", "-r", "--no-times", "--delete", f"{skills_dir}/", f"{backup_dir / 'skills'}/"],
    ]

    for path in (workspace_dir, skills_dir):
        path.mkdir(parents=True, exist_ok=True)

    for cmd in commands:
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired:
            return SyncResult(False, error="Sync error", details=f"{cmd[-2]} timed out after {timeout}s")
        except OSError as e:
            return SyncResult(False, error="Sync error", details=str(e))
        if result.returncode != 0:
            return SyncResult(False, error="Sync failed", details=result.stderr.strip() or result.stdout.strip())

    last_sync = datetime.now(timezone.utc).isoformat(timespec="seconds")
    try:
        (backup_dir / SYNC_MARKER).write_text(last_sync + "\n")
    except OSError as e:
        return SyncResult(False, error="Sync failed", details=f"Could not write timestamp: {e}")

    print(f"[backup] Synced local state to {backup_dir} at {last_sync}", flush=True)
    return SyncResult(True, last_sync=last_sync)


def backup_status(backup_dir: Path) -> dict:
    """Report whether the backup store is mounted and when it was last synced."""
    configured = backup_dir.is_dir()
    return {
        "configured": configured,
        "lastSync": read_marker(backup_dir / SYNC_MARKER) if configured else None,
        "message": (
            "Backup storage is mounted. Your data will persist across container restarts."
            if configured
            else "Backup storage is not mounted. Paired devices and conversations will be lost when the container restarts."
        ),
    }
