"""
Backup directory layout.

    <backup_dir>/
        .hash-cache.json
        snapshots/
            20240115_103000/
                .checkpoint-manifest.json
                .checkpoint-keep           optional never-delete marker
                files/...
                databases/<name>.db.gz

Snapshot names are UTC timestamps. A snapshot is complete once its
manifest exists; until then it is in progress (or was abandoned).
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

logger = logging.getLogger(__name__)

SNAPSHOTS_DIR = "snapshots"
FILES_DIR = "files"
DATABASES_DIR = "databases"
MANIFEST_NAME = ".checkpoint-manifest.json"
KEEP_MARKER = ".checkpoint-keep"
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"

_NAME_RE = re.compile(r"^(\d{8}_\d{6})(?:-(\d+))?$")


@dataclass(frozen=True)
class Snapshot:
    """One snapshot directory."""

    name: str
    path: Path
    created_at: datetime
    complete: bool
    pinned: bool = False

    def size_bytes(self) -> int:
        """Disk usage of the snapshot, counting hard-linked files once per snapshot."""
        total = 0
        for dirpath, _, filenames in os.walk(self.path):
            for name in filenames:
                try:
                    total += os.lstat(os.path.join(dirpath, name)).st_size
                except OSError:
                    continue
        return total


def parse_snapshot_name(name: str) -> datetime | None:
    """Return the UTC creation time encoded in a snapshot name."""
    match = _NAME_RE.match(name)
    if not match:
        return None
    try:
        return datetime.strptime(match.group(1), TIMESTAMP_FORMAT).replace(tzinfo=UTC)
    except ValueError:
        return None


def snapshots_root(backup_dir: Path) -> Path:
    return Path(backup_dir) / SNAPSHOTS_DIR


def new_snapshot_path(backup_dir: Path, now: datetime) -> Path:
    """Pick an unused snapshot directory name for a run starting at now."""
    root = snapshots_root(backup_dir)
    base = now.astimezone(UTC).strftime(TIMESTAMP_FORMAT)
    candidate = root / base
    counter = 1
    while candidate.exists():
        candidate = root / f"{base}-{counter}"
        counter += 1
    return candidate


def load_snapshot(path: Path) -> Snapshot | None:
    path = Path(path)
    created_at = parse_snapshot_name(path.name)
    if created_at is None or not path.is_dir():
        return None
    return Snapshot(
        name=path.name,
        path=path,
        created_at=created_at,
        complete=(path / MANIFEST_NAME).exists(),
        pinned=(path / KEEP_MARKER).exists(),
    )


def list_snapshots(backup_dir: Path) -> list[Snapshot]:
    """List snapshots oldest first. Unrecognised entries are ignored."""
    root = snapshots_root(backup_dir)
    if not root.is_dir():
        return []

    snapshots = []
    for entry in root.iterdir():
        snapshot = load_snapshot(entry)
        if snapshot is None:
            if not entry.name.startswith("."):
                logger.debug("Ignoring unrecognised entry %s", entry)
            continue
        snapshots.append(snapshot)
    return sorted(snapshots, key=lambda s: (s.created_at, s.name))


def latest_complete_snapshot(backup_dir: Path) -> Snapshot | None:
    complete = [s for s in list_snapshots(backup_dir) if s.complete]
    return complete[-1] if complete else None
