"""
Snapshot manifests.

A manifest is the ground-truth record of what a completed snapshot should
contain. It is written once, atomically, after every file and dump has
landed, and carries a SHA-256 checksum over its own canonical content so
a damaged manifest is detected rather than trusted.

    {
        "version": 1,
        "timestamp": "2024-01-15T10:30:00+00:00",
        "target": "myproject",
        "snapshot": "20240115_103000",
        "files": [{"path": "files/src/app.py", "size": 1234, "hash": "..."}],
        "databases": [{"path": "databases/app.db.gz", "size": 999,
                       "hash": "...", "item_count": 4}],
        "checksum": "..."
    }
"""

from __future__ import annotations

import dataclasses
import hashlib
import json
import logging
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from checkpoint.changes.detector import ChangeDetector
from checkpoint.fsutil import atomic_write_json, read_json, sha256_file
from checkpoint.layout import DATABASES_DIR, FILES_DIR, MANIFEST_NAME

logger = logging.getLogger(__name__)

MANIFEST_VERSION = 1


class ManifestError(Exception):
    """Raised when a manifest is missing, unreadable or fails its checksum."""

    pass


@dataclass(frozen=True)
class FileEntry:
    path: str
    size: int
    hash: str

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "size": self.size, "hash": self.hash}


@dataclass(frozen=True)
class DatabaseEntry:
    path: str
    size: int
    hash: str
    item_count: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "size": self.size,
            "hash": self.hash,
            "item_count": self.item_count,
        }


@dataclass(frozen=True)
class Manifest:
    """Expected content of one snapshot."""

    version: int
    timestamp: str
    target: str
    snapshot: str
    files: tuple[FileEntry, ...] = ()
    databases: tuple[DatabaseEntry, ...] = ()
    checksum: str = ""

    def content_dict(self) -> dict[str, Any]:
        """All fields except the checksum."""
        return {
            "version": self.version,
            "timestamp": self.timestamp,
            "target": self.target,
            "snapshot": self.snapshot,
            "files": [f.to_dict() for f in self.files],
            "databases": [d.to_dict() for d in self.databases],
        }

    def compute_checksum(self) -> str:
        canonical = json.dumps(self.content_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode()).hexdigest()

    def entries(self) -> list[FileEntry | DatabaseEntry]:
        return [*self.files, *self.databases]

    def to_dict(self) -> dict[str, Any]:
        data = self.content_dict()
        data["checksum"] = self.checksum or self.compute_checksum()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Manifest:
        return cls(
            version=int(data["version"]),
            timestamp=str(data.get("timestamp", "")),
            target=str(data.get("target", "")),
            snapshot=str(data.get("snapshot", "")),
            files=tuple(
                FileEntry(path=str(f["path"]), size=int(f["size"]), hash=str(f["hash"]))
                for f in data.get("files", [])
            ),
            databases=tuple(
                DatabaseEntry(
                    path=str(d["path"]),
                    size=int(d["size"]),
                    hash=str(d["hash"]),
                    item_count=d.get("item_count"),
                )
                for d in data.get("databases", [])
            ),
            checksum=str(data.get("checksum", "")),
        )


def _walk_relative(root: Path, base: Path) -> list[str]:
    if not root.is_dir():
        return []
    paths = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for name in sorted(filenames):
            if name.endswith(".partial") and name.startswith("."):
                continue
            paths.append(os.path.relpath(os.path.join(dirpath, name), base).replace(os.sep, "/"))
    return paths


def generate_manifest(
    snapshot_dir: Path,
    target: str,
    known_hashes: Mapping[str, str] | None = None,
    item_counts: Mapping[str, int] | None = None,
    detector: ChangeDetector | None = None,
    clock: Callable[[], datetime] | None = None,
) -> Manifest:
    """
    Build and atomically write the manifest for a snapshot directory.

    Args:
        snapshot_dir: Snapshot to describe.
        target: Target id recorded in the manifest.
        known_hashes: Hashes already computed during the run, keyed by
            path relative to the snapshot. These skip re-reading the copy.
        item_counts: Table counts for database dumps, keyed the same way.
        detector: Change detector used to hash files not in known_hashes.
        clock: Returns the current aware datetime.

    Returns:
        The written Manifest.
    """
    snapshot_dir = Path(snapshot_dir)
    known_hashes = known_hashes or {}
    item_counts = item_counts or {}
    now = clock() if clock else datetime.now(UTC)

    def digest(relative: str) -> str:
        if relative in known_hashes:
            return known_hashes[relative]
        full = snapshot_dir / relative
        if detector is not None:
            return detector.hash(full)
        return sha256_file(full)

    files = tuple(
        FileEntry(path=rel, size=(snapshot_dir / rel).stat().st_size, hash=digest(rel))
        for rel in _walk_relative(snapshot_dir / FILES_DIR, snapshot_dir)
    )
    databases = tuple(
        DatabaseEntry(
            path=rel,
            size=(snapshot_dir / rel).stat().st_size,
            hash=digest(rel),
            item_count=item_counts.get(rel),
        )
        for rel in _walk_relative(snapshot_dir / DATABASES_DIR, snapshot_dir)
    )

    manifest = Manifest(
        version=MANIFEST_VERSION,
        timestamp=now.isoformat(),
        target=target,
        snapshot=snapshot_dir.name,
        files=files,
        databases=databases,
    )
    manifest = dataclasses.replace(manifest, checksum=manifest.compute_checksum())
    write_manifest(snapshot_dir, manifest)
    logger.info(
        "Wrote manifest for %s: %d files, %d databases", snapshot_dir.name, len(files), len(databases)
    )
    return manifest


def write_manifest(snapshot_dir: Path, manifest: Manifest) -> Path:
    path = Path(snapshot_dir) / MANIFEST_NAME
    atomic_write_json(path, manifest.to_dict())
    return path


def load_manifest(snapshot_dir: Path) -> Manifest:
    """
    Load and check a snapshot's manifest.

    Raises:
        ManifestError: If the manifest is missing, malformed, of an
            unsupported version, or fails its checksum.
    """
    path = Path(snapshot_dir) / MANIFEST_NAME
    if not path.exists():
        raise ManifestError(f"No manifest in {snapshot_dir}")

    data = read_json(path)
    if not isinstance(data, dict):
        raise ManifestError(f"Manifest is not valid JSON: {path}")

    try:
        manifest = Manifest.from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        raise ManifestError(f"Manifest is malformed: {e}") from e

    if manifest.version != MANIFEST_VERSION:
        raise ManifestError(f"Unsupported manifest version: {manifest.version}")
    if manifest.checksum and manifest.checksum != manifest.compute_checksum():
        raise ManifestError(f"Manifest checksum mismatch: {path}")

    return manifest
