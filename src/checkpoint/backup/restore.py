"""
Restore files and databases from a snapshot.

Every restored file is first copied next to its destination under a
temporary name, checked against the manifest hash and only then moved
into place. An existing file with different content is kept as
"<name>.pre-restore-<timestamp>" unless safety copies are disabled.

SQLite dumps (".db.gz") are decompressed, checked with PRAGMA
integrity_check and written to the configured database path, or to
"<destination>/databases/<name>.db" when restoring elsewhere. Dumps made
by a dump command are listed as skipped; they must be loaded with the
database's own tools.
"""

from __future__ import annotations

import gzip
import logging
import os
import shutil
import sqlite3
import zlib
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from checkpoint.config.settings import Settings
from checkpoint.fsutil import sha256_file
from checkpoint.layout import (
    FILES_DIR,
    Snapshot,
    latest_complete_snapshot,
    load_snapshot,
    snapshots_root,
)
from checkpoint.locking.lock import BackupLock, create_lock
from checkpoint.verify.manifest import DatabaseEntry, FileEntry, ManifestError, load_manifest

logger = logging.getLogger(__name__)

SQLITE_DUMP_SUFFIX = ".db.gz"


class RestoreError(Exception):
    """Raised when a restore cannot start (no snapshot, bad manifest, no match)."""

    pass


@dataclass
class RestoreResult:
    """Outcome of a restore."""

    snapshot: str
    destination: str
    dry_run: bool = False
    restored: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    safety_copies: list[str] = field(default_factory=list)
    skipped: list[tuple[str, str]] = field(default_factory=list)
    failed: list[tuple[str, str]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "snapshot": self.snapshot,
            "destination": self.destination,
            "dry_run": self.dry_run,
            "restored": self.restored,
            "unchanged": self.unchanged,
            "safety_copies": self.safety_copies,
            "skipped": [{"path": p, "reason": r} for p, r in self.skipped],
            "failed": [{"path": p, "error": e} for p, e in self.failed],
        }


class Restorer:
    """
    Copies snapshot content back into the project.

    The target's lock is held for the whole restore so a backup cannot
    read half-restored files and retention cannot delete the snapshot.

    Example:
        restorer = Restorer(load_config())
        result = restorer.restore(paths=["src/app.py"])
    """

    def __init__(
        self,
        settings: Settings,
        lock: BackupLock | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        settings.require_paths()
        self.target = settings.target
        self.project_dir = Path(settings.project_dir).expanduser()
        self.backup_dir = Path(settings.backup_dir).expanduser()
        self.databases = {db.name: db for db in settings.databases}
        self.lock = lock or create_lock(settings.lock_dir, settings.lock_backend)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._stamp = ""

    def find_snapshot(self, name: str | None = None) -> Snapshot:
        """
        Return the named snapshot, or the latest complete one.

        Raises:
            RestoreError: If there is no such complete snapshot.
        """
        if name is None:
            snapshot = latest_complete_snapshot(self.backup_dir)
            if snapshot is None:
                raise RestoreError(f"No complete snapshots in {self.backup_dir}")
            return snapshot

        snapshot = load_snapshot(snapshots_root(self.backup_dir) / name)
        if snapshot is None:
            raise RestoreError(f"Snapshot not found: {name}")
        if not snapshot.complete:
            raise RestoreError(f"Snapshot {name} is incomplete (no manifest)")
        return snapshot

    def restore(
        self,
        snapshot: str | None = None,
        paths: Iterable[str] = (),
        destination: Path | str | None = None,
        databases: bool = False,
        dry_run: bool = False,
        safety_copies: bool = True,
    ) -> RestoreResult:
        """
        Restore files, and optionally databases, from a snapshot.

        Args:
            snapshot: Snapshot name (default: latest complete).
            paths: Project-relative files or directories to restore
                (default: everything).
            destination: Restore under this directory instead of the project.
            databases: Also restore database dumps.
            dry_run: Report what would change without writing anything.
            safety_copies: Keep replaced files as .pre-restore copies.

        Raises:
            RestoreError: If the snapshot or its manifest is unusable, or
                no file in it matches the requested paths.
            LockBusyError: If a backup of this target is running.
        """
        chosen = self.find_snapshot(snapshot)
        try:
            manifest = load_manifest(chosen.path)
        except ManifestError as e:
            raise RestoreError(f"Cannot restore from {chosen.name}: {e}") from e

        root = Path(destination).expanduser() if destination else self.project_dir
        wanted = [self._normalize(p) for p in paths]
        entries = [
            e
            for e in manifest.files
            if e.path.startswith(FILES_DIR + "/") and _matches(_project_path(e), wanted)
        ]
        if wanted and not entries:
            raise RestoreError(f"No files in {chosen.name} match: {', '.join(wanted)}")

        result = RestoreResult(snapshot=chosen.name, destination=str(root), dry_run=dry_run)
        self._stamp = self._clock().strftime("%Y%m%d_%H%M%S")

        with self.lock.hold(self.target):
            for entry in entries:
                relative = _project_path(entry)
                source = chosen.path / entry.path
                self._restore_file(source, entry, root / relative, relative, result, safety_copies)
            if databases:
                for db_entry in manifest.databases:
                    self._restore_database(
                        chosen.path, db_entry, destination, result, safety_copies
                    )

        logger.info(
            "Restore from %s: %d restored, %d unchanged, %d failed",
            chosen.name,
            len(result.restored),
            len(result.unchanged),
            len(result.failed),
        )
        return result

    def _normalize(self, path: str) -> str:
        candidate = Path(path).expanduser()
        if candidate.is_absolute():
            try:
                candidate = candidate.resolve().relative_to(self.project_dir.resolve())
            except ValueError as e:
                raise RestoreError(f"{path} is outside {self.project_dir}") from e
        normalized = candidate.as_posix().strip("/")
        return "" if normalized == "." else normalized

    def _restore_file(
        self,
        source: Path,
        entry: FileEntry,
        target: Path,
        relative: str,
        result: RestoreResult,
        safety_copies: bool,
    ) -> None:
        if target.is_file() and _hash_or_none(target) == entry.hash:
            result.unchanged.append(relative)
            return
        if result.dry_run:
            result.restored.append(relative)
            return

        temp_path = target.with_name(f".{target.name}.restoring")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, temp_path)
            digest = sha256_file(temp_path)
        except OSError as e:
            temp_path.unlink(missing_ok=True)
            result.failed.append((relative, e.strerror or str(e)))
            return

        if digest != entry.hash:
            temp_path.unlink(missing_ok=True)
            result.failed.append((relative, "Snapshot copy does not match its manifest checksum"))
            return

        self._replace(temp_path, target, relative, result, safety_copies)

    def _restore_database(
        self,
        snapshot_dir: Path,
        entry: DatabaseEntry,
        destination: Path | str | None,
        result: RestoreResult,
        safety_copies: bool,
    ) -> None:
        file_name = Path(entry.path).name
        source = snapshot_dir / entry.path
        if not file_name.endswith(SQLITE_DUMP_SUFFIX):
            result.skipped.append((entry.path, f"Load manually: gunzip -c {source}"))
            return

        name = file_name[: -len(SQLITE_DUMP_SUFFIX)]
        config = self.databases.get(name)
        if destination:
            target = Path(destination).expanduser() / "databases" / f"{name}.db"
        elif config is not None and config.type == "sqlite" and config.path:
            target = Path(config.path).expanduser()
        else:
            result.skipped.append((entry.path, f"No SQLite database named {name} is configured"))
            return

        if _hash_or_none(source) != entry.hash:
            result.failed.append((entry.path, "Dump does not match its manifest checksum"))
            return
        if Path(f"{target}-wal").exists():
            result.failed.append(
                (entry.path, f"{target.name} is in use (write-ahead log present)")
            )
            return
        if result.dry_run:
            result.restored.append(entry.path)
            return

        temp_path = target.with_name(f".{target.name}.restoring")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with gzip.open(source, "rb") as f_in, open(temp_path, "wb") as f_out:
                shutil.copyfileobj(f_in, f_out)
        except (OSError, EOFError, zlib.error) as e:
            temp_path.unlink(missing_ok=True)
            result.failed.append((entry.path, f"Cannot decompress dump: {e}"))
            return

        problem = _sqlite_problem(temp_path)
        if problem is not None:
            temp_path.unlink(missing_ok=True)
            result.failed.append((entry.path, problem))
            return

        self._replace(temp_path, target, entry.path, result, safety_copies)

    def _replace(
        self,
        temp_path: Path,
        target: Path,
        label: str,
        result: RestoreResult,
        safety_copies: bool,
    ) -> None:
        try:
            if safety_copies and target.exists():
                safety = target.with_name(f"{target.name}.pre-restore-{self._stamp}")
                shutil.copy2(target, safety)
                result.safety_copies.append(str(safety))
            os.replace(temp_path, target)
        except OSError as e:
            temp_path.unlink(missing_ok=True)
            result.failed.append((label, e.strerror or str(e)))
            return
        logger.debug("Restored %s", target)
        result.restored.append(label)


def _project_path(entry: FileEntry) -> str:
    return entry.path[len(FILES_DIR) + 1:]


def _matches(relative: str, wanted: list[str]) -> bool:
    if not wanted:
        return True
    return any(w == "" or relative == w or relative.startswith(w + "/") for w in wanted)


def _hash_or_none(path: Path) -> str | None:
    try:
        return sha256_file(path)
    except OSError:
        return None


def _sqlite_problem(db_path: Path) -> str | None:
    """Return why a restored database is unusable, or None if it is fine."""
    try:
        conn = sqlite3.connect(db_path)
    except sqlite3.Error as e:
        return f"Cannot open restored database: {e}"
    try:
        (check,) = conn.execute("PRAGMA integrity_check").fetchone()
    except sqlite3.Error as e:
        return f"Restored database is unreadable: {e}"
    finally:
        conn.close()
    if check != "ok":
        return f"Restored database failed integrity check: {check}"
    return None
