"""
Snapshot verification.

Three fidelity tiers, each checking the snapshot against its manifest:

    quick  existence and size of every entry; never hashes anything
    full   quick + a fresh SHA-256 of every entry + database deep checks
           (gzip integrity, SQLite integrity_check, schema, table count)
    cloud  every manifest entry is present on the remote with the same size

Exit codes: 0 pass (warnings allowed), 1 at least one failed check,
2 could not verify (no manifest, snapshot missing, remote unreachable,
or a backup currently holds the target's lock).
"""

from __future__ import annotations

import gzip
import json
import logging
import os
import shutil
import sqlite3
import tempfile
import zlib
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from checkpoint.fsutil import sha256_file
from checkpoint.layout import FILES_DIR, KEEP_MARKER, MANIFEST_NAME
from checkpoint.locking.lock import BackupLock
from checkpoint.verify.manifest import DatabaseEntry, Manifest, ManifestError, load_manifest
from checkpoint.verify.remote import RemoteStore, RemoteUnavailableError

logger = logging.getLogger(__name__)

# Files smaller than this in a full check are reported as suspicious
SMALL_FILE_BYTES = 100


class CheckStatus(Enum):
    """Result of a single check, ordered by badness."""

    PASS = "pass"
    WARNING = "warning"
    FAIL = "fail"
    ERROR = "error"


class VerifyMode(Enum):
    QUICK = "quick"
    FULL = "full"
    CLOUD = "cloud"


@dataclass(frozen=True)
class CheckResult:
    """One verification finding."""

    name: str
    status: CheckStatus
    message: str = ""
    path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
            "path": self.path,
        }


@dataclass
class VerificationReport:
    """All findings of one verification pass."""

    mode: VerifyMode
    target: str
    snapshot: str
    started_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    items_checked: int = 0
    checks: list[CheckResult] = field(default_factory=list)

    def add(self, name: str, status: CheckStatus, message: str = "", path: str | None = None) -> None:
        self.checks.append(CheckResult(name, status, message, path))

    def _with(self, status: CheckStatus) -> list[CheckResult]:
        return [c for c in self.checks if c.status == status]

    @property
    def warnings(self) -> list[CheckResult]:
        return self._with(CheckStatus.WARNING)

    @property
    def failures(self) -> list[CheckResult]:
        return self._with(CheckStatus.FAIL)

    @property
    def errors(self) -> list[CheckResult]:
        return self._with(CheckStatus.ERROR)

    @property
    def mismatches(self) -> int:
        return len(self.failures)

    @property
    def status(self) -> CheckStatus:
        if self.errors:
            return CheckStatus.ERROR
        if self.failures:
            return CheckStatus.FAIL
        if self.warnings:
            return CheckStatus.WARNING
        return CheckStatus.PASS

    @property
    def exit_code(self) -> int:
        status = self.status
        if status == CheckStatus.ERROR:
            return 2
        if status == CheckStatus.FAIL:
            return 1
        return 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "target": self.target,
            "snapshot": self.snapshot,
            "started_at": self.started_at,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "items_checked": self.items_checked,
            "counts": {
                "warnings": len(self.warnings),
                "failures": len(self.failures),
                "errors": len(self.errors),
            },
            "checks": [c.to_dict() for c in self.checks if c.status != CheckStatus.PASS],
        }


def format_json(report: VerificationReport) -> str:
    return json.dumps(report.to_dict(), indent=2)


def format_compact(report: VerificationReport) -> str:
    """Single line suitable for status bars and logs."""
    status = report.status.value.upper()
    parts = [f"{report.mode.value} {status}", f"{report.items_checked} items"]
    if report.failures:
        parts.append(f"{len(report.failures)} failed")
    if report.warnings:
        parts.append(f"{len(report.warnings)} warnings")
    if report.errors:
        parts.append(report.errors[0].message)
    return f"{report.target}/{report.snapshot}: " + ", ".join(parts)


def format_human(report: VerificationReport) -> str:
    symbols = {
        CheckStatus.WARNING: "!",
        CheckStatus.FAIL: "x",
        CheckStatus.ERROR: "x",
    }
    lines = [
        f"Verification ({report.mode.value}) of {report.target} snapshot {report.snapshot}",
        "=" * 50,
        f"Items checked: {report.items_checked}",
        f"Result: {report.status.value.upper()}",
    ]
    findings = [c for c in report.checks if c.status != CheckStatus.PASS]
    if findings:
        lines.append("")
        for check in findings:
            where = f" [{check.path}]" if check.path else ""
            lines.append(f"  {symbols[check.status]} {check.name}{where}: {check.message}")
    return "\n".join(lines)


class Verifier:
    """
    Verifies snapshots against their manifests.

    Args:
        target: Target id, used for the lock check and reports.
        lock: If given, verification reports "could not verify" while a
            backup holds this target's lock.
    """

    def __init__(self, target: str, lock: BackupLock | None = None) -> None:
        self.target = target
        self.lock = lock

    def verify_quick(
        self, snapshot_dir: Path, manifest: Manifest | None = None
    ) -> VerificationReport:
        """Check existence and size of every manifest entry."""
        report, manifest = self._prepare(VerifyMode.QUICK, snapshot_dir, manifest)
        if manifest is None:
            return report
        for entry in manifest.entries():
            self._check_presence(report, Path(snapshot_dir), entry.path, entry.size)
        return report

    def verify_full(
        self, snapshot_dir: Path, manifest: Manifest | None = None
    ) -> VerificationReport:
        """Recompute every hash and run database deep checks."""
        snapshot_dir = Path(snapshot_dir)
        report, manifest = self._prepare(VerifyMode.FULL, snapshot_dir, manifest)
        if manifest is None:
            return report

        for file_entry in manifest.files:
            if not self._check_presence(report, snapshot_dir, file_entry.path, file_entry.size):
                continue
            self._check_hash(report, snapshot_dir, file_entry.path, file_entry.hash)
            if file_entry.size < SMALL_FILE_BYTES and file_entry.path.endswith((".db", ".sqlite")):
                report.add(
                    "small-file",
                    CheckStatus.WARNING,
                    f"Database file is only {file_entry.size} bytes",
                    file_entry.path,
                )

        for db_entry in manifest.databases:
            if not self._check_presence(report, snapshot_dir, db_entry.path, db_entry.size):
                continue
            if not self._check_hash(report, snapshot_dir, db_entry.path, db_entry.hash):
                continue
            if db_entry.size < SMALL_FILE_BYTES:
                report.add(
                    "small-file",
                    CheckStatus.WARNING,
                    f"Dump is only {db_entry.size} bytes",
                    db_entry.path,
                )
            self._check_database(report, snapshot_dir, db_entry)

        self._check_untracked(report, snapshot_dir, manifest)
        return report

    def verify_cloud(
        self,
        snapshot_dir: Path,
        remote: RemoteStore,
        manifest: Manifest | None = None,
    ) -> VerificationReport:
        """Check that the remote copy has every manifest entry at the right size."""
        snapshot_dir = Path(snapshot_dir)
        report, manifest = self._prepare(VerifyMode.CLOUD, snapshot_dir, manifest)
        if manifest is None:
            return report

        try:
            remote_files = remote.list_files(snapshot_dir.name)
        except RemoteUnavailableError as e:
            report.add("remote", CheckStatus.ERROR, str(e))
            return report

        for entry in manifest.entries():
            report.items_checked += 1
            remote_size = remote_files.get(entry.path)
            if remote_size is None:
                report.add("remote-missing", CheckStatus.FAIL, "Not found on remote", entry.path)
            elif remote_size >= 0 and remote_size != entry.size:
                report.add(
                    "remote-size",
                    CheckStatus.FAIL,
                    f"Remote size {remote_size} != expected {entry.size}",
                    entry.path,
                )
            else:
                report.add("remote-present", CheckStatus.PASS, path=entry.path)
        return report

    def _prepare(
        self,
        mode: VerifyMode,
        snapshot_dir: Path,
        manifest: Manifest | None,
    ) -> tuple[VerificationReport, Manifest | None]:
        snapshot_dir = Path(snapshot_dir)
        report = VerificationReport(mode=mode, target=self.target, snapshot=snapshot_dir.name)

        if self.lock is not None and self.lock.is_locked(self.target):
            report.add("lock", CheckStatus.ERROR, "A backup is currently running")
            return report, None

        if not snapshot_dir.is_dir():
            report.add("snapshot", CheckStatus.ERROR, f"Snapshot not found: {snapshot_dir}")
            return report, None

        if manifest is None:
            try:
                manifest = load_manifest(snapshot_dir)
            except ManifestError as e:
                report.add("manifest", CheckStatus.ERROR, str(e))
                return report, None

        report.add("manifest", CheckStatus.PASS)
        return report, manifest

    def _check_presence(
        self, report: VerificationReport, snapshot_dir: Path, relative: str, expected_size: int
    ) -> bool:
        report.items_checked += 1
        path = snapshot_dir / relative
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            report.add("missing", CheckStatus.FAIL, "File is missing", relative)
            return False
        except OSError as e:
            report.add("unreadable", CheckStatus.FAIL, str(e), relative)
            return False

        if size != expected_size:
            report.add(
                "size",
                CheckStatus.FAIL,
                f"Size {size} != expected {expected_size}",
                relative,
            )
            return False

        report.add("present", CheckStatus.PASS, path=relative)
        return True

    def _check_hash(
        self, report: VerificationReport, snapshot_dir: Path, relative: str, expected: str
    ) -> bool:
        try:
            actual = sha256_file(snapshot_dir / relative)
        except OSError as e:
            report.add("unreadable", CheckStatus.FAIL, str(e), relative)
            return False
        if actual != expected:
            report.add(
                "hash",
                CheckStatus.FAIL,
                f"Checksum mismatch: expected {expected[:16]}..., got {actual[:16]}...",
                relative,
            )
            return False
        return True

    def _check_database(
        self, report: VerificationReport, snapshot_dir: Path, entry: DatabaseEntry
    ) -> None:
        path = snapshot_dir / entry.path
        if not entry.path.endswith(".gz"):
            return

        try:
            with gzip.open(path, "rb") as f:
                while f.read(1024 * 1024):
                    pass
        except (OSError, EOFError, zlib.error) as e:
            report.add("gzip", CheckStatus.FAIL, f"Compressed dump is corrupt: {e}", entry.path)
            return

        if not entry.path.endswith(".db.gz"):
            return

        with tempfile.TemporaryDirectory(prefix="checkpoint-verify-") as temp_dir:
            db_path = Path(temp_dir) / "restore.db"
            with gzip.open(path, "rb") as f_in, open(db_path, "wb") as f_out:
                shutil.copyfileobj(f_in, f_out)
            self._check_sqlite(report, db_path, entry)

    def _check_sqlite(self, report: VerificationReport, db_path: Path, entry: DatabaseEntry) -> None:
        try:
            conn = sqlite3.connect(db_path)
        except sqlite3.Error as e:
            report.add("sqlite-open", CheckStatus.FAIL, str(e), entry.path)
            return

        try:
            (result,) = conn.execute("PRAGMA integrity_check").fetchone()
            if result != "ok":
                report.add("sqlite-integrity", CheckStatus.FAIL, str(result), entry.path)
                return

            tables = conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
            ).fetchall()
        except sqlite3.Error as e:
            report.add("sqlite-schema", CheckStatus.FAIL, f"Schema unreadable: {e}", entry.path)
            return
        finally:
            conn.close()

        if not tables:
            report.add("sqlite-tables", CheckStatus.WARNING, "Database has no tables", entry.path)
        elif entry.item_count is not None and len(tables) != entry.item_count:
            report.add(
                "sqlite-tables",
                CheckStatus.FAIL,
                f"{len(tables)} tables, expected {entry.item_count}",
                entry.path,
            )
        else:
            report.add("sqlite", CheckStatus.PASS, path=entry.path)

    def _check_untracked(
        self, report: VerificationReport, snapshot_dir: Path, manifest: Manifest
    ) -> None:
        known = {e.path for e in manifest.entries()}
        present: set[str] = set()
        for dirpath, _, filenames in os.walk(snapshot_dir):
            for name in filenames:
                if name in (MANIFEST_NAME, KEEP_MARKER):
                    continue
                relative = os.path.relpath(os.path.join(dirpath, name), snapshot_dir)
                present.add(relative.replace(os.sep, "/"))

        for relative in sorted(present - known):
            report.add("untracked", CheckStatus.WARNING, "File is not in the manifest", relative)

        # SQLite side files copied without their database
        for relative in sorted(present):
            if not relative.startswith(FILES_DIR + "/"):
                continue
            for suffix in ("-wal", "-shm"):
                if relative.endswith(suffix) and relative[: -len(suffix)] not in present:
                    report.add(
                        "orphan-sidecar",
                        CheckStatus.WARNING,
                        f"{suffix[1:].upper()} file without its database",
                        relative,
                    )
