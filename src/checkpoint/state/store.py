"""
Persistent per-target state.

Layout under the state directory:

    <state_dir>/<target>/last-backup.json        latest BackupRun
    <state_dir>/<target>/history.jsonl           failing runs, newest last
    <state_dir>/<target>/escalation.json         EscalationState
    <state_dir>/<target>/daemon-suspended.json   set when a run stops the daemon

All writes go through atomic replace. Missing or unparsable files read
as None, which callers treat as "unknown".
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from checkpoint.fsutil import atomic_write_json, atomic_write_lines, read_json
from checkpoint.state.models import BackupRun, EscalationState

logger = logging.getLogger(__name__)

# Maximum entries kept in the failure history log
MAX_HISTORY_ENTRIES = 100

RUN_FILE = "last-backup.json"
HISTORY_FILE = "history.jsonl"
ESCALATION_FILE = "escalation.json"
SUSPENSION_FILE = "daemon-suspended.json"


class StateError(Exception):
    """Raised when state cannot be written."""

    pass


class StateStore:
    """
    Reads and writes run, history, escalation and suspension state.

    Example:
        store = StateStore(Path("~/.checkpoint/state").expanduser())
        store.write_run(run)
        last = store.read_run("myproject")
    """

    def __init__(self, state_dir: Path, max_history: int = MAX_HISTORY_ENTRIES) -> None:
        self.state_dir = Path(state_dir)
        self.max_history = max_history

    def target_dir(self, target: str) -> Path:
        return self.state_dir / target

    def run_path(self, target: str) -> Path:
        return self.target_dir(target) / RUN_FILE

    def write_run(self, run: BackupRun) -> Path:
        """Persist a run, replacing the previous one for its target."""
        path = self.run_path(run.target)
        self._write(path, run.to_dict())
        logger.debug("Wrote run state %s to %s", run.run_id, path)
        return path

    def read_run(self, target: str) -> BackupRun | None:
        data = read_json(self.run_path(target))
        if data is None:
            return None
        try:
            return BackupRun.from_dict(data)
        except (KeyError, ValueError, TypeError) as e:
            logger.warning("Ignoring malformed run state for %s: %s", target, e)
            return None

    def append_history(self, run: BackupRun) -> None:
        """Append a run to the history log, keeping the newest entries only."""
        path = self.target_dir(run.target) / HISTORY_FILE
        lines = self._read_history_lines(path)
        lines.append(json.dumps(run.to_dict(), separators=(",", ":")))
        lines = lines[-self.max_history:]
        try:
            atomic_write_lines(path, lines)
        except OSError as e:
            raise StateError(f"Cannot write history for {run.target}: {e}") from e

    def read_history(self, target: str, count: int | None = None) -> list[BackupRun]:
        """Return history entries, newest last."""
        path = self.target_dir(target) / HISTORY_FILE
        runs = []
        for line in self._read_history_lines(path):
            try:
                runs.append(BackupRun.from_dict(json.loads(line)))
            except (json.JSONDecodeError, KeyError, ValueError, TypeError):
                logger.debug("Skipping malformed history line in %s", path)
        if count is not None:
            runs = runs[-count:] if count > 0 else []
        return runs

    def read_escalation(self, target: str) -> EscalationState | None:
        data = read_json(self.target_dir(target) / ESCALATION_FILE)
        if data is None:
            return None
        try:
            return EscalationState.from_dict(data)
        except (KeyError, ValueError, TypeError) as e:
            logger.warning("Ignoring malformed escalation state for %s: %s", target, e)
            return None

    def write_escalation(self, target: str, state: EscalationState) -> None:
        self._write(self.target_dir(target) / ESCALATION_FILE, state.to_dict())

    def clear_escalation(self, target: str) -> bool:
        """Delete escalation state. Returns True if there was any."""
        path = self.target_dir(target) / ESCALATION_FILE
        existed = path.exists()
        path.unlink(missing_ok=True)
        return existed

    def suspend_daemon(self, target: str, reason: str, run_id: str | None = None) -> None:
        """Mark scheduled runs for a target as suspended."""
        self._write(
            self.target_dir(target) / SUSPENSION_FILE,
            {
                "suspended_at": datetime.now(UTC).isoformat(),
                "reason": reason,
                "run_id": run_id,
            },
        )
        logger.warning("Scheduled backups suspended for %s: %s", target, reason)

    def read_suspension(self, target: str) -> dict[str, Any] | None:
        data = read_json(self.target_dir(target) / SUSPENSION_FILE)
        return data if isinstance(data, dict) else None

    def clear_suspension(self, target: str) -> bool:
        path = self.target_dir(target) / SUSPENSION_FILE
        existed = path.exists()
        path.unlink(missing_ok=True)
        return existed

    def _write(self, path: Path, data: dict[str, Any]) -> None:
        try:
            atomic_write_json(path, data)
        except OSError as e:
            raise StateError(f"Cannot write {path}: {e}") from e

    def _read_history_lines(self, path: Path) -> list[str]:
        if not path.exists():
            return []
        try:
            with open(path) as f:
                return [line.strip() for line in f if line.strip()]
        except OSError as e:
            logger.warning("Could not read history %s: %s", path, e)
            return []
