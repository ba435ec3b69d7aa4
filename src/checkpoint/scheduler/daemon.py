"""
Periodic backup daemon.

Runs a backup every configured interval in the foreground, keeping a pid
file and a rotating plain-text log under the Checkpoint home directory.

A cycle is skipped, not failed, when another process holds the target's
lock. When a run recommends stopping the daemon (critical severity), the
target is marked suspended and every later cycle is skipped until
`checkpoint resume` clears the marker.
"""

from __future__ import annotations

import logging
import os
import signal
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from types import FrameType
from typing import Any

from checkpoint.backup.runner import BackupRunner, RunResult
from checkpoint.config.settings import Settings
from checkpoint.fsutil import atomic_write_json, read_json
from checkpoint.locking.lock import LockBusyError, pid_is_alive
from checkpoint.state.store import StateStore

logger = logging.getLogger(__name__)

PID_FILE_NAME = "daemon.pid"
STATE_FILE_NAME = "daemon.json"
LOG_FILE_NAME = "daemon.log"

# Maximum log file size before rotation (5 MB)
MAX_LOG_SIZE = 5 * 1024 * 1024
# Number of backup log files to keep
LOG_BACKUP_COUNT = 3
# Seconds to wait after an unexpected error in the loop
ERROR_BACKOFF_SECONDS = 300


class CycleOutcome(Enum):
    """What happened in one daemon cycle."""

    COMPLETED = "completed"
    NO_CHANGES = "no-changes"
    SKIPPED_BUSY = "skipped-busy"
    SKIPPED_SUSPENDED = "skipped-suspended"
    ERROR = "error"


@dataclass
class CycleResult:
    """Record of a single daemon cycle."""

    started_at: datetime
    outcome: CycleOutcome
    exit_code: int = 0
    message: str = ""
    result: RunResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "outcome": self.outcome.value,
            "exit_code": self.exit_code,
            "message": self.message,
        }


class DaemonError(Exception):
    """Base exception for daemon errors."""

    pass


class DaemonAlreadyRunningError(DaemonError):
    """Raised when a daemon is already running for this home directory."""

    pass


class DaemonNotRunningError(DaemonError):
    """Raised when the daemon is not running but expected to be."""

    pass


class BackupDaemon:
    """
    Runs backups on a fixed interval.

    Usage:
        daemon = BackupDaemon(load_config())
        daemon.run_forever()          # blocks until SIGTERM/SIGINT

        daemon.run_cycle()            # one cycle, e.g. from cron
    """

    def __init__(
        self,
        settings: Settings,
        runner_factory: Callable[[Settings], BackupRunner] | None = None,
        store: StateStore | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """
        Initialize the daemon.

        Args:
            settings: Loaded configuration.
            runner_factory: Builds the BackupRunner for each cycle.
            store: State store used to read the suspension marker.
            clock: Returns the current aware datetime.
        """
        self.settings = settings
        self.target = settings.target
        self._runner_factory = runner_factory or BackupRunner
        self._store = store or StateStore(settings.state_dir)
        self._clock = clock or (lambda: datetime.now(UTC))

        home = Path(settings.home_dir).expanduser()
        self._pid_file = home / PID_FILE_NAME
        self._state_file = settings.state_dir / STATE_FILE_NAME
        self._log_file = settings.log_dir / LOG_FILE_NAME

        self._stop_event = threading.Event()

    @property
    def interval_seconds(self) -> float:
        return self.settings.schedule.interval_minutes * 60

    def run_cycle(self, force: bool = False) -> CycleResult:
        """Run one backup unless the target is suspended or busy."""
        started = self._clock()

        suspension = self._store.read_suspension(self.target)
        if suspension is not None:
            cycle = CycleResult(
                started,
                CycleOutcome.SKIPPED_SUSPENDED,
                message=f"Suspended: {suspension.get('reason', 'unknown')}. "
                "Run 'checkpoint resume' after fixing the problem",
            )
            self._log(cycle.message)
            self._save_state(cycle)
            return cycle

        try:
            result = self._runner_factory(self.settings).run(force=force)
        except LockBusyError as e:
            cycle = CycleResult(started, CycleOutcome.SKIPPED_BUSY, message=str(e))
            self._log(f"Skipping cycle: {e}")
            self._save_state(cycle)
            return cycle

        if result.skipped:
            cycle = CycleResult(started, CycleOutcome.NO_CHANGES, message="No changes", result=result)
        else:
            run = result.run
            assert run is not None
            cycle = CycleResult(
                started,
                CycleOutcome.COMPLETED,
                exit_code=run.exit_code,
                message=(
                    f"{run.status.value}: {run.summary.succeeded}/{run.summary.total} items, "
                    f"severity {run.severity.level.value}"
                ),
                result=result,
            )
        self._log(f"Backup cycle {cycle.outcome.value}: {cycle.message}")
        self._save_state(cycle)
        return cycle

    def run_forever(self, once: bool = False) -> None:
        """
        Run cycles until stopped.

        Raises:
            DaemonAlreadyRunningError: If another daemon owns the pid file.
        """
        if self.is_running():
            raise DaemonAlreadyRunningError(
                f"Backup daemon already running with PID {self.get_pid()}"
            )

        self._write_pid_file()
        self._install_signal_handlers()
        self._stop_event.clear()
        self._log(f"Backup daemon started with PID {os.getpid()} for {self.target}")

        try:
            while not self._stop_event.is_set():
                try:
                    self.run_cycle()
                    wait = self.interval_seconds
                except Exception as e:
                    logger.exception("Backup cycle failed")
                    self._log(f"Error in backup cycle: {e}")
                    self._save_state(
                        CycleResult(self._clock(), CycleOutcome.ERROR, exit_code=1, message=str(e))
                    )
                    wait = min(ERROR_BACKOFF_SECONDS, self.interval_seconds)

                if once:
                    break
                self._stop_event.wait(wait)
        finally:
            self._remove_pid_file()
            self._log("Backup daemon stopped")

    def stop(self) -> None:
        """Ask the loop in this process to exit after the current cycle."""
        self._stop_event.set()

    def stop_running_daemon(self, timeout: float = 10.0) -> None:
        """
        Stop a daemon running in another process.

        Raises:
            DaemonNotRunningError: If no daemon is running.
        """
        pid = self.get_pid()
        if pid is None or not self.is_running():
            raise DaemonNotRunningError("Backup daemon is not running")

        os.kill(pid, signal.SIGTERM)
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if not pid_is_alive(pid):
                break
            time.sleep(0.2)
        else:
            logger.warning("Daemon PID %d did not exit after SIGTERM", pid)
            return

        self._remove_pid_file()
        self._log(f"Backup daemon PID {pid} stopped")

    def is_running(self) -> bool:
        """Check if a daemon process is alive, cleaning up a stale pid file."""
        pid = self.get_pid()
        if pid is None:
            return False
        if pid_is_alive(pid):
            return True
        self._remove_pid_file()
        return False

    def get_pid(self) -> int | None:
        """Get the PID of the running daemon."""
        try:
            return int(self._pid_file.read_text().strip())
        except (ValueError, OSError):
            return None

    def last_cycle(self) -> dict[str, Any] | None:
        """Return the last recorded cycle, if any."""
        data = read_json(self._state_file)
        return data if isinstance(data, dict) else None

    def get_logs(self, lines: int = 100) -> list[str]:
        """
        Get recent daemon log entries.

        Args:
            lines: Number of lines to return.

        Returns:
            List of log lines (newest last).
        """
        try:
            with open(self._log_file) as f:
                all_lines = f.readlines()
        except OSError:
            return []
        return all_lines[-lines:]

    def _install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return

        def handle(signum: int, frame: FrameType | None) -> None:
            self._log(f"Received signal {signum}, stopping")
            self.stop()

        signal.signal(signal.SIGTERM, handle)
        signal.signal(signal.SIGINT, handle)

    def _save_state(self, cycle: CycleResult) -> None:
        data = cycle.to_dict()
        data["target"] = self.target
        try:
            atomic_write_json(self._state_file, data)
        except OSError as e:
            logger.error("Could not save daemon state: %s", e)

    def _write_pid_file(self) -> None:
        self._pid_file.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._pid_file.write_text(str(os.getpid()))
        except OSError as e:
            logger.error("Could not write PID file: %s", e)

    def _remove_pid_file(self) -> None:
        try:
            self._pid_file.unlink(missing_ok=True)
        except OSError:
            pass

    def _log(self, message: str) -> None:
        """Write a message to the daemon log with rotation."""
        timestamp = self._clock().isoformat()
        self._rotate_log_if_needed()
        try:
            self._log_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self._log_file, "a") as f:
                f.write(f"[{timestamp}] {message}\n")
        except OSError as e:
            logger.error("Could not write to daemon log: %s", e)

        logger.info(message)

    def _rotate_log_if_needed(self) -> None:
        """Rotate the log file if it exceeds maximum size."""
        try:
            if self._log_file.stat().st_size < MAX_LOG_SIZE:
                return

            for i in range(LOG_BACKUP_COUNT - 1, 0, -1):
                old_backup = self._log_file.with_suffix(f".log.{i}")
                if old_backup.exists():
                    old_backup.rename(self._log_file.with_suffix(f".log.{i + 1}"))

            self._log_file.rename(self._log_file.with_suffix(".log.1"))
        except FileNotFoundError:
            return
        except OSError as e:
            logger.warning("Could not rotate log file: %s", e)
