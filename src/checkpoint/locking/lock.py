"""
Per-target backup locks.

Only one process may run a backup for a given target at a time. The
default implementation uses an atomic directory creation as the mutex,
which works on any filesystem including network and removable drives:

    <lock_dir>/<target>.lock/pid

A lock whose recorded holder is no longer alive is stale. Stale locks are
reclaimed under a second guard directory (<target>.reclaim) so that when
several processes notice the same stale lock, exactly one of them removes
it and takes ownership. Acquisition never blocks; callers decide whether
to wait, retry or skip.

FcntlLock offers the same interface on top of an OS advisory lock where
one is available.
"""

from __future__ import annotations

import logging
import os
import shutil
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)

PID_FILE = "pid"

# A lock directory without a pid file is being initialised for this long
INIT_GRACE_SECONDS = 5.0
# A reclaim guard older than this was abandoned by a crashed reclaimer
RECLAIM_GUARD_TIMEOUT = 30.0


class LockStatus(Enum):
    """Outcome of a lock acquisition attempt."""

    LOCKED = "locked"
    BUSY = "busy"


@dataclass(frozen=True)
class AcquireResult:
    """Result of BackupLock.acquire."""

    status: LockStatus
    target: str
    holder_pid: int | None = None

    @property
    def acquired(self) -> bool:
        return self.status == LockStatus.LOCKED


class LockError(Exception):
    """Base exception for lock errors."""

    pass


class LockBusyError(LockError):
    """Raised when a target is locked by another live process."""

    def __init__(self, target: str, holder_pid: int | None = None) -> None:
        self.target = target
        self.holder_pid = holder_pid
        holder = f" (held by PID {holder_pid})" if holder_pid else ""
        super().__init__(f"Backup already running for {target}{holder}")


def pid_is_alive(pid: int) -> bool:
    """Check whether a process exists."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user
        return True
    except OSError:
        return False
    return True


class BackupLock(ABC):
    """Interface for per-target mutual exclusion."""

    @abstractmethod
    def acquire(self, target: str) -> AcquireResult:
        """Try to take the lock without blocking."""

    @abstractmethod
    def release(self, target: str) -> None:
        """Release the lock. Safe to call when not held."""

    @abstractmethod
    def holder(self, target: str) -> int | None:
        """Return the pid recorded for the current holder, if any."""

    def is_locked(self, target: str) -> bool:
        """True if a live process currently holds the lock."""
        holder = self.holder(target)
        return holder is not None and pid_is_alive(holder)

    @contextmanager
    def hold(self, target: str) -> Iterator[AcquireResult]:
        """
        Hold the lock for the duration of a with-block.

        Raises:
            LockBusyError: If another live process holds the lock.
        """
        result = self.acquire(target)
        if not result.acquired:
            raise LockBusyError(target, result.holder_pid)
        try:
            yield result
        finally:
            self.release(target)


class DirectoryLock(BackupLock):
    """
    Directory-as-mutex lock with pid liveness probing.

    Args:
        lock_dir: Directory that holds the per-target lock directories.
        is_alive: Liveness predicate for a recorded pid.
        pid: Pid recorded as the holder, defaults to the current process.
        clock: Wall clock in seconds, used for grace periods.
    """

    def __init__(
        self,
        lock_dir: Path,
        is_alive: Callable[[int], bool] = pid_is_alive,
        pid: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.lock_dir = Path(lock_dir)
        self.is_alive = is_alive
        self.pid = pid if pid is not None else os.getpid()
        self._clock = clock

    def lock_path(self, target: str) -> Path:
        return self.lock_dir / f"{target}.lock"

    def acquire(self, target: str) -> AcquireResult:
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        path = self.lock_path(target)

        if self._try_create(path):
            logger.debug("Acquired lock for %s", target)
            return AcquireResult(LockStatus.LOCKED, target, self.pid)

        holder = self._read_pid(path)
        if not self._is_stale(path, holder):
            logger.info("Lock for %s is held by PID %s", target, holder)
            return AcquireResult(LockStatus.BUSY, target, holder)

        return self._reclaim(target, path, holder)

    def release(self, target: str) -> None:
        path = self.lock_path(target)
        if not path.exists():
            return

        holder = self._read_pid(path)
        if holder is not None and holder != self.pid:
            logger.warning(
                "Not releasing lock for %s: held by PID %d, not %d", target, holder, self.pid
            )
            return
        if holder is None and not self._is_stale(path, None):
            logger.warning(
                "Not releasing lock for %s: another process is still creating it", target
            )
            return

        self._remove(path)
        logger.debug("Released lock for %s", target)

    def force_release(self, target: str) -> bool:
        """Remove a lock regardless of its holder. Returns True if one existed."""
        path = self.lock_path(target)
        if not path.exists():
            return False
        holder = self._read_pid(path)
        self._remove(path)
        logger.warning("Forcibly removed lock for %s (holder PID %s)", target, holder)
        return True

    def holder(self, target: str) -> int | None:
        return self._read_pid(self.lock_path(target))

    def is_locked(self, target: str) -> bool:
        """True if the lock exists and is not stale."""
        path = self.lock_path(target)
        if not path.exists():
            return False
        return not self._is_stale(path, self._read_pid(path))

    def _reclaim(self, target: str, path: Path, stale_holder: int | None) -> AcquireResult:
        guard = self.lock_dir / f"{target}.reclaim"
        if not self._take_guard(guard):
            return AcquireResult(LockStatus.BUSY, target, stale_holder)

        try:
            # Another reclaimer may have finished between our check and the guard
            holder = self._read_pid(path)
            if path.exists() and not self._is_stale(path, holder):
                return AcquireResult(LockStatus.BUSY, target, holder)

            logger.warning("Removing stale lock for %s (dead PID %s)", target, holder)
            self._remove(path)

            if self._try_create(path):
                logger.info("Reclaimed stale lock for %s", target)
                return AcquireResult(LockStatus.LOCKED, target, self.pid)
            return AcquireResult(LockStatus.BUSY, target, self._read_pid(path))
        finally:
            try:
                guard.rmdir()
            except OSError:
                pass

    def _take_guard(self, guard: Path) -> bool:
        try:
            guard.mkdir()
            return True
        except FileExistsError:
            pass

        try:
            age = self._clock() - guard.stat().st_mtime
        except FileNotFoundError:
            age = RECLAIM_GUARD_TIMEOUT + 1
        if age <= RECLAIM_GUARD_TIMEOUT:
            return False

        logger.warning("Clearing abandoned reclaim guard %s", guard)
        try:
            guard.rmdir()
        except FileNotFoundError:
            pass
        try:
            guard.mkdir()
            return True
        except FileExistsError:
            return False

    def _try_create(self, path: Path) -> bool:
        try:
            path.mkdir()
        except FileExistsError:
            return False

        temp_path = path / f".{PID_FILE}.{self.pid}"
        try:
            temp_path.write_text(str(self.pid))
            os.replace(temp_path, path / PID_FILE)
        except OSError as e:
            self._remove(path)
            raise LockError(f"Cannot record lock holder in {path}: {e}") from e
        return True

    def _is_stale(self, path: Path, holder: int | None) -> bool:
        if holder is not None:
            return not self.is_alive(holder)

        # No pid yet: a live process may be between mkdir and writing it
        try:
            age = self._clock() - path.stat().st_mtime
        except FileNotFoundError:
            return True
        return age > INIT_GRACE_SECONDS

    def _read_pid(self, path: Path) -> int | None:
        try:
            return int((path / PID_FILE).read_text().strip())
        except (OSError, ValueError):
            return None

    def _remove(self, path: Path) -> None:
        shutil.rmtree(path, ignore_errors=True)


class FcntlLock(BackupLock):
    """
    OS advisory lock using flock(2).

    The kernel drops the lock when the holder exits, so there is no stale
    state to reclaim. The holder pid is still written for display.
    """

    def __init__(self, lock_dir: Path, pid: int | None = None) -> None:
        import fcntl

        self._fcntl = fcntl
        self.lock_dir = Path(lock_dir)
        self.pid = pid if pid is not None else os.getpid()
        self._fds: dict[str, int] = {}

    def lock_path(self, target: str) -> Path:
        return self.lock_dir / f"{target}.flock"

    def acquire(self, target: str) -> AcquireResult:
        if target in self._fds:
            return AcquireResult(LockStatus.LOCKED, target, self.pid)

        self.lock_dir.mkdir(parents=True, exist_ok=True)
        path = self.lock_path(target)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            self._fcntl.flock(fd, self._fcntl.LOCK_EX | self._fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            return AcquireResult(LockStatus.BUSY, target, self.holder(target))
        except OSError:
            os.close(fd)
            raise

        os.ftruncate(fd, 0)
        os.write(fd, str(self.pid).encode())
        self._fds[target] = fd
        return AcquireResult(LockStatus.LOCKED, target, self.pid)

    def release(self, target: str) -> None:
        fd = self._fds.pop(target, None)
        if fd is None:
            return
        try:
            os.ftruncate(fd, 0)
            self._fcntl.flock(fd, self._fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def holder(self, target: str) -> int | None:
        try:
            return int(self.lock_path(target).read_text().strip())
        except (OSError, ValueError):
            return None


def create_lock(lock_dir: Path, backend: str = "directory") -> BackupLock:
    """Create the configured lock implementation."""
    if backend == "fcntl":
        return FcntlLock(lock_dir)
    if backend == "directory":
        return DirectoryLock(lock_dir)
    raise LockError(f"Unknown lock backend: {backend}")
