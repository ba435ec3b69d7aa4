"""
Copy with retry and error classification.

Native errors are classified into an ErrorKind where they are first
observed: OSError by errno, subprocess output by its text. Permanent
kinds (permission-denied, disk-full, file-missing, destination-unreachable)
fail immediately; transient kinds are retried with exponential backoff
(1s, 2s, 4s with the default settings). There is no sleep after the final
attempt.
"""

from __future__ import annotations

import errno
import logging
import os
import shutil
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from checkpoint.config.settings import CopyConfig
from checkpoint.state.models import ErrorKind

logger = logging.getLogger(__name__)

_PERMISSION_ERRNOS = {errno.EACCES, errno.EPERM, errno.EROFS}
_DISK_FULL_ERRNOS = {errno.ENOSPC, errno.EDQUOT, errno.EFBIG}
_UNREACHABLE_ERRNOS = {errno.ENODEV, errno.ENXIO, errno.ESTALE, errno.ENOTCONN, errno.EHOSTDOWN}
_TRANSIENT_ERRNOS = {
    errno.EIO,
    errno.EAGAIN,
    errno.EBUSY,
    errno.ETIMEDOUT,
    errno.EINTR,
    errno.ETXTBSY,
}

_MESSAGE_PATTERNS: list[tuple[tuple[str, ...], ErrorKind]] = [
    (("permission denied", "access denied", "operation not permitted", "read-only file system"),
     ErrorKind.PERMISSION_DENIED),
    (("no space left", "disk full", "quota exceeded", "disk quota"), ErrorKind.DISK_FULL),
    (("not mounted", "transport endpoint", "network is unreachable", "no route to host",
      "connection refused", "could not connect", "could not translate host"),
     ErrorKind.DESTINATION_UNREACHABLE),
    (("input/output error", "timed out", "timeout", "temporarily unavailable",
      "resource busy", "connection reset", "database is locked"),
     ErrorKind.TRANSIENT_IO),
    (("no such file", "does not exist", "not found"), ErrorKind.FILE_MISSING),
    (("checksum", "verification failed", "corrupt"), ErrorKind.VERIFICATION_FAILED),
]


class TransferError(Exception):
    """An error that already carries its classified kind."""

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.UNKNOWN) -> None:
        self.kind = kind
        super().__init__(message)


def classify_os_error(exc: OSError, source: Path | str | None = None) -> ErrorKind:
    """
    Classify an OSError raised while copying.

    ENOENT is ambiguous: if the source still exists, the destination path
    vanished, which means the backup drive went away.
    """
    code = exc.errno
    if code in _PERMISSION_ERRNOS:
        return ErrorKind.PERMISSION_DENIED
    if code in _DISK_FULL_ERRNOS:
        return ErrorKind.DISK_FULL
    if code == errno.ENOENT:
        if source is not None and os.path.exists(source):
            return ErrorKind.DESTINATION_UNREACHABLE
        return ErrorKind.FILE_MISSING
    if code in _UNREACHABLE_ERRNOS:
        return ErrorKind.DESTINATION_UNREACHABLE
    if code in _TRANSIENT_ERRNOS:
        return ErrorKind.TRANSIENT_IO
    return ErrorKind.UNKNOWN


def classify_message(text: str) -> ErrorKind:
    """Classify error output from an external tool."""
    lowered = text.lower()
    for needles, kind in _MESSAGE_PATTERNS:
        if any(needle in lowered for needle in needles):
            return kind
    return ErrorKind.UNKNOWN


def copy_file(source: Path, destination: Path) -> None:
    """
    Copy a file through a temporary name, preserving metadata.

    Raises:
        TransferError: With SIZE_MISMATCH if the source changed during the copy.
        OSError: On any filesystem error.
    """
    source = Path(source)
    destination = Path(destination)
    before = os.stat(source)
    destination.parent.mkdir(parents=True, exist_ok=True)

    temp_path = destination.with_name(f".{destination.name}.partial")
    try:
        shutil.copy2(source, temp_path)
        copied_size = temp_path.stat().st_size
        after = os.stat(source)
        if copied_size != after.st_size or before.st_mtime_ns != after.st_mtime_ns:
            raise TransferError(
                f"{source} changed during copy ({before.st_size} -> {after.st_size} bytes)",
                ErrorKind.SIZE_MISMATCH,
            )
        os.replace(temp_path, destination)
    except BaseException:
        try:
            temp_path.unlink(missing_ok=True)
        except OSError:
            pass
        raise


@dataclass(frozen=True)
class RetryOutcome:
    """
    Result of an operation run under the retry policy.

    Attributes:
        success: Whether the operation eventually succeeded.
        attempts: Attempts made, including the successful one.
        error_kind: Classified kind of the last failure, if any.
        message: Message of the last failure.
        value: Return value of the operation on success.
    """

    success: bool
    attempts: int
    error_kind: ErrorKind | None = None
    message: str = ""
    value: Any = None


class RetryExecutor:
    """
    Runs copies and other I/O with bounded retries and backoff.

    Args:
        max_attempts: Total attempts, including the first.
        base_delay: Delay before the second attempt in seconds.
        max_delay: Upper bound on any single delay.
        sleep: Sleep function, replaceable in tests.
        copy_func: Function performing a single copy attempt.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        sleep: Callable[[float], None] = time.sleep,
        copy_func: Callable[[Path, Path], None] = copy_file,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep
        self._copy = copy_func

    @classmethod
    def from_config(cls, config: CopyConfig, **kwargs: Any) -> RetryExecutor:
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay_seconds,
            max_delay=config.max_delay_seconds,
            **kwargs,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay after a failed attempt (1-based)."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def copy_with_retry(
        self,
        source: Path,
        destination: Path,
        max_attempts: int | None = None,
    ) -> RetryOutcome:
        """Copy one file, retrying transient failures."""
        return self.call(
            lambda: self._copy(Path(source), Path(destination)),
            description=f"copy {source}",
            source=source,
            max_attempts=max_attempts,
        )

    def call(
        self,
        operation: Callable[[], Any],
        description: str,
        source: Path | str | None = None,
        max_attempts: int | None = None,
    ) -> RetryOutcome:
        """
        Run an operation under the retry policy.

        The operation may raise TransferError (already classified) or
        OSError (classified by errno). Other exceptions propagate.
        """
        attempts_allowed = max_attempts if max_attempts is not None else self.max_attempts
        kind = ErrorKind.UNKNOWN
        message = ""

        for attempt in range(1, attempts_allowed + 1):
            try:
                value = operation()
                if attempt > 1:
                    logger.info("%s succeeded on attempt %d", description, attempt)
                return RetryOutcome(success=True, attempts=attempt, value=value)
            except TransferError as e:
                kind, message = e.kind, str(e)
            except OSError as e:
                kind = classify_os_error(e, source)
                message = e.strerror or str(e)

            if not kind.retryable:
                logger.warning("%s failed permanently (%s): %s", description, kind.value, message)
                return RetryOutcome(False, attempt, kind, message)

            if attempt < attempts_allowed:
                delay = self.delay_for(attempt)
                logger.warning(
                    f"{description} failed ({kind.value}), retrying in {delay:.1f}s "
                    f"(attempt {attempt}/{attempts_allowed}): {message}"
                )
                self._sleep(delay)

        logger.warning(
            "%s failed after %d attempts (%s): %s", description, attempts_allowed, kind.value, message
        )
        return RetryOutcome(False, attempts_allowed, kind, message)
