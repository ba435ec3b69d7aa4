"""
Backup locking for Checkpoint.

Usage:
    from checkpoint.locking import DirectoryLock

    lock = DirectoryLock(lock_dir)
    result = lock.acquire("myproject")
    if result.acquired:
        try:
            ...
        finally:
            lock.release("myproject")

    # Or raise LockBusyError when another process holds it
    with lock.hold("myproject"):
        ...
"""

from checkpoint.locking.lock import (
    AcquireResult,
    BackupLock,
    DirectoryLock,
    FcntlLock,
    LockBusyError,
    LockError,
    LockStatus,
    create_lock,
    pid_is_alive,
)

__all__ = [
    "AcquireResult",
    "BackupLock",
    "DirectoryLock",
    "FcntlLock",
    "LockBusyError",
    "LockError",
    "LockStatus",
    "create_lock",
    "pid_is_alive",
]
