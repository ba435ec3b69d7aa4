"""
Scheduled backups for Checkpoint.

Usage:
    from checkpoint.scheduler import BackupDaemon

    daemon = BackupDaemon(settings)
    daemon.run_forever()
"""

from checkpoint.scheduler.daemon import (
    BackupDaemon,
    CycleOutcome,
    CycleResult,
    DaemonAlreadyRunningError,
    DaemonError,
    DaemonNotRunningError,
)

__all__ = [
    "BackupDaemon",
    "CycleOutcome",
    "CycleResult",
    "DaemonAlreadyRunningError",
    "DaemonError",
    "DaemonNotRunningError",
]
