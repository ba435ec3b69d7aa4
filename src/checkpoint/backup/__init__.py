"""
Backup runs and restores for Checkpoint.

Usage:
    from checkpoint.backup import BackupRunner, Restorer

    runner = BackupRunner(settings)
    result = runner.run()
    if result.run is not None:
        print(result.run.summary.succeeded, result.run.severity.level.value)

    result = Restorer(settings).restore(paths=["src/app.py"])
"""

from checkpoint.backup.restore import RestoreError, RestoreResult, Restorer
from checkpoint.backup.runner import BackupRunner, RunResult

__all__ = [
    "BackupRunner",
    "RestoreError",
    "RestoreResult",
    "Restorer",
    "RunResult",
]
