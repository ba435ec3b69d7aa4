"""
Checkpoint - Local Backup Lifecycle Engine

Snapshots project files and databases, keeps a bounded history, verifies
what was written and tells the operator when something went wrong.

Key Features:
    - Per-target locking so only one run touches a backup at a time
    - Content-hash change detection with a persistent mtime-keyed cache
    - Retry of transient copy failures with exponential backoff
    - Failure aggregation into a severity level and recommended actions
    - Throttled notification escalation with quiet hours
    - Tiered retention (hourly, daily, weekly, monthly)
    - Manifest-based quick, full and cloud verification

Design Principles:
    - Local state only: no server, no database, just JSON files
    - Every run leaves a complete record of what happened
    - Per-item failures never abort a run
"""

__version__ = "0.1.0"
__author__ = ""
__email__ = ""

from checkpoint.config.settings import Settings, load_config

__all__ = [
    "__version__",
    "Settings",
    "load_config",
]
