"""
Run state for Checkpoint.

This module provides the typed run record, the failure aggregator that
classifies a run's severity, and the store that persists run, history and
escalation state per target.

Usage:
    from checkpoint.state import ErrorKind, FailureAggregator, StateStore

    aggregator = FailureAggregator("myproject")
    aggregator.record_file_success()
    aggregator.record_file_failure("notes.txt", ErrorKind.PERMISSION_DENIED)

    run = aggregator.build_run()
    StateStore(state_dir).write_run(run)
"""

from checkpoint.state.aggregator import (
    SEVERITY_ACTIONS,
    FailureAggregator,
    actions_for,
    build_remediation,
)
from checkpoint.state.models import (
    BackupRun,
    Counts,
    ErrorKind,
    EscalationState,
    FailureRecord,
    RecommendedActions,
    RunStatus,
    RunSummary,
    Severity,
    SeverityAssessment,
    TargetType,
    Urgency,
)
from checkpoint.state.store import MAX_HISTORY_ENTRIES, StateError, StateStore

__all__ = [
    # Models
    "BackupRun",
    "Counts",
    "ErrorKind",
    "EscalationState",
    "FailureRecord",
    "RecommendedActions",
    "RunStatus",
    "RunSummary",
    "Severity",
    "SeverityAssessment",
    "TargetType",
    "Urgency",
    # Aggregation
    "FailureAggregator",
    "SEVERITY_ACTIONS",
    "actions_for",
    "build_remediation",
    # Store
    "StateStore",
    "StateError",
    "MAX_HISTORY_ENTRIES",
]
