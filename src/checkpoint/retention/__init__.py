"""
Retention for Checkpoint.

Usage:
    from checkpoint.retention import RetentionEngine

    engine = RetentionEngine(settings.retention)
    result = engine.prune(backup_dir, dry_run=True)
    print(result.deleted)
"""

from checkpoint.retention.policy import (
    PruneResult,
    RetentionDecision,
    RetentionEngine,
    RetentionPlan,
    classify,
    period_key,
    select_representatives,
)

__all__ = [
    "PruneResult",
    "RetentionDecision",
    "RetentionEngine",
    "RetentionPlan",
    "classify",
    "period_key",
    "select_representatives",
]
