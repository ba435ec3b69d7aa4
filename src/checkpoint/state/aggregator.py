"""
Failure aggregation and severity classification.

The aggregator collects per-item outcomes for a single run and turns them
into a BackupRun: counts, a severity level with its reason, the recommended
actions for that severity, and a consolidated remediation prompt.

Severity precedence:
    1. Nothing attempted or nothing failed: none
    2. Any disk-full failure: critical
    3. Any destination-unreachable failure: high
    4. Failure rate >= 50%: high, >= 10%: medium, otherwise low

Rate boundaries are inclusive on the higher level and compared with
integer arithmetic, so 1 failure out of 10 is medium.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from checkpoint.state.models import (
    BackupRun,
    Counts,
    ErrorKind,
    FailureRecord,
    RecommendedActions,
    RunStatus,
    RunSummary,
    Severity,
    SeverityAssessment,
    TargetType,
    Urgency,
)

logger = logging.getLogger(__name__)

RETRY_DELAY_SECONDS = 3600

# Maximum failures listed in the remediation prompt
MAX_REMEDIATION_ITEMS = 20

SEVERITY_ACTIONS: dict[Severity, RecommendedActions] = {
    Severity.CRITICAL: RecommendedActions(
        retry_recommended=True,
        retry_delay_seconds=RETRY_DELAY_SECONDS,
        stop_daemon=True,
        block_cloud_upload=True,
        send_notification=True,
        notification_urgency=Urgency.URGENT,
        escalate_after_hours=1,
    ),
    Severity.HIGH: RecommendedActions(
        retry_recommended=True,
        retry_delay_seconds=RETRY_DELAY_SECONDS,
        block_cloud_upload=True,
        send_notification=True,
        notification_urgency=Urgency.URGENT,
        escalate_after_hours=2,
    ),
    Severity.MEDIUM: RecommendedActions(
        retry_recommended=True,
        retry_delay_seconds=RETRY_DELAY_SECONDS,
        send_notification=True,
        notification_urgency=Urgency.NORMAL,
        escalate_after_hours=3,
    ),
    Severity.LOW: RecommendedActions(
        retry_recommended=True,
        retry_delay_seconds=RETRY_DELAY_SECONDS,
        send_notification=True,
        notification_urgency=Urgency.LOW,
        escalate_after_hours=6,
    ),
    Severity.NONE: RecommendedActions(),
}


def actions_for(severity: Severity) -> RecommendedActions:
    """Map a severity level to its recommended actions."""
    return SEVERITY_ACTIONS[severity]


def build_remediation(failures: list[FailureRecord] | tuple[FailureRecord, ...]) -> str:
    """
    Build a consolidated remediation prompt for a list of failures.

    The text is meant to be pasted into a ticket or handed to an assistant;
    it lists each failed item with its error and suggested fix.
    """
    if not failures:
        return ""

    lines = ["Fix these backup failures:", ""]
    for failure in failures[:MAX_REMEDIATION_ITEMS]:
        label = "Database" if failure.target_type == TargetType.DATABASE else "File"
        error = failure.error_kind.description
        if failure.message:
            error = f"{error} ({failure.message})"
        lines.append(f"{label}: {failure.path}")
        lines.append(f"Error: {error}")
        lines.append(f"Fix: {failure.suggested_fix or failure.error_kind.remediation}")
        lines.append("")

    remaining = len(failures) - MAX_REMEDIATION_ITEMS
    if remaining > 0:
        lines.append(f"... and {remaining} more. Run 'checkpoint failures' for the full list.")

    return "\n".join(lines).rstrip() + "\n"


class FailureAggregator:
    """
    Accumulates outcomes for one backup run.

    Totals are derived from succeeded + failed, so the accounting invariant
    holds for files and databases independently.

    Example:
        aggregator = FailureAggregator("myproject")
        aggregator.record_file_success()
        aggregator.record_file_failure("src/app.py", ErrorKind.PERMISSION_DENIED)
        run = aggregator.build_run()
    """

    def __init__(
        self,
        target: str,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.target = target
        self._clock = clock or (lambda: datetime.now(UTC))
        self._started_at = self._clock()
        self._files_succeeded = 0
        self._databases_succeeded = 0
        self._failures: list[FailureRecord] = []

    @property
    def failures(self) -> list[FailureRecord]:
        return list(self._failures)

    def record_file_success(self) -> None:
        self._files_succeeded += 1

    def record_database_success(self) -> None:
        self._databases_succeeded += 1

    def record_file_failure(
        self,
        path: str,
        kind: ErrorKind,
        message: str = "",
        retry_count: int = 0,
    ) -> FailureRecord:
        """Record a file that could not be backed up."""
        return self.record_failure(
            FailureRecord(
                target_type=TargetType.FILE,
                path=path,
                error_kind=kind,
                message=message,
                suggested_fix=kind.remediation,
                retry_count=retry_count,
            )
        )

    def record_database_failure(
        self,
        name: str,
        kind: ErrorKind,
        message: str = "",
        retry_count: int = 0,
    ) -> FailureRecord:
        """Record a database that could not be dumped."""
        return self.record_failure(
            FailureRecord(
                target_type=TargetType.DATABASE,
                path=name,
                error_kind=kind,
                message=message,
                suggested_fix=kind.remediation,
                retry_count=retry_count,
            )
        )

    def record_failure(self, failure: FailureRecord) -> FailureRecord:
        self._failures.append(failure)
        logger.warning(
            "Backup failed for %s %s: %s%s",
            failure.target_type.value,
            failure.path,
            failure.error_kind.value,
            f" ({failure.message})" if failure.message else "",
        )
        return failure

    def summary(self) -> RunSummary:
        file_failures = sum(1 for f in self._failures if f.target_type == TargetType.FILE)
        db_failures = len(self._failures) - file_failures
        return RunSummary(
            files=Counts(succeeded=self._files_succeeded, failed=file_failures),
            databases=Counts(succeeded=self._databases_succeeded, failed=db_failures),
        )

    def severity(self) -> SeverityAssessment:
        """Classify the run's failures into a severity level."""
        summary = self.summary()
        total = summary.total
        failed = summary.failed

        if total == 0 or failed == 0:
            return SeverityAssessment(Severity.NONE, "No failures")

        kinds = {f.error_kind for f in self._failures}
        if ErrorKind.DISK_FULL in kinds:
            return SeverityAssessment(Severity.CRITICAL, "Disk full - no space for backups")
        if ErrorKind.DESTINATION_UNREACHABLE in kinds:
            return SeverityAssessment(Severity.HIGH, "Backup drive disconnected")

        percent = failed * 100 // total
        if failed == 1:
            reason = "Single item failed to backup"
        elif failed * 10 < total:
            reason = f"{failed} items failed to backup"
        else:
            reason = f"{percent}% of items failed to backup"

        if failed * 2 >= total:
            return SeverityAssessment(Severity.HIGH, reason)
        if failed * 10 >= total:
            return SeverityAssessment(Severity.MEDIUM, reason)
        return SeverityAssessment(Severity.LOW, reason)

    def requires_immediate_action(self) -> bool:
        return self.severity().requires_immediate_action

    def actions(self, severity: Severity | None = None) -> RecommendedActions:
        if severity is None:
            severity = self.severity().level
        return actions_for(severity)

    def status(self) -> RunStatus:
        summary = self.summary()
        if summary.failed == 0:
            return RunStatus.COMPLETE_SUCCESS
        if summary.succeeded == 0:
            return RunStatus.TOTAL_FAILURE
        return RunStatus.PARTIAL_SUCCESS

    def exit_code(self) -> int:
        """0 on success, 2 on total or critical failure, 1 otherwise."""
        summary = self.summary()
        if summary.failed == 0:
            return 0
        if summary.succeeded == 0 or self.severity().level == Severity.CRITICAL:
            return 2
        return 1

    def build_run(
        self,
        run_id: str | None = None,
        snapshot: str | None = None,
    ) -> BackupRun:
        """Produce the durable BackupRun record for this run."""
        now = self._clock()
        if run_id is None:
            run_id = f"{self.target}-{self._started_at.strftime('%Y%m%d_%H%M%S')}"

        assessment = self.severity()
        return BackupRun(
            run_id=run_id,
            target=self.target,
            timestamp=now.isoformat(),
            exit_code=self.exit_code(),
            status=self.status(),
            summary=self.summary(),
            severity=assessment,
            failures=tuple(self._failures),
            actions=actions_for(assessment.level),
            remediation=build_remediation(self._failures),
            snapshot=snapshot,
            duration_seconds=round((now - self._started_at).total_seconds(), 3),
        )
