"""
Data models for backup run state.

These dataclasses are the persisted record of a backup run: what was
attempted, what failed and why, how severe the outcome was and which
actions the rest of the system should take. All models serialize to plain
JSON through to_dict/from_dict.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorKind(Enum):
    """
    Closed set of failure kinds.

    Every native error is classified into one of these at the point where
    it is first observed; downstream logic never inspects raw messages.
    """

    PERMISSION_DENIED = "permission-denied"
    DISK_FULL = "disk-full"
    TRANSIENT_IO = "transient-io"
    FILE_MISSING = "file-missing"
    SIZE_MISMATCH = "size-mismatch"
    COPY_FAILED = "copy-failed"
    VERIFICATION_FAILED = "verification-failed"
    DESTINATION_UNREACHABLE = "destination-unreachable"
    UNKNOWN = "unknown"

    @property
    def description(self) -> str:
        return _ERROR_DESCRIPTIONS[self]

    @property
    def remediation(self) -> str:
        """Short actionable hint shown to the operator."""
        return _ERROR_REMEDIATIONS[self]

    @property
    def retryable(self) -> bool:
        """Whether another attempt could plausibly succeed."""
        return self in (ErrorKind.TRANSIENT_IO, ErrorKind.SIZE_MISMATCH, ErrorKind.UNKNOWN)

    @classmethod
    def from_string(cls, value: str) -> ErrorKind:
        """Parse a kind, mapping unrecognised values to UNKNOWN."""
        value = value.lower().strip().replace("_", "-")
        for kind in cls:
            if kind.value == value:
                return kind
        return cls.UNKNOWN


_ERROR_DESCRIPTIONS = {
    ErrorKind.PERMISSION_DENIED: "Permission denied",
    ErrorKind.DISK_FULL: "No space left on backup destination",
    ErrorKind.TRANSIENT_IO: "Temporary I/O error",
    ErrorKind.FILE_MISSING: "File disappeared before it could be copied",
    ErrorKind.SIZE_MISMATCH: "File changed while it was being copied",
    ErrorKind.COPY_FAILED: "Copy failed",
    ErrorKind.VERIFICATION_FAILED: "Backup copy does not match the source",
    ErrorKind.DESTINATION_UNREACHABLE: "Backup destination is not reachable",
    ErrorKind.UNKNOWN: "Unknown error",
}

_ERROR_REMEDIATIONS = {
    ErrorKind.PERMISSION_DENIED: "Run: chmod +r <file> or check file permissions",
    ErrorKind.DISK_FULL: "Free space on the backup drive (check with: df -h) or lower retention limits",
    ErrorKind.TRANSIENT_IO: "File may be locked by another process. Close editors/apps using this file",
    ErrorKind.FILE_MISSING: "File was deleted during backup (ignore if intentional)",
    ErrorKind.SIZE_MISMATCH: "File was modified during backup. Retry backup to capture current version",
    ErrorKind.COPY_FAILED: "Check disk space and file system integrity",
    ErrorKind.VERIFICATION_FAILED: "Backup corrupted. Check disk space and file system health",
    ErrorKind.DESTINATION_UNREACHABLE: "Backup drive is not mounted. Reconnect the drive and run the backup again",
    ErrorKind.UNKNOWN: "Run 'checkpoint failures' for details",
}


class TargetType(Enum):
    """What kind of item a failure refers to."""

    FILE = "file"
    DATABASE = "database"


class Severity(Enum):
    """Aggregate risk level of a run, ordered from none to critical."""

    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    @property
    def requires_immediate_action(self) -> bool:
        return self in (Severity.HIGH, Severity.CRITICAL)

    @classmethod
    def from_string(cls, value: str) -> Severity:
        value = value.lower().strip()
        for severity in cls:
            if severity.value == value:
                return severity
        raise ValueError(f"Invalid severity: {value}")


_SEVERITY_ORDER = [
    Severity.NONE,
    Severity.LOW,
    Severity.MEDIUM,
    Severity.HIGH,
    Severity.CRITICAL,
]


class Urgency(Enum):
    """Notification urgency attached to recommended actions."""

    LOW = "low"
    NORMAL = "normal"
    URGENT = "urgent"


class RunStatus(Enum):
    """Overall outcome of a run."""

    COMPLETE_SUCCESS = "complete_success"
    PARTIAL_SUCCESS = "partial_success"
    TOTAL_FAILURE = "total_failure"


@dataclass(frozen=True)
class FailureRecord:
    """
    One item that could not be backed up.

    Attributes:
        target_type: File or database.
        path: Path of the file, or the database name.
        error_kind: Classified failure kind.
        message: Native error message, for display only.
        suggested_fix: Remediation hint for this kind.
        retry_count: Attempts made before giving up.
    """

    target_type: TargetType
    path: str
    error_kind: ErrorKind
    message: str = ""
    suggested_fix: str = ""
    retry_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_type": self.target_type.value,
            "path": self.path,
            "error_kind": self.error_kind.value,
            "message": self.message,
            "suggested_fix": self.suggested_fix,
            "retry_count": self.retry_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FailureRecord:
        kind = ErrorKind.from_string(str(data.get("error_kind", "unknown")))
        return cls(
            target_type=TargetType(data.get("target_type", "file")),
            path=str(data.get("path", "")),
            error_kind=kind,
            message=str(data.get("message", "")),
            suggested_fix=str(data.get("suggested_fix", kind.remediation)),
            retry_count=int(data.get("retry_count", 0)),
        )


@dataclass(frozen=True)
class Counts:
    """Succeeded/failed counts for one item class. Total is derived."""

    succeeded: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.succeeded + self.failed

    def to_dict(self) -> dict[str, int]:
        return {"total": self.total, "succeeded": self.succeeded, "failed": self.failed}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Counts:
        return cls(succeeded=int(data.get("succeeded", 0)), failed=int(data.get("failed", 0)))


@dataclass(frozen=True)
class RunSummary:
    """Per-class counts for a run."""

    files: Counts = field(default_factory=Counts)
    databases: Counts = field(default_factory=Counts)

    @property
    def total(self) -> int:
        return self.files.total + self.databases.total

    @property
    def succeeded(self) -> int:
        return self.files.succeeded + self.databases.succeeded

    @property
    def failed(self) -> int:
        return self.files.failed + self.databases.failed

    def to_dict(self) -> dict[str, Any]:
        return {"files": self.files.to_dict(), "databases": self.databases.to_dict()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunSummary:
        return cls(
            files=Counts.from_dict(data.get("files", {})),
            databases=Counts.from_dict(data.get("databases", {})),
        )


@dataclass(frozen=True)
class SeverityAssessment:
    """Severity level with a human-readable reason."""

    level: Severity
    reason: str = ""

    @property
    def requires_immediate_action(self) -> bool:
        return self.level.requires_immediate_action

    def to_dict(self) -> dict[str, Any]:
        return {
            "level": self.level.value,
            "reason": self.reason,
            "requires_immediate_action": self.requires_immediate_action,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SeverityAssessment:
        return cls(
            level=Severity.from_string(str(data.get("level", "none"))),
            reason=str(data.get("reason", "")),
        )


@dataclass(frozen=True)
class RecommendedActions:
    """What the rest of the system should do about a run."""

    retry_recommended: bool = False
    retry_delay_seconds: int = 0
    stop_daemon: bool = False
    block_cloud_upload: bool = False
    send_notification: bool = False
    notification_urgency: Urgency | None = None
    escalate_after_hours: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "retry_recommended": self.retry_recommended,
            "retry_delay_seconds": self.retry_delay_seconds,
            "stop_daemon": self.stop_daemon,
            "block_cloud_upload": self.block_cloud_upload,
            "send_notification": self.send_notification,
            "notification_urgency": (
                self.notification_urgency.value if self.notification_urgency else None
            ),
            "escalate_after_hours": self.escalate_after_hours,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RecommendedActions:
        urgency = data.get("notification_urgency")
        escalate = data.get("escalate_after_hours")
        return cls(
            retry_recommended=bool(data.get("retry_recommended", False)),
            retry_delay_seconds=int(data.get("retry_delay_seconds", 0)),
            stop_daemon=bool(data.get("stop_daemon", False)),
            block_cloud_upload=bool(data.get("block_cloud_upload", False)),
            send_notification=bool(data.get("send_notification", False)),
            notification_urgency=Urgency(urgency) if urgency else None,
            escalate_after_hours=float(escalate) if escalate is not None else None,
        )


@dataclass(frozen=True)
class BackupRun:
    """
    Durable record of one backup invocation.

    Written once at the end of a run; fully replaces the previous record
    for the same target.
    """

    run_id: str
    target: str
    timestamp: str
    exit_code: int
    status: RunStatus
    summary: RunSummary
    severity: SeverityAssessment
    failures: tuple[FailureRecord, ...] = ()
    actions: RecommendedActions = field(default_factory=RecommendedActions)
    remediation: str = ""
    snapshot: str | None = None
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.COMPLETE_SUCCESS

    def first_failure(self) -> FailureRecord | None:
        return self.failures[0] if self.failures else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "target": self.target,
            "timestamp": self.timestamp,
            "exit_code": self.exit_code,
            "status": self.status.value,
            "summary": self.summary.to_dict(),
            "severity": self.severity.to_dict(),
            "failures": [f.to_dict() for f in self.failures],
            "actions": self.actions.to_dict(),
            "remediation": self.remediation,
            "snapshot": self.snapshot,
            "duration_seconds": self.duration_seconds,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackupRun:
        return cls(
            run_id=str(data["run_id"]),
            target=str(data.get("target", "")),
            timestamp=str(data.get("timestamp", "")),
            exit_code=int(data.get("exit_code", 0)),
            status=RunStatus(data.get("status", RunStatus.COMPLETE_SUCCESS.value)),
            summary=RunSummary.from_dict(data.get("summary", {})),
            severity=SeverityAssessment.from_dict(data.get("severity", {})),
            failures=tuple(FailureRecord.from_dict(f) for f in data.get("failures", [])),
            actions=RecommendedActions.from_dict(data.get("actions", {})),
            remediation=str(data.get("remediation", "")),
            snapshot=data.get("snapshot"),
            duration_seconds=float(data.get("duration_seconds", 0.0)),
        )


@dataclass
class EscalationState:
    """
    Failure streak bookkeeping for one target.

    Created on the first failing run, updated whenever an alert is
    delivered, and deleted on recovery.
    """

    first_failure_at: str
    last_escalation_at: str | None = None
    severity: str = "none"
    first_error_kind: str | None = None
    notifications_sent: int = 0
    suppressed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "first_failure_at": self.first_failure_at,
            "last_escalation_at": self.last_escalation_at,
            "severity": self.severity,
            "first_error_kind": self.first_error_kind,
            "notifications_sent": self.notifications_sent,
            "suppressed": self.suppressed,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EscalationState:
        return cls(
            first_failure_at=str(data["first_failure_at"]),
            last_escalation_at=data.get("last_escalation_at"),
            severity=str(data.get("severity", "none")),
            first_error_kind=data.get("first_error_kind"),
            notifications_sent=int(data.get("notifications_sent", 0)),
            suppressed=int(data.get("suppressed", 0)),
        )
