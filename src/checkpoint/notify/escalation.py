"""
Notification escalation.

Turns a run's outcome and the target's failure history into throttled
alerts:

    first failure     -> alert now, remember when the streak started
    repeated failure  -> alert again only after the severity's cadence
                         has elapsed since the last delivered alert
    recovery          -> "restored" alert, forget the streak

Quiet hours hold back alerts for severities that do not bypass them.
Every alert that is not delivered is logged with the reason.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta, tzinfo
from enum import Enum

from checkpoint.config.settings import QUIET_HOURS_PATTERN, NotificationConfig
from checkpoint.notify.notifiers import Notification, Notifier, NotifierError
from checkpoint.state.models import BackupRun, EscalationState, RunStatus, Severity, Urgency
from checkpoint.state.store import StateStore

logger = logging.getLogger(__name__)

DEFAULT_CADENCE_HOURS = 3.0

# Maximum length of the remediation hint in an alert body
MAX_HINT_LENGTH = 120


class Delivery(Enum):
    """What happened to a notification request."""

    SENT = "sent"
    QUIET_HOURS = "quiet_hours"
    COOLDOWN = "cooldown"
    DISABLED = "disabled"
    NOT_NEEDED = "not_needed"
    FAILED = "failed"


@dataclass(frozen=True)
class QuietHours:
    """A daily window in minutes since midnight; may wrap past midnight."""

    start_minute: int
    end_minute: int

    @classmethod
    def parse(cls, text: str) -> QuietHours | None:
        """
        Parse "22-07" or "22:00-07:30". Empty text means no quiet hours.

        Raises:
            ValueError: If the text is not a valid window.
        """
        if not text or not text.strip():
            return None
        match = QUIET_HOURS_PATTERN.match(text)
        if not match:
            raise ValueError(f"Invalid quiet hours: {text}")
        start_h, start_m, end_h, end_m = (int(g or 0) for g in match.groups())
        if start_h > 23 or end_h > 23 or start_m > 59 or end_m > 59:
            raise ValueError(f"Invalid quiet hours: {text}")
        return cls(start_h * 60 + start_m, end_h * 60 + end_m)

    def contains(self, moment: datetime) -> bool:
        minute = moment.hour * 60 + moment.minute
        if self.start_minute == self.end_minute:
            return False
        if self.start_minute < self.end_minute:
            return self.start_minute <= minute < self.end_minute
        return minute >= self.start_minute or minute < self.end_minute


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _format_duration(delta: timedelta) -> str:
    minutes = int(delta.total_seconds() // 60)
    if minutes < 60:
        return f"{minutes}m"
    hours, minutes = divmod(minutes, 60)
    if hours < 48:
        return f"{hours}h {minutes}m" if minutes else f"{hours}h"
    return f"{hours // 24}d {hours % 24}h"


class EscalationController:
    """
    Decides whether and what to notify for one target.

    Args:
        store: State store holding the escalation state.
        notifier: Delivery adapter.
        config: Notification preferences.
        target: Target id.
        clock: Returns the current aware datetime.
        tz: Timezone used for quiet hours. None means the system local zone.
    """

    def __init__(
        self,
        store: StateStore,
        notifier: Notifier,
        config: NotificationConfig,
        target: str,
        clock: Callable[[], datetime] | None = None,
        tz: tzinfo | None = None,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.config = config
        self.target = target
        self._clock = clock or (lambda: datetime.now(UTC))
        self._tz = tz
        self.quiet_hours = QuietHours.parse(config.quiet_hours)

    def cadence(self, run: BackupRun) -> timedelta:
        """Minimum time between alerts for an unresolved failure."""
        if self.config.escalation_hours is not None:
            hours = self.config.escalation_hours
        elif run.actions.escalate_after_hours is not None:
            hours = run.actions.escalate_after_hours
        else:
            hours = DEFAULT_CADENCE_HOURS
        return timedelta(hours=hours)

    def handle_run(self, run: BackupRun) -> Delivery:
        """Notify for a finished run."""
        if run.status == RunStatus.COMPLETE_SUCCESS:
            return self.notify_success(run)
        return self.notify_failure(run)

    def notify_failure(self, run: BackupRun) -> Delivery:
        if not self.config.enabled or not self.config.on_error:
            logger.info("Failure notifications disabled for %s", self.target)
            return Delivery.DISABLED
        if not run.actions.send_notification:
            return Delivery.NOT_NEEDED

        now = self._clock()
        state = self.store.read_escalation(self.target)
        first = run.first_failure()

        if state is None:
            state = EscalationState(
                first_failure_at=now.isoformat(),
                severity=run.severity.level.value,
                first_error_kind=first.error_kind.value if first else None,
            )
            result = self._deliver(self._failure_notification(run, None), run.severity.level)
            self._record(state, result, now)
            return result

        last = _parse_time(state.last_escalation_at)
        if last is not None:
            elapsed = now - last
            cadence = self.cadence(run)
            if elapsed < cadence:
                state.suppressed += 1
                self.store.write_escalation(self.target, state)
                logger.info(
                    "Suppressing repeat alert for %s: last alert %s ago, cadence %s",
                    self.target,
                    _format_duration(elapsed),
                    _format_duration(cadence),
                )
                return Delivery.COOLDOWN

        result = self._deliver(self._failure_notification(run, state), run.severity.level)
        state.severity = run.severity.level.value
        self._record(state, result, now)
        return result

    def notify_success(self, run: BackupRun) -> Delivery:
        state = self.store.read_escalation(self.target)

        if state is None:
            if self.config.enabled and self.config.on_success:
                return self._deliver(
                    Notification(
                        title="Backup Complete",
                        message=f"{self.target}: {run.summary.succeeded} items backed up",
                        urgency=Urgency.LOW,
                    ),
                    Severity.NONE,
                )
            return Delivery.NOT_NEEDED

        self.store.clear_escalation(self.target)
        logger.info("Backups for %s recovered, cleared failure state", self.target)

        if not self.config.enabled:
            return Delivery.DISABLED

        first_failure = _parse_time(state.first_failure_at)
        outage = ""
        if first_failure is not None:
            outage = f" after {_format_duration(self._clock() - first_failure)} of failures"
        return self._deliver(
            Notification(
                title="Backup Restored",
                message=f"{self.target}: backups are working again{outage}",
                urgency=Urgency.NORMAL,
                details={"first_failure_at": state.first_failure_at, "run_id": run.run_id},
            ),
            Severity.NONE,
        )

    def notify_warning(self, message: str, title: str = "Backup Warning") -> Delivery:
        """Send a standalone warning (disk space, verification problems)."""
        if not self.config.enabled or not self.config.on_warning:
            return Delivery.DISABLED
        return self._deliver(
            Notification(title=title, message=f"{self.target}: {message}", urgency=Urgency.NORMAL),
            Severity.MEDIUM,
        )

    def _record(self, state: EscalationState, result: Delivery, now: datetime) -> None:
        if result == Delivery.SENT:
            state.last_escalation_at = now.isoformat()
            state.notifications_sent += 1
        else:
            state.suppressed += 1
        self.store.write_escalation(self.target, state)

    def _deliver(self, notification: Notification, severity: Severity) -> Delivery:
        if self.quiet_hours is not None:
            local_now = self._clock().astimezone(self._tz)
            if (
                self.quiet_hours.contains(local_now)
                and severity.value not in self.config.quiet_hours_bypass
            ):
                logger.info(
                    "Quiet hours: not delivering '%s' for %s", notification.title, self.target
                )
                return Delivery.QUIET_HOURS

        try:
            self.notifier.send(notification)
        except NotifierError as e:
            logger.warning("Could not deliver '%s': %s", notification.title, e)
            return Delivery.FAILED

        logger.info("Sent '%s' via %s", notification.title, self.notifier.name)
        return Delivery.SENT

    def _failure_notification(
        self, run: BackupRun, state: EscalationState | None
    ) -> Notification:
        summary = run.summary
        first = run.first_failure()
        hint = first.suggested_fix if first else ""
        if len(hint) > MAX_HINT_LENGTH:
            hint = hint[: MAX_HINT_LENGTH - 3] + "..."

        if run.status == RunStatus.TOTAL_FAILURE:
            title = "Backup Failed"
        else:
            title = "Backup Partially Failed"

        message = (
            f"{self.target}: {summary.succeeded}/{summary.total} items backed up. "
            f"{summary.failed} FAILED."
        )
        if state is not None:
            title = f"{title} (still failing)"
            since = _parse_time(state.first_failure_at)
            if since is not None:
                message += f" Failing for {_format_duration(self._clock() - since)}."
        if hint:
            message += f" Fix: {hint}"

        urgency = run.actions.notification_urgency or Urgency.NORMAL
        return Notification(
            title=title,
            message=message,
            urgency=urgency,
            details={
                "run_id": run.run_id,
                "severity": run.severity.level.value,
                "reason": run.severity.reason,
                "error_kind": first.error_kind.value if first else None,
            },
        )
