"""Tests for notifier adapters and notification escalation."""

import shutil
import subprocess
import tempfile
import unittest
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import MagicMock, patch

import requests

from checkpoint.config.settings import NotificationConfig
from checkpoint.notify.escalation import Delivery, EscalationController, QuietHours
from checkpoint.notify.notifiers import (
    LinuxNotifier,
    LogNotifier,
    MacOSNotifier,
    MultiNotifier,
    Notification,
    Notifier,
    NotifierError,
    WebhookNotifier,
    select_notifier,
)
from checkpoint.state.aggregator import FailureAggregator
from checkpoint.state.models import ErrorKind, Urgency
from checkpoint.state.store import StateStore


class RecordingNotifier(Notifier):
    """Notifier that keeps what it was asked to send."""

    name = "recording"

    def __init__(self, fail: bool = False) -> None:
        self.sent: list[Notification] = []
        self.fail = fail

    def send(self, notification: Notification) -> None:
        if self.fail:
            raise NotifierError("unavailable")
        self.sent.append(notification)


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def failing_run(clock, succeeded=9, kind=ErrorKind.PERMISSION_DENIED, failed=1):
    aggregator = FailureAggregator("proj", clock=clock)
    for _ in range(succeeded):
        aggregator.record_file_success()
    for index in range(failed):
        aggregator.record_file_failure(f"file{index + 7}.txt", kind)
    return aggregator.build_run()


def successful_run(clock):
    aggregator = FailureAggregator("proj", clock=clock)
    aggregator.record_file_success()
    return aggregator.build_run()


class TestQuietHours(unittest.TestCase):
    """Tests for QuietHours."""

    def test_parse(self) -> None:
        self.assertEqual(QuietHours.parse("22-07"), QuietHours(22 * 60, 7 * 60))
        self.assertEqual(QuietHours.parse("22:30-06:15"), QuietHours(22 * 60 + 30, 6 * 60 + 15))
        self.assertIsNone(QuietHours.parse(""))
        with self.assertRaises(ValueError):
            QuietHours.parse("24-07")
        with self.assertRaises(ValueError):
            QuietHours.parse("evening")

    def test_wraparound(self) -> None:
        window = QuietHours.parse("22-07")

        self.assertTrue(window.contains(datetime(2024, 1, 1, 23, 0)))
        self.assertTrue(window.contains(datetime(2024, 1, 1, 3, 0)))
        self.assertFalse(window.contains(datetime(2024, 1, 1, 7, 0)))
        self.assertFalse(window.contains(datetime(2024, 1, 1, 12, 0)))

    def test_same_day_window(self) -> None:
        window = QuietHours.parse("12-14")

        self.assertTrue(window.contains(datetime(2024, 1, 1, 13, 59)))
        self.assertFalse(window.contains(datetime(2024, 1, 1, 14, 0)))

    def test_empty_window(self) -> None:
        self.assertFalse(QuietHours.parse("05-05").contains(datetime(2024, 1, 1, 5, 0)))


class TestEscalationController(unittest.TestCase):
    """Tests for EscalationController."""

    def setUp(self) -> None:
        self.temp_dir = tempfile.mkdtemp()
        self.store = StateStore(Path(self.temp_dir))
        self.notifier = RecordingNotifier()
        self.clock = FixedClock(datetime(2024, 6, 1, 12, 0, tzinfo=UTC))

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _controller(self, **config) -> EscalationController:
        return EscalationController(
            self.store,
            self.notifier,
            NotificationConfig(**config),
            "proj",
            clock=self.clock,
            tz=UTC,
        )

    def test_first_failure_notifies_with_hint(self) -> None:
        """Test the first failure sends one alert with the fix."""
        controller = self._controller()

        result = controller.handle_run(failing_run(self.clock))

        self.assertEqual(result, Delivery.SENT)
        self.assertEqual(len(self.notifier.sent), 1)
        sent = self.notifier.sent[0]
        self.assertEqual(sent.title, "Backup Partially Failed")
        self.assertIn("9/10 items backed up. 1 FAILED.", sent.message)
        self.assertIn("chmod +r", sent.message)
        self.assertEqual(sent.details["error_kind"], "permission-denied")

        state = self.store.read_escalation("proj")
        self.assertEqual(state.first_failure_at, self.clock.now.isoformat())
        self.assertEqual(state.last_escalation_at, self.clock.now.isoformat())
        self.assertEqual(state.notifications_sent, 1)

    def test_repeat_within_cadence_is_suppressed(self) -> None:
        """Test a medium failure is re-alerted only after 3 hours."""
        controller = self._controller()
        controller.handle_run(failing_run(self.clock))

        self.clock.advance(hours=1)
        self.assertEqual(controller.handle_run(failing_run(self.clock)), Delivery.COOLDOWN)
        self.clock.advance(hours=1, minutes=59)
        self.assertEqual(controller.handle_run(failing_run(self.clock)), Delivery.COOLDOWN)

        self.assertEqual(len(self.notifier.sent), 1)
        self.assertEqual(self.store.read_escalation("proj").suppressed, 2)

        self.clock.advance(minutes=1)
        self.assertEqual(controller.handle_run(failing_run(self.clock)), Delivery.SENT)

        self.assertEqual(len(self.notifier.sent), 2)
        self.assertEqual(self.notifier.sent[1].title, "Backup Partially Failed (still failing)")
        self.assertIn("Failing for 3h", self.notifier.sent[1].message)

    def test_cadence_follows_severity(self) -> None:
        """Test a critical failure repeats hourly."""
        controller = self._controller()
        critical = failing_run(self.clock, kind=ErrorKind.DISK_FULL)
        controller.handle_run(critical)

        self.clock.advance(hours=1)

        self.assertEqual(controller.handle_run(failing_run(self.clock, kind=ErrorKind.DISK_FULL)), Delivery.SENT)

    def test_configured_cadence_overrides(self) -> None:
        controller = self._controller(escalation_hours=0.5)
        controller.handle_run(failing_run(self.clock))

        self.clock.advance(minutes=31)

        self.assertEqual(controller.handle_run(failing_run(self.clock)), Delivery.SENT)

    def test_recovery_sends_restored_and_clears(self) -> None:
        controller = self._controller()
        controller.handle_run(failing_run(self.clock))
        self.clock.advance(hours=2)

        result = controller.handle_run(successful_run(self.clock))

        self.assertEqual(result, Delivery.SENT)
        self.assertEqual(self.notifier.sent[-1].title, "Backup Restored")
        self.assertIn("after 2h of failures", self.notifier.sent[-1].message)
        self.assertIsNone(self.store.read_escalation("proj"))

    def test_success_without_history_is_silent(self) -> None:
        """Test a full success sends nothing by default."""
        self.assertEqual(
            self._controller().handle_run(successful_run(self.clock)), Delivery.NOT_NEEDED
        )
        self.assertEqual(self.notifier.sent, [])

    def test_success_notification_when_enabled(self) -> None:
        result = self._controller(on_success=True).handle_run(successful_run(self.clock))

        self.assertEqual(result, Delivery.SENT)
        self.assertEqual(self.notifier.sent[0].title, "Backup Complete")

    def test_disabled(self) -> None:
        result = self._controller(enabled=False).handle_run(failing_run(self.clock))

        self.assertEqual(result, Delivery.DISABLED)
        self.assertEqual(self.notifier.sent, [])

    def test_quiet_hours_hold_back_and_retry(self) -> None:
        """Test a held-back first alert is delivered after quiet hours."""
        self.clock.now = datetime(2024, 6, 1, 23, 0, tzinfo=UTC)
        controller = self._controller(quiet_hours="22-07")

        self.assertEqual(controller.handle_run(failing_run(self.clock)), Delivery.QUIET_HOURS)
        self.assertEqual(self.notifier.sent, [])

        self.clock.now = datetime(2024, 6, 2, 7, 30, tzinfo=UTC)
        self.assertEqual(controller.handle_run(failing_run(self.clock)), Delivery.SENT)
        self.assertEqual(len(self.notifier.sent), 1)

    def test_critical_bypasses_quiet_hours(self) -> None:
        self.clock.now = datetime(2024, 6, 1, 2, 0, tzinfo=UTC)
        controller = self._controller(quiet_hours="22-07")

        result = controller.handle_run(failing_run(self.clock, kind=ErrorKind.DISK_FULL))

        self.assertEqual(result, Delivery.SENT)
        self.assertEqual(self.notifier.sent[0].urgency, Urgency.URGENT)

    def test_failed_delivery_is_retried_next_run(self) -> None:
        self.notifier.fail = True
        controller = self._controller()

        self.assertEqual(controller.handle_run(failing_run(self.clock)), Delivery.FAILED)

        self.notifier.fail = False
        self.clock.advance(minutes=5)
        self.assertEqual(controller.handle_run(failing_run(self.clock)), Delivery.SENT)

    def test_warning(self) -> None:
        controller = self._controller()

        self.assertEqual(controller.notify_warning("Disk 85% full"), Delivery.SENT)
        self.assertEqual(self.notifier.sent[0].message, "proj: Disk 85% full")
        self.assertEqual(
            self._controller(on_warning=False).notify_warning("x"), Delivery.DISABLED
        )


class TestNotifiers(unittest.TestCase):
    """Tests for notifier adapters."""

    @patch("checkpoint.notify.notifiers.subprocess.run")
    def test_linux_notifier(self, mock_run) -> None:
        LinuxNotifier().send(Notification("Title", "Body", Urgency.URGENT))

        command = mock_run.call_args[0][0]
        self.assertEqual(command[:5], ["notify-send", "-a", "Checkpoint", "-u", "critical"])
        self.assertEqual(command[-2:], ["Title", "Body"])

    @patch("checkpoint.notify.notifiers.subprocess.run")
    def test_macos_notifier_escapes_quotes(self, mock_run) -> None:
        MacOSNotifier().send(Notification('Say "hi"', "Body"))

        script = mock_run.call_args[0][0][2]
        self.assertIn('with title "Say \\"hi\\""', script)
        self.assertNotIn("Basso", script)

    @patch("checkpoint.notify.notifiers.subprocess.run", side_effect=FileNotFoundError())
    def test_missing_tool_raises(self, mock_run) -> None:
        with self.assertRaises(NotifierError):
            LinuxNotifier().send(Notification("t", "m"))

    @patch(
        "checkpoint.notify.notifiers.subprocess.run",
        side_effect=subprocess.CalledProcessError(1, "notify-send", stderr=b"no display"),
    )
    def test_failed_tool_raises(self, mock_run) -> None:
        with self.assertRaises(NotifierError) as ctx:
            LinuxNotifier().send(Notification("t", "m"))
        self.assertIn("no display", str(ctx.exception))

    def test_webhook_posts_json(self) -> None:
        session = MagicMock()
        notifier = WebhookNotifier("https://hooks.example.com/abc", timeout=5, session=session)

        notifier.send(Notification("Backup Failed", "proj: 0/3", Urgency.URGENT))

        args, kwargs = session.post.call_args
        self.assertEqual(args[0], "https://hooks.example.com/abc")
        self.assertEqual(kwargs["timeout"], 5)
        self.assertEqual(kwargs["json"]["text"], "Backup Failed: proj: 0/3")
        self.assertEqual(kwargs["json"]["urgency"], "urgent")

    def test_webhook_connection_error(self) -> None:
        session = MagicMock()
        session.post.side_effect = requests.exceptions.ConnectionError("refused")

        with self.assertRaises(NotifierError):
            WebhookNotifier("https://x", session=session).send(Notification("t", "m"))

    def test_webhook_http_error(self) -> None:
        session = MagicMock()
        session.post.return_value.raise_for_status.side_effect = requests.exceptions.HTTPError("500")

        with self.assertRaises(NotifierError):
            WebhookNotifier("https://x", session=session).send(Notification("t", "m"))

    def test_log_notifier(self) -> None:
        with self.assertLogs("checkpoint.notifications", level="ERROR") as logs:
            LogNotifier().send(Notification("Backup Failed", "disk full", Urgency.URGENT))

        self.assertIn("Backup Failed: disk full", logs.output[0])

    def test_multi_notifier(self) -> None:
        good = RecordingNotifier()
        bad = RecordingNotifier(fail=True)

        MultiNotifier([bad, good]).send(Notification("t", "m"))
        self.assertEqual(len(good.sent), 1)

        with self.assertRaises(NotifierError):
            MultiNotifier([bad, RecordingNotifier(fail=True)]).send(Notification("t", "m"))

    def test_select_notifier(self) -> None:
        def found(name):
            return f"/usr/bin/{name}"

        def missing(name):
            return None

        self.assertIsInstance(
            select_notifier(NotificationConfig(), system="Linux", which=found), LinuxNotifier
        )
        self.assertIsInstance(
            select_notifier(NotificationConfig(), system="Darwin", which=found), MacOSNotifier
        )
        self.assertIsInstance(
            select_notifier(NotificationConfig(), system="Linux", which=missing), LogNotifier
        )
        self.assertIsInstance(
            select_notifier(NotificationConfig(backend="log"), system="Linux", which=found),
            LogNotifier,
        )
        combined = select_notifier(
            NotificationConfig(webhook_url="https://x"), system="Linux", which=found
        )
        self.assertIsInstance(combined, MultiNotifier)
        with self.assertRaises(NotifierError):
            select_notifier(NotificationConfig(backend="webhook"))


if __name__ == "__main__":
    unittest.main()
