"""
Notifier adapters.

Each adapter delivers a Notification through one channel. The escalation
controller only sees the Notifier interface; which adapter is used is
decided once by select_notifier() from configuration and platform.

Adapters:
    - MacOSNotifier: Notification Center via osascript
    - LinuxNotifier: desktop notifications via notify-send
    - WebhookNotifier: JSON POST to a URL (chat webhooks, ntfy, etc.)
    - LogNotifier: writes to the log, used when nothing else is available
    - MultiNotifier: fans out to several adapters
"""

from __future__ import annotations

import logging
import platform
import shutil
import subprocess
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import requests

from checkpoint.config.settings import NotificationConfig
from checkpoint.state.models import Urgency

logger = logging.getLogger(__name__)

# Seconds allowed for a desktop notifier process
DESKTOP_TIMEOUT = 10


@dataclass(frozen=True)
class Notification:
    """A message to deliver to the operator."""

    title: str
    message: str
    urgency: Urgency = Urgency.NORMAL
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "message": self.message,
            "urgency": self.urgency.value,
            "details": self.details,
        }


class NotifierError(Exception):
    """Raised when a notification could not be delivered."""

    pass


class Notifier(ABC):
    """Delivery port for notifications."""

    name = "base"

    @abstractmethod
    def send(self, notification: Notification) -> None:
        """
        Deliver a notification.

        Raises:
            NotifierError: If delivery failed.
        """


def _run_command(command: list[str], name: str) -> None:
    try:
        subprocess.run(
            command,
            capture_output=True,
            timeout=DESKTOP_TIMEOUT,
            check=True,
        )
    except FileNotFoundError as e:
        raise NotifierError(f"{command[0]} is not installed") from e
    except subprocess.TimeoutExpired as e:
        raise NotifierError(f"{name} notification timed out") from e
    except subprocess.CalledProcessError as e:
        stderr = (e.stderr or b"").decode(errors="replace").strip()
        raise NotifierError(f"{name} notification failed: {stderr or e}") from e


class MacOSNotifier(Notifier):
    """Notification Center via AppleScript."""

    name = "macos"

    def send(self, notification: Notification) -> None:
        def quote(text: str) -> str:
            return text.replace("\\", "\\\\").replace('"', '\\"')

        script = (
            f'display notification "{quote(notification.message)}" '
            f'with title "{quote(notification.title)}"'
        )
        if notification.urgency == Urgency.URGENT:
            script += ' sound name "Basso"'
        _run_command(["osascript", "-e", script], self.name)


class LinuxNotifier(Notifier):
    """Desktop notifications through notify-send."""

    name = "linux"

    _URGENCY = {
        Urgency.LOW: "low",
        Urgency.NORMAL: "normal",
        Urgency.URGENT: "critical",
    }

    def send(self, notification: Notification) -> None:
        _run_command(
            [
                "notify-send",
                "-a",
                "Checkpoint",
                "-u",
                self._URGENCY[notification.urgency],
                notification.title,
                notification.message,
            ],
            self.name,
        )


class WebhookNotifier(Notifier):
    """POST notifications as JSON to a webhook URL."""

    name = "webhook"

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._session = session

    def _get_session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
            self._session.headers.update(
                {
                    "Accept": "application/json",
                    "Content-Type": "application/json",
                    "User-Agent": "checkpoint-backup",
                }
            )
        return self._session

    def send(self, notification: Notification) -> None:
        payload = notification.to_dict()
        payload["source"] = "checkpoint"
        # Many chat webhooks render a top-level "text" field
        payload["text"] = f"{notification.title}: {notification.message}"

        try:
            response = self._get_session().post(self.url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.ConnectionError as e:
            raise NotifierError(f"Failed to connect to webhook: {e}") from e
        except requests.exceptions.Timeout as e:
            raise NotifierError(f"Webhook request timed out: {e}") from e
        except requests.exceptions.HTTPError as e:
            raise NotifierError(f"Webhook rejected notification: {e}") from e
        except requests.exceptions.RequestException as e:
            raise NotifierError(f"Webhook request failed: {e}") from e


class LogNotifier(Notifier):
    """Write notifications to the log."""

    name = "log"

    _LEVELS = {
        Urgency.LOW: logging.INFO,
        Urgency.NORMAL: logging.WARNING,
        Urgency.URGENT: logging.ERROR,
    }

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._logger = log or logging.getLogger("checkpoint.notifications")

    def send(self, notification: Notification) -> None:
        self._logger.log(
            self._LEVELS[notification.urgency],
            "%s: %s",
            notification.title,
            notification.message,
        )


class MultiNotifier(Notifier):
    """Deliver to several notifiers. Succeeds if any of them succeeds."""

    name = "multi"

    def __init__(self, notifiers: list[Notifier]) -> None:
        if not notifiers:
            raise ValueError("MultiNotifier needs at least one notifier")
        self.notifiers = notifiers

    def send(self, notification: Notification) -> None:
        errors = []
        for notifier in self.notifiers:
            try:
                notifier.send(notification)
            except NotifierError as e:
                logger.warning("Notifier %s failed: %s", notifier.name, e)
                errors.append(f"{notifier.name}: {e}")
        if len(errors) == len(self.notifiers):
            raise NotifierError("; ".join(errors))


def select_notifier(
    config: NotificationConfig,
    system: str | None = None,
    which: Callable[[str], str | None] = shutil.which,
) -> Notifier:
    """
    Choose notifier adapters from configuration and platform.

    With backend "auto" the desktop notifier for the platform is used when
    its tool is installed, falling back to the log. A configured webhook URL
    is always added alongside the desktop notifier.
    """
    if system is None:
        system = platform.system()

    webhook = (
        WebhookNotifier(config.webhook_url, timeout=config.webhook_timeout_seconds)
        if config.webhook_url
        else None
    )

    if config.backend == "webhook":
        if webhook is None:
            raise NotifierError("Webhook backend selected but no webhook_url configured")
        return webhook
    if config.backend == "log":
        return LogNotifier()

    desktop: Notifier | None = None
    if config.backend == "macos":
        desktop = MacOSNotifier()
    elif config.backend == "linux":
        desktop = LinuxNotifier()
    elif system == "Darwin" and which("osascript"):
        desktop = MacOSNotifier()
    elif system == "Linux" and which("notify-send"):
        desktop = LinuxNotifier()

    chosen: list[Notifier] = [n for n in (desktop, webhook) if n is not None]
    if not chosen:
        logger.debug("No desktop notifier available, using log notifier")
        return LogNotifier()
    if len(chosen) == 1:
        return chosen[0]
    return MultiNotifier(chosen)
