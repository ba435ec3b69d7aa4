"""
Remote copies of snapshots.

A RemoteStore lists (and uploads) the files of a snapshot on a remote
location. Listing is read-only and always bounded by a timeout; an
unreachable remote raises RemoteUnavailableError so verification can
report "could not verify" instead of a false failure.
"""

from __future__ import annotations

import json
import logging
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import requests

from checkpoint.config.settings import CloudConfig

logger = logging.getLogger(__name__)

# Seconds allowed for an upload of one snapshot
UPLOAD_TIMEOUT = 3600


class RemoteUnavailableError(Exception):
    """Raised when the remote cannot be reached or listed."""

    pass


class RemoteStore(ABC):
    """Listing and upload interface for a remote snapshot location."""

    name = "remote"

    @abstractmethod
    def list_files(self, snapshot: str) -> dict[str, int]:
        """
        Return {relative path: size} for a snapshot on the remote.

        Raises:
            RemoteUnavailableError: If the remote cannot be listed.
        """

    @abstractmethod
    def upload(self, snapshot_dir: Path) -> None:
        """
        Copy a local snapshot to the remote.

        Raises:
            RemoteUnavailableError: If the upload fails.
        """


class RcloneRemote(RemoteStore):
    """Remote accessed through the rclone command-line tool."""

    name = "rclone"

    def __init__(self, remote: str, path: str = "", timeout: float = 60.0) -> None:
        self.remote = remote.rstrip(":")
        self.path = path.strip("/")
        self.timeout = timeout

    def location(self, snapshot: str) -> str:
        if self.path:
            return f"{self.remote}:{self.path}/{snapshot}"
        return f"{self.remote}:{snapshot}"

    def _run(self, args: list[str], timeout: float) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(
                ["rclone", *args],
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except FileNotFoundError as e:
            raise RemoteUnavailableError("rclone is not installed") from e
        except subprocess.TimeoutExpired as e:
            raise RemoteUnavailableError(f"rclone timed out after {timeout:.0f}s") from e

        if result.returncode != 0:
            raise RemoteUnavailableError(
                f"rclone {args[0]} failed ({result.returncode}): {result.stderr.strip()[:300]}"
            )
        return result

    def list_files(self, snapshot: str) -> dict[str, int]:
        result = self._run(
            ["lsjson", "-R", "--files-only", self.location(snapshot)],
            self.timeout,
        )
        try:
            entries = json.loads(result.stdout or "[]")
        except json.JSONDecodeError as e:
            raise RemoteUnavailableError(f"Unexpected rclone output: {e}") from e
        return {str(entry["Path"]): int(entry.get("Size", -1)) for entry in entries}

    def upload(self, snapshot_dir: Path) -> None:
        snapshot_dir = Path(snapshot_dir)
        self._run(["copy", str(snapshot_dir), self.location(snapshot_dir.name)], UPLOAD_TIMEOUT)
        logger.info("Uploaded %s to %s", snapshot_dir.name, self.location(snapshot_dir.name))


class HttpRemote(RemoteStore):
    """
    Remote exposing a simple HTTP API.

    GET <listing_url>/<snapshot>/ returns either a JSON list of
    {"path", "size"} objects or {"files": [...]}. Uploads PUT each file to
    <listing_url>/<snapshot>/<path>.
    """

    name = "http"

    def __init__(
        self,
        listing_url: str,
        timeout: float = 60.0,
        session: requests.Session | None = None,
    ) -> None:
        self.listing_url = listing_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()

    def list_files(self, snapshot: str) -> dict[str, int]:
        url = f"{self.listing_url}/{snapshot}/"
        try:
            response = self._session.get(url, timeout=self.timeout)
            if response.status_code == 404:
                return {}
            response.raise_for_status()
            data: Any = response.json()
        except requests.exceptions.ConnectionError as e:
            raise RemoteUnavailableError(f"Failed to connect to {self.listing_url}: {e}") from e
        except requests.exceptions.Timeout as e:
            raise RemoteUnavailableError(f"Listing request timed out: {e}") from e
        except (requests.exceptions.RequestException, ValueError) as e:
            raise RemoteUnavailableError(f"Listing request failed: {e}") from e

        if isinstance(data, dict):
            data = data.get("files", [])
        try:
            return {str(item["path"]): int(item.get("size", -1)) for item in data}
        except (KeyError, TypeError, ValueError) as e:
            raise RemoteUnavailableError(f"Unexpected listing format: {e}") from e

    def upload(self, snapshot_dir: Path) -> None:
        snapshot_dir = Path(snapshot_dir)
        for path in sorted(p for p in snapshot_dir.rglob("*") if p.is_file()):
            relative = path.relative_to(snapshot_dir).as_posix()
            url = f"{self.listing_url}/{snapshot_dir.name}/{relative}"
            try:
                with open(path, "rb") as f:
                    response = self._session.put(url, data=f, timeout=self.timeout)
                response.raise_for_status()
            except requests.exceptions.RequestException as e:
                raise RemoteUnavailableError(f"Upload of {relative} failed: {e}") from e
        logger.info("Uploaded %s to %s", snapshot_dir.name, self.listing_url)


def create_remote(config: CloudConfig) -> RemoteStore:
    """Create the remote store for a cloud config."""
    if config.backend == "http":
        return HttpRemote(config.listing_url, timeout=config.timeout_seconds)
    return RcloneRemote(config.remote, config.path, timeout=config.timeout_seconds)
