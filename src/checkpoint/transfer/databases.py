"""
Database dumpers.

Dumps are opaque, gzip-compressed blobs written under a snapshot's
databases/ directory. SQLite files are copied with the online backup API
so a live database yields a consistent copy; anything else is dumped by
running a configured command and capturing its standard output.
"""

from __future__ import annotations

import gzip
import logging
import os
import shutil
import sqlite3
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from checkpoint.config.settings import DatabaseConfig
from checkpoint.state.models import ErrorKind
from checkpoint.transfer.retry import TransferError, classify_message

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DumpResult:
    """A completed database dump."""

    name: str
    path: Path
    size: int
    item_count: int | None = None


class DatabaseDumper(ABC):
    """Produces one compressed dump for a configured database."""

    def __init__(self, config: DatabaseConfig) -> None:
        self.config = config

    @property
    def name(self) -> str:
        return self.config.name

    @abstractmethod
    def dump(self, dest_dir: Path) -> DumpResult:
        """
        Write the dump into dest_dir.

        Raises:
            TransferError: With a classified kind.
            OSError: On filesystem errors writing the dump.
        """


def _gzip_file(source: Path, destination: Path) -> None:
    partial = destination.with_name(f".{destination.name}.partial")
    try:
        with open(source, "rb") as f_in, gzip.open(partial, "wb") as f_out:
            shutil.copyfileobj(f_in, f_out)
        os.replace(partial, destination)
    except BaseException:
        partial.unlink(missing_ok=True)
        raise


class SqliteDumper(DatabaseDumper):
    """Dump a SQLite database through sqlite3's backup API."""

    def dump(self, dest_dir: Path) -> DumpResult:
        source_path = Path(self.config.path).expanduser()
        if not source_path.exists():
            raise TransferError(f"Database not found: {source_path}", ErrorKind.FILE_MISSING)

        dest_dir.mkdir(parents=True, exist_ok=True)
        staging = dest_dir / f".{self.name}.db.staging"
        output = dest_dir / f"{self.name}.db.gz"

        try:
            source = sqlite3.connect(
                f"file:{source_path}?mode=ro", uri=True, timeout=self.config.timeout_seconds
            )
            try:
                target = sqlite3.connect(staging)
                try:
                    source.backup(target)
                    (table_count,) = target.execute(
                        "SELECT COUNT(*) FROM sqlite_master "
                        "WHERE type='table' AND name NOT LIKE 'sqlite_%'"
                    ).fetchone()
                finally:
                    target.close()
            finally:
                source.close()

            _gzip_file(staging, output)
        except sqlite3.Error as e:
            raise TransferError(f"SQLite backup of {self.name} failed: {e}", classify_message(str(e))) from e
        finally:
            staging.unlink(missing_ok=True)

        size = output.stat().st_size
        logger.debug("Dumped %s (%d tables, %d bytes)", self.name, table_count, size)
        return DumpResult(self.name, output, size, int(table_count))


class CommandDumper(DatabaseDumper):
    """Dump a database by running a command that writes to stdout."""

    def dump(self, dest_dir: Path) -> DumpResult:
        dest_dir.mkdir(parents=True, exist_ok=True)
        output = dest_dir / f"{self.name}.{self.config.extension}.gz"
        command = list(self.config.command)

        try:
            result = subprocess.run(
                command,
                capture_output=True,
                timeout=self.config.timeout_seconds,
            )
        except FileNotFoundError as e:
            raise TransferError(
                f"Dump command not found: {command[0]}", ErrorKind.COPY_FAILED
            ) from e
        except subprocess.TimeoutExpired as e:
            raise TransferError(
                f"Dump of {self.name} timed out after {self.config.timeout_seconds:.0f}s",
                ErrorKind.TRANSIENT_IO,
            ) from e

        if result.returncode != 0:
            stderr = result.stderr.decode(errors="replace").strip()
            raise TransferError(
                f"{command[0]} exited with {result.returncode}: {stderr[:500]}",
                classify_message(stderr),
            )
        if not result.stdout:
            raise TransferError(f"Dump of {self.name} produced no output", ErrorKind.COPY_FAILED)

        partial = output.with_name(f".{output.name}.partial")
        try:
            with gzip.open(partial, "wb") as f:
                f.write(result.stdout)
            os.replace(partial, output)
        except BaseException:
            partial.unlink(missing_ok=True)
            raise

        return DumpResult(self.name, output, output.stat().st_size)


def create_dumper(config: DatabaseConfig) -> DatabaseDumper:
    """Create the dumper for a database config."""
    if config.type == "sqlite":
        return SqliteDumper(config)
    if config.type == "command":
        return CommandDumper(config)
    raise ValueError(f"Unknown database type: {config.type}")
