"""Tests for copy with retry, error classification and database dumps."""

import errno
import gzip
import shutil
import sqlite3
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

from checkpoint.config.settings import CopyConfig, DatabaseConfig
from checkpoint.state.models import ErrorKind
from checkpoint.transfer.databases import CommandDumper, SqliteDumper, create_dumper
from checkpoint.transfer.retry import (
    RetryExecutor,
    TransferError,
    classify_message,
    classify_os_error,
    copy_file,
)


class TestClassification(unittest.TestCase):
    """Tests for classify_os_error and classify_message."""

    def test_errno_classes(self):
        """Test errno to kind mapping."""
        cases = {
            errno.EACCES: ErrorKind.PERMISSION_DENIED,
            errno.EPERM: ErrorKind.PERMISSION_DENIED,
            errno.ENOSPC: ErrorKind.DISK_FULL,
            errno.EIO: ErrorKind.TRANSIENT_IO,
            errno.EBUSY: ErrorKind.TRANSIENT_IO,
            errno.ENODEV: ErrorKind.DESTINATION_UNREACHABLE,
            errno.EINVAL: ErrorKind.UNKNOWN,
        }
        for code, kind in cases.items():
            with self.subTest(code=errno.errorcode[code]):
                self.assertEqual(classify_os_error(OSError(code, "x")), kind)

    def test_enoent_depends_on_source(self):
        """Test ENOENT is missing source or vanished destination."""
        with tempfile.NamedTemporaryFile() as existing:
            error = OSError(errno.ENOENT, "No such file or directory")

            self.assertEqual(
                classify_os_error(error, existing.name), ErrorKind.DESTINATION_UNREACHABLE
            )
            self.assertEqual(classify_os_error(error, "/nonexistent/x"), ErrorKind.FILE_MISSING)

    def test_messages(self):
        """Test classification of tool output."""
        self.assertEqual(classify_message("pg_dump: Permission denied"), ErrorKind.PERMISSION_DENIED)
        self.assertEqual(classify_message("write: No space left on device"), ErrorKind.DISK_FULL)
        self.assertEqual(classify_message("database is locked"), ErrorKind.TRANSIENT_IO)
        self.assertEqual(
            classify_message("could not connect to server"), ErrorKind.DESTINATION_UNREACHABLE
        )
        self.assertEqual(classify_message("something odd"), ErrorKind.UNKNOWN)


class TestRetryExecutor(unittest.TestCase):
    """Tests for RetryExecutor."""

    def setUp(self):
        self.sleeps = []
        self.executor = RetryExecutor(sleep=self.sleeps.append)

    def test_success_first_attempt(self):
        """Test no retry and no sleep on success."""
        outcome = self.executor.call(lambda: 42, "op")

        self.assertTrue(outcome.success)
        self.assertEqual(outcome.attempts, 1)
        self.assertEqual(outcome.value, 42)
        self.assertEqual(self.sleeps, [])

    def test_transient_failures_back_off(self):
        """Test exponential backoff and no sleep after the last attempt."""
        operation = MagicMock(side_effect=OSError(errno.EIO, "Input/output error"))

        outcome = self.executor.call(operation, "op")

        self.assertFalse(outcome.success)
        self.assertEqual(outcome.attempts, 3)
        self.assertEqual(outcome.error_kind, ErrorKind.TRANSIENT_IO)
        self.assertEqual(operation.call_count, 3)
        self.assertEqual(self.sleeps, [1.0, 2.0])

    def test_recovers_on_retry(self):
        """Test success after a transient failure."""
        operation = MagicMock(side_effect=[OSError(errno.EAGAIN, "again"), "done"])

        outcome = self.executor.call(operation, "op")

        self.assertTrue(outcome.success)
        self.assertEqual(outcome.attempts, 2)
        self.assertEqual(outcome.value, "done")

    def test_permanent_error_fails_immediately(self):
        """Test that permission and disk errors are not retried."""
        for code, kind in ((errno.EACCES, ErrorKind.PERMISSION_DENIED), (errno.ENOSPC, ErrorKind.DISK_FULL)):
            with self.subTest(kind=kind):
                operation = MagicMock(side_effect=OSError(code, "nope"))

                outcome = self.executor.call(operation, "op")

                self.assertFalse(outcome.success)
                self.assertEqual(outcome.attempts, 1)
                self.assertEqual(outcome.error_kind, kind)
                self.assertEqual(operation.call_count, 1)
        self.assertEqual(self.sleeps, [])

    def test_transfer_error_kind_is_kept(self):
        """Test pre-classified errors pass through."""
        operation = MagicMock(side_effect=TransferError("changed", ErrorKind.SIZE_MISMATCH))

        outcome = self.executor.call(operation, "op", max_attempts=2)

        self.assertEqual(outcome.error_kind, ErrorKind.SIZE_MISMATCH)
        self.assertEqual(outcome.attempts, 2)
        self.assertEqual(self.sleeps, [1.0])

    def test_delay_is_capped(self):
        """Test max_delay bounds the backoff."""
        executor = RetryExecutor(base_delay=10, max_delay=25)

        self.assertEqual([executor.delay_for(n) for n in (1, 2, 3)], [10, 20, 25])

    def test_from_config(self):
        """Test building from CopyConfig."""
        executor = RetryExecutor.from_config(CopyConfig(max_attempts=5, base_delay_seconds=0.5))

        self.assertEqual(executor.max_attempts, 5)
        self.assertEqual(executor.delay_for(2), 1.0)

    def test_invalid_attempts(self):
        with self.assertRaises(ValueError):
            RetryExecutor(max_attempts=0)


class TestCopyFile(unittest.TestCase):
    """Tests for copy_file and copy_with_retry."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.root = Path(self.temp_dir)

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_copy_creates_parents_and_preserves_content(self):
        """Test a plain copy."""
        source = self.root / "src.txt"
        source.write_text("data")
        destination = self.root / "out" / "nested" / "src.txt"

        copy_file(source, destination)

        self.assertEqual(destination.read_text(), "data")
        self.assertEqual(list(destination.parent.iterdir()), [destination])

    def test_copy_with_retry_missing_source(self):
        """Test a vanished source is a permanent file-missing failure."""
        executor = RetryExecutor(sleep=lambda s: None)

        outcome = executor.copy_with_retry(self.root / "gone", self.root / "out" / "gone")

        self.assertFalse(outcome.success)
        self.assertEqual(outcome.error_kind, ErrorKind.FILE_MISSING)
        self.assertEqual(outcome.attempts, 1)

    def test_copy_with_retry_uses_copy_func(self):
        """Test injecting the single-attempt copy."""
        copy_func = MagicMock(side_effect=[OSError(errno.EIO, "io"), None])
        executor = RetryExecutor(sleep=lambda s: None, copy_func=copy_func)

        outcome = executor.copy_with_retry(self.root / "a", self.root / "b")

        self.assertTrue(outcome.success)
        self.assertEqual(copy_func.call_count, 2)


class TestDumpers(unittest.TestCase):
    """Tests for database dumpers."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.root = Path(self.temp_dir)
        self.out = self.root / "databases"

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_sqlite_dump(self):
        """Test a SQLite dump is compressed and counts tables."""
        db_path = self.root / "app.db"
        conn = sqlite3.connect(db_path)
        conn.execute("CREATE TABLE users (id INTEGER)")
        conn.execute("CREATE TABLE orders (id INTEGER)")
        conn.execute("INSERT INTO users VALUES (1)")
        conn.commit()
        conn.close()

        result = SqliteDumper(DatabaseConfig(name="app", path=str(db_path))).dump(self.out)

        self.assertEqual(result.path, self.out / "app.db.gz")
        self.assertEqual(result.item_count, 2)
        restored = self.root / "restored.db"
        with gzip.open(result.path, "rb") as f_in, open(restored, "wb") as f_out:
            shutil.copyfileobj(f_in, f_out)
        conn = sqlite3.connect(restored)
        self.assertEqual(conn.execute("SELECT COUNT(*) FROM users").fetchone(), (1,))
        conn.close()
        self.assertFalse(any(p.name.startswith(".") for p in self.out.iterdir()))

    def test_sqlite_missing_database(self):
        """Test a missing database file."""
        dumper = SqliteDumper(DatabaseConfig(name="x", path=str(self.root / "none.db")))

        with self.assertRaises(TransferError) as ctx:
            dumper.dump(self.out)

        self.assertEqual(ctx.exception.kind, ErrorKind.FILE_MISSING)

    def test_command_dump(self):
        """Test capturing a command's stdout."""
        config = DatabaseConfig(
            name="pg",
            type="command",
            command=(sys.executable, "-c", "print('CREATE TABLE t;')"),
        )

        result = create_dumper(config).dump(self.out)

        self.assertIsInstance(create_dumper(config), CommandDumper)
        with gzip.open(result.path, "rt") as f:
            self.assertIn("CREATE TABLE t;", f.read())
        self.assertIsNone(result.item_count)

    def test_command_failure_is_classified(self):
        """Test stderr of a failing command drives the kind."""
        config = DatabaseConfig(name="pg", type="command", command=("pg_dump", "shop"))
        failed = subprocess.CompletedProcess(
            args=["pg_dump"], returncode=1, stdout=b"", stderr=b"FATAL: permission denied for database"
        )

        with patch("checkpoint.transfer.databases.subprocess.run", return_value=failed):
            with self.assertRaises(TransferError) as ctx:
                CommandDumper(config).dump(self.out)

        self.assertEqual(ctx.exception.kind, ErrorKind.PERMISSION_DENIED)

    def test_command_timeout_is_transient(self):
        """Test a timed out dump can be retried."""
        config = DatabaseConfig(name="pg", type="command", command=("pg_dump",), timeout_seconds=1)

        with patch(
            "checkpoint.transfer.databases.subprocess.run",
            side_effect=subprocess.TimeoutExpired("pg_dump", 1),
        ):
            with self.assertRaises(TransferError) as ctx:
                CommandDumper(config).dump(self.out)

        self.assertEqual(ctx.exception.kind, ErrorKind.TRANSIENT_IO)

    def test_command_not_found(self):
        """Test a missing dump tool."""
        config = DatabaseConfig(name="pg", type="command", command=("no-such-dump-tool-xyz",))

        with self.assertRaises(TransferError) as ctx:
            CommandDumper(config).dump(self.out)

        self.assertEqual(ctx.exception.kind, ErrorKind.COPY_FAILED)


if __name__ == "__main__":
    unittest.main()
