"""Tests for restoring snapshots."""

import shutil
import sqlite3
import tempfile
import unittest
from datetime import UTC, datetime
from pathlib import Path

from checkpoint.backup.restore import RestoreError, Restorer
from checkpoint.backup.runner import BackupRunner
from checkpoint.config.settings import (
    DatabaseConfig,
    NotificationConfig,
    Settings,
    StorageConfig,
)
from checkpoint.layout import FILES_DIR
from checkpoint.locking.lock import DirectoryLock, LockBusyError

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)


class RestoreTestCase(unittest.TestCase):
    """Base class with one backed-up project and SQLite database."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.root = Path(self.temp_dir)
        self.project = self.root / "project"
        (self.project / "src").mkdir(parents=True)
        (self.project / "README.md").write_text("readme\n")
        (self.project / "src" / "app.py").write_text("print('v1')\n")
        (self.project / "src" / "util.py").write_text("HELPER = 1\n")

        self.db_path = self.root / "app.db"
        conn = sqlite3.connect(self.db_path)
        conn.execute("CREATE TABLE items (id INTEGER)")
        conn.execute("INSERT INTO items VALUES (1)")
        conn.commit()
        conn.close()

        self.settings = Settings(
            project_name="proj",
            project_dir=str(self.project),
            backup_dir=str(self.root / "backups"),
            home_dir=str(self.root / "home"),
            databases=(DatabaseConfig(name="app", path=str(self.db_path)),),
            notifications=NotificationConfig(backend="log"),
            storage=StorageConfig(check_enabled=False),
        )
        self.snapshot = BackupRunner(self.settings, clock=lambda: NOW).run().snapshot

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def restorer(self, **kwargs):
        return Restorer(self.settings, clock=lambda: NOW, **kwargs)


class TestFileRestore(RestoreTestCase):
    """Tests for restoring project files."""

    def test_restore_everything(self):
        """Test edited and deleted files come back, untouched ones are left alone."""
        (self.project / "src" / "app.py").write_text("print('broken')\n")
        (self.project / "src" / "util.py").unlink()

        result = self.restorer().restore()

        self.assertEqual(result.exit_code, 0)
        self.assertEqual(sorted(result.restored), ["src/app.py", "src/util.py"])
        self.assertEqual(result.unchanged, ["README.md"])
        self.assertEqual((self.project / "src" / "app.py").read_text(), "print('v1')\n")
        self.assertEqual((self.project / "src" / "util.py").read_text(), "HELPER = 1\n")

        safety = self.project / "src" / "app.py.pre-restore-20240301_120000"
        self.assertEqual(result.safety_copies, [str(safety)])
        self.assertEqual(safety.read_text(), "print('broken')\n")

    def test_restore_selected_paths(self):
        (self.project / "src" / "app.py").write_text("changed\n")
        (self.project / "README.md").write_text("changed\n")

        result = self.restorer().restore(paths=["src/"], safety_copies=False)

        self.assertEqual(result.restored, ["src/app.py"])
        self.assertEqual(result.safety_copies, [])
        self.assertEqual((self.project / "README.md").read_text(), "changed\n")

    def test_absolute_path_inside_project(self):
        (self.project / "README.md").unlink()

        result = self.restorer().restore(paths=[str(self.project / "README.md")])

        self.assertEqual(result.restored, ["README.md"])

    def test_dry_run_writes_nothing(self):
        (self.project / "src" / "app.py").write_text("changed\n")

        result = self.restorer().restore(dry_run=True)

        self.assertEqual(result.restored, ["src/app.py"])
        self.assertEqual((self.project / "src" / "app.py").read_text(), "changed\n")

    def test_restore_to_other_directory(self):
        target = self.root / "elsewhere"

        result = self.restorer().restore(destination=target)

        self.assertEqual(len(result.restored), 3)
        self.assertEqual((target / "src" / "app.py").read_text(), "print('v1')\n")

    def test_corrupt_snapshot_file_is_not_restored(self):
        """Test a snapshot copy that fails its checksum never replaces the project file."""
        (self.snapshot / FILES_DIR / "src" / "app.py").unlink()
        (self.snapshot / FILES_DIR / "src" / "app.py").write_text("print('rot')\n")
        (self.project / "src" / "app.py").write_text("current\n")

        result = self.restorer().restore(paths=["src/app.py"])

        self.assertEqual(result.exit_code, 1)
        self.assertEqual(result.failed[0][0], "src/app.py")
        self.assertIn("checksum", result.failed[0][1])
        self.assertEqual((self.project / "src" / "app.py").read_text(), "current\n")
        self.assertEqual(list((self.project / "src").glob(".*restoring")), [])

    def test_unknown_path(self):
        with self.assertRaises(RestoreError):
            self.restorer().restore(paths=["missing.txt"])

    def test_path_outside_project(self):
        with self.assertRaises(RestoreError):
            self.restorer().restore(paths=[str(self.root / "app.db")])

    def test_unknown_snapshot(self):
        with self.assertRaises(RestoreError):
            self.restorer().restore(snapshot="20200101_000000")

    def test_lock_busy(self):
        """Test a restore does not run while a backup holds the lock."""
        lock_dir = self.settings.lock_dir
        DirectoryLock(lock_dir, is_alive=lambda pid: True, pid=424242).acquire("proj")
        lock = DirectoryLock(lock_dir, is_alive=lambda pid: True)

        with self.assertRaises(LockBusyError):
            self.restorer(lock=lock).restore()


class TestDatabaseRestore(RestoreTestCase):
    """Tests for restoring SQLite dumps."""

    def test_databases_are_opt_in(self):
        result = self.restorer().restore()

        self.assertNotIn("databases/app.db.gz", result.restored)

    def test_restore_sqlite_dump(self):
        """Test the dump is decompressed over the configured database."""
        conn = sqlite3.connect(self.db_path)
        conn.execute("DROP TABLE items")
        conn.commit()
        conn.close()

        result = self.restorer().restore(databases=True)

        self.assertIn("databases/app.db.gz", result.restored)
        conn = sqlite3.connect(self.db_path)
        try:
            self.assertEqual(conn.execute("SELECT id FROM items").fetchall(), [(1,)])
        finally:
            conn.close()
        self.assertTrue(Path(f"{self.db_path}.pre-restore-20240301_120000").exists())

    def test_restore_dump_to_other_directory(self):
        target = self.root / "elsewhere"

        self.restorer().restore(destination=target, databases=True)

        self.assertTrue((target / "databases" / "app.db").exists())

    def test_database_in_use(self):
        Path(f"{self.db_path}-wal").write_bytes(b"")

        result = self.restorer().restore(databases=True)

        self.assertEqual(result.exit_code, 1)
        self.assertEqual(result.failed[0][0], "databases/app.db.gz")


if __name__ == "__main__":
    unittest.main()
