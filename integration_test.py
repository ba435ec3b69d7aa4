#!/usr/bin/env python3
"""
End-to-end Integration Test for Checkpoint.

This script runs the whole backup lifecycle against a throwaway project:
backups with injected failures, escalation, retention, verification and
the CLI, without touching the real ~/.checkpoint directory.
"""

import errno
import json
import os
import shutil
import subprocess
import sys
import tempfile
from datetime import UTC, datetime, timedelta
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent / "src"))

# Test results tracking
RESULTS = {"passed": 0, "failed": 0, "tests": []}

WORK_DIR = Path(tempfile.mkdtemp(prefix="checkpoint-it-"))
PROJECT_DIR = WORK_DIR / "project"
BACKUP_DIR = WORK_DIR / "drive" / "backups"
HOME_DIR = WORK_DIR / "home"
CONFIG_PATH = WORK_DIR / "config.yaml"


def log(msg: str, level: str = "INFO") -> None:
    """Print a log message."""
    timestamp = datetime.now().strftime("%H:%M:%S")
    print(f"[{timestamp}] [{level}] {msg}")


def integration_test(name: str):
    """Decorator for test functions."""
    def decorator(func):
        def wrapper(*args, **kwargs):
            log(f"Running: {name}")
            try:
                result = func(*args, **kwargs)
                if result:
                    RESULTS["passed"] += 1
                    RESULTS["tests"].append({"name": name, "status": "PASS"})
                    log(f"  PASS: {name}", "PASS")
                else:
                    RESULTS["failed"] += 1
                    RESULTS["tests"].append({"name": name, "status": "FAIL"})
                    log(f"  FAIL: {name}", "FAIL")
                # Return None to avoid pytest warning about return values
                return None
            except Exception as e:
                RESULTS["failed"] += 1
                RESULTS["tests"].append({"name": name, "status": "ERROR", "error": str(e)})
                log(f"  ERROR: {name} - {e}", "ERROR")
                import traceback
                traceback.print_exc()
                return None
        return wrapper
    return decorator


def section(title: str) -> None:
    """Print a section header."""
    print(f"\n{'='*60}")
    print(f"  {title}")
    print(f"{'='*60}\n")


class Clock:
    """Shared controllable clock for the lifecycle tests."""

    now = datetime(2024, 6, 1, 9, 0, tzinfo=UTC)

    def __call__(self):
        return Clock.now


class Recorder:
    """Collects notifications instead of showing them."""

    sent = []


def make_settings():
    from checkpoint.config.settings import NotificationConfig, Settings, StorageConfig

    return Settings(
        project_name="it-project",
        project_dir=str(PROJECT_DIR),
        backup_dir=str(BACKUP_DIR),
        home_dir=str(HOME_DIR),
        notifications=NotificationConfig(backend="log"),
        storage=StorageConfig(check_enabled=False),
    )


def make_runner(failures=None):
    from checkpoint.backup import BackupRunner
    from checkpoint.notify.notifiers import Notifier
    from checkpoint.transfer.retry import RetryExecutor, copy_file

    class RecordingNotifier(Notifier):
        name = "recording"

        def send(self, notification):
            Recorder.sent.append(notification)

    def copy(source, destination):
        error = (failures or {}).get(Path(source).name)
        if error is not None:
            raise error
        copy_file(source, destination)

    return BackupRunner(
        make_settings(),
        executor=RetryExecutor(sleep=lambda s: None, copy_func=copy),
        notifier=RecordingNotifier(),
        clock=Clock(),
    )


# =============================================================================
# SECTION 1: Module Import Tests
# =============================================================================

@integration_test("Import checkpoint.locking module")
def test_import_locking():
    from checkpoint import locking
    return hasattr(locking, "DirectoryLock")


@integration_test("Import checkpoint.backup module")
def test_import_backup():
    from checkpoint import backup
    return hasattr(backup, "BackupRunner")


@integration_test("Import checkpoint.verify module")
def test_import_verify():
    from checkpoint import verify
    return hasattr(verify, "Verifier")


@integration_test("Import checkpoint.scheduler module")
def test_import_scheduler():
    from checkpoint import scheduler
    return hasattr(scheduler, "BackupDaemon")


# =============================================================================
# SECTION 2: Configuration
# =============================================================================

@integration_test("Create project and save config")
def test_save_config():
    from checkpoint.config.settings import load_config, save_config

    PROJECT_DIR.mkdir(parents=True)
    BACKUP_DIR.parent.mkdir(parents=True)
    for index in range(10):
        (PROJECT_DIR / f"file{index}.txt").write_text(f"line {index}\n" * 50)
    (PROJECT_DIR / "node_modules").mkdir()
    (PROJECT_DIR / "node_modules" / "dep.js").write_text("ignored")

    save_config(make_settings(), CONFIG_PATH)
    loaded = load_config(CONFIG_PATH, environ={})
    return loaded.target == "it-project" and loaded.project_dir == str(PROJECT_DIR)


# =============================================================================
# SECTION 3: Backup Lifecycle
# =============================================================================

@integration_test("First backup succeeds silently")
def test_first_backup():
    result = make_runner().run()
    return (
        result.exit_code == 0
        and result.run.summary.files.total == 10
        and not Recorder.sent
        and result.verification.exit_code == 0
    )


@integration_test("Unchanged project is skipped")
def test_skip_unchanged():
    Clock.now += timedelta(hours=1)
    return make_runner().run().skipped


@integration_test("One unreadable file gives a partial run and one alert")
def test_partial_failure():
    Clock.now += timedelta(hours=1)
    (PROJECT_DIR / "file3.txt").write_text("changed\n" * 80)
    failures = {"file7.txt": PermissionError(errno.EACCES, "Permission denied")}

    result = make_runner(failures).run(force=True)
    run = result.run
    return (
        result.exit_code == 1
        and run.summary.files.succeeded == 9
        and run.severity.level.value == "medium"
        and len(Recorder.sent) == 1
        and "chmod" in Recorder.sent[0].message
    )


@integration_test("Repeat failure inside the cadence is suppressed")
def test_escalation_cooldown():
    Clock.now += timedelta(hours=1)
    failures = {"file7.txt": PermissionError(errno.EACCES, "Permission denied")}

    result = make_runner(failures).run(force=True)
    return result.delivery.value == "cooldown" and len(Recorder.sent) == 1


@integration_test("Recovery sends one restored notification")
def test_recovery():
    Clock.now += timedelta(hours=1)
    result = make_runner().run(force=True)
    return result.exit_code == 0 and Recorder.sent[-1].title == "Backup Restored"


@integration_test("Disk full suspends scheduled backups")
def test_disk_full():
    from checkpoint.scheduler import BackupDaemon, CycleOutcome
    from checkpoint.state import StateStore

    Clock.now += timedelta(hours=1)
    failures = {
        f"file{i}.txt": OSError(errno.ENOSPC, "No space left on device") for i in range(10)
    }
    result = make_runner(failures).run(force=True)
    if result.exit_code != 2 or not result.run.actions.stop_daemon:
        return False

    daemon = BackupDaemon(make_settings(), runner_factory=lambda s: make_runner(), clock=Clock())
    skipped = daemon.run_cycle().outcome == CycleOutcome.SKIPPED_SUSPENDED
    StateStore(make_settings().state_dir).clear_suspension("it-project")
    resumed = daemon.run_cycle().outcome
    return skipped and resumed in (CycleOutcome.COMPLETED, CycleOutcome.NO_CHANGES)


# =============================================================================
# SECTION 4: Retention and Verification
# =============================================================================

@integration_test("Retention keeps tiers within bounds")
def test_retention():
    from checkpoint.layout import list_snapshots
    from checkpoint.retention import RetentionEngine

    settings = make_settings()
    engine = RetentionEngine(settings.retention, clock=Clock())
    plan = engine.plan(list_snapshots(BACKUP_DIR))
    hourly = [d for d in plan.decisions if d.keep and d.tier == "hourly"]
    return len(hourly) <= 24 and all(s.complete for s in plan.keep)


@integration_test("Full verification detects silent corruption")
def test_verify_corruption():
    from checkpoint.layout import latest_complete_snapshot
    from checkpoint.verify import Verifier

    snapshot = latest_complete_snapshot(BACKUP_DIR)
    verifier = Verifier("it-project")
    if verifier.verify_full(snapshot.path).exit_code != 0:
        return False

    # Break the hard link before flipping a byte so older snapshots stay intact
    target = snapshot.path / "files" / "file0.txt"
    data = bytearray(target.read_bytes())
    target.unlink()
    data[0] ^= 0xFF
    target.write_bytes(bytes(data))

    return (
        verifier.verify_quick(snapshot.path).exit_code == 0
        and verifier.verify_full(snapshot.path).exit_code == 1
    )


# =============================================================================
# SECTION 5: CLI Commands
# =============================================================================

def run_cli(*args: str) -> subprocess.CompletedProcess:
    env = dict(os.environ)
    env["PYTHONPATH"] = str(Path(__file__).parent / "src")
    return subprocess.run(
        [sys.executable, "-m", "checkpoint", "--config", str(CONFIG_PATH), *args],
        capture_output=True, text=True, env=env
    )


@integration_test("CLI: checkpoint --version")
def test_cli_version():
    result = run_cli("--version")
    return result.returncode == 0 and "0.1.0" in result.stdout


@integration_test("CLI: checkpoint status --json")
def test_cli_status_json():
    result = run_cli("status", "--json")
    if result.returncode != 0:
        return False
    try:
        data = json.loads(result.stdout)
        return data["target"] == "it-project"
    except (json.JSONDecodeError, KeyError):
        return False


@integration_test("CLI: checkpoint history")
def test_cli_history():
    result = run_cli("history", "-n", "5")
    return result.returncode == 0 and "it-project-" in result.stdout


@integration_test("CLI: checkpoint verify --compact")
def test_cli_verify():
    result = run_cli("verify", "--compact")
    return result.returncode in [0, 1] and result.stdout.startswith("it-project/")


@integration_test("CLI: checkpoint prune --dry-run")
def test_cli_prune():
    result = run_cli("prune", "--dry-run")
    return result.returncode == 0 and "Would delete" in result.stdout


@integration_test("CLI: checkpoint restore puts a damaged file back")
def test_cli_restore():
    target = PROJECT_DIR / "file1.txt"
    original = target.read_text()
    target.write_text("damaged\n")

    result = run_cli("restore", "--no-safety-copy", "file1.txt")
    return (
        result.returncode == 0
        and "Restored 1 items" in result.stdout
        and target.read_text() == original
    )


# =============================================================================
# CLEANUP
# =============================================================================

def cleanup():
    """Clean up test directories."""
    try:
        shutil.rmtree(WORK_DIR)
    except OSError:
        pass


# =============================================================================
# MAIN
# =============================================================================

def main():
    print("\n" + "="*60)
    print("  CHECKPOINT INTEGRATION TEST")
    print("="*60)
    print(f"\nStarted: {datetime.now().isoformat()}")
    print(f"Python: {sys.version.split()[0]}")
    print(f"Workspace: {WORK_DIR}")

    try:
        section("1. Module Imports")
        test_import_locking()
        test_import_backup()
        test_import_verify()
        test_import_scheduler()

        section("2. Configuration")
        test_save_config()

        section("3. Backup Lifecycle")
        test_first_backup()
        test_skip_unchanged()
        test_partial_failure()
        test_escalation_cooldown()
        test_recovery()
        test_disk_full()

        section("4. Retention and Verification")
        test_retention()
        test_verify_corruption()

        section("5. CLI Commands")
        test_cli_version()
        test_cli_status_json()
        test_cli_history()
        test_cli_verify()
        test_cli_prune()
        test_cli_restore()

    finally:
        cleanup()

    # Print summary
    section("TEST SUMMARY")

    total = RESULTS["passed"] + RESULTS["failed"]
    pass_rate = (RESULTS["passed"] / total * 100) if total > 0 else 0

    print(f"Total Tests: {total}")
    print(f"Passed:      {RESULTS['passed']}")
    print(f"Failed:      {RESULTS['failed']}")
    print(f"Pass Rate:   {pass_rate:.1f}%")

    if RESULTS["failed"] > 0:
        print("\nFailed Tests:")
        for test in RESULTS["tests"]:
            if test["status"] != "PASS":
                error = test.get("error", "")
                print(f"  - {test['name']}: {test['status']}" + (f" ({error})" if error else ""))

    print("\n" + "="*60)
    if RESULTS["failed"] == 0:
        print("  ALL TESTS PASSED!")
    else:
        print(f"  {RESULTS['failed']} TEST(S) FAILED")
    print("="*60 + "\n")

    return 0 if RESULTS["failed"] == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
