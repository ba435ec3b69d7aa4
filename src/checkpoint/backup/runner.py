"""
Backup run orchestration.

One call to BackupRunner.run() performs a complete, synchronous backup of
a target:

    acquire lock -> check storage -> detect changes -> copy with retry
    -> dump databases -> write manifest -> record failures and severity
    -> write state -> notify -> upload -> prune -> verify -> release lock

A run that cannot take the lock does nothing and raises LockBusyError.
Failures of individual files and databases never abort the run.
"""

from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from checkpoint.changes.detector import (
    CACHE_FILE_NAME,
    ChangeDetector,
    HashCache,
    HashUnavailableError,
)
from checkpoint.changes.scanner import iter_project_files
from checkpoint.config.settings import ConfigurationError, Settings
from checkpoint.layout import (
    DATABASES_DIR,
    FILES_DIR,
    MANIFEST_NAME,
    Snapshot,
    latest_complete_snapshot,
    new_snapshot_path,
)
from checkpoint.locking.lock import BackupLock, LockBusyError, create_lock
from checkpoint.notify.escalation import Delivery, EscalationController
from checkpoint.notify.notifiers import Notifier, select_notifier
from checkpoint.retention.policy import PruneResult, RetentionEngine
from checkpoint.state.aggregator import FailureAggregator
from checkpoint.state.models import BackupRun, ErrorKind, RunStatus
from checkpoint.state.store import StateStore
from checkpoint.transfer.databases import DatabaseDumper, create_dumper
from checkpoint.transfer.retry import RetryExecutor, classify_os_error
from checkpoint.verify.manifest import Manifest, ManifestError, generate_manifest, load_manifest
from checkpoint.verify.remote import RemoteStore, RemoteUnavailableError, create_remote
from checkpoint.verify.verifier import VerificationReport, Verifier, format_compact

logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    """
    Everything a run produced.

    Attributes:
        run: The persisted BackupRun, or None when the run was skipped.
        skipped: True when nothing changed and no snapshot was taken.
        snapshot: Path of the snapshot written by this run.
        delivery: What happened to the run's notification.
        prune: Retention result, if retention ran.
        verification: Post-backup verification report, if it ran.
        storage_percent: Backup drive usage before the run.
        uploaded: Whether the snapshot was uploaded to the remote.
        warnings: Non-fatal problems outside the per-item accounting.
    """

    run: BackupRun | None = None
    skipped: bool = False
    snapshot: Path | None = None
    delivery: Delivery | None = None
    prune: PruneResult | None = None
    verification: VerificationReport | None = None
    storage_percent: float | None = None
    uploaded: bool = False
    warnings: list[str] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        return self.run.exit_code if self.run is not None else 0


class BackupRunner:
    """
    Runs backups for one configured target.

    Every collaborator can be injected; by default they are built from
    the settings.

    Example:
        runner = BackupRunner(load_config())
        result = runner.run()
        sys.exit(result.exit_code)
    """

    def __init__(
        self,
        settings: Settings,
        lock: BackupLock | None = None,
        detector: ChangeDetector | None = None,
        executor: RetryExecutor | None = None,
        store: StateStore | None = None,
        notifier: Notifier | None = None,
        remote: RemoteStore | None = None,
        dumpers: list[DatabaseDumper] | None = None,
        clock: Callable[[], datetime] | None = None,
        disk_usage: Callable[[str], tuple[int, int, int]] = shutil.disk_usage,
    ) -> None:
        settings.require_paths()
        self.settings = settings
        self.target = settings.target
        self.project_dir = Path(settings.project_dir).expanduser()
        self.backup_dir = Path(settings.backup_dir).expanduser()

        self._clock = clock or (lambda: datetime.now(UTC))
        self.lock = lock or create_lock(settings.lock_dir, settings.lock_backend)
        self.detector = detector or ChangeDetector(HashCache(self.backup_dir / CACHE_FILE_NAME))
        self.executor = executor or RetryExecutor.from_config(settings.copy)
        self.store = store or StateStore(settings.state_dir)
        self.notifier = notifier or select_notifier(settings.notifications)
        self.remote = remote
        if self.remote is None and settings.cloud.enabled:
            self.remote = create_remote(settings.cloud)
        self.dumpers = dumpers if dumpers is not None else [
            create_dumper(db) for db in settings.databases
        ]
        self._disk_usage = disk_usage

        self.escalation = EscalationController(
            self.store,
            self.notifier,
            settings.notifications,
            self.target,
            clock=self._clock,
        )

    def run(self, force: bool = False) -> RunResult:
        """
        Perform one backup run.

        Args:
            force: Take a snapshot even when nothing changed.

        Raises:
            ConfigurationError: If the project directory does not exist.
            LockBusyError: If another process is backing up this target.
        """
        if not self.project_dir.is_dir():
            raise ConfigurationError(f"Project directory not found: {self.project_dir}")

        acquired = self.lock.acquire(self.target)
        if not acquired.acquired:
            raise LockBusyError(self.target, acquired.holder_pid)

        try:
            return self._run_locked(force)
        finally:
            self.lock.release(self.target)

    def _run_locked(self, force: bool) -> RunResult:
        result = RunResult()
        aggregator = FailureAggregator(self.target, clock=self._clock)

        if not self._destination_available(aggregator):
            return self._finish(result, aggregator, None, None)

        result.storage_percent = self._check_storage(result)

        previous = latest_complete_snapshot(self.backup_dir)
        previous_hashes = self._previous_hashes(previous)
        scan_errors: list[tuple[str, OSError]] = []
        files = list(
            iter_project_files(
                self.project_dir,
                self.settings.exclude,
                skip_dirs=[self.backup_dir, Path(self.settings.home_dir).expanduser()],
                errors=scan_errors,
            )
        )
        for relative, error in scan_errors:
            aggregator.record_file_failure(
                relative, classify_os_error(error), error.strerror or str(error)
            )

        with self.detector.deferred_save():
            plan = self._plan_files(files, previous, previous_hashes)
            removed = self.detector.cache.prune_missing()
            if removed:
                logger.debug("Dropped %d hash cache entries for deleted files", removed)

            if not force and not self.dumpers and previous is not None and not scan_errors:
                if not plan.changed and set(files) == previous_hashes.keys():
                    logger.info("No changes since snapshot %s, skipping", previous.name)
                    result.skipped = True
                    return result

            now = self._clock()
            snapshot_dir = new_snapshot_path(self.backup_dir, now)
            try:
                (snapshot_dir / FILES_DIR).mkdir(parents=True)
            except OSError as e:
                aggregator.record_file_failure(
                    str(self.backup_dir), classify_os_error(e, self.project_dir), e.strerror or str(e)
                )
                return self._finish(result, aggregator, None, None)

            result.snapshot = snapshot_dir
            known_hashes: dict[str, str] = {}
            self._copy_files(plan, previous, snapshot_dir, aggregator, known_hashes)
            item_counts = self._dump_databases(snapshot_dir, aggregator)

        manifest = self._write_manifest(result, snapshot_dir, aggregator, known_hashes, item_counts)
        return self._finish(result, aggregator, snapshot_dir, manifest)

    def _finish(
        self,
        result: RunResult,
        aggregator: FailureAggregator,
        snapshot_dir: Path | None,
        manifest: Manifest | None,
    ) -> RunResult:
        run = aggregator.build_run(snapshot=snapshot_dir.name if manifest and snapshot_dir else None)
        result.run = run

        self.store.write_run(run)
        if run.failures:
            self.store.append_history(run)
        if run.actions.stop_daemon:
            self.store.suspend_daemon(self.target, run.severity.reason, run.run_id)

        result.delivery = self.escalation.handle_run(run)
        logger.info(
            "Backup of %s finished: %s, %d/%d items, severity %s",
            self.target,
            run.status.value,
            run.summary.succeeded,
            run.summary.total,
            run.severity.level.value,
        )

        if snapshot_dir is None or manifest is None:
            return result

        self._upload(result, run, snapshot_dir)

        if self.settings.retention.enabled and run.status != RunStatus.TOTAL_FAILURE:
            engine = RetentionEngine(self.settings.retention, clock=self._clock)
            result.prune = engine.prune(self.backup_dir)

        mode = self.settings.verification.after_backup
        if mode != "none":
            verifier = Verifier(self.target)
            if mode == "full":
                report = verifier.verify_full(snapshot_dir, manifest)
            else:
                report = verifier.verify_quick(snapshot_dir, manifest)
            result.verification = report
            if report.exit_code != 0:
                result.warnings.append(format_compact(report))
                self.escalation.notify_warning(
                    format_compact(report), title="Backup Verification Failed"
                )

        return result

    def _destination_available(self, aggregator: FailureAggregator) -> bool:
        """Record a destination-unreachable failure if the backup drive is gone."""
        parent = self.backup_dir.parent
        if not parent.exists():
            aggregator.record_file_failure(
                str(self.backup_dir),
                ErrorKind.DESTINATION_UNREACHABLE,
                f"{parent} does not exist",
            )
            return False
        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            aggregator.record_file_failure(
                str(self.backup_dir), classify_os_error(e, self.project_dir), e.strerror or str(e)
            )
            return False
        return True

    def _check_storage(self, result: RunResult) -> float | None:
        if not self.settings.storage.check_enabled:
            return None
        try:
            total, used, _ = self._disk_usage(str(self.backup_dir))
        except OSError as e:
            logger.warning("Could not check disk usage of %s: %s", self.backup_dir, e)
            return None
        if total <= 0:
            return None

        percent = used * 100 / total
        storage = self.settings.storage
        if percent >= storage.critical_percent:
            message = f"Backup drive is {percent:.0f}% full (critical at {storage.critical_percent}%)"
        elif percent >= storage.warning_percent:
            message = f"Backup drive is {percent:.0f}% full (warning at {storage.warning_percent}%)"
        else:
            return percent

        logger.warning(message)
        result.warnings.append(message)
        self.escalation.notify_warning(message, title="Backup Drive Filling Up")
        return percent

    def _previous_hashes(self, previous: Snapshot | None) -> dict[str, str]:
        """Map project-relative path to hash for files in the previous snapshot."""
        if previous is None:
            return {}
        try:
            manifest = load_manifest(previous.path)
        except ManifestError as e:
            logger.warning("Cannot use previous snapshot %s for comparison: %s", previous.name, e)
            return {}
        prefix = FILES_DIR + "/"
        return {
            entry.path[len(prefix):]: entry.hash
            for entry in manifest.files
            if entry.path.startswith(prefix)
        }

    def _plan_files(
        self,
        files: list[str],
        previous: Snapshot | None,
        previous_hashes: dict[str, str],
    ) -> _FilePlan:
        plan = _FilePlan()
        for relative in files:
            source = self.project_dir / relative
            try:
                digest = self.detector.hash(source)
            except HashUnavailableError:
                # The copy attempt will classify the underlying error
                plan.changed.append(relative)
                continue

            plan.hashes[relative] = digest
            if previous is None:
                plan.changed.append(relative)
                continue

            expected = previous_hashes.get(relative)
            previous_copy = previous.path / FILES_DIR / relative
            if expected is not None:
                unchanged = expected == digest and previous_copy.exists()
            else:
                unchanged = self.detector.identical(source, previous_copy)

            if unchanged:
                plan.unchanged.append(relative)
            else:
                plan.changed.append(relative)

        stats = self.detector.stats
        logger.info(
            "%d files: %d changed, %d unchanged (hash cache %d/%d hits)",
            len(files),
            len(plan.changed),
            len(plan.unchanged),
            stats.hits,
            stats.lookups,
        )
        return plan

    def _copy_files(
        self,
        plan: _FilePlan,
        previous: Snapshot | None,
        snapshot_dir: Path,
        aggregator: FailureAggregator,
        known_hashes: dict[str, str],
    ) -> None:
        files_root = snapshot_dir / FILES_DIR

        for relative in plan.unchanged:
            assert previous is not None
            destination = files_root / relative
            try:
                destination.parent.mkdir(parents=True, exist_ok=True)
                os.link(previous.path / FILES_DIR / relative, destination)
            except OSError as e:
                logger.debug("Hard link failed for %s (%s), copying instead", relative, e)
                plan.changed.append(relative)
                continue
            aggregator.record_file_success()
            known_hashes[f"{FILES_DIR}/{relative}"] = plan.hashes[relative]

        for relative in plan.changed:
            source = self.project_dir / relative
            outcome = self.executor.copy_with_retry(source, files_root / relative)
            if not outcome.success:
                aggregator.record_file_failure(
                    relative,
                    outcome.error_kind or ErrorKind.UNKNOWN,
                    outcome.message,
                    retry_count=outcome.attempts,
                )
                continue

            # Not added to known_hashes: the manifest must hash the copied bytes
            aggregator.record_file_success()

    def _dump_databases(
        self, snapshot_dir: Path, aggregator: FailureAggregator
    ) -> dict[str, int]:
        item_counts: dict[str, int] = {}
        db_dir = snapshot_dir / DATABASES_DIR

        for dumper in self.dumpers:
            outcome = self.executor.call(
                lambda d=dumper: d.dump(db_dir),
                description=f"dump {dumper.name}",
            )
            if not outcome.success:
                aggregator.record_database_failure(
                    dumper.name,
                    outcome.error_kind or ErrorKind.UNKNOWN,
                    outcome.message,
                    retry_count=outcome.attempts,
                )
                continue

            aggregator.record_database_success()
            dump = outcome.value
            if dump.item_count is not None:
                relative = dump.path.relative_to(snapshot_dir).as_posix()
                item_counts[relative] = dump.item_count

        return item_counts

    def _write_manifest(
        self,
        result: RunResult,
        snapshot_dir: Path,
        aggregator: FailureAggregator,
        known_hashes: dict[str, str],
        item_counts: dict[str, int],
    ) -> Manifest | None:
        if aggregator.summary().succeeded == 0:
            logger.warning("Nothing was backed up, removing empty snapshot %s", snapshot_dir.name)
            shutil.rmtree(snapshot_dir, ignore_errors=True)
            result.snapshot = None
            return None

        try:
            return generate_manifest(
                snapshot_dir,
                self.target,
                known_hashes=known_hashes,
                item_counts=item_counts,
                clock=self._clock,
            )
        except OSError as e:
            message = f"Could not write manifest for {snapshot_dir.name}: {e}"
            logger.error(message)
            aggregator.record_file_failure(
                f"{snapshot_dir.name}/{MANIFEST_NAME}", ErrorKind.VERIFICATION_FAILED, message
            )
            return None

    def _upload(self, result: RunResult, run: BackupRun, snapshot_dir: Path) -> None:
        if self.remote is None:
            return
        if run.actions.block_cloud_upload:
            logger.warning(
                "Cloud upload of %s blocked: severity %s", snapshot_dir.name, run.severity.level.value
            )
            return
        try:
            self.remote.upload(snapshot_dir)
        except RemoteUnavailableError as e:
            message = f"Cloud upload failed: {e}"
            logger.warning(message)
            result.warnings.append(message)
            self.escalation.notify_warning(message, title="Cloud Upload Failed")
            return
        result.uploaded = True


@dataclass
class _FilePlan:
    changed: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    hashes: dict[str, str] = field(default_factory=dict)
