"""
Command-line interface for Checkpoint.

Provides commands for running backups, inspecting state and failures,
verifying, pruning and restoring snapshots, and running the backup daemon.

Uses Python's argparse module (no external CLI libraries).
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import NoReturn

import yaml

from checkpoint import __version__
from checkpoint.config.settings import (
    ConfigurationError,
    Settings,
    get_config_path,
    load_config,
    save_config,
    settings_to_dict,
)
from checkpoint.layout import list_snapshots, snapshots_root
from checkpoint.locking.lock import DirectoryLock, LockBusyError, create_lock
from checkpoint.state.models import BackupRun
from checkpoint.state.store import StateStore

# Set up logging
logger = logging.getLogger(__name__)

# Global verbosity settings (set during main() based on args)
_quiet_mode = False
_verbose_level = 0

# Exit code when another process holds the target's lock
EXIT_LOCK_BUSY = 3


def set_output_mode(quiet: bool = False, verbose: int = 0) -> None:
    """
    Set the output mode for the CLI.

    Args:
        quiet: If True, suppress non-essential output.
        verbose: Verbosity level (0=normal, 1+=verbose).
    """
    global _quiet_mode, _verbose_level
    _quiet_mode = quiet
    _verbose_level = verbose


def output(message: str = "", force: bool = False) -> None:
    """
    Print a message to stdout, respecting quiet mode.

    Args:
        message: The message to print.
        force: If True, print even in quiet mode (for JSON output).
    """
    if force or not _quiet_mode:
        print(message)


def output_error(message: str) -> None:
    """Print an error message (always shown, even in quiet mode)."""
    print(message, file=sys.stderr)


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for the Checkpoint CLI."""
    parser = argparse.ArgumentParser(
        prog="checkpoint",
        description="Incremental project backups with failure tracking and verification",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"checkpoint {__version__}",
    )

    parser.add_argument(
        "--config",
        metavar="PATH",
        help="Override config file location (default: ~/.checkpoint/config.yaml)",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase output verbosity (can be repeated)",
    )

    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress non-essential output",
    )

    subparsers = parser.add_subparsers(
        title="commands",
        dest="command",
        metavar="<command>",
    )

    # backup command
    backup_parser = subparsers.add_parser(
        "backup",
        help="Run a backup now",
        description="Copy changed files, dump databases and record the outcome.",
    )
    backup_parser.add_argument(
        "--force",
        action="store_true",
        help="Take a snapshot even if nothing changed",
    )
    backup_parser.set_defaults(func=cmd_backup)

    # status command
    status_parser = subparsers.add_parser(
        "status",
        help="Show the last backup run",
        description="Display the outcome, severity and recommended actions of the last run.",
    )
    status_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    status_parser.set_defaults(func=cmd_status)

    # failures command
    failures_parser = subparsers.add_parser(
        "failures",
        help="Show failures of the last run with fixes",
        description="List every failed file and database with a suggested fix.",
    )
    failures_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    failures_parser.set_defaults(func=cmd_failures)

    # history command
    history_parser = subparsers.add_parser(
        "history",
        help="Show recent runs that had failures",
    )
    history_parser.add_argument(
        "-n", "--count",
        type=int,
        default=10,
        metavar="N",
        help="Number of runs to show (default: 10)",
    )
    history_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    history_parser.set_defaults(func=cmd_history)

    # verify command
    verify_parser = subparsers.add_parser(
        "verify",
        help="Verify a snapshot against its manifest",
        description="Quick checks presence and size; full recomputes hashes; "
        "cloud compares the remote copy.",
    )
    mode_group = verify_parser.add_mutually_exclusive_group()
    mode_group.add_argument(
        "--full",
        action="store_true",
        help="Recompute hashes and check database dumps",
    )
    mode_group.add_argument(
        "--cloud",
        action="store_true",
        help="Compare against the remote copy",
    )
    format_group = verify_parser.add_mutually_exclusive_group()
    format_group.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    format_group.add_argument(
        "--compact",
        action="store_true",
        help="Output a single line",
    )
    verify_parser.add_argument(
        "--snapshot",
        metavar="NAME",
        help="Snapshot to verify (default: latest complete)",
    )
    verify_parser.set_defaults(func=cmd_verify)

    # snapshots command
    snapshots_parser = subparsers.add_parser(
        "snapshots",
        help="List snapshots",
    )
    snapshots_parser.set_defaults(func=cmd_snapshots)

    # prune command
    prune_parser = subparsers.add_parser(
        "prune",
        help="Apply the retention policy",
        description="Delete snapshots not kept by any retention tier.",
    )
    prune_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be deleted without deleting",
    )
    prune_parser.set_defaults(func=cmd_prune)

    # restore command
    restore_parser = subparsers.add_parser(
        "restore",
        help="Restore files from a snapshot",
        description="Copy files back from a snapshot, checking each against the "
        "manifest. Replaced files are kept as .pre-restore copies.",
    )
    restore_parser.add_argument(
        "paths",
        nargs="*",
        metavar="PATH",
        help="Files or directories to restore, relative to the project (default: all)",
    )
    restore_parser.add_argument(
        "--snapshot",
        metavar="NAME",
        help="Snapshot to restore from (default: latest complete)",
    )
    restore_parser.add_argument(
        "--to",
        dest="destination",
        metavar="DIR",
        help="Restore into this directory instead of the project",
    )
    restore_parser.add_argument(
        "--databases",
        action="store_true",
        help="Also restore SQLite database dumps",
    )
    restore_parser.add_argument(
        "--no-safety-copy",
        action="store_true",
        help="Do not keep .pre-restore copies of replaced files",
    )
    restore_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be restored without writing",
    )
    restore_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    restore_parser.set_defaults(func=cmd_restore)

    # unlock command
    unlock_parser = subparsers.add_parser(
        "unlock",
        help="Remove a stale backup lock",
    )
    unlock_parser.add_argument(
        "--force",
        action="store_true",
        help="Remove the lock even if its holder is alive",
    )
    unlock_parser.set_defaults(func=cmd_unlock)

    # resume command
    resume_parser = subparsers.add_parser(
        "resume",
        help="Resume scheduled backups after a critical failure",
    )
    resume_parser.set_defaults(func=cmd_resume)

    # daemon command
    daemon_parser = subparsers.add_parser(
        "daemon",
        help="Run or control the backup daemon",
    )
    daemon_parser.add_argument(
        "action",
        choices=["run", "stop", "status", "logs"],
        help="Daemon action",
    )
    daemon_parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single cycle and exit",
    )
    daemon_parser.add_argument(
        "--lines",
        type=int,
        default=50,
        metavar="N",
        help="Log lines to show (default: 50)",
    )
    daemon_parser.set_defaults(func=cmd_daemon)

    # config command
    config_parser = subparsers.add_parser(
        "config",
        help="Show or create the configuration file",
    )
    config_parser.add_argument(
        "action",
        choices=["show", "init"],
        help="Config action",
    )
    config_parser.add_argument(
        "--project-dir",
        metavar="PATH",
        help="Project directory (for init)",
    )
    config_parser.add_argument(
        "--backup-dir",
        metavar="PATH",
        help="Backup directory (for init)",
    )
    config_parser.set_defaults(func=cmd_config)

    return parser


def setup_logging(verbose: int, quiet: bool) -> None:
    """Configure logging based on verbosity level."""
    if quiet:
        level = logging.WARNING
    elif verbose == 0:
        level = logging.INFO
    else:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _load_settings(args: argparse.Namespace) -> Settings:
    config_path = Path(args.config) if args.config else None
    return load_config(config_path)


def _print_run(run: BackupRun) -> None:
    summary = run.summary
    output(f"Target:    {run.target}")
    output(f"Run:       {run.run_id}")
    output(f"Finished:  {run.timestamp}")
    output(f"Status:    {run.status.value} (exit code {run.exit_code})")
    output(f"Severity:  {run.severity.level.value} - {run.severity.reason}")
    output(
        f"Files:     {summary.files.succeeded}/{summary.files.total} backed up"
        f"{f', {summary.files.failed} failed' if summary.files.failed else ''}"
    )
    if summary.databases.total:
        output(
            f"Databases: {summary.databases.succeeded}/{summary.databases.total} backed up"
            f"{f', {summary.databases.failed} failed' if summary.databases.failed else ''}"
        )
    if run.snapshot:
        output(f"Snapshot:  {run.snapshot}")


def cmd_backup(args: argparse.Namespace) -> int:
    """Run a backup now."""
    from checkpoint.backup import BackupRunner

    settings = _load_settings(args)
    runner = BackupRunner(settings)

    output(f"Backing up {settings.project_dir} -> {settings.backup_dir}")
    try:
        result = runner.run(force=args.force)
    except LockBusyError as e:
        output_error(str(e))
        return EXIT_LOCK_BUSY

    if result.skipped:
        output("No changes since the last snapshot. Nothing to do.")
        return 0

    run = result.run
    assert run is not None
    output()
    _print_run(run)

    for warning in result.warnings:
        output_error(f"Warning: {warning}")

    if run.failures:
        output()
        output(run.remediation)
    if run.actions.stop_daemon:
        output()
        output_error("Scheduled backups are suspended. Run 'checkpoint resume' after fixing this.")

    return run.exit_code


def cmd_status(args: argparse.Namespace) -> int:
    """Show the last backup run."""
    settings = _load_settings(args)
    store = StateStore(settings.state_dir)
    run = store.read_run(settings.target)

    if args.json:
        data = {
            "target": settings.target,
            "last_run": run.to_dict() if run else None,
            "suspended": store.read_suspension(settings.target),
            "escalation": (
                state.to_dict() if (state := store.read_escalation(settings.target)) else None
            ),
            "locked": create_lock(settings.lock_dir, settings.lock_backend).is_locked(
                settings.target
            ),
        }
        output(json.dumps(data, indent=2), force=True)
        return 0

    output("Checkpoint Status")
    output("=" * 50)
    if run is None:
        output(f"No backups recorded for {settings.target}.")
        return 0

    _print_run(run)

    actions = run.actions
    if run.failures:
        output()
        output("Recommended actions:")
        if actions.retry_recommended:
            output(f"  - Retry in {actions.retry_delay_seconds // 60} minutes")
        if actions.block_cloud_upload:
            output("  - Cloud upload is blocked until this is fixed")
        if actions.stop_daemon:
            output("  - Scheduled backups stopped")
        output("  - Run 'checkpoint failures' for details")

    suspension = store.read_suspension(settings.target)
    if suspension:
        output()
        output(f"Scheduled backups suspended since {suspension.get('suspended_at')}")
        output(f"  Reason: {suspension.get('reason')}")
    return 0


def cmd_failures(args: argparse.Namespace) -> int:
    """Show failures of the last run with fixes."""
    settings = _load_settings(args)
    run = StateStore(settings.state_dir).read_run(settings.target)

    if args.json:
        failures = [f.to_dict() for f in run.failures] if run else []
        output(json.dumps(failures, indent=2), force=True)
        return 0

    if run is None:
        output(f"No backups recorded for {settings.target}.")
        return 0
    if not run.failures:
        output(f"No failures in the last run ({run.run_id}).")
        return 0

    output(f"{len(run.failures)} failures in run {run.run_id}")
    output(f"Severity: {run.severity.level.value} - {run.severity.reason}")
    output()
    output(run.remediation)
    return 0


def cmd_history(args: argparse.Namespace) -> int:
    """Show recent runs that had failures."""
    settings = _load_settings(args)
    runs = StateStore(settings.state_dir).read_history(settings.target, args.count)

    if args.json:
        output(json.dumps([r.to_dict() for r in runs], indent=2), force=True)
        return 0

    if not runs:
        output("No failed runs recorded.")
        return 0

    output(f"{'Run':<32} {'Severity':<10} {'Failed':>6} {'Total':>6}")
    output("-" * 58)
    for run in reversed(runs):
        output(
            f"{run.run_id:<32} {run.severity.level.value:<10} "
            f"{run.summary.failed:>6} {run.summary.total:>6}"
        )
    return 0


def cmd_verify(args: argparse.Namespace) -> int:
    """Verify a snapshot against its manifest."""
    from checkpoint.layout import latest_complete_snapshot
    from checkpoint.verify import (
        Verifier,
        create_remote,
        format_compact,
        format_human,
        format_json,
    )

    settings = _load_settings(args)
    settings.require_paths()
    backup_dir = Path(settings.backup_dir).expanduser()

    if args.snapshot:
        snapshot_dir = snapshots_root(backup_dir) / args.snapshot
    else:
        latest = latest_complete_snapshot(backup_dir)
        if latest is None:
            output_error(f"No complete snapshots in {backup_dir}")
            return 2
        snapshot_dir = latest.path

    verifier = Verifier(
        settings.target, lock=create_lock(settings.lock_dir, settings.lock_backend)
    )
    if args.cloud:
        if not settings.cloud.enabled:
            output_error("Cloud is not configured. Set cloud.enabled in the config file.")
            return 2
        report = verifier.verify_cloud(snapshot_dir, create_remote(settings.cloud))
    elif args.full:
        report = verifier.verify_full(snapshot_dir)
    else:
        report = verifier.verify_quick(snapshot_dir)

    if args.json:
        output(format_json(report), force=True)
    elif args.compact:
        output(format_compact(report), force=True)
    else:
        output(format_human(report))
    return report.exit_code


def cmd_snapshots(args: argparse.Namespace) -> int:
    """List snapshots."""
    settings = _load_settings(args)
    settings.require_paths()
    snapshots = list_snapshots(Path(settings.backup_dir).expanduser())

    if not snapshots:
        output("No snapshots.")
        return 0

    for snapshot in snapshots:
        flags = []
        if not snapshot.complete:
            flags.append("incomplete")
        if snapshot.pinned:
            flags.append("pinned")
        suffix = f" ({', '.join(flags)})" if flags else ""
        output(f"{snapshot.name}  {snapshot.created_at:%Y-%m-%d %H:%M:%S}{suffix}", force=True)
    return 0


def cmd_prune(args: argparse.Namespace) -> int:
    """Apply the retention policy."""
    from checkpoint.retention import RetentionEngine

    settings = _load_settings(args)
    settings.require_paths()
    lock = create_lock(settings.lock_dir, settings.lock_backend)

    engine = RetentionEngine(settings.retention)
    try:
        with lock.hold(settings.target):
            result = engine.prune(Path(settings.backup_dir).expanduser(), dry_run=args.dry_run)
    except LockBusyError as e:
        output_error(str(e))
        return EXIT_LOCK_BUSY

    verb = "Would delete" if result.dry_run else "Deleted"
    for name in result.deleted:
        output(f"  {verb} {name}")
    output()
    output(f"{verb} {len(result.deleted)} snapshots, kept {len(result.kept)}")
    output(f"Space {'to free' if result.dry_run else 'freed'}: {result.bytes_freed / 1024 / 1024:.2f} MB")
    for error in result.errors:
        output_error(f"Error: {error}")
    return 0 if result.success else 1


def cmd_restore(args: argparse.Namespace) -> int:
    """Restore files from a snapshot."""
    from checkpoint.backup import RestoreError, Restorer

    settings = _load_settings(args)
    restorer = Restorer(settings)

    try:
        result = restorer.restore(
            snapshot=args.snapshot,
            paths=args.paths,
            destination=args.destination,
            databases=args.databases,
            dry_run=args.dry_run,
            safety_copies=not args.no_safety_copy,
        )
    except RestoreError as e:
        output_error(str(e))
        return 2
    except LockBusyError as e:
        output_error(str(e))
        return EXIT_LOCK_BUSY

    if args.json:
        output(json.dumps(result.to_dict(), indent=2), force=True)
        return result.exit_code

    verb = "Would restore" if result.dry_run else "Restored"
    output(f"{verb} {len(result.restored)} items from {result.snapshot} into {result.destination}")
    for path in result.restored:
        output(f"  {path}")
    if result.unchanged:
        output(f"{len(result.unchanged)} items already match the snapshot")
    for path, reason in result.skipped:
        output(f"Skipped {path}: {reason}")
    if result.safety_copies:
        output(f"Kept {len(result.safety_copies)} replaced files as .pre-restore copies")
    for path, error in result.failed:
        output_error(f"Failed {path}: {error}")
    return result.exit_code


def cmd_unlock(args: argparse.Namespace) -> int:
    """Remove a stale backup lock."""
    settings = _load_settings(args)
    lock = create_lock(settings.lock_dir, settings.lock_backend)
    target = settings.target

    if not isinstance(lock, DirectoryLock):
        output("Advisory locks are released by the kernel; nothing to remove.")
        return 0

    if lock.is_locked(target) and not args.force:
        output_error(
            f"Lock for {target} is held by running PID {lock.holder(target)}. "
            "Use --force to remove it anyway."
        )
        return 1

    if lock.force_release(target):
        output(f"Removed lock for {target}.")
    else:
        output(f"No lock for {target}.")
    return 0


def cmd_resume(args: argparse.Namespace) -> int:
    """Resume scheduled backups after a critical failure."""
    settings = _load_settings(args)
    if StateStore(settings.state_dir).clear_suspension(settings.target):
        output(f"Scheduled backups resumed for {settings.target}.")
    else:
        output(f"Scheduled backups for {settings.target} were not suspended.")
    return 0


def cmd_daemon(args: argparse.Namespace) -> int:
    """Run or control the backup daemon."""
    from checkpoint.scheduler import (
        BackupDaemon,
        DaemonAlreadyRunningError,
        DaemonNotRunningError,
    )

    settings = _load_settings(args)
    daemon = BackupDaemon(settings)

    if args.action == "run":
        settings.require_paths()
        output(
            f"Backing up {settings.target} every {settings.schedule.interval_minutes} minutes"
            if not args.once
            else f"Running one backup cycle for {settings.target}"
        )
        try:
            daemon.run_forever(once=args.once)
        except DaemonAlreadyRunningError as e:
            output_error(str(e))
            return 1
        return 0

    if args.action == "stop":
        try:
            daemon.stop_running_daemon()
        except DaemonNotRunningError as e:
            output_error(str(e))
            return 1
        output("Backup daemon stopped.")
        return 0

    if args.action == "logs":
        for line in daemon.get_logs(args.lines):
            output(line.rstrip("\n"), force=True)
        return 0

    if daemon.is_running():
        output(f"Backup daemon running (PID {daemon.get_pid()})")
    else:
        output("Backup daemon not running")
    last = daemon.last_cycle()
    if last:
        output(f"Last cycle: {last.get('started_at')} {last.get('outcome')} {last.get('message', '')}")
    return 0


def cmd_config(args: argparse.Namespace) -> int:
    """Show or create the configuration file."""
    config_path = Path(args.config) if args.config else get_config_path()

    if args.action == "show":
        settings = load_config(config_path)
        output(f"# {config_path}", force=True)
        output(
            yaml.safe_dump(settings_to_dict(settings), default_flow_style=False, sort_keys=False),
            force=True,
        )
        return 0

    if config_path.exists():
        output_error(f"Config file already exists: {config_path}")
        return 1

    project_dir = args.project_dir or str(Path.cwd())
    backup_dir = args.backup_dir or str(Path(project_dir).expanduser().parent / "backups")
    settings = Settings(project_dir=project_dir, backup_dir=backup_dir)
    save_config(settings, config_path)
    output(f"Created {config_path}")
    output(f"  Project: {project_dir}")
    output(f"  Backups: {backup_dir}")
    return 0


def main() -> NoReturn:
    """Main entry point for the Checkpoint CLI."""
    parser = create_parser()
    args = parser.parse_args()

    # Set up logging and output mode
    setup_logging(args.verbose, args.quiet)
    set_output_mode(args.quiet, args.verbose)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    try:
        exit_code = args.func(args)
        sys.exit(exit_code)
    except KeyboardInterrupt:
        output("\nOperation cancelled.")
        sys.exit(130)
    except ConfigurationError as e:
        output_error(f"Configuration error: {e}")
        sys.exit(2)
    except Exception as e:
        if args.verbose > 0:
            raise
        output_error(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
