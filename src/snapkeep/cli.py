"""
Command-line interface for snapkeep.

Provides commands for creating, verifying and restoring backups, incremental
backups, retention cleanup and the built-in scheduler.

Uses Python's argparse module (no external CLI libraries).
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, NoReturn

from snapkeep import __version__
from snapkeep.backup import BackupManager
from snapkeep.backup.retention import RetentionManager
from snapkeep.config.settings import (
    ConfigurationError,
    Settings,
    get_config_path,
    get_passphrase,
    load_config,
)
from snapkeep.models import RetentionPolicy

# Set up logging
logger = logging.getLogger(__name__)

# Global verbosity settings (set during main() based on args)
_quiet_mode = False
_verbose_level = 0


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
        force: If True, print even in quiet mode (for essential output like JSON).
    """
    if force or not _quiet_mode:
        print(message)


def output_error(message: str) -> None:
    """Print an error message (always shown, even in quiet mode)."""
    print(message, file=sys.stderr)


def format_size(size_bytes: int) -> str:
    if size_bytes >= 1024 * 1024:
        return f"{size_bytes / 1024 / 1024:.2f} MB"
    if size_bytes >= 1024:
        return f"{size_bytes / 1024:.1f} KB"
    return f"{size_bytes} bytes"


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for the snapkeep CLI."""
    parser = argparse.ArgumentParser(
        prog="snapkeep",
        description="Verifiable backups, restores and retention for application data",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"snapkeep {__version__}",
    )

    parser.add_argument(
        "--config",
        metavar="PATH",
        help="Override config file location (default: ~/.snapkeep/config.yaml)",
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

    # info command
    info_parser = subparsers.add_parser(
        "info",
        help="Show configuration and backup directory summary",
    )
    info_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    info_parser.set_defaults(func=cmd_info)

    # backup command
    backup_parser = subparsers.add_parser(
        "backup",
        help="Create a full backup",
        description="Snapshot every tracked entity into one backup file.",
    )
    backup_parser.add_argument(
        "--name",
        metavar="NAME",
        default="backup",
        help="Backup name prefix (default: backup)",
    )
    backup_parser.add_argument(
        "--no-compress",
        action="store_true",
        dest="no_compress",
        help="Do not gzip the payload",
    )
    backup_parser.add_argument(
        "--encrypt",
        action="store_true",
        help="Encrypt the payload (requires SNAPKEEP_PASSPHRASE)",
    )
    backup_parser.set_defaults(func=cmd_backup)

    # restore command
    restore_parser = subparsers.add_parser(
        "restore",
        help="Restore from a full backup",
        description="Replace the contents of every backed-up entity with the backup.",
    )
    restore_parser.add_argument(
        "backup_file",
        metavar="FILE",
        help="Path to backup file",
    )
    restore_parser.add_argument(
        "--force",
        action="store_true",
        help="Skip confirmation prompt",
    )
    restore_parser.set_defaults(func=cmd_restore)

    # verify command
    verify_parser = subparsers.add_parser(
        "verify",
        help="Verify backup integrity",
    )
    verify_parser.add_argument(
        "backup_file",
        metavar="FILE",
        help="Path to backup file",
    )
    verify_parser.add_argument(
        "--shallow",
        action="store_true",
        help="Only check header and checksum; do not decode the payload",
    )
    verify_parser.set_defaults(func=cmd_verify)

    # incremental command
    incremental_parser = subparsers.add_parser(
        "incremental",
        help="Back up rows changed since a checkpoint",
    )
    since_group = incremental_parser.add_mutually_exclusive_group(required=True)
    since_group.add_argument(
        "--since",
        metavar="ISO",
        help="Checkpoint as an ISO-8601 timestamp (naive = UTC)",
    )
    since_group.add_argument(
        "--hours",
        type=float,
        metavar="N",
        help="Checkpoint N hours ago",
    )
    incremental_parser.set_defaults(func=cmd_incremental)

    # cleanup command
    cleanup_parser = subparsers.add_parser(
        "cleanup",
        help="Delete backups older than the retention period",
    )
    cleanup_parser.add_argument(
        "--dry-run",
        action="store_true",
        dest="dry_run",
        help="Show what would be deleted without deleting",
    )
    cleanup_parser.set_defaults(func=cmd_cleanup)

    # list command
    list_parser = subparsers.add_parser(
        "list",
        help="List backups, newest first",
    )
    list_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    list_parser.set_defaults(func=cmd_list)

    # schedule command
    schedule_parser = subparsers.add_parser(
        "schedule",
        help="Run scheduled backups",
        description="Run full (and incremental) backups on the configured intervals.",
    )
    schedule_parser.add_argument(
        "--foreground",
        action="store_true",
        help="Keep running until interrupted (default: run one cycle and exit)",
    )
    schedule_parser.set_defaults(func=cmd_schedule)

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
    """
    Raises:
        ConfigurationError: If the configuration is invalid.
    """
    config_path = Path(args.config) if args.config else None
    settings = load_config(config_path)
    if not _quiet_mode and _verbose_level == 0:
        # log_level from the config applies unless -v/-q was given
        logging.getLogger("snapkeep").setLevel(settings.log_level)
    return settings


def _create_manager(args: argparse.Namespace) -> BackupManager:
    """
    Raises:
        ConfigurationError: If the configuration is invalid.
    """
    return BackupManager(_load_settings(args))


def cmd_info(args: argparse.Namespace) -> int:
    """Show configuration and backup directory summary."""
    settings = _load_settings(args)
    retention = RetentionManager(
        RetentionPolicy(settings.backup.retention_days, settings.backup_path)
    )
    backups = retention.list_backups()

    info: dict[str, Any] = {
        "version": __version__,
        "config_path": str(Path(args.config) if args.config else get_config_path()),
        "database_url": settings.backup.database_url,
        "backup_dir": str(settings.backup_path),
        "retention_days": settings.backup.retention_days,
        "compression_enabled": settings.backup.compression_enabled,
        "encryption_enabled": settings.backup.encryption_enabled,
        "passphrase_set": get_passphrase() is not None,
        "entities": settings.backup.entities,
        "schedule_interval_hours": settings.schedule.interval_hours,
        "incremental_interval_hours": settings.schedule.incremental_interval_hours,
        "s3_bucket": settings.offsite.s3_bucket or None,
        "backups": len(backups),
        "latest_backup": backups[0].name if backups else None,
    }

    if args.json:
        output(json.dumps(info, indent=2), force=True)
        return 0

    output(f"snapkeep {__version__}")
    output("=" * 50)
    for key, value in info.items():
        if key == "version":
            continue
        if isinstance(value, list):
            value = ", ".join(value)
        output(f"  {key.replace('_', ' ').capitalize()}: {value}")
    return 0


def cmd_backup(args: argparse.Namespace) -> int:
    """Create a full backup."""
    manager = _create_manager(args)

    output(f"Creating backup '{args.name}'...")
    with manager:
        result = manager.create_backup(
            args.name,
            compress=False if args.no_compress else None,
            encrypt=True if args.encrypt else None,
        )

    if not result.success:
        output_error(f"Backup failed ({result.error_code}): {result.error}")
        return 1

    output()
    output("Backup created successfully!")
    output()
    output(f"  File: {result.path}")
    output(f"  Size: {format_size(result.size_bytes)}")
    output(f"  Checksum: {result.checksum}")
    if result.manifest:
        for entity in result.manifest.order:
            output(f"    - {entity}: {result.manifest.counts.get(entity, 0)}")
    if result.upload_error:
        output_error(f"Warning: off-site upload failed: {result.upload_error}")
    output()
    output("To restore from this backup, run:")
    output(f"  snapkeep restore {result.path}")
    return 0


def cmd_restore(args: argparse.Namespace) -> int:
    """Restore from a full backup."""
    backup_path = Path(args.backup_file)
    manager = _create_manager(args)

    if not args.force:
        output(f"This replaces all data in {manager.settings.backup.database_url}")
        output(f"with the contents of {backup_path}.")
        confirm = input("Continue? [y/N] ").strip().lower()
        if confirm not in ("y", "yes"):
            output("Restore cancelled.")
            return 1

    output(f"Restoring from {backup_path}...")
    with manager:
        result = manager.restore_backup(backup_path)

    if not result.success:
        output_error(f"Restore failed ({result.error_code}): {result.error}")
        return 1

    output()
    output("Restore completed successfully!")
    for entity, count in result.entity_counts.items():
        output(f"  - {entity}: {count}")
    return 0


def cmd_verify(args: argparse.Namespace) -> int:
    """Verify backup integrity."""
    manager = _create_manager(args)
    result = manager.verify_backup(
        Path(args.backup_file),
        deep=False if args.shallow else None,
    )

    if result.valid:
        kind = result.kind.value if result.kind else "unknown"
        output(f"Backup is valid ({kind}, sha256 {result.checksum})")
        return 0

    output_error("Backup verification failed:")
    for error in result.errors:
        output_error(f"  - {error}")
    return 1


def parse_since(value: str) -> datetime:
    """
    Parse an ISO-8601 checkpoint; naive values are taken as UTC.

    Raises:
        ValueError: If the value is not a valid timestamp.
    """
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    moment = datetime.fromisoformat(text)
    return moment if moment.tzinfo else moment.replace(tzinfo=UTC)


def cmd_incremental(args: argparse.Namespace) -> int:
    """Back up rows changed since a checkpoint."""
    if args.since:
        try:
            since = parse_since(args.since)
        except ValueError:
            output_error(f"Invalid --since timestamp: {args.since}")
            return 1
    else:
        since = datetime.now(UTC) - timedelta(hours=args.hours)

    manager = _create_manager(args)
    with manager:
        result = manager.create_incremental_backup(since)

    if not result.success:
        output_error(f"Incremental backup failed ({result.error_code}): {result.error}")
        return 1

    output(f"Incremental backup created: {result.path}")
    if result.manifest:
        output(f"  Changed rows: {result.manifest.total_rows}")
    return 0


def cmd_cleanup(args: argparse.Namespace) -> int:
    """Delete backups older than the retention period."""
    manager = _create_manager(args)
    deleted = manager.cleanup_expired_backups(dry_run=args.dry_run)

    if args.dry_run:
        output(f"{deleted} backup(s) would be deleted")
    else:
        output(f"Deleted {deleted} expired backup(s)")
    return 0


def cmd_list(args: argparse.Namespace) -> int:
    """List backups, newest first."""
    manager = _create_manager(args)
    backups = manager.list_backups()

    if args.json:
        output(json.dumps([b.to_dict() for b in backups], indent=2), force=True)
        return 0

    if not backups:
        output(f"No backups in {manager.backup_dir}")
        return 0

    for backup in backups:
        flags = []
        if backup.compressed:
            flags.append("gz")
        if backup.encrypted:
            flags.append("enc")
        output(
            f"{backup.created_at.strftime('%Y-%m-%d %H:%M:%S')}  "
            f"{backup.kind.value:<11}  {format_size(backup.size_bytes):>10}  "
            f"{backup.name}" + (f"  [{', '.join(flags)}]" if flags else "")
        )
    return 0


def cmd_schedule(args: argparse.Namespace) -> int:
    """Run scheduled backups."""
    manager = _create_manager(args)

    if not args.foreground:
        # One cycle, e.g. from system cron
        from snapkeep.scheduler import Scheduler

        scheduler = Scheduler(
            manager,
            interval_hours=manager.settings.schedule.interval_hours,
        )
        with manager:
            run = scheduler.run_once()
        if not run.success:
            output_error(f"Scheduled backup failed: {run.error}")
            return 1
        output(f"Backup created: {run.path} ({run.deleted} expired backup(s) deleted)")
        return 0

    stopped = threading.Event()

    def _handle_signal(signum: int, frame: Any) -> None:
        stopped.set()

    signal.signal(signal.SIGTERM, _handle_signal)

    errors: list[Exception] = []
    with manager:
        if not manager.start_scheduled_backups(on_error=errors.append):
            output_error(f"Cannot start scheduler: {errors[-1] if errors else 'unknown error'}")
            return 1

        status = manager.scheduler_status()
        output(f"Scheduler running; next backup at {status.next_run}. Press Ctrl+C to stop.")
        try:
            while not stopped.wait(1.0):
                pass
        finally:
            manager.stop_scheduled_backups()

    output("Scheduler stopped.")
    return 0


def main(argv: list[str] | None = None) -> NoReturn:
    """Main entry point for snapkeep CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

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
