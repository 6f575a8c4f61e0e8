"""
Backup and restore manager for snapkeep.

BackupManager wires the writer, verifier, restore engine, incremental engine,
retention manager and scheduler from one Settings instance and exposes the
public backup operations. Every operation returns a structured result (or a
count/list) instead of raising, so callers such as the scheduler and the CLI
can keep going after a failure.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from types import TracebackType
from typing import TYPE_CHECKING

from snapkeep.backup.files import PathLocks
from snapkeep.backup.incremental import IncrementalEngine
from snapkeep.backup.offsite import S3Uploader
from snapkeep.backup.restore import RestoreEngine, load_manifest
from snapkeep.backup.retention import RetentionManager
from snapkeep.backup.verifier import BackupVerifier
from snapkeep.backup.writer import BackupWriter, utc_now
from snapkeep.codecs import PBKDF2_ITERATIONS, FernetCodec, GzipCodec
from snapkeep.config.settings import ConfigurationError, Settings, get_passphrase
from snapkeep.errors import NotFoundError, SnapkeepError, error_code
from snapkeep.models import (
    Backup,
    BackupManifest,
    BackupResult,
    RestoreResult,
    RetentionPolicy,
    VerifyResult,
)
from snapkeep.storage import Store, open_store

if TYPE_CHECKING:
    from snapkeep.scheduler.timer import Scheduler, ScheduleStatus

logger = logging.getLogger(__name__)

DEFAULT_BACKUP_NAME = "backup"


class BackupManager:
    """
    Manages backup and restore operations for one data store.

    Usage:
        with BackupManager(load_config()) as manager:
            result = manager.create_backup("nightly")
            manager.verify_backup(result.path)
            manager.restore_backup(result.path)

    Attributes:
        settings: Configuration the manager was built from.
        backup_dir: Directory backups are written to.
        entities: Tracked entities in dependency order.
    """

    def __init__(
        self,
        settings: Settings,
        store: Store | None = None,
        passphrase: str | None = None,
        clock: Callable[[], datetime] = utc_now,
        iterations: int = PBKDF2_ITERATIONS,
        max_workers: int = 2,
    ) -> None:
        """
        Initialize backup manager.

        The data store is opened on first use, so an unreachable store is
        reported by the operations rather than here.

        Args:
            settings: Loaded configuration.
            store: Store to use instead of opening ``database_url``.
            passphrase: Encryption passphrase. Defaults to SNAPKEEP_PASSPHRASE.
            clock: Source of the current UTC time.
            iterations: PBKDF2 iterations for key derivation.
            max_workers: Threads used by ``submit_backup``/``submit_restore``.

        Raises:
            ConfigurationError: If encryption is enabled without a usable
                                passphrase.
        """
        self.settings = settings
        self.backup_dir = settings.backup_path
        self.entities = list(settings.backup.entities)
        self.timeout = settings.backup.operation_timeout_seconds
        self.clock = clock

        if passphrase is None:
            passphrase = get_passphrase()
        if settings.backup.encryption_enabled and not passphrase:
            raise ConfigurationError(
                "Encryption is enabled but no passphrase is set (SNAPKEEP_PASSPHRASE)"
            )
        try:
            self.encryption = FernetCodec(passphrase, iterations) if passphrase else None
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
        self.compression = GzipCodec()

        self.uploader: S3Uploader | None = None
        if settings.offsite.s3_bucket:
            self.uploader = S3Uploader(
                settings.offsite.s3_bucket,
                region=settings.offsite.s3_region,
                prefix=settings.offsite.s3_prefix,
            )

        self._store = store
        self._store_lock = threading.Lock()
        self._locks = PathLocks()
        self._restore_lock = threading.Lock()
        self._executor: ThreadPoolExecutor | None = None
        self._max_workers = max_workers
        self._scheduler: Scheduler | None = None

        self.retention = RetentionManager(
            RetentionPolicy(settings.backup.retention_days, self.backup_dir),
            clock=clock,
        )
        self.verifier = BackupVerifier(
            compression=self.compression,
            encryption=self.encryption,
            timeout=self.timeout,
        )

    @property
    def store(self) -> Store:
        """
        The data store, opened from ``database_url`` on first access.

        Raises:
            ExtractionError: If the URL is invalid or unsupported.
        """
        with self._store_lock:
            if self._store is None:
                self._store = open_store(self.settings.backup.database_url)
            return self._store

    def create_backup(
        self,
        name: str | None = None,
        compress: bool | None = None,
        encrypt: bool | None = None,
    ) -> BackupResult:
        """
        Create a full backup of every tracked entity.

        Args:
            name: Backup name; defaults to ``backup``.
            compress: Override ``compression_enabled``.
            encrypt: Override ``encryption_enabled``.

        Returns:
            BackupResult with success status and backup details.
        """
        name = name or DEFAULT_BACKUP_NAME
        try:
            store = self.store
        except SnapkeepError as e:
            logger.error(f"Backup '{name}' failed: {e}")
            return BackupResult(success=False, error=str(e), error_code=error_code(e))

        writer = BackupWriter(
            store,
            self.backup_dir,
            self.entities,
            compression=self.compression,
            encryption=self.encryption,
            compress_by_default=self.settings.backup.compression_enabled,
            encrypt_by_default=self.settings.backup.encryption_enabled,
            timeout=self.timeout,
            clock=self.clock,
            locks=self._locks,
            uploader=self.uploader,
        )
        return writer.create_backup(name, compress=compress, encrypt=encrypt)

    def restore_backup(self, backup_path: Path | str) -> RestoreResult:
        """
        Restore the data store from a full backup.

        Args:
            backup_path: Backup file to restore.

        Returns:
            RestoreResult with per-entity row counts.
        """
        backup_path = Path(backup_path)
        try:
            # A missing file is reported before the store is opened
            if not backup_path.is_file():
                raise NotFoundError(f"Backup file not found: {backup_path}")
            store = self.store
        except SnapkeepError as e:
            logger.error(f"Restore failed: {e}")
            return RestoreResult(success=False, error=str(e), error_code=error_code(e))

        engine = RestoreEngine(
            store,
            compression=self.compression,
            encryption=self.encryption,
            timeout=self.timeout,
            lock=self._restore_lock,
        )
        return engine.restore(backup_path)

    def create_incremental_backup(
        self,
        since: datetime,
        name: str = "incremental",
    ) -> BackupResult:
        """
        Back up rows changed after ``since``.

        Args:
            since: Checkpoint; naive datetimes are taken as UTC.
            name: Backup name prefix.

        Returns:
            BackupResult for the written incremental file.
        """
        try:
            store = self.store
        except SnapkeepError as e:
            logger.error(f"Incremental backup failed: {e}")
            return BackupResult(success=False, error=str(e), error_code=error_code(e))

        engine = IncrementalEngine(
            store,
            self.backup_dir,
            self.entities,
            timeout=self.timeout,
            clock=self.clock,
            locks=self._locks,
        )
        return engine.create_incremental(since, name)

    def verify_backup(self, backup_path: Path | str, deep: bool | None = None) -> VerifyResult:
        """
        Verify backup integrity without modifying anything.

        Args:
            backup_path: Backup file to check.
            deep: Decode and check the manifest (default: when possible).

        Returns:
            VerifyResult.
        """
        return self.verifier.verify(Path(backup_path), deep=deep)

    def cleanup_expired_backups(self, dry_run: bool = False) -> int:
        """
        Delete backups older than ``retention_days``.

        Returns:
            Number of backups deleted.
        """
        try:
            return self.retention.cleanup(dry_run=dry_run)
        except OSError as e:
            logger.error(f"Retention cleanup failed: {e}")
            return 0

    def list_backups(self) -> list[Backup]:
        """List backups in the backup directory, newest first."""
        try:
            return self.retention.list_backups()
        except OSError as e:
            logger.error(f"Cannot list backups in {self.backup_dir}: {e}")
            return []

    def get_backup_info(self, backup_path: Path | str) -> BackupManifest | None:
        """
        Read the manifest of a full backup without restoring it.

        Args:
            backup_path: Backup file.

        Returns:
            BackupManifest or None if unable to read
        """
        try:
            return load_manifest(
                Path(backup_path),
                compression=self.compression,
                encryption=self.encryption,
                timeout=self.timeout,
            )
        except SnapkeepError as e:
            logger.debug(f"Cannot read manifest of {backup_path}: {e}")
            return None

    def start_scheduled_backups(
        self,
        on_error: Callable[[Exception], None] | None = None,
    ) -> bool:
        """
        Start recurring backups on a background thread.

        Never raises; problems are logged and passed to ``on_error``.

        Returns:
            True if the scheduler started.
        """
        # Imported here to avoid circular imports
        from snapkeep.scheduler.timer import Scheduler

        if self._scheduler is None or not self._scheduler.running:
            self._scheduler = Scheduler(
                self,
                interval_hours=self.settings.schedule.interval_hours,
                incremental_interval_hours=self.settings.schedule.incremental_interval_hours,
                on_error=on_error,
                clock=self.clock,
            )
        elif on_error is not None:
            self._scheduler.on_error = on_error
        return self._scheduler.start()

    def stop_scheduled_backups(self, timeout: float | None = None) -> None:
        if self._scheduler is not None:
            self._scheduler.stop(timeout)

    def scheduler_status(self) -> ScheduleStatus:
        from snapkeep.scheduler.timer import ScheduleStatus

        if self._scheduler is None:
            return ScheduleStatus(
                interval_hours=self.settings.schedule.interval_hours,
                incremental_interval_hours=self.settings.schedule.incremental_interval_hours,
            )
        return self._scheduler.status()

    def submit_backup(self, name: str | None = None) -> Future[BackupResult]:
        """Run ``create_backup`` on the worker pool."""
        return self._get_executor().submit(self.create_backup, name)

    def submit_restore(self, backup_path: Path | str) -> Future[RestoreResult]:
        """Run ``restore_backup`` on the worker pool."""
        return self._get_executor().submit(self.restore_backup, backup_path)

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self._max_workers,
                thread_name_prefix="snapkeep-worker",
            )
        return self._executor

    def close(self) -> None:
        """Stop the scheduler, wait for submitted work and close the store."""
        self.stop_scheduled_backups()
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        if self._store is not None:
            self._store.close()

    def __enter__(self) -> BackupManager:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()
