"""
Retention enforcement for the backup directory.

Only files named like backups (``.json``, ``.json.gz``, ``.json.enc``,
``.json.gz.enc``) are considered. Hidden files and ``.tmp`` files belong to
writes in progress and are never listed or deleted.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from snapkeep.backup.files import describe_backup
from snapkeep.backup.writer import utc_now
from snapkeep.models import Backup, RetentionPolicy

logger = logging.getLogger(__name__)


class RetentionManager:
    """
    Lists backups and deletes the ones older than the retention period.

    Example:
        manager = RetentionManager(RetentionPolicy(7, Path("backups")))
        deleted = manager.cleanup()
    """

    def __init__(
        self,
        policy: RetentionPolicy,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if policy.retention_days < 1:
            raise ValueError(f"retention_days must be at least 1, got {policy.retention_days}")
        self.policy = policy
        self.clock = clock

    def list_backups(self) -> list[Backup]:
        """
        List backups in the backup directory.

        Returns:
            Backup records, newest first. Empty if the directory is missing.
        """
        directory = self.policy.backup_dir
        if not directory.is_dir():
            return []

        backups = []
        for path in directory.iterdir():
            backup = describe_backup(path)
            if backup is not None:
                backups.append(backup)

        backups.sort(key=lambda b: b.created_at, reverse=True)
        return backups

    def expired(self) -> list[Backup]:
        """Backups older than the retention period."""
        cutoff = self.clock() - timedelta(days=self.policy.retention_days)
        return [backup for backup in self.list_backups() if backup.created_at < cutoff]

    def cleanup(self, dry_run: bool = False) -> int:
        """
        Delete expired backups.

        Args:
            dry_run: Only count what would be deleted.

        Returns:
            Number of files deleted (or that would be deleted). Files that
            disappear before they can be deleted are not counted.
        """
        deleted = 0
        for backup in self.expired():
            if dry_run:
                logger.info(f"Would delete expired backup: {backup.name}")
                deleted += 1
                continue
            try:
                backup.path.unlink()
            except FileNotFoundError:
                logger.debug(f"Backup already gone: {backup.name}")
                continue
            except OSError as e:
                logger.error(f"Cannot delete {backup.name}: {e}")
                continue
            logger.info(f"Deleted expired backup: {backup.name}")
            deleted += 1

        if deleted:
            logger.info(
                f"Retention cleanup removed {deleted} backup(s) older than "
                f"{self.policy.retention_days} days"
            )
        return deleted
