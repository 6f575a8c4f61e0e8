"""
Incremental backups.

An incremental backup holds only the rows changed after a caller-supplied
checkpoint. It is written as one pretty-printed JSON document:

    {
      "entities": {"bookings": [...], "users": []},
      "lastBackupDate": "2026-10-17T04:00:00+00:00",
      "timestamp": "2026-10-17T10:00:00.123456+00:00"
    }

Incremental files are never compressed or encrypted and carry no header.
The checkpoint is not persisted here; callers keep track of it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from snapkeep.backup.deadline import Deadline
from snapkeep.backup.files import (
    PathLocks,
    atomic_write,
    build_filename,
    compute_checksum,
    ensure_directory,
    validate_backup_name,
)
from snapkeep.backup.writer import utc_now
from snapkeep.codecs import SerializationCodec
from snapkeep.errors import SnapkeepError, error_code
from snapkeep.models import MANIFEST_VERSION, BackupManifest, BackupResult

if TYPE_CHECKING:
    from snapkeep.storage import Store

logger = logging.getLogger(__name__)


class IncrementalEngine:
    """
    Writes backups of rows changed since a checkpoint.

    Attributes:
        store: Data store to read from.
        backup_dir: Directory backups are written to.
        entities: Tracked entities.
        timeout: Timeout in seconds for reading changes.
    """

    def __init__(
        self,
        store: Store,
        backup_dir: Path,
        entities: list[str],
        timeout: float | None = None,
        clock: Callable[[], datetime] = utc_now,
        locks: PathLocks | None = None,
    ) -> None:
        self.store = store
        self.backup_dir = Path(backup_dir)
        self.entities = list(entities)
        self.timeout = timeout
        self.clock = clock
        self.locks = locks or PathLocks()
        self.serializer = SerializationCodec(indent=2)

    def create_incremental(self, since: datetime, name: str = "incremental") -> BackupResult:
        """
        Back up every row changed strictly after ``since``.

        Args:
            since: Checkpoint; naive datetimes are taken as UTC.
            name: Backup name prefix.

        Returns:
            BackupResult. The manifest's ``last_backup_date`` is the checkpoint.
        """
        try:
            if not isinstance(since, datetime):
                raise TypeError(f"since must be a datetime, got {type(since).__name__}")
            if since.tzinfo is None:
                since = since.replace(tzinfo=UTC)

            validate_backup_name(name)
            directory = ensure_directory(self.backup_dir)
            started_at = self.clock()
            path = directory / build_filename(name, started_at)

            logger.info(f"Starting incremental backup since {since.isoformat()} -> {path.name}")

            deadline = Deadline(self.timeout, "extraction")
            self.store.connect()
            changes = {
                entity: self.store.changed_since(entity, since, deadline)
                for entity in self.entities
            }

            manifest = BackupManifest(
                version=MANIFEST_VERSION,
                timestamp=started_at.isoformat(),
                entities=changes,
                order=list(self.entities),
                counts={entity: len(rows) for entity, rows in changes.items()},
                last_backup_date=since.isoformat(),
            )
            document = {
                "timestamp": manifest.timestamp,
                "lastBackupDate": manifest.last_backup_date,
                "entities": changes,
            }
            payload = self.serializer.encode(document)

            with self.locks.hold(path):
                size_bytes = atomic_write(path, [payload, b"\n"])

        except SnapkeepError as e:
            logger.error(f"Incremental backup failed: {e}")
            return BackupResult(success=False, error=str(e), error_code=error_code(e))
        except Exception as e:
            logger.exception("Incremental backup failed")
            return BackupResult(success=False, error=str(e), error_code=error_code(e))

        logger.info(
            f"Incremental backup created: {path} ({manifest.total_rows} changed rows)"
        )
        return BackupResult(
            success=True,
            path=path,
            manifest=manifest,
            size_bytes=size_bytes,
            checksum=compute_checksum(payload + b"\n"),
        )
