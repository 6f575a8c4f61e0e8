"""
Restore of full backups into the data store.

A restore is all-or-nothing. The file is checked and fully decoded before the
store is touched; the apply phase then runs as one store transaction that
clears every entity in reverse dependency order and inserts the backed-up
rows in dependency order. Any failure rolls the transaction back and leaves
the store as it was.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import TYPE_CHECKING

from snapkeep.backup.deadline import Deadline, call_with_timeout
from snapkeep.backup.verifier import (
    build_decode_pipeline,
    is_full_backup,
    read_backup_file,
    split_and_check,
)
from snapkeep.codecs import Codec, GzipCodec, SerializationCodec
from snapkeep.errors import IntegrityError, RestoreTransactionError, SnapkeepError, error_code
from snapkeep.models import BackupManifest, RestoreResult

if TYPE_CHECKING:
    from snapkeep.storage import Store

logger = logging.getLogger(__name__)


def load_manifest(
    path: Path,
    compression: Codec | None = None,
    encryption: Codec | None = None,
    timeout: float | None = None,
) -> BackupManifest:
    """
    Read, check and decode a full backup.

    Args:
        path: Backup file.
        compression: Codec for compressed payloads (gzip if omitted).
        encryption: Codec for encrypted payloads.
        timeout: Timeout in seconds for decoding.

    Raises:
        NotFoundError: If the file is missing.
        IntegrityError: On a bad header, checksum or manifest, or if the
                        file is an incremental backup.
        DecryptionError: If decryption fails or no key is configured.
        DecompressionError: If decompression fails.
        SchemaVersionError: If the manifest version is not supported.
        OperationTimeoutError: If decoding takes too long.
    """
    data = read_backup_file(path)
    if not data:
        raise IntegrityError(f"Backup file is empty: {path}")
    if not is_full_backup(data):
        raise IntegrityError(
            f"{Path(path).name} is not a full backup; incremental backups cannot be restored"
        )

    header, payload = split_and_check(data)
    pipeline = build_decode_pipeline(header, compression or GzipCodec(), encryption)
    raw = call_with_timeout(pipeline.decode, timeout, "decoding", payload)
    manifest = BackupManifest.from_dict(SerializationCodec().decode(raw))

    problems = manifest.check_counts()
    if problems:
        raise IntegrityError("; ".join(problems))
    return manifest


class RestoreEngine:
    """
    Applies a full backup to a store.

    Example:
        engine = RestoreEngine(store, encryption=FernetCodec(passphrase))
        result = engine.restore(Path("backups/nightly-20261017T020000.000000Z.json.gz.enc"))
        result.entity_counts   # {"users": 3, "services": 2, "bookings": 1}

    Attributes:
        store: Store to restore into.
        compression: Codec for compressed payloads.
        encryption: Codec for encrypted payloads, or None without a key.
        timeout: Per-step timeout in seconds for decoding and applying.
        lock: Held for the whole apply phase; shared by every restore that
              targets the same store.
    """

    def __init__(
        self,
        store: Store,
        compression: Codec | None = None,
        encryption: Codec | None = None,
        timeout: float | None = None,
        lock: threading.Lock | None = None,
    ) -> None:
        self.store = store
        self.compression = compression if compression is not None else GzipCodec()
        self.encryption = encryption
        self.timeout = timeout
        self.lock = lock or threading.Lock()

    def load_manifest(self, path: Path) -> BackupManifest:
        """Read, check and decode a full backup without touching the store."""
        return load_manifest(path, self.compression, self.encryption, self.timeout)

    def restore(self, path: Path) -> RestoreResult:
        """
        Restore the store from a full backup.

        Args:
            path: Backup file to restore.

        Returns:
            RestoreResult with per-entity row counts after the restore.
        """
        path = Path(path)
        logger.info(f"Restoring from {path}")

        try:
            manifest = self.load_manifest(path)
            with self.lock:
                logger.debug(f"Restore {path.name}: pre-restore -> restoring")
                self._apply(manifest)
                counts = self.store.counts(manifest.order)
            logger.debug(f"Restore {path.name}: restoring -> restored")

            mismatched = {
                entity: (manifest.counts.get(entity, 0), actual)
                for entity, actual in counts.items()
                if actual != manifest.counts.get(entity, 0)
            }
            if mismatched:
                details = ", ".join(
                    f"{entity} expected {expected} got {actual}"
                    for entity, (expected, actual) in mismatched.items()
                )
                raise IntegrityError(f"Row counts differ after restore: {details}")

        except SnapkeepError as e:
            logger.error(f"Restore from {path.name} failed: {e}")
            return RestoreResult(success=False, error=str(e), error_code=error_code(e))
        except Exception as e:
            logger.exception(f"Restore from {path.name} failed")
            return RestoreResult(success=False, error=str(e), error_code=error_code(e))

        logger.info(
            f"Restore completed: {sum(counts.values())} rows in {len(counts)} entities"
        )
        return RestoreResult(success=True, entity_counts=counts)

    def _apply(self, manifest: BackupManifest) -> None:
        """Replace the store contents with the manifest rows in one transaction."""
        self.store.connect()
        deadline = Deadline(self.timeout, "restore apply")

        with self.store.transaction(deadline) as txn:
            for entity in reversed(manifest.order):
                removed = txn.clear(entity)
                logger.debug(f"Cleared {removed} rows from {entity}")

            for entity in manifest.order:
                rows = manifest.entities[entity]
                inserted = txn.insert(entity, rows)
                if inserted != len(rows):
                    raise RestoreTransactionError(
                        f"Inserted {inserted} of {len(rows)} rows", entity
                    )
                logger.debug(f"Inserted {inserted} rows into {entity}")
