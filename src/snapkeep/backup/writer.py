"""
Full backup creation.

Pipeline:
    requested -> extracting -> serializing -> encoding -> persisted
                                                        -> failed (any step)

The writer never raises for expected failures; it returns a BackupResult
whose ``error_code`` comes from the failing snapkeep.errors class. Whatever
the failure, nothing is left under a backup name in the backup directory.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from snapkeep.backup.deadline import Deadline, call_with_timeout
from snapkeep.backup.files import (
    BackupHeader,
    PathLocks,
    atomic_write,
    build_filename,
    compute_checksum,
    ensure_directory,
    validate_backup_name,
)
from snapkeep.backup.verifier import split_and_check
from snapkeep.codecs import Codec, CodecPipeline, SerializationCodec
from snapkeep.errors import (
    BackupIOError,
    EncodingError,
    IntegrityError,
    SnapkeepError,
    error_code,
)
from snapkeep.models import BackupManifest, BackupResult, BackupState

if TYPE_CHECKING:
    from snapkeep.backup.offsite import S3Uploader
    from snapkeep.storage import Store

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(UTC)


class BackupWriter:
    """
    Creates full backups of the tracked entities.

    Example:
        writer = BackupWriter(store, Path("backups"), ["users", "bookings"],
                              compression=GzipCodec())
        result = writer.create_backup("nightly")
        result.path   # backups/nightly-20261017T020000.000000Z.json.gz

    Attributes:
        store: Data store to snapshot.
        backup_dir: Directory backups are written to.
        entities: Tracked entities in dependency order.
        compression: Compression codec, or None.
        encryption: Encryption codec, or None if no key is configured.
        compress_by_default: Apply compression when the caller does not say.
        encrypt_by_default: Apply encryption when the caller does not say.
        timeout: Per-step timeout in seconds (None disables).
    """

    def __init__(
        self,
        store: Store,
        backup_dir: Path,
        entities: list[str],
        compression: Codec | None = None,
        encryption: Codec | None = None,
        compress_by_default: bool = True,
        encrypt_by_default: bool = False,
        timeout: float | None = None,
        clock: Callable[[], datetime] = utc_now,
        locks: PathLocks | None = None,
        uploader: S3Uploader | None = None,
    ) -> None:
        self.store = store
        self.backup_dir = Path(backup_dir)
        self.entities = list(entities)
        self.compression = compression
        self.encryption = encryption
        self.compress_by_default = compress_by_default and compression is not None
        self.encrypt_by_default = encrypt_by_default
        self.timeout = timeout
        self.clock = clock
        self.locks = locks or PathLocks()
        self.uploader = uploader
        self.serializer = SerializationCodec()

    def build_pipeline(self, compress: bool, encrypt: bool) -> CodecPipeline:
        """
        Assemble the codec chain; encryption always runs last.

        Raises:
            EncodingError: If a requested codec is not configured.
        """
        codecs: list[Codec] = []
        if compress:
            if self.compression is None:
                raise EncodingError("Compression requested but no compression codec configured")
            codecs.append(self.compression)
        if encrypt:
            if self.encryption is None:
                raise EncodingError(
                    "Encryption requested but no passphrase configured "
                    "(set SNAPKEEP_PASSPHRASE)"
                )
            codecs.append(self.encryption)
        return CodecPipeline(codecs)

    def create_backup(
        self,
        name: str,
        *,
        compress: bool | None = None,
        encrypt: bool | None = None,
    ) -> BackupResult:
        """
        Snapshot the store and persist it as one backup file.

        Args:
            name: Backup name; the timestamp and suffixes are appended.
            compress: Override the configured compression setting.
            encrypt: Override the configured encryption setting.

        Returns:
            BackupResult with success status and backup details.
        """
        compress = self.compress_by_default if compress is None else compress
        encrypt = self.encrypt_by_default if encrypt is None else encrypt
        state = BackupState.REQUESTED

        try:
            validate_backup_name(name)
            pipeline = self.build_pipeline(compress, encrypt)
            directory = ensure_directory(self.backup_dir)
            started_at = self.clock()
            path = directory / build_filename(name, started_at, pipeline.suffix)

            logger.info(f"Starting backup '{name}' -> {path.name}")

            state = self._advance(name, state, BackupState.EXTRACTING)
            deadline = Deadline(self.timeout, "extraction")
            self.store.connect()
            entities = self.store.snapshot(self.entities, deadline)
            deadline.check()
            manifest = BackupManifest.create(entities, started_at, order=self.entities)

            state = self._advance(name, state, BackupState.SERIALIZING)
            raw = self.serializer.encode(manifest.to_dict())

            state = self._advance(name, state, BackupState.ENCODING)
            payload = call_with_timeout(pipeline.encode, self.timeout, "encoding", raw)

            checksum = compute_checksum(payload)
            header = BackupHeader(
                checksum=checksum,
                size=len(payload),
                compressed=compress,
                encrypted=encrypt,
            )
            with self.locks.hold(path):
                size_bytes = atomic_write(path, [header.to_bytes(), payload])
                self._check_written(path, checksum)

            state = self._advance(name, state, BackupState.PERSISTED)

        except SnapkeepError as e:
            logger.error(f"Backup '{name}' failed while {state.value}: {e}")
            self._advance(name, state, BackupState.FAILED)
            return BackupResult(success=False, error=str(e), error_code=error_code(e))
        except Exception as e:
            logger.exception(f"Backup '{name}' failed while {state.value}")
            self._advance(name, state, BackupState.FAILED)
            return BackupResult(success=False, error=str(e), error_code=error_code(e))

        logger.info(
            f"Backup created: {path} ({size_bytes:,} bytes, "
            f"{manifest.total_rows} rows in {len(manifest.entities)} entities)"
        )

        result = BackupResult(
            success=True,
            path=path,
            manifest=manifest,
            size_bytes=size_bytes,
            checksum=checksum,
        )

        if self.uploader is not None:
            try:
                self.uploader.upload(path)
            except Exception as e:
                logger.warning(f"Off-site upload of {path.name} failed: {e}")
                result.upload_error = str(e)

        return result

    def _check_written(self, path: Path, checksum: str) -> None:
        """
        Re-read a freshly written backup and check it against its header.

        The file is removed when the check fails.

        Raises:
            IntegrityError: If the file on disk does not match what was written.
            BackupIOError: If the file cannot be read back.
        """
        logger.debug(f"Verifying written backup {path.name}")
        try:
            header, _ = split_and_check(path.read_bytes())
            if header.checksum != checksum:
                raise IntegrityError(
                    f"Written backup has checksum {header.checksum[:16]}..., "
                    f"expected {checksum[:16]}..."
                )
        except IntegrityError:
            path.unlink(missing_ok=True)
            raise
        except OSError as e:
            path.unlink(missing_ok=True)
            raise BackupIOError(f"Cannot read back {path}: {e}") from e

    def _advance(self, name: str, current: BackupState, new: BackupState) -> BackupState:
        logger.debug(f"Backup '{name}': {current.value} -> {new.value}")
        return new
