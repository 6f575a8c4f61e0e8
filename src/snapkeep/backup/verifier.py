"""
Backup verification.

Verification never writes to the backup file or touches the data store, so it
can be repeated any number of times with the same result.

Checks, in order:
    1. The file exists and is not empty
    2. Full backups: the header parses, the payload size matches, and the
       SHA-256 of the payload matches the header (no key needed)
    3. Header flags agree with the filename suffixes
    4. Deep mode: the payload decodes, the manifest version is supported and
       every entity's row list matches its declared count
    5. Incremental files: valid JSON carrying timestamp, lastBackupDate and
       entities
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from snapkeep.backup.deadline import call_with_timeout
from snapkeep.backup.files import (
    BACKUP_SUFFIX_PATTERN,
    HEADER_PREFIX,
    BackupHeader,
    compute_checksum,
)
from snapkeep.codecs import Codec, CodecPipeline, SerializationCodec
from snapkeep.errors import (
    DecryptionError,
    IntegrityError,
    NotFoundError,
    SnapkeepError,
)
from snapkeep.models import BackupKind, BackupManifest, VerifyResult

logger = logging.getLogger(__name__)

INCREMENTAL_KEYS = ("timestamp", "lastBackupDate", "entities")


def read_backup_file(path: Path) -> bytes:
    """
    Read a whole backup file.

    Raises:
        NotFoundError: If the file is missing or cannot be read.
    """
    path = Path(path)
    if not path.is_file():
        raise NotFoundError(f"Backup file not found: {path}")
    try:
        return path.read_bytes()
    except OSError as e:
        raise NotFoundError(f"Cannot read backup file {path}: {e}") from e


def is_full_backup(data: bytes) -> bool:
    return data.startswith(HEADER_PREFIX)


def split_and_check(data: bytes) -> tuple[BackupHeader, bytes]:
    """
    Split a full backup into header and payload and check the payload.

    Raises:
        IntegrityError: On a malformed header, a size mismatch or a checksum
                        mismatch.
    """
    header, payload = BackupHeader.split(data)
    if len(payload) != header.size:
        raise IntegrityError(
            f"Payload size mismatch: header says {header.size:,} bytes, "
            f"file has {len(payload):,}"
        )
    actual = compute_checksum(payload)
    if actual != header.checksum:
        raise IntegrityError(
            f"Checksum mismatch: expected {header.checksum[:16]}..., got {actual[:16]}..."
        )
    return header, payload


def suffix_mismatches(path: Path, header: BackupHeader) -> list[str]:
    """Compare header flags with the encoding the filename advertises."""
    match = BACKUP_SUFFIX_PATTERN.search(path.name)
    if not match:
        return []
    problems = []
    if (match.group(1) is not None) != header.compressed:
        problems.append(
            f"Filename says compressed={match.group(1) is not None} "
            f"but header says compressed={header.compressed}"
        )
    if (match.group(2) is not None) != header.encrypted:
        problems.append(
            f"Filename says encrypted={match.group(2) is not None} "
            f"but header says encrypted={header.encrypted}"
        )
    return problems


def build_decode_pipeline(
    header: BackupHeader,
    compression: Codec | None,
    encryption: Codec | None,
) -> CodecPipeline:
    """
    Codec chain needed to decode a payload with the given header.

    Raises:
        DecryptionError: If the payload is encrypted and no key is configured.
        IntegrityError: If the payload is compressed and no codec is configured.
    """
    codecs: list[Codec] = []
    if header.compressed:
        if compression is None:
            raise IntegrityError("Backup is compressed but no compression codec is configured")
        codecs.append(compression)
    if header.encrypted:
        if encryption is None:
            raise DecryptionError(
                "Backup is encrypted but no passphrase is configured (set SNAPKEEP_PASSPHRASE)"
            )
        codecs.append(encryption)
    return CodecPipeline(codecs)


def check_incremental(document: Any) -> list[str]:
    """Return problems with an incremental backup document."""
    if not isinstance(document, dict):
        return ["Incremental backup is not a JSON object"]
    problems = [f"Missing field: {key}" for key in INCREMENTAL_KEYS if key not in document]
    entities = document.get("entities")
    if "entities" in document and not isinstance(entities, dict):
        problems.append("Field 'entities' is not an object")
    elif isinstance(entities, dict):
        for name, rows in entities.items():
            if not isinstance(rows, list):
                problems.append(f"Entity '{name}' is not a list of rows")
    return problems


class BackupVerifier:
    """
    Checks backup files without modifying anything.

    Attributes:
        compression: Codec used to decode compressed payloads.
        encryption: Codec used to decrypt payloads, or None without a key.
        timeout: Timeout in seconds for decoding a payload.
    """

    def __init__(
        self,
        compression: Codec | None = None,
        encryption: Codec | None = None,
        timeout: float | None = None,
    ) -> None:
        self.compression = compression
        self.encryption = encryption
        self.timeout = timeout
        self.serializer = SerializationCodec()

    def verify(self, path: Path, deep: bool | None = None) -> VerifyResult:
        """
        Verify a backup file.

        Args:
            path: Backup file to check.
            deep: Decode the payload and check the manifest. Defaults to True
                  unless the backup is encrypted and no key is configured.

        Returns:
            VerifyResult; ``valid`` is False with messages in ``errors`` on
            any problem.
        """
        path = Path(path)

        try:
            data = read_backup_file(path)
        except NotFoundError as e:
            return VerifyResult(valid=False, errors=[str(e)])

        if not data:
            return VerifyResult(valid=False, errors=[f"Backup file is empty: {path}"])

        if not is_full_backup(data):
            return self._verify_incremental(path, data)

        try:
            header, payload = split_and_check(data)
        except IntegrityError as e:
            logger.warning(f"Verification failed for {path.name}: {e}")
            return VerifyResult(valid=False, errors=[str(e)], kind=BackupKind.FULL)

        errors = suffix_mismatches(path, header)

        if deep is None:
            deep = not header.encrypted or self.encryption is not None

        if deep and not errors:
            errors.extend(self._check_manifest(header, payload))

        if errors:
            logger.warning(f"Verification failed for {path.name}: {'; '.join(errors)}")
        else:
            logger.info(f"Backup verified: {path.name}")

        return VerifyResult(
            valid=not errors,
            errors=errors,
            checksum=header.checksum,
            kind=BackupKind.FULL,
        )

    def _check_manifest(self, header: BackupHeader, payload: bytes) -> list[str]:
        try:
            pipeline = build_decode_pipeline(header, self.compression, self.encryption)
            raw = call_with_timeout(pipeline.decode, self.timeout, "decoding", payload)
            manifest = BackupManifest.from_dict(self.serializer.decode(raw))
        except SnapkeepError as e:
            return [str(e)]
        return manifest.check_counts()

    def _verify_incremental(self, path: Path, data: bytes) -> VerifyResult:
        try:
            document = self.serializer.decode(data)
        except SnapkeepError as e:
            errors = [f"Not a backup file: {e}"]
        else:
            errors = check_incremental(document)

        if path.name.endswith((".gz", ".enc")):
            errors.append("Encoded backup file has no header")

        if errors:
            logger.warning(f"Verification failed for {path.name}: {'; '.join(errors)}")
        else:
            logger.info(f"Incremental backup verified: {path.name}")

        return VerifyResult(
            valid=not errors,
            errors=errors,
            checksum=compute_checksum(data),
            kind=BackupKind.INCREMENTAL,
        )
