"""
Error taxonomy for snapkeep.

Every public backup operation catches these and reports them through a
structured result (see snapkeep.models). Each class carries a short
``code`` (``not_found``, ``decryption_failed``, ...) that results expose as
``error_code`` so callers can branch without parsing messages.
"""

from __future__ import annotations


class SnapkeepError(Exception):
    """Base exception for backup and restore errors."""

    code = "backup_error"


class ExtractionError(SnapkeepError):
    """Raised when the data store is unreachable or a query fails."""

    code = "extraction_failed"


class EncodingError(SnapkeepError):
    """Raised when serialization, compression or encryption fails."""

    code = "encoding_failed"


class DecryptionError(EncodingError):
    """Raised when a payload cannot be decrypted (bad key or tampering)."""

    code = "decryption_failed"


class DecompressionError(EncodingError):
    """Raised when a payload cannot be decompressed."""

    code = "decompression_failed"


class BackupIOError(SnapkeepError):
    """
    Raised on filesystem failures: invalid path, permission denied, disk full.

    Named BackupIOError to avoid shadowing the built-in IOError.
    """

    code = "io_error"


class IntegrityError(SnapkeepError):
    """Raised on checksum mismatch or a malformed backup/manifest."""

    code = "integrity_error"


class SchemaVersionError(IntegrityError):
    """Raised when a manifest declares a version this build cannot read."""

    code = "unsupported_version"

    def __init__(self, version: object, supported: tuple[int, ...]) -> None:
        self.version = version
        self.supported = supported
        super().__init__(
            f"Unsupported manifest version: {version!r} "
            f"(supported: {', '.join(str(v) for v in supported)})"
        )


class NotFoundError(SnapkeepError):
    """Raised when a restore or verify target does not exist."""

    code = "not_found"


class RestoreTransactionError(SnapkeepError):
    """Raised when applying a backup violates a store constraint."""

    code = "restore_failed"

    def __init__(self, message: str, entity: str | None = None) -> None:
        self.entity = entity
        super().__init__(f"[{entity}] {message}" if entity else message)


class OperationTimeoutError(SnapkeepError):
    """Raised when a step exceeds its configured timeout."""

    code = "timeout"

    def __init__(self, step: str, timeout: float) -> None:
        self.step = step
        self.timeout = timeout
        super().__init__(f"{step} timed out after {timeout:g}s")


def error_code(error: BaseException) -> str:
    """Return the code reported in result objects for an exception."""
    if isinstance(error, SnapkeepError):
        return error.code
    return "unexpected_error"
