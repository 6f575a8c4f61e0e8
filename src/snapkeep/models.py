"""
Data models for backups, manifests and operation results.

Schema Design Decisions:
    - Timestamps are ISO-8601 strings in UTC inside manifests
    - Entity rows are plain dicts keyed by column name
    - The manifest carries the restore order so a restore never has to guess
      dependencies between entity collections
    - Result objects never raise; failures carry a message and the code of
      the error class from snapkeep.errors
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from snapkeep.errors import IntegrityError, SchemaVersionError

MANIFEST_VERSION = 1
SUPPORTED_MANIFEST_VERSIONS: tuple[int, ...] = (1,)


class BackupKind(Enum):
    """Kind of backup file."""

    FULL = "full"
    INCREMENTAL = "incremental"


class BackupState(Enum):
    """States a backup passes through while it is being written."""

    REQUESTED = "requested"
    EXTRACTING = "extracting"
    SERIALIZING = "serializing"
    ENCODING = "encoding"
    PERSISTED = "persisted"
    FAILED = "failed"


@dataclass
class Backup:
    """
    A backup file found in the backup directory.

    Attributes:
        path: Location of the file.
        created_at: Timestamp embedded in the filename, or file mtime.
        kind: Full or incremental.
        encrypted: True if the filename ends with ``.enc``.
        compressed: True if the filename carries ``.gz``.
        size_bytes: Size on disk.
        checksum: SHA-256 of the payload from the file header, if read.
    """

    path: Path
    created_at: datetime
    kind: BackupKind
    encrypted: bool
    compressed: bool
    size_bytes: int
    checksum: str | None = None

    @property
    def name(self) -> str:
        return self.path.name

    def to_dict(self) -> dict[str, Any]:
        """Convert backup record to dictionary."""
        return {
            "name": self.name,
            "path": str(self.path),
            "created_at": self.created_at.isoformat(),
            "kind": self.kind.value,
            "encrypted": self.encrypted,
            "compressed": self.compressed,
            "size_bytes": self.size_bytes,
            "checksum": self.checksum,
        }


@dataclass
class BackupManifest:
    """
    Contents of a backup: entity rows plus the metadata needed to restore them.

    Attributes:
        version: Manifest format version.
        timestamp: When the snapshot was taken (ISO-8601, UTC).
        entities: Rows per entity collection.
        order: Restore order; referenced entities come before referencing ones.
        counts: Declared row count per entity.
        last_backup_date: Checkpoint for incremental manifests.
    """

    version: int
    timestamp: str
    entities: dict[str, list[dict[str, Any]]]
    order: list[str] = field(default_factory=list)
    counts: dict[str, int] = field(default_factory=dict)
    last_backup_date: str | None = None

    @classmethod
    def create(
        cls,
        entities: dict[str, list[dict[str, Any]]],
        timestamp: datetime,
        order: list[str] | None = None,
    ) -> BackupManifest:
        """Build a current-version manifest from extracted rows."""
        return cls(
            version=MANIFEST_VERSION,
            timestamp=timestamp.isoformat(),
            entities=entities,
            order=list(order) if order is not None else list(entities),
            counts={name: len(rows) for name, rows in entities.items()},
        )

    @property
    def total_rows(self) -> int:
        return sum(self.counts.values())

    def to_dict(self) -> dict[str, Any]:
        """Convert manifest to dictionary."""
        data: dict[str, Any] = {
            "version": self.version,
            "timestamp": self.timestamp,
            "order": self.order,
            "counts": self.counts,
            "entities": self.entities,
        }
        if self.last_backup_date is not None:
            data["lastBackupDate"] = self.last_backup_date
        return data

    @classmethod
    def from_dict(cls, data: Any) -> BackupManifest:
        """
        Create manifest from dictionary.

        The version is checked before anything else is parsed.

        Raises:
            SchemaVersionError: If the version is not supported.
            IntegrityError: If the document is malformed.
        """
        if not isinstance(data, dict):
            raise IntegrityError("Manifest is not a JSON object")
        if "version" not in data:
            raise IntegrityError("Manifest has no version")

        version = data["version"]
        if (
            not isinstance(version, int)
            or isinstance(version, bool)
            or version not in SUPPORTED_MANIFEST_VERSIONS
        ):
            raise SchemaVersionError(version, SUPPORTED_MANIFEST_VERSIONS)

        entities = data.get("entities")
        if not isinstance(entities, dict):
            raise IntegrityError("Manifest has no entities object")
        for name, rows in entities.items():
            if not isinstance(rows, list) or not all(isinstance(r, dict) for r in rows):
                raise IntegrityError(f"Entity '{name}' is not a list of rows")

        order = data.get("order") or list(entities)
        unknown = [name for name in order if name not in entities]
        if unknown:
            raise IntegrityError(f"Restore order names unknown entities: {unknown}")
        # Entities present but missing from the order are restored last
        order = list(order) + [name for name in entities if name not in order]

        counts = data.get("counts")
        if counts is None:
            counts = {name: len(rows) for name, rows in entities.items()}
        elif not isinstance(counts, dict):
            raise IntegrityError("Manifest counts is not an object")
        try:
            counts = {str(k): int(v) for k, v in counts.items()}
        except (TypeError, ValueError) as e:
            raise IntegrityError(f"Manifest counts are not integers: {e}") from e

        return cls(
            version=version,
            timestamp=str(data.get("timestamp", "")),
            entities=entities,
            order=order,
            counts=counts,
            last_backup_date=data.get("lastBackupDate"),
        )

    def check_counts(self) -> list[str]:
        """Return a message for every entity whose rows disagree with counts."""
        problems = []
        for name, rows in self.entities.items():
            declared = self.counts.get(name)
            if declared is not None and declared != len(rows):
                problems.append(
                    f"Entity '{name}' declares {declared} rows but contains {len(rows)}"
                )
        return problems


@dataclass
class RetentionPolicy:
    """How long backups in a directory are kept."""

    retention_days: int
    backup_dir: Path


@dataclass
class BackupResult:
    """Result of a full or incremental backup operation."""

    success: bool
    path: Path | None = None
    manifest: BackupManifest | None = None
    size_bytes: int = 0
    checksum: str | None = None
    error: str | None = None
    error_code: str | None = None
    upload_error: str | None = None


@dataclass
class RestoreResult:
    """Result of a restore operation."""

    success: bool
    entity_counts: dict[str, int] = field(default_factory=dict)
    error: str | None = None
    error_code: str | None = None


@dataclass
class VerifyResult:
    """Result of verifying a backup file."""

    valid: bool
    errors: list[str] = field(default_factory=list)
    checksum: str | None = None
    kind: BackupKind | None = None

    @property
    def error(self) -> str | None:
        return "; ".join(self.errors) if self.errors else None
