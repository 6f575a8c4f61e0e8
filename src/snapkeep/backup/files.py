"""
Backup file naming, layout and atomic persistence.

File Naming:
    <name>-<timestamp>.json[.gz][.enc]

    The timestamp is ISO-8601 basic format in UTC with microseconds, e.g.
    ``nightly-20261017T021500.123456Z.json.gz.enc``. Compression adds
    ``.gz``; encryption adds ``.enc`` after it. Incremental backups are always
    plain ``.json``.

Full Backup Layout:
    line 1   canonical JSON header: checksum, size, flags, format, version
    rest     payload (serialized manifest, then compressed, then encrypted)

    The checksum is SHA-256 over the payload bytes exactly as stored, so a
    backup can be checked without the encryption key.

Atomic Writes:
    Bytes are written to a hidden ``.<final-name>.<random>.tmp`` file in the
    backup directory, fsynced, then renamed onto the final name. Directory
    scans skip temp files, so a write in progress is never seen as a backup.
"""

from __future__ import annotations

import hashlib
import json
import os
import re
import tempfile
import threading
from collections.abc import Generator, Iterable
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path

from snapkeep.errors import BackupIOError, IntegrityError
from snapkeep.models import Backup, BackupKind

HEADER_FORMAT = "snapkeep-backup"
HEADER_VERSION = 1
# Canonical headers always start with this (keys are sorted)
HEADER_PREFIX = b'{"checksum":'
MAX_HEADER_SIZE = 4096

BASE_SUFFIX = ".json"
TEMP_SUFFIX = ".tmp"
TIMESTAMP_FORMAT = "%Y%m%dT%H%M%S.%fZ"

FILENAME_PATTERN = re.compile(
    r"^(?P<name>.+)-(?P<timestamp>\d{8}T\d{6}(?:\.\d{1,6})?Z)"
    r"(?P<suffix>\.json(?P<gz>\.gz)?(?P<enc>\.enc)?)$"
)
BACKUP_SUFFIX_PATTERN = re.compile(r"\.json(\.gz)?(\.enc)?$")


def format_timestamp(moment: datetime) -> str:
    """Format a datetime for use in a backup filename."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).strftime(TIMESTAMP_FORMAT)


def parse_filename_timestamp(filename: str) -> datetime | None:
    """Extract the creation time embedded in a backup filename."""
    match = FILENAME_PATTERN.match(filename)
    if not match:
        return None
    raw = match.group("timestamp")
    fmt = TIMESTAMP_FORMAT if "." in raw else "%Y%m%dT%H%M%SZ"
    try:
        return datetime.strptime(raw, fmt).replace(tzinfo=UTC)
    except ValueError:
        return None


def validate_backup_name(name: str) -> str:
    """
    Check a caller-supplied backup name.

    Raises:
        BackupIOError: If the name is empty or could escape the backup dir.
    """
    if not name or not name.strip():
        raise BackupIOError("Backup name must not be empty")
    if any(sep in name for sep in ("/", "\\", os.sep, "\x00")) or name.startswith("."):
        raise BackupIOError(f"Invalid backup name: {name!r}")
    return name


def build_filename(name: str, moment: datetime, suffix: str = "") -> str:
    """Compose ``<name>-<timestamp>.json<suffix>``."""
    return f"{validate_backup_name(name)}-{format_timestamp(moment)}{BASE_SUFFIX}{suffix}"


def is_temp_file(filename: str) -> bool:
    """True for in-progress writes and other hidden files."""
    return filename.startswith(".") or filename.endswith(TEMP_SUFFIX)


def is_backup_filename(filename: str) -> bool:
    return not is_temp_file(filename) and bool(BACKUP_SUFFIX_PATTERN.search(filename))


def compute_checksum(data: bytes) -> str:
    """Compute SHA-256 checksum of payload bytes."""
    return hashlib.sha256(data).hexdigest()


@dataclass
class BackupHeader:
    """First line of a full backup file."""

    checksum: str
    size: int
    compressed: bool
    encrypted: bool
    kind: str = BackupKind.FULL.value
    format: str = HEADER_FORMAT
    version: int = HEADER_VERSION

    def to_bytes(self) -> bytes:
        text = json.dumps(asdict(self), sort_keys=True, separators=(",", ":"))
        return text.encode("utf-8") + b"\n"

    @classmethod
    def split(cls, data: bytes) -> tuple[BackupHeader, bytes]:
        """
        Separate the header from the payload.

        Raises:
            IntegrityError: If the header is missing or malformed.
        """
        if not data.startswith(HEADER_PREFIX):
            raise IntegrityError("Backup header not found")

        newline = data.find(b"\n", 0, MAX_HEADER_SIZE)
        if newline < 0:
            raise IntegrityError("Backup header is not terminated")

        try:
            fields = json.loads(data[:newline].decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise IntegrityError(f"Backup header is not valid JSON: {e}") from e

        if not isinstance(fields, dict) or fields.get("format") != HEADER_FORMAT:
            raise IntegrityError("Not a snapkeep backup file")
        if fields.get("version") != HEADER_VERSION:
            raise IntegrityError(f"Unsupported backup file version: {fields.get('version')!r}")

        try:
            header = cls(
                checksum=str(fields["checksum"]),
                size=int(fields["size"]),
                compressed=bool(fields["compressed"]),
                encrypted=bool(fields["encrypted"]),
                kind=str(fields.get("kind", BackupKind.FULL.value)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise IntegrityError(f"Backup header is incomplete: {e}") from e

        return header, data[newline + 1 :]


def read_header(path: Path) -> BackupHeader | None:
    """Read only the header of a file; None if it has none."""
    try:
        with open(path, "rb") as f:
            head = f.read(MAX_HEADER_SIZE)
    except OSError:
        return None
    if not head.startswith(HEADER_PREFIX):
        return None
    try:
        header, _ = BackupHeader.split(head)
    except IntegrityError:
        return None
    return header


def describe_backup(path: Path) -> Backup | None:
    """
    Build a Backup record for a file in the backup directory.

    Encoding flags come from the filename. A plain ``.json`` file is a full
    backup if it starts with a backup header, otherwise an incremental one.
    Files whose name carries no backup timestamp count only when they start
    with a backup header, so unrelated JSON files are never picked up.

    Returns:
        Backup, or None if the file is not a backup or has vanished.
    """
    if not is_backup_filename(path.name):
        return None
    try:
        stat = path.stat()
    except OSError:
        return None

    timestamp = parse_filename_timestamp(path.name)
    header = read_header(path)
    if timestamp is None and header is None:
        return None

    created_at = timestamp or datetime.fromtimestamp(stat.st_mtime, UTC)
    match = BACKUP_SUFFIX_PATTERN.search(path.name)
    assert match is not None
    compressed = match.group(1) is not None
    encrypted = match.group(2) is not None

    if compressed or encrypted or header is not None:
        kind = BackupKind.FULL
    else:
        kind = BackupKind.INCREMENTAL

    return Backup(
        path=path,
        created_at=created_at,
        kind=kind,
        encrypted=encrypted,
        compressed=compressed,
        size_bytes=stat.st_size,
        checksum=header.checksum if header else None,
    )


def atomic_write(path: Path, chunks: Iterable[bytes]) -> int:
    """
    Write data to ``path`` atomically using temp file + rename.

    Returns:
        Number of bytes written.

    Raises:
        BackupIOError: If the directory is missing or not writable, or the
                       disk is full. The temp file is removed.
    """
    try:
        temp_fd, temp_name = tempfile.mkstemp(
            prefix=f".{path.name}.",
            suffix=TEMP_SUFFIX,
            dir=str(path.parent),
        )
    except OSError as e:
        raise BackupIOError(f"Cannot create file in {path.parent}: {e}") from e

    written = 0
    try:
        with os.fdopen(temp_fd, "wb") as f:
            for chunk in chunks:
                f.write(chunk)
                written += len(chunk)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_name, path)
    except BaseException as e:
        # Clean up temp file on error
        if os.path.exists(temp_name):
            os.unlink(temp_name)
        if isinstance(e, OSError):
            raise BackupIOError(f"Cannot write {path}: {e}") from e
        raise

    return written


def ensure_directory(directory: Path) -> Path:
    """
    Create the backup directory if needed.

    Raises:
        BackupIOError: If it cannot be created or is not a directory.
    """
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise BackupIOError(f"Cannot create backup directory {directory}: {e}") from e
    if not directory.is_dir():
        raise BackupIOError(f"Backup path is not a directory: {directory}")
    return directory


class PathLocks:
    """
    One lock per output path.

    Writers targeting the same final path are serialized; different paths
    proceed in parallel. Entries are dropped once no thread holds or waits
    for them.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, tuple[threading.Lock, int]] = {}

    @contextmanager
    def hold(self, path: Path) -> Generator[None, None, None]:
        key = os.path.abspath(path)
        with self._guard:
            lock, refs = self._locks.get(key, (threading.Lock(), 0))
            self._locks[key] = (lock, refs + 1)

        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                lock, refs = self._locks[key]
                if refs <= 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, refs - 1)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
