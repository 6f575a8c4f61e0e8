"""
Tests for full backup creation.

Tests cover:
- Backup file naming and header layout
- Atomic writes and per-path locks
- BackupWriter encoding options and failure handling
- Off-site upload failures
- Full backup and restore of a SQLite database through BackupManager
"""

import shutil
import sqlite3
import tempfile
import threading
import time
import unittest
from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import MagicMock, patch

from snapkeep.backup import BackupManager, BackupWriter
from snapkeep.backup.deadline import Deadline
from snapkeep.backup.files import (
    HEADER_PREFIX,
    BackupHeader,
    PathLocks,
    atomic_write,
    build_filename,
    compute_checksum,
    describe_backup,
    is_backup_filename,
    parse_filename_timestamp,
    validate_backup_name,
)
from snapkeep.codecs import FernetCodec, GzipCodec
from snapkeep.codecs.base import Codec
from snapkeep.codecs.encryption import MAGIC
from snapkeep.config.settings import DEFAULT_ENTITIES, Settings
from snapkeep.errors import BackupIOError, IntegrityError
from snapkeep.models import BackupKind
from snapkeep.storage import MemoryStore

TEST_ITERATIONS = 1_000
PASSPHRASE = "correct horse battery staple"
FIXED_NOW = datetime(2026, 10, 17, 2, 15, 0, 123456, tzinfo=UTC)
ENTITIES = ["users", "services", "bookings"]


def sample_store() -> MemoryStore:
    return MemoryStore(
        {
            "users": [
                {"id": 1, "email": "ada@example.com"},
                {"id": 2, "email": "bob@example.com"},
            ],
            "services": [{"id": 1, "provider_id": 1, "title": "Tutoring"}],
            "bookings": [{"id": 1, "user_id": 2, "service_id": 1}],
        }
    )


class SlowCodec(Codec):
    """Codec that takes longer than the writer's timeout."""

    name = "slow"
    suffix = ".gz"

    def encode(self, data: bytes) -> bytes:
        time.sleep(0.5)
        return data

    def decode(self, data: bytes) -> bytes:
        return data


class TestBackupNaming(unittest.TestCase):
    """Tests for backup filenames."""

    def test_build_filename(self) -> None:
        self.assertEqual(
            build_filename("nightly", FIXED_NOW, ".gz.enc"),
            "nightly-20261017T021500.123456Z.json.gz.enc",
        )

    def test_naive_timestamp_is_utc(self) -> None:
        self.assertEqual(
            build_filename("nightly", datetime(2026, 10, 17, 2, 15)),
            "nightly-20261017T021500.000000Z.json",
        )

    def test_parse_filename_timestamp(self) -> None:
        self.assertEqual(
            parse_filename_timestamp("nightly-20261017T021500.123456Z.json.gz"),
            FIXED_NOW,
        )
        self.assertEqual(
            parse_filename_timestamp("backup-2026-10-17-20261017T021500Z.json"),
            datetime(2026, 10, 17, 2, 15, tzinfo=UTC),
        )
        self.assertIsNone(parse_filename_timestamp("notes.txt"))

    def test_invalid_names(self) -> None:
        for name in ("", "   ", "../escape", "a/b", ".hidden"):
            with self.subTest(name=name):
                with self.assertRaises(BackupIOError):
                    validate_backup_name(name)

    def test_is_backup_filename(self) -> None:
        self.assertTrue(is_backup_filename("a-20261017T021500.000000Z.json"))
        self.assertTrue(is_backup_filename("a.json.gz.enc"))
        self.assertFalse(is_backup_filename(".a.json.gz.abc123.tmp"))
        self.assertFalse(is_backup_filename("a.json.tmp"))
        self.assertFalse(is_backup_filename("a.sql"))


class TestBackupHeader(unittest.TestCase):
    """Tests for the backup file header."""

    def test_header_is_one_canonical_line(self) -> None:
        header = BackupHeader(checksum="ab" * 32, size=10, compressed=True, encrypted=False)
        data = header.to_bytes()

        self.assertTrue(data.startswith(HEADER_PREFIX))
        self.assertTrue(data.endswith(b"\n"))
        self.assertEqual(data.count(b"\n"), 1)

    def test_split(self) -> None:
        header = BackupHeader(checksum="ab" * 32, size=7, compressed=False, encrypted=True)

        parsed, payload = BackupHeader.split(header.to_bytes() + b"payload")

        self.assertEqual(parsed, header)
        self.assertEqual(payload, b"payload")

    def test_split_rejects_other_files(self) -> None:
        for data in (b"", b"plain text", b'{"checksum": 1}', b'{"checksum":"x","format":"other"}\n'):
            with self.subTest(data=data):
                with self.assertRaises(IntegrityError):
                    BackupHeader.split(data)


class TestAtomicWrite(unittest.TestCase):
    """Tests for atomic_write and PathLocks."""

    def setUp(self) -> None:
        self.temp_dir = tempfile.mkdtemp()
        self.dir = Path(self.temp_dir)

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir)

    def test_write(self) -> None:
        path = self.dir / "out.json"

        written = atomic_write(path, [b"header\n", b"body"])

        self.assertEqual(written, 11)
        self.assertEqual(path.read_bytes(), b"header\nbody")

    def test_failure_leaves_nothing_behind(self) -> None:
        path = self.dir / "out.json"

        def chunks():
            yield b"partial"
            raise RuntimeError("disk on fire")

        with self.assertRaises(RuntimeError):
            atomic_write(path, chunks())

        self.assertEqual(list(self.dir.iterdir()), [])

    def test_missing_directory(self) -> None:
        with self.assertRaises(BackupIOError):
            atomic_write(self.dir / "missing" / "out.json", [b"x"])

    def test_path_locks_are_released(self) -> None:
        locks = PathLocks()
        path = self.dir / "out.json"

        with locks.hold(path):
            self.assertEqual(len(locks), 1)

        self.assertEqual(len(locks), 0)

    def test_path_lock_serializes_same_path(self) -> None:
        locks = PathLocks()
        path = self.dir / "out.json"
        order: list[str] = []

        def second() -> None:
            with locks.hold(path):
                order.append("second")

        with locks.hold(path):
            thread = threading.Thread(target=second)
            thread.start()
            thread.join(0.05)
            order.append("first")
        thread.join(5)

        self.assertEqual(order, ["first", "second"])


class TestBackupWriter(unittest.TestCase):
    """Tests for BackupWriter."""

    def setUp(self) -> None:
        self.temp_dir = tempfile.mkdtemp()
        self.backup_dir = Path(self.temp_dir) / "backups"
        self.store = sample_store()
        self.encryption = FernetCodec(PASSPHRASE, iterations=TEST_ITERATIONS)

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir)

    def make_writer(self, **kwargs) -> BackupWriter:
        options = {
            "compression": GzipCodec(),
            "encryption": self.encryption,
            "clock": lambda: FIXED_NOW,
        }
        options.update(kwargs)
        return BackupWriter(self.store, self.backup_dir, ENTITIES, **options)

    def test_create_plain_backup(self) -> None:
        result = self.make_writer().create_backup("nightly", compress=False)

        self.assertTrue(result.success)
        self.assertEqual(result.path.name, "nightly-20261017T021500.123456Z.json")
        self.assertEqual(result.manifest.counts, {"users": 2, "services": 1, "bookings": 1})
        self.assertEqual(result.manifest.order, ENTITIES)
        self.assertEqual(result.size_bytes, result.path.stat().st_size)

        header, payload = BackupHeader.split(result.path.read_bytes())
        self.assertFalse(header.compressed)
        self.assertFalse(header.encrypted)
        self.assertEqual(header.checksum, result.checksum)
        self.assertEqual(compute_checksum(payload), result.checksum)
        self.assertIn(b"ada@example.com", payload)

    def test_create_compressed_backup_by_default(self) -> None:
        result = self.make_writer().create_backup("nightly")

        self.assertTrue(result.success)
        self.assertTrue(result.path.name.endswith(".json.gz"))

    def test_create_encrypted_backup(self) -> None:
        result = self.make_writer().create_backup("nightly", encrypt=True)

        self.assertTrue(result.success)
        self.assertTrue(result.path.name.endswith(".json.gz.enc"))
        data = result.path.read_bytes()
        _, payload = BackupHeader.split(data)
        self.assertTrue(payload.startswith(MAGIC))
        self.assertNotIn(b"ada@example.com", data)

    def test_encrypt_by_default(self) -> None:
        writer = self.make_writer(encrypt_by_default=True, compress_by_default=False)

        result = writer.create_backup("nightly")

        self.assertTrue(result.path.name.endswith(".json.enc"))

    def test_encryption_without_key_fails(self) -> None:
        result = self.make_writer(encryption=None).create_backup("nightly", encrypt=True)

        self.assertFalse(result.success)
        self.assertEqual(result.error_code, "encoding_failed")
        self.assertFalse(self.backup_dir.exists() and any(self.backup_dir.iterdir()))

    def test_unreachable_store_leaves_no_file(self) -> None:
        self.store.available = False

        result = self.make_writer().create_backup("nightly")

        self.assertFalse(result.success)
        self.assertEqual(result.error_code, "extraction_failed")
        self.assertIsNone(result.path)
        self.assertEqual(list(self.backup_dir.iterdir()), [])

    def test_invalid_name(self) -> None:
        result = self.make_writer().create_backup("../etc/passwd")

        self.assertFalse(result.success)
        self.assertEqual(result.error_code, "io_error")

    def test_unwritable_backup_dir(self) -> None:
        blocker = Path(self.temp_dir) / "file"
        blocker.write_text("not a directory")
        writer = BackupWriter(self.store, blocker / "backups", ENTITIES)

        result = writer.create_backup("nightly")

        self.assertFalse(result.success)
        self.assertEqual(result.error_code, "io_error")

    def test_encoding_failure(self) -> None:
        self.store = MemoryStore({"users": [{"id": 1, "value": object()}]})

        result = self.make_writer().create_backup("nightly")

        self.assertFalse(result.success)
        self.assertEqual(result.error_code, "encoding_failed")
        self.assertEqual(list(self.backup_dir.iterdir()), [])

    def test_missing_entity_is_empty(self) -> None:
        writer = BackupWriter(self.store, self.backup_dir, ["users", "reviews"])

        result = writer.create_backup("nightly")

        self.assertTrue(result.success)
        self.assertEqual(result.manifest.counts, {"users": 2, "reviews": 0})

    def test_extraction_timeout_leaves_no_file(self) -> None:
        ticks = iter([0.0] + [1_000.0] * 1_000)

        def expiring_deadline(timeout, step):
            return Deadline(timeout, step, clock=lambda: next(ticks))

        with patch("snapkeep.backup.writer.Deadline", side_effect=expiring_deadline):
            result = self.make_writer(timeout=5).create_backup("nightly")

        self.assertFalse(result.success)
        self.assertEqual(result.error_code, "timeout")
        self.assertIn("extraction", result.error)
        self.assertEqual(list(self.backup_dir.iterdir()), [])

    def test_encoding_timeout_leaves_no_file(self) -> None:
        writer = self.make_writer(compression=SlowCodec(), timeout=0.05)

        result = writer.create_backup("nightly")

        self.assertFalse(result.success)
        self.assertEqual(result.error_code, "timeout")
        self.assertIn("encoding", result.error)
        self.assertEqual(list(self.backup_dir.iterdir()), [])

    def test_corrupted_write_is_removed(self) -> None:
        """A backup that does not read back intact is deleted and reported."""

        def corrupting_write(path, chunks):
            data = bytearray(b"".join(chunks))
            data[-1] ^= 0x01
            path.write_bytes(bytes(data))
            return len(data)

        with patch("snapkeep.backup.writer.atomic_write", side_effect=corrupting_write):
            result = self.make_writer().create_backup("nightly")

        self.assertFalse(result.success)
        self.assertEqual(result.error_code, "integrity_error")
        self.assertIn("Checksum mismatch", result.error)
        self.assertEqual(list(self.backup_dir.iterdir()), [])

    def test_truncated_write_is_removed(self) -> None:
        def truncating_write(path, chunks):
            data = b"".join(chunks)[:-10]
            path.write_bytes(data)
            return len(data)

        with patch("snapkeep.backup.writer.atomic_write", side_effect=truncating_write):
            result = self.make_writer().create_backup("nightly", compress=False)

        self.assertEqual(result.error_code, "integrity_error")
        self.assertEqual(list(self.backup_dir.iterdir()), [])

    def test_describe_backup(self) -> None:
        result = self.make_writer().create_backup("nightly", encrypt=True)

        backup = describe_backup(result.path)

        self.assertEqual(backup.kind, BackupKind.FULL)
        self.assertTrue(backup.encrypted)
        self.assertTrue(backup.compressed)
        self.assertEqual(backup.created_at, FIXED_NOW)
        self.assertEqual(backup.checksum, result.checksum)

    def test_upload_failure_keeps_backup(self) -> None:
        uploader = MagicMock()
        uploader.upload.side_effect = BackupIOError("bucket unreachable")

        result = self.make_writer(uploader=uploader).create_backup("nightly")

        self.assertTrue(result.success)
        self.assertTrue(result.path.exists())
        self.assertIn("bucket unreachable", result.upload_error)
        uploader.upload.assert_called_once_with(result.path)

    def test_upload_success(self) -> None:
        uploader = MagicMock()

        result = self.make_writer(uploader=uploader).create_backup("nightly")

        self.assertTrue(result.success)
        self.assertIsNone(result.upload_error)

    def test_concurrent_backups_to_same_path(self) -> None:
        """Writers racing for one filename never interleave their bytes."""
        writer = self.make_writer()
        results = []

        threads = [
            threading.Thread(target=lambda: results.append(writer.create_backup("nightly")))
            for _ in range(4)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(10)

        self.assertEqual(len(results), 4)
        self.assertTrue(all(r.success for r in results))
        self.assertEqual(len(list(self.backup_dir.iterdir())), 1)
        header, payload = BackupHeader.split(results[0].path.read_bytes())
        self.assertEqual(compute_checksum(payload), header.checksum)
        self.assertEqual(header.size, len(payload))


class TestFullBackupAndRestore(unittest.TestCase):
    """End-to-end backup and restore of a SQLite database."""

    SCHEMA = """
    CREATE TABLE users (id INTEGER PRIMARY KEY, email TEXT NOT NULL UNIQUE);
    CREATE TABLE services (
        id INTEGER PRIMARY KEY,
        provider_id INTEGER NOT NULL REFERENCES users(id),
        title TEXT NOT NULL
    );
    CREATE TABLE bookings (
        id INTEGER PRIMARY KEY,
        user_id INTEGER NOT NULL REFERENCES users(id),
        service_id INTEGER NOT NULL REFERENCES services(id)
    );
    """

    def setUp(self) -> None:
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = Path(self.temp_dir) / "app.db"
        conn = sqlite3.connect(self.db_path)
        conn.executescript(self.SCHEMA)
        conn.executemany(
            "INSERT INTO users VALUES (?, ?)",
            [(1, "ada@example.com"), (2, "bob@example.com"), (3, "cy@example.com")],
        )
        conn.executemany(
            "INSERT INTO services VALUES (?, ?, ?)",
            [(1, 1, "Tutoring"), (2, 1, "Yoga")],
        )
        conn.execute("INSERT INTO bookings VALUES (1, 2, 1)")
        conn.commit()
        conn.close()

        self.settings = Settings()
        self.settings.backup.database_url = f"sqlite:///{self.db_path}"
        self.settings.backup.backup_dir = str(Path(self.temp_dir) / "backups")
        self.settings.backup.entities = ENTITIES
        self.settings.backup.encryption_enabled = True
        self.settings.backup.compression_enabled = True

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir)

    def clear_database(self) -> None:
        conn = sqlite3.connect(self.db_path)
        conn.executescript("DELETE FROM bookings; DELETE FROM services; DELETE FROM users;")
        conn.commit()
        conn.close()

    def test_backup_clear_restore(self) -> None:
        """An encrypted, compressed backup restores every row."""
        with BackupManager(
            self.settings, passphrase=PASSPHRASE, iterations=TEST_ITERATIONS
        ) as manager:
            backup = manager.create_backup("marketplace")
            self.assertTrue(backup.success, backup.error)
            self.assertTrue(backup.path.name.endswith(".json.gz.enc"))

            self.clear_database()

            restored = manager.restore_backup(backup.path)

        self.assertTrue(restored.success, restored.error)
        self.assertEqual(restored.entity_counts, {"users": 3, "services": 2, "bookings": 1})

        conn = sqlite3.connect(self.db_path)
        emails = [row[0] for row in conn.execute("SELECT email FROM users ORDER BY id")]
        conn.close()
        self.assertEqual(emails, ["ada@example.com", "bob@example.com", "cy@example.com"])

    def test_default_entities_with_missing_tables(self) -> None:
        """Entities without a table back up as empty and restore cleanly."""
        self.settings.backup.entities = list(DEFAULT_ENTITIES)

        with BackupManager(
            self.settings, passphrase=PASSPHRASE, iterations=TEST_ITERATIONS
        ) as manager:
            backup = manager.create_backup("marketplace")
            self.assertTrue(backup.success, backup.error)
            self.assertEqual(backup.manifest.counts["favorites"], 0)

            self.clear_database()

            restored = manager.restore_backup(backup.path)

        self.assertTrue(restored.success, restored.error)
        expected = {entity: 0 for entity in DEFAULT_ENTITIES}
        expected.update({"users": 3, "services": 2, "bookings": 1})
        self.assertEqual(restored.entity_counts, expected)

    def test_invalid_database_url(self) -> None:
        self.settings.backup.database_url = "mysql://nowhere"
        manager = BackupManager(self.settings, passphrase=PASSPHRASE, iterations=TEST_ITERATIONS)

        result = manager.create_backup()

        self.assertFalse(result.success)
        self.assertEqual(result.error_code, "extraction_failed")
        self.assertFalse(self.settings.backup_path.exists())


if __name__ == "__main__":
    unittest.main()
