"""
Tests for the data store layer.

Tests cover:
- Timestamp parsing and change selection
- Store URL parsing
- MemoryStore snapshots, transactions and constraints
- SQLiteStore snapshots, transactions, rollback and deadlines
"""

import shutil
import sqlite3
import tempfile
import unittest
from datetime import UTC, datetime
from pathlib import Path

from snapkeep.backup.deadline import Deadline
from snapkeep.errors import ExtractionError, OperationTimeoutError, RestoreTransactionError
from snapkeep.storage import MemoryStore, SQLiteStore, open_store, parse_timestamp, select_changed
from snapkeep.storage.base import validate_entity_name

SCHEMA = """
CREATE TABLE users (
    id INTEGER PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    updated_at TEXT
);
CREATE TABLE services (
    id INTEGER PRIMARY KEY,
    provider_id INTEGER NOT NULL REFERENCES users(id),
    title TEXT NOT NULL,
    updated_at TEXT
);
CREATE TABLE bookings (
    id INTEGER PRIMARY KEY,
    user_id INTEGER NOT NULL REFERENCES users(id),
    service_id INTEGER NOT NULL REFERENCES services(id),
    created_at TEXT
);
"""


def create_database(path: Path) -> None:
    """Create a marketplace-like database with a few rows."""
    conn = sqlite3.connect(path)
    try:
        conn.executescript(SCHEMA)
        conn.executemany(
            "INSERT INTO users (id, email, updated_at) VALUES (?, ?, ?)",
            [
                (1, "ada@example.com", "2026-10-01T08:00:00+00:00"),
                (2, "bob@example.com", "2026-10-10T08:00:00+00:00"),
            ],
        )
        conn.execute(
            "INSERT INTO services (id, provider_id, title, updated_at) VALUES (1, 1, 'Tutoring', NULL)"
        )
        conn.execute(
            "INSERT INTO bookings (id, user_id, service_id, created_at) "
            "VALUES (1, 2, 1, '2026-10-12 09:30:00')"
        )
        conn.commit()
    finally:
        conn.close()


class TestTimestampHelpers(unittest.TestCase):
    """Tests for parse_timestamp and select_changed."""

    def test_parse_iso_string(self) -> None:
        self.assertEqual(
            parse_timestamp("2026-10-17T10:00:00+00:00"),
            datetime(2026, 10, 17, 10, tzinfo=UTC),
        )

    def test_parse_zulu_and_space_forms(self) -> None:
        expected = datetime(2026, 10, 17, 10, tzinfo=UTC)

        self.assertEqual(parse_timestamp("2026-10-17T10:00:00Z"), expected)
        self.assertEqual(parse_timestamp("2026-10-17 10:00:00"), expected)

    def test_parse_epoch_seconds_and_millis(self) -> None:
        expected = datetime(2026, 10, 17, 10, tzinfo=UTC)
        seconds = expected.timestamp()

        self.assertEqual(parse_timestamp(seconds), expected)
        self.assertEqual(parse_timestamp(int(seconds * 1000)), expected)

    def test_parse_naive_datetime_is_utc(self) -> None:
        self.assertEqual(
            parse_timestamp(datetime(2026, 10, 17, 10)),
            datetime(2026, 10, 17, 10, tzinfo=UTC),
        )

    def test_parse_garbage(self) -> None:
        self.assertIsNone(parse_timestamp("yesterday"))
        self.assertIsNone(parse_timestamp(None))
        self.assertIsNone(parse_timestamp(True))

    def test_select_changed_is_strictly_after(self) -> None:
        since = datetime(2026, 10, 10, tzinfo=UTC)
        rows = [
            {"id": 1, "updated_at": "2026-10-09T00:00:00+00:00"},
            {"id": 2, "updated_at": "2026-10-10T00:00:00+00:00"},
            {"id": 3, "updated_at": "2026-10-11T00:00:00+00:00"},
        ]

        self.assertEqual([r["id"] for r in select_changed(rows, since)], [3])

    def test_select_changed_falls_back_to_created_at(self) -> None:
        since = datetime(2026, 10, 10, tzinfo=UTC)
        rows = [
            {"id": 1, "createdAt": "2026-10-11T00:00:00Z"},
            {"id": 2, "updatedAt": None, "created_at": "2026-10-01T00:00:00Z"},
            {"id": 3},
        ]

        self.assertEqual([r["id"] for r in select_changed(rows, since)], [1])

    def test_select_changed_prefers_updated_at(self) -> None:
        since = datetime(2026, 10, 10, tzinfo=UTC)
        rows = [
            {
                "id": 1,
                "created_at": "2026-10-01T00:00:00Z",
                "updated_at": "2026-10-15T00:00:00Z",
            }
        ]

        self.assertEqual(len(select_changed(rows, since)), 1)

    def test_validate_entity_name(self) -> None:
        self.assertEqual(validate_entity_name("bookings"), "bookings")
        for bad in ("", "users; DROP TABLE users", "1users", 'a"b'):
            with self.subTest(name=bad):
                with self.assertRaises(ValueError):
                    validate_entity_name(bad)


class TestOpenStore(unittest.TestCase):
    """Tests for open_store URL parsing."""

    def test_memory_url(self) -> None:
        self.assertIsInstance(open_store("memory://"), MemoryStore)

    def test_sqlite_relative_url(self) -> None:
        store = open_store("sqlite:///data/app.db")

        self.assertIsInstance(store, SQLiteStore)
        self.assertEqual(store.db_path, Path("data/app.db"))

    def test_sqlite_absolute_url(self) -> None:
        store = open_store("sqlite:////var/lib/app.db")

        self.assertEqual(store.db_path, Path("/var/lib/app.db"))

    def test_invalid_urls(self) -> None:
        for url in ("", "not a url", "postgres://localhost/app", "sqlite://"):
            with self.subTest(url=url):
                with self.assertRaises(ExtractionError):
                    open_store(url)


class TestMemoryStore(unittest.TestCase):
    """Tests for MemoryStore."""

    def setUp(self) -> None:
        self.store = MemoryStore(
            {
                "users": [{"id": 1, "name": "ada"}, {"id": 2, "name": "bob"}],
                "bookings": [{"id": 1, "user_id": 2}],
            },
            foreign_keys={"bookings": {"user_id": "users"}},
        )

    def test_snapshot_returns_copies(self) -> None:
        snapshot = self.store.snapshot(["users", "bookings"])
        snapshot["users"][0]["name"] = "changed"

        self.assertEqual(self.store.snapshot(["users"])["users"][0]["name"], "ada")

    def test_snapshot_missing_entity_is_empty(self) -> None:
        self.assertEqual(self.store.snapshot(["reviews"]), {"reviews": []})

    def test_transaction_commits(self) -> None:
        with self.store.transaction() as txn:
            txn.clear("bookings")
            txn.insert("bookings", [{"id": 5, "user_id": 1}])

        self.assertEqual(self.store.snapshot(["bookings"])["bookings"], [{"id": 5, "user_id": 1}])

    def test_transaction_rolls_back_on_error(self) -> None:
        with self.assertRaises(RuntimeError):
            with self.store.transaction() as txn:
                txn.clear("users")
                raise RuntimeError("boom")

        self.assertEqual(self.store.count("users"), 2)

    def test_duplicate_id_rejected(self) -> None:
        with self.assertRaises(RestoreTransactionError):
            with self.store.transaction() as txn:
                txn.insert("users", [{"id": 1, "name": "again"}])

        self.assertEqual(self.store.count("users"), 2)

    def test_foreign_key_checked_at_commit(self) -> None:
        """Child rows may be inserted before parents; the check runs at commit."""
        with self.assertRaises(RestoreTransactionError):
            with self.store.transaction() as txn:
                txn.clear("bookings")
                txn.clear("users")
                txn.insert("bookings", [{"id": 1, "user_id": 99}])

        self.assertEqual(self.store.count("users"), 2)
        self.assertEqual(self.store.count("bookings"), 1)

    def test_unavailable_store(self) -> None:
        self.store.available = False

        with self.assertRaises(ExtractionError):
            self.store.connect()
        with self.assertRaises(ExtractionError):
            self.store.snapshot(["users"])

    def test_expired_deadline_during_insert(self) -> None:
        clock_values = iter([0.0, 100.0, 100.0, 100.0])
        deadline = Deadline(1.0, "restore apply", clock=lambda: next(clock_values))

        with self.assertRaises(OperationTimeoutError):
            with self.store.transaction(deadline) as txn:
                txn.insert("users", [{"id": 3}])

        self.assertEqual(self.store.count("users"), 2)

    def test_changed_since(self) -> None:
        store = MemoryStore(
            {
                "users": [
                    {"id": 1, "updated_at": "2026-10-01T00:00:00Z"},
                    {"id": 2, "updated_at": "2026-10-20T00:00:00Z"},
                ]
            }
        )

        changed = store.changed_since("users", datetime(2026, 10, 10, tzinfo=UTC))

        self.assertEqual([r["id"] for r in changed], [2])


class TestSQLiteStore(unittest.TestCase):
    """Tests for SQLiteStore."""

    def setUp(self) -> None:
        """Create temporary database for tests."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = Path(self.temp_dir) / "app.db"
        create_database(self.db_path)
        self.store = SQLiteStore(self.db_path)

    def tearDown(self) -> None:
        """Clean up temporary directory."""
        shutil.rmtree(self.temp_dir)

    def test_connect(self) -> None:
        self.store.connect()

    def test_missing_database_is_not_created(self) -> None:
        store = SQLiteStore(Path(self.temp_dir) / "missing.db")

        with self.assertRaises(ExtractionError):
            store.connect()
        self.assertFalse((Path(self.temp_dir) / "missing.db").exists())

    def test_snapshot(self) -> None:
        snapshot = self.store.snapshot(["users", "services", "bookings", "reviews"])

        self.assertEqual(len(snapshot["users"]), 2)
        self.assertEqual(snapshot["users"][0]["email"], "ada@example.com")
        self.assertEqual(snapshot["services"][0]["title"], "Tutoring")
        self.assertEqual(snapshot["reviews"], [])

    def test_snapshot_rejects_bad_entity_name(self) -> None:
        with self.assertRaises(ValueError):
            self.store.snapshot(["users; DROP TABLE users"])

    def test_counts(self) -> None:
        self.assertEqual(
            self.store.counts(["users", "services", "bookings", "reviews"]),
            {"users": 2, "services": 1, "bookings": 1, "reviews": 0},
        )

    def test_changed_since(self) -> None:
        since = datetime(2026, 10, 5, tzinfo=UTC)

        self.assertEqual([r["id"] for r in self.store.changed_since("users", since)], [2])
        self.assertEqual([r["id"] for r in self.store.changed_since("bookings", since)], [1])
        self.assertEqual(self.store.changed_since("services", since), [])

    def test_transaction_replaces_rows(self) -> None:
        with self.store.transaction() as txn:
            txn.clear("bookings")
            txn.clear("services")
            txn.clear("users")
            txn.insert("users", [{"id": 7, "email": "eve@example.com", "updated_at": None}])

        self.assertEqual(self.store.counts(["users", "bookings"]), {"users": 1, "bookings": 0})

    def test_foreign_key_violation_rolls_back(self) -> None:
        with self.assertRaises(RestoreTransactionError):
            with self.store.transaction() as txn:
                txn.clear("bookings")
                txn.insert(
                    "bookings",
                    [{"id": 2, "user_id": 999, "service_id": 1, "created_at": None}],
                )

        self.assertEqual(self.store.count("bookings"), 1)

    def test_deferred_foreign_keys_allow_any_insert_order(self) -> None:
        with self.store.transaction() as txn:
            for entity in ("bookings", "services", "users"):
                txn.clear(entity)
            txn.insert(
                "bookings",
                [{"id": 1, "user_id": 1, "service_id": 1, "created_at": None}],
            )
            txn.insert("services", [{"id": 1, "provider_id": 1, "title": "Yoga", "updated_at": None}])
            txn.insert("users", [{"id": 1, "email": "ada@example.com", "updated_at": None}])

        self.assertEqual(self.store.count("bookings"), 1)

    def test_unique_violation_rolls_back(self) -> None:
        with self.assertRaises(RestoreTransactionError):
            with self.store.transaction() as txn:
                txn.insert("users", [{"id": 3, "email": "ada@example.com", "updated_at": None}])

        self.assertEqual(self.store.count("users"), 2)

    def test_insert_into_missing_table(self) -> None:
        with self.assertRaises(RestoreTransactionError):
            with self.store.transaction() as txn:
                txn.insert("reviews", [{"id": 1}])

    def test_missing_table_with_no_rows(self) -> None:
        """Entities snapshotted as empty need no table on restore."""
        with self.store.transaction() as txn:
            self.assertEqual(txn.clear("reviews"), 0)
            self.assertEqual(txn.insert("reviews", []), 0)

        self.assertEqual(self.store.count("reviews"), 0)

    def test_expired_deadline_rolls_back(self) -> None:
        clock_values = iter([0.0] + [100.0] * 100)
        deadline = Deadline(1.0, "restore apply", clock=lambda: next(clock_values))

        with self.assertRaises(OperationTimeoutError):
            with self.store.transaction(deadline) as txn:
                txn.clear("bookings")
                txn.insert(
                    "bookings",
                    [{"id": 9, "user_id": 1, "service_id": 1, "created_at": None}],
                )

        self.assertEqual(self.store.count("bookings"), 1)


if __name__ == "__main__":
    unittest.main()
