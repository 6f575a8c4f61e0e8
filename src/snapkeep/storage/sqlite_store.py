"""
SQLite implementation of the Store interface.

Design Decisions:
    - Connection-per-operation; each connection enables foreign keys
    - Transactions are managed manually (isolation_level=None with explicit
      BEGIN/COMMIT/ROLLBACK)
    - Snapshots read every entity inside one BEGIN so the result is
      consistent even with concurrent writers
    - Foreign keys are deferred during restore and checked at COMMIT, so row
      order inside an entity (e.g. self-references) does not matter
    - A progress handler interrupts long statements once the deadline passes
    - The database file must already exist; the schema belongs to the
      application, not to the backup tool
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from snapkeep.errors import ExtractionError, OperationTimeoutError, RestoreTransactionError
from snapkeep.storage.base import (
    Row,
    Store,
    StoreTransaction,
    iter_entities,
    select_changed,
    validate_entity_name,
)

if TYPE_CHECKING:
    from snapkeep.backup.deadline import Deadline

logger = logging.getLogger(__name__)

# Number of SQLite VM instructions between deadline checks
PROGRESS_INTERVAL = 1000


def _quote(entity: str) -> str:
    return f'"{validate_entity_name(entity)}"'


class _SQLiteTransaction(StoreTransaction):
    """Write operations bound to an open SQLite transaction."""

    def __init__(
        self,
        store: SQLiteStore,
        conn: sqlite3.Connection,
        deadline: Deadline | None,
    ) -> None:
        self._store = store
        self._conn = conn
        self._deadline = deadline
        self._tables = store._table_names(conn)

    def _require_table(self, entity: str) -> None:
        if entity not in self._tables:
            raise RestoreTransactionError("No such table in target database", entity)

    def clear(self, entity: str) -> int:
        # Entities without a table were snapshotted as empty
        if entity not in self._tables:
            logger.debug(f"No table for entity '{entity}', nothing to clear")
            return 0
        try:
            cursor = self._conn.execute(f"DELETE FROM {_quote(entity)}")  # noqa: S608
        except sqlite3.Error as e:
            raise self._store._translate(e, entity, self._deadline) from e
        return cursor.rowcount

    def insert(self, entity: str, rows: list[Row]) -> int:
        if not rows:
            return 0
        self._require_table(entity)
        inserted = 0
        for row in rows:
            if self._deadline is not None:
                self._deadline.check("restore apply")
            columns = list(row)
            column_sql = ", ".join(_quote(c) for c in columns)
            placeholders = ", ".join("?" * len(columns))
            try:
                self._conn.execute(
                    f"INSERT INTO {_quote(entity)} ({column_sql}) VALUES ({placeholders})",  # noqa: S608
                    [row[c] for c in columns],
                )
            except (sqlite3.Error, ValueError) as e:
                raise self._store._translate(e, entity, self._deadline) from e
            inserted += 1
        return inserted


class SQLiteStore(Store):
    """
    Store backed by a SQLite database file.

    Example:
        store = SQLiteStore("data/app.db")
        rows = store.snapshot(["users", "bookings"])

    Attributes:
        db_path: Path to the database file.
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)

    def __repr__(self) -> str:
        return f"SQLiteStore({str(self.db_path)!r})"

    @contextmanager
    def _get_connection(
        self,
        deadline: Deadline | None = None,
    ) -> Generator[sqlite3.Connection, None, None]:
        """
        Open a connection to an existing database.

        Yields:
            SQLite connection with row factory set.

        Raises:
            ExtractionError: If the database cannot be opened.
        """
        if not self.db_path.is_file():
            raise ExtractionError(f"Database not found: {self.db_path}")

        try:
            conn = sqlite3.connect(
                f"file:{self.db_path.resolve()}?mode=rw",
                uri=True,
                isolation_level=None,  # Autocommit mode, we manage transactions manually
                check_same_thread=False,
            )
        except sqlite3.Error as e:
            raise ExtractionError(f"Cannot open database {self.db_path}: {e}") from e

        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            if deadline is not None and deadline.timeout is not None:
                conn.set_progress_handler(lambda: int(deadline.expired()), PROGRESS_INTERVAL)
            yield conn
        finally:
            conn.close()

    def _table_names(self, conn: sqlite3.Connection) -> set[str]:
        cursor = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
        )
        return {row[0] for row in cursor.fetchall()}

    def _translate(
        self,
        error: Exception,
        entity: str,
        deadline: Deadline | None,
    ) -> Exception:
        """Map a sqlite3 error raised during a write to the backup taxonomy."""
        if deadline is not None and deadline.expired():
            assert deadline.timeout is not None
            return OperationTimeoutError("restore apply", deadline.timeout)
        return RestoreTransactionError(str(error), entity)

    def connect(self) -> None:
        try:
            with self._get_connection() as conn:
                conn.execute("SELECT 1").fetchone()
        except sqlite3.Error as e:
            raise ExtractionError(f"Database unreachable: {e}") from e

    def snapshot(
        self,
        entities: list[str],
        deadline: Deadline | None = None,
    ) -> dict[str, list[Row]]:
        result: dict[str, list[Row]] = {}

        with self._get_connection(deadline) as conn:
            try:
                conn.execute("BEGIN")
                tables = self._table_names(conn)
                for entity in iter_entities(entities):
                    if entity not in tables:
                        logger.warning(f"Entity '{entity}' not found in {self.db_path}")
                        result[entity] = []
                        continue
                    cursor = conn.execute(f"SELECT * FROM {_quote(entity)}")  # noqa: S608
                    result[entity] = [dict(row) for row in cursor.fetchall()]
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                if deadline is not None and deadline.expired():
                    assert deadline.timeout is not None
                    raise OperationTimeoutError("extraction", deadline.timeout) from e
                raise ExtractionError(f"Snapshot query failed: {e}") from e

        return result

    def changed_since(
        self,
        entity: str,
        since: datetime,
        deadline: Deadline | None = None,
    ) -> list[Row]:
        # Timestamps may be stored in several textual formats, so rows are
        # compared after parsing rather than in SQL.
        rows = self.snapshot([entity], deadline)[entity]
        return select_changed(rows, since)

    @contextmanager
    def transaction(
        self,
        deadline: Deadline | None = None,
    ) -> Generator[StoreTransaction, None, None]:
        with self._get_connection(deadline) as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
                conn.execute("PRAGMA defer_foreign_keys = ON")
            except sqlite3.Error as e:
                raise ExtractionError(f"Cannot start transaction: {e}") from e

            try:
                yield _SQLiteTransaction(self, conn, deadline)
                conn.execute("COMMIT")
            except sqlite3.IntegrityError as e:
                # Deferred foreign key violations surface on COMMIT
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                logger.error(f"Transaction rolled back: {e}")
                raise RestoreTransactionError(f"Constraint violation on commit: {e}") from e
            except Exception as e:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                logger.error(f"Transaction rolled back: {e}")
                raise

    def count(self, entity: str) -> int:
        with self._get_connection() as conn:
            if entity not in self._table_names(conn):
                return 0
            (count,) = conn.execute(f"SELECT COUNT(*) FROM {_quote(entity)}").fetchone()  # noqa: S608
            return int(count)
