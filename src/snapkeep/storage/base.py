"""
Data store abstraction.

The backup core reads and writes the application's database only through the
Store interface: entity-scoped reads, a consistent multi-entity snapshot, and
a transaction that either applies completely or not at all. This keeps the
core independent of one database engine and lets tests run against
MemoryStore.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Iterable, Iterator
from contextlib import AbstractContextManager
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from snapkeep.errors import ExtractionError

if TYPE_CHECKING:
    from snapkeep.backup.deadline import Deadline

logger = logging.getLogger(__name__)

Row = dict[str, Any]

# Columns consulted, in order, to decide whether a row changed since a checkpoint
UPDATE_COLUMNS = ("updated_at", "updatedAt")
CREATE_COLUMNS = ("created_at", "createdAt")

ENTITY_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def validate_entity_name(entity: str) -> str:
    """
    Check that an entity name is a plain identifier.

    Raises:
        ValueError: If the name could not be used as a table name.
    """
    if not ENTITY_NAME_PATTERN.match(entity):
        raise ValueError(f"Invalid entity name: {entity!r}")
    return entity


def parse_timestamp(value: Any) -> datetime | None:
    """
    Interpret a stored timestamp value.

    Accepts datetimes, ISO-8601 strings (including a trailing ``Z`` and the
    space-separated form SQLite produces) and epoch seconds or milliseconds.
    Naive values are taken as UTC. Returns None for anything else.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e11 else value
        return datetime.fromtimestamp(seconds, UTC)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return None


def row_changed_at(row: Row) -> datetime | None:
    """Return the most relevant change timestamp of a row, if it has one."""
    for column in UPDATE_COLUMNS + CREATE_COLUMNS:
        if row.get(column) is not None:
            parsed = parse_timestamp(row[column])
            if parsed is not None:
                return parsed
    return None


def select_changed(rows: Iterable[Row], since: datetime) -> list[Row]:
    """Filter rows to those changed strictly after ``since``."""
    if since.tzinfo is None:
        since = since.replace(tzinfo=UTC)
    changed = []
    for row in rows:
        changed_at = row_changed_at(row)
        if changed_at is not None and changed_at > since:
            changed.append(row)
    return changed


class StoreTransaction(ABC):
    """Write access to a store inside one transaction."""

    @abstractmethod
    def clear(self, entity: str) -> int:
        """Delete every row of an entity. Returns the number removed."""
        pass

    @abstractmethod
    def insert(self, entity: str, rows: list[Row]) -> int:
        """Insert rows into an entity. Returns the number inserted."""
        pass


class Store(ABC):
    """
    Abstract transactional data store keyed by entity name.

    Implementations must raise ExtractionError when the store cannot be
    reached or read, and RestoreTransactionError when a write violates a
    constraint. A transaction that raises must leave the store unchanged.
    """

    @abstractmethod
    def connect(self) -> None:
        """
        Check that the store is reachable.

        Raises:
            ExtractionError: If it is not.
        """
        pass

    @abstractmethod
    def snapshot(
        self,
        entities: list[str],
        deadline: Deadline | None = None,
    ) -> dict[str, list[Row]]:
        """
        Read all rows of the given entities under one consistent read.

        Entities that do not exist in the store map to an empty list.
        """
        pass

    @abstractmethod
    def changed_since(
        self,
        entity: str,
        since: datetime,
        deadline: Deadline | None = None,
    ) -> list[Row]:
        """Rows whose update (or create) timestamp is after ``since``."""
        pass

    @abstractmethod
    def transaction(
        self,
        deadline: Deadline | None = None,
    ) -> AbstractContextManager[StoreTransaction]:
        """Open a write transaction; commit on success, roll back on error."""
        pass

    @abstractmethod
    def count(self, entity: str) -> int:
        """Number of rows in an entity (0 if it does not exist)."""
        pass

    def close(self) -> None:
        """Release any held resources."""
        pass

    def counts(self, entities: Iterable[str]) -> dict[str, int]:
        return {entity: self.count(entity) for entity in entities}


def open_store(database_url: str) -> Store:
    """
    Create a store from a database URL.

    Supported URLs:
        sqlite:///relative/path.db
        sqlite:////absolute/path.db
        memory://

    Raises:
        ExtractionError: If the URL is empty, malformed or of an
                         unsupported scheme.
    """
    from snapkeep.storage.memory_store import MemoryStore
    from snapkeep.storage.sqlite_store import SQLiteStore

    if not database_url or "://" not in database_url:
        raise ExtractionError(f"Invalid database URL: {database_url!r}")

    scheme, _, rest = database_url.partition("://")
    scheme = scheme.lower()

    if scheme == "memory":
        return MemoryStore()
    if scheme == "sqlite":
        if not rest.startswith("/") or rest == "/":
            raise ExtractionError(f"Invalid SQLite URL: {database_url!r}")
        return SQLiteStore(rest[1:])

    raise ExtractionError(f"Unsupported database scheme: {scheme!r}")


def iter_entities(entities: Iterable[str]) -> Iterator[str]:
    """Yield entity names after validating each one."""
    for entity in entities:
        yield validate_entity_name(entity)
