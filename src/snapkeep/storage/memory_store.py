"""
In-memory implementation of the Store interface.

Used for tests and for embedding snapkeep in processes that keep their data in
memory. Supports the two constraints a restore has to respect: unique row ids
within an entity and declared foreign keys between entities. Writes go to a
working copy that replaces the live tables only on commit, so a failed
transaction leaves nothing behind.
"""

from __future__ import annotations

import copy
import logging
import threading
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime
from typing import TYPE_CHECKING

from snapkeep.errors import ExtractionError, RestoreTransactionError
from snapkeep.storage.base import Row, Store, StoreTransaction, select_changed

if TYPE_CHECKING:
    from snapkeep.backup.deadline import Deadline

logger = logging.getLogger(__name__)


class _MemoryTransaction(StoreTransaction):
    def __init__(
        self,
        tables: dict[str, list[Row]],
        unique_key: str | None,
        deadline: Deadline | None,
    ) -> None:
        self.tables = tables
        self._unique_key = unique_key
        self._deadline = deadline

    def clear(self, entity: str) -> int:
        removed = len(self.tables.get(entity, []))
        self.tables[entity] = []
        return removed

    def insert(self, entity: str, rows: list[Row]) -> int:
        table = self.tables.setdefault(entity, [])
        key = self._unique_key
        seen = {row.get(key) for row in table} if key else set()

        for row in rows:
            if self._deadline is not None:
                self._deadline.check("restore apply")
            if key and row.get(key) is not None:
                if row[key] in seen:
                    raise RestoreTransactionError(
                        f"Duplicate {key} {row[key]!r}", entity
                    )
                seen.add(row[key])
            table.append(copy.deepcopy(row))
        return len(rows)


class MemoryStore(Store):
    """
    Dict-backed store with optional foreign key checks.

    Example:
        store = MemoryStore(
            {"users": [{"id": 1}], "bookings": [{"id": 1, "user_id": 1}]},
            foreign_keys={"bookings": {"user_id": "users"}},
        )

    Attributes:
        foreign_keys: Map of entity -> {column: referenced entity}. Checked
                      against the referenced entity's unique key at commit.
        available: Set to False to simulate an unreachable store.
    """

    def __init__(
        self,
        data: dict[str, list[Row]] | None = None,
        foreign_keys: dict[str, dict[str, str]] | None = None,
        unique_key: str | None = "id",
    ) -> None:
        self._tables: dict[str, list[Row]] = copy.deepcopy(data) if data else {}
        self.foreign_keys = foreign_keys or {}
        self.unique_key = unique_key
        self.available = True
        # Coarse write lock: readers and the restore apply phase never interleave
        self._lock = threading.RLock()

    def _require_available(self) -> None:
        if not self.available:
            raise ExtractionError("Memory store is unavailable")

    def connect(self) -> None:
        self._require_available()

    def snapshot(
        self,
        entities: list[str],
        deadline: Deadline | None = None,
    ) -> dict[str, list[Row]]:
        self._require_available()
        with self._lock:
            result = {}
            for entity in entities:
                if deadline is not None:
                    deadline.check("extraction")
                result[entity] = copy.deepcopy(self._tables.get(entity, []))
            return result

    def changed_since(
        self,
        entity: str,
        since: datetime,
        deadline: Deadline | None = None,
    ) -> list[Row]:
        return select_changed(self.snapshot([entity], deadline)[entity], since)

    @contextmanager
    def transaction(
        self,
        deadline: Deadline | None = None,
    ) -> Generator[StoreTransaction, None, None]:
        self._require_available()
        with self._lock:
            txn = _MemoryTransaction(copy.deepcopy(self._tables), self.unique_key, deadline)
            yield txn
            self._check_foreign_keys(txn.tables)
            self._tables = txn.tables

    def _check_foreign_keys(self, tables: dict[str, list[Row]]) -> None:
        """
        Raises:
            RestoreTransactionError: If any row references a missing parent.
        """
        key = self.unique_key
        if not key:
            return
        for entity, references in self.foreign_keys.items():
            for column, target in references.items():
                target_ids = {row.get(key) for row in tables.get(target, [])}
                for row in tables.get(entity, []):
                    value = row.get(column)
                    if value is not None and value not in target_ids:
                        raise RestoreTransactionError(
                            f"{column}={value!r} references missing {target}",
                            entity,
                        )

    def count(self, entity: str) -> int:
        self._require_available()
        with self._lock:
            return len(self._tables.get(entity, []))

    def entities(self) -> list[str]:
        with self._lock:
            return list(self._tables)
