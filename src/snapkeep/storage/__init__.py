"""
Data store access for snapkeep.

The backup core only talks to the application's database through the Store
interface. Two implementations are provided:

    - SQLiteStore: a SQLite database file (``sqlite:///path/to/app.db``)
    - MemoryStore: an in-process store for tests and embedding (``memory://``)

Usage:
    from snapkeep.storage import open_store

    store = open_store("sqlite:///data/app.db")
    rows = store.snapshot(["users", "bookings"])
    with store.transaction() as txn:
        txn.clear("bookings")
        txn.insert("bookings", rows["bookings"])
"""

from snapkeep.storage.base import (
    Row,
    Store,
    StoreTransaction,
    open_store,
    parse_timestamp,
    select_changed,
)
from snapkeep.storage.memory_store import MemoryStore
from snapkeep.storage.sqlite_store import SQLiteStore

__all__ = [
    # Interface
    "Store",
    "StoreTransaction",
    "Row",
    "open_store",
    # Implementations
    "SQLiteStore",
    "MemoryStore",
    # Helpers
    "parse_timestamp",
    "select_changed",
]
