from __future__ import annotations

import copy
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from threading import RLock
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from .settings import Settings, get_settings

ENTITIES = "entities"
POSITIONS = "entity_positions"
BOARDS = "boards"
WEEKLY_PLANS = "weekly_plans"
RELATIONSHIPS = "entity_relationships"
COLLECTIONS = "collections"
METADATA = "metadata"

# table name -> primary key field of its documents
TABLE_KEYS: Dict[str, str] = {
    ENTITIES: "id",
    POSITIONS: "id",
    BOARDS: "id",
    WEEKLY_PLANS: "week_key",
    RELATIONSHIPS: "id",
    COLLECTIONS: "id",
    METADATA: "key",
}

_MISSING = object()


# PUBLIC_INTERFACE
class Table(ABC):
    """Async key-value table of JSON documents keyed by `key_field`."""

    def __init__(self, name: str, key_field: str) -> None:
        self.name = name
        self.key_field = key_field

    def key_of(self, record: Dict[str, Any]) -> str:
        key = record.get(self.key_field)
        if key is None or key == "":
            raise ValueError(f"{self.name} record is missing its key field '{self.key_field}'")
        return str(key)

    @abstractmethod
    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Return a copy of the document stored under key, or None."""

    @abstractmethod
    async def put(self, record: Dict[str, Any]) -> None:
        """Insert or replace a document. Replacing keeps its position in `all()`."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a document. Return True if it existed."""

    @abstractmethod
    async def query(self, **filters: Any) -> List[Dict[str, Any]]:
        """Return documents whose top-level fields equal every filter value, in insertion order."""

    @abstractmethod
    async def all(self) -> List[Dict[str, Any]]:
        """Return every document in insertion order."""

    @abstractmethod
    async def clear(self) -> None:
        """Remove every document."""


# PUBLIC_INTERFACE
class Storage(ABC):
    """
    Abstract storage backend: a fixed set of named tables plus transactions.

    `transaction()` is reentrant within one task: nested blocks join the
    outermost one, and only the outermost block commits or rolls back.
    """

    @abstractmethod
    def table(self, name: str) -> Table:
        """Return the table registered under name."""

    @abstractmethod
    def transaction(self):
        """Async context manager grouping writes into one atomic unit."""

    async def open(self) -> None:
        """Prepare the backend (create schema, open connections)."""

    async def close(self) -> None:
        """Release backend resources."""


@dataclass
class _Journal:
    storage: "InMemoryStorage"
    undo: List[Tuple[str, str, Any]] = field(default_factory=list)


_active_journal: ContextVar[Optional[_Journal]] = ContextVar("planboard_memory_journal", default=None)


class InMemoryTable(Table):
    """
    Thread-safe in-memory table suitable for testing and default runtime.
    """

    def __init__(self, storage: "InMemoryStorage", name: str, key_field: str) -> None:
        super().__init__(name, key_field)
        self._storage = storage
        self._lock = RLock()
        self._items: Dict[str, Dict[str, Any]] = {}

    def _record_undo(self, key: str) -> None:
        journal = _active_journal.get()
        if journal is None or journal.storage is not self._storage:
            return
        previous = self._items.get(key, _MISSING)
        if previous is not _MISSING:
            previous = copy.deepcopy(previous)
        journal.undo.append((self.name, key, previous))

    def _restore(self, key: str, previous: Any) -> None:
        with self._lock:
            if previous is _MISSING:
                self._items.pop(key, None)
            else:
                self._items[key] = previous

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            item = self._items.get(key)
            return None if item is None else copy.deepcopy(item)

    async def put(self, record: Dict[str, Any]) -> None:
        key = self.key_of(record)
        with self._lock:
            self._record_undo(key)
            self._items[key] = copy.deepcopy(record)

    async def delete(self, key: str) -> bool:
        with self._lock:
            if key not in self._items:
                return False
            self._record_undo(key)
            del self._items[key]
            return True

    async def query(self, **filters: Any) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                copy.deepcopy(item)
                for item in self._items.values()
                if all(item.get(name) == value for name, value in filters.items())
            ]

    async def all(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(item) for item in self._items.values()]

    async def clear(self) -> None:
        with self._lock:
            for key in list(self._items):
                self._record_undo(key)
            self._items.clear()


class InMemoryStorage(Storage):
    """
    Process-local storage. Transactions keep an undo journal of every write
    and replay it backwards on failure.
    """

    def __init__(self) -> None:
        self._tables = {name: InMemoryTable(self, name, key) for name, key in TABLE_KEYS.items()}

    def table(self, name: str) -> Table:
        return self._tables[name]

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        current = _active_journal.get()
        if current is not None and current.storage is self:
            yield
            return

        journal = _Journal(storage=self)
        token = _active_journal.set(journal)
        try:
            yield
        except BaseException:
            for table_name, key, previous in reversed(journal.undo):
                self._tables[table_name]._restore(key, previous)
            raise
        finally:
            _active_journal.reset(token)


# PUBLIC_INTERFACE
def get_storage(settings: Optional[Settings] = None) -> Storage:
    """
    Factory to return the configured storage backend based on settings.
    - memory: InMemoryStorage
    - sqlite: SQLiteStorage (aiosqlite)
    """
    settings = settings or get_settings()
    if settings.persistence_backend == "sqlite":
        from .db import SQLiteStorage

        return SQLiteStorage(settings.sqlite_db_path)
    return InMemoryStorage()
