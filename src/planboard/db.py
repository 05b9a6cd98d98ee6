from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import aiosqlite

from .repositories import (
    ENTITIES,
    POSITIONS,
    RELATIONSHIPS,
    TABLE_KEYS,
    Storage,
    Table,
)

logger = logging.getLogger(__name__)

_FIELD_RE = re.compile(r"^[a-z_][a-z0-9_]*$")

# table -> list of (index suffix, json paths)
_INDEXES: Dict[str, List[Tuple[str, Tuple[str, ...]]]] = {
    ENTITIES: [("type", ("type",))],
    POSITIONS: [
        ("entity", ("entity_id",)),
        ("context", ("context_kind", "context_key")),
    ],
    RELATIONSHIPS: [
        ("entity", ("entity_id",)),
        ("related", ("related_id", "relationship_type")),
    ],
}

_active_connection: ContextVar[Optional["SQLiteStorage"]] = ContextVar("planboard_sqlite_tx", default=None)


def _json_path(field: str) -> str:
    if not _FIELD_RE.match(field):
        raise ValueError(f"Invalid field name: {field!r}")
    return f"json_extract(data, '$.{field}')"


class SQLiteTable(Table):
    """
    One SQLite table per document table: (key TEXT PRIMARY KEY, data TEXT JSON).
    Filters are evaluated with json_extract; hot paths have expression indexes.
    """

    def __init__(self, storage: "SQLiteStorage", name: str, key_field: str) -> None:
        super().__init__(name, key_field)
        self._storage = storage

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        async with self._storage.conn.execute(f"SELECT data FROM {self.name} WHERE key = ?", (key,)) as cur:
            row = await cur.fetchone()
        return json.loads(row["data"]) if row else None

    async def put(self, record: Dict[str, Any]) -> None:
        key = self.key_of(record)
        await self._storage.write(
            f"""
            INSERT INTO {self.name} (key, data) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET data = excluded.data
            """,
            (key, json.dumps(record, sort_keys=True)),
        )

    async def delete(self, key: str) -> bool:
        cur = await self._storage.write(f"DELETE FROM {self.name} WHERE key = ?", (key,))
        return cur.rowcount > 0

    async def query(self, **filters: Any) -> List[Dict[str, Any]]:
        clauses = []
        params: list = []
        for name, value in filters.items():
            if value is None:
                clauses.append(f"{_json_path(name)} IS NULL")
            else:
                clauses.append(f"{_json_path(name)} = ?")
                params.append(value)
        where_sql = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        async with self._storage.conn.execute(
            f"SELECT data FROM {self.name} {where_sql} ORDER BY rowid", params
        ) as cur:
            rows = await cur.fetchall()
        return [json.loads(r["data"]) for r in rows]

    async def all(self) -> List[Dict[str, Any]]:
        return await self.query()

    async def clear(self) -> None:
        await self._storage.write(f"DELETE FROM {self.name}", ())


class SQLiteStorage(Storage):
    """
    aiosqlite-backed storage on a single connection.

    A single connection carries one transaction at a time, so transactions
    (and standalone writes, which run as implicit transactions) are
    serialized by an asyncio lock.
    """

    def __init__(self, db_path: str) -> None:
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        self._db_path = db_path
        self._conn: Optional[aiosqlite.Connection] = None
        self._tx_lock = asyncio.Lock()
        self._tables = {name: SQLiteTable(self, name, key) for name, key in TABLE_KEYS.items()}

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("SQLiteStorage is not open")
        return self._conn

    def table(self, name: str) -> Table:
        return self._tables[name]

    async def open(self) -> None:
        if self._conn is not None:
            return
        self._conn = await aiosqlite.connect(self._db_path, isolation_level=None)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode = WAL")
        for name in TABLE_KEYS:
            await self._conn.execute(
                f"CREATE TABLE IF NOT EXISTS {name} (key TEXT PRIMARY KEY, data TEXT NOT NULL)"
            )
            for suffix, fields in _INDEXES.get(name, []):
                columns = ", ".join(_json_path(f) for f in fields)
                await self._conn.execute(
                    f"CREATE INDEX IF NOT EXISTS idx_{name}_{suffix} ON {name}({columns})"
                )
        logger.info("Opened SQLite storage at %s", self._db_path)

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if _active_connection.get() is self:
            yield
            return

        async with self._tx_lock:
            token = _active_connection.set(self)
            await self.conn.execute("BEGIN IMMEDIATE")
            try:
                yield
            except BaseException:
                await self.conn.execute("ROLLBACK")
                raise
            else:
                await self.conn.execute("COMMIT")
            finally:
                _active_connection.reset(token)

    async def write(self, sql: str, params) -> aiosqlite.Cursor:
        """Execute a write, joining the current transaction or opening one."""
        if _active_connection.get() is self:
            return await self.conn.execute(sql, params)
        async with self.transaction():
            return await self.conn.execute(sql, params)
