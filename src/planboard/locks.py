"""
Per-key asyncio locks used to serialize engine operations.

Keys are namespaced strings built with `entity_key`, `board_key` and
`week_key`. Every holder acquires entity keys before context keys and each
group in sorted order, which keeps acquisition order global and rules out
deadlocks between operations that touch overlapping keys.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Iterable, List

_ENTITY_PREFIX = "entity:"


def entity_key(entity_id: str) -> str:
    return f"{_ENTITY_PREFIX}{entity_id}"


def board_key(board_id: str) -> str:
    return f"board:{board_id}"


def week_key(week: str) -> str:
    return f"week:{week}"


def collection_key(collection_id: str) -> str:
    return f"collection:{collection_id}"


def _ordered(keys: Iterable[str]) -> List[str]:
    unique = set(k for k in keys if k)
    entities = sorted(k for k in unique if k.startswith(_ENTITY_PREFIX))
    contexts = sorted(k for k in unique if not k.startswith(_ENTITY_PREFIX))
    return entities + contexts


class KeyedLocks:
    """Refcounted map of asyncio locks; unused locks are dropped."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    def _checkout(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._waiters[key] = self._waiters.get(key, 0) + 1
        return lock

    def _checkin(self, key: str) -> None:
        remaining = self._waiters[key] - 1
        if remaining:
            self._waiters[key] = remaining
        else:
            del self._waiters[key]
            del self._locks[key]

    def is_held(self, key: str) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())

    @asynccontextmanager
    async def hold(self, *keys: str) -> AsyncIterator[None]:
        """Acquire every key in global order; release in reverse."""
        acquired: List[str] = []
        try:
            for key in _ordered(keys):
                lock = self._checkout(key)
                try:
                    await lock.acquire()
                except BaseException:
                    self._checkin(key)
                    raise
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self._locks[key].release()
                self._checkin(key)
