"""
Position/Context Index: authoritative record of where every entity lives.

One membership record per (entity, context kind, context key, placement).
Record ids are derived from those four values, so adding an existing
membership is idempotent. Only the synchronization engine writes here.
"""
from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .errors import UnsupportedContext
from .models import MEMBERSHIP_KINDS, ContextKind, Membership
from .repositories import POSITIONS, Storage

logger = logging.getLogger(__name__)


def coerce_membership_kind(value: Any) -> ContextKind:
    try:
        kind = ContextKind(value)
    except ValueError:
        raise UnsupportedContext(value) from None
    if kind not in MEMBERSHIP_KINDS:
        raise UnsupportedContext(value)
    return kind


def normalize_placement(kind: ContextKind, placement: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    placement = placement or {}
    if kind is ContextKind.BOARD:
        return {"row_id": str(placement["row_id"]), "column_key": str(placement["column_key"])}
    if kind is ContextKind.WEEKLY:
        return {"day": placement.get("day")}
    return {}


def membership_id(entity_id: str, kind: ContextKind, context_key: str, placement: Mapping[str, Any]) -> str:
    parts = [kind.value, context_key, entity_id]
    if kind is ContextKind.BOARD:
        parts += [placement["row_id"], placement["column_key"]]
    elif kind is ContextKind.WEEKLY:
        parts.append(placement.get("day") or "")
    return "|".join(parts)


class PositionIndex:
    """Membership table queries indexed by entity and by context instance."""

    def __init__(self, storage: Storage) -> None:
        self._table = storage.table(POSITIONS)

    async def add_membership(
        self,
        entity_id: str,
        context_kind: Any,
        context_key: str,
        placement: Optional[Mapping[str, Any]] = None,
        added_at: Optional[str] = None,
    ) -> Membership:
        from .entity_store import utc_now

        kind = coerce_membership_kind(context_kind)
        normalized = normalize_placement(kind, placement)
        record_id = membership_id(entity_id, kind, context_key, normalized)
        existing = await self._table.get(record_id)
        if existing is not None:
            return existing  # type: ignore[return-value]
        record: Dict[str, Any] = {
            "id": record_id,
            "entity_id": entity_id,
            "context_kind": kind.value,
            "context_key": context_key,
            "placement": normalized,
            "added_at": added_at or utc_now(),
        }
        await self._table.put(record)
        logger.debug("Added membership %s", record_id)
        return record  # type: ignore[return-value]

    async def remove_membership(
        self,
        entity_id: str,
        context_kind: Any,
        context_key: str,
        placement: Optional[Mapping[str, Any]] = None,
    ) -> int:
        """
        Remove one membership, or every membership of the entity in the
        context instance when placement is omitted. Returns the count removed.
        """
        kind = coerce_membership_kind(context_kind)
        if placement is not None:
            record_id = membership_id(entity_id, kind, context_key, normalize_placement(kind, placement))
            return 1 if await self._table.delete(record_id) else 0

        removed = 0
        for record in await self._table.query(entity_id=entity_id, context_kind=kind.value, context_key=context_key):
            if await self._table.delete(record["id"]):
                removed += 1
        return removed

    async def delete_records(self, records: Iterable[Mapping[str, Any]]) -> int:
        removed = 0
        for record in records:
            if await self._table.delete(record["id"]):
                removed += 1
        return removed

    async def memberships_in(self, context_kind: Any, context_key: str) -> List[Membership]:
        kind = coerce_membership_kind(context_kind)
        return await self._table.query(context_kind=kind.value, context_key=context_key)  # type: ignore[return-value]

    async def list_members(self, context_kind: Any, context_key: str) -> List[str]:
        """Entity ids in the context instance, first-added first, without duplicates."""
        seen: Dict[str, None] = {}
        for record in await self.memberships_in(context_kind, context_key):
            seen.setdefault(record["entity_id"], None)
        return list(seen)

    async def list_contexts_for(self, entity_id: str) -> List[Membership]:
        return await self._table.query(entity_id=entity_id)  # type: ignore[return-value]

    async def all(self) -> List[Membership]:
        return await self._table.all()  # type: ignore[return-value]


def cross_context_indicator(
    memberships: Iterable[Mapping[str, Any]],
    current_kind: Optional[Any] = None,
    current_key: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Read-only aggregation behind the "also on 2 other boards" badge.

    Counts distinct context instances per kind, excluding the instance the
    entity is currently rendered in.
    """
    current_kind_value = ContextKind(current_kind).value if current_kind is not None else None
    instances = {(m["context_kind"], m["context_key"]) for m in memberships}
    if current_kind_value is not None:
        instances.discard((current_kind_value, current_key))
    counts = Counter(kind for kind, _ in instances)
    return {
        "counts": {kind.value: counts.get(kind.value, 0) for kind in MEMBERSHIP_KINDS},
        "total": sum(counts.values()),
    }
