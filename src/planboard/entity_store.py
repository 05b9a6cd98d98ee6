"""
Entity Store: persistent table of canonical entity records.

The store only reads and writes the `entities` table (plus the per-type id
counters in `metadata`). Removing an entity and every placement it has is
the synchronization engine's job; `remove` here is the last step of that
procedure and is not meant to be called on its own.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import EntityValidationError, NotFoundError
from .models import PRIORITIES, Entity, EntityType
from .repositories import ENTITIES, METADATA, Storage

logger = logging.getLogger(__name__)

# Fields that never change after creation.
IMMUTABLE_FIELDS = frozenset({"id", "type", "created_at"})

# Fields mirrored by other stores; only the engine's dedicated operations write them.
MANAGED_FIELDS = frozenset({"subtasks", "parent_entity_id", "people", "tags"})

_SORT_FIELDS = {"created_at", "updated_at", "title"}

COLLECTION_FILTERS = frozenset({"type", "completed", "priority", "tags", "people", "search_term"})


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class EntityQuery:
    """
    Query parameters for listing entities.
    """
    limit: int = 50
    offset: int = 0
    type: Optional[EntityType] = None
    completed: Optional[bool] = None
    tag: Optional[str] = None
    search: Optional[str] = None
    sort: str = "-created_at"  # allowed: created_at, updated_at, title, each optionally prefixed with '-'
    priority: Optional[str] = None
    any_tags: Tuple[str, ...] = ()
    any_people: Tuple[str, ...] = ()

    @classmethod
    def from_filters(cls, filters: Mapping[str, Any], limit: int = 50, offset: int = 0) -> "EntityQuery":
        """
        Build a query from a collection's saved filters. All given filters
        must match; `tags` and `people` match when any listed value is present.
        """
        unknown = set(filters) - COLLECTION_FILTERS
        if unknown:
            raise EntityValidationError(f"Unknown collection filters: {', '.join(sorted(unknown))}", field="filters")
        priority = filters.get("priority")
        if priority is not None and priority not in PRIORITIES:
            raise EntityValidationError(f"priority must be one of {', '.join(PRIORITIES)}", field="filters")
        completed = filters.get("completed")
        people = filters.get("people") or ()
        if isinstance(people, str):
            people = (people,)
        return cls(
            limit=limit,
            offset=offset,
            type=coerce_type(filters["type"]) if filters.get("type") else None,
            completed=None if completed is None else bool(completed),
            search=filters.get("search_term") or None,
            sort="title",
            priority=priority,
            any_tags=tuple(normalize_tags(filters.get("tags"))),
            any_people=tuple(people),
        )


def normalize_tag(tag: str) -> str:
    name = (tag or "").strip().lower()
    if not name:
        raise EntityValidationError("tag name must not be empty", field="tags")
    return name


def normalize_tags(tags: Any) -> List[str]:
    if tags is None:
        return []
    if isinstance(tags, str):
        tags = [tags]
    seen: Dict[str, None] = {}
    for tag in tags:
        seen[normalize_tag(tag)] = None
    return list(seen)


def _normalize_items(items: Any) -> List[Dict[str, Any]]:
    normalized = []
    for raw in items or []:
        if isinstance(raw, str):
            raw = {"text": raw}
        text = str(raw.get("text", "")).strip()
        if not text:
            raise EntityValidationError("checklist item text must not be empty", field="items")
        normalized.append(
            {
                "id": str(raw.get("id") or f"item_{uuid.uuid4().hex[:10]}"),
                "text": text,
                "completed": bool(raw.get("completed", False)),
            }
        )
    return normalized


def type_defaults(entity_type: EntityType, data: Mapping[str, Any], now: str) -> Dict[str, Any]:
    """Type-specific fields merged over the common entity fields."""
    if entity_type is EntityType.TASK:
        priority = data.get("priority") or "medium"
        if priority not in PRIORITIES:
            raise EntityValidationError(f"priority must be one of {', '.join(PRIORITIES)}", field="priority")
        return {
            "priority": priority,
            "due_date": data.get("due_date"),
            "estimated_time": data.get("estimated_time"),
            "actual_time": data.get("actual_time"),
            "subtasks": [],
            "parent_entity_id": None,
            "assignee": data.get("assignee"),
            "people": [],
        }
    if entity_type is EntityType.NOTE:
        return {
            "attachments": list(data.get("attachments") or []),
            "is_private": bool(data.get("is_private", False)),
        }
    if entity_type is EntityType.CHECKLIST:
        return {
            "items": _normalize_items(data.get("items")),
            "allow_reordering": data.get("allow_reordering", True) is not False,
            "show_progress": data.get("show_progress", True) is not False,
        }
    if entity_type is EntityType.PROJECT:
        return {
            "status": data.get("status") or "planning",
            "start_date": data.get("start_date"),
            "end_date": data.get("end_date"),
            "budget": data.get("budget"),
            "team": list(data.get("team") or []),
            "milestones": list(data.get("milestones") or []),
            "subtasks": [],
            "parent_entity_id": None,
            "people": [],
        }
    if entity_type is EntityType.PERSON:
        return {
            "name": data.get("name") or data.get("title") or "",
            "email": data.get("email") or "",
            "phone": data.get("phone") or "",
            "company": data.get("company") or "",
            "role": data.get("role") or "",
            "relationship_type": data.get("relationship_type") or "contact",
            "interaction_frequency": data.get("interaction_frequency") or "monthly",
            "last_interaction": data.get("last_interaction") or now,
            "birthday": data.get("birthday"),
            "location": data.get("location") or "",
            "timezone": data.get("timezone") or "",
            "social_links": dict(data.get("social_links") or {}),
            "notes": data.get("notes") or "",
            "first_met": data.get("first_met"),
            # not applicable to people
            "completed": False,
        }
    raise EntityValidationError(f"Unknown entity type: {entity_type}", field="type")


def coerce_type(value: Any) -> EntityType:
    try:
        return EntityType(value)
    except ValueError:
        raise EntityValidationError(f"Unknown entity type: {value!r}", field="type") from None


def _clean_title(value: Any) -> str:
    title = str(value or "").strip()
    if not title:
        raise EntityValidationError("title is required", field="title")
    if len(title) > 200:
        raise EntityValidationError("title length must be between 1 and 200 characters", field="title")
    return title


class EntityStore:
    """CRUD over the `entities` table with per-type id allocation."""

    def __init__(self, storage: Storage) -> None:
        self._table = storage.table(ENTITIES)
        self._meta = storage.table(METADATA)

    async def _allocate_id(self, entity_type: EntityType) -> str:
        counter_key = f"next_id:{entity_type.value}"
        counter = await self._meta.get(counter_key)
        next_id = int(counter["value"]) if counter else 1
        # never hand out an id that is already taken (e.g. after a snapshot import)
        while await self._table.get(f"{entity_type.value}_{next_id}") is not None:
            next_id += 1
        await self._meta.put({"key": counter_key, "value": next_id + 1, "updated_at": utc_now()})
        return f"{entity_type.value}_{next_id}"

    async def create(self, entity_type: Any, data: Mapping[str, Any]) -> Entity:
        entity_type = coerce_type(entity_type)
        raw_title = data.get("title")
        if entity_type is EntityType.PERSON and not raw_title:
            raw_title = data.get("name")
        title = _clean_title(raw_title)

        now = utc_now()
        tags = normalize_tags(data.get("tags"))
        specific = type_defaults(entity_type, data, now)
        entity: Dict[str, Any] = {
            "id": await self._allocate_id(entity_type),
            "type": entity_type.value,
            "title": title,
            "content": data.get("content") or data.get("description") or "",
            "completed": bool(data.get("completed", False)),
            "tags": tags,
            "created_at": now,
            "updated_at": now,
        }
        entity.update(specific)
        if entity_type is EntityType.PERSON:
            entity["name"] = entity["name"] or title
        await self._table.put(entity)
        logger.debug("Created entity %s", entity["id"])
        return entity  # type: ignore[return-value]

    async def find(self, entity_id: str) -> Optional[Entity]:
        return await self._table.get(entity_id)  # type: ignore[return-value]

    async def get(self, entity_id: str) -> Entity:
        entity = await self.find(entity_id)
        if entity is None:
            raise NotFoundError("entity", entity_id)
        return entity

    async def update(self, entity_id: str, fields: Mapping[str, Any]) -> Entity:
        """
        Shallow-merge fields into the entity and refresh updated_at.

        `id`, `type` and `created_at` may be echoed back unchanged but never
        altered. Fields mirrored elsewhere (tags, subtasks, parent, people) are
        rejected; the engine writes them through its dedicated operations.
        """
        current = await self.get(entity_id)
        for name in IMMUTABLE_FIELDS:
            if name in fields and fields[name] != current.get(name):
                raise EntityValidationError(f"{name} cannot be changed", field=name)

        updated: Dict[str, Any] = dict(current)
        for name, value in fields.items():
            if name in IMMUTABLE_FIELDS or name == "updated_at":
                continue
            if name in MANAGED_FIELDS:
                raise EntityValidationError(f"{name} cannot be set directly", field=name)
            if name == "title" or (name == "name" and current["type"] == EntityType.PERSON.value):
                value = _clean_title(value)
            elif name == "items":
                value = _normalize_items(value)
            elif name == "priority" and value not in PRIORITIES:
                raise EntityValidationError(f"priority must be one of {', '.join(PRIORITIES)}", field="priority")
            updated[name] = value

        if current["type"] == EntityType.PERSON.value:
            # name and title stay in sync
            if "name" in fields and "title" not in fields:
                updated["title"] = updated["name"]
            elif "title" in fields and "name" not in fields:
                updated["name"] = updated["title"]
            updated["completed"] = False

        updated["updated_at"] = utc_now()
        await self._table.put(updated)
        return updated  # type: ignore[return-value]

    async def save(self, entity: Entity) -> Entity:
        """Write back a record the engine has already modified."""
        entity = dict(entity)  # type: ignore[assignment]
        entity["updated_at"] = utc_now()
        await self._table.put(entity)  # type: ignore[arg-type]
        return entity

    async def remove(self, entity_id: str) -> bool:
        removed = await self._table.delete(entity_id)
        if removed:
            logger.debug("Removed entity record %s", entity_id)
        return removed

    async def all(self) -> List[Entity]:
        return await self._table.all()  # type: ignore[return-value]

    async def by_type(self, entity_type: EntityType) -> List[Entity]:
        return await self._table.query(type=entity_type.value)  # type: ignore[return-value]

    async def list(self, query: Optional[EntityQuery] = None) -> Tuple[List[Entity], int]:
        q = query or EntityQuery()
        if q.type is not None:
            items: List[Dict[str, Any]] = await self._table.query(type=q.type.value)
        else:
            items = await self._table.all()

        if q.completed is not None:
            items = [e for e in items if bool(e.get("completed")) == q.completed]

        if q.tag:
            tag = normalize_tag(q.tag)
            items = [e for e in items if tag in (e.get("tags") or [])]

        if q.priority:
            items = [e for e in items if e.get("priority") == q.priority]

        if q.any_tags:
            items = [e for e in items if set(q.any_tags) & set(e.get("tags") or [])]

        if q.any_people:
            items = [e for e in items if set(q.any_people) & set(e.get("people") or [])]

        if q.search:
            s = q.search.lower()

            def matches(e: Dict[str, Any]) -> bool:
                return s in (e.get("title") or "").lower() or s in (e.get("content") or "").lower()

            items = [e for e in items if matches(e)]

        total = len(items)

        sort_key = q.sort.strip().lower() if q.sort else "-created_at"
        reverse = sort_key.startswith("-")
        field = sort_key.lstrip("-")
        if field not in _SORT_FIELDS:
            field = "created_at"
        items_sorted = sorted(items, key=lambda e: (e.get(field) or "", e["id"]), reverse=reverse)

        start = max(q.offset, 0)
        end = start + max(q.limit, 0)
        return items_sorted[start:end], total  # type: ignore[return-value]
