"""
One-way migration from the legacy embedded-card format.

Legacy data is one camelCase document:

    {"boards": {id: {name, columns, rows: [{id, name, cards: {col: [card | id]}}]}},
     "weeklyPlans": {weekKey: {goal, items: [...], reflection: {...}}},
     "entities": {id: {...}}}

Cards embedded in board cells and weekly items without an `entityId` become
entities. Every placement is written through the SyncEngine, so the result
follows the same rules as data created through the API. Legacy
weekly "card" items are resolved to the entity their card became; they are
not kept as a context of their own.
"""
from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from .errors import PlanboardError
from .models import EntityType
from .sync_engine import REFLECTION_FIELDS, SyncEngine

logger = logging.getLogger(__name__)

_CAMEL_RE = re.compile(r"(?<=[a-z0-9])([A-Z])")

# never copied from legacy records; rebuilt through engine operations
_SKIPPED_FIELDS = {"id", "type", "created_at", "updated_at", "subtasks", "parent_entity_id", "people", "entity_id"}

_PROJECT_STATUSES = {"planning", "active", "on-hold", "completed"}

_TYPE_ALIASES = {
    "task": EntityType.TASK,
    "todo": EntityType.TASK,
    "note": EntityType.NOTE,
    "checklist": EntityType.CHECKLIST,
    "project": EntityType.PROJECT,
    "person": EntityType.PERSON,
}

# standalone legacy weekly items; tasks were stored as plain notes
_WEEKLY_ITEM_TYPES = {
    "note": EntityType.NOTE,
    "task": EntityType.NOTE,
    "checklist": EntityType.CHECKLIST,
    "project": EntityType.PROJECT,
}


@dataclass
class MigrationReport:
    entities_created: int = 0
    cards_converted: int = 0
    weekly_items_converted: int = 0
    boards_migrated: int = 0
    weeks_migrated: int = 0
    placements: int = 0
    id_map: Dict[str, str] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def snake_case(name: str) -> str:
    return _CAMEL_RE.sub(r"_\1", name).lower()


def determine_entity_type(card: Mapping[str, Any]) -> EntityType:
    """Explicit type first, then subtasks -> task, items -> checklist, task fields -> task, else note."""
    explicit = card.get("type")
    if isinstance(explicit, str) and explicit.lower() in _TYPE_ALIASES:
        return _TYPE_ALIASES[explicit.lower()]
    if card.get("subtasks"):
        return EntityType.TASK
    if isinstance(card.get("items"), list):
        return EntityType.CHECKLIST
    if card.get("priority") or card.get("dueDate") or card.get("assignee"):
        return EntityType.TASK
    return EntityType.NOTE


def convert_card(card: Mapping[str, Any]) -> Dict[str, Any]:
    """Legacy camelCase card -> snake_case entity data."""
    data: Dict[str, Any] = {}
    for key, value in card.items():
        name = snake_case(key)
        if name in _SKIPPED_FIELDS or value is None:
            continue
        data[name] = value
    data["title"] = card.get("title") or card.get("name") or "Untitled"
    data["content"] = card.get("description") or card.get("content") or ""
    data["completed"] = bool(card.get("completed", False))
    data.pop("description", None)
    if data.get("status") not in _PROJECT_STATUSES:
        data.pop("status", None)
    if isinstance(data.get("items"), list):
        data["items"] = [
            {"text": i.get("text") or i.get("title") or "Item", "completed": bool(i.get("completed"))}
            if isinstance(i, Mapping)
            else str(i)
            for i in data["items"]
        ]
    return data


class LegacyMigrator:
    def __init__(self, engine: SyncEngine) -> None:
        self.engine = engine
        self.report = MigrationReport()
        # legacy card/entity id -> new entity id
        self.id_map = self.report.id_map

    async def run(self, app_data: Mapping[str, Any]) -> MigrationReport:
        for legacy_id, record in (app_data.get("entities") or {}).items():
            await self._create(record, legacy_id)
        for legacy_id, record in (app_data.get("entities") or {}).items():
            await self._link_family(record, legacy_id)
        for board_id, board in (app_data.get("boards") or {}).items():
            await self._migrate_board(board_id, board)
        for week, plan in (app_data.get("weeklyPlans") or {}).items():
            await self._migrate_week(week, plan)
        logger.info(
            "Legacy migration: %d entities, %d cards, %d weekly items, %d errors",
            self.report.entities_created,
            self.report.cards_converted,
            self.report.weekly_items_converted,
            len(self.report.errors),
        )
        return self.report

    def _error(self, message: str) -> None:
        logger.warning("Migration: %s", message)
        self.report.errors.append(message)

    async def _create(self, card: Mapping[str, Any], legacy_id: Optional[str] = None) -> Optional[str]:
        try:
            entity_type = determine_entity_type(card)
            entity = await self.engine.create_entity(entity_type, convert_card(card))
        except PlanboardError as exc:
            self._error(f"could not convert {legacy_id or card.get('title') or 'card'}: {exc}")
            return None
        self.report.entities_created += 1
        if legacy_id:
            self.id_map[str(legacy_id)] = entity["id"]
        if card.get("id"):
            self.id_map.setdefault(str(card["id"]), entity["id"])
        await self._embedded_subtasks(card, entity["id"])
        return entity["id"]

    async def _embedded_subtasks(self, card: Mapping[str, Any], parent_id: str) -> None:
        for sub in card.get("subtasks") or []:
            if not isinstance(sub, Mapping):
                continue
            data = convert_card({"title": sub.get("text") or sub.get("title"), **sub})
            try:
                child = await self.engine.create_subtask(parent_id, data)
            except PlanboardError as exc:
                self._error(f"could not convert subtask of {parent_id}: {exc}")
                continue
            self.report.entities_created += 1
            if sub.get("id"):
                self.id_map.setdefault(str(sub["id"]), child["id"])

    async def _link_family(self, record: Mapping[str, Any], legacy_id: str) -> None:
        parent_id = self.id_map.get(str(legacy_id))
        if parent_id is None:
            return
        for child in record.get("subtasks") or []:
            if isinstance(child, Mapping):
                continue
            child_id = self.id_map.get(str(child))
            if child_id is None:
                self._error(f"subtask {child} of {legacy_id} does not exist")
                continue
            try:
                await self.engine.add_subtask(parent_id, child_id)
            except PlanboardError as exc:
                self._error(f"could not link subtask {child} of {legacy_id}: {exc}")

    def _resolve(self, ref: Any) -> Optional[str]:
        if isinstance(ref, Mapping):
            ref = ref.get("entityId") or ref.get("entity_id")
        if ref is None:
            return None
        return self.id_map.get(str(ref), str(ref))

    async def _migrate_board(self, board_id: str, legacy: Mapping[str, Any]) -> None:
        rows = legacy.get("rows") or []
        columns = legacy.get("columns") or None
        if columns is None:
            keys: Dict[str, None] = {}
            for row in rows:
                keys.update(dict.fromkeys((row.get("cards") or {}).keys()))
            columns = [{"key": k, "name": k} for k in keys] or None
        try:
            board = await self.engine.create_board(
                legacy.get("name") or board_id,
                columns=columns,
                rows=[{"id": r.get("id"), "name": r.get("name") or r.get("id") or "Row"} for r in rows] or None,
                board_id=legacy.get("id") or board_id,
            )
        except PlanboardError as exc:
            self._error(f"board {board_id}: {exc}")
            return
        self.report.boards_migrated += 1

        for row, new_row in zip(rows, board["rows"]):
            for column_key, cards in (row.get("cards") or {}).items():
                for card in cards or []:
                    await self._place_card(board["id"], new_row["id"], column_key, card)

    async def _place_card(self, board_id: str, row_id: str, column_key: str, card: Any) -> None:
        if isinstance(card, Mapping) and not (card.get("entityId") or card.get("entity_id")):
            entity_id = await self._create(card)
            if entity_id is None:
                return
            self.report.cards_converted += 1
        else:
            entity_id = self._resolve(card)
        if entity_id is None:
            self._error(f"unresolvable card in {board_id}/{row_id}/{column_key}")
            return
        try:
            await self.engine.place_entity_in_board(entity_id, board_id, row_id, column_key)
        except PlanboardError as exc:
            self._error(f"placing {entity_id} on {board_id}: {exc}")
            return
        self.report.placements += 1

    async def _migrate_week(self, week: str, legacy: Mapping[str, Any]) -> None:
        reflection = {
            snake_case(k): v for k, v in (legacy.get("reflection") or {}).items() if snake_case(k) in REFLECTION_FIELDS
        }
        try:
            await self.engine.update_weekly_plan(week, goal=legacy.get("goal") or "", reflection=reflection)
        except PlanboardError as exc:
            self._error(f"week {week}: {exc}")
            return
        self.report.weeks_migrated += 1

        for item in legacy.get("items") or []:
            entity_id: Optional[str]
            if item.get("entityId") or item.get("entity_id"):
                entity_id = self._resolve(item)
            elif item.get("type") == "card" or item.get("cardId"):
                entity_id = self.id_map.get(str(item.get("cardId")))
                if entity_id is None:
                    self._error(f"weekly card item {item.get('id')} in {week} references an unknown card")
                    continue
            else:
                legacy_type = _WEEKLY_ITEM_TYPES.get(item.get("type"))
                if legacy_type is None:
                    self._error(f"weekly item {item.get('id')} in {week} has unknown type {item.get('type')!r}")
                    continue
                entity_id = await self._create({**item, "type": legacy_type.value})
                if entity_id is None:
                    continue
                self.report.weekly_items_converted += 1
            try:
                await self.engine.place_entity_in_week(entity_id, week, item.get("day"))
            except PlanboardError as exc:
                self._error(f"placing {entity_id} in {week}: {exc}")
                continue
            self.report.placements += 1


# PUBLIC_INTERFACE
async def migrate_legacy(engine: SyncEngine, app_data: Mapping[str, Any]) -> MigrationReport:
    """Convert a legacy appData document; errors are collected, not raised."""
    return await LegacyMigrator(engine).run(app_data)
