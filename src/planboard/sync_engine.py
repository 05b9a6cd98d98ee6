"""
Synchronization engine: the single writer of entities, the position index
and the placement caches.

Every public coroutine is one logical transaction. It takes the per-key
locks of everything it touches (entity first, then boards/weeks/collections),
checks that its targets exist inside those locks, performs all writes in one
storage transaction and emits its events only after that transaction has
committed. A failing check raises before anything is written.
"""
from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple, TypeVar

from . import placement_cache as cache
from .entity_store import EntityQuery, EntityStore, coerce_type, normalize_tag, normalize_tags, utc_now
from .errors import EntityValidationError, NotFoundError, PartialCascadeFailure, PlanboardError, UnsupportedContext
from .events import ENTITY_CREATED, ENTITY_DELETED, ENTITY_UPDATED, PLACEMENT_CHANGED, EventBus
from .locks import KeyedLocks, board_key, collection_key, entity_key, week_key
from .models import Board, Collection, ContextKind, Entity, EntityType, Membership, WeeklyItem, WeeklyPlan
from .placement_cache import BoardCache, WeeklyCache
from .position_index import PositionIndex, cross_context_indicator
from .renderer import render
from .repositories import COLLECTIONS, RELATIONSHIPS, Storage
from .settings import Settings, get_settings
from .subtasks import calculate_task_progress, can_be_subtask, can_have_subtasks

logger = logging.getLogger(__name__)

T = TypeVar("T")

_pending_events: ContextVar[Optional[List[Tuple[str, Dict[str, Any]]]]] = ContextVar(
    "planboard_pending_events", default=None
)

_MISSING = object()

REFLECTION_FIELDS = ("wins", "challenges", "learnings", "next_week_focus")


def relationship_id(kind: ContextKind, entity_id: str, related_id: str) -> str:
    return f"{kind.value}|{entity_id}|{related_id}"


class SyncEngine:
    """
    Owns the stores and keeps them consistent.

    Create one per storage backend and share it; it holds the locks that
    serialize operations on the same entity, board, week or collection.
    """

    def __init__(
        self,
        storage: Storage,
        settings: Optional[Settings] = None,
        events: Optional[EventBus] = None,
        locks: Optional[KeyedLocks] = None,
    ) -> None:
        self.storage = storage
        self.settings = settings or get_settings()
        self.events = events or EventBus()
        self.locks = locks or KeyedLocks()
        self.entities = EntityStore(storage)
        self.index = PositionIndex(storage)
        self.boards = BoardCache(storage)
        self.weeks = WeeklyCache(storage)
        self._relationships = storage.table(RELATIONSHIPS)
        self._collections = storage.table(COLLECTIONS)

    # ------------------------------------------------------------------
    # plumbing
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _write(self, *keys: str) -> AsyncIterator[None]:
        pending: List[Tuple[str, Dict[str, Any]]] = []
        token = _pending_events.set(pending)
        try:
            async with self.locks.hold(*keys):
                async with self.storage.transaction():
                    yield
        except NotFoundError as exc:
            logger.warning("Rejected: %s", exc)
            raise
        except PartialCascadeFailure:
            logger.error("Cascading delete rolled back", exc_info=True)
            raise
        finally:
            _pending_events.reset(token)
        for event_type, payload in pending:
            self.events.emit(event_type, **payload)

    async def _planned(self, plan: Callable[[], Awaitable[Iterable[str]]], body: Callable[[], Awaitable[T]]) -> T:
        """
        Run body under the locks returned by plan. The plan is read before
        locking and again once the locks are held; if it grew in between,
        the wider set is locked and the check repeated.
        """
        keys: Set[str] = set(await plan())
        while True:
            async with self._write(*keys):
                needed = set(await plan())
                if needed <= keys:
                    return await body()
            logger.debug("Lock set changed while waiting; retrying with %d keys", len(keys | needed))
            keys |= needed

    @staticmethod
    def _emit_later(event_type: str, **payload: Any) -> None:
        pending = _pending_events.get()
        if pending is not None:
            pending.append((event_type, payload))

    def _placement_changed(self, entity_id: str, kind: ContextKind, context_key: str, action: str, **extra: Any) -> None:
        self._emit_later(
            PLACEMENT_CHANGED,
            entity_id=entity_id,
            context_kind=kind.value,
            context_key=context_key,
            action=action,
            **extra,
        )

    async def _link(self, kind: ContextKind, entity_id: str, related_id: str, now: str, **extra: Any) -> Membership:
        """Relationship row plus the matching index membership."""
        rel_id = relationship_id(kind, entity_id, related_id)
        existing = await self._relationships.get(rel_id)
        row = {
            "id": rel_id,
            "entity_id": entity_id,
            "related_id": related_id,
            "relationship_type": kind.value,
            "created_at": existing["created_at"] if existing else now,
        }
        row.update(extra)
        await self._relationships.put(row)
        return await self.index.add_membership(entity_id, kind, related_id, added_at=now)

    async def _unlink(self, kind: ContextKind, entity_id: str, related_id: str) -> bool:
        removed_row = await self._relationships.delete(relationship_id(kind, entity_id, related_id))
        removed_members = await self.index.remove_membership(entity_id, kind, related_id)
        return removed_row or removed_members > 0

    # ------------------------------------------------------------------
    # entities
    # ------------------------------------------------------------------

    async def get_entity(self, entity_id: str) -> Entity:
        return await self.entities.get(entity_id)

    async def list_entities(self, query: Optional[EntityQuery] = None) -> Tuple[List[Entity], int]:
        return await self.entities.list(query)

    async def create_entity(self, entity_type: Any, data: Mapping[str, Any]) -> Entity:
        """Create an entity; initial tags are applied as tag memberships."""
        entity_type = coerce_type(entity_type)
        tags = normalize_tags(data.get("tags"))
        async with self._write(f"counter:{entity_type.value}"):
            entity = await self._create_locked(entity_type, data, tags)
        return entity

    async def _create_locked(self, entity_type: EntityType, data: Mapping[str, Any], tags: List[str]) -> Entity:
        entity = await self.entities.create(entity_type, {**data, "tags": []})
        if tags:
            now = entity["created_at"]
            for tag in tags:
                await self._link(ContextKind.TAG, entity["id"], tag, now)
            entity["tags"] = tags
            await self.entities.save(entity)
            entity = await self.entities.get(entity["id"])
        logger.debug("Created %s %s", entity["type"], entity["id"])
        self._emit_later(ENTITY_CREATED, entity_id=entity["id"], entity_type=entity["type"])
        return entity

    async def update_entity(self, entity_id: str, fields: Mapping[str, Any]) -> Entity:
        """
        Shallow-merge content fields. A `tags` value replaces the tag set and
        is applied as individual tag/untag operations.
        """
        fields = dict(fields)
        tags = fields.pop("tags", _MISSING)
        wanted = normalize_tags(tags) if tags is not _MISSING else None

        async with self._write(entity_key(entity_id)):
            entity = await self.entities.get(entity_id)
            if fields:
                entity = await self.entities.update(entity_id, fields)
            if wanted is not None:
                current = list(entity.get("tags") or [])
                for tag in current:
                    if tag not in wanted:
                        await self._untag_locked(entity, tag)
                for tag in wanted:
                    if tag not in current:
                        await self._tag_locked(entity, tag)
                entity = await self.entities.get(entity_id)
            logger.debug("Updated entity %s", entity_id)
            self._emit_later(ENTITY_UPDATED, entity_id=entity_id, fields=sorted(fields) + (["tags"] if wanted is not None else []))
        return entity

    async def toggle_completion(self, entity_id: str) -> Entity:
        """
        Flip `completed`. For a checklist every item is set to the new value;
        the manual toggle overrides item-level state.
        """
        async with self._write(entity_key(entity_id)):
            entity = await self.entities.get(entity_id)
            if entity["type"] == EntityType.PERSON.value:
                raise EntityValidationError("people cannot be completed", field="completed")
            entity["completed"] = not entity.get("completed", False)
            if entity["type"] == EntityType.CHECKLIST.value:
                for item in entity.get("items") or []:
                    item["completed"] = entity["completed"]
            entity = await self.entities.save(entity)
            self._emit_later(ENTITY_UPDATED, entity_id=entity_id, fields=["completed"])
        return entity

    async def delete_entity(self, entity_id: str) -> bool:
        """
        Remove the entity from every context, then remove the record.

        If any placement cleanup fails the whole deletion is rolled back and
        PartialCascadeFailure is raised; the entity and its placements stay.
        """
        await self._planned(
            lambda: self._delete_plan(entity_id),
            lambda: self._delete_locked(entity_id),
        )
        return True

    async def _scan_caches(self, entity_id: str) -> Tuple[List[Board], List[WeeklyPlan]]:
        """Boards and weekly plans whose caches mention entity_id."""
        boards = [b for b in await self.boards.all() if cache.board_triples(b, entity_id)]
        plans = [p for p in await self.weeks.all() if any(i["entity_id"] == entity_id for i in p["items"])]
        return boards, plans

    async def _delete_plan(self, entity_id: str) -> List[str]:
        entity = await self.entities.get(entity_id)
        keys = {entity_key(entity_id)}
        if entity.get("parent_entity_id"):
            keys.add(entity_key(entity["parent_entity_id"]))
        keys.update(entity_key(child) for child in entity.get("subtasks") or [])
        keys.update(entity_key(person) for person in entity.get("people") or [])
        if entity["type"] == EntityType.PERSON.value:
            for rel in await self._relationships.query(related_id=entity_id, relationship_type=ContextKind.PEOPLE.value):
                keys.add(entity_key(rel["entity_id"]))
        for membership in await self.index.list_contexts_for(entity_id):
            keys.add(self._context_lock(membership["context_kind"], membership["context_key"]))
        boards, plans = await self._scan_caches(entity_id)
        keys.update(board_key(b["id"]) for b in boards)
        keys.update(week_key(p["week_key"]) for p in plans)
        return sorted(k for k in keys if k)

    @staticmethod
    def _context_lock(kind: str, context_key: str) -> str:
        if kind == ContextKind.BOARD.value:
            return board_key(context_key)
        if kind == ContextKind.WEEKLY.value:
            return week_key(context_key)
        if kind == ContextKind.COLLECTION.value:
            return collection_key(context_key)
        if kind == ContextKind.PEOPLE.value:
            return entity_key(context_key)
        return ""

    async def _delete_locked(self, entity_id: str, expected_parent: Optional[str] = None) -> None:
        entity = await self.entities.get(entity_id)
        if expected_parent is not None and entity.get("parent_entity_id") != expected_parent:
            raise NotFoundError("subtask", entity_id, f"Entity {entity_id} is not a subtask of {expected_parent}")

        stage = "start"
        try:
            stage = "subtasks"
            await self._detach_family(entity)
            stage = "people"
            if entity["type"] == EntityType.PERSON.value:
                await self._unlink_everyone_from(entity_id)
            stage = "placements"
            await self._cascade_placements(entity_id)
            stage = "entity"
            await self.entities.remove(entity_id)
        except PlanboardError:
            raise
        except Exception as exc:
            raise PartialCascadeFailure(entity_id, stage) from exc

        logger.debug("Deleted entity %s", entity_id)
        self._emit_later(ENTITY_DELETED, entity_id=entity_id, entity_type=entity["type"])

    async def _detach_family(self, entity: Entity) -> None:
        parent_id = entity.get("parent_entity_id")
        if parent_id:
            parent = await self.entities.find(parent_id)
            if parent is not None and entity["id"] in (parent.get("subtasks") or []):
                parent["subtasks"] = [c for c in parent["subtasks"] if c != entity["id"]]
                await self.entities.save(parent)
                self._emit_later(ENTITY_UPDATED, entity_id=parent_id, fields=["subtasks"])
        for child_id in entity.get("subtasks") or []:
            child = await self.entities.find(child_id)
            if child is not None and child.get("parent_entity_id") == entity["id"]:
                child["parent_entity_id"] = None
                await self.entities.save(child)
                self._emit_later(ENTITY_UPDATED, entity_id=child_id, fields=["parent_entity_id"])

    async def _unlink_everyone_from(self, person_id: str) -> None:
        for rel in await self._relationships.query(related_id=person_id, relationship_type=ContextKind.PEOPLE.value):
            linked = await self.entities.find(rel["entity_id"])
            if linked is not None and person_id in (linked.get("people") or []):
                linked["people"] = [p for p in linked["people"] if p != person_id]
                await self.entities.save(linked)
                self._emit_later(ENTITY_UPDATED, entity_id=linked["id"], fields=["people"])
            await self._unlink(ContextKind.PEOPLE, rel["entity_id"], person_id)
            self._placement_changed(rel["entity_id"], ContextKind.PEOPLE, person_id, "removed")

    async def _cascade_placements(self, entity_id: str) -> None:
        memberships = await self.index.list_contexts_for(entity_id)
        board_ids = {m["context_key"] for m in memberships if m["context_kind"] == ContextKind.BOARD.value}
        week_keys = {m["context_key"] for m in memberships if m["context_kind"] == ContextKind.WEEKLY.value}

        stray_boards, stray_plans = await self._scan_caches(entity_id)
        for board in stray_boards:
            if board["id"] not in board_ids:
                logger.warning("Entity %s found in board %s cache without a membership; removing", entity_id, board["id"])
                board_ids.add(board["id"])
        for plan in stray_plans:
            if plan["week_key"] not in week_keys:
                logger.warning("Entity %s found in week %s without a membership; removing", entity_id, plan["week_key"])
                week_keys.add(plan["week_key"])

        now = utc_now()
        for board_id in sorted(board_ids):
            board = await self.boards.find(board_id)
            if board is None:
                continue
            if cache.remove_from_cells(board, entity_id):
                await self.boards.save(board, now)
            self._placement_changed(entity_id, ContextKind.BOARD, board_id, "removed")
        for key in sorted(week_keys):
            plan = await self.weeks.find(key)
            if plan is None:
                continue
            if cache.remove_weekly_items(plan, entity_id):
                await self.weeks.save(plan, now)
            self._placement_changed(entity_id, ContextKind.WEEKLY, key, "removed")

        for rel in await self._relationships.query(entity_id=entity_id):
            await self._relationships.delete(rel["id"])
        await self.index.delete_records(memberships)

    # ------------------------------------------------------------------
    # boards
    # ------------------------------------------------------------------

    async def create_board(
        self,
        name: str,
        columns: Optional[Iterable[Any]] = None,
        rows: Optional[Iterable[Any]] = None,
        board_id: Optional[str] = None,
    ) -> Board:
        board_id = board_id or f"board_{uuid.uuid4().hex[:10]}"
        columns = list(columns) if columns is not None else list(self.settings.default_board_columns)
        rows = list(rows) if rows is not None else [{"id": "default", "name": "Default"}]
        board = cache.new_board(board_id, name, columns, rows, utc_now())
        async with self._write(board_key(board_id)):
            if await self.boards.find(board_id) is not None:
                raise EntityValidationError(f"Board already exists: {board_id}", field="id")
            await self.boards.save(board)
            logger.debug("Created board %s", board_id)
        return board

    async def get_board(self, board_id: str) -> Board:
        return await self.boards.get(board_id)

    async def list_boards(self) -> List[Board]:
        return await self.boards.all()

    async def add_row(self, board_id: str, name: str, row_id: Optional[str] = None) -> Board:
        async with self._write(board_key(board_id)):
            board = await self.boards.get(board_id)
            row = cache.new_row(name, board["columns"], row_id)
            if cache.find_row(board, row["id"]) is not None:
                raise EntityValidationError(f"Row already exists: {row['id']}", field="id")
            board["rows"].append(row)
            await self.boards.save(board, utc_now())
        return board

    async def remove_row(self, board_id: str, row_id: str) -> Board:
        """Remove a row; every entity in it loses that board placement."""
        async with self._write(board_key(board_id)):
            board = await self.boards.get(board_id)
            row = cache.find_row(board, row_id)
            if row is None:
                raise NotFoundError("row", row_id, f"Row not found: {row_id} on board {board_id}")
            for membership in await self.index.memberships_in(ContextKind.BOARD, board_id):
                if membership["placement"].get("row_id") == row_id:
                    await self.index.delete_records([membership])
                    self._placement_changed(membership["entity_id"], ContextKind.BOARD, board_id, "removed")
            board["rows"] = [r for r in board["rows"] if r["id"] != row_id]
            await self.boards.save(board, utc_now())
        return board

    async def delete_board(self, board_id: str) -> bool:
        async with self._write(board_key(board_id)):
            await self.boards.get(board_id)
            memberships = await self.index.memberships_in(ContextKind.BOARD, board_id)
            await self.index.delete_records(memberships)
            await self.boards.delete(board_id)
            for entity_id in {m["entity_id"] for m in memberships}:
                self._placement_changed(entity_id, ContextKind.BOARD, board_id, "removed")
            logger.debug("Deleted board %s (%d placements)", board_id, len(memberships))
        return True

    async def place_entity_in_board(self, entity_id: str, board_id: str, row_id: str, column_key: str) -> Membership:
        """Append the entity to the end of a board cell and record the membership."""
        async with self._write(entity_key(entity_id), board_key(board_id)):
            await self.entities.get(entity_id)
            board = await self.boards.get(board_id)
            if cache.append_to_cell(board, row_id, column_key, entity_id):
                await self.boards.save(board, utc_now())
            membership = await self.index.add_membership(
                entity_id, ContextKind.BOARD, board_id, {"row_id": row_id, "column_key": column_key}
            )
            logger.debug("Placed %s on board %s at %s/%s", entity_id, board_id, row_id, column_key)
            self._placement_changed(entity_id, ContextKind.BOARD, board_id, "added", row_id=row_id, column_key=column_key)
        return membership

    async def remove_entity_from_board(
        self,
        entity_id: str,
        board_id: str,
        row_id: Optional[str] = None,
        column_key: Optional[str] = None,
    ) -> bool:
        """Remove matching cell occurrences and memberships. True if anything was removed."""
        async with self._write(entity_key(entity_id), board_key(board_id)):
            board = await self.boards.get(board_id)
            await self.entities.get(entity_id)
            if row_id is not None and cache.find_row(board, row_id) is None:
                raise NotFoundError("row", row_id, f"Row not found: {row_id} on board {board_id}")
            if column_key is not None and not any(c["key"] == column_key for c in board.get("columns", [])):
                raise NotFoundError("column", column_key, f"Column not found: {column_key} on board {board_id}")
            removed_cells = cache.remove_from_cells(board, entity_id, row_id, column_key)
            stale = [
                m
                for m in await self.index.memberships_in(ContextKind.BOARD, board_id)
                if m["entity_id"] == entity_id
                and (row_id is None or m["placement"].get("row_id") == row_id)
                and (column_key is None or m["placement"].get("column_key") == column_key)
            ]
            removed_records = await self.index.delete_records(stale)
            if removed_cells:
                await self.boards.save(board, utc_now())
            removed = bool(removed_cells or removed_records)
            if removed:
                self._placement_changed(entity_id, ContextKind.BOARD, board_id, "removed")
        return removed

    async def move_entity_in_board(
        self,
        entity_id: str,
        board_id: str,
        from_row: str,
        from_column: str,
        to_row: str,
        to_column: str,
        index: Optional[int] = None,
    ) -> Membership:
        """Move an entity between two cells of one board; cache and index change together."""
        async with self._write(entity_key(entity_id), board_key(board_id)):
            await self.entities.get(entity_id)
            board = await self.boards.get(board_id)
            source = cache.require_cell(board, from_row, from_column)
            cache.require_cell(board, to_row, to_column)
            source_placement = {"row_id": from_row, "column_key": from_column}
            has_record = any(
                m["entity_id"] == entity_id and m["placement"] == source_placement
                for m in await self.index.memberships_in(ContextKind.BOARD, board_id)
            )
            if entity_id not in source and not has_record:
                raise NotFoundError(
                    "entity", entity_id, f"Entity {entity_id} is not in cell {from_row}/{from_column} of board {board_id}"
                )
            await self.index.remove_membership(entity_id, ContextKind.BOARD, board_id, source_placement)
            cache.remove_from_cells(board, entity_id, from_row, from_column)
            cache.insert_into_cell(board, to_row, to_column, entity_id, index)
            await self.boards.save(board, utc_now())
            membership = await self.index.add_membership(
                entity_id, ContextKind.BOARD, board_id, {"row_id": to_row, "column_key": to_column}
            )
            self._placement_changed(
                entity_id, ContextKind.BOARD, board_id, "moved", row_id=to_row, column_key=to_column
            )
        return membership

    async def reorder_within_cell(
        self, board_id: str, row_id: str, column_key: str, entity_id: str, new_index: int
    ) -> List[str]:
        """Reposition within one cell. Ordering lives only in the cache; the index is untouched."""
        async with self._write(entity_key(entity_id), board_key(board_id)):
            board = await self.boards.get(board_id)
            order = cache.reorder_in_cell(board, row_id, column_key, entity_id, new_index)
            await self.boards.save(board, utc_now())
            self._placement_changed(
                entity_id, ContextKind.BOARD, board_id, "reordered", row_id=row_id, column_key=column_key
            )
        return order

    async def rebuild_board_cache(self, board_id: str) -> Dict[str, int]:
        """
        Rebuild a board's cells from the index. Existing order is kept,
        missing members are appended and non-members dropped. Memberships
        pointing at a vanished cell or entity are removed.
        """
        async with self._write(board_key(board_id)):
            board = await self.boards.get(board_id)
            report = {"added": 0, "dropped": 0, "memberships_removed": 0}
            column_keys = [c["key"] for c in board["columns"]]
            wanted: Dict[cache.Cell, List[str]] = {}
            for membership in await self.index.memberships_in(ContextKind.BOARD, board_id):
                placement = membership["placement"]
                cell = (placement.get("row_id"), placement.get("column_key"))
                known_cell = cache.find_row(board, cell[0]) is not None and cell[1] in column_keys
                entity = await self.entities.find(membership["entity_id"])
                if not known_cell or entity is None:
                    logger.warning("Dropping dangling board membership %s", membership["id"])
                    await self.index.delete_records([membership])
                    report["memberships_removed"] += 1
                    continue
                wanted.setdefault(cell, []).append(membership["entity_id"])

            for row in board["rows"]:
                for key in list(row["cards"]):
                    if key not in column_keys:
                        report["dropped"] += len(row["cards"].pop(key))
                for key in column_keys:
                    members = wanted.get((row["id"], key), [])
                    current = row["cards"].get(key, [])
                    rebuilt: List[str] = []
                    for entity_id in current:
                        if entity_id in members and entity_id not in rebuilt:
                            rebuilt.append(entity_id)
                    report["dropped"] += len(current) - len(rebuilt)
                    for entity_id in members:
                        if entity_id not in rebuilt:
                            rebuilt.append(entity_id)
                            report["added"] += 1
                    row["cards"][key] = rebuilt
            await self.boards.save(board, utc_now())
            if report["added"] or report["dropped"] or report["memberships_removed"]:
                logger.warning("Repaired board %s cache: %s", board_id, report)
        return report

    # ------------------------------------------------------------------
    # weekly plans
    # ------------------------------------------------------------------

    async def get_weekly_plan(self, week: str) -> WeeklyPlan:
        """The stored plan, or an empty unsaved one for a week never planned."""
        cache.parse_week_key(week)
        return await self.weeks.get_or_new(week, utc_now())

    async def update_weekly_plan(
        self, week: str, goal: Optional[str] = None, reflection: Optional[Mapping[str, Any]] = None
    ) -> WeeklyPlan:
        cache.parse_week_key(week)
        if reflection is not None:
            unknown = set(reflection) - set(REFLECTION_FIELDS)
            if unknown:
                raise EntityValidationError(f"Unknown reflection fields: {', '.join(sorted(unknown))}", field="reflection")
        async with self._write(week_key(week)):
            now = utc_now()
            plan = await self.weeks.get_or_new(week, now)
            if goal is not None:
                plan["goal"] = goal
            if reflection is not None:
                plan["reflection"].update({k: str(v or "") for k, v in reflection.items()})
            await self.weeks.save(plan, now)
        return plan

    async def place_entity_in_week(self, entity_id: str, week: str, day: Optional[str] = None) -> WeeklyItem:
        """
        Add a wrapper for the entity to the week, creating the plan on first
        use. The same entity on the same day is placed only once.
        """
        cache.parse_week_key(week)
        day = cache.validate_day(day)
        async with self._write(entity_key(entity_id), week_key(week)):
            await self.entities.get(entity_id)
            now = utc_now()
            plan = await self.weeks.get_or_new(week, now)
            item, added = cache.append_weekly_item(plan, entity_id, day, now)
            if added:
                await self.weeks.save(plan, now)
            await self.index.add_membership(entity_id, ContextKind.WEEKLY, week, {"day": day}, added_at=item["added_at"])
            logger.debug("Placed %s in week %s (%s)", entity_id, week, day or "unscheduled")
            self._placement_changed(entity_id, ContextKind.WEEKLY, week, "added", day=day)
        return item

    async def remove_entity_from_week(self, entity_id: str, week: str) -> bool:
        cache.parse_week_key(week)
        async with self._write(entity_key(entity_id), week_key(week)):
            plan = await self.weeks.get(week)
            await self.entities.get(entity_id)
            removed_items = cache.remove_weekly_items(plan, entity_id)
            removed_records = await self.index.remove_membership(entity_id, ContextKind.WEEKLY, week)
            if removed_items:
                await self.weeks.save(plan, utc_now())
            removed = bool(removed_items or removed_records)
            if removed:
                self._placement_changed(entity_id, ContextKind.WEEKLY, week, "removed")
        return removed

    # ------------------------------------------------------------------
    # tags, collections, people
    # ------------------------------------------------------------------

    async def _tag_locked(self, entity: Entity, tag: str) -> bool:
        tags = list(entity.get("tags") or [])
        if tag in tags:
            return False
        now = utc_now()
        await self._link(ContextKind.TAG, entity["id"], tag, now)
        entity["tags"] = tags + [tag]
        entity.update(await self.entities.save(entity))
        self._placement_changed(entity["id"], ContextKind.TAG, tag, "added")
        return True

    async def _untag_locked(self, entity: Entity, tag: str) -> bool:
        tags = list(entity.get("tags") or [])
        unlinked = await self._unlink(ContextKind.TAG, entity["id"], tag)
        if tag not in tags and not unlinked:
            return False
        entity["tags"] = [t for t in tags if t != tag]
        entity.update(await self.entities.save(entity))
        self._placement_changed(entity["id"], ContextKind.TAG, tag, "removed")
        return True

    async def tag_entity(self, entity_id: str, tag: str) -> Entity:
        tag = normalize_tag(tag)
        async with self._write(entity_key(entity_id)):
            entity = await self.entities.get(entity_id)
            if await self._tag_locked(entity, tag):
                self._emit_later(ENTITY_UPDATED, entity_id=entity_id, fields=["tags"])
        return entity

    async def untag_entity(self, entity_id: str, tag: str) -> bool:
        tag = normalize_tag(tag)
        async with self._write(entity_key(entity_id)):
            entity = await self.entities.get(entity_id)
            removed = await self._untag_locked(entity, tag)
            if removed:
                self._emit_later(ENTITY_UPDATED, entity_id=entity_id, fields=["tags"])
        return removed

    async def create_collection(
        self,
        name: str,
        description: str = "",
        filters: Optional[Mapping[str, Any]] = None,
        collection_id: Optional[str] = None,
    ) -> Collection:
        name = str(name or "").strip()
        if not name:
            raise EntityValidationError("collection name must not be empty", field="name")
        EntityQuery.from_filters(filters or {})
        collection_id = collection_id or f"collection_{uuid.uuid4().hex[:10]}"
        collection: Collection = {
            "id": collection_id,
            "name": name,
            "description": description or "",
            "filters": dict(filters or {}),
            "created_at": utc_now(),
        }
        async with self._write(collection_key(collection_id)):
            if await self._collections.get(collection_id) is not None:
                raise EntityValidationError(f"Collection already exists: {collection_id}", field="id")
            await self._collections.put(collection)  # type: ignore[arg-type]
        return collection

    async def get_collection(self, collection_id: str) -> Collection:
        collection = await self._collections.get(collection_id)
        if collection is None:
            raise NotFoundError("collection", collection_id)
        return collection  # type: ignore[return-value]

    async def collection_matches(
        self, collection_id: str, limit: int = 50, offset: int = 0
    ) -> Tuple[List[Entity], int]:
        """Entities matching the collection's saved filters. No filters means no matches."""
        collection = await self.get_collection(collection_id)
        filters = collection.get("filters") or {}
        if not filters:
            return [], 0
        return await self.entities.list(EntityQuery.from_filters(filters, limit=limit, offset=offset))

    async def list_collections(self) -> List[Collection]:
        return await self._collections.all()  # type: ignore[return-value]

    async def delete_collection(self, collection_id: str) -> bool:
        async with self._write(collection_key(collection_id)):
            await self.get_collection(collection_id)
            for membership in await self.index.memberships_in(ContextKind.COLLECTION, collection_id):
                await self._unlink(ContextKind.COLLECTION, membership["entity_id"], collection_id)
                self._placement_changed(membership["entity_id"], ContextKind.COLLECTION, collection_id, "removed")
            await self._collections.delete(collection_id)
        return True

    async def add_to_collection(self, collection_id: str, entity_id: str) -> Membership:
        async with self._write(entity_key(entity_id), collection_key(collection_id)):
            await self.get_collection(collection_id)
            await self.entities.get(entity_id)
            membership = await self._link(ContextKind.COLLECTION, entity_id, collection_id, utc_now())
            self._placement_changed(entity_id, ContextKind.COLLECTION, collection_id, "added")
        return membership

    async def remove_from_collection(self, collection_id: str, entity_id: str) -> bool:
        async with self._write(entity_key(entity_id), collection_key(collection_id)):
            await self.get_collection(collection_id)
            removed = await self._unlink(ContextKind.COLLECTION, entity_id, collection_id)
            if removed:
                self._placement_changed(entity_id, ContextKind.COLLECTION, collection_id, "removed")
        return removed

    async def _get_person(self, person_id: str) -> Entity:
        person = await self.entities.get(person_id)
        if person["type"] != EntityType.PERSON.value:
            raise EntityValidationError(f"{person_id} is not a person", field="person_id")
        return person

    async def link_person(self, entity_id: str, person_id: str, relationship_type: str = "mentions") -> Entity:
        """Link an entity to a person and refresh the person's last interaction."""
        if entity_id == person_id:
            raise EntityValidationError("a person cannot be linked to itself", field="person_id")
        async with self._write(entity_key(entity_id), entity_key(person_id)):
            person = await self._get_person(person_id)
            entity = await self.entities.get(entity_id)
            now = utc_now()
            await self._link(ContextKind.PEOPLE, entity_id, person_id, now, role=relationship_type or "mentions")
            if person_id not in (entity.get("people") or []):
                entity["people"] = list(entity.get("people") or []) + [person_id]
                entity = await self.entities.save(entity)
            person["last_interaction"] = now
            await self.entities.save(person)
            self._placement_changed(entity_id, ContextKind.PEOPLE, person_id, "added")
            self._emit_later(ENTITY_UPDATED, entity_id=entity_id, fields=["people"])
        return entity

    async def unlink_person(self, entity_id: str, person_id: str) -> bool:
        async with self._write(entity_key(entity_id), entity_key(person_id)):
            entity = await self.entities.get(entity_id)
            removed = await self._unlink(ContextKind.PEOPLE, entity_id, person_id)
            if person_id in (entity.get("people") or []):
                entity["people"] = [p for p in entity["people"] if p != person_id]
                await self.entities.save(entity)
                removed = True
            if removed:
                self._placement_changed(entity_id, ContextKind.PEOPLE, person_id, "removed")
                self._emit_later(ENTITY_UPDATED, entity_id=entity_id, fields=["people"])
        return removed

    async def person_timeline(self, person_id: str) -> List[Entity]:
        """Entities linked to a person, most recently linked first."""
        await self._get_person(person_id)
        memberships = await self.index.memberships_in(ContextKind.PEOPLE, person_id)
        timeline: List[Entity] = []
        for membership in sorted(memberships, key=lambda m: (m["added_at"], m["entity_id"]), reverse=True):
            entity = await self.entities.find(membership["entity_id"])
            if entity is not None:
                timeline.append(entity)
        return timeline

    # ------------------------------------------------------------------
    # subtasks
    # ------------------------------------------------------------------

    async def _subtask_plan(self, child_id: str, parent_id: Optional[str]) -> List[str]:
        child = await self.entities.get(child_id)
        keys = [entity_key(child_id)]
        if parent_id:
            keys.append(entity_key(parent_id))
        if child.get("parent_entity_id"):
            keys.append(entity_key(child["parent_entity_id"]))
        return keys

    async def _check_attachable(self, parent: Entity, child: Entity) -> None:
        if not can_have_subtasks(parent):
            raise EntityValidationError(f"{parent['type']} entities cannot have subtasks", field="parent_id")
        if not can_be_subtask(child):
            raise EntityValidationError(f"{child['type']} entities cannot be subtasks", field="child_id")
        if parent["id"] == child["id"]:
            raise EntityValidationError("an entity cannot be its own subtask", field="child_id")
        # walk up from the new parent; meeting the child means a cycle
        seen: Set[str] = set()
        ancestor_id = parent.get("parent_entity_id")
        while ancestor_id and ancestor_id not in seen:
            if ancestor_id == child["id"]:
                raise EntityValidationError("subtask links cannot form a cycle", field="child_id")
            seen.add(ancestor_id)
            ancestor = await self.entities.find(ancestor_id)
            ancestor_id = ancestor.get("parent_entity_id") if ancestor else None

    async def _attach_locked(self, parent_id: Optional[str], child_id: str, index: Optional[int]) -> Entity:
        child = await self.entities.get(child_id)
        parent = await self.entities.get(parent_id) if parent_id else None
        if parent is not None:
            await self._check_attachable(parent, child)

        old_parent_id = child.get("parent_entity_id")
        if old_parent_id and old_parent_id != parent_id:
            old_parent = await self.entities.find(old_parent_id)
            if old_parent is not None:
                old_parent["subtasks"] = [c for c in old_parent.get("subtasks") or [] if c != child_id]
                await self.entities.save(old_parent)
                self._emit_later(ENTITY_UPDATED, entity_id=old_parent_id, fields=["subtasks"])

        if parent is not None:
            siblings = [c for c in parent.get("subtasks") or [] if c != child_id]
            position = len(siblings) if index is None else max(0, min(int(index), len(siblings)))
            siblings.insert(position, child_id)
            parent["subtasks"] = siblings
            await self.entities.save(parent)
            self._emit_later(ENTITY_UPDATED, entity_id=parent_id, fields=["subtasks"])

        if child.get("parent_entity_id") != parent_id:
            child["parent_entity_id"] = parent_id
            child = await self.entities.save(child)
            self._emit_later(ENTITY_UPDATED, entity_id=child_id, fields=["parent_entity_id"])
        return child

    async def add_subtask(self, parent_id: str, child_id: str, index: Optional[int] = None) -> Entity:
        """
        Make child a subtask of parent at index (end by default). A child
        that already has another parent is moved.
        """
        return await self._planned(
            lambda: self._subtask_plan(child_id, parent_id),
            lambda: self._attach_locked(parent_id, child_id, index),
        )

    async def move_subtask(self, child_id: str, new_parent_id: Optional[str], index: Optional[int] = None) -> Entity:
        """Move a child under another parent, or detach it when new_parent_id is None."""
        return await self._planned(
            lambda: self._subtask_plan(child_id, new_parent_id),
            lambda: self._attach_locked(new_parent_id, child_id, index),
        )

    async def reorder_subtask(self, parent_id: str, child_id: str, new_index: int) -> List[str]:
        async with self._write(entity_key(parent_id)):
            parent = await self.entities.get(parent_id)
            siblings = list(parent.get("subtasks") or [])
            if child_id not in siblings:
                raise NotFoundError("subtask", child_id, f"Entity {child_id} is not a subtask of {parent_id}")
            siblings.remove(child_id)
            siblings.insert(max(0, min(int(new_index), len(siblings))), child_id)
            parent["subtasks"] = siblings
            await self.entities.save(parent)
            self._emit_later(ENTITY_UPDATED, entity_id=parent_id, fields=["subtasks"])
        return siblings

    async def remove_subtask(self, parent_id: str, child_id: str) -> bool:
        """Detach child from parent; both sides change together."""

        async def body() -> bool:
            parent = await self.entities.get(parent_id)
            child = await self.entities.get(child_id)
            removed = False
            if child_id in (parent.get("subtasks") or []):
                parent["subtasks"] = [c for c in parent["subtasks"] if c != child_id]
                await self.entities.save(parent)
                self._emit_later(ENTITY_UPDATED, entity_id=parent_id, fields=["subtasks"])
                removed = True
            if child.get("parent_entity_id") == parent_id:
                child["parent_entity_id"] = None
                await self.entities.save(child)
                self._emit_later(ENTITY_UPDATED, entity_id=child_id, fields=["parent_entity_id"])
                removed = True
            return removed

        return await self._planned(lambda: self._subtask_plan(child_id, parent_id), body)

    async def create_subtask(
        self, parent_id: str, data: Mapping[str, Any], entity_type: Any = EntityType.TASK
    ) -> Entity:
        entity_type = coerce_type(entity_type)
        tags = normalize_tags(data.get("tags"))
        async with self._write(entity_key(parent_id), f"counter:{entity_type.value}"):
            parent = await self.entities.get(parent_id)
            if not can_have_subtasks(parent):
                raise EntityValidationError(f"{parent['type']} entities cannot have subtasks", field="parent_id")
            if not can_be_subtask({"type": entity_type.value}):
                raise EntityValidationError(f"{entity_type.value} entities cannot be subtasks", field="type")
            child = await self._create_locked(entity_type, data, tags)
            child = await self._attach_locked(parent_id, child["id"], None)
        return child

    async def delete_subtask(self, parent_id: str, child_id: str) -> bool:
        """Detach child from parent, then delete it with the full cascade."""
        await self._planned(
            lambda: self._delete_plan(child_id),
            lambda: self._delete_locked(child_id, expected_parent=parent_id),
        )
        return True

    async def task_progress(self, entity_id: str) -> int:
        entity = await self.entities.get(entity_id)
        return calculate_task_progress(entity, await self._children(entity))

    async def _children(self, entity: Entity) -> List[Entity]:
        children = []
        for child_id in entity.get("subtasks") or []:
            child = await self.entities.find(child_id)
            if child is not None:
                children.append(child)
        return children

    # ------------------------------------------------------------------
    # reads across contexts
    # ------------------------------------------------------------------

    async def contexts_for(self, entity_id: str) -> Dict[str, Any]:
        await self.entities.get(entity_id)
        memberships = await self.index.list_contexts_for(entity_id)
        return {"memberships": memberships, "indicator": cross_context_indicator(memberships)}

    async def entities_in_context(self, context_kind: Any, context_key: Optional[str] = None) -> List[Entity]:
        try:
            kind = ContextKind(context_kind)
        except ValueError:
            raise UnsupportedContext(context_kind) from None
        if kind is ContextKind.TASK_LIST:
            return await self.entities.by_type(EntityType.TASK)
        if context_key is None:
            raise EntityValidationError("context_key is required", field="context_key")
        found: List[Entity] = []
        for entity_id in await self.index.list_members(kind, context_key):
            entity = await self.entities.find(entity_id)
            if entity is None:
                logger.warning("Index references missing entity %s in %s %s", entity_id, kind.value, context_key)
                continue
            found.append(entity)
        return found

    async def render_entity(
        self,
        entity_id: str,
        context_kind: Any,
        context_key: Optional[str] = None,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        entity = await self.entities.get(entity_id)
        context_data: Dict[str, Any] = dict(extra or {})
        if context_key is not None:
            context_data["context_key"] = context_key
        context_data["memberships"] = await self.index.list_contexts_for(entity_id)
        if entity.get("subtasks"):
            context_data["children"] = await self._children(entity)
        return render(entity, context_kind, context_data)
