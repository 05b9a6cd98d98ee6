"""
Read-only consistency audit over all stores.

Checks that board caches match board memberships, weekly item lists match
weekly memberships, nothing references a missing entity or context, no
week holds the same entity twice on one day, and parent/child links are
symmetric.
"""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Set, Tuple

from .models import ContextKind
from .placement_cache import board_triples
from .repositories import BOARDS, COLLECTIONS, ENTITIES, POSITIONS, RELATIONSHIPS, WEEKLY_PLANS, Storage

logger = logging.getLogger(__name__)


@dataclass
class AuditReport:
    board_divergence: List[Dict[str, Any]] = field(default_factory=list)
    weekly_divergence: List[Dict[str, Any]] = field(default_factory=list)
    dangling_references: List[Dict[str, Any]] = field(default_factory=list)
    duplicate_wrappers: List[Dict[str, Any]] = field(default_factory=list)
    subtask_asymmetry: List[Dict[str, Any]] = field(default_factory=list)
    checked: Dict[str, int] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not (
            self.board_divergence
            or self.weekly_divergence
            or self.dangling_references
            or self.duplicate_wrappers
            or self.subtask_asymmetry
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["ok"] = self.ok
        return data


def _cells(cells: Set[Tuple[str, str]]) -> List[List[str]]:
    return [list(c) for c in sorted(cells)]


async def audit(storage: Storage) -> AuditReport:
    report = AuditReport()
    # one transaction so every table is read from the same committed state
    async with storage.transaction():
        entities = {e["id"]: e for e in await storage.table(ENTITIES).all()}
        boards = {b["id"]: b for b in await storage.table(BOARDS).all()}
        plans = {p["week_key"]: p for p in await storage.table(WEEKLY_PLANS).all()}
        collections = {c["id"] for c in await storage.table(COLLECTIONS).all()}
        memberships = await storage.table(POSITIONS).all()
        relationships = await storage.table(RELATIONSHIPS).all()
    report.checked = {
        "entities": len(entities),
        "boards": len(boards),
        "weekly_plans": len(plans),
        "memberships": len(memberships),
        "relationships": len(relationships),
    }

    # index side, grouped per context instance
    index_cells: Dict[str, Dict[str, Set[Tuple[str, str]]]] = {}
    index_days: Dict[str, Dict[str, Counter]] = {}
    for m in memberships:
        kind, key, entity_id = m["context_kind"], m["context_key"], m["entity_id"]
        if entity_id not in entities:
            report.dangling_references.append({"where": "index", "record": m["id"], "entity_id": entity_id})
        if kind == ContextKind.BOARD.value:
            if key not in boards:
                report.dangling_references.append({"where": "index", "record": m["id"], "board_id": key})
                continue
            cell = (m["placement"].get("row_id"), m["placement"].get("column_key"))
            index_cells.setdefault(key, {}).setdefault(entity_id, set()).add(cell)
        elif kind == ContextKind.WEEKLY.value:
            if key not in plans:
                report.dangling_references.append({"where": "index", "record": m["id"], "week_key": key})
                continue
            index_days.setdefault(key, {}).setdefault(entity_id, Counter())[m["placement"].get("day")] += 1
        elif kind == ContextKind.COLLECTION.value and key not in collections:
            report.dangling_references.append({"where": "index", "record": m["id"], "collection_id": key})
        elif kind == ContextKind.PEOPLE.value and key not in entities:
            report.dangling_references.append({"where": "index", "record": m["id"], "person_id": key})

    for board_id, board in boards.items():
        cached = board_triples(board)
        indexed = index_cells.get(board_id, {})
        for entity_id in sorted(set(cached) | set(indexed)):
            if entity_id not in entities and entity_id in cached:
                report.dangling_references.append({"where": "board", "board_id": board_id, "entity_id": entity_id})
            in_cache, in_index = cached.get(entity_id, set()), indexed.get(entity_id, set())
            if in_cache != in_index:
                report.board_divergence.append(
                    {
                        "board_id": board_id,
                        "entity_id": entity_id,
                        "cache_only": _cells(in_cache - in_index),
                        "index_only": _cells(in_index - in_cache),
                    }
                )

    for week, plan in plans.items():
        cached_days: Dict[str, Counter] = {}
        for item in plan.get("items", []):
            cached_days.setdefault(item["entity_id"], Counter())[item.get("day")] += 1
        indexed_days = index_days.get(week, {})
        for entity_id in sorted(set(cached_days) | set(indexed_days)):
            if entity_id not in entities and entity_id in cached_days:
                report.dangling_references.append({"where": "weekly", "week_key": week, "entity_id": entity_id})
            in_cache = cached_days.get(entity_id, Counter())
            for day, count in in_cache.items():
                if count > 1:
                    report.duplicate_wrappers.append(
                        {"week_key": week, "entity_id": entity_id, "day": day, "count": count}
                    )
            if set(in_cache) != set(indexed_days.get(entity_id, Counter())):
                report.weekly_divergence.append(
                    {
                        "week_key": week,
                        "entity_id": entity_id,
                        "cache_days": sorted(in_cache, key=str),
                        "index_days": sorted(indexed_days.get(entity_id, Counter()), key=str),
                    }
                )

    for rel in relationships:
        if rel["entity_id"] not in entities:
            report.dangling_references.append({"where": "relationships", "record": rel["id"], "entity_id": rel["entity_id"]})
        kind = rel["relationship_type"]
        if kind == ContextKind.COLLECTION.value and rel["related_id"] not in collections:
            report.dangling_references.append({"where": "relationships", "record": rel["id"], "collection_id": rel["related_id"]})
        if kind == ContextKind.PEOPLE.value and rel["related_id"] not in entities:
            report.dangling_references.append({"where": "relationships", "record": rel["id"], "person_id": rel["related_id"]})

    for entity_id, entity in entities.items():
        for child_id in entity.get("subtasks") or []:
            child = entities.get(child_id)
            if child is None or child.get("parent_entity_id") != entity_id:
                report.subtask_asymmetry.append(
                    {"parent_id": entity_id, "child_id": child_id, "child_parent": child and child.get("parent_entity_id")}
                )
        parent_id = entity.get("parent_entity_id")
        if parent_id:
            parent = entities.get(parent_id)
            if parent is None or entity_id not in (parent.get("subtasks") or []):
                report.subtask_asymmetry.append({"parent_id": parent_id, "child_id": entity_id, "listed": False})

    if not report.ok:
        logger.warning(
            "Consistency audit found problems: %d board, %d weekly, %d dangling, %d duplicate, %d subtask",
            len(report.board_divergence),
            len(report.weekly_divergence),
            len(report.dangling_references),
            len(report.duplicate_wrappers),
            len(report.subtask_asymmetry),
        )
    return report
