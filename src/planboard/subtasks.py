"""
Subtask layer: which entities may hold children and how their progress is
computed. Progress is always derived on demand from the children passed in.
"""
from __future__ import annotations

from typing import Any, Iterable, Mapping, Optional

from .models import EntityType

# explicit allow-list; never inferred from the presence of a `subtasks` field
PARENT_TYPES = frozenset({EntityType.TASK.value, EntityType.PROJECT.value})
CHILD_TYPES = frozenset({EntityType.TASK.value, EntityType.PROJECT.value})


def can_have_subtasks(entity: Mapping[str, Any]) -> bool:
    return entity.get("type") in PARENT_TYPES


def can_be_subtask(entity: Mapping[str, Any]) -> bool:
    return entity.get("type") in CHILD_TYPES


def calculate_task_progress(
    entity: Mapping[str, Any],
    children: Optional[Iterable[Mapping[str, Any]]] = None,
) -> int:
    """
    Percentage (0..100) of completion.

    - checklist: share of completed items
    - task/project with subtasks: share of completed children
    - anything else: 100 if completed, else 0
    """
    if entity.get("type") == EntityType.CHECKLIST.value and entity.get("items"):
        items = entity["items"]
        done = sum(1 for item in items if item.get("completed"))
        return round(100 * done / len(items))

    if can_have_subtasks(entity) and entity.get("subtasks"):
        by_id = {child["id"]: child for child in (children or [])}
        total = len(entity["subtasks"])
        done = sum(1 for child_id in entity["subtasks"] if by_id.get(child_id, {}).get("completed"))
        return round(100 * done / total)

    return 100 if entity.get("completed") else 0
