"""
Context-aware renderer.

`render(entity, context_kind, context_data)` is a pure function returning a
view descriptor (a JSON-ready dict). Every (entity type, context kind) pair
has an explicit entry in the dispatch table; the table is checked for
completeness at import time, and an unknown context kind raises
UnsupportedContext instead of falling back to a default view.
"""
from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .errors import UnsupportedContext
from .models import ContextKind, EntityType
from .position_index import cross_context_indicator
from .subtasks import calculate_task_progress

ViewDescriptor = Dict[str, Any]
CellRenderer = Callable[[Mapping[str, Any], ContextKind, Mapping[str, Any], datetime], ViewDescriptor]

LAYOUTS = {
    ContextKind.BOARD: "card",
    ContextKind.WEEKLY: "weekly_item",
    ContextKind.TASK_LIST: "list_row",
    ContextKind.COLLECTION: "tile",
    ContextKind.TAG: "tag_result",
    ContextKind.PEOPLE: "timeline_entry",
}

PREVIEW_ITEMS = 3
EXCERPT_LENGTH = {ContextKind.BOARD: 120, ContextKind.COLLECTION: 200}
DEFAULT_EXCERPT = 60


# ---------------------------------------------------------------------------
# helpers
# ---------------------------------------------------------------------------


def _parse_day(value: Any) -> Optional[date]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


def relative_date_label(value: Any, now: datetime) -> Optional[str]:
    """Today / Tomorrow / Yesterday / In n days / n days ago."""
    day = _parse_day(value)
    if day is None:
        return None
    delta = (day - now.date()).days
    if delta == 0:
        return "Today"
    if delta == 1:
        return "Tomorrow"
    if delta == -1:
        return "Yesterday"
    if delta > 1:
        return f"In {delta} days"
    return f"{-delta} days ago"


def _excerpt(text: Any, kind: ContextKind) -> str:
    text = str(text or "").strip()
    limit = EXCERPT_LENGTH.get(kind, DEFAULT_EXCERPT)
    if len(text) <= limit:
        return text
    return text[: limit - 1].rstrip() + "…"


def _plural(count: int, singular: str, plural: Optional[str] = None) -> str:
    return singular if count == 1 else (plural or singular + "s")


def cross_context_label(counts: Mapping[str, int]) -> str:
    parts: List[str] = []
    boards = counts.get(ContextKind.BOARD.value, 0)
    if boards:
        parts.append(f"on {boards} other {_plural(boards, 'board')}")
    weeks = counts.get(ContextKind.WEEKLY.value, 0)
    if weeks:
        parts.append("in a weekly plan" if weeks == 1 else f"in {weeks} weekly plans")
    tags = counts.get(ContextKind.TAG.value, 0)
    if tags:
        parts.append(f"tagged ×{tags}")
    collections = counts.get(ContextKind.COLLECTION.value, 0)
    if collections:
        parts.append(f"in {collections} {_plural(collections, 'collection')}")
    people = counts.get(ContextKind.PEOPLE.value, 0)
    if people:
        parts.append(f"linked to {people} {_plural(people, 'person', 'people')}")
    return "Also " + ", ".join(parts) if parts else ""


def _base(entity: Mapping[str, Any], kind: ContextKind, context_data: Mapping[str, Any]) -> ViewDescriptor:
    view: ViewDescriptor = {
        "entity_id": entity["id"],
        "entity_type": entity["type"],
        "context_kind": kind.value,
        "layout": LAYOUTS[kind],
        "title": entity.get("title", ""),
        "subtitle": None,
        "completed": bool(entity.get("completed")),
        "badges": [],
        "progress": None,
        "preview": [],
        "meta": {},
    }
    memberships = context_data.get("memberships")
    if memberships is not None:
        # task_list is derived, so every membership counts as "other"
        current_kind = None if kind is ContextKind.TASK_LIST else kind
        indicator = cross_context_indicator(memberships, current_kind, context_data.get("context_key"))
        if indicator["total"]:
            view["badges"].append(
                {"kind": "cross_context", "label": cross_context_label(indicator["counts"]), "counts": indicator["counts"]}
            )
    if kind is not ContextKind.TAG:
        tags = entity.get("tags") or []
        if tags and kind in (ContextKind.BOARD, ContextKind.COLLECTION, ContextKind.TASK_LIST):
            view["meta"]["tags"] = list(tags)
    return view


def _progress(entity: Mapping[str, Any], context_data: Mapping[str, Any]) -> Dict[str, Any]:
    if entity["type"] == EntityType.CHECKLIST.value:
        items = entity.get("items") or []
        done = sum(1 for i in items if i.get("completed"))
        total = len(items)
    else:
        children = context_data.get("children") or []
        total = len(entity.get("subtasks") or [])
        by_id = {c["id"]: c for c in children}
        done = sum(1 for c in entity.get("subtasks") or [] if by_id.get(c, {}).get("completed"))
    return {
        "done": done,
        "total": total,
        "percent": calculate_task_progress(entity, context_data.get("children")),
    }


def _due_badge(view: ViewDescriptor, entity: Mapping[str, Any], now: datetime, key: str = "due_date") -> None:
    label = relative_date_label(entity.get(key), now)
    if label is None:
        return
    day = _parse_day(entity.get(key))
    overdue = day is not None and day < now.date() and not entity.get("completed")
    view["badges"].append({"kind": "due", "label": label, "overdue": overdue})


def _priority_badge(view: ViewDescriptor, entity: Mapping[str, Any]) -> None:
    priority = entity.get("priority") or "medium"
    if priority != "medium":
        view["badges"].append({"kind": "priority", "label": priority.capitalize(), "value": priority})


# ---------------------------------------------------------------------------
# per-type renderers
# ---------------------------------------------------------------------------


def _render_task(entity, kind, context_data, now):
    view = _base(entity, kind, context_data)
    _priority_badge(view, entity)
    _due_badge(view, entity, now)
    if entity.get("subtasks"):
        view["progress"] = _progress(entity, context_data)
    if kind in (ContextKind.BOARD, ContextKind.COLLECTION):
        view["subtitle"] = _excerpt(entity.get("content"), kind) or None
    if kind is ContextKind.TASK_LIST:
        view["meta"]["parent_entity_id"] = entity.get("parent_entity_id")
        view["meta"]["assignee"] = entity.get("assignee")
    if kind is ContextKind.WEEKLY:
        view["meta"]["day"] = context_data.get("day")
    return view


def _render_note(entity, kind, context_data, now):
    view = _base(entity, kind, context_data)
    if kind is not ContextKind.WEEKLY:
        view["subtitle"] = _excerpt(entity.get("content"), kind) or None
    if entity.get("is_private"):
        view["badges"].append({"kind": "private", "label": "Private"})
    attachments = entity.get("attachments") or []
    if attachments and kind in (ContextKind.BOARD, ContextKind.COLLECTION):
        view["meta"]["attachments"] = len(attachments)
    return view


def _render_checklist_card(entity, kind, context_data, now):
    """Progress bar plus the first few items."""
    view = _base(entity, kind, context_data)
    items = entity.get("items") or []
    if entity.get("show_progress", True):
        view["progress"] = _progress(entity, context_data)
    view["preview"] = [
        {"id": i["id"], "text": i["text"], "completed": bool(i.get("completed"))} for i in items[:PREVIEW_ITEMS]
    ]
    view["meta"]["more_items"] = max(0, len(items) - PREVIEW_ITEMS)
    return view


def _render_checklist_inline(entity, kind, context_data, now):
    """Counts only, e.g. '2/3'."""
    view = _base(entity, kind, context_data)
    progress = _progress(entity, context_data)
    view["progress"] = progress
    view["subtitle"] = f"{progress['done']}/{progress['total']}"
    return view


def _render_project(entity, kind, context_data, now):
    view = _base(entity, kind, context_data)
    status = entity.get("status") or "planning"
    view["badges"].append({"kind": "status", "label": status.replace("_", " ").capitalize(), "value": status})
    _due_badge(view, entity, now, key="end_date")
    if entity.get("subtasks"):
        view["progress"] = _progress(entity, context_data)
    if kind in (ContextKind.BOARD, ContextKind.COLLECTION, ContextKind.TASK_LIST):
        view["subtitle"] = _excerpt(entity.get("content"), kind) or None
        view["meta"]["team"] = len(entity.get("team") or [])
    return view


def _render_person(entity, kind, context_data, now):
    view = _base(entity, kind, context_data)
    view["title"] = entity.get("name") or entity.get("title", "")
    role, company = entity.get("role") or "", entity.get("company") or ""
    view["subtitle"] = " at ".join(p for p in (role, company) if p) or None
    view["completed"] = False
    last = relative_date_label(entity.get("last_interaction"), now)
    if last is not None:
        view["meta"]["last_interaction"] = last
    if kind in (ContextKind.PEOPLE, ContextKind.COLLECTION):
        view["meta"]["relationship_type"] = entity.get("relationship_type")
        view["meta"]["email"] = entity.get("email") or None
    return view


_TYPE_RENDERERS: Dict[EntityType, CellRenderer] = {
    EntityType.TASK: _render_task,
    EntityType.NOTE: _render_note,
    EntityType.CHECKLIST: _render_checklist_card,
    EntityType.PROJECT: _render_project,
    EntityType.PERSON: _render_person,
}

_DISPATCH: Dict[Tuple[EntityType, ContextKind], CellRenderer] = {
    (entity_type, kind): renderer
    for entity_type, renderer in _TYPE_RENDERERS.items()
    for kind in ContextKind
}
_DISPATCH[(EntityType.CHECKLIST, ContextKind.WEEKLY)] = _render_checklist_inline
_DISPATCH[(EntityType.CHECKLIST, ContextKind.TASK_LIST)] = _render_checklist_inline
_DISPATCH[(EntityType.CHECKLIST, ContextKind.TAG)] = _render_checklist_inline
_DISPATCH[(EntityType.CHECKLIST, ContextKind.PEOPLE)] = _render_checklist_inline

_missing = [(t.value, k.value) for t in EntityType for k in ContextKind if (t, k) not in _DISPATCH]
if _missing:
    raise RuntimeError(f"renderer dispatch table is incomplete: {_missing}")


# PUBLIC_INTERFACE
def render(
    entity: Mapping[str, Any],
    context_kind: Any,
    context_data: Optional[Mapping[str, Any]] = None,
    now: Optional[datetime] = None,
) -> ViewDescriptor:
    """
    Build the view descriptor for an entity shown in a context.

    context_data may carry `context_key`, `memberships` (for the
    cross-context badge), `children` (for subtask progress) and `day`.
    Raises UnsupportedContext for an unknown context kind.
    """
    try:
        kind = ContextKind(context_kind)
    except ValueError:
        raise UnsupportedContext(context_kind) from None
    try:
        entity_type = EntityType(entity.get("type"))
    except ValueError:
        raise UnsupportedContext(f"{context_kind} for entity type {entity.get('type')!r}") from None
    now = now or datetime.now(timezone.utc)
    return _DISPATCH[(entity_type, kind)](entity, kind, context_data or {}, now)
