from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional, TypedDict, Union


# PUBLIC_INTERFACE
class EntityType(str, Enum):
    """Kinds of canonical content records."""

    TASK = "task"
    NOTE = "note"
    CHECKLIST = "checklist"
    PROJECT = "project"
    PERSON = "person"


# PUBLIC_INTERFACE
class ContextKind(str, Enum):
    """
    Places an entity can be displayed or organized in.

    TASK_LIST is a derived view (every task) and never carries membership
    records; it exists only for rendering.
    """

    BOARD = "board"
    WEEKLY = "weekly"
    TASK_LIST = "task_list"
    COLLECTION = "collection"
    TAG = "tag"
    PEOPLE = "people"


# Context kinds backed by membership records in the position index.
MEMBERSHIP_KINDS = (
    ContextKind.BOARD,
    ContextKind.WEEKLY,
    ContextKind.COLLECTION,
    ContextKind.TAG,
    ContextKind.PEOPLE,
)

WEEK_DAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

PRIORITIES = ("low", "medium", "high")


class ChecklistItem(TypedDict):
    id: str
    text: str
    completed: bool


# PUBLIC_INTERFACE
class Entity(TypedDict, total=False):
    """
    Canonical content record as persisted in the `entities` table.

    Common fields are always present; the remaining ones depend on `type`
    (see entity_store.type_defaults). `id` and `type` never change after
    creation.
    """

    id: str
    type: str
    title: str
    content: str
    completed: bool
    tags: List[str]
    created_at: str
    updated_at: str
    # task / project
    priority: str
    due_date: Optional[str]
    subtasks: List[str]
    parent_entity_id: Optional[str]
    people: List[str]
    # checklist
    items: List[ChecklistItem]


class BoardPlacement(TypedDict):
    row_id: str
    column_key: str


class WeeklyPlacement(TypedDict):
    day: Optional[str]


Placement = Union[BoardPlacement, WeeklyPlacement, Dict[str, Any]]


# PUBLIC_INTERFACE
class Membership(TypedDict):
    """Authoritative fact that an entity belongs to one context instance."""

    id: str
    entity_id: str
    context_kind: str
    context_key: str
    placement: Dict[str, Any]
    added_at: str


class BoardColumn(TypedDict):
    key: str
    name: str


class BoardRow(TypedDict):
    id: str
    name: str
    cards: Dict[str, List[str]]


# PUBLIC_INTERFACE
class Board(TypedDict):
    """Board document; `rows[].cards` is the denormalized cell cache."""

    id: str
    name: str
    columns: List[BoardColumn]
    rows: List[BoardRow]
    created_at: str
    updated_at: str


class WeeklyItem(TypedDict):
    id: str
    entity_id: str
    day: Optional[str]
    added_at: str


class Reflection(TypedDict):
    wins: str
    challenges: str
    learnings: str
    next_week_focus: str


# PUBLIC_INTERFACE
class WeeklyPlan(TypedDict):
    """Weekly plan document; `items` is the denormalized weekly cache."""

    week_key: str
    week_start: str
    goal: str
    items: List[WeeklyItem]
    reflection: Reflection
    created_at: str
    updated_at: str


class Relationship(TypedDict):
    id: str
    entity_id: str
    related_id: str
    relationship_type: str
    created_at: str


class Collection(TypedDict):
    id: str
    name: str
    description: str
    filters: Dict[str, Any]
    created_at: str
