from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .entity_store import EntityQuery
from .models import EntityType


def _strip_title(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    s = v.strip()
    if not (1 <= len(s) <= 200):
        raise ValueError("title length must be between 1 and 200 characters")
    return s


# PUBLIC_INTERFACE
class EntityCreate(BaseModel):
    """
    Schema for creating an entity. Type-specific fields (priority, items,
    email, status, ...) are accepted as extra keys and merged over the
    type's defaults.
    """

    model_config = ConfigDict(
        extra="allow",
        json_schema_extra={
            "example": {
                "type": "task",
                "title": "Buy milk",
                "content": "Semi-skimmed",
                "priority": "high",
                "due_date": "2024-03-08",
                "tags": ["errands"],
            }
        },
    )

    type: EntityType = Field(..., description="Entity type")
    title: Optional[str] = Field(default=None, description="Title (for people, defaults to name)", max_length=200)
    content: Optional[str] = Field(default=None, description="Free text body")
    completed: bool = Field(default=False, description="Completion status flag")
    tags: List[str] = Field(default_factory=list, description="Tag names; normalized to lowercase")

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: Optional[str]) -> Optional[str]:
        """Strip whitespace and enforce 1..200 length when provided."""
        return _strip_title(v)

    def to_data(self) -> Dict[str, Any]:
        data = self.model_dump(exclude={"type"}, exclude_none=True)
        data.update(self.model_extra or {})
        return data


# PUBLIC_INTERFACE
class EntityUpdate(BaseModel):
    """
    Partial update. Only provided fields are applied; `tags` replaces the
    whole tag set.
    """

    model_config = ConfigDict(extra="allow")

    title: Optional[str] = Field(default=None, max_length=200)
    content: Optional[str] = None
    completed: Optional[bool] = None
    tags: Optional[List[str]] = None

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: Optional[str]) -> Optional[str]:
        return _strip_title(v)

    def to_fields(self) -> Dict[str, Any]:
        fields = self.model_dump(exclude_unset=True)
        fields.update(self.model_extra or {})
        return fields


class SubtaskCreate(EntityCreate):
    type: EntityType = Field(default=EntityType.TASK, description="task or project")


class SubtaskAttach(BaseModel):
    index: Optional[int] = Field(default=None, ge=0, description="Position among siblings; end when omitted")


class SubtaskMove(BaseModel):
    parent_id: Optional[str] = Field(default=None, description="New parent; null detaches")
    index: Optional[int] = Field(default=None, ge=0)


class EntityListEnvelope(BaseModel):
    """
    Envelope for paginated list responses.
    """
    items: List[Dict[str, Any]] = Field(..., description="Entities on this page")
    total: int = Field(..., description="Total number of items matching the query")
    limit: int = Field(..., description="Limit applied to the query")
    offset: int = Field(..., description="Offset applied to the query")

    @classmethod
    def from_query(cls, items: List[Dict[str, Any]], total: int, query: EntityQuery) -> "EntityListEnvelope":
        return cls(items=items, total=total, limit=max(query.limit, 0), offset=max(query.offset, 0))


class ColumnIn(BaseModel):
    key: str = Field(..., min_length=1)
    name: Optional[str] = None


class RowIn(BaseModel):
    id: Optional[str] = None
    name: str = Field(..., min_length=1)


# PUBLIC_INTERFACE
class BoardCreate(BaseModel):
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "name": "Home",
                "columns": [{"key": "todo", "name": "To Do"}, {"key": "done", "name": "Done"}],
                "rows": [{"id": "chores", "name": "Chores"}],
            }
        }
    )

    id: Optional[str] = Field(default=None, description="Board id; generated when omitted")
    name: str = Field(..., min_length=1)
    columns: Optional[List[ColumnIn]] = Field(default=None, description="Defaults to DEFAULT_BOARD_COLUMNS")
    rows: Optional[List[RowIn]] = None


class Placement(BaseModel):
    entity_id: str
    row_id: str
    column_key: str


class Move(BaseModel):
    entity_id: str
    from_row: str
    from_column: str
    to_row: str
    to_column: str
    index: Optional[int] = Field(default=None, ge=0)


class Reorder(BaseModel):
    entity_id: str
    row_id: str
    column_key: str
    new_index: int


class WeeklyPlacement(BaseModel):
    entity_id: str
    day: Optional[str] = Field(default=None, description="monday..sunday, or null for unscheduled")


class ReflectionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    wins: Optional[str] = None
    challenges: Optional[str] = None
    learnings: Optional[str] = None
    next_week_focus: Optional[str] = None


class WeeklyPlanUpdate(BaseModel):
    goal: Optional[str] = None
    reflection: Optional[ReflectionIn] = None


class CollectionCreate(BaseModel):
    id: Optional[str] = None
    name: str = Field(..., min_length=1)
    description: str = ""
    filters: Dict[str, Any] = Field(default_factory=dict)


class PersonLink(BaseModel):
    relationship_type: str = Field(default="mentions")


# PUBLIC_INTERFACE
class ViewDescriptor(BaseModel):
    """Context-specific presentation of an entity."""

    entity_id: str
    entity_type: str
    context_kind: str
    layout: str
    title: str
    subtitle: Optional[str] = None
    completed: bool
    badges: List[Dict[str, Any]] = Field(default_factory=list)
    progress: Optional[Dict[str, Any]] = None
    preview: List[Dict[str, Any]] = Field(default_factory=list)
    meta: Dict[str, Any] = Field(default_factory=dict)


class Snapshot(BaseModel):
    version: int
    exported_at: Optional[str] = None
    tables: Dict[str, List[Dict[str, Any]]]


class LegacyData(BaseModel):
    """Legacy camelCase appData document."""

    model_config = ConfigDict(populate_by_name=True)

    boards: Dict[str, Any] = Field(default_factory=dict)
    weekly_plans: Dict[str, Any] = Field(default_factory=dict, alias="weeklyPlans")
    entities: Dict[str, Any] = Field(default_factory=dict)

    def to_app_data(self) -> Dict[str, Any]:
        return {"boards": self.boards, "weeklyPlans": self.weekly_plans, "entities": self.entities}
