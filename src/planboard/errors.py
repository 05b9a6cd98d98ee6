"""
Error taxonomy shared by the storage layer, the synchronization engine and
the HTTP surface.
"""
from __future__ import annotations

from typing import Any, List, Optional


class PlanboardError(Exception):
    """Base class for every error raised by planboard itself."""


class NotFoundError(PlanboardError):
    """
    A target entity, board, row, column, week or collection does not exist.

    Raised before any write, so stores are left untouched.
    """

    def __init__(self, kind: str, key: Any, detail: Optional[str] = None) -> None:
        self.kind = kind
        self.key = key
        message = detail or f"{kind.capitalize()} not found: {key}"
        super().__init__(message)


class EntityValidationError(PlanboardError):
    """Input rejected before any write (empty title, bad week key, ...)."""

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        self.field = field
        super().__init__(message)

    def errors(self) -> List[dict]:
        loc = ["body", self.field] if self.field else ["body"]
        return [{"loc": loc, "msg": str(self), "type": "value_error"}]


class PartialCascadeFailure(PlanboardError):
    """
    Cleanup of one or more placement caches failed while deleting an entity.

    The surrounding transaction has been rolled back: the entity record and
    every placement it had are still in place.
    """

    def __init__(self, entity_id: str, stage: str) -> None:
        self.entity_id = entity_id
        self.stage = stage
        super().__init__(f"Cascading delete of {entity_id} failed during {stage}; nothing was removed")


class UnsupportedContext(PlanboardError):
    """A context kind outside the known set was requested. Indicates a defect."""

    def __init__(self, context_kind: Any) -> None:
        self.context_kind = context_kind
        super().__init__(f"Unsupported context kind: {context_kind!r}")
