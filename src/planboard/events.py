from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

ENTITY_CREATED = "entity_created"
ENTITY_UPDATED = "entity_updated"
ENTITY_DELETED = "entity_deleted"
PLACEMENT_CHANGED = "placement_changed"

# "*" subscribers receive every event
ANY_EVENT = "*"


class EventBus:
    """In-process notifications emitted after a write has committed."""

    def __init__(self) -> None:
        self.subscribers: Dict[str, List[Callable[..., Any]]] = {}

    def subscribe(self, event_type: str, callback: Callable[..., Any]) -> None:
        """Register a callback for an event type."""
        self.subscribers.setdefault(event_type, []).append(callback)

    def emit(self, event_type: str, **payload: Any) -> None:
        """Call every subscriber; a failing subscriber is logged and skipped."""
        callbacks = self.subscribers.get(event_type, []) + self.subscribers.get(ANY_EVENT, [])
        for callback in callbacks:
            try:
                callback(event_type, **payload)
            except Exception:
                logger.exception("Error in %s subscriber %r", event_type, callback)
