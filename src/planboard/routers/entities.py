from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Response, status

from ..deps import get_engine
from ..entity_store import EntityQuery
from ..models import EntityType
from ..schemas import (
    EntityCreate,
    EntityListEnvelope,
    EntityUpdate,
    SubtaskAttach,
    SubtaskCreate,
    SubtaskMove,
    ViewDescriptor,
)
from ..sync_engine import SyncEngine

router = APIRouter(
    prefix="/api/v1/entities",
    tags=["entities"],
)

_SORTS = {"created_at", "updated_at", "title"}


# PUBLIC_INTERFACE
@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Create Entity",
    description="Create a task, note, checklist, project or person. Type-specific defaults are applied.",
    responses={201: {"description": "Entity created"}, 422: {"description": "Validation error"}},
)
async def create_entity(payload: EntityCreate, engine: SyncEngine = Depends(get_engine)) -> Dict[str, Any]:
    return await engine.create_entity(payload.type, payload.to_data())


# PUBLIC_INTERFACE
@router.get(
    "",
    response_model=EntityListEnvelope,
    summary="List Entities",
    description=(
        "List entities with optional filters and pagination.\n\n"
        "Query parameters:\n"
        "- type: task, note, checklist, project or person\n"
        "- completed: filter by completion status\n"
        "- tag: only entities carrying this tag\n"
        "- q: search text for title/content (substring match)\n"
        "- sort: created_at, updated_at or title, optionally prefixed with '-'\n"
    ),
)
async def list_entities(
    limit: int = Query(50, ge=0, le=1000, description="Maximum number of items to return"),
    offset: int = Query(0, ge=0, description="Number of items to skip"),
    type: Optional[EntityType] = Query(None, description="Filter by entity type"),
    completed: Optional[bool] = Query(None, description="Filter by completion status"),
    tag: Optional[str] = Query(None, description="Filter by tag"),
    q: Optional[str] = Query(None, description="Search text for title/content"),
    sort: Optional[str] = Query("-created_at", description="Sort field, '-' prefix for descending"),
    engine: SyncEngine = Depends(get_engine),
) -> EntityListEnvelope:
    normalized_sort = (sort or "-created_at").strip().lower()
    if normalized_sort.lstrip("-") not in _SORTS:
        normalized_sort = "-created_at"
    query = EntityQuery(
        limit=limit,
        offset=offset,
        type=type,
        completed=completed,
        tag=tag.strip() if tag and tag.strip() else None,
        search=q.strip() if q else None,
        sort=normalized_sort,
    )
    items, total = await engine.list_entities(query)
    return EntityListEnvelope.from_query(items, total, query)


# PUBLIC_INTERFACE
@router.get(
    "/{entity_id}",
    summary="Get Entity",
    responses={200: {"description": "Entity found"}, 404: {"description": "Entity not found"}},
)
async def get_entity(entity_id: str, engine: SyncEngine = Depends(get_engine)) -> Dict[str, Any]:
    return await engine.get_entity(entity_id)


# PUBLIC_INTERFACE
@router.patch(
    "/{entity_id}",
    summary="Update Entity",
    description="Partially update an entity. `tags` replaces the tag set; id and type cannot change.",
    responses={200: {"description": "Entity updated"}, 404: {"description": "Entity not found"}},
)
async def patch_entity(
    entity_id: str, payload: EntityUpdate, engine: SyncEngine = Depends(get_engine)
) -> Dict[str, Any]:
    return await engine.update_entity(entity_id, payload.to_fields())


# PUBLIC_INTERFACE
@router.delete(
    "/{entity_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete Entity",
    description="Remove the entity from every board, week, tag, collection and person, then delete it.",
    responses={
        204: {"description": "Entity deleted"},
        404: {"description": "Entity not found"},
        500: {"description": "Cleanup failed; nothing was deleted"},
    },
)
async def delete_entity(entity_id: str, engine: SyncEngine = Depends(get_engine)) -> Response:
    await engine.delete_entity(entity_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{entity_id}/toggle", summary="Toggle Completion")
async def toggle_entity(entity_id: str, engine: SyncEngine = Depends(get_engine)) -> Dict[str, Any]:
    """Flip completion; checklist items follow the entity."""
    return await engine.toggle_completion(entity_id)


@router.get("/{entity_id}/contexts", summary="Entity Contexts")
async def entity_contexts(entity_id: str, engine: SyncEngine = Depends(get_engine)) -> Dict[str, Any]:
    """Every membership of the entity plus the cross-context counts."""
    return await engine.contexts_for(entity_id)


@router.get("/{entity_id}/progress", summary="Entity Progress")
async def entity_progress(entity_id: str, engine: SyncEngine = Depends(get_engine)) -> Dict[str, Any]:
    return {"entity_id": entity_id, "progress": await engine.task_progress(entity_id)}


@router.get(
    "/{entity_id}/render/{context_kind}",
    response_model=ViewDescriptor,
    summary="Render Entity",
    responses={400: {"description": "Unsupported context kind"}},
)
async def render_entity(
    entity_id: str,
    context_kind: str,
    context_key: Optional[str] = Query(None, description="Board id, week key, tag, collection id or person id"),
    day: Optional[str] = Query(None, description="Weekly day, for weekly context"),
    engine: SyncEngine = Depends(get_engine),
) -> ViewDescriptor:
    extra = {"day": day} if day else None
    return ViewDescriptor(**await engine.render_entity(entity_id, context_kind, context_key, extra))


# PUBLIC_INTERFACE
@router.post(
    "/{entity_id}/subtasks",
    status_code=status.HTTP_201_CREATED,
    summary="Create Subtask",
)
async def create_subtask(
    entity_id: str, payload: SubtaskCreate, engine: SyncEngine = Depends(get_engine)
) -> Dict[str, Any]:
    return await engine.create_subtask(entity_id, payload.to_data(), payload.type)


@router.put("/{entity_id}/subtasks/{child_id}", summary="Attach Subtask")
async def attach_subtask(
    entity_id: str,
    child_id: str,
    payload: Optional[SubtaskAttach] = None,
    engine: SyncEngine = Depends(get_engine),
) -> Dict[str, Any]:
    """Attach an existing entity as a subtask, moving it from any previous parent."""
    index = payload.index if payload else None
    await engine.add_subtask(entity_id, child_id, index)
    return await engine.get_entity(entity_id)


@router.delete("/{entity_id}/subtasks/{child_id}", summary="Detach Subtask")
async def detach_subtask(
    entity_id: str,
    child_id: str,
    delete: bool = Query(False, description="Delete the child after detaching it"),
    engine: SyncEngine = Depends(get_engine),
) -> Dict[str, Any]:
    if delete:
        await engine.delete_subtask(entity_id, child_id)
        return {"removed": True, "deleted": True}
    return {"removed": await engine.remove_subtask(entity_id, child_id), "deleted": False}


@router.post("/{entity_id}/move", summary="Move Subtask")
async def move_subtask(
    entity_id: str, payload: SubtaskMove, engine: SyncEngine = Depends(get_engine)
) -> Dict[str, Any]:
    """Move under another parent (or detach with parent_id null); also reorders within the same parent."""
    return await engine.move_subtask(entity_id, payload.parent_id, payload.index)


@router.post("/{entity_id}/tags/{tag}", summary="Tag Entity", tags=["contexts"])
async def tag_entity(entity_id: str, tag: str, engine: SyncEngine = Depends(get_engine)) -> Dict[str, Any]:
    return await engine.tag_entity(entity_id, tag)


@router.delete("/{entity_id}/tags/{tag}", summary="Untag Entity", tags=["contexts"])
async def untag_entity(entity_id: str, tag: str, engine: SyncEngine = Depends(get_engine)) -> Dict[str, Any]:
    return {"removed": await engine.untag_entity(entity_id, tag)}
