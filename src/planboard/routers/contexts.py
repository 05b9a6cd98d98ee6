from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Response, status

from ..deps import get_engine
from ..entity_store import normalize_tag
from ..models import ContextKind
from ..schemas import CollectionCreate, PersonLink
from ..sync_engine import SyncEngine

router = APIRouter(
    prefix="/api/v1",
    tags=["contexts"],
)


@router.get("/tags/{tag}", summary="Entities With Tag")
async def tagged(tag: str, engine: SyncEngine = Depends(get_engine)) -> Dict[str, Any]:
    name = normalize_tag(tag)
    return {"tag": name, "items": await engine.entities_in_context(ContextKind.TAG, name)}


# PUBLIC_INTERFACE
@router.post("/collections", status_code=status.HTTP_201_CREATED, summary="Create Collection")
async def create_collection(payload: CollectionCreate, engine: SyncEngine = Depends(get_engine)) -> Dict[str, Any]:
    return await engine.create_collection(payload.name, payload.description, payload.filters, payload.id)


@router.get("/collections", summary="List Collections")
async def list_collections(engine: SyncEngine = Depends(get_engine)) -> List[Dict[str, Any]]:
    return await engine.list_collections()


# PUBLIC_INTERFACE
@router.get(
    "/collections/{collection_id}",
    summary="Get Collection",
    description="Manually added entities under `items`; entities matching the saved filters under `matches`.",
)
async def get_collection(
    collection_id: str,
    limit: int = Query(50, ge=0, le=1000, description="Maximum number of filter matches to return"),
    offset: int = Query(0, ge=0, description="Number of filter matches to skip"),
    engine: SyncEngine = Depends(get_engine),
) -> Dict[str, Any]:
    collection = await engine.get_collection(collection_id)
    items = await engine.entities_in_context(ContextKind.COLLECTION, collection_id)
    matches, total = await engine.collection_matches(collection_id, limit=limit, offset=offset)
    return {**collection, "items": items, "matches": matches, "match_total": total}


@router.delete("/collections/{collection_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Delete Collection")
async def delete_collection(collection_id: str, engine: SyncEngine = Depends(get_engine)) -> Response:
    await engine.delete_collection(collection_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/collections/{collection_id}/entities/{entity_id}",
    status_code=status.HTTP_201_CREATED,
    summary="Add To Collection",
)
async def add_to_collection(
    collection_id: str, entity_id: str, engine: SyncEngine = Depends(get_engine)
) -> Dict[str, Any]:
    return await engine.add_to_collection(collection_id, entity_id)


@router.delete("/collections/{collection_id}/entities/{entity_id}", summary="Remove From Collection")
async def remove_from_collection(
    collection_id: str, entity_id: str, engine: SyncEngine = Depends(get_engine)
) -> Dict[str, Any]:
    return {"removed": await engine.remove_from_collection(collection_id, entity_id)}


# PUBLIC_INTERFACE
@router.post("/people/{person_id}/links/{entity_id}", summary="Link Person")
async def link_person(
    person_id: str,
    entity_id: str,
    payload: Optional[PersonLink] = None,
    engine: SyncEngine = Depends(get_engine),
) -> Dict[str, Any]:
    """Link an entity to a person; the person's last interaction is refreshed."""
    relationship_type = payload.relationship_type if payload else "mentions"
    return await engine.link_person(entity_id, person_id, relationship_type)


@router.delete("/people/{person_id}/links/{entity_id}", summary="Unlink Person")
async def unlink_person(person_id: str, entity_id: str, engine: SyncEngine = Depends(get_engine)) -> Dict[str, Any]:
    return {"removed": await engine.unlink_person(entity_id, person_id)}


@router.get("/people/{person_id}/timeline", summary="Person Timeline")
async def person_timeline(person_id: str, engine: SyncEngine = Depends(get_engine)) -> Dict[str, Any]:
    return {"person_id": person_id, "items": await engine.person_timeline(person_id)}
