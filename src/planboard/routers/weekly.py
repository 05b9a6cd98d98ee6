from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, status

from ..deps import get_engine
from ..schemas import WeeklyPlacement, WeeklyPlanUpdate
from ..sync_engine import SyncEngine

router = APIRouter(
    prefix="/api/v1/weekly",
    tags=["weekly"],
)


# PUBLIC_INTERFACE
@router.get(
    "/{week_key}",
    summary="Get Weekly Plan",
    description="Return the plan for an ISO week key (YYYY-Www). A week never planned returns an empty plan.",
)
async def get_week(week_key: str, engine: SyncEngine = Depends(get_engine)) -> Dict[str, Any]:
    return await engine.get_weekly_plan(week_key)


@router.patch("/{week_key}", summary="Update Goal And Reflection")
async def patch_week(
    week_key: str, payload: WeeklyPlanUpdate, engine: SyncEngine = Depends(get_engine)
) -> Dict[str, Any]:
    reflection = payload.reflection.model_dump(exclude_none=True) if payload.reflection else None
    return await engine.update_weekly_plan(week_key, goal=payload.goal, reflection=reflection)


# PUBLIC_INTERFACE
@router.post(
    "/{week_key}/items",
    status_code=status.HTTP_201_CREATED,
    summary="Schedule Entity",
    description="Place an entity in the week, optionally on a day. Placing it twice on the same day is a no-op.",
)
async def add_item(
    week_key: str, payload: WeeklyPlacement, engine: SyncEngine = Depends(get_engine)
) -> Dict[str, Any]:
    return await engine.place_entity_in_week(payload.entity_id, week_key, payload.day)


@router.delete("/{week_key}/items/{entity_id}", summary="Unschedule Entity")
async def remove_item(week_key: str, entity_id: str, engine: SyncEngine = Depends(get_engine)) -> Dict[str, Any]:
    return {"removed": await engine.remove_entity_from_week(entity_id, week_key)}
