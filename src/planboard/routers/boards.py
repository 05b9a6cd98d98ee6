from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Response, status

from ..deps import get_engine
from ..schemas import BoardCreate, Move, Placement, Reorder, RowIn
from ..sync_engine import SyncEngine

router = APIRouter(
    prefix="/api/v1/boards",
    tags=["boards"],
)


# PUBLIC_INTERFACE
@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Create Board",
    description="Create a board. Columns default to DEFAULT_BOARD_COLUMNS and rows to a single 'Default' row.",
)
async def create_board(payload: BoardCreate, engine: SyncEngine = Depends(get_engine)) -> Dict[str, Any]:
    columns = [{"key": c.key, "name": c.name or c.key} for c in payload.columns] if payload.columns else None
    rows = [{"id": r.id, "name": r.name} for r in payload.rows] if payload.rows is not None else None
    return await engine.create_board(payload.name, columns=columns, rows=rows, board_id=payload.id)


@router.get("", summary="List Boards")
async def list_boards(engine: SyncEngine = Depends(get_engine)) -> List[Dict[str, Any]]:
    return await engine.list_boards()


# PUBLIC_INTERFACE
@router.get(
    "/{board_id}",
    summary="Get Board",
    responses={200: {"description": "Board found"}, 404: {"description": "Board not found"}},
)
async def get_board(board_id: str, engine: SyncEngine = Depends(get_engine)) -> Dict[str, Any]:
    return await engine.get_board(board_id)


@router.delete("/{board_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Delete Board")
async def delete_board(board_id: str, engine: SyncEngine = Depends(get_engine)) -> Response:
    """Delete the board and every placement on it. Entities are kept."""
    await engine.delete_board(board_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{board_id}/rows", status_code=status.HTTP_201_CREATED, summary="Add Row")
async def add_row(board_id: str, payload: RowIn, engine: SyncEngine = Depends(get_engine)) -> Dict[str, Any]:
    return await engine.add_row(board_id, payload.name, payload.id)


@router.delete("/{board_id}/rows/{row_id}", summary="Remove Row")
async def remove_row(board_id: str, row_id: str, engine: SyncEngine = Depends(get_engine)) -> Dict[str, Any]:
    return await engine.remove_row(board_id, row_id)


# PUBLIC_INTERFACE
@router.post(
    "/{board_id}/placements",
    status_code=status.HTTP_201_CREATED,
    summary="Place Entity",
    description="Append an entity to the end of a board cell.",
    responses={404: {"description": "Entity, board, row or column not found"}},
)
async def place_entity(
    board_id: str, payload: Placement, engine: SyncEngine = Depends(get_engine)
) -> Dict[str, Any]:
    return await engine.place_entity_in_board(payload.entity_id, board_id, payload.row_id, payload.column_key)


@router.delete("/{board_id}/placements/{entity_id}", summary="Remove Entity From Board")
async def remove_entity(
    board_id: str,
    entity_id: str,
    row_id: Optional[str] = Query(None, description="Only this row"),
    column_key: Optional[str] = Query(None, description="Only this column"),
    engine: SyncEngine = Depends(get_engine),
) -> Dict[str, Any]:
    return {"removed": await engine.remove_entity_from_board(entity_id, board_id, row_id, column_key)}


@router.post("/{board_id}/moves", summary="Move Entity Between Cells")
async def move_entity(board_id: str, payload: Move, engine: SyncEngine = Depends(get_engine)) -> Dict[str, Any]:
    return await engine.move_entity_in_board(
        payload.entity_id,
        board_id,
        payload.from_row,
        payload.from_column,
        payload.to_row,
        payload.to_column,
        payload.index,
    )


@router.post("/{board_id}/reorder", summary="Reorder Within Cell")
async def reorder(board_id: str, payload: Reorder, engine: SyncEngine = Depends(get_engine)) -> Dict[str, Any]:
    """Drag-and-drop entry point; the index is clamped to the cell bounds."""
    order = await engine.reorder_within_cell(
        board_id, payload.row_id, payload.column_key, payload.entity_id, payload.new_index
    )
    return {"row_id": payload.row_id, "column_key": payload.column_key, "order": order}


@router.post("/{board_id}/rebuild", summary="Rebuild Board Cache")
async def rebuild(board_id: str, engine: SyncEngine = Depends(get_engine)) -> Dict[str, int]:
    return await engine.rebuild_board_cache(board_id)
