"""
Denormalized placement caches: board cell arrays and weekly item lists.

The pure helpers below mutate board/weekly documents in place and never
touch the position index. `BoardCache` and `WeeklyCache` load and save those
documents. The synchronization engine is the only caller that pairs a cache
write with the matching index write.
"""
from __future__ import annotations

import re
import uuid
from datetime import date
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from .errors import EntityValidationError, NotFoundError
from .models import WEEK_DAYS, Board, BoardRow, WeeklyItem, WeeklyPlan
from .repositories import BOARDS, WEEKLY_PLANS, Storage

Cell = Tuple[str, str]

WEEK_KEY_RE = re.compile(r"^(\d{4})-W(\d{2})$")

_ANY = object()


def _short_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:10]}"


# ---------------------------------------------------------------------------
# weeks
# ---------------------------------------------------------------------------


def parse_week_key(week_key: str) -> date:
    """Return the Monday of an ISO week key such as '2024-W10'."""
    match = WEEK_KEY_RE.match(week_key or "")
    if not match:
        raise EntityValidationError(f"Invalid week key: {week_key!r} (expected YYYY-Www)", field="week_key")
    year, week = int(match.group(1)), int(match.group(2))
    try:
        return date.fromisocalendar(year, week, 1)
    except ValueError:
        raise EntityValidationError(f"Week {week} does not exist in {year}", field="week_key") from None


def validate_day(day: Optional[str]) -> Optional[str]:
    if day is None or day == "":
        return None
    normalized = str(day).strip().lower()
    if normalized not in WEEK_DAYS:
        raise EntityValidationError(f"day must be one of {', '.join(WEEK_DAYS)}", field="day")
    return normalized


# ---------------------------------------------------------------------------
# board documents
# ---------------------------------------------------------------------------


def new_row(name: str, columns: Sequence[Mapping[str, Any]], row_id: Optional[str] = None) -> BoardRow:
    name = str(name or "").strip()
    if not name:
        raise EntityValidationError("row name must not be empty", field="name")
    return {"id": row_id or _short_id("row"), "name": name, "cards": {c["key"]: [] for c in columns}}


def new_board(
    board_id: str,
    name: str,
    columns: Iterable[Any],
    rows: Iterable[Any],
    now: str,
) -> Board:
    name = str(name or "").strip()
    if not name:
        raise EntityValidationError("board name must not be empty", field="name")

    normalized_columns: List[Dict[str, str]] = []
    for column in columns:
        if isinstance(column, str):
            key, col_name = column, column
        elif isinstance(column, (tuple, list)):
            key, col_name = column[0], column[1]
        else:
            key, col_name = column.get("key"), column.get("name")
        key = str(key or "").strip()
        if not key:
            raise EntityValidationError("column key must not be empty", field="columns")
        if any(c["key"] == key for c in normalized_columns):
            raise EntityValidationError(f"duplicate column key: {key}", field="columns")
        normalized_columns.append({"key": key, "name": str(col_name or key)})
    if not normalized_columns:
        raise EntityValidationError("a board needs at least one column", field="columns")

    normalized_rows: List[BoardRow] = []
    for row in rows:
        if isinstance(row, str):
            normalized_rows.append(new_row(row, normalized_columns))
        else:
            normalized_rows.append(new_row(row.get("name"), normalized_columns, row.get("id")))
    row_ids = [r["id"] for r in normalized_rows]
    if len(set(row_ids)) != len(row_ids):
        raise EntityValidationError("duplicate row id", field="rows")

    return {
        "id": board_id,
        "name": name,
        "columns": normalized_columns,
        "rows": normalized_rows,
        "created_at": now,
        "updated_at": now,
    }


def find_row(board: Mapping[str, Any], row_id: str) -> Optional[BoardRow]:
    for row in board.get("rows", []):
        if row["id"] == row_id:
            return row
    return None


def require_cell(board: Mapping[str, Any], row_id: str, column_key: str) -> List[str]:
    """Return the mutable cell array, or raise NotFoundError for an unknown row/column."""
    row = find_row(board, row_id)
    if row is None:
        raise NotFoundError("row", row_id, f"Row not found: {row_id} on board {board['id']}")
    if not any(c["key"] == column_key for c in board.get("columns", [])):
        raise NotFoundError("column", column_key, f"Column not found: {column_key} on board {board['id']}")
    return row["cards"].setdefault(column_key, [])


def append_to_cell(board: Board, row_id: str, column_key: str, entity_id: str) -> bool:
    """Append at the end of the cell. Returns False if the id was already there."""
    cell = require_cell(board, row_id, column_key)
    if entity_id in cell:
        return False
    cell.append(entity_id)
    return True


def insert_into_cell(board: Board, row_id: str, column_key: str, entity_id: str, index: Optional[int]) -> int:
    cell = require_cell(board, row_id, column_key)
    while entity_id in cell:
        cell.remove(entity_id)
    position = len(cell) if index is None else max(0, min(int(index), len(cell)))
    cell.insert(position, entity_id)
    return position


def remove_from_cells(
    board: Board,
    entity_id: str,
    row_id: Optional[str] = None,
    column_key: Optional[str] = None,
) -> List[Cell]:
    """Drop every occurrence of entity_id from the matching cells; return the cells it left."""
    removed: List[Cell] = []
    for row in board.get("rows", []):
        if row_id is not None and row["id"] != row_id:
            continue
        for key, cell in row["cards"].items():
            if column_key is not None and key != column_key:
                continue
            if entity_id in cell:
                cell[:] = [e for e in cell if e != entity_id]
                removed.append((row["id"], key))
    return removed


def reorder_in_cell(board: Board, row_id: str, column_key: str, entity_id: str, new_index: int) -> List[str]:
    """
    Move entity_id to new_index inside its cell. The index is clamped to
    [0, len] of the cell after removal. Returns the new cell order.
    """
    cell = require_cell(board, row_id, column_key)
    if entity_id not in cell:
        raise NotFoundError(
            "entity", entity_id, f"Entity {entity_id} is not in cell {row_id}/{column_key} of board {board['id']}"
        )
    insert_into_cell(board, row_id, column_key, entity_id, new_index)
    return list(cell)


def board_triples(board: Mapping[str, Any], entity_id: Optional[str] = None) -> Dict[str, Set[Cell]]:
    """Map entity id -> set of (row_id, column_key) cells it appears in."""
    found: Dict[str, Set[Cell]] = {}
    for row in board.get("rows", []):
        for key, cell in row["cards"].items():
            for member in cell:
                if entity_id is None or member == entity_id:
                    found.setdefault(member, set()).add((row["id"], key))
    return found


# ---------------------------------------------------------------------------
# weekly documents
# ---------------------------------------------------------------------------


def new_weekly_plan(week_key: str, now: str) -> WeeklyPlan:
    week_start = parse_week_key(week_key)
    return {
        "week_key": week_key,
        "week_start": week_start.isoformat(),
        "goal": "",
        "items": [],
        "reflection": {"wins": "", "challenges": "", "learnings": "", "next_week_focus": ""},
        "created_at": now,
        "updated_at": now,
    }


def append_weekly_item(plan: WeeklyPlan, entity_id: str, day: Optional[str], now: str) -> Tuple[WeeklyItem, bool]:
    """
    Append a wrapper for entity_id on day. An existing wrapper for the same
    entity and day is returned instead. The flag tells whether one was added.
    """
    for item in plan["items"]:
        if item["entity_id"] == entity_id and item.get("day") == day:
            return item, False
    item: WeeklyItem = {"id": _short_id("weekly"), "entity_id": entity_id, "day": day, "added_at": now}
    plan["items"].append(item)
    return item, True


def remove_weekly_items(plan: WeeklyPlan, entity_id: str, day: Any = _ANY) -> List[WeeklyItem]:
    kept: List[WeeklyItem] = []
    removed: List[WeeklyItem] = []
    for item in plan["items"]:
        if item["entity_id"] == entity_id and (day is _ANY or item.get("day") == day):
            removed.append(item)
        else:
            kept.append(item)
    plan["items"] = kept
    return removed


# ---------------------------------------------------------------------------
# document access
# ---------------------------------------------------------------------------


class BoardCache:
    """Loads and saves board documents."""

    def __init__(self, storage: Storage) -> None:
        self._table = storage.table(BOARDS)

    async def find(self, board_id: str) -> Optional[Board]:
        return await self._table.get(board_id)  # type: ignore[return-value]

    async def get(self, board_id: str) -> Board:
        board = await self.find(board_id)
        if board is None:
            raise NotFoundError("board", board_id)
        return board

    async def save(self, board: Board, now: Optional[str] = None) -> None:
        if now is not None:
            board["updated_at"] = now
        await self._table.put(board)  # type: ignore[arg-type]

    async def delete(self, board_id: str) -> bool:
        return await self._table.delete(board_id)

    async def all(self) -> List[Board]:
        return await self._table.all()  # type: ignore[return-value]


class WeeklyCache:
    """Loads and saves weekly plan documents keyed by week key."""

    def __init__(self, storage: Storage) -> None:
        self._table = storage.table(WEEKLY_PLANS)

    async def find(self, week_key: str) -> Optional[WeeklyPlan]:
        return await self._table.get(week_key)  # type: ignore[return-value]

    async def get(self, week_key: str) -> WeeklyPlan:
        plan = await self.find(week_key)
        if plan is None:
            raise NotFoundError("week", week_key)
        return plan

    async def get_or_new(self, week_key: str, now: str) -> WeeklyPlan:
        """Existing plan, or a fresh unsaved one (lazy creation)."""
        plan = await self.find(week_key)
        return plan if plan is not None else new_weekly_plan(week_key, now)

    async def save(self, plan: WeeklyPlan, now: Optional[str] = None) -> None:
        if now is not None:
            plan["updated_at"] = now
        await self._table.put(plan)  # type: ignore[arg-type]

    async def all(self) -> List[WeeklyPlan]:
        return await self._table.all()  # type: ignore[return-value]
