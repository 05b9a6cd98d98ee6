import os

import pytest
import pytest_asyncio

# Ensure we default to memory backend for tests to avoid filesystem dependencies
os.environ.setdefault("PERSISTENCE_BACKEND", "memory")

from planboard.consistency import audit  # noqa: E402
from planboard.db import SQLiteStorage  # noqa: E402
from planboard.repositories import InMemoryStorage  # noqa: E402
from planboard.settings import Settings  # noqa: E402
from planboard.sync_engine import SyncEngine  # noqa: E402

DEFAULT_COLUMNS = (("todo", "To Do"), ("inprogress", "In Progress"), ("done", "Done"))


@pytest.fixture
def settings(tmp_path):
    return Settings(
        persistence_backend="memory",
        sqlite_db_path=str(tmp_path / "planboard.db"),
        cors_allow_origins=["*"],
        log_level="INFO",
        default_board_columns=DEFAULT_COLUMNS,
    )


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def engine(request, settings):
    """A SyncEngine over each storage backend."""
    if request.param == "sqlite":
        storage = SQLiteStorage(settings.sqlite_db_path)
    else:
        storage = InMemoryStorage()
    await storage.open()
    yield SyncEngine(storage, settings)
    await storage.close()


@pytest_asyncio.fixture
async def memory_engine(settings):
    storage = InMemoryStorage()
    await storage.open()
    yield SyncEngine(storage, settings)
    await storage.close()


@pytest_asyncio.fixture
async def board(engine):
    """Board B1 with rows R1, R2 and the default columns."""
    return await engine.create_board(
        "Home",
        rows=[{"id": "R1", "name": "Chores"}, {"id": "R2", "name": "Errands"}],
        board_id="B1",
    )


async def assert_consistent(engine):
    report = await audit(engine.storage)
    assert report.ok, report.to_dict()
    return report


async def cell(engine, board_id, row_id, column_key):
    board = await engine.get_board(board_id)
    for row in board["rows"]:
        if row["id"] == row_id:
            return row["cards"][column_key]
    raise AssertionError(f"no row {row_id}")
