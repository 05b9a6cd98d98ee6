import pytest

from conftest import assert_consistent, cell
from planboard.errors import EntityValidationError, NotFoundError
from planboard.models import ContextKind


async def make_task(engine, title="Task"):
    return await engine.create_entity("task", {"title": title})


class TestPlacement:
    @pytest.mark.asyncio
    async def test_scenario_board_and_week_then_remove_from_board(self, engine, board):
        t1 = await make_task(engine, "Buy milk")
        await engine.place_entity_in_board(t1["id"], "B1", "R1", "todo")
        await engine.place_entity_in_week(t1["id"], "2024-W10", "monday")

        contexts = await engine.index.list_contexts_for(t1["id"])
        assert len(contexts) == 2

        assert await engine.remove_entity_from_board(t1["id"], "B1") is True

        contexts = await engine.index.list_contexts_for(t1["id"])
        assert [m["context_kind"] for m in contexts] == ["weekly"]
        assert t1["id"] not in await cell(engine, "B1", "R1", "todo")
        plan = await engine.get_weekly_plan("2024-W10")
        assert [i["entity_id"] for i in plan["items"]] == [t1["id"]]
        await assert_consistent(engine)

    @pytest.mark.asyncio
    async def test_place_appends_to_end_of_cell(self, engine, board):
        a, b = await make_task(engine, "A"), await make_task(engine, "B")
        await engine.place_entity_in_board(a["id"], "B1", "R1", "todo")
        await engine.place_entity_in_board(b["id"], "B1", "R1", "todo")
        assert await cell(engine, "B1", "R1", "todo") == [a["id"], b["id"]]

    @pytest.mark.asyncio
    async def test_place_twice_is_idempotent(self, engine, board):
        t = await make_task(engine)
        first = await engine.place_entity_in_board(t["id"], "B1", "R1", "todo")
        second = await engine.place_entity_in_board(t["id"], "B1", "R1", "todo")
        assert first["id"] == second["id"]
        assert await cell(engine, "B1", "R1", "todo") == [t["id"]]
        assert len(await engine.index.list_contexts_for(t["id"])) == 1

    @pytest.mark.asyncio
    async def test_same_entity_in_two_cells_and_two_boards(self, engine, board):
        await engine.create_board("Work", board_id="B2")
        t = await make_task(engine)
        await engine.place_entity_in_board(t["id"], "B1", "R1", "todo")
        await engine.place_entity_in_board(t["id"], "B1", "R2", "done")
        await engine.place_entity_in_board(t["id"], "B2", "default", "inprogress")

        contexts = await engine.contexts_for(t["id"])
        assert len(contexts["memberships"]) == 3
        assert contexts["indicator"]["counts"]["board"] == 2
        await assert_consistent(engine)

        assert await engine.remove_entity_from_board(t["id"], "B1", row_id="R2") is True
        assert t["id"] in await cell(engine, "B1", "R1", "todo")
        assert t["id"] not in await cell(engine, "B1", "R2", "done")
        await assert_consistent(engine)

    @pytest.mark.asyncio
    async def test_remove_when_absent_returns_false(self, engine, board):
        t = await make_task(engine)
        assert await engine.remove_entity_from_board(t["id"], "B1") is False

    @pytest.mark.parametrize(
        "entity_id,row_id,column_key",
        [("task_404", None, None), (None, "NOPE", None), (None, None, "someday"), (None, "R1", "someday")],
    )
    @pytest.mark.asyncio
    async def test_remove_with_unknown_target_raises(self, engine, board, entity_id, row_id, column_key):
        t = await make_task(engine)
        await engine.place_entity_in_board(t["id"], "B1", "R1", "todo")

        with pytest.raises(NotFoundError):
            await engine.remove_entity_from_board(entity_id or t["id"], "B1", row_id=row_id, column_key=column_key)

        assert await cell(engine, "B1", "R1", "todo") == [t["id"]]
        assert len(await engine.index.list_contexts_for(t["id"])) == 1
        await assert_consistent(engine)

    @pytest.mark.parametrize(
        "board_id,row_id,column_key",
        [("missing", "R1", "todo"), ("B1", "nope", "todo"), ("B1", "R1", "nope")],
    )
    @pytest.mark.asyncio
    async def test_unknown_target_writes_nothing(self, engine, board, board_id, row_id, column_key):
        t = await make_task(engine)
        before = await engine.get_board("B1")
        with pytest.raises(NotFoundError):
            await engine.place_entity_in_board(t["id"], board_id, row_id, column_key)
        assert await engine.get_board("B1") == before
        assert await engine.index.list_contexts_for(t["id"]) == []

    @pytest.mark.asyncio
    async def test_unknown_entity_is_rejected(self, engine, board):
        with pytest.raises(NotFoundError):
            await engine.place_entity_in_board("task_999", "B1", "R1", "todo")
        assert await cell(engine, "B1", "R1", "todo") == []


class TestReorderAndMove:
    @pytest.mark.asyncio
    async def test_reorder_last_to_front_leaves_index_alone(self, engine, board):
        a, b, c = [await make_task(engine, t) for t in "ABC"]
        for t in (a, b, c):
            await engine.place_entity_in_board(t["id"], "B1", "R1", "todo")
        before = await engine.index.list_contexts_for(c["id"])

        order = await engine.reorder_within_cell("B1", "R1", "todo", c["id"], 0)

        assert order == [c["id"], a["id"], b["id"]]
        assert await cell(engine, "B1", "R1", "todo") == order
        assert await engine.index.list_contexts_for(c["id"]) == before

    @pytest.mark.parametrize("index,expected", [(-5, "CAB"), (1, "ACB"), (99, "ABC"), (2, "ABC")])
    @pytest.mark.asyncio
    async def test_reorder_index_is_clamped(self, engine, board, index, expected):
        tasks = {t: await make_task(engine, t) for t in "ABC"}
        for t in "ABC":
            await engine.place_entity_in_board(tasks[t]["id"], "B1", "R1", "todo")
        order = await engine.reorder_within_cell("B1", "R1", "todo", tasks["C"]["id"], index)
        assert order == [tasks[t]["id"] for t in expected]

    @pytest.mark.asyncio
    async def test_reorder_entity_not_in_cell(self, engine, board):
        t = await make_task(engine)
        with pytest.raises(NotFoundError):
            await engine.reorder_within_cell("B1", "R1", "todo", t["id"], 0)

    @pytest.mark.asyncio
    async def test_move_between_cells(self, engine, board):
        a, b = await make_task(engine, "A"), await make_task(engine, "B")
        await engine.place_entity_in_board(a["id"], "B1", "R1", "todo")
        await engine.place_entity_in_board(b["id"], "B1", "R2", "done")

        membership = await engine.move_entity_in_board(a["id"], "B1", "R1", "todo", "R2", "done", index=0)

        assert membership["placement"] == {"row_id": "R2", "column_key": "done"}
        assert await cell(engine, "B1", "R1", "todo") == []
        assert await cell(engine, "B1", "R2", "done") == [a["id"], b["id"]]
        contexts = await engine.index.list_contexts_for(a["id"])
        assert [m["placement"] for m in contexts] == [{"row_id": "R2", "column_key": "done"}]
        await assert_consistent(engine)

    @pytest.mark.asyncio
    async def test_move_from_wrong_cell_is_rejected(self, engine, board):
        t = await make_task(engine)
        await engine.place_entity_in_board(t["id"], "B1", "R1", "todo")
        with pytest.raises(NotFoundError):
            await engine.move_entity_in_board(t["id"], "B1", "R2", "todo", "R2", "done")
        assert await cell(engine, "B1", "R1", "todo") == [t["id"]]
        await assert_consistent(engine)


class TestBoardStructure:
    @pytest.mark.asyncio
    async def test_default_columns_from_settings(self, engine):
        created = await engine.create_board("Plain")
        assert [c["key"] for c in created["columns"]] == ["todo", "inprogress", "done"]
        assert [r["id"] for r in created["rows"]] == ["default"]

    @pytest.mark.asyncio
    async def test_duplicate_board_id(self, engine, board):
        with pytest.raises(EntityValidationError):
            await engine.create_board("Again", board_id="B1")

    @pytest.mark.asyncio
    async def test_add_row_creates_empty_cells(self, engine, board):
        updated = await engine.add_row("B1", "Garden", row_id="R3")
        row = updated["rows"][-1]
        assert row == {"id": "R3", "name": "Garden", "cards": {"todo": [], "inprogress": [], "done": []}}

    @pytest.mark.asyncio
    async def test_remove_row_drops_its_memberships(self, engine, board):
        t = await make_task(engine)
        await engine.place_entity_in_board(t["id"], "B1", "R1", "todo")
        await engine.place_entity_in_board(t["id"], "B1", "R2", "todo")

        await engine.remove_row("B1", "R1")

        contexts = await engine.index.list_contexts_for(t["id"])
        assert [m["placement"]["row_id"] for m in contexts] == ["R2"]
        await assert_consistent(engine)

    @pytest.mark.asyncio
    async def test_delete_board_keeps_entities(self, engine, board):
        t = await make_task(engine)
        await engine.place_entity_in_board(t["id"], "B1", "R1", "todo")
        assert await engine.delete_board("B1") is True
        with pytest.raises(NotFoundError):
            await engine.get_board("B1")
        assert (await engine.get_entity(t["id"]))["id"] == t["id"]
        assert await engine.index.memberships_in(ContextKind.BOARD, "B1") == []
        await assert_consistent(engine)


class TestRebuild:
    @pytest.mark.asyncio
    async def test_rebuild_repairs_drift_from_index(self, engine, board):
        a, b, c = [await make_task(engine, t) for t in "ABC"]
        for t in (a, b):
            await engine.place_entity_in_board(t["id"], "B1", "R1", "todo")
        await engine.index.add_membership(c["id"], "board", "B1", {"row_id": "R1", "column_key": "todo"})
        drifted = await engine.get_board("B1")
        drifted["rows"][0]["cards"]["todo"] = [b["id"], "ghost", a["id"], b["id"]]
        await engine.boards.save(drifted)

        report = await engine.rebuild_board_cache("B1")

        assert await cell(engine, "B1", "R1", "todo") == [b["id"], a["id"], c["id"]]
        assert report == {"added": 1, "dropped": 2, "memberships_removed": 0}
        await assert_consistent(engine)

    @pytest.mark.asyncio
    async def test_rebuild_drops_membership_of_vanished_cell(self, engine, board):
        t = await make_task(engine)
        await engine.index.add_membership(t["id"], "board", "B1", {"row_id": "gone", "column_key": "todo"})
        report = await engine.rebuild_board_cache("B1")
        assert report["memberships_removed"] == 1
        assert await engine.index.list_contexts_for(t["id"]) == []
