import asyncio

import pytest

from conftest import assert_consistent
from planboard.consistency import audit
from planboard.errors import EntityValidationError
from planboard.repositories import BOARDS, ENTITIES, TABLE_KEYS, WEEKLY_PLANS, InMemoryStorage
from planboard.snapshot import export_snapshot, import_snapshot


async def populate(engine):
    parent = await engine.create_entity("project", {"title": "Garden", "tags": ["home"]})
    child = await engine.create_subtask(parent["id"], {"title": "Dig"})
    person = await engine.create_entity("person", {"name": "Alex"})
    await engine.place_entity_in_board(child["id"], "B1", "R1", "todo")
    await engine.place_entity_in_week(child["id"], "2024-W10", "monday")
    await engine.link_person(parent["id"], person["id"])
    collection = await engine.create_collection("Outdoors", collection_id="outdoors")
    await engine.add_to_collection(collection["id"], parent["id"])
    return parent, child, person


def by_key(snapshot):
    return {
        name: sorted(records, key=lambda r: str(r[TABLE_KEYS[name]]))
        for name, records in snapshot["tables"].items()
    }


class TestAudit:
    @pytest.mark.asyncio
    async def test_clean_store_passes(self, engine, board):
        await populate(engine)
        report = await assert_consistent(engine)
        assert report.checked["entities"] == 3
        assert report.to_dict()["ok"] is True

    @pytest.mark.asyncio
    async def test_reads_during_concurrent_writes_see_committed_state(self, engine, board):
        tasks = [await engine.create_entity("task", {"title": f"t{i}"}) for i in range(20)]

        async def place_all():
            for task in tasks:
                await engine.place_entity_in_board(task["id"], "B1", "R1", "todo")

        async def audit_repeatedly():
            return [await audit(engine.storage) for _ in range(40)]

        async def export_repeatedly():
            return [await export_snapshot(engine.storage) for _ in range(10)]

        _, reports, snapshots = await asyncio.gather(place_all(), audit_repeatedly(), export_repeatedly())

        assert all(report.ok for report in reports)
        for snapshot in snapshots:
            target = InMemoryStorage()
            await target.open()
            assert (await import_snapshot(target, snapshot)).ok

    @pytest.mark.asyncio
    async def test_board_drift_is_reported(self, engine, board):
        _, child, _ = await populate(engine)
        drifted = await engine.get_board("B1")
        drifted["rows"][0]["cards"]["todo"] = []
        drifted["rows"][1]["cards"]["done"] = [child["id"]]
        await engine.boards.save(drifted)

        report = await audit(engine.storage)

        assert not report.ok
        assert report.board_divergence == [
            {"board_id": "B1", "entity_id": child["id"], "cache_only": [["R2", "done"]], "index_only": [["R1", "todo"]]}
        ]

    @pytest.mark.asyncio
    async def test_weekly_duplicate_and_dangling(self, engine, board):
        _, child, _ = await populate(engine)
        plan = await engine.weeks.get("2024-W10")
        plan["items"].append(dict(plan["items"][0], id="weekly_dup"))
        plan["items"].append({"id": "weekly_ghost", "entity_id": "task_404", "day": None})
        await engine.weeks.save(plan)

        report = await audit(engine.storage)

        assert report.duplicate_wrappers == [{"week_key": "2024-W10", "entity_id": child["id"], "day": "monday", "count": 2}]
        assert {"where": "weekly", "week_key": "2024-W10", "entity_id": "task_404"} in report.dangling_references

    @pytest.mark.asyncio
    async def test_subtask_asymmetry(self, engine):
        parent = await engine.create_entity("task", {"title": "Parent"})
        child = await engine.create_subtask(parent["id"], {"title": "Child"})
        record = await engine.entities.get(child["id"])
        record["parent_entity_id"] = None
        await engine.entities.save(record)

        report = await audit(engine.storage)

        assert report.subtask_asymmetry[0]["parent_id"] == parent["id"]
        assert report.subtask_asymmetry[0]["child_id"] == child["id"]


class TestSnapshot:
    @pytest.mark.asyncio
    async def test_export_import_round_trip(self, engine, board):
        await populate(engine)
        exported = await export_snapshot(engine.storage)
        assert exported["version"] == 1
        assert set(exported["tables"]) == set(TABLE_KEYS)

        target = InMemoryStorage()
        await target.open()
        report = await import_snapshot(target, exported)

        assert report.ok
        assert by_key(await export_snapshot(target)) == by_key(exported)

    @pytest.mark.asyncio
    async def test_ids_continue_after_import(self, memory_engine):
        await memory_engine.create_entity("task", {"title": "one"})
        exported = await export_snapshot(memory_engine.storage)
        await import_snapshot(memory_engine.storage, dict(exported, tables=dict(exported["tables"], metadata=[])))
        created = await memory_engine.create_entity("task", {"title": "two"})
        assert created["id"] == "task_2"

    @pytest.mark.asyncio
    async def test_strict_import_rejects_inconsistent_snapshot(self, engine, board):
        _, child, _ = await populate(engine)
        exported = await export_snapshot(engine.storage)
        broken = dict(exported, tables=dict(exported["tables"], **{BOARDS: []}))

        with pytest.raises(EntityValidationError):
            await import_snapshot(engine.storage, broken)

        # the failed import rolled back
        assert (await engine.get_board("B1"))["rows"][0]["cards"]["todo"] == [child["id"]]
        await assert_consistent(engine)

    @pytest.mark.asyncio
    async def test_lenient_import_reports_problems(self, memory_engine):
        snapshot = {
            "version": 1,
            "tables": {
                ENTITIES: [],
                WEEKLY_PLANS: [
                    {"week_key": "2024-W10", "items": [{"id": "weekly_1", "entity_id": "task_1", "day": None}]}
                ],
            },
        }
        report = await import_snapshot(memory_engine.storage, snapshot, strict=False)
        assert not report.ok
        assert report.dangling_references

    @pytest.mark.parametrize(
        "snapshot",
        [
            {"version": 2, "tables": {}},
            {"version": 1},
            {"version": 1, "tables": {"widgets": []}},
            {"version": 1, "tables": {ENTITIES: [{"title": "no id"}]}},
        ],
    )
    @pytest.mark.asyncio
    async def test_malformed_snapshots(self, memory_engine, snapshot):
        existing = await memory_engine.create_entity("note", {"title": "keep me"})
        with pytest.raises(EntityValidationError):
            await import_snapshot(memory_engine.storage, snapshot)
        assert (await memory_engine.get_entity(existing["id"]))["title"] == "keep me"
