import asyncio

import pytest

from conftest import assert_consistent, cell
from planboard.errors import EntityValidationError, NotFoundError, PartialCascadeFailure
from planboard.events import ENTITY_CREATED, ENTITY_DELETED, PLACEMENT_CHANGED
from planboard.models import ContextKind
from planboard.repositories import BOARDS, RELATIONSHIPS, InMemoryStorage, InMemoryTable
from planboard.sync_engine import SyncEngine


class TestCreateAndGet:
    @pytest.mark.asyncio
    async def test_round_trip(self, engine):
        created = await engine.create_entity("task", {"title": "  Buy milk ", "content": "2 litres"})
        fetched = await engine.get_entity(created["id"])
        assert fetched == created
        assert fetched["title"] == "Buy milk"

    @pytest.mark.asyncio
    async def test_ids_are_per_type_counters(self, engine):
        t1 = await engine.create_entity("task", {"title": "a"})
        n1 = await engine.create_entity("note", {"title": "b"})
        t2 = await engine.create_entity("task", {"title": "c"})
        assert (t1["id"], n1["id"], t2["id"]) == ("task_1", "note_1", "task_2")

    @pytest.mark.parametrize(
        "entity_type,expected",
        [
            ("task", {"priority": "medium", "subtasks": [], "parent_entity_id": None, "people": []}),
            ("note", {"attachments": [], "is_private": False}),
            ("checklist", {"items": [], "allow_reordering": True, "show_progress": True}),
            ("project", {"status": "planning", "team": [], "milestones": [], "subtasks": []}),
            ("person", {"relationship_type": "contact", "interaction_frequency": "monthly", "completed": False}),
        ],
    )
    @pytest.mark.asyncio
    async def test_type_defaults(self, engine, entity_type, expected):
        created = await engine.create_entity(entity_type, {"title": "x"})
        for key, value in expected.items():
            assert created[key] == value

    @pytest.mark.asyncio
    async def test_person_name_mirrors_title(self, engine):
        person = await engine.create_entity("person", {"name": "Ada Lovelace", "role": "Engineer"})
        assert person["title"] == person["name"] == "Ada Lovelace"

    @pytest.mark.parametrize("data", [{"title": ""}, {"title": "   "}, {"title": "x" * 201}, {}])
    @pytest.mark.asyncio
    async def test_invalid_title_writes_nothing(self, engine, data):
        with pytest.raises(EntityValidationError):
            await engine.create_entity("task", data)
        items, total = await engine.list_entities()
        assert total == 0
        # the id counter was not consumed either
        assert (await engine.create_entity("task", {"title": "ok"}))["id"] == "task_1"

    @pytest.mark.asyncio
    async def test_unknown_type(self, engine):
        with pytest.raises(EntityValidationError):
            await engine.create_entity("ticket", {"title": "x"})

    @pytest.mark.asyncio
    async def test_get_missing(self, engine):
        with pytest.raises(NotFoundError):
            await engine.get_entity("task_42")

    @pytest.mark.asyncio
    async def test_checklist_items_are_normalized(self, engine):
        checklist = await engine.create_entity(
            "checklist", {"title": "Pack", "items": ["Socks", {"text": "Charger", "completed": True}]}
        )
        assert [(i["text"], i["completed"]) for i in checklist["items"]] == [("Socks", False), ("Charger", True)]
        assert all(i["id"].startswith("item_") for i in checklist["items"])


class TestUpdate:
    @pytest.mark.asyncio
    async def test_shallow_merge_refreshes_updated_at(self, engine):
        created = await engine.create_entity("task", {"title": "a", "priority": "low"})
        updated = await engine.update_entity(created["id"], {"content": "more", "priority": "high"})
        assert updated["content"] == "more"
        assert updated["priority"] == "high"
        assert updated["title"] == "a"
        assert updated["updated_at"] >= created["updated_at"]
        assert updated["created_at"] == created["created_at"]

    @pytest.mark.parametrize("fields", [{"type": "note"}, {"id": "task_9"}, {"subtasks": ["task_2"]}, {"priority": "urgent"}])
    @pytest.mark.asyncio
    async def test_rejected_fields(self, engine, fields):
        created = await engine.create_entity("task", {"title": "a"})
        with pytest.raises(EntityValidationError):
            await engine.update_entity(created["id"], fields)
        assert await engine.get_entity(created["id"]) == created

    @pytest.mark.asyncio
    async def test_echoing_immutable_fields_is_allowed(self, engine):
        created = await engine.create_entity("task", {"title": "a"})
        updated = await engine.update_entity(created["id"], {"id": created["id"], "type": "task", "title": "b"})
        assert updated["title"] == "b"

    @pytest.mark.asyncio
    async def test_tags_are_diffed_into_memberships(self, engine):
        created = await engine.create_entity("note", {"title": "a", "tags": ["Home", "garden"]})
        assert created["tags"] == ["home", "garden"]

        updated = await engine.update_entity(created["id"], {"tags": ["garden", "urgent"]})

        assert updated["tags"] == ["garden", "urgent"]
        contexts = await engine.index.list_contexts_for(created["id"])
        assert sorted(m["context_key"] for m in contexts if m["context_kind"] == "tag") == ["garden", "urgent"]
        rels = await engine.storage.table(RELATIONSHIPS).query(entity_id=created["id"])
        assert sorted(r["related_id"] for r in rels) == ["garden", "urgent"]

    @pytest.mark.asyncio
    async def test_update_missing(self, engine):
        with pytest.raises(NotFoundError):
            await engine.update_entity("note_5", {"title": "x"})


class TestToggle:
    @pytest.mark.asyncio
    async def test_checklist_progress_then_bulk_toggle(self, engine):
        checklist = await engine.create_entity(
            "checklist",
            {"title": "Trip", "items": [{"text": "a", "completed": True}, {"text": "b"}, {"text": "c"}]},
        )
        assert await engine.task_progress(checklist["id"]) == 33

        toggled = await engine.toggle_completion(checklist["id"])

        assert toggled["completed"] is True
        assert all(item["completed"] for item in toggled["items"])
        assert await engine.task_progress(checklist["id"]) == 100

        toggled = await engine.toggle_completion(checklist["id"])
        assert not any(item["completed"] for item in toggled["items"])

    @pytest.mark.asyncio
    async def test_toggle_does_not_touch_placements(self, engine, board):
        task = await engine.create_entity("task", {"title": "a"})
        await engine.place_entity_in_board(task["id"], "B1", "R1", "todo")
        await engine.toggle_completion(task["id"])
        assert await cell(engine, "B1", "R1", "todo") == [task["id"]]
        assert (await engine.get_entity(task["id"]))["completed"] is True

    @pytest.mark.asyncio
    async def test_people_cannot_be_completed(self, engine):
        person = await engine.create_entity("person", {"name": "Bob"})
        with pytest.raises(EntityValidationError):
            await engine.toggle_completion(person["id"])


class TestCascadingDelete:
    @pytest.mark.asyncio
    async def test_removes_every_trace(self, engine, board):
        await engine.create_board("Work", board_id="B2")
        collection = await engine.create_collection("Ideas")
        person = await engine.create_entity("person", {"name": "Ada"})
        e = await engine.create_entity("task", {"title": "E", "tags": ["x"]})
        await engine.place_entity_in_board(e["id"], "B1", "R1", "todo")
        await engine.place_entity_in_board(e["id"], "B2", "default", "done")
        await engine.place_entity_in_week(e["id"], "2024-W10", "friday")
        await engine.add_to_collection(collection["id"], e["id"])
        await engine.link_person(e["id"], person["id"])

        assert await engine.delete_entity(e["id"]) is True

        with pytest.raises(NotFoundError):
            await engine.get_entity(e["id"])
        for board_doc in await engine.list_boards():
            for row in board_doc["rows"]:
                for members in row["cards"].values():
                    assert e["id"] not in members
        plan = await engine.get_weekly_plan("2024-W10")
        assert all(item["entity_id"] != e["id"] for item in plan["items"])
        assert await engine.index.list_contexts_for(e["id"]) == []
        assert await engine.storage.table(RELATIONSHIPS).query(entity_id=e["id"]) == []
        assert await engine.person_timeline(person["id"]) == []
        await assert_consistent(engine)

    @pytest.mark.asyncio
    async def test_removes_stray_cache_occurrences(self, engine, board):
        e = await engine.create_entity("note", {"title": "stray"})
        drifted = await engine.get_board("B1")
        drifted["rows"][1]["cards"]["done"].append(e["id"])
        await engine.boards.save(drifted)

        await engine.delete_entity(e["id"])

        assert await cell(engine, "B1", "R2", "done") == []
        await assert_consistent(engine)

    @pytest.mark.asyncio
    async def test_delete_missing(self, engine):
        with pytest.raises(NotFoundError):
            await engine.delete_entity("task_1")

    @pytest.mark.asyncio
    async def test_deleting_person_unlinks_everyone(self, engine):
        person = await engine.create_entity("person", {"name": "Ada"})
        task = await engine.create_entity("task", {"title": "Call Ada"})
        await engine.link_person(task["id"], person["id"])

        await engine.delete_entity(person["id"])

        assert (await engine.get_entity(task["id"]))["people"] == []
        assert await engine.index.list_contexts_for(task["id"]) == []
        await assert_consistent(engine)

    @pytest.mark.asyncio
    async def test_concurrent_double_delete(self, engine, board):
        e = await engine.create_entity("task", {"title": "E"})
        await engine.place_entity_in_board(e["id"], "B1", "R1", "todo")
        await engine.place_entity_in_week(e["id"], "2024-W10")

        results = await asyncio.gather(
            engine.delete_entity(e["id"]), engine.delete_entity(e["id"]), return_exceptions=True
        )

        assert sorted(type(r).__name__ for r in results) == ["NotFoundError", "bool"]
        assert await engine.index.list_contexts_for(e["id"]) == []
        await assert_consistent(engine)

    @pytest.mark.asyncio
    async def test_concurrent_place_and_delete_leave_no_orphans(self, engine, board):
        e = await engine.create_entity("task", {"title": "E"})
        await engine.place_entity_in_board(e["id"], "B1", "R1", "todo")

        await asyncio.gather(
            engine.delete_entity(e["id"]),
            engine.place_entity_in_board(e["id"], "B1", "R2", "done"),
            return_exceptions=True,
        )

        # whichever ran first, the entity ends up gone with no placement left behind
        assert await engine.entities.find(e["id"]) is None
        assert await engine.index.list_contexts_for(e["id"]) == []
        await assert_consistent(engine)


class FlakyTable(InMemoryTable):
    fail_puts = False

    async def put(self, record):
        if self.fail_puts:
            raise RuntimeError("disk full")
        await super().put(record)


class FlakyStorage(InMemoryStorage):
    def __init__(self):
        super().__init__()
        self.flaky_boards = FlakyTable(self, BOARDS, "id")
        self._tables[BOARDS] = self.flaky_boards


class TestPartialCascadeFailure:
    @pytest.mark.asyncio
    async def test_failed_cleanup_keeps_entity_and_placements(self, settings):
        storage = FlakyStorage()
        engine = SyncEngine(storage, settings)
        await engine.create_board("Home", rows=[{"id": "R1", "name": "Row"}], board_id="B1")
        parent = await engine.create_entity("project", {"title": "P"})
        e = await engine.create_subtask(parent["id"], {"title": "E"})
        await engine.place_entity_in_board(e["id"], "B1", "R1", "todo")
        await engine.place_entity_in_week(e["id"], "2024-W10", "monday")
        deleted = []
        engine.events.subscribe(ENTITY_DELETED, lambda event, **payload: deleted.append(payload))

        storage.flaky_boards.fail_puts = True
        with pytest.raises(PartialCascadeFailure) as excinfo:
            await engine.delete_entity(e["id"])
        storage.flaky_boards.fail_puts = False

        assert isinstance(excinfo.value.__cause__, RuntimeError)
        assert excinfo.value.entity_id == e["id"]
        assert (await engine.get_entity(e["id"]))["parent_entity_id"] == parent["id"]
        assert (await engine.get_entity(parent["id"]))["subtasks"] == [e["id"]]
        assert await cell(engine, "B1", "R1", "todo") == [e["id"]]
        assert len(await engine.index.list_contexts_for(e["id"])) == 2
        assert deleted == []
        await assert_consistent(engine)


class TestEvents:
    @pytest.mark.asyncio
    async def test_events_fire_after_commit(self, engine, board):
        seen = []
        engine.events.subscribe("*", lambda event, **payload: seen.append((event, payload.get("entity_id"))))
        task = await engine.create_entity("task", {"title": "a"})
        await engine.place_entity_in_board(task["id"], "B1", "R1", "todo")
        assert seen == [(ENTITY_CREATED, task["id"]), (PLACEMENT_CHANGED, task["id"])]

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_undo_write(self, engine):
        def boom(event, **payload):
            raise ValueError("subscriber bug")

        engine.events.subscribe(ENTITY_CREATED, boom)
        task = await engine.create_entity("task", {"title": "a"})
        assert (await engine.get_entity(task["id"]))["title"] == "a"

    @pytest.mark.asyncio
    async def test_rejected_operation_emits_nothing(self, engine, board):
        seen = []
        engine.events.subscribe("*", lambda event, **payload: seen.append(event))
        with pytest.raises(NotFoundError):
            await engine.place_entity_in_board("task_7", "B1", "R1", "todo")
        assert seen == []


class TestTagsCollectionsPeople:
    @pytest.mark.asyncio
    async def test_tag_and_untag(self, engine):
        note = await engine.create_entity("note", {"title": "a"})
        tagged = await engine.tag_entity(note["id"], " Reading ")
        assert tagged["tags"] == ["reading"]
        assert [e["id"] for e in await engine.entities_in_context(ContextKind.TAG, "reading")] == [note["id"]]
        assert await engine.untag_entity(note["id"], "reading") is True
        assert await engine.untag_entity(note["id"], "reading") is False
        assert (await engine.get_entity(note["id"]))["tags"] == []
        await assert_consistent(engine)

    @pytest.mark.asyncio
    async def test_empty_tag_rejected(self, engine):
        note = await engine.create_entity("note", {"title": "a"})
        with pytest.raises(EntityValidationError):
            await engine.tag_entity(note["id"], "  ")

    @pytest.mark.asyncio
    async def test_collection_membership(self, engine):
        collection = await engine.create_collection("Reading list", "books", {"type": "note"})
        note = await engine.create_entity("note", {"title": "Dune"})
        membership = await engine.add_to_collection(collection["id"], note["id"])
        assert membership["context_kind"] == "collection"
        assert [e["id"] for e in await engine.entities_in_context("collection", collection["id"])] == [note["id"]]

        await engine.delete_collection(collection["id"])

        assert await engine.index.list_contexts_for(note["id"]) == []
        with pytest.raises(NotFoundError):
            await engine.get_collection(collection["id"])
        await assert_consistent(engine)

    @pytest.mark.asyncio
    async def test_collection_filters_resolve_through_store(self, engine):
        person = await engine.create_entity("person", {"name": "Ada"})
        urgent = await engine.create_entity("task", {"title": "Fix roof", "priority": "high", "tags": ["Home"]})
        await engine.create_entity("task", {"title": "Fix gate", "priority": "low", "tags": ["home"]})
        await engine.create_entity("task", {"title": "Fix bike", "priority": "high", "tags": ["garage"]})
        done = await engine.create_entity("task", {"title": "Fix door", "priority": "high", "tags": ["home"]})
        await engine.toggle_completion(done["id"])
        await engine.link_person(urgent["id"], person["id"])

        home = await engine.create_collection(
            "Urgent at home",
            filters={"type": "task", "priority": "high", "completed": False, "tags": ["home", "attic"]},
        )
        matches, total = await engine.collection_matches(home["id"])
        assert [e["id"] for e in matches] == [urgent["id"]]
        assert total == 1

        fixes = await engine.create_collection("Fixes", filters={"search_term": "FIX"})
        matches, total = await engine.collection_matches(fixes["id"], limit=2)
        assert total == 4
        assert [e["title"] for e in matches] == ["Fix bike", "Fix door"]

        ada = await engine.create_collection("Ada's", filters={"people": [person["id"]]})
        assert [e["id"] for e in (await engine.collection_matches(ada["id"]))[0]] == [urgent["id"]]

        manual = await engine.create_collection("Manual")
        assert await engine.collection_matches(manual["id"]) == ([], 0)

    @pytest.mark.parametrize("filters", [{"colour": "red"}, {"type": "widget"}, {"priority": "urgent"}])
    @pytest.mark.asyncio
    async def test_invalid_collection_filters(self, engine, filters):
        with pytest.raises(EntityValidationError):
            await engine.create_collection("Bad", filters=filters, collection_id="bad")
        assert await engine.list_collections() == []

    @pytest.mark.asyncio
    async def test_add_to_missing_collection(self, engine):
        note = await engine.create_entity("note", {"title": "Dune"})
        with pytest.raises(NotFoundError):
            await engine.add_to_collection("collection_missing", note["id"])

    @pytest.mark.asyncio
    async def test_link_person_and_timeline(self, engine):
        person = await engine.create_entity("person", {"name": "Ada", "last_interaction": "2020-01-01T00:00:00+00:00"})
        task = await engine.create_entity("task", {"title": "Review"})
        note = await engine.create_entity("note", {"title": "Notes"})

        linked = await engine.link_person(task["id"], person["id"], "assigned")
        await engine.link_person(note["id"], person["id"])

        assert linked["people"] == [person["id"]]
        timeline = await engine.person_timeline(person["id"])
        assert {e["id"] for e in timeline} == {task["id"], note["id"]}
        assert (await engine.get_entity(person["id"]))["last_interaction"] > "2020-01-01T00:00:00+00:00"

        assert await engine.unlink_person(task["id"], person["id"]) is True
        assert (await engine.get_entity(task["id"]))["people"] == []
        assert [e["id"] for e in await engine.person_timeline(person["id"])] == [note["id"]]
        await assert_consistent(engine)

    @pytest.mark.asyncio
    async def test_link_requires_person(self, engine):
        task = await engine.create_entity("task", {"title": "a"})
        other = await engine.create_entity("task", {"title": "b"})
        with pytest.raises(EntityValidationError):
            await engine.link_person(task["id"], other["id"])
