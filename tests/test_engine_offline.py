"""Offline tests for the indexed table engine.

Scenarios:
- put/get/update/delete on single records; update reports 0 for missing ids
- add and bulk_add reject existing ids; bulk_add writes nothing on collision
- Index lookups (equals, any_of) refined by and_ predicates, insertion order kept
- Index buckets follow field changes
- Unindexed field and unknown table raise StorageError
- Results are copies; export/load roundtrip rebuilds indexes
"""

from __future__ import annotations

import pytest
from custom_components.trolley.engine import (
    TABLE_ITEMS,
    TABLE_LISTS,
    StorageEngine,
    Table,
)
from custom_components.trolley.exceptions import StorageError

EXPECTED_BOTH = 2


def _item(item_id: str, list_id: str, sort_order: int, **extra) -> dict:
    return {"id": item_id, "list_id": list_id, "sort_order": sort_order, "deleted_at": None, **extra}


@pytest.mark.asyncio
async def test_single_record_operations() -> None:
    """put/get/update/delete behave as an upserting key-value table."""

    table = Table("things", indexes=("name",))

    await table.put({"id": "a", "name": "Milk"})
    assert await table.get("a") == {"id": "a", "name": "Milk"}

    # put replaces the whole record
    await table.put({"id": "a", "name": "Bread"})
    assert await table.get("a") == {"id": "a", "name": "Bread"}

    assert await table.update("a", {"name": "Eggs"}) == 1
    assert (await table.get("a"))["name"] == "Eggs"
    assert await table.update("missing", {"name": "x"}) == 0

    await table.delete("a")
    assert await table.get("a") is None
    # Deleting an absent id is a no-op
    await table.delete("a")
    assert await table.count() == 0


@pytest.mark.asyncio
async def test_add_and_bulk_add_reject_existing_ids() -> None:
    """add fails on an existing id and bulk_add is all-or-nothing."""

    table = Table("things")
    await table.add({"id": "a"})
    with pytest.raises(StorageError):
        await table.add({"id": "a"})

    with pytest.raises(StorageError):
        await table.bulk_add([{"id": "b"}, {"id": "a"}])
    assert await table.get("b") is None

    with pytest.raises(StorageError):
        await table.bulk_add([{"id": "c"}, {"id": "c"}])
    assert await table.get("c") is None

    assert await table.bulk_add([{"id": "b"}, {"id": "c"}]) == ["b", "c"]
    assert [r["id"] for r in await table.to_list()] == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_record_id_must_be_a_string() -> None:
    table = Table("things")
    with pytest.raises(StorageError):
        await table.put({"name": "no id"})


@pytest.mark.asyncio
async def test_index_queries_with_predicates_keep_insertion_order() -> None:
    """equals/any_of resolve through indexes; and_ refines; order is insertion order."""

    engine = StorageEngine()
    items = engine.table(TABLE_ITEMS)
    await items.put(_item("i1", "L1", 2000))
    await items.put(_item("i2", "L2", 1000))
    await items.put(_item("i3", "L1", 1000, deleted_at="2024-01-01T00:00:00.000Z"))
    await items.put(_item("i4", "L1", 3000))

    l1 = await items.where("list_id").equals("L1").to_list()
    assert [r["id"] for r in l1] == ["i1", "i3", "i4"]

    active = await items.where("list_id").equals("L1").and_(lambda r: r["deleted_at"] is None).to_list()
    assert [r["id"] for r in active] == ["i1", "i4"]

    both = await items.where("list_id").any_of(["L2", "L1"]).to_list()
    assert [r["id"] for r in both] == ["i1", "i2", "i3", "i4"]

    first = await items.where("list_id").equals("L2").first()
    assert first is not None and first["id"] == "i2"
    assert await items.where("list_id").equals("nope").first() is None
    assert await items.where("list_id").any_of([]).count() == 0

    by_order = await items.where("list_id").equals("L1").sort_by("sort_order")
    assert [r["id"] for r in by_order] == ["i3", "i1", "i4"]

    # None is an indexable value (active records)
    not_deleted = await items.where("deleted_at").equals(None).to_list()
    assert [r["id"] for r in not_deleted] == ["i1", "i2", "i4"]


@pytest.mark.asyncio
async def test_indexes_follow_updates_and_deletes() -> None:
    """Changing an indexed field moves the record between buckets."""

    engine = StorageEngine()
    lists = engine.table(TABLE_LISTS)
    await lists.put({"id": "a", "created_by": "u1", "is_locked": False})
    await lists.put({"id": "b", "created_by": "u1", "is_locked": False})

    await lists.update("a", {"is_locked": True})
    assert [r["id"] for r in await lists.where("is_locked").equals(True).to_list()] == ["a"]
    assert [r["id"] for r in await lists.where("is_locked").equals(False).to_list()] == ["b"]

    await lists.delete("b")
    assert await lists.where("created_by").equals("u1").count() == 1


@pytest.mark.asyncio
async def test_unindexed_field_and_unknown_table_raise() -> None:
    engine = StorageEngine()
    with pytest.raises(StorageError):
        await engine.table(TABLE_ITEMS).where("unit").equals("kg").to_list()
    with pytest.raises(StorageError):
        engine.table("nope")

    # The primary key is always queryable
    await engine.table(TABLE_ITEMS).put(_item("i1", "L1", 1000))
    found = await engine.table(TABLE_ITEMS).where("id").any_of(["i1", "zz"]).to_list()
    assert [r["id"] for r in found] == ["i1"]


@pytest.mark.asyncio
async def test_results_are_copies() -> None:
    """Mutating a returned record never changes table state."""

    table = Table("things", indexes=("name",))
    record = {"id": "a", "name": "Milk", "tags": ["x"]}
    await table.put(record)
    record["tags"].append("y")

    fetched = await table.get("a")
    assert fetched["tags"] == ["x"]
    fetched["name"] = "Changed"
    assert (await table.get("a"))["name"] == "Milk"
    assert await table.where("name").equals("Changed").count() == 0


@pytest.mark.asyncio
async def test_export_and_load_roundtrip_rebuilds_indexes() -> None:
    """A loaded engine answers the same index queries as the original."""

    engine = StorageEngine()
    items = engine.table(TABLE_ITEMS)
    await items.put(_item("i1", "L1", 1000))
    await items.put(_item("i2", "L1", 2000))
    assert engine.generation == EXPECTED_BOTH

    state = engine.export_state()
    assert set(state["tables"]) == set(engine.table_names)

    restored = StorageEngine.from_state(state)
    assert restored.generation == 0
    assert restored.get_counts()[TABLE_ITEMS] == EXPECTED_BOTH
    found = await restored.table(TABLE_ITEMS).where("list_id").equals("L1").to_list()
    assert [r["id"] for r in found] == ["i1", "i2"]


@pytest.mark.asyncio
async def test_load_state_tolerates_missing_and_malformed_tables() -> None:
    engine = StorageEngine.from_state(
        {"tables": {TABLE_ITEMS: {"i1": _item("i1", "L1", 1000), "bad": "oops"}, TABLE_LISTS: []}}
    )
    assert engine.get_counts()[TABLE_ITEMS] == 1
    assert engine.get_counts()[TABLE_LISTS] == 0

    empty = StorageEngine.from_state({})
    assert sum(empty.get_counts().values()) == 0
