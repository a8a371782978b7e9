import pydantic
import pytest

from entity_snapshots import EntityRef, is_readonly, sqlite_snapshot_factory
from entity_snapshots.exceptions import ReconciliationError, ValidationError, VersionNotFoundError

from conftest import Customer, LineItem, Order


async def live_state(snapshots):
    entities = snapshots.entities
    order = await entities.get_entity("Order", "1")
    lines = await entities.find_by("LineItem", order_id=1)
    return order.model_dump() if order else None, sorted((l.id, l.qty) for l in lines)


@pytest.mark.asyncio
async def test_create_version_captures_owner_and_children(snapshots):
    entities = snapshots.entities
    order = await entities.save(Order(id=1, total=10))
    await entities.save(LineItem(id=5, order_id=1, qty=2))
    await entities.save(LineItem(id=6, order_id=1, qty=3))
    creator = await entities.save(Customer(id=42, name="Ada"))

    version = await snapshots.create_version(order, "v1", metadata={"Reason": "checkout"}, creator=creator)

    assert version.owner == EntityRef(entity_type="Order", entity_id="1")
    assert version.creator == EntityRef(entity_type="Customer", entity_id="42")
    assert version.metadata["reason"] == "checkout"

    items = await snapshots.get_items(version)
    assert [(i.item_type, i.item_id, i.group_tag) for i in items] == [
        ("Order", "1", None),
        ("LineItem", "5", "lines"),
        ("LineItem", "6", "lines"),
    ]
    assert all(i.version_id == version.id for i in items)

    stored = await snapshots.get_version(version.id)
    assert stored.identifier == "v1"
    assert stored.metadata == {"Reason": "checkout"}
    assert stored.creator == version.creator
    assert stored.created_at == version.created_at


@pytest.mark.asyncio
async def test_identifier_is_unique_per_owner(snapshots):
    entities = snapshots.entities
    first = await entities.save(Order(id=1, total=10))
    second = await entities.save(Order(id=2, total=20))

    await snapshots.create_version(first, "v1")
    with pytest.raises(ValidationError, match="already taken"):
        await snapshots.create_version(first, "v1")

    # The same identifier is fine for a different owner.
    await snapshots.create_version(second, "v1")
    assert len(await snapshots.list_versions(first)) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("identifier", ["", "   ", None])
async def test_identifier_is_required(snapshots, identifier):
    order = await snapshots.entities.save(Order(id=1, total=10))
    with pytest.raises(ValidationError):
        await snapshots.create_version(order, identifier)
    assert await snapshots.list_versions(order) == []


@pytest.mark.asyncio
async def test_owner_is_required(snapshots):
    with pytest.raises(ValidationError):
        await snapshots.create_version(None, "v1")
    with pytest.raises(ValidationError):
        await snapshots.create_version(EntityRef(entity_type="Order", entity_id="1"), "v1")


@pytest.mark.asyncio
async def test_unregistered_owner_is_a_validation_error(snapshots):
    class Stranger(pydantic.BaseModel):
        id: int

    with pytest.raises(ValidationError, match="not registered"):
        await snapshots.create_version(Stranger(id=1), "v1")


@pytest.mark.asyncio
async def test_restore_scenario(snapshots, order_v1):
    entities = snapshots.entities

    assert await snapshots.restore(order_v1) is True

    assert (await entities.get_entity("Order", "1")).total == 10
    assert await entities.get_entity("LineItem", "7") is None
    assert (await entities.get_entity("LineItem", "5")).qty == 2
    assert (await entities.get_entity("LineItem", "6")).qty == 3


@pytest.mark.asyncio
async def test_restore_leaves_exactly_the_captured_children(snapshots, order_v1):
    await snapshots.restore(order_v1)

    order = await snapshots.entities.get_entity("Order", "1")
    live = await snapshots.entities.children_of(order)
    live_keys = {snapshots.registry.ref_of(r).key for r in live["lines"].records}
    captured_keys = {i.key for i in await snapshots.get_items(order_v1) if i.group_tag == "lines"}
    assert live_keys == captured_keys


@pytest.mark.asyncio
async def test_restore_is_idempotent(snapshots, order_v1):
    await snapshots.restore(order_v1)
    once = await live_state(snapshots)

    await snapshots.restore(order_v1)
    assert await live_state(snapshots) == once
    assert once == ({"id": 1, "customer_id": None, "total": 10}, [(5, 2), (6, 3)])


@pytest.mark.asyncio
async def test_failed_restore_changes_nothing(snapshots, order_v1, monkeypatch):
    before = await live_state(snapshots)
    original_upsert = snapshots.entities.upsert_entity

    async def upsert_entity(entity_type, entity_id, attributes):
        if (entity_type, entity_id) == ("LineItem", "6"):
            raise RuntimeError("disk full")
        return await original_upsert(entity_type, entity_id, attributes)

    monkeypatch.setattr(snapshots.entities, "upsert_entity", upsert_entity)

    with pytest.raises(ReconciliationError) as exc_info:
        await snapshots.restore(order_v1)

    assert (exc_info.value.item_type, exc_info.value.item_id) == ("LineItem", "6")
    # Neither the deletion of line 7 nor the upserts of order 1 and line 5 survived.
    assert await live_state(snapshots) == before
    assert before == ({"id": 1, "customer_id": None, "total": 99}, [(5, 8), (7, 1)])


@pytest.mark.asyncio
async def test_restore_recreates_a_deleted_owner(snapshots, order_v1):
    await snapshots.entities.delete_entity("Order", "1")

    await snapshots.restore(order_v1)

    assert (await snapshots.entities.get_entity("Order", "1")).total == 10
    # Without a live owner there were no children to prune.
    assert (await snapshots.entities.get_entity("LineItem", "7")) is not None


@pytest.mark.asyncio
async def test_reify_scenario(snapshots, order_v1):
    primary, children = await snapshots.reify(order_v1)

    assert primary.model_dump() == {"id": 1, "customer_id": None, "total": 10}
    assert [line.model_dump() for line in children["lines"]] == [
        {"id": 5, "order_id": 1, "qty": 2},
        {"id": 6, "order_id": 1, "qty": 3},
    ]
    assert is_readonly(primary)
    assert all(is_readonly(line) for line in children["lines"])
    with pytest.raises(pydantic.ValidationError):
        children["lines"][0].qty = 100

    # Reification never touches live data.
    assert (await snapshots.entities.get_entity("Order", "1")).total == 99


@pytest.mark.asyncio
async def test_list_and_find_versions(snapshots):
    order = await snapshots.entities.save(Order(id=1, total=10))
    v1 = await snapshots.create_version(order, "v1")
    v2 = await snapshots.create_version(order, "v2")

    assert [v.id for v in await snapshots.list_versions(order)] == [v1.id, v2.id]
    assert (await snapshots.find_version(order, "v2")).id == v2.id
    assert await snapshots.find_version(order, "v3") is None
    ref = EntityRef(entity_type="Order", entity_id=1)
    assert [v.identifier for v in await snapshots.list_versions(ref)] == ["v1", "v2"]


@pytest.mark.asyncio
async def test_update_metadata(snapshots):
    order = await snapshots.entities.save(Order(id=1, total=10))
    version = await snapshots.create_version(order, "v1", metadata={"reason": "draft"})

    updated = await snapshots.update_metadata(version, {"reason": "final", "tags": ["a"]})

    assert updated.metadata["REASON"] == "final"
    stored = await snapshots.get_version(version.id)
    assert stored.metadata == {"reason": "final", "tags": ["a"]}
    assert stored.identifier == "v1"


@pytest.mark.asyncio
async def test_delete_version_cascades_to_items(snapshots):
    order = await snapshots.entities.save(Order(id=1, total=10))
    await snapshots.entities.save(LineItem(id=5, order_id=1, qty=2))
    version = await snapshots.create_version(order, "v1")

    await snapshots.delete_version(version)

    assert await snapshots.get_items(version) == []
    with pytest.raises(VersionNotFoundError):
        await snapshots.get_version(version.id)
    with pytest.raises(VersionNotFoundError):
        await snapshots.delete_version(version)
    # The identifier can be reused once the version is gone.
    await snapshots.create_version(order, "v1")


@pytest.mark.asyncio
async def test_versions_persist_across_sessions(registry, db_path):
    async with sqlite_snapshot_factory(db_path, registry) as snapshots:
        order = await snapshots.entities.save(Order(id=1, total=10))
        await snapshots.entities.save(LineItem(id=5, order_id=1, qty=2))
        version = await snapshots.create_version(order, "v1")
        await snapshots.entities.save(Order(id=1, total=50))

    async with sqlite_snapshot_factory(db_path, registry) as snapshots:
        stored = await snapshots.get_version(version.id)
        primary, children = await snapshots.reify(stored)
        assert primary.total == 10
        assert [line.qty for line in children["lines"]] == [2]

        await snapshots.restore(stored)
        assert (await snapshots.entities.get_entity("Order", "1")).total == 10
