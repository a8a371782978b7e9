import os
import tempfile

from pydantic import BaseModel
import pytest
from pytest_asyncio import fixture

from entity_snapshots import ChildGroup, TypeRegistry, sqlite_snapshot_factory


class Customer(BaseModel):
    id: int
    name: str


class Order(BaseModel):
    id: int
    customer_id: int | None = None
    total: int


class LineItem(BaseModel):
    id: int
    order_id: int
    qty: int


async def order_children(order, entities):
    return {"lines": ChildGroup(records=await entities.find_by("LineItem", order_id=order.id))}


def make_registry() -> TypeRegistry:
    registry = TypeRegistry()
    registry.register(Customer)
    registry.register(Order, belongs_to=[Customer], children=order_children)
    registry.register(LineItem, belongs_to=[Order])
    return registry


@pytest.fixture
def registry():
    return make_registry()


@pytest.fixture
def db_path():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield os.path.join(tmpdir, "snapshots.db")


@fixture
async def snapshots(registry, db_path):
    """A SnapshotStore on a fresh file database for each test."""
    async with sqlite_snapshot_factory(db_path, registry) as store:
        yield store


async def seed_order_v1(snapshots):
    """
    Order 1 with line items 5 and 6, captured as version "v1", then edited:
    the total and line 5 change, line 6 is removed and line 7 is added.
    """
    entities = snapshots.entities
    order = await entities.save(Order(id=1, total=10))
    await entities.save(LineItem(id=5, order_id=1, qty=2))
    await entities.save(LineItem(id=6, order_id=1, qty=3))

    version = await snapshots.create_version(order, "v1", metadata={"reason": "checkout"})

    await entities.save(Order(id=1, total=99))
    await entities.save(LineItem(id=5, order_id=1, qty=8))
    await entities.delete_entity("LineItem", "6")
    await entities.save(LineItem(id=7, order_id=1, qty=1))
    return version


@fixture
async def order_v1(snapshots):
    return await seed_order_v1(snapshots)
