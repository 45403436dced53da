"""
Integration tests for the collection contract, run against every backend.

Each test runs once per provider (SQLite document store, DynamoDB over the
client double, in-process document store) and must behave identically.
"""

import asyncio

import pytest

from bizbook.inventory_core.errors import ConflictError, ValidationError
from bizbook.inventory_core.repositories import ItemRepository, RelationshipRepository
from bizbook.inventory_core.repositories.cache import CachedRepository
from bizbook.inventory_core.schema import ITEM


def record(record_id, created, **fields):
    data = {"id": record_id, "name": record_id, "createdAt": created, "updatedAt": created}
    data.update(fields)
    return data


@pytest.fixture
def items(backend, coordinator):
    return ItemRepository(backend, coordinator)


class TestCollectionContract:
    """Tests for the Collection operations every backend implements."""

    @pytest.mark.asyncio
    async def test_default_order(self, backend):
        """Unsorted reads come back by createdAt, then id."""
        items = backend.collection(ITEM)
        await items.insert(record("b", "2024-01-02T00:00:00+00:00"))
        await items.insert(record("c", "2024-01-01T00:00:00+00:00"))
        await items.insert(record("a", "2024-01-02T00:00:00+00:00"))

        assert [r["id"] for r in await items.find()] == ["c", "a", "b"]

    @pytest.mark.asyncio
    async def test_operators(self, backend):
        """The filter vocabulary matches the same records everywhere."""
        items = backend.collection(ITEM)
        await items.insert(
            record("a", "2024-01-01T00:00:00+00:00", category="lumber", quantity=5, tags=["hard"])
        )
        await items.insert(
            record("b", "2024-01-02T00:00:00+00:00", category="glue", quantity=15)
        )
        await items.insert(
            record("c", "2024-01-03T00:00:00+00:00", category="lumber", quantity=0, sku="X")
        )

        async def ids(filter, options=None):
            return [r["id"] for r in await items.find(filter, options)]

        assert await ids({"category": "lumber"}) == ["a", "c"]
        assert await ids({"quantity": {"$gt": 0, "$lte": 5}}) == ["a"]
        assert await ids({"category": {"$in": ["glue", "paint"]}}) == ["b"]
        assert await ids({"sku": {"$exists": True}}) == ["c"]
        assert await ids({"sku": None}) == ["a", "b"]
        assert await ids(None, {"sort": "-quantity", "limit": 2}) == ["b", "a"]
        assert await ids(None, {"sort": "quantity", "skip": 1}) == ["a", "b"]
        assert await items.count({"category": "lumber"}) == 2
        assert await items.group_count("category") == {"lumber": 2, "glue": 1}

    @pytest.mark.asyncio
    async def test_nested_paths(self, backend):
        """Dotted paths reach into embedded objects."""
        items = backend.collection(ITEM)
        await items.insert(
            record("a", "2024-01-01T00:00:00+00:00", derivedFrom={"item": "src", "weight": 2})
        )
        await items.insert(record("b", "2024-01-02T00:00:00+00:00"))

        assert [r["id"] for r in await items.find({"derivedFrom.item": "src"})] == ["a"]
        assert [r["id"] for r in await items.find({"derivedFrom.weight": {"$gte": 2}})] == ["a"]

    @pytest.mark.asyncio
    async def test_search(self, backend):
        """Search is case-insensitive over searchable fields."""
        items = backend.collection(ITEM)
        await items.insert(record("a", "2024-01-01T00:00:00+00:00", name="Walnut slab"))
        await items.insert(record("b", "2024-01-02T00:00:00+00:00", name="Pine", sku="WAL-9"))
        await items.insert(record("c", "2024-01-03T00:00:00+00:00", name="Oak"))

        assert [r["id"] for r in await items.search("wal")] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_floats_round_trip(self, backend):
        """Fractional values are stored without drift."""
        items = backend.collection(ITEM)
        await items.insert(record("a", "2024-01-01T00:00:00+00:00", weight=0.1, cost=7.25))

        stored = await items.get("a")

        assert stored["weight"] == 0.1
        assert stored["cost"] == 7.25


class TestRepositoryParity:
    """Tests for repository behavior over every backend."""

    @pytest.mark.asyncio
    async def test_crud(self, items):
        """Create, read, update and delete behave the same on every backend."""
        item = await items.create({"name": "Oak", "quantity": 3, "sku": "OAK"})

        updated = await items.update(item["id"], {"quantity": 4})
        assert updated["quantity"] == 4
        assert (await items.find_by_sku("OAK"))["id"] == item["id"]
        assert await items.delete(item["id"]) is True
        assert await items.find_by_id(item["id"]) is None

    @pytest.mark.asyncio
    async def test_unique_sku(self, items):
        """Duplicate SKUs are rejected everywhere."""
        await items.create({"name": "A", "sku": "S1"})

        with pytest.raises(ConflictError):
            await items.create({"name": "B", "sku": "S1"})

    @pytest.mark.asyncio
    async def test_sku_freed_by_delete(self, items):
        """A deleted item's SKU can be reused."""
        item = await items.create({"name": "A", "sku": "S1"})
        await items.delete(item["id"])

        again = await items.create({"name": "B", "sku": "S1"})

        assert again["sku"] == "S1"

    @pytest.mark.asyncio
    async def test_validation(self, items):
        """Schema violations never reach the backend."""
        with pytest.raises(ValidationError):
            await items.create({"name": "A", "trackingType": "weight", "weight": -1})

        assert await items.count() == 0

    @pytest.mark.asyncio
    async def test_duplicate_relationship(self, backend, coordinator):
        """The relationship 5-tuple is unique on every backend."""
        relationships = RelationshipRepository(backend, coordinator)
        edge = {
            "primaryId": "p1",
            "primaryType": "Purchase",
            "secondaryId": "i1",
            "secondaryType": "Item",
            "relationshipType": "purchase_item",
        }
        await relationships.create(edge)

        with pytest.raises(ConflictError):
            await relationships.create(edge)
        assert await relationships.count() == 1


class TestTransactions:
    """Tests for commit and rollback through the coordinator on every backend."""

    @pytest.mark.asyncio
    async def test_commit(self, items, coordinator):
        """Committed writes are visible afterwards."""
        async def work(txn):
            a = await items.create({"name": "A", "quantity": 1}, txn)
            return await items.update(a["id"], {"quantity": 2}, txn)

        result = await coordinator.with_transaction(work)

        assert (await items.find_by_id(result["id"]))["quantity"] == 2

    @pytest.mark.asyncio
    async def test_rollback(self, items, coordinator):
        """Every write of a failed transaction is undone."""
        existing = await items.create({"name": "Keep", "quantity": 1})

        with pytest.raises(RuntimeError):
            async with coordinator.transaction() as txn:
                await items.create({"name": "Gone"}, txn)
                await items.update(existing["id"], {"quantity": 9}, txn)
                await items.delete(existing["id"], txn)
                raise RuntimeError("abort")

        assert [r["name"] for r in await items.find_all()] == ["Keep"]
        assert (await items.find_by_id(existing["id"]))["quantity"] == 1

    @pytest.mark.asyncio
    async def test_reads_see_own_writes(self, items, coordinator):
        """Inside a transaction, reads reflect the transaction's writes."""
        async with coordinator.transaction() as txn:
            item = await items.create({"name": "A", "sku": "S1"}, txn)
            await items.update(item["id"], {"quantity": 5}, txn)

            assert (await items.find_by_id(item["id"], txn))["quantity"] == 5
            assert (await items.find_by_sku("S1", txn))["id"] == item["id"]



class TestCachedReads:
    """Tests for the read-through cache racing a transaction on every backend."""

    async def read_during(self, coordinator, cached, item_id, fail):
        """Read item_id from another task while a transaction sets quantity 99."""
        start, done = asyncio.Event(), asyncio.Event()
        seen = {}

        async def reader():
            await start.wait()
            seen["during"] = (await cached.find_by_id(item_id))["quantity"]
            done.set()

        # created before the scope opens, so it does not inherit the handle
        task = asyncio.create_task(reader())
        try:
            async with coordinator.transaction() as txn:
                await cached.update(item_id, {"quantity": 99}, txn)
                start.set()
                await done.wait()
                if fail:
                    raise RuntimeError("abort")
        except RuntimeError:
            pass
        await task
        return seen["during"]

    @pytest.mark.asyncio
    async def test_commit_is_visible_after_concurrent_read(self, items, coordinator):
        """A read racing the transaction does not pin the old value."""
        cached = CachedRepository(items, ttl=60)
        item = await cached.create({"name": "Oak", "quantity": 10})
        await cached.find_by_id(item["id"])

        during = await self.read_during(coordinator, cached, item["id"], fail=False)

        assert during in (10, 99)
        assert (await cached.find_by_id(item["id"]))["quantity"] == 99

    @pytest.mark.asyncio
    async def test_rollback_is_visible_after_concurrent_read(self, items, coordinator):
        """A read racing a rolled-back transaction does not pin its write."""
        cached = CachedRepository(items, ttl=60)
        item = await cached.create({"name": "Oak", "quantity": 10})

        during = await self.read_during(coordinator, cached, item["id"], fail=True)

        assert during in (10, 99)
        assert (await cached.find_by_id(item["id"]))["quantity"] == 10
