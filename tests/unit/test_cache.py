"""
Unit tests for the repository read-through cache.
"""

import asyncio

import pytest

from bizbook.inventory_core.repositories.cache import CachedRepository
from bizbook.inventory_core.transactions import TransactionHandle
from bizbook.inventory_core.transactions.handles import TransactionStatus


class FakeCoordinator:
    def __init__(self):
        self.active = None

    def current(self):
        return self.active


class CountingRepository:
    """Repository stub counting reads."""

    entity_type = "Item"

    def __init__(self):
        self.coordinator = FakeCoordinator()
        self.records = {"a": {"id": "a", "name": "Oak"}, "b": {"id": "b", "name": "Pine"}}
        self.reads = 0

    async def find_by_id(self, record_id, txn=None):
        self.reads += 1
        record = self.records.get(record_id)
        return dict(record) if record else None

    async def find_all(self, filter=None, options=None, txn=None):
        self.reads += 1
        return [dict(r) for r in self.records.values()]

    async def count(self, filter=None, txn=None):
        self.reads += 1
        return len(self.records)

    async def create(self, data, txn=None):
        record = dict(data, id=data.get("id", "new"))
        self.records[record["id"]] = record
        return record

    async def update(self, record_id, patch, txn=None):
        self.records[record_id].update(patch)
        return dict(self.records[record_id])

    async def delete_all_for_entity(self, entity_id, entity_type, txn=None):
        return {"asPrimary": 0, "asSecondary": 0}


class GatedRepository(CountingRepository):
    """Repository stub whose id reads wait for a gate."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()

    async def find_by_id(self, record_id, txn=None):
        record = await super().find_by_id(record_id, txn)
        await self.gate.wait()
        return record


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def repo():
    return CountingRepository()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def cached(repo, clock):
    return CachedRepository(repo, ttl=60, clock=clock)


class TestCachedRepository:
    """Tests for CachedRepository."""

    @pytest.mark.asyncio
    async def test_hit(self, cached, repo):
        """A repeated read is served from the cache."""
        first = await cached.find_by_id("a")
        second = await cached.find_by_id("a")

        assert first == second == {"id": "a", "name": "Oak"}
        assert repo.reads == 1
        assert len(cached) == 1

    @pytest.mark.asyncio
    async def test_values_are_copies(self, cached):
        """Mutating a returned value does not poison the cache."""
        record = await cached.find_by_id("a")
        record["name"] = "changed"

        assert (await cached.find_by_id("a"))["name"] == "Oak"

    @pytest.mark.asyncio
    async def test_ttl_expiry(self, cached, repo, clock):
        """Entries older than the TTL are re-read."""
        await cached.find_by_id("a")
        clock.now = 61

        await cached.find_by_id("a")

        assert repo.reads == 2

    @pytest.mark.asyncio
    async def test_methods_outside_allow_list_pass_through(self, cached, repo):
        """Only allow-listed methods are cached."""
        await cached.count()
        await cached.count()

        assert repo.reads == 2
        assert cached.entity_type == "Item"

    @pytest.mark.asyncio
    async def test_update_invalidates(self, cached, repo):
        """A write drops entries for its id and all list queries."""
        await cached.find_by_id("a")
        await cached.find_by_id("b")
        await cached.find_all()

        await cached.update("a", {"name": "White oak"})

        assert (await cached.find_by_id("a"))["name"] == "White oak"
        assert [r["name"] for r in await cached.find_all()] == ["White oak", "Pine"]
        await cached.find_by_id("b")
        assert repo.reads == 5

    @pytest.mark.asyncio
    async def test_create_drops_list_queries(self, cached, repo):
        """A create invalidates by the returned record id."""
        await cached.find_all()
        await cached.create({"id": "c", "name": "Ash"})

        assert len(await cached.find_all()) == 3

    @pytest.mark.asyncio
    async def test_bulk_writer_clears(self, cached):
        """Bulk relationship writes clear the whole cache."""
        await cached.find_by_id("a")
        await cached.find_all()

        await cached.delete_all_for_entity("a", "Item")

        assert len(cached) == 0

    @pytest.mark.asyncio
    async def test_transaction_bypass(self, cached, repo):
        """Reads inside a transaction neither use nor fill the cache."""
        await cached.find_by_id("a", txn=TransactionHandle())
        await cached.find_by_id("a", TransactionHandle())
        assert len(cached) == 0

        repo.coordinator.active = TransactionHandle()
        await cached.find_by_id("a")
        assert len(cached) == 0
        assert repo.reads == 3

    def test_cache_key(self):
        """Keys encode method and arguments."""
        assert CachedRepository.cache_key("find_by_id", ("a",), {}) == 'find_by_id:["a"]'

    @pytest.mark.asyncio
    async def test_invalidate_record(self, cached, repo):
        """invalidate() accepts a record or an id."""
        await cached.find_by_id("a")
        cached.invalidate({"id": "a"})
        await cached.find_by_id("a")

        assert repo.reads == 2


def finish(txn, status=TransactionStatus.COMMITTED):
    txn.status = status
    txn.run_finish_callbacks()


class TestCachedRepositoryTransactions:
    """Tests for writes made under a transaction."""

    @pytest.mark.asyncio
    async def test_reads_not_stored_while_write_is_open(self, cached, repo):
        """Outside reads of an id written by an open transaction are not cached."""
        txn = TransactionHandle()
        await cached.update("a", {"name": "White oak"}, txn)

        await cached.find_by_id("a")
        await cached.find_all()
        await cached.find_by_id("b")

        assert list(cached._cache) == ['find_by_id:["b"]']
        finish(txn)
        await cached.find_by_id("a")
        assert len(cached) == 1

    @pytest.mark.asyncio
    async def test_commit_invalidates_again(self, cached, repo):
        """Entries cached between the write and the commit are dropped at commit."""
        txn = TransactionHandle()
        await cached.update("a", {"name": "White oak"}, txn)
        cached._cache['find_by_id:["a"]'] = ({"id": "a", "name": "Oak"}, 0.0)

        finish(txn)

        assert len(cached) == 0
        assert (await cached.find_by_id("a"))["name"] == "White oak"

    @pytest.mark.asyncio
    async def test_rollback_invalidates(self, cached, repo):
        """A rolled-back write leaves nothing of itself in the cache."""
        txn = TransactionHandle()
        await cached.update("a", {"name": "White oak"}, txn)
        repo.records["a"]["name"] = "Oak"

        finish(txn, TransactionStatus.ABORTED)

        assert (await cached.find_by_id("a"))["name"] == "Oak"
        assert len(cached) == 1

    @pytest.mark.asyncio
    async def test_active_coordinator_handle_is_tracked(self, cached, repo):
        """Writes joining the active handle are tracked like explicit ones."""
        txn = TransactionHandle()
        repo.coordinator.active = txn
        await cached.update("a", {"name": "White oak"})
        repo.coordinator.active = None

        await cached.find_by_id("a")
        assert len(cached) == 0
        assert len(txn.finish_callbacks) == 1

    @pytest.mark.asyncio
    async def test_bulk_write_blocks_everything_until_finished(self, cached):
        """A bulk write under a transaction blocks storing any read."""
        txn = TransactionHandle()
        await cached.delete_all_for_entity("a", "Item", txn)

        await cached.find_by_id("b")
        assert len(cached) == 0

        finish(txn)
        await cached.find_by_id("b")
        assert len(cached) == 1

    @pytest.mark.asyncio
    async def test_finished_handles_stop_blocking(self, cached):
        """A handle that left PENDING without callbacks no longer blocks reads."""
        txn = TransactionHandle()
        await cached.update("a", {"name": "White oak"}, txn)
        txn.status = TransactionStatus.ABORTED

        await cached.find_by_id("a")

        assert len(cached) == 1

    @pytest.mark.asyncio
    async def test_read_overlapping_a_write_is_not_stored(self, clock):
        """A read that started before an invalidation does not store its result."""
        repo = GatedRepository()
        cached = CachedRepository(repo, ttl=60, clock=clock)

        read = asyncio.create_task(cached.find_by_id("a"))
        await asyncio.sleep(0)
        await cached.update("a", {"name": "White oak"})
        repo.gate.set()

        assert (await read)["name"] == "Oak"
        assert len(cached) == 0
