"""
Read-through cache for repositories.

CachedRepository wraps any repository and memoizes an allow-list of read
methods for a fixed TTL. Writes pass through to the wrapped repository and
then invalidate what they touched; writes made under a transaction
invalidate again once that transaction commits or rolls back.

Invariants:
    - Keys are `method:` + the JSON of the call arguments
    - A read that carries a transaction handle, or runs while a transaction
      is active, bypasses the cache in both directions
    - After a write, no cached entry whose arguments mention the written id
      survives, and cached list queries are dropped
    - While a transaction holds an uncommitted write, reads of that id (and
      all list queries) are not stored
    - A read that overlaps any invalidation is not stored
    - Cached values are copied on the way out

The cache is local to one wrapper instance; nothing is shared across
processes.
"""

from __future__ import annotations

import copy
import json
import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ..transactions.handles import TransactionHandle

logger = logging.getLogger(__name__)

DEFAULT_METHODS = ("find_by_id", "find_all")
ID_WRITERS = ("create", "update", "delete", "add_maintenance_record")
BULK_WRITERS = (
    "delete_by_primary",
    "delete_by_secondary",
    "delete_all_for_entity",
    "update_edges",
    "convert_legacy_relationships",
)
ID_READ_PREFIX = "find_by_id:"


class CachedRepository:
    """Caching decorator around a repository.

    Example:
        >>> items = CachedRepository(ItemRepository(backend, coordinator), ttl=60)
        >>> await items.find_by_id(item_id)   # backend read
        >>> await items.find_by_id(item_id)   # served from cache
        >>> await items.update(item_id, {"price": 3})  # invalidates item_id
    """

    def __init__(
        self,
        repository: Any,
        methods: Iterable[str] = DEFAULT_METHODS,
        ttl: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.repository = repository
        self.methods = tuple(methods)
        self.ttl = ttl
        self._clock = clock
        self._cache: Dict[str, Tuple[Any, float]] = {}
        # (record id or None for bulk writes, handle) per uncommitted write
        self._open_writes: List[Tuple[Optional[str], TransactionHandle]] = []
        self._generation = 0

    def __getattr__(self, name: str) -> Any:
        target = getattr(self.repository, name)
        if not callable(target):
            return target
        if name in self.methods:
            return self._cached(name, target)
        if name in ID_WRITERS:
            return self._invalidating(target)
        if name in BULK_WRITERS:
            return self._clearing(target)
        return target

    def _handle(self, args: tuple, kwargs: dict) -> Optional[TransactionHandle]:
        for value in list(args) + [kwargs.get("txn")]:
            if isinstance(value, TransactionHandle):
                return value
        coordinator = getattr(self.repository, "coordinator", None)
        return coordinator.current() if coordinator is not None else None

    def _in_transaction(self, args: tuple, kwargs: dict) -> bool:
        if kwargs.get("txn") is not None:
            return True
        return self._handle(args, kwargs) is not None

    @staticmethod
    def cache_key(method: str, args: tuple, kwargs: dict) -> str:
        payload = list(args) + ([kwargs] if kwargs else [])
        return f"{method}:{json.dumps(payload, sort_keys=True, default=str)}"

    def _storable(self, key: str) -> bool:
        self._open_writes = [(i, txn) for i, txn in self._open_writes if txn.is_pending]
        if not self._open_writes:
            return True
        if not key.startswith(ID_READ_PREFIX):
            return False
        return not any(i is None or json.dumps(i) in key for i, _ in self._open_writes)

    def _cached(self, name: str, target: Callable) -> Callable:
        async def call(*args: Any, **kwargs: Any) -> Any:
            if self._in_transaction(args, kwargs):
                return await target(*args, **kwargs)
            key = self.cache_key(name, args, kwargs)
            hit = self._cache.get(key)
            if hit is not None and self._clock() - hit[1] < self.ttl:
                return copy.deepcopy(hit[0])
            generation = self._generation
            value = await target(*args, **kwargs)
            if generation == self._generation and self._storable(key):
                self._cache[key] = (copy.deepcopy(value), self._clock())
            return value

        return call

    def _track(self, record_id: Optional[str], txn: Optional[TransactionHandle]) -> None:
        if txn is None or not txn.is_pending:
            return
        entry = (record_id, txn)
        self._open_writes.append(entry)

        def finished() -> None:
            if entry in self._open_writes:
                self._open_writes.remove(entry)
            if record_id is None:
                self.clear_cache()
            else:
                self.invalidate(record_id)
                self._drop_list_queries()

        txn.after_finish(finished)

    def _invalidating(self, target: Callable) -> Callable:
        async def call(*args: Any, **kwargs: Any) -> Any:
            txn = self._handle(args, kwargs)
            self._generation += 1
            result = await target(*args, **kwargs)
            record_id: Optional[str] = None
            if args and isinstance(args[0], str):
                record_id = args[0]
            elif isinstance(result, dict):
                record_id = result.get("id")
            if record_id:
                self.invalidate(record_id)
            self._drop_list_queries()
            self._track(record_id, txn)
            return result

        return call

    def _clearing(self, target: Callable) -> Callable:
        async def call(*args: Any, **kwargs: Any) -> Any:
            txn = self._handle(args, kwargs)
            self._generation += 1
            result = await target(*args, **kwargs)
            self.clear_cache()
            self._track(None, txn)
            return result

        return call

    def _drop_list_queries(self) -> None:
        self._generation += 1
        for key in [k for k in self._cache if not k.startswith(ID_READ_PREFIX)]:
            del self._cache[key]

    def invalidate(self, id_or_record: Any) -> None:
        """Drop every entry whose key mentions the id."""
        record_id = id_or_record.get("id") if isinstance(id_or_record, dict) else id_or_record
        if not record_id:
            return
        self._generation += 1
        needle = json.dumps(str(record_id))
        for key in [k for k in self._cache if needle in k]:
            del self._cache[key]

    def clear_cache(self) -> None:
        self._generation += 1
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)
