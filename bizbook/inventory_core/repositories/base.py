"""
Backend-agnostic entity repository.

A repository pairs one EntityDef with the Collection the configured backend
hands out for it. It owns every schema concern (ids, timestamps, defaults,
pre-save hooks, validation) so that the three backends only ever store
records that already passed EntityDef.validate().

Invariants:
    - create() assigns id, createdAt and updatedAt; callers cannot set
      createdAt or updatedAt
    - update() merges a patch into the stored record and re-validates the
      whole result; updatedAt strictly increases on every update
    - A call without an explicit handle joins the coordinator's active
      transaction, if any

How to change safely:
    - Entity-specific queries belong in the subclasses, not here
    - Keep this class free of backend imports
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from ..errors import ValidationError
from ..schema.types import EntityDef, now_iso

if TYPE_CHECKING:
    from ..backends.base import Backend, Collection
    from ..transactions.coordinator import TransactionCoordinator
    from ..transactions.handles import TransactionHandle

logger = logging.getLogger(__name__)


def next_timestamp(previous: Optional[str]) -> str:
    """now_iso(), nudged forward so it sorts after `previous`."""
    now = now_iso()
    if previous and now <= previous:
        try:
            bumped = datetime.fromisoformat(previous) + timedelta(microseconds=1)
        except ValueError:
            return now
        return bumped.isoformat()
    return now


class BaseRepository:
    """CRUD over one entity.

    Subclasses set `entity` and add entity-specific queries.

    Example:
        >>> items = ItemRepository(backend, coordinator)
        >>> item = await items.create({"name": "Oak board", "quantity": 10})
        >>> await items.update(item["id"], {"quantity": 12})
    """

    entity: EntityDef

    def __init__(
        self,
        backend: Backend,
        coordinator: Optional[TransactionCoordinator] = None,
    ) -> None:
        self.backend = backend
        self.coordinator = coordinator
        self.collection: Collection = backend.collection(self.entity)

    @property
    def entity_type(self) -> str:
        return self.entity.name

    def _txn(self, txn: Optional[TransactionHandle]) -> Optional[TransactionHandle]:
        if txn is not None:
            return txn
        if self.coordinator is not None:
            return self.coordinator.current()
        return None

    def _validate(self, record: Dict[str, Any]) -> None:
        ok, errors = self.entity.validate(record)
        if not ok:
            raise ValidationError(f"{self.entity.name} validation failed", errors=errors)

    # -- reads ----------------------------------------------------------------

    async def find_all(
        self,
        filter: Optional[Dict[str, Any]] = None,
        options: Optional[Dict[str, Any]] = None,
        txn: Optional[TransactionHandle] = None,
    ) -> List[dict]:
        return await self.collection.find(filter, options, self._txn(txn))

    async def find_by_id(
        self, record_id: str, txn: Optional[TransactionHandle] = None
    ) -> Optional[dict]:
        if not record_id:
            return None
        return await self.collection.get(record_id, self._txn(txn))

    async def find_by_ids(
        self, ids: List[str], txn: Optional[TransactionHandle] = None
    ) -> List[dict]:
        """Records for the given ids, in input order; missing ids are skipped."""
        unique_ids = list(dict.fromkeys(i for i in ids if i))
        records = await asyncio.gather(*(self.find_by_id(i, txn) for i in unique_ids))
        return [r for r in records if r is not None]

    async def find_one(
        self, filter: Dict[str, Any], txn: Optional[TransactionHandle] = None
    ) -> Optional[dict]:
        records = await self.find_all(filter, {"limit": 1}, txn)
        return records[0] if records else None

    async def count(
        self, filter: Optional[Dict[str, Any]] = None, txn: Optional[TransactionHandle] = None
    ) -> int:
        return await self.collection.count(filter, self._txn(txn))

    async def search(self, text: str, options: Optional[Dict[str, Any]] = None) -> List[dict]:
        return await self.collection.search(text, options)

    async def find_by_query(self, query: Optional[Dict[str, Any]] = None) -> List[dict]:
        """Run a `{"filter": ..., "options": ...}` query."""
        query = query or {}
        return await self.find_all(query.get("filter"), query.get("options"))

    # -- writes ---------------------------------------------------------------

    async def create(self, data: Dict[str, Any], txn: Optional[TransactionHandle] = None) -> dict:
        """Validate and insert a new record.

        Raises:
            ValidationError: If the record fails schema validation
            ConflictError: If a unique index already holds the key
        """
        payload = {k: v for k, v in data.items() if k not in ("createdAt", "updatedAt")}
        record = self.entity.prepare(payload, creating=True)
        record["id"] = payload.get("id") or uuid.uuid4().hex
        now = now_iso()
        record["createdAt"] = now
        record["updatedAt"] = now
        record = {k: v for k, v in record.items() if v is not None}
        self._validate(record)
        await self.collection.insert(record, self._txn(txn))
        logger.debug(
            "Record created", extra={"entity": self.entity.name, "record_id": record["id"]}
        )
        return record

    async def update(
        self,
        record_id: str,
        patch: Dict[str, Any],
        txn: Optional[TransactionHandle] = None,
        expected: Optional[Dict[str, Any]] = None,
    ) -> Optional[dict]:
        """Merge a patch into a stored record.

        Args:
            record_id: Id of the record to update
            patch: Fields to set (None removes a field)
            txn: Transaction handle (defaults to the active one)
            expected: Field values the stored record must still hold

        Returns:
            The updated record, or None if it does not exist

        Raises:
            ConflictError: (retryable) if `expected` no longer holds
        """
        handle = self._txn(txn)
        current = await self.collection.get(record_id, handle)
        if current is None:
            return None
        merged = dict(current)
        for key, value in patch.items():
            if key in ("id", "createdAt", "updatedAt"):
                continue
            merged[key] = value
        record = self.entity.prepare(merged, creating=False)
        record = {k: v for k, v in record.items() if v is not None}
        record["id"] = current["id"]
        record["createdAt"] = current["createdAt"]
        record["updatedAt"] = next_timestamp(current.get("updatedAt"))
        self._validate(record)
        return await self.collection.replace(record, expected, handle)

    async def delete(self, record_id: str, txn: Optional[TransactionHandle] = None) -> bool:
        return await self.collection.remove(record_id, self._txn(txn))
