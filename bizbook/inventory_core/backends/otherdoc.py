"""
Non-transactional document store backend.

Collections are held in process memory and, when a data directory is
configured, mirrored to one JSON file per collection after every write.
The store has no native transactions: every write applies immediately and
the transaction handle is a CompensationLog of reversals that rollback
replays in reverse order.

Invariants:
    - Writes are visible to every reader as soon as they return (no isolation)
    - Unique indexes are checked on insert and replace
    - Rollback undoes every logged write or raises PartialRollbackError
      naming each reversal that failed
    - Records are copied on the way in and out; callers never share state
      with the store

How to change safely:
    - Keep the on-disk format a plain JSON list per collection
    - Compensation entries must be recorded before the write they reverse
      can fail half-way
"""

from __future__ import annotations

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..config import OtherDocConfig
from ..errors import BackendUnavailableError, ConflictError, PartialRollbackError
from ..repositories.filters import (
    QueryOptions,
    apply_options,
    get_path,
    is_missing,
    matches,
    matches_text,
    parse_filter,
    parse_options,
)
from ..schema.compilers import CollectionSpec, compile_collection
from ..schema.registry import get_registry
from ..schema.types import EntityDef
from ..transactions.handles import CompensationLog, TransactionHandle, TransactionStatus
from ..transactions.retry import RetryPolicy
from .base import ConnectionGate

logger = logging.getLogger(__name__)

DEFAULT_SORT = (("createdAt", False), ("id", False))


class OtherDocCollection:
    """In-process Collection for one entity."""

    def __init__(self, backend: OtherDocBackend, entity: EntityDef) -> None:
        self.backend = backend
        self.entity = entity
        self.spec: CollectionSpec = compile_collection(entity)
        self.records: Dict[str, dict] = {}

    @property
    def name(self) -> str:
        return self.spec.name

    def _check_unique(self, record: dict) -> None:
        for index_name, paths in self.spec.unique_keys.items():
            key = [get_path(record, p) for p in paths]
            if any(is_missing(v) or v is None for v in key):
                continue
            for other in self.records.values():
                if other["id"] == record["id"]:
                    continue
                if [get_path(other, p) for p in paths] == key:
                    raise ConflictError(
                        f"Duplicate key on {self.name}.{index_name}",
                        retryable=False,
                        details={"index": index_name, "existing_id": other["id"]},
                    )

    def _log(self, txn: Optional[TransactionHandle], operation: str, record_id: str,
             before: Optional[dict]) -> None:
        if isinstance(txn, CompensationLog) and txn.is_pending:
            txn.record(self.name, operation, record_id, copy.deepcopy(before))

    async def get(self, record_id: str, txn: Optional[TransactionHandle] = None) -> Optional[dict]:
        await self.backend.ready()
        record = self.records.get(record_id)
        return copy.deepcopy(record) if record is not None else None

    async def find(
        self,
        filter: Optional[Dict[str, Any]] = None,
        options: Optional[Dict[str, Any]] = None,
        txn: Optional[TransactionHandle] = None,
    ) -> List[dict]:
        await self.backend.ready()
        conditions = parse_filter(filter)
        opts = parse_options(options)
        hits = [copy.deepcopy(r) for r in self.records.values() if matches(r, conditions)]
        return apply_options(hits, QueryOptions(opts.limit, opts.skip, opts.sort or DEFAULT_SORT))

    async def count(
        self, filter: Optional[Dict[str, Any]] = None, txn: Optional[TransactionHandle] = None
    ) -> int:
        await self.backend.ready()
        conditions = parse_filter(filter)
        return sum(1 for r in self.records.values() if matches(r, conditions))

    async def group_count(self, path: str) -> Dict[str, int]:
        await self.backend.ready()
        counts: Dict[str, int] = {}
        for record in self.records.values():
            value = get_path(record, path)
            if is_missing(value) or value is None:
                continue
            counts[value] = counts.get(value, 0) + 1
        return counts

    async def insert(self, record: dict, txn: Optional[TransactionHandle] = None) -> dict:
        await self.backend.ready()
        if record["id"] in self.records:
            raise ConflictError(f"Duplicate id on {self.name}", retryable=False)
        self._check_unique(record)
        self._log(txn, "insert", record["id"], None)
        self.records[record["id"]] = copy.deepcopy(record)
        self.backend.persist(self)
        return record

    async def replace(
        self,
        record: dict,
        expected: Optional[Dict[str, Any]] = None,
        txn: Optional[TransactionHandle] = None,
    ) -> Optional[dict]:
        await self.backend.ready()
        current = self.records.get(record["id"])
        if current is None:
            return None
        for name, value in (expected or {}).items():
            if current.get(name) != value:
                raise ConflictError(
                    f"{self.entity.name} {record['id']} was modified concurrently",
                    retryable=True,
                    details={"field": name},
                )
        self._check_unique(record)
        self._log(txn, "replace", record["id"], current)
        self.records[record["id"]] = copy.deepcopy(record)
        self.backend.persist(self)
        return record

    async def remove(self, record_id: str, txn: Optional[TransactionHandle] = None) -> bool:
        await self.backend.ready()
        current = self.records.get(record_id)
        if current is None:
            return False
        self._log(txn, "remove", record_id, current)
        del self.records[record_id]
        self.backend.persist(self)
        return True

    async def search(self, text: str, options: Optional[Dict[str, Any]] = None) -> List[dict]:
        records = await self.find()
        hits = [r for r in records if matches_text(r, text, self.spec.searchable)]
        return apply_options(hits, parse_options(options))

    def undo(self, operation: str, record_id: str, before: Optional[dict]) -> None:
        """Reverse one logged write."""
        if operation == "insert":
            self.records.pop(record_id, None)
        else:
            self.records[record_id] = copy.deepcopy(before)
        self.backend.persist(self)


class OtherDocBackend:
    """Compensation-based implementation of the Backend protocol."""

    name = "otherdoc"

    def __init__(self, config: OtherDocConfig, connect_policy: Optional[RetryPolicy] = None) -> None:
        self.config = config
        self._collections: dict[str, OtherDocCollection] = {}
        self._by_name: dict[str, OtherDocCollection] = {}
        self._gate = ConnectionGate(self._open, connect_policy or RetryPolicy.never(), self.name)

    @property
    def data_dir(self) -> Optional[Path]:
        return Path(self.config.data_dir) if self.config.data_dir else None

    async def _open(self) -> None:
        for entity in get_registry().entities():
            self.collection(entity)
        if self.data_dir is None:
            return
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BackendUnavailableError(f"Cannot create {self.data_dir}: {e}", self.name) from e
        for collection in self._collections.values():
            self._load(collection)

    def _load(self, collection: OtherDocCollection) -> None:
        path = self.data_dir / f"{collection.name}.json"
        if not path.exists():
            return
        try:
            records = json.loads(path.read_text())
        except (OSError, ValueError) as e:
            raise BackendUnavailableError(f"Cannot read {path}: {e}", self.name) from e
        collection.records = {r["id"]: r for r in records}
        logger.debug("Loaded collection", extra={"collection": collection.name, "count": len(records)})

    def persist(self, collection: OtherDocCollection) -> None:
        """Write a collection's file (no-op for in-memory stores)."""
        if self.data_dir is None:
            return
        path = self.data_dir / f"{collection.name}.json"
        tmp = path.with_suffix(".json.tmp")
        try:
            tmp.write_text(json.dumps(list(collection.records.values())))
            os.replace(tmp, path)
        except OSError as e:
            raise BackendUnavailableError(f"Cannot write {path}: {e}", self.name) from e

    async def connect(self) -> None:
        await self._gate.wait()
        logger.info(
            "Document store ready",
            extra={"data_dir": self.config.data_dir or "memory://"},
        )

    async def ready(self) -> None:
        await self._gate.wait()

    async def close(self) -> None:
        self._gate.reset()
        logger.info("Document store closed")

    async def health_check(self) -> Dict[str, Any]:
        await self._gate.wait()
        return {
            "provider": self.name,
            "status": "ok",
            "collections": {c.name: len(c.records) for c in self._collections.values()},
        }

    def collection(self, entity: EntityDef) -> OtherDocCollection:
        existing = self._collections.get(entity.name)
        if existing is None:
            existing = OtherDocCollection(self, entity)
            self._collections[entity.name] = existing
            self._by_name[existing.name] = existing
            if self._gate.connected and self.data_dir is not None:
                self._load(existing)
        return existing

    async def begin(self) -> CompensationLog:
        await self._gate.wait()
        return CompensationLog()

    async def commit(self, txn: TransactionHandle) -> None:
        if not isinstance(txn, CompensationLog) or not txn.is_pending:
            return
        txn.entries.clear()
        txn.status = TransactionStatus.COMMITTED

    async def rollback(self, txn: TransactionHandle) -> None:
        if not isinstance(txn, CompensationLog) or not txn.is_pending:
            return
        failures: List[Dict[str, Any]] = []
        for entry in reversed(txn.entries):
            collection = self._by_name.get(entry.collection)
            try:
                if collection is None:
                    raise BackendUnavailableError(f"Unknown collection {entry.collection}", self.name)
                collection.undo(entry.operation, entry.record_id, entry.before_image)
            except BackendUnavailableError as e:
                failures.append(
                    {
                        "collection": entry.collection,
                        "operation": entry.operation,
                        "id": entry.record_id,
                        "error": str(e),
                    }
                )
        txn.entries.clear()
        if failures:
            txn.status = TransactionStatus.ERROR
            logger.error(
                "Rollback left writes in place",
                extra={"txn_id": txn.id, "failures": failures},
            )
            raise PartialRollbackError(failures)
        txn.status = TransactionStatus.ABORTED

    def is_active(self, txn: TransactionHandle) -> bool:
        return isinstance(txn, CompensationLog) and txn.is_pending
