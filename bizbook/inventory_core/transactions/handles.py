"""
Transaction handles.

A handle is the opaque scope object produced by Backend.begin() and
consumed by commit()/rollback(). There is one variant per backend family:

- NativeSession: a SQLite writer connection inside BEGIN IMMEDIATE
- PendingBatch: buffered DynamoDB writes flushed by one TransactWriteItems
- CompensationLog: reversals for a store that writes immediately

Invariants:
    - A handle leaves PENDING exactly once
    - PendingBatch keeps one operation per (table, key); a later write
      replaces the earlier one but keeps the earlier condition, since the
      condition describes the stored state the batch started from
    - CompensationLog entries are replayed in reverse insertion order
    - Finish callbacks run once, after the handle commits or rolls back
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional


class TransactionStatus(Enum):
    """Lifecycle of a transaction handle."""

    PENDING = "pending"
    COMMITTED = "committed"
    ABORTED = "aborted"
    ERROR = "error"


@dataclass
class TransactionHandle:
    """Fields shared by every handle variant.

    Attributes:
        id: Unique handle id (for logs)
        label: Caller-supplied name of the unit of work
        status: Current lifecycle state
    """

    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    label: str = ""
    status: TransactionStatus = TransactionStatus.PENDING
    finish_callbacks: list[Callable[[], Any]] = field(
        default_factory=list, repr=False, compare=False
    )

    kind = "handle"

    @property
    def is_pending(self) -> bool:
        return self.status == TransactionStatus.PENDING

    def after_finish(self, callback: Callable[[], Any]) -> None:
        """Register a callback for when the handle leaves its scope."""
        self.finish_callbacks.append(callback)

    def run_finish_callbacks(self) -> None:
        callbacks, self.finish_callbacks = self.finish_callbacks, []
        for callback in callbacks:
            callback()


@dataclass
class NativeSession(TransactionHandle):
    """SQLite session: the writer connection with an open transaction."""

    connection: Any = None

    kind = "native_session"


@dataclass
class WriteOp:
    """One buffered DynamoDB write.

    Attributes:
        action: "Put" or "Delete"
        table: Table name
        key: Primary key value (`id`, or `pk` for guard rows)
        item: Full attribute map for Put (plain Python values)
        condition: ConditionExpression, if any
        names: ExpressionAttributeNames for the condition
        values: ExpressionAttributeValues for the condition (plain values)
        conflict_retryable: Whether a failed condition is a lost update
            (True) or a uniqueness violation (False)
    """

    action: str
    table: str
    key: str
    item: Optional[dict[str, Any]] = None
    condition: Optional[str] = None
    names: dict[str, str] = field(default_factory=dict)
    values: dict[str, Any] = field(default_factory=dict)
    conflict_retryable: bool = True


@dataclass
class PendingBatch(TransactionHandle):
    """Buffered writes for the key-value backend.

    Attributes:
        limit: Backend cap on operations in one transactional write
    """

    limit: int = 100
    operations: dict[tuple[str, str], WriteOp] = field(default_factory=dict)

    kind = "pending_batch"

    def add(self, op: WriteOp) -> None:
        """Buffer a write, coalescing with any earlier write to the same key."""
        slot = (op.table, op.key)
        previous = self.operations.get(slot)
        if previous is not None:
            op.condition = previous.condition
            op.names = previous.names
            op.values = previous.values
            op.conflict_retryable = previous.conflict_retryable
        # reassigning an existing key keeps its original position
        self.operations[slot] = op

    def lookup(self, table: str, key: str) -> tuple[bool, Optional[dict[str, Any]]]:
        """Read-your-writes overlay.

        Returns:
            (True, record) for a buffered put, (True, None) for a buffered
            delete, (False, None) if the batch has not touched the key
        """
        op = self.operations.get((table, key))
        if op is None:
            return False, None
        if op.action == "Delete":
            return True, None
        return True, op.item

    def touched(self, table: str) -> dict[str, Optional[dict[str, Any]]]:
        """All keys of a table written by this batch (None for deletes)."""
        return {
            key: (op.item if op.action == "Put" else None)
            for (op_table, key), op in self.operations.items()
            if op_table == table
        }

    def __len__(self) -> int:
        return len(self.operations)


@dataclass
class Compensation:
    """Reversal of one immediate write.

    Attributes:
        collection: Collection the write touched
        operation: "insert", "replace" or "remove" (the original write)
        record_id: Affected record id
        before_image: Record before the write (None for inserts)
    """

    collection: str
    operation: str
    record_id: str
    before_image: Optional[dict[str, Any]] = None


@dataclass
class CompensationLog(TransactionHandle):
    """Reversal log for the non-transactional document store."""

    entries: list[Compensation] = field(default_factory=list)

    kind = "compensation_log"

    def record(
        self,
        collection: str,
        operation: str,
        record_id: str,
        before_image: Optional[dict[str, Any]] = None,
    ) -> None:
        self.entries.append(Compensation(collection, operation, record_id, before_image))
