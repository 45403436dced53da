"""
Transaction module for the inventory core.

Provides the handle variants, the retry policy and the coordinator that
scopes units of work over the configured backend.

Invariants:
    - One active handle per task tree; nested scopes join it
    - Retries happen only in the outermost scope
"""

from .coordinator import TransactionCoordinator, TransactionOptions
from .handles import (
    Compensation,
    CompensationLog,
    NativeSession,
    PendingBatch,
    TransactionHandle,
    TransactionStatus,
    WriteOp,
)
from .retry import RetryPolicy

__all__ = [
    "TransactionCoordinator",
    "TransactionOptions",
    "TransactionHandle",
    "TransactionStatus",
    "NativeSession",
    "PendingBatch",
    "WriteOp",
    "CompensationLog",
    "Compensation",
    "RetryPolicy",
]
