"""
Persistence backends for the inventory core.

Three interchangeable implementations of the Backend protocol:
- documentstore: SQLite JSON documents with native transactions
- keyvalue: DynamoDB tables with batched transactional writes
- otherdoc: in-process document store with compensating rollback

Concrete backends are imported lazily by create_backend() so that the
DynamoDB client stack is only loaded when it is configured.
"""

from .base import Backend, Collection, ConnectionGate, create_backend

__all__ = [
    "Backend",
    "Collection",
    "ConnectionGate",
    "create_backend",
]
