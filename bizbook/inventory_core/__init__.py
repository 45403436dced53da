"""
BizBook Inventory Core - consistency layer for a small-business inventory.

This package keeps item inventory, purchases, sales, assets and the
relationships between them consistent across three interchangeable
persistence backends:
- documentstore: SQLite JSON documents with native transactions
- keyvalue: DynamoDB tables written through TransactWriteItems
- otherdoc: an in-process store that rolls back by compensation

Architecture:
    HTTP (aiohttp)
        -> services
            -> engines (mutations, derivation, rebuild)
            -> repositories (optionally cached)
                -> backend collections
        all under the transaction coordinator

Invariants:
    - Every inventory change runs inside one transaction with the record
      write that caused it
    - Relationship 5-tuples are unique on every backend
    - Backend-native errors never leave the backends module
"""

from ._version import __version__

__all__ = ["__version__"]
