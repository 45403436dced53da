"""
Schema registry for the inventory core.

The SchemaRegistry is the central authority for entity definitions.
It provides:
- Registration of entity definitions
- Lookup by entity name or collection name
- Schema fingerprinting for consistency checks
- Freeze mechanism to prevent runtime modifications

Invariants:
    - Registry is mutable during startup, frozen before serving
    - Once frozen, no new entities can be registered
    - Entity names and collection names are globally unique
    - Fingerprint changes when the schema changes

How to change safely:
    - Register every entity before calling freeze()
    - Never modify registered entities after freeze

Example:
    >>> registry = SchemaRegistry()
    >>> registry.register(ITEM)
    >>> registry.freeze()
    'sha256:...'
    >>> registry.get("Item").collection
    'items'
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from typing import Dict, Iterator, Optional

from .types import EntityDef

logger = logging.getLogger(__name__)

# Global registry instance
_global_registry: Optional[SchemaRegistry] = None
_registry_lock = threading.Lock()


class RegistryFrozenError(Exception):
    """Raised when attempting to modify a frozen registry."""


class DuplicateRegistrationError(Exception):
    """Raised when attempting to register a duplicate entity or collection."""


class SchemaRegistry:
    """Central registry for all entity definitions.

    Thread-safety:
        - Registration is thread-safe (uses internal lock)
        - Lookups after freeze are lock-free
        - Freeze is atomic and irreversible

    Attributes:
        frozen: Whether the registry is frozen (immutable)
        fingerprint: SHA-256 hash of the schema (computed on freeze)
    """

    def __init__(self) -> None:
        """Initialize an empty, mutable registry."""
        self._entities: Dict[str, EntityDef] = {}
        self._by_collection: Dict[str, EntityDef] = {}
        self._frozen = False
        self._fingerprint: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def frozen(self) -> bool:
        """Whether the registry is frozen."""
        return self._frozen

    @property
    def fingerprint(self) -> Optional[str]:
        """Schema fingerprint (available after freeze)."""
        return self._fingerprint

    def register(self, entity: EntityDef) -> None:
        """Register an entity definition.

        Raises:
            RegistryFrozenError: If registry is frozen
            DuplicateRegistrationError: If the name or collection is taken
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError(
                    f"Cannot register entity '{entity.name}': registry is frozen"
                )
            if entity.name in self._entities:
                raise DuplicateRegistrationError(f"Entity '{entity.name}' already registered")
            if entity.collection in self._by_collection:
                existing = self._by_collection[entity.collection]
                raise DuplicateRegistrationError(
                    f"Collection '{entity.collection}' already used by '{existing.name}'"
                )

            self._entities[entity.name] = entity
            self._by_collection[entity.collection] = entity
            logger.debug(
                "Registered entity",
                extra={"entity": entity.name, "collection": entity.collection},
            )

    def get(self, name: str) -> Optional[EntityDef]:
        """Get an entity by name (Item, Purchase, ...)."""
        return self._entities.get(name)

    def get_by_collection(self, collection: str) -> Optional[EntityDef]:
        """Get an entity by its collection name."""
        return self._by_collection.get(collection)

    def entities(self) -> Iterator[EntityDef]:
        """Iterate over all registered entities."""
        yield from self._entities.values()

    def freeze(self) -> str:
        """Freeze the registry and compute fingerprint.

        Returns:
            Schema fingerprint string

        Raises:
            RegistryFrozenError: If already frozen
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError("Registry is already frozen")

            self._fingerprint = self._compute_fingerprint()
            self._frozen = True
            logger.info(
                "Schema registry frozen",
                extra={"entities": len(self._entities), "fingerprint": self._fingerprint},
            )
            return self._fingerprint

    def _compute_fingerprint(self) -> str:
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return f"sha256:{hashlib.sha256(canonical.encode('utf-8')).hexdigest()}"

    def to_dict(self) -> dict:
        """Registry as a dictionary, entities sorted by name."""
        return {
            "entities": [self._entities[name].to_dict() for name in sorted(self._entities)]
        }


def get_registry() -> SchemaRegistry:
    """Get the global schema registry.

    Created on first use, pre-populated with the built-in entities.
    """
    global _global_registry
    with _registry_lock:
        if _global_registry is None:
            from .entities import ALL_ENTITIES

            registry = SchemaRegistry()
            for entity in ALL_ENTITIES:
                registry.register(entity)
            _global_registry = registry
        return _global_registry


def reset_registry() -> None:
    """Reset the global registry (for testing only)."""
    global _global_registry
    with _registry_lock:
        _global_registry = None
