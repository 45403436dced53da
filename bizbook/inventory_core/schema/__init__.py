"""
Schema module for the inventory core.

This module provides the backend-neutral entity declarations:
- Type definitions (EntityDef, FieldDef, IndexDef)
- The built-in entities and the relationship combination table
- Schema registry with fingerprinting
- Per-backend compilers

Invariants:
    - Every backend validates through EntityDef.validate()
    - All entities must be registered before the backend connects

How to change safely:
    - Add optional fields or fields with defaults
    - Never rename an index a deployed backend already created
"""

from .entities import (
    ALL_ENTITIES,
    ASSET,
    AXES,
    ENTITY_TYPES,
    ITEM,
    PURCHASE,
    RELATIONSHIP,
    RELATIONSHIP_TYPES,
    SALE,
    is_valid_entity_combination,
)
from .registry import SchemaRegistry, get_registry, reset_registry
from .types import EntityDef, FieldDef, FieldKind, IndexDef, field, now_iso

__all__ = [
    # Types
    "EntityDef",
    "FieldDef",
    "FieldKind",
    "IndexDef",
    "field",
    "now_iso",
    # Entities
    "ALL_ENTITIES",
    "ITEM",
    "PURCHASE",
    "SALE",
    "ASSET",
    "RELATIONSHIP",
    "AXES",
    "ENTITY_TYPES",
    "RELATIONSHIP_TYPES",
    "is_valid_entity_combination",
    # Registry
    "SchemaRegistry",
    "get_registry",
    "reset_registry",
]
