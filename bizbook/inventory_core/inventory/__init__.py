"""
Inventory engines for the inventory core.

- mutations: apply and revert purchase and sale lines against items
- derivation: carve child items out of a source item
- rebuild: recompute item inventory from purchase and sale history
"""

from .derivation import DerivationEngine
from .mutations import GroupResult, InventoryMutationEngine, LineGroup, group_lines, sale_footprint
from .rebuild import InventoryRebuilder

__all__ = [
    "InventoryMutationEngine",
    "DerivationEngine",
    "InventoryRebuilder",
    "GroupResult",
    "LineGroup",
    "group_lines",
    "sale_footprint",
]
