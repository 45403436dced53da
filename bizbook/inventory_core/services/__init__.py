"""
Relationship-aware services.

Each service runs one repository write together with its inventory
adjustments and relationship upkeep in a single transaction, retried on
optimistic-lock conflicts.
"""

from .items import ItemService
from .purchases import PurchaseService
from .sales import SaleService

__all__ = ["ItemService", "PurchaseService", "SaleService"]
