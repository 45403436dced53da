"""
Repository module for the inventory core.

Backend-agnostic entity repositories over the configured backend's
collections, the shared filter vocabulary and the caching decorator.
"""

from .assets import AssetRepository
from .base import BaseRepository
from .cache import CachedRepository
from .items import ItemRepository
from .purchases import PurchaseRepository
from .relationships import RelationshipRepository
from .sales import SaleRepository

__all__ = [
    "BaseRepository",
    "ItemRepository",
    "PurchaseRepository",
    "SaleRepository",
    "AssetRepository",
    "RelationshipRepository",
    "CachedRepository",
]
