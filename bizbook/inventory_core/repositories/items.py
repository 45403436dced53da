"""
Item repository.

Items carry the inventory measurements the mutation and derivation engines
maintain. SKUs are unique; when a caller leaves `sku` empty the repository
assigns the next 10-digit zero-padded number above the highest numeric SKU.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..schema.entities import ITEM
from ..transactions.handles import TransactionHandle
from .base import BaseRepository

SKU_WIDTH = 10


class ItemRepository(BaseRepository):
    """Items, with SKU generation and item-specific lookups."""

    entity = ITEM

    async def next_sku(self, txn: Optional[TransactionHandle] = None) -> str:
        """Next free numeric SKU."""
        numeric = await self.find_all({"sku": {"$gte": "0", "$lt": ":"}}, None, txn)
        highest = max((int(r["sku"]) for r in numeric if str(r["sku"]).isdigit()), default=0)
        return str(highest + 1).zfill(SKU_WIDTH)

    async def create(self, data: Dict[str, Any], txn: Optional[TransactionHandle] = None) -> dict:
        if not data.get("sku"):
            data = {**data, "sku": await self.next_sku(txn)}
        return await super().create(data, txn)

    async def find_by_sku(self, sku: str, txn: Optional[TransactionHandle] = None) -> Optional[dict]:
        return await self.find_one({"sku": sku}, txn)

    async def find_by_category(
        self, category: str, options: Optional[Dict[str, Any]] = None
    ) -> List[dict]:
        return await self.find_all({"category": category}, options)

    async def find_derived_from(
        self, source_id: str, txn: Optional[TransactionHandle] = None
    ) -> List[dict]:
        """Items carved out of a source item."""
        return await self.find_all({"derivedFrom.item": source_id}, None, txn)

    async def find_products_using(
        self, material_id: str, txn: Optional[TransactionHandle] = None
    ) -> List[dict]:
        """Products whose embedded components reference a material."""
        products = await self.find_all(
            {"itemType": {"$in": ["product", "both"]}}, None, txn
        )
        return [
            p for p in products
            if any(c.get("item") == material_id for c in p.get("components") or [])
        ]
