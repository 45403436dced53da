"""
Purchase repository.

Purchase numbers follow `P{yy}{mm}-{nnnn}`: a per-month sequence derived
from the highest number already issued for the month of `purchaseDate`.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..schema.entities import PURCHASE
from ..schema.types import now_iso
from ..transactions.handles import TransactionHandle
from .base import BaseRepository


def month_prefix(letter: str, iso_date: Optional[str]) -> str:
    """`P2410-` style prefix for a document number."""
    stamp = iso_date or now_iso()
    return f"{letter}{stamp[2:4]}{stamp[5:7]}-"


async def next_document_number(
    repository: BaseRepository,
    field_name: str,
    prefix: str,
    txn: Optional[TransactionHandle] = None,
) -> str:
    """Next `prefix` + 4-digit sequence number for a numbered document."""
    latest = await repository.find_all(
        {field_name: {"$gte": prefix, "$lt": prefix + "~"}},
        {"sort": f"-{field_name}", "limit": 1},
        txn,
    )
    sequence = 0
    if latest:
        tail = str(latest[0][field_name])[len(prefix):]
        sequence = int(tail) if tail.isdigit() else 0
    return f"{prefix}{sequence + 1:04d}"


class PurchaseRepository(BaseRepository):
    """Purchases, with document numbering and supplier/date lookups."""

    entity = PURCHASE

    async def next_purchase_number(
        self, purchase_date: Optional[str] = None, txn: Optional[TransactionHandle] = None
    ) -> str:
        return await next_document_number(
            self, "purchaseNumber", month_prefix("P", purchase_date), txn
        )

    async def create(self, data: Dict[str, Any], txn: Optional[TransactionHandle] = None) -> dict:
        if not data.get("purchaseNumber"):
            number = await self.next_purchase_number(data.get("purchaseDate"), txn)
            data = {**data, "purchaseNumber": number}
        return await super().create(data, txn)

    async def find_by_supplier(self, supplier_name: str) -> List[dict]:
        return await self.find_all({"supplier.name": supplier_name}, {"sort": "-purchaseDate"})

    async def find_by_status(self, status: str) -> List[dict]:
        return await self.find_all({"status": status})

    async def find_by_date_range(self, start: str, end: str) -> List[dict]:
        """Purchases with start <= purchaseDate <= end."""
        return await self.find_all(
            {"purchaseDate": {"$gte": start, "$lte": end}}, {"sort": "purchaseDate"}
        )

    async def find_containing_item(
        self, item_id: str, txn: Optional[TransactionHandle] = None
    ) -> List[dict]:
        """Purchases with at least one line for an item."""
        purchases = await self.find_all(None, None, txn)
        return [
            p for p in purchases
            if any(line.get("item") == item_id for line in p.get("items") or [])
        ]

