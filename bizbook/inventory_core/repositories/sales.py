"""
Sale repository.

Sale numbers follow `S{yy}{mm}-{nnnn}`, numbered like purchases.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..schema.entities import SALE
from ..transactions.handles import TransactionHandle
from .base import BaseRepository
from .purchases import month_prefix, next_document_number


class SaleRepository(BaseRepository):
    """Sales, with document numbering and customer/date lookups."""

    entity = SALE

    async def next_sale_number(
        self, sale_date: Optional[str] = None, txn: Optional[TransactionHandle] = None
    ) -> str:
        return await next_document_number(self, "saleNumber", month_prefix("S", sale_date), txn)

    async def create(self, data: Dict[str, Any], txn: Optional[TransactionHandle] = None) -> dict:
        if not data.get("saleNumber"):
            data = {**data, "saleNumber": await self.next_sale_number(data.get("saleDate"), txn)}
        return await super().create(data, txn)

    async def find_by_customer_email(self, email: str) -> List[dict]:
        return await self.find_all({"customerEmail": email}, {"sort": "-createdAt"})

    async def find_by_status(self, status: str) -> List[dict]:
        return await self.find_all({"status": status})

    async def find_by_date_range(self, start: str, end: str) -> List[dict]:
        """Sales with start <= createdAt <= end."""
        return await self.find_all(
            {"createdAt": {"$gte": start, "$lte": end}}, {"sort": "createdAt"}
        )
