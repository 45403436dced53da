"""
Inventory rebuild.

Recomputes an item's authoritative axis from history instead of trusting
the running total:

    axis = max(0, sum(received purchase lines) - sum(sale footprints))

Only purchases in an applied status (received, partially_received) count;
sales count with their footprint, so refunded sales count for nothing.
Cost and price come from the item's line on the most recent counted
purchase (costPerUnit, else totalCost / axis amount).

Each item is rebuilt in its own transaction so one bad item does not
block the others.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from ..errors import NotFoundError
from ..repositories.relationships import ref_id
from ..schema.entities import PURCHASE_APPLIED_STATUSES
from ..schema.types import now_iso
from ..transactions.coordinator import TransactionOptions
from ..transactions.handles import TransactionHandle
from ..transactions.retry import RetryPolicy
from .mutations import clean_amount, group_lines, sale_footprint

if TYPE_CHECKING:
    from ..repositories.items import ItemRepository
    from ..repositories.purchases import PurchaseRepository
    from ..repositories.sales import SaleRepository
    from ..transactions.coordinator import TransactionCoordinator

logger = logging.getLogger(__name__)

COUNTED_SALE_STATUSES = ("completed", "partially_refunded")


def _line_cost(line: Dict[str, Any], axis: str) -> Optional[float]:
    if line.get("costPerUnit"):
        return line["costPerUnit"]
    amount = line.get(axis) or 0
    if line.get("totalCost") and amount > 0:
        return clean_amount(line["totalCost"] / amount)
    return None


class InventoryRebuilder:
    """Recomputes item inventory from purchase and sale history."""

    def __init__(
        self,
        items: ItemRepository,
        purchases: PurchaseRepository,
        sales: SaleRepository,
        coordinator: TransactionCoordinator,
    ) -> None:
        self.items = items
        self.purchases = purchases
        self.sales = sales
        self.coordinator = coordinator

    async def rebuild_item_inventory(self, item_id: str) -> Dict[str, Any]:
        """Rebuild one item.

        Returns:
            {"itemId", "name", "sku", "updated", "changes"} where changes maps
            each changed field to {"from", "to"}

        Raises:
            NotFoundError: If the item does not exist
        """

        async def work(txn: TransactionHandle) -> Dict[str, Any]:
            return await self._rebuild(item_id, txn)

        return await self.coordinator.with_transaction(
            work,
            TransactionOptions(retry_policy=RetryPolicy.for_conflicts(), label="rebuild_item"),
        )

    async def _rebuild(self, item_id: str, txn: TransactionHandle) -> Dict[str, Any]:
        item = await self.items.find_by_id(item_id, txn)
        if item is None:
            raise NotFoundError("Item", item_id)

        axis = item.get("trackingType") or "quantity"
        purchases = [
            p for p in await self.purchases.find_all(
                {"status": {"$in": list(PURCHASE_APPLIED_STATUSES)}}, None, txn
            )
            if any(ref_id(line.get("item")) == item_id for line in p.get("items") or [])
        ]
        sales = await self.sales.find_all(
            {"status": {"$in": list(COUNTED_SALE_STATUSES)}}, None, txn
        )

        received = 0.0
        for purchase in purchases:
            groups, _, _ = group_lines(purchase.get("items") or [], "purchase")
            if item_id in groups:
                received += groups[item_id].amount(axis)

        sold = 0.0
        for sale in sales:
            groups, _, _ = group_lines(sale_footprint(sale), "sale")
            if item_id in groups:
                sold += groups[item_id].amount(axis)

        result: Dict[str, Any] = {
            "itemId": item_id,
            "name": item.get("name"),
            "sku": item.get("sku"),
            "updated": False,
            "changes": {},
        }
        patch: Dict[str, Any] = {}

        rebuilt = clean_amount(max(0.0, received - sold))
        if rebuilt != (item.get(axis) or 0):
            patch[axis] = rebuilt
            result["changes"][axis] = {"from": item.get(axis), "to": rebuilt}

        if purchases:
            latest = max(purchases, key=lambda p: p.get("purchaseDate") or "")
            line = next(
                (l for l in latest.get("items") or [] if ref_id(l.get("item")) == item_id),
                None,
            )
            cost = _line_cost(line, axis) if line else None
            if cost is not None and cost != item.get("cost"):
                patch["cost"] = cost
                result["changes"]["cost"] = {
                    "from": item.get("cost"),
                    "to": cost,
                    "source": latest["id"],
                }
                if cost != item.get("price"):
                    patch["price"] = cost
                    result["changes"]["price"] = {"from": item.get("price"), "to": cost}

        if patch:
            patch["lastUpdated"] = now_iso()
            await self.items.update(item_id, patch, txn, expected={"updatedAt": item["updatedAt"]})
            result["updated"] = True
        return result

    async def rebuild_inventory(self, batch_size: int = 50) -> Dict[str, Any]:
        """Rebuild every item, `batch_size` items at a time.

        Items within a batch run concurrently. A failing item is counted in
        `errors` and reported in `details`; it never stops the run.

        Returns:
            {"processed", "updated", "errors", "details"}
        """
        items = await self.items.find_all()
        results: Dict[str, Any] = {"processed": 0, "updated": 0, "errors": 0, "details": []}

        for start in range(0, len(items), batch_size):
            batch = items[start:start + batch_size]
            outcomes = await asyncio.gather(
                *(self.rebuild_item_inventory(item["id"]) for item in batch),
                return_exceptions=True,
            )
            for item, outcome in zip(batch, outcomes):
                if isinstance(outcome, Exception):
                    logger.error(
                        "Inventory rebuild failed for item",
                        extra={"item_id": item["id"], "error": str(outcome)},
                    )
                    results["errors"] += 1
                    results["details"].append(
                        {"itemId": item["id"], "name": item.get("name"), "error": str(outcome)}
                    )
                    continue
                if isinstance(outcome, BaseException):
                    raise outcome
                results["processed"] += 1
                if outcome["updated"]:
                    results["updated"] += 1
                    results["details"].append(outcome)
            logger.info(
                "Inventory rebuild progress",
                extra={"done": min(start + batch_size, len(items)), "total": len(items)},
            )
        return results
