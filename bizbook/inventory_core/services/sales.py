"""
Sale service.

A sale weighs on inventory with its footprint: per line, what was sold
minus what was refunded. A fully refunded sale has no footprint. Every
change to a sale reverts the old footprint and applies the new one, so a
partial refund gives back exactly the refunded delta.

Invariants:
    - The sale write, the item adjustments and the sale_item edges commit
      together or not at all
    - No item axis goes below zero after a sale is applied
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from ..errors import NotFoundError, ValidationError
from ..inventory.mutations import group_lines, sale_footprint
from ..repositories.relationships import measurements_from, ref_id
from ..transactions.coordinator import TransactionOptions
from ..transactions.handles import TransactionHandle
from ..transactions.retry import RetryPolicy

if TYPE_CHECKING:
    from ..inventory.mutations import InventoryMutationEngine
    from ..repositories.relationships import RelationshipRepository
    from ..repositories.sales import SaleRepository
    from ..transactions.coordinator import TransactionCoordinator

logger = logging.getLogger(__name__)


def sale_item_details(lines: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """sale_item edge fields per item id, summed over the item's lines."""
    groups, _, _ = group_lines(lines, "sale")
    details: Dict[str, Dict[str, Any]] = {}
    for line in lines or []:
        item_id = ref_id(line.get("item"))
        if not item_id or item_id in details:
            continue
        details[item_id] = {
            "measurements": {
                **measurements_from(line),
                **measurements_from(groups[item_id].totals),
            },
            "saleItemAttributes": {
                "priceAtSale": line.get("priceAtSale") or 0,
                "soldBy": line.get("soldBy") or "quantity",
            },
        }
    return details


def refund_changes(sale: Dict[str, Any], refunds: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Lines and status of a sale after adding per-line refunded amounts.

    Raises:
        ValidationError: If a refund names a line the sale does not have
    """
    lines = [dict(line) for line in sale.get("items") or []]
    for refund in refunds:
        index = refund.get("index")
        if not isinstance(index, int) or not 0 <= index < len(lines):
            raise ValidationError(f"No sale line at index {index}", errors=["refunds.index"])
        line = lines[index]
        line["refundedQuantity"] = (line.get("refundedQuantity") or 0) + (refund.get("quantity") or 0)
        line["refundedWeight"] = (line.get("refundedWeight") or 0) + (refund.get("weight") or 0)
    fully = all(
        (line.get("refundedQuantity") or 0) >= (line.get("quantity") or 0)
        and (line.get("refundedWeight") or 0) >= (line.get("weight") or 0)
        for line in lines
    )
    return {"items": lines, "status": "refunded" if fully else "partially_refunded"}


class SaleService:
    """Relationship- and inventory-aware sale operations."""

    def __init__(
        self,
        sales: SaleRepository,
        relationships: RelationshipRepository,
        engine: InventoryMutationEngine,
        coordinator: TransactionCoordinator,
    ) -> None:
        self.sales = sales
        self.relationships = relationships
        self.engine = engine
        self.coordinator = coordinator

    def _options(self, label: str) -> TransactionOptions:
        return TransactionOptions(retry_policy=RetryPolicy.for_conflicts(), label=label)

    async def _sync_edges(
        self,
        sale_id: str,
        old_lines: List[Dict[str, Any]],
        new_lines: List[Dict[str, Any]],
        txn: TransactionHandle,
    ) -> None:
        old_ids = [ref_id(line.get("item")) for line in old_lines or []]
        details = sale_item_details(new_lines)
        await self.relationships.update_edges(
            old_ids,
            details.keys(),
            sale_id,
            "sale_item",
            anchor_type="Sale",
            neighbor_type="Item",
            details=details,
            txn=txn,
        )

    async def create(self, data: Dict[str, Any]) -> dict:
        """Create a sale and take its footprint out of inventory."""

        async def work(txn: TransactionHandle) -> dict:
            sale = await self.sales.create({**data, "inventoryApplied": False}, txn)
            await self.engine.apply_sale(sale_footprint(sale), txn)
            await self._sync_edges(sale["id"], [], sale.get("items") or [], txn)
            return await self.sales.update(
                sale["id"],
                {"inventoryApplied": True},
                txn,
                expected={"updatedAt": sale["updatedAt"]},
            )

        sale = await self.coordinator.with_transaction(work, self._options("create_sale"))
        logger.info(
            "Sale created",
            extra={"sale_id": sale["id"], "lines": len(sale.get("items") or [])},
        )
        return sale

    async def update(self, sale_id: str, patch: Dict[str, Any]) -> dict:
        """Update a sale: revert the old footprint, apply the new one.

        Raises:
            NotFoundError: If the sale does not exist
        """
        return await self._change(sale_id, lambda current: patch, "update_sale")

    async def _change(
        self,
        sale_id: str,
        build: Callable[[Dict[str, Any]], Dict[str, Any]],
        label: str,
    ) -> dict:
        """Patch a sale with build(current sale), read under the transaction."""

        async def work(txn: TransactionHandle) -> dict:
            current = await self.sales.find_by_id(sale_id, txn)
            if current is None:
                raise NotFoundError("Sale", sale_id)
            changes = {k: v for k, v in build(current).items() if k != "inventoryApplied"}
            if "items" in changes:
                changes.setdefault("subtotal", None)
                changes.setdefault("total", None)
            changes["inventoryApplied"] = True
            updated = await self.sales.update(
                sale_id, changes, txn, expected={"updatedAt": current["updatedAt"]}
            )
            old_footprint = sale_footprint(current) if current.get("inventoryApplied") else []
            await self.engine.update_sale(old_footprint, sale_footprint(updated), txn)
            await self._sync_edges(
                sale_id, current.get("items") or [], updated.get("items") or [], txn
            )
            return updated

        return await self.coordinator.with_transaction(work, self._options(label))

    async def refund(self, sale_id: str, refunds: Optional[List[Dict[str, Any]]] = None) -> dict:
        """Refund a sale fully, or per line.

        Args:
            sale_id: Sale to refund
            refunds: Per-line {"index", "quantity", "weight"} amounts to add to
                what was already refunded; None refunds everything

        Raises:
            NotFoundError: If the sale does not exist
        """
        if refunds is None:
            return await self._change(sale_id, lambda current: {"status": "refunded"}, "refund_sale")
        return await self._change(
            sale_id, lambda current: refund_changes(current, refunds), "refund_sale"
        )

    async def delete(self, sale_id: str) -> bool:
        """Delete a sale, giving its footprint back to inventory.

        Raises:
            NotFoundError: If the sale does not exist
        """

        async def work(txn: TransactionHandle) -> bool:
            current = await self.sales.find_by_id(sale_id, txn)
            if current is None:
                raise NotFoundError("Sale", sale_id)
            if current.get("inventoryApplied"):
                await self.engine.revert_sale(sale_footprint(current), txn)
            await self.relationships.delete_all_for_entity(sale_id, "Sale", txn)
            return await self.sales.delete(sale_id, txn)

        deleted = await self.coordinator.with_transaction(work, self._options("delete_sale"))
        logger.info("Sale deleted", extra={"sale_id": sale_id})
        return deleted
