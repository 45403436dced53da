"""
Purchase service.

Orchestrates the purchase repository, the inventory mutation engine and
the relationship engine under one transaction per call.

Status lifecycle:

    pending / cancelled            inventory untouched
    received / partially_received  lines applied exactly once

`inventoryApplied` on the purchase records whether its lines currently
weigh on inventory. Every transition compares the marker with the target
status and applies, reverts or re-applies accordingly, so re-issuing the
same transition is a no-op.

Invariants:
    - The purchase write, the item adjustments, asset creation and the
      purchase_item edges commit together or not at all
    - One purchase_item edge per distinct item; its measurements are the
      sum over that item's lines
    - One purchase_asset edge per asset referenced by a line; removing the
      line removes the edge, the asset itself is kept
    - Asset lines never touch item inventory
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from ..errors import NotFoundError
from ..inventory.mutations import group_lines
from ..repositories.relationships import measurements_from, ref_id
from ..schema.entities import PURCHASE_APPLIED_STATUSES
from ..transactions.coordinator import TransactionOptions
from ..transactions.handles import TransactionHandle
from ..transactions.retry import RetryPolicy

if TYPE_CHECKING:
    from ..inventory.mutations import InventoryMutationEngine
    from ..repositories.purchases import PurchaseRepository
    from ..repositories.relationships import RelationshipRepository
    from ..transactions.coordinator import TransactionCoordinator

logger = logging.getLogger(__name__)

TOTAL_FIELDS = ("subtotal", "total")


def purchase_item_details(lines: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """purchase_item edge fields per item id, folded over the item's lines."""
    groups, _, _ = group_lines(lines, "purchase")
    first_line: Dict[str, Dict[str, Any]] = {}
    for line in lines or []:
        item_id = ref_id(line.get("item"))
        if item_id and item_id not in first_line:
            first_line[item_id] = line
    details = {}
    for item_id, group in groups.items():
        line = first_line.get(item_id, {})
        measurements = measurements_from(group.totals)
        for unit_field in ("weightUnit", "lengthUnit", "areaUnit", "volumeUnit"):
            if line.get(unit_field):
                measurements[unit_field] = line[unit_field]
        details[item_id] = {
            "measurements": measurements,
            "purchaseItemAttributes": {
                "costPerUnit": group.max_cost_per_unit,
                "totalCost": group.total_cost,
                "purchasedBy": line.get("purchasedBy") or "quantity",
                "purchaseType": "inventory",
            },
        }
    return details


def asset_ids(lines: List[Dict[str, Any]]) -> List[str]:
    """Ids of the assets referenced by a purchase's asset lines."""
    return [
        asset_id
        for asset_id in (ref_id(line.get("asset")) for line in lines or [])
        if asset_id
    ]


class PurchaseService:
    """Relationship- and inventory-aware purchase operations."""

    def __init__(
        self,
        purchases: PurchaseRepository,
        relationships: RelationshipRepository,
        engine: InventoryMutationEngine,
        coordinator: TransactionCoordinator,
    ) -> None:
        self.purchases = purchases
        self.relationships = relationships
        self.engine = engine
        self.coordinator = coordinator

    def _options(self, label: str) -> TransactionOptions:
        return TransactionOptions(retry_policy=RetryPolicy.for_conflicts(), label=label)

    async def _sync_edges(
        self,
        purchase_id: str,
        old_lines: List[Dict[str, Any]],
        new_lines: List[Dict[str, Any]],
        txn: TransactionHandle,
    ) -> Dict[str, int]:
        old_groups, _, _ = group_lines(old_lines, "purchase")
        details = purchase_item_details(new_lines)
        return await self.relationships.update_edges(
            old_groups.keys(),
            details.keys(),
            purchase_id,
            "purchase_item",
            anchor_type="Purchase",
            neighbor_type="Item",
            details=details,
            txn=txn,
        )

    async def _settle(
        self,
        purchase: Dict[str, Any],
        old_lines: List[Dict[str, Any]],
        was_applied: bool,
        txn: TransactionHandle,
    ) -> Dict[str, Any]:
        """Bring inventory, assets and edges in line with the stored purchase.

        Returns the patch (items, inventoryApplied) still to be written.
        """
        lines = purchase.get("items") or []
        should_apply = purchase.get("status") in PURCHASE_APPLIED_STATUSES

        if should_apply:
            lines = await self.engine.route_asset_lines(purchase, txn)
        if was_applied and should_apply:
            if lines != old_lines:
                await self.engine.update_purchase(old_lines, lines, txn)
        elif was_applied:
            await self.engine.revert_purchase(old_lines, txn)
        elif should_apply:
            await self.engine.apply_purchase(lines, txn)

        await self._sync_edges(purchase["id"], old_lines, lines, txn)
        await self.relationships.update_edges(
            asset_ids(old_lines),
            asset_ids(lines),
            purchase["id"],
            "purchase_asset",
            anchor_type="Purchase",
            neighbor_type="Asset",
            txn=txn,
        )
        return {"items": lines, "inventoryApplied": should_apply}

    async def create(self, data: Dict[str, Any]) -> dict:
        """Create a purchase; applies inventory if it arrives already received."""

        async def work(txn: TransactionHandle) -> dict:
            purchase = await self.purchases.create({**data, "inventoryApplied": False}, txn)
            patch = await self._settle(purchase, [], False, txn)
            if patch["items"] == purchase.get("items") and not patch["inventoryApplied"]:
                return purchase
            return await self.purchases.update(
                purchase["id"], patch, txn, expected={"updatedAt": purchase["updatedAt"]}
            )

        purchase = await self.coordinator.with_transaction(work, self._options("create_purchase"))
        logger.info(
            "Purchase created",
            extra={
                "purchase_id": purchase["id"],
                "status": purchase.get("status"),
                "inventory_applied": purchase.get("inventoryApplied"),
            },
        )
        return purchase

    async def update(self, purchase_id: str, patch: Dict[str, Any]) -> dict:
        """Update a purchase, moving inventory to match the new lines and status.

        Raises:
            NotFoundError: If the purchase does not exist
        """

        async def work(txn: TransactionHandle) -> dict:
            current = await self.purchases.find_by_id(purchase_id, txn)
            if current is None:
                raise NotFoundError("Purchase", purchase_id)
            changes = {k: v for k, v in patch.items() if k != "inventoryApplied"}
            if "items" in changes:
                for name in TOTAL_FIELDS:
                    changes.setdefault(name, None)
            staged = await self.purchases.update(
                purchase_id, changes, txn, expected={"updatedAt": current["updatedAt"]}
            )
            settled = await self._settle(
                staged, current.get("items") or [], bool(current.get("inventoryApplied")), txn
            )
            return await self.purchases.update(
                purchase_id, settled, txn, expected={"updatedAt": staged["updatedAt"]}
            )

        return await self.coordinator.with_transaction(work, self._options("update_purchase"))

    async def receive(self, purchase_id: str) -> dict:
        """Mark a purchase received; applies its lines unless already applied."""
        return await self.update(purchase_id, {"status": "received"})

    async def delete(self, purchase_id: str) -> bool:
        """Delete a purchase, reverting its inventory and removing its edges.

        Assets created from the purchase are kept.

        Raises:
            NotFoundError: If the purchase does not exist
        """

        async def work(txn: TransactionHandle) -> bool:
            current = await self.purchases.find_by_id(purchase_id, txn)
            if current is None:
                raise NotFoundError("Purchase", purchase_id)
            if current.get("inventoryApplied"):
                await self.engine.revert_purchase(current.get("items") or [], txn)
            await self.relationships.delete_all_for_entity(purchase_id, "Purchase", txn)
            return await self.purchases.delete(purchase_id, txn)

        deleted = await self.coordinator.with_transaction(work, self._options("delete_purchase"))
        logger.info("Purchase deleted", extra={"purchase_id": purchase_id})
        return deleted

    async def find_with_relationships(
        self, purchase_id: str, txn: Optional[TransactionHandle] = None
    ) -> Optional[dict]:
        purchase = await self.purchases.find_by_id(purchase_id, txn)
        if purchase is None:
            return None
        purchase["relationships"] = await self.relationships.find_all_for_entity(
            purchase_id, "Purchase", txn
        )
        return purchase
