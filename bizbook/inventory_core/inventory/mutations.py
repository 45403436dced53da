"""
Inventory mutation engine.

Folds purchase and sale lines into one aggregate per item and applies the
aggregate to the item's authoritative measurement axis (its trackingType)
inside the caller's transaction.

    purchase apply    new = current + sum          pricing refreshed
    purchase revert   new = max(0, current - sum)  pricing untouched
    sale apply        new = max(0, current - sum)
    sale revert       new = current + sum

Updates are conditional on the item's updatedAt, so two transactions racing
on the same item surface as a retryable ConflictError instead of a lost
update.

Invariants:
    - Every operation runs under a transaction handle (explicit or active);
      there are no stray writes outside one
    - All per-item groups finish before the first failure is re-raised
    - A line without an item, or for an item that does not exist, is
      skipped with a warning and never fails the operation
    - Asset lines never touch item inventory

How to change safely:
    - Keep apply and revert symmetric; the round trip apply -> revert must
      restore every axis
    - Pricing is derived from the lines being applied only, never from
      history
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from ..errors import ConfigurationError, TransactionRequiredError
from ..repositories.relationships import measurements_from, ref_id
from ..schema.entities import AXES
from ..schema.types import now_iso
from ..transactions.handles import TransactionHandle

if TYPE_CHECKING:
    from ..repositories.assets import AssetRepository
    from ..repositories.items import ItemRepository
    from ..repositories.relationships import RelationshipRepository
    from ..transactions.coordinator import TransactionCoordinator

logger = logging.getLogger(__name__)


@dataclass
class LineGroup:
    """Aggregate of every line for one item.

    Attributes:
        unweighted_quantity: Quantity of sale lines without a positive
            weight; a weight-tracked item gives these up by quantity
    """

    item_id: str
    totals: Dict[str, float] = field(default_factory=lambda: {axis: 0.0 for axis in AXES})
    total_cost: float = 0.0
    max_cost_per_unit: float = 0.0
    line_count: int = 0
    unweighted_quantity: float = 0.0

    def add(self, line: Dict[str, Any], kind: str = "purchase") -> None:
        for axis in AXES:
            self.totals[axis] += line.get(axis) or 0
        if kind == "sale" and not weighed(line):
            self.unweighted_quantity += line.get("quantity") or 0
        self.total_cost += line.get("totalCost") or 0
        self.max_cost_per_unit = max(self.max_cost_per_unit, line.get("costPerUnit") or 0)
        self.line_count += 1

    def amount(self, axis: str) -> float:
        return self.totals.get(axis, 0.0)


@dataclass
class GroupResult:
    """Outcome for one item group."""

    item_id: Optional[str]
    status: str
    axis: Optional[str] = None
    before: Optional[float] = None
    after: Optional[float] = None
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "itemId": self.item_id,
            "status": self.status,
            "axis": self.axis,
            "before": self.before,
            "after": self.after,
            "message": self.message,
        }


def group_lines(
    lines: List[Dict[str, Any]], kind: str = "purchase"
) -> Tuple[Dict[str, LineGroup], List[Dict[str, Any]], List[Dict[str, Any]]]:
    """Fold lines by item id.

    Returns:
        (groups by item id, lines skipped for lack of an item, asset lines)
    """
    groups: Dict[str, LineGroup] = {}
    skipped: List[Dict[str, Any]] = []
    asset_lines: List[Dict[str, Any]] = []
    for index, line in enumerate(lines or []):
        if kind == "purchase" and line.get("purchaseType") == "asset":
            asset_lines.append(line)
            continue
        item_id = ref_id(line.get("item"))
        if not item_id:
            logger.warning("Line without item skipped", extra={"kind": kind, "line": index})
            skipped.append(line)
            continue
        groups.setdefault(item_id, LineGroup(item_id)).add(line, kind)
    return groups, skipped, asset_lines


def weighed(line: Dict[str, Any]) -> bool:
    """Whether a sale line was sold by a positive weight."""
    return bool(line.get("weighed", (line.get("weight") or 0) > 0))


def sale_footprint(sale: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Lines as they currently weigh on inventory: sold minus refunded.

    A fully refunded sale has an empty footprint. Lines sold by weight
    keep `weighed` so a fully refunded weight still goes by weight.
    """
    if not sale or sale.get("status") == "refunded":
        return []
    lines = []
    for line in sale.get("items") or []:
        adjusted = dict(line)
        adjusted["quantity"] = max(0, (line.get("quantity") or 0) - (line.get("refundedQuantity") or 0))
        adjusted["weight"] = max(0, (line.get("weight") or 0) - (line.get("refundedWeight") or 0))
        adjusted["weighed"] = weighed(line)
        lines.append(adjusted)
    return lines


def clean_amount(value: float) -> float:
    rounded = round(value, 9)
    return int(rounded) if float(rounded).is_integer() else rounded


class InventoryMutationEngine:
    """Applies and reverts purchase and sale lines against item inventory.

    Example:
        >>> async with coordinator.transaction() as txn:
        ...     results = await engine.apply_purchase(purchase["items"], txn)
    """

    def __init__(
        self,
        items: ItemRepository,
        coordinator: TransactionCoordinator,
        assets: Optional[AssetRepository] = None,
        relationships: Optional[RelationshipRepository] = None,
    ) -> None:
        self.items = items
        self.coordinator = coordinator
        self.assets = assets
        self.relationships = relationships

    def _require(self, txn: Optional[TransactionHandle], operation: str) -> TransactionHandle:
        handle = txn or self.coordinator.current()
        if handle is None or not self.coordinator.is_active(handle):
            raise TransactionRequiredError(operation)
        return handle

    async def _adjust(
        self,
        group: LineGroup,
        txn: TransactionHandle,
        sign: int,
        clamp: bool,
        pricing: bool,
        kind: str,
    ) -> GroupResult:
        item = await self.items.find_by_id(group.item_id, txn)
        if item is None:
            logger.warning(
                "Item not found, lines skipped",
                extra={"item_id": group.item_id, "kind": kind, "lines": group.line_count},
            )
            return GroupResult(group.item_id, "skipped", message="item not found")

        axis = item.get("trackingType") or "quantity"
        amount = group.amount(axis)
        deltas = {axis: amount}
        if kind == "sale" and axis == "weight":
            # each sale line goes by weight when it has one, else by quantity
            deltas = {
                name: value
                for name, value in (("weight", amount), ("quantity", group.unweighted_quantity))
                if value > 0
            } or {"quantity": 0.0}

        patch: Dict[str, Any] = {"lastUpdated": now_iso()}
        for name, delta in deltas.items():
            moved = (item.get(name) or 0) + sign * delta
            patch[name] = clean_amount(max(0, moved) if clamp else moved)
        axis = next(iter(deltas))
        before = item.get(axis) or 0
        after = patch[axis]
        if pricing:
            if group.max_cost_per_unit > 0:
                patch["cost"] = patch["price"] = group.max_cost_per_unit
            elif group.total_cost > 0 and amount > 0:
                patch["cost"] = patch["price"] = clean_amount(group.total_cost / amount)

        await self.items.update(item["id"], patch, txn, expected={"updatedAt": item["updatedAt"]})
        return GroupResult(group.item_id, "success", axis=axis, before=before, after=after)

    async def _run(
        self,
        lines: List[Dict[str, Any]],
        txn: TransactionHandle,
        kind: str,
        sign: int,
        clamp: bool,
        pricing: bool,
    ) -> List[GroupResult]:
        groups, skipped, _ = group_lines(lines, kind)
        outcomes = await asyncio.gather(
            *(self._adjust(g, txn, sign, clamp, pricing, kind) for g in groups.values()),
            return_exceptions=True,
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        results = list(outcomes)
        results.extend(GroupResult(None, "skipped", message="line has no item") for _ in skipped)
        return results

    # -- purchases ------------------------------------------------------------

    async def apply_purchase(
        self, lines: List[Dict[str, Any]], txn: Optional[TransactionHandle] = None
    ) -> List[GroupResult]:
        handle = self._require(txn, "apply_purchase")
        return await self._run(lines, handle, "purchase", +1, clamp=False, pricing=True)

    async def revert_purchase(
        self, lines: List[Dict[str, Any]], txn: Optional[TransactionHandle] = None
    ) -> List[GroupResult]:
        handle = self._require(txn, "revert_purchase")
        return await self._run(lines, handle, "purchase", -1, clamp=True, pricing=False)

    async def update_purchase(
        self,
        old_lines: List[Dict[str, Any]],
        new_lines: List[Dict[str, Any]],
        txn: Optional[TransactionHandle] = None,
    ) -> Dict[str, List[GroupResult]]:
        """Revert the old lines, then apply the new ones."""
        handle = self._require(txn, "update_purchase")
        reverted = await self.revert_purchase(old_lines, handle)
        applied = await self.apply_purchase(new_lines, handle)
        return {"reverted": reverted, "applied": applied}

    # -- sales ----------------------------------------------------------------

    async def apply_sale(
        self, lines: List[Dict[str, Any]], txn: Optional[TransactionHandle] = None
    ) -> List[GroupResult]:
        handle = self._require(txn, "apply_sale")
        return await self._run(lines, handle, "sale", -1, clamp=True, pricing=False)

    async def revert_sale(
        self, lines: List[Dict[str, Any]], txn: Optional[TransactionHandle] = None
    ) -> List[GroupResult]:
        handle = self._require(txn, "revert_sale")
        return await self._run(lines, handle, "sale", +1, clamp=False, pricing=False)

    async def update_sale(
        self,
        old_lines: List[Dict[str, Any]],
        new_lines: List[Dict[str, Any]],
        txn: Optional[TransactionHandle] = None,
    ) -> Dict[str, List[GroupResult]]:
        """Revert the old footprint, then apply the new one."""
        handle = self._require(txn, "update_sale")
        reverted = await self.revert_sale(old_lines, handle)
        applied = await self.apply_sale(new_lines, handle)
        return {"reverted": reverted, "applied": applied}

    # -- asset lines ----------------------------------------------------------

    async def route_asset_lines(
        self, purchase: Dict[str, Any], txn: Optional[TransactionHandle] = None
    ) -> List[Dict[str, Any]]:
        """Create an asset and a purchase_asset edge for each new asset line.

        Lines that already reference an asset are left alone.

        Returns:
            The purchase's lines, with `asset` filled in on asset lines
        """
        handle = self._require(txn, "route_asset_lines")
        if self.assets is None or self.relationships is None:
            raise ConfigurationError("Asset routing needs the asset and relationship repositories")
        lines = [dict(line) for line in purchase.get("items") or []]
        for line in lines:
            if line.get("purchaseType") != "asset" or line.get("asset"):
                continue
            info = line.get("assetInfo") or {}
            cost = line.get("totalCost") or line.get("costPerUnit") or 0
            asset = await self.assets.create(
                {
                    "name": info.get("name") or line.get("name") or "Unnamed asset",
                    "category": info.get("category") or "",
                    "location": info.get("location"),
                    "assignedTo": info.get("assignedTo"),
                    "purchaseDate": purchase.get("purchaseDate"),
                    "purchaseId": purchase["id"],
                    "initialCost": cost,
                    "currentValue": cost,
                },
                handle,
            )
            await self.relationships.create(
                {
                    "primaryId": purchase["id"],
                    "primaryType": "Purchase",
                    "secondaryId": asset["id"],
                    "secondaryType": "Asset",
                    "relationshipType": "purchase_asset",
                    "measurements": measurements_from(line),
                    "purchaseAssetAttributes": {
                        "totalCost": line.get("totalCost") or 0,
                        "costPerUnit": line.get("costPerUnit") or 0,
                    },
                },
                handle,
            )
            line["asset"] = asset["id"]
            logger.info(
                "Asset created from purchase line",
                extra={"purchase_id": purchase["id"], "asset_id": asset["id"]},
            )
        return lines
