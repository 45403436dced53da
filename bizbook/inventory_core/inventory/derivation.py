"""
Derivation engine.

Carves child items out of a source item: the source gives up measurement
on its authoritative axis and each child is created holding its share.

Invariants:
    - source[axis] before == source[axis] after + sum of child carvings
    - The total carved never exceeds what the source holds; there is no
      tolerance, so exceeding it by any amount fails
    - Children, their `derived` relationships and the source update share
      one transaction
"""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from ..errors import InsufficientSourceError, NotFoundError, TransactionRequiredError, ValidationError
from ..repositories.relationships import measurements_from
from ..schema.entities import UNIT_FIELDS
from ..schema.types import now_iso
from ..transactions.handles import TransactionHandle
from .mutations import clean_amount

if TYPE_CHECKING:
    from ..repositories.items import ItemRepository
    from ..repositories.relationships import RelationshipRepository
    from ..transactions.coordinator import TransactionCoordinator

logger = logging.getLogger(__name__)

INHERITED_FIELDS = (
    "trackingType",
    "itemType",
    "category",
    "cost",
    "price",
    "priceType",
    *UNIT_FIELDS.values(),
)
RESERVED_SPEC_FIELDS = ("id", "derivedFrom", "derivedItems", "hasDerivedItems", "components")


class DerivationEngine:
    """Splits source items into derived children."""

    def __init__(
        self,
        items: ItemRepository,
        relationships: RelationshipRepository,
        coordinator: TransactionCoordinator,
    ) -> None:
        self.items = items
        self.relationships = relationships
        self.coordinator = coordinator

    async def create_derived_items(
        self,
        source_id: str,
        specs: List[Dict[str, Any]],
        txn: Optional[TransactionHandle] = None,
    ) -> Dict[str, Any]:
        """Create one child item per spec, carved out of the source.

        Args:
            source_id: Item to carve from
            specs: One dict per child; the source's axis key holds the amount
                carved, any other item fields override inherited values
            txn: Transaction handle (defaults to the active one)

        Returns:
            {"sourceItem": updated source, "derivedItems": [children]}

        Raises:
            NotFoundError: If the source does not exist
            ValidationError: If a spec carves a non-positive amount
            InsufficientSourceError: If the specs carve more than the source holds
        """
        handle = txn or self.coordinator.current()
        if handle is None or not self.coordinator.is_active(handle):
            raise TransactionRequiredError("create_derived_items")

        source = await self.items.find_by_id(source_id, handle)
        if source is None:
            raise NotFoundError("Item", source_id)
        if not specs:
            raise ValidationError("At least one derived item is required", errors=["items"])

        axis = source.get("trackingType") or "quantity"
        amounts = []
        for index, spec in enumerate(specs):
            amount = spec.get(axis)
            if not isinstance(amount, (int, float)) or isinstance(amount, bool) or amount <= 0:
                raise ValidationError(
                    f"Derived item {index} needs a positive '{axis}'",
                    errors=[f"items[{index}].{axis}"],
                )
            amounts.append(amount)
        requested = math.fsum(amounts)
        available = source.get(axis) or 0
        if requested > available:
            raise InsufficientSourceError(source_id, axis, requested, available)

        unit_field = UNIT_FIELDS.get(axis)
        unit = source.get(unit_field) if unit_field else None
        existing = len(source.get("derivedItems") or [])

        children: List[dict] = []
        carve_records: List[Dict[str, Any]] = []
        for index, (spec, amount) in enumerate(zip(specs, amounts)):
            carve: Dict[str, Any] = {"item": source_id, axis: amount}
            if unit_field and unit:
                carve[unit_field] = unit
            data: Dict[str, Any] = {f: source[f] for f in INHERITED_FIELDS if f in source}
            data.update({k: v for k, v in spec.items() if k not in RESERVED_SPEC_FIELDS})
            data["name"] = spec.get("name") or f"{source['name']} (derived {existing + index + 1})"
            data["derivedFrom"] = carve

            child = await self.items.create(data, handle)
            await self.relationships.create(
                {
                    "primaryId": source_id,
                    "primaryType": "Item",
                    "secondaryId": child["id"],
                    "secondaryType": "Item",
                    "relationshipType": "derived",
                    "measurements": measurements_from(carve),
                },
                handle,
            )
            children.append(child)
            carve_records.append({**carve, "item": child["id"]})

        updated = await self.items.update(
            source_id,
            {
                axis: clean_amount(available - requested),
                "derivedItems": list(source.get("derivedItems") or []) + carve_records,
                "hasDerivedItems": True,
                "lastUpdated": now_iso(),
            },
            handle,
            expected={"updatedAt": source["updatedAt"]},
        )
        logger.info(
            "Derived items created",
            extra={
                "source_id": source_id,
                "axis": axis,
                "carved": requested,
                "children": [c["id"] for c in children],
            },
        )
        return {"sourceItem": updated, "derivedItems": children}

    async def find_derived_items(
        self, source_id: str, txn: Optional[TransactionHandle] = None
    ) -> List[dict]:
        """Children of a source, via its `derived` relationships."""
        edges = await self.relationships.find_by_primary(source_id, "Item", "derived", txn)
        return await self.items.find_by_ids([e["secondaryId"] for e in edges], txn)

    async def find_source_item(
        self, child_id: str, txn: Optional[TransactionHandle] = None
    ) -> Optional[dict]:
        edges = await self.relationships.find_by_secondary(child_id, "Item", "derived", txn)
        if not edges:
            return None
        return await self.items.find_by_id(edges[0]["primaryId"], txn)
