"""
Item service.

Keeps the product_material edges of a product in step with its embedded
`components`, cascades relationship cleanup on delete and runs derivation
under a retrying transaction.

Invariants:
    - A product has exactly one product_material edge per distinct
      component item after create or update
    - Deleting an item removes every relationship it takes part in, on
      either side, in the same transaction as the delete
    - Image deletion runs after the commit and never fails the delete
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from ..errors import NotFoundError
from ..inventory.mutations import group_lines
from ..repositories.relationships import measurements_from, ref_id
from ..transactions.coordinator import TransactionOptions
from ..transactions.handles import TransactionHandle
from ..transactions.retry import RetryPolicy

if TYPE_CHECKING:
    from ..inventory.derivation import DerivationEngine
    from ..providers.storage import StorageProvider
    from ..repositories.items import ItemRepository
    from ..repositories.relationships import RelationshipRepository
    from ..transactions.coordinator import TransactionCoordinator

logger = logging.getLogger(__name__)


def component_details(components: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """product_material edge fields per material id."""
    groups, _, _ = group_lines(components, "component")
    details: Dict[str, Dict[str, Any]] = {}
    for component in components or []:
        material_id = ref_id(component.get("item"))
        if not material_id or material_id in details:
            continue
        details[material_id] = {
            "measurements": {
                **measurements_from(component),
                **measurements_from(groups[material_id].totals),
            },
        }
    return details


def component_ids(item: Optional[Dict[str, Any]]) -> List[str]:
    return [
        material_id
        for material_id in (ref_id(c.get("item")) for c in (item or {}).get("components") or [])
        if material_id
    ]


class ItemService:
    """Relationship-aware item operations."""

    def __init__(
        self,
        items: ItemRepository,
        relationships: RelationshipRepository,
        derivation: DerivationEngine,
        coordinator: TransactionCoordinator,
        storage: Optional[StorageProvider] = None,
    ) -> None:
        self.items = items
        self.relationships = relationships
        self.derivation = derivation
        self.coordinator = coordinator
        self.storage = storage

    def _options(self, label: str) -> TransactionOptions:
        return TransactionOptions(retry_policy=RetryPolicy.for_conflicts(), label=label)

    async def _sync_components(
        self,
        product_id: str,
        old_ids: List[str],
        components: List[Dict[str, Any]],
        txn: TransactionHandle,
    ) -> Dict[str, int]:
        details = component_details(components)
        return await self.relationships.update_edges(
            old_ids,
            details.keys(),
            product_id,
            "product_material",
            details=details,
            txn=txn,
        )

    async def create(self, data: Dict[str, Any]) -> dict:
        """Create an item and its product_material edges."""

        async def work(txn: TransactionHandle) -> dict:
            item = await self.items.create(data, txn)
            if item.get("components"):
                await self._sync_components(item["id"], [], item["components"], txn)
            return item

        item = await self.coordinator.with_transaction(work, self._options("create_item"))
        logger.info("Item created", extra={"item_id": item["id"], "sku": item.get("sku")})
        return item

    async def update(self, item_id: str, patch: Dict[str, Any]) -> dict:
        """Update an item; a new `components` list rewires its edges.

        Raises:
            NotFoundError: If the item does not exist
        """

        async def work(txn: TransactionHandle) -> dict:
            current = await self.items.find_by_id(item_id, txn)
            if current is None:
                raise NotFoundError("Item", item_id)
            updated = await self.items.update(
                item_id, patch, txn, expected={"updatedAt": current["updatedAt"]}
            )
            if "components" in patch:
                await self._sync_components(
                    item_id, component_ids(current), updated.get("components") or [], txn
                )
            return updated

        return await self.coordinator.with_transaction(work, self._options("update_item"))

    async def delete(self, item_id: str) -> bool:
        """Delete an item with all of its relationships, then its image.

        Raises:
            NotFoundError: If the item does not exist
        """

        async def work(txn: TransactionHandle) -> Dict[str, Any]:
            current = await self.items.find_by_id(item_id, txn)
            if current is None:
                raise NotFoundError("Item", item_id)
            removed = await self.relationships.delete_all_for_entity(item_id, "Item", txn)
            await self.items.delete(item_id, txn)
            return {"item": current, "relationships": removed}

        outcome = await self.coordinator.with_transaction(work, self._options("delete_item"))
        logger.info(
            "Item deleted",
            extra={"item_id": item_id, "relationships": outcome["relationships"]},
        )

        image_url = outcome["item"].get("imageUrl")
        if image_url and self.storage is not None:
            try:
                await self.storage.delete_file(image_url)
            except Exception as e:
                logger.warning(
                    "Item image could not be deleted",
                    extra={"item_id": item_id, "image_url": image_url, "error": str(e)},
                )
        return True

    async def derive(self, source_id: str, specs: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Carve derived items out of a source item."""

        async def work(txn: TransactionHandle) -> Dict[str, Any]:
            return await self.derivation.create_derived_items(source_id, specs, txn)

        return await self.coordinator.with_transaction(work, self._options("derive_items"))

    async def rebuild_relationships(self, prune: bool = False) -> Dict[str, int]:
        """Re-materialize product_material edges from every item's components.

        Missing edges are created and stale measurements refreshed. With
        prune, edges to materials no longer listed are deleted as well.

        Returns:
            {"processed", "created", "updated", "deleted"}
        """
        totals = {"processed": 0, "created": 0, "updated": 0, "deleted": 0}
        for item in await self.items.find_all():
            components = item.get("components") or []
            if not components and not prune:
                continue

            async def work(txn: TransactionHandle, item: Dict[str, Any] = item) -> Dict[str, int]:
                old_ids: List[str] = []
                if prune:
                    edges = await self.relationships.find_by_primary(
                        item["id"], "Item", "product_material", txn
                    )
                    old_ids = [edge["secondaryId"] for edge in edges]
                return await self._sync_components(
                    item["id"], old_ids, item.get("components") or [], txn
                )

            counts = await self.coordinator.with_transaction(
                work, self._options("rebuild_relationships")
            )
            totals["processed"] += 1
            for name in ("created", "updated", "deleted"):
                totals[name] += counts[name]
        logger.info("Relationships rebuilt", extra={"prune": prune, "totals": totals})
        return totals
