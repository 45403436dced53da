"""
Relationship engine.

Relationships are stored as records, one per directed, typed edge between
two entities. This module owns every read and write of that collection:
creation with combination checks, endpoint queries, the edge-diff updater,
lifecycle cleanup, statistics and conversion of legacy embedded arrays.

Invariants:
    - Every stored relationship satisfies is_valid_entity_combination()
    - The 5-tuple (primaryId, primaryType, secondaryId, secondaryType,
      relationshipType) is unique on every backend
    - update_edges() is idempotent: a second run with the same arguments
      writes nothing
    - Legacy conversion never creates an edge that already exists, so it
      can be re-run safely

How to change safely:
    - New relationship types go into RELATIONSHIP_COMBINATIONS first
    - Keep cleanup inside the caller's transaction; never open a new one here
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional

from ..errors import (
    ConflictError,
    InvalidRelationshipCombinationError,
    NotFoundError,
    ValidationError,
)
from ..schema.entities import AXES, RELATIONSHIP, UNIT_FIELDS, is_valid_entity_combination
from ..transactions.handles import TransactionHandle
from .base import BaseRepository

if TYPE_CHECKING:
    from ..backends.base import Backend
    from ..transactions.coordinator import TransactionCoordinator

logger = logging.getLogger(__name__)


def measurements_from(source: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Five-axis measurement bundle read off a line, component or carve record."""
    source = source or {}
    bundle: Dict[str, Any] = {}
    for axis in AXES:
        bundle[axis] = source.get(axis) or 0
        unit_field = UNIT_FIELDS.get(axis)
        if unit_field and source.get(unit_field):
            bundle[unit_field] = source[unit_field]
    return bundle


def ref_id(value: Any) -> Optional[str]:
    """Id out of a reference that may be a bare id or an embedded record."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        return value.get("id") or value.get("_id")
    return None


class RelationshipRepository(BaseRepository):
    """Normalized many-to-many graph over items, purchases, sales and assets."""

    entity = RELATIONSHIP

    def __init__(
        self,
        backend: Backend,
        coordinator: Optional[TransactionCoordinator] = None,
    ) -> None:
        super().__init__(backend, coordinator)
        self.entity_repositories: Dict[str, BaseRepository] = {}

    def register_entity_repository(self, entity_type: str, repository: BaseRepository) -> None:
        """Make an entity type loadable for legacy conversion."""
        self.entity_repositories[entity_type] = repository

    @staticmethod
    def is_valid_entity_combination(
        relationship_type: str, primary_type: str, secondary_type: str
    ) -> bool:
        return is_valid_entity_combination(relationship_type, primary_type, secondary_type)

    async def create(self, data: Dict[str, Any], txn: Optional[TransactionHandle] = None) -> dict:
        """Create one edge.

        Raises:
            InvalidRelationshipCombinationError: If the type pair is not permitted
            ConflictError: If the same 5-tuple already exists
        """
        rel_type = data.get("relationshipType", "")
        primary_type = data.get("primaryType", "")
        secondary_type = data.get("secondaryType", "")
        if not is_valid_entity_combination(rel_type, primary_type, secondary_type):
            raise InvalidRelationshipCombinationError(rel_type, primary_type, secondary_type)
        return await super().create(data, txn)

    # -- queries --------------------------------------------------------------

    async def find_by_key(
        self,
        primary_id: str,
        primary_type: str,
        secondary_id: str,
        secondary_type: str,
        relationship_type: str,
        txn: Optional[TransactionHandle] = None,
    ) -> Optional[dict]:
        return await self.find_one(
            {
                "primaryId": primary_id,
                "primaryType": primary_type,
                "secondaryId": secondary_id,
                "secondaryType": secondary_type,
                "relationshipType": relationship_type,
            },
            txn,
        )

    async def find_by_primary(
        self,
        primary_id: str,
        primary_type: str,
        relationship_type: Optional[str] = None,
        txn: Optional[TransactionHandle] = None,
    ) -> List[dict]:
        filter: Dict[str, Any] = {"primaryId": primary_id, "primaryType": primary_type}
        if relationship_type:
            filter["relationshipType"] = relationship_type
        return await self.find_all(filter, None, txn)

    async def find_by_secondary(
        self,
        secondary_id: str,
        secondary_type: str,
        relationship_type: Optional[str] = None,
        txn: Optional[TransactionHandle] = None,
    ) -> List[dict]:
        filter: Dict[str, Any] = {"secondaryId": secondary_id, "secondaryType": secondary_type}
        if relationship_type:
            filter["relationshipType"] = relationship_type
        return await self.find_all(filter, None, txn)

    async def find_by_type(self, relationship_type: str) -> List[dict]:
        return await self.find_all({"relationshipType": relationship_type})

    async def find_all_for_entity(
        self, entity_id: str, entity_type: str, txn: Optional[TransactionHandle] = None
    ) -> Dict[str, List[dict]]:
        return {
            "asPrimary": await self.find_by_primary(entity_id, entity_type, None, txn),
            "asSecondary": await self.find_by_secondary(entity_id, entity_type, None, txn),
        }

    async def find_direct_relationships(
        self,
        entity1_id: str,
        entity1_type: str,
        entity2_id: str,
        entity2_type: str,
        txn: Optional[TransactionHandle] = None,
    ) -> List[dict]:
        """Edges between two entities, in either orientation."""
        forward = await self.find_all(
            {
                "primaryId": entity1_id,
                "primaryType": entity1_type,
                "secondaryId": entity2_id,
                "secondaryType": entity2_type,
            },
            None,
            txn,
        )
        backward = await self.find_all(
            {
                "primaryId": entity2_id,
                "primaryType": entity2_type,
                "secondaryId": entity1_id,
                "secondaryType": entity1_type,
            },
            None,
            txn,
        )
        seen = {r["id"] for r in forward}
        return forward + [r for r in backward if r["id"] not in seen]

    # -- lifecycle cleanup ----------------------------------------------------

    async def _delete_each(
        self, records: Iterable[dict], txn: Optional[TransactionHandle]
    ) -> int:
        deleted = 0
        for record in records:
            if await self.delete(record["id"], txn):
                deleted += 1
        return deleted

    async def delete_by_primary(
        self, primary_id: str, primary_type: str, txn: Optional[TransactionHandle] = None
    ) -> int:
        return await self._delete_each(
            await self.find_by_primary(primary_id, primary_type, None, txn), txn
        )

    async def delete_by_secondary(
        self, secondary_id: str, secondary_type: str, txn: Optional[TransactionHandle] = None
    ) -> int:
        return await self._delete_each(
            await self.find_by_secondary(secondary_id, secondary_type, None, txn), txn
        )

    async def delete_all_for_entity(
        self, entity_id: str, entity_type: str, txn: Optional[TransactionHandle] = None
    ) -> Dict[str, int]:
        as_primary = await self.delete_by_primary(entity_id, entity_type, txn)
        as_secondary = await self.delete_by_secondary(entity_id, entity_type, txn)
        logger.debug(
            "Relationships removed for entity",
            extra={
                "entity_id": entity_id,
                "entity_type": entity_type,
                "as_primary": as_primary,
                "as_secondary": as_secondary,
            },
        )
        return {"asPrimary": as_primary, "asSecondary": as_secondary}

    # -- edge-diff updater ----------------------------------------------------

    async def update_edges(
        self,
        old_ids: Iterable[str],
        new_ids: Iterable[str],
        anchor_id: str,
        relationship_type: str,
        *,
        anchor_type: str = "Item",
        neighbor_type: str = "Item",
        anchor_is_primary: bool = True,
        details: Optional[Dict[str, Dict[str, Any]]] = None,
        txn: Optional[TransactionHandle] = None,
    ) -> Dict[str, int]:
        """Replace the neighbor set of an anchor for one relationship type.

        Creates an edge for every id in new - old, deletes the edge for every
        id in old - new. Edges kept in both sets are refreshed from
        `details` when their stored fields differ.

        Args:
            old_ids: Neighbor ids before the change
            new_ids: Neighbor ids after the change
            anchor_id: The entity whose neighbors changed
            relationship_type: Edge type to maintain
            anchor_type: Entity type of the anchor
            neighbor_type: Entity type of every neighbor
            anchor_is_primary: Whether the anchor is the primary endpoint
            details: Per-neighbor extra fields (measurements, attributes)
            txn: Transaction handle

        Returns:
            {"created": n, "deleted": n, "updated": n}
        """
        old = list(dict.fromkeys(i for i in old_ids if i))
        new = list(dict.fromkeys(i for i in new_ids if i))
        details = details or {}
        counts = {"created": 0, "deleted": 0, "updated": 0}

        def key(neighbor_id: str) -> Dict[str, str]:
            if anchor_is_primary:
                return {
                    "primaryId": anchor_id,
                    "primaryType": anchor_type,
                    "secondaryId": neighbor_id,
                    "secondaryType": neighbor_type,
                    "relationshipType": relationship_type,
                }
            return {
                "primaryId": neighbor_id,
                "primaryType": neighbor_type,
                "secondaryId": anchor_id,
                "secondaryType": anchor_type,
                "relationshipType": relationship_type,
            }

        for neighbor_id in new:
            fields = details.get(neighbor_id, {})
            existing = await self.find_one(key(neighbor_id), txn)
            if existing is None:
                await self.create({**key(neighbor_id), **fields}, txn)
                counts["created"] += 1
                continue
            changed = {k: v for k, v in fields.items() if existing.get(k) != v}
            if changed:
                await self.update(existing["id"], changed, txn)
                counts["updated"] += 1

        new_set = set(new)
        for neighbor_id in old:
            if neighbor_id in new_set:
                continue
            existing = await self.find_one(key(neighbor_id), txn)
            if existing is not None and await self.delete(existing["id"], txn):
                counts["deleted"] += 1
        return counts

    # -- statistics -----------------------------------------------------------

    async def get_statistics(self) -> Dict[str, Any]:
        """Totals by relationship type and by entity type (either endpoint)."""
        by_entity: Dict[str, int] = {}
        for path in ("primaryType", "secondaryType"):
            for entity_type, count in (await self.collection.group_count(path)).items():
                by_entity[entity_type] = by_entity.get(entity_type, 0) + count
        return {
            "totalCount": await self.count(),
            "byType": await self.collection.group_count("relationshipType"),
            "byEntityType": by_entity,
        }

    # -- legacy conversion ----------------------------------------------------

    @staticmethod
    def legacy_edges(entity: Dict[str, Any], entity_type: str) -> List[Dict[str, Any]]:
        """Relationship payloads implied by an entity's embedded arrays."""
        entity_id = entity["id"]
        edges: List[Dict[str, Any]] = []

        def edge(rel_type, primary, primary_type, secondary, secondary_type, **extra):
            edges.append(
                {
                    "primaryId": primary,
                    "primaryType": primary_type,
                    "secondaryId": secondary,
                    "secondaryType": secondary_type,
                    "relationshipType": rel_type,
                    **extra,
                }
            )

        if entity_type == "Item":
            for component in entity.get("components") or []:
                material = ref_id(component.get("item") if isinstance(component, dict) else component)
                if material:
                    edge("product_material", entity_id, "Item", material, "Item",
                         measurements=measurements_from(component if isinstance(component, dict) else None))
            for product in entity.get("usedInProducts") or []:
                product_id = ref_id(product)
                if product_id:
                    edge("product_material", product_id, "Item", entity_id, "Item")
            for related in entity.get("relatedItems") or []:
                related_id = ref_id(related)
                if related_id:
                    edge("associated", entity_id, "Item", related_id, "Item")
            derived_from = entity.get("derivedFrom")
            if isinstance(derived_from, dict) and ref_id(derived_from.get("item")):
                edge("derived", ref_id(derived_from["item"]), "Item", entity_id, "Item",
                     measurements=measurements_from(derived_from))

        elif entity_type == "Purchase":
            for line in entity.get("items") or []:
                if line.get("purchaseType") == "asset":
                    if ref_id(line.get("asset")):
                        edge("purchase_asset", entity_id, "Purchase", ref_id(line["asset"]), "Asset",
                             purchaseAssetAttributes={"totalCost": line.get("totalCost") or 0})
                    continue
                item_id = ref_id(line.get("item"))
                if item_id:
                    edge("purchase_item", entity_id, "Purchase", item_id, "Item",
                         measurements=measurements_from(line),
                         purchaseItemAttributes={
                             "costPerUnit": line.get("costPerUnit") or 0,
                             "totalCost": line.get("totalCost") or 0,
                             "purchasedBy": line.get("purchasedBy") or "quantity",
                             "purchaseType": "inventory",
                         })

        elif entity_type == "Sale":
            for line in entity.get("items") or []:
                item_id = ref_id(line.get("item"))
                if item_id:
                    edge("sale_item", entity_id, "Sale", item_id, "Item",
                         measurements=measurements_from(line),
                         saleItemAttributes={
                             "priceAtSale": line.get("priceAtSale") or 0,
                             "soldBy": line.get("soldBy") or "quantity",
                         })

        elif entity_type == "Asset":
            if entity.get("purchaseId"):
                edge("purchase_asset", entity["purchaseId"], "Purchase", entity_id, "Asset")

        return edges

    async def convert_legacy_relationships(
        self,
        entity_id: str,
        entity_type: str,
        txn: Optional[TransactionHandle] = None,
    ) -> Dict[str, Any]:
        """Materialize an entity's embedded arrays as relationship records.

        Returns:
            {"converted": n, "skipped": n, "errors": [...]}

        Raises:
            ValidationError: If entity_type has no registered repository
            NotFoundError: If the entity does not exist
        """
        if txn is None and self.coordinator is not None:
            return await self.coordinator.with_transaction(
                lambda handle: self._convert(entity_id, entity_type, handle)
            )
        return await self._convert(entity_id, entity_type, txn)

    async def _convert(
        self, entity_id: str, entity_type: str, txn: Optional[TransactionHandle]
    ) -> Dict[str, Any]:
        repository = self.entity_repositories.get(entity_type)
        if repository is None:
            raise ValidationError(
                f"Unknown entity type: {entity_type}",
                errors=[f"no repository registered for {entity_type}"],
            )
        entity = await repository.find_by_id(entity_id, txn)
        if entity is None:
            raise NotFoundError(entity_type, entity_id)

        result: Dict[str, Any] = {"converted": 0, "skipped": 0, "errors": []}
        for payload in self.legacy_edges(entity, entity_type):
            key = (
                payload["primaryId"],
                payload["primaryType"],
                payload["secondaryId"],
                payload["secondaryType"],
                payload["relationshipType"],
            )
            if await self.find_by_key(*key, txn=txn) is not None:
                result["skipped"] += 1
                continue
            try:
                await self.create({**payload, "isLegacy": True}, txn)
            except ConflictError:
                result["skipped"] += 1
            except ValidationError as e:
                result["errors"].append({"relationship": list(key), "error": e.message})
            else:
                result["converted"] += 1

        logger.info(
            "Legacy relationships converted",
            extra={
                "entity_id": entity_id,
                "entity_type": entity_type,
                "converted": result["converted"],
                "skipped": result["skipped"],
                "errors": len(result["errors"]),
            },
        )
        return result
