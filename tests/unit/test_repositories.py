"""
Unit tests for the entity repositories.

Tests cover:
- Base create/update/delete semantics (ids, timestamps, validation)
- SKU, document number and asset tag generation
- Relationship graph queries, cleanup and the edge-diff updater
- Legacy conversion
"""

import pytest
import pytest_asyncio

from bizbook.inventory_core.backends.otherdoc import OtherDocBackend
from bizbook.inventory_core.config import OtherDocConfig
from bizbook.inventory_core.errors import (
    ConflictError,
    InvalidRelationshipCombinationError,
    NotFoundError,
    ValidationError,
)
from bizbook.inventory_core.repositories import (
    AssetRepository,
    ItemRepository,
    PurchaseRepository,
    RelationshipRepository,
    SaleRepository,
)
from bizbook.inventory_core.repositories.base import next_timestamp
from bizbook.inventory_core.repositories.purchases import month_prefix
from bizbook.inventory_core.repositories.relationships import measurements_from, ref_id
from bizbook.inventory_core.transactions import TransactionCoordinator

from tests.fakes import no_sleep


@pytest_asyncio.fixture
async def backend():
    instance = OtherDocBackend(OtherDocConfig())
    await instance.connect()
    yield instance
    await instance.close()


@pytest.fixture
def coordinator(backend):
    return TransactionCoordinator(backend, sleep=no_sleep, rand=lambda: 0.5)


@pytest.fixture
def items(backend, coordinator):
    return ItemRepository(backend, coordinator)


@pytest.fixture
def relationships(backend, coordinator, items):
    repository = RelationshipRepository(backend, coordinator)
    repository.register_entity_repository("Item", items)
    repository.register_entity_repository("Purchase", PurchaseRepository(backend, coordinator))
    return repository


def edge(primary, secondary, rel_type="product_material", **fields):
    primary_type = {"purchase_item": "Purchase", "sale_item": "Sale"}.get(rel_type, "Item")
    return {
        "primaryId": primary,
        "primaryType": primary_type,
        "secondaryId": secondary,
        "secondaryType": "Item",
        "relationshipType": rel_type,
        **fields,
    }


class TestBaseRepository:
    """Tests for BaseRepository CRUD."""

    @pytest.mark.asyncio
    async def test_create_assigns_id_and_timestamps(self, items):
        """create() sets id, createdAt and updatedAt and applies defaults."""
        item = await items.create(
            {"name": "Oak board", "createdAt": "1999-01-01T00:00:00+00:00", "imageUrl": None}
        )

        assert len(item["id"]) == 32
        assert item["createdAt"] == item["updatedAt"] != "1999-01-01T00:00:00+00:00"
        assert item["quantity"] == 0
        assert item["weightUnit"] == "lb"
        assert item["itemType"] == "product"
        assert "imageUrl" not in item
        assert await items.find_by_id(item["id"]) == item

    @pytest.mark.asyncio
    async def test_create_keeps_caller_id(self, items):
        """An explicit id is kept."""
        item = await items.create({"id": "oak", "name": "Oak"})

        assert item["id"] == "oak"

    @pytest.mark.asyncio
    async def test_create_validates(self, items):
        """Invalid records are rejected before they reach the backend."""
        with pytest.raises(ValidationError) as exc:
            await items.create({"quantity": -1})

        assert any("name" in error for error in exc.value.errors)
        assert await items.count() == 0

    @pytest.mark.asyncio
    async def test_update_merges_patch(self, items):
        """update() merges, drops None fields and ignores protected keys."""
        item = await items.create({"name": "Oak", "description": "rough", "quantity": 2})

        updated = await items.update(
            item["id"],
            {"quantity": 5, "description": None, "id": "other", "createdAt": "x"},
        )

        assert updated["id"] == item["id"]
        assert updated["createdAt"] == item["createdAt"]
        assert updated["quantity"] == 5
        assert "description" not in updated
        assert updated["updatedAt"] > item["updatedAt"]

    @pytest.mark.asyncio
    async def test_update_missing(self, items):
        """Updating an unknown id returns None."""
        assert await items.update("nope", {"quantity": 1}) is None

    @pytest.mark.asyncio
    async def test_update_revalidates(self, items):
        """The merged record must still validate."""
        item = await items.create({"name": "Oak"})

        with pytest.raises(ValidationError):
            await items.update(item["id"], {"trackingType": "furlongs"})

    @pytest.mark.asyncio
    async def test_update_expected(self, items):
        """A stale expected value raises a retryable conflict."""
        item = await items.create({"name": "Oak"})
        await items.update(item["id"], {"quantity": 1})

        with pytest.raises(ConflictError) as exc:
            await items.update(item["id"], {"quantity": 2}, expected={"updatedAt": item["updatedAt"]})

        assert exc.value.retryable is True

    @pytest.mark.asyncio
    async def test_delete(self, items):
        """delete() reports whether a record was removed."""
        item = await items.create({"name": "Oak"})

        assert await items.delete(item["id"]) is True
        assert await items.delete(item["id"]) is False
        assert await items.find_by_id(item["id"]) is None

    @pytest.mark.asyncio
    async def test_find_helpers(self, items):
        """find_by_ids keeps input order; find_one and find_by_query filter."""
        a = await items.create({"name": "A", "category": "lumber"})
        b = await items.create({"name": "B", "category": "glue"})

        assert [r["id"] for r in await items.find_by_ids([b["id"], "nope", a["id"], b["id"]])] == [
            b["id"],
            a["id"],
        ]
        assert (await items.find_one({"category": "glue"}))["id"] == b["id"]
        assert await items.find_one({"category": "paint"}) is None
        assert [r["id"] for r in await items.find_by_query({"filter": {"category": "lumber"}})] == [
            a["id"]
        ]
        assert await items.find_by_id("") is None

    @pytest.mark.asyncio
    async def test_joins_active_transaction(self, items, coordinator):
        """Calls without a handle use the coordinator's active one."""
        with pytest.raises(RuntimeError):
            async with coordinator.transaction():
                await items.create({"id": "a", "name": "A"})
                raise RuntimeError("abort")

        assert await items.find_by_id("a") is None

    def test_next_timestamp(self):
        """Timestamps are nudged past a previous value from the future."""
        future = "2999-01-01T00:00:00+00:00"

        assert next_timestamp(future) == "2999-01-01T00:00:00.000001+00:00"
        assert next_timestamp(None) < future


class TestItemRepository:
    """Tests for ItemRepository."""

    @pytest.mark.asyncio
    async def test_sku_generation(self, items):
        """Missing SKUs become the next 10-digit number above the highest numeric SKU."""
        first = await items.create({"name": "A"})
        await items.create({"name": "B", "sku": "0000000041"})
        await items.create({"name": "C", "sku": "WOOD-1"})
        fourth = await items.create({"name": "D", "sku": ""})

        assert first["sku"] == "0000000001"
        assert fourth["sku"] == "0000000042"
        assert (await items.find_by_sku("WOOD-1"))["name"] == "C"

    @pytest.mark.asyncio
    async def test_duplicate_sku(self, items):
        """SKUs are unique."""
        await items.create({"name": "A", "sku": "X1"})

        with pytest.raises(ConflictError):
            await items.create({"name": "B", "sku": "X1"})

    @pytest.mark.asyncio
    async def test_lookups(self, items):
        """Category, derivation and component lookups."""
        source = await items.create({"name": "Slab", "category": "lumber", "itemType": "material"})
        child = await items.create(
            {"name": "Offcut", "derivedFrom": {"item": source["id"], "quantity": 1}}
        )
        product = await items.create(
            {"name": "Table", "components": [{"item": source["id"], "quantity": 2}]}
        )

        assert [r["id"] for r in await items.find_by_category("lumber")] == [source["id"]]
        assert [r["id"] for r in await items.find_derived_from(source["id"])] == [child["id"]]
        assert [r["id"] for r in await items.find_products_using(source["id"])] == [product["id"]]

    @pytest.mark.asyncio
    async def test_components_need_product(self, items):
        """Materials cannot carry components."""
        with pytest.raises(ValidationError):
            await items.create(
                {"name": "Glue", "itemType": "material", "components": [{"item": "x"}]}
            )


class TestPurchaseRepository:
    """Tests for PurchaseRepository."""

    def test_month_prefix(self):
        """Prefixes encode the two-digit year and month."""
        assert month_prefix("P", "2024-10-05T12:00:00+00:00") == "P2410-"

    @pytest.mark.asyncio
    async def test_numbering(self, backend, coordinator):
        """Purchase numbers count up within a month and restart in the next."""
        purchases = PurchaseRepository(backend, coordinator)

        first = await purchases.create({"purchaseDate": "2024-10-05T00:00:00+00:00"})
        second = await purchases.create({"purchaseDate": "2024-10-20T00:00:00+00:00"})
        other = await purchases.create({"purchaseDate": "2024-11-01T00:00:00+00:00"})

        assert first["purchaseNumber"] == "P2410-0001"
        assert second["purchaseNumber"] == "P2410-0002"
        assert other["purchaseNumber"] == "P2411-0001"

    @pytest.mark.asyncio
    async def test_totals(self, backend, coordinator):
        """subtotal and total are computed; an inconsistent total is rejected."""
        purchases = PurchaseRepository(backend, coordinator)

        purchase = await purchases.create(
            {
                "items": [{"item": "a", "quantity": 2, "totalCost": 10.5}],
                "taxAmount": 1,
                "shippingCost": 2,
            }
        )

        assert purchase["subtotal"] == 10.5
        assert purchase["total"] == 13.5
        with pytest.raises(ValidationError):
            await purchases.create({"subtotal": 5, "total": 99})

    @pytest.mark.asyncio
    async def test_line_needs_measurement(self, backend, coordinator):
        """Inventory lines need a positive amount on their purchasedBy axis."""
        purchases = PurchaseRepository(backend, coordinator)

        with pytest.raises(ValidationError):
            await purchases.create({"items": [{"item": "a", "purchasedBy": "weight", "quantity": 3}]})

        purchase = await purchases.create(
            {"items": [{"purchaseType": "asset", "assetInfo": {"name": "Saw"}, "totalCost": 300}]}
        )
        assert purchase["items"][0]["purchaseType"] == "asset"

    @pytest.mark.asyncio
    async def test_queries(self, backend, coordinator):
        """Supplier, status, date range and line lookups."""
        purchases = PurchaseRepository(backend, coordinator)
        early = await purchases.create(
            {
                "supplier": {"name": "Acme"},
                "purchaseDate": "2024-01-10T00:00:00+00:00",
                "items": [{"item": "oak", "quantity": 1}],
            }
        )
        late = await purchases.create(
            {
                "supplier": {"name": "Acme"},
                "purchaseDate": "2024-03-10T00:00:00+00:00",
                "status": "received",
            }
        )

        assert [p["id"] for p in await purchases.find_by_supplier("Acme")] == [late["id"], early["id"]]
        assert [p["id"] for p in await purchases.find_by_status("received")] == [late["id"]]
        assert [
            p["id"]
            for p in await purchases.find_by_date_range(
                "2024-01-01T00:00:00+00:00", "2024-02-01T00:00:00+00:00"
            )
        ] == [early["id"]]
        assert [p["id"] for p in await purchases.find_containing_item("oak")] == [early["id"]]


class TestSaleRepository:
    """Tests for SaleRepository."""

    @pytest.mark.asyncio
    async def test_numbering_and_totals(self, backend, coordinator):
        """Sale numbers use the S prefix; subtotal follows soldBy."""
        sales = SaleRepository(backend, coordinator)

        sale = await sales.create(
            {
                "saleDate": "2024-10-05T00:00:00+00:00",
                "customerEmail": "pat@example.com",
                "items": [
                    {"item": "a", "quantity": 2, "priceAtSale": 3},
                    {"item": "b", "weight": 1.5, "soldBy": "weight", "priceAtSale": 4},
                ],
                "discountAmount": 1,
            }
        )

        assert sale["saleNumber"] == "S2410-0001"
        assert sale["subtotal"] == 12
        assert sale["total"] == 11
        assert [s["id"] for s in await sales.find_by_customer_email("pat@example.com")] == [sale["id"]]
        assert [s["id"] for s in await sales.find_by_status("completed")] == [sale["id"]]

    @pytest.mark.asyncio
    async def test_refund_bounded(self, backend, coordinator):
        """Refunding more than was sold is invalid."""
        sales = SaleRepository(backend, coordinator)

        with pytest.raises(ValidationError):
            await sales.create({"items": [{"item": "a", "quantity": 1, "refundedQuantity": 2}]})


class TestAssetRepository:
    """Tests for AssetRepository."""

    @pytest.mark.asyncio
    async def test_tags_and_value(self, backend, coordinator):
        """Tags count up; currentValue defaults to initialCost."""
        assets = AssetRepository(backend, coordinator)

        first = await assets.create({"name": "Saw", "initialCost": 300})
        await assets.create({"name": "Lathe", "assetTag": "A-000010"})
        third = await assets.create({"name": "Drill", "purchaseId": "p1", "category": "tools"})

        assert first["assetTag"] == "A-000001"
        assert first["currentValue"] == 300
        assert third["assetTag"] == "A-000011"
        assert [a["id"] for a in await assets.find_by_purchase("p1")] == [third["id"]]
        assert [a["id"] for a in await assets.find_by_category("tools")] == [third["id"]]

    @pytest.mark.asyncio
    async def test_maintenance(self, backend, coordinator):
        """Maintenance entries append and move lastMaintenance forward."""
        assets = AssetRepository(backend, coordinator)
        asset = await assets.create({"name": "Saw", "maintenanceSchedule": {"frequency": "monthly"}})

        updated = await assets.add_maintenance_record(
            asset["id"],
            {
                "date": "2024-05-01T00:00:00+00:00",
                "description": "New blade",
                "cost": 40,
                "performedBy": "Sam",
            },
        )

        assert len(updated["maintenanceHistory"]) == 1
        assert updated["maintenanceSchedule"]["lastMaintenance"] == "2024-05-01T00:00:00+00:00"
        with pytest.raises(NotFoundError):
            await assets.add_maintenance_record("nope", {})


class TestRelationshipRepository:
    """Tests for RelationshipRepository."""

    def test_helpers(self):
        """ref_id accepts ids and embedded records; measurements_from fills all axes."""
        assert ref_id("a") == "a"
        assert ref_id({"id": "b"}) == "b"
        assert ref_id({"_id": "c"}) == "c"
        assert ref_id("") is None
        assert ref_id(3) is None
        assert measurements_from({"quantity": 2, "weightUnit": "kg"}) == {
            "quantity": 2,
            "weight": 0,
            "weightUnit": "kg",
            "length": 0,
            "area": 0,
            "volume": 0,
        }

    @pytest.mark.asyncio
    async def test_create_defaults(self, relationships):
        """Edges get zeroed measurements; purchase_item edges get attributes."""
        record = await relationships.create(edge("p1", "i1", "purchase_item"))

        assert record["measurements"]["quantity"] == 0
        assert record["measurements"]["volumeUnit"] == "l"
        assert record["purchaseItemAttributes"]["purchasedBy"] == "quantity"
        assert record["isLegacy"] is False

    @pytest.mark.asyncio
    async def test_invalid_combination(self, relationships):
        """Type pairs outside the combination table are rejected."""
        with pytest.raises(InvalidRelationshipCombinationError) as exc:
            await relationships.create(
                {
                    "primaryId": "s1",
                    "primaryType": "Sale",
                    "secondaryId": "a1",
                    "secondaryType": "Asset",
                    "relationshipType": "sale_item",
                }
            )

        assert exc.value.code == "INVALID_RELATIONSHIP_COMBINATION"
        assert RelationshipRepository.is_valid_entity_combination("associated", "Vendor", "Item")

    @pytest.mark.asyncio
    async def test_unique_key(self, relationships):
        """The same 5-tuple cannot be stored twice."""
        await relationships.create(edge("p1", "i1", "purchase_item"))

        with pytest.raises(ConflictError):
            await relationships.create(edge("p1", "i1", "purchase_item"))

    @pytest.mark.asyncio
    async def test_queries(self, relationships):
        """Primary, secondary, type, key and direct lookups."""
        made = await relationships.create(edge("prod", "mat"))
        await relationships.create(edge("prod", "glue"))
        await relationships.create(edge("mat", "prod", "associated"))

        assert {r["secondaryId"] for r in await relationships.find_by_primary("prod", "Item")} == {
            "mat",
            "glue",
        }
        assert len(await relationships.find_by_secondary("mat", "Item", "product_material")) == 1
        assert len(await relationships.find_by_type("associated")) == 1
        assert (
            await relationships.find_by_key("prod", "Item", "mat", "Item", "product_material")
        )["id"] == made["id"]
        direct = await relationships.find_direct_relationships("mat", "Item", "prod", "Item")
        assert {r["relationshipType"] for r in direct} == {"product_material", "associated"}
        everything = await relationships.find_all_for_entity("mat", "Item")
        assert len(everything["asPrimary"]) == 1
        assert len(everything["asSecondary"]) == 1

    @pytest.mark.asyncio
    async def test_delete_all_for_entity(self, relationships):
        """Cleanup removes edges on both sides and reports counts."""
        await relationships.create(edge("prod", "mat"))
        await relationships.create(edge("mat", "x", "associated"))
        await relationships.create(edge("other", "x"))

        removed = await relationships.delete_all_for_entity("mat", "Item")

        assert removed == {"asPrimary": 1, "asSecondary": 1}
        assert await relationships.count() == 1

    @pytest.mark.asyncio
    async def test_update_edges(self, relationships):
        """The edge-diff updater creates, deletes and refreshes edges."""
        await relationships.create(edge("prod", "a"))
        await relationships.create(edge("prod", "b"))

        counts = await relationships.update_edges(
            ["a", "b"],
            ["b", "c"],
            "prod",
            "product_material",
            details={"b": {"measurements": {"quantity": 4}}},
        )

        assert counts == {"created": 1, "deleted": 1, "updated": 1}
        edges = {r["secondaryId"]: r for r in await relationships.find_by_primary("prod", "Item")}
        assert set(edges) == {"b", "c"}
        assert edges["b"]["measurements"]["quantity"] == 4

    @pytest.mark.asyncio
    async def test_update_edges_secondary_anchor(self, relationships):
        """With anchor_is_primary False the anchor is the secondary endpoint."""
        counts = await relationships.update_edges(
            [], ["p1", "p2"], "mat", "product_material", anchor_is_primary=False
        )

        assert counts["created"] == 2
        assert {r["primaryId"] for r in await relationships.find_by_secondary("mat", "Item")} == {
            "p1",
            "p2",
        }

    @pytest.mark.asyncio
    async def test_statistics(self, relationships):
        """Counts by type and by entity type across both endpoints."""
        await relationships.create(edge("p1", "i1", "purchase_item"))
        await relationships.create(edge("prod", "i1"))

        stats = await relationships.get_statistics()

        assert stats["totalCount"] == 2
        assert stats["byType"] == {"purchase_item": 1, "product_material": 1}
        assert stats["byEntityType"] == {"Purchase": 1, "Item": 3}

    def test_legacy_edges(self):
        """Embedded arrays map to relationship payloads."""
        purchase = {
            "id": "p1",
            "items": [
                {"item": "i1", "quantity": 2, "costPerUnit": 3, "totalCost": 6},
                {"purchaseType": "asset", "asset": "a1", "totalCost": 90},
                {"purchaseType": "asset", "totalCost": 10},
            ],
        }

        edges = RelationshipRepository.legacy_edges(purchase, "Purchase")

        assert [(e["relationshipType"], e["secondaryId"]) for e in edges] == [
            ("purchase_item", "i1"),
            ("purchase_asset", "a1"),
        ]
        assert edges[0]["measurements"]["quantity"] == 2
        assert edges[0]["purchaseItemAttributes"]["costPerUnit"] == 3

    def test_legacy_item_edges(self):
        """Item arrays map to product_material, associated and derived edges."""
        item = {
            "id": "x",
            "components": [{"item": "m1", "quantity": 2}],
            "usedInProducts": ["p1"],
            "relatedItems": [{"id": "r1"}],
            "derivedFrom": {"item": "src", "weight": 4},
        }

        edges = RelationshipRepository.legacy_edges(item, "Item")

        assert [
            (e["relationshipType"], e["primaryId"], e["secondaryId"]) for e in edges
        ] == [
            ("product_material", "x", "m1"),
            ("product_material", "p1", "x"),
            ("associated", "x", "r1"),
            ("derived", "src", "x"),
        ]
        assert edges[3]["measurements"]["weight"] == 4

    @pytest.mark.asyncio
    async def test_convert_legacy(self, relationships, items):
        """Conversion creates legacy edges once and skips them afterwards."""
        await items.create({"id": "p1", "name": "Table"})
        await items.create({"id": "x", "name": "Walnut", "usedInProducts": ["p1"]})

        first = await relationships.convert_legacy_relationships("x", "Item")
        second = await relationships.convert_legacy_relationships("x", "Item")

        assert first == {"converted": 1, "skipped": 0, "errors": []}
        assert second == {"converted": 0, "skipped": 1, "errors": []}
        stored = await relationships.find_by_secondary("x", "Item", "product_material")
        assert stored[0]["isLegacy"] is True

    @pytest.mark.asyncio
    async def test_convert_legacy_errors(self, relationships):
        """Unknown types and missing entities are rejected."""
        with pytest.raises(ValidationError):
            await relationships.convert_legacy_relationships("x", "Vendor")
        with pytest.raises(NotFoundError):
            await relationships.convert_legacy_relationships("nope", "Item")
