"""
Integration tests for the aiohttp application.

Tests cover:
- The success and error wire shapes
- List query parsing (filter, paging, sort)
- CRUD and operation endpoints over a core on the in-process store
"""

import json

import pytest
import pytest_asyncio
from aiohttp import test_utils

from bizbook.inventory_core.api import create_http_app
from bizbook.inventory_core.config import AppConfig, DatabaseProvider, StorageConfig
from bizbook.inventory_core.core import InventoryCore
from bizbook.inventory_core.providers import ProviderRegistry


@pytest_asyncio.fixture
async def core(tmp_path):
    instance = InventoryCore(
        AppConfig(
            db_provider=DatabaseProvider.OTHER_DOC,
            storage=StorageConfig(bucket=str(tmp_path / "uploads")),
        ),
        registry=ProviderRegistry(),
    )
    await instance.init()
    yield instance
    await instance.shutdown()


@pytest_asyncio.fixture
async def client(core):
    server = test_utils.TestServer(create_http_app(core))
    async with test_utils.TestClient(server) as client:
        yield client


async def post_item(client, **fields):
    response = await client.post("/api/items", json={"name": "Oak", **fields})
    assert response.status == 201
    return (await response.json())["data"]


class TestWireShapes:
    """Tests for response envelopes."""

    @pytest.mark.asyncio
    async def test_health(self, client):
        """Health answers in the success envelope."""
        response = await client.get("/api/health")

        assert response.status == 200
        body = await response.json()
        assert body["status"] == "success"
        assert body["data"]["provider"] == "otherdoc"

    @pytest.mark.asyncio
    async def test_not_found(self, client):
        """Missing records answer 404 in the fail envelope."""
        response = await client.get("/api/items/nope")

        assert response.status == 404
        assert await response.json() == {
            "status": "fail",
            "message": "Item with id nope not found",
            "code": "NOT_FOUND",
        }

    @pytest.mark.asyncio
    async def test_validation(self, client):
        """Schema violations answer 400."""
        response = await client.post("/api/items", json={"quantity": -1})

        assert response.status == 400
        assert (await response.json())["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_bad_bodies(self, client):
        """Bodies must be JSON objects."""
        not_json = await client.post("/api/items", data="{oops")
        not_object = await client.post("/api/items", json=[1, 2])

        assert not_json.status == 400
        assert not_object.status == 400

    @pytest.mark.asyncio
    async def test_unexpected_error(self, client, core, monkeypatch):
        """Unexpected exceptions answer 500 without leaking the cause."""

        async def explode(batch_size=50):
            raise RuntimeError("secret detail")

        monkeypatch.setattr(core.rebuilder, "rebuild_inventory", explode)

        response = await client.post("/api/inventory/rebuild")

        assert response.status == 500
        assert await response.json() == {
            "status": "error",
            "message": "Internal server error",
            "code": "INTERNAL",
        }


class TestItems:
    """Tests for the item endpoints."""

    @pytest.mark.asyncio
    async def test_crud(self, client):
        """Items are created with relationships attached, updated and deleted."""
        item = await post_item(client, quantity=3)
        assert item["relationships"] == {"asPrimary": [], "asSecondary": []}

        response = await client.put(f"/api/items/{item['id']}", json={"quantity": 4})
        assert response.status == 200
        assert (await response.json())["data"]["quantity"] == 4

        response = await client.delete(f"/api/items/{item['id']}")
        assert response.status == 204
        response = await client.delete(f"/api/items/{item['id']}")
        assert response.status == 404

    @pytest.mark.asyncio
    async def test_list_query(self, client):
        """filter, limit, page and sort are honored."""
        await post_item(client, name="Ash", category="lumber")
        await post_item(client, name="Birch", category="lumber")
        await post_item(client, name="Glue", category="adhesive")

        response = await client.get(
            "/api/items",
            params={
                "filter": json.dumps({"category": "lumber"}),
                "sort": "-name",
                "limit": "1",
                "page": "2",
            },
        )

        body = await response.json()
        assert body["results"] == 1
        assert [i["name"] for i in body["data"]] == ["Ash"]

    @pytest.mark.asyncio
    async def test_bad_list_query(self, client):
        """Malformed filters and paging answer 400."""
        for params in ({"filter": "{nope"}, {"filter": "[1]"}, {"limit": "0"}, {"page": "x"}):
            response = await client.get("/api/items", params=params)
            assert response.status == 400

    @pytest.mark.asyncio
    async def test_derive(self, client):
        """Derivation answers 201; over-carving answers 422."""
        slab = await post_item(client, trackingType="weight", weight=10)

        response = await client.post(
            f"/api/items/{slab['id']}/derive", json={"items": [{"weight": 4}]}
        )
        assert response.status == 201
        assert (await response.json())["data"]["sourceItem"]["weight"] == 6

        response = await client.post(
            f"/api/items/{slab['id']}/derive", json={"items": [{"weight": 7}]}
        )
        assert response.status == 422
        assert (await response.json())["code"] == "INSUFFICIENT_SOURCE"

        response = await client.post(f"/api/items/{slab['id']}/derive", json={"items": "all"})
        assert response.status == 400


class TestPurchasesAndSales:
    """Tests for purchase and sale operation endpoints."""

    @pytest.mark.asyncio
    async def test_receive(self, client):
        """Receiving a purchase applies its lines."""
        item = await post_item(client, quantity=1)
        response = await client.post(
            "/api/purchases", json={"items": [{"item": item["id"], "quantity": 4}]}
        )
        purchase = (await response.json())["data"]
        assert response.status == 201
        assert len(purchase["relationships"]["asPrimary"]) == 1

        response = await client.post(f"/api/purchases/{purchase['id']}/receive")

        assert response.status == 200
        assert (await response.json())["data"]["status"] == "received"
        item = (await (await client.get(f"/api/items/{item['id']}")).json())["data"]
        assert item["quantity"] == 5
        assert len(item["relationships"]["asSecondary"]) == 1

    @pytest.mark.asyncio
    async def test_refund(self, client):
        """Refunds accept per-line amounts or nothing for a full refund."""
        item = await post_item(client, quantity=10)
        response = await client.post(
            "/api/sales", json={"items": [{"item": item["id"], "quantity": 4}]}
        )
        sale = (await response.json())["data"]

        partial = await client.post(
            f"/api/sales/{sale['id']}/refund", json={"refunds": [{"index": 0, "quantity": 1}]}
        )
        full = await client.post(f"/api/sales/{sale['id']}/refund")

        assert (await partial.json())["data"]["status"] == "partially_refunded"
        assert (await full.json())["data"]["status"] == "refunded"
        item = (await (await client.get(f"/api/items/{item['id']}")).json())["data"]
        assert item["quantity"] == 10

        response = await client.delete(f"/api/sales/{sale['id']}")
        assert response.status == 204


class TestRelationships:
    """Tests for the relationship endpoints."""

    @pytest.mark.asyncio
    async def test_queries_and_statistics(self, client):
        """Entity, direct and statistics views of the graph."""
        material = await post_item(client, name="Walnut", itemType="material")
        product = await post_item(
            client, name="Table", components=[{"item": material["id"], "quantity": 2}]
        )

        entity = await client.get(f"/api/relationships/entity/Item/{material['id']}")
        direct = await client.get(
            "/api/relationships/direct",
            params={
                "entity1Id": product["id"],
                "entity1Type": "Item",
                "entity2Id": material["id"],
                "entity2Type": "Item",
            },
        )
        stats = await client.get("/api/relationships/statistics")

        assert len((await entity.json())["data"]["asSecondary"]) == 1
        assert (await direct.json())["results"] == 1
        assert (await stats.json())["data"]["byType"] == {"product_material": 1}

    @pytest.mark.asyncio
    async def test_direct_needs_parameters(self, client):
        """Missing query parameters answer 400."""
        response = await client.get("/api/relationships/direct", params={"entity1Id": "a"})

        assert response.status == 400

    @pytest.mark.asyncio
    async def test_create_rules(self, client):
        """Invalid combinations answer 400; duplicates answer 409."""
        edge = {
            "primaryId": "p1",
            "primaryType": "Purchase",
            "secondaryId": "i1",
            "secondaryType": "Item",
            "relationshipType": "purchase_item",
        }

        assert (await client.post("/api/relationships", json=edge)).status == 201
        duplicate = await client.post("/api/relationships", json=edge)
        invalid = await client.post(
            "/api/relationships", json={**edge, "relationshipType": "sale_item"}
        )

        assert duplicate.status == 409
        assert (await duplicate.json())["code"] == "CONFLICT"
        assert invalid.status == 400
        assert (await invalid.json())["code"] == "INVALID_RELATIONSHIP_COMBINATION"

    @pytest.mark.asyncio
    async def test_convert_and_rebuild(self, client):
        """Legacy conversion and relationship rebuild run over HTTP."""
        product = await post_item(client, name="Table")
        material = await post_item(
            client, name="Walnut", itemType="material", usedInProducts=[product["id"]]
        )

        converted = await client.post(f"/api/relationships/convert/Item/{material['id']}")
        rebuilt = await client.post("/api/relationships/rebuild", params={"prune": "true"})
        unknown = await client.post(f"/api/relationships/convert/Vendor/{material['id']}")

        assert (await converted.json())["data"]["converted"] == 1
        assert (await rebuilt.json())["data"]["processed"] == 2
        assert unknown.status == 400


class TestInventoryAndAssets:
    """Tests for rebuild and asset endpoints."""

    @pytest.mark.asyncio
    async def test_rebuild(self, client):
        """Inventory rebuild runs for all items or one; batchSize is checked."""
        item = await post_item(client, quantity=8)

        everything = await client.post("/api/inventory/rebuild", json={"batchSize": 10})
        one = await client.post(f"/api/inventory/rebuild/{item['id']}")
        bad = await client.post("/api/inventory/rebuild", json={"batchSize": -1})
        missing = await client.post("/api/inventory/rebuild/nope")

        assert (await everything.json())["data"]["updated"] == 1
        assert (await one.json())["data"]["updated"] is False
        assert bad.status == 400
        assert missing.status == 404

    @pytest.mark.asyncio
    async def test_assets(self, client):
        """Assets use the plain CRUD handlers."""
        response = await client.post("/api/assets", json={"name": "Saw", "initialCost": 250})
        asset = (await response.json())["data"]

        assert response.status == 201
        assert asset["assetTag"] == "A-000001"
        assert asset["currentValue"] == 250
        listed = await client.get("/api/assets")
        assert (await listed.json())["results"] == 1
        assert (await client.put("/api/assets/nope", json={"name": "x"})).status == 404
        assert (await client.delete(f"/api/assets/{asset['id']}")).status == 204
        assert (await client.get(f"/api/assets/{asset['id']}")).status == 404
