"""
HTTP application for the inventory core.

Mounts the handler factory's CRUD handlers for every entity and the
operation endpoints (receive, derive, refund, relationship queries,
legacy conversion, inventory rebuild, health) on one aiohttp app.

Invariants:
    - Every response body is JSON
    - Taxonomy errors map to {status, message, code} with their own HTTP
      status; anything else is a 500 with a generic message and the cause
      logged with its traceback

How to change safely:
    - Register fixed paths before `{id}` paths under the same prefix
    - Keep request parsing in handler_factory helpers
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from aiohttp import web

from ..errors import InternalError, InventoryCoreError, ValidationError
from .handler_factory import HandlerFactory, read_json, success

if TYPE_CHECKING:
    from ..core import InventoryCore

logger = logging.getLogger(__name__)

CORE_KEY = web.AppKey("core", object)


@web.middleware
async def error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except InventoryCoreError as e:
        if e.status >= 500:
            logger.error(
                "Request failed",
                extra={"path": request.path, "code": e.code, "error": e.message},
            )
        return web.json_response(e.to_dict(), status=e.status)
    except Exception:
        logger.error("Unhandled error in HTTP handler", extra={"path": request.path}, exc_info=True)
        error = InternalError("Internal server error")
        return web.json_response(error.to_dict(), status=error.status)


def _core(request: web.Request) -> InventoryCore:
    return request.app[CORE_KEY]


async def handle_receive_purchase(request: web.Request) -> web.Response:
    """POST /api/purchases/{id}/receive"""
    purchase = await _core(request).purchase_service.receive(request.match_info["id"])
    return success(purchase)


async def handle_refund_sale(request: web.Request) -> web.Response:
    """POST /api/sales/{id}/refund - body {"refunds": [...]} or empty for a full refund."""
    body = await read_json(request) if request.can_read_body else {}
    sale = await _core(request).sale_service.refund(request.match_info["id"], body.get("refunds"))
    return success(sale)


async def handle_derive_items(request: web.Request) -> web.Response:
    """POST /api/items/{id}/derive - body {"items": [spec, ...]}"""
    body = await read_json(request)
    specs = body.get("items")
    if not isinstance(specs, list):
        raise ValidationError("'items' must be a list of derived item specs", errors=["items"])
    result = await _core(request).item_service.derive(request.match_info["id"], specs)
    return success(result, status=201)


async def handle_entity_relationships(request: web.Request) -> web.Response:
    """GET /api/relationships/entity/{type}/{id}"""
    relationships = _core(request).repository("Relationship")
    data = await relationships.find_all_for_entity(
        request.match_info["id"], request.match_info["type"]
    )
    return success(data)


async def handle_direct_relationships(request: web.Request) -> web.Response:
    """GET /api/relationships/direct?entity1Id=..&entity1Type=..&entity2Id=..&entity2Type=.."""
    names = ("entity1Id", "entity1Type", "entity2Id", "entity2Type")
    missing = [name for name in names if not request.query.get(name)]
    if missing:
        raise ValidationError(
            f"Missing query parameters: {', '.join(missing)}", errors=missing
        )
    relationships = _core(request).repository("Relationship")
    data = await relationships.find_direct_relationships(*(request.query[n] for n in names))
    return success(data, results=len(data))


async def handle_relationship_statistics(request: web.Request) -> web.Response:
    """GET /api/relationships/statistics"""
    return success(await _core(request).repository("Relationship").get_statistics())


async def handle_convert_legacy(request: web.Request) -> web.Response:
    """POST /api/relationships/convert/{type}/{id}"""
    relationships = _core(request).repository("Relationship")
    result = await relationships.convert_legacy_relationships(
        request.match_info["id"], request.match_info["type"]
    )
    return success(result)


async def handle_rebuild_relationships(request: web.Request) -> web.Response:
    """POST /api/relationships/rebuild?prune=true"""
    prune = request.query.get("prune", "false").lower() == "true"
    return success(await _core(request).item_service.rebuild_relationships(prune=prune))


async def handle_rebuild_inventory(request: web.Request) -> web.Response:
    """POST /api/inventory/rebuild - optional body {"batchSize": n}"""
    body = await read_json(request) if request.can_read_body else {}
    batch_size = body.get("batchSize") or 50
    if not isinstance(batch_size, int) or batch_size < 1:
        raise ValidationError("'batchSize' must be a positive integer", errors=["batchSize"])
    return success(await _core(request).rebuilder.rebuild_inventory(batch_size=batch_size))


async def handle_rebuild_item(request: web.Request) -> web.Response:
    """POST /api/inventory/rebuild/{id}"""
    result = await _core(request).rebuilder.rebuild_item_inventory(request.match_info["id"])
    return success(result)


async def handle_health(request: web.Request) -> web.Response:
    """GET /api/health"""
    return success(await _core(request).health())


def create_http_app(core: InventoryCore) -> web.Application:
    """Create the aiohttp application for an initialized core.

    Args:
        core: InventoryCore whose init() has completed

    Returns:
        aiohttp Application instance
    """
    app = web.Application(middlewares=[error_middleware])
    app[CORE_KEY] = core
    handlers = HandlerFactory(core)
    router = app.router

    items = core.repository("Item")
    purchases = core.repository("Purchase")
    sales = core.repository("Sale")
    assets = core.repository("Asset")
    relationships = core.repository("Relationship")

    router.add_get("/api/health", handle_health)

    router.add_get("/api/items", handlers.get_all_with_relationships(items, "Item"))
    router.add_post(
        "/api/items", handlers.create_one_with_relationships(core.item_service.create, "Item")
    )
    router.add_get("/api/items/{id}", handlers.get_one_with_relationships(items, "Item"))
    router.add_put(
        "/api/items/{id}", handlers.update_one_with_relationships(core.item_service.update, "Item")
    )
    router.add_delete(
        "/api/items/{id}", handlers.delete_one_with_relationships(core.item_service.delete)
    )
    router.add_post("/api/items/{id}/derive", handle_derive_items)

    router.add_get("/api/purchases", handlers.get_all_with_relationships(purchases, "Purchase"))
    router.add_post(
        "/api/purchases",
        handlers.create_one_with_relationships(core.purchase_service.create, "Purchase"),
    )
    router.add_get(
        "/api/purchases/{id}", handlers.get_one_with_relationships(purchases, "Purchase")
    )
    router.add_put(
        "/api/purchases/{id}",
        handlers.update_one_with_relationships(core.purchase_service.update, "Purchase"),
    )
    router.add_delete(
        "/api/purchases/{id}",
        handlers.delete_one_with_relationships(core.purchase_service.delete),
    )
    router.add_post("/api/purchases/{id}/receive", handle_receive_purchase)

    router.add_get("/api/sales", handlers.get_all_with_relationships(sales, "Sale"))
    router.add_post(
        "/api/sales", handlers.create_one_with_relationships(core.sale_service.create, "Sale")
    )
    router.add_get("/api/sales/{id}", handlers.get_one_with_relationships(sales, "Sale"))
    router.add_put(
        "/api/sales/{id}", handlers.update_one_with_relationships(core.sale_service.update, "Sale")
    )
    router.add_delete(
        "/api/sales/{id}", handlers.delete_one_with_relationships(core.sale_service.delete)
    )
    router.add_post("/api/sales/{id}/refund", handle_refund_sale)

    router.add_get("/api/assets", handlers.get_all(assets))
    router.add_post("/api/assets", handlers.create_one(assets))
    router.add_get("/api/assets/{id}", handlers.get_one(assets))
    router.add_put("/api/assets/{id}", handlers.update_one(assets))
    router.add_delete("/api/assets/{id}", handlers.delete_one(assets))

    router.add_get("/api/relationships/statistics", handle_relationship_statistics)
    router.add_get("/api/relationships/direct", handle_direct_relationships)
    router.add_get("/api/relationships/entity/{type}/{id}", handle_entity_relationships)
    router.add_post("/api/relationships/convert/{type}/{id}", handle_convert_legacy)
    router.add_post("/api/relationships/rebuild", handle_rebuild_relationships)
    router.add_get("/api/relationships", handlers.get_all(relationships))
    router.add_post("/api/relationships", handlers.create_one(relationships))
    router.add_get("/api/relationships/{id}", handlers.get_one(relationships))
    router.add_put("/api/relationships/{id}", handlers.update_one(relationships))
    router.add_delete("/api/relationships/{id}", handlers.delete_one(relationships))

    router.add_post("/api/inventory/rebuild", handle_rebuild_inventory)
    router.add_post("/api/inventory/rebuild/{id}", handle_rebuild_item)

    return app
