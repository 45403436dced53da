"""
Handler factory.

Builds aiohttp request handlers for the standard CRUD surface of any
repository, plus relationship-aware variants that attach an entity's
relationships to the response and delegate writes to a service.

Wire shapes:
    success  {"status": "success", "results": n, "data": ...}
             (`results` only on list responses)
    error    {"status": "fail" | "error", "message": ..., "code": ...}
             (written by the error middleware in http_server)

List query parameters:
    filter   JSON object in the filter operator vocabulary
    page     1-based page number, used together with limit
    limit    page size
    sort     "field" or "-field", comma separated
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, Dict, Optional, Tuple

from aiohttp import web

from ..errors import NotFoundError, ValidationError

if TYPE_CHECKING:
    from ..core import InventoryCore

logger = logging.getLogger(__name__)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def success(data: Any, status: int = 200, results: Optional[int] = None) -> web.Response:
    body: Dict[str, Any] = {"status": "success"}
    if results is not None:
        body["results"] = results
    body["data"] = data
    return web.json_response(body, status=status)


def _positive_int(request: web.Request, name: str) -> Optional[int]:
    raw = request.query.get(name)
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError:
        raise ValidationError(
            f"Query parameter '{name}' must be an integer", errors=[name]
        ) from None
    if value < 1:
        raise ValidationError(f"Query parameter '{name}' must be at least 1", errors=[name])
    return value


def parse_list_query(request: web.Request) -> Tuple[Optional[Dict[str, Any]], Dict[str, Any]]:
    """(filter, options) out of a list request's query string.

    Raises:
        ValidationError: If filter is not a JSON object or paging is invalid
    """
    filter = None
    raw_filter = request.query.get("filter")
    if raw_filter:
        try:
            filter = json.loads(raw_filter)
        except json.JSONDecodeError:
            raise ValidationError(
                "Query parameter 'filter' must be JSON", errors=["filter"]
            ) from None
        if not isinstance(filter, dict):
            raise ValidationError(
                "Query parameter 'filter' must be a JSON object", errors=["filter"]
            )

    options: Dict[str, Any] = {}
    page = _positive_int(request, "page")
    limit = _positive_int(request, "limit")
    if limit is not None:
        options["limit"] = limit
        if page is not None:
            options["skip"] = (page - 1) * limit
    if request.query.get("sort"):
        options["sort"] = request.query["sort"]
    return filter, options


async def read_json(request: web.Request) -> Dict[str, Any]:
    """Request body as a JSON object.

    Raises:
        ValidationError: If the body is missing or not a JSON object
    """
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Request body must be JSON", errors=["body"]) from None
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object", errors=["body"])
    return body


class HandlerFactory:
    """Generates aiohttp handlers bound to an InventoryCore.

    Example:
        >>> handlers = HandlerFactory(core)
        >>> items = core.repository("Item")
        >>> app.router.add_get("/api/items", handlers.get_all(items))
        >>> app.router.add_get("/api/items/{id}", handlers.get_one(items))
    """

    def __init__(self, core: InventoryCore) -> None:
        self.core = core

    @property
    def relationships(self) -> Any:
        return self.core.repository("Relationship")

    async def _attach(self, record: Dict[str, Any], entity_type: str) -> Dict[str, Any]:
        return {
            **record,
            "relationships": await self.relationships.find_all_for_entity(
                record["id"], entity_type
            ),
        }

    # -- plain CRUD -----------------------------------------------------------

    def get_all(self, repository: Any) -> Handler:
        async def handler(request: web.Request) -> web.Response:
            filter, options = parse_list_query(request)
            records = await repository.find_all(filter, options)
            return success(records, results=len(records))

        return handler

    def get_one(self, repository: Any) -> Handler:
        async def handler(request: web.Request) -> web.Response:
            record_id = request.match_info["id"]
            record = await repository.find_by_id(record_id)
            if record is None:
                raise NotFoundError(repository.entity_type, record_id)
            return success(record)

        return handler

    def create_one(self, repository: Any) -> Handler:
        async def handler(request: web.Request) -> web.Response:
            record = await repository.create(await read_json(request))
            return success(record, status=201)

        return handler

    def update_one(self, repository: Any) -> Handler:
        async def handler(request: web.Request) -> web.Response:
            record_id = request.match_info["id"]
            record = await repository.update(record_id, await read_json(request))
            if record is None:
                raise NotFoundError(repository.entity_type, record_id)
            return success(record)

        return handler

    def delete_one(self, repository: Any) -> Handler:
        async def handler(request: web.Request) -> web.Response:
            record_id = request.match_info["id"]
            if not await repository.delete(record_id):
                raise NotFoundError(repository.entity_type, record_id)
            return web.Response(status=204)

        return handler

    # -- relationship-aware ---------------------------------------------------

    def get_all_with_relationships(self, repository: Any, entity_type: str) -> Handler:
        async def handler(request: web.Request) -> web.Response:
            filter, options = parse_list_query(request)
            records = await repository.find_all(filter, options)
            data = [await self._attach(record, entity_type) for record in records]
            return success(data, results=len(data))

        return handler

    def get_one_with_relationships(self, repository: Any, entity_type: str) -> Handler:
        async def handler(request: web.Request) -> web.Response:
            record_id = request.match_info["id"]
            record = await repository.find_by_id(record_id)
            if record is None:
                raise NotFoundError(entity_type, record_id)
            return success(await self._attach(record, entity_type))

        return handler

    def create_one_with_relationships(
        self, controller: Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]], entity_type: str
    ) -> Handler:
        """Handler delegating the write to a service's create()."""

        async def handler(request: web.Request) -> web.Response:
            record = await controller(await read_json(request))
            return success(await self._attach(record, entity_type), status=201)

        return handler

    def update_one_with_relationships(
        self,
        controller: Callable[[str, Dict[str, Any]], Awaitable[Dict[str, Any]]],
        entity_type: str,
    ) -> Handler:
        async def handler(request: web.Request) -> web.Response:
            record = await controller(request.match_info["id"], await read_json(request))
            return success(await self._attach(record, entity_type))

        return handler

    def delete_one_with_relationships(
        self, controller: Callable[[str], Awaitable[Any]]
    ) -> Handler:
        async def handler(request: web.Request) -> web.Response:
            await controller(request.match_info["id"])
            return web.Response(status=204)

        return handler
