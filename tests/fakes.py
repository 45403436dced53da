"""
In-memory DynamoDB client double for the key-value backend.

Implements just the client surface KeyValueBackend uses (list_tables,
describe_table, create_table, get_item, query, scan, transact_write_items)
with DynamoDB's observable behavior: sparse GSIs, filter expressions over
placeholder names, paginated reads and all-or-nothing conditional
transactions.

Knobs for failure tests:
    page_size        Items per scan/query page (forces LastEvaluatedKey paging)
    conflicts        Number of upcoming transactions to cancel with a
                     TransactionConflict reason
    unreachable      Make list_tables fail as if the endpoint were down
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from boto3.dynamodb.types import TypeDeserializer
from botocore.exceptions import ClientError, EndpointConnectionError

_deserializer = TypeDeserializer()
_MISSING = object()

_COMPARISON = re.compile(r"^(\S+) (=|<>|>=|<=|>|<) (\S+)$")
_MEMBERSHIP = re.compile(r"^(\S+) IN \((.*)\)$")
_FUNCTION = re.compile(r"^(attribute_exists|attribute_not_exists)\((\S+)\)$")


def _plain(item: Dict[str, Any]) -> Dict[str, Any]:
    return {k: _deserializer.deserialize(v) for k, v in item.items()}


def _client_error(code: str, operation: str, **extra: Any) -> ClientError:
    response: Dict[str, Any] = {"Error": {"Code": code, "Message": code}}
    response.update(extra)
    return ClientError(response, operation)


def _resolve(record: Dict[str, Any], expression: str, names: Dict[str, str]) -> Any:
    current: Any = record
    for placeholder in expression.split("."):
        part = names.get(placeholder, placeholder)
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _compare(left: Any, op: str, right: Any) -> bool:
    if left is _MISSING:
        return op == "<>"
    if isinstance(left, bool) != isinstance(right, bool):
        return op == "<>"
    try:
        if op == "=":
            return left == right
        if op == "<>":
            return left != right
        if op == ">":
            return left > right
        if op == ">=":
            return left >= right
        if op == "<":
            return left < right
        if op == "<=":
            return left <= right
    except TypeError:
        return False
    raise ValueError(op)


def evaluate(
    expression: Optional[str],
    record: Dict[str, Any],
    names: Optional[Dict[str, str]] = None,
    values: Optional[Dict[str, Any]] = None,
) -> bool:
    """Evaluate an AND-joined condition or filter expression against a plain record."""
    if not expression:
        return True
    names = names or {}
    plain_values = _plain(values or {})
    for clause in expression.split(" AND "):
        clause = clause.strip()
        function = _FUNCTION.match(clause)
        if function:
            present = _resolve(record, function.group(2), names) is not _MISSING
            if present != (function.group(1) == "attribute_exists"):
                return False
            continue
        membership = _MEMBERSHIP.match(clause)
        if membership:
            value = _resolve(record, membership.group(1), names)
            options = [plain_values[p.strip()] for p in membership.group(2).split(",")]
            if value is _MISSING or not any(_compare(value, "=", o) for o in options):
                return False
            continue
        comparison = _COMPARISON.match(clause)
        if comparison is None:
            raise ValueError(f"Unsupported expression clause: {clause}")
        left = _resolve(record, comparison.group(1), names)
        if not _compare(left, comparison.group(2), plain_values[comparison.group(3)]):
            return False
    return True


class _ClientContext:
    def __init__(self, client: FakeDynamoDB) -> None:
        self.client = client

    async def __aenter__(self) -> FakeDynamoDB:
        self.client.open_clients += 1
        return self.client

    async def __aexit__(self, *exc: Any) -> bool:
        self.client.open_clients -= 1
        return False


class FakeDynamoDB:
    """Table store plus the client methods the backend calls."""

    def __init__(self, page_size: Optional[int] = None) -> None:
        self.tables: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.hash_keys: Dict[str, str] = {}
        self.page_size = page_size
        self.conflicts = 0
        self.unreachable = False
        self.open_clients = 0
        self.transactions: List[List[Dict[str, Any]]] = []
        self.calls: List[str] = []

    def client_factory(self) -> _ClientContext:
        return _ClientContext(self)

    def items(self, table: str) -> List[Dict[str, Any]]:
        """Stored items of a table, unmarshalled (for assertions)."""
        return [_plain(item) for item in self.tables.get(table, {}).values()]

    def _table(self, name: str, operation: str) -> Dict[str, Dict[str, Any]]:
        if name not in self.tables:
            raise _client_error("ResourceNotFoundException", operation)
        return self.tables[name]

    # -- control plane --------------------------------------------------------

    async def list_tables(self, Limit: int = 100) -> Dict[str, Any]:
        self.calls.append("list_tables")
        if self.unreachable:
            raise EndpointConnectionError(endpoint_url="http://dynamodb.fake")
        return {"TableNames": sorted(self.tables)[:Limit]}

    async def describe_table(self, TableName: str) -> Dict[str, Any]:
        self._table(TableName, "DescribeTable")
        return {"Table": {"TableName": TableName, "TableStatus": "ACTIVE"}}

    async def create_table(self, **kwargs: Any) -> Dict[str, Any]:
        name = kwargs["TableName"]
        self.calls.append(f"create_table:{name}")
        if name in self.tables:
            raise _client_error("ResourceInUseException", "CreateTable")
        self.tables[name] = {}
        self.hash_keys[name] = next(
            k["AttributeName"] for k in kwargs["KeySchema"] if k["KeyType"] == "HASH"
        )
        return {"TableDescription": {"TableName": name, "TableStatus": "ACTIVE"}}

    # -- reads ----------------------------------------------------------------

    async def get_item(
        self, TableName: str, Key: Dict[str, Any], ConsistentRead: bool = False
    ) -> Dict[str, Any]:
        table = self._table(TableName, "GetItem")
        key = _deserializer.deserialize(next(iter(Key.values())))
        item = table.get(key)
        return {"Item": dict(item)} if item is not None else {}

    def _page(
        self,
        table_name: str,
        candidates: List[Dict[str, Any]],
        kwargs: Dict[str, Any],
    ) -> Dict[str, Any]:
        key_name = self.hash_keys[table_name]
        start = kwargs.get("ExclusiveStartKey")
        if start:
            start_key = _deserializer.deserialize(start[key_name])
            keys = [_deserializer.deserialize(c[key_name]) for c in candidates]
            candidates = candidates[keys.index(start_key) + 1:]
        page = candidates[: self.page_size] if self.page_size else candidates
        names = kwargs.get("ExpressionAttributeNames")
        values = kwargs.get("ExpressionAttributeValues")
        filtered = [
            dict(item)
            for item in page
            if evaluate(kwargs.get("FilterExpression"), _plain(item), names, values)
        ]
        response: Dict[str, Any] = {"Items": filtered, "Count": len(filtered)}
        if self.page_size and len(candidates) > self.page_size:
            response["LastEvaluatedKey"] = {key_name: page[-1][key_name]}
        return response

    async def scan(self, TableName: str, **kwargs: Any) -> Dict[str, Any]:
        self.calls.append(f"scan:{TableName}")
        table = self._table(TableName, "Scan")
        return self._page(TableName, list(table.values()), kwargs)

    async def query(
        self, TableName: str, IndexName: str, KeyConditionExpression: str, **kwargs: Any
    ) -> Dict[str, Any]:
        self.calls.append(f"query:{TableName}:{IndexName}")
        table = self._table(TableName, "Query")
        names = kwargs.get("ExpressionAttributeNames")
        values = kwargs.get("ExpressionAttributeValues")
        candidates = [
            item
            for item in table.values()
            if evaluate(KeyConditionExpression, _plain(item), names, values)
        ]
        return self._page(TableName, candidates, kwargs)

    # -- writes ---------------------------------------------------------------

    async def transact_write_items(
        self, TransactItems: List[Dict[str, Any]], ClientRequestToken: str = ""
    ) -> Dict[str, Any]:
        self.transactions.append(TransactItems)
        if len(TransactItems) > 100:
            raise _client_error("ValidationException", "TransactWriteItems")
        if self.conflicts > 0:
            self.conflicts -= 1
            raise _client_error(
                "TransactionCanceledException",
                "TransactWriteItems",
                CancellationReasons=[{"Code": "TransactionConflict"} for _ in TransactItems],
            )

        planned = []
        reasons = []
        failed = False
        for entry in TransactItems:
            (action, body), = entry.items()
            table = self._table(body["TableName"], "TransactWriteItems")
            key_name = self.hash_keys[body["TableName"]]
            if action == "Put":
                key = _deserializer.deserialize(body["Item"][key_name])
            else:
                key = _deserializer.deserialize(body["Key"][key_name])
            current = table.get(key)
            ok = evaluate(
                body.get("ConditionExpression"),
                _plain(current) if current is not None else {},
                body.get("ExpressionAttributeNames"),
                body.get("ExpressionAttributeValues"),
            )
            reasons.append({"Code": "None" if ok else "ConditionalCheckFailed"})
            failed = failed or not ok
            planned.append((action, table, key, body))

        if failed:
            raise _client_error(
                "TransactionCanceledException",
                "TransactWriteItems",
                CancellationReasons=reasons,
            )
        for action, table, key, body in planned:
            if action == "Put":
                table[key] = dict(body["Item"])
            else:
                table.pop(key, None)
        return {}



async def no_sleep(_delay: float) -> None:
    return None
