"""
DynamoDB key-value backend.

One table per collection (`<prefix><collection>`, hash key `id`) plus a
shared `<prefix>unique_keys` table of guard rows. Writes inside a
transaction are buffered in a PendingBatch and flushed by a single
TransactWriteItems call on commit.

Invariants:
    - Reads inside a batch see the batch's own writes (overlay first)
    - Every unique index is enforced by a guard row written with
      attribute_not_exists(pk) in the same transactional write as the record
    - Replace carries a condition on the expected field values, so a lost
      update fails the whole batch with a retryable ConflictError
    - Batches over max_transaction_items fail at commit with
      TransactionTooLargeError and nothing is written
    - GSI key attributes are always non-empty strings; other values for
      those attributes are kept in the `_sparse` map and restored on read

How to change safely:
    - New IndexDefs need a table migration (GSIs cannot be added in place
      by create_table); test against DynamoDB Local first
    - Keep marshalling symmetric: floats go in as Decimal and come back as
      int or float
"""

from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from aiobotocore.session import get_session
from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.exceptions import BotoCoreError, ClientError

from ..config import KeyValueConfig
from ..errors import (
    BackendUnavailableError,
    ConflictError,
    TransactionTooLargeError,
)
from ..repositories.filters import (
    Condition,
    QueryOptions,
    apply_options,
    get_path,
    is_missing,
    matches,
    matches_text,
    parse_filter,
    parse_options,
)
from ..schema.compilers import (
    DynamoTableSpec,
    compile_dynamodb,
    compile_unique_keys_table,
)
from ..schema.registry import get_registry
from ..schema.types import EntityDef
from ..transactions.handles import (
    PendingBatch,
    TransactionHandle,
    TransactionStatus,
    WriteOp,
)
from ..transactions.retry import RetryPolicy
from .base import ConnectionGate

logger = logging.getLogger(__name__)

SPARSE_ATTRIBUTE = "_sparse"
DEFAULT_SORT = (("createdAt", False), ("id", False))

_serializer = TypeSerializer()
_deserializer = TypeDeserializer()


def to_dynamo(value: Any) -> Any:
    """Plain value -> value TypeSerializer accepts (floats become Decimal)."""
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: to_dynamo(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_dynamo(v) for v in value]
    return value


def from_dynamo(value: Any) -> Any:
    """Deserialized value -> plain value (Decimal becomes int or float)."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: from_dynamo(v) for k, v in value.items()}
    if isinstance(value, (list, set)):
        return [from_dynamo(v) for v in value]
    return value


def marshal(item: Dict[str, Any]) -> Dict[str, Any]:
    return {k: _serializer.serialize(to_dynamo(v)) for k, v in item.items()}


def unmarshal(item: Dict[str, Any]) -> Dict[str, Any]:
    return {k: from_dynamo(_deserializer.deserialize(v)) for k, v in item.items()}


class _Expression:
    """Accumulates ExpressionAttributeNames/Values placeholders."""

    def __init__(self, prefix: str = "") -> None:
        self.prefix = prefix
        self.names: Dict[str, str] = {}
        self.values: Dict[str, Any] = {}

    def name(self, path: str) -> str:
        parts = []
        for part in path.split("."):
            placeholder = f"#{self.prefix}n{len(self.names)}"
            self.names[placeholder] = part
            parts.append(placeholder)
        return ".".join(parts)

    def value(self, value: Any) -> str:
        placeholder = f":{self.prefix}v{len(self.values)}"
        self.values[placeholder] = value
        return placeholder


def _pushable(condition: Condition, key_attributes: set[str]) -> bool:
    if condition.path.split(".")[0] in key_attributes:
        return False
    scalar = (str, int, float)
    if condition.op == "$in":
        return bool(condition.value) and all(
            isinstance(v, scalar) and not isinstance(v, bool) for v in condition.value
        )
    if condition.op == "$exists":
        return False
    value = condition.value
    if condition.op == "$eq":
        return value is not None and isinstance(value, (str, int, float, bool))
    return isinstance(value, scalar) and not isinstance(value, bool)


def _filter_expression(conditions: List[Condition], expr: _Expression) -> Optional[str]:
    clauses = []
    for condition in conditions:
        name = expr.name(condition.path)
        if condition.op == "$in":
            placeholders = ", ".join(expr.value(v) for v in condition.value)
            clauses.append(f"{name} IN ({placeholders})")
            continue
        sql_op = {"$eq": "=", "$gt": ">", "$gte": ">=", "$lt": "<", "$lte": "<="}[condition.op]
        clauses.append(f"{name} {sql_op} {expr.value(condition.value)}")
    return " AND ".join(clauses) if clauses else None


class KeyValueCollection:
    """DynamoDB-backed Collection for one entity."""

    def __init__(self, backend: KeyValueBackend, entity: EntityDef) -> None:
        self.backend = backend
        self.entity = entity
        self.spec: DynamoTableSpec = compile_dynamodb(entity, backend.config.table_prefix)
        self.table = self.spec.table_name
        self.key_attributes: set[str] = set()
        for key in self.spec.gsis.values():
            self.key_attributes.add(key.hash_attribute)
            if key.range_attribute:
                self.key_attributes.add(key.range_attribute)

    # -- item layout ----------------------------------------------------------

    def to_item(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """Record -> stored attribute map (shadow and sparse attributes added)."""
        item = dict(record)
        for attribute, path in self.spec.shadow_attributes.items():
            value = get_path(record, path)
            if not is_missing(value):
                item[attribute] = value
        sparse = {}
        for attribute in self.key_attributes:
            if attribute not in item:
                continue
            value = item[attribute]
            if not isinstance(value, str) or not value:
                item.pop(attribute)
                if attribute not in self.spec.shadow_attributes:
                    sparse[attribute] = value
        if sparse:
            item[SPARSE_ATTRIBUTE] = sparse
        return item

    def from_item(self, item: Dict[str, Any]) -> Dict[str, Any]:
        record = dict(item)
        for attribute in self.spec.shadow_attributes:
            record.pop(attribute, None)
        record.update(record.pop(SPARSE_ATTRIBUTE, None) or {})
        return record

    def _guard_keys(self, record: Optional[Dict[str, Any]]) -> Dict[str, str]:
        if record is None:
            return {}
        keys = {}
        for index_name, paths in self.spec.unique_keys.items():
            values = [get_path(record, p) for p in paths]
            if any(is_missing(v) or v is None for v in values):
                continue
            keys[index_name] = "#".join([self.table, index_name] + [str(v) for v in values])
        return keys

    # -- reads ----------------------------------------------------------------

    async def get(self, record_id: str, txn: Optional[TransactionHandle] = None) -> Optional[dict]:
        if isinstance(txn, PendingBatch):
            found, record = txn.lookup(self.table, record_id)
            if found:
                return dict(record) if record is not None else None
        await self.backend.ready(self)
        response = await self.backend.call(
            "get_item",
            TableName=self.table,
            Key={"id": {"S": record_id}},
            ConsistentRead=True,
        )
        item = response.get("Item")
        return self.from_item(unmarshal(item)) if item else None

    async def _fetch(self, conditions: List[Condition]) -> List[dict]:
        await self.backend.ready(self)
        gsi_name, hash_condition = None, None
        for name, key in self.spec.gsis.items():
            for condition in conditions:
                if (
                    condition.path == key.hash_path
                    and condition.op == "$eq"
                    and isinstance(condition.value, str)
                    and condition.value
                ):
                    gsi_name, hash_condition = name, condition
                    break
            if gsi_name:
                break

        expr = _Expression()
        pushed = [c for c in conditions if c is not hash_condition and _pushable(c, self.key_attributes)]
        filter_expression = _filter_expression(pushed, expr)
        kwargs: Dict[str, Any] = {"TableName": self.table}
        if gsi_name is not None:
            key = self.spec.gsis[gsi_name]
            kwargs["IndexName"] = gsi_name
            kwargs["KeyConditionExpression"] = (
                f"{expr.name(key.hash_attribute)} = {expr.value(hash_condition.value)}"
            )
            operation = "query"
        else:
            operation = "scan"
        if filter_expression:
            kwargs["FilterExpression"] = filter_expression
        if expr.names:
            kwargs["ExpressionAttributeNames"] = expr.names
        if expr.values:
            kwargs["ExpressionAttributeValues"] = marshal(expr.values)

        records: List[dict] = []
        while True:
            response = await self.backend.call(operation, **kwargs)
            records.extend(self.from_item(unmarshal(i)) for i in response.get("Items", []))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                break
            kwargs["ExclusiveStartKey"] = last_key
        return records

    async def find(
        self,
        filter: Optional[Dict[str, Any]] = None,
        options: Optional[Dict[str, Any]] = None,
        txn: Optional[TransactionHandle] = None,
    ) -> List[dict]:
        conditions = parse_filter(filter)
        opts = parse_options(options)
        fetched = await self._fetch(conditions)
        if isinstance(txn, PendingBatch):
            touched = txn.touched(self.table)
            fetched = [r for r in fetched if r["id"] not in touched]
            fetched.extend(dict(r) for r in touched.values() if r is not None)
        records = [r for r in fetched if matches(r, conditions)]
        return apply_options(records, QueryOptions(opts.limit, opts.skip, opts.sort or DEFAULT_SORT))

    async def count(
        self, filter: Optional[Dict[str, Any]] = None, txn: Optional[TransactionHandle] = None
    ) -> int:
        return len(await self.find(filter, None, txn))

    async def group_count(self, path: str) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for record in await self._fetch([]):
            value = get_path(record, path)
            if is_missing(value) or value is None:
                continue
            counts[value] = counts.get(value, 0) + 1
        return counts

    async def search(self, text: str, options: Optional[Dict[str, Any]] = None) -> List[dict]:
        fields = self.entity.get_searchable_fields()
        records = await self.find(None, {"sort": ["createdAt", "id"]})
        hits = [r for r in records if matches_text(r, text, fields)]
        return apply_options(hits, parse_options(options))

    # -- writes ---------------------------------------------------------------

    def _guard_ops(
        self, before: Optional[Dict[str, Any]], after: Optional[Dict[str, Any]], record_id: str
    ) -> List[WriteOp]:
        old, new = self._guard_keys(before), self._guard_keys(after)
        ops = []
        unique_table = self.backend.unique_table
        for index_name, pk in old.items():
            if new.get(index_name) != pk:
                ops.append(WriteOp(action="Delete", table=unique_table, key=pk))
        for index_name, pk in new.items():
            if old.get(index_name) != pk:
                ops.append(
                    WriteOp(
                        action="Put",
                        table=unique_table,
                        key=pk,
                        item={"pk": pk, "recordId": record_id, "collection": self.table},
                        condition="attribute_not_exists(#pk)",
                        names={"#pk": "pk"},
                        conflict_retryable=False,
                    )
                )
        return ops

    async def _write(self, ops: List[WriteOp], txn: Optional[TransactionHandle]) -> None:
        if isinstance(txn, PendingBatch) and txn.is_pending:
            for op in ops:
                txn.add(op)
            return
        batch = PendingBatch(limit=self.backend.config.max_transaction_items, label="autocommit")
        for op in ops:
            batch.add(op)
        await self.backend.commit(batch)

    async def insert(self, record: dict, txn: Optional[TransactionHandle] = None) -> dict:
        await self.backend.ready(self)
        op = WriteOp(
            action="Put",
            table=self.table,
            key=record["id"],
            item=dict(record),
            condition="attribute_not_exists(#id)",
            names={"#id": "id"},
            conflict_retryable=False,
        )
        await self._write([op] + self._guard_ops(None, record, record["id"]), txn)
        return record

    async def replace(
        self,
        record: dict,
        expected: Optional[Dict[str, Any]] = None,
        txn: Optional[TransactionHandle] = None,
    ) -> Optional[dict]:
        current = await self.get(record["id"], txn)
        if current is None:
            return None
        for name, value in (expected or {}).items():
            if current.get(name) != value:
                raise ConflictError(
                    f"{self.entity.name} {record['id']} was modified concurrently",
                    retryable=True,
                    details={"field": name},
                )
        expr = _Expression("c")
        clauses = [f"attribute_exists({expr.name('id')})"]
        for name, value in (expected or {}).items():
            clauses.append(f"{expr.name(name)} = {expr.value(value)}")
        op = WriteOp(
            action="Put",
            table=self.table,
            key=record["id"],
            item=dict(record),
            condition=" AND ".join(clauses),
            names=expr.names,
            values=expr.values,
            conflict_retryable=True,
        )
        await self._write([op] + self._guard_ops(current, record, record["id"]), txn)
        return record

    async def remove(self, record_id: str, txn: Optional[TransactionHandle] = None) -> bool:
        current = await self.get(record_id, txn)
        if current is None:
            return False
        op = WriteOp(
            action="Delete",
            table=self.table,
            key=record_id,
            condition="attribute_exists(#id)",
            names={"#id": "id"},
            conflict_retryable=True,
        )
        await self._write([op] + self._guard_ops(current, None, record_id), txn)
        return True


class KeyValueBackend:
    """DynamoDB implementation of the Backend protocol.

    Example:
        >>> backend = KeyValueBackend(KeyValueConfig(table_prefix="biztracker_"))
        >>> await backend.connect()
        >>> async with coordinator.transaction() as txn:
        ...     await backend.collection(ITEM).insert(record, txn)
    """

    name = "keyvalue"

    def __init__(
        self,
        config: KeyValueConfig,
        client_factory: Optional[Callable[[], Any]] = None,
        connect_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        """Initialize the backend.

        Args:
            config: DynamoDB settings
            client_factory: Returns an async context manager yielding a
                DynamoDB client (defaults to an aiobotocore session)
            connect_policy: Retry schedule for the initial connection
            sleep: Awaitable sleep (injected in tests)
        """
        self.config = config
        self.unique_table = f"{config.table_prefix}unique_keys"
        self._client_factory = client_factory or self._create_client
        self._client_ctx: Any = None
        self._client: Any = None
        self._sleep = sleep
        self._collections: dict[str, KeyValueCollection] = {}
        self._by_table: dict[str, KeyValueCollection] = {}
        self._created: set[str] = set()
        self._gate = ConnectionGate(
            self._open,
            connect_policy
            or RetryPolicy.exponential(config.connect_attempts, config.connect_base_delay),
            self.name,
            sleep=sleep,
        )

    def _create_client(self) -> Any:
        client_config: Dict[str, Any] = {"region_name": self.config.region}
        if self.config.endpoint_url:
            client_config["endpoint_url"] = self.config.endpoint_url
        if self.config.access_key_id:
            client_config["aws_access_key_id"] = self.config.access_key_id
            client_config["aws_secret_access_key"] = self.config.secret_access_key
        return get_session().create_client("dynamodb", **client_config)

    async def _open(self) -> None:
        try:
            self._client_ctx = self._client_factory()
            self._client = await self._client_ctx.__aenter__()
            await self._client.list_tables(Limit=1)
        except (ClientError, BotoCoreError) as e:
            await self._release_client()
            raise BackendUnavailableError(f"Cannot reach DynamoDB: {e}", self.name) from e

        for entity in get_registry().entities():
            self.collection(entity)
        await self._ensure_table(compile_unique_keys_table(self.config.table_prefix))
        for collection in list(self._collections.values()):
            await self._ensure_table(collection.spec.create_args)

    async def _release_client(self) -> None:
        if self._client_ctx is not None:
            try:
                await self._client_ctx.__aexit__(None, None, None)
            except (ClientError, BotoCoreError) as e:
                logger.warning("Error closing DynamoDB client", extra={"error": str(e)})
        self._client_ctx = None
        self._client = None

    async def _ensure_table(self, create_args: Dict[str, Any]) -> None:
        table_name = create_args["TableName"]
        if table_name in self._created:
            return
        try:
            await self._client.describe_table(TableName=table_name)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") != "ResourceNotFoundException":
                raise BackendUnavailableError(
                    f"Cannot describe table {table_name}: {e}", self.name
                ) from e
            try:
                await self._client.create_table(**create_args)
            except ClientError as create_error:
                code = create_error.response.get("Error", {}).get("Code")
                if code != "ResourceInUseException":
                    raise BackendUnavailableError(
                        f"Cannot create table {table_name}: {create_error}", self.name
                    ) from create_error
            logger.info("Created DynamoDB table", extra={"table": table_name})
            await self._wait_active(table_name)
        self._created.add(table_name)

    async def _wait_active(self, table_name: str) -> None:
        waited = 0.0
        while waited < self.config.table_active_timeout:
            response = await self._client.describe_table(TableName=table_name)
            if response.get("Table", {}).get("TableStatus") == "ACTIVE":
                return
            await self._sleep(1.0)
            waited += 1.0
        raise BackendUnavailableError(
            f"Table {table_name} not ACTIVE after {self.config.table_active_timeout}s",
            self.name,
        )

    async def connect(self) -> None:
        await self._gate.wait()
        logger.info(
            "DynamoDB backend ready",
            extra={"table_prefix": self.config.table_prefix, "region": self.config.region},
        )

    async def ready(self, collection: KeyValueCollection) -> None:
        """Await the connection and make sure the collection's table exists."""
        await self._gate.wait()
        if collection.table not in self._created:
            await self._ensure_table(collection.spec.create_args)

    async def close(self) -> None:
        await self._release_client()
        self._created.clear()
        self._gate.reset()
        logger.info("DynamoDB backend closed")

    async def health_check(self) -> Dict[str, Any]:
        await self._gate.wait()
        await self.call("list_tables", Limit=1)
        return {"provider": self.name, "status": "ok", "table_prefix": self.config.table_prefix}

    def collection(self, entity: EntityDef) -> KeyValueCollection:
        existing = self._collections.get(entity.name)
        if existing is None:
            existing = KeyValueCollection(self, entity)
            self._collections[entity.name] = existing
            self._by_table[existing.table] = existing
        return existing

    async def call(self, operation: str, **kwargs: Any) -> Dict[str, Any]:
        """Invoke a client operation, mapping botocore errors."""
        await self._gate.wait()
        try:
            return await getattr(self._client, operation)(**kwargs)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in ("ProvisionedThroughputExceededException", "ThrottlingException"):
                raise ConflictError(
                    f"DynamoDB throttled {operation}", retryable=True, details={"code": code}
                ) from e
            raise BackendUnavailableError(f"DynamoDB {operation} failed: {code}", self.name) from e
        except BotoCoreError as e:
            raise BackendUnavailableError(f"DynamoDB {operation} failed: {e}", self.name) from e

    # -- transactions ---------------------------------------------------------

    async def begin(self) -> PendingBatch:
        await self._gate.wait()
        return PendingBatch(limit=self.config.max_transaction_items)

    def _transact_item(self, op: WriteOp) -> Dict[str, Any]:
        collection = self._by_table.get(op.table)
        key_name = "pk" if op.table == self.unique_table else "id"
        if op.action == "Put":
            item = collection.to_item(op.item) if collection is not None else op.item
            body: Dict[str, Any] = {"TableName": op.table, "Item": marshal(item)}
        else:
            body = {"TableName": op.table, "Key": {key_name: {"S": op.key}}}
        if op.condition:
            body["ConditionExpression"] = op.condition
            if op.names:
                body["ExpressionAttributeNames"] = dict(op.names)
            if op.values:
                body["ExpressionAttributeValues"] = marshal(op.values)
        return {op.action: body}

    def _cancellation_error(self, error: ClientError, ops: List[WriteOp]) -> ConflictError:
        reasons = error.response.get("CancellationReasons") or []
        for index, reason in enumerate(reasons):
            code = reason.get("Code", "None")
            if code == "ConditionalCheckFailed" and index < len(ops):
                op = ops[index]
                kind = "Duplicate key" if not op.conflict_retryable else "Write conflict"
                return ConflictError(
                    f"{kind} on {op.table}",
                    retryable=op.conflict_retryable,
                    details={"table": op.table, "key": op.key},
                )
            if code == "TransactionConflict":
                return ConflictError("Concurrent transaction on the same item", retryable=True)
        return ConflictError("Transaction cancelled", retryable=True)

    async def commit(self, txn: TransactionHandle) -> None:
        if not isinstance(txn, PendingBatch) or not txn.is_pending:
            return
        ops = list(txn.operations.values())
        if not ops:
            txn.status = TransactionStatus.COMMITTED
            return
        if len(ops) > txn.limit:
            txn.status = TransactionStatus.ERROR
            raise TransactionTooLargeError(len(ops), txn.limit)
        try:
            await self._gate.wait()
            await self._client.transact_write_items(
                TransactItems=[self._transact_item(op) for op in ops],
                ClientRequestToken=txn.id,
            )
        except ClientError as e:
            txn.status = TransactionStatus.ERROR
            code = e.response.get("Error", {}).get("Code", "")
            if code == "TransactionCanceledException":
                raise self._cancellation_error(e, ops) from e
            if code == "ConditionalCheckFailedException":
                raise ConflictError("Conditional write failed", retryable=True) from e
            if code in ("TransactionConflictException", "ProvisionedThroughputExceededException"):
                raise ConflictError(f"DynamoDB {code}", retryable=True) from e
            raise BackendUnavailableError(f"DynamoDB commit failed: {code}", self.name) from e
        except BotoCoreError as e:
            txn.status = TransactionStatus.ERROR
            raise BackendUnavailableError(f"DynamoDB commit failed: {e}", self.name) from e
        txn.status = TransactionStatus.COMMITTED

    async def rollback(self, txn: TransactionHandle) -> None:
        if not isinstance(txn, PendingBatch) or not txn.is_pending:
            return
        txn.operations.clear()
        txn.status = TransactionStatus.ABORTED

    def is_active(self, txn: TransactionHandle) -> bool:
        return isinstance(txn, PendingBatch) and txn.is_pending
