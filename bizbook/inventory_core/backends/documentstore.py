"""
SQLite document store backend.

Records are stored as JSON documents, one table per collection, with
expression indexes over json_extract() compiled from the entity
declarations. Multi-record transactions are native: a NativeSession holds
the writer connection inside BEGIN IMMEDIATE.

Invariants:
    - One writer connection and one reader connection per process
    - Write sessions are serialized by an asyncio lock (the equivalent of a
      row-level lock); autocommit writes take the same lock
    - Reads inside a session go through the writer connection and see the
      session's own writes; reads outside go through the reader connection
    - Unique indexes (item sku, asset tag, relationship 5-tuple) are enforced
      by SQLite and surface as ConflictError(retryable=False)

How to change safely:
    - Schema changes must stay expressible as CREATE ... IF NOT EXISTS
    - Keep filter push-down type-guarded so results match the Python evaluator
    - Test with WAL mode on and off

Table schema (per collection):
    - id TEXT PRIMARY KEY
    - data TEXT (JSON document, includes id and timestamps)
    - created_at TEXT (ISO-8601)
    - updated_at TEXT (ISO-8601)
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import asynccontextmanager, contextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

from ..config import DocumentStoreConfig
from ..errors import BackendUnavailableError, ConflictError, InternalError
from ..repositories.filters import (
    Condition,
    apply_options,
    matches,
    matches_text,
    parse_filter,
    parse_options,
)
from ..schema.compilers import SqliteSchema, compile_sqlite, json_path
from ..schema.registry import get_registry
from ..schema.types import EntityDef
from ..transactions.handles import NativeSession, TransactionHandle, TransactionStatus
from ..transactions.retry import RetryPolicy
from .base import ConnectionGate

logger = logging.getLogger(__name__)

_COLUMNS = {"id": "id", "createdAt": "created_at", "updatedAt": "updated_at"}
DEFAULT_SORT = (("createdAt", False), ("id", False))


def _map_sqlite_error(error: sqlite3.Error, context: str) -> Exception:
    """Translate a sqlite3 exception into the error taxonomy."""
    message = str(error)
    if isinstance(error, sqlite3.IntegrityError) and "UNIQUE" in message.upper():
        return ConflictError(
            f"Duplicate key while {context}: {message}",
            retryable=False,
            details={"constraint": message},
        )
    if isinstance(error, sqlite3.OperationalError) and (
        "locked" in message or "busy" in message
    ):
        return ConflictError(f"Write conflict while {context}: {message}", retryable=True)
    if isinstance(error, sqlite3.OperationalError):
        return BackendUnavailableError(f"SQLite error while {context}: {message}", "documentstore")
    return InternalError(f"SQLite error while {context}")


class _WhereBuilder:
    """Translates parsed conditions into a type-guarded SQL WHERE clause."""

    def __init__(self) -> None:
        self.clauses: list[str] = []
        self.params: list[Any] = []

    @staticmethod
    def pushable(condition: Condition) -> bool:
        value = condition.value
        if condition.op == "$exists":
            return True
        if condition.op == "$in":
            return all(isinstance(v, (str, int, float)) and not isinstance(v, bool) for v in value)
        if condition.op == "$eq":
            return value is None or isinstance(value, (str, int, float, bool))
        return isinstance(value, (str, int, float)) and not isinstance(value, bool)

    def add(self, condition: Condition) -> None:
        path, op, value = condition.path, condition.op, condition.value
        column = _COLUMNS.get(path)
        expr = column or f"json_extract(data, '{json_path(path)}')"
        jtype = f"json_type(data, '{json_path(path)}')"

        if op == "$exists" or (op == "$eq" and value is None):
            present = value if op == "$exists" else False
            if column:
                self.clauses.append("1" if present else "0")
            elif present:
                self.clauses.append(f"({jtype} IS NOT NULL AND {jtype} != 'null')")
            else:
                self.clauses.append(f"({jtype} IS NULL OR {jtype} = 'null')")
            return

        if op == "$eq" and isinstance(value, bool):
            self.clauses.append(f"{jtype} = '{'true' if value else 'false'}'")
            return

        sql_op = {"$eq": "=", "$gt": ">", "$gte": ">=", "$lt": "<", "$lte": "<="}.get(op)
        if op == "$in":
            if not value:
                self.clauses.append("0")
                return
            placeholders = ", ".join("?" for _ in value)
            self.clauses.append(f"{expr} IN ({placeholders})")
            self.params.extend(value)
            return

        guard = ""
        if not column:
            guard = (
                f"{jtype} = 'text' AND "
                if isinstance(value, str)
                else f"{jtype} IN ('integer', 'real') AND "
            )
        self.clauses.append(f"({guard}{expr} {sql_op} ?)")
        self.params.append(value)

    def sql(self) -> str:
        return " AND ".join(self.clauses) if self.clauses else "1"


def _order_by(sort: Iterable[tuple[str, bool]]) -> str:
    terms = []
    for path, descending in sort:
        expr = _COLUMNS.get(path) or f"json_extract(data, '{json_path(path)}')"
        terms.append(f"{expr} {'DESC' if descending else 'ASC'}")
    return ", ".join(terms)


class DocumentStoreCollection:
    """SQLite-backed Collection for one entity."""

    def __init__(self, backend: DocumentStoreBackend, entity: EntityDef) -> None:
        self.backend = backend
        self.entity = entity
        self.schema: SqliteSchema = compile_sqlite(entity)
        self.table = self.schema.table

    @asynccontextmanager
    async def _reader(self, txn: Optional[TransactionHandle]) -> AsyncIterator[sqlite3.Connection]:
        await self.backend.ready(self)
        if isinstance(txn, NativeSession) and txn.is_pending:
            yield txn.connection
        else:
            yield self.backend.reader

    @asynccontextmanager
    async def _writer(self, txn: Optional[TransactionHandle]) -> AsyncIterator[sqlite3.Connection]:
        await self.backend.ready(self)
        if isinstance(txn, NativeSession) and txn.is_pending:
            yield txn.connection
            return
        async with self.backend.autocommit() as conn:
            yield conn

    async def get(self, record_id: str, txn: Optional[TransactionHandle] = None) -> Optional[dict]:
        async with self._reader(txn) as conn:
            try:
                row = conn.execute(
                    f"SELECT data FROM {self.table} WHERE id = ?", (record_id,)
                ).fetchone()
            except sqlite3.Error as e:
                raise _map_sqlite_error(e, f"reading {self.table}") from e
        return json.loads(row["data"]) if row else None

    async def find(
        self,
        filter: Optional[Dict[str, Any]] = None,
        options: Optional[Dict[str, Any]] = None,
        txn: Optional[TransactionHandle] = None,
    ) -> List[dict]:
        conditions = parse_filter(filter)
        opts = parse_options(options)
        pushed = [c for c in conditions if _WhereBuilder.pushable(c)]
        residual = [c for c in conditions if not _WhereBuilder.pushable(c)]

        where = _WhereBuilder()
        for condition in pushed:
            where.add(condition)
        sort = opts.sort or DEFAULT_SORT
        sql = f"SELECT data FROM {self.table} WHERE {where.sql()} ORDER BY {_order_by(sort)}"
        params = list(where.params)
        if not residual and (opts.limit is not None or opts.skip):
            sql += " LIMIT ? OFFSET ?"
            params += [opts.limit if opts.limit is not None else -1, opts.skip]

        async with self._reader(txn) as conn:
            try:
                rows = conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise _map_sqlite_error(e, f"querying {self.table}") from e
        records = [json.loads(row["data"]) for row in rows]
        if residual:
            records = [r for r in records if matches(r, residual)]
            records = apply_options(records, opts.__class__(opts.limit, opts.skip, ()))
        return records

    async def count(
        self, filter: Optional[Dict[str, Any]] = None, txn: Optional[TransactionHandle] = None
    ) -> int:
        conditions = parse_filter(filter)
        if all(_WhereBuilder.pushable(c) for c in conditions):
            where = _WhereBuilder()
            for condition in conditions:
                where.add(condition)
            async with self._reader(txn) as conn:
                try:
                    row = conn.execute(
                        f"SELECT COUNT(*) AS n FROM {self.table} WHERE {where.sql()}",
                        where.params,
                    ).fetchone()
                except sqlite3.Error as e:
                    raise _map_sqlite_error(e, f"counting {self.table}") from e
            return int(row["n"])
        return len(await self.find(filter, None, txn))

    async def group_count(self, path: str) -> Dict[str, int]:
        expr = _COLUMNS.get(path) or f"json_extract(data, '{json_path(path)}')"
        async with self._reader(None) as conn:
            try:
                rows = conn.execute(
                    f"SELECT {expr} AS value, COUNT(*) AS n FROM {self.table} "
                    f"WHERE {expr} IS NOT NULL GROUP BY {expr}"
                ).fetchall()
            except sqlite3.Error as e:
                raise _map_sqlite_error(e, f"aggregating {self.table}") from e
        return {row["value"]: int(row["n"]) for row in rows}

    async def insert(self, record: dict, txn: Optional[TransactionHandle] = None) -> dict:
        async with self._writer(txn) as conn:
            try:
                conn.execute(
                    f"INSERT INTO {self.table} (id, data, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?)",
                    (record["id"], json.dumps(record), record["createdAt"], record["updatedAt"]),
                )
            except sqlite3.Error as e:
                raise _map_sqlite_error(e, f"inserting into {self.table}") from e
        return record

    async def replace(
        self,
        record: dict,
        expected: Optional[Dict[str, Any]] = None,
        txn: Optional[TransactionHandle] = None,
    ) -> Optional[dict]:
        async with self._writer(txn) as conn:
            try:
                row = conn.execute(
                    f"SELECT data FROM {self.table} WHERE id = ?", (record["id"],)
                ).fetchone()
                if row is None:
                    return None
                stored = json.loads(row["data"])
                for name, value in (expected or {}).items():
                    if stored.get(name) != value:
                        raise ConflictError(
                            f"{self.entity.name} {record['id']} was modified concurrently",
                            retryable=True,
                            details={"field": name},
                        )
                conn.execute(
                    f"UPDATE {self.table} SET data = ?, updated_at = ? WHERE id = ?",
                    (json.dumps(record), record["updatedAt"], record["id"]),
                )
            except sqlite3.Error as e:
                raise _map_sqlite_error(e, f"updating {self.table}") from e
        return record

    async def remove(self, record_id: str, txn: Optional[TransactionHandle] = None) -> bool:
        async with self._writer(txn) as conn:
            try:
                cursor = conn.execute(f"DELETE FROM {self.table} WHERE id = ?", (record_id,))
            except sqlite3.Error as e:
                raise _map_sqlite_error(e, f"deleting from {self.table}") from e
        return cursor.rowcount > 0

    async def search(self, text: str, options: Optional[Dict[str, Any]] = None) -> List[dict]:
        fields = self.entity.get_searchable_fields()
        records = await self.find()
        hits = [r for r in records if matches_text(r, text, fields)]
        return apply_options(hits, parse_options(options))


class DocumentStoreBackend:
    """SQLite implementation of the Backend protocol.

    Example:
        >>> backend = DocumentStoreBackend(DocumentStoreConfig(path="/tmp/inventory.db"))
        >>> await backend.connect()
        >>> items = backend.collection(ITEM)
        >>> await items.insert(record)
    """

    name = "documentstore"

    def __init__(
        self,
        config: DocumentStoreConfig,
        connect_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.config = config
        self._writer: Optional[sqlite3.Connection] = None
        self._reader: Optional[sqlite3.Connection] = None
        self._write_lock = asyncio.Lock()
        self._collections: dict[str, DocumentStoreCollection] = {}
        self._created: set[str] = set()
        self._gate = ConnectionGate(
            self._open, connect_policy or RetryPolicy.exponential(), self.name
        )

    @property
    def reader(self) -> sqlite3.Connection:
        return self._reader or self._writer

    def _configure(self, conn: sqlite3.Connection) -> None:
        conn.row_factory = sqlite3.Row
        conn.execute(f"PRAGMA busy_timeout = {self.config.connect_timeout_ms}")
        if self.config.wal_mode and self.config.path != ":memory:":
            conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")

    async def _open(self) -> None:
        try:
            if self.config.path != ":memory:":
                Path(self.config.path).parent.mkdir(parents=True, exist_ok=True)
            timeout = self.config.server_selection_timeout_ms / 1000.0
            self._writer = sqlite3.connect(
                self.config.path,
                timeout=timeout,
                isolation_level=None,  # Autocommit by default, explicit transactions
                check_same_thread=False,
            )
            self._configure(self._writer)
            if self.config.path != ":memory:":
                self._reader = sqlite3.connect(
                    self.config.path,
                    timeout=timeout,
                    isolation_level=None,
                    check_same_thread=False,
                )
                self._configure(self._reader)
        except (sqlite3.Error, OSError) as e:
            raise BackendUnavailableError(
                f"Cannot open SQLite database {self.config.path}: {e}", self.name
            ) from e

        for entity in get_registry().entities():
            self.collection(entity)
        for collection in list(self._collections.values()):
            self._create_table(collection)

    def _create_table(self, collection: DocumentStoreCollection) -> None:
        with self._statement("creating schema"):
            for statement in collection.schema.statements:
                self._writer.execute(statement)
        self._created.add(collection.table)

    @contextmanager
    def _statement(self, context: str) -> Iterator[None]:
        try:
            yield
        except sqlite3.Error as e:
            raise _map_sqlite_error(e, context) from e

    async def connect(self) -> None:
        await self._gate.wait()
        logger.info("Document store ready", extra={"path": self.config.path})

    async def ready(self, collection: DocumentStoreCollection) -> None:
        """Await the connection and make sure the collection's table exists."""
        await self._gate.wait()
        if collection.table not in self._created:
            self._create_table(collection)

    async def close(self) -> None:
        for conn in (self._reader, self._writer):
            if conn is not None:
                conn.close()
        self._reader = None
        self._writer = None
        self._created.clear()
        self._gate.reset()
        logger.info("Document store closed")

    async def health_check(self) -> Dict[str, Any]:
        await self._gate.wait()
        with self._statement("health check"):
            self.reader.execute("SELECT 1").fetchone()
        return {"provider": self.name, "status": "ok", "path": self.config.path}

    def collection(self, entity: EntityDef) -> DocumentStoreCollection:
        existing = self._collections.get(entity.name)
        if existing is None:
            existing = DocumentStoreCollection(self, entity)
            self._collections[entity.name] = existing
        return existing

    async def _acquire(self) -> None:
        try:
            await asyncio.wait_for(
                self._write_lock.acquire(), timeout=self.config.socket_timeout_ms / 1000.0
            )
        except asyncio.TimeoutError:
            raise BackendUnavailableError(
                "Timed out waiting for the write session", self.name
            ) from None

    @asynccontextmanager
    async def autocommit(self) -> AsyncIterator[sqlite3.Connection]:
        """Single-statement write outside a session."""
        await self._gate.wait()
        await self._acquire()
        try:
            conn = self._writer
            with self._statement("starting write"):
                conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            with self._statement("committing write"):
                conn.execute("COMMIT")
        finally:
            self._write_lock.release()

    async def begin(self) -> NativeSession:
        await self._gate.wait()
        await self._acquire()
        try:
            with self._statement("beginning transaction"):
                self._writer.execute("BEGIN IMMEDIATE")
        except BaseException:
            self._write_lock.release()
            raise
        return NativeSession(connection=self._writer)

    async def commit(self, txn: TransactionHandle) -> None:
        if not isinstance(txn, NativeSession) or not txn.is_pending:
            return
        try:
            txn.connection.execute("COMMIT")
            txn.status = TransactionStatus.COMMITTED
        except sqlite3.Error as e:
            txn.status = TransactionStatus.ERROR
            try:
                txn.connection.execute("ROLLBACK")
            except sqlite3.Error:
                logger.warning("Rollback after failed commit also failed", extra={"txn_id": txn.id})
            raise _map_sqlite_error(e, "committing transaction") from e
        finally:
            self._write_lock.release()

    async def rollback(self, txn: TransactionHandle) -> None:
        if not isinstance(txn, NativeSession) or not txn.is_pending:
            return
        try:
            txn.connection.execute("ROLLBACK")
            txn.status = TransactionStatus.ABORTED
        except sqlite3.Error as e:
            txn.status = TransactionStatus.ERROR
            raise _map_sqlite_error(e, "rolling back transaction") from e
        finally:
            self._write_lock.release()

    def is_active(self, txn: TransactionHandle) -> bool:
        return isinstance(txn, NativeSession) and txn.is_pending
