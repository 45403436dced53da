"""
Per-backend schema compilers.

Each compiler turns one EntityDef into the native layout of a backend:
- compile_sqlite: table DDL plus (unique) expression indexes over JSON paths
- compile_dynamodb: create_table arguments, GSI key map, guarded unique keys
- compile_collection: unique-key and search settings for the in-process store

Compilers only describe physical layout. Validation always goes through
EntityDef.validate(), never through compiled artifacts.

Invariants:
    - Compilation is pure (same entity in, same artifacts out)
    - Every unique IndexDef is enforced on every backend
    - DynamoDB key attributes are top-level strings; nested index paths are
      materialized as flattened shadow attributes (supplier.name -> supplierName)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .types import EntityDef, IndexDef

DYNAMODB_THROUGHPUT = {"ReadCapacityUnits": 5, "WriteCapacityUnits": 5}


def json_path(path: str) -> str:
    """SQLite JSON path for a dotted field path."""
    return "$." + path


def shadow_attribute(path: str) -> str:
    """Flattened attribute name used to key a nested path in DynamoDB."""
    head, *rest = path.split(".")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


# -- SQLite ------------------------------------------------------------------


@dataclass(frozen=True)
class SqliteSchema:
    """Compiled SQLite layout for one entity.

    Attributes:
        table: Table name
        statements: DDL to run, in order, at startup
        unique_indexes: Unique index name -> field paths (for error messages)
    """

    table: str
    statements: tuple[str, ...]
    unique_indexes: dict[str, tuple[str, ...]] = field(default_factory=dict)


def compile_sqlite(entity: EntityDef) -> SqliteSchema:
    """Compile an entity into SQLite DDL.

    Records are stored as JSON text in `data`; `id`, `created_at` and
    `updated_at` are real columns. Every IndexDef becomes an expression index
    over json_extract(), unique where declared.
    """
    table = entity.collection
    statements = [
        f"""CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )""",
        f"CREATE INDEX IF NOT EXISTS idx_{table}_created ON {table}(created_at)",
    ]
    unique: dict[str, tuple[str, ...]] = {}
    for index in entity.indexes:
        columns = ", ".join(_sqlite_column(path) for path in index.fields)
        kind = "UNIQUE INDEX" if index.unique else "INDEX"
        index_name = f"idx_{table}_{index.name.lower()}"
        statements.append(f"CREATE {kind} IF NOT EXISTS {index_name} ON {table}({columns})")
        if index.unique:
            unique[index_name] = index.fields
    return SqliteSchema(table=table, statements=tuple(statements), unique_indexes=unique)


def _sqlite_column(path: str) -> str:
    if path == "createdAt":
        return "created_at"
    if path == "updatedAt":
        return "updated_at"
    return f"json_extract(data, '{json_path(path)}')"


# -- DynamoDB ----------------------------------------------------------------


@dataclass(frozen=True)
class GsiKey:
    """Key attributes of one global secondary index."""

    hash_path: str
    hash_attribute: str
    range_path: str | None = None
    range_attribute: str | None = None


@dataclass(frozen=True)
class DynamoTableSpec:
    """Compiled DynamoDB layout for one entity.

    Attributes:
        table_name: Prefixed table name
        create_args: Keyword arguments for create_table
        gsis: Index name -> key attributes
        shadow_attributes: Flattened attribute -> dotted source path
        unique_keys: Unique index name -> field paths, enforced by guard rows
    """

    table_name: str
    create_args: dict[str, Any]
    gsis: dict[str, GsiKey]
    shadow_attributes: dict[str, str]
    unique_keys: dict[str, tuple[str, ...]]


def _gsi_key(index: IndexDef) -> GsiKey | None:
    if len(index.fields) > 2:
        return None
    range_path = index.sort_key or (index.fields[1] if len(index.fields) == 2 else None)
    return GsiKey(
        hash_path=index.hash_key,
        hash_attribute=shadow_attribute(index.hash_key),
        range_path=range_path,
        range_attribute=shadow_attribute(range_path) if range_path else None,
    )


def compile_dynamodb(entity: EntityDef, prefix: str) -> DynamoTableSpec:
    """Compile an entity into DynamoDB create_table arguments.

    Indexes with one or two fields become GSIs (hash key, optional range
    key). Unique indexes are additionally enforced through guard rows in the
    shared unique-keys table, written in the same TransactWriteItems call.
    """
    table_name = f"{prefix}{entity.collection}"
    attributes = {"id"}
    gsis: dict[str, GsiKey] = {}
    shadows: dict[str, str] = {}
    unique: dict[str, tuple[str, ...]] = {}
    gsi_args = []

    for index in entity.indexes:
        if index.unique:
            unique[index.name] = index.fields
        key = _gsi_key(index)
        if key is None:
            continue
        gsis[index.name] = key
        key_schema = [{"AttributeName": key.hash_attribute, "KeyType": "HASH"}]
        attributes.add(key.hash_attribute)
        if "." in key.hash_path:
            shadows[key.hash_attribute] = key.hash_path
        if key.range_attribute and key.range_path:
            key_schema.append({"AttributeName": key.range_attribute, "KeyType": "RANGE"})
            attributes.add(key.range_attribute)
            if "." in key.range_path:
                shadows[key.range_attribute] = key.range_path
        gsi_args.append(
            {
                "IndexName": index.name,
                "KeySchema": key_schema,
                "Projection": {"ProjectionType": "ALL"},
                "ProvisionedThroughput": dict(DYNAMODB_THROUGHPUT),
            }
        )

    create_args: dict[str, Any] = {
        "TableName": table_name,
        "KeySchema": [{"AttributeName": "id", "KeyType": "HASH"}],
        "AttributeDefinitions": [
            {"AttributeName": name, "AttributeType": "S"} for name in sorted(attributes)
        ],
        "BillingMode": "PROVISIONED",
        "ProvisionedThroughput": dict(DYNAMODB_THROUGHPUT),
    }
    if gsi_args:
        create_args["GlobalSecondaryIndexes"] = gsi_args

    return DynamoTableSpec(
        table_name=table_name,
        create_args=create_args,
        gsis=gsis,
        shadow_attributes=shadows,
        unique_keys=unique,
    )


def compile_unique_keys_table(prefix: str) -> dict[str, Any]:
    """create_table arguments for the shared unique-keys guard table."""
    return {
        "TableName": f"{prefix}unique_keys",
        "KeySchema": [{"AttributeName": "pk", "KeyType": "HASH"}],
        "AttributeDefinitions": [{"AttributeName": "pk", "AttributeType": "S"}],
        "BillingMode": "PROVISIONED",
        "ProvisionedThroughput": dict(DYNAMODB_THROUGHPUT),
    }


# -- In-process document store -----------------------------------------------


@dataclass(frozen=True)
class CollectionSpec:
    """Compiled settings for the non-transactional document store.

    Attributes:
        name: Collection name (also the JSON file stem)
        unique_keys: Unique index name -> field paths
        searchable: Fields scanned by search()
    """

    name: str
    unique_keys: dict[str, tuple[str, ...]]
    searchable: tuple[str, ...]


def compile_collection(entity: EntityDef) -> CollectionSpec:
    """Compile an entity into collection settings."""
    return CollectionSpec(
        name=entity.collection,
        unique_keys={i.name: i.fields for i in entity.get_unique_indexes()},
        searchable=tuple(entity.get_searchable_fields()),
    )
