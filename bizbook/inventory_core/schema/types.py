"""
Core type definitions for the entity schema layer.

Every entity is declared once, in backend-neutral form:
- FieldDef: Individual field within an entity (or a nested object)
- IndexDef: Secondary or unique index over one or more fields
- EntityDef: Ordered fields, indexes, lifecycle hooks and entity rules

Per-backend compilers (see compilers.py) turn an EntityDef into SQLite DDL,
DynamoDB table arguments or collection settings. Validation never goes
through a compiler: every backend calls EntityDef.validate() on the same
record, so a value rejected on one backend is rejected on all.

Invariants:
    - Field names are unique within an entity (and within a nested object)
    - Top-level unknown fields are rejected; nested objects are open
    - id, createdAt and updatedAt are implicit on every entity
    - enum_values are append-only

How to change safely:
    - Add new fields as optional or with a default
    - Add new enum values at the end of enum_values
    - Never tighten a validator without a data conversion

Example:
    >>> from bizbook.inventory_core.schema.types import EntityDef, field
    >>> Tag = EntityDef(
    ...     name="Tag",
    ...     collection="tags",
    ...     fields=(
    ...         field("label", "str", required=True, searchable=True),
    ...         field("color", "enum", enum_values=("red", "blue")),
    ...     ),
    ... )
"""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field as dataclass_field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

SYSTEM_FIELDS = ("id", "createdAt", "updatedAt")


def now_iso() -> str:
    """Current UTC time as an ISO-8601 string (microsecond precision)."""
    return datetime.now(timezone.utc).isoformat()


class FieldKind(Enum):
    """Supported field types in the schema.

    These map to storage representations and validation rules.
    """

    STRING = "str"
    NUMBER = "number"
    INTEGER = "int"
    BOOLEAN = "bool"
    TIMESTAMP = "timestamp"  # ISO-8601 string
    ENUM = "enum"
    REFERENCE = "ref"  # Opaque id of another record
    LIST_STRING = "list_str"
    LIST_REF = "list_ref"
    OBJECT = "object"  # Nested object, optionally with declared fields
    LIST_OBJECT = "list_object"
    JSON = "json"  # Arbitrary JSON value

    @classmethod
    def from_str(cls, value: str) -> FieldKind:
        """Convert string representation to FieldKind.

        Raises:
            ValueError: If value is not a valid field kind
        """
        for kind in cls:
            if kind.value == value:
                return kind
        valid = [k.value for k in cls]
        raise ValueError(f"Invalid field kind '{value}'. Valid kinds: {valid}")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_timestamp(value: Any) -> bool:
    if isinstance(value, datetime):
        return True
    if not isinstance(value, str):
        return False
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return False
    return True


_TYPE_CHECKS: dict[FieldKind, Callable[[Any], bool]] = {
    FieldKind.STRING: lambda v: isinstance(v, str),
    FieldKind.NUMBER: _is_number,
    FieldKind.INTEGER: lambda v: isinstance(v, int) and not isinstance(v, bool),
    FieldKind.BOOLEAN: lambda v: isinstance(v, bool),
    FieldKind.TIMESTAMP: _is_timestamp,
    FieldKind.REFERENCE: lambda v: isinstance(v, str) and bool(v),
    FieldKind.LIST_STRING: lambda v: isinstance(v, list) and all(isinstance(i, str) for i in v),
    FieldKind.LIST_REF: lambda v: isinstance(v, list)
    and all(isinstance(i, str) and i for i in v),
    FieldKind.OBJECT: lambda v: isinstance(v, dict),
    FieldKind.LIST_OBJECT: lambda v: isinstance(v, list) and all(isinstance(i, dict) for i in v),
    FieldKind.JSON: lambda _: True,
}


@dataclass(frozen=True)
class FieldDef:
    """Definition of a single field.

    Attributes:
        name: Field name as it appears in records (camelCase)
        kind: The data type of the field
        required: Whether the field must be present and non-null
        default: Default value, or a zero-argument callable producing one
        enum_values: Valid values if kind is ENUM (append-only)
        ref: Target entity name for REFERENCE / LIST_REF fields
        min_value: Inclusive lower bound for numeric fields
        fields: Declared sub-fields for OBJECT / LIST_OBJECT
        validator: Extra check returning an error message or None
        indexed: Whether backends should index this field
        searchable: Whether search() scans this field
        description: Human-readable description
    """

    name: str
    kind: FieldKind
    required: bool = False
    default: Any = None
    enum_values: tuple[str, ...] | None = None
    ref: str | None = None
    min_value: float | None = None
    fields: tuple[FieldDef, ...] = ()
    validator: Callable[[Any], str | None] | None = None
    indexed: bool = False
    searchable: bool = False
    description: str = ""

    def __post_init__(self) -> None:
        """Validate field definition."""
        if not self.name:
            raise ValueError("Field name cannot be empty")
        if self.kind == FieldKind.ENUM and not self.enum_values:
            raise ValueError(f"enum_values required for ENUM field '{self.name}'")
        if self.fields and self.kind not in (FieldKind.OBJECT, FieldKind.LIST_OBJECT):
            raise ValueError(f"Only object fields may declare sub-fields ('{self.name}')")
        names = [f.name for f in self.fields]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate sub-field name in '{self.name}'")

    def default_value(self) -> Any:
        """Materialize the default (calling factories)."""
        return self.default() if callable(self.default) else self.default

    def validate_value(self, value: Any, path: str | None = None) -> list[str]:
        """Validate a value against this field definition.

        Args:
            value: The value to validate
            path: Dotted prefix used in error messages for nested fields

        Returns:
            List of error messages (empty if valid)
        """
        label = f"{path}.{self.name}" if path else self.name
        if value is None:
            if self.required:
                return [f"Field '{label}' is required"]
            return []

        if self.kind == FieldKind.ENUM:
            if not isinstance(value, str):
                return [f"Field '{label}' must be a string, got {type(value).__name__}"]
            if self.enum_values and value not in self.enum_values:
                return [f"Field '{label}' must be one of {self.enum_values}, got '{value}'"]
        elif not _TYPE_CHECKS[self.kind](value):
            return [f"Field '{label}' has invalid type for kind {self.kind.value}"]

        if self.required and self.kind == FieldKind.STRING and not value.strip():
            return [f"Field '{label}' is required"]

        errors: list[str] = []
        if self.min_value is not None and _is_number(value) and value < self.min_value:
            errors.append(f"Field '{label}' must be >= {self.min_value}, got {value}")

        if self.fields:
            items = [value] if self.kind == FieldKind.OBJECT else value
            for index, item in enumerate(items):
                prefix = label if self.kind == FieldKind.OBJECT else f"{label}[{index}]"
                for sub in self.fields:
                    errors.extend(sub.validate_value(item.get(sub.name), prefix))

        if self.validator is not None and not errors:
            message = self.validator(value)
            if message:
                errors.append(f"Field '{label}': {message}")
        return errors

    def apply_defaults(self, value: Any) -> Any:
        """Fill sub-field defaults into a nested object (or list of objects)."""
        if not self.fields or value is None:
            return value
        if self.kind == FieldKind.OBJECT:
            return _fill(self.fields, value)
        return [_fill(self.fields, item) if isinstance(item, dict) else item for item in value]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation for fingerprinting."""
        result: dict[str, Any] = {"name": self.name, "kind": self.kind.value}
        if self.required:
            result["required"] = True
        if self.default is not None and not callable(self.default):
            result["default"] = self.default
        if self.enum_values:
            result["enum_values"] = list(self.enum_values)
        if self.ref:
            result["ref"] = self.ref
        if self.min_value is not None:
            result["min_value"] = self.min_value
        if self.fields:
            result["fields"] = [f.to_dict() for f in self.fields]
        if self.indexed:
            result["indexed"] = True
        if self.searchable:
            result["searchable"] = True
        return result


def _fill(fields: tuple[FieldDef, ...], obj: dict[str, Any]) -> dict[str, Any]:
    result = dict(obj)
    for f in fields:
        if result.get(f.name) is None:
            default = f.default_value()
            if default is not None:
                result[f.name] = default
        elif f.fields:
            result[f.name] = f.apply_defaults(result[f.name])
    return result


def field(
    name: str,
    kind: str | FieldKind,
    *,
    required: bool = False,
    default: Any = None,
    enum_values: tuple[str, ...] | None = None,
    ref: str | None = None,
    min_value: float | None = None,
    fields: tuple[FieldDef, ...] = (),
    validator: Callable[[Any], str | None] | None = None,
    indexed: bool = False,
    searchable: bool = False,
    description: str = "",
) -> FieldDef:
    """Convenience function to create a FieldDef.

    This is the preferred way to define fields in entity definitions.

    Example:
        >>> name = field("name", "str", required=True, searchable=True)
        >>> status = field("status", "enum", enum_values=("pending", "received"))
    """
    if isinstance(kind, str):
        kind = FieldKind.from_str(kind)
    return FieldDef(
        name=name,
        kind=kind,
        required=required,
        default=default,
        enum_values=enum_values,
        ref=ref,
        min_value=min_value,
        fields=fields,
        validator=validator,
        indexed=indexed,
        searchable=searchable,
        description=description,
    )


@dataclass(frozen=True)
class IndexDef:
    """Secondary index declaration.

    Attributes:
        name: Index name (DynamoDB GSI name, SQLite index suffix)
        fields: Indexed field paths; the first is the hash key
        unique: Whether the combination of fields must be unique
        sort_key: Optional range key for key-value backends
    """

    name: str
    fields: tuple[str, ...]
    unique: bool = False
    sort_key: str | None = None

    @property
    def hash_key(self) -> str:
        """First indexed field."""
        return self.fields[0]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        result: dict[str, Any] = {"name": self.name, "fields": list(self.fields)}
        if self.unique:
            result["unique"] = True
        if self.sort_key:
            result["sort_key"] = self.sort_key
        return result


Hook = Callable[[dict[str, Any]], None]
RecordValidator = Callable[[dict[str, Any]], list[str]]


@dataclass(frozen=True)
class EntityDef:
    """Definition of a stored entity.

    Attributes:
        name: Entity type name (Item, Purchase, ...)
        collection: Logical collection / table name
        fields: Ordered field definitions
        indexes: Secondary and unique index declarations
        hooks: Lifecycle hooks keyed by event ("pre_save", "post_save")
        validators: Entity-level rules returning error messages
        description: Human-readable description

    Invariants:
        - Field names are unique
        - Index fields reference declared fields (or their sub-fields)
    """

    name: str
    collection: str
    fields: tuple[FieldDef, ...] = ()
    indexes: tuple[IndexDef, ...] = ()
    hooks: dict[str, tuple[Hook, ...]] = dataclass_field(default_factory=dict)
    validators: tuple[RecordValidator, ...] = ()
    description: str = ""

    def __post_init__(self) -> None:
        """Validate entity definition."""
        if not self.name:
            raise ValueError("Entity name cannot be empty")
        if not self.collection:
            raise ValueError(f"Entity '{self.name}' needs a collection name")
        names = [f.name for f in self.fields]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate field name in entity '{self.name}'")
        reserved = set(names) & set(SYSTEM_FIELDS)
        if reserved:
            raise ValueError(f"Entity '{self.name}' redeclares system fields {sorted(reserved)}")
        for index in self.indexes:
            for path in index.fields:
                if path.split(".")[0] not in names and path not in SYSTEM_FIELDS:
                    raise ValueError(
                        f"Index '{index.name}' on '{self.name}' references unknown field '{path}'"
                    )

    def get_field(self, name: str) -> FieldDef | None:
        """Get a field by name."""
        for f in self.fields:
            if f.name == name:
                return f
        return None

    def get_field_names(self) -> list[str]:
        """Get list of all declared field names."""
        return [f.name for f in self.fields]

    def get_searchable_fields(self) -> list[str]:
        """Names of fields scanned by substring search."""
        return [f.name for f in self.fields if f.searchable]

    def get_unique_indexes(self) -> list[IndexDef]:
        """Indexes that enforce uniqueness."""
        return [i for i in self.indexes if i.unique]

    def get_index(self, name: str) -> IndexDef | None:
        """Get an index by name."""
        for index in self.indexes:
            if index.name == name:
                return index
        return None

    def prepare(self, data: dict[str, Any], creating: bool = True) -> dict[str, Any]:
        """Apply defaults (on create) and pre-save hooks.

        Args:
            data: The full record about to be written
            creating: Whether this is an insert (defaults apply to absent fields)

        Returns:
            A new dict; the input is not mutated
        """
        record = dict(data)
        for f in self.fields:
            if record.get(f.name) is None:
                if creating:
                    default = f.default_value()
                    if default is not None:
                        record[f.name] = default
            elif f.fields:
                record[f.name] = f.apply_defaults(record[f.name])
        self.run_hooks("pre_save", record)
        return record

    def run_hooks(self, event: str, record: dict[str, Any]) -> None:
        """Run every hook registered for an event, in declaration order."""
        for hook in self.hooks.get(event, ()):
            hook(record)

    def validate(self, record: dict[str, Any]) -> tuple[bool, list[str]]:
        """Validate a full record against this entity.

        Args:
            record: Dictionary of field values

        Returns:
            Tuple of (is_valid, list_of_errors)
        """
        errors: list[str] = []

        known = set(self.get_field_names()) | set(SYSTEM_FIELDS)
        unknown = set(record.keys()) - known
        if unknown:
            errors.append(f"Unknown fields: {sorted(unknown)}")

        for f in self.fields:
            errors.extend(f.validate_value(record.get(f.name)))

        if not errors:
            for rule in self.validators:
                errors.extend(rule(record))

        return len(errors) == 0, errors

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        result: dict[str, Any] = {
            "name": self.name,
            "collection": self.collection,
            "fields": [f.to_dict() for f in self.fields],
            "indexes": [i.to_dict() for i in self.indexes],
        }
        if self.description:
            result["description"] = self.description
        return result
