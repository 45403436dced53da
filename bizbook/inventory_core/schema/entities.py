"""
Built-in entity definitions.

Declares the five stored entities (Item, Purchase, Sale, Asset, Relationship)
in backend-neutral form, together with the relationship combination table.

Invariants:
    - The combination table is the only place permitted
      (relationshipType, primaryType, secondaryType) triples are defined
    - An item's authoritative axis (per trackingType) is never negative
    - Purchase total equals subtotal + taxAmount + shippingCost
    - Relationship 5-tuples are unique (unique index RelationshipKeyIndex)

How to change safely:
    - New optional fields can be added freely
    - New enum values go at the end
    - Changing an index name requires recreating DynamoDB GSIs
"""

from __future__ import annotations

from typing import Any

from .types import EntityDef, IndexDef, field, now_iso

AXES = ("quantity", "weight", "length", "area", "volume")
UNIT_FIELDS = {
    "weight": "weightUnit",
    "length": "lengthUnit",
    "area": "areaUnit",
    "volume": "volumeUnit",
}
DEFAULT_UNITS = {"weightUnit": "lb", "lengthUnit": "in", "areaUnit": "sqft", "volumeUnit": "l"}

WEIGHT_UNITS = ("oz", "lb", "g", "kg")
LENGTH_UNITS = ("mm", "cm", "m", "in", "ft", "yd")
AREA_UNITS = ("sqft", "sqm", "sqyd", "acre", "ha")
VOLUME_UNITS = ("ml", "l", "gal", "floz", "cu_ft", "cu_m")

ENTITY_TYPES = ("Item", "Purchase", "Sale", "Asset", "User", "Business", "Vendor", "Customer")
RELATIONSHIP_TYPES = (
    "purchase_item",
    "purchase_asset",
    "sale_item",
    "product_material",
    "derived",
    "parent_child",
    "associated",
)

# relationshipType -> (primaryType, secondaryType); None means any entity type
RELATIONSHIP_COMBINATIONS: dict[str, tuple[str | None, str | None]] = {
    "purchase_item": ("Purchase", "Item"),
    "purchase_asset": ("Purchase", "Asset"),
    "sale_item": ("Sale", "Item"),
    "product_material": ("Item", "Item"),
    "derived": ("Item", "Item"),
    "parent_child": (None, None),
    "associated": (None, None),
}

PURCHASE_STATUSES = ("pending", "received", "partially_received", "cancelled")
PURCHASE_APPLIED_STATUSES = ("received", "partially_received")
SALE_STATUSES = ("completed", "refunded", "partially_refunded")


def is_valid_entity_combination(
    relationship_type: str, primary_type: str, secondary_type: str
) -> bool:
    """Whether a relationship type permits the given endpoint types."""
    allowed = RELATIONSHIP_COMBINATIONS.get(relationship_type)
    if allowed is None:
        return False
    if primary_type not in ENTITY_TYPES or secondary_type not in ENTITY_TYPES:
        return False
    want_primary, want_secondary = allowed
    return (want_primary is None or primary_type == want_primary) and (
        want_secondary is None or secondary_type == want_secondary
    )


def _measurement_fields(with_units: bool = True, zero_defaults: bool = False) -> tuple:
    zero = 0 if zero_defaults else None
    fields = [
        field("quantity", "number", default=zero, min_value=0),
        field("weight", "number", default=zero, min_value=0),
        field("length", "number", default=zero, min_value=0),
        field("area", "number", default=zero, min_value=0),
        field("volume", "number", default=zero, min_value=0),
    ]
    if with_units:
        fields += [
            field("weightUnit", "enum", enum_values=WEIGHT_UNITS,
                  default="lb" if zero_defaults else None),
            field("lengthUnit", "enum", enum_values=LENGTH_UNITS,
                  default="in" if zero_defaults else None),
            field("areaUnit", "enum", enum_values=AREA_UNITS,
                  default="sqft" if zero_defaults else None),
            field("volumeUnit", "enum", enum_values=VOLUME_UNITS,
                  default="l" if zero_defaults else None),
        ]
    return tuple(fields)


def _carve_fields() -> tuple:
    return (field("item", "ref", ref="Item"),) + _measurement_fields()


# -- Item --------------------------------------------------------------------


def _item_axis_non_negative(record: dict[str, Any]) -> list[str]:
    axis = record.get("trackingType") or "quantity"
    value = record.get(axis) or 0
    if value < 0:
        return [f"Authoritative measurement '{axis}' must be >= 0, got {value}"]
    return []


def _item_components_need_product(record: dict[str, Any]) -> list[str]:
    if record.get("components") and record.get("itemType", "product") not in ("product", "both"):
        return ["components are only allowed on items of type 'product' or 'both'"]
    return []


def _item_touch_last_updated(record: dict[str, Any]) -> None:
    if not record.get("lastUpdated"):
        record["lastUpdated"] = now_iso()


ITEM = EntityDef(
    name="Item",
    collection="items",
    fields=(
        field("name", "str", required=True, searchable=True),
        field("sku", "str", indexed=True, searchable=True),
        field("category", "str", default="", indexed=True, searchable=True),
        field("description", "str", searchable=True),
        field("tags", "list_str", default=list),
        field("itemType", "enum", enum_values=("material", "product", "both"), default="product"),
        field("trackingType", "enum", enum_values=AXES, default="quantity"),
        *_measurement_fields(zero_defaults=True),
        field("sellByMeasurement", "enum", enum_values=AXES),
        field("packInfo", "object", fields=(
            field("isPack", "bool", default=False),
            field("unitsPerPack", "number", default=1),
            field("costPerUnit", "number", default=0),
        )),
        field("price", "number", default=0),
        field("priceType", "enum", default="each", enum_values=(
            "each", "per_weight_unit", "per_length_unit", "per_area_unit", "per_volume_unit",
        )),
        field("cost", "number", default=0),
        field("imageUrl", "str"),
        field("components", "list_object", default=list, fields=(
            field("item", "ref", required=True, ref="Item"),
            *_measurement_fields(),
        )),
        field("usedInProducts", "list_ref", ref="Item", default=list),
        field("relatedItems", "list_ref", ref="Item"),
        field("derivedFrom", "object", fields=_carve_fields()),
        field("derivedItems", "list_object", default=list, fields=_carve_fields()),
        field("hasDerivedItems", "bool", default=False),
        field("lastUpdated", "timestamp"),
    ),
    indexes=(
        IndexDef("CategoryIndex", ("category",), sort_key="createdAt"),
        IndexDef("CreatedAtIndex", ("createdAt",)),
        IndexDef("SkuIndex", ("sku",), unique=True),
    ),
    hooks={"pre_save": (_item_touch_last_updated,)},
    validators=(_item_axis_non_negative, _item_components_need_product),
    description="A tracked good or material",
)


# -- Purchase ----------------------------------------------------------------

PURCHASE_LINE_FIELDS = (
    field("item", "ref", ref="Item"),
    field("name", "str"),
    *_measurement_fields(zero_defaults=True),
    field("costPerUnit", "number", default=0, min_value=0),
    field("totalCost", "number", default=0, min_value=0),
    field("originalCost", "number"),
    field("discountAmount", "number", default=0),
    field("purchasedBy", "enum", enum_values=AXES, default="quantity"),
    field("purchaseType", "enum", enum_values=("inventory", "asset"), default="inventory"),
    field("asset", "ref", ref="Asset"),
    field("assetInfo", "object", fields=(
        field("name", "str"),
        field("category", "str"),
        field("location", "str"),
        field("assignedTo", "str"),
    )),
)


def _line_has_measurement(axis_field: str):
    def check(lines: Any) -> str | None:
        for index, line in enumerate(lines or []):
            if line.get("purchaseType") == "asset":
                continue
            axis = line.get(axis_field) or "quantity"
            if not (line.get(axis) or 0) > 0:
                return f"line {index} needs a positive '{axis}' (from {axis_field})"
        return None

    return check


def _compute_totals(record: dict[str, Any]) -> None:
    if record.get("subtotal") is None:
        record["subtotal"] = round(
            sum((line.get("totalCost") or 0) for line in record.get("items") or []), 2
        )
    if record.get("total") is None:
        record["total"] = round(
            (record.get("subtotal") or 0)
            + (record.get("taxAmount") or 0)
            + (record.get("shippingCost") or 0),
            2,
        )


def _purchase_total_consistent(record: dict[str, Any]) -> list[str]:
    expected = (
        (record.get("subtotal") or 0)
        + (record.get("taxAmount") or 0)
        + (record.get("shippingCost") or 0)
    )
    if abs((record.get("total") or 0) - expected) > 0.005:
        return [
            f"total {record.get('total')} does not equal subtotal + taxAmount + "
            f"shippingCost ({round(expected, 2)})"
        ]
    return []


PURCHASE = EntityDef(
    name="Purchase",
    collection="purchases",
    fields=(
        field("purchaseNumber", "str", searchable=True),
        field("supplier", "object", default=dict, fields=(
            field("name", "str", indexed=True),
            field("contactName", "str"),
            field("email", "str"),
            field("phone", "str"),
        )),
        field("invoiceNumber", "str", searchable=True),
        field("purchaseDate", "timestamp", default=now_iso, indexed=True),
        field("items", "list_object", default=list, fields=PURCHASE_LINE_FIELDS,
              validator=_line_has_measurement("purchasedBy")),
        field("subtotal", "number", min_value=0),
        field("discountAmount", "number", default=0),
        field("taxRate", "number", default=0),
        field("taxAmount", "number", default=0),
        field("shippingCost", "number", default=0),
        field("total", "number"),
        field("notes", "str", searchable=True),
        field("paymentMethod", "enum", default="cash", enum_values=(
            "cash", "credit", "debit", "check", "bank_transfer", "other",
        )),
        field("status", "enum", enum_values=PURCHASE_STATUSES, default="pending"),
        field("inventoryApplied", "bool", default=False),
    ),
    indexes=(
        IndexDef("SupplierNameIndex", ("supplier.name",), sort_key="purchaseDate"),
        IndexDef("PurchaseDateIndex", ("purchaseDate",)),
    ),
    hooks={"pre_save": (_compute_totals,)},
    validators=(_purchase_total_consistent,),
    description="A supplier transaction",
)


# -- Sale --------------------------------------------------------------------

SALE_LINE_FIELDS = (
    field("item", "ref", ref="Item"),
    field("name", "str"),
    *_measurement_fields(zero_defaults=True),
    field("priceAtSale", "number", default=0, min_value=0),
    field("soldBy", "enum", enum_values=AXES, default="quantity"),
    field("refundedQuantity", "number", default=0, min_value=0),
    field("refundedWeight", "number", default=0, min_value=0),
)


def _sale_total(record: dict[str, Any]) -> None:
    if record.get("subtotal") is None:
        subtotal = 0.0
        for line in record.get("items") or []:
            axis = line.get("soldBy") or "quantity"
            subtotal += (line.get("priceAtSale") or 0) * (line.get(axis) or 0)
        record["subtotal"] = round(subtotal, 2)
    if record.get("total") is None:
        record["total"] = round(
            (record.get("subtotal") or 0)
            + (record.get("taxAmount") or 0)
            - (record.get("discountAmount") or 0),
            2,
        )


def _sale_refunds_bounded(record: dict[str, Any]) -> list[str]:
    errors = []
    for index, line in enumerate(record.get("items") or []):
        if (line.get("refundedQuantity") or 0) > (line.get("quantity") or 0):
            errors.append(f"line {index} refunds more quantity than was sold")
        if (line.get("refundedWeight") or 0) > (line.get("weight") or 0):
            errors.append(f"line {index} refunds more weight than was sold")
    return errors


SALE = EntityDef(
    name="Sale",
    collection="sales",
    fields=(
        field("saleNumber", "str", searchable=True),
        field("customerName", "str", searchable=True),
        field("customerEmail", "str", indexed=True, searchable=True),
        field("customerPhone", "str"),
        field("saleDate", "timestamp", default=now_iso),
        field("items", "list_object", default=list, fields=SALE_LINE_FIELDS),
        field("subtotal", "number", min_value=0),
        field("taxRate", "number", default=0),
        field("taxAmount", "number", default=0),
        field("discountAmount", "number", default=0),
        field("total", "number"),
        field("paymentMethod", "enum", default="cash", enum_values=(
            "cash", "credit", "debit", "check", "other",
        )),
        field("notes", "str", searchable=True),
        field("status", "enum", enum_values=SALE_STATUSES, default="completed"),
        field("inventoryApplied", "bool", default=False),
    ),
    indexes=(
        IndexDef("CustomerEmailIndex", ("customerEmail",), sort_key="createdAt"),
        IndexDef("CreatedAtIndex", ("createdAt",)),
    ),
    hooks={"pre_save": (_sale_total,)},
    validators=(_sale_refunds_bounded,),
    description="A customer transaction",
)


# -- Asset -------------------------------------------------------------------

ASSET = EntityDef(
    name="Asset",
    collection="assets",
    fields=(
        field("name", "str", required=True, searchable=True),
        field("assetTag", "str", searchable=True),
        field("category", "str", default="", indexed=True),
        field("purchaseDate", "timestamp"),
        field("purchaseId", "ref", ref="Purchase"),
        field("initialCost", "number", default=0, min_value=0),
        field("currentValue", "number", default=0, min_value=0),
        field("location", "str"),
        field("assignedTo", "str"),
        field("manufacturer", "str"),
        field("model", "str"),
        field("serialNumber", "str", searchable=True),
        field("status", "enum", enum_values=("active", "maintenance", "retired", "lost"),
              default="active"),
        field("maintenanceSchedule", "object", fields=(
            field("frequency", "enum", required=True, enum_values=(
                "daily", "weekly", "monthly", "quarterly", "yearly",
            )),
            field("lastMaintenance", "timestamp"),
            field("nextMaintenance", "timestamp"),
        )),
        field("maintenanceHistory", "list_object", default=list, fields=(
            field("date", "timestamp", required=True),
            field("description", "str", required=True),
            field("cost", "number", required=True),
            field("performedBy", "str", required=True),
        )),
        field("imageUrl", "str"),
        field("tags", "list_str", default=list),
        field("notes", "str", searchable=True),
    ),
    indexes=(
        IndexDef("AssetTagIndex", ("assetTag",), unique=True),
    ),
    description="A durable good bought for the business",
)


# -- Relationship ------------------------------------------------------------


def _relationship_combination(record: dict[str, Any]) -> list[str]:
    if not is_valid_entity_combination(
        record.get("relationshipType", ""),
        record.get("primaryType", ""),
        record.get("secondaryType", ""),
    ):
        return [
            f"Invalid entity combination for {record.get('relationshipType')}: "
            f"{record.get('primaryType')} -> {record.get('secondaryType')}"
        ]
    return []


def _default_measurements() -> dict[str, Any]:
    return {
        "quantity": 0,
        "weight": 0,
        "weightUnit": "lb",
        "length": 0,
        "lengthUnit": "in",
        "area": 0,
        "areaUnit": "sqft",
        "volume": 0,
        "volumeUnit": "l",
    }


def _default_purchase_item_attributes(record: dict[str, Any]) -> None:
    if record.get("relationshipType") == "purchase_item":
        attributes = {
            "costPerUnit": 0,
            "totalCost": 0,
            "purchasedBy": "quantity",
            "purchaseType": "inventory",
        }
        attributes.update(record.get("purchaseItemAttributes") or {})
        record["purchaseItemAttributes"] = attributes


RELATIONSHIP_KEY = ("primaryId", "primaryType", "secondaryId", "secondaryType", "relationshipType")

RELATIONSHIP = EntityDef(
    name="Relationship",
    collection="relationships",
    fields=(
        field("primaryId", "ref", required=True, indexed=True),
        field("primaryType", "enum", required=True, enum_values=ENTITY_TYPES),
        field("secondaryId", "ref", required=True, indexed=True),
        field("secondaryType", "enum", required=True, enum_values=ENTITY_TYPES),
        field("relationshipType", "enum", required=True, enum_values=RELATIONSHIP_TYPES),
        field("measurements", "object", default=_default_measurements,
              fields=_measurement_fields(zero_defaults=True)),
        field("purchaseItemAttributes", "object", fields=(
            field("costPerUnit", "number", default=0),
            field("totalCost", "number", default=0),
            field("purchasedBy", "enum", enum_values=AXES, default="quantity"),
            field("purchaseType", "enum", enum_values=("inventory", "asset"), default="inventory"),
        )),
        field("saleItemAttributes", "object"),
        field("purchaseAssetAttributes", "object"),
        field("metadata", "object"),
        field("isLegacy", "bool", default=False),
        field("notes", "str", searchable=True),
    ),
    indexes=(
        IndexDef("PrimaryIndex", ("primaryId", "primaryType")),
        IndexDef("SecondaryIndex", ("secondaryId", "secondaryType")),
        IndexDef("RelationshipKeyIndex", RELATIONSHIP_KEY, unique=True),
    ),
    hooks={"pre_save": (_default_purchase_item_attributes,)},
    validators=(_relationship_combination,),
    description="A directed, typed edge between two entities",
)


ALL_ENTITIES = (ITEM, PURCHASE, SALE, ASSET, RELATIONSHIP)
