from __future__ import annotations
from datetime import datetime
from .time_utils import parse_iso_datetime

from dataclasses import dataclass, field
from typing import Any, Callable

from sqlalchemy import JSON, Boolean, Integer, String, Text, DateTime
from sqlalchemy.orm import DeclarativeMeta

from .entities import is_local_reference
from .errors import ValidationError


# Maximum price: $9,999,999.99 (999,999,999 cents)
# This prevents database overflow issues and nonsensical prices
MAX_PRICE_CENTS = 999_999_999

# Sync envelope keys a client may echo back; never written from a payload
ENVELOPE_FIELDS = frozenset({
    "localId", "serverId", "tenantId", "syncVersion", "lastSyncedAt",
    "createdAt", "updatedAt", "needsSync", "tombstone", "clientRef",
})


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer (wire field names):
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    - create_only: writable on POST, rejected on PUT
    """
    writable_fields: frozenset[str]
    required_on_create: frozenset[str] = frozenset()
    create_only: frozenset[str] = frozenset()
    rules: tuple[Callable[[dict, dict, list], None], ...] = field(default=())


def _columns_by_attr(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def _coerce_value(col, wire: str, value: Any):
    coltype = col.type

    if value is None:
        return None

    # Integers - strict validation to reject floats and scientific notation
    if isinstance(coltype, Integer):
        # Already an int (but not bool which is a subclass of int)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped:
                raise ValueError(f"{wire} must be an integer")
            if 'e' in stripped.lower():
                raise ValueError(f"{wire} must be a plain integer (scientific notation not allowed)")
            if '.' in stripped:
                raise ValueError(f"{wire} must be an integer (no decimals)")
            try:
                return int(stripped)
            except ValueError:
                raise ValueError(f"{wire} must be an integer") from None
        if isinstance(value, float):
            if value.is_integer():
                return int(value)
            raise ValueError(f"{wire} must be an integer, not a decimal")
        raise ValueError(f"{wire} must be an integer")

    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        # fallback: truthiness
        return bool(value)

    # Datetimes (accept ISO-8601 strings; normalize to UTC)
    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                dt = parse_iso_datetime(value)
            except ValueError:
                dt = None
            if dt is None:
                raise ValueError(f"{wire} must be an ISO-8601 datetime")
            return dt
        raise ValueError(f"{wire} must be a datetime")

    if isinstance(coltype, JSON):
        if not isinstance(value, (list, dict)):
            raise ValueError(f"{wire} must be a list")
        return value

    # Strings / Text
    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    return value


def strip_envelope(payload: dict) -> dict:
    return {k: v for k, v in payload.items() if k not in ENVELOPE_FIELDS}


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes an incoming wire payload against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    - the policy's rule functions
    Returns a patch dict keyed by model attribute names.

    Every problem is collected; a single ValidationError carries them all
    as [{field, message}].

    partial=False: create semantics (enforce required_on_create)
    partial=True: update semantics (validate only provided keys)
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    payload = strip_envelope(payload)
    errors: list[dict] = []

    if not partial:
        for name in sorted(policy.required_on_create):
            if payload.get(name) in (None, ""):
                errors.append({"field": name, "message": f"{name} is required"})

    cols = _columns_by_attr(model)
    wire_map = model.WIRE_FIELDS
    patch: dict = {}

    for k, raw in payload.items():
        if k not in policy.writable_fields or k not in wire_map:
            errors.append({"field": k, "message": f"Field not allowed: {k}"})
            continue
        if partial and k in policy.create_only:
            errors.append({"field": k, "message": f"{k} cannot be changed after creation"})
            continue

        attr = wire_map[k]
        col = cols[attr]

        if raw is None:
            if not col.nullable:
                errors.append({"field": k, "message": f"{k} cannot be null"})
            else:
                patch[attr] = None
            continue

        try:
            val = _coerce_value(col, k, raw)
        except ValueError as exc:
            errors.append({"field": k, "message": str(exc)})
            continue

        # Blank string check for non-nullable text fields
        if isinstance(col.type, (String, Text)) and not col.nullable and val == "":
            errors.append({"field": k, "message": f"{k} cannot be blank"})
            continue

        # Max length check for String(n)
        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                errors.append({"field": k, "message": f"{k} exceeds max length {col.type.length}"})
                continue

        patch[attr] = val

    for rule in policy.rules:
        rule(payload, patch, errors)

    if errors:
        raise ValidationError("Validation failed", errors=errors)

    return patch


def _non_negative(patch: dict, errors: list, attr: str, wire: str) -> None:
    value = patch.get(attr)
    if value is not None and value < 0:
        errors.append({"field": wire, "message": f"{wire} must be >= 0"})


def enforce_rules_product(payload: dict, patch: dict, errors: list) -> None:
    price = patch.get("price_cents")
    if price is not None:
        if price < 0:
            errors.append({"field": "priceCents", "message": "priceCents must be >= 0"})
        elif price > MAX_PRICE_CENTS:
            errors.append({
                "field": "priceCents",
                "message": f"priceCents cannot exceed {MAX_PRICE_CENTS} (${MAX_PRICE_CENTS / 100:,.2f})",
            })
    _non_negative(patch, errors, "cost_cents", "costCents")
    _non_negative(patch, errors, "quantity", "quantity")
    _non_negative(patch, errors, "min_stock", "minStock")


def _validate_items(
    payload: dict,
    errors: list,
    *,
    price_field: str,
) -> None:
    if "items" not in payload:
        return
    items = payload["items"]
    if not isinstance(items, list) or not items:
        errors.append({"field": "items", "message": "items must be a non-empty list"})
        return
    for index, item in enumerate(items):
        where = f"items[{index}]"
        if not isinstance(item, dict):
            errors.append({"field": where, "message": "item must be an object"})
            continue
        product_id = item.get("productId")
        if product_id is None or product_id == "":
            errors.append({"field": f"{where}.productId", "message": "productId is required"})
        elif is_local_reference(product_id):
            errors.append({
                "field": f"{where}.productId",
                "message": "productId must be a product serverId, not a local id",
            })
        quantity = item.get("quantity")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            errors.append({"field": f"{where}.quantity", "message": "quantity must be a positive integer"})
        price = item.get(price_field)
        if price is not None and (isinstance(price, bool) or not isinstance(price, int) or price < 0):
            errors.append({"field": f"{where}.{price_field}", "message": f"{price_field} must be >= 0"})


def enforce_rules_sale(payload: dict, patch: dict, errors: list) -> None:
    _validate_items(payload, errors, price_field="unitPriceCents")
    for attr, wire in (
        ("subtotal_cents", "subtotalCents"),
        ("tax_cents", "taxCents"),
        ("discount_cents", "discountCents"),
        ("total_cents", "totalCents"),
    ):
        _non_negative(patch, errors, attr, wire)


def enforce_rules_purchase_order(payload: dict, patch: dict, errors: list) -> None:
    _validate_items(payload, errors, price_field="unitCostCents")
    _non_negative(patch, errors, "total_cents", "totalCents")
    if "items" in patch and isinstance(patch["items"], list):
        # receivedQuantity is maintained by receipts
        patch["items"] = [
            {**item, "receivedQuantity": 0}
            if isinstance(item, dict) else item
            for item in patch["items"]
        ]


def enforce_rules_credit(payload: dict, patch: dict, errors: list) -> None:
    amount = patch.get("amount_cents")
    if amount is not None and amount <= 0:
        errors.append({"field": "amountCents", "message": "amountCents must be > 0"})


CLOCK_EVENT_TYPES = {"clock_in", "clock_out", "break_start", "break_end"}


def enforce_rules_clock_event(payload: dict, patch: dict, errors: list) -> None:
    event_type = patch.get("event_type")
    if event_type is not None and event_type not in CLOCK_EVENT_TYPES:
        errors.append({
            "field": "eventType",
            "message": f"eventType must be one of {', '.join(sorted(CLOCK_EVENT_TYPES))}",
        })


def enforce_rules_server_reference(*fields: str):
    """Scalar references must name serverIds at the API boundary."""
    def rule(payload: dict, patch: dict, errors: list) -> None:
        for name in fields:
            if is_local_reference(payload.get(name)):
                errors.append({
                    "field": name,
                    "message": f"{name} must be a serverId; sync the referenced record first",
                })
    return rule


POLICIES: dict[str, ModelValidationPolicy] = {
    "product": ModelValidationPolicy(
        writable_fields=frozenset({
            "name", "sku", "barcode", "category", "description", "priceCents",
            "costCents", "quantity", "minStock", "unit", "isActive", "status",
        }),
        required_on_create=frozenset({"sku", "name"}),
        create_only=frozenset({"quantity"}),
        rules=(enforce_rules_product,),
    ),
    "customer": ModelValidationPolicy(
        writable_fields=frozenset({"name", "email", "phone", "address", "notes", "isActive", "status"}),
        required_on_create=frozenset({"name"}),
    ),
    "employee": ModelValidationPolicy(
        writable_fields=frozenset({"name", "email", "phone", "role", "hourlyRateCents", "isActive", "status"}),
        required_on_create=frozenset({"name"}),
    ),
    "sale": ModelValidationPolicy(
        writable_fields=frozenset({
            "receiptNumber", "customerId", "employeeId", "items", "subtotalCents",
            "taxCents", "discountCents", "totalCents", "paymentMethod",
            "paymentStatus", "notes",
        }),
        required_on_create=frozenset({"items"}),
        # The stock effect of a sale is fixed at creation
        create_only=frozenset({"items", "customerId", "employeeId", "subtotalCents", "taxCents", "discountCents", "totalCents"}),
        rules=(enforce_rules_sale, enforce_rules_server_reference("customerId")),
    ),
    "credit": ModelValidationPolicy(
        writable_fields=frozenset({
            "customerId", "saleId", "amountCents", "reason", "dueDate",
            "isActive", "status",
        }),
        required_on_create=frozenset({"customerId", "amountCents"}),
        rules=(enforce_rules_credit, enforce_rules_server_reference("customerId", "saleId")),
    ),
    "purchase_order": ModelValidationPolicy(
        writable_fields=frozenset({"poNumber", "supplier", "items", "totalCents", "expectedDate", "notes"}),
        required_on_create=frozenset({"supplier", "items"}),
        rules=(enforce_rules_purchase_order,),
    ),
    "clock_event": ModelValidationPolicy(
        writable_fields=frozenset({"employeeId", "eventType", "occurredAt", "notes"}),
        required_on_create=frozenset({"employeeId", "eventType", "occurredAt"}),
        rules=(enforce_rules_clock_event, enforce_rules_server_reference("employeeId")),
    ),
}
