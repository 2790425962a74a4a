# Overview: Registry of synchronized entity types shared by the server and the sync client.

"""
Each synchronized entity declares how it is deleted, which payload fields
reference other entities, and which fields only the server may write.

References are written as field paths:
    "customerId"          a scalar reference on the payload
    "items[].productId"   a reference on every element of a list field

On the client a reference holds either an int (the localId of a row that may
not have been promoted yet) or a str (a serverId). The server only ever
accepts serverIds.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Iterator

DELETE_HARD = "hard"
DELETE_SOFT = "soft"
DELETE_NONE = "none"


@dataclass(frozen=True)
class Reference:
    path: str
    entity: str

    @property
    def list_field(self) -> str | None:
        if "[]." in self.path:
            return self.path.split("[].", 1)[0]
        return None

    @property
    def leaf(self) -> str:
        return self.path.split("[].", 1)[-1]


@dataclass(frozen=True)
class EntitySpec:
    name: str
    resource: str
    delete_mode: str = DELETE_HARD
    references: tuple[Reference, ...] = ()
    server_managed: frozenset[str] = field(default_factory=frozenset)

    @property
    def deletable(self) -> bool:
        return self.delete_mode != DELETE_NONE


ENTITIES: dict[str, EntitySpec] = {
    spec.name: spec
    for spec in (
        EntitySpec(
            name="product",
            resource="products",
            delete_mode=DELETE_HARD,
            server_managed=frozenset({"quantity"}),
        ),
        EntitySpec(
            name="customer",
            resource="customers",
            delete_mode=DELETE_SOFT,
            server_managed=frozenset({"totalOrders", "totalSpentCents"}),
        ),
        EntitySpec(
            name="employee",
            resource="employees",
            delete_mode=DELETE_SOFT,
        ),
        EntitySpec(
            name="sale",
            resource="sales",
            delete_mode=DELETE_NONE,
            references=(
                Reference("customerId", "customer"),
                Reference("employeeId", "employee"),
                Reference("items[].productId", "product"),
            ),
            server_managed=frozenset({"status", "voidedAt", "voidReason"}),
        ),
        EntitySpec(
            name="credit",
            resource="credits",
            delete_mode=DELETE_SOFT,
            references=(
                Reference("customerId", "customer"),
                Reference("saleId", "sale"),
            ),
            server_managed=frozenset({"amountPaidCents", "paidAt", "balanceCents"}),
        ),
        EntitySpec(
            name="purchase_order",
            resource="purchase-orders",
            delete_mode=DELETE_HARD,
            references=(Reference("items[].productId", "product"),),
            server_managed=frozenset({"status", "receivedAt"}),
        ),
        EntitySpec(
            name="clock_event",
            resource="clock-events",
            delete_mode=DELETE_NONE,
            references=(Reference("employeeId", "employee"),),
        ),
        EntitySpec(
            name="stock_movement",
            resource="stock-movements",
            delete_mode=DELETE_NONE,
            references=(Reference("productId", "product"),),
            server_managed=frozenset({"previousQuantity", "newQuantity"}),
        ),
    )
}

BY_RESOURCE: dict[str, EntitySpec] = {spec.resource: spec for spec in ENTITIES.values()}

# Collection names of the /sync/pull response, in dependency order
PULL_KEYS = {
    "product": "products",
    "customer": "customers",
    "employee": "employees",
    "sale": "sales",
    "credit": "credits",
    "purchase_order": "purchaseOrders",
    "clock_event": "clockEvents",
    "stock_movement": "stockMovements",
}


def get_entity(name: str) -> EntitySpec:
    try:
        return ENTITIES[name]
    except KeyError:
        raise KeyError(f"Unknown entity type: {name}") from None


def iter_references(spec: EntitySpec, payload: dict) -> Iterator[tuple[str, Any, str]]:
    """
    Yield (location, value, referenced entity) for every populated reference.

    ``location`` names the concrete field, e.g. ``items[1].productId``.
    """
    for ref in spec.references:
        list_field = ref.list_field
        if list_field is None:
            value = payload.get(ref.path)
            if value is not None:
                yield ref.path, value, ref.entity
            continue

        items = payload.get(list_field) or []
        for index, item in enumerate(items):
            if not isinstance(item, dict):
                continue
            value = item.get(ref.leaf)
            if value is not None:
                yield f"{list_field}[{index}].{ref.leaf}", value, ref.entity


def map_references(
    spec: EntitySpec,
    payload: dict,
    fn: Callable[[str, Any], Any],
) -> dict:
    """Return a copy of ``payload`` with every reference value replaced by fn(entity, value)."""
    out = dict(payload)
    for ref in spec.references:
        list_field = ref.list_field
        if list_field is None:
            if out.get(ref.path) is not None:
                out[ref.path] = fn(ref.entity, out[ref.path])
            continue

        items = out.get(list_field)
        if not items:
            continue
        new_items = []
        for item in items:
            if isinstance(item, dict) and item.get(ref.leaf) is not None:
                item = dict(item)
                item[ref.leaf] = fn(ref.entity, item[ref.leaf])
            new_items.append(item)
        out[list_field] = new_items
    return out


def is_local_reference(value: Any) -> bool:
    """A local reference is an int localId; serverIds are strings."""
    return isinstance(value, int) and not isinstance(value, bool)


def strip_server_managed(spec: EntitySpec, payload: dict) -> dict:
    return {k: v for k, v in payload.items() if k not in spec.server_managed}
