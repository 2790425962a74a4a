# Overview: Server-side record store; tenant-scoped CRUD behind the optimistic version guard.

"""
Record Service (the authoritative store)

Every write follows the same guard, inside run_with_retry:

    load the record by serverId, filtered by the caller's store
    evaluate the proposal with conflict_resolver (validation, then version)
    apply the patch and flush

The flush issues "UPDATE ... WHERE sync_version = :loaded", so of two
writers holding the same base version exactly one succeeds; the other gets
StaleDataError, is rolled back, re-loads and is re-evaluated (and now sees a
conflict). On success the tenant cache is invalidated and a change event is
published.

Creates are idempotent on client_ref: a retried create returns the record
produced by the first attempt.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import or_

from .. import conflict_resolver
from ..entities import (
    BY_RESOURCE,
    DELETE_HARD,
    DELETE_SOFT,
    ENTITIES,
    PULL_KEYS,
    EntitySpec,
    is_local_reference,
    iter_references,
)
from ..errors import ConflictError, NotFoundError, ValidationError
from ..extensions import db
from ..models import MODELS_BY_ENTITY
from ..time_utils import parse_iso_datetime, to_utc_z, utcnow
from ..validation import POLICIES, strip_envelope, validate_payload
from .concurrency import run_with_retry
from .events import ACTION_CREATED, ACTION_DELETED, ACTION_UPDATED, ChangeFeed
from .tenant_cache import TenantCache
from .tenant_service import scoped_query

SEARCH_COLUMNS = {
    "product": ("name", "sku", "barcode"),
    "customer": ("name", "email", "phone"),
    "employee": ("name", "email"),
    "sale": ("receipt_number",),
    "purchase_order": ("po_number", "supplier"),
}

DEFAULT_SORT = {
    "product": "name",
    "customer": "name",
    "employee": "name",
}

MAX_PER_PAGE = 500


@dataclass
class SyncContext:
    """Per-request view of the tenant and the shared collaborators."""
    store_id: int
    org_id: int | None = None
    cache: TenantCache | None = None
    feed: ChangeFeed | None = None
    strict: bool = False
    pull_sales_limit: int = 1000
    extra: dict = field(default_factory=dict)

    def invalidate(self, resource: str, server_id: str | None = None, store_id: int | None = None) -> None:
        if self.cache is not None:
            self.cache.invalidate(store_id if store_id is not None else self.store_id, resource, server_id)

    def publish(self, resource: str, action: str, record: dict, store_id: int | None = None) -> None:
        if self.feed is not None:
            self.feed.publish(store_id if store_id is not None else self.store_id, resource, action, record)

    def after_write(self, spec: EntitySpec, action: str, record: dict, *, also: tuple[str, ...] = ()) -> None:
        """Invalidate the resource (and dependent resources), then notify subscribers."""
        self.invalidate(spec.resource, record.get("serverId"))
        for resource in also:
            self.invalidate(resource)
        self.publish(spec.resource, action, record)


def resolve_entity(name: str) -> EntitySpec:
    """Accept an entity name ("purchase_order") or a resource path ("purchase-orders")."""
    if name in ENTITIES:
        return ENTITIES[name]
    if name in BY_RESOURCE:
        return BY_RESOURCE[name]
    raise ValidationError("Invalid entity type", errors=[{"field": "entityType", "message": f"Unknown entity type: {name}"}])


def model_for(spec: EntitySpec):
    return MODELS_BY_ENTITY[spec.name]


def load_record(spec: EntitySpec, store_id: int, server_id: str, *, for_update: bool = False):
    """Load one record of the caller's store; other tenants' records are simply not found."""
    model = model_for(spec)
    query = scoped_query(model, store_id).filter(model.server_id == str(server_id))
    if for_update:
        query = query.with_for_update()
    record = query.first()
    if record is None:
        raise NotFoundError(f"{spec.name.replace('_', ' ').capitalize()} not found", resource=spec.resource)
    return record


def find_by_client_ref(spec: EntitySpec, store_id: int, client_ref: str | None):
    if not client_ref:
        return None
    model = model_for(spec)
    return scoped_query(model, store_id).filter(model.client_ref == client_ref).first()


def check_references(spec: EntitySpec, store_id: int, payload: dict) -> None:
    """Every reference must be a serverId of a record in the same store."""
    errors = []
    for location, value, target in iter_references(spec, payload):
        if is_local_reference(value):
            errors.append({
                "field": location,
                "message": f"{location} is a local id; sync the {target.replace('_', ' ')} and use its serverId",
            })
            continue
        model = MODELS_BY_ENTITY[target]
        exists = scoped_query(model, store_id).filter(model.server_id == str(value)).first()
        if exists is None:
            errors.append({"field": location, "message": f"Referenced {target.replace('_', ' ')} not found"})
    if errors:
        raise ValidationError("Invalid references", errors=errors)


def _check_unique_sku(store_id: int, sku: str | None, exclude_id: int | None = None) -> None:
    if not sku:
        return
    from ..models import Product

    query = scoped_query(Product, store_id).filter(Product.sku == sku)
    if exclude_id is not None:
        query = query.filter(Product.id != exclude_id)
    if query.first() is not None:
        raise ValidationError(
            "SKU already exists for this store.",
            errors=[{"field": "sku", "message": "SKU already exists for this store"}],
        )


# Reads ---------------------------------------------------------------------


def _query_for_list(spec: EntitySpec, store_id: int, params: dict):
    model = model_for(spec)
    query = scoped_query(model, store_id)
    columns = {c.key for c in model.__mapper__.columns}

    active = params.get("active")
    if active is not None and "is_active" in columns:
        query = query.filter(model.is_active == (str(active).lower() == "true"))

    if params.get("status") and "status" in columns:
        query = query.filter(model.status == params["status"])

    if params.get("category") and "category" in columns:
        query = query.filter(model.category == params["category"])

    search = params.get("search")
    if search and spec.name in SEARCH_COLUMNS:
        pattern = f"%{search}%"
        query = query.filter(or_(*[getattr(model, c).ilike(pattern) for c in SEARCH_COLUMNS[spec.name]]))

    since = params.get("since")
    if since:
        try:
            since_dt = parse_iso_datetime(since)
        except ValueError:
            raise ValidationError("Invalid since", errors=[{"field": "since", "message": "since must be an ISO-8601 datetime"}])
        if since_dt is not None:
            query = query.filter(model.updated_at >= since_dt)

    # Reference filters, e.g. ?customerId=... on sales
    for ref in spec.references:
        if ref.list_field is None and params.get(ref.path):
            query = query.filter(getattr(model, model.WIRE_FIELDS[ref.path]) == params[ref.path])

    sort = params.get("sort") or DEFAULT_SORT.get(spec.name, "-createdAt")
    descending = sort.startswith("-")
    sort_field = sort.lstrip("-")
    attr = model.WIRE_FIELDS.get(sort_field) or {"createdAt": "created_at", "updatedAt": "updated_at"}.get(sort_field)
    if attr is None or attr not in columns:
        raise ValidationError("Invalid sort", errors=[{"field": "sort", "message": f"Cannot sort by {sort_field}"}])
    order_col = getattr(model, attr)
    query = query.order_by(order_col.desc() if descending else order_col.asc(), model.id.asc())
    return query


def _load_list(spec: EntitySpec, store_id: int, params: dict) -> dict:
    query = _query_for_list(spec, store_id, params)

    page = _int_param(params, "page")
    if page is None:
        records = query.all()
        return {"items": [r.to_dict() for r in records], "count": len(records)}

    per_page = min(_int_param(params, "per_page") or 50, MAX_PER_PAGE)
    page = max(page, 1)
    total = query.count()
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1
    records = query.offset((page - 1) * per_page).limit(per_page).all()
    return {
        "items": [r.to_dict() for r in records],
        "count": len(records),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }


def _int_param(params: dict, name: str) -> int | None:
    raw = params.get(name)
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {name}", errors=[{"field": name, "message": f"{name} must be an integer"}])


def list_records(ctx: SyncContext, spec: EntitySpec, params: dict | None = None) -> dict:
    params = {k: v for k, v in (params or {}).items() if v not in (None, "")}

    def loader():
        return _load_list(spec, ctx.store_id, params)

    if ctx.cache is None:
        return loader()
    return ctx.cache.get_or_load(ctx.store_id, spec.resource, loader, params=params)


def get_record(ctx: SyncContext, spec: EntitySpec, server_id: str) -> dict:
    def loader():
        return load_record(spec, ctx.store_id, server_id).to_dict()

    if ctx.cache is None:
        return loader()
    return ctx.cache.get_or_load(ctx.store_id, spec.resource, loader, record_id=server_id)


# Writes --------------------------------------------------------------------


def create_record(ctx: SyncContext, spec: EntitySpec, payload: dict, client_ref: str | None = None) -> tuple[dict, bool]:
    """
    Create a record; returns (record, created).

    created is False when client_ref names a record that already exists,
    in which case that record is returned unchanged.
    """
    if spec.name == "sale":
        from .sales_service import create_sale

        return create_sale(ctx, payload, client_ref=client_ref)

    if spec.name == "stock_movement":
        raise ValidationError("Stock movements are created through PATCH /api/products/{serverId}/stock")

    payload = dict(payload or {})
    client_ref = client_ref or payload.get("clientRef")
    model = model_for(spec)
    policy = POLICIES[spec.name]

    def _op():
        existing = find_by_client_ref(spec, ctx.store_id, client_ref)
        if existing is not None:
            return existing.to_dict(), False

        patch = validate_payload(model=model, payload=payload, policy=policy, partial=False)
        check_references(spec, ctx.store_id, payload)
        if spec.name == "product":
            _check_unique_sku(ctx.store_id, patch.get("sku"))

        now = utcnow()
        record = model(store_id=ctx.store_id, client_ref=client_ref, created_at=now)
        record.apply_patch(patch, stamp=now)
        db.session.add(record)
        db.session.commit()
        return record.to_dict(), True

    result, created = run_with_retry(_op)
    if created:
        ctx.after_write(spec, ACTION_CREATED, result)
    return result, created


def _apply_entity_update_rules(spec: EntitySpec, record, patch: dict) -> None:
    if spec.name == "product" and "sku" in patch and patch["sku"] != record.sku:
        _check_unique_sku(record.store_id, patch["sku"], exclude_id=record.id)

    if spec.name == "purchase_order" and "items" in patch:
        # Receipts own receivedQuantity; keep what has already been received
        received = {}
        for item in record.items or []:
            received[item.get("productId")] = received.get(item.get("productId"), 0) + int(item.get("receivedQuantity") or 0)
        patch["items"] = [
            {**item, "receivedQuantity": received.pop(item.get("productId"), 0)}
            for item in patch["items"]
        ]


def update_record(ctx: SyncContext, spec: EntitySpec, server_id: str, payload: dict) -> dict:
    """
    Version-guarded update.

    Raises ValidationError (400) for a malformed patch, ConflictError (409)
    carrying the conflict report when payload.syncVersion is stale, and
    NotFoundError (404) when the record is not in the caller's store.
    """
    if spec.name == "stock_movement":
        raise ValidationError("Stock movements cannot be modified")

    payload = dict(payload or {})
    model = model_for(spec)
    policy = POLICIES[spec.name]

    def _op():
        record = load_record(spec, ctx.store_id, server_id)
        validated: dict = {}

        def validator(proposal: dict) -> list[dict]:
            try:
                validated.update(validate_payload(model=model, payload=proposal, policy=policy, partial=True))
            except ValidationError as exc:
                return exc.errors or [{"field": None, "message": exc.message}]
            return []

        evaluation = conflict_resolver.evaluate(record.to_dict(), payload, strict=ctx.strict, validator=validator)
        if evaluation.outcome == conflict_resolver.REJECTED:
            raise ValidationError("Validation failed", errors=evaluation.errors)
        if evaluation.outcome == conflict_resolver.CONFLICT:
            raise ConflictError(conflict_resolver.CONFLICT_MESSAGE, report=evaluation.report)

        check_references(spec, ctx.store_id, payload)
        _apply_entity_update_rules(spec, record, validated)
        record.apply_patch(validated)
        db.session.commit()
        return record.to_dict()

    result = run_with_retry(_op)
    ctx.after_write(spec, ACTION_UPDATED, result)
    return result


def delete_record(ctx: SyncContext, spec: EntitySpec, server_id: str, sync_version: int | None = None) -> dict:
    """
    Hard or soft delete per the entity's delete mode.

    A supplied sync_version is checked like an update; a stale one is a
    conflict.
    """
    if not spec.deletable:
        raise ValidationError(f"{spec.name.replace('_', ' ').capitalize()} records cannot be deleted")

    def _op():
        record = load_record(spec, ctx.store_id, server_id)
        current = record.to_dict()
        if conflict_resolver.has_conflict(record.sync_version, sync_version):
            raise ConflictError(
                conflict_resolver.CONFLICT_MESSAGE,
                report=conflict_resolver.conflict_report(current, {"serverId": server_id, "syncVersion": sync_version}),
            )

        if spec.delete_mode == DELETE_HARD:
            db.session.delete(record)
            db.session.commit()
            return {"deleted": True, "mode": DELETE_HARD, "serverId": server_id, "data": current}

        record.apply_patch({"is_active": False, "status": "inactive"})
        db.session.commit()
        return {"deleted": True, "mode": DELETE_SOFT, "serverId": server_id, "data": record.to_dict()}

    result = run_with_retry(_op)
    ctx.after_write(spec, ACTION_DELETED, result["data"])
    return result


def bulk_apply(ctx: SyncContext, spec: EntitySpec, operations: Any) -> dict:
    """
    Apply a vector of {action: create|update, id?, data}; each operation
    commits on its own, so earlier successes survive later failures.
    """
    if not isinstance(operations, list):
        raise ValidationError("operations array is required")

    results: dict[str, list] = {"created": [], "updated": [], "errors": []}
    for index, op in enumerate(operations):
        action = op.get("action") if isinstance(op, dict) else None
        try:
            if action == "create":
                data = op.get("data") or {}
                record, _ = create_record(ctx, spec, data, client_ref=op.get("clientRef") or data.get("clientRef"))
                results["created"].append(record)
            elif action == "update":
                if not op.get("id"):
                    raise ValidationError(f"{spec.name} id required for update")
                results["updated"].append(update_record(ctx, spec, op["id"], op.get("data") or {}))
            else:
                raise ValidationError(f"Unknown action: {action}")
        except (ValidationError, ConflictError, NotFoundError) as exc:
            error = {"index": index, "operation": action, "error": exc.message, "statusCode": exc.status_code}
            if isinstance(exc, ValidationError) and exc.errors:
                error["errors"] = exc.errors
            if isinstance(exc, ConflictError):
                error["conflict"] = exc.report
            results["errors"].append(error)
    return results


def bulk_delete(ctx: SyncContext, spec: EntitySpec, ids: Any) -> dict:
    if not isinstance(ids, list) or not ids:
        raise ValidationError("ids array is required")

    results: dict[str, list] = {"deleted": [], "errors": []}
    for server_id in ids:
        try:
            delete_record(ctx, spec, server_id)
            results["deleted"].append(server_id)
        except (ValidationError, NotFoundError) as exc:
            results["errors"].append({"id": server_id, "error": exc.message, "statusCode": exc.status_code})
    return results


# Conflicts -----------------------------------------------------------------


def resolve_conflict(ctx: SyncContext, spec: EntitySpec, server_id: str, strategy: str, client_data: dict | None) -> dict:
    """
    Apply an explicit resolution strategy to a record.

    acceptServer leaves the record untouched. acceptClient and merge write
    the client's (already merged) payload at serverVersion + 1. Only fields
    a client may update are taken from client_data.
    """
    try:
        strategy = conflict_resolver.normalize_strategy(strategy)
    except ValueError as exc:
        raise ValidationError(str(exc), errors=[{"field": "strategy", "message": str(exc)}])

    if spec.name == "stock_movement":
        raise ValidationError("Stock movements cannot be modified")

    model = model_for(spec)
    policy = POLICIES[spec.name]

    def _op():
        record = load_record(spec, ctx.store_id, server_id)
        server_record = record.to_dict()
        resolved = conflict_resolver.resolve(strategy, server_record, client_data or {})
        if strategy == conflict_resolver.ACCEPT_SERVER:
            return server_record, False

        writable = policy.writable_fields - policy.create_only - spec.server_managed
        proposal = {
            k: v for k, v in strip_envelope(resolved).items()
            if k in writable and v != server_record.get(k)
        }
        patch = validate_payload(model=model, payload=proposal, policy=policy, partial=True)
        check_references(spec, ctx.store_id, proposal)
        _apply_entity_update_rules(spec, record, patch)
        record.apply_patch(patch)
        db.session.commit()
        return record.to_dict(), True

    result, written = run_with_retry(_op)
    if written:
        ctx.after_write(spec, ACTION_UPDATED, result)
    return {"success": True, "strategy": strategy, "data": result}


def conflict_state(ctx: SyncContext, spec: EntitySpec, server_id: str) -> dict:
    record = load_record(spec, ctx.store_id, server_id)
    data = record.to_dict()
    return {
        "data": data,
        "syncVersion": data["syncVersion"],
        "lastSyncedAt": data["lastSyncedAt"],
        "updatedAt": data["updatedAt"],
    }


# Pull ----------------------------------------------------------------------


def pull_changes(ctx: SyncContext, since: str | None = None) -> dict:
    """
    Every record of the store changed at or after ``since`` (all records
    when omitted), grouped per entity, plus the server time to use as the
    next ``since``.

    Sales are capped at ``pull_sales_limit``. When the cap is reached,
    ``hasMore`` is true and ``syncedAt`` is the updatedAt of the last sale
    returned, so the next pull continues from there.
    """
    synced_at = utcnow()
    since_dt = None
    if since:
        try:
            since_dt = parse_iso_datetime(since)
        except ValueError:
            raise ValidationError("Invalid since", errors=[{"field": "since", "message": "since must be an ISO-8601 datetime"}])

    out: dict[str, Any] = {}
    cursor = None
    for name, key in PULL_KEYS.items():
        model = MODELS_BY_ENTITY[name]
        query = scoped_query(model, ctx.store_id)
        if since_dt is not None:
            query = query.filter(model.updated_at >= since_dt)
        query = query.order_by(model.updated_at.asc(), model.id.asc())
        if name == "sale":
            rows = query.limit(ctx.pull_sales_limit + 1).all()
            if len(rows) > ctx.pull_sales_limit:
                rows = rows[:ctx.pull_sales_limit]
                cursor = rows[-1].updated_at
        else:
            rows = query.all()
        out[key] = [r.to_dict() for r in rows]

    out["hasMore"] = cursor is not None
    out["syncedAt"] = to_utc_z(cursor, keep_microseconds=True) if cursor is not None else to_utc_z(synced_at)
    return out
