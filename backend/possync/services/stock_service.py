# Overview: Stock sub-protocol; the only code path that writes Product.quantity.

"""
Stock Service

A stock mutation is a signed delta applied as
    quantity <- max(0, quantity + delta)
together with a StockMovement row, in the same transaction.

Every mutation carries an idempotency key. When a key arrives again the
prior result is returned and nothing is re-applied; if the repeated request
asks for a different change under the same key it is rejected (422).

Responses report each touched product as {productId, quantity,
syncVersion, previousSyncVersion} so a client can overwrite its local
quantity and fast-forward its local syncVersion when it still holds
previousSyncVersion.
"""
from __future__ import annotations

from uuid import uuid4

from ..entities import ENTITIES
from ..errors import ValidationError
from ..extensions import db
from ..models import Product, StockMovement
from ..time_utils import utcnow
from .concurrency import lock_for_update, run_with_retry
from .events import ACTION_CREATED, ACTION_STOCK_UPDATED
from .record_service import SyncContext, load_record
from .tenant_service import require_stores_in_org, scoped_query

MOVEMENT_SALE = "sale"
MOVEMENT_VOID = "void"
MOVEMENT_RECEIPT = "purchase_receipt"
MOVEMENT_ADJUSTMENT = "adjustment"
MOVEMENT_COUNT = "count"
MOVEMENT_TRANSFER_OUT = "transfer_out"
MOVEMENT_TRANSFER_IN = "transfer_in"

PRODUCT = ENTITIES["product"]
STOCK_MOVEMENT = ENTITIES["stock_movement"]


class TransferError(ValidationError):
    """Raised when a transfer request cannot be carried out."""


def idempotency_key_reuse(key: str) -> ValidationError:
    return ValidationError(
        "idempotency-key-reuse",
        status_code=422,
        message=f"Idempotency key {key!r} was already used for a different stock change",
        idempotencyKey=key,
    )


def stock_update_entry(product: Product, previous_version: int | None) -> dict:
    return {
        "productId": product.server_id,
        "quantity": product.quantity,
        "syncVersion": product.sync_version,
        "previousSyncVersion": previous_version,
    }


def lock_product(store_id: int, server_id: str) -> Product:
    """Load a product of the store for a stock change."""
    load_record(PRODUCT, store_id, server_id)
    return lock_for_update(scoped_query(Product, store_id).filter(Product.server_id == server_id)).first()


def apply_stock_delta(
    product: Product,
    delta: int,
    *,
    movement_type: str,
    movement_key: str | None = None,
    client_ref: str | None = None,
    reason: str | None = None,
    ref_type: str | None = None,
    ref_id: str | None = None,
    notes: str | None = None,
) -> StockMovement:
    """
    Apply one delta to a loaded product and record the movement.

    The caller owns the transaction; nothing is committed here.
    """
    previous = product.quantity or 0
    new_quantity = max(0, previous + int(delta))
    now = utcnow()

    product.apply_patch({"quantity": new_quantity}, stamp=now)

    movement = StockMovement(
        store_id=product.store_id,
        product_server_id=product.server_id,
        movement_type=movement_type,
        delta=int(delta),
        reason=reason,
        previous_quantity=previous,
        new_quantity=new_quantity,
        movement_key=movement_key,
        client_ref=client_ref,
        ref_type=ref_type,
        ref_id=ref_id,
        notes=notes,
        created_at=now,
        updated_at=now,
        last_synced_at=now,
    )
    db.session.add(movement)
    return movement


def movements_for_key(store_id: int, movement_key: str, movement_type: str | None = None) -> list[StockMovement]:
    query = scoped_query(StockMovement, store_id).filter(StockMovement.movement_key == movement_key)
    if movement_type is not None:
        query = query.filter(StockMovement.movement_type == movement_type)
    return query.order_by(StockMovement.id.asc()).all()


def apply_deltas(
    store_id: int,
    deltas: dict[str, int],
    *,
    movement_type: str,
    movement_key: str,
    ref_type: str,
    ref_id: str,
    reason: str | None = None,
) -> list[dict]:
    """Apply a delta vector {productServerId: delta}; returns the stock entries."""
    updates = []
    for product_id in sorted(deltas):
        delta = deltas[product_id]
        if delta == 0:
            continue
        product = lock_product(store_id, product_id)
        previous_version = product.sync_version
        apply_stock_delta(
            product,
            delta,
            movement_type=movement_type,
            movement_key=movement_key,
            reason=reason,
            ref_type=ref_type,
            ref_id=ref_id,
        )
        db.session.flush()
        updates.append(stock_update_entry(product, previous_version))
    return updates


def current_stock_entries(store_id: int, product_ids) -> list[dict]:
    """Stock entries for a replayed request; versions are not fast-forwardable."""
    entries = []
    for product_id in sorted(set(product_ids)):
        product = scoped_query(Product, store_id).filter(Product.server_id == product_id).first()
        if product is not None:
            entries.append(stock_update_entry(product, None))
    return entries


def publish_stock(ctx: SyncContext, entries: list[dict], store_id: int | None = None) -> None:
    store_id = store_id if store_id is not None else ctx.store_id
    ctx.invalidate(STOCK_MOVEMENT.resource, store_id=store_id)
    for entry in entries:
        ctx.invalidate(PRODUCT.resource, entry["productId"], store_id=store_id)
        ctx.publish(PRODUCT.resource, ACTION_STOCK_UPDATED, {
            "serverId": entry["productId"],
            "quantity": entry["quantity"],
            "syncVersion": entry["syncVersion"],
        }, store_id=store_id)


def _parse_int(body: dict, name: str, errors: list) -> int | None:
    value = body.get(name)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        errors.append({"field": name, "message": f"{name} must be an integer"})
        return None
    return value


def adjust_stock(ctx: SyncContext, server_id: str, body: dict, idempotency_key: str | None = None) -> dict:
    """
    PATCH /products/{serverId}/stock.

    body: {adjustment} (signed delta) or {quantity} (absolute count, turned
    into the delta that reaches it), plus optional reason/notes.
    """
    body = body or {}
    errors: list[dict] = []
    quantity = _parse_int(body, "quantity", errors)
    adjustment = _parse_int(body, "adjustment", errors)
    if not errors and quantity is None and adjustment is None:
        errors.append({"field": "adjustment", "message": "quantity or adjustment is required"})
    if quantity is not None and adjustment is not None:
        errors.append({"field": "quantity", "message": "Send either quantity or adjustment, not both"})
    if errors:
        raise ValidationError("Validation failed", errors=errors)

    key = idempotency_key or body.get("clientRef")

    def _op():
        if key:
            prior = scoped_query(StockMovement, ctx.store_id).filter(StockMovement.client_ref == key).first()
            if prior is not None:
                same = prior.product_server_id == server_id and (
                    adjustment is None or prior.delta == adjustment
                ) and (quantity is None or prior.new_quantity == max(0, quantity))
                if not same:
                    raise idempotency_key_reuse(key)
                product = load_record(PRODUCT, ctx.store_id, server_id)
                return {
                    "product": product.to_dict(),
                    "movement": prior.to_dict(),
                    "stock": [stock_update_entry(product, None)],
                    "replayed": True,
                }

        product = lock_product(ctx.store_id, server_id)
        previous_version = product.sync_version
        if adjustment is not None:
            delta, movement_type = adjustment, MOVEMENT_ADJUSTMENT
        else:
            delta, movement_type = max(0, quantity) - (product.quantity or 0), MOVEMENT_COUNT

        movement = apply_stock_delta(
            product,
            delta,
            movement_type=movement_type,
            movement_key=key,
            client_ref=key,
            reason=body.get("reason"),
            notes=body.get("notes"),
            ref_type="product",
            ref_id=product.server_id,
        )
        db.session.commit()
        return {
            "product": product.to_dict(),
            "movement": movement.to_dict(),
            "stock": [stock_update_entry(product, previous_version)],
            "replayed": False,
        }

    result = run_with_retry(_op)
    if not result["replayed"]:
        publish_stock(ctx, result["stock"])
        ctx.publish(STOCK_MOVEMENT.resource, ACTION_CREATED, result["movement"])
    return result


def transfer_stock(ctx: SyncContext, body: dict, idempotency_key: str | None = None) -> dict:
    """
    Move stock of one product between two stores of the caller's organization.

    The destination product is matched by SKU and cloned from the source
    when missing. Both movements share the transfer key.
    """
    body = body or {}
    from_store_id = body.get("fromStoreId", ctx.store_id)
    to_store_id = body.get("toStoreId")
    product_id = body.get("productId")
    quantity = body.get("quantity")

    missing = [name for name, value in (("toStoreId", to_store_id), ("productId", product_id), ("quantity", quantity)) if value in (None, "")]
    if missing:
        raise TransferError(
            "fromStoreId, toStoreId, productId, and quantity are required",
            errors=[{"field": name, "message": f"{name} is required"} for name in missing],
        )
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise TransferError("Quantity must be greater than 0", errors=[{"field": "quantity", "message": "quantity must be a positive integer"}])
    try:
        from_store_id, to_store_id = int(from_store_id), int(to_store_id)
    except (TypeError, ValueError):
        raise TransferError("Store ids must be integers") from None
    if from_store_id == to_store_id:
        raise TransferError("Cannot transfer to the same store")

    from_store, to_store = require_stores_in_org([from_store_id, to_store_id], ctx.org_id)
    key = idempotency_key or body.get("transferKey") or uuid4().hex

    def _op():
        prior_out = movements_for_key(from_store.id, key, MOVEMENT_TRANSFER_OUT)
        if prior_out:
            prior_in = movements_for_key(to_store.id, key, MOVEMENT_TRANSFER_IN)
            if prior_out[0].product_server_id != str(product_id) or prior_out[0].delta != -quantity:
                raise idempotency_key_reuse(key)
            return _transfer_result(key, quantity, from_store, to_store, prior_out[0], prior_in[0] if prior_in else None, replayed=True)

        source = lock_product(from_store.id, str(product_id))
        if source.quantity < quantity:
            raise TransferError(
                f"Insufficient quantity in source store. Available: {source.quantity}, Requested: {quantity}"
            )

        destination = lock_for_update(
            scoped_query(Product, to_store.id).filter(Product.sku == source.sku)
        ).first()
        if destination is None:
            destination = clone_product(source, to_store.id)
        previous = {"from": source.sync_version, "to": destination.sync_version}

        reason = body.get("reason") or "Inventory transfer"
        out_move = apply_stock_delta(
            source, -quantity,
            movement_type=MOVEMENT_TRANSFER_OUT, movement_key=key, client_ref=key,
            reason=reason, notes=body.get("notes"), ref_type="store_transfer", ref_id=str(to_store.id),
        )
        in_move = apply_stock_delta(
            destination, quantity,
            movement_type=MOVEMENT_TRANSFER_IN, movement_key=key, client_ref=key,
            reason=reason, notes=body.get("notes"), ref_type="store_transfer", ref_id=str(from_store.id),
        )
        db.session.commit()
        return _transfer_result(key, quantity, from_store, to_store, out_move, in_move, replayed=False, previous=previous)

    result = run_with_retry(_op)
    if not result["replayed"]:
        publish_stock(ctx, [result["from"]["stock"]], store_id=from_store_id)
        publish_stock(ctx, [result["to"]["stock"]], store_id=to_store_id)
    return result


def clone_product(source: Product, store_id: int) -> Product:
    now = utcnow()
    clone = Product(
        store_id=store_id,
        sku=source.sku,
        name=source.name,
        barcode=source.barcode,
        category=source.category,
        description=source.description,
        price_cents=source.price_cents,
        cost_cents=source.cost_cents,
        min_stock=source.min_stock,
        unit=source.unit,
        quantity=0,
        is_active=True,
        status="active",
        created_at=now,
        updated_at=now,
        last_synced_at=now,
    )
    db.session.add(clone)
    db.session.flush()
    return clone


def _transfer_result(key, quantity, from_store, to_store, out_move, in_move, *, replayed: bool, previous=None) -> dict:
    previous = previous or {}

    def side(name, store, movement):
        product = None
        if movement is not None:
            product = scoped_query(Product, store.id).filter(Product.server_id == movement.product_server_id).first()
        return {
            "storeId": store.id,
            "storeName": store.name,
            "productId": movement.product_server_id if movement is not None else None,
            "newQuantity": product.quantity if product is not None else None,
            "movement": movement.to_dict() if movement is not None else None,
            "stock": stock_update_entry(product, previous.get(name)) if product is not None else None,
        }

    return {
        "message": "Inventory transferred successfully",
        "transferKey": key,
        "quantity": quantity,
        "from": side("from", from_store, out_move),
        "to": side("to", to_store, in_move),
        "replayed": replayed,
    }
