# Overview: Purchase-order receipts and cancellation.

from __future__ import annotations

from uuid import uuid4

from ..entities import ENTITIES
from ..errors import ValidationError
from ..extensions import db
from ..models import (
    PO_STATUS_CANCELLED,
    PO_STATUS_PARTIAL,
    PO_STATUS_RECEIVED,
    StockMovement,
)
from ..time_utils import utcnow
from .concurrency import run_with_retry
from .events import ACTION_UPDATED
from .record_service import SyncContext, load_record
from .stock_service import MOVEMENT_RECEIPT, apply_deltas, current_stock_entries, idempotency_key_reuse, publish_stock
from .tenant_service import scoped_query

PURCHASE_ORDER = ENTITIES["purchase_order"]


def _remaining(item: dict) -> int:
    return max(0, int(item.get("quantity") or 0) - int(item.get("receivedQuantity") or 0))


def _requested_quantities(po, lines) -> dict[str, int]:
    """
    Map productId -> quantity to receive.

    An empty request receives everything still outstanding.
    """
    if not lines:
        out: dict[str, int] = {}
        for item in po.items or []:
            if _remaining(item):
                out[item["productId"]] = out.get(item["productId"], 0) + _remaining(item)
        return out

    if not isinstance(lines, list):
        raise ValidationError("items must be a list", errors=[{"field": "items", "message": "items must be a list"}])

    outstanding: dict[str, int] = {}
    for item in po.items or []:
        outstanding[item["productId"]] = outstanding.get(item["productId"], 0) + _remaining(item)

    errors = []
    out = {}
    for index, line in enumerate(lines):
        where = f"items[{index}]"
        product_id = line.get("productId") if isinstance(line, dict) else None
        quantity = line.get("quantity") if isinstance(line, dict) else None
        if product_id not in outstanding:
            errors.append({"field": f"{where}.productId", "message": "Product is not on this purchase order"})
            continue
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            errors.append({"field": f"{where}.quantity", "message": "quantity must be a positive integer"})
            continue
        total = out.get(product_id, 0) + quantity
        if total > outstanding[product_id]:
            errors.append({
                "field": f"{where}.quantity",
                "message": f"Cannot receive {total}; only {outstanding[product_id]} outstanding",
            })
            continue
        out[product_id] = total
    if errors:
        raise ValidationError("Validation failed", errors=errors)
    return out


def _apply_to_items(items: list[dict], received: dict[str, int]) -> list[dict]:
    left = dict(received)
    updated = []
    for item in items:
        item = dict(item)
        take = min(_remaining(item), left.get(item["productId"], 0))
        if take:
            item["receivedQuantity"] = int(item.get("receivedQuantity") or 0) + take
            left[item["productId"]] -= take
        updated.append(item)
    return updated


def receive_purchase_order(ctx: SyncContext, server_id: str, body: dict | None, idempotency_key: str | None = None) -> dict:
    """
    Receive goods against a purchase order.

    body: {items: [{productId, quantity}]}; omit items to receive the rest.
    Stock is incremented in the same transaction. A repeated receipt key
    returns the order as it stands without receiving again.
    """
    body = body or {}
    key = idempotency_key or body.get("receiptKey")

    def _op():
        po = load_record(PURCHASE_ORDER, ctx.store_id, server_id)

        if key:
            prior = (
                scoped_query(StockMovement, ctx.store_id)
                .filter(StockMovement.movement_key == key, StockMovement.movement_type == MOVEMENT_RECEIPT)
                .all()
            )
            if prior:
                if any(m.ref_id != po.server_id for m in prior):
                    raise idempotency_key_reuse(key)
                result = po.to_dict()
                return {
                    "purchaseOrder": result,
                    "stockUpdates": current_stock_entries(ctx.store_id, [m.product_server_id for m in prior]),
                    "replayed": True,
                }

        if po.status == PO_STATUS_CANCELLED:
            raise ValidationError("Cannot receive a cancelled purchase order")
        if po.status == PO_STATUS_RECEIVED:
            raise ValidationError("Purchase order already fully received")

        received = _requested_quantities(po, body.get("items"))
        if not received:
            raise ValidationError("Nothing left to receive on this purchase order")

        now = utcnow()
        items = _apply_to_items(po.items or [], received)
        patch = {"items": items}
        if all(_remaining(item) == 0 for item in items):
            patch.update(status=PO_STATUS_RECEIVED, received_at=now)
        else:
            patch["status"] = PO_STATUS_PARTIAL
        po.apply_patch(patch, stamp=now)

        stock_updates = apply_deltas(
            ctx.store_id,
            received,
            movement_type=MOVEMENT_RECEIPT,
            movement_key=key or uuid4().hex,
            ref_type="purchase_order",
            ref_id=po.server_id,
            reason=f"Receipt for PO {po.po_number or po.server_id}",
        )
        db.session.commit()
        return {"purchaseOrder": po.to_dict(), "stockUpdates": stock_updates, "replayed": False}

    result = run_with_retry(_op)
    if not result["replayed"]:
        publish_stock(ctx, result["stockUpdates"])
        ctx.after_write(PURCHASE_ORDER, ACTION_UPDATED, result["purchaseOrder"])
    return result


def cancel_purchase_order(ctx: SyncContext, server_id: str) -> dict:
    def _op():
        po = load_record(PURCHASE_ORDER, ctx.store_id, server_id)
        if po.status == PO_STATUS_RECEIVED:
            raise ValidationError("Cannot cancel a received purchase order")
        if po.status != PO_STATUS_CANCELLED:
            po.apply_patch({"status": PO_STATUS_CANCELLED})
            db.session.commit()
        return po.to_dict()

    result = run_with_retry(_op)
    ctx.after_write(PURCHASE_ORDER, ACTION_UPDATED, result)
    return result
