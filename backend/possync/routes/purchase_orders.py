# Overview: Flask API routes for purchase orders; receipts move stock.

from flask import request

from ..decorators import idempotency_key, require_auth, sync_context
from ..services import purchasing_service
from .records import record_blueprint

purchase_orders_bp = record_blueprint("purchase-orders")


@purchase_orders_bp.post("/<server_id>/receive")
@require_auth
def receive(server_id: str):
    """
    Receive goods against a purchase order.

    Request body:
    {
        "items": [{"productId": str, "quantity": int}]  (optional; omit to receive the rest)
    }

    Headers:
        Idempotency-Key: a repeated receipt key does not receive twice

    Returns:
        200: {purchaseOrder, stockUpdates, replayed}
        400: Invalid quantities, cancelled or fully received order
        404: Purchase order or product not found
    """
    body = request.get_json(silent=True) or {}
    return purchasing_service.receive_purchase_order(
        sync_context(), server_id, body, idempotency_key(body, field="receiptKey")
    )


@purchase_orders_bp.post("/<server_id>/cancel")
@require_auth
def cancel(server_id: str):
    return purchasing_service.cancel_purchase_order(sync_context(), server_id)
