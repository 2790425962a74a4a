# Overview: Flask API routes for products; generic record routes plus the stock endpoint.

# backend/possync/routes/products.py
"""
Product routes.

MULTI-TENANT: All product operations are scoped to the caller's store
(g.store_id, set by @require_auth).

Product.quantity is never written through PUT; stock only changes through
PATCH /api/products/<serverId>/stock, sales, purchase receipts and transfers.
"""
from flask import request

from ..decorators import idempotency_key, require_auth, sync_context
from ..services import stock_service
from .records import record_blueprint

products_bp = record_blueprint("products")


@products_bp.patch("/<server_id>/stock")
@require_auth
def adjust_stock(server_id: str):
    """
    Apply a stock change.

    Request body:
    {
        "adjustment": int (signed delta)   -- or --
        "quantity": int (absolute count),
        "reason": str (optional),
        "notes": str (optional)
    }

    Headers:
        Idempotency-Key: repeated keys return the first result

    Returns:
        200: {product, movement, stock: [{productId, quantity, syncVersion, previousSyncVersion}], replayed}
        400: Invalid request
        404: Product not found
        422: Idempotency key reused for a different change
    """
    body = request.get_json(silent=True) or {}
    return stock_service.adjust_stock(sync_context(), server_id, body, idempotency_key(body))
