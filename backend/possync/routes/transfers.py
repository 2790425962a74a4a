# backend/possync/routes/transfers.py
"""
Inter-store transfer route.
"""
from flask import Blueprint, request

from ..decorators import idempotency_key, require_auth, sync_context
from ..services import stock_service


transfers_bp = Blueprint("transfers", __name__, url_prefix="/api/transfer")


@transfers_bp.post("")
@require_auth
def create_transfer():
    """
    Move stock of one product between two stores of the caller's organization.

    Request body:
    {
        "fromStoreId": int (optional, defaults to the caller's store),
        "toStoreId": int,
        "productId": str (serverId in the source store),
        "quantity": int (> 0),
        "reason": str (optional),
        "notes": str (optional)
    }

    Headers:
        Idempotency-Key: shared by both movements; a repeated key returns the prior result

    Returns:
        201: Transfer applied
        200: Replayed transfer
        400: Invalid request or insufficient stock
        403: A store outside the caller's organization
        404: Product not found
    """
    body = request.get_json(silent=True) or {}
    result = stock_service.transfer_stock(sync_context(), body, idempotency_key(body, field="transferKey"))
    return result, 200 if result["replayed"] else 201
