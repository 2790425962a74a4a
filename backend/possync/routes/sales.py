# Overview: Flask API routes for sales; creation with stock effect, void and stats.

# backend/possync/routes/sales.py
"""
Sale routes.

POST /api/sales is the generic create route; the record service hands
sales to the sales service, which applies the stock deltas in the same
transaction. Product references must be serverIds: a numeric (local)
productId is rejected with 400 naming the item index.
"""
from flask import request

from ..decorators import require_auth, sync_context
from ..services import sales_service
from .records import record_blueprint

sales_bp = record_blueprint("sales")


@sales_bp.get("/stats")
@require_auth
def sales_stats():
    """Completed-sale counts and revenue (today / week / month), cached per store."""
    return sales_service.sales_stats(sync_context())


@sales_bp.post("/<server_id>/void")
@require_auth
def void_sale(server_id: str):
    """
    Void a sale and restore its stock.

    Request body:
    {
        "reason": str (optional)
    }

    Returns:
        200: Voided sale with stockUpdates
        400: Sale already voided
        404: Sale not found
    """
    body = request.get_json(silent=True) or {}
    return sales_service.void_sale(sync_context(), server_id, reason=body.get("reason"))
