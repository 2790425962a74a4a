# Overview: Flask API routes for customer credits.

from flask import request

from ..decorators import require_auth, sync_context
from ..services import sales_service
from .records import record_blueprint

credits_bp = record_blueprint("credits")


@credits_bp.post("/<server_id>/payment")
@require_auth
def record_payment(server_id: str):
    """
    Record a payment against a credit.

    Request body:
    {
        "amountCents": int (> 0; capped at the remaining balance)
    }
    """
    body = request.get_json(silent=True) or {}
    return sales_service.record_credit_payment(sync_context(), server_id, body)
