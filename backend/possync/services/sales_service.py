# Overview: Sale lifecycle (create, void, stats) and credit payments.

"""
Sales Service

A sale carries its own stock effect: creating it applies one delta per
product in the same transaction as the sale row, keyed by the sale's
idempotency key. A repeated create with that key returns the first sale and
touches no stock; a repeated key with a different delta vector is rejected.
"""
from __future__ import annotations

import logging
from datetime import timedelta

from ..entities import ENTITIES, is_local_reference
from ..errors import ValidationError
from ..extensions import db
from ..models import (
    CREDIT_STATUS_PAID,
    CREDIT_STATUS_PARTIAL,
    CREDIT_STATUS_PENDING,
    SALE_STATUS_COMPLETED,
    SALE_STATUS_VOIDED,
    Credit,
    Sale,
    StockMovement,
    sale_stock_deltas,
)
from ..models.mixins import new_server_id
from ..time_utils import to_utc_z, utcnow
from ..validation import POLICIES, validate_payload
from .concurrency import run_with_retry
from .events import ACTION_CREATED, ACTION_UPDATED
from .record_service import SyncContext, check_references, find_by_client_ref, load_record
from .stock_service import (
    MOVEMENT_SALE,
    MOVEMENT_VOID,
    apply_deltas,
    current_stock_entries,
    idempotency_key_reuse,
    publish_stock,
)
from .tenant_service import scoped_query

logger = logging.getLogger(__name__)

SALE = ENTITIES["sale"]
CREDIT = ENTITIES["credit"]
CUSTOMER = ENTITIES["customer"]

STATS_AGGREGATE = "stats"
CREDIT_TERM_DAYS = 30


def check_sale_references(payload: dict) -> None:
    """Reject sales whose product or customer references are local ids."""
    for index, item in enumerate(payload.get("items") or []):
        product_id = item.get("productId") if isinstance(item, dict) else None
        if is_local_reference(product_id):
            raise ValidationError(
                "Invalid product reference",
                message=(
                    f"items[{index}].productId is a local id. Products must be synced to server "
                    "before creating sales. Please ensure products are synced and use serverId "
                    "instead of local id."
                ),
                itemIndex=index,
                productId=product_id,
            )

    if is_local_reference(payload.get("customerId")):
        raise ValidationError(
            "Invalid customer reference",
            message="Customer must be synced to server. Please use serverId instead of local id.",
            customerId=payload["customerId"],
        )


def _stock_vector(store_id: int, sale: Sale) -> dict[str, int]:
    """Net delta per product that was applied for this sale."""
    vector: dict[str, int] = {}
    movements = (
        scoped_query(StockMovement, store_id)
        .filter(StockMovement.movement_key == sale.client_ref, StockMovement.movement_type == MOVEMENT_SALE)
        .all()
    )
    for movement in movements:
        vector[movement.product_server_id] = vector.get(movement.product_server_id, 0) + movement.delta
    return vector


def _nonzero(deltas: dict[str, int]) -> dict[str, int]:
    return {k: v for k, v in deltas.items() if v}


def create_sale(ctx: SyncContext, payload: dict, client_ref: str | None = None) -> tuple[dict, bool]:
    """
    POST /sales; returns (sale, created).

    The returned sale carries ``stockUpdates``; on a replay it also carries
    ``replayed: true`` and the stock entries have no previousSyncVersion.
    """
    payload = dict(payload or {})
    check_sale_references(payload)

    if is_local_reference(payload.get("employeeId")):
        logger.warning("Dropping local employee reference %r on sale", payload["employeeId"])
        payload["employeeId"] = None

    client_ref = client_ref or payload.get("clientRef")
    credit_due_date = payload.pop("creditDueDate", None)
    policy = POLICIES[SALE.name]

    def _op():
        patch = validate_payload(model=Sale, payload=payload, policy=policy, partial=False)
        deltas = sale_stock_deltas(payload["items"])

        existing = find_by_client_ref(SALE, ctx.store_id, client_ref)
        if existing is not None:
            if _nonzero(_stock_vector(ctx.store_id, existing)) != _nonzero(deltas):
                raise idempotency_key_reuse(client_ref)
            result = existing.to_dict()
            result["stockUpdates"] = current_stock_entries(ctx.store_id, deltas)
            result["replayed"] = True
            return result, False, None, None

        check_references(SALE, ctx.store_id, payload)

        now = utcnow()
        server_id = new_server_id()
        # movements of keyless sales are keyed by the sale itself
        movement_key = client_ref or server_id
        sale = Sale(store_id=ctx.store_id, server_id=server_id, client_ref=movement_key, created_at=now)
        sale.apply_patch(patch, stamp=now)
        sale.status = SALE_STATUS_COMPLETED
        db.session.add(sale)
        db.session.flush()

        stock_updates = apply_deltas(
            ctx.store_id,
            deltas,
            movement_type=MOVEMENT_SALE,
            movement_key=movement_key,
            ref_type="sale",
            ref_id=sale.server_id,
            reason=f"Sale {sale.receipt_number or sale.server_id}",
        )
        customer_dict = None
        credit_dict = None
        if sale.customer_server_id:
            customer = load_record(CUSTOMER, ctx.store_id, sale.customer_server_id)
            customer.apply_patch({
                "total_orders": (customer.total_orders or 0) + 1,
                "total_spent_cents": (customer.total_spent_cents or 0) + (sale.total_cents or 0),
            }, stamp=now)
            if sale.payment_method == "credit":
                credit_dict = _open_credit_for_sale(ctx, sale, credit_due_date, now)
            db.session.flush()
            customer_dict = customer.to_dict()

        db.session.commit()
        result = sale.to_dict()
        result["stockUpdates"] = stock_updates
        return result, True, customer_dict, credit_dict

    result, created, customer_dict, credit_dict = run_with_retry(_op)
    if not created:
        return result, False

    publish_stock(ctx, result["stockUpdates"])
    ctx.after_write(SALE, ACTION_CREATED, result, also=("products", "customers"))
    if customer_dict is not None:
        ctx.after_write(CUSTOMER, ACTION_UPDATED, customer_dict)
    if credit_dict is not None:
        ctx.after_write(CREDIT, ACTION_CREATED, credit_dict)
    return result, created


def _open_credit_for_sale(ctx: SyncContext, sale: Sale, due: str | None, now) -> dict:
    due_date = None
    if due:
        due_date = validate_payload(
            model=Credit,
            payload={"dueDate": due},
            policy=POLICIES[CREDIT.name],
            partial=True,
        ).get("due_date")
    credit = Credit(
        store_id=ctx.store_id,
        customer_server_id=sale.customer_server_id,
        sale_server_id=sale.server_id,
        amount_cents=sale.total_cents or 0,
        amount_paid_cents=0,
        reason=f"Sale {sale.receipt_number or sale.server_id}",
        due_date=due_date or now + timedelta(days=CREDIT_TERM_DAYS),
        status=CREDIT_STATUS_PENDING,
        created_at=now,
        updated_at=now,
        last_synced_at=now,
    )
    db.session.add(credit)
    db.session.flush()
    return credit.to_dict()


def void_sale(ctx: SyncContext, server_id: str, reason: str | None = None) -> dict:
    """Mark a sale voided and give its stock back."""

    def _op():
        sale = load_record(SALE, ctx.store_id, server_id)
        if sale.status == SALE_STATUS_VOIDED:
            raise ValidationError("Sale already voided")

        now = utcnow()
        restore = {product_id: -delta for product_id, delta in sale.stock_deltas().items()}
        stock_updates = apply_deltas(
            ctx.store_id,
            restore,
            movement_type=MOVEMENT_VOID,
            movement_key=f"void:{sale.server_id}",
            ref_type="sale",
            ref_id=sale.server_id,
            reason=f"Void of sale {sale.receipt_number or sale.server_id}",
        )
        sale.apply_patch({"status": SALE_STATUS_VOIDED, "voided_at": now, "void_reason": reason}, stamp=now)
        db.session.commit()
        result = sale.to_dict()
        result["stockUpdates"] = stock_updates
        return result

    result = run_with_retry(_op)
    publish_stock(ctx, result["stockUpdates"])
    ctx.after_write(SALE, ACTION_UPDATED, result, also=("products",))
    return result


def _period_totals(store_id: int, start) -> dict:
    sales = (
        scoped_query(Sale, store_id)
        .filter(Sale.created_at >= start, Sale.status == SALE_STATUS_COMPLETED)
        .all()
    )
    return {"count": len(sales), "revenueCents": sum(s.total_cents or 0 for s in sales)}


def sales_stats(ctx: SyncContext) -> dict:
    """Completed-sale counts and revenue for today, the last 7 days and this month."""

    def loader():
        now = utcnow()
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return {
            "today": _period_totals(ctx.store_id, today),
            "week": _period_totals(ctx.store_id, today - timedelta(days=7)),
            "month": _period_totals(ctx.store_id, today.replace(day=1)),
            "generatedAt": to_utc_z(now),
        }

    if ctx.cache is None:
        return loader()
    return ctx.cache.get_or_load(ctx.store_id, SALE.resource, loader, aggregate=STATS_AGGREGATE)


def record_credit_payment(ctx: SyncContext, server_id: str, body: dict) -> dict:
    """
    POST /credits/{serverId}/payment.

    The payment is capped at the outstanding balance; the credit becomes
    partial or paid.
    """
    amount = (body or {}).get("amountCents")
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError(
            "Valid payment amount is required",
            errors=[{"field": "amountCents", "message": "amountCents must be a positive integer"}],
        )

    def _op():
        credit = load_record(CREDIT, ctx.store_id, server_id)
        payment = min(amount, credit.balance_cents)
        paid = (credit.amount_paid_cents or 0) + payment
        now = utcnow()
        patch = {"amount_paid_cents": paid}
        if paid >= credit.amount_cents:
            patch.update(status=CREDIT_STATUS_PAID, paid_at=now)
        else:
            patch["status"] = CREDIT_STATUS_PARTIAL
        credit.apply_patch(patch, stamp=now)
        db.session.commit()
        return {
            "message": "Payment recorded",
            "credit": credit.to_dict(),
            "paymentAmountCents": payment,
            "remainingBalanceCents": credit.balance_cents,
        }

    result = run_with_retry(_op)
    ctx.after_write(CREDIT, ACTION_UPDATED, result["credit"])
    return result
