from __future__ import annotations

from ..extensions import db
from .mixins import SyncedRecordMixin

SALE_STATUS_COMPLETED = "completed"
SALE_STATUS_VOIDED = "voided"


class Sale(SyncedRecordMixin, db.Model):
    """
    Completed sale with its line items.

    items is a JSON list of {productId, name, quantity, unitPriceCents,
    lineTotalCents}; productId is always a product serverId. The stock
    effect of a sale is recorded as StockMovements keyed by client_ref.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.UniqueConstraint("store_id", "client_ref", name="uq_sales_store_client_ref"),
        db.Index("ix_sales_store_created", "store_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    WIRE_FIELDS = {
        "receiptNumber": "receipt_number",
        "customerId": "customer_server_id",
        "employeeId": "employee_server_id",
        "items": "items",
        "subtotalCents": "subtotal_cents",
        "taxCents": "tax_cents",
        "discountCents": "discount_cents",
        "totalCents": "total_cents",
        "paymentMethod": "payment_method",
        "paymentStatus": "payment_status",
        "status": "status",
        "notes": "notes",
        "voidedAt": "voided_at",
        "voidReason": "void_reason",
    }

    receipt_number = db.Column(db.String(64), nullable=True)
    customer_server_id = db.Column(db.String(32), nullable=True, index=True)
    employee_server_id = db.Column(db.String(32), nullable=True, index=True)

    items = db.Column(db.JSON, nullable=False, default=list)

    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    payment_method = db.Column(db.String(32), nullable=False, default="cash")
    payment_status = db.Column(db.String(32), nullable=False, default="paid")
    status = db.Column(db.String(16), nullable=False, default=SALE_STATUS_COMPLETED)
    notes = db.Column(db.Text, nullable=True)

    voided_at = db.Column(db.DateTime, nullable=True)
    void_reason = db.Column(db.Text, nullable=True)

    def stock_deltas(self) -> dict[str, int]:
        return sale_stock_deltas(self.items or [])


def sale_stock_deltas(items: list[dict]) -> dict[str, int]:
    """Net stock delta per product serverId for a list of sale items."""
    deltas: dict[str, int] = {}
    for item in items:
        product_id = item["productId"]
        deltas[product_id] = deltas.get(product_id, 0) - int(item["quantity"])
    return deltas


CREDIT_STATUS_PENDING = "pending"
CREDIT_STATUS_PARTIAL = "partial"
CREDIT_STATUS_PAID = "paid"


class Credit(SyncedRecordMixin, db.Model):
    """
    Amount a customer owes the store, usually from a sale paid on credit.

    amount_paid_cents and paid_at are maintained by recorded payments.
    """
    __tablename__ = "credits"
    __table_args__ = (
        db.UniqueConstraint("store_id", "client_ref", name="uq_credits_store_client_ref"),
        {"sqlite_autoincrement": True},
    )

    WIRE_FIELDS = {
        "customerId": "customer_server_id",
        "saleId": "sale_server_id",
        "amountCents": "amount_cents",
        "amountPaidCents": "amount_paid_cents",
        "reason": "reason",
        "dueDate": "due_date",
        "paidAt": "paid_at",
        "isActive": "is_active",
        "status": "status",
    }

    customer_server_id = db.Column(db.String(32), nullable=False, index=True)
    sale_server_id = db.Column(db.String(32), nullable=True, index=True)
    amount_cents = db.Column(db.Integer, nullable=False)
    amount_paid_cents = db.Column(db.Integer, nullable=False, default=0)
    reason = db.Column(db.String(255), nullable=True)
    due_date = db.Column(db.DateTime, nullable=True)
    paid_at = db.Column(db.DateTime, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    status = db.Column(db.String(16), nullable=False, default=CREDIT_STATUS_PENDING)

    @property
    def balance_cents(self) -> int:
        return max(0, (self.amount_cents or 0) - (self.amount_paid_cents or 0))

    def payload(self) -> dict:
        out = super().payload()
        out["balanceCents"] = self.balance_cents
        return out
