from __future__ import annotations

from ..extensions import db
from .mixins import SyncedRecordMixin

PO_STATUS_PENDING = "pending"
PO_STATUS_ORDERED = "ordered"
PO_STATUS_PARTIAL = "partially_received"
PO_STATUS_RECEIVED = "received"
PO_STATUS_CANCELLED = "cancelled"


class PurchaseOrder(SyncedRecordMixin, db.Model):
    """
    Purchase order from a supplier.

    items is a JSON list of {productId, quantity, unitCostCents,
    receivedQuantity}; receivedQuantity and status are maintained by
    receipts.
    """
    __tablename__ = "purchase_orders"
    __table_args__ = (
        db.UniqueConstraint("store_id", "client_ref", name="uq_purchase_orders_store_client_ref"),
        {"sqlite_autoincrement": True},
    )

    WIRE_FIELDS = {
        "poNumber": "po_number",
        "supplier": "supplier",
        "items": "items",
        "totalCents": "total_cents",
        "status": "status",
        "expectedDate": "expected_date",
        "receivedAt": "received_at",
        "notes": "notes",
    }

    po_number = db.Column(db.String(64), nullable=True)
    supplier = db.Column(db.String(255), nullable=False)
    items = db.Column(db.JSON, nullable=False, default=list)
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(24), nullable=False, default=PO_STATUS_PENDING)
    expected_date = db.Column(db.DateTime, nullable=True)
    received_at = db.Column(db.DateTime, nullable=True)
    notes = db.Column(db.Text, nullable=True)
