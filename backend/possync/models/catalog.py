from __future__ import annotations

from ..extensions import db
from .mixins import SyncedRecordMixin


class Product(SyncedRecordMixin, db.Model):
    """
    Product master data.

    quantity is owned by the stock sub-protocol: it is set once on create and
    afterwards only changes through apply_stock_delta (sales, voids, receipts,
    adjustments, transfers).
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("store_id", "sku", name="uq_products_store_sku"),
        db.UniqueConstraint("store_id", "client_ref", name="uq_products_store_client_ref"),
        db.Index("ix_products_store_name", "store_id", "name"),
        db.Index("ix_products_store_active", "store_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    WIRE_FIELDS = {
        "name": "name",
        "sku": "sku",
        "barcode": "barcode",
        "category": "category",
        "description": "description",
        "priceCents": "price_cents",
        "costCents": "cost_cents",
        "quantity": "quantity",
        "minStock": "min_stock",
        "unit": "unit",
        "isActive": "is_active",
        "status": "status",
    }

    sku = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    barcode = db.Column(db.String(64), nullable=True, index=True)
    category = db.Column(db.String(120), nullable=True)
    description = db.Column(db.Text, nullable=True)

    # Authoritative storage in cents
    price_cents = db.Column(db.Integer, nullable=False, default=0)
    cost_cents = db.Column(db.Integer, nullable=True)

    quantity = db.Column(db.Integer, nullable=False, default=0)
    min_stock = db.Column(db.Integer, nullable=False, default=0)
    unit = db.Column(db.String(32), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    status = db.Column(db.String(16), nullable=False, default="active")

    store = db.relationship("Store", backref=db.backref("products", lazy=True))


class StockMovement(SyncedRecordMixin, db.Model):
    """
    One applied stock delta.

    movement_key groups the movements written by one logical operation: the
    sale, receipt, adjustment or transfer key. A transfer writes one
    movement in each store under the same key.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.UniqueConstraint("store_id", "client_ref", name="uq_stock_movements_store_client_ref"),
        db.Index("ix_stock_movements_store_key", "store_id", "movement_key"),
        {"sqlite_autoincrement": True},
    )

    WIRE_FIELDS = {
        "productId": "product_server_id",
        "type": "movement_type",
        "delta": "delta",
        "reason": "reason",
        "previousQuantity": "previous_quantity",
        "newQuantity": "new_quantity",
        "movementKey": "movement_key",
        "refType": "ref_type",
        "refId": "ref_id",
        "notes": "notes",
    }

    product_server_id = db.Column(db.String(32), nullable=False, index=True)

    delta = db.Column(db.Integer, nullable=False)
    movement_type = db.Column(db.String(32), nullable=False)
    reason = db.Column(db.String(255), nullable=True)
    previous_quantity = db.Column(db.Integer, nullable=False)
    new_quantity = db.Column(db.Integer, nullable=False)

    movement_key = db.Column(db.String(160), nullable=True)
    ref_type = db.Column(db.String(32), nullable=True)
    ref_id = db.Column(db.String(32), nullable=True)
    notes = db.Column(db.Text, nullable=True)
