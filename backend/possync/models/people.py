from __future__ import annotations

from ..extensions import db
from .mixins import SyncedRecordMixin


class Customer(SyncedRecordMixin, db.Model):
    """
    Customer directory entry.

    total_orders / total_spent_cents are maintained by the sales service.
    Customers are soft-deleted.
    """
    __tablename__ = "customers"
    __table_args__ = (
        db.UniqueConstraint("store_id", "client_ref", name="uq_customers_store_client_ref"),
        db.Index("ix_customers_store_name", "store_id", "name"),
        {"sqlite_autoincrement": True},
    )

    WIRE_FIELDS = {
        "name": "name",
        "email": "email",
        "phone": "phone",
        "address": "address",
        "notes": "notes",
        "totalOrders": "total_orders",
        "totalSpentCents": "total_spent_cents",
        "isActive": "is_active",
        "status": "status",
    }

    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(64), nullable=True)
    address = db.Column(db.Text, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    total_orders = db.Column(db.Integer, nullable=False, default=0)
    total_spent_cents = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    status = db.Column(db.String(16), nullable=False, default="active")


class Employee(SyncedRecordMixin, db.Model):
    __tablename__ = "employees"
    __table_args__ = (
        db.UniqueConstraint("store_id", "client_ref", name="uq_employees_store_client_ref"),
        {"sqlite_autoincrement": True},
    )

    WIRE_FIELDS = {
        "name": "name",
        "email": "email",
        "phone": "phone",
        "role": "role",
        "hourlyRateCents": "hourly_rate_cents",
        "isActive": "is_active",
        "status": "status",
    }

    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(64), nullable=True)
    role = db.Column(db.String(32), nullable=False, default="cashier")
    hourly_rate_cents = db.Column(db.Integer, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    status = db.Column(db.String(16), nullable=False, default="active")


class ClockEvent(SyncedRecordMixin, db.Model):
    """Clock in/out punch. Append-only."""
    __tablename__ = "clock_events"
    __table_args__ = (
        db.UniqueConstraint("store_id", "client_ref", name="uq_clock_events_store_client_ref"),
        {"sqlite_autoincrement": True},
    )

    WIRE_FIELDS = {
        "employeeId": "employee_server_id",
        "eventType": "event_type",
        "occurredAt": "occurred_at",
        "notes": "notes",
    }

    employee_server_id = db.Column(db.String(32), nullable=False, index=True)
    event_type = db.Column(db.String(16), nullable=False)
    occurred_at = db.Column(db.DateTime, nullable=False)
    notes = db.Column(db.Text, nullable=True)
