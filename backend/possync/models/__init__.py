from .tenancy import Organization, Store, DeviceToken
from .mixins import SyncedRecordMixin
from .catalog import Product, StockMovement
from .sales import (
    CREDIT_STATUS_PAID,
    CREDIT_STATUS_PARTIAL,
    CREDIT_STATUS_PENDING,
    SALE_STATUS_COMPLETED,
    SALE_STATUS_VOIDED,
    Credit,
    Sale,
    sale_stock_deltas,
)
from .people import Customer, Employee, ClockEvent
from .purchasing import (
    PO_STATUS_CANCELLED,
    PO_STATUS_ORDERED,
    PO_STATUS_PARTIAL,
    PO_STATUS_PENDING,
    PO_STATUS_RECEIVED,
    PurchaseOrder,
)

# Entity name -> model, for the generic record routes
MODELS_BY_ENTITY = {
    "product": Product,
    "customer": Customer,
    "employee": Employee,
    "sale": Sale,
    "credit": Credit,
    "purchase_order": PurchaseOrder,
    "clock_event": ClockEvent,
    "stock_movement": StockMovement,
}

__all__ = [
    'Organization', 'Store', 'DeviceToken',
    'SyncedRecordMixin',
    'Product', 'StockMovement',
    'Sale', 'Credit', 'sale_stock_deltas',
    'SALE_STATUS_COMPLETED', 'SALE_STATUS_VOIDED',
    'CREDIT_STATUS_PENDING', 'CREDIT_STATUS_PARTIAL', 'CREDIT_STATUS_PAID',
    'Customer', 'Employee', 'ClockEvent',
    'PurchaseOrder',
    'PO_STATUS_PENDING', 'PO_STATUS_ORDERED', 'PO_STATUS_PARTIAL',
    'PO_STATUS_RECEIVED', 'PO_STATUS_CANCELLED',
    'MODELS_BY_ENTITY',
]
