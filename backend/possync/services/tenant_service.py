"""
Multi-Tenant Service: Tenant Validation and Scoping Helpers

Every synchronized record belongs to exactly one store (the tenant). Routes
bind the caller's store from its device token, and every query issued by
the record services filters on that store again, so isolation does not
depend on the route layer alone.

SECURITY INVARIANTS:
1. Every authenticated request has g.store_id and g.org_id set
2. Store IDs from client input must be validated against g.org_id
3. Queries touching store-owned data filter on store_id
4. Cross-tenant access attempts are logged and reported as "not found"
"""

import logging

from flask import g, has_request_context, request

from ..errors import AuthorizationError
from ..extensions import db
from ..models import Store

logger = logging.getLogger(__name__)


class TenantAccessError(AuthorizationError):
    """Raised when cross-tenant access is attempted."""


def get_current_org_id() -> int:
    """
    Get current tenant's org_id from Flask g context.

    Raises TenantAccessError if org_id not set. This should never happen
    after @require_auth, but is a safety check.
    """
    if getattr(g, "org_id", None) is None:
        raise TenantAccessError("Tenant context not established")
    return g.org_id


def get_current_store_id() -> int:
    if getattr(g, "store_id", None) is None:
        raise TenantAccessError("Tenant context not established")
    return g.store_id


def require_store_in_org(store_id: int, org_id: int) -> Store:
    """
    Validate that a store belongs to the specified organization.

    Raises TenantAccessError if the store doesn't exist, belongs to a
    different org, or is inactive.
    """
    store = db.session.query(Store).filter_by(id=store_id).first()

    if not store:
        _log_cross_tenant_attempt(f"Store {store_id} not found", org_id=org_id)
        raise TenantAccessError("Store not found")

    if store.org_id != org_id:
        _log_cross_tenant_attempt(
            f"Store {store_id} belongs to org {store.org_id}, not {org_id}",
            org_id=org_id,
            attempted_store_id=store_id,
        )
        raise TenantAccessError("Store not found")  # Don't reveal it exists in another org

    if not store.is_active:
        raise TenantAccessError("Store is not active")

    return store


def require_stores_in_org(store_ids: list[int], org_id: int) -> list[Store]:
    """
    Validate multiple stores belong to the specified organization.

    Batch validation for operations involving multiple stores (transfers).
    Returned in the order requested.
    """
    if not store_ids:
        return []

    stores = db.session.query(Store).filter(Store.id.in_(store_ids)).all()
    by_id = {s.id: s for s in stores}

    missing_ids = set(store_ids) - set(by_id)
    if missing_ids:
        _log_cross_tenant_attempt(f"Stores not found: {sorted(missing_ids)}", org_id=org_id)
        raise TenantAccessError("One or more stores not found")

    for store in stores:
        if store.org_id != org_id:
            _log_cross_tenant_attempt(
                f"Store {store.id} belongs to org {store.org_id}, not {org_id}",
                org_id=org_id,
                attempted_store_id=store.id,
            )
            raise TenantAccessError("One or more stores not found")
        if not store.is_active:
            raise TenantAccessError("One or more stores are not active")

    return [by_id[i] for i in store_ids]


def get_org_stores(org_id: int, active_only: bool = True) -> list[Store]:
    query = db.session.query(Store).filter_by(org_id=org_id)
    if active_only:
        query = query.filter_by(is_active=True)
    return query.order_by(Store.name).all()


def scoped_query(model, store_id: int):
    """
    Base query for a store-owned model, restricted to one tenant.

    Usage:
        products = scoped_query(Product, store_id).filter_by(is_active=True).all()
    """
    if store_id is None:
        raise TenantAccessError("Tenant context not established")
    return db.session.query(model).filter(model.store_id == store_id)


def _log_cross_tenant_attempt(
    reason: str,
    org_id: int | None = None,
    attempted_store_id: int | None = None
) -> None:
    logger.warning(
        "CROSS_TENANT_ACCESS_DENIED org_id=%s attempted_store_id=%s path=%s reason=%s",
        org_id,
        attempted_store_id,
        request.path if has_request_context() else None,
        reason,
    )
