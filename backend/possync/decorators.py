# Overview: Request decorators for API routes; binds the tenant of every request.

from functools import wraps
from flask import current_app, g, request

from .errors import AuthenticationError
from .services import token_service
from .services.record_service import SyncContext
from .services.tenant_service import TenantAccessError, get_current_org_id, get_current_store_id


def _claimed_tenants(body) -> list:
    """tenantId values a request body claims, including bulk items and their data."""
    items = body if isinstance(body, list) else [body]
    if isinstance(body, dict) and isinstance(body.get("operations"), list):
        items = [body, *body["operations"]]
    claimed = []
    for item in items:
        if not isinstance(item, dict):
            continue
        for candidate in (item, item.get("data"), item.get("clientData")):
            if isinstance(candidate, dict) and candidate.get("tenantId") is not None:
                claimed.append(candidate["tenantId"])
    return claimed


def require_auth(f):
    """
    Require a device token and establish tenant context.

    MULTI-TENANT: Sets the following Flask g attributes:
    - g.device_token: The DeviceToken record
    - g.org_id: The organization of the token's store
    - g.store_id: The store (tenant) every read and write is scoped to

    SECURITY: Raises AuthenticationError (401) if:
    - No Authorization header
    - Unknown or revoked token
    - Store or organization deactivated

    Raises TenantAccessError (403) if the body names a tenantId other than
    the token's store.

    Requests are counted against the token's rate limit window (429).
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")

        if not auth_header or not auth_header.startswith("Bearer "):
            raise AuthenticationError("Authentication required")

        token = auth_header.split(" ", 1)[1]
        context = token_service.validate_token(token)

        if not context:
            raise AuthenticationError("Invalid or revoked token")

        limiter = current_app.extensions.get("rate_limiter")
        if limiter is not None:
            limiter.hit(f"token:{context.token.id}")

        g.device_token = context.token
        g.org_id = context.org_id
        g.store_id = context.store_id

        if request.is_json:
            for claimed in _claimed_tenants(request.get_json(silent=True)):
                if str(claimed) != str(context.store_id):
                    current_app.logger.warning(
                        "CROSS_TENANT_WRITE_DENIED store_id=%s claimed=%s path=%s",
                        context.store_id, claimed, request.path,
                    )
                    raise TenantAccessError("tenantId does not match the device's store")

        return f(*args, **kwargs)

    return decorated_function


def sync_context() -> SyncContext:
    """Tenant context plus the app-wide cache and change feed for service calls."""
    return SyncContext(
        store_id=get_current_store_id(),
        org_id=get_current_org_id(),
        cache=current_app.extensions.get("tenant_cache"),
        feed=current_app.extensions.get("change_feed"),
        strict=current_app.config.get("STRICT_SYNC_VERSION", False),
        pull_sales_limit=current_app.config.get("PULL_SALES_LIMIT", 1000),
    )


def idempotency_key(body: dict | None = None, field: str = "clientRef") -> str | None:
    """Idempotency-Key header, falling back to a body field."""
    key = request.headers.get("Idempotency-Key")
    if key:
        return key.strip()
    if isinstance(body, dict) and body.get(field):
        return str(body[field])
    return None
