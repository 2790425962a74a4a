# Overview: Error taxonomy shared by the API and the sync client.

"""
Every failure the sync core can produce falls into one of these kinds:

    validation      400  never retried
    authentication  401  never retried without user intervention
    authorization   403  never retried
    not-found       404  not retried
    conflict        409  retried only after a resolution strategy is chosen
    rate-limit      429  retried after the retryAfter hint
    transport       ---  network failure, timeout, 5xx; retried with backoff
    internal        500  fatal; surfaced and logged

The server renders APIError subclasses as the JSON error envelope
``{"error": str, "statusCode": int, ...}``. The client raises the same
classes when it decodes an error response, so callers handle one set of
exceptions regardless of which side detected the problem.
"""
from __future__ import annotations

from typing import Any


class APIError(Exception):
    """Base error carrying an HTTP status and an error kind."""

    status_code = 500
    kind = "internal"

    def __init__(self, message: str | None = None, status_code: int | None = None):
        super().__init__(message or "Internal server error")
        if status_code is not None:
            self.status_code = status_code

    @property
    def message(self) -> str:
        return str(self)

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, "statusCode": self.status_code}


class ValidationError(APIError):
    """400-level input problem, optionally with field-level detail."""

    status_code = 400
    kind = "validation"

    def __init__(
        self,
        error: str = "Validation failed",
        errors: list[dict] | None = None,
        status_code: int | None = None,
        **extra: Any,
    ):
        # extra keys (e.g. a remediation "message") are rendered into the envelope
        super().__init__(error, status_code)
        self.errors = list(errors or [])
        self.extra = extra

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        if self.errors:
            body["errors"] = self.errors
        body.update(self.extra)
        return body


class AuthenticationError(APIError):
    status_code = 401
    kind = "authentication"

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class AuthorizationError(APIError):
    status_code = 403
    kind = "authorization"

    def __init__(self, message: str = "You do not have permission to perform this action"):
        super().__init__(message)


class NotFoundError(APIError):
    status_code = 404
    kind = "not-found"

    def __init__(self, message: str = "Resource not found", resource: str | None = None):
        super().__init__(message)
        self.resource = resource


class ConflictError(APIError):
    """
    409 version mismatch.

    ``report`` is the conflict block (conflict, message, serverVersion,
    clientVersion, resolution) and is rendered at the top level of the
    error envelope.
    """

    status_code = 409
    kind = "conflict"

    def __init__(self, message: str = "Data conflict detected", report: dict | None = None):
        super().__init__(message)
        self.report = report or {}

    @property
    def server_version(self) -> dict:
        return self.report.get("serverVersion") or {}

    @property
    def client_version(self) -> dict:
        return self.report.get("clientVersion") or {}

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body.update(self.report)
        body["error"] = self.message
        return body


class RateLimitError(APIError):
    status_code = 429
    kind = "rate-limit"

    def __init__(self, message: str = "Too many requests", retry_after: float = 60):
        super().__init__(message)
        self.retry_after = retry_after

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["retryAfter"] = self.retry_after
        return body


class InternalError(APIError):
    status_code = 500
    kind = "internal"


# Client-side kinds ----------------------------------------------------------


class TransportError(APIError):
    """Network failure, timeout or 5xx response."""

    status_code = 503
    kind = "transport"


class SyncCancelled(Exception):
    """Raised when the caller cancelled an in-flight operation or drain."""


class LocalStoreError(Exception):
    """Retryable failure of the embedded store (e.g. database locked)."""


class StorageQuotaError(LocalStoreError):
    """The embedded store is out of space. Fatal."""


class SchemaUpgradeError(LocalStoreError):
    """The embedded store schema cannot be opened or upgraded. Fatal."""


class DependencyCycleError(Exception):
    """Queued rows reference each other in a cycle. Fatal for the drain."""

    def __init__(self, path: list[tuple[str, int]]):
        chain = " -> ".join(f"{entity}#{local_id}" for entity, local_id in path)
        super().__init__(f"Dependency cycle between queued rows: {chain}")
        self.path = path

_BY_STATUS = {
    400: ValidationError,
    401: AuthenticationError,
    403: AuthorizationError,
    404: NotFoundError,
    409: ConflictError,
    422: ValidationError,
    429: RateLimitError,
}


def error_from_response(status_code: int, body: Any) -> APIError:
    """Rebuild the taxonomy error for a decoded error envelope."""
    body = body if isinstance(body, dict) else {}
    message = body.get("message") or body.get("error") or f"HTTP {status_code}"

    if status_code >= 500:
        return TransportError(message, status_code=status_code)

    cls = _BY_STATUS.get(status_code)
    if cls is ValidationError:
        extra = {k: v for k, v in body.items() if k not in {"error", "statusCode", "errors", "message"}}
        return ValidationError(message, errors=body.get("errors"), status_code=status_code, **extra)
    if cls is ConflictError:
        report = {k: v for k, v in body.items() if k not in {"error", "statusCode"}}
        return ConflictError(message, report=report)
    if cls is RateLimitError:
        return RateLimitError(message, retry_after=float(body.get("retryAfter") or 1))
    if cls is NotFoundError:
        return NotFoundError(message)
    if cls is not None:
        return cls(message)
    if status_code >= 400:
        # any other client error is permanent for the request
        return ValidationError(message, status_code=status_code)
    return APIError(message, status_code=status_code)
