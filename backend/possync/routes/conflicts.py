# Overview: Conflict inspection and explicit resolution routes.

from flask import Blueprint, request

from ..decorators import require_auth, sync_context
from ..errors import ValidationError
from ..services import record_service

conflicts_bp = Blueprint("conflicts", __name__, url_prefix="/api/conflicts")


@conflicts_bp.post("/resolve")
@require_auth
def resolve():
    """
    Apply a resolution strategy after a 409.

    Request body:
    {
        "entityType": str (entity or resource name),
        "entityId": str (serverId),
        "strategy": "acceptServer" | "acceptClient" | "merge",
        "clientData": object (the client's, already merged, record)
    }
    """
    body = request.get_json(silent=True) or {}
    missing = [name for name in ("entityType", "entityId", "strategy") if not body.get(name)]
    if missing:
        raise ValidationError(
            "entityType, entityId, and strategy are required",
            errors=[{"field": name, "message": f"{name} is required"} for name in missing],
        )

    spec = record_service.resolve_entity(body["entityType"])
    return record_service.resolve_conflict(
        sync_context(), spec, body["entityId"], body["strategy"], body.get("clientData")
    )


@conflicts_bp.get("/<entity_type>/<server_id>")
@require_auth
def conflict_state(entity_type: str, server_id: str):
    """Current server version of a record, for building a merge."""
    spec = record_service.resolve_entity(entity_type)
    return record_service.conflict_state(sync_context(), spec, server_id)
