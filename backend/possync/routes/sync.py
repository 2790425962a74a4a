# Overview: Pull endpoint used by clients to catch up after being offline.

from flask import Blueprint, request

from ..decorators import require_auth, sync_context
from ..services import record_service

sync_bp = Blueprint("sync", __name__, url_prefix="/api/sync")


@sync_bp.get("/pull")
@require_auth
def pull():
    """
    Every record of the caller's store changed at or after ``since``.

    Query params:
    - since: ISO-8601 timestamp (optional); use the previous response's syncedAt
    """
    return record_service.pull_changes(sync_context(), request.args.get("since"))
