# Overview: Generic CRUD + bulk routes shared by every synchronized resource.

# backend/possync/routes/records.py
"""
One blueprint per resource, all built by record_blueprint():

    GET    /api/<resource>              list (cached per tenant + params)
    GET    /api/<resource>/<serverId>   one record (cached)
    POST   /api/<resource>              create; 201, or 200 + replayed on a repeated key
    PUT    /api/<resource>/<serverId>   version-guarded update; 409 on mismatch
    DELETE /api/<resource>/<serverId>   hard or soft delete per entity
    POST   /api/<resource>/bulk         [{action, id?, data}] with per-item outcome
    DELETE /api/<resource>/bulk         {ids}

MULTI-TENANT: every handler runs under @require_auth and passes g.store_id
down; records of other stores are reported as not found.
"""
from flask import Blueprint, request

from ..decorators import idempotency_key, require_auth, sync_context
from ..entities import BY_RESOURCE
from ..errors import ValidationError
from ..services import record_service


def _json_body() -> dict:
    body = request.get_json(silent=True)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValidationError("Invalid JSON payload")
    return body


def record_blueprint(resource: str) -> Blueprint:
    spec = BY_RESOURCE[resource]
    bp = Blueprint(resource.replace("-", "_"), __name__, url_prefix=f"/api/{resource}")

    @bp.get("")
    @require_auth
    def list_records():
        """
        Query params: active, status, category, search, since, sort (prefix
        "-" for descending), page, per_page, and reference filters such as
        customerId.
        """
        return record_service.list_records(sync_context(), spec, request.args.to_dict())

    @bp.get("/<server_id>")
    @require_auth
    def get_record(server_id: str):
        return record_service.get_record(sync_context(), spec, server_id)

    @bp.post("")
    @require_auth
    def create_record():
        payload = _json_body()
        record, created = record_service.create_record(
            sync_context(), spec, payload, client_ref=idempotency_key(payload)
        )
        if created:
            return record, 201
        return {**record, "replayed": True}, 200

    @bp.put("/<server_id>")
    @require_auth
    def update_record(server_id: str):
        return record_service.update_record(sync_context(), spec, server_id, _json_body())

    @bp.delete("/<server_id>")
    @require_auth
    def delete_record(server_id: str):
        sync_version = request.args.get("syncVersion", type=int)
        if sync_version is None:
            sync_version = _json_body().get("syncVersion")
        return record_service.delete_record(sync_context(), spec, server_id, sync_version=sync_version)

    @bp.post("/bulk")
    @require_auth
    def bulk_apply():
        body = request.get_json(silent=True)
        operations = body.get("operations") if isinstance(body, dict) else body
        return record_service.bulk_apply(sync_context(), spec, operations)

    @bp.delete("/bulk")
    @require_auth
    def bulk_delete():
        return record_service.bulk_delete(sync_context(), spec, _json_body().get("ids"))

    return bp


customers_bp = record_blueprint("customers")
employees_bp = record_blueprint("employees")
clock_events_bp = record_blueprint("clock-events")
stock_movements_bp = record_blueprint("stock-movements")
