# Overview: HTTP client for the possync API used by the sync engine.

"""
RemoteClient wraps httpx.Client with the bearer token and maps every
failure onto the shared error taxonomy:

    connect error, read timeout, other httpx transport failures -> TransportError
    error responses                                              -> error_from_response()

A timeout after the request was sent is indistinguishable from a lost
request, so callers retry with the same Idempotency-Key.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from ..entities import get_entity
from ..errors import TransportError, error_from_response

logger = logging.getLogger(__name__)


class RemoteClient:
    """Thin, synchronous client for /api."""

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.client = httpx.Client(base_url=self.base_url, timeout=timeout, transport=transport)

    @classmethod
    def from_config(cls, config, transport: Optional[httpx.BaseTransport] = None) -> "RemoteClient":
        return cls(config.base_url, config.token, timeout=config.timeout, transport=transport)

    def _headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[Dict] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            response = self.client.request(
                method,
                path,
                json=json,
                params=params,
                headers=self._headers(idempotency_key),
            )
        except httpx.TimeoutException as exc:
            raise TransportError(f"{method} {path} timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransportError(f"{method} {path} failed: {exc}") from exc

        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = {"error": response.text}

        if response.status_code >= 400:
            logger.debug("%s %s -> %d %s", method, path, response.status_code, body)
            raise error_from_response(response.status_code, body)
        return body

    @staticmethod
    def _resource(entity: str) -> str:
        return get_entity(entity).resource

    # Records -------------------------------------------------------------

    def create(self, entity: str, payload: dict, idempotency_key: Optional[str] = None) -> dict:
        return self.request("POST", f"/api/{self._resource(entity)}", json=payload, idempotency_key=idempotency_key)

    def update(self, entity: str, server_id: str, payload: dict) -> dict:
        return self.request("PUT", f"/api/{self._resource(entity)}/{server_id}", json=payload)

    def delete(self, entity: str, server_id: str, sync_version: Optional[int] = None) -> dict:
        params = {"syncVersion": sync_version} if sync_version is not None else None
        return self.request("DELETE", f"/api/{self._resource(entity)}/{server_id}", params=params)

    def get(self, entity: str, server_id: str) -> dict:
        return self.request("GET", f"/api/{self._resource(entity)}/{server_id}")

    def list(self, entity: str, params: Optional[Dict] = None) -> dict:
        return self.request("GET", f"/api/{self._resource(entity)}", params=params)

    # Stock ---------------------------------------------------------------

    def adjust_stock(self, server_id: str, body: dict, idempotency_key: str) -> dict:
        return self.request("PATCH", f"/api/products/{server_id}/stock", json=body, idempotency_key=idempotency_key)

    def void_sale(self, server_id: str, reason: Optional[str] = None) -> dict:
        return self.request("POST", f"/api/sales/{server_id}/void", json={"reason": reason})

    # Sync ----------------------------------------------------------------

    def pull(self, since: Optional[str] = None) -> dict:
        return self.request("GET", "/api/sync/pull", params={"since": since} if since else None)

    def resolve_conflict(self, entity: str, server_id: str, strategy: str, client_data: Optional[dict] = None) -> dict:
        return self.request(
            "POST",
            "/api/conflicts/resolve",
            json={"entityType": entity, "entityId": server_id, "strategy": strategy, "clientData": client_data},
        )

    def close(self) -> None:
        self.client.close()
