# Overview: Client-side sync mediator; local commit first, then the server write.

"""
SyncEngine

Every mutation is committed to the LocalStore before any network call, so
an acknowledged create/update/delete survives a crash. The engine then
tries to push the row:

    success          server identity and version written back, needsSync cleared
    transport / 429  row stays queued, {"synced": False}
    409              conflict report stored on the row, ConflictError raised
    other 4xx        failure report stored on the row, error raised
    local store      row stays queued unless out of space or schema too new

drain() replays every queued row of the tenant through a DrainQueue
(prerequisites first), retrying transient failures with backoff. Rows with
a conflict or failure report are skipped until they are resolved or edited.

Stock never changes through update(): update_stock() records a local
stock_movement row and submits it as PATCH /products/{serverId}/stock.
Sales and movements carry the idempotency key "{deviceId}:{entity}:{localId}"
so a retried submission is applied once. Local product quantities are only
overwritten from the server's stock report.
"""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import replace
from typing import Any, Iterator, Optional

from .. import conflict_resolver
from ..entities import PULL_KEYS, get_entity, is_local_reference, map_references, strip_server_managed
from ..errors import (
    AuthorizationError,
    ConflictError,
    LocalStoreError,
    NotFoundError,
    SchemaUpgradeError,
    StorageQuotaError,
    SyncCancelled,
    ValidationError,
)
from ..time_utils import to_utc_z, utcnow
from .config import SyncClientConfig
from .drain import DrainQueue, RowKey
from .local_store import LocalRecord, LocalStore, payload_from_record
from .retry import RETRYABLE, call_with_retry
from .transport import RemoteClient

logger = logging.getLogger(__name__)

# Application errors that end the retry for a row and leave a failure report
PERMANENT_ERRORS = (ValidationError, AuthorizationError, NotFoundError)

# Local store failures that end the drain; any other LocalStoreError leaves the row queued
FATAL_STORE_ERRORS = (StorageQuotaError, SchemaUpgradeError)

SYNCED = "synced"
PENDING = "pending"
DEFERRED = "deferred"


class _Unpromoted(Exception):
    """A localId reference whose target has no serverId yet."""


def _new_stats() -> dict[str, Any]:
    return {
        "total": 0,
        "synced": 0,
        "conflicts": 0,
        "failed": 0,
        "deferred": 0,
        "pending": 0,
        "skipped": 0,
        "cancelled": False,
        "failures": [],
    }


def failure_report(exc: Exception) -> dict:
    report = {
        "kind": getattr(exc, "kind", "internal"),
        "statusCode": getattr(exc, "status_code", None),
        "error": str(exc),
        "at": to_utc_z(utcnow()),
    }
    if isinstance(exc, ValidationError):
        if exc.errors:
            report["errors"] = exc.errors
        report.update(exc.extra)
    return report


class SyncEngine:
    def __init__(self, store: LocalStore, remote: RemoteClient, config: Optional[SyncClientConfig] = None):
        self.store = store
        self.remote = remote
        self.config = config or SyncClientConfig()
        self.tenant_id = self.config.tenant_id
        self.device_id = store.device_id

        self._cancel_event = threading.Event()
        self._drain_lock = threading.Lock()
        self._locks_guard = threading.Lock()
        self._row_locks: dict[RowKey, list] = {}  # key -> [RLock, holders]
        self._queue: Optional[DrainQueue] = None

    # Helpers -------------------------------------------------------------

    @contextmanager
    def _row_lock(self, key: RowKey) -> Iterator[None]:
        """
        Serializes operations on one local row; the second caller waits for
        the first. The entry is dropped once nobody holds or waits on it.
        """
        with self._locks_guard:
            entry = self._row_locks.setdefault(key, [threading.RLock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._row_locks[key]

    def idempotency_key(self, entity: str, local_id: int) -> str:
        return f"{self.device_id}:{entity}:{local_id}"

    def _call(self, func, attempts: int, description: str):
        return call_with_retry(
            func,
            max_attempts=attempts,
            base=self.config.backoff_base,
            cap=self.config.backoff_max,
            jitter=self.config.backoff_jitter,
            wait=self._cancel_event.wait,
            description=description,
        )

    def _require(self, entity: str, local_id: int) -> LocalRecord:
        row = self.store.get_by_local_id(entity, local_id)
        if row is None:
            raise NotFoundError(f"Local {entity} #{local_id} not found", resource=entity)
        return row

    def _is_synced(self, key: RowKey) -> bool:
        row = self.store.get_by_local_id(*key)
        return row is not None and not row.needs_sync

    def _to_server_references(self, entity: str, payload: dict) -> dict:
        def to_server(target_entity: str, value: Any) -> Any:
            if not is_local_reference(value):
                return value
            target = self.store.get_by_local_id(target_entity, value)
            if target is None:
                raise ValidationError(
                    f"Invalid {target_entity} reference",
                    errors=[{"field": target_entity, "message": f"Local {target_entity} #{value} no longer exists"}],
                )
            if target.server_id is None:
                raise _Unpromoted(f"{target_entity}#{value}")
            return target.server_id

        return map_references(get_entity(entity), payload, to_server)

    # Public operations ---------------------------------------------------

    def create(self, entity: str, payload: dict, tenant_id: Optional[int] = None) -> dict:
        """Commit a new row locally, then try to promote it. Returns {localId, synced}."""
        spec = get_entity(entity)
        if spec.name == "stock_movement":
            raise ValidationError("Stock movements are recorded through update_stock()")
        tenant = tenant_id if tenant_id is not None else self.tenant_id
        if not tenant:
            raise ValidationError("tenant_id is required", errors=[{"field": "tenantId", "message": "tenantId is required"}])
        if self.tenant_id and tenant != self.tenant_id:
            raise AuthorizationError(f"This device syncs tenant {self.tenant_id}, not {tenant}")

        row = self.store.put(LocalRecord(entity=spec.name, tenant_id=tenant, payload=payload_from_record(payload or {})))
        logger.debug("Created local %s#%s", row.entity, row.local_id)
        with self._row_lock(row.key):
            self._flush([row], attempts=1, target=row.key)
            return {"localId": row.local_id, "synced": self._is_synced(row.key)}

    def update(self, entity: str, local_id: int, patch: dict) -> dict:
        """Commit a patch locally, then PUT it with the row's syncVersion. Returns {synced}."""
        spec = get_entity(entity)
        patch = payload_from_record(patch or {})
        if spec.name == "product" and "quantity" in patch:
            raise ValidationError(
                "Product quantity cannot be updated directly",
                errors=[{"field": "quantity", "message": "Use update_stock() to change stock"}],
            )

        key = (spec.name, local_id)
        with self._row_lock(key):
            row = self._require(spec.name, local_id)
            if row.tombstone:
                raise ValidationError(f"Local {spec.name} #{local_id} has been deleted")

            pending = None if row.server_id is None else {**(row.pending_patch or {}), **patch}
            self.store.put(replace(
                row,
                payload={**row.payload, **patch},
                pending_patch=pending,
                needs_sync=True,
                updated_at=utcnow(),
                conflict=None,
                failure=None,
            ))
            self._flush([self._require(*key)], attempts=1, target=key)
            return {"synced": self._is_synced(key)}

    def delete(self, entity: str, local_id: int) -> dict:
        """
        Unpromoted rows are removed at once. Promoted rows are tombstoned and
        removed after the server confirms the delete.
        """
        spec = get_entity(entity)
        key = (spec.name, local_id)
        with self._row_lock(key):
            row = self._require(spec.name, local_id)
            if row.server_id is None:
                self.store.delete_by_local_id(spec.name, local_id)
                return {"synced": True}
            if not spec.deletable:
                raise ValidationError(f"{spec.name.replace('_', ' ').capitalize()} records cannot be deleted")

            self._flush([self.store.mark_tombstone(spec.name, local_id)], attempts=1, target=key)
            return {"synced": self.store.get_by_local_id(spec.name, local_id) is None}

    def update_stock(
        self,
        product_local_id: int,
        delta: int,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> dict:
        """
        Record a stock adjustment as a queued stock_movement row and submit it.

        The local product quantity is not touched until the server reports the
        new quantity; use projected_quantity() for display in the meantime.
        """
        if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
            raise ValidationError(
                "Invalid stock adjustment",
                errors=[{"field": "adjustment", "message": "adjustment must be a non-zero integer"}],
            )
        product = self._require("product", product_local_id)
        if product.tombstone:
            raise ValidationError(f"Local product #{product_local_id} has been deleted")

        movement = self.store.put(LocalRecord(
            entity="stock_movement",
            tenant_id=product.tenant_id,
            payload={
                "productId": product.local_id,
                "adjustment": delta,
                "reason": reason,
                "notes": notes,
            },
        ))
        with self._row_lock(movement.key):
            self._flush([movement], attempts=1, target=movement.key)
            return {"localId": movement.local_id, "synced": self._is_synced(movement.key)}

    def projected_quantity(self, product_local_id: int) -> int:
        """Local quantity plus queued stock changes (movements and unsent sales). Display only."""
        product = self._require("product", product_local_id)
        refs = {product.local_id}
        if product.server_id:
            refs.add(product.server_id)

        quantity = int(product.payload.get("quantity") or 0)
        for row in self.store.all_needing_sync(product.tenant_id):
            if row.blocked:
                continue
            if row.entity == "stock_movement" and row.payload.get("productId") in refs:
                quantity += int(row.payload.get("adjustment") or 0)
            elif row.entity == "sale" and row.server_id is None:
                for item in row.payload.get("items") or []:
                    if item.get("productId") in refs:
                        quantity -= int(item.get("quantity") or 0)
        return max(0, quantity)

    def drain(self) -> dict:
        """Replay every queued row of the tenant. Returns the drain stats."""
        if not self.tenant_id:
            raise ValidationError("tenant_id is required to drain", errors=[{"field": "tenantId", "message": "tenantId is required"}])
        with self._drain_lock:
            self._cancel_event.clear()
            rows = self.store.all_needing_sync(self.tenant_id)
            stats = self._flush(rows, attempts=self.config.max_attempts, track=True)
            logger.info(
                "Drain finished: %d synced, %d pending, %d deferred, %d conflicts, %d failed, %d skipped%s",
                stats["synced"],
                stats["pending"],
                stats["deferred"],
                stats["conflicts"],
                stats["failed"],
                stats["skipped"],
                " (cancelled)" if stats["cancelled"] else "",
            )
            return stats

    def cancel(self) -> None:
        """Abandon the running drain at its next boundary; unreached rows stay queued."""
        self._cancel_event.set()
        queue = self._queue
        if queue is not None:
            queue.cancel()

    def pull(self) -> dict:
        """
        Fetch server changes since the last pull; rows with local changes are
        kept. Follows the server's cursor while it reports more sales.
        """
        counts = {"inserted": 0, "updated": 0, "skipped": 0}
        since = self.store.get_meta("last_pull_at")
        while True:
            body = self._call(lambda: self.remote.pull(since), self.config.max_attempts, "pull")
            for entity, collection in PULL_KEYS.items():
                for record in body.get(collection) or []:
                    outcome = self.store.upsert_server_record(entity, record.get("tenantId") or self.tenant_id, record)
                    counts[outcome] += 1

            cursor = body.get("syncedAt")
            self.store.set_meta("last_pull_at", cursor)
            if not body.get("hasMore") or cursor == since:
                return {**counts, "syncedAt": cursor}
            logger.debug("Pull continues from %s", cursor)
            since = cursor

    def resolve_conflict(self, entity: str, local_id: int, strategy: str, merged: Optional[dict] = None) -> dict:
        """
        Settle a conflicted row.

        acceptServer   rewrite the row from the server record in the report
        acceptClient   overwrite the server with the local payload
        merge          overwrite the server with ``merged`` (already combined by the caller)
        """
        try:
            strategy = conflict_resolver.normalize_strategy(strategy)
        except ValueError as exc:
            raise ValidationError(str(exc), errors=[{"field": "strategy", "message": str(exc)}])

        spec = get_entity(entity)
        key = (spec.name, local_id)
        with self._row_lock(key):
            row = self._require(spec.name, local_id)
            if row.conflict is None:
                raise ValidationError(f"Local {spec.name} #{local_id} has no conflict to resolve")
            server_record = row.conflict.get("serverVersion") or {}

            if strategy == conflict_resolver.ACCEPT_SERVER:
                self.store.apply_server_record(spec.name, local_id, {"serverId": row.server_id, **server_record})
                return {"synced": True, "strategy": strategy}

            if row.tombstone:
                if strategy == conflict_resolver.MERGE:
                    raise ValidationError("A deleted record cannot be merged")
                # keep the delete, now against the server's current version
                self.store.put(replace(row, conflict=None, sync_version=server_record.get("syncVersion")))
                self._flush([self._require(*key)], attempts=1, target=key)
                return {"synced": self.store.get_by_local_id(*key) is None, "strategy": strategy}

            if strategy == conflict_resolver.MERGE:
                if not merged:
                    raise ValidationError("merge requires the merged record")
                client_data = payload_from_record(merged)
            else:
                client_data = row.payload
            client_data = self._to_server_references(spec.name, strip_server_managed(spec, client_data))

            result = self._call(
                lambda: self.remote.resolve_conflict(spec.name, row.server_id, strategy, client_data),
                1,
                f"resolve {spec.name}#{local_id}",
            )
            self.store.apply_server_record(spec.name, local_id, result["data"])
            return {"synced": True, "strategy": strategy}

    # Push ----------------------------------------------------------------

    def _flush(
        self,
        rows: list[LocalRecord],
        *,
        attempts: int,
        target: Optional[RowKey] = None,
        track: bool = False,
    ) -> dict:
        """
        Push ``rows`` and their unpromoted prerequisites in drain order.

        Errors of ``target`` are raised to the caller; all other outcomes are
        only counted.
        """
        stats = _new_stats()
        queue = DrainQueue.plan(rows, self.store.get_by_local_id)
        if track:
            self._queue = queue
        stats["total"] = len(queue)
        unpromoted: set[RowKey] = set()

        try:
            for key in queue:
                row = self.store.get_by_local_id(*key)
                if row is None or not row.needs_sync:
                    continue
                if row.blocked:
                    stats["skipped"] += 1
                    unpromoted.add(key)
                    continue
                if any(dep in unpromoted for dep in queue.prerequisites.get(key, ())):
                    stats["deferred"] += 1
                    unpromoted.add(key)
                    continue

                try:
                    outcome = self._sync_row(key, attempts)
                except ConflictError as exc:
                    stats["conflicts"] += 1
                    unpromoted.add(key)
                    stats["failures"].append({"entity": key[0], "localId": key[1], **failure_report(exc)})
                    if key == target:
                        raise
                    continue
                except PERMANENT_ERRORS as exc:
                    stats["failed"] += 1
                    unpromoted.add(key)
                    stats["failures"].append({"entity": key[0], "localId": key[1], **failure_report(exc)})
                    if key == target:
                        raise
                    continue

                stats[outcome] += 1
                if outcome != SYNCED:
                    unpromoted.add(key)
        except SyncCancelled:
            queue.cancel()
        finally:
            if track:
                self._queue = None

        stats["cancelled"] = queue.cancelled
        return stats

    def _sync_row(self, key: RowKey, attempts: int) -> str:
        with self._row_lock(key):
            row = self.store.get_by_local_id(*key)
            if row is None or not row.needs_sync:
                return SYNCED
            try:
                self._send(row, attempts)
            except _Unpromoted as exc:
                logger.debug("%s#%s waits for %s", row.entity, row.local_id, exc)
                return DEFERRED
            except RETRYABLE as exc:
                logger.info("%s#%s left queued: %s", row.entity, row.local_id, exc)
                return PENDING
            except FATAL_STORE_ERRORS:
                raise
            except LocalStoreError as exc:
                logger.warning("%s#%s left queued after a local store error: %s", row.entity, row.local_id, exc)
                return PENDING
            except ConflictError as exc:
                logger.warning("%s#%s conflicts with the server version", row.entity, row.local_id)
                self.store.mark_conflict(row.entity, row.local_id, exc.report)
                raise
            except PERMANENT_ERRORS as exc:
                logger.warning("%s#%s rejected: %s", row.entity, row.local_id, exc)
                self.store.mark_failure(row.entity, row.local_id, failure_report(exc))
                raise
            return SYNCED

    def _send(self, row: LocalRecord, attempts: int) -> None:
        description = f"{row.entity}#{row.local_id}"
        if row.tombstone:
            self._send_delete(row, attempts, description)
        elif row.entity == "stock_movement":
            self._send_stock(row, attempts, description)
        elif row.server_id is None:
            self._send_create(row, attempts, description)
        else:
            self._send_update(row, attempts, description)

    def _send_create(self, row: LocalRecord, attempts: int, description: str) -> None:
        spec = get_entity(row.entity)
        payload = dict(row.payload)
        if spec.name != "product":
            payload = strip_server_managed(spec, payload)
        body = self._to_server_references(spec.name, payload)
        key = self.idempotency_key(spec.name, row.local_id)

        record = self._call(lambda: self.remote.create(spec.name, body, key), attempts, f"create {description}")
        self.store.apply_server_record(spec.name, row.local_id, record)
        self._apply_stock_updates(record.get("stockUpdates"))

    def _send_update(self, row: LocalRecord, attempts: int, description: str) -> None:
        spec = get_entity(row.entity)
        patch = row.pending_patch if row.pending_patch is not None else row.payload
        body = self._to_server_references(spec.name, strip_server_managed(spec, patch))
        body["syncVersion"] = row.sync_version

        record = self._call(
            lambda: self.remote.update(spec.name, row.server_id, body), attempts, f"update {description}"
        )
        self.store.apply_server_record(spec.name, row.local_id, record)

    def _send_delete(self, row: LocalRecord, attempts: int, description: str) -> None:
        try:
            self._call(
                lambda: self.remote.delete(row.entity, row.server_id, row.sync_version),
                attempts,
                f"delete {description}",
            )
        except NotFoundError:
            logger.info("%s was already gone on the server", description)
        self.store.delete_by_local_id(row.entity, row.local_id)

    def _send_stock(self, row: LocalRecord, attempts: int, description: str) -> None:
        body = self._to_server_references(row.entity, row.payload)
        request = {k: body.get(k) for k in ("adjustment", "reason", "notes") if body.get(k) is not None}
        key = self.idempotency_key(row.entity, row.local_id)

        result = self._call(
            lambda: self.remote.adjust_stock(body["productId"], request, key), attempts, f"stock {description}"
        )
        self.store.apply_server_record(row.entity, row.local_id, result["movement"])
        self._apply_stock_updates(result.get("stock"))

    def _apply_stock_updates(self, entries: Optional[list]) -> None:
        """
        Overwrite local quantities from the server's stock report. The local
        syncVersion only moves forward when it still equals the version the
        server started from.
        """
        for entry in entries or []:
            local = self.store.get_by_server_id("product", entry["productId"])
            if local is None:
                continue
            with self._row_lock(local.key):
                local = self.store.get_by_local_id("product", local.local_id)
                if local is None:
                    continue
                version = local.sync_version
                previous = entry.get("previousSyncVersion")
                if previous is not None and local.sync_version == previous:
                    version = entry.get("syncVersion")
                self.store.put(replace(
                    local,
                    payload={**local.payload, "quantity": entry["quantity"]},
                    sync_version=version,
                ))
