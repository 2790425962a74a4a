# Overview: Tenant-partitioned read-through cache with single-flight loads and targeted invalidation.

"""
TenantCache holds the serialized bodies of read endpoints.

Keys are tuples that always start with the tenant:
    (tenant_id, resource, "list", param_hash)
    (tenant_id, resource, "record", server_id)
    (tenant_id, resource, "aggregate", name)

Write paths call invalidate() for the resource they touched; that drops the
resource's list keys, the written record's key and every aggregate
registered for the resource. A per-(tenant, resource) generation counter
is bumped on each invalidation, so a load that started before the write
never stores its (now stale) result.

The cache is process-wide but only reachable through app.extensions and
is handed to service functions explicitly.
"""
from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)

KIND_LIST = "list"
KIND_RECORD = "record"
KIND_AGGREGATE = "aggregate"

TTL_SHORT = "short"
TTL_MEDIUM = "medium"
TTL_LONG = "long"

# Lists carrying stock or money move quickly; directory data less so.
DEFAULT_TTL_CLASSES = {
    "products": TTL_SHORT,
    "sales": TTL_SHORT,
    "stock-movements": TTL_SHORT,
    "clock-events": TTL_SHORT,
    "credits": TTL_MEDIUM,
    "customers": TTL_MEDIUM,
    "employees": TTL_MEDIUM,
    "purchase-orders": TTL_MEDIUM,
    "stores": TTL_LONG,
}


def param_hash(params: dict | None) -> str:
    """Stable hash of request parameters; parameter order does not matter."""
    canonical = json.dumps(params or {}, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha1(canonical.encode("utf-8")).hexdigest()[:16]


@dataclass
class _Entry:
    body: str
    expires_at: float


class _Flight:
    """One in-progress load; followers wait on it instead of loading again."""

    def __init__(self) -> None:
        self.done = threading.Event()
        self.value: Any = None
        self.error: BaseException | None = None


class TenantCache:
    def __init__(
        self,
        *,
        ttl_short: int = 60,
        ttl_medium: int = 300,
        ttl_long: int = 3600,
        ttl_classes: dict[str, str] | None = None,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ttls = {TTL_SHORT: ttl_short, TTL_MEDIUM: ttl_medium, TTL_LONG: ttl_long}
        self._ttl_classes = dict(DEFAULT_TTL_CLASSES)
        self._ttl_classes.update(ttl_classes or {})
        self.enabled = enabled
        self._clock = clock

        self._lock = threading.Lock()
        self._entries: dict[tuple, _Entry] = {}
        self._flights: dict[tuple, _Flight] = {}
        self._generations: dict[tuple, int] = defaultdict(int)
        self._aggregates: dict[str, set[str]] = defaultdict(set)
        self._counters = {"hits": 0, "misses": 0, "loads": 0, "invalidations": 0, "coalesced": 0}

    @classmethod
    def from_config(cls, config) -> "TenantCache":
        return cls(
            ttl_short=config.get("CACHE_TTL_SHORT", 60),
            ttl_medium=config.get("CACHE_TTL_MEDIUM", 300),
            ttl_long=config.get("CACHE_TTL_LONG", 3600),
            enabled=config.get("CACHE_ENABLED", True),
        )

    # Keys ----------------------------------------------------------------

    @staticmethod
    def make_key(
        tenant_id: int,
        resource: str,
        *,
        params: dict | None = None,
        record_id: str | None = None,
        aggregate: str | None = None,
    ) -> tuple:
        if tenant_id is None:
            raise ValueError("Cache keys require a tenant")
        if aggregate is not None:
            return (tenant_id, resource, KIND_AGGREGATE, aggregate)
        if record_id is not None:
            return (tenant_id, resource, KIND_RECORD, str(record_id))
        return (tenant_id, resource, KIND_LIST, param_hash(params))

    def ttl_for(self, resource: str) -> int:
        return self._ttls[self._ttl_classes.get(resource, TTL_SHORT)]

    def register_aggregate(self, resource: str, name: str) -> None:
        """Declare an aggregate key that every write to ``resource`` must drop."""
        with self._lock:
            self._aggregates[resource].add(name)

    # Reads ---------------------------------------------------------------

    def get_or_load(
        self,
        tenant_id: int,
        resource: str,
        loader: Callable[[], Any],
        *,
        params: dict | None = None,
        record_id: str | None = None,
        aggregate: str | None = None,
        ttl: int | None = None,
    ) -> Any:
        """
        Return the cached value for the key, loading it on a miss.

        Only one caller per key runs ``loader``; concurrent callers for the
        same key wait for that result. ``loader`` must itself filter on
        ``tenant_id``. Loader errors propagate to every waiting caller and
        nothing is cached.
        """
        if not self.enabled:
            return loader()

        key = self.make_key(tenant_id, resource, params=params, record_id=record_id, aggregate=aggregate)
        gen_key = (tenant_id, resource)

        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.expires_at > self._clock():
                self._counters["hits"] += 1
                return json.loads(entry.body)
            if entry is not None:
                del self._entries[key]

            self._counters["misses"] += 1
            flight = self._flights.get(key)
            leader = flight is None
            if leader:
                flight = _Flight()
                self._flights[key] = flight
                generation = self._generations[gen_key]
            else:
                self._counters["coalesced"] += 1

        if not leader:
            flight.done.wait()
            if flight.error is not None:
                raise flight.error
            return json.loads(flight.value)

        try:
            value = loader()
            body = json.dumps(value, separators=(",", ":"), default=str)
        except BaseException as exc:
            flight.error = exc
            with self._lock:
                self._flights.pop(key, None)
            flight.done.set()
            raise

        flight.value = body
        with self._lock:
            self._counters["loads"] += 1
            if self._generations[gen_key] == generation:
                self._entries[key] = _Entry(body, self._clock() + (ttl if ttl is not None else self.ttl_for(resource)))
            self._flights.pop(key, None)
        flight.done.set()
        return json.loads(body)

    # Writes --------------------------------------------------------------

    def invalidate(self, tenant_id: int, resource: str, server_id: str | None = None) -> int:
        """
        Drop the collection keys of ``resource``, the record key of
        ``server_id`` and the resource's registered aggregates, for one
        tenant. Returns the number of entries removed.
        """
        with self._lock:
            self._generations[(tenant_id, resource)] += 1
            self._counters["invalidations"] += 1
            aggregates = self._aggregates.get(resource, set())
            doomed = [
                key for key in self._entries
                if key[0] == tenant_id and key[1] == resource and (
                    key[2] == KIND_LIST
                    or (key[2] == KIND_RECORD and server_id is not None and key[3] == str(server_id))
                    or (key[2] == KIND_AGGREGATE and key[3] in aggregates)
                )
            ]
            for key in doomed:
                del self._entries[key]

        if doomed:
            logger.debug("Invalidated %d cache entries for tenant=%s resource=%s", len(doomed), tenant_id, resource)
        return len(doomed)

    def clear(self, tenant_id: int | None = None) -> int:
        with self._lock:
            if tenant_id is None:
                removed = len(self._entries)
                self._entries.clear()
                for gen_key in list(self._generations):
                    self._generations[gen_key] += 1
                return removed

            doomed = [key for key in self._entries if key[0] == tenant_id]
            for key in doomed:
                del self._entries[key]
            for gen_key in list(self._generations):
                if gen_key[0] == tenant_id:
                    self._generations[gen_key] += 1
            return len(doomed)

    def contains(self, tenant_id: int, resource: str, **key_parts) -> bool:
        key = self.make_key(tenant_id, resource, **key_parts)
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and entry.expires_at > self._clock()

    def stats(self) -> dict:
        with self._lock:
            per_tenant: dict[str, int] = defaultdict(int)
            for key in self._entries:
                per_tenant[str(key[0])] += 1
            lookups = self._counters["hits"] + self._counters["misses"]
            return {
                "enabled": self.enabled,
                "entries": len(self._entries),
                "entriesByTenant": dict(per_tenant),
                "hitRate": round(self._counters["hits"] / lookups, 4) if lookups else 0.0,
                **self._counters,
            }
