# Overview: Pure version comparison, conflict reports and resolution strategies.

"""
Stateless helpers used by both the API guard and the sync client.

Records are plain wire dicts (camelCase keys). The resolver never combines
fields: it only decides whether a proposal may be applied and, when a
conflict is resolved, which payload wins and what the next syncVersion is.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from .time_utils import to_utc_z, utcnow

ACCEPTED = "accepted"
CONFLICT = "conflict-report"
REJECTED = "rejected-validation"

ACCEPT_SERVER = "acceptServer"
ACCEPT_CLIENT = "acceptClient"
MERGE = "merge"

STRATEGY_ALIASES = {
    "server": ACCEPT_SERVER,
    "acceptServer": ACCEPT_SERVER,
    "accept_server": ACCEPT_SERVER,
    "client": ACCEPT_CLIENT,
    "acceptClient": ACCEPT_CLIENT,
    "accept_client": ACCEPT_CLIENT,
    "merge": MERGE,
}

CONFLICT_MESSAGE = "Conflict detected: This record was modified by another user"

RESOLUTION_HINTS = {
    ACCEPT_SERVER: "Use the server version and discard your changes",
    ACCEPT_CLIENT: "Override with your changes",
    MERGE: "Review and manually merge the changes",
}

# Envelope fields owned by the server; a resolved client payload never carries its own copy.
SERVER_OWNED = ("serverId", "syncVersion", "lastSyncedAt", "tenantId")


@dataclass
class Evaluation:
    outcome: str
    report: dict | None = None
    errors: list[dict] = field(default_factory=list)

    @property
    def accepted(self) -> bool:
        return self.outcome == ACCEPTED


def has_conflict(server_version: int | None, client_version: int | None) -> bool:
    """
    A write conflicts when it names a base version that is not the current one.

    A write that omits its version is never a conflict.
    """
    if client_version is None:
        return False
    return int(server_version or 0) != int(client_version)


def conflict_report(server_record: dict, client_proposal: dict) -> dict:
    return {
        "conflict": True,
        "kind": "version-mismatch",
        "message": CONFLICT_MESSAGE,
        "serverVersion": dict(server_record),
        "clientVersion": dict(client_proposal),
        "resolution": dict(RESOLUTION_HINTS),
    }


def evaluate(
    server_record: dict,
    client_proposal: dict,
    *,
    strict: bool = False,
    validator: Callable[[dict], list[dict]] | None = None,
) -> Evaluation:
    """
    Decide what to do with ``client_proposal`` against ``server_record``.

    Validation runs first so a malformed write is reported as such even when
    its version is stale. ``strict`` rejects writes that omit syncVersion.
    """
    errors: list[dict] = []
    if validator is not None:
        errors.extend(validator(client_proposal) or [])

    client_version = client_proposal.get("syncVersion")
    if client_version is None and strict:
        errors.append({"field": "syncVersion", "message": "syncVersion is required"})
    elif client_version is not None and (
        isinstance(client_version, bool) or not isinstance(client_version, int) or client_version < 1
    ):
        errors.append({"field": "syncVersion", "message": "syncVersion must be a positive integer"})

    if errors:
        return Evaluation(REJECTED, errors=errors)

    if has_conflict(server_record.get("syncVersion"), client_version):
        return Evaluation(CONFLICT, report=conflict_report(server_record, client_proposal))

    return Evaluation(ACCEPTED)


def normalize_strategy(strategy: str) -> str:
    try:
        return STRATEGY_ALIASES[strategy]
    except KeyError:
        raise ValueError(
            f"Invalid resolution strategy: {strategy!r} (expected one of acceptServer, acceptClient, merge)"
        ) from None


def resolve(
    strategy: str,
    server_record: dict,
    client_data: dict | None,
    *,
    now: datetime | None = None,
) -> dict:
    """
    Apply a resolution strategy and return the winning record.

    acceptServer  the server record, unchanged
    acceptClient  client payload at serverVersion + 1
    merge         caller-merged payload at serverVersion + 1, updatedAt stamped
    """
    strategy = normalize_strategy(strategy)

    if strategy == ACCEPT_SERVER:
        return dict(server_record)

    stamp = to_utc_z(now or utcnow())
    payload = {k: v for k, v in (client_data or {}).items() if k not in SERVER_OWNED}
    resolved = {**server_record, **payload}
    resolved["syncVersion"] = int(server_record.get("syncVersion") or 0) + 1
    resolved["lastSyncedAt"] = stamp
    if strategy == MERGE:
        resolved["updatedAt"] = stamp
    return resolved


def changed_fields(server_record: dict, client_data: dict) -> dict[str, tuple[Any, Any]]:
    """Field-by-field differences, for presenting a conflict to the user."""
    diff = {}
    for key, value in client_data.items():
        if key in SERVER_OWNED or key == "updatedAt":
            continue
        if server_record.get(key) != value:
            diff[key] = (server_record.get(key), value)
    return diff
