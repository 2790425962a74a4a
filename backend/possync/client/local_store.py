# Overview: Durable per-tenant record store embedded in the client (SQLite via SQLAlchemy Core).

"""
LocalStore

One table per entity (``local_<entity>``), each row carrying the sync
envelope plus the entity payload as JSON:

    local_id        client handle, auto-increment, never leaves the client
    server_id       null until the first successful promotion
    tenant_id       owning store, set at creation, never updated
    sync_version    last version confirmed by the server
    needs_sync      local state is ahead of the server
    tombstone       deleted locally, server delete not yet confirmed
    pending_patch   fields changed since the last accepted write
    conflict        conflict report of the last rejected write
    failure         permanent failure report (validation, not found, ...)

Every write runs in its own transaction and is committed before the call
returns. The store-level ``schema_version`` lives in ``store_meta``; opening
an older store adds the missing columns in place, opening a newer one is
refused.
"""
from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Iterator

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    inspect,
    select,
)
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool

from ..entities import ENTITIES, get_entity
from ..errors import LocalStoreError, SchemaUpgradeError, StorageQuotaError
from ..time_utils import parse_iso_datetime, utcnow

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

# Columns added after version 1, applied in order when an older store is opened
ADDITIVE_COLUMNS: dict[int, tuple[tuple[str, Any], ...]] = {
    2: (("failure", JSON()),),
}

# Keys of a server record that belong to the envelope, not the payload
RECORD_ENVELOPE = frozenset({
    "localId", "serverId", "tenantId", "syncVersion", "lastSyncedAt", "createdAt",
    "updatedAt", "needsSync", "tombstone", "replayed", "stockUpdates",
})


@dataclass
class LocalRecord:
    entity: str
    tenant_id: int
    payload: dict = field(default_factory=dict)
    local_id: int | None = None
    server_id: str | None = None
    sync_version: int | None = None
    last_synced_at: datetime | None = None
    updated_at: datetime = field(default_factory=utcnow)
    needs_sync: bool = True
    tombstone: bool = False
    pending_patch: dict | None = None
    conflict: dict | None = None
    failure: dict | None = None

    @property
    def key(self) -> tuple[str, int | None]:
        return (self.entity, self.local_id)

    @property
    def blocked(self) -> bool:
        """Waiting for a resolution or an edit before it is retried."""
        return self.conflict is not None or self.failure is not None

    def to_record(self) -> dict:
        return {
            "localId": self.local_id,
            "serverId": self.server_id,
            "tenantId": self.tenant_id,
            "syncVersion": self.sync_version,
            "needsSync": self.needs_sync,
            "tombstone": self.tombstone,
            **self.payload,
        }


def payload_from_record(record: dict) -> dict:
    return {k: v for k, v in record.items() if k not in RECORD_ENVELOPE}


def _entity_table(metadata: MetaData, entity: str) -> Table:
    return Table(
        f"local_{entity}",
        metadata,
        Column("local_id", Integer, primary_key=True, autoincrement=True),
        Column("server_id", String(32), nullable=True, index=True),
        Column("tenant_id", Integer, nullable=False, index=True),
        Column("sync_version", Integer, nullable=True),
        Column("last_synced_at", DateTime, nullable=True),
        Column("updated_at", DateTime, nullable=False),
        Column("needs_sync", Boolean, nullable=False, default=True, index=True),
        Column("tombstone", Boolean, nullable=False, default=False),
        Column("payload", JSON, nullable=False),
        Column("pending_patch", JSON, nullable=True),
        Column("conflict", JSON, nullable=True),
        Column("failure", JSON, nullable=True),
        sqlite_autoincrement=True,
    )


def _make_engine(url: str):
    if url in ("sqlite://", "sqlite:///:memory:"):
        # one shared connection, otherwise every checkout sees an empty database
        return create_engine(url, poolclass=StaticPool, connect_args={"check_same_thread": False})
    return create_engine(url, connect_args={"check_same_thread": False})


class LocalStore:
    def __init__(self, url: str = "sqlite://", *, engine=None):
        self.engine = engine or _make_engine(url)
        self.metadata = MetaData()
        self.meta_table = Table(
            "store_meta",
            self.metadata,
            Column("key", String(64), primary_key=True),
            Column("value", Text, nullable=True),
        )
        self.tables = {name: _entity_table(self.metadata, name) for name in ENTITIES}
        self._open()

    # Lifecycle -----------------------------------------------------------

    @contextmanager
    def _transaction(self) -> Iterator[Any]:
        try:
            with self.engine.begin() as conn:
                yield conn
        except OperationalError as exc:
            detail = str(exc.orig if exc.orig is not None else exc)
            if "database or disk is full" in detail.lower():
                raise StorageQuotaError(detail) from exc
            raise LocalStoreError(detail) from exc

    def _open(self) -> None:
        with self._transaction() as conn:
            self.meta_table.create(conn, checkfirst=True)
            stored = self._read_meta(conn, "schema_version")
            stored_version = int(stored) if stored is not None else None

            if stored_version is not None and stored_version > SCHEMA_VERSION:
                raise SchemaUpgradeError(
                    f"Local store schema version {stored_version} is newer than supported version {SCHEMA_VERSION}"
                )

            self.metadata.create_all(conn)

            if stored_version is not None and stored_version < SCHEMA_VERSION:
                self._upgrade(conn, stored_version)

            if stored_version != SCHEMA_VERSION:
                self._write_meta(conn, "schema_version", str(SCHEMA_VERSION))
            if self._read_meta(conn, "device_id") is None:
                self._write_meta(conn, "device_id", uuid.uuid4().hex)

    def _upgrade(self, conn, from_version: int) -> None:
        inspector = inspect(conn)
        for version in range(from_version + 1, SCHEMA_VERSION + 1):
            for name, coltype in ADDITIVE_COLUMNS.get(version, ()):
                for table in self.tables.values():
                    existing = {c["name"] for c in inspector.get_columns(table.name)}
                    if name in existing:
                        continue
                    ddl = coltype.compile(dialect=conn.dialect)
                    conn.exec_driver_sql(f'ALTER TABLE "{table.name}" ADD COLUMN "{name}" {ddl}')
            logger.info("Local store upgraded to schema version %d", version)

    def close(self) -> None:
        self.engine.dispose()

    # Meta ----------------------------------------------------------------

    def _read_meta(self, conn, key: str) -> str | None:
        return conn.execute(select(self.meta_table.c.value).where(self.meta_table.c.key == key)).scalar()

    def _write_meta(self, conn, key: str, value: str | None) -> None:
        table = self.meta_table
        if conn.execute(select(table.c.key).where(table.c.key == key)).first() is None:
            conn.execute(table.insert().values(key=key, value=value))
        else:
            conn.execute(table.update().where(table.c.key == key).values(value=value))

    def get_meta(self, key: str) -> str | None:
        with self._transaction() as conn:
            return self._read_meta(conn, key)

    def set_meta(self, key: str, value: str | None) -> None:
        with self._transaction() as conn:
            self._write_meta(conn, key, value)

    @property
    def schema_version(self) -> int:
        return int(self.get_meta("schema_version"))

    @property
    def device_id(self) -> str:
        return self.get_meta("device_id")

    # Rows ----------------------------------------------------------------

    def _table(self, entity: str) -> Table:
        return self.tables[get_entity(entity).name]

    @staticmethod
    def _row(entity: str, mapping) -> LocalRecord:
        return LocalRecord(
            entity=entity,
            local_id=mapping["local_id"],
            server_id=mapping["server_id"],
            tenant_id=mapping["tenant_id"],
            sync_version=mapping["sync_version"],
            last_synced_at=mapping["last_synced_at"],
            updated_at=mapping["updated_at"],
            needs_sync=bool(mapping["needs_sync"]),
            tombstone=bool(mapping["tombstone"]),
            payload=dict(mapping["payload"] or {}),
            pending_patch=mapping["pending_patch"],
            conflict=mapping["conflict"],
            failure=mapping["failure"],
        )

    @staticmethod
    def _values(row: LocalRecord) -> dict:
        return {
            "server_id": row.server_id,
            "sync_version": row.sync_version,
            "last_synced_at": row.last_synced_at,
            "updated_at": row.updated_at,
            "needs_sync": row.needs_sync,
            "tombstone": row.tombstone,
            "payload": row.payload,
            "pending_patch": row.pending_patch,
            "conflict": row.conflict,
            "failure": row.failure,
        }

    def _put(self, conn, row: LocalRecord) -> LocalRecord:
        table = self._table(row.entity)
        values = self._values(row)
        if row.local_id is None:
            result = conn.execute(table.insert().values(tenant_id=row.tenant_id, **values))
            return replace(row, local_id=result.inserted_primary_key[0])

        result = conn.execute(table.update().where(table.c.local_id == row.local_id).values(**values))
        if result.rowcount == 0:
            raise LocalStoreError(f"{row.entity}#{row.local_id} does not exist")
        return row

    def put(self, row: LocalRecord) -> LocalRecord:
        """Insert (local_id None) or overwrite a row; returns it with its local_id."""
        with self._transaction() as conn:
            return self._put(conn, row)

    def get_by_local_id(self, entity: str, local_id: int) -> LocalRecord | None:
        table = self._table(entity)
        with self._transaction() as conn:
            mapping = conn.execute(select(table).where(table.c.local_id == local_id)).mappings().first()
        return self._row(entity, mapping) if mapping is not None else None

    def get_by_server_id(self, entity: str, server_id: str, tenant_id: int | None = None) -> LocalRecord | None:
        table = self._table(entity)
        query = select(table).where(table.c.server_id == server_id)
        if tenant_id is not None:
            query = query.where(table.c.tenant_id == tenant_id)
        with self._transaction() as conn:
            mapping = conn.execute(query).mappings().first()
        return self._row(entity, mapping) if mapping is not None else None

    def find_by_tenant(
        self,
        entity: str,
        tenant_id: int,
        predicate: Callable[[LocalRecord], bool] | None = None,
        *,
        include_tombstones: bool = False,
    ) -> list[LocalRecord]:
        table = self._table(entity)
        query = select(table).where(table.c.tenant_id == tenant_id)
        if not include_tombstones:
            query = query.where(table.c.tombstone.is_(False))
        with self._transaction() as conn:
            rows = [self._row(entity, m) for m in conn.execute(query.order_by(table.c.local_id)).mappings()]
        if predicate is not None:
            rows = [r for r in rows if predicate(r)]
        return rows

    def all_needing_sync(self, tenant_id: int | None = None) -> list[LocalRecord]:
        """Queued rows of every entity, oldest edit first."""
        rows: list[LocalRecord] = []
        with self._transaction() as conn:
            for entity, table in self.tables.items():
                query = select(table).where(table.c.needs_sync.is_(True))
                if tenant_id is not None:
                    query = query.where(table.c.tenant_id == tenant_id)
                rows.extend(self._row(entity, m) for m in conn.execute(query).mappings())
        rows.sort(key=lambda r: (r.updated_at, r.local_id))
        return rows

    def delete_by_local_id(self, entity: str, local_id: int) -> bool:
        table = self._table(entity)
        with self._transaction() as conn:
            result = conn.execute(table.delete().where(table.c.local_id == local_id))
        return result.rowcount > 0

    # State transitions ---------------------------------------------------

    def _update(self, entity: str, local_id: int, change: Callable[[LocalRecord], LocalRecord]) -> LocalRecord:
        table = self._table(entity)
        with self._transaction() as conn:
            mapping = conn.execute(select(table).where(table.c.local_id == local_id)).mappings().first()
            if mapping is None:
                raise LocalStoreError(f"{entity}#{local_id} does not exist")
            return self._put(conn, change(self._row(entity, mapping)))

    def mark_tombstone(self, entity: str, local_id: int) -> LocalRecord:
        return self._update(entity, local_id, lambda r: replace(
            r, tombstone=True, needs_sync=True, updated_at=utcnow(), failure=None,
        ))

    def mark_conflict(self, entity: str, local_id: int, report: dict) -> LocalRecord:
        return self._update(entity, local_id, lambda r: replace(r, conflict=report, needs_sync=True))

    def mark_failure(self, entity: str, local_id: int, failure: dict) -> LocalRecord:
        return self._update(entity, local_id, lambda r: replace(r, failure=failure, needs_sync=True))

    def apply_server_record(self, entity: str, local_id: int, record: dict) -> LocalRecord:
        """Reconcile the server's identity and state into a local row; clears the queue flags."""
        def change(row: LocalRecord) -> LocalRecord:
            return replace(
                row,
                server_id=record["serverId"],
                sync_version=record.get("syncVersion"),
                last_synced_at=parse_iso_datetime(record.get("lastSyncedAt")),
                updated_at=parse_iso_datetime(record.get("updatedAt")) or utcnow(),
                payload=payload_from_record(record),
                needs_sync=False,
                tombstone=False,
                pending_patch=None,
                conflict=None,
                failure=None,
            )
        return self._update(entity, local_id, change)

    def upsert_server_record(self, entity: str, tenant_id: int, record: dict) -> str:
        """
        Store a pulled record. Rows with unsent local changes are left alone.

        Returns "inserted", "updated" or "skipped".
        """
        table = self._table(entity)
        with self._transaction() as conn:
            mapping = conn.execute(
                select(table).where(table.c.server_id == record["serverId"], table.c.tenant_id == tenant_id)
            ).mappings().first()

            pulled = LocalRecord(
                entity=entity,
                tenant_id=tenant_id,
                server_id=record["serverId"],
                sync_version=record.get("syncVersion"),
                last_synced_at=parse_iso_datetime(record.get("lastSyncedAt")),
                updated_at=parse_iso_datetime(record.get("updatedAt")) or utcnow(),
                payload=payload_from_record(record),
                needs_sync=False,
            )
            if mapping is None:
                self._put(conn, pulled)
                return "inserted"

            current = self._row(entity, mapping)
            if current.needs_sync or current.tombstone:
                return "skipped"
            if (current.sync_version or 0) > (pulled.sync_version or 0):
                return "skipped"
            self._put(conn, replace(pulled, local_id=current.local_id))
            return "updated"
