from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from sqlalchemy.orm import declared_attr

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


def new_server_id() -> str:
    return uuid4().hex


class SyncedRecordMixin:
    """
    Sync envelope shared by every synchronized entity.

    - server_id: authoritative handle, assigned once at creation
    - store_id: owning tenant, immutable
    - client_ref: idempotency key of the request that created the row
    - sync_version: mapper version counter; every flushed UPDATE bumps it
      with a guarded "WHERE sync_version = :old" so concurrent writers
      cannot both win
    - last_synced_at: stamped on every accepted write

    Subclasses declare WIRE_FIELDS (wire name -> attribute) for their payload.
    """
    WIRE_FIELDS: dict[str, str] = {}

    id = db.Column(db.Integer, primary_key=True)
    server_id = db.Column(db.String(32), nullable=False, unique=True, index=True, default=new_server_id)
    client_ref = db.Column(db.String(160), nullable=True)
    sync_version = db.Column(db.Integer, nullable=False, default=1)
    last_synced_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    @declared_attr
    def store_id(cls):
        return db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    @declared_attr
    def __mapper_args__(cls):
        return {"version_id_col": cls.__table__.c.sync_version}

    def envelope(self) -> dict:
        return {
            "serverId": self.server_id,
            "tenantId": self.store_id,
            "syncVersion": self.sync_version,
            "lastSyncedAt": to_utc_z(self.last_synced_at),
            "createdAt": to_utc_z(self.created_at),
            "updatedAt": to_utc_z(self.updated_at),
        }

    def payload(self) -> dict:
        out = {}
        for wire, attr in self.WIRE_FIELDS.items():
            value = getattr(self, attr)
            if isinstance(value, datetime):
                value = to_utc_z(value)
            out[wire] = value
        return out

    def to_dict(self) -> dict:
        return {**self.envelope(), **self.payload()}

    def apply_patch(self, patch: dict, *, stamp: datetime | None = None) -> None:
        """
        Apply a validated attribute patch and stamp the write.

        Stamping last_synced_at always dirties the row, so the version
        counter advances even when the patch changes nothing else.
        """
        for attr, value in patch.items():
            setattr(self, attr, value)
        now = stamp or utcnow()
        self.updated_at = now
        self.last_synced_at = now

    def __repr__(self) -> str:
        return f"<{type(self).__name__} server_id={self.server_id} store_id={self.store_id} v={self.sync_version}>"
