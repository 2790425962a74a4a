# Overview: Device token issuing and validation; binds each request to one store.

"""
Device Token Service

A device token is the bearer credential a POS client presents on every
request. It is bound to exactly one store at issue time, which makes the
store the tenant of every write the device performs.

- Cryptographically secure random tokens (32 bytes)
- Tokens hashed with SHA-256 before storage
- Revocable; a token stops working when its store or organization is
  deactivated
"""

import secrets
import hashlib
from dataclasses import dataclass

from ..extensions import db
from ..models import DeviceToken, Organization, Store
from ..time_utils import utcnow


# Skip the last_used_at write when the token was used this recently
LAST_USED_RESOLUTION_SECONDS = 60


@dataclass
class TokenContext:
    """Tenant context resolved from a device token."""
    token: DeviceToken
    org_id: int
    store_id: int


def generate_token() -> str:
    """64-character hex string (32 bytes of entropy). Never stored."""
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    """
    Hash token for database storage using SHA-256.

    Tokens are already high-entropy, so a fast hash is sufficient.
    """
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


def issue_token(store_id: int, name: str | None = None) -> tuple[DeviceToken, str]:
    """
    Issue a token for a store.

    Returns (token_record, plaintext_token). Raises ValueError if the store
    or its organization is missing or inactive.
    """
    store = db.session.query(Store).filter_by(id=store_id).first()
    if not store or not store.is_active:
        raise ValueError("Store is not active")

    org = db.session.query(Organization).filter_by(id=store.org_id).first()
    if not org or not org.is_active:
        raise ValueError("Organization is not active")

    plaintext_token = generate_token()
    record = DeviceToken(
        store_id=store.id,
        org_id=store.org_id,
        name=name,
        token_hash=hash_token(plaintext_token),
        created_at=utcnow(),
    )
    db.session.add(record)
    db.session.commit()

    return record, plaintext_token


def validate_token(token: str) -> TokenContext | None:
    """
    Return the tenant context for a token, or None if it is unknown,
    revoked, or its store/organization has been deactivated.
    """
    record = db.session.query(DeviceToken).filter_by(
        token_hash=hash_token(token),
        is_revoked=False,
    ).first()

    if not record:
        return None

    store = db.session.get(Store, record.store_id)
    if not store or not store.is_active:
        return None

    org = db.session.get(Organization, record.org_id)
    if not org or not org.is_active:
        return None

    now = utcnow()
    if record.last_used_at is None or (now - record.last_used_at).total_seconds() > LAST_USED_RESOLUTION_SECONDS:
        record.last_used_at = now
        db.session.commit()

    return TokenContext(token=record, org_id=record.org_id, store_id=record.store_id)


def revoke_token(token_id: int) -> bool:
    """Returns True if the token was revoked, False if not found or already revoked."""
    record = db.session.query(DeviceToken).filter_by(id=token_id, is_revoked=False).first()
    if not record:
        return False

    record.is_revoked = True
    record.revoked_at = utcnow()
    db.session.commit()
    return True
