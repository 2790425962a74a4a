# Overview: Settings for a sync client (one device, one tenant).

from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass
class SyncClientConfig:
    """Sync client configuration."""

    # Server
    base_url: str = "http://localhost:5000"
    token: str = ""
    timeout: float = 10.0

    # Tenant (store id the token is bound to)
    tenant_id: int = 0

    # Local store, an SQLAlchemy URL ("sqlite://" keeps it in memory)
    database_url: str = "sqlite:///possync-client.sqlite3"

    # Retry policy for one row within one drain
    max_attempts: int = 5
    backoff_base: float = 0.5
    backoff_max: float = 30.0
    backoff_jitter: float = 0.25

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url and self.token and self.tenant_id)

    @classmethod
    def from_env(cls, prefix: str = "POSSYNC_") -> "SyncClientConfig":
        """Read POSSYNC_API_URL, POSSYNC_TOKEN, POSSYNC_TENANT_ID, POSSYNC_DATABASE_URL, ..."""
        env = os.environ
        return cls(
            base_url=env.get(f"{prefix}API_URL", cls.base_url),
            token=env.get(f"{prefix}TOKEN", ""),
            timeout=float(env.get(f"{prefix}TIMEOUT", cls.timeout)),
            tenant_id=int(env.get(f"{prefix}TENANT_ID", "0")),
            database_url=env.get(f"{prefix}DATABASE_URL", cls.database_url),
            max_attempts=int(env.get(f"{prefix}MAX_ATTEMPTS", cls.max_attempts)),
            backoff_base=float(env.get(f"{prefix}BACKOFF_BASE", cls.backoff_base)),
            backoff_max=float(env.get(f"{prefix}BACKOFF_MAX", cls.backoff_max)),
        )
