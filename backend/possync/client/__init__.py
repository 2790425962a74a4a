# backend/possync/client/__init__.py
"""Offline-first sync client: embedded LocalStore, HTTP transport and SyncEngine."""
from .config import SyncClientConfig
from .drain import DrainQueue
from .engine import SyncEngine
from .local_store import LocalRecord, LocalStore
from .transport import RemoteClient


def build_engine(config: SyncClientConfig, transport=None) -> SyncEngine:
    """Open the configured local store and API client and wire them into an engine."""
    store = LocalStore(config.database_url)
    remote = RemoteClient.from_config(config, transport=transport)
    return SyncEngine(store, remote, config)


__all__ = [
    "DrainQueue",
    "LocalRecord",
    "LocalStore",
    "RemoteClient",
    "SyncClientConfig",
    "SyncEngine",
    "build_engine",
]
