# backend/possync/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/possync.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///possync.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Reject writes that omit syncVersion instead of treating them as legacy writes
    STRICT_SYNC_VERSION = _env_bool("STRICT_SYNC_VERSION", False)

    # Tenant read cache, TTLs in seconds
    CACHE_ENABLED = _env_bool("CACHE_ENABLED", True)
    CACHE_TTL_SHORT = int(os.environ.get("CACHE_TTL_SHORT", "60"))
    CACHE_TTL_MEDIUM = int(os.environ.get("CACHE_TTL_MEDIUM", "300"))
    CACHE_TTL_LONG = int(os.environ.get("CACHE_TTL_LONG", "3600"))

    # Requests per token per minute; 0 disables the limiter
    RATE_LIMIT_PER_MINUTE = int(os.environ.get("RATE_LIMIT_PER_MINUTE", "600"))

    # Max sales returned by a single /api/sync/pull
    PULL_SALES_LIMIT = int(os.environ.get("PULL_SALES_LIMIT", "1000"))


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    STRICT_SYNC_VERSION = False
    CACHE_ENABLED = True
    RATE_LIMIT_PER_MINUTE = 0
