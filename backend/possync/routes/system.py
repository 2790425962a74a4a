# backend/possync/routes/system.py
"""
System health and cache endpoints.

Provides a health check for the database and the in-process collaborators,
plus the tenant cache counters for deployment debugging.
"""

import time
from flask import Blueprint, current_app
from sqlalchemy import text

from ..decorators import require_auth
from ..extensions import db
from ..models import Store
from ..time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        store_count = db.session.query(Store).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "stores": store_count,
            }
        }
    except Exception:
        db.session.rollback()
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_cache_health() -> dict:
    cache = current_app.extensions.get("tenant_cache")
    if cache is None:
        return {"status": "degraded", "warning": "Tenant cache not configured"}
    stats = cache.stats()
    return {
        "status": "healthy",
        "details": {
            "enabled": stats["enabled"],
            "entries": stats["entries"],
        }
    }


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: All systems healthy (or degraded but operational)
    - 503: Database unreachable
    """
    start_time = time.time()

    database_health = check_database_health()
    cache_health = check_cache_health()

    all_checks = [database_health, cache_health]
    if any(check["status"] == "unhealthy" for check in all_checks):
        overall_status, http_status = "unhealthy", 503
    elif any(check["status"] == "degraded" for check in all_checks):
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    response = {
        "status": overall_status,
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": {
            "database": database_health,
            "cache": cache_health,
        }
    }

    return response, http_status


@system_bp.get("/api/cache/stats")
@require_auth
def cache_stats():
    """Hit/miss counters and entry counts of the tenant cache."""
    return current_app.extensions["tenant_cache"].stats()
