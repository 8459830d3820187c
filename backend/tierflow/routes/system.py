# backend/tierflow/routes/system.py
"""
System health and version endpoints.

Health covers the database and the sync scheduler so deployments can tell a
dead poller from a dead database.
"""

import sys
import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import HierarchyNode, Order
from tierflow.time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api")


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        node_count = db.session.query(HierarchyNode).count()
        order_count = db.session.query(Order).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "nodes": node_count,
                "orders": order_count,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_sync_health() -> dict:
    manager = current_app.extensions.get("sync_manager")
    if manager is None:
        return {"status": "unhealthy", "error": "Sync manager not configured"}

    scheduler = manager.scheduler
    if scheduler is None:
        # Disabled by configuration; sessions are polled on demand
        return {
            "status": "degraded",
            "warning": "Sync scheduler disabled",
            "details": {"active_sessions": len(manager.active_session_ids())},
        }

    return {
        "status": "healthy",
        "details": {
            "scheduler_running": scheduler.running,
            "active_sessions": len(manager.active_session_ids()),
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
    sync_health = check_sync_health()

    all_checks = [database_health, sync_health]
    unhealthy_count = sum(1 for check in all_checks if check["status"] == "unhealthy")
    degraded_count = sum(1 for check in all_checks if check["status"] == "degraded")

    if unhealthy_count > 0:
        overall_status = "unhealthy"
        http_status = 503
    elif degraded_count > 0:
        overall_status = "degraded"
        http_status = 200  # Degraded is still operational
    else:
        overall_status = "healthy"
        http_status = 200

    total_elapsed_ms = (time.time() - start_time) * 1000

    response = {
        "status": overall_status,
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": round(total_elapsed_ms, 2),
        "checks": {
            "database": database_health,
            "sync": sync_health,
        }
    }

    return response, http_status


@system_bp.get("/version")
def version():
    """Non-sensitive deployment information."""
    env = "production" if not current_app.debug else "development"

    return {
        "api_version": "1.0.0",
        "environment": env,
        "python_version": sys.version.split()[0],
        "business_timezone": current_app.config.get("BUSINESS_TIMEZONE"),
        "server_time": to_utc_z(utcnow()),
    }
