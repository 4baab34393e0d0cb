# backend/settlement/routes/system.py
"""
System health endpoint.

Reports database reachability, reservation backlog (held past expiry means
the sweeper is behind) and the provider event backlog awaiting replay.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import ProviderEvent
from ..services import inventory_service
from settlement.time_utils import utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api")


def check_database_health() -> dict:
    start_time = time.time()
    try:
        db.session.execute(db.text("SELECT 1"))
        elapsed_ms = (time.time() - start_time) * 1000
        return {"status": "healthy", "latency_ms": round(elapsed_ms, 2)}
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_sweeper_health() -> dict:
    """Held reservations past expiry should be cleared within one sweep interval."""
    try:
        stats = inventory_service.get_reservation_stats()
        status = "degraded" if stats["held_past_expiry"] > 0 else "healthy"
        return {"status": status, "details": stats}
    except Exception:
        current_app.logger.exception("Sweeper health check failed")
        return {"status": "unhealthy", "error": "Reservation stats unavailable"}


def check_webhook_health() -> dict:
    try:
        failed = db.session.query(ProviderEvent).filter_by(status="failed").count()
        return {
            "status": "degraded" if failed else "healthy",
            "details": {"failed_events_awaiting_replay": failed},
        }
    except Exception:
        current_app.logger.exception("Webhook health check failed")
        return {"status": "unhealthy", "error": "Provider event table unavailable"}


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy or degraded
    - 503: database unreachable
    """
    start_time = time.time()

    database_health = check_database_health()
    if database_health["status"] == "unhealthy":
        checks = {"database": database_health}
    else:
        checks = {
            "database": database_health,
            "sweeper": check_sweeper_health(),
            "webhooks": check_webhook_health(),
        }

    statuses = [check["status"] for check in checks.values()]
    if "unhealthy" in statuses:
        overall_status, http_status = "unhealthy", 503
    elif "degraded" in statuses:
        overall_status, http_status = "degraded", 200  # Degraded is still operational
    else:
        overall_status, http_status = "healthy", 200

    return {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": checks,
    }, http_status
