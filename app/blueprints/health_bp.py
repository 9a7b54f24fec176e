"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  simple 200 for load balancers
    GET /api/v1/health/live   detailed system health (DB, cache, realtime)
"""

import logging
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy.exc import SQLAlchemyError

from app.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Simple readiness probe, always 200 if the app is running."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Detailed liveness check with dependency status."""
    checks = {}
    overall = True

    # ── Database ─────────────────────────────────────────────────────
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except SQLAlchemyError as exc:
        db.session.rollback()
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check: database failed: %s", exc)

    # ── Asset cache (Redis or memory) ────────────────────────────────
    cache = current_app.extensions.get("asset_cache")
    checks["cache"] = cache.health_check() if cache else {"status": "skipped"}

    # ── Realtime hub ─────────────────────────────────────────────────
    hub = current_app.extensions.get("realtime_hub")
    if hub is not None:
        checks["realtime"] = {
            "status": "ok",
            "delivery": hub.delivery,
            "worker_running": hub.running,
            "pending_events": hub.pending(),
            "subscribers": hub.subscriber_count(),
        }
    sessions = current_app.extensions.get("chat_sessions")
    checks["chat_sessions"] = len(sessions) if sessions is not None else 0

    checks["app"] = {
        "name": "Municipal Document & Workflow Platform",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }

    status_code = 200 if overall else 503
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), status_code
