"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  — readiness: database + project cache
    GET /api/v1/health/live   — detailed status incl. reconciler and in-flight transitions
"""

import logging
import time

from flask import Blueprint, current_app, jsonify

from factory_pulse.models import db
from factory_pulse.services.engine import get_engine

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/v1/health")


def _database_check():
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        return {"status": "ok", "latency_ms": round(db_ms, 1)}, True
    except Exception as exc:
        logger.error("Health check — database failed: %s", exc)
        return {"status": "error", "detail": str(exc)}, False


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Readiness probe — 503 when the database or cache backend is down."""
    checks = {}
    checks["database"], db_ok = _database_check()
    checks["cache"] = get_engine().cache.health_check()
    overall = db_ok and checks["cache"]["status"] == "ok"
    return jsonify({
        "status": "ok" if overall else "degraded",
        "checks": checks,
    }), 200 if overall else 503


@health_bp.route("/live", methods=["GET"])
def live():
    """Detailed liveness check with dependency status."""
    engine = get_engine()
    checks = {}
    checks["database"], overall = _database_check()
    # Cache is optional for liveness; a Redis outage degrades reads only
    checks["cache"] = engine.cache.health_check()
    checks["reconciler"] = engine.reconciler.status()
    checks["transitions_in_flight"] = engine.coordinator.in_flight()
    checks["app"] = {
        "name": "Factory Pulse Workflow Engine",
        "debug": current_app.debug,
        "testing": current_app.testing,
        "stages": len(engine.graph),
    }
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), 200 if overall else 503
