"""
Health check blueprint.

Endpoints:
    GET /api/v1/health  — liveness with database status and catalog version
"""

import logging
import time

from flask import Blueprint, jsonify
from sqlalchemy.exc import SQLAlchemyError

from compliance.models import db
from compliance.services.engine import get_engine

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1")


@health_bp.route("/health", methods=["GET"])
def health():
    checks = {}
    overall = True

    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except SQLAlchemyError as exc:
        db.session.rollback()
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check — database failed: %s", exc)

    return jsonify({
        "status": "ok" if overall else "degraded",
        "app": "Compliance Tier Engine",
        "catalog_version": get_engine().catalog.version,
        "checks": checks,
    }), 200 if overall else 503
