"""
Compliance Tier Engine
Audit blueprint.

Endpoints:
    GET  /api/v1/audit               — list / filter audit logs
    GET  /api/v1/audit/<int:log_id>  — single audit entry
"""

from flask import Blueprint, jsonify, request

from compliance.models import db
from compliance.models.audit import AuditLog
from compliance.services.engine import get_engine

audit_bp = Blueprint("audit", __name__, url_prefix="/api/v1")


# ── List / filter ────────────────────────────────────────────────────────────

@audit_bp.route("/audit", methods=["GET"])
def list_audit_logs():
    """
    Return paginated audit logs with optional filters.

    Query params:
        user_id      — subject user
        entity_type  — compliance_record | user | progression
        entity_id    — filter by entity PK
        action       — filter by action string (prefix match)
        actor        — filter by actor
        page         — page number (default 1)
        per_page     — items per page (default 50, max 200)
    """
    return jsonify(get_engine().list_audit_events(
        user_id=request.args.get("user_id"),
        entity_type=request.args.get("entity_type"),
        entity_id=request.args.get("entity_id"),
        action=request.args.get("action"),
        actor=request.args.get("actor"),
        page=request.args.get("page", 1, type=int),
        per_page=request.args.get("per_page", 50, type=int),
    ))


# ── Single entry ─────────────────────────────────────────────────────────────

@audit_bp.route("/audit/<int:log_id>", methods=["GET"])
def get_audit_log(log_id):
    log = db.session.get(AuditLog, log_id)
    if not log:
        return jsonify({"error": "Audit log not found"}), 404
    return jsonify(log.to_dict())
