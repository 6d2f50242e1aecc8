"""
Compliance Tier Engine
Compliance blueprint — REST wrapper over ComplianceEngine.

Endpoints:
    POST /api/v1/compliance/users/<user_id>/tier             — switch tier
    POST /api/v1/compliance/users/<user_id>/assign           — materialise requirements
    POST /api/v1/compliance/users/<user_id>/profile-changed  — directory webhook
    GET  /api/v1/compliance/users/<user_id>/requirements     — user's records
    GET  /api/v1/compliance/users/<user_id>/tier-info        — tier summary
    GET  /api/v1/compliance/users/<user_id>/tier-history     — tier switches
    POST /api/v1/compliance/records/<record_id>/transition   — status change
    GET  /api/v1/compliance/users/<user_id>/progression      — progression report
    POST /api/v1/compliance/users/<user_id>/progression      — automated progression
    GET  /api/v1/compliance/statistics                       — tier statistics
    GET  /api/v1/compliance/deadlines                        — deadline alerts

Layer contract:
    - Blueprint: parse + validate input, call the engine, return JSON.
    - NO db.session calls here; every write is owned by the engine.
    - Engine errors map to HTTP through ``error_response``.
"""

import logging

from flask import Blueprint, jsonify, request

from compliance.blueprints import json_body, request_actor
from compliance.services.engine import get_engine
from compliance.utils.errors import E, api_error, error_response
from compliance.utils.helpers import parse_datetime

logger = logging.getLogger(__name__)

compliance_bp = Blueprint("compliance", __name__, url_prefix="/api/v1/compliance")


def _record_json(record) -> dict:
    data = record.to_dict()
    definition = record.requirement
    data["requirement"] = {
        "name": definition.name,
        "role": definition.role,
        "category": definition.category,
        "requirement_type": definition.requirement_type,
        "is_mandatory": definition.is_mandatory,
        "points_value": definition.points_value,
        "validation_rules": definition.validation_rules.to_dict(),
    }
    return data


# ── Tier assignment ──────────────────────────────────────────────────────────

@compliance_bp.route("/users/<user_id>/tier", methods=["POST"])
def switch_tier(user_id):
    """Body: { "tier": "basic|robust", "changed_by": "...", "reason": "..." }"""
    data = json_body()
    tier = data.get("tier")
    if not tier:
        return api_error(E.VALIDATION_REQUIRED, "tier is required")

    outcome, err = get_engine().switch_user_tier(
        user_id, tier,
        changed_by=request_actor(data, "changed_by", "system"),
        reason=data.get("reason"),
    )
    if err:
        return error_response(err)
    return jsonify(outcome.to_dict()), 200


@compliance_bp.route("/users/<user_id>/assign", methods=["POST"])
def assign_requirements(user_id):
    """Body (all optional): { "role": "IT", "tier": "basic", "actor": "..." }"""
    data = json_body()
    summary, err = get_engine().assign_tier_requirements(
        user_id,
        role=data.get("role"),
        tier=data.get("tier"),
        actor=request_actor(data, default="system"),
    )
    if err:
        return error_response(err)
    return jsonify(summary.to_dict()), 200


@compliance_bp.route("/users/<user_id>/profile-changed", methods=["POST"])
def profile_changed(user_id):
    """Directory change notification.  Body: { "role"?, "tier"?, "changed_by"?, "reason"? }"""
    data = json_body()
    outcome, err = get_engine().apply_profile_change(
        user_id,
        changed_by=request_actor(data, "changed_by", "system"),
        role=data.get("role"),
        tier=data.get("tier"),
        reason=data.get("reason") or "profile change",
    )
    if err:
        return error_response(err)
    return jsonify(outcome.to_dict()), 200


# ── Records ──────────────────────────────────────────────────────────────────

@compliance_bp.route("/users/<user_id>/requirements", methods=["GET"])
def list_requirements(user_id):
    """Query params: include_superseded=true to include inactive rows."""
    include = request.args.get("include_superseded", "").lower() in ("1", "true", "yes")
    records, err = get_engine().get_user_requirements(user_id, include_superseded=include)
    if err:
        return error_response(err)
    return jsonify({
        "user_id": user_id,
        "requirements": [_record_json(r) for r in records],
        "total": len(records),
    })


@compliance_bp.route("/records/<int:record_id>/transition", methods=["POST"])
def transition_record(record_id):
    """
    Body:
        status               — target status (required)
        actor                — acting user id (required; or X-Actor-Id header)
        evidence             — { "kind": "...", "data": {...} }
        expected_updated_at  — ISO timestamp last read by the caller
        notes                — review notes
    """
    data = json_body()
    status = data.get("status")
    if not status:
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    actor = request_actor(data)
    if not actor:
        return api_error(E.VALIDATION_REQUIRED, "actor is required")
    try:
        expected = parse_datetime(data.get("expected_updated_at"))
    except ValueError as exc:
        return api_error(E.VALIDATION_INVALID, str(exc))

    record, err = get_engine().transition_requirement(
        record_id, status, actor, data.get("evidence"),
        expected_updated_at=expected,
        notes=data.get("notes"),
    )
    if err:
        return error_response(err)
    return jsonify(_record_json(record)), 200


# ── Tier info & history ──────────────────────────────────────────────────────

@compliance_bp.route("/users/<user_id>/tier-info", methods=["GET"])
def tier_info(user_id):
    info, err = get_engine().get_user_tier_info(user_id)
    if err:
        return error_response(err)
    return jsonify(info)


@compliance_bp.route("/users/<user_id>/tier-history", methods=["GET"])
def tier_history(user_id):
    rows, err = get_engine().get_tier_history(user_id)
    if err:
        return error_response(err)
    return jsonify({"user_id": user_id, "history": [h.to_dict() for h in rows]})


# ── Progression ──────────────────────────────────────────────────────────────

@compliance_bp.route("/users/<user_id>/progression", methods=["GET"])
def progression_report(user_id):
    report, err = get_engine().generate_progression_report(user_id)
    if err:
        return error_response(err)
    return jsonify(report.to_dict())


@compliance_bp.route("/users/<user_id>/progression", methods=["POST"])
def trigger_progression(user_id):
    """Body: { "target_role": "IP", "actor": "..." }"""
    data = json_body()
    target_role = data.get("target_role")
    if not target_role:
        return api_error(E.VALIDATION_REQUIRED, "target_role is required")

    outcome, err = get_engine().trigger_automated_progression(
        user_id, target_role, actor=request_actor(data, default="system"),
    )
    if err:
        return error_response(err)
    return jsonify(outcome.to_dict()), 200


# ── Statistics ───────────────────────────────────────────────────────────────

@compliance_bp.route("/statistics", methods=["GET"])
def statistics():
    return jsonify(get_engine().get_compliance_tier_statistics())


@compliance_bp.route("/deadlines", methods=["GET"])
def deadlines():
    """Query params: within_days (default from config), user_id."""
    within_days = request.args.get("within_days", type=int)
    if within_days is not None and within_days < 0:
        return api_error(E.VALIDATION_INVALID, "within_days must be >= 0")
    user_id = request.args.get("user_id")

    alerts, err = get_engine().get_deadline_alerts(within_days=within_days, user_id=user_id)
    if err:
        return error_response(err)
    return jsonify({"alerts": alerts, "total": len(alerts)})
