"""
Storage failure handling.

A SQLAlchemyError anywhere inside a write operation rolls the whole
operation back and surfaces as PersistenceError: no history row, no
record churn, no audit row, profile untouched.
"""

import pytest
from sqlalchemy.exc import SQLAlchemyError

from compliance.core.exceptions import PersistenceError
from compliance.models import db
from compliance.models.audit import AuditLog
from compliance.models.compliance import ComplianceTierHistory, UserComplianceRecord
from compliance.models.user import UserProfile
from compliance.services import progression as progression_module
from compliance.services import record_store as record_store_module
from compliance.services import tier_assignment as tier_assignment_module
from compliance.utils.helpers import as_utc


def _fail_audit(monkeypatch, module, on_call=1):
    """Make the *on_call*-th write_audit call in *module* raise; earlier calls go through."""
    real = module.write_audit
    calls = []

    def write_audit(**kwargs):
        calls.append(kwargs["action"])
        if len(calls) == on_call:
            raise SQLAlchemyError("db down")
        return real(**kwargs)

    monkeypatch.setattr(module, "write_audit", write_audit)
    return calls


def _snapshot(user_id):
    db.session.expire_all()
    user = db.session.get(UserProfile, user_id)
    active = (
        UserComplianceRecord.query
        .filter_by(user_id=user_id, is_active=True)
        .order_by(UserComplianceRecord.id)
        .all()
    )
    return {
        "role": user.role,
        "tier": user.compliance_tier,
        "history": ComplianceTierHistory.query.filter_by(user_id=user_id).count(),
        "records": UserComplianceRecord.query.filter_by(user_id=user_id).count(),
        "active": [(r.id, r.tier, r.status) for r in active],
        "audit": AuditLog.query.filter_by(user_id=user_id).count(),
    }


# ── Tier assignment ──────────────────────────────────────────────────────────


class TestTierAssignmentRollback:
    def test_switch_tier_writes_nothing(self, engine, make_user, monkeypatch):
        make_user("u1", "IT")
        calls = _fail_audit(monkeypatch, tier_assignment_module)

        with pytest.raises(PersistenceError) as exc_info:
            engine.switch_user_tier("u1", "basic", changed_by="adm-1")

        assert calls == ["tier.switch"]
        assert exc_info.value.operation == "tier switch"
        assert isinstance(exc_info.value.cause, SQLAlchemyError)
        assert _snapshot("u1") == {
            "role": "IT", "tier": None, "history": 0, "records": 0, "active": [], "audit": 0,
        }

    def test_assign_keeps_previous_records(self, engine, trainee, monkeypatch):
        before = _snapshot("u1")
        _fail_audit(monkeypatch, tier_assignment_module)

        with pytest.raises(PersistenceError):
            engine.assign_tier_requirements("u1", tier="robust")

        assert _snapshot("u1") == before

    def test_profile_change_keeps_role_and_tier(self, engine, trainee, monkeypatch):
        before = _snapshot("u1")
        calls = _fail_audit(monkeypatch, tier_assignment_module, on_call=2)

        with pytest.raises(PersistenceError):
            engine.apply_profile_change("u1", changed_by="adm-1", role="IC")

        assert calls == ["role.change", "tier.switch"]
        assert _snapshot("u1") == before

    def test_sync_does_not_restore_missing_records(self, engine, trainee, by_name, monkeypatch):
        record = by_name("u1")["Background Check"]
        record.is_active = False
        db.session.commit()
        before = _snapshot("u1")
        _fail_audit(monkeypatch, tier_assignment_module)

        with pytest.raises(PersistenceError):
            engine.sync_user("u1")

        assert _snapshot("u1") == before
        assert len(before["active"]) == 2

    def test_failure_releases_user_lock(self, engine, make_user, monkeypatch):
        make_user("u1", "IT")
        _fail_audit(monkeypatch, tier_assignment_module)
        with pytest.raises(PersistenceError):
            engine.switch_user_tier("u1", "basic")
        monkeypatch.undo()

        outcome, err = engine.switch_user_tier("u1", "basic")

        assert err is None
        assert outcome.changed is True
        assert len(engine.directory._locks) == 0


# ── Progression ──────────────────────────────────────────────────────────────


def test_progression_rolls_back_role_change(engine, trainee, by_name, monkeypatch):
    for record in by_name("u1").values():
        engine.transition_requirement(record.id, "waived", "system")
    before = _snapshot("u1")
    calls = _fail_audit(monkeypatch, progression_module)

    with pytest.raises(PersistenceError) as exc_info:
        engine.trigger_automated_progression("u1", "IP", actor="adm-1")

    assert calls == ["progression.applied"]
    assert exc_info.value.operation == "automated progression"
    after = _snapshot("u1")
    assert after == before
    assert after["role"] == "IT"
    assert AuditLog.query.filter_by(action="role.change").count() == 0


# ── Record transitions ───────────────────────────────────────────────────────


def test_transition_leaves_record_untouched(engine, trainee, by_name, monkeypatch):
    record = by_name("u1")["Background Check"]
    record_id, stamp = record.id, as_utc(record.updated_at)
    _fail_audit(monkeypatch, record_store_module)

    with pytest.raises(PersistenceError) as exc_info:
        engine.transition_requirement(record_id, "in_progress", "u1")

    assert exc_info.value.operation == "record transition"
    fresh, err = engine.get_record(record_id)
    assert err is None
    assert fresh.status == "pending"
    assert as_utc(fresh.updated_at) == stamp
    assert fresh.updated_by == "adm-1"
    assert AuditLog.query.filter(AuditLog.action.like("record.%")).count() == 0


def test_transition_failure_publishes_nothing(engine, trainee, by_name, monkeypatch):
    seen = []
    unsubscribe = engine.subscribe("record_changed", lambda **payload: seen.append(payload))
    _fail_audit(monkeypatch, record_store_module)
    try:
        with pytest.raises(PersistenceError):
            engine.transition_requirement(by_name("u1")["Background Check"].id, "in_progress", "u1")
    finally:
        unsubscribe()

    assert seen == []


# ── REST mapping ─────────────────────────────────────────────────────────────


def test_api_maps_persistence_error_to_500(client, make_user, monkeypatch):
    make_user("u1", "IT")
    _fail_audit(monkeypatch, tier_assignment_module)

    res = client.post("/api/v1/compliance/users/u1/tier", json={"tier": "basic"})

    assert res.status_code == 500
    body = res.get_json()
    assert body["code"] == "PERSISTENCE_ERROR"
    assert body["details"] == {"operation": "tier switch"}
    assert ComplianceTierHistory.query.count() == 0
