"""
Audit trail tests.

Covers:
  - AuditLog model basics (write_audit, to_dict, diff property)
  - one row per mutation, committed with the change it describes
  - Audit API (list, filter, paginate, single, 404)
  - audit_appended notification and listener isolation
"""

import pytest

from compliance.models import db
from compliance.models.audit import AuditLog, write_audit

EVIDENCE = {"kind": "attestation", "data": {"statement": "Completed"}}


# ── Model ────────────────────────────────────────────────────────────────────


class TestAuditModel:
    def test_write_audit_flushes_row(self):
        log = write_audit(
            entity_type="user", entity_id="u1", user_id="u1",
            action="tier.switch", actor="adm-1",
            diff={"compliance_tier": {"old": None, "new": "basic"}},
        )

        assert log.id is not None
        assert log.diff == {"compliance_tier": {"old": None, "new": "basic"}}
        body = log.to_dict()
        assert body["action"] == "tier.switch"
        assert body["timestamp"].endswith("+00:00")

    def test_unknown_action_rejected(self):
        with pytest.raises(ValueError, match="Unknown audit action"):
            write_audit(entity_type="user", entity_id="u1", action="tier.delete")

    def test_missing_actor_defaults_to_system(self):
        log = write_audit(entity_type="user", entity_id="u1", action="role.change", actor=None)

        assert log.actor == "system"

    def test_corrupt_diff_reads_as_empty(self):
        log = write_audit(entity_type="user", entity_id="u1", action="role.change")
        log.diff_json = "{not json"

        assert log.diff == {}


# ── Integration with engine mutations ────────────────────────────────────────


def test_transition_writes_exactly_one_row(engine, trainee, by_name):
    before = AuditLog.query.count()
    record = by_name("u1")["Water Safety Training"]

    engine.transition_requirement(record.id, "submitted", "u1", EVIDENCE)

    assert AuditLog.query.count() == before + 1
    row = AuditLog.query.order_by(AuditLog.id.desc()).first()
    assert row.entity_type == "compliance_record"
    assert row.entity_id == str(record.id)
    assert row.diff["requirement"] == "Water Safety Training"


def test_rejected_operation_writes_nothing(engine, trainee, by_name):
    before = AuditLog.query.count()

    engine.transition_requirement(by_name("u1")["Background Check"].id, "approved", "u1")
    engine.switch_user_tier("u1", "gold")

    assert AuditLog.query.count() == before


def test_tier_history_listing(engine, trainee):
    engine.switch_user_tier("u1", "robust", changed_by="adm-1", reason="promotion")

    rows, err = engine.get_tier_history("u1")

    assert err is None
    assert [(r.previous_tier, r.new_tier) for r in rows] == [(None, "basic"), ("basic", "robust")]
    assert rows[-1].reason == "promotion"
    assert rows[-1].requirements_affected == 6


def test_audit_event_published_after_commit(engine, trainee, by_name):
    seen = []

    def listener(entry):
        # The row must already be visible to a fresh query
        seen.append((entry["action"], db.session.get(AuditLog, entry["id"]) is not None))

    unsubscribe = engine.subscribe("audit_appended", listener)
    try:
        engine.transition_requirement(by_name("u1")["Background Check"].id, "in_progress", "u1")
    finally:
        unsubscribe()

    assert seen == [("record.start", True)]


def test_failing_listener_does_not_undo_work(engine, trainee, by_name):
    def explode(**_payload):
        raise RuntimeError("listener bug")

    unsubscribe = engine.subscribe("record_changed", explode)
    try:
        record, err = engine.transition_requirement(
            by_name("u1")["Background Check"].id, "in_progress", "u1",
        )
    finally:
        unsubscribe()

    assert err is None
    db.session.expire_all()
    assert by_name("u1")["Background Check"].status == "in_progress"
    assert AuditLog.query.filter_by(action="record.start").count() == 1


# ── API ──────────────────────────────────────────────────────────────────────


class TestAuditAPI:
    def test_list_all(self, client, trainee):
        res = client.get("/api/v1/audit")

        assert res.status_code == 200
        data = res.get_json()
        assert data["total"] == 1
        assert data["audit_logs"][0]["action"] == "tier.switch"

    def test_filter_by_action_prefix(self, client, engine, trainee, by_name):
        record = by_name("u1")["CPR/AED Certification"]
        engine.transition_requirement(record.id, "in_progress", "u1")
        engine.transition_requirement(record.id, "submitted", "u1", EVIDENCE)

        res = client.get("/api/v1/audit?action=record.")

        data = res.get_json()
        assert data["total"] == 2
        assert {log["action"] for log in data["audit_logs"]} == {"record.start", "record.submit"}

    def test_filter_by_user_and_actor(self, client, engine, trainee, make_user):
        make_user("u2", "IT")
        engine.switch_user_tier("u2", "robust", changed_by="adm-2")

        by_user = client.get("/api/v1/audit?user_id=u2").get_json()
        by_actor = client.get("/api/v1/audit?actor=adm-1").get_json()

        assert by_user["total"] == 1
        assert by_user["audit_logs"][0]["user_id"] == "u2"
        assert by_actor["total"] == 1
        assert by_actor["audit_logs"][0]["user_id"] == "u1"

    def test_filter_by_entity(self, client, engine, trainee, by_name):
        record = by_name("u1")["CPR/AED Certification"]
        engine.transition_requirement(record.id, "in_progress", "u1")

        res = client.get(f"/api/v1/audit?entity_type=compliance_record&entity_id={record.id}")

        assert res.get_json()["total"] == 1

    def test_pagination(self, client, engine, trainee, by_name):
        for record in by_name("u1").values():
            engine.transition_requirement(record.id, "in_progress", "u1")

        res = client.get("/api/v1/audit?per_page=2&page=2")

        data = res.get_json()
        assert data["total"] == 4
        assert data["pages"] == 2
        assert len(data["audit_logs"]) == 2

    def test_get_single(self, client, trainee):
        log = AuditLog.query.first()

        res = client.get(f"/api/v1/audit/{log.id}")

        assert res.status_code == 200
        assert res.get_json()["id"] == log.id

    def test_get_single_404(self, client):
        res = client.get("/api/v1/audit/99999")

        assert res.status_code == 404

