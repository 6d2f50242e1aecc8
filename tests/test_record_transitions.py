"""
Requirement Record Store tests — status lifecycle.

Covers:
  - happy path start → submit → approve, with side-effect fields
  - terminal states and invalid transitions leave the record untouched
  - evidence validation (resubmit requires new evidence)
  - permissions: owner / reviewer / administrator / system
  - optimistic concurrency on updated_at
  - record_changed notification
"""

import pytest

from compliance.core.exceptions import (
    ConflictError,
    InvalidEvidence,
    InvalidTransition,
    PermissionDenied,
    RecordNotFound,
)
from compliance.models.audit import AuditLog
from compliance.models.compliance import RECORD_TRANSITIONS, available_statuses, resolve_action
from compliance.services import record_store as record_store_module
from compliance.utils.helpers import as_utc

EVIDENCE = {"kind": "file_upload", "data": {"file": "cpr-card.pdf", "expiry_date": "2027-06-01"}}


@pytest.fixture()
def cpr(trainee, by_name):
    return by_name("u1")["CPR/AED Certification"]


# ── State machine table ──────────────────────────────────────────────────────


class TestStateMachine:
    def test_resolve_action(self):
        assert resolve_action("pending", "in_progress") == "start"
        assert resolve_action("in_progress", "submitted") == "submit"
        assert resolve_action("rejected", "submitted") == "resubmit"
        assert resolve_action("submitted", "waived") == "waive"
        assert resolve_action("approved", "pending") is None

    def test_terminal_states_have_no_exits(self):
        assert available_statuses("approved") == []
        assert available_statuses("waived") == []

    def test_every_action_targets_a_known_status(self):
        for rule in RECORD_TRANSITIONS.values():
            assert rule["to"] in ("in_progress", "submitted", "approved", "rejected", "waived")


# ── Happy path ───────────────────────────────────────────────────────────────


def test_owner_starts_and_submits(engine, cpr):
    record, err = engine.transition_requirement(cpr.id, "in_progress", "u1")
    assert err is None
    assert record.status == "in_progress"
    assert record.progress == 50

    record, err = engine.transition_requirement(cpr.id, "submitted", "u1", EVIDENCE)
    assert err is None
    assert record.status == "submitted"
    assert record.submitted_at is not None
    assert record.evidence.kind == "file_upload"
    assert record.evidence.data["file"] == "cpr-card.pdf"
    assert record.updated_by == "u1"


def test_reviewer_approves(engine, cpr, reviewer):
    engine.transition_requirement(cpr.id, "submitted", "u1", EVIDENCE)

    record, err = engine.transition_requirement(cpr.id, "approved", "rev-1", notes="Valid card")

    assert err is None
    assert record.status == "approved"
    assert record.is_terminal
    assert record.progress == 100
    assert record.reviewed_by == "rev-1"
    assert record.review_notes == "Valid card"
    assert record.completion_date is not None


def test_each_transition_appends_one_audit_row(engine, cpr, reviewer):
    engine.transition_requirement(cpr.id, "in_progress", "u1")
    engine.transition_requirement(cpr.id, "submitted", "u1", EVIDENCE)
    engine.transition_requirement(cpr.id, "approved", "rev-1")

    rows = (
        AuditLog.query.filter_by(entity_type="compliance_record", entity_id=str(cpr.id))
        .order_by(AuditLog.id).all()
    )
    assert [r.action for r in rows] == ["record.start", "record.submit", "record.approve"]
    assert rows[-1].diff["status"] == {"old": "submitted", "new": "approved"}
    assert rows[-1].user_id == "u1"
    assert rows[1].diff["evidence_kind"] == "file_upload"


# ── Invalid transitions ──────────────────────────────────────────────────────


def test_approved_is_terminal(engine, cpr):
    engine.transition_requirement(cpr.id, "submitted", "system")
    approved, _ = engine.transition_requirement(cpr.id, "approved", "system")
    stamp = approved.updated_at

    record, err = engine.transition_requirement(cpr.id, "in_progress", "system")

    assert record is None
    assert isinstance(err, InvalidTransition)
    assert err.current_status == "approved"
    fresh, _ = engine.get_record(cpr.id)
    assert fresh.status == "approved"
    assert fresh.updated_at == stamp


def test_cannot_approve_pending(engine, cpr, reviewer):
    record, err = engine.transition_requirement(cpr.id, "approved", "rev-1")

    assert record is None
    assert isinstance(err, InvalidTransition)


def test_unknown_status_rejected(engine, cpr):
    record, err = engine.transition_requirement(cpr.id, "done", "u1")

    assert record is None
    assert isinstance(err, InvalidTransition)


def test_unknown_record(engine, trainee):
    record, err = engine.transition_requirement(9999, "submitted", "u1")

    assert record is None
    assert isinstance(err, RecordNotFound)
    assert err.http_status == 404


def test_superseded_record_cannot_move(engine, trainee, by_name):
    engine.switch_user_tier("u1", "robust")
    lifeguard = by_name("u1")["Advanced Lifeguard Training"]
    engine.switch_user_tier("u1", "basic")

    record, err = engine.transition_requirement(lifeguard.id, "in_progress", "u1")

    assert record is None
    assert isinstance(err, InvalidTransition)
    assert "superseded" in err.message


# ── Evidence ─────────────────────────────────────────────────────────────────


def test_invalid_evidence_kind(engine, cpr):
    record, err = engine.transition_requirement(
        cpr.id, "submitted", "u1", {"kind": "fax", "data": {}},
    )

    assert record is None
    assert isinstance(err, InvalidEvidence)
    fresh, _ = engine.get_record(cpr.id)
    assert fresh.status == "pending"


def test_resubmit_requires_new_evidence(engine, cpr, reviewer):
    engine.transition_requirement(cpr.id, "submitted", "u1", EVIDENCE)
    rejected, err = engine.transition_requirement(cpr.id, "rejected", "rev-1", notes="Expired card")
    assert err is None
    assert rejected.progress == 0

    record, err = engine.transition_requirement(cpr.id, "submitted", "u1")
    assert record is None
    assert isinstance(err, InvalidEvidence)

    new_evidence = {"kind": "external_link", "data": {"url": "https://certs.example.org/123"}}
    record, err = engine.transition_requirement(cpr.id, "submitted", "u1", new_evidence)
    assert err is None
    assert record.status == "submitted"
    assert record.evidence.kind == "external_link"
    assert AuditLog.query.filter_by(action="record.resubmit").count() == 1


# ── Permissions ──────────────────────────────────────────────────────────────


def test_owner_cannot_approve_own_record(engine, cpr):
    engine.transition_requirement(cpr.id, "submitted", "u1", EVIDENCE)

    record, err = engine.transition_requirement(cpr.id, "approved", "u1")

    assert record is None
    assert isinstance(err, PermissionDenied)
    assert err.http_status == 403


def test_other_trainee_cannot_submit(engine, cpr, make_user):
    make_user("u9", "IT")

    record, err = engine.transition_requirement(cpr.id, "submitted", "u9", EVIDENCE)

    assert record is None
    assert isinstance(err, PermissionDenied)


def test_reviewer_cannot_waive(engine, cpr, reviewer):
    record, err = engine.transition_requirement(cpr.id, "waived", "rev-1")

    assert record is None
    assert isinstance(err, PermissionDenied)


def test_admin_waives(engine, cpr, admin):
    record, err = engine.transition_requirement(cpr.id, "waived", "adm-1", notes="Lifeguard on staff")

    assert err is None
    assert record.status == "waived"
    assert record.progress == 100
    assert record.completion_date is not None


def test_unknown_actor_denied(engine, cpr):
    engine.transition_requirement(cpr.id, "submitted", "u1", EVIDENCE)

    record, err = engine.transition_requirement(cpr.id, "approved", "nobody")

    assert isinstance(err, PermissionDenied)


# ── Optimistic concurrency ───────────────────────────────────────────────────


def test_stale_writer_gets_conflict(engine, cpr):
    seen = cpr.updated_at

    first, err = engine.transition_requirement(cpr.id, "in_progress", "u1", expected_updated_at=seen)
    assert err is None

    second, err = engine.transition_requirement(
        cpr.id, "submitted", "u1", EVIDENCE, expected_updated_at=seen,
    )
    assert second is None
    assert isinstance(err, ConflictError)
    assert err.http_status == 409

    fresh, _ = engine.get_record(cpr.id)
    assert fresh.status == "in_progress"
    assert AuditLog.query.filter_by(action="record.submit").count() == 0


def test_concurrent_writer_loses_at_conditional_update(engine, cpr, monkeypatch):
    """Both callers pass the stamp check; the conditional UPDATE picks one winner."""
    real_resolve = record_store_module.resolve_action
    raced = []
    outcomes = []

    def resolve_then_race(current, new_status):
        action = real_resolve(current, new_status)
        if not raced:
            raced.append(True)
            outcomes.append(engine.transition_requirement(cpr.id, "in_progress", "u1"))
        return action

    monkeypatch.setattr(record_store_module, "resolve_action", resolve_then_race)
    seen = as_utc(cpr.updated_at)

    record, err = engine.transition_requirement(
        cpr.id, "submitted", "u1", EVIDENCE, expected_updated_at=seen,
    )

    winner, winner_err = outcomes[0]
    assert winner_err is None
    assert record is None
    assert isinstance(err, ConflictError)
    assert err.expected_updated_at == seen
    assert err.current_updated_at == as_utc(winner.updated_at)

    fresh, _ = engine.get_record(cpr.id)
    assert fresh.status == "in_progress"
    assert AuditLog.query.filter(AuditLog.action.like("record.%")).count() == 1
    assert AuditLog.query.filter_by(action="record.start").count() == 1


def test_current_stamp_accepted(engine, cpr):
    first, _ = engine.transition_requirement(cpr.id, "in_progress", "u1")

    second, err = engine.transition_requirement(
        cpr.id, "submitted", "u1", EVIDENCE, expected_updated_at=first.updated_at,
    )

    assert err is None
    assert second.status == "submitted"


def test_updated_at_strictly_increases(engine, cpr, reviewer):
    stamps = [as_utc(cpr.updated_at)]
    for status, actor in (("in_progress", "u1"), ("submitted", "u1"), ("rejected", "rev-1")):
        record, err = engine.transition_requirement(cpr.id, status, actor, EVIDENCE if status == "submitted" else None)
        assert err is None
        stamps.append(as_utc(record.updated_at))

    assert all(later > earlier for earlier, later in zip(stamps, stamps[1:]))


# ── Notifications ────────────────────────────────────────────────────────────


def test_record_changed_published_after_commit(engine, cpr):
    seen = []
    unsubscribe = engine.subscribe("record_changed", lambda **payload: seen.append(payload))
    try:
        engine.transition_requirement(cpr.id, "in_progress", "u1")
    finally:
        unsubscribe()

    assert seen == [{"user_id": "u1", "record_ids": [cpr.id], "reason": "record.start"}]


def test_rejected_transition_publishes_nothing(engine, cpr):
    seen = []
    unsubscribe = engine.subscribe("record_changed", lambda **payload: seen.append(payload))
    try:
        engine.transition_requirement(cpr.id, "approved", "u1")
    finally:
        unsubscribe()

    assert seen == []
