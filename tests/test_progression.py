"""
Progression Evaluator tests.

Covers:
  - readiness report for a fresh trainee (blocking list, estimate, codes)
  - rejected / overdue work surfaces as recommendations and blocks progression
  - automated progression: eligible path advances and reassigns requirements
  - denial is audited and leaves the role unchanged
  - chain edges: terminal roles, wrong targets, paths with no declared gate
"""

from compliance.core.exceptions import InvalidRole, ProgressionNotEligible, UserNotFound
from compliance.models import db
from compliance.models.audit import AuditLog
from compliance.models.compliance import ComplianceTierHistory
from compliance.models.user import UserProfile
from compliance.services.progression import weighted_progress

IT_BASIC = ["CPR/AED Certification", "Water Safety Training", "Background Check"]
IP_BASIC = ["Instructor Certification", "Teaching Log", "Provisional Assessment"]


def _approve_all(engine, records):
    for record in records.values():
        _, err = engine.transition_requirement(record.id, "submitted", "system")
        assert err is None
        _, err = engine.transition_requirement(record.id, "approved", "system")
        assert err is None


def _codes(report):
    return {r.code: r.requirements for r in report.recommendations}


# ── Reports ──────────────────────────────────────────────────────────────────


def test_fresh_trainee_report(engine, trainee):
    report, err = engine.generate_progression_report("u1")

    assert err is None
    assert report.current_role == "IT"
    assert report.current_tier == "basic"
    assert report.next_role == "IP"
    assert report.overall_progress == 0.0
    assert report.completed_requirements == []
    assert [p.name for p in report.pending_requirements] == IT_BASIC

    [option] = report.available_progressions
    assert option.target_role == "IP"
    assert option.auto_eligible is False
    assert option.blocking_requirements == IT_BASIC
    assert option.estimated_days_to_complete == 45

    codes = _codes(report)
    assert codes["complete_mandatory"] == IT_BASIC
    assert "ready_for_progression" not in codes


def test_report_to_dict_is_json_shaped(engine, trainee):
    report, _ = engine.generate_progression_report("u1")

    body = report.to_dict()

    assert body["next_role"] == "IP"
    assert body["available_progressions"][0]["blocking_requirements"] == IT_BASIC
    assert body["recommendations"][0] == {
        "code": "complete_mandatory", "count": 3, "requirements": IT_BASIC,
    }


def test_rejected_requirement_blocks_and_is_recommended(engine, trainee, by_name):
    cpr = by_name("u1")["CPR/AED Certification"]
    engine.transition_requirement(cpr.id, "submitted", "system")
    engine.transition_requirement(cpr.id, "rejected", "system", notes="Expired")

    report, err = engine.generate_progression_report("u1")

    assert err is None
    codes = _codes(report)
    assert codes["resubmit_rejected"] == ["CPR/AED Certification"]
    assert "CPR/AED Certification" in report.available_progressions[0].blocking_requirements


def test_submitted_work_counts_half(engine, trainee, by_name):
    records = by_name("u1")
    engine.transition_requirement(records["CPR/AED Certification"].id, "submitted", "u1",
                                  {"kind": "file_upload", "data": {}})

    report, _ = engine.generate_progression_report("u1")

    # 20 of 45 points at 50% credit
    assert report.overall_progress == 22.2
    assert _codes(report)["await_review"] == ["CPR/AED Certification"]


def test_all_approved_is_eligible(engine, trainee, by_name):
    _approve_all(engine, by_name("u1"))

    report, err = engine.generate_progression_report("u1")

    assert err is None
    option = report.available_progressions[0]
    assert option.auto_eligible is True
    assert option.blocking_requirements == []
    assert option.estimated_days_to_complete == 0
    assert option.progress == 100.0
    assert report.overall_progress == 100.0
    assert _codes(report) == {"ready_for_progression": []}


def test_terminal_role_report(engine, reviewer):
    report, err = engine.generate_progression_report("rev-1")

    assert err is None
    assert report.next_role is None
    assert report.available_progressions == []
    assert report.overall_progress == 100.0


def test_role_outside_chain_is_terminal(engine, admin):
    report, err = engine.generate_progression_report("adm-1")

    assert err is None
    assert report.current_role == "AD"
    assert report.next_role is None


def test_report_unknown_user(engine):
    report, err = engine.generate_progression_report("ghost")

    assert report is None
    assert isinstance(err, UserNotFound)


def test_missing_declared_requirements_block(engine, make_user):
    make_user("u5", "IT")

    report, err = engine.generate_progression_report("u5")

    assert err is None
    option = report.available_progressions[0]
    assert option.auto_eligible is False
    assert option.blocking_requirements == IT_BASIC
    assert option.progress == 0.0
    assert option.estimated_days_to_complete == 0


# ── Automated progression ────────────────────────────────────────────────────


def test_trigger_denied_when_blocking(engine, trainee):
    outcome, err = engine.trigger_automated_progression("u1", "IP", actor="adm-1")

    assert outcome is None
    assert isinstance(err, ProgressionNotEligible)
    assert err.blocking_requirements == IT_BASIC
    assert err.http_status == 422
    assert db.session.get(UserProfile, "u1").role == "IT"

    denied = AuditLog.query.filter_by(action="progression.denied").one()
    assert denied.actor == "adm-1"
    assert denied.diff["blocking_requirements"] == IT_BASIC


def test_trigger_advances_eligible_trainee(engine, trainee, by_name):
    old_ids = {r.id for r in by_name("u1").values()}
    _approve_all(engine, by_name("u1"))

    outcome, err = engine.trigger_automated_progression("u1", "IP", actor="adm-1")

    assert err is None
    assert outcome.previous_role == "IT"
    assert outcome.new_role == "IP"
    assert outcome.new_tier == "basic"
    assert set(outcome.assignment["superseded"]) == old_ids
    assert len(outcome.assignment["created"]) == 3

    assert db.session.get(UserProfile, "u1").role == "IP"
    assert set(by_name("u1")) == set(IP_BASIC)
    assert AuditLog.query.filter_by(action="progression.applied").count() == 1
    assert AuditLog.query.filter_by(action="role.change").count() == 1


def test_trigger_publishes_role_changed(engine, trainee, by_name):
    _approve_all(engine, by_name("u1"))
    seen = []
    unsubscribe = engine.subscribe("role_changed", lambda **payload: seen.append(payload))
    try:
        engine.trigger_automated_progression("u1", "IP")
    finally:
        unsubscribe()

    assert seen == [{"user_id": "u1", "previous_role": "IT", "new_role": "IP", "actor": "system"}]


def test_trigger_into_robust_only_role_switches_tier(engine, make_user, by_name):
    make_user("p1", "IP")
    engine.switch_user_tier("p1", "basic")
    _approve_all(engine, by_name("p1"))

    outcome, err = engine.trigger_automated_progression("p1", "IC")

    assert err is None
    assert outcome.previous_tier == "basic"
    assert outcome.new_tier == "robust"
    assert len(by_name("p1")) == 12
    assert ComplianceTierHistory.query.filter_by(user_id="p1").count() == 2


def test_trigger_wrong_target(engine, trainee):
    outcome, err = engine.trigger_automated_progression("u1", "IC")

    assert outcome is None
    assert isinstance(err, InvalidRole)
    assert "IT progresses to IP" in err.message


def test_trigger_unknown_role(engine, trainee):
    outcome, err = engine.trigger_automated_progression("u1", "ZZ")

    assert outcome is None
    assert isinstance(err, InvalidRole)


def test_trigger_from_end_of_chain(engine, reviewer):
    outcome, err = engine.trigger_automated_progression("rev-1", "AP")

    assert outcome is None
    assert isinstance(err, InvalidRole)
    assert "no further progression" in err.message


def test_trigger_unknown_user(engine):
    outcome, err = engine.trigger_automated_progression("ghost", "IP")

    assert outcome is None
    assert isinstance(err, UserNotFound)


def test_undeclared_path_with_no_records_is_eligible(engine, make_user, by_name):
    make_user("n1", "IN", "basic")

    report, _ = engine.generate_progression_report("n1")
    assert report.available_progressions[0].auto_eligible is True

    outcome, err = engine.trigger_automated_progression("n1", "IT")

    assert err is None
    assert outcome.new_role == "IT"
    assert set(by_name("n1")) == set(IT_BASIC)


# ── Weighted progress ────────────────────────────────────────────────────────


def test_weighted_progress_without_mandatory_points():
    assert weighted_progress([]) == 100.0
