"""
Progression Evaluator — role readiness reports and automated progression.

Path requirements for ``current_role → next_role`` are the catalog's
progression mapping (requirement names within the current role).  When a
path declares none, the user's active current-role records gate it.

A path is auto-eligible iff every mandatory path requirement has a
terminal record (approved / waived).  A declared requirement the user has
no active record for blocks the path as well.

Recommendations are structured codes; rendering is the caller's job:
    resubmit_rejected     — rejected records waiting for new evidence
    overdue               — non-terminal records past their due date
    await_review          — submitted records waiting for a reviewer
    complete_mandatory    — mandatory records not yet submitted
    complete_optional     — optional records not yet submitted
    ready_for_progression — every path requirement is terminal
"""

import logging
from dataclasses import asdict, dataclass, field

from sqlalchemy.exc import SQLAlchemyError

from compliance.core.exceptions import (
    InvalidRole,
    PersistenceError,
    ProgressionNotEligible,
    UserNotFound,
)
from compliance.models import db
from compliance.models.audit import write_audit
from compliance.models.catalog import ROLES
from compliance.utils.helpers import as_utc, days_until, isoformat, utcnow

logger = logging.getLogger(__name__)


# ── Report types ─────────────────────────────────────────────────────────────


@dataclass
class RequirementProgress:
    record_id: int
    requirement_id: int
    name: str
    category: str
    is_mandatory: bool
    points_value: int
    status: str
    progress: int
    due_date: str | None
    days_until_due: int | None


@dataclass
class ProgressionOption:
    target_role: str
    auto_eligible: bool
    estimated_days_to_complete: int
    blocking_requirements: list = field(default_factory=list)
    progress: float = 0.0


@dataclass
class Recommendation:
    code: str
    requirements: list = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.requirements)


@dataclass
class ProgressionReport:
    user_id: str
    current_role: str
    current_tier: str | None
    next_role: str | None
    overall_progress: float
    completed_requirements: list = field(default_factory=list)
    pending_requirements: list = field(default_factory=list)
    available_progressions: list = field(default_factory=list)
    recommendations: list = field(default_factory=list)
    generated_at: str | None = None

    def to_dict(self) -> dict:
        out = asdict(self)
        out["recommendations"] = [
            {"code": r.code, "count": r.count, "requirements": r.requirements}
            for r in self.recommendations
        ]
        return out


@dataclass
class ProgressionOutcome:
    user_id: str
    previous_role: str
    new_role: str
    previous_tier: str | None
    new_tier: str | None
    assignment: dict | None = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class _PathState:
    names: list
    blocking: list
    progress: float
    estimated_days: int

    @property
    def eligible(self) -> bool:
        return not self.blocking


def weighted_progress(records) -> float:
    """Points-weighted status credit over mandatory records; 100 when none carry points."""
    mandatory = [r for r in records if r.requirement.is_mandatory]
    total = sum(r.requirement.points_value for r in mandatory)
    if total == 0:
        return 100.0
    earned = sum(r.requirement.points_value * r.progress for r in mandatory) / 100
    return round(earned / total * 100, 1)


# ── Evaluator ────────────────────────────────────────────────────────────────


class ProgressionEvaluator:
    def __init__(self, catalog, directory, records, tier_engine, events, clock=utcnow):
        self.catalog = catalog
        self.directory = directory
        self.records = records
        self.tier_engine = tier_engine
        self.events = events
        self.clock = clock

    def generate_progression_report(self, user_id):
        user = self.directory.get(user_id)
        if user is None:
            return None, UserNotFound(user_id)

        now = as_utc(self.clock())
        active = self.records.active_records(user.id)
        active.sort(key=lambda r: (r.requirement.display_order, r.id))
        next_role = self.catalog.next_role(user.role)

        if next_role is None:
            return ProgressionReport(
                user_id=user.id,
                current_role=user.role,
                current_tier=user.compliance_tier,
                next_role=None,
                overall_progress=100.0,
                completed_requirements=[self._item(r, now) for r in active if r.is_terminal],
                generated_at=isoformat(now),
            ), None

        path = self._path_state(user, next_role, active, now)
        report = ProgressionReport(
            user_id=user.id,
            current_role=user.role,
            current_tier=user.compliance_tier,
            next_role=next_role,
            overall_progress=weighted_progress(active),
            completed_requirements=[self._item(r, now) for r in active if r.is_terminal],
            pending_requirements=[self._item(r, now) for r in active if not r.is_terminal],
            available_progressions=[ProgressionOption(
                target_role=next_role,
                auto_eligible=path.eligible,
                estimated_days_to_complete=path.estimated_days,
                blocking_requirements=path.blocking,
                progress=path.progress,
            )],
            recommendations=self._recommendations(active, path, now),
            generated_at=isoformat(now),
        )
        return report, None

    def trigger_automated_progression(self, user_id, target_role, actor="system"):
        """Advance the user to *target_role* if every path requirement is terminal.

        Eligibility is re-read inside the per-user critical section.  A
        denial is audited (``progression.denied``) and leaves the role
        unchanged.
        """
        if target_role not in ROLES:
            return None, InvalidRole(target_role)

        with self.directory.critical_section(user_id) as user:
            if user is None:
                db.session.rollback()
                return None, UserNotFound(user_id)

            expected = self.catalog.next_role(user.role)
            if target_role != expected:
                db.session.rollback()
                reason = (
                    f"{user.role} progresses to {expected}" if expected
                    else f"{user.role} has no further progression"
                )
                return None, InvalidRole(target_role, reason=reason)

            now = as_utc(self.clock())
            path = self._path_state(user, target_role, self.records.active_records(user.id), now)
            audit_rows = []
            try:
                if not path.eligible:
                    audit_rows.append(write_audit(
                        entity_type="progression",
                        entity_id=user.id,
                        user_id=user.id,
                        action="progression.denied",
                        actor=actor,
                        diff={
                            "from_role": user.role,
                            "to_role": target_role,
                            "blocking_requirements": path.blocking,
                        },
                        timestamp=now,
                    ))
                    db.session.commit()
                    error = ProgressionNotEligible(user.id, target_role, path.blocking)
                    outcome = None
                else:
                    previous_role, previous_tier = user.role, user.compliance_tier
                    staged = self.tier_engine.stage_role_change(
                        user, target_role, actor, "automated progression", audit_rows,
                    )
                    audit_rows.append(write_audit(
                        entity_type="progression",
                        entity_id=user.id,
                        user_id=user.id,
                        action="progression.applied",
                        actor=actor,
                        diff={
                            "from_role": previous_role,
                            "to_role": target_role,
                            "tier": {"old": previous_tier, "new": user.compliance_tier},
                            "path_requirements": path.names,
                        },
                        timestamp=now,
                    ))
                    db.session.commit()
                    error = None
                    outcome = ProgressionOutcome(
                        user_id=user.id,
                        previous_role=previous_role,
                        new_role=target_role,
                        previous_tier=previous_tier,
                        new_tier=staged.new_tier,
                        assignment=staged.assignment.to_dict() if staged.assignment else None,
                    )
            except SQLAlchemyError as exc:
                db.session.rollback()
                logger.exception("Progression failed", extra={"user_id": user_id})
                raise PersistenceError("automated progression", exc) from exc

        if error:
            logger.info(
                "Progression %s -> %s denied for %s (%d blocking)",
                user.role, target_role, user.id, len(path.blocking),
                extra={"user_id": user.id, "actor": actor},
            )
            self.events.publish_audit(audit_rows)
            return None, error

        logger.info(
            "Progression applied for %s: %s -> %s", outcome.user_id,
            outcome.previous_role, outcome.new_role,
            extra={"user_id": outcome.user_id, "actor": actor},
        )
        self.tier_engine.publish_outcome(staged, actor, audit_rows)
        return outcome, None

    # ── Internals ────────────────────────────────────────────────────────

    def _path_state(self, user, target_role, active, now) -> _PathState:
        current = [r for r in active if r.requirement.role == user.role]
        names = self.catalog.progression_requirement_names(user.role, target_role)
        if names:
            by_name = {r.requirement.name: r for r in current}
            gate = [by_name[n] for n in names if n in by_name]
            missing = [n for n in names if n not in by_name]
        else:
            gate = current
            names = [r.requirement.name for r in current]
            missing = []

        outstanding = [
            r for r in gate if r.requirement.is_mandatory and not r.is_terminal
        ]
        blocking = [r.requirement.name for r in outstanding] + missing

        estimated = 0
        if blocking:
            due = [days_until(r.due_date, now) for r in outstanding if r.due_date]
            estimated = max([0] + due)

        return _PathState(
            names=names,
            blocking=blocking,
            progress=0.0 if missing and not gate else weighted_progress(gate),
            estimated_days=estimated,
        )

    @staticmethod
    def _item(record, now) -> RequirementProgress:
        definition = record.requirement
        return RequirementProgress(
            record_id=record.id,
            requirement_id=definition.id,
            name=definition.name,
            category=definition.category,
            is_mandatory=definition.is_mandatory,
            points_value=definition.points_value,
            status=record.status,
            progress=record.progress,
            due_date=isoformat(record.due_date),
            days_until_due=days_until(record.due_date, now) if record.due_date else None,
        )

    @staticmethod
    def _recommendations(active, path, now) -> list:
        def names(pred):
            return [r.requirement.name for r in active if pred(r)]

        open_work = ("pending", "in_progress")
        candidates = [
            ("resubmit_rejected", names(lambda r: r.status == "rejected")),
            ("overdue", names(
                lambda r: not r.is_terminal and r.due_date is not None
                and as_utc(r.due_date) < now
            )),
            ("await_review", names(lambda r: r.status == "submitted")),
            ("complete_mandatory", names(
                lambda r: r.requirement.is_mandatory and r.status in open_work
            )),
            ("complete_optional", names(
                lambda r: not r.requirement.is_mandatory and r.status in open_work
            )),
        ]
        recs = [Recommendation(code, items) for code, items in candidates if items]
        if path.eligible:
            recs.append(Recommendation("ready_for_progression", []))
        return recs
