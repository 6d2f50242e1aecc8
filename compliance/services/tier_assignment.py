"""
Tier Assignment Engine.

Decides which requirement records a user holds for their (role, tier) and
keeps the record set in line with the catalog when the tier or role moves.

Reconciliation rules (one transaction, inside the per-user critical section):
    - definition in target set, no active record      → create ``pending``
    - active record, same (role, name) in target set  → carry forward: re-point
      to the target definition, status / evidence / dates preserved
    - active record, not in target set                → supersede (inactive,
      ``superseded_at`` set, row retained)
    - anything else                                   → untouched

A reconciliation that changes nothing writes nothing (no audit row either),
which makes ``assign_tier_requirements`` and ``sync_user`` idempotent.

Usage:
    outcome, err = engine.switch_user_tier("u1", "robust", changed_by="admin-1")
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from compliance.core.exceptions import (
    InvalidRole,
    InvalidTier,
    PersistenceError,
    UserNotFound,
)
from compliance.models import db
from compliance.models.audit import write_audit
from compliance.models.catalog import ROLES, TIERS
from compliance.models.compliance import ComplianceTierHistory, UserComplianceRecord
from compliance.services.record_store import next_updated_at
from compliance.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass
class AssignmentSummary:
    user_id: str
    role: str
    tier: str | None
    created: list = field(default_factory=list)
    carried_forward: list = field(default_factory=list)
    superseded: list = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.created or self.carried_forward or self.superseded)

    @property
    def total(self) -> int:
        return len(self.created) + len(self.carried_forward) + len(self.superseded)

    @property
    def record_ids(self) -> list:
        return self.created + self.carried_forward + self.superseded

    def to_dict(self) -> dict:
        out = asdict(self)
        out["changed"] = self.changed
        return out


@dataclass
class TierSwitchOutcome:
    """Result of a tier switch or profile change."""

    user_id: str
    previous_role: str
    new_role: str
    previous_tier: str | None
    new_tier: str | None
    changed: bool
    history_id: int | None = None
    assignment: AssignmentSummary | None = None

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "previous_role": self.previous_role,
            "new_role": self.new_role,
            "previous_tier": self.previous_tier,
            "new_tier": self.new_tier,
            "changed": self.changed,
            "history_id": self.history_id,
            "assignment": self.assignment.to_dict() if self.assignment else None,
        }


class TierAssignmentEngine:
    def __init__(self, catalog, directory, events, clock=utcnow):
        self.catalog = catalog
        self.directory = directory
        self.events = events
        self.clock = clock

    # ── Public operations ────────────────────────────────────────────────

    def switch_user_tier(self, user_id, new_tier, changed_by="system", reason=None):
        """Move a user to *new_tier* and reconcile their records.

        Same tier is a successful no-op (``changed=False``): no history row,
        no record churn, no audit row.
        """
        if new_tier not in TIERS:
            return None, InvalidTier(new_tier, reason=f"must be one of {', '.join(TIERS)}")

        with self.directory.critical_section(user_id) as user:
            if user is None:
                db.session.rollback()
                return None, UserNotFound(user_id)
            if not self.catalog.tier_allowed(user.role, new_tier):
                db.session.rollback()
                return None, InvalidTier(new_tier, reason=self._policy_reason(user.role))
            if user.compliance_tier == new_tier:
                db.session.rollback()
                return TierSwitchOutcome(
                    user_id=user.id,
                    previous_role=user.role,
                    new_role=user.role,
                    previous_tier=new_tier,
                    new_tier=new_tier,
                    changed=False,
                ), None

            audit_rows = []
            try:
                outcome = self.stage_tier_change(
                    user, new_tier, changed_by, reason, audit_rows,
                )
                db.session.commit()
            except SQLAlchemyError as exc:
                db.session.rollback()
                logger.exception("Tier switch failed", extra={"user_id": user_id})
                raise PersistenceError("tier switch", exc) from exc

        self.publish_outcome(outcome, changed_by, audit_rows)
        return outcome, None

    def assign_tier_requirements(self, user_id, role=None, tier=None, actor="system"):
        """Materialise the (role, tier) requirement set for a user.

        *role* and *tier* default to the user's profile.  Returns
        ``(AssignmentSummary, None)``; an unchanged set yields an empty summary
        and zero writes.
        """
        if role is not None and role not in ROLES:
            return None, InvalidRole(role)
        if tier is not None and tier not in TIERS:
            return None, InvalidTier(tier, reason=f"must be one of {', '.join(TIERS)}")

        with self.directory.critical_section(user_id) as user:
            if user is None:
                db.session.rollback()
                return None, UserNotFound(user_id)
            role = role or user.role
            tier = tier or user.compliance_tier
            if tier is None:
                db.session.rollback()
                return None, InvalidTier(None, reason="user has no compliance tier")
            if not self.catalog.tier_allowed(role, tier):
                db.session.rollback()
                return None, InvalidTier(tier, reason=self._policy_reason(role))

            audit_rows = []
            try:
                summary = self.reconcile(user, role, tier, actor)
                if not summary.changed:
                    db.session.rollback()
                    return summary, None
                audit_rows.append(self._assignment_audit(summary, actor, "assign"))
                db.session.commit()
            except SQLAlchemyError as exc:
                db.session.rollback()
                logger.exception("Requirement assignment failed", extra={"user_id": user_id})
                raise PersistenceError("requirement assignment", exc) from exc

        self.events.publish(
            "record_changed", user_id=summary.user_id,
            record_ids=summary.record_ids, reason="tier.requirements_assigned",
        )
        self.events.publish_audit(audit_rows)
        return summary, None

    def apply_profile_change(self, user_id, changed_by="system", role=None, tier=None, reason=None):
        """Apply an external role and/or tier edit, then reconcile.

        A role change whose current tier is not allowed for the new role
        falls back to the role's default tier.  An explicitly requested tier
        that the (new) role does not allow is rejected.
        """
        if role is not None and role not in ROLES:
            return None, InvalidRole(role)
        if tier is not None and tier not in TIERS:
            return None, InvalidTier(tier, reason=f"must be one of {', '.join(TIERS)}")

        with self.directory.critical_section(user_id) as user:
            if user is None:
                db.session.rollback()
                return None, UserNotFound(user_id)
            new_role = role or user.role
            if tier is not None and not self.catalog.tier_allowed(new_role, tier):
                db.session.rollback()
                return None, InvalidTier(tier, reason=self._policy_reason(new_role))

            audit_rows = []
            try:
                if new_role != user.role:
                    outcome = self.stage_role_change(
                        user, new_role, changed_by, reason, audit_rows, tier=tier,
                    )
                elif tier is not None and tier != user.compliance_tier:
                    outcome = self.stage_tier_change(user, tier, changed_by, reason, audit_rows)
                else:
                    outcome = self._stage_sync(user, changed_by, audit_rows)

                if not outcome.changed:
                    db.session.rollback()
                    return outcome, None
                db.session.commit()
            except SQLAlchemyError as exc:
                db.session.rollback()
                logger.exception("Profile change failed", extra={"user_id": user_id})
                raise PersistenceError("profile change", exc) from exc

        self.publish_outcome(outcome, changed_by, audit_rows)
        return outcome, None

    def sync_user(self, user_id, changed_by="system"):
        """Re-reconcile records from the user's current profile."""
        with self.directory.critical_section(user_id) as user:
            if user is None:
                db.session.rollback()
                return None, UserNotFound(user_id)
            audit_rows = []
            try:
                outcome = self._stage_sync(user, changed_by, audit_rows)
                if not outcome.changed:
                    db.session.rollback()
                    return outcome.assignment, None
                db.session.commit()
            except SQLAlchemyError as exc:
                db.session.rollback()
                logger.exception("User sync failed", extra={"user_id": user_id})
                raise PersistenceError("user sync", exc) from exc

        self.publish_outcome(outcome, changed_by, audit_rows)
        return outcome.assignment, None

    # ── Staging (caller holds the critical section and owns the commit) ──

    def stage_tier_change(self, user, new_tier, actor, reason, audit_rows) -> TierSwitchOutcome:
        previous_tier = user.compliance_tier
        now = as_utc(self.clock())
        history = ComplianceTierHistory(
            user_id=user.id,
            previous_tier=previous_tier,
            new_tier=new_tier,
            changed_by=actor,
            reason=reason,
            changed_at=now,
        )
        db.session.add(history)
        user.compliance_tier = new_tier
        summary = self.reconcile(user, user.role, new_tier, actor, now=now)
        history.requirements_affected = summary.total
        db.session.flush()

        audit_rows.append(write_audit(
            entity_type="user",
            entity_id=user.id,
            user_id=user.id,
            action="tier.switch",
            actor=actor,
            diff={
                "compliance_tier": {"old": previous_tier, "new": new_tier},
                "reason": reason,
                "created": summary.created,
                "carried_forward": summary.carried_forward,
                "superseded": summary.superseded,
            },
            timestamp=now,
        ))
        logger.info(
            "User %s tier %s -> %s (%d records affected)",
            user.id, previous_tier, new_tier, summary.total,
            extra={"user_id": user.id, "actor": actor},
        )
        return TierSwitchOutcome(
            user_id=user.id,
            previous_role=user.role,
            new_role=user.role,
            previous_tier=previous_tier,
            new_tier=new_tier,
            changed=True,
            history_id=history.id,
            assignment=summary,
        )

    def stage_role_change(self, user, new_role, actor, reason, audit_rows, tier=None) -> TierSwitchOutcome:
        previous_role = user.role
        previous_tier = user.compliance_tier
        now = as_utc(self.clock())

        target_tier = tier or previous_tier
        if target_tier is not None and not self.catalog.tier_allowed(new_role, target_tier):
            target_tier = self.catalog.default_tier(new_role)

        user.role = new_role
        audit_rows.append(write_audit(
            entity_type="user",
            entity_id=user.id,
            user_id=user.id,
            action="role.change",
            actor=actor,
            diff={"role": {"old": previous_role, "new": new_role}, "reason": reason},
            timestamp=now,
        ))
        logger.info(
            "User %s role %s -> %s", user.id, previous_role, new_role,
            extra={"user_id": user.id, "actor": actor},
        )

        if target_tier != previous_tier:
            outcome = self.stage_tier_change(user, target_tier, actor, reason, audit_rows)
        else:
            outcome = self._stage_sync(user, actor, audit_rows)
        outcome.previous_role = previous_role
        outcome.new_role = new_role
        outcome.changed = True
        return outcome

    def _stage_sync(self, user, actor, audit_rows) -> TierSwitchOutcome:
        summary = self.reconcile(user, user.role, user.compliance_tier, actor)
        if summary.changed:
            audit_rows.append(self._assignment_audit(summary, actor, "sync"))
        return TierSwitchOutcome(
            user_id=user.id,
            previous_role=user.role,
            new_role=user.role,
            previous_tier=user.compliance_tier,
            new_tier=user.compliance_tier,
            changed=summary.changed,
            assignment=summary,
        )

    # ── Reconciliation ───────────────────────────────────────────────────

    def reconcile(self, user, role, tier, actor, now=None) -> AssignmentSummary:
        """Bring the user's active records in line with (role, tier).  Flushes only."""
        now = as_utc(now or self.clock())
        targets = self.catalog.definitions_for(role, tier) if tier else []
        by_name = {d.name: d for d in targets}
        summary = AssignmentSummary(user_id=user.id, role=role, tier=tier)

        active = (
            UserComplianceRecord.query
            .filter_by(user_id=user.id, is_active=True)
            .order_by(UserComplianceRecord.id)
            .all()
        )
        claimed = set()
        for record in active:
            definition = record.requirement
            target = by_name.get(definition.name) if definition.role == role else None
            if target is None or target.name in claimed:
                record.is_active = False
                record.superseded_at = now
                self._touch(record, actor, now)
                summary.superseded.append(record.id)
                continue
            claimed.add(target.name)
            if record.requirement_id != target.id or record.tier != tier:
                record.requirement_id = target.id
                record.requirement = target
                record.tier = tier
                self._touch(record, actor, now)
                summary.carried_forward.append(record.id)

        new_records = []
        for definition in targets:
            if definition.name in claimed:
                continue
            record = UserComplianceRecord(
                user_id=user.id,
                requirement_id=definition.id,
                tier=tier,
                status="pending",
                assigned_at=now,
                due_date=now + timedelta(days=definition.due_days_from_assignment),
                is_active=True,
                updated_at=now,
                updated_by=actor,
            )
            db.session.add(record)
            new_records.append(record)
        db.session.flush()
        summary.created = [r.id for r in new_records]

        if summary.changed:
            logger.debug(
                "Reconciled %s for %s/%s: +%d ~%d -%d",
                user.id, role, tier,
                len(summary.created), len(summary.carried_forward), len(summary.superseded),
                extra={"user_id": user.id},
            )
        return summary

    # ── Helpers ──────────────────────────────────────────────────────────

    @staticmethod
    def _touch(record, actor, now):
        record.updated_at = next_updated_at(record.updated_at, now)
        record.updated_by = actor

    def _policy_reason(self, role) -> str:
        return f"role {role} allows only: {', '.join(self.catalog.allowed_tiers(role))}"

    @staticmethod
    def _assignment_audit(summary, actor, trigger):
        return write_audit(
            entity_type="user",
            entity_id=summary.user_id,
            user_id=summary.user_id,
            action="tier.requirements_assigned",
            actor=actor,
            diff={
                "trigger": trigger,
                "role": summary.role,
                "tier": summary.tier,
                "created": summary.created,
                "carried_forward": summary.carried_forward,
                "superseded": summary.superseded,
            },
        )

    def publish_outcome(self, outcome, actor, audit_rows):
        if outcome.previous_role != outcome.new_role:
            self.events.publish(
                "role_changed", user_id=outcome.user_id,
                previous_role=outcome.previous_role, new_role=outcome.new_role, actor=actor,
            )
        if outcome.previous_tier != outcome.new_tier:
            self.events.publish(
                "tier_changed", user_id=outcome.user_id,
                previous_tier=outcome.previous_tier, new_tier=outcome.new_tier, actor=actor,
            )
        if outcome.assignment and outcome.assignment.changed:
            self.events.publish(
                "record_changed", user_id=outcome.user_id,
                record_ids=outcome.assignment.record_ids, reason="reconcile",
            )
        self.events.publish_audit(audit_rows)
