"""
Requirement Record Store — per-user compliance records and their lifecycle.

``transition`` is the only way a record's status changes.  It uses
optimistic concurrency on ``updated_at``: the write is a conditional
UPDATE that matches the ``updated_at`` the caller last saw, so a stale
caller gets ``ConflictError`` and nothing is written.  No lock is held.

Each successful transition appends exactly one audit row in the same
transaction and, after commit, publishes ``record_changed``.

Usage:
    record, err = store.transition(
        record_id, "approved", actor="reviewer-7",
        expected_updated_at=seen_updated_at, notes="Looks good",
    )
    if err:
        return api_error(...)
"""

import json
import logging
from datetime import timedelta

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from compliance.core.exceptions import (
    ConflictError,
    InvalidEvidence,
    InvalidTransition,
    PermissionDenied,
    PersistenceError,
    RecordNotFound,
    UserNotFound,
)
from compliance.models import db
from compliance.models.audit import write_audit
from compliance.models.compliance import (
    RECORD_STATUSES,
    RECORD_TRANSITIONS,
    Evidence,
    UserComplianceRecord,
    resolve_action,
)
from compliance.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)

# Who may perform each action besides the system actor
_OWNER_OR_REVIEWER = "owner_or_reviewer"
_REVIEWER = "reviewer"
_ADMIN = "admin"

_ACTION_PERMISSION = {
    "start": _OWNER_OR_REVIEWER,
    "submit": _OWNER_OR_REVIEWER,
    "resubmit": _OWNER_OR_REVIEWER,
    "approve": _REVIEWER,
    "reject": _REVIEWER,
    "waive": _ADMIN,
}

_TICK = timedelta(microseconds=1)


def next_updated_at(previous, now):
    """Return a timestamp strictly after *previous* (clock skew safe)."""
    now = as_utc(now)
    previous = as_utc(previous)
    if previous is not None and now <= previous:
        return previous + _TICK
    return now


class RequirementRecordStore:
    def __init__(self, directory, events, clock=utcnow):
        self.directory = directory
        self.events = events
        self.clock = clock

    # ── Reads ────────────────────────────────────────────────────────────

    def get_records_for_user(self, user_id, include_superseded=False):
        """Return ``(records, None)`` ordered by display order, or ``(None, UserNotFound)``."""
        if self.directory.get(user_id) is None:
            return None, UserNotFound(user_id)
        q = UserComplianceRecord.query.filter_by(user_id=str(user_id))
        if not include_superseded:
            q = q.filter(UserComplianceRecord.is_active.is_(True))
        records = q.all()
        records.sort(key=lambda r: (
            not r.is_active,
            r.requirement.role,
            r.requirement.display_order,
            r.id,
        ))
        return records, None

    def active_records(self, user_id) -> list[UserComplianceRecord]:
        return (
            UserComplianceRecord.query
            .filter_by(user_id=str(user_id), is_active=True)
            .order_by(UserComplianceRecord.id)
            .all()
        )

    def get_record(self, record_id):
        record = db.session.get(UserComplianceRecord, record_id)
        if record is None:
            return None, RecordNotFound(record_id)
        return record, None

    # ── Lifecycle ────────────────────────────────────────────────────────

    def transition(
        self,
        record_id,
        new_status: str,
        actor: str,
        evidence=None,
        *,
        expected_updated_at=None,
        notes: str | None = None,
    ):
        """Move a record to *new_status*.

        Args:
            record_id:  Record PK.
            new_status: Target status (the action is derived from the pair).
            actor:      Acting user id, or ``"system"``.
            evidence:   ``Evidence`` or its dict form; required on resubmit.
            expected_updated_at: The ``updated_at`` the caller last read.
                Defaults to the value read at the start of this call.
            notes:      Review notes stored on approve / reject / waive.

        Returns:
            (record, None) on success, (None, ComplianceError) otherwise.

        Raises:
            PersistenceError: storage failure; nothing was written.
        """
        record = db.session.get(UserComplianceRecord, record_id, populate_existing=True)
        if record is None:
            return None, RecordNotFound(record_id)

        loaded_stamp = record.updated_at
        if expected_updated_at is not None and as_utc(expected_updated_at) != as_utc(loaded_stamp):
            return None, ConflictError(record_id, as_utc(expected_updated_at), as_utc(loaded_stamp))

        current = record.status
        if not record.is_active:
            return None, InvalidTransition(record_id, current, new_status, "record is superseded")
        if new_status not in RECORD_STATUSES:
            return None, InvalidTransition(record_id, current, new_status, "unknown status")
        action = resolve_action(current, new_status)
        if action is None:
            return None, InvalidTransition(record_id, current, new_status)

        denied = self._check_permission(record, action, actor)
        if denied:
            return None, denied

        parsed_evidence = None
        if evidence is not None:
            try:
                parsed_evidence = Evidence.from_dict(evidence)
            except InvalidEvidence as exc:
                return None, exc
        if action == "resubmit" and parsed_evidence is None:
            return None, InvalidEvidence("resubmitting a rejected requirement requires new evidence")

        now = as_utc(self.clock())
        values = self._values_for(action, actor, now, parsed_evidence, notes)
        values["updated_at"] = next_updated_at(loaded_stamp, now)
        values["updated_by"] = actor

        try:
            result = db.session.execute(
                update(UserComplianceRecord)
                .where(
                    UserComplianceRecord.id == record.id,
                    UserComplianceRecord.updated_at == loaded_stamp,
                    UserComplianceRecord.status == current,
                    UserComplianceRecord.is_active.is_(True),
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.session.rollback()
                fresh = db.session.get(UserComplianceRecord, record_id, populate_existing=True)
                logger.info(
                    "Stale transition rejected for record %s", record_id,
                    extra={"record_id": record_id, "actor": actor},
                )
                return None, ConflictError(
                    record_id,
                    as_utc(expected_updated_at or loaded_stamp),
                    as_utc(fresh.updated_at) if fresh else None,
                )

            audit = write_audit(
                entity_type="compliance_record",
                entity_id=record.id,
                user_id=record.user_id,
                action=f"record.{action}",
                actor=actor,
                diff={
                    "requirement": record.requirement.name,
                    "status": {"old": current, "new": new_status},
                    "notes": notes,
                    "evidence_kind": parsed_evidence.kind if parsed_evidence else None,
                },
                timestamp=now,
            )
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.exception("Record transition failed", extra={"record_id": record_id})
            raise PersistenceError("record transition", exc) from exc

        db.session.refresh(record)
        logger.info(
            "Record %s: %s -> %s by %s", record.id, current, new_status, actor,
            extra={"record_id": record.id, "user_id": record.user_id, "actor": actor},
        )
        self.events.publish(
            "record_changed",
            user_id=record.user_id,
            record_ids=[record.id],
            reason=f"record.{action}",
        )
        self.events.publish_audit([audit])
        return record, None

    def _check_permission(self, record, action, actor):
        rule = _ACTION_PERMISSION[action]
        if rule == _ADMIN:
            allowed = self.directory.is_admin(actor)
        elif rule == _REVIEWER:
            allowed = self.directory.is_reviewer(actor)
        else:
            allowed = actor == record.user_id or self.directory.is_reviewer(actor)
        if allowed:
            return None
        return PermissionDenied(actor, action, reason=f"requires {rule.replace('_', ' ')} rights")

    @staticmethod
    def _values_for(action, actor, now, evidence, notes) -> dict:
        values = {"status": RECORD_TRANSITIONS[action]["to"]}
        if evidence is not None:
            values["evidence_json"] = json.dumps(evidence.to_dict())
        if action in ("submit", "resubmit"):
            values["submitted_at"] = now
        if action in ("approve", "reject", "waive"):
            values["reviewed_at"] = now
            values["reviewed_by"] = actor
            values["review_notes"] = notes
        if action in ("approve", "waive"):
            values["completion_date"] = now
        return values
