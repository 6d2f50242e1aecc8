"""
Compliance Tier Engine
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for compliance events.
"""

import json
from datetime import UTC, datetime

from compliance.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {"compliance_record", "user", "progression"}

AUDIT_ACTIONS = {
    # Record lifecycle
    "record.start",
    "record.submit",
    "record.resubmit",
    "record.approve",
    "record.reject",
    "record.waive",
    # Tier assignment
    "tier.switch",
    "tier.requirements_assigned",
    "role.change",
    # Progression
    "progression.applied",
    "progression.denied",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every compliance mutation.

    One row per action.  ``diff_json`` carries the old→new snapshot for
    field-level changes, or the record ids touched by a reconciliation.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_user", "user_id"),
        db.Index("idx_audit_actor", "actor"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="compliance_record | user | progression",
    )
    entity_id = db.Column(
        db.String(36), nullable=False,
        comment="PK of the referenced entity (int-as-string or user id)",
    )
    user_id = db.Column(
        db.String(36), nullable=True,
        comment="Subject user whose compliance state changed",
    )

    # What happened
    action = db.Column(
        db.String(60), nullable=False,
        comment="record.approve | tier.switch | progression.denied | …",
    )
    actor = db.Column(db.String(150), nullable=False, default="system")

    # Change payload
    diff_json = db.Column(db.Text, default="{}")

    # Timestamp (immutable)
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        ts = self.timestamp
        if ts is not None and ts.tzinfo is None:
            ts = ts.replace(tzinfo=UTC)
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "user_id": self.user_id,
            "action": self.action,
            "actor": self.actor,
            "diff": self.diff,
            "timestamp": ts.isoformat() if ts else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id,
    action: str,
    actor: str = "system",
    user_id: str | None = None,
    diff: dict | None = None,
    timestamp: datetime | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control; the row commits or rolls back with the change
    it describes.

    Returns the (flushed) AuditLog instance.
    """
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action: {action}")

    log = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        user_id=user_id,
        action=action,
        actor=actor or "system",
        diff_json=json.dumps(diff or {}, default=str),
    )
    if timestamp is not None:
        log.timestamp = timestamp
    db.session.add(log)
    db.session.flush()
    return log
