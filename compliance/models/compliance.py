"""
Compliance Tier Engine
Per-user compliance state.

Models:
    - UserComplianceRecord: one requirement assigned to one user, with status.
    - ComplianceTierHistory: append-only log of tier switches.

Status lifecycle (RECORD_TRANSITIONS, keyed by action):
    pending ──start──▶ in_progress
    pending / in_progress ──submit──▶ submitted
    submitted ──approve──▶ approved (terminal)
    submitted ──reject──▶ rejected ──resubmit──▶ submitted
    pending / in_progress / submitted ──waive──▶ waived (terminal)
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone

from compliance.core.exceptions import InvalidEvidence
from compliance.models import db

# ── Constants ────────────────────────────────────────────────────────────────

RECORD_STATUSES = ("pending", "in_progress", "submitted", "approved", "rejected", "waived")

TERMINAL_STATUSES = frozenset({"approved", "waived"})

RECORD_TRANSITIONS = {
    "start": {"from": ["pending"], "to": "in_progress"},
    "submit": {"from": ["pending", "in_progress"], "to": "submitted"},
    "resubmit": {"from": ["rejected"], "to": "submitted"},
    "approve": {"from": ["submitted"], "to": "approved"},
    "reject": {"from": ["submitted"], "to": "rejected"},
    "waive": {"from": ["pending", "in_progress", "submitted"], "to": "waived"},
}

# Progress-bar credit per status; eligibility and completion only count terminal.
STATUS_PROGRESS = {
    "pending": 0,
    "in_progress": 50,
    "submitted": 50,
    "rejected": 0,
    "approved": 100,
    "waived": 100,
}

EVIDENCE_KINDS = frozenset({"file_upload", "form", "external_link", "attestation"})


def _utcnow():
    return datetime.now(timezone.utc)


def resolve_action(current_status: str, new_status: str) -> str | None:
    """Return the action that moves *current_status* to *new_status*, if any."""
    for action, rule in RECORD_TRANSITIONS.items():
        if rule["to"] == new_status and current_status in rule["from"]:
            return action
    return None


def available_statuses(current_status: str) -> list[str]:
    return [
        rule["to"] for rule in RECORD_TRANSITIONS.values()
        if current_status in rule["from"]
    ]


# ── Evidence payload ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Evidence:
    """Submitted proof for a requirement.  ``data`` is passed through untouched."""

    kind: str
    data: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload) -> "Evidence":
        if isinstance(payload, Evidence):
            return payload
        if not isinstance(payload, dict):
            raise InvalidEvidence("evidence must be a JSON object")
        kind = payload.get("kind")
        if kind not in EVIDENCE_KINDS:
            raise InvalidEvidence(
                f"kind must be one of: {', '.join(sorted(EVIDENCE_KINDS))}"
            )
        data = payload.get("data", {})
        if not isinstance(data, dict):
            raise InvalidEvidence("data must be a JSON object")
        return cls(kind=kind, data=data)

    def to_dict(self) -> dict:
        return {"kind": self.kind, "data": self.data}


# ── Models ───────────────────────────────────────────────────────────────────

class UserComplianceRecord(db.Model):
    """
    A requirement materialised for one user.

    Rows are never deleted.  When a tier or role change drops the
    requirement, ``is_active`` is cleared and ``superseded_at`` set; the row
    stays for history and is excluded from every completion figure.

    ``updated_at`` doubles as the optimistic-concurrency token for
    ``RequirementRecordStore.transition``.
    """

    __tablename__ = "user_compliance_records"
    __table_args__ = (
        db.Index("idx_ucr_user_active", "user_id", "is_active"),
        db.Index("idx_ucr_user_requirement", "user_id", "requirement_id"),
        db.Index("idx_ucr_status", "status"),
        db.Index("idx_ucr_due", "due_date"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.String(36),
        db.ForeignKey("user_profiles.id", ondelete="CASCADE"),
        nullable=False,
    )
    requirement_id = db.Column(
        db.Integer,
        db.ForeignKey("requirement_definitions.id", ondelete="RESTRICT"),
        nullable=False,
    )
    tier = db.Column(db.String(10), nullable=False, comment="Tier at assignment (denormalized)")
    status = db.Column(
        db.String(20), nullable=False, default="pending",
        comment="pending | in_progress | submitted | approved | rejected | waived",
    )

    assigned_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    due_date = db.Column(db.DateTime(timezone=True), nullable=True)
    completion_date = db.Column(db.DateTime(timezone=True), nullable=True)
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    reviewed_by = db.Column(db.String(150), nullable=True)
    review_notes = db.Column(db.Text, nullable=True)
    evidence_json = db.Column(db.Text, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    superseded_at = db.Column(db.DateTime(timezone=True), nullable=True)

    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_by = db.Column(db.String(150), nullable=False, default="system")

    requirement = db.relationship("RequirementDefinition", lazy="joined")

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def evidence(self) -> Evidence | None:
        if not self.evidence_json:
            return None
        try:
            return Evidence.from_dict(json.loads(self.evidence_json))
        except (json.JSONDecodeError, TypeError, InvalidEvidence):
            return None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def progress(self) -> int:
        return STATUS_PROGRESS.get(self.status, 0)

    def to_dict(self) -> dict:
        evidence = self.evidence
        return {
            "id": self.id,
            "user_id": self.user_id,
            "requirement_id": self.requirement_id,
            "tier": self.tier,
            "status": self.status,
            "progress": self.progress,
            "assigned_at": _iso(self.assigned_at),
            "due_date": _iso(self.due_date),
            "completion_date": _iso(self.completion_date),
            "submitted_at": _iso(self.submitted_at),
            "reviewed_at": _iso(self.reviewed_at),
            "reviewed_by": self.reviewed_by,
            "review_notes": self.review_notes,
            "evidence": evidence.to_dict() if evidence else None,
            "is_active": self.is_active,
            "superseded_at": _iso(self.superseded_at),
            "updated_at": _iso(self.updated_at),
            "updated_by": self.updated_by,
            "available_statuses": available_statuses(self.status) if self.is_active else [],
        }

    def __repr__(self):
        return f"<UserComplianceRecord {self.id}: {self.user_id}/{self.requirement_id} {self.status}>"


class ComplianceTierHistory(db.Model):
    """Append-only: one row per effective tier switch."""

    __tablename__ = "compliance_tier_history"
    __table_args__ = (
        db.Index("idx_tierhist_user", "user_id", "changed_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.String(36),
        db.ForeignKey("user_profiles.id", ondelete="CASCADE"),
        nullable=False,
    )
    previous_tier = db.Column(db.String(10), nullable=True)
    new_tier = db.Column(db.String(10), nullable=False)
    changed_by = db.Column(db.String(150), nullable=False)
    reason = db.Column(db.Text, nullable=True)
    requirements_affected = db.Column(db.Integer, nullable=False, default=0)
    changed_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "previous_tier": self.previous_tier,
            "new_tier": self.new_tier,
            "changed_by": self.changed_by,
            "reason": self.reason,
            "requirements_affected": self.requirements_affected,
            "changed_at": _iso(self.changed_at),
        }

    def __repr__(self):
        return f"<ComplianceTierHistory {self.id}: {self.user_id} {self.previous_tier}->{self.new_tier}>"


def _iso(value):
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()
