"""
Compliance Tier Engine
User directory model.

The directory is owned by the surrounding back office; the engine reads
``(id, role, compliance_tier)`` and writes ``role`` / ``compliance_tier``
only through the tier assignment engine.
"""

from datetime import datetime, timezone

from compliance.models import db


def _utcnow():
    return datetime.now(timezone.utc)


class UserProfile(db.Model):
    """One row per back-office user.  ``compliance_tier`` is NULL until enrolled."""

    __tablename__ = "user_profiles"
    __table_args__ = (
        db.Index("idx_profile_role_tier", "role", "compliance_tier"),
    )

    id = db.Column(db.String(36), primary_key=True)
    display_name = db.Column(db.String(150), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    role = db.Column(
        db.String(4), nullable=False,
        comment="SA | AD | AP | IC | IP | IT | IN",
    )
    compliance_tier = db.Column(
        db.String(10), nullable=True,
        comment="basic | robust | NULL (not enrolled)",
    )
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=_utcnow, onupdate=_utcnow,
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "email": self.email,
            "role": self.role,
            "compliance_tier": self.compliance_tier,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<UserProfile {self.id} role={self.role} tier={self.compliance_tier}>"
