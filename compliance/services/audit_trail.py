"""
Audit & change-log queries.

Writes go through ``compliance.models.audit.write_audit`` inside the
mutating service's transaction; this module only reads.
"""

from compliance.core.exceptions import UserNotFound
from compliance.models.audit import AuditLog
from compliance.models.compliance import ComplianceTierHistory


class AuditTrail:
    MAX_PER_PAGE = 200

    def __init__(self, directory):
        self.directory = directory

    def list_audit_events(
        self,
        user_id=None,
        entity_type=None,
        entity_id=None,
        action=None,
        actor=None,
        page=1,
        per_page=50,
    ) -> dict:
        """Paginated audit rows, newest first.  *action* is a prefix match (``record.``)."""
        q = AuditLog.query
        if user_id:
            q = q.filter(AuditLog.user_id == str(user_id))
        if entity_type:
            q = q.filter(AuditLog.entity_type == entity_type)
        if entity_id:
            q = q.filter(AuditLog.entity_id == str(entity_id))
        if action:
            q = q.filter(AuditLog.action.startswith(action))
        if actor:
            q = q.filter(AuditLog.actor == actor)

        q = q.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
        page = max(1, int(page or 1))
        per_page = min(self.MAX_PER_PAGE, max(1, int(per_page or 50)))
        paginated = q.paginate(page=page, per_page=per_page, error_out=False)
        return {
            "audit_logs": [log.to_dict() for log in paginated.items],
            "total": paginated.total,
            "page": paginated.page,
            "per_page": paginated.per_page,
            "pages": paginated.pages,
        }

    def get_tier_history(self, user_id):
        if self.directory.get(user_id) is None:
            return None, UserNotFound(user_id)
        rows = (
            ComplianceTierHistory.query
            .filter_by(user_id=str(user_id))
            .order_by(ComplianceTierHistory.changed_at, ComplianceTierHistory.id)
            .all()
        )
        return rows, None
