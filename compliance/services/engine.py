"""
ComplianceEngine — the library boundary of the compliance subsystem.

Wires the components together once (constructor injection) and exposes
the boundary operations.  ``create_app`` builds one engine per app and
stores it under ``app.extensions["compliance_engine"]``.

Usage:
    from compliance.services.engine import get_engine

    engine = get_engine()
    outcome, err = engine.switch_user_tier("u1", "basic", changed_by="admin-1")
"""

from flask import current_app

from compliance.services.audit_trail import AuditTrail
from compliance.services.catalog import RequirementCatalog, load_catalog
from compliance.services.events import ComplianceEvents
from compliance.services.progression import ProgressionEvaluator
from compliance.services.record_store import RequirementRecordStore
from compliance.services.statistics import ComplianceStatistics
from compliance.services.tier_assignment import TierAssignmentEngine
from compliance.services.user_directory import UserDirectory
from compliance.utils.helpers import utcnow

EXTENSION_KEY = "compliance_engine"


class ComplianceEngine:
    def __init__(self, document, *, cache_ttl=0, deadline_window_days=7, clock=utcnow):
        self.catalog = RequirementCatalog(document)
        self.events = ComplianceEvents()
        self.directory = UserDirectory()
        self.records = RequirementRecordStore(self.directory, self.events, clock=clock)
        self.tiers = TierAssignmentEngine(self.catalog, self.directory, self.events, clock=clock)
        self.progression = ProgressionEvaluator(
            self.catalog, self.directory, self.records, self.tiers, self.events, clock=clock,
        )
        self.statistics = ComplianceStatistics(
            self.catalog, self.directory, self.records, self.events,
            cache_ttl=cache_ttl, deadline_window_days=deadline_window_days, clock=clock,
        )
        self.audit = AuditTrail(self.directory)

    @classmethod
    def from_config(cls, config, clock=utcnow) -> "ComplianceEngine":
        return cls(
            load_catalog(config["COMPLIANCE_CATALOG_PATH"]),
            cache_ttl=config.get("COMPLIANCE_STATS_CACHE_TTL", 0),
            deadline_window_days=config.get("COMPLIANCE_DEADLINE_WINDOW_DAYS", 7),
            clock=clock,
        )

    # ── Tier assignment ──────────────────────────────────────────────────

    def switch_user_tier(self, user_id, new_tier, changed_by="system", reason=None):
        return self.tiers.switch_user_tier(user_id, new_tier, changed_by=changed_by, reason=reason)

    def assign_tier_requirements(self, user_id, role=None, tier=None, actor="system"):
        return self.tiers.assign_tier_requirements(user_id, role=role, tier=tier, actor=actor)

    def apply_profile_change(self, user_id, changed_by="system", role=None, tier=None, reason=None):
        return self.tiers.apply_profile_change(
            user_id, changed_by=changed_by, role=role, tier=tier, reason=reason,
        )

    def sync_user(self, user_id, changed_by="system"):
        return self.tiers.sync_user(user_id, changed_by=changed_by)

    # ── Records ──────────────────────────────────────────────────────────

    def get_user_requirements(self, user_id, include_superseded=False):
        return self.records.get_records_for_user(user_id, include_superseded=include_superseded)

    def get_record(self, record_id):
        return self.records.get_record(record_id)

    def transition_requirement(self, record_id, new_status, actor, evidence=None,
                               *, expected_updated_at=None, notes=None):
        return self.records.transition(
            record_id, new_status, actor, evidence,
            expected_updated_at=expected_updated_at, notes=notes,
        )

    # ── Progression ──────────────────────────────────────────────────────

    def generate_progression_report(self, user_id):
        return self.progression.generate_progression_report(user_id)

    def trigger_automated_progression(self, user_id, target_role, actor="system"):
        return self.progression.trigger_automated_progression(user_id, target_role, actor=actor)

    # ── Statistics ───────────────────────────────────────────────────────

    def get_compliance_tier_statistics(self):
        return self.statistics.get_compliance_tier_statistics()

    def get_user_completion(self, user_id):
        return self.statistics.get_user_completion(user_id)

    def get_user_tier_info(self, user_id):
        return self.statistics.get_user_tier_info(user_id)

    def get_deadline_alerts(self, within_days=None, user_id=None):
        return self.statistics.get_deadline_alerts(within_days=within_days, user_id=user_id)

    # ── Audit ────────────────────────────────────────────────────────────

    def get_tier_history(self, user_id):
        return self.audit.get_tier_history(user_id)

    def list_audit_events(self, **filters):
        return self.audit.list_audit_events(**filters)

    def subscribe(self, event_type, listener):
        return self.events.subscribe(event_type, listener)


def get_engine() -> ComplianceEngine:
    return current_app.extensions[EXTENSION_KEY]
