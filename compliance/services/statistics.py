"""
Compliance statistics and aggregation.

Completion for a user = Σ points of terminal (approved / waived) mandatory
active records ÷ Σ points of mandatory active records × 100.  A user with
no mandatory points is 100% complete.  A tier with no users averages 0.

Reads are recomputed on demand.  An optional TTL cache
(``COMPLIANCE_STATS_CACHE_TTL`` seconds, 0 = off) is dropped on every
``record_changed`` / ``tier_changed`` / ``role_changed`` event.
"""

import logging
import threading
import time
from datetime import timedelta

from sqlalchemy import case, func

from compliance.core.exceptions import UserNotFound
from compliance.models import db
from compliance.models.catalog import ROLE_LABELS, RequirementDefinition
from compliance.models.compliance import TERMINAL_STATUSES, UserComplianceRecord
from compliance.models.user import UserProfile
from compliance.services.progression import weighted_progress
from compliance.utils.helpers import as_utc, days_until, isoformat, utcnow

logger = logging.getLogger(__name__)

ADVANCE_TIER_THRESHOLD = 80.0

_INVALIDATING_EVENTS = ("record_changed", "tier_changed", "role_changed")


def alert_level(days: int) -> str:
    if days <= 0:
        return "overdue"
    if days <= 1:
        return "urgent"
    return "warning"


def _pct(earned, total) -> float:
    if not total:
        return 100.0
    return round(earned / total * 100, 1)


class ComplianceStatistics:
    def __init__(self, catalog, directory, records, events, cache_ttl=0,
                 deadline_window_days=7, clock=utcnow):
        self.catalog = catalog
        self.directory = directory
        self.records = records
        self.cache_ttl = cache_ttl
        self.deadline_window_days = deadline_window_days
        self.clock = clock
        self._cache: dict = {}  # key → (expires_monotonic, value)
        self._cache_lock = threading.Lock()
        for event_type in _INVALIDATING_EVENTS:
            events.subscribe(event_type, self.invalidate)

    # ── Cache ────────────────────────────────────────────────────────────

    def invalidate(self, **_payload):
        with self._cache_lock:
            self._cache.clear()

    def _cached(self, key, compute):
        if self.cache_ttl <= 0:
            return compute()
        now = time.monotonic()
        with self._cache_lock:
            hit = self._cache.get(key)
            if hit and hit[0] > now:
                return dict(hit[1])
        value = compute()
        with self._cache_lock:
            self._cache[key] = (now + self.cache_ttl, value)
        return dict(value)

    # ── Organisation-wide ────────────────────────────────────────────────

    def get_compliance_tier_statistics(self) -> dict:
        return self._cached("tier_statistics", self._compute_tier_statistics)

    def _compute_tier_statistics(self) -> dict:
        points = self._mandatory_points_by_user()
        completion = {"basic": [], "robust": []}
        unassigned = total = 0
        for user_id, tier in db.session.query(UserProfile.id, UserProfile.compliance_tier):
            total += 1
            if tier not in completion:
                unassigned += 1
                continue
            earned, possible = points.get(user_id, (0, 0))
            completion[tier].append(_pct(earned, possible))

        def avg(values):
            return round(sum(values) / len(values), 1) if values else 0.0

        enrolled = completion["basic"] + completion["robust"]
        return {
            "basic_tier_users": len(completion["basic"]),
            "robust_tier_users": len(completion["robust"]),
            "unassigned_users": unassigned,
            "basic_completion_avg": avg(completion["basic"]),
            "robust_completion_avg": avg(completion["robust"]),
            "organization_completion_avg": avg(enrolled),
            "total_users": total,
        }

    def _mandatory_points_by_user(self) -> dict:
        """user_id → (terminal mandatory points, mandatory points) over active records."""
        terminal_points = func.sum(case(
            (UserComplianceRecord.status.in_(sorted(TERMINAL_STATUSES)),
             RequirementDefinition.points_value),
            else_=0,
        ))
        rows = (
            db.session.query(
                UserComplianceRecord.user_id,
                terminal_points,
                func.sum(RequirementDefinition.points_value),
            )
            .join(RequirementDefinition, UserComplianceRecord.requirement_id == RequirementDefinition.id)
            .filter(
                UserComplianceRecord.is_active.is_(True),
                RequirementDefinition.is_mandatory.is_(True),
            )
            .group_by(UserComplianceRecord.user_id)
            .all()
        )
        return {user_id: (int(earned or 0), int(possible or 0)) for user_id, earned, possible in rows}

    # ── Per user ─────────────────────────────────────────────────────────

    def get_user_completion(self, user_id):
        user = self.directory.get(user_id)
        if user is None:
            return None, UserNotFound(user_id)
        return self._completion(user, self.records.active_records(user.id)), None

    def _completion(self, user, active) -> dict:
        mandatory = [r for r in active if r.requirement.is_mandatory]
        possible = sum(r.requirement.points_value for r in mandatory)
        earned = sum(r.requirement.points_value for r in mandatory if r.is_terminal)
        return {
            "user_id": user.id,
            "tier": user.compliance_tier,
            "total_requirements": len(active),
            "completed_requirements": sum(1 for r in active if r.is_terminal),
            "mandatory_requirements": len(mandatory),
            "completed_mandatory": sum(1 for r in mandatory if r.is_terminal),
            "mandatory_points": possible,
            "completed_points": earned,
            "completion_percentage": _pct(earned, possible),
            "weighted_progress": weighted_progress(active),
        }

    def get_user_tier_info(self, user_id):
        user = self.directory.get(user_id)
        if user is None:
            return None, UserNotFound(user_id)

        now = as_utc(self.clock())
        active = self.records.active_records(user.id)
        info = self._completion(user, active)
        info.update({
            "role": user.role,
            "role_label": ROLE_LABELS.get(user.role, user.role),
            "next_due": self._next_due(active, now),
        })

        blocked = None
        if user.compliance_tier is None:
            blocked = "tier_not_assigned"
        elif user.compliance_tier == "robust":
            blocked = "already_robust"
        elif not (self.catalog.tier_allowed(user.role, "robust")
                  and self.catalog.has_template(user.role, "robust")):
            blocked = "robust_not_available"
        elif info["completion_percentage"] < ADVANCE_TIER_THRESHOLD:
            blocked = "insufficient_completion"
        info["can_advance_tier"] = blocked is None
        info["advancement_blocked_reason"] = blocked
        return info, None

    @staticmethod
    def _next_due(active, now):
        open_records = [r for r in active if not r.is_terminal and r.due_date is not None]
        if not open_records:
            return None
        record = min(open_records, key=lambda r: as_utc(r.due_date))
        return {
            "record_id": record.id,
            "name": record.requirement.name,
            "status": record.status,
            "due_date": isoformat(record.due_date),
            "days_until_due": days_until(record.due_date, now),
        }

    # ── Deadlines ────────────────────────────────────────────────────────

    def get_deadline_alerts(self, within_days=None, user_id=None):
        """Non-terminal active records due within *within_days* (overdue included)."""
        if within_days is None:
            within_days = self.deadline_window_days
        if user_id is not None and self.directory.get(user_id) is None:
            return None, UserNotFound(user_id)

        now = as_utc(self.clock())
        horizon = now + timedelta(days=within_days)
        q = (
            UserComplianceRecord.query
            .filter(
                UserComplianceRecord.is_active.is_(True),
                UserComplianceRecord.status.notin_(sorted(TERMINAL_STATUSES)),
                UserComplianceRecord.due_date.isnot(None),
                UserComplianceRecord.due_date <= horizon,
            )
        )
        if user_id is not None:
            q = q.filter(UserComplianceRecord.user_id == str(user_id))

        alerts = []
        for record in q.order_by(UserComplianceRecord.due_date, UserComplianceRecord.id):
            days = days_until(record.due_date, now)
            alerts.append({
                "record_id": record.id,
                "user_id": record.user_id,
                "requirement": record.requirement.name,
                "is_mandatory": record.requirement.is_mandatory,
                "status": record.status,
                "due_date": isoformat(record.due_date),
                "days_until_due": days,
                "level": alert_level(days),
            })
        return alerts, None
