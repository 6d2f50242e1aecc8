"""
User directory access and the per-user critical section.

The engine reads ``(id, role, compliance_tier)`` from ``user_profiles``.
Every operation that rewrites a user's record set (tier switch, role
change, progression) runs inside ``critical_section``: a process-local
keyed lock plus ``SELECT ... FOR UPDATE`` on the profile row.  SQLite
ignores FOR UPDATE; the keyed lock still serialises writers in-process.
"""

import logging
import threading
from contextlib import contextmanager

from sqlalchemy import select

from compliance.models import db
from compliance.models.catalog import ROLES
from compliance.models.user import UserProfile

logger = logging.getLogger(__name__)

REVIEWER_ROLES = frozenset({"SA", "AD", "AP"})
ADMIN_ROLES = frozenset({"SA", "AD"})
SYSTEM_ACTOR = "system"


class KeyedLock:
    """One re-entrant lock per key, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict = {}  # key → [RLock, holders]

    @contextmanager
    def hold(self, key):
        with self._guard:
            entry = self._locks.setdefault(key, [threading.RLock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self):
        with self._guard:
            return len(self._locks)


class UserDirectory:
    def __init__(self):
        self._locks = KeyedLock()

    def get(self, user_id) -> UserProfile | None:
        if not user_id:
            return None
        return db.session.get(UserProfile, str(user_id))

    def get_for_update(self, user_id) -> UserProfile | None:
        stmt = (
            select(UserProfile)
            .where(UserProfile.id == str(user_id))
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return db.session.execute(stmt).scalar_one_or_none()

    @contextmanager
    def critical_section(self, user_id):
        """Serialise record-set rewrites for one user.  Yields the locked profile or None."""
        with self._locks.hold(str(user_id)):
            yield self.get_for_update(user_id)

    # ── Actor capabilities ───────────────────────────────────────────────

    def actor_role(self, actor: str) -> str | None:
        if actor == SYSTEM_ACTOR:
            return "SA"
        profile = self.get(actor)
        return profile.role if profile and profile.role in ROLES else None

    def is_reviewer(self, actor: str) -> bool:
        return self.actor_role(actor) in REVIEWER_ROLES

    def is_admin(self, actor: str) -> bool:
        return self.actor_role(actor) in ADMIN_ROLES
