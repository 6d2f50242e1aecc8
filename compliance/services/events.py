"""
In-process change notifications.

Services publish AFTER their transaction commits, so a listener never
observes state that could still roll back.  A failing listener is logged
and skipped; the committed work and the remaining listeners are unaffected.

Events and payload keys:
    record_changed  — user_id, record_ids, reason
    tier_changed    — user_id, previous_tier, new_tier, actor
    role_changed    — user_id, previous_role, new_role, actor
    audit_appended  — entry (AuditLog.to_dict())

Usage:
    events = ComplianceEvents()
    unsubscribe = events.subscribe("record_changed", on_record_changed)
    events.publish("record_changed", user_id="u1", record_ids=[3], reason="record.approve")
"""

import logging
import threading

logger = logging.getLogger(__name__)

EVENT_TYPES = frozenset({"record_changed", "tier_changed", "role_changed", "audit_appended"})


class ComplianceEvents:
    """Subscriber registry keyed by event type."""

    def __init__(self):
        self._lock = threading.Lock()
        self._listeners: dict[str, list] = {name: [] for name in EVENT_TYPES}

    def subscribe(self, event_type: str, listener):
        """Register *listener* (called with keyword payload).  Returns an unsubscribe callable."""
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")
        with self._lock:
            self._listeners[event_type].append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners[event_type]:
                    self._listeners[event_type].remove(listener)

        return unsubscribe

    def publish(self, event_type: str, **payload) -> int:
        """Deliver to every listener; returns how many completed without error."""
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")
        with self._lock:
            listeners = list(self._listeners[event_type])

        delivered = 0
        for listener in listeners:
            try:
                listener(**payload)
                delivered += 1
            except Exception:
                logger.exception(
                    "Listener %r failed for %s", listener, event_type,
                    extra={"event_type": event_type, "user_id": payload.get("user_id")},
                )
        return delivered

    def publish_audit(self, entries) -> None:
        for entry in entries:
            self.publish("audit_appended", entry=entry.to_dict())
