"""
Engine-wide exception hierarchy.

Every expected failure of an engine operation is one of the types below.
Services RETURN these as the second element of a ``(value, error)`` tuple;
they are never raised for expected conditions.  Only ``PersistenceError``
(storage failure after a full rollback) and ``CatalogError`` (broken
reference data at load time) are raised.

Blueprints map the types onto HTTP responses once, via ``code`` and
``http_status``.

Usage:
    from compliance.core.exceptions import UserNotFound, InvalidTier

    return None, UserNotFound(user_id)
    return None, InvalidTier(tier, reason="IC requires robust")
"""


class ComplianceError(Exception):
    """Base class for every error kind the engine reports."""

    code = "COMPLIANCE_ERROR"
    http_status = 400

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        body = {"error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


# ── Not found ────────────────────────────────────────────────────────────────


class NotFoundError(ComplianceError):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable entity name (e.g. "User", "Record").
        resource_id: The key that was looked up.
    """

    code = "NOT_FOUND"
    http_status = 404

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg, {"resource": resource, "id": resource_id})


class UserNotFound(NotFoundError):
    code = "USER_NOT_FOUND"

    def __init__(self, user_id: str) -> None:
        super().__init__("User", user_id)


class RecordNotFound(NotFoundError):
    code = "RECORD_NOT_FOUND"

    def __init__(self, record_id: int | str) -> None:
        super().__init__("Compliance record", record_id)


# ── Business-rule validation ─────────────────────────────────────────────────


class ValidationError(ComplianceError):
    """Input was well-formed but violated a business rule.

    Maps to HTTP 422.
    """

    code = "VALIDATION_FAILED"
    http_status = 422


class InvalidTier(ValidationError):
    code = "INVALID_TIER"

    def __init__(self, tier, reason: str | None = None) -> None:
        self.tier = tier
        self.reason = reason
        msg = f"Invalid compliance tier {tier!r}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, {"tier": tier, "reason": reason})


class InvalidRole(ValidationError):
    code = "INVALID_ROLE"

    def __init__(self, role, reason: str | None = None) -> None:
        self.role = role
        self.reason = reason
        msg = f"Invalid role {role!r}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, {"role": role, "reason": reason})


class InvalidTransition(ValidationError):
    """Raised when a record status change is not allowed by the state machine."""

    code = "INVALID_TRANSITION"

    def __init__(self, record_id, current: str, target: str, reason: str | None = None) -> None:
        self.record_id = record_id
        self.current_status = current
        self.target_status = target
        self.reason = reason
        msg = f"Cannot move record {record_id} from '{current}' to '{target}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, {
            "record_id": record_id,
            "from": current,
            "to": target,
            "reason": reason,
        })


class InvalidEvidence(ValidationError):
    code = "INVALID_EVIDENCE"

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Invalid evidence payload: {reason}", {"reason": reason})


class ProgressionNotEligible(ValidationError):
    """Raised when a role progression is requested but requirements are outstanding.

    ``blocking_requirements`` lists the requirement names that keep the
    user from advancing; callers render them, the engine does not.
    """

    code = "PROGRESSION_NOT_ELIGIBLE"

    def __init__(
        self,
        user_id: str,
        target_role: str,
        blocking_requirements: list[str],
        reason: str | None = None,
    ) -> None:
        self.user_id = user_id
        self.target_role = target_role
        self.blocking_requirements = list(blocking_requirements)
        self.reason = reason
        msg = f"User {user_id} is not eligible for {target_role}"
        if reason:
            msg += f": {reason}"
        elif blocking_requirements:
            msg += f" ({len(blocking_requirements)} blocking requirement(s))"
        super().__init__(msg, {
            "target_role": target_role,
            "blocking_requirements": self.blocking_requirements,
            "reason": reason,
        })


# ── Authorization & concurrency ──────────────────────────────────────────────


class PermissionDenied(ComplianceError):
    code = "PERMISSION_DENIED"
    http_status = 403

    def __init__(self, actor: str, action: str, reason: str | None = None) -> None:
        self.actor = actor
        self.action = action
        msg = f"Actor {actor!r} may not perform '{action}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, {"actor": actor, "action": action})


class ConflictError(ComplianceError):
    """Raised when a write was based on a stale read of the record.

    Maps to HTTP 409.  The caller must re-fetch before retrying.
    """

    code = "CONFLICT"
    http_status = 409

    def __init__(self, record_id, expected_updated_at=None, current_updated_at=None) -> None:
        self.record_id = record_id
        self.expected_updated_at = expected_updated_at
        self.current_updated_at = current_updated_at
        super().__init__(
            f"Record {record_id} was modified concurrently; re-fetch and retry",
            {
                "record_id": record_id,
                "expected_updated_at": _iso(expected_updated_at),
                "current_updated_at": _iso(current_updated_at),
            },
        )


# ── Raised (unchecked) ───────────────────────────────────────────────────────


class PersistenceError(ComplianceError):
    """Storage failure.  The enclosing operation was fully rolled back."""

    code = "PERSISTENCE_ERROR"
    http_status = 500

    def __init__(self, operation: str, cause: Exception | None = None) -> None:
        self.operation = operation
        self.cause = cause
        super().__init__(f"Storage failure during {operation}", {"operation": operation})


class CatalogError(ComplianceError):
    """Requirement catalog document is malformed."""

    code = "CATALOG_ERROR"
    http_status = 500


def _iso(value):
    return value.isoformat() if hasattr(value, "isoformat") else value
