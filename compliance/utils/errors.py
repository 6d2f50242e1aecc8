"""JSON error bodies for the REST layer.

Every error response has the shape ``{"error", "code", "details"?}``.
Request-level problems use the ``E.*`` codes below; engine outcomes carry
their own ``ComplianceError.code`` and go through ``error_response``.

Usage
-----
    from compliance.utils.errors import E, api_error, error_response

    if not tier:
        return api_error(E.VALIDATION_REQUIRED, "tier is required")

    outcome, err = engine.switch_user_tier(user_id, tier)
    if err:
        return error_response(err)
"""

from __future__ import annotations

from flask import jsonify

from compliance.core.exceptions import ComplianceError


class E:
    """Request-level error codes."""

    # 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Routing / transport
    NOT_FOUND = "ERR_NOT_FOUND"
    METHOD_NOT_ALLOWED = "ERR_METHOD_NOT_ALLOWED"
    RATE_LIMITED = "ERR_RATE_LIMITED"

    # 500
    INTERNAL = "ERR_INTERNAL"


_STATUS_FOR_CODE: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.NOT_FOUND: 404,
    E.METHOD_NOT_ALLOWED: 405,
    E.RATE_LIMITED: 429,
    E.INTERNAL: 500,
}


def api_error(code: str, message: str, *, status: int | None = None, details: dict | None = None):
    """Build ``(response, status)`` for a Flask view.

    Parameters
    ----------
    code : str
        ``E.*`` constant or an engine error code.
    message : str
        Human-readable explanation.
    status : int, optional
        Overrides the status looked up from *code* (default 400).
    details : dict, optional
        Structured extras: blocking requirements, conflict stamps, request path.
    """
    body: dict = {"error": message, "code": code}
    if details:
        body["details"] = details
    return jsonify(body), status or _STATUS_FOR_CODE.get(code, 400)


def error_response(err: ComplianceError):
    """Map an engine error onto its HTTP response."""
    return api_error(err.code, err.message, status=err.http_status, details=err.details)
