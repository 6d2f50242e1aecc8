"""
Compliance Tier Engine
Blueprint helpers.
"""

from flask import request


def json_body() -> dict:
    """Request JSON object, or an empty dict for missing / non-object bodies."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def request_actor(data: dict, key: str = "actor", default: str | None = None) -> str | None:
    """Acting user: body field first, then the ``X-Actor-Id`` header."""
    return data.get(key) or request.headers.get("X-Actor-Id") or default
