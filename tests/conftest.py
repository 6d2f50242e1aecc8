"""
Shared pytest fixtures for the Compliance Tier Engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test catalog seed + rollback + table recreate (autouse)
    - client: Flask test client (function-scoped)
    - engine: The app's ComplianceEngine
    - make_user: Factory for user directory rows
    - reviewer / admin: Pre-created AP and AD users
"""

import pytest

from compliance import create_app
from compliance.models import db as _db
from compliance.models.user import UserProfile
from compliance.services.catalog import seed_catalog
from compliance.services.engine import EXTENSION_KEY


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, seed the catalog, recreate tables afterwards."""
    with app.app_context():
        engine = app.extensions[EXTENSION_KEY]
        seed_catalog(engine.catalog.document)
        _db.session.commit()
        engine.statistics.invalidate()
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def engine(app):
    return app.extensions[EXTENSION_KEY]


# ── Convenience fixtures ─────────────────────────────────────────────────


def _create_user(user_id, role, tier=None, display_name=None):
    user = UserProfile(
        id=user_id,
        role=role,
        compliance_tier=tier,
        display_name=display_name or f"User {user_id}",
        email=f"{user_id}@example.org",
    )
    _db.session.add(user)
    _db.session.commit()
    return user


@pytest.fixture()
def make_user():
    """Factory: make_user("u1", "IT") → committed UserProfile (tier unset)."""
    return _create_user


@pytest.fixture()
def reviewer():
    return _create_user("rev-1", "AP", "basic", "Reviewer")


@pytest.fixture()
def admin():
    return _create_user("adm-1", "AD", None, "Administrator")


@pytest.fixture()
def trainee(engine, make_user):
    """u1: Instructor Trainee switched onto the basic tier (3 pending records)."""
    make_user("u1", "IT")
    outcome, err = engine.switch_user_tier("u1", "basic", changed_by="adm-1", reason="enrolment")
    assert err is None
    assert outcome.changed is True
    return outcome


@pytest.fixture()
def by_name(engine):
    """by_name("u1") → {requirement name: active record}."""

    def lookup(user_id):
        records, err = engine.get_user_requirements(user_id)
        assert err is None
        return {r.requirement.name: r for r in records}

    return lookup
