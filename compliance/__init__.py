"""
Compliance Tier Engine
Flask Application Factory.

Usage:
    from compliance import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event
from sqlalchemy.exc import SQLAlchemyError

from compliance.config import config
from compliance.core.exceptions import PersistenceError
from compliance.middleware.logging_config import configure_logging
from compliance.middleware.rate_limiter import init_rate_limits
from compliance.middleware.timing import init_request_timing
from compliance.models import db
from compliance.services.engine import EXTENSION_KEY, ComplianceEngine
from compliance.utils.errors import E, api_error, error_response

logger = logging.getLogger(__name__)


# ── SQLite FK enforcement (global engine event) ─────────────────────────
@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # per-blueprint limits only
    storage_uri=os.getenv("REDIS_URL", "memory://"),  # Redis in production, memory for dev
)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    config_cls = config[config_name]
    app.config.from_object(config_cls() if config_name == "production" else config_cls)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Compliance engine (catalog load fails fast on a broken document) ─
    engine = ComplianceEngine.from_config(app.config)
    app.extensions[EXTENSION_KEY] = engine

    # ── Import all models so Alembic can detect them ─────────────────────
    from compliance.models import audit as _audit_models            # noqa: F401
    from compliance.models import catalog as _catalog_models        # noqa: F401
    from compliance.models import compliance as _compliance_models  # noqa: F401
    from compliance.models import user as _user_models              # noqa: F401

    # ── Auto-create tables and seed the catalog ──────────────────────────
    if app.config.get("COMPLIANCE_AUTO_SEED_CATALOG"):
        with app.app_context():
            db_uri = app.config["SQLALCHEMY_DATABASE_URI"]
            if db_uri.startswith("sqlite:///") and ":memory:" not in db_uri:
                os.makedirs(os.path.dirname(db_uri[len("sqlite:///"):]), exist_ok=True)
            try:
                db.create_all()
                _seed(engine)
            except SQLAlchemyError as e:
                db.session.rollback()
                app.logger.warning("Catalog auto-seed failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from compliance.blueprints.audit_bp import audit_bp
    from compliance.blueprints.compliance_bp import compliance_bp
    from compliance.blueprints.health_bp import health_bp

    app.register_blueprint(compliance_bp)
    app.register_blueprint(audit_bp)
    app.register_blueprint(health_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-catalog")
    def seed_catalog_cmd():
        """Create missing tables and upsert the requirement catalog."""
        db.create_all()
        counts = _seed(engine)
        logger.info(
            "Catalog %s: %s created, %s updated, %s progression rows.",
            counts["version"], counts["created"], counts["updated"], counts["progression"],
        )

    @app.cli.command("compliance-stats")
    def compliance_stats_cmd():
        """Print organisation-wide tier statistics."""
        for key, value in engine.get_compliance_tier_statistics().items():
            print(f"{key:<30} {value}")

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(PersistenceError)
    def persistence_failed(e):
        logger.error("Persistence failure: %s", e.message, exc_info=e.cause)
        return error_response(e)

    @app.errorhandler(404)
    def not_found(e):
        return api_error(E.NOT_FOUND, "Not found", details={"path": request.path})

    @app.errorhandler(405)
    def method_not_allowed(e):
        return api_error(E.METHOD_NOT_ALLOWED, "Method not allowed")

    @app.errorhandler(429)
    def rate_limited(e):
        return api_error(E.RATE_LIMITED, "Too many requests", details={"limit": e.description})

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app


def _seed(engine) -> dict:
    from compliance.services.catalog import seed_catalog

    counts = seed_catalog(engine.catalog.document)
    db.session.commit()
    return counts
