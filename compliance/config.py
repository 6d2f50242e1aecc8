"""
Compliance Tier Engine configuration.

One class per environment, selected by ``APP_ENV`` in ``create_app``:

    development  local SQLite file under instance/, DEBUG on
    testing      in-memory SQLite, catalog seeded per test, limits off
    production   DATABASE_URL and SECRET_KEY are mandatory

Engine settings (all environments):
    COMPLIANCE_CATALOG_PATH          requirement catalog YAML
    COMPLIANCE_AUTO_SEED_CATALOG     create tables and upsert the catalog at startup
    COMPLIANCE_STATS_CACHE_TTL       seconds; 0 recomputes statistics on every call
    COMPLIANCE_DEADLINE_WINDOW_DAYS  default look-ahead for deadline alerts
"""

import os
import secrets

_PACKAGE_DIR = os.path.dirname(os.path.abspath(__file__))
_INSTANCE_DIR = os.path.join(os.path.dirname(_PACKAGE_DIR), "instance")

_DEFAULT_CATALOG = os.path.join(_PACKAGE_DIR, "data", "requirement_catalog.yaml")


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def _database_url(default=None):
    """DATABASE_URL with the legacy ``postgres://`` scheme rewritten for SQLAlchemy 2."""
    url = os.getenv("DATABASE_URL", "")
    if not url:
        return default
    return url.replace("postgres://", "postgresql://", 1)


class Config:
    """Settings shared by every environment."""

    SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)
    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}

    # Flask-Limiter storage URI
    REDIS_URL = os.getenv("REDIS_URL", "memory://")
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    COMPLIANCE_CATALOG_PATH = os.getenv("COMPLIANCE_CATALOG_PATH", _DEFAULT_CATALOG)
    COMPLIANCE_AUTO_SEED_CATALOG = _env_flag("COMPLIANCE_AUTO_SEED_CATALOG", "true")
    COMPLIANCE_STATS_CACHE_TTL = int(os.getenv("COMPLIANCE_STATS_CACHE_TTL", "0"))
    COMPLIANCE_DEADLINE_WINDOW_DAYS = int(os.getenv("COMPLIANCE_DEADLINE_WINDOW_DAYS", "7"))


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(
        f"sqlite:///{os.path.join(_INSTANCE_DIR, 'compliance_dev.db')}"
    )


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", "sqlite:///:memory:")
    # StaticPool (in-memory SQLite) takes no pool options
    SQLALCHEMY_ENGINE_OPTIONS = {}
    COMPLIANCE_AUTO_SEED_CATALOG = False
    COMPLIANCE_STATS_CACHE_TTL = 0
    RATELIMIT_ENABLED = False


class ProductionConfig(Config):
    SQLALCHEMY_DATABASE_URI = _database_url()
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        "connect_args": {"options": "-c statement_timeout=30000"},
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
