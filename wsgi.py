"""
Flask-Migrate / Alembic entry point.

Usage:
    flask db upgrade
    flask seed-catalog
    flask compliance-stats
"""

from compliance import create_app

app = create_app()
