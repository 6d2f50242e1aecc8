"""
Compliance Tier Engine
SQLAlchemy handle shared by every model module.

Usage:
    from compliance.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
