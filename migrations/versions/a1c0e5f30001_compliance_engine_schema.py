"""compliance_engine_schema

Create the compliance engine tables: user directory, requirement catalog,
per-user compliance records, tier history and audit log.

Revision ID: a1c0e5f30001
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "a1c0e5f30001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    existing_tables = set(sa_inspect(bind).get_table_names())

    if "user_profiles" not in existing_tables:
        op.create_table(
            "user_profiles",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("display_name", sa.String(length=150), nullable=True),
            sa.Column("email", sa.String(length=255), nullable=True),
            sa.Column("role", sa.String(length=4), nullable=False),
            sa.Column("compliance_tier", sa.String(length=10), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_profile_role_tier", "user_profiles", ["role", "compliance_tier"])

    if "requirement_definitions" not in existing_tables:
        op.create_table(
            "requirement_definitions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("role", sa.String(length=4), nullable=False),
            sa.Column("tier", sa.String(length=10), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("category", sa.String(length=40), nullable=False),
            sa.Column("requirement_type", sa.String(length=20), nullable=False),
            sa.Column("validation_rules_json", sa.Text(), nullable=False, server_default="{}"),
            sa.Column("is_mandatory", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("points_value", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("due_days_from_assignment", sa.Integer(), nullable=False, server_default="30"),
            sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("catalog_version", sa.String(length=40), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("role", "tier", "name", name="uq_reqdef_role_tier_name"),
        )
        op.create_index("idx_reqdef_role_tier", "requirement_definitions", ["role", "tier"])

    if "progression_requirements" not in existing_tables:
        op.create_table(
            "progression_requirements",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("from_role", sa.String(length=4), nullable=False),
            sa.Column("to_role", sa.String(length=4), nullable=False),
            sa.Column("requirement_name", sa.String(length=200), nullable=False),
            sa.Column("catalog_version", sa.String(length=40), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint(
                "from_role", "to_role", "requirement_name", name="uq_progreq_path_name",
            ),
        )
        op.create_index("idx_progreq_path", "progression_requirements", ["from_role", "to_role"])

    if "user_compliance_records" not in existing_tables:
        op.create_table(
            "user_compliance_records",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.String(length=36), nullable=False),
            sa.Column("requirement_id", sa.Integer(), nullable=False),
            sa.Column("tier", sa.String(length=10), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completion_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("reviewed_by", sa.String(length=150), nullable=True),
            sa.Column("review_notes", sa.Text(), nullable=True),
            sa.Column("evidence_json", sa.Text(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("superseded_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_by", sa.String(length=150), nullable=False, server_default="system"),
            sa.ForeignKeyConstraint(["user_id"], ["user_profiles.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(
                ["requirement_id"], ["requirement_definitions.id"], ondelete="RESTRICT",
            ),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_ucr_user_active", "user_compliance_records", ["user_id", "is_active"])
        op.create_index(
            "idx_ucr_user_requirement", "user_compliance_records", ["user_id", "requirement_id"],
        )
        op.create_index("idx_ucr_status", "user_compliance_records", ["status"])
        op.create_index("idx_ucr_due", "user_compliance_records", ["due_date"])

    if "compliance_tier_history" not in existing_tables:
        op.create_table(
            "compliance_tier_history",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.String(length=36), nullable=False),
            sa.Column("previous_tier", sa.String(length=10), nullable=True),
            sa.Column("new_tier", sa.String(length=10), nullable=False),
            sa.Column("changed_by", sa.String(length=150), nullable=False),
            sa.Column("reason", sa.Text(), nullable=True),
            sa.Column("requirements_affected", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("changed_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["user_id"], ["user_profiles.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_tierhist_user", "compliance_tier_history", ["user_id", "changed_at"])

    if "audit_logs" not in existing_tables:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("user_id", sa.String(length=36), nullable=True),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor", sa.String(length=150), nullable=False),
            sa.Column("diff_json", sa.Text(), nullable=True),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_user", "audit_logs", ["user_id"])
        op.create_index("idx_audit_actor", "audit_logs", ["actor"])
        op.create_index("idx_audit_action", "audit_logs", ["action"])
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])


def downgrade():
    bind = op.get_bind()
    existing_tables = set(sa_inspect(bind).get_table_names())

    for table in (
        "audit_logs",
        "compliance_tier_history",
        "user_compliance_records",
        "progression_requirements",
        "requirement_definitions",
        "user_profiles",
    ):
        if table in existing_tables:
            op.drop_table(table)
