"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from caseregistry.domain.models import PII_FIELDS

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "user_roles",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("role", sa.String(), nullable=False),
        sa.UniqueConstraint("user_id", "role", name="uq_user_roles_user_role"),
    )
    op.create_index("ix_user_roles_user_id", "user_roles", ["user_id"])

    op.create_table(
        "api_keys",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("key_prefix", sa.String(), nullable=False),
        sa.Column("key_hash", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_api_keys_user_id", "api_keys", ["user_id"])
    op.create_index("ix_api_keys_key_hash", "api_keys", ["key_hash"], unique=True)

    op.create_table(
        "form_templates",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # One nullable JSONB column per PII attribute.
    op.create_table(
        "beneficiaries",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("pseudonym", sa.String(), nullable=False, unique=True),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        *[sa.Column(f"{field}_enc", postgresql.JSONB(), nullable=True) for field in PII_FIELDS],
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "beneficiary_match_keys",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("beneficiary_id", sa.String(), sa.ForeignKey("beneficiaries.id"), nullable=False),
        sa.Column("key_type", sa.String(), nullable=False),
        sa.Column("key_hash", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        # ON CONFLICT (key_type, key_hash) DO NOTHING relies on this constraint.
        sa.UniqueConstraint("key_type", "key_hash", name="uq_beneficiary_match_keys_type_hash"),
    )
    op.create_index("ix_beneficiary_match_keys_beneficiary_id", "beneficiary_match_keys", ["beneficiary_id"])

    op.create_table(
        "beneficiary_mappings",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "form_template_id",
            sa.String(),
            sa.ForeignKey("form_templates.id"),
            nullable=False,
            unique=True,
        ),
        sa.Column("mapping_json", postgresql.JSONB(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "beneficiary_assignments",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("beneficiary_id", sa.String(), sa.ForeignKey("beneficiaries.id"), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "beneficiary_id", "entity_id", "entity_type", name="uq_beneficiary_assignments_entity"
        ),
    )
    op.create_index("ix_beneficiary_assignments_beneficiary_id", "beneficiary_assignments", ["beneficiary_id"])
    op.create_index("ix_beneficiary_assignments_entity", "beneficiary_assignments", ["entity_id", "entity_type"])

    op.create_table(
        "form_responses",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("form_template_id", sa.String(), sa.ForeignKey("form_templates.id"), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("submitted_by", sa.String(), nullable=False),
        sa.Column("beneficiary_id", sa.String(), sa.ForeignKey("beneficiaries.id"), nullable=True),
        sa.Column("data_json", postgresql.JSONB(), nullable=False),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("submitted_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_form_responses_form_template_id", "form_responses", ["form_template_id"])
    op.create_index("ix_form_responses_submitted_by", "form_responses", ["submitted_by"])
    op.create_index("ix_form_responses_beneficiary_id", "form_responses", ["beneficiary_id"])
    op.create_index("ix_form_responses_entity", "form_responses", ["entity_id", "entity_type"])

    op.create_table(
        "service_deliveries",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("service_id", sa.String(), nullable=False),
        sa.Column("beneficiary_id", sa.String(), sa.ForeignKey("beneficiaries.id"), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("form_response_id", sa.String(), sa.ForeignKey("form_responses.id"), nullable=True),
        sa.Column("staff_user_id", sa.String(), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("notes", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_service_deliveries_service_id", "service_deliveries", ["service_id"])
    op.create_index("ix_service_deliveries_form_response_id", "service_deliveries", ["form_response_id"])
    op.create_index(
        "ix_service_deliveries_beneficiary_delivered", "service_deliveries", ["beneficiary_id", "delivered_at"]
    )
    op.create_index("ix_service_deliveries_entity", "service_deliveries", ["entity_id", "entity_type"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=False),
        sa.Column("details", postgresql.JSONB(), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_audit_logs_user_id", "audit_logs", ["user_id"])
    op.create_index("ix_audit_logs_action_timestamp", "audit_logs", ["action", "timestamp"])


def downgrade() -> None:
    op.drop_index("ix_audit_logs_action_timestamp", table_name="audit_logs")
    op.drop_index("ix_audit_logs_user_id", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_service_deliveries_entity", table_name="service_deliveries")
    op.drop_index("ix_service_deliveries_beneficiary_delivered", table_name="service_deliveries")
    op.drop_index("ix_service_deliveries_form_response_id", table_name="service_deliveries")
    op.drop_index("ix_service_deliveries_service_id", table_name="service_deliveries")
    op.drop_table("service_deliveries")
    op.drop_index("ix_form_responses_entity", table_name="form_responses")
    op.drop_index("ix_form_responses_beneficiary_id", table_name="form_responses")
    op.drop_index("ix_form_responses_submitted_by", table_name="form_responses")
    op.drop_index("ix_form_responses_form_template_id", table_name="form_responses")
    op.drop_table("form_responses")
    op.drop_index("ix_beneficiary_assignments_entity", table_name="beneficiary_assignments")
    op.drop_index("ix_beneficiary_assignments_beneficiary_id", table_name="beneficiary_assignments")
    op.drop_table("beneficiary_assignments")
    op.drop_table("beneficiary_mappings")
    op.drop_index("ix_beneficiary_match_keys_beneficiary_id", table_name="beneficiary_match_keys")
    op.drop_table("beneficiary_match_keys")
    op.drop_table("beneficiaries")
    op.drop_table("form_templates")
    op.drop_index("ix_api_keys_key_hash", table_name="api_keys")
    op.drop_index("ix_api_keys_user_id", table_name="api_keys")
    op.drop_table("api_keys")
    op.drop_index("ix_user_roles_user_id", table_name="user_roles")
    op.drop_table("user_roles")
    op.drop_table("users")
