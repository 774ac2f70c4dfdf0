"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None

_JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
_TS = sa.DateTime(timezone=True)


def _timestamps() -> list[sa.Column]:
    return [sa.Column("created_at", _TS, server_default=sa.func.now())]


def upgrade() -> None:
    op.create_table(
        "organizations",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("compliance_mode", sa.String(), nullable=False, server_default="standard"),
        sa.Column("security_policy_json", _JSON, nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.Column("updated_at", _TS, server_default=sa.func.now()),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("role", sa.String(), nullable=False, server_default="user"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_login_at", _TS, nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_users_organization_id", "users", ["organization_id"])

    op.create_table(
        "api_keys",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("key_prefix", sa.String(), nullable=False),
        sa.Column("key_hash", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("last_used_at", _TS, nullable=True),
        sa.Column("revoked_at", _TS, nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_api_keys_user_id", "api_keys", ["user_id"])
    op.create_index("ix_api_keys_organization_id", "api_keys", ["organization_id"])
    op.create_index("ix_api_keys_key_hash", "api_keys", ["key_hash"], unique=True)

    op.create_table(
        "encryption_keys",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("key_id", sa.String(), nullable=False, unique=True),
        sa.Column("wrapped_key", sa.Text(), nullable=False),
        sa.Column("algorithm", sa.String(), nullable=False, server_default="AES-256-GCM"),
        sa.Column("master_key_id", sa.String(), nullable=False),
        sa.Column("expires_at", _TS, nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("deactivated_at", _TS, nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_encryption_keys_organization_id", "encryption_keys", ["organization_id"])
    op.create_index("ix_encryption_keys_master_key_id", "encryption_keys", ["master_key_id"])
    op.create_index("ix_encryption_keys_org_key", "encryption_keys", ["organization_id", "key_id"])

    op.create_table(
        "access_grants",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=False),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("permission", sa.String(), nullable=False),
        sa.Column("granted_by", sa.String(), nullable=False),
        sa.Column("granted_at", _TS, nullable=False),
        sa.Column("expires_at", _TS, nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("revoked_at", _TS, nullable=True),
        sa.Column("revoked_by", sa.String(), nullable=True),
    )
    op.create_index("ix_access_grants_organization_id", "access_grants", ["organization_id"])
    op.create_index("ix_access_grants_user_id", "access_grants", ["user_id"])
    op.create_index(
        "ix_access_grants_lookup",
        "access_grants",
        ["organization_id", "user_id", "resource_type", "permission"],
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("occurred_at", _TS, nullable=False),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=False),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("outcome", sa.String(), nullable=False, server_default="success"),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("session_id", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("metadata_json", _JSON, nullable=True),
    )
    op.create_index("ix_audit_logs_occurred_at", "audit_logs", ["occurred_at"])
    op.create_index("ix_audit_logs_organization_id", "audit_logs", ["organization_id"])
    op.create_index("ix_audit_logs_user_id", "audit_logs", ["user_id"])
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_request_id", "audit_logs", ["request_id"])
    op.create_index("ix_audit_logs_org_occurred", "audit_logs", ["organization_id", "occurred_at"])

    op.create_table(
        "retention_policies",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=False),
        sa.Column("retention_days", sa.Integer(), nullable=False),
        sa.Column("auto_delete", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("encryption_required", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("backup_required", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("updated_by", sa.String(), nullable=True),
        *_timestamps(),
        sa.Column("updated_at", _TS, server_default=sa.func.now()),
        sa.UniqueConstraint("organization_id", "resource_type", name="uq_retention_policies_org_type"),
    )
    op.create_index("ix_retention_policies_organization_id", "retention_policies", ["organization_id"])

    op.create_table(
        "retention_schedules",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=False),
        sa.Column("resource_id", sa.String(), nullable=False),
        sa.Column("delete_after", _TS, nullable=False),
        sa.Column("state", sa.String(), nullable=False, server_default="scheduled"),
        sa.Column("backup_id", sa.String(), nullable=True),
        sa.Column("deleted_at", _TS, nullable=True),
        *_timestamps(),
        sa.Column("updated_at", _TS, server_default=sa.func.now()),
        sa.UniqueConstraint(
            "organization_id",
            "resource_type",
            "resource_id",
            name="uq_retention_schedules_resource",
        ),
    )
    op.create_index("ix_retention_schedules_organization_id", "retention_schedules", ["organization_id"])
    op.create_index("ix_retention_schedules_due", "retention_schedules", ["state", "delete_after"])

    op.create_table(
        "retention_backups",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=False),
        sa.Column("resource_id", sa.String(), nullable=False),
        sa.Column("key_id", sa.String(), nullable=False),
        sa.Column("iv", sa.LargeBinary(), nullable=False),
        sa.Column("tag", sa.LargeBinary(), nullable=False),
        sa.Column("ciphertext", sa.LargeBinary(), nullable=False),
        sa.Column("record_count", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
    )
    op.create_index("ix_retention_backups_organization_id", "retention_backups", ["organization_id"])

    op.create_table(
        "sweep_leases",
        sa.Column("name", sa.String(), primary_key=True),
        sa.Column("holder", sa.String(), nullable=False),
        sa.Column("acquired_at", _TS, nullable=False),
        sa.Column("expires_at", _TS, nullable=False),
    )

    op.create_table(
        "deletion_requests",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("confirmation_code_hash", sa.String(), nullable=False),
        sa.Column("requested_by", sa.String(), nullable=False),
        sa.Column("requested_at", _TS, nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("completed_steps_json", _JSON, nullable=True),
        sa.Column("completed_at", _TS, nullable=True),
    )
    op.create_index("ix_deletion_requests_organization_id", "deletion_requests", ["organization_id"])
    op.create_index("ix_deletion_requests_user_id", "deletion_requests", ["user_id"])

    op.create_table(
        "data_exports",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("requested_by", sa.String(), nullable=False),
        sa.Column("format", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="running"),
        sa.Column("steps_json", _JSON, nullable=True),
        sa.Column("requested_at", _TS, nullable=False),
        sa.Column("completed_at", _TS, nullable=True),
    )
    op.create_index("ix_data_exports_organization_id", "data_exports", ["organization_id"])
    op.create_index(
        "ix_data_exports_user_requested",
        "data_exports",
        ["organization_id", "user_id", "requested_at"],
    )

    op.create_table(
        "user_preferences",
        sa.Column("user_id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("preferences_json", _JSON, nullable=True),
        sa.Column("retention_json", _JSON, nullable=True),
        sa.Column("updated_at", _TS, server_default=sa.func.now()),
    )
    op.create_index("ix_user_preferences_organization_id", "user_preferences", ["organization_id"])

    op.create_table(
        "user_sessions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        *_timestamps(),
        sa.Column("last_seen_at", _TS, server_default=sa.func.now()),
    )
    op.create_index("ix_user_sessions_organization_id", "user_sessions", ["organization_id"])
    op.create_index("ix_user_sessions_user_id", "user_sessions", ["user_id"])

    op.create_table(
        "meetings",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("file_hash", sa.String(), nullable=True),
        sa.Column("encryption_key_id", sa.String(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_meetings_organization_id", "meetings", ["organization_id"])
    op.create_index("ix_meetings_user_id", "meetings", ["user_id"])

    op.create_table(
        "action_items",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("meeting_id", sa.String(), nullable=True),
        sa.Column("owner_user_id", sa.String(), nullable=True),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="open"),
        *_timestamps(),
    )
    op.create_index("ix_action_items_organization_id", "action_items", ["organization_id"])
    op.create_index("ix_action_items_meeting_id", "action_items", ["meeting_id"])
    op.create_index("ix_action_items_owner_user_id", "action_items", ["owner_user_id"])

    op.create_table(
        "analytics_records",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("metric_name", sa.String(), nullable=False),
        sa.Column("metric_value", sa.Float(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_analytics_records_organization_id", "analytics_records", ["organization_id"])
    op.create_index("ix_analytics_records_user_id", "analytics_records", ["user_id"])

    op.create_table(
        "stored_files",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("meeting_id", sa.String(), nullable=True),
        sa.Column("file_name", sa.String(), nullable=False),
        sa.Column("file_type", sa.String(), nullable=False),
        sa.Column("size_bytes", sa.BigInteger(), nullable=False),
        sa.Column("sha256", sa.String(), nullable=False),
        sa.Column("key_id", sa.String(), nullable=False),
        sa.Column("iv", sa.LargeBinary(), nullable=False),
        sa.Column("tag", sa.LargeBinary(), nullable=False),
        sa.Column("ciphertext", sa.LargeBinary(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_stored_files_organization_id", "stored_files", ["organization_id"])
    op.create_index("ix_stored_files_user_id", "stored_files", ["user_id"])


def downgrade() -> None:
    for table in (
        "stored_files",
        "analytics_records",
        "action_items",
        "meetings",
        "user_sessions",
        "user_preferences",
        "data_exports",
        "deletion_requests",
        "sweep_leases",
        "retention_backups",
        "retention_schedules",
        "retention_policies",
        "audit_logs",
        "access_grants",
        "encryption_keys",
        "api_keys",
        "users",
        "organizations",
    ):
        op.drop_table(table)
