from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from maestro.core.clock import ensure_utc


# JSONB on Postgres, plain JSON elsewhere so the schema also runs on SQLite.
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
AutoIncrementId = BigInteger().with_variant(Integer(), "sqlite")


class UtcDateTime(TypeDecorator):
    # Normalize to UTC on write and re-attach tzinfo on read for drivers that drop it.
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        return ensure_utc(value)

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        return ensure_utc(value)


def _new_id() -> str:
    return uuid4().hex


class Base(DeclarativeBase):
    # Fetch server-generated timestamps on flush; async sessions cannot lazy-load them later.
    __mapper_args__ = {"eager_defaults": True}


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String)
    # Caps the retention period any policy in this organization may request.
    compliance_mode: Mapped[str] = mapped_column(String, default="standard", nullable=False)
    # Organization defaults: {"data_retention_days": int, "encryption_required": bool}.
    security_policy_json: Mapped[dict[str, Any]] = mapped_column(
        JSONType,
        default=lambda: {"data_retention_days": 90, "encryption_required": True},
    )
    # Organizations are soft-deactivated only; owned data keeps referencing them.
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, server_default=func.now(), onupdate=func.now())


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"), index=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    # Persisted as the Role enum value.
    role: Mapped[str] = mapped_column(String, default="user", nullable=False)
    # Gate access for disabled users without deleting historical records.
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_login_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, server_default=func.now())


class ApiKey(Base):
    __tablename__ = "api_keys"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id", ondelete="CASCADE"), index=True)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    # Keep a short prefix for operator display without exposing the secret.
    key_prefix: Mapped[str] = mapped_column(String)
    # Store only the hashed key to avoid plaintext credentials at rest.
    key_hash: Mapped[str] = mapped_column(String, unique=True, index=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    last_used_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, server_default=func.now())


class DataEncryptionKey(Base):
    __tablename__ = "encryption_keys"
    __table_args__ = (Index("ix_encryption_keys_org_key", "organization_id", "key_id"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    # Globally unique reference embedded in every envelope.
    key_id: Mapped[str] = mapped_column(String, unique=True)
    # base64(nonce || ciphertext || tag) under the organization KEK; never the raw key.
    wrapped_key: Mapped[str] = mapped_column(Text)
    algorithm: Mapped[str] = mapped_column(String, default="AES-256-GCM", nullable=False)
    # Fingerprint of the master key that wrapped this row, used during master rotation.
    master_key_id: Mapped[str] = mapped_column(String, index=True)
    expires_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    deactivated_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, server_default=func.now())


class AccessGrant(Base):
    __tablename__ = "access_grants"
    __table_args__ = (
        Index(
            "ix_access_grants_lookup",
            "organization_id",
            "user_id",
            "resource_type",
            "permission",
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    resource_type: Mapped[str] = mapped_column(String)
    # NULL grants apply to every resource of the type.
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    permission: Mapped[str] = mapped_column(String)
    granted_by: Mapped[str] = mapped_column(String)
    granted_at: Mapped[datetime] = mapped_column(UtcDateTime)
    expires_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    revoked_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    revoked_by: Mapped[str | None] = mapped_column(String, nullable=True)


class AuditLogEntry(Base):
    __tablename__ = "audit_logs"
    __table_args__ = (Index("ix_audit_logs_org_occurred", "organization_id", "occurred_at"),)

    # Monotonic numeric id for efficient pagination and ordering.
    id: Mapped[int] = mapped_column(AutoIncrementId, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(UtcDateTime, index=True)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    action: Mapped[str] = mapped_column(String, index=True)
    resource_type: Mapped[str] = mapped_column(String)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    outcome: Mapped[str] = mapped_column(String, default="success", nullable=False)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    session_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    # Tagged event payload, sanitized before write.
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)


class RetentionPolicy(Base):
    __tablename__ = "retention_policies"
    __table_args__ = (
        UniqueConstraint("organization_id", "resource_type", name="uq_retention_policies_org_type"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    resource_type: Mapped[str] = mapped_column(String)
    retention_days: Mapped[int] = mapped_column(Integer)
    auto_delete: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    encryption_required: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    backup_required: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    updated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, server_default=func.now(), onupdate=func.now())


class RetentionSchedule(Base):
    __tablename__ = "retention_schedules"
    __table_args__ = (
        UniqueConstraint(
            "organization_id",
            "resource_type",
            "resource_id",
            name="uq_retention_schedules_resource",
        ),
        Index("ix_retention_schedules_due", "state", "delete_after"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    resource_type: Mapped[str] = mapped_column(String)
    resource_id: Mapped[str] = mapped_column(String)
    delete_after: Mapped[datetime] = mapped_column(UtcDateTime)
    # active -> scheduled -> backed_up? -> deleted
    state: Mapped[str] = mapped_column(String, default="scheduled", nullable=False)
    backup_id: Mapped[str | None] = mapped_column(String, nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, server_default=func.now(), onupdate=func.now())


class RetentionBackup(Base):
    __tablename__ = "retention_backups"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    resource_type: Mapped[str] = mapped_column(String)
    resource_id: Mapped[str] = mapped_column(String)
    # Envelope fields of the JSON snapshot; the data key lives in encryption_keys.
    key_id: Mapped[str] = mapped_column(String)
    iv: Mapped[bytes] = mapped_column(LargeBinary)
    tag: Mapped[bytes] = mapped_column(LargeBinary)
    ciphertext: Mapped[bytes] = mapped_column(LargeBinary)
    record_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, server_default=func.now())


class SweepLease(Base):
    __tablename__ = "sweep_leases"

    name: Mapped[str] = mapped_column(String, primary_key=True)
    holder: Mapped[str] = mapped_column(String)
    acquired_at: Mapped[datetime] = mapped_column(UtcDateTime)
    expires_at: Mapped[datetime] = mapped_column(UtcDateTime)


class DeletionRequest(Base):
    __tablename__ = "deletion_requests"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    reason: Mapped[str] = mapped_column(Text)
    # SHA-256 of the confirmation code; the plaintext is returned to the requester once.
    confirmation_code_hash: Mapped[str] = mapped_column(String)
    requested_by: Mapped[str] = mapped_column(String)
    requested_at: Mapped[datetime] = mapped_column(UtcDateTime)
    status: Mapped[str] = mapped_column(String, default="pending", nullable=False)
    # Names of erasure steps already committed, so a retry resumes after them.
    completed_steps_json: Mapped[list[str]] = mapped_column(JSONType, default=list)
    completed_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)


class DataExport(Base):
    __tablename__ = "data_exports"
    __table_args__ = (Index("ix_data_exports_user_requested", "organization_id", "user_id", "requested_at"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[str] = mapped_column(String)
    requested_by: Mapped[str] = mapped_column(String)
    format: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="running", nullable=False)
    # {step_name: envelope dict}; each gathered step is stored encrypted.
    steps_json: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    requested_at: Mapped[datetime] = mapped_column(UtcDateTime)
    completed_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)


class UserPreference(Base):
    __tablename__ = "user_preferences"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    preferences_json: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    # Per-user retention overrides, bounded by the organization ceiling.
    retention_json: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, server_default=func.now(), onupdate=func.now())


class UserSession(Base):
    __tablename__ = "user_sessions"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, server_default=func.now())
    last_seen_at: Mapped[datetime] = mapped_column(UtcDateTime, server_default=func.now())


class Meeting(Base):
    __tablename__ = "meetings"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    title: Mapped[str] = mapped_column(String)
    file_hash: Mapped[str | None] = mapped_column(String, nullable=True)
    encryption_key_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, server_default=func.now())


class ActionItem(Base):
    __tablename__ = "action_items"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    meeting_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    owner_user_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    description: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String, default="open", nullable=False)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, server_default=func.now())


class AnalyticsRecord(Base):
    __tablename__ = "analytics_records"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    metric_name: Mapped[str] = mapped_column(String)
    metric_value: Mapped[float] = mapped_column(Float)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, server_default=func.now())


class StoredFile(Base):
    __tablename__ = "stored_files"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    meeting_id: Mapped[str | None] = mapped_column(String, nullable=True)
    file_name: Mapped[str] = mapped_column(String)
    file_type: Mapped[str] = mapped_column(String)
    size_bytes: Mapped[int] = mapped_column(BigInteger)
    # Digest of the plaintext for integrity verification after decrypt.
    sha256: Mapped[str] = mapped_column(String)
    key_id: Mapped[str] = mapped_column(String)
    iv: Mapped[bytes] = mapped_column(LargeBinary)
    tag: Mapped[bytes] = mapped_column(LargeBinary)
    ciphertext: Mapped[bytes] = mapped_column(LargeBinary)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, server_default=func.now())
