from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from maestro.domain.enums import (
    AuthAction,
    DataAction,
    FileAction,
    RetentionAction,
    SecurityEvent,
    Severity,
)


class _EventBase(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    # Free-form caller context; sanitized before persistence.
    extra: dict[str, Any] = Field(default_factory=dict)


class AuthEvent(_EventBase):
    kind: Literal["auth"] = "auth"
    auth_action: AuthAction
    success: bool = True
    failure_reason: str | None = None


class DataAccessEvent(_EventBase):
    kind: Literal["data_access"] = "data_access"
    data_action: DataAction
    record_count: int | None = None


class FileEvent(_EventBase):
    kind: Literal["file"] = "file"
    file_action: FileAction
    file_name: str | None = None
    file_size: int | None = None
    file_type: str | None = None


class SecurityEventDetails(_EventBase):
    kind: Literal["security"] = "security"
    event: SecurityEvent
    severity: Severity
    detail: str | None = None


class ApiAccessEvent(_EventBase):
    kind: Literal["api_access"] = "api_access"
    method: str
    path: str
    status_code: int
    latency_ms: float | None = None


class RetentionEvent(_EventBase):
    kind: Literal["retention"] = "retention"
    retention_action: RetentionAction
    retention_days: int | None = None
    delete_after: str | None = None
    backup_id: str | None = None


class AccessGrantEvent(_EventBase):
    kind: Literal["access_grant"] = "access_grant"
    # Snapshot of the grant (or role) before and after the mutation.
    old_state: dict[str, Any] | None = None
    new_state: dict[str, Any] | None = None


class KeyEvent(_EventBase):
    kind: Literal["key"] = "key"
    key_id: str | None = None
    keys_affected: int | None = None
    master_key_id: str | None = None


class GdprEvent(_EventBase):
    kind: Literal["gdpr"] = "gdpr"
    request_id: str | None = None
    format: str | None = None
    step: str | None = None
    reason: str | None = None


AuditMetadata = Annotated[
    Union[
        AuthEvent,
        DataAccessEvent,
        FileEvent,
        SecurityEventDetails,
        ApiAccessEvent,
        RetentionEvent,
        AccessGrantEvent,
        KeyEvent,
        GdprEvent,
    ],
    Field(discriminator="kind"),
]
