from __future__ import annotations

from enum import Enum


class Role(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    USER = "user"


class ResourceType(str, Enum):
    MEETING = "meeting"
    ACTION = "action"
    COMPANY = "company"
    USER = "user"
    ANALYTICS = "analytics"
    FILE = "file"


class Permission(str, Enum):
    READ = "read"
    WRITE = "write"
    DELETE = "delete"
    ADMIN = "admin"


class ComplianceMode(str, Enum):
    STANDARD = "standard"
    GDPR = "gdpr"
    HIPAA = "hipaa"
    SOX = "sox"


class RetainedResource(str, Enum):
    # Resource types governed by retention policies; audit_log is not an RBAC resource.
    MEETING = "meeting"
    ACTION = "action"
    ANALYTICS = "analytics"
    FILE = "file"
    AUDIT_LOG = "audit_log"


class RetentionState(str, Enum):
    ACTIVE = "active"
    SCHEDULED = "scheduled"
    BACKED_UP = "backed_up"
    DELETED = "deleted"


class DeletionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"


class ExportStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ExportFormat(str, Enum):
    JSON = "json"
    CSV = "csv"
    PDF = "pdf"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SecurityEvent(str, Enum):
    UNAUTHORIZED_ACCESS = "unauthorized_access"
    DATA_BREACH_ATTEMPT = "data_breach_attempt"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    ENCRYPTION_KEY_ROTATION = "encryption_key_rotation"
    DECRYPTION_FAILURE = "decryption_failure"
    INVALID_CONFIRMATION_CODE = "invalid_confirmation_code"
    INVALID_REQUEST_STATE = "invalid_request_state"


class AuthAction(str, Enum):
    LOGIN = "login"
    LOGOUT = "logout"
    REGISTER = "register"
    PASSWORD_RESET = "password_reset"


class DataAction(str, Enum):
    VIEW = "view"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    EXPORT = "export"


class FileAction(str, Enum):
    UPLOAD = "upload"
    DOWNLOAD = "download"
    DELETE = "delete"
    ENCRYPT = "encrypt"
    DECRYPT = "decrypt"


class RetentionAction(str, Enum):
    SCHEDULED_DELETION = "scheduled_deletion"
    DELETED = "deleted"
    RETENTION_EXTENDED = "retention_extended"
    POLICY_UPDATED = "policy_updated"
    BACKUP_CREATED = "backup_created"
    BACKUP_RESTORED = "backup_restored"


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    DENIED = "denied"
