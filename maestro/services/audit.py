from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from maestro.core.clock import Clock, utc_now
from maestro.core.config import get_settings
from maestro.core.errors import AuditWriteError, ValidationError
from maestro.domain.enums import (
    AuthAction,
    DataAction,
    FileAction,
    Outcome,
    RetentionAction,
    SecurityEvent,
    Severity,
)
from maestro.domain.events import (
    ApiAccessEvent,
    AuditMetadata,
    AuthEvent,
    DataAccessEvent,
    FileEvent,
    RetentionEvent,
    SecurityEventDetails,
)
from maestro.domain.models import AuditLogEntry
from maestro.persistence.db import SessionFactory
from maestro.persistence.guards import require_organization_id
from maestro.persistence.repos import audit as audit_repo
from maestro.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = [
    "api_key",
    "authorization",
    "token",
    "secret",
    "password",
    "confirmation_code",
    "master_key",
    "data_key",
    "wrapped_key",
    "plaintext",
]
_REDACTED_VALUE = "[REDACTED]"

_SEVERITY_BY_EVENT: dict[SecurityEvent, Severity] = {
    SecurityEvent.UNAUTHORIZED_ACCESS: Severity.CRITICAL,
    SecurityEvent.DATA_BREACH_ATTEMPT: Severity.CRITICAL,
    SecurityEvent.SUSPICIOUS_ACTIVITY: Severity.HIGH,
    SecurityEvent.ENCRYPTION_KEY_ROTATION: Severity.MEDIUM,
}


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


def classify_severity(event: SecurityEvent) -> Severity:
    return _SEVERITY_BY_EVENT.get(event, Severity.LOW)


@dataclass(frozen=True)
class RequestContext:
    ip_address: str | None = None
    user_agent: str | None = None
    session_id: str | None = None
    request_id: str | None = None


def request_context_from(request: Request | None) -> RequestContext:
    # Prefer the first proxy hop, then X-Real-IP, then the socket peer.
    if request is None:
        return RequestContext()
    forwarded = request.headers.get("x-forwarded-for")
    ip_address = forwarded.split(",")[0].strip() if forwarded else None
    if not ip_address:
        ip_address = request.headers.get("x-real-ip") or (request.client.host if request.client else None)
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    return RequestContext(
        ip_address=ip_address,
        user_agent=request.headers.get("user-agent"),
        session_id=request.headers.get("x-session-id"),
        request_id=request_id,
    )


@dataclass(frozen=True)
class AuditFilters:
    user_id: str | None = None
    action: str | None = None
    resource_type: str | None = None
    resource_id: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    limit: int = 100
    offset: int = 0


@dataclass(frozen=True)
class AuditStats:
    period_days: int
    total_events: int
    unique_users: int
    security_events: int
    data_access_events: int
    top_actions: list[tuple[str, int]] = field(default_factory=list)


class AuditLogger:
    """Append-only audit sink.

    Ordinary entries are best-effort: a failed write is logged, counted and kept
    in a bounded dead-letter buffer, and never raised. Entries marked ``critical``
    are written before the action they describe; if the write cannot be confirmed
    ``AuditWriteError`` is raised so the caller aborts.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        clock: Clock = utc_now,
        dead_letter_max: int | None = None,
        query_max_limit: int | None = None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self._clock = clock
        self._dead_letters: deque[dict[str, Any]] = deque(
            maxlen=dead_letter_max if dead_letter_max is not None else settings.audit_dead_letter_max
        )
        self._query_max_limit = query_max_limit or settings.audit_query_max_limit

    @property
    def dead_letters(self) -> list[dict[str, Any]]:
        return list(self._dead_letters)

    async def log(
        self,
        action: str,
        resource_type: str,
        *,
        organization_id: str,
        user_id: str | None = None,
        resource_id: str | None = None,
        metadata: AuditMetadata | None = None,
        context: RequestContext | None = None,
        outcome: Outcome | str = Outcome.SUCCESS,
        session: AsyncSession | None = None,
        critical: bool = False,
    ) -> AuditLogEntry | None:
        require_organization_id(organization_id)
        ctx = context or RequestContext()
        payload = metadata.model_dump(mode="json", exclude_none=True) if metadata is not None else {}
        entry = AuditLogEntry(
            occurred_at=self._clock(),
            organization_id=organization_id,
            user_id=user_id,
            action=action,
            resource_type=str(getattr(resource_type, "value", resource_type)),
            resource_id=resource_id,
            outcome=str(getattr(outcome, "value", outcome)),
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
            session_id=ctx.session_id,
            request_id=ctx.request_id,
            metadata_json=sanitize_metadata(payload),
        )
        if critical:
            return await self._write_confirmed(entry, session)
        return await self._write_best_effort(entry, session)

    async def _write_confirmed(self, entry: AuditLogEntry, session: AsyncSession | None) -> AuditLogEntry:
        # Staged in the caller's transaction when given, so entry and action commit together.
        try:
            if session is not None:
                session.add(entry)
                await session.flush()
                return entry
            async with self._session_factory() as own_session:
                own_session.add(entry)
                await own_session.commit()
                return entry
        except SQLAlchemyError as exc:
            increment_counter("audit.critical_write_failures")
            logger.error(
                "audit_critical_write_failed action=%s organization_id=%s",
                entry.action,
                entry.organization_id,
                exc_info=exc,
            )
            raise AuditWriteError(f"audit write for {entry.action} could not be confirmed") from exc

    async def _write_best_effort(self, entry: AuditLogEntry, session: AsyncSession | None) -> AuditLogEntry | None:
        if session is not None:
            # Rides along with the caller's commit.
            session.add(entry)
            return entry
        try:
            async with self._session_factory() as own_session:
                own_session.add(entry)
                await own_session.commit()
            return entry
        except SQLAlchemyError as exc:
            self._dead_letter(entry, exc)
            return None

    def _dead_letter(self, entry: AuditLogEntry, exc: Exception) -> None:
        self._dead_letters.append(
            {
                "occurred_at": entry.occurred_at.isoformat(),
                "organization_id": entry.organization_id,
                "user_id": entry.user_id,
                "action": entry.action,
                "resource_type": entry.resource_type,
                "resource_id": entry.resource_id,
                "outcome": entry.outcome,
                "metadata": entry.metadata_json,
                "error": exc.__class__.__name__,
            }
        )
        increment_counter("audit.dead_letters")
        set_gauge("audit.dead_letter_depth", len(self._dead_letters))
        logger.error(
            "audit_event_write_failed action=%s organization_id=%s",
            entry.action,
            entry.organization_id,
            exc_info=exc,
        )

    async def log_auth_event(
        self,
        auth_action: AuthAction,
        *,
        organization_id: str,
        user_id: str | None,
        success: bool = True,
        failure_reason: str | None = None,
        context: RequestContext | None = None,
        extra: dict[str, Any] | None = None,
    ) -> AuditLogEntry | None:
        return await self.log(
            f"auth.{auth_action.value}",
            "user",
            organization_id=organization_id,
            user_id=user_id,
            resource_id=user_id,
            metadata=AuthEvent(
                auth_action=auth_action,
                success=success,
                failure_reason=failure_reason,
                extra=extra or {},
            ),
            context=context,
            outcome=Outcome.SUCCESS if success else Outcome.FAILURE,
        )

    async def log_data_access(
        self,
        data_action: DataAction,
        resource_type: str,
        resource_id: str | None,
        *,
        organization_id: str,
        user_id: str | None,
        record_count: int | None = None,
        context: RequestContext | None = None,
        extra: dict[str, Any] | None = None,
        session: AsyncSession | None = None,
        critical: bool = False,
    ) -> AuditLogEntry | None:
        return await self.log(
            f"data.{data_action.value}",
            resource_type,
            organization_id=organization_id,
            user_id=user_id,
            resource_id=resource_id,
            metadata=DataAccessEvent(data_action=data_action, record_count=record_count, extra=extra or {}),
            context=context,
            session=session,
            critical=critical,
        )

    async def log_file_operation(
        self,
        file_action: FileAction,
        file_id: str | None,
        *,
        organization_id: str,
        user_id: str | None,
        file_name: str | None = None,
        file_size: int | None = None,
        file_type: str | None = None,
        context: RequestContext | None = None,
        extra: dict[str, Any] | None = None,
        session: AsyncSession | None = None,
        critical: bool = False,
    ) -> AuditLogEntry | None:
        return await self.log(
            f"file.{file_action.value}",
            "file",
            organization_id=organization_id,
            user_id=user_id,
            resource_id=file_id,
            metadata=FileEvent(
                file_action=file_action,
                file_name=file_name,
                file_size=file_size,
                file_type=file_type,
                extra=extra or {},
            ),
            context=context,
            session=session,
            critical=critical,
        )

    async def log_security_event(
        self,
        event: SecurityEvent,
        *,
        organization_id: str,
        user_id: str | None = None,
        resource_type: str = "security",
        resource_id: str | None = None,
        detail: str | None = None,
        context: RequestContext | None = None,
        extra: dict[str, Any] | None = None,
        session: AsyncSession | None = None,
        critical: bool = False,
    ) -> AuditLogEntry | None:
        severity = classify_severity(event)
        if severity in (Severity.CRITICAL, Severity.HIGH):
            logger.warning(
                "security_event event=%s severity=%s organization_id=%s user_id=%s",
                event.value,
                severity.value,
                organization_id,
                user_id,
            )
        outcome = Outcome.SUCCESS if event == SecurityEvent.ENCRYPTION_KEY_ROTATION else Outcome.DENIED
        return await self.log(
            f"security.{event.value}",
            resource_type,
            organization_id=organization_id,
            user_id=user_id,
            resource_id=resource_id,
            metadata=SecurityEventDetails(event=event, severity=severity, detail=detail, extra=extra or {}),
            context=context,
            outcome=outcome,
            session=session,
            critical=critical,
        )

    async def log_api_access(
        self,
        method: str,
        path: str,
        status_code: int,
        *,
        organization_id: str,
        user_id: str | None,
        latency_ms: float | None = None,
        context: RequestContext | None = None,
    ) -> AuditLogEntry | None:
        return await self.log(
            "api.access",
            "api",
            organization_id=organization_id,
            user_id=user_id,
            resource_id=path,
            metadata=ApiAccessEvent(method=method, path=path, status_code=status_code, latency_ms=latency_ms),
            context=context,
            outcome=Outcome.SUCCESS if status_code < 400 else Outcome.FAILURE,
        )

    async def log_data_retention(
        self,
        retention_action: RetentionAction,
        resource_type: str,
        resource_id: str | None,
        *,
        organization_id: str,
        user_id: str | None = None,
        retention_days: int | None = None,
        delete_after: datetime | None = None,
        backup_id: str | None = None,
        context: RequestContext | None = None,
        extra: dict[str, Any] | None = None,
        session: AsyncSession | None = None,
        critical: bool = False,
    ) -> AuditLogEntry | None:
        return await self.log(
            f"retention.{retention_action.value}",
            resource_type,
            organization_id=organization_id,
            user_id=user_id,
            resource_id=resource_id,
            metadata=RetentionEvent(
                retention_action=retention_action,
                retention_days=retention_days,
                delete_after=delete_after.isoformat() if delete_after else None,
                backup_id=backup_id,
                extra=extra or {},
            ),
            context=context,
            session=session,
            critical=critical,
        )

    async def query_audit_logs(self, organization_id: str, filters: AuditFilters | None = None) -> list[AuditLogEntry]:
        # The organization is a required positional argument; there is no cross-organization query.
        require_organization_id(organization_id)
        resolved = filters or AuditFilters()
        if resolved.limit < 1 or resolved.offset < 0:
            raise ValidationError("limit must be positive and offset non-negative")
        if resolved.start and resolved.end and resolved.start > resolved.end:
            raise ValidationError("start must not be after end")
        async with self._session_factory() as session:
            return await audit_repo.list_entries(
                session,
                organization_id=organization_id,
                user_id=resolved.user_id,
                action=resolved.action,
                resource_type=resolved.resource_type,
                resource_id=resolved.resource_id,
                occurred_from=resolved.start,
                occurred_to=resolved.end,
                offset=resolved.offset,
                limit=min(resolved.limit, self._query_max_limit),
            )

    async def get_audit_stats(self, organization_id: str, days: int = 30) -> AuditStats:
        require_organization_id(organization_id)
        if days < 1:
            raise ValidationError("days must be positive")
        since = self._clock() - timedelta(days=days)
        async with self._session_factory() as session:
            return AuditStats(
                period_days=days,
                total_events=await audit_repo.count_since(session, organization_id=organization_id, since=since),
                unique_users=await audit_repo.count_unique_users_since(
                    session, organization_id=organization_id, since=since
                ),
                security_events=await audit_repo.count_action_prefix_since(
                    session, organization_id=organization_id, prefix="security", since=since
                ),
                data_access_events=await audit_repo.count_action_prefix_since(
                    session, organization_id=organization_id, prefix="data", since=since
                ),
                top_actions=await audit_repo.action_counts_since(
                    session, organization_id=organization_id, since=since
                ),
            )
