from __future__ import annotations

import csv
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import io
import json
import logging
import math
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from maestro.core.clock import Clock, utc_now
from maestro.core.config import get_settings
from maestro.core.errors import (
    InvalidConfirmationCode,
    InvalidRequestState,
    RateLimitExceeded,
    ResourceNotFoundError,
    ValidationError,
)
from maestro.domain.enums import (
    DeletionStatus,
    ExportFormat,
    ExportStatus,
    Permission,
    ResourceType,
    RetainedResource,
    RetentionAction,
    RetentionState,
    SecurityEvent,
)
from maestro.domain.events import GdprEvent
from maestro.domain.models import (
    AccessGrant,
    ActionItem,
    AnalyticsRecord,
    ApiKey,
    AuditLogEntry,
    DataExport,
    DeletionRequest,
    Meeting,
    StoredFile,
    User,
    UserPreference,
    UserSession,
)
from maestro.persistence.db import SessionFactory
from maestro.persistence.repos import gdpr as gdpr_repo
from maestro.persistence.repos import retention as retention_repo
from maestro.persistence.repos import users as users_repo
from maestro.services.audit import AuditLogger, RequestContext
from maestro.services.authz.access_control import AccessControlService
from maestro.services.crypto.envelope import Envelope, EnvelopeService
from maestro.services.crypto.integrity import generate_secure_token, hash_bytes, verify_integrity
from maestro.services.retention import DataRetentionService, compliance_ceiling
from maestro.services.snapshots import row_to_dict


logger = logging.getLogger(__name__)

STEP_PERSONAL_DATA = "personal_data"
STEP_ORGANIZATION_DATA = "organization_data"
STEP_AUDIT_TRAIL = "audit_trail"
EXPORT_STEPS = (STEP_PERSONAL_DATA, STEP_ORGANIZATION_DATA, STEP_AUDIT_TRAIL)
ERASURE_STEPS = (STEP_PERSONAL_DATA, STEP_ORGANIZATION_DATA, STEP_AUDIT_TRAIL)

_FILE_EXPORT_FIELDS = ("id", "meeting_id", "file_name", "file_type", "size_bytes", "sha256", "created_at")


class RetentionPreferences(BaseModel):
    model_config = ConfigDict(extra="forbid")

    meeting_days: int | None = Field(default=None, ge=1)
    action_days: int | None = Field(default=None, ge=1)
    analytics_days: int | None = Field(default=None, ge=1)
    file_days: int | None = Field(default=None, ge=1)
    # Opt out of automatic scheduling for newly created records.
    auto_delete: bool | None = None


@dataclass(frozen=True)
class UserDataExport:
    export_id: str
    user_id: str
    organization_id: str
    format: str
    export_date: datetime
    personal_data: dict[str, Any]
    organization_data: dict[str, Any]
    audit_trail: list[dict[str, Any]]

    def to_dict(self) -> dict[str, Any]:
        return {
            "export_id": self.export_id,
            "user_id": self.user_id,
            "organization_id": self.organization_id,
            "format": self.format,
            "export_date": self.export_date.isoformat(),
            "personal_data": self.personal_data,
            "organization_data": self.organization_data,
            "audit_trail": self.audit_trail,
        }


@dataclass(frozen=True)
class DeletionRequestCreated:
    request: DeletionRequest
    # Returned once to the requester; only its hash is stored.
    confirmation_code: str


@dataclass(frozen=True)
class RetentionStatus:
    user_id: str
    organization_id: str
    policies: list[dict[str, Any]]
    preferences: dict[str, Any]
    data_counts: dict[str, int]
    scheduled_deletions: list[dict[str, Any]] = field(default_factory=list)
    pending_deletion_requests: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "organization_id": self.organization_id,
            "policies": self.policies,
            "preferences": self.preferences,
            "data_counts": self.data_counts,
            "scheduled_deletions": self.scheduled_deletions,
            "pending_deletion_requests": self.pending_deletion_requests,
        }


def _coerce_format(value: ExportFormat | str) -> ExportFormat:
    try:
        return ExportFormat(value)
    except ValueError as exc:
        raise ValidationError(f"Unsupported export format: {value}; expected json, csv or pdf") from exc


def serialize_export(export: UserDataExport, format: ExportFormat | str) -> bytes:
    fmt = _coerce_format(format)
    if fmt == ExportFormat.JSON:
        return json.dumps(export.to_dict(), indent=2, sort_keys=True, default=str).encode("utf-8")
    if fmt == ExportFormat.CSV:
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(["section", "record_type", "record_id", "field", "value"])
        sections: list[tuple[str, str, list[dict[str, Any]]]] = [
            ("personal_data", "profile", [export.personal_data.get("profile") or {}]),
            ("personal_data", "preferences", [export.personal_data.get("preferences") or {}]),
            ("personal_data", "sessions", export.personal_data.get("sessions", [])),
        ]
        for name, records in export.organization_data.items():
            sections.append(("organization_data", name, records))
        sections.append(("audit_trail", "audit_logs", export.audit_trail))
        for section, record_type, records in sections:
            for record in records:
                record_id = record.get("id", "")
                for key, value in record.items():
                    if key in ("id", "__table__"):
                        continue
                    rendered = json.dumps(value, default=str) if isinstance(value, (dict, list)) else value
                    writer.writerow([section, record_type, record_id, key, "" if rendered is None else rendered])
        return buffer.getvalue().encode("utf-8")
    # PDF layout belongs to the presentation layer; the structured export is format-agnostic.
    raise ValidationError("pdf exports are rendered by the client; serialize as json or csv")


class UserDataManagementService:
    """Export and two-phase erasure of a user's data, composed over the security core."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        access: AccessControlService,
        audit: AuditLogger,
        retention: DataRetentionService,
        envelope: EnvelopeService,
        clock: Clock = utc_now,
        export_cooldown_hours: int | None = None,
        org_export_limit_per_day: int | None = None,
        audit_trail_retention_days: int | None = None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self._access = access
        self._audit = audit
        self._retention = retention
        self._envelope = envelope
        self._clock = clock
        self._export_cooldown = timedelta(
            hours=export_cooldown_hours if export_cooldown_hours is not None else settings.gdpr_export_cooldown_hours
        )
        self._org_export_limit = (
            org_export_limit_per_day
            if org_export_limit_per_day is not None
            else settings.gdpr_org_export_limit_per_day
        )
        self._audit_trail_retention_days = (
            audit_trail_retention_days
            if audit_trail_retention_days is not None
            else settings.gdpr_audit_trail_retention_days
        )

    async def _enforce_export_limits(self, session: AsyncSession, organization_id: str, user_id: str) -> None:
        now = self._clock()
        last = await gdpr_repo.latest_completed_export(session, organization_id=organization_id, user_id=user_id)
        if last is not None and last.completed_at is not None:
            available_at = last.completed_at + self._export_cooldown
            if available_at > now:
                retry_after = math.ceil((available_at - now).total_seconds())
                raise RateLimitExceeded(
                    "Only one data export is allowed per user every "
                    f"{int(self._export_cooldown.total_seconds() // 3600)} hours",
                    retry_after_s=retry_after,
                )
        if self._org_export_limit > 0:
            window_start = now - timedelta(days=1)
            recent = await gdpr_repo.completed_exports_since(
                session, organization_id=organization_id, since=window_start
            )
            if len(recent) >= self._org_export_limit:
                retry_after = math.ceil((recent[0] + timedelta(days=1) - now).total_seconds())
                raise RateLimitExceeded(
                    "Organization export limit reached for the last 24 hours",
                    retry_after_s=max(1, retry_after),
                )

    async def _gather_personal_data(self, session: AsyncSession, organization_id: str, user_id: str) -> dict[str, Any]:
        user = await users_repo.get_member(session, organization_id=organization_id, user_id=user_id)
        preferences = await session.get(UserPreference, user_id)
        sessions = (
            await session.execute(
                select(UserSession)
                .where(UserSession.organization_id == organization_id, UserSession.user_id == user_id)
                .order_by(UserSession.created_at)
            )
        ).scalars().all()
        return {
            "profile": row_to_dict(user) if user is not None else None,
            "preferences": row_to_dict(preferences)
            if preferences is not None and preferences.organization_id == organization_id
            else None,
            "sessions": [row_to_dict(row) for row in sessions],
        }

    async def _user_meeting_ids(self, session: AsyncSession, organization_id: str, user_id: str) -> list[str]:
        result = await session.execute(
            select(Meeting.id).where(Meeting.organization_id == organization_id, Meeting.user_id == user_id)
        )
        return list(result.scalars().all())

    def _action_clause(self, organization_id: str, user_id: str, meeting_ids: list[str]):
        owner_clause = ActionItem.owner_user_id == user_id
        if meeting_ids:
            owner_clause = or_(owner_clause, ActionItem.meeting_id.in_(meeting_ids))
        return (ActionItem.organization_id == organization_id, owner_clause)

    async def _gather_organization_data(
        self,
        session: AsyncSession,
        organization_id: str,
        user_id: str,
    ) -> dict[str, Any]:
        meetings = (
            await session.execute(
                select(Meeting).where(Meeting.organization_id == organization_id, Meeting.user_id == user_id)
            )
        ).scalars().all()
        meeting_ids = [meeting.id for meeting in meetings]
        actions = (
            await session.execute(select(ActionItem).where(*self._action_clause(organization_id, user_id, meeting_ids)))
        ).scalars().all()
        analytics = (
            await session.execute(
                select(AnalyticsRecord).where(
                    AnalyticsRecord.organization_id == organization_id,
                    AnalyticsRecord.user_id == user_id,
                )
            )
        ).scalars().all()
        files = (
            await session.execute(
                select(StoredFile).where(StoredFile.organization_id == organization_id, StoredFile.user_id == user_id)
            )
        ).scalars().all()
        return {
            "meetings": [row_to_dict(row) for row in meetings],
            "actions": [row_to_dict(row) for row in actions],
            "analytics": [row_to_dict(row) for row in analytics],
            # File contents stay encrypted at rest; the export lists them with their integrity digests.
            "files": [{key: row_to_dict(row)[key] for key in _FILE_EXPORT_FIELDS} for row in files],
        }

    async def _gather_audit_trail(self, session: AsyncSession, organization_id: str, user_id: str) -> list[dict[str, Any]]:
        rows = (
            await session.execute(
                select(AuditLogEntry)
                .where(AuditLogEntry.organization_id == organization_id, AuditLogEntry.user_id == user_id)
                .order_by(AuditLogEntry.occurred_at, AuditLogEntry.id)
            )
        ).scalars().all()
        return [row_to_dict(row) for row in rows]

    async def _gather_step(self, session: AsyncSession, step: str, organization_id: str, user_id: str) -> Any:
        if step == STEP_PERSONAL_DATA:
            return await self._gather_personal_data(session, organization_id, user_id)
        if step == STEP_ORGANIZATION_DATA:
            return await self._gather_organization_data(session, organization_id, user_id)
        return await self._gather_audit_trail(session, organization_id, user_id)

    async def authorize_subject_access(
        self,
        requester: str,
        organization_id: str,
        user_id: str,
        *,
        context: RequestContext | None = None,
    ) -> None:
        # Reading your own data needs user:read; anyone else's needs user:write from the role or a grant.
        permission = Permission.READ if requester == user_id else Permission.WRITE
        await self._access.require_permission(
            requester,
            organization_id,
            ResourceType.USER,
            permission,
            user_id,
            context=context,
        )

    async def export_user_data(
        self,
        user_id: str,
        organization_id: str,
        format: ExportFormat | str = ExportFormat.JSON,
        *,
        requested_by: str | None = None,
        context: RequestContext | None = None,
    ) -> UserDataExport:
        fmt = _coerce_format(format)
        requester = requested_by or user_id
        await self.authorize_subject_access(requester, organization_id, user_id, context=context)
        async with self._session_factory() as session:
            if await users_repo.get_member(session, organization_id=organization_id, user_id=user_id) is None:
                raise ResourceNotFoundError("user not found in organization")
            await self._enforce_export_limits(session, organization_id, user_id)
            export = await gdpr_repo.get_running_export(
                session, organization_id=organization_id, user_id=user_id, format=fmt.value
            )
            if export is None:
                export = DataExport(
                    id=uuid4().hex,
                    organization_id=organization_id,
                    user_id=user_id,
                    requested_by=requester,
                    format=fmt.value,
                    status=ExportStatus.RUNNING.value,
                    steps_json={},
                    requested_at=self._clock(),
                )
                session.add(export)
                await session.commit()
            else:
                logger.info("gdpr_export_resumed export_id=%s completed_steps=%s", export.id, sorted(export.steps_json))

            # Each gathered step is committed encrypted, so a retried export skips it.
            for step in EXPORT_STEPS:
                if step in (export.steps_json or {}):
                    continue
                data = await self._gather_step(session, step, organization_id, user_id)
                envelope = await self._envelope.encrypt_json(data, organization_id)
                export.steps_json = {**(export.steps_json or {}), step: envelope.to_dict()}
                await session.commit()

            results: dict[str, Any] = {}
            for step in EXPORT_STEPS:
                results[step] = await self._envelope.decrypt_json(
                    Envelope.from_dict(export.steps_json[step]), organization_id
                )
            export_date = self._clock()
            export.status = ExportStatus.COMPLETED.value
            export.completed_at = export_date
            await self._audit.log(
                "gdpr.export",
                ResourceType.USER.value,
                organization_id=organization_id,
                user_id=requester,
                resource_id=user_id,
                metadata=GdprEvent(request_id=export.id, format=fmt.value),
                context=context,
                session=session,
            )
            await session.commit()
        logger.info("gdpr_export_completed export_id=%s organization_id=%s", export.id, organization_id)
        return UserDataExport(
            export_id=export.id,
            user_id=user_id,
            organization_id=organization_id,
            format=fmt.value,
            export_date=export_date,
            personal_data=results[STEP_PERSONAL_DATA],
            organization_data=results[STEP_ORGANIZATION_DATA],
            audit_trail=results[STEP_AUDIT_TRAIL],
        )

    async def get_data_export_history(self, user_id: str, organization_id: str) -> list[DataExport]:
        async with self._session_factory() as session:
            return await gdpr_repo.list_exports(session, organization_id=organization_id, user_id=user_id)

    async def delete_user_data(
        self,
        user_id: str,
        organization_id: str,
        reason: str,
        requested_by: str,
        *,
        context: RequestContext | None = None,
    ) -> DeletionRequestCreated:
        if not reason or not reason.strip():
            raise ValidationError("reason is required")
        await self._access.require_permission(
            requested_by,
            organization_id,
            ResourceType.USER,
            Permission.DELETE,
            user_id,
            context=context,
        )
        confirmation_code = generate_secure_token(24)
        async with self._session_factory() as session:
            if await users_repo.get_member(session, organization_id=organization_id, user_id=user_id) is None:
                raise ResourceNotFoundError("user not found in organization")
            request = DeletionRequest(
                id=uuid4().hex,
                organization_id=organization_id,
                user_id=user_id,
                reason=reason.strip(),
                confirmation_code_hash=hash_bytes(confirmation_code),
                requested_by=requested_by,
                requested_at=self._clock(),
                status=DeletionStatus.PENDING.value,
                completed_steps_json=[],
            )
            session.add(request)
            await self._audit.log(
                "gdpr.deletion_requested",
                ResourceType.USER.value,
                organization_id=organization_id,
                user_id=requested_by,
                resource_id=user_id,
                metadata=GdprEvent(request_id=request.id, reason=request.reason),
                context=context,
                session=session,
            )
            await session.commit()
        return DeletionRequestCreated(request=request, confirmation_code=confirmation_code)

    async def get_deletion_request(self, deletion_request_id: str, organization_id: str) -> DeletionRequest:
        async with self._session_factory() as session:
            request = await gdpr_repo.get_deletion_request(
                session, organization_id=organization_id, request_id=deletion_request_id
            )
        if request is None:
            raise ResourceNotFoundError("deletion request not found")
        return request

    async def reject_deletion_request(
        self,
        deletion_request_id: str,
        organization_id: str,
        *,
        rejected_by: str,
        context: RequestContext | None = None,
    ) -> DeletionRequest:
        await self._access.require_permission(
            rejected_by,
            organization_id,
            ResourceType.USER,
            Permission.DELETE,
            context=context,
        )
        async with self._session_factory() as session:
            request = await gdpr_repo.get_deletion_request(
                session, organization_id=organization_id, request_id=deletion_request_id
            )
            if request is None:
                raise ResourceNotFoundError("deletion request not found")
            if request.status != DeletionStatus.PENDING.value or request.completed_steps_json:
                raise InvalidRequestState(f"deletion request is {request.status}")
            request.status = DeletionStatus.REJECTED.value
            await self._audit.log(
                "gdpr.deletion_rejected",
                ResourceType.USER.value,
                organization_id=organization_id,
                user_id=rejected_by,
                resource_id=request.user_id,
                metadata=GdprEvent(request_id=request.id),
                context=context,
                session=session,
            )
            await session.commit()
            return request

    async def execute_data_deletion(
        self,
        deletion_request_id: str,
        organization_id: str,
        confirmation_code: str,
        *,
        executed_by: str | None = None,
        context: RequestContext | None = None,
    ) -> DeletionRequest:
        async with self._session_factory() as session:
            request = await gdpr_repo.get_deletion_request(
                session, organization_id=organization_id, request_id=deletion_request_id
            )
        if request is None:
            raise ResourceNotFoundError("deletion request not found")
        actor = executed_by or request.requested_by
        if not verify_integrity(confirmation_code or "", request.confirmation_code_hash):
            await self._audit.log_security_event(
                SecurityEvent.INVALID_CONFIRMATION_CODE,
                organization_id=organization_id,
                user_id=actor,
                resource_type=ResourceType.USER.value,
                resource_id=request.user_id,
                detail=f"deletion request {request.id}",
                context=context,
            )
            raise InvalidConfirmationCode()
        if request.status != DeletionStatus.PENDING.value:
            await self._audit.log_security_event(
                SecurityEvent.INVALID_REQUEST_STATE,
                organization_id=organization_id,
                user_id=actor,
                resource_type=ResourceType.USER.value,
                resource_id=request.user_id,
                detail=f"deletion request {request.id} is {request.status}",
                context=context,
            )
            raise InvalidRequestState(f"deletion request is {request.status}, expected pending")

        for step in ERASURE_STEPS:
            if step in (request.completed_steps_json or []):
                continue
            await self._run_erasure_step(step, request.id, organization_id, actor, context)

        async with self._session_factory() as session:
            request = await gdpr_repo.get_deletion_request(
                session, organization_id=organization_id, request_id=deletion_request_id
            )
            request.status = DeletionStatus.COMPLETED.value
            request.completed_at = self._clock()
            await self._audit.log(
                "gdpr.deletion_completed",
                ResourceType.USER.value,
                organization_id=organization_id,
                user_id=actor,
                resource_id=request.user_id,
                metadata=GdprEvent(request_id=request.id),
                context=context,
                session=session,
            )
            await session.commit()
        logger.info("gdpr_deletion_completed request_id=%s organization_id=%s", request.id, organization_id)
        return request

    async def _run_erasure_step(
        self,
        step: str,
        request_id: str,
        organization_id: str,
        actor: str,
        context: RequestContext | None,
    ) -> None:
        async with self._session_factory() as session:
            request = await gdpr_repo.get_deletion_request(
                session, organization_id=organization_id, request_id=request_id
            )
            user_id = request.user_id
            await self._audit.log(
                "gdpr.deletion_step",
                ResourceType.USER.value,
                organization_id=organization_id,
                user_id=actor,
                resource_id=user_id,
                metadata=GdprEvent(request_id=request_id, step=step),
                context=context,
                session=session,
                critical=True,
            )
            if step == STEP_PERSONAL_DATA:
                await self._erase_personal_data(session, organization_id, user_id)
            elif step == STEP_ORGANIZATION_DATA:
                await self._erase_organization_data(session, organization_id, user_id)
            else:
                # The audit trail outlives the user for the compliance window, then the sweep removes it.
                await self._retention.schedule_data_deletion(
                    organization_id,
                    RetainedResource.AUDIT_LOG,
                    user_id,
                    self._audit_trail_retention_days,
                    requested_by=actor,
                    session=session,
                )
            request.completed_steps_json = [*(request.completed_steps_json or []), step]
            await session.commit()
        logger.info("gdpr_deletion_step_completed request_id=%s step=%s", request_id, step)

    async def _erase_personal_data(self, session: AsyncSession, organization_id: str, user_id: str) -> None:
        await session.execute(
            delete(UserPreference).where(
                UserPreference.organization_id == organization_id,
                UserPreference.user_id == user_id,
            )
        )
        await session.execute(
            delete(UserSession).where(UserSession.organization_id == organization_id, UserSession.user_id == user_id)
        )
        await session.execute(
            delete(AccessGrant).where(AccessGrant.organization_id == organization_id, AccessGrant.user_id == user_id)
        )
        await session.execute(
            delete(ApiKey).where(ApiKey.organization_id == organization_id, ApiKey.user_id == user_id)
        )
        await session.execute(delete(User).where(User.organization_id == organization_id, User.id == user_id))

    async def _erase_organization_data(self, session: AsyncSession, organization_id: str, user_id: str) -> None:
        now = self._clock()
        meeting_ids = await self._user_meeting_ids(session, organization_id, user_id)
        action_ids = list(
            (
                await session.execute(
                    select(ActionItem.id).where(*self._action_clause(organization_id, user_id, meeting_ids))
                )
            ).scalars().all()
        )
        analytics_ids = list(
            (
                await session.execute(
                    select(AnalyticsRecord.id).where(
                        AnalyticsRecord.organization_id == organization_id,
                        AnalyticsRecord.user_id == user_id,
                    )
                )
            ).scalars().all()
        )
        file_ids = list(
            (
                await session.execute(
                    select(StoredFile.id).where(
                        StoredFile.organization_id == organization_id,
                        StoredFile.user_id == user_id,
                    )
                )
            ).scalars().all()
        )
        if action_ids:
            await session.execute(delete(ActionItem).where(ActionItem.id.in_(action_ids)))
        if analytics_ids:
            await session.execute(delete(AnalyticsRecord).where(AnalyticsRecord.id.in_(analytics_ids)))
        if file_ids:
            await session.execute(delete(StoredFile).where(StoredFile.id.in_(file_ids)))
        if meeting_ids:
            await session.execute(delete(Meeting).where(Meeting.id.in_(meeting_ids)))
        # Retention schedules for erased records are closed so the sweep does not revisit them.
        for resource, ids in (
            (RetainedResource.MEETING, meeting_ids),
            (RetainedResource.ACTION, action_ids),
            (RetainedResource.ANALYTICS, analytics_ids),
            (RetainedResource.FILE, file_ids),
        ):
            schedules = await retention_repo.list_schedules_for_resources(
                session,
                organization_id=organization_id,
                resource_type=resource.value,
                resource_ids=ids,
            )
            for schedule in schedules:
                schedule.state = RetentionState.DELETED.value
                schedule.deleted_at = now

    async def get_data_retention_status(self, user_id: str, organization_id: str) -> RetentionStatus:
        async with self._session_factory() as session:
            if await users_repo.get_member(session, organization_id=organization_id, user_id=user_id) is None:
                raise ResourceNotFoundError("user not found in organization")
            policies = [
                (await self._retention.get_retention_policy(organization_id, resource, session=session)).to_dict()
                for resource in RetainedResource
            ]
            preferences = await session.get(UserPreference, user_id)
            meeting_ids = await self._user_meeting_ids(session, organization_id, user_id)
            action_ids = list(
                (
                    await session.execute(
                        select(ActionItem.id).where(*self._action_clause(organization_id, user_id, meeting_ids))
                    )
                ).scalars().all()
            )
            file_ids = list(
                (
                    await session.execute(
                        select(StoredFile.id).where(
                            StoredFile.organization_id == organization_id,
                            StoredFile.user_id == user_id,
                        )
                    )
                ).scalars().all()
            )
            analytics_count = await gdpr_repo.count_rows(
                session,
                AnalyticsRecord,
                AnalyticsRecord.organization_id == organization_id,
                AnalyticsRecord.user_id == user_id,
            )
            scheduled: list[dict[str, Any]] = []
            for resource, ids in (
                (RetainedResource.MEETING, meeting_ids),
                (RetainedResource.ACTION, action_ids),
                (RetainedResource.FILE, file_ids),
                (RetainedResource.AUDIT_LOG, [user_id]),
            ):
                for schedule in await retention_repo.list_schedules_for_resources(
                    session,
                    organization_id=organization_id,
                    resource_type=resource.value,
                    resource_ids=ids,
                ):
                    scheduled.append(
                        {
                            "resource_type": schedule.resource_type,
                            "resource_id": schedule.resource_id,
                            "delete_after": schedule.delete_after.isoformat(),
                            "state": schedule.state,
                        }
                    )
            pending = await gdpr_repo.list_pending_deletion_requests(
                session, organization_id=organization_id, user_id=user_id
            )
        return RetentionStatus(
            user_id=user_id,
            organization_id=organization_id,
            policies=policies,
            preferences=dict(preferences.retention_json or {}) if preferences is not None else {},
            data_counts={
                "meetings": len(meeting_ids),
                "actions": len(action_ids),
                "analytics": analytics_count,
                "files": len(file_ids),
            },
            scheduled_deletions=scheduled,
            pending_deletion_requests=[item.id for item in pending],
        )

    async def update_data_retention_preferences(
        self,
        user_id: str,
        organization_id: str,
        preferences: RetentionPreferences,
        *,
        updated_by: str | None = None,
        context: RequestContext | None = None,
    ) -> dict[str, Any]:
        requester = updated_by or user_id
        await self._access.require_permission(
            requester,
            organization_id,
            ResourceType.USER,
            Permission.WRITE,
            user_id,
            context=context,
        )
        async with self._session_factory() as session:
            organization = await users_repo.get_organization(session, organization_id)
            if organization is None:
                raise ResourceNotFoundError("organization not found")
            if await users_repo.get_member(session, organization_id=organization_id, user_id=user_id) is None:
                raise ResourceNotFoundError("user not found in organization")
            ceiling = compliance_ceiling(organization)
            updates = preferences.model_dump(exclude_none=True)
            for key, value in updates.items():
                if key.endswith("_days") and value > ceiling:
                    raise ValidationError(
                        f"{key} {value} exceeds the {organization.compliance_mode} ceiling of {ceiling} days",
                        details={"ceiling_days": ceiling},
                    )
            row = await session.get(UserPreference, user_id)
            if row is None:
                row = UserPreference(
                    user_id=user_id,
                    organization_id=organization_id,
                    preferences_json={},
                    retention_json={},
                )
                session.add(row)
            previous = dict(row.retention_json or {})
            merged = {**previous, **updates}
            row.retention_json = merged
            await self._audit.log_data_retention(
                RetentionAction.POLICY_UPDATED,
                ResourceType.USER.value,
                user_id,
                organization_id=organization_id,
                user_id=requester,
                context=context,
                extra={"old": previous, "new": merged},
                session=session,
            )
            await session.commit()
        return merged
