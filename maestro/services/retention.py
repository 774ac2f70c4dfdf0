from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
import os
import socket
from typing import Any, Awaitable, Callable
from uuid import uuid4

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from maestro.core.clock import Clock, utc_now
from maestro.core.config import get_settings
from maestro.core.errors import (
    InvalidRequestState,
    MaestroError,
    ResourceNotFoundError,
    ValidationError,
)
from maestro.domain.enums import ComplianceMode, RetainedResource, RetentionAction, RetentionState
from maestro.domain.models import (
    ActionItem,
    AnalyticsRecord,
    AuditLogEntry,
    Meeting,
    Organization,
    RetentionBackup,
    RetentionPolicy,
    RetentionSchedule,
    StoredFile,
    SweepLease,
)
from maestro.persistence.db import SessionFactory, session_scope
from maestro.persistence.repos import retention as retention_repo
from maestro.persistence.repos import users as users_repo
from maestro.services.audit import AuditLogger, RequestContext
from maestro.services.crypto.envelope import Envelope, EnvelopeService
from maestro.services.snapshots import row_to_dict
from maestro.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

SWEEP_LEASE_NAME = "retention_sweep"
DEFAULT_ORGANIZATION_RETENTION_DAYS = 90

COMPLIANCE_CEILINGS: dict[ComplianceMode, int] = {
    ComplianceMode.STANDARD: 365,
    ComplianceMode.GDPR: 2555,
    ComplianceMode.HIPAA: 2555,
    ComplianceMode.SOX: 2555,
}


@dataclass(frozen=True)
class RetentionPolicyView:
    resource_type: str
    retention_days: int
    auto_delete: bool
    encryption_required: bool
    backup_required: bool
    # "explicit" (stored row), "default" (built-in table) or "organization" (security policy).
    source: str = "default"

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource_type": self.resource_type,
            "retention_days": self.retention_days,
            "auto_delete": self.auto_delete,
            "encryption_required": self.encryption_required,
            "backup_required": self.backup_required,
            "source": self.source,
        }


DEFAULT_POLICIES: dict[RetainedResource, RetentionPolicyView] = {
    RetainedResource.MEETING: RetentionPolicyView("meeting", 90, True, True, False),
    RetainedResource.ACTION: RetentionPolicyView("action", 180, True, True, True),
    RetainedResource.ANALYTICS: RetentionPolicyView("analytics", 365, False, False, True),
    RetainedResource.AUDIT_LOG: RetentionPolicyView("audit_log", 2555, False, True, True),
}


@dataclass
class SweepReport:
    lease_acquired: bool = True
    examined: int = 0
    deleted: int = 0
    records_deleted: int = 0
    backups_created: int = 0
    skipped: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "lease_acquired": self.lease_acquired,
            "examined": self.examined,
            "deleted": self.deleted,
            "records_deleted": self.records_deleted,
            "backups_created": self.backups_created,
            "skipped": self.skipped,
            "failed": self.failed,
        }


@dataclass(frozen=True)
class RetentionStats:
    policies: list[RetentionPolicyView]
    schedules_by_state: dict[str, int]
    due_now: int
    backups: int


@dataclass(frozen=True)
class ComplianceReport:
    organization_id: str
    compliance_mode: str
    ceiling_days: int
    encryption_required: bool
    generated_at: datetime
    policies: list[dict[str, Any]]
    overdue_deletions: int
    issues: list[str] = field(default_factory=list)

    @property
    def compliant(self) -> bool:
        return not self.issues


def _coerce_resource(value: RetainedResource | str) -> RetainedResource:
    try:
        return RetainedResource(value)
    except ValueError as exc:
        raise ValidationError(f"Unsupported retention resource type: {value}") from exc


def _compliance_mode(organization: Organization) -> ComplianceMode:
    try:
        return ComplianceMode(organization.compliance_mode)
    except ValueError:
        return ComplianceMode.STANDARD


def compliance_ceiling(organization: Organization) -> int:
    return COMPLIANCE_CEILINGS[_compliance_mode(organization)]


def _policy_view(row: RetentionPolicy) -> RetentionPolicyView:
    return RetentionPolicyView(
        resource_type=row.resource_type,
        retention_days=row.retention_days,
        auto_delete=row.auto_delete,
        encryption_required=row.encryption_required,
        backup_required=row.backup_required,
        source="explicit",
    )


# Snapshot and delete handlers per retained resource type.
_Loader = Callable[[AsyncSession, str, str], Awaitable[list[Any]]]


async def _load_meeting(session: AsyncSession, organization_id: str, resource_id: str) -> list[Any]:
    # Action items extracted from a meeting go with it.
    meetings = (
        await session.execute(
            select(Meeting).where(Meeting.organization_id == organization_id, Meeting.id == resource_id)
        )
    ).scalars().all()
    if not meetings:
        return []
    actions = (
        await session.execute(
            select(ActionItem).where(
                ActionItem.organization_id == organization_id,
                ActionItem.meeting_id == resource_id,
            )
        )
    ).scalars().all()
    return [*meetings, *actions]


async def _load_action(session: AsyncSession, organization_id: str, resource_id: str) -> list[Any]:
    result = await session.execute(
        select(ActionItem).where(ActionItem.organization_id == organization_id, ActionItem.id == resource_id)
    )
    return list(result.scalars().all())


async def _load_analytics(session: AsyncSession, organization_id: str, resource_id: str) -> list[Any]:
    result = await session.execute(
        select(AnalyticsRecord).where(
            AnalyticsRecord.organization_id == organization_id,
            AnalyticsRecord.id == resource_id,
        )
    )
    return list(result.scalars().all())


async def _load_file(session: AsyncSession, organization_id: str, resource_id: str) -> list[Any]:
    result = await session.execute(
        select(StoredFile).where(StoredFile.organization_id == organization_id, StoredFile.id == resource_id)
    )
    return list(result.scalars().all())


async def _load_audit_trail(session: AsyncSession, organization_id: str, resource_id: str) -> list[Any]:
    # audit_log schedules are keyed by the user whose trail they cover.
    result = await session.execute(
        select(AuditLogEntry).where(
            AuditLogEntry.organization_id == organization_id,
            AuditLogEntry.user_id == resource_id,
        )
    )
    return list(result.scalars().all())


_LOADERS: dict[RetainedResource, _Loader] = {
    RetainedResource.MEETING: _load_meeting,
    RetainedResource.ACTION: _load_action,
    RetainedResource.ANALYTICS: _load_analytics,
    RetainedResource.FILE: _load_file,
    RetainedResource.AUDIT_LOG: _load_audit_trail,
}


def _default_lease_holder() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


class DataRetentionService:
    """Retention policies, deletion schedules and the lease-guarded deletion sweep."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        audit: AuditLogger,
        envelope: EnvelopeService,
        clock: Clock = utc_now,
        lease_holder: str | None = None,
        batch_size: int | None = None,
        lease_seconds: int | None = None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self._audit = audit
        self._envelope = envelope
        self._clock = clock
        self._lease_holder = lease_holder or _default_lease_holder()
        self._batch_size = max(1, batch_size or settings.retention_sweep_batch_size)
        self._lease_seconds = max(1, lease_seconds or settings.retention_sweep_lease_seconds)

    async def _require_organization(self, session: AsyncSession, organization_id: str) -> Organization:
        organization = await users_repo.get_organization(session, organization_id)
        if organization is None:
            raise ResourceNotFoundError("organization not found")
        return organization

    async def _resolve_policy(
        self,
        session: AsyncSession,
        organization_id: str,
        resource: RetainedResource,
    ) -> RetentionPolicyView:
        row = await retention_repo.get_policy(session, organization_id=organization_id, resource_type=resource.value)
        if row is not None:
            return _policy_view(row)
        if resource in DEFAULT_POLICIES:
            return DEFAULT_POLICIES[resource]
        # Types without a built-in default follow the organization security policy.
        organization = await self._require_organization(session, organization_id)
        security_policy = organization.security_policy_json or {}
        return RetentionPolicyView(
            resource_type=resource.value,
            retention_days=int(security_policy.get("data_retention_days", DEFAULT_ORGANIZATION_RETENTION_DAYS)),
            auto_delete=True,
            encryption_required=bool(security_policy.get("encryption_required", True)),
            backup_required=False,
            source="organization",
        )

    async def get_retention_policy(
        self,
        organization_id: str,
        resource_type: RetainedResource | str,
        *,
        session: AsyncSession | None = None,
    ) -> RetentionPolicyView:
        resource = _coerce_resource(resource_type)
        async with session_scope(self._session_factory, session) as active:
            return await self._resolve_policy(active, organization_id, resource)

    async def set_retention_policy(
        self,
        organization_id: str,
        resource_type: RetainedResource | str,
        retention_days: int,
        *,
        auto_delete: bool | None = None,
        encryption_required: bool | None = None,
        backup_required: bool | None = None,
        updated_by: str | None = None,
        context: RequestContext | None = None,
    ) -> RetentionPolicyView:
        resource = _coerce_resource(resource_type)
        for attempt in range(2):
            async with self._session_factory() as session:
                organization = await self._require_organization(session, organization_id)
                ceiling = compliance_ceiling(organization)
                if retention_days < 1:
                    raise ValidationError("retention_days must be at least 1")
                if retention_days > ceiling:
                    raise ValidationError(
                        f"retention_days {retention_days} exceeds the {organization.compliance_mode} "
                        f"ceiling of {ceiling} days",
                        details={"ceiling_days": ceiling},
                    )
                current = await self._resolve_policy(session, organization_id, resource)
                row = await retention_repo.get_policy(
                    session, organization_id=organization_id, resource_type=resource.value
                )
                if row is None:
                    row = RetentionPolicy(organization_id=organization_id, resource_type=resource.value)
                    session.add(row)
                row.retention_days = retention_days
                row.auto_delete = current.auto_delete if auto_delete is None else auto_delete
                row.encryption_required = (
                    current.encryption_required if encryption_required is None else encryption_required
                )
                row.backup_required = current.backup_required if backup_required is None else backup_required
                row.updated_by = updated_by
                updated = _policy_view(row)
                await self._audit.log_data_retention(
                    RetentionAction.POLICY_UPDATED,
                    resource.value,
                    None,
                    organization_id=organization_id,
                    user_id=updated_by,
                    retention_days=retention_days,
                    context=context,
                    extra={"old": current.to_dict(), "new": updated.to_dict()},
                    session=session,
                )
                try:
                    await session.commit()
                except IntegrityError:
                    # A concurrent writer inserted the row first; retry as an update.
                    await session.rollback()
                    if attempt == 1:
                        raise
                    continue
                return updated
        raise InvalidRequestState("retention policy update did not converge")

    async def schedule_data_deletion(
        self,
        organization_id: str,
        resource_type: RetainedResource | str,
        resource_id: str,
        retention_days: int | None = None,
        *,
        requested_by: str | None = None,
        session: AsyncSession | None = None,
    ) -> RetentionSchedule:
        resource = _coerce_resource(resource_type)
        if retention_days is not None and retention_days < 0:
            raise ValidationError("retention_days must not be negative")
        async with session_scope(self._session_factory, session) as active:
            if retention_days is None:
                retention_days = (await self._resolve_policy(active, organization_id, resource)).retention_days
            delete_after = self._clock() + timedelta(days=retention_days)
            schedule = await retention_repo.get_schedule(
                active,
                organization_id=organization_id,
                resource_type=resource.value,
                resource_id=resource_id,
            )
            if schedule is not None and schedule.state == RetentionState.DELETED.value:
                raise InvalidRequestState(f"{resource.value} {resource_id} has already been deleted")
            if schedule is None:
                schedule = RetentionSchedule(
                    organization_id=organization_id,
                    resource_type=resource.value,
                    resource_id=resource_id,
                    delete_after=delete_after,
                    state=RetentionState.SCHEDULED.value,
                )
                active.add(schedule)
            else:
                schedule.delete_after = delete_after
                if schedule.state == RetentionState.ACTIVE.value:
                    schedule.state = RetentionState.SCHEDULED.value
            await self._audit.log_data_retention(
                RetentionAction.SCHEDULED_DELETION,
                resource.value,
                resource_id,
                organization_id=organization_id,
                user_id=requested_by,
                retention_days=retention_days,
                delete_after=delete_after,
                session=active,
            )
            if session is None:
                await active.commit()
            else:
                await active.flush()
            return schedule

    async def apply_default_schedule(
        self,
        organization_id: str,
        resource_type: RetainedResource | str,
        resource_id: str,
        *,
        owner_id: str | None = None,
        session: AsyncSession | None = None,
    ) -> RetentionSchedule | None:
        # Creation hook: only auto-delete policies schedule anything, and the
        # record owner's saved preferences can opt out or change the period.
        resource = _coerce_resource(resource_type)
        async with session_scope(self._session_factory, session) as active:
            policy = await self._resolve_policy(active, organization_id, resource)
            if not policy.auto_delete:
                return None
            retention_days = policy.retention_days
            if owner_id is not None:
                preferences = await users_repo.get_retention_preferences(
                    active, organization_id=organization_id, user_id=owner_id
                )
                if preferences.get("auto_delete") is False:
                    logger.info(
                        "retention_schedule_skipped organization_id=%s resource_type=%s resource_id=%s owner_id=%s",
                        organization_id,
                        resource.value,
                        resource_id,
                        owner_id,
                    )
                    return None
                preferred_days = preferences.get(f"{resource.value}_days")
                if preferred_days is not None:
                    organization = await self._require_organization(active, organization_id)
                    # The ceiling may have tightened since the preference was saved.
                    retention_days = min(int(preferred_days), compliance_ceiling(organization))
            return await self.schedule_data_deletion(
                organization_id,
                resource,
                resource_id,
                retention_days,
                session=session,
            )

    async def extend_retention(
        self,
        organization_id: str,
        resource_type: RetainedResource | str,
        resource_id: str,
        additional_days: int,
        *,
        extended_by: str | None = None,
        context: RequestContext | None = None,
    ) -> RetentionSchedule:
        resource = _coerce_resource(resource_type)
        if additional_days < 1:
            raise ValidationError("additional_days must be at least 1")
        async with self._session_factory() as session:
            schedule = await retention_repo.get_schedule(
                session,
                organization_id=organization_id,
                resource_type=resource.value,
                resource_id=resource_id,
            )
            if schedule is None:
                raise ResourceNotFoundError(f"no deletion scheduled for {resource.value} {resource_id}")
            if schedule.state == RetentionState.DELETED.value:
                raise InvalidRequestState(f"{resource.value} {resource_id} has already been deleted")
            previous = schedule.delete_after
            schedule.delete_after = previous + timedelta(days=additional_days)
            await self._audit.log_data_retention(
                RetentionAction.RETENTION_EXTENDED,
                resource.value,
                resource_id,
                organization_id=organization_id,
                user_id=extended_by,
                retention_days=additional_days,
                delete_after=schedule.delete_after,
                context=context,
                extra={"previous_delete_after": previous.isoformat()},
                session=session,
            )
            await session.commit()
            return schedule

    async def can_delete_data(
        self,
        organization_id: str,
        resource_type: RetainedResource | str,
        resource_id: str,
    ) -> bool:
        resource = _coerce_resource(resource_type)
        async with self._session_factory() as session:
            schedule = await retention_repo.get_schedule(
                session,
                organization_id=organization_id,
                resource_type=resource.value,
                resource_id=resource_id,
            )
        if schedule is None or schedule.state == RetentionState.DELETED.value:
            return False
        return schedule.delete_after <= self._clock()

    async def _snapshot(
        self,
        session: AsyncSession,
        organization_id: str,
        resource: RetainedResource,
        resource_id: str,
    ) -> list[dict[str, Any]]:
        rows = await _LOADERS[resource](session, organization_id, resource_id)
        return [row_to_dict(row) for row in rows]

    async def _write_backup(
        self,
        session: AsyncSession,
        organization_id: str,
        resource: RetainedResource,
        resource_id: str,
        records: list[dict[str, Any]],
    ) -> RetentionBackup:
        envelope = await self._envelope.encrypt_json(records, organization_id)
        backup = RetentionBackup(
            id=uuid4().hex,
            organization_id=organization_id,
            resource_type=resource.value,
            resource_id=resource_id,
            key_id=envelope.key_id,
            iv=envelope.iv,
            tag=envelope.tag,
            ciphertext=envelope.ciphertext,
            record_count=len(records),
        )
        session.add(backup)
        return backup

    async def create_backup(
        self,
        organization_id: str,
        resource_type: RetainedResource | str,
        resource_id: str,
        *,
        requested_by: str | None = None,
        context: RequestContext | None = None,
    ) -> RetentionBackup:
        resource = _coerce_resource(resource_type)
        async with self._session_factory() as session:
            records = await self._snapshot(session, organization_id, resource, resource_id)
            if not records:
                raise ResourceNotFoundError(f"{resource.value} {resource_id} not found")
            backup = await self._write_backup(session, organization_id, resource, resource_id, records)
            await self._audit.log_data_retention(
                RetentionAction.BACKUP_CREATED,
                resource.value,
                resource_id,
                organization_id=organization_id,
                user_id=requested_by,
                backup_id=backup.id,
                context=context,
                session=session,
            )
            await session.commit()
            return backup

    async def restore_from_backup(
        self,
        organization_id: str,
        backup_id: str,
        *,
        restored_by: str | None = None,
        context: RequestContext | None = None,
    ) -> list[dict[str, Any]]:
        async with self._session_factory() as session:
            backup = await retention_repo.get_backup(session, organization_id=organization_id, backup_id=backup_id)
        if backup is None:
            raise ResourceNotFoundError("backup not found")
        envelope = Envelope(ciphertext=backup.ciphertext, iv=backup.iv, tag=backup.tag, key_id=backup.key_id)
        records = await self._envelope.decrypt_json(envelope, organization_id)
        await self._audit.log_data_retention(
            RetentionAction.BACKUP_RESTORED,
            backup.resource_type,
            backup.resource_id,
            organization_id=organization_id,
            user_id=restored_by,
            backup_id=backup.id,
            context=context,
        )
        return records

    async def _acquire_lease(self, now: datetime) -> bool:
        expires_at = now + timedelta(seconds=self._lease_seconds)
        async with self._session_factory() as session:
            result = await session.execute(
                update(SweepLease)
                .where(
                    SweepLease.name == SWEEP_LEASE_NAME,
                    or_(SweepLease.expires_at <= now, SweepLease.holder == self._lease_holder),
                )
                .values(holder=self._lease_holder, acquired_at=now, expires_at=expires_at)
            )
            if result.rowcount:
                await session.commit()
                return True
            if await session.get(SweepLease, SWEEP_LEASE_NAME) is not None:
                return False
            session.add(
                SweepLease(
                    name=SWEEP_LEASE_NAME,
                    holder=self._lease_holder,
                    acquired_at=now,
                    expires_at=expires_at,
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
            return True

    async def _release_lease(self) -> None:
        async with self._session_factory() as session:
            await session.execute(
                delete(SweepLease).where(
                    SweepLease.name == SWEEP_LEASE_NAME,
                    SweepLease.holder == self._lease_holder,
                )
            )
            await session.commit()

    async def execute_data_deletion(self, now: datetime | None = None) -> SweepReport:
        """Delete every resource whose scheduled deletion time has passed.

        Idempotent: schedules already marked deleted are never selected again, so a
        second run over the same data deletes nothing and writes no audit entries.
        """
        sweep_now = now or self._clock()
        if not await self._acquire_lease(sweep_now):
            logger.info("retention_sweep_skipped reason=lease_held holder=%s", self._lease_holder)
            return SweepReport(lease_acquired=False)
        report = SweepReport()
        try:
            after_id: str | None = None
            while True:
                async with self._session_factory() as session:
                    batch = await retention_repo.list_due_schedules(
                        session,
                        now=sweep_now,
                        limit=self._batch_size,
                        after_id=after_id,
                    )
                if not batch:
                    break
                after_id = batch[-1].id
                for schedule in batch:
                    report.examined += 1
                    try:
                        await self._process_schedule(schedule.id, sweep_now, report)
                    except (MaestroError, SQLAlchemyError) as exc:
                        report.failed += 1
                        increment_counter("retention.sweep_failures")
                        logger.error(
                            "retention_delete_failed schedule_id=%s organization_id=%s resource_type=%s",
                            schedule.id,
                            schedule.organization_id,
                            schedule.resource_type,
                            exc_info=exc,
                        )
        finally:
            await self._release_lease()
        increment_counter("retention.resources_deleted", report.deleted)
        set_gauge("retention.last_sweep_failed", report.failed)
        logger.info(
            "retention_sweep_completed examined=%s deleted=%s backups=%s failed=%s",
            report.examined,
            report.deleted,
            report.backups_created,
            report.failed,
        )
        return report

    async def _process_schedule(self, schedule_id: str, now: datetime, report: SweepReport) -> None:
        async with self._session_factory() as session:
            schedule = await session.get(RetentionSchedule, schedule_id, with_for_update=True)
            if (
                schedule is None
                or schedule.state == RetentionState.DELETED.value
                or schedule.delete_after > now
            ):
                report.skipped += 1
                return
            resource = _coerce_resource(schedule.resource_type)
            organization_id = schedule.organization_id
            policy = await self._resolve_policy(session, organization_id, resource)
            records = await self._snapshot(session, organization_id, resource, schedule.resource_id)
            if policy.backup_required and schedule.backup_id is None and records:
                # The backup commits on its own so a failed delete never produces a second backup.
                backup = await self._write_backup(session, organization_id, resource, schedule.resource_id, records)
                schedule.backup_id = backup.id
                schedule.state = RetentionState.BACKED_UP.value
                await self._audit.log_data_retention(
                    RetentionAction.BACKUP_CREATED,
                    resource.value,
                    schedule.resource_id,
                    organization_id=organization_id,
                    backup_id=backup.id,
                    session=session,
                )
                await session.commit()
                report.backups_created += 1
            await self._audit.log_data_retention(
                RetentionAction.DELETED,
                resource.value,
                schedule.resource_id,
                organization_id=organization_id,
                backup_id=schedule.backup_id,
                extra={"record_count": len(records)},
                session=session,
                critical=True,
            )
            rows = await _LOADERS[resource](session, organization_id, schedule.resource_id)
            for row in rows:
                await session.delete(row)
            schedule.state = RetentionState.DELETED.value
            schedule.deleted_at = now
            await session.commit()
        report.deleted += 1
        report.records_deleted += len(rows)

    async def get_retention_stats(self, organization_id: str) -> RetentionStats:
        async with self._session_factory() as session:
            await self._require_organization(session, organization_id)
            policies = [await self._resolve_policy(session, organization_id, resource) for resource in RetainedResource]
            return RetentionStats(
                policies=policies,
                schedules_by_state=await retention_repo.schedule_state_counts(session, organization_id=organization_id),
                due_now=await retention_repo.count_due(session, organization_id=organization_id, now=self._clock()),
                backups=await retention_repo.count_backups(session, organization_id=organization_id),
            )

    async def get_compliance_report(self, organization_id: str) -> ComplianceReport:
        now = self._clock()
        async with self._session_factory() as session:
            organization = await self._require_organization(session, organization_id)
            ceiling = compliance_ceiling(organization)
            encryption_required = bool((organization.security_policy_json or {}).get("encryption_required", True))
            policies = [await self._resolve_policy(session, organization_id, resource) for resource in RetainedResource]
            overdue = await retention_repo.count_due(session, organization_id=organization_id, now=now)
        issues: list[str] = []
        rows: list[dict[str, Any]] = []
        for policy in policies:
            within_ceiling = policy.retention_days <= ceiling
            encrypted_ok = policy.encryption_required or not encryption_required
            # The audit trail is governed by the long compliance window, not the mode ceiling.
            if not within_ceiling and policy.resource_type != RetainedResource.AUDIT_LOG.value:
                issues.append(f"{policy.resource_type} retention {policy.retention_days}d exceeds ceiling {ceiling}d")
            if not encrypted_ok:
                issues.append(f"{policy.resource_type} is not encrypted but the organization requires encryption")
            rows.append({**policy.to_dict(), "within_ceiling": within_ceiling, "encryption_ok": encrypted_ok})
        if overdue:
            issues.append(f"{overdue} scheduled deletions are overdue")
        return ComplianceReport(
            organization_id=organization_id,
            compliance_mode=_compliance_mode(organization).value,
            ceiling_days=ceiling,
            encryption_required=encryption_required,
            generated_at=now,
            policies=rows,
            overdue_deletions=overdue,
            issues=issues,
        )
