from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from maestro.domain.models import RetentionBackup, RetentionPolicy, RetentionSchedule
from maestro.persistence.guards import org_predicate


async def get_policy(
    session: AsyncSession,
    *,
    organization_id: str,
    resource_type: str,
) -> RetentionPolicy | None:
    result = await session.execute(
        select(RetentionPolicy).where(
            org_predicate(RetentionPolicy, organization_id),
            RetentionPolicy.resource_type == resource_type,
        )
    )
    return result.scalar_one_or_none()


async def list_policies(session: AsyncSession, *, organization_id: str) -> list[RetentionPolicy]:
    result = await session.execute(
        select(RetentionPolicy)
        .where(org_predicate(RetentionPolicy, organization_id))
        .order_by(RetentionPolicy.resource_type)
    )
    return list(result.scalars().all())


async def get_schedule(
    session: AsyncSession,
    *,
    organization_id: str,
    resource_type: str,
    resource_id: str,
) -> RetentionSchedule | None:
    result = await session.execute(
        select(RetentionSchedule).where(
            org_predicate(RetentionSchedule, organization_id),
            RetentionSchedule.resource_type == resource_type,
            RetentionSchedule.resource_id == resource_id,
        )
    )
    return result.scalar_one_or_none()


async def list_due_schedules(
    session: AsyncSession,
    *,
    now: datetime,
    limit: int,
    after_id: str | None = None,
) -> list[RetentionSchedule]:
    # The sweep crosses organizations; each row still carries its own organization_id.
    stmt = select(RetentionSchedule).where(
        RetentionSchedule.state != "deleted",
        RetentionSchedule.delete_after <= now,
    )
    if after_id is not None:
        stmt = stmt.where(RetentionSchedule.id > after_id)
    result = await session.execute(stmt.order_by(RetentionSchedule.id).limit(limit))
    return list(result.scalars().all())


async def list_schedules_for_resources(
    session: AsyncSession,
    *,
    organization_id: str,
    resource_type: str,
    resource_ids: list[str],
) -> list[RetentionSchedule]:
    if not resource_ids:
        return []
    result = await session.execute(
        select(RetentionSchedule).where(
            org_predicate(RetentionSchedule, organization_id),
            RetentionSchedule.resource_type == resource_type,
            RetentionSchedule.resource_id.in_(resource_ids),
        )
    )
    return list(result.scalars().all())


async def schedule_state_counts(session: AsyncSession, *, organization_id: str) -> dict[str, int]:
    result = await session.execute(
        select(RetentionSchedule.state, func.count())
        .where(org_predicate(RetentionSchedule, organization_id))
        .group_by(RetentionSchedule.state)
    )
    return {str(state): int(count) for state, count in result.all()}


async def count_due(session: AsyncSession, *, organization_id: str, now: datetime) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(RetentionSchedule)
        .where(
            org_predicate(RetentionSchedule, organization_id),
            RetentionSchedule.state != "deleted",
            RetentionSchedule.delete_after <= now,
        )
    )
    return int(result.scalar_one())


async def get_backup(session: AsyncSession, *, organization_id: str, backup_id: str) -> RetentionBackup | None:
    result = await session.execute(
        select(RetentionBackup).where(
            org_predicate(RetentionBackup, organization_id),
            RetentionBackup.id == backup_id,
        )
    )
    return result.scalar_one_or_none()


async def count_backups(session: AsyncSession, *, organization_id: str) -> int:
    result = await session.execute(
        select(func.count()).select_from(RetentionBackup).where(org_predicate(RetentionBackup, organization_id))
    )
    return int(result.scalar_one())
