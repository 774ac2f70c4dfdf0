from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from maestro.domain.models import AuditLogEntry
from maestro.persistence.guards import org_predicate


async def list_entries(
    session: AsyncSession,
    *,
    organization_id: str,
    user_id: str | None = None,
    action: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
    offset: int = 0,
    limit: int = 100,
) -> list[AuditLogEntry]:
    # Scope all audit queries to one organization so no query reads across organizations.
    stmt = select(AuditLogEntry).where(org_predicate(AuditLogEntry, organization_id))
    if user_id:
        stmt = stmt.where(AuditLogEntry.user_id == user_id)
    if action:
        stmt = stmt.where(AuditLogEntry.action == action)
    if resource_type:
        stmt = stmt.where(AuditLogEntry.resource_type == resource_type)
    if resource_id:
        stmt = stmt.where(AuditLogEntry.resource_id == resource_id)
    if occurred_from:
        stmt = stmt.where(AuditLogEntry.occurred_at >= occurred_from)
    if occurred_to:
        stmt = stmt.where(AuditLogEntry.occurred_at <= occurred_to)

    stmt = stmt.order_by(AuditLogEntry.occurred_at.desc(), AuditLogEntry.id.desc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_since(session: AsyncSession, *, organization_id: str, since: datetime) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(AuditLogEntry)
        .where(org_predicate(AuditLogEntry, organization_id), AuditLogEntry.occurred_at >= since)
    )
    return int(result.scalar_one())


async def count_unique_users_since(session: AsyncSession, *, organization_id: str, since: datetime) -> int:
    result = await session.execute(
        select(func.count(func.distinct(AuditLogEntry.user_id))).where(
            org_predicate(AuditLogEntry, organization_id),
            AuditLogEntry.occurred_at >= since,
            AuditLogEntry.user_id.is_not(None),
        )
    )
    return int(result.scalar_one())


async def action_counts_since(
    session: AsyncSession,
    *,
    organization_id: str,
    since: datetime,
    limit: int = 10,
) -> list[tuple[str, int]]:
    count_col = func.count(AuditLogEntry.id)
    result = await session.execute(
        select(AuditLogEntry.action, count_col)
        .where(org_predicate(AuditLogEntry, organization_id), AuditLogEntry.occurred_at >= since)
        .group_by(AuditLogEntry.action)
        .order_by(count_col.desc(), AuditLogEntry.action)
        .limit(limit)
    )
    return [(str(action), int(count)) for action, count in result.all()]


async def count_action_prefix_since(
    session: AsyncSession,
    *,
    organization_id: str,
    prefix: str,
    since: datetime,
) -> int:
    # Actions are dotted ("security.unauthorized_access"); count one family at a time.
    result = await session.execute(
        select(func.count())
        .select_from(AuditLogEntry)
        .where(
            org_predicate(AuditLogEntry, organization_id),
            AuditLogEntry.action.startswith(f"{prefix}.", autoescape=True),
            AuditLogEntry.occurred_at >= since,
        )
    )
    return int(result.scalar_one())
