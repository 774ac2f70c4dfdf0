from __future__ import annotations

from datetime import datetime

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from maestro.domain.models import AccessGrant
from maestro.persistence.guards import org_predicate


async def find_effective_grant(
    session: AsyncSession,
    *,
    organization_id: str,
    user_id: str,
    resource_type: str,
    permission: str,
    resource_id: str | None,
    now: datetime,
) -> AccessGrant | None:
    # Match the exact resource or a type-wide grant; specific grants never match type-wide checks.
    if resource_id is None:
        resource_clause = AccessGrant.resource_id.is_(None)
    else:
        resource_clause = or_(AccessGrant.resource_id == resource_id, AccessGrant.resource_id.is_(None))
    result = await session.execute(
        select(AccessGrant)
        .where(
            org_predicate(AccessGrant, organization_id),
            AccessGrant.user_id == user_id,
            AccessGrant.resource_type == resource_type,
            AccessGrant.permission == permission,
            AccessGrant.is_active.is_(True),
            resource_clause,
            or_(AccessGrant.expires_at.is_(None), AccessGrant.expires_at > now),
        )
        .order_by(AccessGrant.granted_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_active_grant(
    session: AsyncSession,
    *,
    organization_id: str,
    user_id: str,
    resource_type: str,
    permission: str,
    resource_id: str | None,
) -> AccessGrant | None:
    # Locate the ledger row a grant upsert should replace.
    resource_clause = (
        AccessGrant.resource_id.is_(None) if resource_id is None else AccessGrant.resource_id == resource_id
    )
    result = await session.execute(
        select(AccessGrant)
        .where(
            org_predicate(AccessGrant, organization_id),
            AccessGrant.user_id == user_id,
            AccessGrant.resource_type == resource_type,
            AccessGrant.permission == permission,
            AccessGrant.is_active.is_(True),
            resource_clause,
        )
        .with_for_update()
    )
    return result.scalars().first()


async def list_grants(
    session: AsyncSession,
    *,
    organization_id: str,
    user_id: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    permission: str | None = None,
    active_only: bool = True,
) -> list[AccessGrant]:
    stmt = select(AccessGrant).where(org_predicate(AccessGrant, organization_id))
    if user_id:
        stmt = stmt.where(AccessGrant.user_id == user_id)
    if resource_type:
        stmt = stmt.where(AccessGrant.resource_type == resource_type)
    if resource_id:
        stmt = stmt.where(AccessGrant.resource_id == resource_id)
    if permission:
        stmt = stmt.where(AccessGrant.permission == permission)
    if active_only:
        stmt = stmt.where(AccessGrant.is_active.is_(True))
    stmt = stmt.order_by(AccessGrant.granted_at.desc(), AccessGrant.id)
    result = await session.execute(stmt)
    return list(result.scalars().all())
