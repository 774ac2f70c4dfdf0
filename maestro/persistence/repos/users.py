from __future__ import annotations

from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from maestro.domain.models import Organization, User, UserPreference
from maestro.persistence.guards import org_predicate


async def get_organization(session: AsyncSession, organization_id: str) -> Organization | None:
    return await session.get(Organization, organization_id)


async def get_member(session: AsyncSession, *, organization_id: str, user_id: str) -> User | None:
    # Users belong to exactly one organization; a foreign user resolves to None.
    result = await session.execute(
        select(User).where(org_predicate(User, organization_id), User.id == user_id)
    )
    return result.scalar_one_or_none()


async def list_members(session: AsyncSession, *, organization_id: str) -> list[User]:
    result = await session.execute(
        select(User).where(org_predicate(User, organization_id)).order_by(User.created_at, User.id)
    )
    return list(result.scalars().all())


async def count_active_owners(session: AsyncSession, *, organization_id: str) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(User)
        .where(org_predicate(User, organization_id), User.role == "owner", User.is_active.is_(True))
    )
    return int(result.scalar_one())


async def get_retention_preferences(
    session: AsyncSession, *, organization_id: str, user_id: str
) -> dict[str, Any]:
    result = await session.execute(
        select(UserPreference).where(org_predicate(UserPreference, organization_id), UserPreference.user_id == user_id)
    )
    row = result.scalar_one_or_none()
    return dict(row.retention_json or {}) if row is not None else {}
