from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from maestro.domain.models import DataEncryptionKey
from maestro.persistence.guards import org_predicate


async def insert_key(
    session: AsyncSession,
    *,
    organization_id: str,
    key_id: str,
    wrapped_key: str,
    master_key_id: str,
    algorithm: str,
    expires_at: datetime | None,
) -> DataEncryptionKey:
    row = DataEncryptionKey(
        organization_id=organization_id,
        key_id=key_id,
        wrapped_key=wrapped_key,
        master_key_id=master_key_id,
        algorithm=algorithm,
        expires_at=expires_at,
        is_active=True,
    )
    session.add(row)
    await session.flush()
    return row


async def get_key(session: AsyncSession, *, organization_id: str, key_id: str) -> DataEncryptionKey | None:
    # Key ids are globally unique, but lookups are always organization-bound.
    result = await session.execute(
        select(DataEncryptionKey).where(
            org_predicate(DataEncryptionKey, organization_id),
            DataEncryptionKey.key_id == key_id,
        )
    )
    return result.scalar_one_or_none()


async def list_keys_not_wrapped_by(
    session: AsyncSession,
    *,
    organization_id: str,
    master_key_id: str,
) -> list[DataEncryptionKey]:
    result = await session.execute(
        select(DataEncryptionKey).where(
            org_predicate(DataEncryptionKey, organization_id),
            DataEncryptionKey.master_key_id != master_key_id,
        )
    )
    return list(result.scalars().all())


async def deactivate_key(
    session: AsyncSession,
    *,
    organization_id: str,
    key_id: str,
    deactivated_at: datetime,
) -> int:
    result = await session.execute(
        update(DataEncryptionKey)
        .where(
            org_predicate(DataEncryptionKey, organization_id),
            DataEncryptionKey.key_id == key_id,
            DataEncryptionKey.is_active.is_(True),
        )
        .values(is_active=False, deactivated_at=deactivated_at)
    )
    return int(result.rowcount or 0)
