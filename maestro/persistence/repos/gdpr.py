from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from maestro.domain.models import DataExport, DeletionRequest
from maestro.persistence.guards import org_predicate


async def latest_completed_export(
    session: AsyncSession,
    *,
    organization_id: str,
    user_id: str,
) -> DataExport | None:
    result = await session.execute(
        select(DataExport)
        .where(
            org_predicate(DataExport, organization_id),
            DataExport.user_id == user_id,
            DataExport.status == "completed",
        )
        .order_by(DataExport.completed_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def completed_exports_since(
    session: AsyncSession,
    *,
    organization_id: str,
    since: datetime,
) -> list[datetime]:
    # Completion times, oldest first, for the rolling organization window.
    result = await session.execute(
        select(DataExport.completed_at)
        .where(
            org_predicate(DataExport, organization_id),
            DataExport.status == "completed",
            DataExport.completed_at >= since,
        )
        .order_by(DataExport.completed_at)
    )
    return [value for value in result.scalars().all() if value is not None]


async def get_running_export(
    session: AsyncSession,
    *,
    organization_id: str,
    user_id: str,
    format: str,
) -> DataExport | None:
    result = await session.execute(
        select(DataExport)
        .where(
            org_predicate(DataExport, organization_id),
            DataExport.user_id == user_id,
            DataExport.format == format,
            DataExport.status == "running",
        )
        .order_by(DataExport.requested_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_exports(
    session: AsyncSession,
    *,
    organization_id: str,
    user_id: str,
    limit: int = 50,
) -> list[DataExport]:
    result = await session.execute(
        select(DataExport)
        .where(org_predicate(DataExport, organization_id), DataExport.user_id == user_id)
        .order_by(DataExport.requested_at.desc(), DataExport.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def get_deletion_request(
    session: AsyncSession,
    *,
    organization_id: str,
    request_id: str,
) -> DeletionRequest | None:
    result = await session.execute(
        select(DeletionRequest).where(
            org_predicate(DeletionRequest, organization_id),
            DeletionRequest.id == request_id,
        )
    )
    return result.scalar_one_or_none()


async def list_pending_deletion_requests(
    session: AsyncSession,
    *,
    organization_id: str,
    user_id: str,
) -> list[DeletionRequest]:
    result = await session.execute(
        select(DeletionRequest)
        .where(
            org_predicate(DeletionRequest, organization_id),
            DeletionRequest.user_id == user_id,
            DeletionRequest.status == "pending",
        )
        .order_by(DeletionRequest.requested_at)
    )
    return list(result.scalars().all())


async def count_rows(session: AsyncSession, model, *clauses) -> int:
    result = await session.execute(select(func.count()).select_from(model).where(*clauses))
    return int(result.scalar_one())
