from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from maestro.apps.api.deps import get_db, get_services
from maestro.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from maestro.apps.api.response import SuccessEnvelope, success_response
from maestro.services.container import MaestroServices

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    database: str
    master_key_id: str
    audit_dead_letters: int


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(
    request: Request,
    db: AsyncSession = Depends(get_db),
    services: MaestroServices = Depends(get_services),
) -> dict:
    try:
        await db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError:
        database = "unavailable"
    payload = HealthResponse(
        status="ok" if database == "ok" else "degraded",
        database=database,
        master_key_id=services.keys.master_key_id,
        audit_dead_letters=len(services.audit.dead_letters),
    )
    return success_response(request=request, data=payload)
