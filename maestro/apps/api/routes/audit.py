from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from maestro.apps.api.deps import Principal, get_services, require_admin
from maestro.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from maestro.apps.api.response import SuccessEnvelope, success_response
from maestro.domain.models import AuditLogEntry
from maestro.services.audit import AuditFilters
from maestro.services.container import MaestroServices


router = APIRouter(prefix="/admin/audit", tags=["audit"], responses=DEFAULT_ERROR_RESPONSES)


class AuditEventResponse(BaseModel):
    id: int
    occurred_at: datetime
    user_id: str | None
    action: str
    resource_type: str
    resource_id: str | None
    outcome: str
    ip_address: str | None
    user_agent: str | None
    session_id: str | None
    request_id: str | None
    metadata: dict[str, Any] | None


class AuditEventsPage(BaseModel):
    items: list[AuditEventResponse]
    next_offset: int | None


def _to_response(entry: AuditLogEntry) -> AuditEventResponse:
    return AuditEventResponse(
        id=entry.id,
        occurred_at=entry.occurred_at,
        user_id=entry.user_id,
        action=entry.action,
        resource_type=entry.resource_type,
        resource_id=entry.resource_id,
        outcome=entry.outcome,
        ip_address=entry.ip_address,
        user_agent=entry.user_agent,
        session_id=entry.session_id,
        request_id=entry.request_id,
        metadata=entry.metadata_json,
    )


@router.get("", response_model=SuccessEnvelope[AuditEventsPage])
async def list_audit_events(
    request: Request,
    user_id: str | None = None,
    action: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    start: datetime | None = Query(default=None, alias="from"),
    end: datetime | None = Query(default=None, alias="to"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=500),
    principal: Principal = Depends(require_admin),
    services: MaestroServices = Depends(get_services),
) -> dict:
    # The organization always comes from the credential, never from the query string.
    entries = await services.audit.query_audit_logs(
        principal.organization_id,
        AuditFilters(
            user_id=user_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            start=start,
            end=end,
            limit=limit + 1,
            offset=offset,
        ),
    )
    next_offset = None
    if len(entries) > limit:
        entries = entries[:limit]
        next_offset = offset + limit
    page = AuditEventsPage(items=[_to_response(entry) for entry in entries], next_offset=next_offset)
    return success_response(request=request, data=page)


@router.get("/stats", response_model=SuccessEnvelope[dict[str, Any]])
async def audit_stats(
    request: Request,
    days: int = Query(default=30, ge=1, le=3650),
    principal: Principal = Depends(require_admin),
    services: MaestroServices = Depends(get_services),
) -> dict:
    stats = await services.audit.get_audit_stats(principal.organization_id, days)
    data = asdict(stats)
    data["top_actions"] = [{"action": action, "count": count} for action, count in stats.top_actions]
    return success_response(request=request, data=data)
