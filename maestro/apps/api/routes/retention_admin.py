from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from maestro.apps.api.deps import Principal, get_request_context, get_services, require_admin
from maestro.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from maestro.apps.api.response import SuccessEnvelope, success_response
from maestro.domain.enums import RetainedResource
from maestro.domain.models import RetentionSchedule
from maestro.services.audit import RequestContext
from maestro.services.container import MaestroServices


router = APIRouter(prefix="/admin/retention", tags=["retention"], responses=DEFAULT_ERROR_RESPONSES)


class PolicyUpdateRequest(BaseModel):
    retention_days: int
    auto_delete: bool | None = None
    encryption_required: bool | None = None
    backup_required: bool | None = None


class ScheduleRequest(BaseModel):
    resource_type: RetainedResource
    resource_id: str
    # Falls back to the effective policy when omitted.
    retention_days: int | None = Field(default=None, ge=0)


class ExtendRequest(BaseModel):
    resource_type: RetainedResource
    resource_id: str
    additional_days: int = Field(ge=1)


class BackupRequest(BaseModel):
    resource_type: RetainedResource
    resource_id: str


class ScheduleResponse(BaseModel):
    id: str
    resource_type: str
    resource_id: str
    delete_after: datetime
    state: str
    backup_id: str | None
    deleted_at: datetime | None


def _schedule_payload(row: RetentionSchedule) -> ScheduleResponse:
    return ScheduleResponse(
        id=row.id,
        resource_type=row.resource_type,
        resource_id=row.resource_id,
        delete_after=row.delete_after,
        state=row.state,
        backup_id=row.backup_id,
        deleted_at=row.deleted_at,
    )


@router.get("/policies", response_model=SuccessEnvelope[list[dict[str, Any]]])
async def list_policies(
    request: Request,
    principal: Principal = Depends(require_admin),
    services: MaestroServices = Depends(get_services),
) -> dict:
    policies = [
        (await services.retention.get_retention_policy(principal.organization_id, resource)).to_dict()
        for resource in RetainedResource
    ]
    return success_response(request=request, data=policies)


@router.put("/policies/{resource_type}", response_model=SuccessEnvelope[dict[str, Any]])
async def update_policy(
    request: Request,
    resource_type: RetainedResource,
    payload: PolicyUpdateRequest,
    principal: Principal = Depends(require_admin),
    services: MaestroServices = Depends(get_services),
    context: RequestContext = Depends(get_request_context),
) -> dict:
    policy = await services.retention.set_retention_policy(
        principal.organization_id,
        resource_type,
        payload.retention_days,
        auto_delete=payload.auto_delete,
        encryption_required=payload.encryption_required,
        backup_required=payload.backup_required,
        updated_by=principal.user_id,
        context=context,
    )
    return success_response(request=request, data=policy.to_dict())


@router.post("/schedules", status_code=201, response_model=SuccessEnvelope[ScheduleResponse])
async def schedule_deletion(
    request: Request,
    payload: ScheduleRequest,
    principal: Principal = Depends(require_admin),
    services: MaestroServices = Depends(get_services),
) -> dict:
    schedule = await services.retention.schedule_data_deletion(
        principal.organization_id,
        payload.resource_type,
        payload.resource_id,
        payload.retention_days,
        requested_by=principal.user_id,
    )
    return success_response(request=request, data=_schedule_payload(schedule))


@router.post("/schedules/extend", response_model=SuccessEnvelope[ScheduleResponse])
async def extend_retention(
    request: Request,
    payload: ExtendRequest,
    principal: Principal = Depends(require_admin),
    services: MaestroServices = Depends(get_services),
    context: RequestContext = Depends(get_request_context),
) -> dict:
    schedule = await services.retention.extend_retention(
        principal.organization_id,
        payload.resource_type,
        payload.resource_id,
        payload.additional_days,
        extended_by=principal.user_id,
        context=context,
    )
    return success_response(request=request, data=_schedule_payload(schedule))


@router.post("/backups", status_code=201, response_model=SuccessEnvelope[dict[str, Any]])
async def create_backup(
    request: Request,
    payload: BackupRequest,
    principal: Principal = Depends(require_admin),
    services: MaestroServices = Depends(get_services),
    context: RequestContext = Depends(get_request_context),
) -> dict:
    backup = await services.retention.create_backup(
        principal.organization_id,
        payload.resource_type,
        payload.resource_id,
        requested_by=principal.user_id,
        context=context,
    )
    data = {
        "backup_id": backup.id,
        "resource_type": backup.resource_type,
        "resource_id": backup.resource_id,
        "record_count": backup.record_count,
    }
    return success_response(request=request, data=data)


@router.post("/backups/{backup_id}/restore", response_model=SuccessEnvelope[dict[str, Any]])
async def restore_backup(
    request: Request,
    backup_id: str,
    principal: Principal = Depends(require_admin),
    services: MaestroServices = Depends(get_services),
    context: RequestContext = Depends(get_request_context),
) -> dict:
    records = await services.retention.restore_from_backup(
        principal.organization_id,
        backup_id,
        restored_by=principal.user_id,
        context=context,
    )
    return success_response(request=request, data={"backup_id": backup_id, "records": records})


@router.post("/sweep", response_model=SuccessEnvelope[dict[str, Any]])
async def run_sweep(
    request: Request,
    principal: Principal = Depends(require_admin),
    services: MaestroServices = Depends(get_services),
) -> dict:
    # The sweep only removes data already past its deletion time and is lease-guarded.
    report = await services.retention.execute_data_deletion()
    return success_response(request=request, data=report.to_dict())


@router.get("/stats", response_model=SuccessEnvelope[dict[str, Any]])
async def retention_stats(
    request: Request,
    principal: Principal = Depends(require_admin),
    services: MaestroServices = Depends(get_services),
) -> dict:
    stats = await services.retention.get_retention_stats(principal.organization_id)
    data = {
        "policies": [policy.to_dict() for policy in stats.policies],
        "schedules_by_state": stats.schedules_by_state,
        "due_now": stats.due_now,
        "backups": stats.backups,
    }
    return success_response(request=request, data=data)


@router.get("/compliance", response_model=SuccessEnvelope[dict[str, Any]])
async def compliance_report(
    request: Request,
    principal: Principal = Depends(require_admin),
    services: MaestroServices = Depends(get_services),
) -> dict:
    report = await services.retention.get_compliance_report(principal.organization_id)
    data = asdict(report)
    data["generated_at"] = report.generated_at.isoformat()
    data["compliant"] = report.compliant
    return success_response(request=request, data=data)
