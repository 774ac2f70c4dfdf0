from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import Response
from pydantic import BaseModel, Field

from maestro.apps.api.deps import Principal, get_current_principal, get_request_context, get_services
from maestro.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from maestro.apps.api.response import SuccessEnvelope, success_response
from maestro.domain.enums import ExportFormat
from maestro.domain.models import DataExport, DeletionRequest
from maestro.services.audit import RequestContext
from maestro.services.container import MaestroServices
from maestro.services.user_data import RetentionPreferences, serialize_export


router = APIRouter(prefix="/user-data", tags=["user-data"], responses=DEFAULT_ERROR_RESPONSES)


class ExportRequest(BaseModel):
    format: ExportFormat = ExportFormat.JSON
    # Defaults to the caller; exporting someone else needs user:write on them (admin, owner or a grant).
    user_id: str | None = None


class ExportHistoryItem(BaseModel):
    id: str
    user_id: str
    requested_by: str
    format: str
    status: str
    completed_steps: list[str]
    requested_at: datetime
    completed_at: datetime | None


class DeletionCreateRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=2000)
    user_id: str | None = None


class DeletionConfirmRequest(BaseModel):
    deletion_request_id: str
    confirmation_code: str = Field(min_length=1, max_length=256)


class DeletionRequestResponse(BaseModel):
    id: str
    user_id: str
    reason: str
    requested_by: str
    requested_at: datetime
    status: str
    completed_steps: list[str]
    completed_at: datetime | None


class DeletionCreatedResponse(BaseModel):
    request: DeletionRequestResponse
    # Shown once; only its hash is stored.
    confirmation_code: str


def _export_payload(row: DataExport) -> ExportHistoryItem:
    return ExportHistoryItem(
        id=row.id,
        user_id=row.user_id,
        requested_by=row.requested_by,
        format=row.format,
        status=row.status,
        completed_steps=sorted(row.steps_json or {}),
        requested_at=row.requested_at,
        completed_at=row.completed_at,
    )


def _deletion_payload(row: DeletionRequest) -> DeletionRequestResponse:
    return DeletionRequestResponse(
        id=row.id,
        user_id=row.user_id,
        reason=row.reason,
        requested_by=row.requested_by,
        requested_at=row.requested_at,
        status=row.status,
        completed_steps=list(row.completed_steps_json or []),
        completed_at=row.completed_at,
    )


@router.post("/export", response_model=None)
async def export_user_data(
    request: Request,
    payload: ExportRequest,
    principal: Principal = Depends(get_current_principal),
    services: MaestroServices = Depends(get_services),
    context: RequestContext = Depends(get_request_context),
) -> Any:
    export = await services.user_data.export_user_data(
        payload.user_id or principal.user_id,
        principal.organization_id,
        payload.format,
        requested_by=principal.user_id,
        context=context,
    )
    if payload.format == ExportFormat.CSV:
        return Response(
            content=serialize_export(export, ExportFormat.CSV),
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="export-{export.export_id}.csv"'},
        )
    # json and pdf both return the structured document; pdf layout is rendered client-side.
    return success_response(request=request, data=export.to_dict())


@router.get("/export", response_model=SuccessEnvelope[list[ExportHistoryItem]])
async def export_history(
    request: Request,
    user_id: str | None = Query(default=None),
    principal: Principal = Depends(get_current_principal),
    services: MaestroServices = Depends(get_services),
    context: RequestContext = Depends(get_request_context),
) -> dict:
    target = user_id or principal.user_id
    await services.user_data.authorize_subject_access(
        principal.user_id, principal.organization_id, target, context=context
    )
    rows = await services.user_data.get_data_export_history(target, principal.organization_id)
    return success_response(request=request, data=[_export_payload(row).model_dump(mode="json") for row in rows])


@router.post("/delete", status_code=201, response_model=SuccessEnvelope[DeletionCreatedResponse])
async def request_deletion(
    request: Request,
    payload: DeletionCreateRequest,
    principal: Principal = Depends(get_current_principal),
    services: MaestroServices = Depends(get_services),
    context: RequestContext = Depends(get_request_context),
) -> dict:
    created = await services.user_data.delete_user_data(
        payload.user_id or principal.user_id,
        principal.organization_id,
        payload.reason,
        principal.user_id,
        context=context,
    )
    data = DeletionCreatedResponse(
        request=_deletion_payload(created.request),
        confirmation_code=created.confirmation_code,
    )
    return success_response(request=request, data=data)


@router.put("/delete", response_model=SuccessEnvelope[DeletionRequestResponse])
async def confirm_deletion(
    request: Request,
    payload: DeletionConfirmRequest,
    principal: Principal = Depends(get_current_principal),
    services: MaestroServices = Depends(get_services),
    context: RequestContext = Depends(get_request_context),
) -> dict:
    row = await services.user_data.execute_data_deletion(
        payload.deletion_request_id,
        principal.organization_id,
        payload.confirmation_code,
        executed_by=principal.user_id,
        context=context,
    )
    return success_response(request=request, data=_deletion_payload(row))


@router.get("/delete/{deletion_request_id}", response_model=SuccessEnvelope[DeletionRequestResponse])
async def get_deletion(
    request: Request,
    deletion_request_id: str,
    principal: Principal = Depends(get_current_principal),
    services: MaestroServices = Depends(get_services),
    context: RequestContext = Depends(get_request_context),
) -> dict:
    row = await services.user_data.get_deletion_request(deletion_request_id, principal.organization_id)
    if row.requested_by != principal.user_id:
        await services.user_data.authorize_subject_access(
            principal.user_id, principal.organization_id, row.user_id, context=context
        )
    return success_response(request=request, data=_deletion_payload(row))


@router.post("/delete/{deletion_request_id}/reject", response_model=SuccessEnvelope[DeletionRequestResponse])
async def reject_deletion(
    request: Request,
    deletion_request_id: str,
    principal: Principal = Depends(get_current_principal),
    services: MaestroServices = Depends(get_services),
    context: RequestContext = Depends(get_request_context),
) -> dict:
    row = await services.user_data.reject_deletion_request(
        deletion_request_id,
        principal.organization_id,
        rejected_by=principal.user_id,
        context=context,
    )
    return success_response(request=request, data=_deletion_payload(row))


@router.get("/retention", response_model=SuccessEnvelope[dict[str, Any]])
async def retention_status(
    request: Request,
    user_id: str | None = Query(default=None),
    principal: Principal = Depends(get_current_principal),
    services: MaestroServices = Depends(get_services),
    context: RequestContext = Depends(get_request_context),
) -> dict:
    target = user_id or principal.user_id
    await services.user_data.authorize_subject_access(
        principal.user_id, principal.organization_id, target, context=context
    )
    status = await services.user_data.get_data_retention_status(target, principal.organization_id)
    return success_response(request=request, data=status.to_dict())


@router.put("/retention", response_model=SuccessEnvelope[dict[str, Any]])
async def update_retention_preferences(
    request: Request,
    payload: RetentionPreferences,
    user_id: str | None = Query(default=None),
    principal: Principal = Depends(get_current_principal),
    services: MaestroServices = Depends(get_services),
    context: RequestContext = Depends(get_request_context),
) -> dict:
    preferences = await services.user_data.update_data_retention_preferences(
        user_id or principal.user_id,
        principal.organization_id,
        payload,
        updated_by=principal.user_id,
        context=context,
    )
    return success_response(request=request, data=preferences)
