from __future__ import annotations

from dataclasses import asdict
from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from maestro.apps.api.deps import (
    Principal,
    get_current_principal,
    get_request_context,
    get_services,
    require_admin,
)
from maestro.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from maestro.apps.api.response import SuccessEnvelope, success_response
from maestro.domain.enums import Permission, ResourceType, Role
from maestro.domain.models import AccessGrant, User
from maestro.services.audit import RequestContext
from maestro.services.container import MaestroServices


router = APIRouter(prefix="/admin/access", tags=["access"], responses=DEFAULT_ERROR_RESPONSES)


class GrantCreateRequest(BaseModel):
    user_id: str
    resource_type: ResourceType
    permission: Permission
    # Omit for a grant over every resource of the type.
    resource_id: str | None = None
    expires_at: datetime | None = None


class GrantResponse(BaseModel):
    id: str
    user_id: str
    resource_type: str
    resource_id: str | None
    permission: str
    granted_by: str
    granted_at: datetime
    expires_at: datetime | None
    is_active: bool


class RevokeResponse(BaseModel):
    revoked: int


class RoleUpdateRequest(BaseModel):
    role: Role


class MemberResponse(BaseModel):
    id: str
    email: str | None
    name: str | None
    role: str
    is_active: bool
    last_login_at: datetime | None


def _grant_payload(row: AccessGrant) -> GrantResponse:
    return GrantResponse(
        id=row.id,
        user_id=row.user_id,
        resource_type=row.resource_type,
        resource_id=row.resource_id,
        permission=row.permission,
        granted_by=row.granted_by,
        granted_at=row.granted_at,
        expires_at=row.expires_at,
        is_active=row.is_active,
    )


def _member_payload(row: User) -> MemberResponse:
    return MemberResponse(
        id=row.id,
        email=row.email,
        name=row.name,
        role=row.role,
        is_active=row.is_active,
        last_login_at=row.last_login_at,
    )


@router.post("/grants", status_code=201, response_model=SuccessEnvelope[GrantResponse])
async def create_grant(
    request: Request,
    payload: GrantCreateRequest,
    principal: Principal = Depends(get_current_principal),
    services: MaestroServices = Depends(get_services),
    context: RequestContext = Depends(get_request_context),
) -> dict:
    grant = await services.access.grant_permission(
        principal.organization_id,
        payload.user_id,
        payload.resource_type,
        payload.permission,
        granted_by=principal.user_id,
        resource_id=payload.resource_id,
        expires_at=payload.expires_at,
        context=context,
    )
    return success_response(request=request, data=_grant_payload(grant))


@router.delete("/grants", response_model=SuccessEnvelope[RevokeResponse])
async def revoke_grant(
    request: Request,
    user_id: str = Query(...),
    resource_type: ResourceType = Query(...),
    permission: Permission | None = Query(default=None),
    resource_id: str | None = Query(default=None),
    principal: Principal = Depends(get_current_principal),
    services: MaestroServices = Depends(get_services),
    context: RequestContext = Depends(get_request_context),
) -> dict:
    revoked = await services.access.revoke_permission(
        principal.organization_id,
        user_id,
        resource_type,
        revoked_by=principal.user_id,
        permission=permission,
        resource_id=resource_id,
        context=context,
    )
    return success_response(request=request, data=RevokeResponse(revoked=revoked))


@router.get("/grants", response_model=SuccessEnvelope[list[GrantResponse]])
async def list_grants(
    request: Request,
    user_id: str | None = Query(default=None),
    resource_type: ResourceType | None = Query(default=None),
    include_inactive: bool = Query(default=False),
    principal: Principal = Depends(require_admin),
    services: MaestroServices = Depends(get_services),
) -> dict:
    rows = await services.access.list_grants(
        principal.organization_id,
        user_id=user_id,
        resource_type=resource_type,
        include_inactive=include_inactive,
    )
    return success_response(request=request, data=[_grant_payload(row).model_dump(mode="json") for row in rows])


@router.get("/permissions/{user_id}", response_model=SuccessEnvelope[dict])
async def effective_permissions(
    request: Request,
    user_id: str,
    principal: Principal = Depends(get_current_principal),
    services: MaestroServices = Depends(get_services),
    context: RequestContext = Depends(get_request_context),
) -> dict:
    if user_id != principal.user_id:
        await services.access.require_permission(
            principal.user_id,
            principal.organization_id,
            ResourceType.USER,
            Permission.READ,
            user_id,
            context=context,
        )
    effective = await services.access.get_user_permissions(user_id, principal.organization_id)
    data = asdict(effective)
    data["role"] = effective.role.value
    return success_response(request=request, data=data)


@router.get("/members", response_model=SuccessEnvelope[list[MemberResponse]])
async def list_members(
    request: Request,
    principal: Principal = Depends(require_admin),
    services: MaestroServices = Depends(get_services),
) -> dict:
    rows = await services.access.get_organization_members(principal.organization_id)
    return success_response(request=request, data=[_member_payload(row).model_dump(mode="json") for row in rows])


@router.put("/members/{user_id}/role", response_model=SuccessEnvelope[MemberResponse])
async def update_member_role(
    request: Request,
    user_id: str,
    payload: RoleUpdateRequest,
    principal: Principal = Depends(get_current_principal),
    services: MaestroServices = Depends(get_services),
    context: RequestContext = Depends(get_request_context),
) -> dict:
    member = await services.access.update_user_role(
        principal.organization_id,
        user_id,
        payload.role,
        updated_by=principal.user_id,
        context=context,
    )
    return success_response(request=request, data=_member_payload(member))


@router.get("/stats", response_model=SuccessEnvelope[dict])
async def access_stats(
    request: Request,
    principal: Principal = Depends(require_admin),
    services: MaestroServices = Depends(get_services),
) -> dict:
    stats = await services.access.get_access_control_stats(principal.organization_id)
    return success_response(request=request, data=asdict(stats))
