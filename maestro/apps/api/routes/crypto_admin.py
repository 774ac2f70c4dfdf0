from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from maestro.apps.api.deps import Principal, get_current_principal, get_request_context, get_services
from maestro.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from maestro.apps.api.response import SuccessEnvelope, success_response
from maestro.core.errors import PermissionDenied, ResourceNotFoundError
from maestro.domain.enums import ResourceType, SecurityEvent
from maestro.domain.events import KeyEvent
from maestro.services.audit import RequestContext
from maestro.services.container import MaestroServices


router = APIRouter(prefix="/admin/crypto", tags=["crypto"], responses=DEFAULT_ERROR_RESPONSES)


class RotationResponse(BaseModel):
    master_key_id: str
    keys_rewrapped: int


class KeyDeactivationResponse(BaseModel):
    key_id: str
    deactivated: bool


async def _require_owner(services: MaestroServices, principal: Principal, context: RequestContext) -> None:
    # Key material operations are limited to organization owners.
    if await services.access.is_organization_owner(principal.user_id, principal.organization_id):
        return
    await services.audit.log_security_event(
        SecurityEvent.UNAUTHORIZED_ACCESS,
        organization_id=principal.organization_id,
        user_id=principal.user_id,
        detail="key management requires owner",
        context=context,
    )
    raise PermissionDenied("only organization owners can manage encryption keys")


@router.post("/rotate", response_model=SuccessEnvelope[RotationResponse])
async def rotate_master_key(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    services: MaestroServices = Depends(get_services),
    context: RequestContext = Depends(get_request_context),
) -> dict:
    # Re-wraps every data key still wrapped under a retired master key.
    await _require_owner(services, principal, context)
    count = await services.keys.rotate_master_key(
        principal.organization_id,
        audit=services.audit,
        actor_id=principal.user_id,
        context=context,
    )
    payload = RotationResponse(master_key_id=services.keys.master_key_id, keys_rewrapped=count)
    return success_response(request=request, data=payload)


@router.delete("/keys/{key_id}", response_model=SuccessEnvelope[KeyDeactivationResponse])
async def deactivate_key(
    request: Request,
    key_id: str,
    principal: Principal = Depends(get_current_principal),
    services: MaestroServices = Depends(get_services),
    context: RequestContext = Depends(get_request_context),
) -> dict:
    await _require_owner(services, principal, context)
    if await services.keys.retrieve_wrapped_key(principal.organization_id, key_id) is None:
        raise ResourceNotFoundError("encryption key not found")
    await services.audit.log(
        "crypto.key_deactivated",
        ResourceType.COMPANY.value,
        organization_id=principal.organization_id,
        user_id=principal.user_id,
        resource_id=principal.organization_id,
        metadata=KeyEvent(key_id=key_id, master_key_id=services.keys.master_key_id),
        context=context,
        critical=True,
    )
    changed = await services.keys.deactivate_key(principal.organization_id, key_id)
    return success_response(request=request, data=KeyDeactivationResponse(key_id=key_id, deactivated=changed))
