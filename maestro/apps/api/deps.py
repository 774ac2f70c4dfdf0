from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, Request
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from maestro.core.clock import utc_now
from maestro.core.config import Settings
from maestro.core.errors import AuthenticationRequired, MaestroError, PermissionDenied
from maestro.domain.enums import AuthAction, SecurityEvent
from maestro.domain.models import ApiKey, User
from maestro.persistence.repos import users as users_repo
from maestro.services.audit import RequestContext, request_context_from
from maestro.services.auth.api_keys import hash_api_key, normalize_role
from maestro.services.container import MaestroServices


class Principal(BaseModel):
    # Authenticated identity used for organization scoping and RBAC.
    user_id: str
    organization_id: str
    role: str
    api_key_id: str
    auth_method: str = "api_key"


class AuthUnavailable(MaestroError):
    """Credential store could not be reached."""

    code = "AUTH_UNAVAILABLE"
    status_code = 503
    public_message = "Authentication unavailable"


def get_services(request: Request) -> MaestroServices:
    return request.app.state.services


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


async def get_db(services: MaestroServices = Depends(get_services)) -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with services.session_factory() as session:
        yield session


def get_request_context(request: Request) -> RequestContext:
    return request_context_from(request)


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AuthenticationRequired("Missing or invalid bearer token")
    return parts[1]


async def _principal_from_dev_headers(request: Request, db: AsyncSession) -> Principal:
    # Dev bypass still resolves a real member so RBAC runs against stored roles.
    user_id = request.headers.get("X-User-Id")
    organization_id = request.headers.get("X-Organization-Id")
    if not user_id or not organization_id:
        raise AuthenticationRequired("X-User-Id and X-Organization-Id headers are required in dev bypass mode")
    user = await users_repo.get_member(db, organization_id=organization_id, user_id=user_id)
    if user is None or not user.is_active:
        raise AuthenticationRequired("Unknown or inactive user")
    return Principal(
        user_id=user.id,
        organization_id=user.organization_id,
        role=normalize_role(user.role).value,
        api_key_id="dev-bypass",
        auth_method="dev_bypass",
    )


async def get_current_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
    services: MaestroServices = Depends(get_services),
    settings: Settings = Depends(get_app_settings),
) -> Principal:
    bearer_token = _parse_bearer_token(request.headers.get(settings.auth_api_key_header))
    if not settings.auth_enabled or not bearer_token:
        if settings.auth_dev_bypass:
            principal = await _principal_from_dev_headers(request, db)
            request.state.principal = principal
            return principal
        if not settings.auth_enabled:
            raise AuthenticationRequired("Authentication disabled; set AUTH_DEV_BYPASS=true for dev access")
        raise AuthenticationRequired("Missing API key")

    key_hash = hash_api_key(bearer_token)
    try:
        row = (
            await db.execute(
                select(ApiKey, User).join(User, ApiKey.user_id == User.id).where(ApiKey.key_hash == key_hash)
            )
        ).first()
    except SQLAlchemyError as exc:
        raise AuthUnavailable("api key lookup failed") from exc
    if row is None:
        raise AuthenticationRequired("Invalid API key")
    api_key, user = row
    context = request_context_from(request)
    if api_key.revoked_at is not None or not user.is_active:
        await services.audit.log_auth_event(
            AuthAction.LOGIN,
            organization_id=api_key.organization_id,
            user_id=user.id,
            success=False,
            failure_reason="api_key_revoked_or_user_inactive",
            context=context,
        )
        raise AuthenticationRequired("API key is revoked or inactive")
    if api_key.organization_id != user.organization_id:
        await services.audit.log_security_event(
            SecurityEvent.SUSPICIOUS_ACTIVITY,
            organization_id=api_key.organization_id,
            user_id=user.id,
            detail="api key organization does not match its user",
            context=context,
        )
        raise PermissionDenied("organization mismatch for api key")

    api_key.last_used_at = utc_now()
    await db.commit()
    principal = Principal(
        user_id=user.id,
        organization_id=user.organization_id,
        role=normalize_role(user.role).value,
        api_key_id=api_key.id,
    )
    # Read back by the request middleware to audit the access.
    request.state.principal = principal
    return principal


async def require_admin(
    principal: Principal = Depends(get_current_principal),
    services: MaestroServices = Depends(get_services),
    context: RequestContext = Depends(get_request_context),
) -> Principal:
    # Admin surfaces are limited to organization owners and admins.
    if await services.access.is_organization_admin(principal.user_id, principal.organization_id):
        return principal
    await services.audit.log_security_event(
        SecurityEvent.UNAUTHORIZED_ACCESS,
        organization_id=principal.organization_id,
        user_id=principal.user_id,
        detail="admin surface requested by non-admin",
        context=context,
    )
    raise PermissionDenied("admin role required")
