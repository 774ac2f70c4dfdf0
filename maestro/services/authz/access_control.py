from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from maestro.core.clock import Clock, ensure_utc, utc_now
from maestro.core.errors import (
    InvalidRequestState,
    PermissionDenied,
    ResourceNotFoundError,
    ValidationError,
)
from maestro.domain.enums import Permission, ResourceType, Role, SecurityEvent
from maestro.domain.events import AccessGrantEvent
from maestro.domain.models import AccessGrant, User
from maestro.persistence.db import SessionFactory, session_scope
from maestro.persistence.repos import grants as grants_repo
from maestro.persistence.repos import users as users_repo
from maestro.services.audit import AuditLogger, RequestContext
from maestro.services.authz.matrix import ROLE_PERMISSIONS, role_allows


logger = logging.getLogger(__name__)

# Denials on these resource types are always recorded as security events.
SENSITIVE_RESOURCE_TYPES = frozenset({ResourceType.USER, ResourceType.COMPANY, ResourceType.FILE})
_EXPIRING_SOON = timedelta(days=7)


@dataclass(frozen=True)
class PermissionCheck:
    allowed: bool
    reason: str | None = None
    role: Role | None = None
    # "role" when the matrix allowed it, "grant" when an explicit grant did.
    source: str | None = None
    grant_id: str | None = None


@dataclass(frozen=True)
class EffectivePermissions:
    user_id: str
    role: Role
    permissions: dict[str, list[str]]
    resource_grants: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class AccessControlStats:
    total_members: int
    active_members: int
    members_by_role: dict[str, int]
    active_grants: int
    expired_grants: int
    expiring_soon: int


def _coerce_resource_type(value: ResourceType | str) -> ResourceType:
    try:
        return ResourceType(value)
    except ValueError as exc:
        raise ValidationError(f"Unsupported resource type: {value}") from exc


def _coerce_permission(value: Permission | str) -> Permission:
    try:
        return Permission(value)
    except ValueError as exc:
        raise ValidationError(f"Unsupported permission: {value}") from exc


def _coerce_role(value: Role | str) -> Role:
    try:
        return Role(value)
    except ValueError as exc:
        raise ValidationError(f"Unsupported role: {value}") from exc


def grant_state(grant: AccessGrant) -> dict[str, Any]:
    return {
        "id": grant.id,
        "user_id": grant.user_id,
        "resource_type": grant.resource_type,
        "resource_id": grant.resource_id,
        "permission": grant.permission,
        "granted_by": grant.granted_by,
        "granted_at": grant.granted_at.isoformat() if grant.granted_at else None,
        "expires_at": grant.expires_at.isoformat() if grant.expires_at else None,
        "is_active": grant.is_active,
    }


class AccessControlService:
    """Role matrix evaluation plus an expiring ledger of explicit grants."""

    def __init__(self, session_factory: SessionFactory, *, audit: AuditLogger, clock: Clock = utc_now) -> None:
        self._session_factory = session_factory
        self._audit = audit
        self._clock = clock

    async def check_permission(
        self,
        user_id: str,
        organization_id: str,
        resource_type: ResourceType | str,
        permission: Permission | str,
        resource_id: str | None = None,
        *,
        session: AsyncSession | None = None,
    ) -> PermissionCheck:
        resource = _coerce_resource_type(resource_type)
        perm = _coerce_permission(permission)
        async with session_scope(self._session_factory, session) as active:
            organization = await users_repo.get_organization(active, organization_id)
            if organization is None or not organization.is_active:
                return PermissionCheck(allowed=False, reason="organization is not active")
            user = await users_repo.get_member(active, organization_id=organization_id, user_id=user_id)
            if user is None:
                return PermissionCheck(allowed=False, reason="user is not a member of the organization")
            if not user.is_active:
                return PermissionCheck(allowed=False, reason="user is inactive")
            try:
                role = Role(user.role)
            except ValueError:
                return PermissionCheck(allowed=False, reason="user has an unknown role")
            if role_allows(role, resource, perm):
                return PermissionCheck(allowed=True, role=role, source="role")
            # Grants only add to the matrix; expiry is judged against the clock at check time.
            grant = await grants_repo.find_effective_grant(
                active,
                organization_id=organization_id,
                user_id=user_id,
                resource_type=resource.value,
                permission=perm.value,
                resource_id=resource_id,
                now=self._clock(),
            )
            if grant is not None:
                return PermissionCheck(allowed=True, role=role, source="grant", grant_id=grant.id)
            return PermissionCheck(
                allowed=False,
                role=role,
                reason=f"role {role.value} lacks {perm.value} on {resource.value}",
            )

    async def require_permission(
        self,
        user_id: str,
        organization_id: str,
        resource_type: ResourceType | str,
        permission: Permission | str,
        resource_id: str | None = None,
        *,
        context: RequestContext | None = None,
        session: AsyncSession | None = None,
    ) -> PermissionCheck:
        result = await self.check_permission(
            user_id,
            organization_id,
            resource_type,
            permission,
            resource_id,
            session=session,
        )
        if result.allowed:
            return result
        resource = _coerce_resource_type(resource_type)
        perm = _coerce_permission(permission)
        logger.info(
            "permission_denied organization_id=%s user_id=%s resource_type=%s permission=%s reason=%s",
            organization_id,
            user_id,
            resource.value,
            perm.value,
            result.reason,
        )
        if resource in SENSITIVE_RESOURCE_TYPES:
            await self._audit.log_security_event(
                SecurityEvent.UNAUTHORIZED_ACCESS,
                organization_id=organization_id,
                user_id=user_id,
                resource_type=resource.value,
                resource_id=resource_id,
                detail=result.reason,
                context=context,
                extra={"permission": perm.value},
            )
        raise PermissionDenied(result.reason or "permission denied")

    async def can_access_resource(
        self,
        user_id: str,
        organization_id: str,
        resource_type: ResourceType | str,
        resource_id: str,
        permission: Permission | str = Permission.READ,
    ) -> bool:
        result = await self.check_permission(user_id, organization_id, resource_type, permission, resource_id)
        return result.allowed

    async def grant_permission(
        self,
        organization_id: str,
        user_id: str,
        resource_type: ResourceType | str,
        permission: Permission | str,
        *,
        granted_by: str,
        resource_id: str | None = None,
        expires_at: datetime | None = None,
        context: RequestContext | None = None,
    ) -> AccessGrant:
        resource = _coerce_resource_type(resource_type)
        perm = _coerce_permission(permission)
        now = self._clock()
        if expires_at is not None:
            expires_at = ensure_utc(expires_at)
            if expires_at <= now:
                raise ValidationError("expires_at must be in the future")
        async with self._session_factory() as session:
            await self.require_permission(
                granted_by,
                organization_id,
                ResourceType.USER,
                Permission.WRITE,
                context=context,
                session=session,
            )
            target = await users_repo.get_member(session, organization_id=organization_id, user_id=user_id)
            if target is None:
                raise ResourceNotFoundError("user not found in organization")
            existing = await grants_repo.get_active_grant(
                session,
                organization_id=organization_id,
                user_id=user_id,
                resource_type=resource.value,
                permission=perm.value,
                resource_id=resource_id,
            )
            old_state = grant_state(existing) if existing is not None else None
            new_state = {
                "id": existing.id if existing is not None else uuid4().hex,
                "user_id": user_id,
                "resource_type": resource.value,
                "resource_id": resource_id,
                "permission": perm.value,
                "granted_by": granted_by,
                "granted_at": now.isoformat(),
                "expires_at": expires_at.isoformat() if expires_at else None,
                "is_active": True,
            }
            # Log-then-act inside one transaction: no grant without a confirmed audit entry.
            await self._audit.log(
                "access.grant",
                ResourceType.USER.value,
                organization_id=organization_id,
                user_id=granted_by,
                resource_id=user_id,
                metadata=AccessGrantEvent(old_state=old_state, new_state=new_state),
                context=context,
                session=session,
                critical=True,
            )
            if existing is not None:
                existing.granted_by = granted_by
                existing.granted_at = now
                existing.expires_at = expires_at
                grant = existing
            else:
                grant = AccessGrant(
                    id=new_state["id"],
                    organization_id=organization_id,
                    user_id=user_id,
                    resource_type=resource.value,
                    resource_id=resource_id,
                    permission=perm.value,
                    granted_by=granted_by,
                    granted_at=now,
                    expires_at=expires_at,
                    is_active=True,
                )
                session.add(grant)
            await session.commit()
        logger.info(
            "access_grant_issued organization_id=%s user_id=%s resource_type=%s permission=%s",
            organization_id,
            user_id,
            resource.value,
            perm.value,
        )
        return grant

    async def revoke_permission(
        self,
        organization_id: str,
        user_id: str,
        resource_type: ResourceType | str,
        *,
        revoked_by: str,
        permission: Permission | str | None = None,
        resource_id: str | None = None,
        context: RequestContext | None = None,
    ) -> int:
        resource = _coerce_resource_type(resource_type)
        perm = _coerce_permission(permission) if permission is not None else None
        now = self._clock()
        async with self._session_factory() as session:
            await self.require_permission(
                revoked_by,
                organization_id,
                ResourceType.USER,
                Permission.WRITE,
                context=context,
                session=session,
            )
            grants = await grants_repo.list_grants(
                session,
                organization_id=organization_id,
                user_id=user_id,
                resource_type=resource.value,
                resource_id=resource_id,
                permission=perm.value if perm else None,
            )
            if not grants:
                return 0
            await self._audit.log(
                "access.revoke",
                ResourceType.USER.value,
                organization_id=organization_id,
                user_id=revoked_by,
                resource_id=user_id,
                metadata=AccessGrantEvent(
                    old_state={"grants": [grant_state(grant) for grant in grants]},
                    new_state={"grants": [], "revoked": len(grants)},
                ),
                context=context,
                session=session,
                critical=True,
            )
            for grant in grants:
                grant.is_active = False
                grant.revoked_at = now
                grant.revoked_by = revoked_by
            await session.commit()
        return len(grants)

    async def list_grants(
        self,
        organization_id: str,
        *,
        user_id: str | None = None,
        resource_type: ResourceType | str | None = None,
        include_inactive: bool = False,
    ) -> list[AccessGrant]:
        resource = _coerce_resource_type(resource_type) if resource_type is not None else None
        async with self._session_factory() as session:
            return await grants_repo.list_grants(
                session,
                organization_id=organization_id,
                user_id=user_id,
                resource_type=resource.value if resource else None,
                active_only=not include_inactive,
            )

    async def get_user_permissions(self, user_id: str, organization_id: str) -> EffectivePermissions:
        now = self._clock()
        async with self._session_factory() as session:
            user = await users_repo.get_member(session, organization_id=organization_id, user_id=user_id)
            if user is None:
                raise ResourceNotFoundError("user not found in organization")
            role = Role(user.role)
            permissions: dict[str, set[str]] = {
                resource.value: {perm.value for perm in perms} if user.is_active else set()
                for resource, perms in ROLE_PERMISSIONS[role].items()
            }
            resource_grants: list[dict[str, Any]] = []
            if user.is_active:
                grants = await grants_repo.list_grants(session, organization_id=organization_id, user_id=user_id)
                for grant in grants:
                    if grant.expires_at is not None and grant.expires_at <= now:
                        continue
                    if grant.resource_id is None:
                        permissions.setdefault(grant.resource_type, set()).add(grant.permission)
                    else:
                        resource_grants.append(grant_state(grant))
        return EffectivePermissions(
            user_id=user_id,
            role=role,
            permissions={key: sorted(value) for key, value in permissions.items()},
            resource_grants=resource_grants,
        )

    async def is_organization_admin(self, user_id: str, organization_id: str) -> bool:
        async with self._session_factory() as session:
            user = await users_repo.get_member(session, organization_id=organization_id, user_id=user_id)
        return user is not None and user.is_active and user.role in (Role.OWNER.value, Role.ADMIN.value)

    async def is_organization_owner(self, user_id: str, organization_id: str) -> bool:
        async with self._session_factory() as session:
            user = await users_repo.get_member(session, organization_id=organization_id, user_id=user_id)
        return user is not None and user.is_active and user.role == Role.OWNER.value

    async def get_organization_members(self, organization_id: str) -> list[User]:
        async with self._session_factory() as session:
            return await users_repo.list_members(session, organization_id=organization_id)

    async def update_user_role(
        self,
        organization_id: str,
        user_id: str,
        new_role: Role | str,
        *,
        updated_by: str,
        context: RequestContext | None = None,
    ) -> User:
        role = _coerce_role(new_role)
        async with self._session_factory() as session:
            updater = await users_repo.get_member(session, organization_id=organization_id, user_id=updated_by)
            if updater is None or not updater.is_active or updater.role != Role.OWNER.value:
                await self._audit.log_security_event(
                    SecurityEvent.UNAUTHORIZED_ACCESS,
                    organization_id=organization_id,
                    user_id=updated_by,
                    resource_type=ResourceType.USER.value,
                    resource_id=user_id,
                    detail="role change requires owner",
                    context=context,
                )
                raise PermissionDenied("only organization owners can change roles")
            target = await users_repo.get_member(session, organization_id=organization_id, user_id=user_id)
            if target is None:
                raise ResourceNotFoundError("user not found in organization")
            if target.role == role.value:
                return target
            if target.role == Role.OWNER.value:
                owners = await users_repo.count_active_owners(session, organization_id=organization_id)
                if owners <= 1:
                    raise InvalidRequestState("cannot demote the last owner of an organization")
            await self._audit.log(
                "access.role_update",
                ResourceType.USER.value,
                organization_id=organization_id,
                user_id=updated_by,
                resource_id=user_id,
                metadata=AccessGrantEvent(old_state={"role": target.role}, new_state={"role": role.value}),
                context=context,
                session=session,
                critical=True,
            )
            target.role = role.value
            await session.commit()
            return target

    async def get_access_control_stats(self, organization_id: str) -> AccessControlStats:
        now = self._clock()
        async with self._session_factory() as session:
            members = await users_repo.list_members(session, organization_id=organization_id)
            grants = await grants_repo.list_grants(session, organization_id=organization_id)
        expired = [grant for grant in grants if grant.expires_at is not None and grant.expires_at <= now]
        expiring = [
            grant
            for grant in grants
            if grant.expires_at is not None and now < grant.expires_at <= now + _EXPIRING_SOON
        ]
        return AccessControlStats(
            total_members=len(members),
            active_members=sum(1 for member in members if member.is_active),
            members_by_role=dict(Counter(member.role for member in members)),
            active_grants=len(grants) - len(expired),
            expired_grants=len(expired),
            expiring_soon=len(expiring),
        )
