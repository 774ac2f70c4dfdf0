from __future__ import annotations

from types import MappingProxyType
from typing import Mapping

from maestro.domain.enums import Permission, ResourceType, Role


_ALL = frozenset(Permission)
_RWD = frozenset({Permission.READ, Permission.WRITE, Permission.DELETE})
_RW = frozenset({Permission.READ, Permission.WRITE})
_R = frozenset({Permission.READ})

ROLE_PERMISSIONS: Mapping[Role, Mapping[ResourceType, frozenset[Permission]]] = MappingProxyType(
    {
        Role.OWNER: MappingProxyType({resource: _ALL for resource in ResourceType}),
        Role.ADMIN: MappingProxyType(
            {
                ResourceType.MEETING: _RWD,
                ResourceType.ACTION: _RWD,
                ResourceType.COMPANY: _RWD,
                ResourceType.USER: _RW,
                ResourceType.ANALYTICS: _RWD,
                ResourceType.FILE: _RWD,
            }
        ),
        Role.USER: MappingProxyType(
            {
                ResourceType.MEETING: _RW,
                ResourceType.ACTION: _RW,
                ResourceType.COMPANY: _R,
                ResourceType.USER: _R,
                ResourceType.ANALYTICS: _R,
                ResourceType.FILE: _RW,
            }
        ),
    }
)


def role_permissions(role: Role, resource_type: ResourceType) -> frozenset[Permission]:
    return ROLE_PERMISSIONS[role][resource_type]


def role_allows(role: Role, resource_type: ResourceType, permission: Permission) -> bool:
    return permission in ROLE_PERMISSIONS[role][resource_type]
