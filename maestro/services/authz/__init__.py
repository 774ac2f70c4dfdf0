from maestro.services.authz.access_control import (
    AccessControlService,
    AccessControlStats,
    EffectivePermissions,
    PermissionCheck,
)
from maestro.services.authz.matrix import ROLE_PERMISSIONS, role_allows, role_permissions

__all__ = [
    "AccessControlService",
    "AccessControlStats",
    "EffectivePermissions",
    "PermissionCheck",
    "ROLE_PERMISSIONS",
    "role_allows",
    "role_permissions",
]
