# voting_portal/authentication/rbac.py

from enum import Enum

from voting_portal.database.models import Role
from voting_portal.errors import ErrorCode, PortalError


class Permission(Enum):
    VOTE = "vote"
    VIEW_OWN_STATUS = "view_own_status"
    MANAGE_BIASES = "manage_biases"
    MANAGE_ROLES = "manage_roles"
    RETRACT_VOTES = "retract_votes"
    MANAGE_CACHE = "manage_cache"
    VIEW_AUDIT_LOGS = "view_audit_logs"


# Role -> Permissions mapping; roles are ordered, each inherits the one below
ROLE_PERMISSIONS = {
    Role.BASIC: [
        Permission.VOTE,
        Permission.VIEW_OWN_STATUS,
    ],
    Role.CURATOR: [],
    Role.OPERATOR: [
        Permission.MANAGE_BIASES,
        Permission.MANAGE_ROLES,
        Permission.RETRACT_VOTES,
        Permission.MANAGE_CACHE,
        Permission.VIEW_AUDIT_LOGS,
    ],
}


class RBACService:
    def get_permissions(self, role):
        if isinstance(role, str):
            role = Role(role)
        granted = []
        for candidate in Role:
            if role.at_least(candidate):
                granted.extend(ROLE_PERMISSIONS.get(candidate, []))
        return granted

    def has_permission(self, role, permission):
        if isinstance(permission, str):
            permission = Permission(permission)
        return permission in self.get_permissions(role)

    def require(self, role, permission):
        if not self.has_permission(role, permission):
            raise PortalError(ErrorCode.FORBIDDEN)
