"""
Roles and permissions.

A user's effective permission set is the union of the role's base set and
the user's explicit override list. It is computed when the session is
resolved and never written back.
"""

from enum import Enum
from typing import Iterable


class UserRole(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"


class Permission(str, Enum):
    # Users
    VIEW_USERS = "VIEW_USERS"
    CREATE_USERS = "CREATE_USERS"
    UPDATE_USERS = "UPDATE_USERS"
    DELETE_USERS = "DELETE_USERS"

    # Masters
    VIEW_MASTERS = "VIEW_MASTERS"
    CREATE_MASTERS = "CREATE_MASTERS"
    UPDATE_MASTERS = "UPDATE_MASTERS"
    DELETE_MASTERS = "DELETE_MASTERS"

    # Content
    VIEW_CONTENT = "VIEW_CONTENT"
    CREATE_CONTENT = "CREATE_CONTENT"
    UPDATE_CONTENT = "UPDATE_CONTENT"
    DELETE_CONTENT = "DELETE_CONTENT"
    PUBLISH_CONTENT = "PUBLISH_CONTENT"

    # System
    VIEW_LOGS = "VIEW_LOGS"
    VIEW_ANALYTICS = "VIEW_ANALYTICS"
    MANAGE_SETTINGS = "MANAGE_SETTINGS"

    # Super admin
    MANAGE_ADMINS = "MANAGE_ADMINS"
    SYSTEM_CONFIG = "SYSTEM_CONFIG"


ROLE_PERMISSIONS: dict[UserRole, frozenset[Permission]] = {
    UserRole.USER: frozenset(),
    UserRole.ADMIN: frozenset({
        Permission.VIEW_USERS,
        Permission.VIEW_MASTERS,
        Permission.CREATE_MASTERS,
        Permission.UPDATE_MASTERS,
        Permission.VIEW_CONTENT,
        Permission.CREATE_CONTENT,
        Permission.UPDATE_CONTENT,
        Permission.DELETE_CONTENT,
        Permission.PUBLISH_CONTENT,
        Permission.VIEW_ANALYTICS,
    }),
    UserRole.SUPER_ADMIN: frozenset(Permission),
}

ADMIN_ROLES = frozenset({UserRole.ADMIN, UserRole.SUPER_ADMIN})


def parse_role(value: str | None) -> UserRole | None:
    try:
        return UserRole(value)
    except ValueError:
        return None


def parse_permissions(values: Iterable[str] | None) -> frozenset[Permission]:
    """Keep the recognised names, silently drop anything else."""
    if not values:
        return frozenset()
    known = {p.value for p in Permission}
    return frozenset(Permission(v) for v in values if v in known)


def resolve_permissions(role: str | UserRole | None, overrides: Iterable[str] | None = None) -> frozenset[Permission]:
    """Role base set ∪ per-user overrides. Unknown roles get no base set."""
    base = ROLE_PERMISSIONS.get(parse_role(role), frozenset())
    return base | parse_permissions(overrides)


def has_permission(granted: frozenset[Permission], permission: Permission) -> bool:
    return permission in granted
