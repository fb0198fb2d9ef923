# roles.py — Fixed role hierarchy and permission table
# The table is static: there is no per-organization customization.

from enum import Enum as PyEnum
from typing import Dict, List, Optional, Union


class Role(str, PyEnum):
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    MEMBER = "MEMBER"
    VIEWER = "VIEWER"


# Index 0 is the most privileged; comparison is by position, never by string.
ROLE_HIERARCHY: List[Role] = [Role.ADMIN, Role.MANAGER, Role.MEMBER, Role.VIEWER]

ROLE_LABELS: Dict[Role, str] = {
    Role.ADMIN: "מנהל מערכת",
    Role.MANAGER: "מנהל",
    Role.MEMBER: "חבר צוות",
    Role.VIEWER: "צופה",
}

_ALL = [Role.ADMIN, Role.MANAGER, Role.MEMBER, Role.VIEWER]
_MANAGERS = [Role.ADMIN, Role.MANAGER]
_CONTRIBUTORS = [Role.ADMIN, Role.MANAGER, Role.MEMBER]
_ADMINS = [Role.ADMIN]

PERMISSIONS: Dict[str, List[Role]] = {
    # Users
    "users:read": _ADMINS,
    "users:create": _ADMINS,
    "users:update": _ADMINS,
    "users:delete": _ADMINS,
    "users:manage-roles": _ADMINS,

    # Teams
    "team:read": _ALL,
    "team:create": _MANAGERS,
    "team:update": _MANAGERS,
    "team:delete": _ADMINS,

    # Objectives
    "objectives:read": _ALL,
    "objectives:create": _MANAGERS,
    "objectives:update": _MANAGERS,
    "objectives:delete": _MANAGERS,

    # Rocks
    "rocks:read": _ALL,
    "rocks:create": _MANAGERS,
    "rocks:update": _MANAGERS,
    "rocks:delete": _MANAGERS,

    # Sprints
    "sprints:read": _ALL,
    "sprints:create": _MANAGERS,
    "sprints:update": _MANAGERS,
    "sprints:delete": _MANAGERS,

    # Stories
    "stories:read": _ALL,
    "stories:create": _CONTRIBUTORS,
    "stories:update": _CONTRIBUTORS,
    "stories:update-own": _CONTRIBUTORS,
    "stories:update-status": _CONTRIBUTORS,
    "stories:delete": _MANAGERS,

    # Tasks
    "tasks:read": _ALL,
    "tasks:create": _CONTRIBUTORS,
    "tasks:update": _CONTRIBUTORS,
    "tasks:delete": _MANAGERS,

    # Labels
    "labels:read": _ALL,
    "labels:create": _MANAGERS,
    "labels:update": _MANAGERS,
    "labels:delete": _MANAGERS,

    # Dashboard
    "dashboard:read": _ALL,

    # Audit
    "audit:read": _CONTRIBUTORS,
    "audit:stats": _MANAGERS,
    "audit:export": _ADMINS,
    "audit:configure": _ADMINS,

    # Feature flags
    "flags:manage": _ADMINS,
}


def normalize_role(value: Union[Role, str, None]) -> Optional[Role]:
    """Coerce a stored or user-supplied role to Role, or None when unknown."""
    if value is None:
        return None
    if isinstance(value, Role):
        return value
    try:
        return Role(str(value).upper())
    except ValueError:
        return None


def has_permission(role: Union[Role, str, None], permission: str) -> bool:
    allowed = PERMISSIONS.get(permission)
    if not allowed:
        return False
    return normalize_role(role) in allowed


def is_role_at_least(user_role: Union[Role, str, None], required_role: Union[Role, str, None]) -> bool:
    user = normalize_role(user_role)
    required = normalize_role(required_role)
    if user is None or required is None:
        return False
    return ROLE_HIERARCHY.index(user) <= ROLE_HIERARCHY.index(required)


def get_permissions_for_role(role: Union[Role, str, None]) -> List[str]:
    normalized = normalize_role(role)
    if normalized is None:
        return []
    return [perm for perm, roles in PERMISSIONS.items() if normalized in roles]


def role_label(role: Union[Role, str, None]) -> str:
    normalized = normalize_role(role)
    return ROLE_LABELS.get(normalized, str(role or ""))
