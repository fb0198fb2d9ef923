# permissions.py — Permission, role-floor and ownership gates
# Organization gates depend on require_organization, which depends on get_current_user,
# so authentication (401 / disabled account 403) is always evaluated first. The
# platform console gate depends on get_current_user alone.

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends

from auth import CurrentUser, get_current_user
from errors import Forbidden
from roles import Role, has_permission, is_role_at_least
from tenancy import Principal, require_organization

logger = logging.getLogger("rocks.permissions")

ROLE_FLOOR_MESSAGE = "נדרשת רמת הרשאה גבוהה יותר"
OWNERSHIP_MESSAGE = "ניתן לערוך רק פריטים שבבעלותך"


def is_owner(principal: Principal, owner_id: Optional[str]) -> bool:
    return bool(owner_id) and owner_id == principal.membership_id


@dataclass
class AccessGrant:
    """Result of an ownership-or-permission gate; the handler finishes the check."""
    principal: Principal
    permission: str
    ownership_required: bool = False

    def ensure_owner(self, owner_id: Optional[str]) -> None:
        if self.ownership_required and not is_owner(self.principal, owner_id):
            raise Forbidden(
                OWNERSHIP_MESSAGE,
                required=self.permission,
                userRole=self.principal.role.value,
            )


def require_permission(permission: str):
    """Dependency factory: actor's role must be listed for the permission"""
    async def _check(principal: Principal = Depends(require_organization)) -> Principal:
        if has_permission(principal.role, permission):
            return principal
        logger.info(f"Denied {permission} to user {principal.user_id} ({principal.role.value})")
        raise Forbidden(required=permission, userRole=principal.role.value)
    return _check


def require_role(min_role: Role):
    """Dependency factory: actor's role must be at or above min_role"""
    async def _check(principal: Principal = Depends(require_organization)) -> Principal:
        if is_role_at_least(principal.role, min_role):
            return principal
        logger.info(f"Denied role floor {min_role.value} to user {principal.user_id} ({principal.role.value})")
        raise Forbidden(ROLE_FLOOR_MESSAGE, required=min_role.value, userRole=principal.role.value)
    return _check


def require_ownership_or(permission: str):
    """Dependency factory: managers pass outright, members pass only for their own items"""
    async def _check(principal: Principal = Depends(require_organization)) -> AccessGrant:
        if is_role_at_least(principal.role, Role.MANAGER):
            return AccessGrant(principal, permission)
        if principal.role == Role.MEMBER and has_permission(principal.role, permission):
            return AccessGrant(principal, permission, ownership_required=True)
        raise Forbidden(required=permission, userRole=principal.role.value)
    return _check


def require_super_admin():
    async def _check(principal: Principal = Depends(require_organization)) -> Principal:
        if not principal.is_super_admin:
            raise Forbidden("נדרשות הרשאות מנהל-על", required="super_admin", userRole=principal.role.value)
        return principal
    return _check


def require_platform_admin():
    """Platform console gate: no organization is resolved, only the account flag counts"""
    async def _check(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if not user.is_super_admin:
            logger.info(f"Denied platform console to user {user.id}")
            raise Forbidden("נדרשות הרשאות מנהל-על", required="super_admin", userRole=user.role)
        return user
    return _check
