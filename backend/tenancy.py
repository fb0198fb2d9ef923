# tenancy.py — Organization resolution and per-request principal
# Control flow per request:
#   get_current_user -> resolve_organization -> canonical membership (provision if needed)
#   -> team ids -> feature flags -> Principal
# The principal is derived fresh for each request and never cached across requests.

import logging
from dataclasses import dataclass, field
from enum import Enum as PyEnum
from typing import Dict, List, Optional

from fastapi import Depends, Request
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentUser, get_current_user
from database import get_db_session
from errors import OrganizationRequired, ValidationFailed
from feature_flags import FlagState, get_feature_flags_map
from models import (
    Organization, Membership, OrganizationMember, MemberStatus,
    Team, TeamMembership, utcnow,
)
from roles import Role, normalize_role

logger = logging.getLogger("rocks.tenancy")

ORGANIZATION_HEADER = "X-Organization-Id"
DEFAULT_TEAM_NAME = "כללי"


class MembershipSource(str, PyEnum):
    MEMBERSHIP = "membership"    # current model row
    LEGACY = "legacy"            # organization_members row, not provisioned
    PROVISIONED = "provisioned"  # current model row created from legacy/super-admin access


@dataclass
class CanonicalMembership:
    source: MembershipSource
    role: Role
    membership_id: Optional[str] = None


@dataclass
class Principal:
    organization_id: str
    user_id: str
    membership_id: Optional[str]
    role: Role
    team_ids: List[str] = field(default_factory=list)
    feature_flags: Dict[str, FlagState] = field(default_factory=dict)
    is_super_admin: bool = False
    membership_source: Optional[MembershipSource] = None

    def to_dict(self) -> dict:
        return {
            "organization_id": self.organization_id,
            "user_id": self.user_id,
            "membership_id": self.membership_id,
            "role": self.role.value,
            "team_ids": list(self.team_ids),
            "feature_flags": {k: v.is_enabled for k, v in self.feature_flags.items()},
            "is_super_admin": self.is_super_admin,
            "membership_source": self.membership_source.value if self.membership_source else None,
        }


# ============================================================
# MEMBERSHIP LOOKUPS
# ============================================================

async def _active_membership(db: AsyncSession, user_id: str, organization_id: str) -> Optional[Membership]:
    result = await db.execute(
        select(Membership).where(
            Membership.user_id == user_id,
            Membership.organization_id == organization_id,
            Membership.is_active == True,
        )
    )
    return result.scalar_one_or_none()


def _not_removed(user_id: str):
    """Legacy rows stop granting access once an admin has removed the membership."""
    removed = select(Membership.id).where(
        Membership.user_id == user_id,
        Membership.organization_id == OrganizationMember.organization_id,
        Membership.deactivated_at.isnot(None),
    )
    return ~removed.exists()


async def _legacy_member(db: AsyncSession, user_id: str, organization_id: str) -> Optional[OrganizationMember]:
    result = await db.execute(
        select(OrganizationMember).where(
            OrganizationMember.user_id == user_id,
            OrganizationMember.organization_id == organization_id,
            OrganizationMember.status != MemberStatus.INACTIVE,
            _not_removed(user_id),
        )
    )
    return result.scalar_one_or_none()


async def has_organization_access(db: AsyncSession, user: CurrentUser, organization_id: str) -> bool:
    """Super-admins may enter any existing organization; everyone else needs a membership."""
    if user.is_super_admin:
        result = await db.execute(select(Organization.id).where(Organization.id == organization_id))
        return result.scalar_one_or_none() is not None
    if await _active_membership(db, user.id, organization_id):
        return True
    return await _legacy_member(db, user.id, organization_id) is not None


async def resolve_organization(request: Request, user: CurrentUser, db: AsyncSession) -> Optional[str]:
    """Tenant for this request: header, then session selection, then first membership."""
    header_org = (request.headers.get(ORGANIZATION_HEADER) or "").strip()
    if header_org:
        if await has_organization_access(db, user, header_org):
            return header_org
        # Ignored rather than rejected: fall through to a legitimate resolution
        logger.warning(f"Ignoring {ORGANIZATION_HEADER}={header_org} for user {user.id}: no access")

    session_org = user.session_organization_id
    if session_org and await has_organization_access(db, user, session_org):
        return session_org

    result = await db.execute(
        select(Membership.organization_id)
        .where(Membership.user_id == user.id, Membership.is_active == True)
        .order_by(Membership.joined_at, Membership.id)
        .limit(1)
    )
    first = result.scalar_one_or_none()
    if first:
        return first

    result = await db.execute(
        select(OrganizationMember.organization_id)
        .where(
            OrganizationMember.user_id == user.id,
            OrganizationMember.status != MemberStatus.INACTIVE,
            _not_removed(user.id),
        )
        .order_by(OrganizationMember.created_at, OrganizationMember.id)
        .limit(1)
    )
    return result.scalar_one_or_none()


# ============================================================
# PROVISIONING
# ============================================================

async def get_or_create_default_team(db: AsyncSession, organization_id: str) -> Team:
    result = await db.execute(
        select(Team).where(Team.organization_id == organization_id, Team.name == DEFAULT_TEAM_NAME)
    )
    team = result.scalar_one_or_none()
    if team is None:
        team = Team(organization_id=organization_id, name=DEFAULT_TEAM_NAME, is_active=True)
        db.add(team)
        await db.commit()
        await db.refresh(team)
        logger.info(f"Created default team for organization {organization_id}")
    elif not team.is_active:
        team.is_active = True
        await db.commit()
    return team


async def ensure_default_team_link(db: AsyncSession, membership: Membership) -> TeamMembership:
    """Without at least one team link, team-scoped reads would hide all of the member's data."""
    team = await get_or_create_default_team(db, membership.organization_id)
    result = await db.execute(
        select(TeamMembership).where(
            TeamMembership.team_id == team.id,
            TeamMembership.membership_id == membership.id,
        )
    )
    link = result.scalar_one_or_none()
    if link is None:
        link = TeamMembership(team_id=team.id, membership_id=membership.id)
        db.add(link)
        await db.commit()
    return link


async def provision_membership(
    db: AsyncSession, user: CurrentUser, organization_id: str, role: Role,
) -> Optional[Membership]:
    """Upsert keyed by (email, organization); each step commits on its own and is safe to retry.

    A membership an admin removed is never revived here; only re-adding the
    member clears `deactivated_at`.
    """
    email = user.email.lower()
    stmt = select(Membership).where(
        Membership.email == email,
        Membership.organization_id == organization_id,
    )
    membership = (await db.execute(stmt)).scalar_one_or_none()
    if membership is None:
        membership = Membership(
            organization_id=organization_id,
            user_id=user.id,
            email=email,
            name=user.display_name or email.split("@")[0],
            role=role,
            is_active=True,
            joined_at=utcnow(),
        )
        db.add(membership)
        try:
            await db.commit()
        except IntegrityError:
            # Concurrent request provisioned the same row first
            await db.rollback()
            membership = (await db.execute(stmt)).scalar_one()
    elif membership.deactivated_at is not None:
        logger.warning(
            f"Refusing to provision removed membership {membership.id} for user {user.id} in {organization_id}"
        )
        return None
    else:
        membership.user_id = user.id
        membership.role = role
        membership.is_active = True
        membership.joined_at = membership.joined_at or utcnow()
        await db.commit()

    logger.info(f"Provisioned membership {membership.id} for user {user.id} in {organization_id} as {role.value}")
    await ensure_default_team_link(db, membership)
    return membership


async def get_canonical_membership(
    db: AsyncSession,
    user: CurrentUser,
    organization_id: str,
    provision: bool = True,
) -> Optional[CanonicalMembership]:
    """The one place that knows two membership representations exist.

    Precedence: active current-model row, else provision from legacy access
    (or super-admin status), else nothing.
    """
    membership = await _active_membership(db, user.id, organization_id)
    if membership is not None:
        return CanonicalMembership(
            source=MembershipSource.MEMBERSHIP,
            role=normalize_role(membership.role) or Role.VIEWER,
            membership_id=membership.id,
        )

    legacy = await _legacy_member(db, user.id, organization_id)
    if legacy is None and not user.is_super_admin:
        return None

    role = (normalize_role(legacy.role) if legacy else None) or Role.VIEWER
    if not provision:
        return CanonicalMembership(source=MembershipSource.LEGACY, role=role)

    membership = await provision_membership(db, user, organization_id, role)
    if membership is None:
        return None
    return CanonicalMembership(
        source=MembershipSource.PROVISIONED,
        role=role,
        membership_id=membership.id,
    )


async def validate_membership_id(
    db: AsyncSession, organization_id: str, membership_id: Optional[str], field_name: str = "owner_id",
) -> Optional[str]:
    """Owner/assignee references must point at an active member of the same organization."""
    if not membership_id:
        return None
    result = await db.execute(
        select(Membership.id).where(
            Membership.id == membership_id,
            Membership.organization_id == organization_id,
            Membership.is_active == True,
        )
    )
    if result.scalar_one_or_none() is None:
        raise ValidationFailed("האחראי שנבחר אינו חבר בארגון", code="INVALID_MEMBERSHIP", field=field_name)
    return membership_id


async def load_team_ids(db: AsyncSession, membership_id: str, organization_id: str) -> List[str]:
    result = await db.execute(
        select(TeamMembership.team_id)
        .join(Team, Team.id == TeamMembership.team_id)
        .where(
            TeamMembership.membership_id == membership_id,
            Team.organization_id == organization_id,
            Team.is_active == True,
        )
        .order_by(TeamMembership.created_at, TeamMembership.team_id)
    )
    return list(result.scalars().all())


# ============================================================
# PRINCIPAL
# ============================================================

async def build_principal(request: Request, user: CurrentUser, db: AsyncSession) -> Optional[Principal]:
    """Never raises: a failure here degrades to "no principal" and later gates decide."""
    try:
        organization_id = await resolve_organization(request, user, db)
        if not organization_id:
            return None

        canonical = await get_canonical_membership(db, user, organization_id)
        if canonical is not None:
            role = canonical.role
        else:
            role = normalize_role(user.role) or Role.VIEWER

        membership_id = canonical.membership_id if canonical else None
        team_ids = await load_team_ids(db, membership_id, organization_id) if membership_id else []
        flags = await get_feature_flags_map(db, organization_id)

        return Principal(
            organization_id=organization_id,
            user_id=user.id,
            membership_id=membership_id,
            role=role,
            team_ids=team_ids,
            feature_flags=flags,
            is_super_admin=user.is_super_admin,
            membership_source=canonical.source if canonical else None,
        )
    except Exception:
        logger.exception(f"Failed to build principal for user {user.id}")
        await db.rollback()
        return None


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

async def get_principal(
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> Optional[Principal]:
    principal = await build_principal(request, user, db)
    request.state.principal = principal
    return principal


async def require_organization(principal: Optional[Principal] = Depends(get_principal)) -> Principal:
    if principal is None:
        raise OrganizationRequired()
    return principal
