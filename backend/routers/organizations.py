# routers/organizations.py — Organization (tenant) management and membership administration
import re
from typing import Optional, List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import delete, select, func
from sqlalchemy.ext.asyncio import AsyncSession

from audit import AuditAction, AuditRecorder, audit_recorder, snapshot
from auth import CurrentUser, get_current_user
from database import get_db_session
from errors import Conflict, NotFound, ValidationFailed
from models import (
    Organization, Membership, OrganizationMember, MemberStatus, AllowedEmail,
    User, utcnow,
)
from permissions import require_permission, require_role
from roles import Role
from tenancy import Principal, ensure_default_team_link, get_or_create_default_team

router = APIRouter(prefix="/api/v1/organizations", tags=["Organizations"])


# --- Schemas ---

class OrgOut(BaseModel):
    id: str
    name: str
    slug: str
    logo_url: Optional[str] = None
    settings: dict
    is_active: bool
    role: Optional[str] = None
    member_count: int = 0
    created_at: str


class OrgCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    slug: Optional[str] = Field(None, pattern=r"^[a-z0-9-]{2,50}$")


class OrgUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    slug: Optional[str] = Field(None, pattern=r"^[a-z0-9-]{2,50}$")
    logo_url: Optional[str] = None
    settings: Optional[dict] = None


class MemberOut(BaseModel):
    id: str
    user_id: Optional[str] = None
    email: str
    name: str
    role: str
    is_active: bool
    joined_at: Optional[str] = None


class MemberAdd(BaseModel):
    email: EmailStr
    name: str = ""
    role: Role = Role.MEMBER


class MemberRoleUpdate(BaseModel):
    role: Role


# --- Helpers ---

def _slugify(name: str) -> str:
    slug = re.sub(r'[^a-z0-9]+', '-', name.lower()).strip('-')
    return slug[:50] or "org"


async def _member_count(db: AsyncSession, organization_id: str) -> int:
    result = await db.execute(
        select(func.count(Membership.id)).where(
            Membership.organization_id == organization_id,
            Membership.is_active == True,
        )
    )
    return result.scalar() or 0


async def _org_out(db: AsyncSession, org: Organization, role: Optional[str] = None) -> OrgOut:
    return OrgOut(
        id=org.id,
        name=org.name,
        slug=org.slug,
        logo_url=org.logo_url,
        settings=org.settings or {},
        is_active=bool(org.is_active),
        role=role,
        member_count=await _member_count(db, org.id),
        created_at=org.created_at.isoformat() if org.created_at else "",
    )


def _member_out(m: Membership) -> MemberOut:
    return MemberOut(
        id=m.id,
        user_id=m.user_id,
        email=m.email,
        name=m.name or "",
        role=m.role.value if isinstance(m.role, Role) else str(m.role),
        is_active=bool(m.is_active),
        joined_at=m.joined_at.isoformat() if m.joined_at else None,
    )


async def _ensure_slug_free(db: AsyncSession, slug: str, exclude_id: Optional[str] = None) -> None:
    stmt = select(Organization.id).where(Organization.slug == slug)
    if exclude_id:
        stmt = stmt.where(Organization.id != exclude_id)
    if (await db.execute(stmt)).scalar_one_or_none():
        raise Conflict("כתובת הארגון כבר בשימוש", field="slug")


async def _get_org_membership(db: AsyncSession, principal: Principal, membership_id: str) -> Membership:
    result = await db.execute(
        select(Membership).where(
            Membership.id == membership_id,
            Membership.organization_id == principal.organization_id,
        )
    )
    membership = result.scalar_one_or_none()
    if not membership:
        raise NotFound("חבר הארגון לא נמצא")
    return membership


# ============================================================
# ORGANIZATIONS
# ============================================================

@router.get("", response_model=List[OrgOut])
async def list_organizations(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    limit: int = Query(default=50, le=200),
):
    """Organizations the user can enter (super-admins see all)"""
    if user.is_super_admin:
        result = await db.execute(select(Organization).order_by(Organization.created_at.desc()).limit(limit))
        return [await _org_out(db, org) for org in result.scalars().all()]

    roles = {}
    rows = await db.execute(
        select(Membership.organization_id, Membership.role).where(
            Membership.user_id == user.id, Membership.is_active == True,
        )
    )
    for org_id, role in rows.all():
        roles[org_id] = role.value if isinstance(role, Role) else str(role)
    legacy = await db.execute(
        select(OrganizationMember.organization_id, OrganizationMember.role).where(
            OrganizationMember.user_id == user.id,
            OrganizationMember.status != MemberStatus.INACTIVE,
        )
    )
    for org_id, role in legacy.all():
        roles.setdefault(org_id, role.value if isinstance(role, Role) else str(role))

    if not roles:
        return []
    result = await db.execute(
        select(Organization)
        .where(Organization.id.in_(list(roles.keys())), Organization.is_active == True)
        .order_by(Organization.name)
        .limit(limit)
    )
    return [await _org_out(db, org, roles.get(org.id)) for org in result.scalars().all()]


@router.post("", response_model=OrgOut, status_code=201)
async def create_organization(
    data: OrgCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(audit_recorder("Organization")),
):
    """Create an organization; the creator becomes its ADMIN"""
    slug = data.slug or _slugify(data.name)
    await _ensure_slug_free(db, slug)

    org = Organization(name=data.name, slug=slug, settings={}, is_active=True)
    db.add(org)
    await db.flush()
    membership = Membership(
        organization_id=org.id,
        user_id=user.id,
        email=user.email.lower(),
        name=user.display_name or user.email.split("@")[0],
        role=Role.ADMIN,
        is_active=True,
        joined_at=utcnow(),
    )
    db.add(membership)
    await db.commit()
    await db.refresh(org)

    await get_or_create_default_team(db, org.id)
    await ensure_default_team_link(db, membership)

    audit.succeeded(org, status_code=201, organization_id=org.id)
    return await _org_out(db, org, Role.ADMIN.value)


@router.get("/current", response_model=OrgOut)
async def get_current_organization(
    principal: Principal = Depends(require_permission("dashboard:read")),
    db: AsyncSession = Depends(get_db_session),
):
    """The organization resolved for this request"""
    org = await db.get(Organization, principal.organization_id)
    if not org:
        raise NotFound("הארגון לא נמצא")
    return await _org_out(db, org, principal.role.value)


@router.patch("/current", response_model=OrgOut)
async def update_current_organization(
    data: OrgUpdate,
    principal: Principal = Depends(require_role(Role.ADMIN)),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(audit_recorder("Organization")),
):
    """Update organization details (ADMIN)"""
    org = await db.get(Organization, principal.organization_id)
    if not org:
        raise NotFound("הארגון לא נמצא")
    old = snapshot(org)

    updates = data.model_dump(exclude_unset=True)
    if "slug" in updates and updates["slug"] != org.slug:
        await _ensure_slug_free(db, updates["slug"], exclude_id=org.id)
    if "settings" in updates:
        # Merge so unrelated keys (e.g. current_sprint_id) survive partial updates
        updates["settings"] = {**(org.settings or {}), **(updates["settings"] or {})}
    for key, value in updates.items():
        setattr(org, key, value)
    await db.commit()
    await db.refresh(org)

    action = AuditAction.SETTINGS_CHANGED if set(updates) == {"settings"} else AuditAction.UPDATE
    audit.succeeded(org, old=old, action=action)
    return await _org_out(db, org, principal.role.value)


# ============================================================
# MEMBERS
# ============================================================

@router.get("/current/members")
async def list_members(
    include_inactive: bool = Query(default=False),
    principal: Principal = Depends(require_permission("users:read")),
    db: AsyncSession = Depends(get_db_session),
):
    stmt = select(Membership).where(Membership.organization_id == principal.organization_id)
    if not include_inactive:
        stmt = stmt.where(Membership.is_active == True)
    result = await db.execute(stmt.order_by(Membership.name, Membership.email))
    members = [_member_out(m) for m in result.scalars().all()]
    return {"members": members, "total": len(members)}


@router.post("/current/members", response_model=MemberOut, status_code=201)
async def add_member(
    data: MemberAdd,
    principal: Principal = Depends(require_permission("users:create")),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(audit_recorder("Membership")),
):
    """Add a member by email; unknown emails are allow-listed so they can register"""
    email = data.email.lower()
    existing = (await db.execute(
        select(Membership).where(
            Membership.organization_id == principal.organization_id,
            Membership.email == email,
        )
    )).scalar_one_or_none()
    if existing and existing.is_active:
        raise Conflict("המשתמש כבר חבר בארגון", field="email")

    user = (await db.execute(select(User).where(User.email == email))).scalar_one_or_none()
    if existing:
        membership = existing
        membership.role = data.role
        membership.is_active = True
        membership.deactivated_at = None
        membership.deactivated_by = None
        membership.user_id = membership.user_id or (user.id if user else None)
    else:
        membership = Membership(
            organization_id=principal.organization_id,
            user_id=user.id if user else None,
            email=email,
            name=data.name or (user.display_name if user else "") or email.split("@")[0],
            role=data.role,
            is_active=True,
            joined_at=utcnow(),
        )
        db.add(membership)

    allowed = (await db.execute(
        select(AllowedEmail).where(
            AllowedEmail.email == email,
            AllowedEmail.organization_id == principal.organization_id,
        )
    )).scalar_one_or_none()
    if allowed is None:
        db.add(AllowedEmail(email=email, organization_id=principal.organization_id, role=data.role))
    await db.commit()
    await db.refresh(membership)
    await ensure_default_team_link(db, membership)

    audit.succeeded(membership, status_code=201, action=AuditAction.USER_INVITED, entity_name=email)
    return _member_out(membership)


@router.patch("/current/members/{membership_id}/role", response_model=MemberOut)
async def change_member_role(
    membership_id: str,
    data: MemberRoleUpdate,
    principal: Principal = Depends(require_permission("users:manage-roles")),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(audit_recorder("Membership")),
):
    membership = await _get_org_membership(db, principal, membership_id)
    if membership.id == principal.membership_id:
        raise ValidationFailed("לא ניתן לשנות את ההרשאה של עצמך", code="SELF_ROLE_CHANGE")
    old = snapshot(membership)
    membership.role = data.role

    legacy = None
    if membership.user_id:
        legacy = (await db.execute(
            select(OrganizationMember).where(
                OrganizationMember.user_id == membership.user_id,
                OrganizationMember.organization_id == principal.organization_id,
            )
        )).scalar_one_or_none()
    if legacy is not None:
        legacy.role = data.role
    await db.commit()
    await db.refresh(membership)

    audit.succeeded(membership, old=old, action=AuditAction.ROLE_CHANGED, entity_name=membership.email)
    return _member_out(membership)


@router.delete("/current/members/{membership_id}")
async def remove_member(
    membership_id: str,
    principal: Principal = Depends(require_permission("users:delete")),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(audit_recorder("Membership")),
):
    """Deactivate a member (memberships are never hard-deleted)"""
    membership = await _get_org_membership(db, principal, membership_id)
    if membership.id == principal.membership_id:
        raise ValidationFailed("לא ניתן להסיר את עצמך מהארגון", code="SELF_REMOVAL")
    old = snapshot(membership)
    membership.is_active = False
    membership.deactivated_at = utcnow()
    membership.deactivated_by = principal.user_id

    # The invitation would otherwise hand out legacy access again at registration
    await db.execute(
        delete(AllowedEmail).where(
            AllowedEmail.email == membership.email,
            AllowedEmail.organization_id == principal.organization_id,
        )
    )

    # Legacy access would otherwise re-provision the membership on the next request
    if membership.user_id:
        legacy_rows = await db.execute(
            select(OrganizationMember).where(
                OrganizationMember.user_id == membership.user_id,
                OrganizationMember.organization_id == principal.organization_id,
            )
        )
        for legacy in legacy_rows.scalars().all():
            legacy.status = MemberStatus.INACTIVE
    await db.commit()

    audit.succeeded(old=old, action=AuditAction.USER_REMOVED, entity_id=membership.id, entity_name=membership.email)
    return {"status": "deactivated", "id": membership.id}
