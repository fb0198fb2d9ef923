# routers/super_admin.py — Platform console: every organization, user and audit row across tenants
import logging
from typing import Dict, Optional, List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import delete, select, func
from sqlalchemy.ext.asyncio import AsyncSession

from audit import AuditRecorder, audit_recorder, run_global_cleanup, snapshot
from auth import CurrentUser, super_admins
from database import get_db_session
from errors import Conflict, NotFound, ValidationFailed
from models import (
    AuditLog, Membership, Organization, Rock, Sprint, Story, SuperAdminEmail, User, utcnow,
)
from permissions import require_platform_admin
from roles import Role
from routers.audit import serialize_log
from tenancy import ensure_default_team_link, get_or_create_default_team

logger = logging.getLogger("rocks.super_admin")

router = APIRouter(prefix="/api/v1/super-admin", tags=["Super Admin"])

MAX_AUDIT_ROWS = 1000


# --- Schemas ---

class PlatformOrgCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    slug: str = Field(..., pattern=r"^[a-z0-9-]{2,50}$")
    logo_url: Optional[str] = None


class PlatformOrgUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    slug: Optional[str] = Field(None, pattern=r"^[a-z0-9-]{2,50}$")
    logo_url: Optional[str] = None
    is_active: Optional[bool] = None


class SuperAdminToggle(BaseModel):
    is_super_admin: bool


class SuperAdminEmailIn(BaseModel):
    email: EmailStr


def _role_value(role) -> str:
    return role.value if isinstance(role, Role) else str(role)


async def _counts(db: AsyncSession, model, *criteria) -> Dict[str, int]:
    stmt = select(model.organization_id, func.count(model.id)).group_by(model.organization_id)
    if criteria:
        stmt = stmt.where(*criteria)
    return {org_id: n for org_id, n in (await db.execute(stmt)).all()}


def _org_out(org: Organization, counts: Optional[Dict[str, int]] = None) -> dict:
    return {
        "id": org.id,
        "name": org.name,
        "slug": org.slug,
        "logo_url": org.logo_url,
        "is_active": bool(org.is_active),
        "created_at": org.created_at.isoformat() if org.created_at else None,
        "counts": counts or {},
    }


async def _get_org(db: AsyncSession, organization_id: str) -> Organization:
    org = await db.get(Organization, organization_id)
    if not org:
        raise NotFound("ארגון לא נמצא")
    return org


async def _ensure_slug_free(db: AsyncSession, slug: str, exclude_id: Optional[str] = None) -> None:
    stmt = select(Organization.id).where(Organization.slug == slug)
    if exclude_id:
        stmt = stmt.where(Organization.id != exclude_id)
    if (await db.execute(stmt)).scalar_one_or_none():
        raise Conflict("כתובת הארגון כבר בשימוש", field="slug")


# ============================================================
# ORGANIZATIONS
# ============================================================

@router.get("/organizations")
async def list_all_organizations(
    user: CurrentUser = Depends(require_platform_admin()),
    db: AsyncSession = Depends(get_db_session),
):
    """Every organization, active or not, with usage counts"""
    members = await _counts(db, Membership, Membership.is_active == True)
    rocks = await _counts(db, Rock)
    sprints = await _counts(db, Sprint)
    stories = await _counts(db, Story)
    result = await db.execute(select(Organization).order_by(Organization.created_at.desc()))
    return [
        _org_out(org, {
            "members": members.get(org.id, 0),
            "rocks": rocks.get(org.id, 0),
            "sprints": sprints.get(org.id, 0),
            "stories": stories.get(org.id, 0),
        })
        for org in result.scalars().all()
    ]


@router.get("/stats")
async def platform_stats(
    user: CurrentUser = Depends(require_platform_admin()),
    db: AsyncSession = Depends(get_db_session),
):
    org_total = (await db.execute(select(func.count(Organization.id)))).scalar() or 0
    org_active = (await db.execute(
        select(func.count(Organization.id)).where(Organization.is_active == True)
    )).scalar() or 0
    users = (await db.execute(select(func.count(User.id)))).scalar() or 0
    rocks = (await db.execute(select(func.count(Rock.id)))).scalar() or 0
    stories = (await db.execute(select(func.count(Story.id)))).scalar() or 0
    return {
        "organizations": {"total": org_total, "active": org_active},
        "users": users,
        "rocks": rocks,
        "stories": stories,
    }


@router.post("/organizations", status_code=201)
async def create_organization(
    data: PlatformOrgCreate,
    user: CurrentUser = Depends(require_platform_admin()),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(audit_recorder("Organization")),
):
    """Create an organization; the operator joins it as ADMIN"""
    await _ensure_slug_free(db, data.slug)
    org = Organization(name=data.name, slug=data.slug, logo_url=data.logo_url or None, settings={}, is_active=True)
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

    logger.info(f"Super-admin {user.id} created organization {org.slug}")
    audit.succeeded(org, status_code=201, organization_id=org.id)
    return _org_out(org, {"members": 1, "rocks": 0, "sprints": 0, "stories": 0})


@router.put("/organizations/{id}")
async def update_organization(
    id: str,
    data: PlatformOrgUpdate,
    user: CurrentUser = Depends(require_platform_admin()),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(audit_recorder("Organization")),
):
    org = await _get_org(db, id)
    old = snapshot(org)
    updates = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None or k == "logo_url"}
    if "slug" in updates and updates["slug"] != org.slug:
        await _ensure_slug_free(db, updates["slug"], exclude_id=org.id)
    for key, value in updates.items():
        setattr(org, key, value)
    await db.commit()
    await db.refresh(org)
    audit.succeeded(org, old=old, organization_id=org.id)
    return _org_out(org)


@router.delete("/organizations/{id}")
async def deactivate_organization(
    id: str,
    user: CurrentUser = Depends(require_platform_admin()),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(audit_recorder("Organization")),
):
    """Soft delete; data is kept and the organization drops out of member listings"""
    org = await _get_org(db, id)
    old = snapshot(org)
    org.is_active = False
    await db.commit()
    logger.warning(f"Super-admin {user.id} deactivated organization {org.slug}")
    audit.succeeded(old=old, entity_id=org.id, organization_id=org.id)
    return {"status": "deactivated", "id": org.id}


# ============================================================
# USERS
# ============================================================

@router.get("/users")
async def list_all_users(
    limit: int = Query(default=200, ge=1, le=1000),
    user: CurrentUser = Depends(require_platform_admin()),
    db: AsyncSession = Depends(get_db_session),
):
    users = (await db.execute(select(User).order_by(User.created_at.desc()).limit(limit))).scalars().all()
    memberships: Dict[str, List[dict]] = {}
    if users:
        rows = await db.execute(
            select(Membership, Organization)
            .join(Organization, Organization.id == Membership.organization_id)
            .where(Membership.user_id.in_([u.id for u in users]), Membership.is_active == True)
            .order_by(Organization.name)
        )
        for m, org in rows.all():
            memberships.setdefault(m.user_id, []).append({
                "organization_id": org.id,
                "name": org.name,
                "slug": org.slug,
                "role": _role_value(m.role),
            })
    return [
        {
            "id": u.id,
            "email": u.email,
            "display_name": u.display_name,
            "is_active": bool(u.is_active),
            "is_super_admin": bool(u.is_super_admin),
            "last_login_at": u.last_login_at.isoformat() if u.last_login_at else None,
            "organizations": memberships.get(u.id, []),
        }
        for u in users
    ]


@router.put("/users/{id}/super-admin")
async def set_super_admin(
    id: str,
    data: SuperAdminToggle,
    user: CurrentUser = Depends(require_platform_admin()),
    db: AsyncSession = Depends(get_db_session),
):
    """Grant or revoke the platform flag. Revoking also drops the stored email so login does not re-grant it."""
    if id == user.id and not data.is_super_admin:
        raise ValidationFailed("לא ניתן להסיר את הרשאת מנהל-העל של עצמך", code="SELF_SUPER_ADMIN_CHANGE")
    target = await db.get(User, id)
    if not target:
        raise NotFound("משתמש לא נמצא")
    target.is_super_admin = data.is_super_admin
    if not data.is_super_admin:
        await db.execute(delete(SuperAdminEmail).where(SuperAdminEmail.email == target.email.lower()))
    await db.commit()
    super_admins.invalidate()
    logger.warning(f"Super-admin {user.id} set is_super_admin={data.is_super_admin} on user {target.id}")
    return {"id": target.id, "email": target.email, "is_super_admin": bool(target.is_super_admin)}


# ============================================================
# SUPER-ADMIN EMAILS
# ============================================================

@router.get("/emails")
async def list_super_admin_emails(
    user: CurrentUser = Depends(require_platform_admin()),
    db: AsyncSession = Depends(get_db_session),
):
    """Stored list plus the deployment bootstrap list, which cannot be edited here"""
    result = await db.execute(select(SuperAdminEmail).order_by(SuperAdminEmail.email))
    return {
        "emails": [
            {"id": e.id, "email": e.email, "created_at": e.created_at.isoformat() if e.created_at else None}
            for e in result.scalars().all()
        ],
        "bootstrap": sorted(super_admins.bootstrap),
    }


@router.post("/emails", status_code=201)
async def add_super_admin_email(
    data: SuperAdminEmailIn,
    user: CurrentUser = Depends(require_platform_admin()),
    db: AsyncSession = Depends(get_db_session),
):
    email = data.email.lower()
    existing = (await db.execute(
        select(SuperAdminEmail.id).where(SuperAdminEmail.email == email)
    )).scalar_one_or_none()
    if existing:
        raise Conflict("כתובת זו כבר מוגדרת כמנהל-על", field="email")
    entry = SuperAdminEmail(email=email)
    db.add(entry)
    await db.commit()
    await db.refresh(entry)
    super_admins.invalidate()
    logger.warning(f"Super-admin {user.id} added super-admin email {email}")
    return {"id": entry.id, "email": entry.email}


@router.delete("/emails/{id}")
async def remove_super_admin_email(
    id: str,
    user: CurrentUser = Depends(require_platform_admin()),
    db: AsyncSession = Depends(get_db_session),
):
    """Stops future grants at login; accounts already flagged keep the flag until revoked"""
    entry = await db.get(SuperAdminEmail, id)
    if not entry:
        raise NotFound("הכתובת לא נמצאה")
    await db.delete(entry)
    await db.commit()
    super_admins.invalidate()
    logger.warning(f"Super-admin {user.id} removed super-admin email {entry.email}")
    return {"ok": True}


# ============================================================
# AUDIT
# ============================================================

@router.get("/audit-log")
async def platform_audit_log(
    organization_id: Optional[str] = Query(None),
    limit: int = Query(default=100, ge=1, le=MAX_AUDIT_ROWS),
    user: CurrentUser = Depends(require_platform_admin()),
    db: AsyncSession = Depends(get_db_session),
):
    """Newest rows across every organization, optionally for one"""
    stmt = select(AuditLog)
    if organization_id:
        stmt = stmt.where(AuditLog.organization_id == organization_id)
    result = await db.execute(stmt.order_by(AuditLog.created_at.desc(), AuditLog.id).limit(limit))
    return [serialize_log(log) for log in result.scalars().all()]


@router.post("/retention/cleanup")
async def cleanup_all_organizations(
    user: CurrentUser = Depends(require_platform_admin()),
    db: AsyncSession = Depends(get_db_session),
):
    """Apply every organization's retention window in one sweep"""
    results = await run_global_cleanup(db)
    deleted = sum(results.values())
    logger.info(f"Super-admin {user.id} ran global retention sweep: {deleted} rows")
    return {"organizations": len(results), "deleted": deleted, "by_organization": results}
