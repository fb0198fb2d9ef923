# routers/teams.py — Teams within an organization and their members
from typing import Optional, List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from audit import AuditAction, AuditRecorder, audit_recorder, snapshot
from database import get_db_session
from errors import NotFound, ValidationFailed
from models import Team, TeamMembership, Membership
from permissions import require_permission, require_role
from roles import Role
from tenancy import Principal, DEFAULT_TEAM_NAME, require_organization

router = APIRouter(prefix="/api/v1/teams", tags=["Teams"])


# --- Schemas ---

class TeamOut(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    is_active: bool
    member_count: int = 0
    created_at: Optional[str] = None


class TeamCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None


class TeamUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    is_active: Optional[bool] = None


class TeamMemberAdd(BaseModel):
    membership_id: str
    role_code: Optional[str] = None


def _team_out(team: Team, member_count: int = 0) -> TeamOut:
    return TeamOut(
        id=team.id,
        name=team.name,
        description=team.description,
        is_active=bool(team.is_active),
        member_count=member_count,
        created_at=team.created_at.isoformat() if team.created_at else None,
    )


async def _get_team(db: AsyncSession, principal: Principal, team_id: str) -> Team:
    result = await db.execute(
        select(Team).where(Team.id == team_id, Team.organization_id == principal.organization_id)
    )
    team = result.scalar_one_or_none()
    if not team:
        raise NotFound("צוות לא נמצא")
    return team


# ============================================================
# TEAMS
# ============================================================

@router.get("", response_model=List[TeamOut])
async def list_teams(
    principal: Principal = Depends(require_role(Role.MANAGER)),
    db: AsyncSession = Depends(get_db_session),
):
    counts = (
        select(TeamMembership.team_id, func.count(TeamMembership.id).label("n"))
        .group_by(TeamMembership.team_id)
        .subquery()
    )
    result = await db.execute(
        select(Team, func.coalesce(counts.c.n, 0))
        .outerjoin(counts, counts.c.team_id == Team.id)
        .where(Team.organization_id == principal.organization_id, Team.is_active == True)
        .order_by(Team.name)
    )
    return [_team_out(team, n) for team, n in result.all()]


@router.get("/me")
async def my_teams(
    principal: Principal = Depends(require_organization),
    db: AsyncSession = Depends(get_db_session),
):
    """Teams of the current membership"""
    if not principal.membership_id:
        return []
    result = await db.execute(
        select(TeamMembership, Team)
        .join(Team, Team.id == TeamMembership.team_id)
        .where(
            TeamMembership.membership_id == principal.membership_id,
            Team.organization_id == principal.organization_id,
            Team.is_active == True,
        )
        .order_by(Team.name)
    )
    return [
        {"role_code": link.role_code, "team": _team_out(team).model_dump()}
        for link, team in result.all()
    ]


@router.post("", response_model=TeamOut, status_code=201)
async def create_team(
    data: TeamCreate,
    principal: Principal = Depends(require_permission("team:create")),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(audit_recorder("Team")),
):
    team = Team(
        organization_id=principal.organization_id,
        name=data.name.strip(),
        description=(data.description or "").strip() or None,
        is_active=True,
    )
    db.add(team)
    await db.commit()
    await db.refresh(team)
    audit.succeeded(team, status_code=201)
    return _team_out(team)


@router.get("/{team_id}")
async def get_team(
    team_id: str,
    principal: Principal = Depends(require_role(Role.MANAGER)),
    db: AsyncSession = Depends(get_db_session),
):
    team = await _get_team(db, principal, team_id)
    result = await db.execute(
        select(TeamMembership, Membership)
        .join(Membership, Membership.id == TeamMembership.membership_id)
        .where(TeamMembership.team_id == team.id)
        .order_by(TeamMembership.created_at)
    )
    members = [
        {
            "membership_id": m.id,
            "name": m.name,
            "email": m.email,
            "role": m.role.value if isinstance(m.role, Role) else str(m.role),
            "is_active": bool(m.is_active),
            "role_code": link.role_code,
        }
        for link, m in result.all()
    ]
    return {**_team_out(team, len(members)).model_dump(), "members": members}


@router.put("/{team_id}", response_model=TeamOut)
async def update_team(
    team_id: str,
    data: TeamUpdate,
    principal: Principal = Depends(require_permission("team:update")),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(audit_recorder("Team")),
):
    team = await _get_team(db, principal, team_id)
    old = snapshot(team)
    updates = data.model_dump(exclude_unset=True)
    if updates.get("is_active") is False and team.name == DEFAULT_TEAM_NAME:
        raise ValidationFailed("לא ניתן להשבית את צוות ברירת המחדל", code="DEFAULT_TEAM")
    if "name" in updates and updates["name"] is not None:
        updates["name"] = updates["name"].strip()
    if "description" in updates:
        updates["description"] = (updates["description"] or "").strip() or None
    for key, value in updates.items():
        setattr(team, key, value)
    await db.commit()
    await db.refresh(team)
    audit.succeeded(team, old=old)
    return _team_out(team)


@router.delete("/{team_id}")
async def deactivate_team(
    team_id: str,
    principal: Principal = Depends(require_permission("team:delete")),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(audit_recorder("Team")),
):
    """Soft-deactivate; rows keep their team_id"""
    team = await _get_team(db, principal, team_id)
    if team.name == DEFAULT_TEAM_NAME:
        raise ValidationFailed("לא ניתן להשבית את צוות ברירת המחדל", code="DEFAULT_TEAM")
    old = snapshot(team)
    team.is_active = False
    await db.commit()
    audit.succeeded(old=old, entity_id=team.id)
    return {"status": "deactivated", "id": team.id}


# ============================================================
# TEAM MEMBERS
# ============================================================

@router.post("/{team_id}/members")
async def add_team_member(
    team_id: str,
    data: TeamMemberAdd,
    principal: Principal = Depends(require_role(Role.MANAGER)),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(audit_recorder("TeamMembership")),
):
    team = await _get_team(db, principal, team_id)
    member = (await db.execute(
        select(Membership).where(
            Membership.id == data.membership_id,
            Membership.organization_id == principal.organization_id,
            Membership.is_active == True,
        )
    )).scalar_one_or_none()
    if not member:
        raise ValidationFailed("חבר לא נמצא בארגון", code="INVALID_MEMBERSHIP", field="membership_id")

    link = (await db.execute(
        select(TeamMembership).where(
            TeamMembership.team_id == team.id,
            TeamMembership.membership_id == member.id,
        )
    )).scalar_one_or_none()
    old = snapshot(link)
    if link is None:
        link = TeamMembership(team_id=team.id, membership_id=member.id, role_code=data.role_code)
        db.add(link)
    else:
        link.role_code = data.role_code
    await db.commit()
    await db.refresh(link)

    audit.succeeded(link, old=old, entity_name=f"{team.name}: {member.email}",
                    action=AuditAction.CREATE if old is None else AuditAction.UPDATE)
    return {"id": link.id, "team_id": link.team_id, "membership_id": link.membership_id, "role_code": link.role_code}


@router.delete("/{team_id}/members/{membership_id}")
async def remove_team_member(
    team_id: str,
    membership_id: str,
    principal: Principal = Depends(require_role(Role.MANAGER)),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(audit_recorder("TeamMembership")),
):
    team = await _get_team(db, principal, team_id)
    link = (await db.execute(
        select(TeamMembership).where(
            TeamMembership.team_id == team.id,
            TeamMembership.membership_id == membership_id,
        )
    )).scalar_one_or_none()
    if not link:
        raise NotFound("החבר אינו משויך לצוות")
    old = snapshot(link)
    await db.delete(link)
    await db.commit()
    audit.succeeded(old=old, entity_id=link.id, entity_name=team.name)
    return {"ok": True}
