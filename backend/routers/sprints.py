# routers/sprints.py — Sprints, story stats and the organization's current sprint
from datetime import date
from typing import Optional, List, Dict

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, model_validator
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from audit import AuditAction, AuditRecorder, audit_recorder, snapshot
from database import get_db_session
from errors import Conflict, ValidationFailed
from models import Organization, Rock, Sprint, SprintStatus, Story, WorkStatus
from permissions import require_permission
from team_scope import apply_team_scope, get_scoped_or_404, resolve_team_for_write
from tenancy import Principal

router = APIRouter(prefix="/api/v1/sprints", tags=["Sprints"])

NOT_FOUND_MESSAGE = "ספרינט לא נמצא"
CURRENT_SPRINT_SETTING = "current_sprint_id"


# --- Schemas ---

class SprintCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=30)
    name: str = Field(..., min_length=1, max_length=200)
    goal: Optional[str] = None
    start_date: date
    end_date: date
    main_rock_id: Optional[str] = None
    team_id: Optional[str] = None

    @model_validator(mode="after")
    def check_dates(self):
        if self.end_date < self.start_date:
            raise ValueError("תאריך הסיום חייב להיות אחרי תאריך ההתחלה")
        return self


class SprintUpdate(BaseModel):
    code: Optional[str] = Field(None, min_length=1, max_length=30)
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    goal: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    status: Optional[SprintStatus] = None
    main_rock_id: Optional[str] = None
    team_id: Optional[str] = None


class SprintStats(BaseModel):
    total: int = 0
    todo: int = 0
    in_progress: int = 0
    blocked: int = 0
    done: int = 0


class SprintOut(BaseModel):
    id: str
    code: str
    name: str
    goal: Optional[str] = None
    start_date: date
    end_date: date
    status: str
    main_rock_id: Optional[str] = None
    team_id: Optional[str] = None
    is_current: bool = False
    stats: SprintStats = Field(default_factory=SprintStats)


def _sprint_out(sprint: Sprint, stats: Optional[SprintStats] = None, current_id: Optional[str] = None) -> SprintOut:
    return SprintOut(
        id=sprint.id,
        code=sprint.code,
        name=sprint.name,
        goal=sprint.goal,
        start_date=sprint.start_date,
        end_date=sprint.end_date,
        status=sprint.status.value if isinstance(sprint.status, SprintStatus) else str(sprint.status),
        main_rock_id=sprint.main_rock_id,
        team_id=sprint.team_id,
        is_current=bool(current_id) and current_id == sprint.id,
        stats=stats or SprintStats(),
    )


async def _sprint_stats(db: AsyncSession, organization_id: str, sprint_ids: List[str]) -> Dict[str, SprintStats]:
    if not sprint_ids:
        return {}
    result = await db.execute(
        select(Story.sprint_id, Story.status, func.count(Story.id))
        .where(Story.organization_id == organization_id, Story.sprint_id.in_(sprint_ids))
        .group_by(Story.sprint_id, Story.status)
    )
    stats: Dict[str, SprintStats] = {}
    for sprint_id, status, n in result.all():
        s = stats.setdefault(sprint_id, SprintStats())
        s.total += n
        if status == WorkStatus.TODO:
            s.todo += n
        elif status == WorkStatus.IN_PROGRESS:
            s.in_progress += n
        elif status == WorkStatus.BLOCKED:
            s.blocked += n
        elif status == WorkStatus.DONE:
            s.done += n
    return stats


async def _current_pointer(db: AsyncSession, organization_id: str) -> Optional[str]:
    org = (await db.execute(select(Organization).where(Organization.id == organization_id))).scalar_one_or_none()
    return (org.settings or {}).get(CURRENT_SPRINT_SETTING) if org else None


async def _ensure_code_free(db: AsyncSession, organization_id: str, code: str, exclude_id: Optional[str] = None):
    stmt = select(Sprint.id).where(Sprint.organization_id == organization_id, Sprint.code == code)
    if exclude_id:
        stmt = stmt.where(Sprint.id != exclude_id)
    if (await db.execute(stmt)).scalar_one_or_none():
        raise Conflict(f"ספרינט עם הקוד {code} כבר קיים", field="code")


async def _validate_rock(db: AsyncSession, organization_id: str, rock_id: Optional[str]):
    if not rock_id:
        return None
    result = await db.execute(select(Rock.id).where(Rock.id == rock_id, Rock.organization_id == organization_id))
    if result.scalar_one_or_none() is None:
        raise ValidationFailed("הסלע שנבחר אינו קיים", code="INVALID_ROCK", field="main_rock_id")
    return rock_id


# ============================================================
# SPRINTS
# ============================================================

@router.get("", response_model=List[SprintOut])
async def list_sprints(
    status: Optional[SprintStatus] = Query(None),
    principal: Principal = Depends(require_permission("sprints:read")),
    db: AsyncSession = Depends(get_db_session),
):
    stmt = select(Sprint).where(Sprint.organization_id == principal.organization_id)
    if status is not None:
        stmt = stmt.where(Sprint.status == status)
    stmt = apply_team_scope(stmt, principal, Sprint).order_by(Sprint.start_date.desc())
    sprints = (await db.execute(stmt)).scalars().all()
    stats = await _sprint_stats(db, principal.organization_id, [s.id for s in sprints])
    current_id = await _current_pointer(db, principal.organization_id)
    return [_sprint_out(s, stats.get(s.id), current_id) for s in sprints]


@router.get("/current")
async def get_current_sprint(
    principal: Principal = Depends(require_permission("sprints:read")),
    db: AsyncSession = Depends(get_db_session),
):
    """Pinned sprint, else the one covering today, else the next upcoming one; null when none"""
    base = apply_team_scope(
        select(Sprint).where(Sprint.organization_id == principal.organization_id), principal, Sprint,
    )
    current_id = await _current_pointer(db, principal.organization_id)
    sprint = None
    if current_id:
        sprint = (await db.execute(base.where(Sprint.id == current_id))).scalar_one_or_none()

    today = date.today()
    if sprint is None:
        sprint = (await db.execute(
            base.where(Sprint.start_date <= today, Sprint.end_date >= today)
            .order_by(Sprint.start_date.desc())
            .limit(1)
        )).scalar_one_or_none()
    if sprint is None:
        sprint = (await db.execute(
            base.where(Sprint.start_date > today).order_by(Sprint.start_date).limit(1)
        )).scalar_one_or_none()
    if sprint is None:
        return None

    stats = await _sprint_stats(db, principal.organization_id, [sprint.id])
    return _sprint_out(sprint, stats.get(sprint.id), current_id)


@router.get("/{id}", response_model=SprintOut)
async def get_sprint(
    id: str,
    principal: Principal = Depends(require_permission("sprints:read")),
    db: AsyncSession = Depends(get_db_session),
):
    sprint = await get_scoped_or_404(db, Sprint, principal, id, message=NOT_FOUND_MESSAGE)
    stats = await _sprint_stats(db, principal.organization_id, [sprint.id])
    return _sprint_out(sprint, stats.get(sprint.id), await _current_pointer(db, principal.organization_id))


@router.post("", response_model=SprintOut, status_code=201)
async def create_sprint(
    data: SprintCreate,
    principal: Principal = Depends(require_permission("sprints:create")),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(audit_recorder("Sprint")),
):
    code = data.code.strip()
    await _ensure_code_free(db, principal.organization_id, code)
    sprint = Sprint(
        organization_id=principal.organization_id,
        team_id=await resolve_team_for_write(db, principal, data.team_id),
        main_rock_id=await _validate_rock(db, principal.organization_id, data.main_rock_id),
        code=code,
        name=data.name.strip(),
        goal=data.goal,
        start_date=data.start_date,
        end_date=data.end_date,
        status=SprintStatus.PLANNED,
    )
    db.add(sprint)
    await db.commit()
    await db.refresh(sprint)
    audit.succeeded(sprint, status_code=201)
    return _sprint_out(sprint)


@router.put("/{id}", response_model=SprintOut)
async def update_sprint(
    id: str,
    data: SprintUpdate,
    principal: Principal = Depends(require_permission("sprints:update")),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(audit_recorder("Sprint")),
):
    sprint = await get_scoped_or_404(db, Sprint, principal, id, message=NOT_FOUND_MESSAGE)
    old = snapshot(sprint)
    updates = data.model_dump(exclude_unset=True)
    if updates.get("code"):
        updates["code"] = updates["code"].strip()
        await _ensure_code_free(db, principal.organization_id, updates["code"], exclude_id=sprint.id)
    if "main_rock_id" in updates:
        updates["main_rock_id"] = await _validate_rock(db, principal.organization_id, updates["main_rock_id"])
    if "team_id" in updates:
        updates["team_id"] = await resolve_team_for_write(db, principal, updates["team_id"], creating=False)

    start = updates.get("start_date") or sprint.start_date
    end = updates.get("end_date") or sprint.end_date
    if end < start:
        raise ValidationFailed("תאריך הסיום חייב להיות אחרי תאריך ההתחלה", field="end_date")

    for key, value in updates.items():
        if value is None and key in ("code", "name", "start_date", "end_date", "status"):
            continue
        setattr(sprint, key, value)
    await db.commit()
    await db.refresh(sprint)
    audit.succeeded(sprint, old=old)
    stats = await _sprint_stats(db, principal.organization_id, [sprint.id])
    return _sprint_out(sprint, stats.get(sprint.id), await _current_pointer(db, principal.organization_id))


@router.post("/{id}/activate", response_model=SprintOut)
async def activate_sprint(
    id: str,
    principal: Principal = Depends(require_permission("sprints:update")),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(audit_recorder("Sprint")),
):
    """Pin this sprint as the organization's current sprint"""
    sprint = await get_scoped_or_404(db, Sprint, principal, id, message=NOT_FOUND_MESSAGE)
    old = snapshot(sprint)
    org = (await db.execute(
        select(Organization).where(Organization.id == principal.organization_id)
    )).scalar_one()
    # Reassign so the JSON column registers the change
    org.settings = {**(org.settings or {}), CURRENT_SPRINT_SETTING: sprint.id}
    sprint.status = SprintStatus.ACTIVE
    await db.commit()
    await db.refresh(sprint)

    audit.succeeded(sprint, old=old, action=AuditAction.UPDATE, details={"activated": True})
    stats = await _sprint_stats(db, principal.organization_id, [sprint.id])
    return _sprint_out(sprint, stats.get(sprint.id), sprint.id)


@router.delete("/{id}")
async def delete_sprint(
    id: str,
    principal: Principal = Depends(require_permission("sprints:delete")),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(audit_recorder("Sprint")),
):
    sprint = await get_scoped_or_404(db, Sprint, principal, id, message=NOT_FOUND_MESSAGE)
    old = snapshot(sprint)
    for story in (await db.execute(select(Story).where(Story.sprint_id == sprint.id))).scalars().all():
        story.sprint_id = None
    org = (await db.execute(
        select(Organization).where(Organization.id == principal.organization_id)
    )).scalar_one()
    if (org.settings or {}).get(CURRENT_SPRINT_SETTING) == sprint.id:
        org.settings = {k: v for k, v in org.settings.items() if k != CURRENT_SPRINT_SETTING}
    await db.delete(sprint)
    await db.commit()
    audit.succeeded(old=old, entity_id=sprint.id)
    return {"status": "deleted", "id": sprint.id}
