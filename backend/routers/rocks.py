# routers/rocks.py — Quarterly Rocks (key results) with story-based progress
from typing import Optional, List, Dict, Tuple

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import select, func, case
from sqlalchemy.ext.asyncio import AsyncSession

from audit import AuditRecorder, audit_recorder, snapshot
from database import get_db_session
from errors import Conflict, ValidationFailed
from models import Rock, RockStatus, Objective, Sprint, Story, WorkStatus
from permissions import require_permission
from team_scope import apply_team_scope, get_scoped_or_404, resolve_team_for_write
from tenancy import Principal, validate_membership_id

router = APIRouter(prefix="/api/v1/rocks", tags=["Rocks"])

NOT_FOUND_MESSAGE = "סלע לא נמצא"


# --- Schemas ---

class RockCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=30)
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    year: int = Field(..., ge=2000, le=2100)
    quarter: int = Field(..., ge=1, le=4)
    status: RockStatus = RockStatus.PLANNED
    objective_id: Optional[str] = None
    owner_id: Optional[str] = None
    team_id: Optional[str] = None


class RockUpdate(BaseModel):
    code: Optional[str] = Field(None, min_length=1, max_length=30)
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    year: Optional[int] = Field(None, ge=2000, le=2100)
    quarter: Optional[int] = Field(None, ge=1, le=4)
    status: Optional[RockStatus] = None
    objective_id: Optional[str] = None
    owner_id: Optional[str] = None
    team_id: Optional[str] = None


class RockOut(BaseModel):
    id: str
    code: str
    name: str
    description: Optional[str] = None
    year: int
    quarter: int
    status: str
    objective_id: Optional[str] = None
    owner_id: Optional[str] = None
    team_id: Optional[str] = None
    story_count: int = 0
    done_count: int = 0
    progress: int = 0


def _rock_out(rock: Rock, counts: Tuple[int, int] = (0, 0)) -> RockOut:
    total, done = counts
    return RockOut(
        id=rock.id,
        code=rock.code,
        name=rock.name,
        description=rock.description,
        year=rock.year,
        quarter=rock.quarter,
        status=rock.status.value if isinstance(rock.status, RockStatus) else str(rock.status),
        objective_id=rock.objective_id,
        owner_id=rock.owner_id,
        team_id=rock.team_id,
        story_count=total,
        done_count=done,
        progress=round(done * 100 / total) if total else 0,
    )


async def _story_counts(db: AsyncSession, organization_id: str, rock_ids: List[str]) -> Dict[str, Tuple[int, int]]:
    if not rock_ids:
        return {}
    result = await db.execute(
        select(
            Story.rock_id,
            func.count(Story.id),
            func.sum(case((Story.status == WorkStatus.DONE, 1), else_=0)),
        )
        .where(Story.organization_id == organization_id, Story.rock_id.in_(rock_ids))
        .group_by(Story.rock_id)
    )
    return {rock_id: (total, int(done or 0)) for rock_id, total, done in result.all()}


async def _ensure_code_free(db: AsyncSession, organization_id: str, code: str, exclude_id: Optional[str] = None):
    stmt = select(Rock.id).where(Rock.organization_id == organization_id, Rock.code == code)
    if exclude_id:
        stmt = stmt.where(Rock.id != exclude_id)
    if (await db.execute(stmt)).scalar_one_or_none():
        raise Conflict(f"סלע עם הקוד {code} כבר קיים", field="code")


async def _validate_objective(db: AsyncSession, organization_id: str, objective_id: Optional[str]):
    if not objective_id:
        return None
    result = await db.execute(
        select(Objective.id).where(Objective.id == objective_id, Objective.organization_id == organization_id)
    )
    if result.scalar_one_or_none() is None:
        raise ValidationFailed("היעד שנבחר אינו קיים", code="INVALID_OBJECTIVE", field="objective_id")
    return objective_id


# ============================================================
# ROCKS
# ============================================================

@router.get("", response_model=List[RockOut])
async def list_rocks(
    year: Optional[int] = Query(None),
    quarter: Optional[int] = Query(None, ge=1, le=4),
    status: Optional[RockStatus] = Query(None),
    objective_id: Optional[str] = Query(None),
    principal: Principal = Depends(require_permission("rocks:read")),
    db: AsyncSession = Depends(get_db_session),
):
    stmt = select(Rock).where(Rock.organization_id == principal.organization_id)
    if year is not None:
        stmt = stmt.where(Rock.year == year)
    if quarter is not None:
        stmt = stmt.where(Rock.quarter == quarter)
    if status is not None:
        stmt = stmt.where(Rock.status == status)
    if objective_id:
        stmt = stmt.where(Rock.objective_id == objective_id)
    stmt = apply_team_scope(stmt, principal, Rock).order_by(Rock.year.desc(), Rock.quarter.desc(), Rock.code)

    rocks = (await db.execute(stmt)).scalars().all()
    counts = await _story_counts(db, principal.organization_id, [r.id for r in rocks])
    return [_rock_out(r, counts.get(r.id, (0, 0))) for r in rocks]


@router.get("/{id}", response_model=RockOut)
async def get_rock(
    id: str,
    principal: Principal = Depends(require_permission("rocks:read")),
    db: AsyncSession = Depends(get_db_session),
):
    rock = await get_scoped_or_404(db, Rock, principal, id, message=NOT_FOUND_MESSAGE)
    counts = await _story_counts(db, principal.organization_id, [rock.id])
    return _rock_out(rock, counts.get(rock.id, (0, 0)))


@router.post("", response_model=RockOut, status_code=201)
async def create_rock(
    data: RockCreate,
    principal: Principal = Depends(require_permission("rocks:create")),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(audit_recorder("Rock")),
):
    code = data.code.strip()
    await _ensure_code_free(db, principal.organization_id, code)
    rock = Rock(
        organization_id=principal.organization_id,
        team_id=await resolve_team_for_write(db, principal, data.team_id),
        objective_id=await _validate_objective(db, principal.organization_id, data.objective_id),
        owner_id=await validate_membership_id(db, principal.organization_id, data.owner_id),
        code=code,
        name=data.name.strip(),
        description=data.description,
        year=data.year,
        quarter=data.quarter,
        status=data.status,
    )
    db.add(rock)
    await db.commit()
    await db.refresh(rock)
    audit.succeeded(rock, status_code=201)
    return _rock_out(rock)


@router.put("/{id}", response_model=RockOut)
async def update_rock(
    id: str,
    data: RockUpdate,
    principal: Principal = Depends(require_permission("rocks:update")),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(audit_recorder("Rock")),
):
    rock = await get_scoped_or_404(db, Rock, principal, id, message=NOT_FOUND_MESSAGE)
    old = snapshot(rock)
    updates = data.model_dump(exclude_unset=True)

    if updates.get("code"):
        updates["code"] = updates["code"].strip()
        await _ensure_code_free(db, principal.organization_id, updates["code"], exclude_id=rock.id)
    if "objective_id" in updates:
        updates["objective_id"] = await _validate_objective(db, principal.organization_id, updates["objective_id"])
    if "owner_id" in updates:
        updates["owner_id"] = await validate_membership_id(db, principal.organization_id, updates["owner_id"])
    if "team_id" in updates:
        updates["team_id"] = await resolve_team_for_write(db, principal, updates["team_id"], creating=False)

    for key, value in updates.items():
        if value is None and key in ("code", "name", "year", "quarter", "status"):
            continue
        setattr(rock, key, value)
    await db.commit()
    await db.refresh(rock)

    audit.succeeded(rock, old=old)
    counts = await _story_counts(db, principal.organization_id, [rock.id])
    return _rock_out(rock, counts.get(rock.id, (0, 0)))


@router.delete("/{id}")
async def delete_rock(
    id: str,
    principal: Principal = Depends(require_permission("rocks:delete")),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(audit_recorder("Rock")),
):
    rock = await get_scoped_or_404(db, Rock, principal, id, message=NOT_FOUND_MESSAGE)
    old = snapshot(rock)
    # Stories and sprints outlive their rock
    for story in (await db.execute(select(Story).where(Story.rock_id == rock.id))).scalars().all():
        story.rock_id = None
    for sprint in (await db.execute(select(Sprint).where(Sprint.main_rock_id == rock.id))).scalars().all():
        sprint.main_rock_id = None
    await db.delete(rock)
    await db.commit()
    audit.succeeded(old=old, entity_id=rock.id)
    return {"status": "deleted", "id": rock.id}
