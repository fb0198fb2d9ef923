# routers/objectives.py — Annual objectives grouping the quarter's Rocks
from typing import Optional, List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from audit import AuditRecorder, audit_recorder, snapshot
from database import get_db_session
from errors import Conflict
from models import Objective, Rock
from permissions import require_permission
from team_scope import apply_team_scope, get_scoped_or_404, resolve_team_for_write
from tenancy import Principal, validate_membership_id

router = APIRouter(prefix="/api/v1/objectives", tags=["Objectives"])

NOT_FOUND_MESSAGE = "יעד לא נמצא"


class ObjectiveCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=30)
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    year: int = Field(..., ge=2000, le=2100)
    owner_id: Optional[str] = None
    team_id: Optional[str] = None


class ObjectiveUpdate(BaseModel):
    code: Optional[str] = Field(None, min_length=1, max_length=30)
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    year: Optional[int] = Field(None, ge=2000, le=2100)
    owner_id: Optional[str] = None
    team_id: Optional[str] = None


class ObjectiveOut(BaseModel):
    id: str
    code: str
    name: str
    description: Optional[str] = None
    year: int
    owner_id: Optional[str] = None
    team_id: Optional[str] = None
    rock_count: int = 0


def _objective_out(objective: Objective, rock_count: int = 0) -> ObjectiveOut:
    return ObjectiveOut(
        id=objective.id,
        code=objective.code,
        name=objective.name,
        description=objective.description,
        year=objective.year,
        owner_id=objective.owner_id,
        team_id=objective.team_id,
        rock_count=rock_count,
    )


async def _ensure_code_free(db: AsyncSession, organization_id: str, code: str, exclude_id: Optional[str] = None):
    stmt = select(Objective.id).where(Objective.organization_id == organization_id, Objective.code == code)
    if exclude_id:
        stmt = stmt.where(Objective.id != exclude_id)
    if (await db.execute(stmt)).scalar_one_or_none():
        raise Conflict(f"יעד עם הקוד {code} כבר קיים", field="code")


@router.get("", response_model=List[ObjectiveOut])
async def list_objectives(
    year: Optional[int] = Query(None),
    principal: Principal = Depends(require_permission("objectives:read")),
    db: AsyncSession = Depends(get_db_session),
):
    counts = (
        select(Rock.objective_id, func.count(Rock.id).label("n"))
        .where(Rock.organization_id == principal.organization_id)
        .group_by(Rock.objective_id)
        .subquery()
    )
    stmt = (
        select(Objective, func.coalesce(counts.c.n, 0))
        .outerjoin(counts, counts.c.objective_id == Objective.id)
        .where(Objective.organization_id == principal.organization_id)
    )
    if year is not None:
        stmt = stmt.where(Objective.year == year)
    stmt = apply_team_scope(stmt, principal, Objective).order_by(Objective.year.desc(), Objective.code)
    result = await db.execute(stmt)
    return [_objective_out(o, n) for o, n in result.all()]


@router.get("/{id}", response_model=ObjectiveOut)
async def get_objective(
    id: str,
    principal: Principal = Depends(require_permission("objectives:read")),
    db: AsyncSession = Depends(get_db_session),
):
    objective = await get_scoped_or_404(db, Objective, principal, id, message=NOT_FOUND_MESSAGE)
    n = (await db.execute(select(func.count(Rock.id)).where(Rock.objective_id == objective.id))).scalar() or 0
    return _objective_out(objective, n)


@router.post("", response_model=ObjectiveOut, status_code=201)
async def create_objective(
    data: ObjectiveCreate,
    principal: Principal = Depends(require_permission("objectives:create")),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(audit_recorder("Objective")),
):
    code = data.code.strip()
    await _ensure_code_free(db, principal.organization_id, code)
    objective = Objective(
        organization_id=principal.organization_id,
        team_id=await resolve_team_for_write(db, principal, data.team_id),
        owner_id=await validate_membership_id(db, principal.organization_id, data.owner_id),
        code=code,
        name=data.name.strip(),
        description=data.description,
        year=data.year,
    )
    db.add(objective)
    await db.commit()
    await db.refresh(objective)
    audit.succeeded(objective, status_code=201)
    return _objective_out(objective)


@router.put("/{id}", response_model=ObjectiveOut)
async def update_objective(
    id: str,
    data: ObjectiveUpdate,
    principal: Principal = Depends(require_permission("objectives:update")),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(audit_recorder("Objective")),
):
    objective = await get_scoped_or_404(db, Objective, principal, id, message=NOT_FOUND_MESSAGE)
    old = snapshot(objective)
    updates = data.model_dump(exclude_unset=True)
    if updates.get("code"):
        updates["code"] = updates["code"].strip()
        await _ensure_code_free(db, principal.organization_id, updates["code"], exclude_id=objective.id)
    if "owner_id" in updates:
        updates["owner_id"] = await validate_membership_id(db, principal.organization_id, updates["owner_id"])
    if "team_id" in updates:
        updates["team_id"] = await resolve_team_for_write(db, principal, updates["team_id"], creating=False)
    for key, value in updates.items():
        if value is None and key in ("code", "name", "year"):
            continue
        setattr(objective, key, value)
    await db.commit()
    await db.refresh(objective)
    audit.succeeded(objective, old=old)
    return _objective_out(objective)


@router.delete("/{id}")
async def delete_objective(
    id: str,
    principal: Principal = Depends(require_permission("objectives:delete")),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(audit_recorder("Objective")),
):
    objective = await get_scoped_or_404(db, Objective, principal, id, message=NOT_FOUND_MESSAGE)
    old = snapshot(objective)
    for rock in (await db.execute(select(Rock).where(Rock.objective_id == objective.id))).scalars().all():
        rock.objective_id = None
    await db.delete(objective)
    await db.commit()
    audit.succeeded(old=old, entity_id=objective.id)
    return {"status": "deleted", "id": objective.id}
