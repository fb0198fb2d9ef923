# routers/stories.py — Sprint stories with owner-scoped editing for members
from typing import Optional, List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from audit import AuditRecorder, audit_recorder, snapshot
from database import get_db_session
from errors import ValidationFailed
from models import Rock, Sprint, Story, Task, WorkStatus
from permissions import AccessGrant, require_ownership_or, require_permission
from team_scope import apply_team_scope, get_scoped_or_404, resolve_team_for_write
from tenancy import Principal, validate_membership_id

router = APIRouter(prefix="/api/v1/stories", tags=["Stories"])

NOT_FOUND_MESSAGE = "סיפור לא נמצא"


def clamp_progress(value: int) -> int:
    return max(0, min(100, int(value)))


# --- Schemas ---

class StoryCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=300)
    description: Optional[str] = None
    sprint_id: str = Field(..., min_length=1)
    rock_id: Optional[str] = None
    owner_id: Optional[str] = None
    status: WorkStatus = WorkStatus.TODO
    progress: int = 0
    is_blocked: bool = False
    team_id: Optional[str] = None

    @field_validator("progress")
    @classmethod
    def clamp(cls, v: int) -> int:
        return clamp_progress(v)


class StoryUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=300)
    description: Optional[str] = None
    sprint_id: Optional[str] = None
    rock_id: Optional[str] = None
    owner_id: Optional[str] = None
    status: Optional[WorkStatus] = None
    progress: Optional[int] = None
    is_blocked: Optional[bool] = None
    team_id: Optional[str] = None

    @field_validator("progress")
    @classmethod
    def clamp(cls, v: Optional[int]) -> Optional[int]:
        return None if v is None else clamp_progress(v)


class ProgressUpdate(BaseModel):
    progress: Optional[int] = None
    is_blocked: Optional[bool] = None
    status: Optional[WorkStatus] = None

    @field_validator("progress")
    @classmethod
    def clamp(cls, v: Optional[int]) -> Optional[int]:
        return None if v is None else clamp_progress(v)


class StoryOut(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    sprint_id: Optional[str] = None
    rock_id: Optional[str] = None
    owner_id: Optional[str] = None
    team_id: Optional[str] = None
    status: str
    progress: int
    is_blocked: bool
    created_at: Optional[str] = None


def _story_out(story: Story) -> StoryOut:
    return StoryOut(
        id=story.id,
        title=story.title,
        description=story.description,
        sprint_id=story.sprint_id,
        rock_id=story.rock_id,
        owner_id=story.owner_id,
        team_id=story.team_id,
        status=story.status.value if isinstance(story.status, WorkStatus) else str(story.status),
        progress=story.progress or 0,
        is_blocked=bool(story.is_blocked),
        created_at=story.created_at.isoformat() if story.created_at else None,
    )


async def _validate_parent(db: AsyncSession, model, organization_id: str, entity_id: Optional[str], field_name: str):
    if not entity_id:
        return None
    result = await db.execute(
        select(model.id).where(model.id == entity_id, model.organization_id == organization_id)
    )
    if result.scalar_one_or_none() is None:
        raise ValidationFailed(f"{field_name} אינו קיים בארגון", code="INVALID_REFERENCE", field=field_name)
    return entity_id


# ============================================================
# STORIES
# ============================================================

@router.get("", response_model=List[StoryOut])
async def list_stories(
    sprint_id: Optional[str] = Query(None),
    rock_id: Optional[str] = Query(None),
    owner_id: Optional[str] = Query(None),
    is_blocked: Optional[bool] = Query(None),
    status: Optional[WorkStatus] = Query(None),
    principal: Principal = Depends(require_permission("stories:read")),
    db: AsyncSession = Depends(get_db_session),
):
    stmt = select(Story).where(Story.organization_id == principal.organization_id)
    if sprint_id:
        stmt = stmt.where(Story.sprint_id == sprint_id)
    if rock_id:
        stmt = stmt.where(Story.rock_id == rock_id)
    if owner_id:
        stmt = stmt.where(Story.owner_id == owner_id)
    if is_blocked is not None:
        stmt = stmt.where(Story.is_blocked == is_blocked)
    if status is not None:
        stmt = stmt.where(Story.status == status)
    stmt = apply_team_scope(stmt, principal, Story).order_by(Story.created_at.desc())
    stories = (await db.execute(stmt)).scalars().all()
    return [_story_out(s) for s in stories]


@router.get("/{id}", response_model=StoryOut)
async def get_story(
    id: str,
    principal: Principal = Depends(require_permission("stories:read")),
    db: AsyncSession = Depends(get_db_session),
):
    story = await get_scoped_or_404(db, Story, principal, id, message=NOT_FOUND_MESSAGE)
    return _story_out(story)


@router.post("", response_model=StoryOut, status_code=201)
async def create_story(
    data: StoryCreate,
    principal: Principal = Depends(require_permission("stories:create")),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(audit_recorder("Story")),
):
    org_id = principal.organization_id
    story = Story(
        organization_id=org_id,
        team_id=await resolve_team_for_write(db, principal, data.team_id),
        sprint_id=await _validate_parent(db, Sprint, org_id, data.sprint_id, "sprint_id"),
        rock_id=await _validate_parent(db, Rock, org_id, data.rock_id, "rock_id"),
        owner_id=await validate_membership_id(db, org_id, data.owner_id or principal.membership_id),
        title=data.title.strip(),
        description=data.description,
        status=data.status,
        progress=data.progress,
        is_blocked=data.is_blocked,
    )
    db.add(story)
    await db.commit()
    await db.refresh(story)
    audit.succeeded(story, status_code=201)
    return _story_out(story)


@router.put("/{id}", response_model=StoryOut)
async def update_story(
    id: str,
    data: StoryUpdate,
    grant: AccessGrant = Depends(require_ownership_or("stories:update")),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(audit_recorder("Story")),
):
    principal = grant.principal
    story = await get_scoped_or_404(db, Story, principal, id, message=NOT_FOUND_MESSAGE)
    grant.ensure_owner(story.owner_id)

    old = snapshot(story)
    updates = data.model_dump(exclude_unset=True)
    org_id = principal.organization_id
    if "sprint_id" in updates:
        if not updates["sprint_id"]:
            raise ValidationFailed("ספרינט הוא שדה חובה", field="sprint_id")
        await _validate_parent(db, Sprint, org_id, updates["sprint_id"], "sprint_id")
    if "rock_id" in updates:
        updates["rock_id"] = await _validate_parent(db, Rock, org_id, updates["rock_id"], "rock_id")
    if "owner_id" in updates:
        if not updates["owner_id"]:
            raise ValidationFailed("אחראי הוא שדה חובה", field="owner_id")
        # Members may not hand their story to someone else
        grant.ensure_owner(updates["owner_id"])
        await validate_membership_id(db, org_id, updates["owner_id"])
    if "team_id" in updates:
        updates["team_id"] = await resolve_team_for_write(db, principal, updates["team_id"], creating=False)

    for key, value in updates.items():
        if value is None and key in ("title", "status", "progress", "is_blocked"):
            continue
        setattr(story, key, value)
    await db.commit()
    await db.refresh(story)
    audit.succeeded(story, old=old)
    return _story_out(story)


@router.put("/{id}/progress", response_model=StoryOut)
async def update_story_progress(
    id: str,
    data: ProgressUpdate,
    principal: Principal = Depends(require_permission("stories:update-status")),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(audit_recorder("Story")),
):
    """Quick progress/status update from the board"""
    story = await get_scoped_or_404(db, Story, principal, id, message=NOT_FOUND_MESSAGE)
    old = snapshot(story)
    if data.progress is not None:
        story.progress = data.progress
    if data.is_blocked is not None:
        story.is_blocked = data.is_blocked
    if data.status is not None:
        story.status = data.status
    await db.commit()
    await db.refresh(story)
    audit.succeeded(story, old=old)
    return _story_out(story)


@router.put("/{id}/block", response_model=StoryOut)
async def toggle_story_block(
    id: str,
    principal: Principal = Depends(require_permission("stories:update-status")),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(audit_recorder("Story")),
):
    story = await get_scoped_or_404(db, Story, principal, id, message=NOT_FOUND_MESSAGE)
    old = snapshot(story)
    story.is_blocked = not story.is_blocked
    await db.commit()
    await db.refresh(story)
    audit.succeeded(story, old=old)
    return _story_out(story)


@router.delete("/{id}")
async def delete_story(
    id: str,
    principal: Principal = Depends(require_permission("stories:delete")),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(audit_recorder("Story")),
):
    story = await get_scoped_or_404(db, Story, principal, id, message=NOT_FOUND_MESSAGE)
    old = snapshot(story)
    for task in (await db.execute(select(Task).where(Task.story_id == story.id))).scalars().all():
        task.story_id = None
    await db.delete(story)
    await db.commit()
    audit.succeeded(old=old, entity_id=story.id)
    return {"status": "deleted", "id": story.id}
