# routers/tasks.py — Tasks, standalone or attached to a story
from datetime import date
from typing import Optional, List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from audit import AuditRecorder, audit_recorder, snapshot
from database import get_db_session
from errors import ValidationFailed
from models import Story, Task, WorkStatus
from permissions import require_permission
from team_scope import apply_team_scope, get_scoped_or_404, resolve_team_for_write
from tenancy import Principal, validate_membership_id

router = APIRouter(prefix="/api/v1/tasks", tags=["Tasks"])

NOT_FOUND_MESSAGE = "משימה לא נמצאה"
SORT_COLUMNS = {"created_at": Task.created_at, "updated_at": Task.updated_at, "due_date": Task.due_date}


class TaskCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=300)
    description: Optional[str] = None
    story_id: Optional[str] = None
    assignee_id: Optional[str] = None
    status: WorkStatus = WorkStatus.TODO
    due_date: Optional[date] = None
    team_id: Optional[str] = None


class TaskUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=300)
    description: Optional[str] = None
    story_id: Optional[str] = None
    assignee_id: Optional[str] = None
    status: Optional[WorkStatus] = None
    due_date: Optional[date] = None
    team_id: Optional[str] = None


class TaskStatusUpdate(BaseModel):
    status: WorkStatus


class TaskOut(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    story_id: Optional[str] = None
    assignee_id: Optional[str] = None
    team_id: Optional[str] = None
    status: str
    due_date: Optional[date] = None
    created_at: Optional[str] = None


def _task_out(task: Task) -> TaskOut:
    return TaskOut(
        id=task.id,
        title=task.title,
        description=task.description,
        story_id=task.story_id,
        assignee_id=task.assignee_id,
        team_id=task.team_id,
        status=task.status.value if isinstance(task.status, WorkStatus) else str(task.status),
        due_date=task.due_date,
        created_at=task.created_at.isoformat() if task.created_at else None,
    )


async def _get_story(db: AsyncSession, principal: Principal, story_id: Optional[str]) -> Optional[Story]:
    if not story_id:
        return None
    story = (await db.execute(
        select(Story).where(Story.id == story_id, Story.organization_id == principal.organization_id)
    )).scalar_one_or_none()
    if story is None:
        raise ValidationFailed("הסיפור שנבחר אינו קיים", code="INVALID_REFERENCE", field="story_id")
    return story


@router.get("", response_model=List[TaskOut])
async def list_tasks(
    status: Optional[WorkStatus] = Query(None),
    assignee_id: Optional[str] = Query(None),
    story_id: Optional[str] = Query(None),
    standalone: bool = Query(False),
    sort_by: str = Query("created_at", pattern="^(created_at|updated_at|due_date)$"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    principal: Principal = Depends(require_permission("tasks:read")),
    db: AsyncSession = Depends(get_db_session),
):
    stmt = select(Task).where(Task.organization_id == principal.organization_id)
    if status is not None:
        stmt = stmt.where(Task.status == status)
    if assignee_id:
        stmt = stmt.where(Task.assignee_id == assignee_id)
    if standalone:
        stmt = stmt.where(Task.story_id.is_(None))
    elif story_id:
        stmt = stmt.where(Task.story_id == story_id)
    column = SORT_COLUMNS[sort_by]
    stmt = apply_team_scope(stmt, principal, Task).order_by(column.asc() if sort_order == "asc" else column.desc())
    tasks = (await db.execute(stmt)).scalars().all()
    return [_task_out(t) for t in tasks]


@router.get("/{id}", response_model=TaskOut)
async def get_task(
    id: str,
    principal: Principal = Depends(require_permission("tasks:read")),
    db: AsyncSession = Depends(get_db_session),
):
    return _task_out(await get_scoped_or_404(db, Task, principal, id, message=NOT_FOUND_MESSAGE))


@router.post("", response_model=TaskOut, status_code=201)
async def create_task(
    data: TaskCreate,
    principal: Principal = Depends(require_permission("tasks:create")),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(audit_recorder("Task")),
):
    story = await _get_story(db, principal, data.story_id)
    if data.team_id:
        team_id = await resolve_team_for_write(db, principal, data.team_id)
    elif story is not None and story.team_id:
        team_id = story.team_id
    else:
        team_id = await resolve_team_for_write(db, principal, None)

    task = Task(
        organization_id=principal.organization_id,
        team_id=team_id,
        story_id=story.id if story else None,
        assignee_id=await validate_membership_id(
            db, principal.organization_id, data.assignee_id or principal.membership_id, "assignee_id",
        ),
        title=data.title.strip(),
        description=data.description,
        status=data.status,
        due_date=data.due_date,
    )
    db.add(task)
    await db.commit()
    await db.refresh(task)
    audit.succeeded(task, status_code=201)
    return _task_out(task)


@router.put("/{id}", response_model=TaskOut)
async def update_task(
    id: str,
    data: TaskUpdate,
    principal: Principal = Depends(require_permission("tasks:update")),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(audit_recorder("Task")),
):
    task = await get_scoped_or_404(db, Task, principal, id, message=NOT_FOUND_MESSAGE)
    old = snapshot(task)
    updates = data.model_dump(exclude_unset=True)
    if "story_id" in updates:
        story = await _get_story(db, principal, updates["story_id"])
        updates["story_id"] = story.id if story else None
    if "assignee_id" in updates:
        updates["assignee_id"] = await validate_membership_id(
            db, principal.organization_id, updates["assignee_id"], "assignee_id",
        )
    if "team_id" in updates:
        updates["team_id"] = await resolve_team_for_write(db, principal, updates["team_id"], creating=False)
    for key, value in updates.items():
        if value is None and key in ("title", "status"):
            continue
        setattr(task, key, value)
    await db.commit()
    await db.refresh(task)
    audit.succeeded(task, old=old)
    return _task_out(task)


@router.patch("/{id}/status", response_model=TaskOut)
async def update_task_status(
    id: str,
    data: TaskStatusUpdate,
    principal: Principal = Depends(require_permission("tasks:update")),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(audit_recorder("Task")),
):
    task = await get_scoped_or_404(db, Task, principal, id, message=NOT_FOUND_MESSAGE)
    old = snapshot(task)
    task.status = data.status
    await db.commit()
    await db.refresh(task)
    audit.succeeded(task, old=old)
    return _task_out(task)


@router.delete("/{id}")
async def delete_task(
    id: str,
    principal: Principal = Depends(require_permission("tasks:delete")),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(audit_recorder("Task")),
):
    task = await get_scoped_or_404(db, Task, principal, id, message=NOT_FOUND_MESSAGE)
    old = snapshot(task)
    await db.delete(task)
    await db.commit()
    audit.succeeded(old=old, entity_id=task.id)
    return {"status": "deleted", "id": task.id}
