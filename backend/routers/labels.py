# routers/labels.py — Organization labels (soft-deleted, unique name per organization)
from typing import Optional, List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from audit import AuditAction, AuditRecorder, audit_recorder, snapshot
from database import get_db_session
from errors import Conflict, NotFound, ValidationFailed
from models import Label
from permissions import require_permission
from tenancy import Principal

router = APIRouter(prefix="/api/v1/labels", tags=["Labels"])


# --- Schemas ---

class LabelCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    color: Optional[str] = Field(None, max_length=20)
    is_active: bool = True


class LabelUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=50)
    color: Optional[str] = Field(None, max_length=20)
    is_active: Optional[bool] = None


class LabelOut(BaseModel):
    id: str
    name: str
    color: Optional[str] = None
    is_active: bool
    created_at: Optional[str] = None


def _label_out(label: Label) -> LabelOut:
    return LabelOut(
        id=label.id,
        name=label.name,
        color=label.color,
        is_active=bool(label.is_active),
        created_at=label.created_at.isoformat() if label.created_at else None,
    )


def _clean_name(name: str) -> str:
    cleaned = name.strip()
    if not cleaned:
        raise ValidationFailed("נדרש שם תווית", field="name")
    return cleaned


async def _get_label(db: AsyncSession, principal: Principal, label_id: str) -> Label:
    label = (await db.execute(
        select(Label).where(Label.id == label_id, Label.organization_id == principal.organization_id)
    )).scalar_one_or_none()
    if not label:
        raise NotFound("תווית לא נמצאה")
    return label


async def _ensure_name_free(db: AsyncSession, organization_id: str, name: str, exclude_id: Optional[str] = None):
    stmt = select(Label.id).where(Label.organization_id == organization_id, Label.name == name)
    if exclude_id:
        stmt = stmt.where(Label.id != exclude_id)
    if (await db.execute(stmt)).scalar_one_or_none():
        raise Conflict("תווית עם שם זה כבר קיימת", field="name")


# ============================================================
# LABELS
# ============================================================

@router.get("", response_model=List[LabelOut])
async def list_labels(
    include_inactive: bool = Query(default=False),
    principal: Principal = Depends(require_permission("labels:read")),
    db: AsyncSession = Depends(get_db_session),
):
    stmt = select(Label).where(Label.organization_id == principal.organization_id)
    if not include_inactive:
        stmt = stmt.where(Label.is_active == True)
    result = await db.execute(stmt.order_by(Label.name))
    return [_label_out(label) for label in result.scalars().all()]


@router.post("", response_model=LabelOut, status_code=201)
async def create_label(
    data: LabelCreate,
    principal: Principal = Depends(require_permission("labels:create")),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(audit_recorder("Label")),
):
    name = _clean_name(data.name)
    await _ensure_name_free(db, principal.organization_id, name)
    label = Label(
        organization_id=principal.organization_id,
        name=name,
        color=data.color or None,
        is_active=data.is_active,
        created_by=principal.user_id,
    )
    db.add(label)
    await db.commit()
    await db.refresh(label)
    audit.succeeded(label, status_code=201)
    return _label_out(label)


@router.put("/{id}", response_model=LabelOut)
async def update_label(
    id: str,
    data: LabelUpdate,
    principal: Principal = Depends(require_permission("labels:update")),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(audit_recorder("Label")),
):
    label = await _get_label(db, principal, id)
    old = snapshot(label)
    updates = data.model_dump(exclude_unset=True)
    if updates.get("name") is not None:
        updates["name"] = _clean_name(updates["name"])
        await _ensure_name_free(db, principal.organization_id, updates["name"], exclude_id=label.id)
    elif "name" in updates:
        del updates["name"]
    if "color" in updates:
        updates["color"] = updates["color"] or None
    if updates.get("is_active") is None:
        updates.pop("is_active", None)
    for key, value in updates.items():
        setattr(label, key, value)
    await db.commit()
    await db.refresh(label)
    audit.succeeded(label, old=old)
    return _label_out(label)


@router.delete("/{id}")
async def delete_label(
    id: str,
    principal: Principal = Depends(require_permission("labels:delete")),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(audit_recorder("Label")),
):
    """Soft delete; the name stays reserved"""
    label = await _get_label(db, principal, id)
    old = snapshot(label)
    label.is_active = False
    await db.commit()
    audit.succeeded(old=old, entity_id=label.id, action=AuditAction.DELETE)
    return {"ok": True}
