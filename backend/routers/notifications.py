# routers/notifications.py — In-app alert notifications for the current user
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy import select, func, update, delete
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db_session
from errors import NotFound
from models import Notification, Severity, utcnow
from tenancy import Principal, require_organization

router = APIRouter(prefix="/api/v1/notifications", tags=["Notifications"])


# --- Schemas ---

class NotificationOut(BaseModel):
    id: str
    title: str
    body: str
    severity: str
    alert_config_id: Optional[str] = None
    audit_log_id: Optional[str] = None
    read_at: Optional[str] = None
    is_read: bool
    created_at: str


def _notif_out(n: Notification) -> dict:
    return NotificationOut(
        id=n.id, title=n.title, body=n.body,
        severity=n.severity.value if hasattr(n.severity, "value") else str(n.severity),
        alert_config_id=n.alert_config_id,
        audit_log_id=n.audit_log_id,
        read_at=n.read_at.isoformat() if n.read_at else None,
        is_read=n.read_at is not None,
        created_at=n.created_at.isoformat(),
    ).model_dump()


def _mine(principal: Principal):
    """Notifications belong to one user within one organization."""
    return (
        Notification.user_id == principal.user_id,
        Notification.organization_id == principal.organization_id,
    )


async def _get_mine(db: AsyncSession, principal: Principal, notification_id: str) -> Notification:
    result = await db.execute(
        select(Notification).where(Notification.id == notification_id, *_mine(principal))
    )
    notif = result.scalar_one_or_none()
    if not notif:
        raise NotFound("התראה לא נמצאה")
    return notif


# ============================================================
# LIST
# ============================================================

@router.get("")
async def list_notifications(
    unread_only: bool = Query(default=False),
    severity: Optional[Severity] = Query(None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(require_organization),
    db: AsyncSession = Depends(get_db_session),
):
    query = select(Notification).where(*_mine(principal))
    if unread_only:
        query = query.where(Notification.read_at.is_(None))
    if severity:
        query = query.where(Notification.severity == severity)
    query = query.order_by(Notification.created_at.desc(), Notification.id).offset(offset).limit(limit)
    result = await db.execute(query)
    return [_notif_out(n) for n in result.scalars().all()]


@router.get("/count")
async def notification_count(
    principal: Principal = Depends(require_organization),
    db: AsyncSession = Depends(get_db_session),
):
    unread = (await db.execute(
        select(func.count(Notification.id)).where(*_mine(principal), Notification.read_at.is_(None))
    )).scalar() or 0

    high = (await db.execute(
        select(func.count(Notification.id)).where(
            *_mine(principal),
            Notification.read_at.is_(None),
            Notification.severity == Severity.HIGH,
        )
    )).scalar() or 0

    return {"unread": unread, "high": high}


# ============================================================
# MARK READ
# ============================================================

@router.post("/{notification_id}/read")
async def mark_read(
    notification_id: str,
    principal: Principal = Depends(require_organization),
    db: AsyncSession = Depends(get_db_session),
):
    notif = await _get_mine(db, principal, notification_id)
    if notif.read_at is None:
        notif.read_at = utcnow()
        await db.commit()
    return {"status": "read"}


@router.post("/read-all")
async def mark_all_read(
    principal: Principal = Depends(require_organization),
    db: AsyncSession = Depends(get_db_session),
):
    result = await db.execute(
        update(Notification)
        .where(*_mine(principal), Notification.read_at.is_(None))
        .values(read_at=utcnow())
    )
    await db.commit()
    return {"marked": result.rowcount or 0}


# ============================================================
# DELETE
# ============================================================

@router.delete("/{notification_id}")
async def delete_notification(
    notification_id: str,
    principal: Principal = Depends(require_organization),
    db: AsyncSession = Depends(get_db_session),
):
    notif = await _get_mine(db, principal, notification_id)
    await db.delete(notif)
    await db.commit()
    return {"status": "deleted"}


@router.delete("")
async def clear_read_notifications(
    principal: Principal = Depends(require_organization),
    db: AsyncSession = Depends(get_db_session),
):
    result = await db.execute(
        delete(Notification).where(*_mine(principal), Notification.read_at.isnot(None))
    )
    await db.commit()
    return {"deleted": result.rowcount or 0}
