# routers/audit.py — Audit log browsing, stats, export, retention and alert configuration
import csv
import io
from datetime import datetime, timedelta
from typing import Optional, List

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from pydantic import BaseModel, Field, HttpUrl, field_validator
from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from alerts import AlertService, get_alert_service
from audit import (
    AuditAction, AuditCategory, AuditRecorder, ACTION_LABELS,
    audit_recorder, cleanup_old_logs, get_retention_days, snapshot,
)
from database import get_db_session
from errors import NotFound
from models import AuditLog, AuditAlertConfig, AuditRetentionConfig, utcnow
from permissions import require_permission, require_role
from roles import Role, is_role_at_least
from tenancy import Principal

router = APIRouter(prefix="/api/v1/audit", tags=["Audit"])

MAX_PAGE_SIZE = 100
EXPORT_LIMIT = 10000
UTF8_BOM = "\ufeff"
CSV_HEADERS = ["תאריך", "שעה", "משתמש", "אימייל", "פעולה", "קטגוריה", "סוג ישות", "שם ישות", "שינויים", "IP"]


# --- Schemas ---

def check_trigger_actions(actions: Optional[List[str]]) -> Optional[List[str]]:
    if actions is None:
        return None
    valid = {a.value for a in AuditAction}
    unknown = [a for a in actions if a not in valid]
    if unknown:
        raise ValueError(f"פעולות לא מוכרות: {', '.join(unknown)}")
    return actions


class AlertConfigIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    trigger_actions: List[str] = Field(default_factory=list)
    trigger_entities: List[str] = Field(default_factory=lambda: ["*"])
    notify_roles: List[Role] = Field(default_factory=lambda: [Role.ADMIN])
    notify_user_ids: List[str] = Field(default_factory=list)
    channel_in_app: bool = True
    channel_email: bool = False
    channel_webhook: bool = False
    webhook_url: Optional[HttpUrl] = None
    webhook_secret: Optional[str] = Field(None, max_length=200)
    cooldown_minutes: int = Field(5, ge=0, le=1440)

    @field_validator("trigger_actions")
    @classmethod
    def validate_actions(cls, v):
        return check_trigger_actions(v)


class AlertConfigUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    trigger_actions: Optional[List[str]] = None
    trigger_entities: Optional[List[str]] = None
    notify_roles: Optional[List[Role]] = None
    notify_user_ids: Optional[List[str]] = None
    channel_in_app: Optional[bool] = None
    channel_email: Optional[bool] = None
    channel_webhook: Optional[bool] = None
    webhook_url: Optional[HttpUrl] = None
    webhook_secret: Optional[str] = Field(None, max_length=200)
    cooldown_minutes: Optional[int] = Field(None, ge=0, le=1440)
    is_active: Optional[bool] = None

    @field_validator("trigger_actions")
    @classmethod
    def validate_actions(cls, v):
        return check_trigger_actions(v)


class RetentionUpdate(BaseModel):
    retention_days: int = Field(..., ge=30, le=3650)


def serialize_log(log: AuditLog) -> dict:
    return {
        "id": log.id,
        "action": log.action,
        "action_label": ACTION_LABELS.get(_as_action(log.action), log.action),
        "category": log.category,
        "severity": log.severity.value if log.severity else None,
        "entity_type": log.entity_type,
        "entity_id": log.entity_id,
        "entity_name": log.entity_name,
        "old_values": log.old_values,
        "new_values": log.new_values,
        "changed_fields": log.changed_fields or [],
        "changes_summary": log.changes_summary,
        "user_id": log.user_id,
        "user_email": log.user_email,
        "user_name": log.user_name,
        "user_role": log.user_role,
        "ip_address": log.ip_address,
        "user_agent": log.user_agent,
        "request_id": log.request_id,
        "request_path": log.request_path,
        "request_method": log.request_method,
        "duration_ms": log.duration_ms,
        "details": log.details,
        "created_at": log.created_at.isoformat() if log.created_at else None,
    }


def _config_out(config: AuditAlertConfig) -> dict:
    return {
        "id": config.id,
        "name": config.name,
        "description": config.description,
        "trigger_actions": config.trigger_actions or [],
        "trigger_entities": config.trigger_entities or ["*"],
        "notify_roles": config.notify_roles or [],
        "notify_user_ids": config.notify_user_ids or [],
        "channel_in_app": bool(config.channel_in_app),
        "channel_email": bool(config.channel_email),
        "channel_webhook": bool(config.channel_webhook),
        "webhook_url": config.webhook_url,
        # Secret is write-only
        "has_webhook_secret": bool(config.webhook_secret),
        "cooldown_minutes": config.cooldown_minutes,
        "is_active": bool(config.is_active),
        "created_at": config.created_at.isoformat() if config.created_at else None,
    }


def _as_action(value: str):
    try:
        return AuditAction(value)
    except ValueError:
        return value


def _visible_logs(principal: Principal):
    """Tenant rows; members only ever see their own actions."""
    stmt = select(AuditLog).where(AuditLog.organization_id == principal.organization_id)
    if not is_role_at_least(principal.role, Role.MANAGER):
        stmt = stmt.where(AuditLog.user_id == principal.user_id)
    return stmt


def _apply_filters(
    stmt,
    user_id: Optional[str] = None,
    action: Optional[str] = None,
    category: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    search: Optional[str] = None,
):
    if user_id:
        stmt = stmt.where(AuditLog.user_id == user_id)
    if action:
        actions = [a.strip() for a in action.split(",") if a.strip()]
        stmt = stmt.where(AuditLog.action.in_(actions))
    if category:
        stmt = stmt.where(AuditLog.category == category)
    if entity_type:
        stmt = stmt.where(AuditLog.entity_type == entity_type)
    if entity_id:
        stmt = stmt.where(AuditLog.entity_id == entity_id)
    if start_date:
        stmt = stmt.where(AuditLog.created_at >= start_date)
    if end_date:
        stmt = stmt.where(AuditLog.created_at <= end_date)
    if search:
        pattern = f"%{search}%"
        stmt = stmt.where(or_(
            AuditLog.entity_name.ilike(pattern),
            AuditLog.user_email.ilike(pattern),
            AuditLog.user_name.ilike(pattern),
            AuditLog.changes_summary.ilike(pattern),
        ))
    return stmt


# ============================================================
# LOGS
# ============================================================

@router.get("/logs")
async def list_logs(
    user_id: Optional[str] = Query(None),
    action: Optional[str] = Query(None, description="One action or a comma-separated list"),
    category: Optional[AuditCategory] = Query(None),
    entity_type: Optional[str] = Query(None),
    entity_id: Optional[str] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    search: Optional[str] = Query(None, max_length=100),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1),
    order: str = Query("desc", pattern="^(asc|desc)$"),
    principal: Principal = Depends(require_permission("audit:read")),
    db: AsyncSession = Depends(get_db_session),
):
    limit = min(limit, MAX_PAGE_SIZE)
    stmt = _apply_filters(
        _visible_logs(principal), user_id, action, category.value if category else None,
        entity_type, entity_id, start_date, end_date, search,
    )
    total = (await db.execute(select(func.count()).select_from(stmt.subquery()))).scalar() or 0
    ordering = AuditLog.created_at.asc() if order == "asc" else AuditLog.created_at.desc()
    result = await db.execute(stmt.order_by(ordering, AuditLog.id).offset((page - 1) * limit).limit(limit))
    logs = result.scalars().all()
    return {
        "logs": [serialize_log(log) for log in logs],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }


@router.get("/logs/{id}")
async def get_log(
    id: str,
    principal: Principal = Depends(require_permission("audit:read")),
    db: AsyncSession = Depends(get_db_session),
):
    log = (await db.execute(_visible_logs(principal).where(AuditLog.id == id))).scalar_one_or_none()
    if not log:
        raise NotFound("לוג לא נמצא")
    return serialize_log(log)


@router.get("/entity/{entity_type}/{entity_id}")
async def get_entity_history(
    entity_type: str,
    entity_id: str,
    principal: Principal = Depends(require_permission("audit:read")),
    db: AsyncSession = Depends(get_db_session),
):
    stmt = _visible_logs(principal).where(
        AuditLog.entity_type == entity_type,
        AuditLog.entity_id == entity_id,
    ).order_by(AuditLog.created_at.desc(), AuditLog.id)
    result = await db.execute(stmt.limit(MAX_PAGE_SIZE))
    return [serialize_log(log) for log in result.scalars().all()]


@router.get("/stats")
async def get_stats(
    days: int = Query(30, ge=1, le=3650),
    principal: Principal = Depends(require_permission("audit:stats")),
    db: AsyncSession = Depends(get_db_session),
):
    start = utcnow() - timedelta(days=days)
    base = (AuditLog.organization_id == principal.organization_id, AuditLog.created_at >= start)

    total = (await db.execute(select(func.count(AuditLog.id)).where(*base))).scalar() or 0

    async def _group(column) -> dict:
        result = await db.execute(select(column, func.count(AuditLog.id)).where(*base).group_by(column))
        return {str(key): n for key, n in result.all() if key is not None}

    top_users = await db.execute(
        select(AuditLog.user_id, AuditLog.user_name, func.count(AuditLog.id).label("n"))
        .where(*base, AuditLog.user_id.isnot(None))
        .group_by(AuditLog.user_id, AuditLog.user_name)
        .order_by(func.count(AuditLog.id).desc())
        .limit(10)
    )
    return {
        "period": {"days": days, "start_date": start.isoformat()},
        "total_logs": total,
        "by_action": await _group(AuditLog.action),
        "by_category": await _group(AuditLog.category),
        "by_entity_type": await _group(AuditLog.entity_type),
        "top_users": [{"user_id": uid, "user_name": name, "count": n} for uid, name, n in top_users.all()],
    }


@router.get("/export")
async def export_csv(
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    principal: Principal = Depends(require_permission("audit:export")),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(audit_recorder("AuditLog")),
):
    """CSV with a UTF-8 BOM so spreadsheet apps render Hebrew correctly"""
    stmt = _apply_filters(_visible_logs(principal), start_date=start_date, end_date=end_date)
    result = await db.execute(stmt.order_by(AuditLog.created_at.desc()).limit(EXPORT_LIMIT))
    logs = result.scalars().all()

    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL)
    writer.writerow(CSV_HEADERS)
    for log in logs:
        created = log.created_at
        writer.writerow([
            created.strftime("%d/%m/%Y") if created else "",
            created.strftime("%H:%M:%S") if created else "",
            log.user_name or "",
            log.user_email or "",
            log.action,
            log.category,
            log.entity_type or "",
            log.entity_name or "",
            log.changes_summary or "",
            log.ip_address or "",
        ])

    filters = {
        "start_date": start_date.isoformat() if start_date else None,
        "end_date": end_date.isoformat() if end_date else None,
        "rows": len(logs),
    }
    audit.succeeded(action=AuditAction.EXPORT_CSV, entity_name="audit-log", details=filters)

    filename = f"audit-log-{utcnow().date().isoformat()}.csv"
    return Response(
        content=UTF8_BOM + buffer.getvalue(),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@router.get("/meta")
async def get_meta(principal: Principal = Depends(require_permission("audit:read"))):
    """Dropdown values for the log filters"""
    return {
        "actions": [{"value": a.value, "label": ACTION_LABELS.get(a, a.value)} for a in AuditAction],
        "categories": [c.value for c in AuditCategory],
    }


# ============================================================
# RETENTION
# ============================================================

@router.get("/retention")
async def get_retention(
    principal: Principal = Depends(require_role(Role.ADMIN)),
    db: AsyncSession = Depends(get_db_session),
):
    config = (await db.execute(
        select(AuditRetentionConfig).where(AuditRetentionConfig.organization_id == principal.organization_id)
    )).scalar_one_or_none()
    return {
        "retention_days": await get_retention_days(db, principal.organization_id),
        "last_cleanup_at": config.last_cleanup_at.isoformat() if config and config.last_cleanup_at else None,
    }


@router.put("/retention")
async def set_retention(
    data: RetentionUpdate,
    principal: Principal = Depends(require_role(Role.ADMIN)),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(audit_recorder("AuditRetentionConfig")),
):
    config = (await db.execute(
        select(AuditRetentionConfig).where(AuditRetentionConfig.organization_id == principal.organization_id)
    )).scalar_one_or_none()
    old = snapshot(config)
    if config is None:
        config = AuditRetentionConfig(organization_id=principal.organization_id, retention_days=data.retention_days)
        db.add(config)
    else:
        config.retention_days = data.retention_days
    await db.commit()
    await db.refresh(config)
    audit.succeeded(config, old=old, action=AuditAction.SETTINGS_CHANGED, entity_name="retention")
    return {"retention_days": config.retention_days}


@router.post("/retention/cleanup")
async def run_cleanup(
    principal: Principal = Depends(require_role(Role.ADMIN)),
    db: AsyncSession = Depends(get_db_session),
):
    deleted = await cleanup_old_logs(db, principal.organization_id)
    return {"deleted": deleted}


# ============================================================
# ALERT CONFIGURATIONS
# ============================================================

async def _get_config(db: AsyncSession, principal: Principal, config_id: str) -> AuditAlertConfig:
    config = (await db.execute(
        select(AuditAlertConfig).where(
            AuditAlertConfig.id == config_id,
            AuditAlertConfig.organization_id == principal.organization_id,
        )
    )).scalar_one_or_none()
    if not config:
        raise NotFound("הגדרת התראה לא נמצאה")
    return config


@router.get("/alerts")
async def list_alert_configs(
    principal: Principal = Depends(require_permission("audit:configure")),
    db: AsyncSession = Depends(get_db_session),
):
    result = await db.execute(
        select(AuditAlertConfig)
        .where(AuditAlertConfig.organization_id == principal.organization_id)
        .order_by(AuditAlertConfig.created_at.desc())
    )
    return [_config_out(c) for c in result.scalars().all()]


@router.post("/alerts", status_code=201)
async def create_alert_config(
    data: AlertConfigIn,
    principal: Principal = Depends(require_permission("audit:configure")),
    db: AsyncSession = Depends(get_db_session),
    alerts: AlertService = Depends(get_alert_service),
    audit: AuditRecorder = Depends(audit_recorder("AuditAlertConfig")),
):
    payload = data.model_dump()
    payload["notify_roles"] = [r.value for r in data.notify_roles]
    payload["webhook_url"] = str(data.webhook_url) if data.webhook_url else None
    config = AuditAlertConfig(
        organization_id=principal.organization_id,
        created_by_id=principal.user_id,
        is_active=True,
        **payload,
    )
    db.add(config)
    await db.commit()
    await db.refresh(config)
    alerts.invalidate(principal.organization_id)
    audit.succeeded(config, status_code=201, action=AuditAction.SETTINGS_CHANGED)
    return _config_out(config)


@router.put("/alerts/{id}")
async def update_alert_config(
    id: str,
    data: AlertConfigUpdate,
    principal: Principal = Depends(require_permission("audit:configure")),
    db: AsyncSession = Depends(get_db_session),
    alerts: AlertService = Depends(get_alert_service),
    audit: AuditRecorder = Depends(audit_recorder("AuditAlertConfig")),
):
    config = await _get_config(db, principal, id)
    old = snapshot(config)
    updates = data.model_dump(exclude_unset=True)
    if updates.get("notify_roles") is not None:
        updates["notify_roles"] = [Role(r).value for r in updates["notify_roles"]]
    if "webhook_url" in updates:
        updates["webhook_url"] = str(updates["webhook_url"]) if updates["webhook_url"] else None
    for key, value in updates.items():
        if value is None and key not in ("description", "webhook_url", "webhook_secret"):
            continue
        setattr(config, key, value)
    await db.commit()
    await db.refresh(config)
    alerts.invalidate(principal.organization_id)
    audit.succeeded(config, old=old, action=AuditAction.SETTINGS_CHANGED)
    return _config_out(config)


@router.delete("/alerts/{id}")
async def delete_alert_config(
    id: str,
    principal: Principal = Depends(require_permission("audit:configure")),
    db: AsyncSession = Depends(get_db_session),
    alerts: AlertService = Depends(get_alert_service),
    audit: AuditRecorder = Depends(audit_recorder("AuditAlertConfig")),
):
    config = await _get_config(db, principal, id)
    old = snapshot(config)
    await db.delete(config)
    await db.commit()
    alerts.invalidate(principal.organization_id)
    audit.succeeded(old=old, entity_id=config.id, action=AuditAction.DELETE)
    return {"status": "deleted", "id": config.id}
