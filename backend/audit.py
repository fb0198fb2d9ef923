# audit.py — Audit capture, formatting and retention
# Features:
# - Action/category/severity taxonomy
# - Changed-field detection and a human-readable (Hebrew) change summary
# - Explicit post-handler hook: handlers declare success, the write runs after the response
# - Capture failures are logged and never reach the request
# - Age-based retention sweep (the only path that deletes audit rows)

import time
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum as PyEnum
from typing import Any, Dict, List, Optional

from fastapi import BackgroundTasks, Depends, Request
from sqlalchemy import delete, inspect, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from alerts import AlertService, get_alert_service
from auth import CurrentUser, get_current_user
from database import get_session_factory
from models import AuditLog, AuditRetentionConfig, Organization, Severity, utcnow
from tenancy import Principal, get_principal

logger = logging.getLogger("rocks.audit")

DEFAULT_RETENTION_DAYS = 1095
IGNORED_FIELDS = {"id", "created_at", "updated_at"}
REDACTED_FIELDS = {"password_hash", "webhook_secret"}
REDACTED = "***"
SUMMARY_FIELD_LIMIT = 5
VALUE_DISPLAY_LIMIT = 50


class AuditAction(str, PyEnum):
    CREATE = "CREATE"
    READ = "READ"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    RESTORE = "RESTORE"
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    LOGIN_FAILED = "LOGIN_FAILED"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    ROLE_CHANGED = "ROLE_CHANGED"
    USER_INVITED = "USER_INVITED"
    USER_REMOVED = "USER_REMOVED"
    PERMISSIONS_CHANGED = "PERMISSIONS_CHANGED"
    EXPORT_CSV = "EXPORT_CSV"
    EXPORT_PDF = "EXPORT_PDF"
    IMPORT = "IMPORT"
    BULK_UPDATE = "BULK_UPDATE"
    SETTINGS_CHANGED = "SETTINGS_CHANGED"
    WEBHOOK_TRIGGERED = "WEBHOOK_TRIGGERED"
    ALERT_SENT = "ALERT_SENT"


class AuditCategory(str, PyEnum):
    AUTHENTICATION = "AUTHENTICATION"
    DATA_CRUD = "DATA_CRUD"
    ADMINISTRATION = "ADMINISTRATION"
    EXPORT_IMPORT = "EXPORT_IMPORT"
    SYSTEM = "SYSTEM"
    PAGE_VIEW = "PAGE_VIEW"


ACTION_CATEGORY_MAP: Dict[AuditAction, AuditCategory] = {
    AuditAction.LOGIN: AuditCategory.AUTHENTICATION,
    AuditAction.LOGOUT: AuditCategory.AUTHENTICATION,
    AuditAction.LOGIN_FAILED: AuditCategory.AUTHENTICATION,
    AuditAction.SESSION_EXPIRED: AuditCategory.AUTHENTICATION,
    AuditAction.CREATE: AuditCategory.DATA_CRUD,
    AuditAction.READ: AuditCategory.DATA_CRUD,
    AuditAction.UPDATE: AuditCategory.DATA_CRUD,
    AuditAction.DELETE: AuditCategory.DATA_CRUD,
    AuditAction.RESTORE: AuditCategory.DATA_CRUD,
    AuditAction.ROLE_CHANGED: AuditCategory.ADMINISTRATION,
    AuditAction.USER_INVITED: AuditCategory.ADMINISTRATION,
    AuditAction.USER_REMOVED: AuditCategory.ADMINISTRATION,
    AuditAction.PERMISSIONS_CHANGED: AuditCategory.ADMINISTRATION,
    AuditAction.SETTINGS_CHANGED: AuditCategory.ADMINISTRATION,
    AuditAction.EXPORT_CSV: AuditCategory.EXPORT_IMPORT,
    AuditAction.EXPORT_PDF: AuditCategory.EXPORT_IMPORT,
    AuditAction.IMPORT: AuditCategory.EXPORT_IMPORT,
    AuditAction.BULK_UPDATE: AuditCategory.EXPORT_IMPORT,
    AuditAction.WEBHOOK_TRIGGERED: AuditCategory.SYSTEM,
    AuditAction.ALERT_SENT: AuditCategory.SYSTEM,
}

ACTION_LABELS: Dict[AuditAction, str] = {
    AuditAction.CREATE: "יצירה",
    AuditAction.READ: "צפייה",
    AuditAction.UPDATE: "עדכון",
    AuditAction.DELETE: "מחיקה",
    AuditAction.RESTORE: "שחזור",
    AuditAction.LOGIN: "התחברות",
    AuditAction.LOGOUT: "התנתקות",
    AuditAction.LOGIN_FAILED: "התחברות נכשלה",
    AuditAction.SESSION_EXPIRED: "פג תוקף החיבור",
    AuditAction.ROLE_CHANGED: "שינוי הרשאה",
    AuditAction.USER_INVITED: "הזמנת משתמש",
    AuditAction.USER_REMOVED: "הסרת משתמש",
    AuditAction.PERMISSIONS_CHANGED: "שינוי הרשאות",
    AuditAction.EXPORT_CSV: "ייצוא CSV",
    AuditAction.EXPORT_PDF: "ייצוא PDF",
    AuditAction.IMPORT: "ייבוא",
    AuditAction.BULK_UPDATE: "עדכון מרוכז",
    AuditAction.SETTINGS_CHANGED: "שינוי הגדרות",
    AuditAction.WEBHOOK_TRIGGERED: "הפעלת Webhook",
    AuditAction.ALERT_SENT: "שליחת התראה",
}


# ============================================================
# CLASSIFICATION & FORMATTING
# ============================================================

def action_from_method(method: str) -> AuditAction:
    method = (method or "").upper()
    if method == "POST":
        return AuditAction.CREATE
    if method in ("PUT", "PATCH"):
        return AuditAction.UPDATE
    if method == "DELETE":
        return AuditAction.DELETE
    return AuditAction.READ


def category_for_action(action: str) -> AuditCategory:
    try:
        return ACTION_CATEGORY_MAP.get(AuditAction(action), AuditCategory.SYSTEM)
    except ValueError:
        return AuditCategory.SYSTEM


def severity_for_action(action: str) -> Severity:
    if action == AuditAction.DELETE:
        return Severity.HIGH
    if action == AuditAction.UPDATE:
        return Severity.MEDIUM
    if action == AuditAction.CREATE:
        return Severity.LOW
    return Severity.INFO


def format_value(value: Any) -> str:
    if value is None or value == "":
        return "(ריק)"
    if isinstance(value, bool):
        return "כן" if value else "לא"
    text = str(value)
    if len(text) > VALUE_DISPLAY_LIMIT:
        return text[:VALUE_DISPLAY_LIMIT - 3] + "..."
    return text


def get_changed_fields(old: Optional[dict], new: Optional[dict]) -> List[str]:
    if not old or not new:
        return []
    changed = []
    for key in list(old.keys()) + [k for k in new.keys() if k not in old]:
        if key in IGNORED_FIELDS:
            continue
        if old.get(key) != new.get(key):
            changed.append(key)
    return changed


def build_changes_summary(old: Optional[dict], new: Optional[dict], fields: List[str]) -> Optional[str]:
    if not fields:
        return None
    old = old or {}
    new = new or {}
    parts = [
        f"{name}: {format_value(old.get(name))} → {format_value(new.get(name))}"
        for name in fields[:SUMMARY_FIELD_LIMIT]
    ]
    if len(fields) > SUMMARY_FIELD_LIMIT:
        parts.append(f"+{len(fields) - SUMMARY_FIELD_LIMIT} שדות נוספים")
    return " | ".join(parts)


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, PyEnum):
        return value.value
    return value


def snapshot(entity: Any) -> Optional[Dict[str, Any]]:
    """Column values of an ORM row (or a plain dict) as JSON-safe data."""
    if entity is None:
        return None
    if isinstance(entity, dict):
        items = entity.items()
    else:
        items = ((attr.key, getattr(entity, attr.key)) for attr in inspect(entity).mapper.column_attrs)
    return {
        k: (REDACTED if v is not None else None) if k in REDACTED_FIELDS else _jsonable(v)
        for k, v in items
    }


def entity_display_name(entity: Any) -> Optional[str]:
    data = entity if isinstance(entity, dict) else None
    for attr in ("name", "title", "code"):
        value = data.get(attr) if data is not None else getattr(entity, attr, None)
        if value:
            return str(value)
    return None


# ============================================================
# REQUEST METADATA
# ============================================================

@dataclass
class RequestMeta:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    request_id: Optional[str] = None
    request_path: Optional[str] = None
    request_method: Optional[str] = None
    duration_ms: Optional[int] = None


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return request.client.host if request.client else None


def request_meta(request: Request) -> RequestMeta:
    started = getattr(request.state, "started_at", None)
    return RequestMeta(
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
        request_id=getattr(request.state, "request_id", None),
        request_path=request.url.path,
        request_method=request.method,
        duration_ms=int((time.perf_counter() - started) * 1000) if started else None,
    )


# ============================================================
# CAPTURE
# ============================================================

@dataclass
class AuditEvent:
    action: str
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    entity_name: Optional[str] = None
    old_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    user_name: Optional[str] = None
    user_role: Optional[str] = None
    meta: RequestMeta = field(default_factory=RequestMeta)
    details: Optional[Dict[str, Any]] = None


async def record_audit_event(
    session_factory: async_sessionmaker,
    organization_id: Optional[str],
    event: AuditEvent,
    alerts: Optional[AlertService] = None,
) -> Optional[AuditLog]:
    """Persist one audit row, then run alert evaluation. Never raises."""
    if not organization_id:
        logger.warning(f"Audit event {event.action} on {event.entity_type} skipped: no organization")
        return None

    changed = get_changed_fields(event.old_values, event.new_values)
    try:
        async with session_factory() as session:
            log = AuditLog(
                organization_id=organization_id,
                action=str(event.action.value if isinstance(event.action, PyEnum) else event.action),
                category=category_for_action(event.action).value,
                severity=severity_for_action(event.action),
                entity_type=event.entity_type,
                entity_id=event.entity_id,
                entity_name=event.entity_name,
                old_values=event.old_values,
                new_values=event.new_values,
                changed_fields=changed or None,
                changes_summary=build_changes_summary(event.old_values, event.new_values, changed),
                user_id=event.user_id,
                user_email=event.user_email,
                user_name=event.user_name,
                user_role=event.user_role,
                ip_address=event.meta.ip_address,
                user_agent=event.meta.user_agent,
                request_id=event.meta.request_id,
                request_path=event.meta.request_path,
                request_method=event.meta.request_method,
                duration_ms=event.meta.duration_ms,
                details=event.details,
            )
            session.add(log)
            await session.commit()
            await session.refresh(log)
    except Exception:
        logger.exception(f"Failed to record audit event {event.action} on {event.entity_type}")
        return None

    if alerts is not None:
        try:
            await alerts.process(log, session_factory)
        except Exception:
            logger.exception(f"Alert evaluation failed for audit log {log.id}")
    return log


class AuditRecorder:
    """Post-handler hook. A handler calls succeeded() on its success path only;
    the write is queued as a background task that runs after the response is sent.
    """

    def __init__(
        self,
        entity_type: Optional[str],
        request: Request,
        background_tasks: BackgroundTasks,
        user: CurrentUser,
        principal: Optional[Principal],
        session_factory: async_sessionmaker,
        alerts: Optional[AlertService],
    ):
        self.entity_type = entity_type
        self.request = request
        self.background_tasks = background_tasks
        self.user = user
        self.principal = principal
        self.session_factory = session_factory
        self.alerts = alerts

    def build_event(
        self,
        entity: Any = None,
        *,
        old: Optional[dict] = None,
        new: Optional[dict] = None,
        entity_id: Optional[str] = None,
        entity_name: Optional[str] = None,
        action: Optional[str] = None,
        entity_type: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        action = action or action_from_method(self.request.method)
        new_values = new if new is not None else snapshot(entity)
        # A deleted row is kept in old_values; it has no new state
        if action == AuditAction.DELETE:
            new_values = None
        source = entity if entity is not None else (new or old or {})
        if entity_id is None:
            entity_id = self.request.path_params.get("id")
        if entity_id is None:
            entity_id = source.get("id") if isinstance(source, dict) else getattr(source, "id", None)
        return AuditEvent(
            action=action,
            entity_type=entity_type or self.entity_type,
            entity_id=entity_id,
            entity_name=entity_name or entity_display_name(source),
            old_values=old,
            new_values=new_values,
            user_id=self.user.id,
            user_email=self.user.email,
            user_name=self.user.display_name,
            user_role=self.principal.role.value if self.principal else self.user.role,
            meta=request_meta(self.request),
            details=details,
        )

    def succeeded(
        self,
        entity: Any = None,
        *,
        status_code: int = 200,
        organization_id: Optional[str] = None,
        **kwargs,
    ) -> None:
        if not 200 <= status_code < 300:
            return
        try:
            event = self.build_event(entity, **kwargs)
        except Exception:
            logger.exception(f"Failed to build audit event for {self.entity_type}")
            return
        if organization_id is None and self.principal is not None:
            organization_id = self.principal.organization_id
        self.background_tasks.add_task(
            record_audit_event, self.session_factory, organization_id, event, self.alerts,
        )


def audit_recorder(entity_type: Optional[str] = None):
    """Dependency factory: AuditRecorder bound to an entity type"""
    async def _dep(
        request: Request,
        background_tasks: BackgroundTasks,
        user: CurrentUser = Depends(get_current_user),
        principal: Optional[Principal] = Depends(get_principal),
        session_factory: async_sessionmaker = Depends(get_session_factory),
        alerts: AlertService = Depends(get_alert_service),
    ) -> AuditRecorder:
        return AuditRecorder(entity_type, request, background_tasks, user, principal, session_factory, alerts)
    return _dep


# ============================================================
# RETENTION
# ============================================================

async def get_retention_days(db: AsyncSession, organization_id: str) -> int:
    result = await db.execute(
        select(AuditRetentionConfig).where(AuditRetentionConfig.organization_id == organization_id)
    )
    config = result.scalar_one_or_none()
    return config.retention_days if config else DEFAULT_RETENTION_DAYS


async def cleanup_old_logs(db: AsyncSession, organization_id: str, now: Optional[datetime] = None) -> int:
    """Delete audit rows older than the organization's retention window."""
    days = await get_retention_days(db, organization_id)
    cutoff = (now or utcnow()) - timedelta(days=days)
    result = await db.execute(
        delete(AuditLog).where(
            AuditLog.organization_id == organization_id,
            AuditLog.created_at < cutoff,
        )
    )
    config = (await db.execute(
        select(AuditRetentionConfig).where(AuditRetentionConfig.organization_id == organization_id)
    )).scalar_one_or_none()
    if config is not None:
        config.last_cleanup_at = utcnow()
    await db.commit()
    deleted = result.rowcount or 0
    logger.info(f"Retention sweep for {organization_id}: deleted {deleted} rows older than {days} days")
    return deleted


async def run_global_cleanup(db: AsyncSession) -> Dict[str, int]:
    results: Dict[str, int] = {}
    org_ids = (await db.execute(select(Organization.id))).scalars().all()
    for org_id in org_ids:
        try:
            results[org_id] = await cleanup_old_logs(db, org_id)
        except Exception:
            await db.rollback()
            logger.exception(f"Retention sweep failed for {org_id}")
    return results
