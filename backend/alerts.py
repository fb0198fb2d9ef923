# alerts.py — Audit alert evaluation and dispatch
# Process-wide state (created at import, never persisted, not shared across instances):
# - AlertConfigCache: active rules per organization, 60s TTL, explicit invalidation
# - CooldownTracker: last-fired time per (rule, entity)
# Both rely on the event loop running one coroutine step at a time; no locks.

import hmac
import json
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database import async_session_maker
from models import AuditAlertConfig, AuditLog, Membership, Notification, Severity, utcnow
from roles import normalize_role

logger = logging.getLogger("rocks.alerts")

WILDCARD = "*"
WEBHOOK_TIMEOUT_SECONDS = 10
SIGNATURE_HEADER = "X-Webhook-Signature"

ACTION_VERBS = {
    "CREATE": "יצר",
    "UPDATE": "עדכן",
    "DELETE": "מחק",
    "LOGIN": "התחבר",
    "LOGOUT": "התנתק",
    "EXPORT_CSV": "ייצא",
    "ROLE_CHANGED": "שינה הרשאה של",
}

ENTITY_LABELS = {
    "Objective": "יעד",
    "Rock": "סלע",
    "Sprint": "ספרינט",
    "Story": "סיפור",
    "Task": "משימה",
    "Label": "תווית",
    "Team": "צוות",
    "TeamMembership": "שיוך לצוות",
    "Membership": "חבר ארגון",
    "Organization": "ארגון",
    "FeatureFlag": "דגל תכונה",
}


@dataclass(frozen=True)
class AlertRule:
    """Detached copy of an AuditAlertConfig row, safe to keep across sessions."""
    id: str
    organization_id: str
    name: str
    description: Optional[str] = None
    trigger_actions: Tuple[str, ...] = ()
    trigger_entities: Tuple[str, ...] = (WILDCARD,)
    notify_user_ids: Tuple[str, ...] = ()
    notify_roles: Tuple[str, ...] = ("ADMIN",)
    channel_in_app: bool = True
    channel_email: bool = False
    channel_webhook: bool = False
    webhook_url: Optional[str] = None
    webhook_secret: Optional[str] = None
    cooldown_minutes: int = 5

    @classmethod
    def from_model(cls, config: AuditAlertConfig) -> "AlertRule":
        return cls(
            id=config.id,
            organization_id=config.organization_id,
            name=config.name,
            description=config.description,
            trigger_actions=tuple(config.trigger_actions or ()),
            trigger_entities=tuple(config.trigger_entities or ()),
            notify_user_ids=tuple(config.notify_user_ids or ()),
            notify_roles=tuple(config.notify_roles or ()),
            channel_in_app=bool(config.channel_in_app),
            channel_email=bool(config.channel_email),
            channel_webhook=bool(config.channel_webhook),
            webhook_url=config.webhook_url,
            webhook_secret=config.webhook_secret,
            cooldown_minutes=config.cooldown_minutes or 0,
        )


# ============================================================
# CACHE & COOLDOWN
# ============================================================

class AlertConfigCache:
    """Per-organization rule cache. Each entry keeps its own load time, so
    refreshing one organization never extends another's staleness window."""

    def __init__(self, ttl_seconds: int = 60, clock: Callable[[], datetime] = utcnow):
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock
        self._entries: Dict[str, Tuple[datetime, List[AlertRule]]] = {}

    def get(self, organization_id: str) -> Optional[List[AlertRule]]:
        entry = self._entries.get(organization_id)
        if entry is None:
            return None
        loaded_at, rules = entry
        if self.clock() - loaded_at >= self.ttl:
            return None
        return rules

    def put(self, organization_id: str, rules: List[AlertRule]) -> None:
        self._entries[organization_id] = (self.clock(), list(rules))

    def invalidate(self, organization_id: str) -> None:
        self._entries.pop(organization_id, None)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, organization_id: str) -> bool:
        return self.get(organization_id) is not None


class CooldownTracker:
    def __init__(
        self,
        clock: Callable[[], datetime] = utcnow,
        prune_threshold: int = 1000,
        max_age: timedelta = timedelta(hours=1),
    ):
        self.clock = clock
        self.prune_threshold = prune_threshold
        self.max_age = max_age
        self._last_fired: Dict[str, datetime] = {}

    @staticmethod
    def key(config_id: str, entity_id: Optional[str]) -> str:
        return f"{config_id}-{entity_id or 'none'}"

    def is_cooling_down(self, key: str, cooldown_minutes: int) -> bool:
        last = self._last_fired.get(key)
        if last is None or cooldown_minutes <= 0:
            return False
        return self.clock() - last < timedelta(minutes=cooldown_minutes)

    def mark(self, key: str) -> None:
        self._last_fired[key] = self.clock()
        if len(self._last_fired) > self.prune_threshold:
            self.prune()

    def prune(self) -> int:
        cutoff = self.clock() - self.max_age
        stale = [k for k, fired in self._last_fired.items() if fired < cutoff]
        for k in stale:
            del self._last_fired[k]
        return len(stale)

    def clear(self) -> None:
        self._last_fired.clear()

    def __len__(self) -> int:
        return len(self._last_fired)


# ============================================================
# MATCHING & FORMATTING
# ============================================================

def config_matches(rule: AlertRule, action: str, entity_type: Optional[str]) -> bool:
    actions = rule.trigger_actions
    entities = rule.trigger_entities
    action_ok = WILDCARD in actions or action in actions
    entity_ok = WILDCARD in entities or (entity_type is not None and entity_type in entities)
    return action_ok and entity_ok


def format_alert_message(log: AuditLog) -> str:
    actor = log.user_name or log.user_email or "משתמש"
    verb = ACTION_VERBS.get(log.action, log.action)
    entity = ENTITY_LABELS.get(log.entity_type or "", log.entity_type or "")
    name = f'"{log.entity_name}"' if log.entity_name else ""
    return " ".join(part for part in (actor, verb, entity, name) if part)


def webhook_payload(rule: AlertRule, log: AuditLog) -> dict:
    return {
        "event": "audit_alert",
        "alert": {"name": rule.name, "description": rule.description},
        "audit": {
            "id": log.id,
            "action": log.action,
            "entityType": log.entity_type,
            "entityId": log.entity_id,
            "entityName": log.entity_name,
            "userName": log.user_name,
            "userEmail": log.user_email,
            "timestamp": log.created_at.isoformat() if log.created_at else None,
            "changedFields": log.changed_fields or [],
        },
    }


def sign_payload(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


# ============================================================
# SERVICE
# ============================================================

@dataclass
class DispatchResult:
    rule_id: str
    in_app: int = 0
    webhook_status: Optional[int] = None
    errors: List[str] = field(default_factory=list)


class AlertService:
    def __init__(
        self,
        cache: Optional[AlertConfigCache] = None,
        cooldowns: Optional[CooldownTracker] = None,
        session_factory: Optional[async_sessionmaker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.cache = cache if cache is not None else AlertConfigCache()
        self.cooldowns = cooldowns if cooldowns is not None else CooldownTracker()
        self.session_factory = session_factory if session_factory is not None else async_session_maker
        self.transport = transport

    def invalidate(self, organization_id: str) -> None:
        """Call on every alert config create/update/delete."""
        self.cache.invalidate(organization_id)

    async def load_rules(self, session: AsyncSession, organization_id: str) -> List[AlertRule]:
        cached = self.cache.get(organization_id)
        if cached is not None:
            return cached
        result = await session.execute(
            select(AuditAlertConfig).where(
                AuditAlertConfig.organization_id == organization_id,
                AuditAlertConfig.is_active == True,
            )
        )
        rules = [AlertRule.from_model(c) for c in result.scalars().all()]
        self.cache.put(organization_id, rules)
        return rules

    async def process(self, log: AuditLog, session_factory: Optional[async_sessionmaker] = None) -> List[DispatchResult]:
        """Evaluate the organization's rules against one audit row and dispatch matches."""
        factory = session_factory or self.session_factory
        results: List[DispatchResult] = []
        async with factory() as session:
            rules = await self.load_rules(session, log.organization_id)
            for rule in rules:
                if not config_matches(rule, log.action, log.entity_type):
                    continue
                key = self.cooldowns.key(rule.id, log.entity_id)
                if self.cooldowns.is_cooling_down(key, rule.cooldown_minutes):
                    logger.debug(f"Alert {rule.id} cooling down for {key}")
                    continue
                # Marked before dispatch so a concurrent event cannot fire it twice
                self.cooldowns.mark(key)
                results.append(await self.dispatch(session, rule, log))
        return results

    async def dispatch(self, session: AsyncSession, rule: AlertRule, log: AuditLog) -> DispatchResult:
        result = DispatchResult(rule_id=rule.id)
        message = format_alert_message(log)

        if rule.channel_in_app:
            try:
                result.in_app = await self.send_in_app(session, rule, log, message)
            except Exception as e:
                await session.rollback()
                result.errors.append(f"in_app: {e}")
                logger.exception(f"In-app alert {rule.id} failed")

        if rule.channel_email:
            try:
                await self.send_email(rule, log, message)
            except Exception as e:
                result.errors.append(f"email: {e}")
                logger.exception(f"Email alert {rule.id} failed")

        if rule.channel_webhook and rule.webhook_url:
            try:
                result.webhook_status = await self.send_webhook(rule, log)
            except Exception as e:
                result.errors.append(f"webhook: {e}")
                logger.exception(f"Webhook alert {rule.id} to {rule.webhook_url} failed")

        logger.info(f"Alert {rule.name} fired for {log.action} {log.entity_type}/{log.entity_id}")
        return result

    async def resolve_recipients(self, session: AsyncSession, rule: AlertRule, log: AuditLog) -> List[str]:
        recipients = set(rule.notify_user_ids)
        roles = [r for r in (normalize_role(name) for name in rule.notify_roles) if r is not None]
        if roles:
            rows = await session.execute(
                select(Membership.user_id).where(
                    Membership.organization_id == log.organization_id,
                    Membership.is_active == True,
                    Membership.role.in_(roles),
                    Membership.user_id.is_not(None),
                )
            )
            recipients.update(rows.scalars().all())
        # The actor is never alerted about their own change
        recipients.discard(log.user_id)
        return sorted(recipients)

    async def send_in_app(self, session: AsyncSession, rule: AlertRule, log: AuditLog, message: str) -> int:
        recipients = await self.resolve_recipients(session, rule, log)
        for user_id in recipients:
            session.add(Notification(
                organization_id=log.organization_id,
                user_id=user_id,
                alert_config_id=rule.id,
                audit_log_id=log.id,
                title=rule.name,
                body=message,
                severity=log.severity or Severity.INFO,
            ))
        await session.commit()
        return len(recipients)

    async def send_email(self, rule: AlertRule, log: AuditLog, message: str) -> None:
        # Toggle exists on the rule; no mail transport is wired
        logger.info(f"Email channel enabled for alert {rule.id}; delivery not configured ({message})")

    async def send_webhook(self, rule: AlertRule, log: AuditLog) -> int:
        body = json.dumps(webhook_payload(rule, log), ensure_ascii=False, default=str).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if rule.webhook_secret:
            headers[SIGNATURE_HEADER] = sign_payload(body, rule.webhook_secret)
        async with httpx.AsyncClient(timeout=WEBHOOK_TIMEOUT_SECONDS, transport=self.transport) as client:
            resp = await client.post(rule.webhook_url, content=body, headers=headers)
            resp.raise_for_status()
            return resp.status_code


# Single process-wide instance, replaced via dependency override in tests
alert_service = AlertService()


def get_alert_service() -> AlertService:
    return alert_service
