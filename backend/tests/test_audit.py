# tests/test_audit.py — Audit capture, change summaries, log browsing, export and retention
from datetime import timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy import select

from audit import (
    AuditAction, AuditEvent, action_from_method, build_changes_summary, cleanup_old_logs,
    format_value, get_changed_fields, record_audit_event, snapshot,
)
from models import AuditLog, AuditRetentionConfig, Rock, Severity, utcnow
from tests.conftest import create_user, get_auth_headers

ROCK = {"code": "R-1", "name": "Launch v2", "year": 2026, "quarter": 2}


async def audit_rows(db, **filters):
    stmt = select(AuditLog)
    for key, value in filters.items():
        stmt = stmt.where(getattr(AuditLog, key) == value)
    return (await db.execute(stmt.order_by(AuditLog.created_at))).scalars().all()


async def add_log(db, org, user=None, action="UPDATE", created_at=None, **kwargs) -> AuditLog:
    log = AuditLog(
        organization_id=org.id,
        action=action,
        category="DATA_CRUD",
        severity=Severity.MEDIUM,
        user_id=user.id if user else None,
        user_email=user.email if user else None,
        created_at=created_at or utcnow(),
        **kwargs,
    )
    db.add(log)
    await db.commit()
    return log


class TestFormatting:
    @pytest.mark.parametrize("method,action", [
        ("POST", AuditAction.CREATE),
        ("PUT", AuditAction.UPDATE),
        ("PATCH", AuditAction.UPDATE),
        ("DELETE", AuditAction.DELETE),
        ("GET", AuditAction.READ),
    ])
    def test_action_from_method(self, method, action):
        assert action_from_method(method) == action

    def test_changed_fields_skip_bookkeeping(self):
        old = {"id": "1", "name": "a", "status": "PLANNED", "updated_at": "x"}
        new = {"id": "1", "name": "b", "status": "PLANNED", "updated_at": "y", "owner_id": "m1"}
        assert get_changed_fields(old, new) == ["name", "owner_id"]
        assert get_changed_fields(None, new) == []

    def test_summary_lists_five_fields_then_counts_the_rest(self):
        old = {f"f{i}": i for i in range(7)}
        new = {f"f{i}": i + 1 for i in range(7)}
        fields = get_changed_fields(old, new)
        summary = build_changes_summary(old, new, fields)
        parts = summary.split(" | ")
        assert len(parts) == 6
        assert parts[0] == "f0: 0 → 1"
        assert parts[-1] == "+2 שדות נוספים"

    def test_summary_formats_values(self):
        summary = build_changes_summary({"is_blocked": False}, {"is_blocked": True}, ["is_blocked"])
        assert summary == "is_blocked: לא → כן"
        assert build_changes_summary({}, {}, []) is None

    def test_format_value(self):
        assert format_value(None) == "(ריק)"
        assert format_value("") == "(ריק)"
        long = format_value("x" * 80)
        assert len(long) == 50
        assert long.endswith("...")

    def test_snapshot_masks_secrets(self):
        snap = snapshot({"email": "a@b.c", "password_hash": "$2b$...", "webhook_secret": None})
        assert snap["email"] == "a@b.c"
        assert snap["password_hash"] == "***"
        assert snap["webhook_secret"] is None

    def test_snapshot_of_orm_row(self):
        rock = Rock(id="r1", organization_id="o1", code="R-1", name="n", year=2026, quarter=1)
        snap = snapshot(rock)
        assert snap["code"] == "R-1"
        assert "organization_id" in snap


@pytest.mark.asyncio
class TestCapture:
    async def test_event_without_organization_is_skipped(self, session_factory, db_session):
        assert await record_audit_event(session_factory, None, AuditEvent(action=AuditAction.LOGIN)) is None
        assert await audit_rows(db_session) == []

    async def test_update_captures_diff(self, session_factory, db_session, test_org):
        log = await record_audit_event(session_factory, test_org.id, AuditEvent(
            action=AuditAction.UPDATE,
            entity_type="Rock",
            entity_id="r1",
            old_values={"name": "a", "quarter": 1},
            new_values={"name": "b", "quarter": 1},
        ))
        assert log.category == "DATA_CRUD"
        assert log.severity == Severity.MEDIUM
        assert log.changed_fields == ["name"]
        assert log.changes_summary == "name: a → b"

    async def test_create_through_api(self, client: AsyncClient, db_session, manager, test_org):
        res = await client.post("/api/v1/rocks", json=ROCK, headers=get_auth_headers(manager.user))
        assert res.status_code == 201
        rows = await audit_rows(db_session, action="CREATE", entity_type="Rock")
        assert len(rows) == 1
        log = rows[0]
        assert log.entity_id == res.json()["id"]
        assert log.entity_name == "Launch v2"
        assert log.user_id == manager.user.id
        assert log.user_role == "MANAGER"
        assert log.request_method == "POST"
        assert log.request_path == "/api/v1/rocks"
        assert log.organization_id == test_org.id

    async def test_update_through_api_records_changed_fields(self, client: AsyncClient, db_session, manager):
        headers = get_auth_headers(manager.user)
        rock_id = (await client.post("/api/v1/rocks", json=ROCK, headers=headers)).json()["id"]
        res = await client.put(f"/api/v1/rocks/{rock_id}", json={"name": "Launch v3"}, headers=headers)
        assert res.status_code == 200

        log = (await audit_rows(db_session, action="UPDATE", entity_id=rock_id))[0]
        assert log.changed_fields == ["name"]
        assert log.old_values["name"] == "Launch v2"
        assert log.new_values["name"] == "Launch v3"

    async def test_delete_through_api(self, client: AsyncClient, db_session, manager):
        headers = get_auth_headers(manager.user)
        rock_id = (await client.post("/api/v1/rocks", json=ROCK, headers=headers)).json()["id"]
        await client.delete(f"/api/v1/rocks/{rock_id}", headers=headers)

        log = (await audit_rows(db_session, action="DELETE", entity_id=rock_id))[0]
        assert log.severity == Severity.HIGH
        assert log.old_values["code"] == "R-1"
        assert log.new_values is None

    async def test_rejected_request_is_not_audited(self, client: AsyncClient, db_session, member):
        res = await client.post("/api/v1/rocks", json=ROCK, headers=get_auth_headers(member.user))
        assert res.status_code == 403
        assert await audit_rows(db_session, entity_type="Rock") == []

    async def test_failed_validation_is_not_audited(self, client: AsyncClient, db_session, manager):
        res = await client.post("/api/v1/rocks", json={**ROCK, "quarter": 9}, headers=get_auth_headers(manager.user))
        assert res.status_code == 422
        assert await audit_rows(db_session, entity_type="Rock") == []


@pytest.mark.asyncio
class TestLogsRouter:
    async def test_viewer_cannot_read_logs(self, client: AsyncClient, viewer):
        res = await client.get("/api/v1/audit/logs", headers=get_auth_headers(viewer.user))
        assert res.status_code == 403
        assert res.json()["required"] == "audit:read"

    async def test_member_sees_only_own_rows(self, client: AsyncClient, db_session, test_org, member, manager):
        await add_log(db_session, test_org, member.user, entity_name="mine")
        await add_log(db_session, test_org, manager.user, entity_name="theirs")

        res = await client.get("/api/v1/audit/logs", headers=get_auth_headers(member.user))
        assert res.status_code == 200
        assert [log["entity_name"] for log in res.json()["logs"]] == ["mine"]

        res = await client.get("/api/v1/audit/logs", headers=get_auth_headers(manager.user))
        assert {log["entity_name"] for log in res.json()["logs"]} == {"mine", "theirs"}

    async def test_logs_are_tenant_scoped(self, client: AsyncClient, db_session, other_org, admin):
        await add_log(db_session, other_org, entity_name="foreign")
        res = await client.get("/api/v1/audit/logs", headers=get_auth_headers(admin.user))
        assert res.json()["logs"] == []
        assert res.json()["pagination"]["total"] == 0

    async def test_filters_and_pagination(self, client: AsyncClient, db_session, test_org, admin):
        now = utcnow()
        for i in range(3):
            await add_log(db_session, test_org, admin.user, action="CREATE", entity_type="Rock",
                          entity_name=f"rock-{i}", created_at=now - timedelta(minutes=i))
        await add_log(db_session, test_org, admin.user, action="DELETE", entity_type="Sprint", entity_name="sprint")

        headers = get_auth_headers(admin.user)
        res = await client.get("/api/v1/audit/logs", params={"action": "CREATE", "limit": 2}, headers=headers)
        body = res.json()
        assert body["pagination"] == {"page": 1, "limit": 2, "total": 3, "pages": 2}
        assert [log["entity_name"] for log in body["logs"]] == ["rock-0", "rock-1"]

        res = await client.get("/api/v1/audit/logs", params={"action": "CREATE,DELETE"}, headers=headers)
        assert res.json()["pagination"]["total"] == 4

        res = await client.get("/api/v1/audit/logs", params={"search": "sprint"}, headers=headers)
        assert [log["entity_type"] for log in res.json()["logs"]] == ["Sprint"]

    async def test_single_log_and_entity_history(self, client: AsyncClient, db_session, test_org, admin):
        log = await add_log(db_session, test_org, admin.user, entity_type="Rock", entity_id="r1")
        headers = get_auth_headers(admin.user)

        res = await client.get(f"/api/v1/audit/logs/{log.id}", headers=headers)
        assert res.status_code == 200
        assert res.json()["action_label"] == "עדכון"

        res = await client.get("/api/v1/audit/logs/missing", headers=headers)
        assert res.status_code == 404

        res = await client.get("/api/v1/audit/entity/Rock/r1", headers=headers)
        assert [row["id"] for row in res.json()] == [log.id]

    async def test_stats_require_manager(self, client: AsyncClient, db_session, test_org, member, manager):
        await add_log(db_session, test_org, member.user, action="CREATE", entity_type="Rock")
        res = await client.get("/api/v1/audit/stats", headers=get_auth_headers(member.user))
        assert res.status_code == 403

        res = await client.get("/api/v1/audit/stats", headers=get_auth_headers(manager.user))
        body = res.json()
        assert body["total_logs"] == 1
        assert body["by_action"] == {"CREATE": 1}
        assert body["top_users"][0]["user_id"] == member.user.id


@pytest.mark.asyncio
class TestExport:
    async def test_csv_has_bom_and_hebrew_headers(self, client: AsyncClient, db_session, test_org, admin):
        await add_log(db_session, test_org, admin.user, entity_name="Launch", changes_summary="name: a → b")
        res = await client.get("/api/v1/audit/export", headers=get_auth_headers(admin.user))
        assert res.status_code == 200
        assert res.headers["content-type"].startswith("text/csv")
        assert "attachment" in res.headers["content-disposition"]
        text = res.content.decode("utf-8")
        assert text.startswith("\ufeff")
        assert "תאריך" in text.splitlines()[0]
        assert "Launch" in text

    async def test_export_is_itself_audited(self, client: AsyncClient, db_session, admin):
        await client.get("/api/v1/audit/export", headers=get_auth_headers(admin.user))
        rows = await audit_rows(db_session, action="EXPORT_CSV")
        assert len(rows) == 1
        assert rows[0].category == "EXPORT_IMPORT"
        assert rows[0].details["rows"] == 0

    async def test_manager_cannot_export(self, client: AsyncClient, manager):
        res = await client.get("/api/v1/audit/export", headers=get_auth_headers(manager.user))
        assert res.status_code == 403
        assert res.json()["required"] == "audit:export"


@pytest.mark.asyncio
class TestRetention:
    async def test_cleanup_deletes_only_expired_rows(self, db_session, test_org, other_org):
        now = utcnow()
        await add_log(db_session, test_org, entity_name="old", created_at=now - timedelta(days=100))
        await add_log(db_session, test_org, entity_name="fresh", created_at=now - timedelta(days=5))
        await add_log(db_session, other_org, entity_name="foreign-old", created_at=now - timedelta(days=100))
        db_session.add(AuditRetentionConfig(organization_id=test_org.id, retention_days=30))
        await db_session.commit()

        deleted = await cleanup_old_logs(db_session, test_org.id, now=now)
        assert deleted == 1
        remaining = {log.entity_name for log in await audit_rows(db_session)}
        assert remaining == {"fresh", "foreign-old"}

    async def test_default_retention_keeps_recent_rows(self, db_session, test_org):
        await add_log(db_session, test_org, created_at=utcnow() - timedelta(days=400))
        assert await cleanup_old_logs(db_session, test_org.id) == 0

    async def test_retention_endpoints(self, client: AsyncClient, admin):
        headers = get_auth_headers(admin.user)
        res = await client.get("/api/v1/audit/retention", headers=headers)
        assert res.json()["retention_days"] == 1095

        res = await client.put("/api/v1/audit/retention", json={"retention_days": 10}, headers=headers)
        assert res.status_code == 422

        res = await client.put("/api/v1/audit/retention", json={"retention_days": 90}, headers=headers)
        assert res.status_code == 200
        res = await client.get("/api/v1/audit/retention", headers=headers)
        assert res.json()["retention_days"] == 90

        res = await client.post("/api/v1/audit/retention/cleanup", headers=headers)
        assert res.json() == {"deleted": 0}

    async def test_retention_requires_admin(self, client: AsyncClient, manager):
        res = await client.get("/api/v1/audit/retention", headers=get_auth_headers(manager.user))
        assert res.status_code == 403
        assert res.json()["required"] == "ADMIN"

    async def test_retention_requires_membership(self, client: AsyncClient, db_session):
        user = await create_user(db_session)
        res = await client.get("/api/v1/audit/retention", headers=get_auth_headers(user))
        assert res.status_code == 403
        assert res.json()["error"] == "ORGANIZATION_REQUIRED"
