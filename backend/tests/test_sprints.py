# tests/test_sprints.py — Sprints, stats and the current-sprint pointer
from datetime import date, timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy import select

from models import AuditLog, Organization, Story, WorkStatus
from tests.conftest import get_auth_headers


def sprint_payload(code, start_offset, length=13, **extra):
    start = date.today() + timedelta(days=start_offset)
    return {
        "code": code,
        "name": f"Sprint {code}",
        "start_date": start.isoformat(),
        "end_date": (start + timedelta(days=length)).isoformat(),
        **extra,
    }


@pytest.mark.asyncio
class TestSprints:
    async def test_create_sprint(self, client: AsyncClient, manager):
        res = await client.post("/api/v1/sprints", json=sprint_payload("S-1", 0), headers=get_auth_headers(manager.user))
        assert res.status_code == 201
        body = res.json()
        assert body["status"] == "PLANNED"
        assert body["stats"] == {"total": 0, "todo": 0, "in_progress": 0, "blocked": 0, "done": 0}

    async def test_end_before_start_rejected(self, client: AsyncClient, manager):
        payload = sprint_payload("S-1", 0)
        payload["end_date"] = (date.today() - timedelta(days=1)).isoformat()
        res = await client.post("/api/v1/sprints", json=payload, headers=get_auth_headers(manager.user))
        assert res.status_code == 422

    async def test_update_checks_dates(self, client: AsyncClient, manager):
        headers = get_auth_headers(manager.user)
        sprint = (await client.post("/api/v1/sprints", json=sprint_payload("S-1", 0), headers=headers)).json()
        res = await client.put(f"/api/v1/sprints/{sprint['id']}", json={
            "end_date": (date.today() - timedelta(days=5)).isoformat(),
        }, headers=headers)
        assert res.status_code == 400
        assert res.json()["field"] == "end_date"

    async def test_duplicate_code(self, client: AsyncClient, manager):
        headers = get_auth_headers(manager.user)
        await client.post("/api/v1/sprints", json=sprint_payload("S-1", 0), headers=headers)
        res = await client.post("/api/v1/sprints", json=sprint_payload("S-1", 20), headers=headers)
        assert res.status_code == 409
        assert res.json()["field"] == "code"

    async def test_stats_count_story_statuses(self, client: AsyncClient, db_session, test_org, manager):
        headers = get_auth_headers(manager.user)
        sprint = (await client.post("/api/v1/sprints", json=sprint_payload("S-1", 0), headers=headers)).json()
        for status in (WorkStatus.TODO, WorkStatus.IN_PROGRESS, WorkStatus.BLOCKED, WorkStatus.DONE, WorkStatus.DONE):
            db_session.add(Story(organization_id=test_org.id, sprint_id=sprint["id"], title="s", status=status))
        await db_session.commit()

        res = await client.get(f"/api/v1/sprints/{sprint['id']}", headers=headers)
        assert res.json()["stats"] == {"total": 5, "todo": 1, "in_progress": 1, "blocked": 1, "done": 2}

    async def test_member_cannot_create(self, client: AsyncClient, member):
        res = await client.post("/api/v1/sprints", json=sprint_payload("S-1", 0), headers=get_auth_headers(member.user))
        assert res.status_code == 403


@pytest.mark.asyncio
class TestCurrentSprint:
    async def test_none_when_no_sprints(self, client: AsyncClient, member):
        res = await client.get("/api/v1/sprints/current", headers=get_auth_headers(member.user))
        assert res.status_code == 200
        assert res.json() is None

    async def test_date_range_then_upcoming(self, client: AsyncClient, manager):
        headers = get_auth_headers(manager.user)
        await client.post("/api/v1/sprints", json=sprint_payload("PAST", -30), headers=headers)
        await client.post("/api/v1/sprints", json=sprint_payload("NEXT", 20), headers=headers)
        res = await client.get("/api/v1/sprints/current", headers=headers)
        assert res.json()["code"] == "NEXT"

        await client.post("/api/v1/sprints", json=sprint_payload("NOW", -3), headers=headers)
        res = await client.get("/api/v1/sprints/current", headers=headers)
        assert res.json()["code"] == "NOW"

    async def test_activated_sprint_wins(self, client: AsyncClient, db_session, test_org, manager):
        headers = get_auth_headers(manager.user)
        await client.post("/api/v1/sprints", json=sprint_payload("NOW", -3), headers=headers)
        later = (await client.post("/api/v1/sprints", json=sprint_payload("LATER", 40), headers=headers)).json()

        res = await client.post(f"/api/v1/sprints/{later['id']}/activate", headers=headers)
        assert res.status_code == 200
        assert res.json()["status"] == "ACTIVE"
        assert res.json()["is_current"] is True

        res = await client.get("/api/v1/sprints/current", headers=headers)
        assert res.json()["code"] == "LATER"

        await db_session.refresh(test_org)
        assert test_org.settings["current_sprint_id"] == later["id"]

    async def test_delete_clears_pointer_and_detaches_stories(self, client: AsyncClient, db_session, test_org, manager):
        headers = get_auth_headers(manager.user)
        sprint = (await client.post("/api/v1/sprints", json=sprint_payload("S-1", 0), headers=headers)).json()
        await client.post(f"/api/v1/sprints/{sprint['id']}/activate", headers=headers)
        story = Story(organization_id=test_org.id, sprint_id=sprint["id"], title="keep")
        db_session.add(story)
        await db_session.commit()

        res = await client.delete(f"/api/v1/sprints/{sprint['id']}", headers=headers)
        assert res.status_code == 200
        await db_session.refresh(story)
        assert story.sprint_id is None
        org = await db_session.get(Organization, test_org.id, populate_existing=True)
        assert "current_sprint_id" not in org.settings

    async def test_activation_is_audited_as_update(self, client: AsyncClient, db_session, manager):
        headers = get_auth_headers(manager.user)
        sprint = (await client.post("/api/v1/sprints", json=sprint_payload("S-1", 0), headers=headers)).json()
        await client.post(f"/api/v1/sprints/{sprint['id']}/activate", headers=headers)
        log = (await db_session.execute(
            select(AuditLog).where(AuditLog.entity_id == sprint["id"], AuditLog.action == "UPDATE")
        )).scalar_one()
        assert log.details == {"activated": True}
        assert "status" in log.changed_fields
