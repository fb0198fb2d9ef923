# tests/test_labels.py — Organization labels
import pytest
from httpx import AsyncClient
from sqlalchemy import select

from models import AuditLog, Label
from tests.conftest import get_auth_headers


@pytest.mark.asyncio
class TestLabels:
    async def test_create_and_list_sorted(self, client: AsyncClient, manager, viewer):
        headers = get_auth_headers(manager.user)
        res = await client.post("/api/v1/labels", json={"name": "  urgent ", "color": "#ff0000"}, headers=headers)
        assert res.status_code == 201
        assert res.json()["name"] == "urgent"
        assert res.json()["is_active"] is True
        await client.post("/api/v1/labels", json={"name": "backend"}, headers=headers)

        res = await client.get("/api/v1/labels", headers=get_auth_headers(viewer.user))
        assert res.status_code == 200
        assert [label["name"] for label in res.json()] == ["backend", "urgent"]

    async def test_duplicate_name_conflicts(self, client: AsyncClient, manager):
        headers = get_auth_headers(manager.user)
        await client.post("/api/v1/labels", json={"name": "bug"}, headers=headers)
        res = await client.post("/api/v1/labels", json={"name": "bug"}, headers=headers)
        assert res.status_code == 409
        assert res.json()["error"] == "DUPLICATE_ERROR"
        assert res.json()["field"] == "name"

    async def test_blank_name_rejected(self, client: AsyncClient, manager):
        res = await client.post("/api/v1/labels", json={"name": "   "}, headers=get_auth_headers(manager.user))
        assert res.status_code == 400
        assert res.json()["field"] == "name"

    async def test_member_cannot_create(self, client: AsyncClient, member):
        res = await client.post("/api/v1/labels", json={"name": "mine"}, headers=get_auth_headers(member.user))
        assert res.status_code == 403
        assert res.json()["required"] == "labels:create"

    async def test_update_clears_color_and_checks_name(self, client: AsyncClient, manager):
        headers = get_auth_headers(manager.user)
        first = (await client.post("/api/v1/labels", json={"name": "ui", "color": "blue"}, headers=headers)).json()
        await client.post("/api/v1/labels", json={"name": "api"}, headers=headers)

        res = await client.put(f"/api/v1/labels/{first['id']}", json={"color": ""}, headers=headers)
        assert res.status_code == 200
        assert res.json()["color"] is None
        assert res.json()["name"] == "ui"

        res = await client.put(f"/api/v1/labels/{first['id']}", json={"name": "api"}, headers=headers)
        assert res.status_code == 409

    async def test_delete_is_soft(self, client: AsyncClient, db_session, manager):
        headers = get_auth_headers(manager.user)
        label = (await client.post("/api/v1/labels", json={"name": "old"}, headers=headers)).json()

        res = await client.delete(f"/api/v1/labels/{label['id']}", headers=headers)
        assert res.status_code == 200
        assert (await client.get("/api/v1/labels", headers=headers)).json() == []

        res = await client.get("/api/v1/labels", params={"include_inactive": True}, headers=headers)
        assert [l["name"] for l in res.json()] == ["old"]
        assert res.json()[0]["is_active"] is False

        log = (await db_session.execute(
            select(AuditLog).where(AuditLog.entity_type == "Label", AuditLog.action == "DELETE")
        )).scalar_one()
        assert log.entity_id == label["id"]
        assert log.new_values is None

    async def test_label_of_other_org_is_not_found(self, client: AsyncClient, db_session, other_org, manager):
        foreign = Label(organization_id=other_org.id, name="theirs")
        db_session.add(foreign)
        await db_session.commit()

        headers = get_auth_headers(manager.user)
        res = await client.put(f"/api/v1/labels/{foreign.id}", json={"name": "mine"}, headers=headers)
        assert res.status_code == 404
        assert (await client.get("/api/v1/labels", headers=headers)).json() == []
