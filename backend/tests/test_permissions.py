# tests/test_permissions.py — Permission, role-floor and ownership gates
import pytest
from httpx import AsyncClient
from sqlalchemy import select

from errors import Forbidden
from models import AuditLog, Rock
from permissions import require_ownership_or, require_permission, require_role
from roles import Role
from tenancy import Principal
from tests.conftest import get_auth_headers


def principal(role, super_admin=False) -> Principal:
    return Principal(
        organization_id="org-1", user_id="u1", membership_id="m1", role=role, is_super_admin=super_admin,
    )


@pytest.mark.asyncio
class TestGates:
    async def test_permission_gate(self):
        gate = require_permission("rocks:delete")
        assert (await gate(principal(Role.MANAGER))).role == Role.MANAGER
        with pytest.raises(Forbidden) as exc:
            await gate(principal(Role.MEMBER))
        assert exc.value.extra == {"required": "rocks:delete", "userRole": "MEMBER"}

    async def test_super_admin_is_held_to_organization_role(self):
        with pytest.raises(Forbidden) as exc:
            await require_permission("rocks:delete")(principal(Role.VIEWER, super_admin=True))
        assert exc.value.extra == {"required": "rocks:delete", "userRole": "VIEWER"}
        with pytest.raises(Forbidden):
            await require_role(Role.ADMIN)(principal(Role.VIEWER, super_admin=True))
        with pytest.raises(Forbidden):
            await require_ownership_or("stories:update")(principal(Role.VIEWER, super_admin=True))
        assert await require_permission("flags:manage")(principal(Role.ADMIN, super_admin=True))

    async def test_role_floor(self):
        gate = require_role(Role.MANAGER)
        await gate(principal(Role.ADMIN))
        with pytest.raises(Forbidden) as exc:
            await gate(principal(Role.MEMBER))
        assert exc.value.extra["required"] == "MANAGER"

    async def test_ownership_gate(self):
        gate = require_ownership_or("stories:update")
        assert (await gate(principal(Role.MANAGER))).ownership_required is False

        grant = await gate(principal(Role.MEMBER))
        assert grant.ownership_required is True
        grant.ensure_owner("m1")
        with pytest.raises(Forbidden):
            grant.ensure_owner("m2")
        with pytest.raises(Forbidden):
            grant.ensure_owner(None)

        with pytest.raises(Forbidden):
            await gate(principal(Role.VIEWER))


@pytest.mark.asyncio
class TestForbiddenOverHttp:
    async def test_member_cannot_delete_rock(self, client: AsyncClient, db_session, test_org, member):
        rock = Rock(organization_id=test_org.id, code="R-1", name="Launch", year=2026, quarter=1)
        db_session.add(rock)
        await db_session.commit()

        res = await client.delete(f"/api/v1/rocks/{rock.id}", headers=get_auth_headers(member.user))
        assert res.status_code == 403
        body = res.json()
        assert body["error"] == "Forbidden"
        assert body["required"] == "rocks:delete"
        assert body["userRole"] == "MEMBER"
        assert "request_id" in body

        assert (await db_session.execute(select(Rock).where(Rock.id == rock.id))).scalar_one_or_none()
        assert (await db_session.execute(select(AuditLog))).scalars().all() == []

    async def test_viewer_reads_but_cannot_write(self, client: AsyncClient, viewer):
        headers = get_auth_headers(viewer.user)
        assert (await client.get("/api/v1/rocks", headers=headers)).status_code == 200
        res = await client.post("/api/v1/tasks", json={"title": "t"}, headers=headers)
        assert res.status_code == 403
        assert res.json()["required"] == "tasks:create"

    async def test_manager_deletes_rock(self, client: AsyncClient, db_session, test_org, manager):
        rock = Rock(organization_id=test_org.id, code="R-1", name="Launch", year=2026, quarter=1)
        db_session.add(rock)
        await db_session.commit()
        res = await client.delete(f"/api/v1/rocks/{rock.id}", headers=get_auth_headers(manager.user))
        assert res.status_code == 200
        assert res.json() == {"status": "deleted", "id": rock.id}

    async def test_super_admin_without_membership_is_a_viewer(self, client: AsyncClient, super_admin, test_org):
        headers = get_auth_headers(super_admin, test_org.id)
        assert (await client.get("/api/v1/rocks", headers=headers)).status_code == 200

        res = await client.post(
            "/api/v1/rocks",
            json={"code": "R-9", "name": "Ops", "year": 2026, "quarter": 3},
            headers=headers,
        )
        assert res.status_code == 403
        assert res.json()["userRole"] == "VIEWER"
