# tests/test_organizations.py — Organizations and membership administration
import pytest
from httpx import AsyncClient
from sqlalchemy import select

from models import AllowedEmail, AuditLog, Membership, MemberStatus, OrganizationMember, TeamMembership
from roles import Role
from tests.conftest import create_member, create_user, get_auth_headers


@pytest.mark.asyncio
class TestOrganizations:
    async def test_list_only_own_organizations(self, client: AsyncClient, member, other_org):
        res = await client.get("/api/v1/organizations", headers=get_auth_headers(member.user))
        assert res.status_code == 200
        orgs = res.json()
        assert [o["slug"] for o in orgs] == ["test-org"]
        assert orgs[0]["role"] == "MEMBER"

    async def test_super_admin_lists_all(self, client: AsyncClient, super_admin, test_org, other_org):
        res = await client.get("/api/v1/organizations", headers=get_auth_headers(super_admin))
        assert sorted(o["slug"] for o in res.json()) == ["other-org", "test-org"]

    async def test_create_makes_creator_admin(self, client: AsyncClient, db_session):
        user = await create_user(db_session, "founder@example.com")
        res = await client.post("/api/v1/organizations", json={"name": "Acme Labs"},
                                headers=get_auth_headers(user))
        assert res.status_code == 201
        body = res.json()
        assert body["slug"] == "acme-labs"
        assert body["role"] == "ADMIN"
        assert body["member_count"] == 1

        membership = (await db_session.execute(
            select(Membership).where(Membership.organization_id == body["id"])
        )).scalar_one()
        links = (await db_session.execute(
            select(TeamMembership).where(TeamMembership.membership_id == membership.id)
        )).scalars().all()
        assert len(links) == 1

    async def test_slug_conflict(self, client: AsyncClient, member):
        res = await client.post("/api/v1/organizations", json={"name": "Copy", "slug": "test-org"},
                                headers=get_auth_headers(member.user))
        assert res.status_code == 409
        assert res.json()["field"] == "slug"

    async def test_current_organization(self, client: AsyncClient, viewer):
        res = await client.get("/api/v1/organizations/current", headers=get_auth_headers(viewer.user))
        assert res.status_code == 200
        assert res.json()["slug"] == "test-org"
        assert res.json()["role"] == "VIEWER"

    async def test_only_admin_updates(self, client: AsyncClient, manager):
        res = await client.patch("/api/v1/organizations/current", json={"name": "Renamed"},
                                 headers=get_auth_headers(manager.user))
        assert res.status_code == 403
        assert res.json()["required"] == "ADMIN"

    async def test_settings_merge_and_audit(self, client: AsyncClient, db_session, test_org, admin):
        test_org.settings = {"current_sprint_id": "s-1"}
        await db_session.commit()

        res = await client.patch("/api/v1/organizations/current", json={"settings": {"locale": "he"}},
                                 headers=get_auth_headers(admin.user))
        assert res.status_code == 200
        assert res.json()["settings"] == {"current_sprint_id": "s-1", "locale": "he"}

        log = (await db_session.execute(
            select(AuditLog).where(AuditLog.entity_type == "Organization")
        )).scalar_one()
        assert log.action == "SETTINGS_CHANGED"


@pytest.mark.asyncio
class TestMembers:
    async def test_list_requires_admin(self, client: AsyncClient, admin, manager):
        res = await client.get("/api/v1/organizations/current/members", headers=get_auth_headers(manager.user))
        assert res.status_code == 403

        res = await client.get("/api/v1/organizations/current/members", headers=get_auth_headers(admin.user))
        assert res.status_code == 200
        assert res.json()["total"] == 2

    async def test_add_unknown_email_allow_lists_it(self, client: AsyncClient, db_session, test_org, admin):
        res = await client.post("/api/v1/organizations/current/members",
                                json={"email": "New.Hire@example.com", "role": "MEMBER"},
                                headers=get_auth_headers(admin.user))
        assert res.status_code == 201
        body = res.json()
        assert body["email"] == "new.hire@example.com"
        assert body["user_id"] is None
        assert body["role"] == "MEMBER"

        allowed = (await db_session.execute(
            select(AllowedEmail).where(AllowedEmail.email == "new.hire@example.com")
        )).scalar_one()
        assert allowed.organization_id == test_org.id

    async def test_add_existing_member_conflicts(self, client: AsyncClient, admin, member):
        res = await client.post("/api/v1/organizations/current/members",
                                json={"email": member.user.email},
                                headers=get_auth_headers(admin.user))
        assert res.status_code == 409

    async def test_change_role_syncs_legacy_row(self, client: AsyncClient, db_session, test_org, admin, member):
        db_session.add(OrganizationMember(organization_id=test_org.id, user_id=member.user.id, role=Role.MEMBER))
        await db_session.commit()

        res = await client.patch(f"/api/v1/organizations/current/members/{member.membership.id}/role",
                                 json={"role": "MANAGER"}, headers=get_auth_headers(admin.user))
        assert res.status_code == 200
        assert res.json()["role"] == "MANAGER"

        legacy = (await db_session.execute(
            select(OrganizationMember).where(OrganizationMember.user_id == member.user.id)
        )).scalar_one()
        await db_session.refresh(legacy)
        assert legacy.role == Role.MANAGER

        log = (await db_session.execute(
            select(AuditLog).where(AuditLog.action == "ROLE_CHANGED")
        )).scalar_one()
        assert "role" in log.changed_fields

    async def test_cannot_change_own_role(self, client: AsyncClient, admin):
        res = await client.patch(f"/api/v1/organizations/current/members/{admin.membership.id}/role",
                                 json={"role": "VIEWER"}, headers=get_auth_headers(admin.user))
        assert res.status_code == 400
        assert res.json()["error"] == "SELF_ROLE_CHANGE"

    async def test_removed_member_loses_access(self, client: AsyncClient, db_session, test_org, admin):
        leaving = await create_member(db_session, test_org, Role.MEMBER)
        db_session.add(OrganizationMember(organization_id=test_org.id, user_id=leaving.user.id, role=Role.MEMBER))
        await db_session.commit()

        res = await client.delete(f"/api/v1/organizations/current/members/{leaving.membership.id}",
                                  headers=get_auth_headers(admin.user))
        assert res.status_code == 200
        assert res.json()["status"] == "deactivated"

        legacy = (await db_session.execute(
            select(OrganizationMember).where(OrganizationMember.user_id == leaving.user.id)
        )).scalar_one()
        await db_session.refresh(legacy)
        assert legacy.status == MemberStatus.INACTIVE

        res = await client.get("/api/v1/rocks", headers=get_auth_headers(leaving.user))
        assert res.status_code == 403
        assert res.json()["error"] == "ORGANIZATION_REQUIRED"

    async def test_removed_invitee_cannot_register_back_in(self, client: AsyncClient, db_session, test_org, admin):
        headers = get_auth_headers(admin.user)
        added = (await client.post("/api/v1/organizations/current/members",
                                   json={"email": "gone@example.com", "role": "MEMBER"}, headers=headers)).json()
        res = await client.delete(f"/api/v1/organizations/current/members/{added['id']}", headers=headers)
        assert res.status_code == 200

        allowed = (await db_session.execute(
            select(AllowedEmail).where(AllowedEmail.email == "gone@example.com")
        )).scalars().all()
        assert allowed == []

        res = await client.post("/api/v1/auth/register", json={
            "email": "gone@example.com",
            "password": "SecurePass123!",
        })
        assert res.status_code == 403
        assert res.json()["error"] == "EMAIL_NOT_ALLOWED"

    async def test_stale_invitation_does_not_revive_removed_member(
        self, client: AsyncClient, db_session, test_org, admin,
    ):
        headers = get_auth_headers(admin.user)
        added = (await client.post("/api/v1/organizations/current/members",
                                   json={"email": "gone@example.com", "role": "MEMBER"}, headers=headers)).json()
        await client.delete(f"/api/v1/organizations/current/members/{added['id']}", headers=headers)

        db_session.add(AllowedEmail(email="gone@example.com", organization_id=test_org.id, role=Role.MEMBER))
        await db_session.commit()
        res = await client.post("/api/v1/auth/register", json={
            "email": "gone@example.com",
            "password": "SecurePass123!",
        })
        assert res.status_code == 201
        token = res.json()["access_token"]

        res = await client.get("/api/v1/rocks", headers={"Authorization": f"Bearer {token}"})
        assert res.status_code == 403
        assert res.json()["error"] == "ORGANIZATION_REQUIRED"

        membership = await db_session.get(Membership, added["id"], populate_existing=True)
        assert membership.is_active is False
        assert membership.deactivated_by == admin.user.id

    async def test_re_adding_a_removed_member_restores_access(self, client: AsyncClient, db_session, test_org, admin):
        leaving = await create_member(db_session, test_org, Role.MEMBER)
        headers = get_auth_headers(admin.user)
        await client.delete(f"/api/v1/organizations/current/members/{leaving.membership.id}", headers=headers)

        res = await client.post("/api/v1/organizations/current/members",
                                json={"email": leaving.user.email, "role": "VIEWER"}, headers=headers)
        assert res.status_code == 201
        assert res.json()["id"] == leaving.membership.id

        res = await client.get("/api/v1/rocks", headers=get_auth_headers(leaving.user))
        assert res.status_code == 200

    async def test_membership_of_other_org_is_not_found(self, client: AsyncClient, db_session, other_org, admin):
        outsider = await create_member(db_session, other_org, Role.MEMBER)
        res = await client.delete(f"/api/v1/organizations/current/members/{outsider.membership.id}",
                                  headers=get_auth_headers(admin.user))
        assert res.status_code == 404
