# tests/test_tenancy.py — Organization resolution, canonical membership and principal building
import pytest
from httpx import AsyncClient
from sqlalchemy import select
from starlette.requests import Request

from auth import CurrentUser
from models import Membership, OrganizationMember, MemberStatus, Rock, Team, TeamMembership
from roles import Role
from tenancy import (
    DEFAULT_TEAM_NAME, ORGANIZATION_HEADER, MembershipSource,
    build_principal, get_canonical_membership, has_organization_access, resolve_organization,
)
from tests.conftest import create_member, create_user, get_auth_headers


def make_request(organization_id=None) -> Request:
    headers = []
    if organization_id:
        headers.append((ORGANIZATION_HEADER.lower().encode(), organization_id.encode()))
    return Request({"type": "http", "method": "GET", "path": "/", "headers": headers})


def as_current(user, session_org=None) -> CurrentUser:
    return CurrentUser(
        id=user.id,
        email=user.email,
        display_name=user.display_name,
        role=user.role.value,
        is_active=user.is_active,
        is_super_admin=user.is_super_admin,
        session_organization_id=session_org,
    )


@pytest.mark.asyncio
class TestResolveOrganization:
    async def test_header_wins_when_member(self, db_session, test_org, other_org):
        m = await create_member(db_session, test_org, Role.MEMBER)
        db_session.add(Membership(
            organization_id=other_org.id, user_id=m.user.id, email=m.user.email, name="x", role=Role.VIEWER,
        ))
        await db_session.commit()
        org = await resolve_organization(make_request(other_org.id), as_current(m.user, test_org.id), db_session)
        assert org == other_org.id

    async def test_header_ignored_without_access(self, db_session, test_org, other_org):
        m = await create_member(db_session, test_org, Role.MEMBER)
        org = await resolve_organization(make_request(other_org.id), as_current(m.user), db_session)
        assert org == test_org.id

    async def test_session_selection_before_first_membership(self, db_session, test_org, other_org):
        m = await create_member(db_session, test_org, Role.MEMBER)
        db_session.add(OrganizationMember(organization_id=other_org.id, user_id=m.user.id, role=Role.MEMBER))
        await db_session.commit()
        org = await resolve_organization(make_request(), as_current(m.user, other_org.id), db_session)
        assert org == other_org.id

    async def test_falls_back_to_legacy_member(self, db_session, test_org):
        user = await create_user(db_session)
        db_session.add(OrganizationMember(organization_id=test_org.id, user_id=user.id, role=Role.MANAGER))
        await db_session.commit()
        assert await resolve_organization(make_request(), as_current(user), db_session) == test_org.id

    async def test_inactive_legacy_member_has_no_access(self, db_session, test_org):
        user = await create_user(db_session)
        db_session.add(OrganizationMember(
            organization_id=test_org.id, user_id=user.id, role=Role.ADMIN, status=MemberStatus.INACTIVE,
        ))
        await db_session.commit()
        assert await has_organization_access(db_session, as_current(user), test_org.id) is False
        assert await resolve_organization(make_request(), as_current(user), db_session) is None

    async def test_super_admin_enters_any_existing_org(self, db_session, test_org):
        root = await create_user(db_session, is_super_admin=True)
        assert await has_organization_access(db_session, as_current(root), test_org.id) is True
        assert await has_organization_access(db_session, as_current(root), "missing-org") is False


@pytest.mark.asyncio
class TestCanonicalMembership:
    async def test_legacy_manager_is_provisioned_once(self, db_session, test_org):
        user = await create_user(db_session)
        db_session.add(OrganizationMember(organization_id=test_org.id, user_id=user.id, role=Role.MANAGER))
        await db_session.commit()

        first = await get_canonical_membership(db_session, as_current(user), test_org.id)
        assert first.source == MembershipSource.PROVISIONED
        assert first.role == Role.MANAGER

        second = await get_canonical_membership(db_session, as_current(user), test_org.id)
        assert second.source == MembershipSource.MEMBERSHIP
        assert second.membership_id == first.membership_id

        memberships = (await db_session.execute(
            select(Membership).where(Membership.organization_id == test_org.id, Membership.user_id == user.id)
        )).scalars().all()
        assert len(memberships) == 1

        teams = (await db_session.execute(
            select(Team).where(Team.organization_id == test_org.id, Team.name == DEFAULT_TEAM_NAME)
        )).scalars().all()
        assert len(teams) == 1
        links = (await db_session.execute(
            select(TeamMembership).where(TeamMembership.membership_id == first.membership_id)
        )).scalars().all()
        assert [link.team_id for link in links] == [teams[0].id]

    async def test_no_access_returns_none(self, db_session, test_org):
        user = await create_user(db_session)
        assert await get_canonical_membership(db_session, as_current(user), test_org.id) is None

    async def test_provision_disabled_reports_legacy(self, db_session, test_org):
        user = await create_user(db_session)
        db_session.add(OrganizationMember(organization_id=test_org.id, user_id=user.id, role=Role.MEMBER))
        await db_session.commit()
        canonical = await get_canonical_membership(db_session, as_current(user), test_org.id, provision=False)
        assert canonical.source == MembershipSource.LEGACY
        assert canonical.membership_id is None


@pytest.mark.asyncio
class TestPrincipal:
    async def test_principal_is_stable_across_requests(self, db_session, test_org):
        m = await create_member(db_session, test_org, Role.MEMBER)
        first = await build_principal(make_request(), as_current(m.user), db_session)
        second = await build_principal(make_request(), as_current(m.user), db_session)
        assert first.to_dict() == second.to_dict()
        assert first.organization_id == test_org.id
        assert first.membership_id == m.membership.id
        assert first.role == Role.MEMBER

    async def test_no_organization_gives_no_principal(self, db_session):
        user = await create_user(db_session)
        assert await build_principal(make_request(), as_current(user), db_session) is None

    async def test_super_admin_without_membership_is_provisioned(self, db_session, test_org):
        root = await create_user(db_session, is_super_admin=True)
        principal = await build_principal(make_request(test_org.id), as_current(root), db_session)
        assert principal.is_super_admin is True
        assert principal.membership_id is not None


@pytest.mark.asyncio
class TestTenantIsolation:
    async def test_rows_of_other_tenant_are_invisible(self, client: AsyncClient, db_session, test_org, other_org):
        mine = await create_member(db_session, test_org, Role.ADMIN)
        db_session.add(Rock(organization_id=other_org.id, code="R-X", name="Foreign", year=2026, quarter=1))
        await db_session.commit()
        foreign = (await db_session.execute(select(Rock).where(Rock.code == "R-X"))).scalar_one()

        headers = {**get_auth_headers(mine.user), ORGANIZATION_HEADER: other_org.id}
        res = await client.get("/api/v1/rocks", headers=headers)
        assert res.status_code == 200
        assert res.json() == []

        res = await client.get(f"/api/v1/rocks/{foreign.id}", headers=headers)
        assert res.status_code == 404

    async def test_user_without_organization_gets_403(self, client: AsyncClient, db_session):
        user = await create_user(db_session)
        res = await client.get("/api/v1/rocks", headers=get_auth_headers(user))
        assert res.status_code == 403
        assert res.json()["error"] == "ORGANIZATION_REQUIRED"

    async def test_missing_token_is_401(self, client: AsyncClient):
        res = await client.get("/api/v1/rocks")
        assert res.status_code == 401
        assert res.json()["error"] == "Unauthorized"

    async def test_disabled_account_is_403(self, client: AsyncClient, db_session, test_org):
        m = await create_member(db_session, test_org, Role.ADMIN)
        m.user.is_active = False
        db_session.add(m.user)
        await db_session.commit()
        res = await client.get("/api/v1/rocks", headers=get_auth_headers(m.user))
        assert res.status_code == 403
        assert res.json()["error"] == "ACCOUNT_DISABLED"

