# tests/conftest.py — Shared test fixtures
import os
import uuid
from datetime import timedelta
from dataclasses import dataclass
from typing import List, Optional

import httpx
import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"

from models import (
    Base, User, Organization, Membership, Team, TeamMembership, FeatureFlag, utcnow,
)
from alerts import AlertService, AlertConfigCache, CooldownTracker, get_alert_service
from auth import AuthService, super_admins, _login_attempts
from database import get_db_session, get_session_factory
from feature_flags import TEAM_SCOPING
from roles import Role
from main import app

TEST_PASSWORD = "TestPassword123!"


class FakeClock:
    """Deterministic clock for cache TTL and cooldown tests."""

    def __init__(self, start=None):
        self.now = start or utcnow()

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class WebhookRecorder:
    """httpx.MockTransport handler that remembers every request."""

    def __init__(self, status_code: int = 200):
        self.status_code = status_code
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json={"ok": True})


@dataclass
class Member:
    user: User
    membership: Membership

    @property
    def id(self) -> str:
        return self.user.id


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def webhook():
    return WebhookRecorder()


@pytest.fixture
def alerts(session_factory, clock, webhook):
    return AlertService(
        cache=AlertConfigCache(clock=clock),
        cooldowns=CooldownTracker(clock=clock),
        session_factory=session_factory,
        transport=httpx.MockTransport(webhook),
    )


@pytest_asyncio.fixture(scope="function")
async def client(session_factory, alerts):
    """HTTP test client with overridden DB, session factory and alert service"""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_alert_service] = lambda: alerts
    super_admins.invalidate()
    _login_attempts.clear()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
    super_admins.invalidate()


# ============================================================
# DATA FACTORIES
# ============================================================

async def create_org(db: AsyncSession, name: str = "Test Organization", slug: Optional[str] = None) -> Organization:
    org = Organization(
        id=str(uuid.uuid4()),
        name=name,
        slug=slug or f"org-{uuid.uuid4().hex[:8]}",
        is_active=True,
        settings={},
    )
    db.add(org)
    await db.commit()
    await db.refresh(org)
    return org


async def create_user(
    db: AsyncSession,
    email: Optional[str] = None,
    role: Role = Role.VIEWER,
    is_super_admin: bool = False,
    is_active: bool = True,
) -> User:
    email = email or f"user-{uuid.uuid4().hex[:8]}@example.com"
    user = User(
        id=str(uuid.uuid4()),
        email=email,
        display_name=email.split("@")[0],
        password_hash=AuthService.hash_password(TEST_PASSWORD),
        role=role,
        is_super_admin=is_super_admin,
        is_active=is_active,
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


async def create_member(
    db: AsyncSession,
    org: Organization,
    role: Role,
    email: Optional[str] = None,
    teams: Optional[List[Team]] = None,
) -> Member:
    user = await create_user(db, email=email)
    membership = Membership(
        organization_id=org.id,
        user_id=user.id,
        email=user.email,
        name=user.display_name,
        role=role,
        is_active=True,
        joined_at=utcnow(),
    )
    db.add(membership)
    await db.commit()
    await db.refresh(membership)
    for team in teams or []:
        db.add(TeamMembership(team_id=team.id, membership_id=membership.id))
    await db.commit()
    return Member(user=user, membership=membership)


async def create_team(db: AsyncSession, org: Organization, name: str) -> Team:
    team = Team(organization_id=org.id, name=name, is_active=True)
    db.add(team)
    await db.commit()
    await db.refresh(team)
    return team


async def set_team_scoping(db: AsyncSession, enabled: bool, organization_id: Optional[str] = None) -> None:
    db.add(FeatureFlag(key=TEAM_SCOPING, organization_id=organization_id, is_enabled=enabled))
    await db.commit()


def get_auth_headers(user: User, organization_id: Optional[str] = None) -> dict:
    """Generate auth headers for a user, optionally carrying a session organization"""
    token = AuthService.create_access_token(AuthService.token_claims(user, organization_id))
    return {"Authorization": f"Bearer {token}"}


# ============================================================
# COMMON FIXTURES
# ============================================================

@pytest_asyncio.fixture
async def test_org(db_session):
    return await create_org(db_session, "Test Organization", "test-org")


@pytest_asyncio.fixture
async def other_org(db_session):
    return await create_org(db_session, "Other Organization", "other-org")


@pytest_asyncio.fixture
async def admin(db_session, test_org):
    return await create_member(db_session, test_org, Role.ADMIN, "admin@example.com")


@pytest_asyncio.fixture
async def manager(db_session, test_org):
    return await create_member(db_session, test_org, Role.MANAGER, "manager@example.com")


@pytest_asyncio.fixture
async def member(db_session, test_org):
    return await create_member(db_session, test_org, Role.MEMBER, "member@example.com")


@pytest_asyncio.fixture
async def viewer(db_session, test_org):
    return await create_member(db_session, test_org, Role.VIEWER, "viewer@example.com")


@pytest_asyncio.fixture
async def super_admin(db_session):
    return await create_user(db_session, "root@example.com", is_super_admin=True)
