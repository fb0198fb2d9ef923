# auth.py — Authentication for the Rocks tracker
# Features:
# - JWT access/refresh tokens with JTI for revocation
# - Optional organization_id claim carrying the session-selected tenant
# - bcrypt password hashing with a password policy
# - Brute force protection
# - Super-admin directory (deployment list + database table, 60s cache)
# - Invitation gate: new accounts only for allow-listed or super-admin emails

import os
import uuid
import secrets
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List, Callable, Set
from collections import defaultdict

import bcrypt
from jose import jwt, JWTError, ExpiredSignatureError
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, EmailStr, field_validator
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db_session
from errors import Unauthorized, AccountDisabled, Forbidden, Conflict, APIError
from models import (
    User, RevokedToken, SuperAdminEmail, AllowedEmail, OrganizationMember,
    Membership, MemberStatus, utcnow,
)
from roles import Role

logger = logging.getLogger("rocks.auth")

# ============================================================
# CONFIGURATION
# ============================================================

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "")
if not SECRET_KEY:
    SECRET_KEY = secrets.token_urlsafe(64)
    logger.warning(
        "JWT_SECRET_KEY not set. Generated ephemeral key. "
        "Set JWT_SECRET_KEY in production!"
    )

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))
REFRESH_TOKEN_EXPIRE_DAYS = int(os.getenv("REFRESH_TOKEN_EXPIRE_DAYS", "7"))
MIN_PASSWORD_LENGTH = 12
MAX_LOGIN_ATTEMPTS = 5
LOGIN_LOCKOUT_MINUTES = 15

# Bootstrap list; the super_admin_emails table is the source of truth afterwards
SUPER_ADMIN_EMAILS = [
    e.strip().lower()
    for e in os.getenv("SUPER_ADMIN_EMAILS", "").split(",")
    if e.strip()
]

security = HTTPBearer(auto_error=False)

# In-memory brute force tracker (per process)
_login_attempts: Dict[str, list] = defaultdict(list)


# ============================================================
# PYDANTIC SCHEMAS
# ============================================================

class UserRegister(BaseModel):
    email: EmailStr
    password: str
    display_name: str = ""

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        if len(v) < MIN_PASSWORD_LENGTH:
            raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        if not any(c.isupper() for c in v):
            raise ValueError("Password must contain at least one uppercase letter")
        if not any(c.isdigit() for c in v):
            raise ValueError("Password must contain at least one digit")
        return v


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: Dict[str, Any]


class CurrentUser(BaseModel):
    id: str
    email: str
    display_name: str
    role: str
    is_active: bool
    is_super_admin: bool = False
    session_organization_id: Optional[str] = None
    token_jti: Optional[str] = None
    token_expires_at: Optional[datetime] = None


class RefreshRequest(BaseModel):
    refresh_token: str


# ============================================================
# SUPER-ADMIN DIRECTORY
# ============================================================

class SuperAdminDirectory:
    """Union of the deployment list and the super_admin_emails table, cached per process."""

    def __init__(self, bootstrap: List[str], ttl_seconds: int = 60,
                 clock: Callable[[], datetime] = utcnow):
        self.bootstrap = {e.lower() for e in bootstrap}
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock
        self._emails: Optional[Set[str]] = None
        self._loaded_at: Optional[datetime] = None

    def invalidate(self) -> None:
        self._emails = None
        self._loaded_at = None

    async def emails(self, db: AsyncSession) -> Set[str]:
        now = self.clock()
        if self._emails is not None and self._loaded_at and now - self._loaded_at < self.ttl:
            return self._emails
        try:
            result = await db.execute(select(SuperAdminEmail.email))
            stored = {e.lower() for e in result.scalars().all()}
        except Exception:
            logger.exception("Failed to load super-admin emails, using bootstrap list")
            return set(self.bootstrap)
        self._emails = stored | self.bootstrap
        self._loaded_at = now
        return self._emails

    async def is_super_admin(self, email: str, db: AsyncSession) -> bool:
        return email.lower() in await self.emails(db)


super_admins = SuperAdminDirectory(SUPER_ADMIN_EMAILS)


# ============================================================
# AUTH SERVICE
# ============================================================

class AuthService:
    """Authentication service: passwords, tokens, login policy"""

    @staticmethod
    def hash_password(password: str) -> str:
        salt = bcrypt.gensalt(rounds=12)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    @staticmethod
    def verify_password(password: str, password_hash: Optional[str]) -> bool:
        if not password_hash:
            return False
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))

    @staticmethod
    def _create_token(data: Dict[str, Any], token_type: str, expires_delta: timedelta) -> str:
        to_encode = data.copy()
        now = datetime.now(timezone.utc)
        to_encode.update({
            "exp": now + expires_delta,
            "iat": now,
            "type": token_type,
            "jti": str(uuid.uuid4()),
        })
        return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

    @staticmethod
    def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        delta = expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
        return AuthService._create_token(data, "access", delta)

    @staticmethod
    def create_refresh_token(data: Dict[str, Any]) -> str:
        return AuthService._create_token(data, "refresh", timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS))

    @staticmethod
    def token_claims(user: User, organization_id: Optional[str] = None) -> Dict[str, Any]:
        claims = {"sub": user.id, "email": user.email}
        if organization_id:
            claims["organization_id"] = organization_id
        return claims

    @staticmethod
    def verify_token(token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        except ExpiredSignatureError:
            raise Unauthorized("פג תוקף ההתחברות", reason="token_expired")
        except JWTError:
            raise Unauthorized(reason="invalid_token")

    @staticmethod
    def _check_brute_force(email: str) -> None:
        """Check if login attempts exceed threshold"""
        now = datetime.now(timezone.utc)
        cutoff = now - timedelta(minutes=LOGIN_LOCKOUT_MINUTES)
        _login_attempts[email] = [t for t in _login_attempts[email] if t > cutoff]
        if len(_login_attempts[email]) >= MAX_LOGIN_ATTEMPTS:
            raise APIError(
                f"יותר מדי ניסיונות התחברות. נסה שוב בעוד {LOGIN_LOCKOUT_MINUTES} דקות.",
                code="TOO_MANY_ATTEMPTS",
                status_code=429,
            )

    @staticmethod
    def _record_failed_attempt(email: str) -> None:
        _login_attempts[email].append(datetime.now(timezone.utc))

    @staticmethod
    def _clear_attempts(email: str) -> None:
        _login_attempts.pop(email, None)

    @staticmethod
    async def register_user(user_data: UserRegister, db: AsyncSession) -> User:
        """Create an account for an invited (allow-listed) or super-admin email."""
        email = user_data.email.lower()
        existing = await db.execute(select(User).where(User.email == email))
        if existing.scalar_one_or_none():
            raise Conflict("משתמש עם אימייל זה כבר קיים", field="email")

        allowed = (await db.execute(
            select(AllowedEmail).where(AllowedEmail.email == email)
        )).scalars().all()
        is_super_admin = await super_admins.is_super_admin(email, db)
        if not allowed and not is_super_admin:
            logger.warning(f"Registration rejected for non-invited email {email}")
            raise Forbidden("האימייל אינו מורשה להירשם למערכת", code="EMAIL_NOT_ALLOWED")

        new_user = User(
            email=email,
            display_name=user_data.display_name or email.split("@")[0],
            password_hash=AuthService.hash_password(user_data.password),
            role=Role.VIEWER,
            is_super_admin=is_super_admin,
            is_active=True,
        )
        db.add(new_user)
        await db.flush()

        # Legacy access rows from the invitation list
        for entry in allowed:
            if entry.organization_id:
                db.add(OrganizationMember(
                    organization_id=entry.organization_id,
                    user_id=new_user.id,
                    role=entry.role or Role.VIEWER,
                    status=MemberStatus.ACTIVE,
                ))

        # Memberships created by email before the account existed
        await db.execute(
            update(Membership)
            .where(Membership.email == email, Membership.user_id.is_(None))
            .values(user_id=new_user.id)
        )
        await db.commit()
        await db.refresh(new_user)
        logger.info(f"Registered user {new_user.id} (super_admin={is_super_admin}, invitations={len(allowed)})")
        return new_user

    @staticmethod
    async def authenticate_user(email: str, password: str, db: AsyncSession) -> Optional[User]:
        email = email.lower()
        AuthService._check_brute_force(email)

        result = await db.execute(select(User).where(User.email == email))
        user = result.scalar_one_or_none()

        if not user or not AuthService.verify_password(password, user.password_hash):
            AuthService._record_failed_attempt(email)
            return None

        if not user.is_active:
            raise AccountDisabled()

        AuthService._clear_attempts(email)

        if not user.is_super_admin and await super_admins.is_super_admin(email, db):
            user.is_super_admin = True
            logger.info(f"Upgraded user {user.id} to super admin")

        user.last_login_at = utcnow()
        await db.commit()
        await db.refresh(user)
        return user

    @staticmethod
    async def is_token_revoked(jti: str, db: AsyncSession) -> bool:
        result = await db.execute(select(RevokedToken).where(RevokedToken.jti == jti))
        return result.scalar_one_or_none() is not None

    @staticmethod
    async def revoke_token(jti: str, user_id: str, expires_at: datetime, db: AsyncSession) -> None:
        db.add(RevokedToken(jti=jti, user_id=user_id, expires_at=expires_at))
        await db.commit()


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db_session),
) -> CurrentUser:
    if credentials is None or not credentials.credentials:
        raise Unauthorized()

    payload = AuthService.verify_token(credentials.credentials)

    if payload.get("type") != "access":
        raise Unauthorized(reason="invalid_token_type")

    jti = payload.get("jti")
    if jti and await AuthService.is_token_revoked(jti, db):
        raise Unauthorized(reason="token_revoked")

    user_id = payload.get("sub")
    if not user_id:
        raise Unauthorized(reason="invalid_token")

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user:
        raise Unauthorized(reason="unknown_user")
    if not user.is_active:
        raise AccountDisabled()

    exp = payload.get("exp")
    return CurrentUser(
        id=user.id,
        email=user.email,
        display_name=user.display_name or "",
        role=user.role.value if isinstance(user.role, Role) else str(user.role),
        is_active=user.is_active,
        is_super_admin=bool(user.is_super_admin),
        session_organization_id=payload.get("organization_id"),
        token_jti=jti,
        token_expires_at=datetime.fromtimestamp(exp, tz=timezone.utc) if exp else None,
    )
