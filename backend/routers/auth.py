# routers/auth.py — Authentication endpoints with token revocation and tenant selection
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from alerts import AlertService, get_alert_service
from audit import AuditAction, AuditEvent, AuditRecorder, audit_recorder, record_audit_event, request_meta
from auth import (
    ACCESS_TOKEN_EXPIRE_MINUTES, AuthService, CurrentUser, RefreshRequest,
    TokenResponse, UserLogin, UserRegister, get_current_user,
)
from database import get_db_session, get_session_factory
from errors import Forbidden, Unauthorized
from models import User
from roles import Role, get_permissions_for_role, role_label
from tenancy import Principal, get_principal, has_organization_access, resolve_organization

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])


class SelectOrganization(BaseModel):
    organization_id: str


def _user_out(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "display_name": user.display_name or "",
        "role": user.role.value if isinstance(user.role, Role) else user.role,
        "is_super_admin": bool(user.is_super_admin),
    }


def _build_token_response(user: User, organization_id: Optional[str] = None) -> TokenResponse:
    claims = AuthService.token_claims(user, organization_id)
    return TokenResponse(
        access_token=AuthService.create_access_token(claims),
        refresh_token=AuthService.create_refresh_token(claims),
        expires_in=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user={**_user_out(user), "organization_id": organization_id},
    )


def _as_current_user(user: User, organization_id: Optional[str] = None) -> CurrentUser:
    return CurrentUser(
        id=user.id,
        email=user.email,
        display_name=user.display_name or "",
        role=user.role.value if isinstance(user.role, Role) else str(user.role),
        is_active=user.is_active,
        is_super_admin=bool(user.is_super_admin),
        session_organization_id=organization_id,
    )


@router.post("/register", response_model=TokenResponse, status_code=201)
async def register(
    user_data: UserRegister,
    db: AsyncSession = Depends(get_db_session),
):
    """Register an invited account"""
    user = await AuthService.register_user(user_data, db)
    return _build_token_response(user)


@router.post("/login", response_model=TokenResponse)
async def login(
    credentials: UserLogin,
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db_session),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    alerts: AlertService = Depends(get_alert_service),
):
    """Authenticate and receive tokens"""
    user = await AuthService.authenticate_user(credentials.email, credentials.password, db)
    if not user:
        raise Unauthorized("אימייל או סיסמה שגויים", reason="invalid_credentials")

    organization_id = await resolve_organization(request, _as_current_user(user), db)
    background_tasks.add_task(
        record_audit_event,
        session_factory,
        organization_id,
        AuditEvent(
            action=AuditAction.LOGIN,
            entity_type="User",
            entity_id=user.id,
            entity_name=user.email,
            user_id=user.id,
            user_email=user.email,
            user_name=user.display_name,
            meta=request_meta(request),
        ),
        alerts,
    )
    return _build_token_response(user, organization_id)


@router.post("/refresh", response_model=TokenResponse)
async def refresh_token(
    refresh_req: RefreshRequest,
    db: AsyncSession = Depends(get_db_session),
):
    """Refresh access token using a refresh token; keeps the selected organization"""
    payload = AuthService.verify_token(refresh_req.refresh_token)

    if payload.get("type") != "refresh":
        raise Unauthorized(reason="invalid_token_type")

    jti = payload.get("jti")
    if jti and await AuthService.is_token_revoked(jti, db):
        raise Unauthorized(reason="token_revoked")

    result = await db.execute(select(User).where(User.id == payload.get("sub")))
    user = result.scalar_one_or_none()
    if not user or not user.is_active:
        raise Unauthorized(reason="unknown_user")

    return _build_token_response(user, payload.get("organization_id"))


@router.post("/logout")
async def logout(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(audit_recorder("User")),
):
    """Logout and revoke the current access token"""
    if user.token_jti and user.token_expires_at:
        await AuthService.revoke_token(user.token_jti, user.id, user.token_expires_at, db)
    audit.succeeded(action=AuditAction.LOGOUT, entity_id=user.id, entity_name=user.email)
    return {"status": "logged_out"}


@router.get("/me")
async def me(
    user: CurrentUser = Depends(get_current_user),
    principal: Optional[Principal] = Depends(get_principal),
):
    """Current user with the resolved principal for this request"""
    role = principal.role if principal else None
    return {
        "user": user.model_dump(exclude={"token_jti", "token_expires_at"}),
        "principal": principal.to_dict() if principal else None,
        "permissions": get_permissions_for_role(role) if role else [],
        "role_label": role_label(role) if role else None,
    }


@router.post("/select-organization", response_model=TokenResponse)
async def select_organization(
    data: SelectOrganization,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Issue tokens bound to an organization the user can access"""
    if not await has_organization_access(db, user, data.organization_id):
        raise Forbidden("אין לך גישה לארגון זה", code="ORGANIZATION_ACCESS_DENIED")
    result = await db.execute(select(User).where(User.id == user.id))
    return _build_token_response(result.scalar_one(), data.organization_id)
