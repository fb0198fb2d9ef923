# routers/feature_flags.py — Feature flag inspection and overrides
from typing import Optional

from fastapi import APIRouter, Depends, Path
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from audit import AuditAction, AuditRecorder, audit_recorder, snapshot
from database import get_db_session
from errors import NotFound
from feature_flags import get_feature_flags_map, set_flag
from models import FeatureFlag
from permissions import require_permission, require_super_admin
from tenancy import Principal, require_organization

router = APIRouter(prefix="/api/v1/feature-flags", tags=["Feature Flags"])

FLAG_KEY_PATTERN = r"^[a-z][a-z0-9_]{1,63}$"


class FlagUpdate(BaseModel):
    is_enabled: bool
    description: Optional[str] = Field(None, max_length=200)


def _flag_out(flag: FeatureFlag) -> dict:
    return {
        "key": flag.key,
        "is_enabled": bool(flag.is_enabled),
        "organization_id": flag.organization_id,
        "scope": "global" if flag.organization_id is None else "organization",
    }


@router.get("")
async def get_flags(
    principal: Principal = Depends(require_organization),
    db: AsyncSession = Depends(get_db_session),
):
    """Effective flags for the current organization"""
    flags = await get_feature_flags_map(db, principal.organization_id)
    return {key: {"key": key, "is_enabled": state.is_enabled} for key, state in sorted(flags.items())}


@router.put("/global/{key}")
async def set_global_flag(
    data: FlagUpdate,
    key: str = Path(..., pattern=FLAG_KEY_PATTERN),
    principal: Principal = Depends(require_super_admin()),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(audit_recorder("FeatureFlag")),
):
    flag = await set_flag(db, key, data.is_enabled, None)
    if data.description is not None:
        flag.description = data.description
        await db.commit()
    audit.succeeded(flag, action=AuditAction.SETTINGS_CHANGED, entity_name=key)
    return _flag_out(flag)


@router.put("/{key}")
async def set_organization_flag(
    data: FlagUpdate,
    key: str = Path(..., pattern=FLAG_KEY_PATTERN),
    principal: Principal = Depends(require_permission("flags:manage")),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(audit_recorder("FeatureFlag")),
):
    """Override a flag for the current organization only"""
    flag = await set_flag(db, key, data.is_enabled, principal.organization_id)
    audit.succeeded(flag, action=AuditAction.SETTINGS_CHANGED, entity_name=key)
    return _flag_out(flag)


@router.delete("/{key}")
async def clear_organization_flag(
    key: str = Path(..., pattern=FLAG_KEY_PATTERN),
    principal: Principal = Depends(require_permission("flags:manage")),
    db: AsyncSession = Depends(get_db_session),
    audit: AuditRecorder = Depends(audit_recorder("FeatureFlag")),
):
    """Drop the organization override so the global value applies again"""
    result = await db.execute(
        select(FeatureFlag).where(
            FeatureFlag.key == key,
            FeatureFlag.organization_id == principal.organization_id,
        )
    )
    flag = result.scalar_one_or_none()
    if not flag:
        raise NotFound("לא קיימת הגדרה ארגונית לדגל זה")
    old = snapshot(flag)
    await db.delete(flag)
    await db.commit()
    audit.succeeded(old=old, action=AuditAction.SETTINGS_CHANGED, entity_id=flag.id, entity_name=key)
    return {"status": "cleared", "key": key}
