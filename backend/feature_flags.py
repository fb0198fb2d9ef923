# feature_flags.py — Global + per-organization boolean flags
# An organization row overrides the global (organization_id IS NULL) row for the same key.
# Always re-queried: a flag change takes effect on the next request.

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from models import FeatureFlag

logger = logging.getLogger("rocks.flags")

TEAM_SCOPING = "team_scoping"

# Flags that must exist globally; created on startup if missing.
GLOBAL_DEFAULTS = {
    TEAM_SCOPING: (True, "Restrict MEMBER/VIEWER reads to their own teams"),
}


@dataclass(frozen=True)
class FlagState:
    key: str
    is_enabled: bool


async def get_feature_flags_map(db: AsyncSession, organization_id: Optional[str]) -> Dict[str, FlagState]:
    condition = FeatureFlag.organization_id.is_(None)
    if organization_id:
        condition = or_(condition, FeatureFlag.organization_id == organization_id)
    result = await db.execute(select(FeatureFlag).where(condition))

    flags: Dict[str, FlagState] = {}
    overridden = set()
    for row in result.scalars().all():
        if row.organization_id is None:
            if row.key not in overridden:
                flags[row.key] = FlagState(row.key, bool(row.is_enabled))
        else:
            flags[row.key] = FlagState(row.key, bool(row.is_enabled))
            overridden.add(row.key)
    return flags


def is_enabled(flags: Optional[Dict[str, FlagState]], key: str) -> bool:
    if not flags:
        return False
    state = flags.get(key)
    return bool(state and state.is_enabled)


async def ensure_global_feature_flags(db: AsyncSession) -> None:
    """Create missing global defaults. Never raises: startup must not depend on it."""
    try:
        for key, (enabled, description) in GLOBAL_DEFAULTS.items():
            result = await db.execute(
                select(FeatureFlag).where(
                    FeatureFlag.key == key,
                    FeatureFlag.organization_id.is_(None),
                )
            )
            if result.scalar_one_or_none() is None:
                db.add(FeatureFlag(key=key, organization_id=None, is_enabled=enabled, description=description))
                logger.info(f"Created global feature flag {key}={enabled}")
        await db.commit()
    except Exception:
        await db.rollback()
        logger.exception("Failed to ensure global feature flags")


async def set_flag(db: AsyncSession, key: str, is_enabled: bool, organization_id: Optional[str]) -> FeatureFlag:
    stmt = select(FeatureFlag).where(FeatureFlag.key == key)
    if organization_id is None:
        stmt = stmt.where(FeatureFlag.organization_id.is_(None))
    else:
        stmt = stmt.where(FeatureFlag.organization_id == organization_id)
    flag = (await db.execute(stmt)).scalar_one_or_none()
    if flag is None:
        flag = FeatureFlag(key=key, organization_id=organization_id, is_enabled=is_enabled)
        db.add(flag)
    else:
        flag.is_enabled = is_enabled
    await db.commit()
    await db.refresh(flag)
    return flag
