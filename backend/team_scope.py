# team_scope.py — Team-based row visibility for MEMBER/VIEWER principals
#
# This is a visibility refinement layered on top of the organization_id filter,
# which remains the tenant boundary. Admins, managers, super-admins and
# organizations without team_scoping enabled keep full visibility.

from dataclasses import dataclass
from typing import Dict, List, Optional

from sqlalchemy import false, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from errors import NotFound, ValidationFailed
from feature_flags import TEAM_SCOPING, is_enabled
from models import Team
from roles import Role, is_role_at_least
from tenancy import Principal

# Whether rows with team_id IS NULL (org-wide legacy rows) stay visible to
# team-scoped principals, per entity type. Call sites may override.
TEAM_SCOPE_NULL_POLICY: Dict[str, bool] = {
    "Objective": True,
    "Rock": True,
    "Sprint": True,
    "Story": True,
    "Task": False,
}


@dataclass(frozen=True)
class TeamVisibility:
    team_ids: List[str]
    include_null: bool


def null_policy_for(model, allow_null_team: Optional[bool] = None) -> bool:
    if allow_null_team is not None:
        return allow_null_team
    return TEAM_SCOPE_NULL_POLICY.get(model.__name__, False)


def resolve_team_visibility(principal: Optional[Principal], allow_null_team: bool) -> Optional[TeamVisibility]:
    """None means unrestricted."""
    # No principal: the organization filter is the boundary, nothing to refine
    if principal is None:
        return None
    # Platform operators see everything
    if principal.is_super_admin:
        return None
    # Opt-in rollout per organization
    if not is_enabled(principal.feature_flags, TEAM_SCOPING):
        return None
    # Managers and admins see all teams
    if is_role_at_least(principal.role, Role.MANAGER):
        return None
    return TeamVisibility(team_ids=list(principal.team_ids), include_null=allow_null_team)


def team_scope_clause(principal: Optional[Principal], model, allow_null_team: Optional[bool] = None):
    """Where-clause restricting model rows to the principal's teams, or None."""
    visibility = resolve_team_visibility(principal, null_policy_for(model, allow_null_team))
    if visibility is None:
        return None

    column = model.team_id
    if visibility.team_ids and visibility.include_null:
        return or_(column.in_(visibility.team_ids), column.is_(None))
    if visibility.team_ids:
        return column.in_(visibility.team_ids)
    if visibility.include_null:
        return column.is_(None)
    return false()


def apply_team_scope(stmt, principal: Optional[Principal], model, allow_null_team: Optional[bool] = None):
    """Return stmt with the team clause ANDed in; stmt itself is left untouched."""
    clause = team_scope_clause(principal, model, allow_null_team)
    if clause is None:
        return stmt
    return stmt.where(clause)


async def get_scoped_or_404(
    db: AsyncSession,
    model,
    principal: Principal,
    entity_id: str,
    allow_null_team: Optional[bool] = None,
    message: str = "הרשומה לא נמצאה",
):
    """Fetch one tenant row through the team scope. Other tenants' rows and rows
    hidden by team scope are reported exactly like missing ones."""
    stmt = select(model).where(model.id == entity_id, model.organization_id == principal.organization_id)
    stmt = apply_team_scope(stmt, principal, model, allow_null_team)
    entity = (await db.execute(stmt)).scalar_one_or_none()
    if entity is None:
        raise NotFound(message)
    return entity


async def validate_team_id(db: AsyncSession, organization_id: str, team_id: Optional[str]) -> Optional[str]:
    if not team_id:
        return None
    result = await db.execute(
        select(Team.id).where(
            Team.id == team_id,
            Team.organization_id == organization_id,
            Team.is_active == True,
        )
    )
    if result.scalar_one_or_none() is None:
        raise ValidationFailed("הצוות שנבחר אינו קיים בארגון", code="INVALID_TEAM", field="team_id")
    return team_id


def default_team_id(principal: Optional[Principal]) -> Optional[str]:
    if principal is None or not principal.team_ids:
        return None
    return principal.team_ids[0]


async def resolve_team_for_write(
    db: AsyncSession, principal: Principal, team_id: Optional[str], creating: bool = True,
) -> Optional[str]:
    """Explicit team must belong to the organization.

    Without one, new rows default to the principal's first team; on update an
    explicit null moves the row back to org-wide.
    """
    if team_id:
        return await validate_team_id(db, principal.organization_id, team_id)
    return default_team_id(principal) if creating else None
