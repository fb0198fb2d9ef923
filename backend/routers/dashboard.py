# routers/dashboard.py — Current quarter, current sprint and progress summary
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy import select, func, case
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db_session
from models import Membership, Organization, Rock, RockStatus, Sprint, Story, WorkStatus
from permissions import require_permission
from team_scope import apply_team_scope
from tenancy import Principal

router = APIRouter(prefix="/api/v1/dashboard", tags=["Dashboard"])


def quarter_of(day: date) -> int:
    return (day.month - 1) // 3 + 1


async def _current_sprint(db: AsyncSession, principal: Principal, today: date) -> Optional[Sprint]:
    base = apply_team_scope(
        select(Sprint).where(Sprint.organization_id == principal.organization_id), principal, Sprint,
    )
    org = await db.get(Organization, principal.organization_id)
    pinned = (org.settings or {}).get("current_sprint_id") if org else None
    if pinned:
        sprint = (await db.execute(base.where(Sprint.id == pinned))).scalar_one_or_none()
        if sprint is not None:
            return sprint

    sprint = (await db.execute(
        base.where(Sprint.start_date <= today, Sprint.end_date >= today)
        .order_by(Sprint.start_date.desc())
        .limit(1)
    )).scalar_one_or_none()
    if sprint is not None:
        return sprint
    return (await db.execute(
        base.where(Sprint.start_date > today).order_by(Sprint.start_date).limit(1)
    )).scalar_one_or_none()


async def _sprint_summary(db: AsyncSession, principal: Principal, sprint: Sprint) -> dict:
    stmt = apply_team_scope(
        select(Story.status, func.count(Story.id))
        .where(Story.organization_id == principal.organization_id, Story.sprint_id == sprint.id)
        .group_by(Story.status),
        principal, Story,
    )
    by_status = {
        (status.value if isinstance(status, WorkStatus) else str(status)): n
        for status, n in (await db.execute(stmt)).all()
    }
    main_rock = None
    if sprint.main_rock_id:
        rock = await db.get(Rock, sprint.main_rock_id)
        if rock is not None and rock.organization_id == principal.organization_id:
            main_rock = {"id": rock.id, "code": rock.code, "name": rock.name}
    return {
        "id": sprint.id,
        "code": sprint.code,
        "name": sprint.name,
        "goal": sprint.goal,
        "start_date": sprint.start_date.isoformat(),
        "end_date": sprint.end_date.isoformat(),
        "main_rock": main_rock,
        "stats": {
            "total": sum(by_status.values()),
            "todo": by_status.get("TODO", 0),
            "in_progress": by_status.get("IN_PROGRESS", 0),
            "blocked": by_status.get("BLOCKED", 0),
            "done": by_status.get("DONE", 0),
        },
    }


@router.get("")
async def get_dashboard(
    principal: Principal = Depends(require_permission("dashboard:read")),
    db: AsyncSession = Depends(get_db_session),
):
    """Summary of the current quarter for the organization, filtered by team scope"""
    today = date.today()
    year, quarter = today.year, quarter_of(today)

    sprint = await _current_sprint(db, principal, today)

    # Rocks of this quarter with progress from DONE stories
    rocks_q = apply_team_scope(
        select(Rock).where(
            Rock.organization_id == principal.organization_id,
            Rock.year == year,
            Rock.quarter == quarter,
        ),
        principal, Rock,
    ).order_by(Rock.code)
    rocks = (await db.execute(rocks_q)).scalars().all()

    counts = {}
    if rocks:
        result = await db.execute(
            select(
                Story.rock_id,
                func.count(Story.id),
                func.sum(case((Story.status == WorkStatus.DONE, 1), else_=0)),
            )
            .where(Story.organization_id == principal.organization_id, Story.rock_id.in_([r.id for r in rocks]))
            .group_by(Story.rock_id)
        )
        counts = {rock_id: (total, int(done or 0)) for rock_id, total, done in result.all()}

    rock_rows = []
    for rock in rocks:
        total, done = counts.get(rock.id, (0, 0))
        rock_rows.append({
            "id": rock.id,
            "code": rock.code,
            "name": rock.name,
            "status": rock.status.value if isinstance(rock.status, RockStatus) else str(rock.status),
            "owner_id": rock.owner_id,
            "progress": round(done * 100 / total) if total else 0,
            "total_stories": total,
            "done_stories": done,
        })

    # Overall
    stories_q = apply_team_scope(
        select(func.count(Story.id)).where(Story.organization_id == principal.organization_id),
        principal, Story,
    )
    total_stories = (await db.execute(stories_q)).scalar() or 0
    members_q = await db.execute(
        select(func.count(Membership.id)).where(
            Membership.organization_id == principal.organization_id,
            Membership.is_active == True,
        )
    )
    active_members = members_q.scalar() or 0

    return {
        "current_quarter": {"year": year, "quarter": quarter},
        "current_sprint": await _sprint_summary(db, principal, sprint) if sprint else None,
        "rocks": rock_rows,
        "overall_stats": {
            "total_rocks": len(rock_rows),
            "completed_rocks": sum(1 for r in rock_rows if r["status"] == RockStatus.DONE.value),
            "total_stories": total_stories,
            "active_members": active_members,
        },
    }
