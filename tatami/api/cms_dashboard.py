"""CMS dashboard and audit-log viewer."""

import datetime
import math
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tatami.core.errors import envelope
from tatami.core.permissions import Permission
from tatami.core.timeutil import isoformat, utcnow
from tatami.middleware.auth import CurrentUser, require_permission
from tatami.models.database import get_db
from tatami.models.tables import AdminLog, Content, Interest, Master, User

router = APIRouter(prefix="/api/cms", tags=["cms"])


def growth_pct(current: int, previous: int) -> float:
    """Percent change vs the previous period, 0 when there is no baseline."""
    if previous <= 0:
        return 0.0
    return round((current - previous) / previous * 100, 1)


async def _period_counts(db: AsyncSession, model, days: int = 30) -> tuple[int, int]:
    now = utcnow()
    cutoff = now - datetime.timedelta(days=days)
    prev_cutoff = now - datetime.timedelta(days=days * 2)

    current = (await db.execute(
        select(func.count(model.id)).where(model.created_at >= cutoff)
    )).scalar_one()
    previous = (await db.execute(
        select(func.count(model.id)).where(and_(model.created_at >= prev_cutoff, model.created_at < cutoff))
    )).scalar_one()
    return current, previous


def _log_dict(log: AdminLog, actor: User | None) -> dict:
    return {
        "id": str(log.id),
        "action": log.action,
        "user_id": str(log.user_id),
        "user": (actor.name or actor.email) if actor else None,
        "entity_type": log.entity_type,
        "entity_id": log.entity_id,
        "details": log.details,
        "ip_address": log.ip_address,
        "user_agent": log.user_agent,
        "created_at": isoformat(log.created_at),
    }


@router.get("/dashboard")
async def dashboard(
    current: CurrentUser = Depends(require_permission(Permission.VIEW_ANALYTICS)),
    db: AsyncSession = Depends(get_db),
):
    """Totals, 30-day growth, and the latest users, content and admin activity."""
    total_users = (await db.execute(select(func.count(User.id)))).scalar_one()
    total_masters = (await db.execute(
        select(func.count(Master.id)).where(Master.is_active.is_(True))
    )).scalar_one()
    total_content = (await db.execute(select(func.count(Content.id)))).scalar_one()
    total_interests = (await db.execute(select(func.count(Interest.id)))).scalar_one()

    users_now, users_prev = await _period_counts(db, User)
    interests_now, interests_prev = await _period_counts(db, Interest)

    recent_users = (await db.execute(
        select(User).order_by(User.created_at.desc()).limit(5)
    )).scalars().all()
    recent_content = (await db.execute(
        select(Content).order_by(Content.updated_at.desc()).limit(5)
    )).scalars().all()
    recent_logs = (await db.execute(
        select(AdminLog, User)
        .outerjoin(User, User.id == AdminLog.user_id)
        .order_by(AdminLog.created_at.desc())
        .limit(10)
    )).all()

    return envelope({
        "stats": {
            "total_users": total_users,
            "total_masters": total_masters,
            "total_content": total_content,
            "total_interests": total_interests,
            "user_growth": growth_pct(users_now, users_prev),
            "interest_growth": growth_pct(interests_now, interests_prev),
        },
        "recent_activity": [
            {
                "id": str(log.id),
                "action": log.action,
                "user": (actor.name or actor.email) if actor else None,
                "entity": log.entity_type or "system",
                "created_at": isoformat(log.created_at),
            }
            for log, actor in recent_logs
        ],
        "recent_users": [
            {"id": str(u.id), "name": u.name, "email": u.email, "created_at": isoformat(u.created_at)}
            for u in recent_users
        ],
        "recent_content": [
            {"id": str(c.id), "title": c.title, "status": c.status, "updated_at": isoformat(c.updated_at)}
            for c in recent_content
        ],
    })


@router.get("/logs")
async def admin_logs(
    current: CurrentUser = Depends(require_permission(Permission.VIEW_LOGS)),
    db: AsyncSession = Depends(get_db),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    user_id: UUID | None = None,
    action: str | None = None,
    entity_type: str | None = None,
):
    filters = []
    if user_id:
        filters.append(AdminLog.user_id == user_id)
    if action:
        filters.append(AdminLog.action == action)
    if entity_type:
        filters.append(AdminLog.entity_type == entity_type)

    total = (await db.execute(select(func.count(AdminLog.id)).where(*filters))).scalar_one()
    result = await db.execute(
        select(AdminLog, User)
        .outerjoin(User, User.id == AdminLog.user_id)
        .where(*filters)
        .order_by(AdminLog.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )

    return envelope({
        "logs": [_log_dict(log, actor) for log, actor in result.all()],
        "pagination": {"total": total, "page": page, "limit": limit, "total_pages": math.ceil(total / limit)},
    })
