"""
Interest expression: one row per (user, master), then a forward-only lifecycle.

Duplicates are refused with 409: the pre-check answers the common case, the
unique constraint (uq_interests_user_master) answers the race.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tatami.core.accounts import contribution
from tatami.core.audit import log_admin_action
from tatami.core.errors import APIError, envelope, not_found
from tatami.core.interest_flow import InterestStatus, can_transition
from tatami.core.permissions import Permission
from tatami.core.timeutil import isoformat, utcnow
from tatami.middleware.auth import CurrentUser, require_permission, require_user
from tatami.models.database import get_db
from tatami.models.tables import Interest, Master

import structlog

logger = structlog.get_logger()
router = APIRouter(tags=["interests"])


class ExpressInterestRequest(BaseModel):
    master_id: UUID
    message: str | None = Field(default=None, max_length=500)


class InterestStatusRequest(BaseModel):
    status: InterestStatus


def master_summary(master: Master | None) -> dict | None:
    if master is None:
        return None
    return {
        "id": str(master.id),
        "name": master.name,
        "name_en": master.name_en,
        "name_ja": master.name_ja,
        "title": master.title,
        "title_en": master.title_en,
        "title_ja": master.title_ja,
        "hero_image": master.hero_image,
        "has_trip_product": master.has_trip_product,
    }


def interest_dict(interest: Interest, master: Master | None = None) -> dict:
    data = {
        "id": str(interest.id),
        "user_id": str(interest.user_id),
        "master_id": str(interest.master_id),
        "status": interest.status,
        "message": interest.message,
        "created_at": isoformat(interest.created_at),
        "updated_at": isoformat(interest.updated_at),
    }
    if master is not None:
        data["master"] = master_summary(master)
    return data


@router.get("/api/interests")
async def list_interests(
    current: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(Interest, Master)
        .outerjoin(Master, Master.id == Interest.master_id)
        .where(Interest.user_id == current.id)
        .order_by(Interest.created_at.desc())
    )
    rows = result.all()
    return {
        "success": True,
        "data": [interest_dict(interest, master) for interest, master in rows],
        "meta": {"total": len(rows)},
    }


@router.post("/api/interests", status_code=201)
async def express_interest(
    req: ExpressInterestRequest,
    current: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(Master).where(Master.id == req.master_id, Master.is_active.is_(True))
    )
    master = result.scalar_one_or_none()
    if not master:
        raise not_found("Master")

    existing = await db.execute(
        select(Interest.id).where(Interest.user_id == current.id, Interest.master_id == master.id)
    )
    if existing.scalar_one_or_none() is not None:
        raise APIError(409, "Interest already expressed")

    interest = Interest(
        user_id=current.id,
        master_id=master.id,
        status=InterestStatus.INTERESTED.value,
        message=req.message,
    )
    db.add(interest)
    db.add(contribution(
        current.id,
        "INTEREST",
        metadata={
            "master_id": str(master.id),
            "master_name": master.name,
            "message": req.message,
            "timestamp": isoformat(utcnow()),
        },
    ))

    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise APIError(409, "Interest already expressed")

    logger.info("interest_expressed", interest_id=str(interest.id),
                user_id=str(current.id), master_id=str(master.id))
    return envelope({"interest": interest_dict(interest), "master": master_summary(master)})


@router.patch("/api/cms/interests/{interest_id}/status")
async def update_interest_status(
    interest_id: UUID,
    req: InterestStatusRequest,
    request: Request,
    current: CurrentUser = Depends(require_permission(Permission.UPDATE_MASTERS)),
    db: AsyncSession = Depends(get_db),
):
    interest = await db.get(Interest, interest_id)
    if not interest:
        raise not_found("Interest")

    previous = interest.status
    target = req.status.value
    if not can_transition(previous, target):
        raise APIError(
            400,
            f"Cannot move interest from {previous} to {target}",
            code="INVALID_TRANSITION",
        )

    interest.status = target
    await db.commit()

    await log_admin_action(
        db, current.id, "UPDATE_INTEREST_STATUS",
        entity_type="interest", entity_id=interest.id,
        details={"from": previous, "to": target, "master_id": interest.master_id},
        request=request,
    )
    logger.info("interest_status_changed", interest_id=str(interest.id), from_status=previous, to_status=target)
    return envelope(interest_dict(interest))
