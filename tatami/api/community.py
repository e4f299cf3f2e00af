"""
Community events. Registrations are EVENT_JOIN contributions; there is no
separate registrations table.
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tatami.core.accounts import contribution
from tatami.core.errors import APIError, envelope
from tatami.core.timeutil import isoformat, utcnow
from tatami.middleware.auth import CurrentUser, require_user
from tatami.models.database import get_db
from tatami.models.tables import Contribution

import structlog

logger = structlog.get_logger()
router = APIRouter(prefix="/api/community/events", tags=["community"])


class JoinEventRequest(BaseModel):
    event_id: str = Field(min_length=1, max_length=100)
    event_title: str | None = Field(default=None, max_length=255)


async def _joined_events(db: AsyncSession, user_id) -> list[Contribution]:
    result = await db.execute(
        select(Contribution)
        .where(Contribution.user_id == user_id, Contribution.type == "EVENT_JOIN")
        .order_by(Contribution.created_at.desc())
    )
    return list(result.scalars().all())


@router.post("/join")
async def join_event(
    req: JoinEventRequest,
    current: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    joined = await _joined_events(db, current.id)
    if any((row.metadata_ or {}).get("event_id") == req.event_id for row in joined):
        raise APIError(409, "Already joined this event")

    row = contribution(current.id, "EVENT_JOIN", metadata={
        "event_id": req.event_id,
        "event_title": req.event_title,
        "joined_at": isoformat(utcnow()),
    })
    db.add(row)
    await db.commit()

    logger.info("event_joined", user_id=str(current.id), event_id=req.event_id, contribution_id=str(row.id))
    return {
        "success": True,
        "message": "Successfully joined event",
        "data": {"event_id": req.event_id, "joined_at": isoformat(row.created_at), "points": row.value},
    }


@router.get("/join")
async def list_joined_events(
    current: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    joined = await _joined_events(db, current.id)
    return envelope({
        "events": [
            {
                "id": (row.metadata_ or {}).get("event_id"),
                "title": (row.metadata_ or {}).get("event_title"),
                "joined_at": isoformat(row.created_at),
                "points": row.value,
            }
            for row in joined
        ],
    })
