"""Public master catalogue: active masters only."""

import json
import math
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from tatami.core.errors import envelope, not_found
from tatami.core.timeutil import isoformat
from tatami.models.database import get_db
from tatami.models.tables import Interest, Master, User

import structlog

logger = structlog.get_logger()
router = APIRouter(prefix="/api/masters", tags=["masters"])

JSON_FIELDS = ("story_content", "top_clips", "mission_card")

LOCALIZED_FIELDS = (
    "name", "name_en", "name_ja",
    "title", "title_en", "title_ja",
    "description", "description_en", "description_ja",
    "bio", "bio_en", "bio_ja",
    "location", "location_en", "location_ja",
)


def parse_json_field(master: Master, field: str):
    raw = getattr(master, field)
    if not raw:
        return [] if field == "top_clips" else None
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("master_json_field_invalid", master_id=str(master.id), field=field)
        return None


def master_dict(master: Master, interest_count: int | None = None) -> dict:
    data = {"id": str(master.id)}
    data.update({field: getattr(master, field) for field in LOCALIZED_FIELDS})
    data.update({
        "hero_image": master.hero_image,
        "profile_video": master.profile_video,
        "intro_video": master.intro_video,
        "has_trip_product": master.has_trip_product,
        "trip_booking_url": master.trip_booking_url,
        "priority": master.priority,
        "is_active": master.is_active,
        "created_at": isoformat(master.created_at),
        "updated_at": isoformat(master.updated_at),
    })
    for field in JSON_FIELDS:
        data[field] = parse_json_field(master, field)
    if interest_count is not None:
        data["interest_count"] = interest_count
    return data


def interest_count_subquery():
    return (
        select(Interest.master_id, func.count(Interest.id).label("interest_count"))
        .group_by(Interest.master_id)
        .subquery()
    )


@router.get("")
async def list_masters(
    db: AsyncSession = Depends(get_db),
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
    search: str | None = None,
    has_trip_product: bool | None = None,
):
    filters = [Master.is_active.is_(True)]
    if search:
        pattern = f"%{search.lower()}%"
        filters.append(or_(*(
            func.lower(getattr(Master, field)).like(pattern)
            for field in ("name", "name_en", "name_ja", "title", "title_en", "title_ja", "description")
        )))
    if has_trip_product is not None:
        filters.append(Master.has_trip_product.is_(has_trip_product))

    total = (await db.execute(select(func.count(Master.id)).where(*filters))).scalar_one()

    counts = interest_count_subquery()
    result = await db.execute(
        select(Master, func.coalesce(counts.c.interest_count, 0))
        .outerjoin(counts, counts.c.master_id == Master.id)
        .where(*filters)
        .order_by(Master.priority.desc(), Master.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )

    total_pages = math.ceil(total / limit)
    return envelope({
        "masters": [master_dict(master, count) for master, count in result.all()],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": total_pages,
            "has_next_page": page < total_pages,
            "has_prev_page": page > 1,
        },
    })


@router.get("/{master_id}")
async def get_master(master_id: UUID, db: AsyncSession = Depends(get_db)):
    result = await db.execute(
        select(Master).where(Master.id == master_id, Master.is_active.is_(True))
    )
    master = result.scalar_one_or_none()
    if not master:
        raise not_found("Master")

    interest_count = (await db.execute(
        select(func.count(Interest.id)).where(Interest.master_id == master.id)
    )).scalar_one()

    recent = await db.execute(
        select(Interest, User)
        .join(User, User.id == Interest.user_id)
        .where(Interest.master_id == master.id)
        .order_by(Interest.created_at.desc())
        .limit(10)
    )

    return envelope({
        "master": master_dict(master),
        "stats": {"interest_count": interest_count},
        "recent_interests": [
            {
                "id": str(interest.id),
                "created_at": isoformat(interest.created_at),
                "user": {"id": str(user.id), "name": user.name, "avatar": user.avatar},
            }
            for interest, user in recent.all()
        ],
    })
