"""
CMS: master management.

Every route: session (401) → permission (403) → work → audit entry.
Deleting is a soft delete, and is refused outright while interests exist.
"""

import json
import math
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from tatami.api.masters import interest_count_subquery, master_dict
from tatami.core.audit import changed_fields, log_admin_action
from tatami.core.errors import APIError, envelope, not_found
from tatami.core.permissions import Permission
from tatami.core.urls import validate_absolute_url
from tatami.middleware.auth import CurrentUser, require_permission
from tatami.models.database import get_db
from tatami.models.tables import Interest, Master

import structlog

logger = structlog.get_logger()
router = APIRouter(prefix="/api/cms/masters", tags=["cms"])

SORTABLE = {"updated_at", "created_at", "name", "priority"}


class MasterPayload(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    title: str = Field(min_length=1, max_length=255)
    name_en: str | None = None
    name_ja: str | None = None
    title_en: str | None = None
    title_ja: str | None = None
    description: str | None = None
    description_en: str | None = None
    description_ja: str | None = None
    bio: str | None = None
    bio_en: str | None = None
    bio_ja: str | None = None
    location: str | None = None
    location_en: str | None = None
    location_ja: str | None = None
    hero_image: str | None = None
    profile_video: str | None = None
    intro_video: str | None = None
    story_content: Any = None
    top_clips: Any = None
    mission_card: Any = None
    has_trip_product: bool = False
    trip_booking_url: str | None = None
    priority: int = 0
    is_active: bool = True


def _row_values(payload: MasterPayload) -> dict:
    """Payload → column values. Nested structures are stored as JSON text."""
    values = payload.model_dump()
    for field in ("story_content", "top_clips", "mission_card"):
        values[field] = json.dumps(values[field]) if values[field] is not None else None
    for field, value in values.items():
        if value == "":
            values[field] = None
    if values["trip_booking_url"]:
        validate_absolute_url(values["trip_booking_url"], "trip_booking_url")
    return values


async def _get_master(db: AsyncSession, master_id: UUID) -> Master:
    master = await db.get(Master, master_id)
    if not master:
        raise not_found("Master")
    return master


@router.get("")
async def list_masters(
    request: Request,
    current: CurrentUser = Depends(require_permission(Permission.VIEW_MASTERS)),
    db: AsyncSession = Depends(get_db),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: str | None = None,
    status: str = Query("all", pattern="^(active|inactive|all)$"),
    sort_by: str = "updated_at",
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
):
    if sort_by not in SORTABLE:
        raise APIError(400, f"sort_by must be one of {sorted(SORTABLE)}")

    filters = []
    if search:
        pattern = f"%{search.lower()}%"
        filters.append(or_(*(
            func.lower(getattr(Master, field)).like(pattern)
            for field in ("name", "title", "name_en", "name_ja")
        )))
    if status == "active":
        filters.append(Master.is_active.is_(True))
    elif status == "inactive":
        filters.append(Master.is_active.is_(False))

    total = (await db.execute(select(func.count(Master.id)).where(*filters))).scalar_one()

    column = getattr(Master, sort_by)
    counts = interest_count_subquery()
    result = await db.execute(
        select(Master, func.coalesce(counts.c.interest_count, 0))
        .outerjoin(counts, counts.c.master_id == Master.id)
        .where(*filters)
        .order_by(column.desc() if sort_order == "desc" else column.asc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    masters = [master_dict(master, count) for master, count in result.all()]

    await log_admin_action(
        db, current.id, "VIEW_MASTERS", entity_type="master",
        details={"search": search, "status": status, "page": page, "limit": limit},
        request=request,
    )

    return envelope({
        "masters": masters,
        "pagination": {"total": total, "page": page, "limit": limit, "total_pages": math.ceil(total / limit)},
    })


@router.post("", status_code=201)
async def create_master(
    payload: MasterPayload,
    request: Request,
    current: CurrentUser = Depends(require_permission(Permission.CREATE_MASTERS)),
    db: AsyncSession = Depends(get_db),
):
    master = Master(**_row_values(payload))
    db.add(master)
    await db.commit()

    await log_admin_action(
        db, current.id, "CREATE_MASTER", entity_type="master", entity_id=master.id,
        details={"name": master.name, "title": master.title},
        request=request,
    )
    logger.info("master_created", master_id=str(master.id), actor=str(current.id))
    return envelope(master_dict(master, 0))


@router.get("/{master_id}")
async def get_master(
    master_id: UUID,
    current: CurrentUser = Depends(require_permission(Permission.VIEW_MASTERS)),
    db: AsyncSession = Depends(get_db),
):
    master = await _get_master(db, master_id)
    interest_count = (await db.execute(
        select(func.count(Interest.id)).where(Interest.master_id == master.id)
    )).scalar_one()
    return envelope(master_dict(master, interest_count))


@router.put("/{master_id}")
async def update_master(
    master_id: UUID,
    payload: MasterPayload,
    request: Request,
    current: CurrentUser = Depends(require_permission(Permission.UPDATE_MASTERS)),
    db: AsyncSession = Depends(get_db),
):
    master = await _get_master(db, master_id)
    values = _row_values(payload)
    changes = changed_fields(master, values)

    for field, value in values.items():
        setattr(master, field, value)
    await db.commit()

    await log_admin_action(
        db, current.id, "UPDATE_MASTER", entity_type="master", entity_id=master.id,
        details={"name": master.name, "title": master.title, "changes": changes},
        request=request,
    )
    logger.info("master_updated", master_id=str(master.id), changes=changes)
    return envelope(master_dict(master))


@router.delete("/{master_id}")
async def delete_master(
    master_id: UUID,
    request: Request,
    current: CurrentUser = Depends(require_permission(Permission.DELETE_MASTERS)),
    db: AsyncSession = Depends(get_db),
):
    master = await _get_master(db, master_id)

    interest_count = (await db.execute(
        select(func.count(Interest.id)).where(Interest.master_id == master.id)
    )).scalar_one()
    if interest_count > 0:
        raise APIError(
            400,
            "Cannot delete master with existing user interests",
            code="HAS_INTERESTS",
            details=f"{interest_count} users have expressed interest in this master",
        )

    master.is_active = False
    await db.commit()

    await log_admin_action(
        db, current.id, "DELETE_MASTER", entity_type="master", entity_id=master.id,
        details={"name": master.name, "title": master.title},
        request=request,
    )
    logger.info("master_deactivated", master_id=str(master.id), actor=str(current.id))
    return envelope({"message": "Master deactivated successfully", "master": master_dict(master)})
