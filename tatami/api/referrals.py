"""
Referral link registry: create and manage a user's tracked links.

Security:
  - Requires a session; every query is scoped to the session user's links
  - Another user's link id answers 404, never 403 (no existence oracle)
  - target_url is validated on create and update (open-redirect guard)
"""

import math
from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import case, delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from tatami.core.codes import (
    LINK_CODE_LENGTH,
    LINK_CODE_WIDE_LENGTH,
    CodeSpaceExhausted,
    generate_link_code,
    insert_with_unique_code,
)
from tatami.core.errors import APIError, envelope, not_found
from tatami.core.timeutil import as_utc, isoformat, utcnow
from tatami.core.urls import validate_target_url
from tatami.middleware.auth import CurrentUser, require_user
from tatami.models.database import get_db
from tatami.models.tables import Conversion, ReferralClick, ReferralLink

import structlog

logger = structlog.get_logger()
router = APIRouter(prefix="/api/referrals", tags=["referrals"])

REVENUE_STATUSES = ("PENDING", "CONFIRMED")


class CreateReferralLinkRequest(BaseModel):
    target_url: str = Field(min_length=1, max_length=2048)
    name: str | None = Field(default=None, max_length=255)
    description: str | None = None
    expires_at: datetime | None = None
    is_active: bool = True


class UpdateReferralLinkRequest(BaseModel):
    target_url: str | None = Field(default=None, min_length=1, max_length=2048)
    name: str | None = Field(default=None, max_length=255)
    description: str | None = None
    expires_at: datetime | None = None
    is_active: bool | None = None


def link_dict(link: ReferralLink, conversion_count: int = 0, total_earnings_cents: int = 0) -> dict:
    return {
        "id": str(link.id),
        "code": link.code,
        "name": link.name,
        "description": link.description,
        "target_url": link.target_url,
        "is_active": link.is_active,
        "expires_at": isoformat(link.expires_at),
        "click_count": link.click_count,
        "conversion_count": conversion_count,
        "total_earnings_cents": total_earnings_cents,
        "created_at": isoformat(link.created_at),
        "updated_at": isoformat(link.updated_at),
    }


async def conversion_totals(db: AsyncSession, link_ids: list[UUID]) -> dict[UUID, tuple[int, int]]:
    """link_id → (conversion count, CONFIRMED commission sum)."""
    if not link_ids:
        return {}
    result = await db.execute(
        select(
            Conversion.referral_id,
            func.count(Conversion.id),
            func.coalesce(
                func.sum(case((Conversion.status == "CONFIRMED", Conversion.commission_cents), else_=0)), 0
            ),
        )
        .where(Conversion.referral_id.in_(link_ids))
        .group_by(Conversion.referral_id)
    )
    return {row[0]: (row[1], int(row[2])) for row in result.all()}


async def get_owned_link(db: AsyncSession, link_id: UUID, current: CurrentUser) -> ReferralLink:
    result = await db.execute(
        select(ReferralLink).where(ReferralLink.id == link_id, ReferralLink.user_id == current.id)
    )
    link = result.scalar_one_or_none()
    if not link:
        raise not_found("Referral link")
    return link


async def _code_exists(db: AsyncSession, code: str) -> bool:
    result = await db.execute(select(ReferralLink.id).where(ReferralLink.code == code))
    return result.scalar_one_or_none() is not None


@router.post("", status_code=201)
async def create_referral_link(
    req: CreateReferralLinkRequest,
    current: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    target_url = validate_target_url(req.target_url)
    user_id = current.id

    def make_row(code: str) -> ReferralLink:
        return ReferralLink(
            user_id=user_id,
            code=code,
            name=req.name,
            description=req.description,
            target_url=target_url,
            is_active=req.is_active,
            expires_at=as_utc(req.expires_at),
            click_count=0,
        )

    try:
        link = await insert_with_unique_code(
            db,
            make_row,
            lambda code: _code_exists(db, code),
            generate_link_code,
            LINK_CODE_LENGTH,
            LINK_CODE_WIDE_LENGTH,
        )
    except CodeSpaceExhausted:
        logger.error("referral_code_exhausted", user_id=str(user_id))
        raise APIError(500, "Could not allocate a referral code")

    logger.info("referral_link_created", link_id=str(link.id), code=link.code, user_id=str(user_id))
    return envelope(link_dict(link))


@router.get("")
async def list_referral_links(
    current: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: str | None = None,
    status: str | None = Query(None, pattern="^(active|inactive|expired)$"),
):
    now = utcnow()
    filters = [ReferralLink.user_id == current.id]

    if search:
        pattern = f"%{search.lower()}%"
        filters.append(or_(
            func.lower(ReferralLink.name).like(pattern),
            func.lower(ReferralLink.code).like(pattern),
            func.lower(ReferralLink.description).like(pattern),
        ))

    if status == "active":
        filters.append(ReferralLink.is_active.is_(True))
        filters.append(or_(ReferralLink.expires_at.is_(None), ReferralLink.expires_at > now))
    elif status == "inactive":
        filters.append(ReferralLink.is_active.is_(False))
    elif status == "expired":
        filters.append(ReferralLink.expires_at <= now)

    total = (await db.execute(select(func.count(ReferralLink.id)).where(*filters))).scalar_one()
    result = await db.execute(
        select(ReferralLink)
        .where(*filters)
        .order_by(ReferralLink.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    links = result.scalars().all()
    totals = await conversion_totals(db, [link.id for link in links])

    return envelope({
        "referral_links": [link_dict(link, *totals.get(link.id, (0, 0))) for link in links],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit),
        },
    })


@router.get("/{link_id}")
async def get_referral_link(
    link_id: UUID,
    current: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    link = await get_owned_link(db, link_id, current)

    clicks = (await db.execute(
        select(ReferralClick)
        .where(ReferralClick.referral_id == link.id)
        .order_by(ReferralClick.created_at.desc())
        .limit(10)
    )).scalars().all()
    conversions = (await db.execute(
        select(Conversion)
        .where(Conversion.referral_id == link.id)
        .order_by(Conversion.created_at.desc())
        .limit(10)
    )).scalars().all()
    totals = await conversion_totals(db, [link.id])

    data = link_dict(link, *totals.get(link.id, (0, 0)))
    data["recent_clicks"] = [
        {
            "id": str(c.id),
            "ip_address": c.ip_address,
            "country": c.country,
            "city": c.city,
            "device": c.device,
            "browser": c.browser,
            "created_at": isoformat(c.created_at),
            "converted_at": isoformat(c.converted_at),
        }
        for c in clicks
    ]
    data["recent_conversions"] = [conversion_dict(c) for c in conversions]
    return envelope(data)


@router.patch("/{link_id}")
async def update_referral_link(
    link_id: UUID,
    req: UpdateReferralLinkRequest,
    current: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    link = await get_owned_link(db, link_id, current)
    updates = req.model_dump(exclude_unset=True)
    if not updates:
        raise APIError(400, "No valid fields to update")

    if "target_url" in updates:
        if updates["target_url"] is None:
            raise APIError(400, "target_url cannot be empty")
        updates["target_url"] = validate_target_url(updates["target_url"])
    if updates.get("is_active") is None:
        updates.pop("is_active", None)
    if "expires_at" in updates:
        updates["expires_at"] = as_utc(updates["expires_at"])

    for field, value in updates.items():
        setattr(link, field, value)
    await db.commit()

    totals = await conversion_totals(db, [link.id])
    logger.info("referral_link_updated", link_id=str(link.id), fields=sorted(updates))
    return envelope(link_dict(link, *totals.get(link.id, (0, 0))))


@router.delete("/{link_id}")
async def delete_referral_link(
    link_id: UUID,
    current: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    link = await get_owned_link(db, link_id, current)

    blocking = await db.execute(
        select(Conversion.id)
        .where(Conversion.referral_id == link.id, Conversion.status.in_(REVENUE_STATUSES))
        .limit(1)
    )
    if blocking.scalar_one_or_none() is not None:
        raise APIError(400, "Cannot delete referral link with active conversions", code="HAS_CONVERSIONS")

    await db.execute(delete(ReferralClick).where(ReferralClick.referral_id == link.id))
    await db.execute(delete(Conversion).where(Conversion.referral_id == link.id))
    await db.delete(link)
    await db.commit()

    logger.info("referral_link_deleted", link_id=str(link_id), user_id=str(current.id))
    return envelope({"id": str(link_id), "deleted": True})


def conversion_dict(conversion: Conversion) -> dict:
    return {
        "id": str(conversion.id),
        "referral_id": str(conversion.referral_id),
        "click_id": str(conversion.click_id) if conversion.click_id else None,
        "order_id": conversion.order_id,
        "order_value_cents": conversion.order_value_cents,
        "commission_cents": conversion.commission_cents,
        "status": conversion.status,
        "product_type": conversion.product_type,
        "created_at": isoformat(conversion.created_at),
    }


def is_expired(link: ReferralLink) -> bool:
    expires_at = as_utc(link.expires_at)
    return expires_at is not None and expires_at <= utcnow()
