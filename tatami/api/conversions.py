"""
Conversion ingestion: internal callers only (X-Internal-Key).

Idempotent on (referral, order_id): a replay answers 200 with the stored
row instead of 201 with a new one. Status starts PENDING; only CONFIRMED
conversions ever count toward earnings.

Click attribution is explicit: converted_at is stamped only on the click
named by click_id, and only if that click belongs to the same link.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, Field
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tatami.api.referrals import conversion_dict
from tatami.config import get_settings
from tatami.core.errors import envelope, not_found
from tatami.core.timeutil import utcnow
from tatami.middleware.auth import require_internal_key
from tatami.models.database import get_db
from tatami.models.tables import Conversion, ReferralClick, ReferralLink

import structlog

logger = structlog.get_logger()
router = APIRouter(
    prefix="/api/referrals/conversions",
    tags=["conversions"],
    dependencies=[Depends(require_internal_key)],
)


class RecordConversionRequest(BaseModel):
    referral_code: str = Field(min_length=1, max_length=20)
    order_id: str = Field(min_length=1, max_length=255)
    order_value_cents: int = Field(ge=0)
    commission_cents: int | None = Field(default=None, ge=0)
    product_type: str | None = Field(default=None, max_length=50)
    click_id: UUID | None = None


class UpdateConversionStatusRequest(BaseModel):
    status: str = Field(pattern="^(PENDING|CONFIRMED|CANCELLED|REFUNDED)$")


def default_commission(order_value_cents: int) -> int:
    return round(order_value_cents * get_settings().commission_rate)


async def _find_existing(db: AsyncSession, referral_id: UUID, order_id: str) -> Conversion | None:
    result = await db.execute(
        select(Conversion).where(Conversion.referral_id == referral_id, Conversion.order_id == order_id)
    )
    return result.scalar_one_or_none()


@router.post("", status_code=201)
async def record_conversion(
    req: RecordConversionRequest,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(select(ReferralLink).where(ReferralLink.code == req.referral_code))
    link = result.scalar_one_or_none()
    if not link:
        raise not_found("Referral link")

    link_id = link.id
    existing = await _find_existing(db, link_id, req.order_id)
    if existing:
        logger.info("conversion_replayed", conversion_id=str(existing.id), order_id=req.order_id)
        response.status_code = 200
        return envelope(conversion_dict(existing))

    conversion = Conversion(
        referral_id=link.id,
        click_id=req.click_id,
        order_id=req.order_id,
        order_value_cents=req.order_value_cents,
        commission_cents=(
            req.commission_cents if req.commission_cents is not None
            else default_commission(req.order_value_cents)
        ),
        status="PENDING",
        product_type=req.product_type,
    )
    db.add(conversion)

    try:
        if req.click_id:
            await db.execute(
                update(ReferralClick)
                .where(
                    ReferralClick.id == req.click_id,
                    ReferralClick.referral_id == link.id,
                    ReferralClick.converted_at.is_(None),
                )
                .values(converted_at=utcnow())
                .execution_options(synchronize_session=False)
            )
        await db.commit()
    except IntegrityError:
        # Lost a race with a concurrent replay of the same order
        await db.rollback()
        existing = await _find_existing(db, link_id, req.order_id)
        if existing is None:
            raise
        response.status_code = 200
        return envelope(conversion_dict(existing))

    logger.info("conversion_recorded",
                conversion_id=str(conversion.id),
                link_id=str(link.id),
                order_id=req.order_id,
                order_value_cents=conversion.order_value_cents,
                commission_cents=conversion.commission_cents)
    return envelope(conversion_dict(conversion))


@router.patch("/{conversion_id}")
async def update_conversion_status(
    conversion_id: UUID,
    req: UpdateConversionStatusRequest,
    db: AsyncSession = Depends(get_db),
):
    conversion = await db.get(Conversion, conversion_id)
    if not conversion:
        raise not_found("Conversion")

    previous = conversion.status
    conversion.status = req.status
    await db.commit()

    logger.info("conversion_status_changed",
                conversion_id=str(conversion.id), from_status=previous, to_status=req.status)
    return envelope(conversion_dict(conversion))
