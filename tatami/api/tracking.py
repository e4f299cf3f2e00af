"""
Click tracker + aggregation reporter.

Track flow (POST /api/referrals/track and GET /r/{code}):
  1. Rate limit per client IP
  2. Resolve link by code → 404 / LINK_INACTIVE / LINK_EXPIRED (nothing recorded)
  3. Fingerprint: client IP, user agent, referer, device/browser, geo
  4. One transaction:
       - insert referral_clicks row
       - UPDATE referral_links SET click_count = click_count + 1
       - append REFERRAL_CLICK contribution (1 point) for the link owner
  5. Redirect target: explicit override → link.target_url → "/"

Stats are computed on demand over a trailing window of `days`.
Only CONFIRMED conversions count toward earnings.
"""

from datetime import timedelta
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field
from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tatami.api.referrals import get_owned_link, is_expired
from tatami.core.accounts import contribution
from tatami.core.device import client_ip, parse_device
from tatami.core.errors import APIError, envelope, not_found
from tatami.core.geo import lookup_geo
from tatami.core.permissions import Permission
from tatami.core.timeutil import utcnow
from tatami.core.urls import validate_target_url
from tatami.middleware.auth import CurrentUser, require_user
from tatami.middleware.rate_limit import rate_limit_track
from tatami.models.database import get_db
from tatami.models.tables import Conversion, ReferralClick, ReferralLink

import structlog

logger = structlog.get_logger()
router = APIRouter(tags=["tracking"])


class TrackRequest(BaseModel):
    referral_code: str = Field(min_length=1, max_length=20)
    target_url: str | None = Field(default=None, max_length=2048)


# ---------------------------------------------------------------------------
# Track
# ---------------------------------------------------------------------------

async def _resolve_trackable_link(db: AsyncSession, code: str) -> ReferralLink:
    result = await db.execute(select(ReferralLink).where(ReferralLink.code == code))
    link = result.scalar_one_or_none()
    if not link:
        raise APIError(404, "Invalid referral code")
    if not link.is_active:
        raise APIError(400, "Referral link is inactive", code="LINK_INACTIVE")
    if is_expired(link):
        raise APIError(400, "Referral link has expired", code="LINK_EXPIRED")
    return link


async def record_click(
    request: Request,
    db: AsyncSession,
    code: str,
    target_override: str | None = None,
) -> tuple[ReferralClick, str]:
    """Validate, persist one click, and return it with the redirect target."""
    if target_override:
        target_override = validate_target_url(target_override)

    link = await _resolve_trackable_link(db, code)

    ip = client_ip(request)
    ua = request.headers.get("user-agent") or ""
    referer = request.headers.get("referer") or ""
    device = parse_device(ua)
    geo = await lookup_geo(ip)

    click = ReferralClick(
        referral_id=link.id,
        ip_address=ip,
        user_agent=ua,
        referer=referer,
        device=device.device,
        browser=device.browser,
        country=geo.country,
        city=geo.city,
    )
    db.add(click)

    await db.execute(
        update(ReferralLink)
        .where(ReferralLink.id == link.id)
        .values(click_count=ReferralLink.click_count + 1)
        .execution_options(synchronize_session=False)
    )

    db.add(contribution(
        link.user_id,
        "REFERRAL_CLICK",
        metadata={
            "referral_code": code,
            "target_url": target_override,
            "ip_address": ip,
            "user_agent": ua[:500],
            "browser": device.browser,
            "device": device.device,
        },
        referral_id=link.id,
    ))

    await db.commit()

    redirect_url = target_override or link.target_url or "/"
    logger.info("click_tracked",
                click_id=str(click.id),
                code=code,
                link_id=str(link.id),
                device=device.device,
                browser=device.browser,
                country=geo.country)
    return click, redirect_url


@router.post("/api/referrals/track", dependencies=[Depends(rate_limit_track)])
async def track_click(
    req: TrackRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    click, redirect_url = await record_click(request, db, req.referral_code, req.target_url)
    return envelope({"redirect_url": redirect_url, "click_id": str(click.id)})


@router.get("/r/{code}", dependencies=[Depends(rate_limit_track)])
async def redirect_referral(
    code: str,
    request: Request,
    to: str | None = None,
    db: AsyncSession = Depends(get_db),
):
    """Shareable form of /track: records the click and answers 302."""
    _, redirect_url = await record_click(request, db, code, to)
    return RedirectResponse(url=redirect_url, status_code=302)


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------

def conversion_rate(conversions: int, clicks: int) -> str:
    """Percentage with two decimals; "0.00" when there were no clicks."""
    if clicks <= 0:
        return "0.00"
    return f"{conversions / clicks * 100:.2f}"


def _authorize_stats(link: ReferralLink, current: CurrentUser) -> None:
    if link.user_id != current.id and not current.can(Permission.VIEW_ANALYTICS):
        logger.info("stats_denied", link_id=str(link.id), user_id=str(current.id))
        raise APIError(403, "Forbidden")


async def compute_link_stats(db: AsyncSession, link: ReferralLink, days: int) -> dict:
    cutoff = utcnow() - timedelta(days=days)
    in_window = (ReferralClick.referral_id == link.id, ReferralClick.created_at >= cutoff)

    total_clicks = (await db.execute(
        select(func.count(ReferralClick.id)).where(*in_window)
    )).scalar_one()

    conv = (await db.execute(
        select(
            func.count(Conversion.id).label("conversions"),
            func.coalesce(func.sum(
                case((Conversion.status == "CONFIRMED", Conversion.commission_cents), else_=0)
            ), 0).label("earnings"),
        ).where(Conversion.referral_id == link.id, Conversion.created_at >= cutoff)
    )).one()

    day = func.date(ReferralClick.created_at)
    daily = await db.execute(
        select(day.label("date"), func.count(ReferralClick.id).label("clicks"))
        .where(*in_window)
        .group_by(day)
        .order_by(day.desc())
    )

    by_country = await db.execute(
        select(ReferralClick.country, func.count(ReferralClick.id).label("clicks"))
        .where(*in_window, ReferralClick.country.is_not(None))
        .group_by(ReferralClick.country)
        .order_by(func.count(ReferralClick.id).desc())
    )

    by_device = await db.execute(
        select(ReferralClick.device, func.count(ReferralClick.id).label("clicks"))
        .where(*in_window, ReferralClick.device.is_not(None))
        .group_by(ReferralClick.device)
        .order_by(func.count(ReferralClick.id).desc())
    )

    return {
        "code": link.code,
        "period_days": days,
        "total_clicks": total_clicks,
        "total_conversions": conv.conversions,
        "conversion_rate": conversion_rate(conv.conversions, total_clicks),
        "total_earnings_cents": int(conv.earnings),
        "daily_clicks": [{"date": str(row.date), "clicks": row.clicks} for row in daily.all()],
        "clicks_by_country": [{"country": row.country, "clicks": row.clicks} for row in by_country.all()],
        "clicks_by_device": [{"device": row.device, "clicks": row.clicks} for row in by_device.all()],
    }


@router.get("/api/referrals/stats")
async def referral_stats_by_code(
    code: str = Query(..., min_length=1, max_length=20),
    days: int = Query(30, ge=1, le=365),
    current: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(select(ReferralLink).where(ReferralLink.code == code))
    link = result.scalar_one_or_none()
    if not link:
        raise not_found("Referral link")
    _authorize_stats(link, current)
    return envelope(await compute_link_stats(db, link, days))


@router.get("/api/referrals/summary")
async def referral_summary(
    days: int = Query(30, ge=1, le=365),
    current: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    """Roll-up across every link the session user owns."""
    cutoff = utcnow() - timedelta(days=days)
    now = utcnow()

    links = (await db.execute(
        select(
            func.count(ReferralLink.id).label("total"),
            func.coalesce(func.sum(case(
                ((ReferralLink.is_active.is_(True))
                 & (ReferralLink.expires_at.is_(None) | (ReferralLink.expires_at > now)), 1),
                else_=0,
            )), 0).label("active"),
        ).where(ReferralLink.user_id == current.id)
    )).one()

    clicks = await db.execute(
        select(ReferralLink.id, ReferralLink.code, ReferralLink.name,
               func.count(ReferralClick.id).label("clicks"))
        .join(ReferralClick, ReferralClick.referral_id == ReferralLink.id)
        .where(ReferralLink.user_id == current.id, ReferralClick.created_at >= cutoff)
        .group_by(ReferralLink.id, ReferralLink.code, ReferralLink.name)
        .order_by(func.count(ReferralClick.id).desc())
    )
    click_rows = clicks.all()
    total_clicks = sum(row.clicks for row in click_rows)

    conv = (await db.execute(
        select(
            func.count(Conversion.id).label("conversions"),
            func.coalesce(func.sum(
                case((Conversion.status == "CONFIRMED", Conversion.commission_cents), else_=0)
            ), 0).label("earnings"),
            func.coalesce(func.sum(
                case((Conversion.status == "PENDING", Conversion.commission_cents), else_=0)
            ), 0).label("pending"),
        )
        .join(ReferralLink, Conversion.referral_id == ReferralLink.id)
        .where(ReferralLink.user_id == current.id, Conversion.created_at >= cutoff)
    )).one()

    return envelope({
        "period_days": days,
        "total_links": links.total,
        "active_links": int(links.active),
        "total_clicks": total_clicks,
        "total_conversions": conv.conversions,
        "conversion_rate": conversion_rate(conv.conversions, total_clicks),
        "total_earnings_cents": int(conv.earnings),
        "pending_earnings_cents": int(conv.pending),
        "top_links": [
            {"id": str(row.id), "code": row.code, "name": row.name, "clicks": row.clicks}
            for row in click_rows[:5]
        ],
    })


@router.get("/api/referrals/{link_id}/stats")
async def referral_stats_by_id(
    link_id: UUID,
    days: int = Query(30, ge=1, le=365),
    current: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    if current.can(Permission.VIEW_ANALYTICS):
        link = await db.get(ReferralLink, link_id)
        if not link:
            raise not_found("Referral link")
    else:
        link = await get_owned_link(db, link_id, current)
    return envelope(await compute_link_stats(db, link, days))
