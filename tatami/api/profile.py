"""
Signed-in user surfaces: profile and settings.

Settings updates award a PROFILE_UPDATE contribution. That award is best
effort: the settings change is committed first and a failed ledger write is
logged, never surfaced.
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tatami.api.interests import interest_dict
from tatami.config import get_settings
from tatami.core.accounts import contribution
from tatami.core.errors import APIError, envelope
from tatami.core.timeutil import isoformat
from tatami.middleware.auth import CurrentUser, require_user
from tatami.models.database import get_db
from tatami.models.tables import Contribution, Interest, User

import structlog

logger = structlog.get_logger()
router = APIRouter(tags=["profile"])

LOCALES = ("en", "zh-TW", "ja")


class UpdateProfileRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    locale: str | None = Field(default=None, pattern="^(en|zh-TW|ja)$")


class SettingsRequest(BaseModel):
    name: str | None = None
    bio: str | None = None
    location: str | None = None
    locale: str | None = None


def _profile_user(user: User) -> dict:
    return {
        "id": str(user.id),
        "email": user.email,
        "name": user.name,
        "avatar": user.avatar,
        "bio": user.bio,
        "location": user.location,
        "referral_code": user.referral_code,
        "locale": user.locale,
        "email_verified_at": isoformat(user.email_verified_at),
        "created_at": isoformat(user.created_at),
        "updated_at": isoformat(user.updated_at),
    }


def _contribution_dict(row: Contribution) -> dict:
    return {
        "id": str(row.id),
        "type": row.type,
        "value": row.value,
        "metadata": row.metadata_,
        "created_at": isoformat(row.created_at),
    }


def settings_updates(req: SettingsRequest) -> dict:
    """Keep only usable values: blank names and unknown locales are dropped."""
    updates = {}
    if req.name is not None and req.name.strip():
        updates["name"] = req.name.strip()[:100]
    if req.bio is not None:
        updates["bio"] = req.bio.strip() or None
    if req.location is not None:
        updates["location"] = req.location.strip()[:255] or None
    if req.locale in LOCALES:
        updates["locale"] = req.locale
    return updates


@router.get("/api/users/profile")
async def get_profile(
    current: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    user = current.user
    contributions = (await db.execute(
        select(Contribution)
        .where(Contribution.user_id == user.id)
        .order_by(Contribution.created_at.desc())
        .limit(20)
    )).scalars().all()
    interests = (await db.execute(
        select(Interest)
        .where(Interest.user_id == user.id)
        .order_by(Interest.created_at.desc())
        .limit(50)
    )).scalars().all()

    by_type = dict((await db.execute(
        select(Contribution.type, func.count(Contribution.id))
        .where(Contribution.user_id == user.id)
        .group_by(Contribution.type)
    )).all())
    total_points = (await db.execute(
        select(func.coalesce(func.sum(Contribution.value), 0)).where(Contribution.user_id == user.id)
    )).scalar_one()

    return envelope({
        "user": _profile_user(user),
        "contributions": [_contribution_dict(c) for c in contributions],
        "interests": [interest_dict(i) for i in interests],
        "stats": {
            "total": sum(by_type.values()),
            "referral_clicks": by_type.get("REFERRAL_CLICK", 0),
            "interests": by_type.get("INTEREST", 0),
            "events": by_type.get("EVENT_JOIN", 0),
            "by_type": by_type,
            "total_points": int(total_points),
        },
        "referral_url": f"{get_settings().base_url}?ref={user.referral_code}",
    })


@router.put("/api/users/profile")
async def update_profile(
    req: UpdateProfileRequest,
    current: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    updates = req.model_dump(exclude_none=True)
    user = current.user
    for field, value in updates.items():
        setattr(user, field, value)
    await db.commit()

    logger.info("profile_updated", user_id=str(user.id), fields=sorted(updates))
    return {"success": True, "data": {"user": _profile_user(user)}, "message": "Profile updated successfully"}


@router.get("/api/user/settings")
async def get_user_settings(current: CurrentUser = Depends(require_user)):
    user = current.user
    return envelope({
        "id": str(user.id),
        "name": user.name,
        "email": user.email,
        "bio": user.bio,
        "location": user.location,
        "locale": user.locale,
        "created_at": isoformat(user.created_at),
        "updated_at": isoformat(user.updated_at),
    })


@router.patch("/api/user/settings")
async def update_user_settings(
    req: SettingsRequest,
    current: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    updates = settings_updates(req)
    if not updates:
        raise APIError(400, "No valid fields to update")

    user = current.user
    user_id = user.id
    for field, value in updates.items():
        setattr(user, field, value)
    await db.commit()
    logger.info("user_settings_updated", user_id=str(user_id), fields=sorted(updates))
    data = _profile_user(user)

    # A rollback here expires `user`; the response is built above
    db.add(contribution(user_id, "PROFILE_UPDATE", metadata={"updated_fields": sorted(updates)}))
    try:
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("contribution_write_failed", user_id=str(user_id), type="PROFILE_UPDATE")

    return envelope(data)
