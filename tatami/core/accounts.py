"""User creation and the contribution ledger shared by auth, CMS and profile routes."""

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tatami.core.codes import (
    USER_CODE_LENGTH,
    USER_CODE_WIDE_LENGTH,
    generate_user_code,
    insert_with_unique_code,
)
from tatami.core.timeutil import utcnow
from tatami.models.tables import Contribution, User

import structlog

logger = structlog.get_logger()

# Points per contribution type
POINTS = {
    "SIGNUP": 10,
    "LOGIN": 1,
    "INTEREST": 5,
    "REFERRAL_CLICK": 1,
    "EVENT_JOIN": 5,
    "PROFILE_UPDATE": 2,
}


def normalize_email(email: str) -> str:
    return email.strip().lower()


async def find_user_by_email(db: AsyncSession, email: str) -> User | None:
    result = await db.execute(select(User).where(func.lower(User.email) == normalize_email(email)))
    return result.scalar_one_or_none()


async def _user_code_exists(db: AsyncSession, code: str) -> bool:
    result = await db.execute(select(User.id).where(User.referral_code == code))
    return result.scalar_one_or_none() is not None


async def create_user(
    db: AsyncSession,
    email: str,
    name: str | None = None,
    avatar: str | None = None,
    role: str = "USER",
    permissions: list[str] | None = None,
    is_active: bool = True,
    email_verified: bool = False,
    locale: str = "en",
) -> User:
    """Insert a user with a fresh referral code. Commits."""
    def make_row(code: str) -> User:
        return User(
            email=normalize_email(email),
            name=name,
            avatar=avatar,
            role=role,
            permissions=permissions,
            is_active=is_active,
            locale=locale,
            referral_code=code,
            email_verified_at=utcnow() if email_verified else None,
        )

    user = await insert_with_unique_code(
        db,
        make_row,
        lambda code: _user_code_exists(db, code),
        generate_user_code,
        USER_CODE_LENGTH,
        USER_CODE_WIDE_LENGTH,
    )
    logger.info("user_created", user_id=str(user.id), role=role)
    return user


def contribution(user_id, type_: str, metadata: dict | None = None, value: int | None = None,
                 referral_id=None) -> Contribution:
    """Build (not add) a ledger row; value defaults to the type's point table entry."""
    return Contribution(
        user_id=user_id,
        type=type_,
        value=POINTS.get(type_, 0) if value is None else value,
        metadata_=metadata,
        referral_id=referral_id,
    )
