"""
Short unique codes: referral link codes (REFXXXXXX) and user referral codes.

Uniqueness is guarded by the unique index, not by the pre-check: the check
only saves a round-trip, the INSERT is what can fail. Attempts are bounded;
once they run out the code space widens, and if that is exhausted too the
caller gets a CodeSpaceExhausted instead of an endless loop.
"""

import secrets
import string
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tatami.config import get_settings

import structlog

logger = structlog.get_logger()

T = TypeVar("T")

LINK_CODE_PREFIX = "REF"
LINK_CODE_LENGTH = 6
LINK_CODE_WIDE_LENGTH = 10
LINK_CODE_ALPHABET = string.ascii_uppercase + string.digits

USER_CODE_LENGTH = 8
USER_CODE_WIDE_LENGTH = 12
USER_CODE_ALPHABET = string.ascii_letters + string.digits


class CodeSpaceExhausted(RuntimeError):
    pass


def generate_link_code(length: int = LINK_CODE_LENGTH) -> str:
    """e.g. 'REF7K2QZ9'."""
    return LINK_CODE_PREFIX + "".join(secrets.choice(LINK_CODE_ALPHABET) for _ in range(length))


def generate_user_code(length: int = USER_CODE_LENGTH) -> str:
    """Short random code like 'a3xK9mzQ'."""
    return "".join(secrets.choice(USER_CODE_ALPHABET) for _ in range(length))


async def insert_with_unique_code(
    db: AsyncSession,
    make_row: Callable[[str], T],
    code_exists: Callable[[str], Awaitable[bool]],
    generate: Callable[[int], str],
    length: int,
    wide_length: int,
) -> T:
    """Generate a code, build the row, commit it.

    Commits the session on success. On a unique violation the transaction is
    rolled back and a fresh code is tried; a violation that is not about the
    code is re-raised.
    """
    max_attempts = get_settings().referral_code_max_attempts

    for size in (length, wide_length):
        for attempt in range(max_attempts):
            code = generate(size)
            if await code_exists(code):
                logger.info("code_collision_precheck", size=size, attempt=attempt)
                continue

            row = make_row(code)
            db.add(row)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                if not await code_exists(code):
                    raise
                logger.info("code_collision_insert", size=size, attempt=attempt)
                continue
            return row

        if size == length:
            logger.warning("code_space_widening", from_size=size, to_size=wide_length)

    raise CodeSpaceExhausted(f"no free code after {max_attempts * 2} attempts")
