"""
Authentication surface.

Identity comes from Google OAuth or a magic link; either way the result is
the same: find-or-create the user, append LOGIN (and SIGNUP on creation),
mint a session token and set it as an httponly cookie.

GET /api/auth/session always answers 200; the body is null for anonymous
callers so the front end never takes an error path just to learn that.
"""

import datetime
import secrets
from datetime import timedelta

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, EmailStr
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tatami.config import get_settings
from tatami.core.accounts import contribution, create_user, find_user_by_email, normalize_email
from tatami.core.errors import APIError, envelope
from tatami.core.google_oauth import GoogleAuthError, authorization_url, fetch_profile
from tatami.core.session_token import hash_token, mint_session_token
from tatami.core.timeutil import as_utc, isoformat, utcnow
from tatami.middleware.auth import (
    CurrentUser,
    clear_session_cookie,
    get_current_user,
    set_session_cookie,
)
from tatami.middleware.rate_limit import rate_limit_magic_link
from tatami.models.database import get_db
from tatami.models.tables import User, VerificationToken

import structlog

logger = structlog.get_logger()
router = APIRouter(prefix="/api/auth", tags=["auth"])

OAUTH_STATE_COOKIE = "tatami_oauth_state"


class MagicLinkRequest(BaseModel):
    email: EmailStr


async def sign_in(
    db: AsyncSession,
    email: str,
    provider: str,
    name: str | None = None,
    avatar: str | None = None,
) -> User:
    """Find or create the user and record the login. Commits."""
    user = await find_user_by_email(db, email)
    if user is None:
        try:
            user = await create_user(db, email=email, name=name, avatar=avatar, email_verified=True)
        except IntegrityError:
            # Concurrent first sign-in for the same address
            await db.rollback()
            user = await find_user_by_email(db, email)
            if user is None:
                raise
        else:
            db.add(contribution(user.id, "SIGNUP", metadata={
                "welcome_bonus": True,
                "timestamp": isoformat(utcnow()),
            }))

    if not user.is_active:
        raise APIError(403, "Account is disabled")

    if name and not user.name:
        user.name = name
    if avatar and not user.avatar:
        user.avatar = avatar
    if user.email_verified_at is None:
        user.email_verified_at = utcnow()
    user.last_login_at = utcnow()
    db.add(contribution(user.id, "LOGIN", metadata={
        "provider": provider,
        "timestamp": isoformat(utcnow()),
    }))
    await db.commit()

    logger.info("user_signed_in", user_id=str(user.id), provider=provider)
    return user


def _signed_in_redirect(user: User, target: str = "/") -> RedirectResponse:
    response = RedirectResponse(url=target, status_code=302)
    set_session_cookie(response, mint_session_token(user.id))
    return response


# ---------------------------------------------------------------------------
# Session introspection
# ---------------------------------------------------------------------------

@router.get("/session")
async def get_session(current: CurrentUser | None = Depends(get_current_user)):
    if current is None:
        return None
    user = current.user
    expires = datetime.datetime.fromtimestamp(current.token.expiry, tz=datetime.timezone.utc)
    return {
        "user": {
            "id": str(user.id),
            "email": user.email,
            "name": user.name,
            "image": user.avatar,
            "referral_code": user.referral_code,
            "locale": user.locale or "en",
            "role": user.role,
        },
        "expires": expires.isoformat(),
    }


@router.post("/signout")
async def sign_out(current: CurrentUser | None = Depends(get_current_user)):
    response = RedirectResponse(url="/", status_code=303)
    clear_session_cookie(response)
    if current is not None:
        logger.info("user_signed_out", user_id=str(current.id))
    return response


# ---------------------------------------------------------------------------
# Magic link
# ---------------------------------------------------------------------------

@router.post("/magic-link", dependencies=[Depends(rate_limit_magic_link)])
async def request_magic_link(
    req: MagicLinkRequest,
    db: AsyncSession = Depends(get_db),
):
    settings = get_settings()
    email = normalize_email(req.email)
    raw = secrets.token_urlsafe(32)

    # One outstanding link per address
    await db.execute(delete(VerificationToken).where(VerificationToken.email == email))
    db.add(VerificationToken(
        email=email,
        token_hash=hash_token(raw),
        expires_at=utcnow() + timedelta(seconds=settings.magic_link_expiry_seconds),
    ))
    await db.commit()

    if settings.debug:
        url = f"{settings.base_url}/api/auth/magic-link/verify?email={email}&token={raw}"
        logger.info("magic_link_issued", email=email, url=url)
    else:
        logger.info("magic_link_issued", email=email)

    # Same answer whether or not the address has an account
    return envelope({"sent": True})


@router.get("/magic-link/verify")
async def verify_magic_link(
    email: str = Query(..., min_length=3),
    token: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
):
    email = normalize_email(email)
    result = await db.execute(
        select(VerificationToken).where(VerificationToken.token_hash == hash_token(token))
    )
    stored = result.scalar_one_or_none()

    if stored is None or stored.email != email:
        logger.info("magic_link_rejected", email=email, reason="unknown")
        raise APIError(400, "Invalid or expired sign-in link", code="INVALID_TOKEN")

    # Single use, even when expired
    await db.delete(stored)
    await db.commit()

    if as_utc(stored.expires_at) <= utcnow():
        logger.info("magic_link_rejected", email=email, reason="expired")
        raise APIError(400, "Invalid or expired sign-in link", code="INVALID_TOKEN")

    user = await sign_in(db, email, provider="email")
    return _signed_in_redirect(user)


# ---------------------------------------------------------------------------
# Google
# ---------------------------------------------------------------------------

@router.get("/google")
async def google_sign_in():
    settings = get_settings()
    if not settings.google_client_id:
        raise APIError(503, "Google sign-in is not configured")

    state = secrets.token_urlsafe(24)
    response = RedirectResponse(url=authorization_url(state), status_code=302)
    response.set_cookie(
        key=OAUTH_STATE_COOKIE,
        value=state,
        max_age=600,
        path="/api/auth",
        samesite="lax",
        secure=not settings.debug,
        httponly=True,
    )
    return response


@router.get("/google/callback")
async def google_callback(
    request: Request,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    db: AsyncSession = Depends(get_db),
):
    if error:
        logger.info("google_oauth_declined", error=error)
        raise APIError(400, "Google sign-in was cancelled", code="OAUTH_DECLINED")

    expected_state = request.cookies.get(OAUTH_STATE_COOKIE)
    if not code or not state or not expected_state or not secrets.compare_digest(state, expected_state):
        raise APIError(400, "Invalid OAuth state", code="INVALID_STATE")

    try:
        profile = await fetch_profile(code)
    except GoogleAuthError:
        raise APIError(503, "Google sign-in is unavailable")

    user = await sign_in(db, profile.email, provider="google", name=profile.name, avatar=profile.picture)
    response = _signed_in_redirect(user)
    response.delete_cookie(OAUTH_STATE_COOKIE, path="/api/auth")
    return response
