"""
Google OAuth 2.0 authorization-code flow.

Only establishes who the caller is (email, name, picture); sessions are
minted by us afterwards. Outbound calls carry a timeout and surface as
GoogleAuthError on any transport or protocol failure.
"""

from dataclasses import dataclass
from urllib.parse import urlencode

import httpx

from tatami.config import get_settings

import structlog

logger = structlog.get_logger()

AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"


class GoogleAuthError(Exception):
    pass


@dataclass
class GoogleProfile:
    email: str
    name: str | None = None
    picture: str | None = None
    email_verified: bool = False


def redirect_uri() -> str:
    return f"{get_settings().base_url}/api/auth/google/callback"


def authorization_url(state: str) -> str:
    params = {
        "client_id": get_settings().google_client_id,
        "redirect_uri": redirect_uri(),
        "response_type": "code",
        "scope": "openid email profile",
        "state": state,
        "prompt": "select_account",
    }
    return f"{AUTHORIZE_URL}?{urlencode(params)}"


async def fetch_profile(code: str, transport: httpx.AsyncBaseTransport | None = None) -> GoogleProfile:
    """Exchange the authorization code and read the user's OpenID profile."""
    settings = get_settings()
    try:
        async with httpx.AsyncClient(timeout=settings.google_timeout_seconds, transport=transport) as client:
            token_resp = await client.post(TOKEN_URL, data={
                "code": code,
                "client_id": settings.google_client_id,
                "client_secret": settings.google_client_secret,
                "redirect_uri": redirect_uri(),
                "grant_type": "authorization_code",
            })
            token_resp.raise_for_status()
            access_token = token_resp.json()["access_token"]

            info_resp = await client.get(USERINFO_URL, headers={"Authorization": f"Bearer {access_token}"})
            info_resp.raise_for_status()
            info = info_resp.json()
    except (httpx.HTTPError, KeyError, ValueError) as exc:
        logger.warning("google_oauth_failed", error=str(exc))
        raise GoogleAuthError(str(exc)) from exc

    if not info.get("email"):
        raise GoogleAuthError("profile has no email")

    return GoogleProfile(
        email=info["email"],
        name=info.get("name"),
        picture=info.get("picture"),
        email_verified=bool(info.get("email_verified")),
    )
