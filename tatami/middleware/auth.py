"""
Session authentication + permission gate.

Every request may carry a session token (cookie `tatami_session` or
`Authorization: Bearer ...`). Resolution:
  - token signature/expiry checked (core.session_token)
  - user row loaded; inactive users resolve to "no session"
  - effective permissions = role base set ∪ per-user overrides

Gate order on protected routes:
  - no session           → 401
  - missing permission   → 403
  - then the handler runs

Session resolution is chatty on bad tokens and that noise is useless in
production logs, so the call is wrapped in quiet_session_check(): a scoped
filter that drops whatever is logged inside that one call and nothing else.
"""

import functools
import hmac
import time
from contextvars import ContextVar
from dataclasses import dataclass
from uuid import UUID

from fastapi import Depends, Request, Response, Security
from fastapi.security import APIKeyHeader
from sqlalchemy.ext.asyncio import AsyncSession

from tatami.config import get_settings
from tatami.core.errors import APIError
from tatami.core.permissions import Permission, UserRole, resolve_permissions
from tatami.core.session_token import SessionToken, verify_session_token
from tatami.models.database import get_db
from tatami.models.tables import User

import structlog

logger = structlog.get_logger()


# ─── Scoped log filter ─────────────────────────────────────────────

_quiet_session: ContextVar[bool] = ContextVar("quiet_session", default=False)


def drop_quieted_events(logger_, method_name, event_dict):
    """structlog processor: drops events emitted inside quiet_session_check."""
    if _quiet_session.get():
        raise structlog.DropEvent
    return event_dict


def quiet_session_check(func):
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        reset = _quiet_session.set(True)
        try:
            return await func(*args, **kwargs)
        finally:
            _quiet_session.reset(reset)
    return wrapper


# ─── Resolved identity ─────────────────────────────────────────────

@dataclass
class CurrentUser:
    """The signed-in user with their effective permission set."""
    user: User
    permissions: frozenset[Permission]
    token: SessionToken

    @property
    def id(self) -> UUID:
        return self.user.id

    @property
    def role(self) -> str:
        return self.user.role

    @property
    def is_super_admin(self) -> bool:
        return self.user.role == UserRole.SUPER_ADMIN.value

    def can(self, permission: Permission) -> bool:
        return permission in self.permissions


def _token_from_request(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip()
    return request.cookies.get(get_settings().session_cookie_name)


@quiet_session_check
async def resolve_session(request: Request, db: AsyncSession) -> CurrentUser | None:
    token = verify_session_token(_token_from_request(request))
    if token is None:
        logger.debug("session_missing_or_invalid", path=request.url.path)
        return None

    user = await db.get(User, token.user_id)
    if user is None or not user.is_active:
        logger.debug("session_user_unavailable", user_id=str(token.user_id))
        return None

    return CurrentUser(
        user=user,
        permissions=resolve_permissions(user.role, user.permissions),
        token=token,
    )


# ─── FastAPI dependencies ──────────────────────────────────────────

async def get_current_user(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> CurrentUser | None:
    """Optional session: None for anonymous callers."""
    return await resolve_session(request, db)


async def require_user(
    current: CurrentUser | None = Depends(get_current_user),
) -> CurrentUser:
    if current is None:
        raise APIError(401, "Not authenticated")
    return current


def require_permission(permission: Permission):
    """Dependency factory: 401 without a session, 403 without the permission."""
    async def dependency(current: CurrentUser = Depends(require_user)) -> CurrentUser:
        if not current.can(permission):
            logger.info("permission_denied", user_id=str(current.id), permission=permission.value)
            raise APIError(403, "Forbidden")
        return current
    return dependency


def check_permission(current: CurrentUser, permission: Permission, message: str = "Forbidden") -> None:
    """Inline variant for routes whose required permission depends on the payload."""
    if not current.can(permission):
        logger.info("permission_denied", user_id=str(current.id), permission=permission.value)
        raise APIError(403, message)


# ─── Internal callers (conversion ingestion) ───────────────────────

internal_key_header = APIKeyHeader(name="X-Internal-Key", auto_error=False)


async def require_internal_key(key: str | None = Security(internal_key_header)) -> None:
    expected = get_settings().internal_api_key
    if not expected or not key or not hmac.compare_digest(key, expected):
        raise APIError(401, "Invalid internal key", headers={"WWW-Authenticate": "ApiKey"})


# ─── Cookie helpers ────────────────────────────────────────────────

def set_session_cookie(response: Response, token: SessionToken) -> None:
    settings = get_settings()
    response.set_cookie(
        key=settings.session_cookie_name,
        value=str(token),
        max_age=max(0, token.expiry - int(time.time())),
        path="/",
        samesite="lax",
        secure=not settings.debug,
        httponly=True,
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(get_settings().session_cookie_name, path="/")
