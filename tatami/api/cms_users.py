"""
CMS: user administration.

Role rules:
  - granting ADMIN / SUPER_ADMIN needs MANAGE_ADMINS, any other role UPDATE_USERS
  - only a SUPER_ADMIN may grant SUPER_ADMIN or touch a SUPER_ADMIN account
  - nobody changes their own role
  - SUPER_ADMIN accounts and your own account cannot be deleted
  - only a SUPER_ADMIN impersonates, never another SUPER_ADMIN, never an inactive user
"""

import math
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, Response
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tatami.config import get_settings
from tatami.core.accounts import create_user, find_user_by_email
from tatami.core.audit import changed_fields, log_admin_action
from tatami.core.errors import APIError, envelope, not_found
from tatami.core.permissions import ADMIN_ROLES, Permission, UserRole, parse_permissions
from tatami.core.session_token import mint_session_token
from tatami.core.timeutil import isoformat, utcnow
from tatami.middleware.auth import (
    CurrentUser,
    check_permission,
    require_permission,
    require_user,
    set_session_cookie,
)
from tatami.models.database import get_db
from tatami.models.tables import Contribution, Interest, ReferralLink, User

import structlog

logger = structlog.get_logger()
router = APIRouter(prefix="/api/cms/users", tags=["cms"])

LOCALES = ("en", "zh-TW", "ja")


class CreateUserRequest(BaseModel):
    email: EmailStr
    name: str | None = Field(default=None, max_length=100)
    role: UserRole = UserRole.USER
    permissions: list[str] | None = None
    is_active: bool = True
    email_verified: bool = False


class UpdateUserRequest(BaseModel):
    name: str | None = Field(default=None, max_length=100)
    bio: str | None = None
    location: str | None = Field(default=None, max_length=255)
    locale: str | None = None
    is_active: bool | None = None


class RoleChangeRequest(BaseModel):
    role: UserRole
    permissions: list[str] | None = None


def user_dict(user: User) -> dict:
    return {
        "id": str(user.id),
        "email": user.email,
        "name": user.name,
        "avatar": user.avatar,
        "role": user.role,
        "permissions": sorted(p.value for p in parse_permissions(user.permissions)),
        "is_active": user.is_active,
        "locale": user.locale,
        "referral_code": user.referral_code,
        "email_verified_at": isoformat(user.email_verified_at),
        "last_login_at": isoformat(user.last_login_at),
        "created_at": isoformat(user.created_at),
        "updated_at": isoformat(user.updated_at),
    }


def check_role_grant(actor: CurrentUser, new_role: UserRole) -> None:
    if new_role in ADMIN_ROLES:
        check_permission(actor, Permission.MANAGE_ADMINS, "No permission to manage admin roles")
    else:
        check_permission(actor, Permission.UPDATE_USERS, "No permission to update users")
    if new_role == UserRole.SUPER_ADMIN and not actor.is_super_admin:
        raise APIError(403, "Only super admins can grant super admin role")


def check_role_target(actor: CurrentUser, target: User, new_role: UserRole) -> None:
    if target.role == UserRole.SUPER_ADMIN.value and not actor.is_super_admin:
        raise APIError(403, "Only super admins can modify super admin accounts")
    if target.id == actor.id and new_role.value != target.role:
        raise APIError(403, "Cannot change your own role")


async def _get_user(db: AsyncSession, user_id: UUID) -> User:
    user = await db.get(User, user_id)
    if not user:
        raise not_found("User")
    return user


@router.get("")
async def list_users(
    request: Request,
    current: CurrentUser = Depends(require_permission(Permission.VIEW_USERS)),
    db: AsyncSession = Depends(get_db),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: str | None = None,
    role: UserRole | None = None,
    status: str | None = Query(None, pattern="^(active|inactive)$"),
):
    filters = []
    if search:
        pattern = f"%{search.lower()}%"
        filters.append(or_(func.lower(User.email).like(pattern), func.lower(User.name).like(pattern)))
    if role:
        filters.append(User.role == role.value)
    if status == "active":
        filters.append(User.is_active.is_(True))
    elif status == "inactive":
        filters.append(User.is_active.is_(False))

    total = (await db.execute(select(func.count(User.id)).where(*filters))).scalar_one()
    result = await db.execute(
        select(User).where(*filters).order_by(User.created_at.desc()).offset((page - 1) * limit).limit(limit)
    )
    users = [user_dict(u) for u in result.scalars().all()]

    await log_admin_action(
        db, current.id, "VIEW_USERS", entity_type="user",
        details={"search": search, "role": role, "status": status, "page": page, "limit": limit},
        request=request,
    )
    return envelope({
        "users": users,
        "pagination": {"total": total, "page": page, "limit": limit, "total_pages": math.ceil(total / limit)},
    })


@router.post("", status_code=201)
async def create_user_account(
    req: CreateUserRequest,
    request: Request,
    current: CurrentUser = Depends(require_permission(Permission.CREATE_USERS)),
    db: AsyncSession = Depends(get_db),
):
    if req.role != UserRole.USER:
        check_role_grant(current, req.role)
    if await find_user_by_email(db, req.email):
        raise APIError(409, "Email already exists")

    # A code collision rolls back and expires the session's objects, `current.user` included
    actor_id = current.id

    try:
        user = await create_user(
            db,
            email=req.email,
            name=req.name,
            role=req.role.value,
            permissions=sorted(p.value for p in parse_permissions(req.permissions)) or None,
            is_active=req.is_active,
            email_verified=req.email_verified,
        )
    except IntegrityError:
        await db.rollback()
        raise APIError(409, "Email already exists")

    await log_admin_action(
        db, actor_id, "CREATE_USER", entity_type="user", entity_id=user.id,
        details={"email": user.email, "role": user.role},
        request=request,
    )
    return envelope(user_dict(user))


@router.get("/{user_id}")
async def get_user(
    user_id: UUID,
    current: CurrentUser = Depends(require_permission(Permission.VIEW_USERS)),
    db: AsyncSession = Depends(get_db),
):
    user = await _get_user(db, user_id)
    counts = {}
    for key, model in (("interests", Interest), ("contributions", Contribution), ("referral_links", ReferralLink)):
        counts[key] = (await db.execute(
            select(func.count(model.id)).where(model.user_id == user.id)
        )).scalar_one()

    data = user_dict(user)
    data.update({"bio": user.bio, "location": user.location, "counts": counts})
    return envelope(data)


@router.put("/{user_id}")
async def update_user(
    user_id: UUID,
    req: UpdateUserRequest,
    request: Request,
    current: CurrentUser = Depends(require_permission(Permission.UPDATE_USERS)),
    db: AsyncSession = Depends(get_db),
):
    user = await _get_user(db, user_id)
    if user.role == UserRole.SUPER_ADMIN.value and not current.is_super_admin:
        raise APIError(403, "Only super admins can modify super admin accounts")

    updates = req.model_dump(exclude_unset=True, exclude_none=True)
    if "locale" in updates and updates["locale"] not in LOCALES:
        raise APIError(400, f"locale must be one of {list(LOCALES)}")
    if updates.get("is_active") is False and user.id == current.id:
        raise APIError(403, "Cannot deactivate your own account")
    if not updates:
        raise APIError(400, "No valid fields to update")

    changes = changed_fields(user, updates)
    for field, value in updates.items():
        setattr(user, field, value)
    await db.commit()

    await log_admin_action(
        db, current.id, "UPDATE_USER", entity_type="user", entity_id=user.id,
        details={"email": user.email, "changes": changes},
        request=request,
    )
    return envelope(user_dict(user))


@router.patch("/{user_id}/role")
async def change_user_role(
    user_id: UUID,
    req: RoleChangeRequest,
    request: Request,
    current: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    check_role_grant(current, req.role)
    user = await _get_user(db, user_id)
    check_role_target(current, user, req.role)

    old_role = user.role
    user.role = req.role.value
    # Overrides change only when the request names them
    if "permissions" in req.model_fields_set:
        user.permissions = sorted(p.value for p in parse_permissions(req.permissions)) or None
    permissions = list(user.permissions or [])
    await db.commit()

    await log_admin_action(
        db, current.id, "CHANGE_USER_ROLE", entity_type="user", entity_id=user.id,
        details={"email": user.email, "old_role": old_role, "new_role": user.role, "permissions": permissions},
        request=request,
    )
    logger.info("user_role_changed", user_id=str(user.id), old_role=old_role, new_role=user.role,
                actor=str(current.id))
    return envelope(user_dict(user))


@router.delete("/{user_id}")
async def delete_user(
    user_id: UUID,
    request: Request,
    current: CurrentUser = Depends(require_permission(Permission.DELETE_USERS)),
    db: AsyncSession = Depends(get_db),
):
    user = await _get_user(db, user_id)
    if user.role == UserRole.SUPER_ADMIN.value:
        raise APIError(403, "Cannot delete super admin accounts")
    if user.id == current.id:
        raise APIError(403, "Cannot delete your own account")

    user.is_active = False
    await db.commit()

    await log_admin_action(
        db, current.id, "DELETE_USER", entity_type="user", entity_id=user.id,
        details={"email": user.email, "role": user.role},
        request=request,
    )
    return envelope({"message": "User deactivated successfully", "user": user_dict(user)})


@router.post("/{user_id}/impersonate")
async def impersonate_user(
    user_id: UUID,
    request: Request,
    response: Response,
    current: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    if not current.is_super_admin:
        raise APIError(403, "Only super admins can impersonate users")

    target = await _get_user(db, user_id)
    if target.role == UserRole.SUPER_ADMIN.value and target.id != current.id:
        raise APIError(403, "Cannot impersonate other super admin accounts")
    if not target.is_active:
        raise APIError(403, "Cannot impersonate inactive accounts")

    token = mint_session_token(target.id, get_settings().impersonation_expiry_seconds)
    target.last_login_at = utcnow()
    await db.commit()

    await log_admin_action(
        db, current.id, "IMPERSONATE_USER", entity_type="user", entity_id=target.id,
        details={"target_email": target.email, "target_role": target.role},
        request=request,
    )
    logger.warning("impersonation_started", actor=str(current.id), target=str(target.id))

    set_session_cookie(response, token)
    return envelope({
        "message": "Impersonation started successfully",
        "user": {"id": str(target.id), "email": target.email, "name": target.name, "role": target.role},
        "token": str(token),
        "expires": token.expiry,
        "redirect_url": "/",
    })
