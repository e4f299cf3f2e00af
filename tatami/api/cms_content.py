"""
CMS: articles and other editorial content.

Status lifecycle: draft → review → published → archived.
published_at is set when content first enters "published" and cleared when
it leaves, always in the same UPDATE as the status change.
Deleting archives; nothing is removed.
"""

import math
from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tatami.core.audit import changed_fields, log_admin_action
from tatami.core.errors import APIError, envelope, not_found
from tatami.core.permissions import Permission
from tatami.core.timeutil import as_utc, isoformat, utcnow
from tatami.middleware.auth import CurrentUser, check_permission, require_permission, require_user
from tatami.models.database import get_db
from tatami.models.tables import Content

import structlog

logger = structlog.get_logger()
router = APIRouter(prefix="/api/cms/content", tags=["cms"])

STATUS_PATTERN = "^(draft|review|published|archived)$"
SORTABLE = {"updated_at", "created_at", "title", "published_at"}
SLUG_PATTERN = "^[a-z0-9]+(?:-[a-z0-9]+)*$"


class ContentPayload(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    slug: str = Field(min_length=1, max_length=255, pattern=SLUG_PATTERN)
    body: str = Field(min_length=1)
    type: str = Field(default="article", max_length=30)
    status: str = Field(default="draft", pattern=STATUS_PATTERN)
    excerpt: str = ""
    title_en: str | None = None
    title_ja: str | None = None
    excerpt_en: str | None = None
    excerpt_ja: str | None = None
    cover_image: str | None = None
    meta_title: str | None = Field(default=None, max_length=255)
    meta_description: str | None = None
    published_at: datetime | None = None


class ContentStatusRequest(BaseModel):
    status: str = Field(pattern=STATUS_PATTERN)


def content_dict(content: Content, full: bool = True) -> dict:
    data = {
        "id": str(content.id),
        "title": content.title,
        "slug": content.slug,
        "type": content.type,
        "status": content.status,
        "excerpt": content.excerpt,
        "cover_image": content.cover_image,
        "author_id": str(content.author_id) if content.author_id else None,
        "published_at": isoformat(content.published_at),
        "created_at": isoformat(content.created_at),
        "updated_at": isoformat(content.updated_at),
    }
    if full:
        data.update({
            "title_en": content.title_en,
            "title_ja": content.title_ja,
            "excerpt_en": content.excerpt_en,
            "excerpt_ja": content.excerpt_ja,
            "body": content.body,
            "meta_title": content.meta_title,
            "meta_description": content.meta_description,
            "last_edited_by": str(content.last_edited_by) if content.last_edited_by else None,
        })
    return data


def published_at_for(new_status: str, current_published_at: datetime | None,
                     requested: datetime | None = None) -> datetime | None:
    """published_at after moving to new_status."""
    if new_status != "published":
        return None
    if current_published_at is not None:
        return current_published_at
    return as_utc(requested) or utcnow()


async def _slug_taken(db: AsyncSession, slug: str, exclude_id: UUID | None = None) -> bool:
    stmt = select(Content.id).where(Content.slug == slug)
    if exclude_id is not None:
        stmt = stmt.where(Content.id != exclude_id)
    return (await db.execute(stmt)).first() is not None


async def _get_content(db: AsyncSession, content_id: UUID) -> Content:
    content = await db.get(Content, content_id)
    if not content:
        raise not_found("Content")
    return content


@router.get("")
async def list_content(
    request: Request,
    current: CurrentUser = Depends(require_permission(Permission.VIEW_CONTENT)),
    db: AsyncSession = Depends(get_db),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: str | None = None,
    status: str | None = Query(None, pattern=STATUS_PATTERN),
    type: str | None = None,
    sort_by: str = "updated_at",
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
):
    if sort_by not in SORTABLE:
        raise APIError(400, f"sort_by must be one of {sorted(SORTABLE)}")

    filters = []
    if search:
        pattern = f"%{search.lower()}%"
        filters.append(or_(*(
            func.lower(getattr(Content, field)).like(pattern)
            for field in ("title", "excerpt", "title_en", "title_ja")
        )))
    if status:
        filters.append(Content.status == status)
    if type:
        filters.append(Content.type == type)

    total = (await db.execute(select(func.count(Content.id)).where(*filters))).scalar_one()
    column = getattr(Content, sort_by)
    result = await db.execute(
        select(Content)
        .where(*filters)
        .order_by(column.desc() if sort_order == "desc" else column.asc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    items = [content_dict(c, full=False) for c in result.scalars().all()]

    await log_admin_action(
        db, current.id, "VIEW_CONTENT", entity_type="content",
        details={"search": search, "status": status, "type": type, "page": page, "limit": limit},
        request=request,
    )

    return envelope({
        "content": items,
        "pagination": {"total": total, "page": page, "limit": limit, "total_pages": math.ceil(total / limit)},
    })


@router.post("", status_code=201)
async def create_content(
    payload: ContentPayload,
    request: Request,
    current: CurrentUser = Depends(require_permission(Permission.CREATE_CONTENT)),
    db: AsyncSession = Depends(get_db),
):
    if payload.status == "published":
        check_permission(current, Permission.PUBLISH_CONTENT, "No permission to publish content")
    if await _slug_taken(db, payload.slug):
        raise APIError(409, "Slug already exists")

    values = payload.model_dump(exclude={"published_at"})
    content = Content(
        **values,
        author_id=current.id,
        last_edited_by=current.id,
        published_at=published_at_for(payload.status, None, payload.published_at),
    )
    db.add(content)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise APIError(409, "Slug already exists")

    await log_admin_action(
        db, current.id, "CREATE_CONTENT", entity_type="content", entity_id=content.id,
        details={"title": content.title, "type": content.type, "status": content.status},
        request=request,
    )
    logger.info("content_created", content_id=str(content.id), slug=content.slug)
    return envelope(content_dict(content))


@router.get("/{content_id}")
async def get_content(
    content_id: UUID,
    current: CurrentUser = Depends(require_permission(Permission.VIEW_CONTENT)),
    db: AsyncSession = Depends(get_db),
):
    return envelope(content_dict(await _get_content(db, content_id)))


@router.put("/{content_id}")
async def update_content(
    content_id: UUID,
    payload: ContentPayload,
    request: Request,
    current: CurrentUser = Depends(require_permission(Permission.UPDATE_CONTENT)),
    db: AsyncSession = Depends(get_db),
):
    content = await _get_content(db, content_id)
    if payload.status == "published" and content.status != "published":
        check_permission(current, Permission.PUBLISH_CONTENT, "No permission to publish content")
    if payload.slug != content.slug and await _slug_taken(db, payload.slug, exclude_id=content.id):
        raise APIError(409, "Slug already exists")

    values = payload.model_dump(exclude={"published_at"})
    changes = changed_fields(content, values)
    for field, value in values.items():
        setattr(content, field, value)
    content.published_at = published_at_for(payload.status, content.published_at, payload.published_at)
    content.last_edited_by = current.id

    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise APIError(409, "Slug already exists")

    await log_admin_action(
        db, current.id, "UPDATE_CONTENT", entity_type="content", entity_id=content.id,
        details={"title": content.title, "changes": changes},
        request=request,
    )
    logger.info("content_updated", content_id=str(content.id), changes=changes)
    return envelope(content_dict(content))


@router.patch("/{content_id}/status")
async def change_content_status(
    content_id: UUID,
    req: ContentStatusRequest,
    request: Request,
    current: CurrentUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    if req.status == "published":
        check_permission(current, Permission.PUBLISH_CONTENT, "No permission to publish content")
    else:
        check_permission(current, Permission.UPDATE_CONTENT, "No permission to update content")

    content = await _get_content(db, content_id)
    old_status = content.status

    content.status = req.status
    content.published_at = published_at_for(req.status, content.published_at)
    content.last_edited_by = current.id
    await db.commit()

    await log_admin_action(
        db, current.id, "CHANGE_CONTENT_STATUS", entity_type="content", entity_id=content.id,
        details={"title": content.title, "old_status": old_status, "new_status": req.status},
        request=request,
    )
    logger.info("content_status_changed", content_id=str(content.id), from_status=old_status, to_status=req.status)
    return envelope(content_dict(content))


@router.delete("/{content_id}")
async def delete_content(
    content_id: UUID,
    request: Request,
    current: CurrentUser = Depends(require_permission(Permission.DELETE_CONTENT)),
    db: AsyncSession = Depends(get_db),
):
    content = await _get_content(db, content_id)
    content.status = "archived"
    content.published_at = None
    content.last_edited_by = current.id
    await db.commit()

    await log_admin_action(
        db, current.id, "DELETE_CONTENT", entity_type="content", entity_id=content.id,
        details={"title": content.title, "slug": content.slug},
        request=request,
    )
    logger.info("content_archived", content_id=str(content.id))
    return envelope({"message": "Content archived successfully", "content": content_dict(content)})
