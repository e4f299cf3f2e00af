"""
Admin audit trail.

log_admin_action() is called after the mutation it describes has committed.
It is best-effort: the entry is written through its own session on the same
engine, so a failed insert is reported as admin_log_failed and leaves the
caller's session (and the mutation) untouched.
"""

from typing import Any, Mapping
from uuid import UUID

from fastapi.encoders import jsonable_encoder
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from tatami.core.device import client_ip
from tatami.models.tables import AdminLog

import structlog

logger = structlog.get_logger()


def changed_fields(original: Any, updated: Mapping[str, Any]) -> list[str]:
    """Keys of `updated` whose value differs from the same attribute/key on `original`."""
    changes = []
    for key, new_value in updated.items():
        if isinstance(original, Mapping):
            old_value = original.get(key)
        else:
            old_value = getattr(original, key, None)
        if old_value != new_value:
            changes.append(key)
    return changes


async def log_admin_action(
    db: AsyncSession,
    user_id: UUID,
    action: str,
    entity_type: str | None = None,
    entity_id: Any = None,
    details: dict | None = None,
    request: Request | None = None,
) -> bool:
    """Append an AdminLog row. Returns False (and logs) if the write failed."""
    entity_ref = str(entity_id) if entity_id is not None else None
    entry = AdminLog(
        user_id=user_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_ref,
        details=jsonable_encoder(details) if details is not None else None,
        ip_address=client_ip(request) if request is not None else "unknown",
        user_agent=(request.headers.get("user-agent") or "unknown") if request is not None else "unknown",
    )
    async with AsyncSession(bind=db.bind, expire_on_commit=False) as audit_db:
        audit_db.add(entry)
        try:
            await audit_db.commit()
        except SQLAlchemyError:
            await audit_db.rollback()
            logger.exception("admin_log_failed", action=action, entity_type=entity_type,
                             entity_id=entity_ref, actor=str(user_id))
            return False
    return True
