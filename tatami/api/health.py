"""
Liveness and database health.

Bare status objects rather than the envelope, so load balancers can read
them without knowing our API conventions. Anything other than fully healthy
answers 503.
"""

import datetime
import time

import psutil
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tatami.config import get_settings
from tatami.models.database import get_db, ping
from tatami.models.tables import Content, Master, User

import structlog

logger = structlog.get_logger()
router = APIRouter(tags=["health"])

_started = time.monotonic()
_process = psutil.Process()


def memory_usage_mb() -> float:
    """Current resident set size of this process."""
    return _process.memory_info().rss / (1024 * 1024)


def _now() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


@router.get("/health")
async def health(db: AsyncSession = Depends(get_db)):
    settings = get_settings()
    body = {
        "status": "healthy",
        "timestamp": _now(),
        "uptime": round(time.monotonic() - _started, 3),
        "version": settings.version,
        "checks": {"database": "unknown", "memory": "ok"},
    }

    try:
        await ping(db)
        body["checks"]["database"] = "connected"
    except (SQLAlchemyError, OSError):
        logger.exception("health_db_check_failed")
        body["status"] = "degraded"
        body["checks"]["database"] = "disconnected"

    if memory_usage_mb() > settings.health_memory_threshold_mb:
        body["status"] = "degraded"
        body["checks"]["memory"] = "high"

    return JSONResponse(body, status_code=200 if body["status"] == "healthy" else 503)


@router.get("/health/db")
async def health_db(db: AsyncSession = Depends(get_db)):
    try:
        started = time.perf_counter()
        await ping(db)
        latency_ms = round((time.perf_counter() - started) * 1000, 2)

        users = (await db.execute(select(func.count(User.id)))).scalar_one()
        masters = (await db.execute(select(func.count(Master.id)))).scalar_one()
        contents = (await db.execute(select(func.count(Content.id)))).scalar_one()
    except (SQLAlchemyError, OSError):
        logger.exception("health_db_check_failed")
        return JSONResponse(
            {"status": "unhealthy", "database": "disconnected", "timestamp": _now()},
            status_code=503,
        )

    return {
        "status": "healthy",
        "database": "connected",
        "response_time_ms": latency_ms,
        "statistics": {"users": users, "masters": masters, "contents": contents},
        "timestamp": _now(),
    }
