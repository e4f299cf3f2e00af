"""
Tatami Labs: referral tracking, master catalogue and CMS backend.
Main application entry point.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tatami.api.auth import router as auth_router
from tatami.api.cms_content import router as cms_content_router
from tatami.api.cms_dashboard import router as cms_dashboard_router
from tatami.api.cms_masters import router as cms_masters_router
from tatami.api.cms_users import router as cms_users_router
from tatami.api.community import router as community_router
from tatami.api.conversions import router as conversions_router
from tatami.api.health import router as health_router
from tatami.api.interests import router as interests_router
from tatami.api.masters import router as masters_router
from tatami.api.media import router as media_router
from tatami.api.profile import router as profile_router
from tatami.api.referrals import router as referrals_router
from tatami.api.tracking import router as tracking_router
from tatami.config import get_settings
from tatami.core.errors import register_error_handlers
from tatami.middleware.auth import drop_quieted_events
from tatami.middleware.security import SecurityHeadersMiddleware

import structlog

structlog.configure(
    processors=[
        drop_quieted_events,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.dev.ConsoleRenderer() if get_settings().debug else structlog.processors.JSONRenderer(),
    ],
)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("tatami_starting", base_url=get_settings().base_url, version=get_settings().version)
    yield
    logger.info("tatami_shutting_down")


app = FastAPI(
    title=get_settings().app_name,
    description="Referral tracking, master catalogue and CMS backend.",
    version=get_settings().version,
    lifespan=lifespan,
    docs_url="/docs" if get_settings().debug else None,
    redoc_url="/redoc" if get_settings().debug else None,
    openapi_url="/openapi.json" if get_settings().debug else None,
)

register_error_handlers(app)

# Security headers on every response
app.add_middleware(SecurityHeadersMiddleware)

ALLOWED_ORIGINS = ["*"] if get_settings().debug else [
    "https://tatamilabs.com",
    "https://www.tatamilabs.com",
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Authorization", "Content-Type", "X-Internal-Key"],
)

# --- Routes ---
# Fixed /api/referrals/* paths (track, stats, summary, conversions) must be
# registered ahead of the /api/referrals/{link_id} routes.
app.include_router(tracking_router)
app.include_router(conversions_router)
app.include_router(referrals_router)
app.include_router(interests_router)
app.include_router(masters_router)
app.include_router(cms_masters_router)
app.include_router(cms_content_router)
app.include_router(cms_users_router)
app.include_router(cms_dashboard_router)
app.include_router(profile_router)
app.include_router(community_router)
app.include_router(auth_router)
app.include_router(health_router)
app.include_router(media_router)
