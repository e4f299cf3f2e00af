"""Pytest configuration."""

import asyncio
import os
from uuid import uuid4

# Ensure test environment (before anything reads settings)
os.environ.setdefault("TATAMI_SESSION_SECRET", "test-secret-key-for-testing")
os.environ.setdefault("TATAMI_DATABASE_URL", "sqlite+aiosqlite:///test.db")
os.environ.setdefault("TATAMI_DEBUG", "true")
os.environ.setdefault("TATAMI_INTERNAL_API_KEY", "test-internal-key")
os.environ.setdefault("TATAMI_BASE_URL", "https://tatami.test")
os.environ.setdefault("TATAMI_GEOIP_URL", "")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from tatami.core.session_token import mint_session_token
from tatami.main import app
from tatami.middleware.rate_limit import reset_rate_limits
from tatami.models.database import get_db
from tatami.models.tables import Base, Content, Master, ReferralLink, User


@pytest.fixture
def session_maker(tmp_path):
    """A fresh SQLite file per test; NullPool so no connection outlives its event loop."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'tatami.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )

    async def create_schema():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(create_schema())
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    asyncio.run(engine.dispose())


@pytest.fixture
def run_db(session_maker):
    """Run `fn(session)` to completion in its own session and return the result."""
    def run(fn):
        async def go():
            async with session_maker() as session:
                return await fn(session)
        return asyncio.run(go())
    return run


@pytest.fixture
def client(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    reset_rate_limits()
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    reset_rate_limits()


@pytest.fixture
def rows(run_db):
    """rows(Model, *where) → every matching row."""
    def fetch(model, *where):
        async def go(db):
            result = await db.execute(select(model).where(*where))
            return list(result.scalars().all())
        return run_db(go)
    return fetch


@pytest.fixture
def add(run_db):
    """Persist one ORM object and hand it back (detached, attributes loaded)."""
    def persist(obj):
        async def go(db):
            db.add(obj)
            await db.commit()
            return obj
        return run_db(go)
    return persist


@pytest.fixture
def make_user(add):
    def make(role="USER", permissions=None, is_active=True, email=None, name="Test User"):
        return add(User(
            email=email or f"user-{uuid4().hex[:10]}@example.com",
            name=name,
            role=role,
            permissions=permissions,
            is_active=is_active,
            locale="en",
            referral_code=uuid4().hex[:8],
        ))
    return make


@pytest.fixture
def make_master(add):
    def make(**overrides):
        values = {"name": "Master Sato", "title": "Tea ceremony", "is_active": True}
        values.update(overrides)
        return add(Master(**values))
    return make


@pytest.fixture
def make_link(add):
    def make(user, **overrides):
        values = {
            "user_id": user.id,
            "code": "REF" + uuid4().hex[:6].upper(),
            "target_url": "/masters",
            "is_active": True,
            "click_count": 0,
        }
        values.update(overrides)
        return add(ReferralLink(**values))
    return make


@pytest.fixture
def make_content(add):
    def make(author=None, **overrides):
        values = {
            "title": "Kintsugi basics",
            "slug": f"kintsugi-{uuid4().hex[:6]}",
            "body": "Gold and lacquer.",
            "status": "draft",
            "author_id": author.id if author else None,
        }
        values.update(overrides)
        return add(Content(**values))
    return make


@pytest.fixture
def auth():
    """auth(user) → Authorization header carrying a fresh session token."""
    def headers(user):
        return {"Authorization": f"Bearer {mint_session_token(user.id)}"}
    return headers
