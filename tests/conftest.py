"""Pytest configuration."""

import asyncio
import os
import time

# Ensure test environment
os.environ.setdefault("SG_DATABASE_URL", "sqlite+aiosqlite:///test.db")
os.environ.setdefault("SG_DEBUG", "true")
os.environ.setdefault("SG_ENVIRONMENT", "production")
os.environ.setdefault("SG_SHOPIFY_API_KEY", "test-api-key")
os.environ.setdefault("SG_SHOPIFY_API_SECRET", "test-shopify-secret")
os.environ.setdefault("SG_DATASTORE_TIMEOUT_MS", "5000")
os.environ.setdefault("SG_SEED_GLOBAL_BOT_RULES", "false")

import jwt
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from storeguard.models.database import init_models

TEST_SHOP = "test-store.myshopify.com"
OTHER_SHOP = "other-store.myshopify.com"


@pytest.fixture
def sqlite_url(tmp_path):
    # File-backed + NullPool: every session opens its own connection, so the
    # same database works from pytest-asyncio and from TestClient's event loop.
    return f"sqlite+aiosqlite:///{tmp_path / 'storeguard.db'}"


def _session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session_maker(sqlite_url):
    engine = create_async_engine(sqlite_url, poolclass=NullPool)
    await init_models(engine)
    yield _session_maker(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def sync_session_maker(sqlite_url):
    """Schema-initialised session maker for TestClient-based tests."""
    engine = create_async_engine(sqlite_url, poolclass=NullPool)
    asyncio.run(init_models(engine))
    yield _session_maker(engine)
    asyncio.run(engine.dispose())


@pytest.fixture
def db_override(sync_session_maker):
    """Replacement for get_db bound to the test database."""
    async def _get_db():
        async with sync_session_maker() as session:
            yield session
    return _get_db


@pytest.fixture
def session_token():
    """Factory for Shopify session tokens signed with the test secret."""
    def _make(shop: str = TEST_SHOP, secret: str = "test-shopify-secret", **claims) -> str:
        now = int(time.time())
        payload = {
            "iss": f"https://{shop}/admin",
            "dest": f"https://{shop}",
            "aud": "test-api-key",
            "sub": "42",
            "exp": now + 60,
            "nbf": now - 5,
            "iat": now - 5,
        }
        payload.update(claims)
        return jwt.encode(payload, secret, algorithm="HS256")
    return _make
