"""Async database engine and session management."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from storeguard.config import get_settings

import structlog

logger = structlog.get_logger()

# Lazy initialization: engine created on first use, not at import time.
_engine = None
_async_session = None


def _get_engine():
    global _engine
    if _engine is None:
        settings = get_settings()
        kwargs = {"pool_pre_ping": True, "echo": settings.debug}
        if not settings.database_url.startswith("sqlite"):
            kwargs.update(pool_size=20, max_overflow=10)
        _engine = create_async_engine(settings.database_url, **kwargs)
    return _engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    global _async_session
    if _async_session is None:
        _async_session = async_sessionmaker(
            _get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _async_session


async def get_db() -> AsyncSession:
    """FastAPI dependency, yields an async session."""
    session_maker = get_session_maker()
    async with session_maker() as session:
        yield session


async def init_models(engine=None) -> None:
    """Create all tables. There is no migration history; this is the schema bootstrap."""
    from storeguard.models.tables import Base

    engine = engine or _get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def seed_global_bot_rules(session: AsyncSession) -> int:
    """Insert the default global bot whitelist. Existing patterns are left alone."""
    from storeguard.models.tables import DEFAULT_GLOBAL_BOT_RULES, GLOBAL_SHOP, BotRule

    result = await session.execute(
        select(BotRule.user_agent_pattern).where(BotRule.shop_domain == GLOBAL_SHOP)
    )
    existing = set(result.scalars().all())

    added = 0
    for pattern, name, url in DEFAULT_GLOBAL_BOT_RULES:
        if pattern in existing:
            continue
        session.add(BotRule(
            shop_domain=GLOBAL_SHOP,
            user_agent_pattern=pattern,
            bot_name=name,
            bot_url=url,
            list_type="whitelist",
        ))
        added += 1

    await session.commit()
    logger.info("global_bot_rules_seeded", added=added)
    return added
