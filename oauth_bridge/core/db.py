from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

from oauth_bridge.core.config import settings

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    future=True,
    pool_pre_ping=True,
)


Base = declarative_base()


def make_sessionmaker(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=bind, class_=AsyncSession, expire_on_commit=False)


async def init_db(bind: AsyncEngine = engine) -> None:
    # models must be imported so their tables are registered on Base.metadata
    from oauth_bridge.models.persistance import auth, sessions, tokens  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db(bind: AsyncEngine = engine) -> None:
    await bind.dispose()
