from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from queryoffload.core.config import Settings


# Control tables (job metadata, queue entries) live on this Base.
# Result tables are built at runtime and never registered here.
class Base(DeclarativeBase):
    pass


def create_engine_for(
    settings: Settings, url: Optional[str] = None, pool_size: Optional[int] = None
) -> AsyncEngine:
    """Build an async engine from settings; ``url`` overrides DATABASE_URL."""
    return create_async_engine(
        url or settings.DATABASE_URL,
        echo=settings.DATABASE_ECHO,
        pool_size=pool_size or settings.pool_size,
        pool_pre_ping=True,
    )


# Talk to the DB through async sessions without refreshes after commit
def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
