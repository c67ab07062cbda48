"""
Async SQLAlchemy engine + session factory.

Production targets TiDB (MySQL-protocol) through the aiomysql driver. Tests
point ``database_url`` at ``sqlite+aiosqlite://`` and build their own engine
with ``make_engine``. The module-level engine is created once at import and
reused across all requests and background jobs.
"""
import logging

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from recengine.config import settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


def make_engine(url: str, echo: bool = False) -> AsyncEngine:
    # SQLite keeps a single shared connection so an in-memory database survives
    if url.startswith("sqlite"):
        return create_async_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=echo,
        )
    return create_async_engine(
        url,
        pool_pre_ping=True,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        echo=echo,
    )


def make_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=bind, class_=AsyncSession, expire_on_commit=False)


engine = make_engine(settings.database_url, echo=settings.database_echo)
AsyncSessionLocal = make_session_factory(engine)


async def init_db(bind: AsyncEngine | None = None) -> None:
    """Create all tables if they don't exist (idempotent)."""
    # Register ORM tables on Base.metadata
    from recengine import models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialised")
