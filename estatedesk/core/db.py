import logging
import re
from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from estatedesk.core.config import get_settings
from estatedesk.models.base import Base

logger = logging.getLogger(__name__)

settings = get_settings()


def get_async_database_url(url: str) -> str:
    """Convert database URL to async-compatible format using psycopg driver."""
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+psycopg://", 1)
    elif url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql+psycopg://", 1)

    if "channel_binding=" in url:
        url = re.sub(r'[&?]channel_binding=[^&]*', '', url)
        url = url.replace('?&', '?').rstrip('?')

    return url


database_url = get_async_database_url(settings.database_url)

engine_kwargs = {}
if database_url.startswith("postgresql"):
    engine_kwargs = {
        "pool_recycle": 3600,  # Recycle connections after 1 hour
        "pool_timeout": 10,    # Wait up to 10 seconds for a connection from pool
        "max_overflow": 10,    # Allow extra connections beyond pool_size
        "connect_args": {"connect_timeout": 10},
    }

engine: AsyncEngine = create_async_engine(
    database_url,
    future=True,
    echo=settings.debug,
    pool_pre_ping=True,
    **engine_kwargs,
)

AsyncSessionFactory = async_sessionmaker(
    bind=engine,
    expire_on_commit=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionFactory() as session:
        yield session


async def init_database() -> None:
    """Create all tables. In production use Alembic migrations instead."""
    logger.info("database_init_started", extra={"url": database_url.split("@")[-1]})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_init_completed")
