"""
Database configuration and session management.
"""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from brdsync.core.config import get_settings

settings = get_settings()


def to_async_url(url: str) -> str:
    """Convert a plain database URL to its async driver form."""
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


async_url = to_async_url(settings.database.url)

is_async_sqlite = async_url.startswith("sqlite+aiosqlite://")
async_engine_args = {
    "echo": settings.database.echo,
    "pool_recycle": settings.database.pool_recycle,
    "pool_pre_ping": True,
}

# Only add pool settings for non-SQLite databases
if not is_async_sqlite:
    async_engine_args.update(
        {
            "pool_size": 5,
            "max_overflow": 10,
        }
    )

async_engine = create_async_engine(async_url, **async_engine_args)

AsyncSessionLocal = async_sessionmaker(
    async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)

# Create base class for models
Base = declarative_base()


async def get_async_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency to get async database session.

    Yields:
        Async database session
    """
    async with AsyncSessionLocal() as session:
        yield session


# Schema is managed by Alembic migrations, see brdsync.core.migrations


async def close_db() -> None:
    """Close database connections."""
    await async_engine.dispose()
