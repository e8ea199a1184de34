from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import text
import logging

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


def normalize_database_url(url: str) -> str:
    """Ensure an async driver is used for plain postgres URLs."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite://") and not url.startswith("sqlite+aiosqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create the async engine for the ledger database."""
    url = normalize_database_url(database_url)

    if url.startswith("sqlite"):
        return create_async_engine(url, echo=echo)

    return create_async_engine(
        url,
        echo=echo,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


async def init_db(engine: AsyncEngine):
    """Verify the connection and create any missing ledger tables"""
    # Register models on Base.metadata
    from database import ledger_models  # noqa: F401

    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
            await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Ledger tables ready: {sorted(Base.metadata.tables)}")
        return True
    except Exception as e:
        logger.error(f"Database initialization error: {e}")
        raise
