"""
Database Connection Module
Handles the async SQLAlchemy engine, session factory and per-operation timeouts.
"""

import asyncio
import logging
from typing import Awaitable, TypeVar

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from tableside.core.config import Settings, get_settings
from tableside.exceptions import PersistenceTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


# Base class for all our models
class Base(DeclarativeBase):
    pass


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    """
    Build the async engine for the configured database.

    SQLite runs without a sized connection pool and waits up to
    database_busy_timeout for a competing writer; PostgreSQL gets a small
    pool with overflow for bursts from kitchen and cashier devices.
    """
    if settings.database_url.startswith("sqlite"):
        return create_async_engine(
            settings.database_url,
            echo=settings.database_echo,
            connect_args={"timeout": settings.database_busy_timeout},
        )

    return create_async_engine(
        settings.database_url,
        echo=settings.database_echo,
        pool_size=5,  # Connection pool size
        max_overflow=10,  # Extra connections when pool is full
        pool_pre_ping=True,
    )


def create_session_maker(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory - creates new database sessions."""
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False  # Objects remain accessible after commit
    )


engine = create_engine_from_settings(get_settings())
async_session_maker = create_session_maker(engine)


async def get_db() -> AsyncSession:
    """
    Dependency injection for FastAPI routes.
    Yields a database session and ensures cleanup.
    """
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db(bind: AsyncEngine = engine) -> None:
    """
    Create all tables and seed the order number counter.
    Called once at application startup.
    """
    # Import models so every table is registered on Base.metadata
    from tableside.models import OrderCounter

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with create_session_maker(bind)() as session:
        async with session.begin():
            existing = await session.scalar(
                select(OrderCounter).where(OrderCounter.name == OrderCounter.ORDERS)
            )
            if existing is None:
                session.add(OrderCounter(name=OrderCounter.ORDERS, value=0))

    logger.info("Database tables created successfully")


async def run_with_timeout(operation: str, awaitable: Awaitable[T], timeout: float) -> T:
    """
    Await a persistence operation with an upper bound on its duration.

    On expiry the inner task is cancelled, which rolls back any open
    transaction, and PersistenceTimeoutError is raised so callers can tell
    a retryable timeout apart from a business error.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as exc:
        logger.warning(f"{operation} timed out after {timeout}s; nothing was applied")
        raise PersistenceTimeoutError(operation, timeout) from exc
