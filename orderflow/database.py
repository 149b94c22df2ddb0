"""
Database Connection Module
Handles the relational store using SQLAlchemy async engines.

Engines are created explicitly so the API process, the Celery worker and the
test suite can each own an isolated engine/session factory pair.
"""

import logging
from functools import lru_cache

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from orderflow.core.config import get_settings

logger = logging.getLogger(__name__)

SessionFactory = async_sessionmaker[AsyncSession]


# Base class for all our models
class Base(DeclarativeBase):
    pass


def create_engine_and_sessionmaker(
    url: str,
    echo: bool = False,
) -> tuple[AsyncEngine, SessionFactory]:
    """
    Create an async engine and its session factory.

    Args:
        url: SQLAlchemy URL (``postgresql+psycopg://...`` in production,
             ``sqlite+aiosqlite://...`` in tests)
        echo: Log all SQL statements
    """
    engine_kwargs = {"echo": echo}
    if not url.startswith("sqlite"):
        engine_kwargs.update(
            pool_size=5,  # Connection pool size
            max_overflow=10,  # Extra connections when pool is full
            pool_pre_ping=True,
        )

    engine = create_async_engine(url, **engine_kwargs)

    session_factory = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Objects remain accessible after commit
    )
    return engine, session_factory


@lru_cache()
def get_engine_and_sessionmaker() -> tuple[AsyncEngine, SessionFactory]:
    """Process-wide engine built from settings."""
    settings = get_settings()
    return create_engine_and_sessionmaker(settings.database_url, settings.database_echo)


async def init_db(engine: AsyncEngine) -> None:
    """
    Create all tables in database.
    Called once at application startup.
    """
    # Register models on Base.metadata
    from orderflow import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created successfully")
