"""
Database Configuration and Session Management
============================================

Async engine, session factory and table creation for the SQL-backed escrow
store. Nothing connects at import; callers build an engine from a URL (or
from DATABASE_URL) when they opt into SQL persistence.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from config import Config
from models import Base

logger = logging.getLogger(__name__)


def to_async_url(database_url: str) -> str:
    """Map a plain driver URL onto its asyncio driver"""
    if database_url.startswith("postgres://"):
        database_url = "postgresql://" + database_url[len("postgres://"):]
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        # asyncpg uses 'ssl' instead of 'sslmode'
        database_url = database_url.replace("sslmode=", "ssl=")
    elif database_url.startswith("sqlite://"):
        database_url = database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return database_url


def build_async_engine(database_url: Optional[str] = None, echo: bool = False) -> AsyncEngine:
    url = database_url or Config.DATABASE_URL
    if not url:
        raise ValueError("DATABASE_URL environment variable is required for SQL persistence")

    async_url = to_async_url(url)
    options = {"echo": echo, "pool_pre_ping": True}
    if async_url.startswith("postgresql+asyncpg://"):
        options.update(
            pool_size=5,
            max_overflow=10,
            pool_recycle=3600,
            pool_timeout=30,
            connect_args={
                "server_settings": {"application_name": "escrow_settlement_jobs"},
                "timeout": 10,
                "command_timeout": 30,
            },
        )
    logger.info(f"🗄️ Building async engine for {async_url.split('://', 1)[0]}")
    return create_async_engine(async_url, **options)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,  # Rows are read after commit when mapped to dataclasses
    )


async def create_tables(engine: AsyncEngine) -> None:
    """Create all escrow tables if they don't exist"""
    logger.info("🏗️ Creating database tables (if they don't exist)...")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("✅ Database tables ready")


@asynccontextmanager
async def get_async_session(session_factory: async_sessionmaker):
    """
    Transactional session scope: commit on success, roll back on error.

    Usage:
        async with get_async_session(factory) as session:
            result = await session.execute(select(EscrowRecord).where(...))
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
