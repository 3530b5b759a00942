# ==== DATABASE CONNECTION AND SESSION MANAGEMENT ==== #

"""
Database connection and session management for the receivables ledger.

This module owns the async SQLAlchemy engine and session factory. Ledger
services receive the session factory and open one transaction per
operation; API readers use the ``get_db_session`` dependency.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional
from uuid import uuid4

from sqlalchemy.ext.asyncio import (
    create_async_engine,
    async_sessionmaker,
    AsyncSession,
    AsyncEngine
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool, StaticPool

from app.settings import settings


# ==== SQLALCHEMY CONFIGURATION ==== #

# SQLAlchemy base for model definitions
Base = declarative_base()

# Global engine and session factory instances
engine: AsyncEngine | None = None
SessionLocal: async_sessionmaker[AsyncSession] | None = None


# ==== DATABASE INITIALIZATION ==== #

def _normalize_url(db_url: str) -> str:
    if db_url.startswith("sqlite"):
        return db_url if "+aiosqlite" in db_url else db_url.replace("sqlite://", "sqlite+aiosqlite://", 1)

    if not db_url.startswith("postgresql+asyncpg://"):
        db_url = db_url.replace("postgresql+psycopg://", "postgresql+asyncpg://")
        db_url = db_url.replace("postgresql://", "postgresql+asyncpg://")

    # asyncpg spells the SSL flag differently
    if "sslmode=require" in db_url:
        db_url = db_url.replace("sslmode=require", "ssl=require")
    return db_url


def build_engine(db_url: str, echo: bool = False) -> AsyncEngine:
    """
    Create an async engine for PostgreSQL or SQLite.

    PostgreSQL connections behind a pooler get ``NullPool`` and unique
    prepared-statement names; in-memory SQLite shares one connection.

    Args:
        db_url (str): Database URL
        echo (bool): Echo SQL statements

    Returns:
        AsyncEngine: Configured engine
    """
    db_url = _normalize_url(db_url)

    if db_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in db_url or db_url.endswith("://"):
            kwargs["poolclass"] = StaticPool
        return create_async_engine(db_url, echo=echo, **kwargs)

    import asyncpg

    class _UniqueStmtConnection(asyncpg.Connection):
        """asyncpg Connection with UUID-based prepared-statement IDs."""

        def _get_unique_id(self, prefix: str) -> str:
            return f"__asyncpg_{prefix}_{uuid4().hex}__"

    is_pooler = "pooler" in db_url
    connect_args = {
        "statement_cache_size": 0,
        "connection_class": _UniqueStmtConnection,
        "server_settings": {
            "application_name": settings.SERVICE_NAME,
            "timezone": "UTC"
        }
    }

    return create_async_engine(
        db_url,
        echo=echo,
        poolclass=NullPool if is_pooler else None,
        isolation_level="READ_COMMITTED",
        connect_args=connect_args,
    )


def init_database(db_url: Optional[str] = None) -> None:
    """
    Initialize database engine and session factory.

    Args:
        db_url (Optional[str]): Override for ``DATABASE_URL``
    """
    global engine, SessionLocal

    if engine is not None:
        return

    engine = build_engine(db_url or settings.DATABASE_URL, echo=settings.APP_ENV == "dev")
    SessionLocal = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global session factory, initializing it on first use."""
    if SessionLocal is None:
        init_database()
    return SessionLocal


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Get database session with automatic commit/rollback.

    Yields:
        AsyncSession: Database session
    """
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for read-only database sessions.

    Yields:
        AsyncSession: Database session for request handling
    """
    async with get_session_factory()() as session:
        yield session


async def create_schema() -> None:
    """Create all tables from the ORM metadata (development and tests)."""
    import app.storage.models  # noqa: F401

    if engine is None:
        init_database()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_database() -> None:
    """Close database connections on shutdown."""
    global engine, SessionLocal
    if engine is not None:
        await engine.dispose()
        engine = None
        SessionLocal = None
