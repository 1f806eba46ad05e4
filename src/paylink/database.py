"""Database connection and session management."""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import create_engine, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import Session, sessionmaker

from paylink.config import get_settings
from paylink.models import Base

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine
    from sqlalchemy.ext.asyncio import AsyncEngine


def _engine_kwargs(url: str) -> dict:
    """Pool options per backend; SQLite file locks need a generous busy timeout."""
    if url.startswith("sqlite"):
        return {"connect_args": {"timeout": 30}}
    return {"pool_pre_ping": True, "pool_size": 10, "max_overflow": 20}


def get_engine() -> AsyncEngine:
    """Create async database engine."""
    settings = get_settings()
    return create_async_engine(
        settings.database_url,
        echo=False,
        **_engine_kwargs(settings.database_url),
    )


def get_sync_engine(url: str | None = None) -> Engine:
    """Create sync database engine (CLI, jobs, metrics)."""
    url = url or get_settings().database_url_sync
    return create_engine(url, echo=False, **_engine_kwargs(url))


# Global engine and session factory
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_db() -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Initialize database engine and session factory."""
    global _engine, _session_factory
    if _engine is None:
        _engine = get_engine()
        _session_factory = async_sessionmaker(
            _engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _engine, _session_factory


def sync_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Session factory for the sync stack."""
    return sessionmaker(engine, expire_on_commit=False, autoflush=False)


def create_schema(engine: Engine) -> None:
    """Create all ledger tables (idempotent)."""
    Base.metadata.create_all(engine)


async def create_schema_async(engine: AsyncEngine) -> None:
    """Create all ledger tables on an async engine (idempotent)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def ping(session: AsyncSession) -> bool:
    """Return True if the database answers a trivial query."""
    await session.execute(text("SELECT 1"))
    return True
