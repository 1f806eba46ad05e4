"""Integration test fixtures: the HTTP API over a real async database."""

from collections.abc import AsyncGenerator

import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from paylink.api.app import create_app
from paylink.config import Settings
from paylink.database import create_schema_async
from paylink.events import EventEmitter
from paylink.providers import StubTransferEngine


@pytest_asyncio.fixture
async def async_engine(settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    """Async engine on the per-test SQLite file, schema created."""
    engine = create_async_engine(
        settings.database_url, echo=False, connect_args={"timeout": 30}
    )
    await create_schema_async(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def async_session_factory(
    async_engine: AsyncEngine,
) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(
    async_session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Get database session for integration tests."""
    async with async_session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def app(
    settings: Settings,
    transfer_engine: StubTransferEngine,
    async_session_factory: async_sessionmaker[AsyncSession],
    emitter: EventEmitter,
) -> FastAPI:
    return create_app(
        settings,
        engine=transfer_engine,
        session_factory=async_session_factory,
        emitter=emitter,
    )


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client bound to the app without a network hop."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
