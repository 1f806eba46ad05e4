"""FastAPI dependencies for dependency injection."""

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from paylink.database import init_db
from paylink.lifecycle import AsyncLinkLifecycle


async def get_db_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    factory = request.app.state.session_factory
    if factory is None:
        _, factory = init_db()
        request.app.state.session_factory = factory
    async with factory() as session:
        try:
            yield session
        finally:
            await session.close()


# Type aliases for cleaner dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db_session)]


def get_lifecycle(request: Request, db: DbSession) -> AsyncLinkLifecycle:
    """Lifecycle facade bound to the request session and app-wide engine."""
    state = request.app.state
    return AsyncLinkLifecycle(
        db,
        state.transfer_engine,
        config=state.settings.ledger,
        emitter=state.emitter,
    )


Lifecycle = Annotated[AsyncLinkLifecycle, Depends(get_lifecycle)]
