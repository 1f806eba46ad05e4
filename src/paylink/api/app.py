"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paylink.api.routes import health_router, history_router, links_router
from paylink.config import Settings, get_settings
from paylink.database import create_schema_async, init_db
from paylink.errors import LedgerConsistencyError, LinkValidationError
from paylink.events import EventEmitter
from paylink.providers import ValueTransferEngine, build_transfer_engine

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup
    if app.state.session_factory is None:
        engine, factory = init_db()
        await create_schema_async(engine)
        app.state.session_factory = factory
    yield
    # Shutdown
    close = getattr(app.state.transfer_engine, "close", None)
    if close is not None:
        close()


def create_app(
    settings: Settings | None = None,
    engine: ValueTransferEngine | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    emitter: EventEmitter | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Settings (default: loaded from environment)
        engine: Value transfer engine (default: built from settings)
        session_factory: Async session factory (default: created on startup)
        emitter: Domain event emitter shared by all requests
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Payment Link Ledger API",
        description="Exactly-once claims for externally funded payment links",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.transfer_engine = engine or build_transfer_engine(settings)
    app.state.session_factory = session_factory
    app.state.emitter = emitter or EventEmitter()

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    @app.exception_handler(LinkValidationError)
    async def validation_exception_handler(
        request: Request, exc: LinkValidationError
    ) -> JSONResponse:
        """Handle rejected link input."""
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": exc.message, "code": "VALIDATION_ERROR", "field": exc.field},
        )

    @app.exception_handler(LedgerConsistencyError)
    async def consistency_exception_handler(
        request: Request, exc: LedgerConsistencyError
    ) -> JSONResponse:
        """Handle a broken claim gate; already logged and emitted by the coordinator."""
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": str(exc), "code": "CONSISTENCY_ERROR"},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred",
                "code": "INTERNAL_ERROR",
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(links_router, prefix="/api/v1")
    app.include_router(history_router, prefix="/api/v1")

    return app
